"""Interfaces for the pluggable collaborators of the agent loop."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Sequence, runtime_checkable

from langchain_core.messages import AIMessage, BaseMessage
from pydantic import BaseModel, Field

from statefulAgent.graph.state import ExecutionPlan, StepObservation


class IntentType(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    QUERY = "query"
    STATISTICS = "statistics"
    BATCH = "batch"
    CLARIFY = "clarify"
    CHAT = "chat"
    UNKNOWN = "unknown"


# Intents that do work in the ledger (and get a task block in the prompt)
ACTIONABLE_INTENTS = frozenset({
    IntentType.CREATE,
    IntentType.UPDATE,
    IntentType.DELETE,
    IntentType.QUERY,
    IntentType.STATISTICS,
    IntentType.BATCH,
})


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RewrittenIntent(BaseModel):
    """A user request rewritten into an unambiguous instruction."""

    rewritten_prompt: str
    original_input: str
    intent_type: IntentType = IntentType.UNKNOWN
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    risk_level: RiskLevel = RiskLevel.LOW
    extracted_info: Dict[str, Any] = Field(default_factory=dict)
    requires_confirmation: bool = False
    confirmation_reason: Optional[str] = None
    clarify_question: Optional[str] = None
    missing_info: List[str] = Field(default_factory=list)
    has_image: bool = False

    @property
    def is_high_risk(self) -> bool:
        return self.risk_level in (RiskLevel.HIGH, RiskLevel.CRITICAL)


class NextAction(str, Enum):
    CONTINUE = "continue"
    RETRY = "retry"
    ADJUST_STRATEGY = "adjust_strategy"
    ASK_USER = "ask_user"
    COMPLETE = "complete"
    ABORT = "abort"


class ReflectionResult(BaseModel):
    """The reflector's verdict on the latest step."""

    step_success: bool = True
    thought: str = ""
    next_action: NextAction = NextAction.CONTINUE
    is_task_complete: bool = False
    progress_percent: int = Field(default=0, ge=0, le=100)
    correction_hint: Optional[str] = None
    suggested_tool: Optional[str] = None
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)


@dataclass
class ReflectionContext:
    """What the reflector gets to look at."""

    user_request: str
    plan: Optional[ExecutionPlan]
    completed_steps: List[StepObservation]
    current_observation: StepObservation
    remaining_calls: List[Dict[str, Any]] = field(default_factory=list)


@runtime_checkable
class ChatModel(Protocol):
    """Anything with LangChain's async chat-model call."""

    async def ainvoke(self, input: Sequence[BaseMessage], **kwargs: Any) -> AIMessage:
        ...


class IntentRewriter(Protocol):
    def initialize(self, credential: Optional[str] = None) -> None:
        ...

    def is_enabled(self) -> bool:
        ...

    async def rewrite(self, content: Any, history: Sequence[BaseMessage]) -> RewrittenIntent:
        ...


class Reflector(Protocol):
    def initialize(self, credential: Optional[str] = None) -> None:
        ...

    def is_enabled(self) -> bool:
        ...

    def should_reflect(self, observation: StepObservation, remaining_calls: int) -> bool:
        ...

    async def reflect(self, context: ReflectionContext) -> ReflectionResult:
        ...

    def reset(self) -> None:
        ...
