"""State objects for one agent conversation and one turn."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, NamedTuple, Optional, Set, Tuple, TYPE_CHECKING

from langchain_core.messages import BaseMessage

if TYPE_CHECKING:
    from statefulAgent.agents.interfaces import RewrittenIntent
    from statefulAgent.utils.cancellation import CancellationToken


class AgentState(str, Enum):
    """Lifecycle of the agent (one conversation, one turn at a time)."""

    IDLE = "idle"
    PARSING = "parsing"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    EXECUTING = "executing"
    REFLECTING = "reflecting"
    SUMMARIZING = "summarizing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERROR = "error"


STATE_DISPLAY_NAMES: Dict[AgentState, str] = {
    AgentState.IDLE: "空闲",
    AgentState.PARSING: "理解中",
    AgentState.AWAITING_CONFIRMATION: "等待确认",
    AgentState.EXECUTING: "执行中",
    AgentState.REFLECTING: "反思中",
    AgentState.SUMMARIZING: "总结中",
    AgentState.COMPLETED: "已完成",
    AgentState.CANCELLED: "已取消",
    AgentState.ERROR: "出错",
}


@dataclass
class PlanStep:
    """One executed (or planned) step of the current turn."""

    id: str
    description: str
    tool_name: Optional[str] = None
    args: Dict[str, Any] = field(default_factory=dict)
    status: str = "pending"  # pending, completed, failed, skipped


@dataclass
class ExecutionPlan:
    """Per-turn plan. Extended with a step for every executed tool call."""

    id: str
    description: str
    user_request: str
    steps: List[PlanStep] = field(default_factory=list)
    status: str = "executing"  # executing, completed, cancelled, failed
    created_at: float = field(default_factory=time.time)

    @classmethod
    def for_request(cls, user_request: str, description: Optional[str] = None) -> "ExecutionPlan":
        return cls(
            id=f"plan_{uuid.uuid4().hex[:8]}",
            description=description or user_request,
            user_request=user_request,
        )

    def add_step(self, tool_name: str, args: Dict[str, Any], success: bool) -> PlanStep:
        step = PlanStep(
            id=f"step_{len(self.steps) + 1}",
            description=f"调用 {tool_name}",
            tool_name=tool_name,
            args=dict(args),
            status="completed" if success else "failed",
        )
        self.steps.append(step)
        return step


@dataclass(frozen=True)
class StepObservation:
    """Record of a completed tool call. Immutable once recorded."""

    step_id: str
    tool_name: str
    args: Dict[str, Any]
    result: str
    success: bool
    error: Optional[str] = None
    duration: float = 0.0


class TurnSnapshot(NamedTuple):
    """What the host sees after each step of a turn."""

    messages: List[BaseMessage]
    state: AgentState


@dataclass
class AgentTurn:
    """Everything one turn of the loop reads and writes.

    Passed by reference through every phase of the loop; discarded when the
    turn ends.
    """

    messages: List[BaseMessage]
    token: "CancellationToken"
    trace_id: str = ""
    user_request: str = ""
    intent: Optional["RewrittenIntent"] = None
    intent_confirmed: bool = False
    plan: Optional[ExecutionPlan] = None
    observations: List[StepObservation] = field(default_factory=list)
    iteration: int = 0
    empty_responses: int = 0
    repeated_calls: int = 0
    render_reminders: int = 0
    render_done: bool = False
    has_image: bool = False
    completed: bool = False
    # (tool name, canonical args) already executed this turn
    seen_calls: Set[Tuple[str, str]] = field(default_factory=set)
    # Messages queued by reflection until the current round's tool results are in
    pending_injections: List[BaseMessage] = field(default_factory=list)
    finished: bool = False

    def record(self, observation: StepObservation) -> None:
        self.observations.append(observation)
        if self.plan is not None:
            self.plan.add_step(observation.tool_name, observation.args, observation.success)
