"""Host callbacks and step events."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional

from statefulAgent.agents.interfaces import ReflectionResult, RewrittenIntent
from statefulAgent.graph.state import AgentState
from statefulAgent.hitl.confirmation import ConfirmationRequest
from statefulAgent.utils.error_handler import safe_callback

LOGGER = logging.getLogger("statefulAgent.callbacks")


class StepType(str, Enum):
    THINKING = "thinking"
    INTENT_REWRITING = "intent_rewriting"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    CONFIRMATION = "confirmation"
    REFLECTION = "reflection"
    CANCELLED = "cancelled"
    STATE_CHANGE = "state_change"


@dataclass
class AgentStepEvent:
    """Progress notification for the UI."""

    type: StepType
    content: str = ""
    tool_name: Optional[str] = None
    tool_args: Optional[Dict[str, Any]] = None
    tool_result: Optional[str] = None
    success: Optional[bool] = None
    state: Optional[AgentState] = None
    confirmation: Optional[ConfirmationRequest] = None
    reflection: Optional[ReflectionResult] = None
    intent: Optional[RewrittenIntent] = None
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class AgentCallbacks:
    """Optional hooks the host can supply per turn.

    Every hook is invoked through :meth:`emit`, which logs and swallows
    failures so a broken UI handler never breaks the loop.
    """

    on_state_change: Optional[Callable[[AgentState, AgentState], None]] = None
    on_intent_rewritten: Optional[Callable[[RewrittenIntent], None]] = None
    on_confirmation_required: Optional[Callable[[ConfirmationRequest], None]] = None
    on_reflection: Optional[Callable[[ReflectionResult], None]] = None
    on_step: Optional[Callable[[AgentStepEvent], None]] = None

    def emit(self, hook: str, *args: Any, logger: Optional[logging.LoggerAdapter] = None) -> None:
        callback = getattr(self, hook, None)
        if callback is None:
            return
        safe_callback(hook, logger or LOGGER)(callback)(*args)

    def step(self, event: AgentStepEvent, logger: Optional[logging.LoggerAdapter] = None) -> None:
        self.emit("on_step", event, logger=logger)
