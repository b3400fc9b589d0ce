"""Finite state machine for the agent lifecycle."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, List, Optional

from statefulAgent.utils.logging_utils import log_state_transition

from .state import AgentState, ExecutionPlan

LOGGER = logging.getLogger("statefulAgent.state_machine")

StateListener = Callable[[AgentState, AgentState], None]

_CANCEL = frozenset({AgentState.CANCELLED})

TRANSITIONS: Dict[AgentState, FrozenSet[AgentState]] = {
    AgentState.IDLE: frozenset({AgentState.PARSING}),
    AgentState.PARSING: frozenset({
        AgentState.AWAITING_CONFIRMATION,
        AgentState.EXECUTING,
        AgentState.COMPLETED,
        AgentState.ERROR,
    }) | _CANCEL,
    AgentState.AWAITING_CONFIRMATION: frozenset({
        AgentState.EXECUTING,
        AgentState.COMPLETED,
        AgentState.ERROR,
    }) | _CANCEL,
    AgentState.EXECUTING: frozenset({
        AgentState.AWAITING_CONFIRMATION,
        AgentState.REFLECTING,
        AgentState.SUMMARIZING,
        AgentState.ERROR,
    }) | _CANCEL,
    AgentState.REFLECTING: frozenset({AgentState.EXECUTING}) | _CANCEL,
    AgentState.SUMMARIZING: frozenset({AgentState.COMPLETED}) | _CANCEL,
    AgentState.COMPLETED: frozenset({AgentState.IDLE}) | _CANCEL,
    AgentState.ERROR: frozenset({AgentState.IDLE}) | _CANCEL,
    AgentState.CANCELLED: frozenset({AgentState.IDLE}),
}

ACTIVE_STATES = frozenset({
    AgentState.PARSING,
    AgentState.AWAITING_CONFIRMATION,
    AgentState.EXECUTING,
    AgentState.REFLECTING,
    AgentState.SUMMARIZING,
})

MAX_HISTORY = 100


@dataclass(frozen=True)
class StateTransition:
    from_state: AgentState
    to_state: AgentState
    timestamp: float


class StateMachine:
    """Tracks the current AgentState and the current plan.

    Illegal transitions are ignored (``transition`` returns False).
    """

    def __init__(self, logger: Optional[logging.LoggerAdapter] = None) -> None:
        self._logger = logger or LOGGER
        self._state = AgentState.IDLE
        self._plan: Optional[ExecutionPlan] = None
        self._history: List[StateTransition] = []
        self._listeners: List[StateListener] = []

    @property
    def state(self) -> AgentState:
        return self._state

    @property
    def plan(self) -> Optional[ExecutionPlan]:
        return self._plan

    @property
    def history(self) -> List[StateTransition]:
        return list(self._history)

    def can_transition(self, to_state: AgentState) -> bool:
        return to_state in TRANSITIONS.get(self._state, frozenset())

    def transition(self, to_state: AgentState) -> bool:
        if not self.can_transition(to_state):
            log_state_transition(self._logger, self._state.value, to_state.value, accepted=False)
            return False
        self._apply(to_state)
        return True

    def set_plan(self, plan: Optional[ExecutionPlan]) -> None:
        self._plan = plan

    def is_active(self) -> bool:
        return self._state in ACTIVE_STATES

    def is_awaiting_input(self) -> bool:
        return self._state == AgentState.AWAITING_CONFIRMATION

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register ``listener(old_state, new_state)``.

        Returns:
            A function that removes the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def reset(self) -> None:
        """Force the machine back to idle and drop the plan."""
        self._plan = None
        if self._state != AgentState.IDLE:
            self._apply(AgentState.IDLE)

    def _apply(self, to_state: AgentState) -> None:
        from_state = self._state
        self._state = to_state
        self._history.append(StateTransition(from_state, to_state, time.time()))
        if len(self._history) > MAX_HISTORY:
            del self._history[: len(self._history) - MAX_HISTORY]

        log_state_transition(self._logger, from_state.value, to_state.value)

        for listener in list(self._listeners):
            try:
                listener(from_state, to_state)
            except Exception as e:
                self._logger.exception("State listener failed", exc_info=e)
