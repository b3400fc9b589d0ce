"""Turn state, the state machine and message helpers."""

from .state import AgentState, AgentTurn, ExecutionPlan, PlanStep, StepObservation, TurnSnapshot
from .state_machine import StateMachine

__all__ = [
    "AgentState",
    "AgentTurn",
    "ExecutionPlan",
    "PlanStep",
    "StepObservation",
    "TurnSnapshot",
    "StateMachine",
]
