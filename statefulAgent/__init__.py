"""Stateful orchestration engine for a tool-using ledger assistant."""

from .runtime.agent import StatefulAgent
from .runtime.app import build_agent
from .runtime.callbacks import AgentCallbacks, AgentStepEvent, StepType
from .graph.state import AgentState, TurnSnapshot

__all__ = [
    "StatefulAgent",
    "build_agent",
    "AgentCallbacks",
    "AgentStepEvent",
    "StepType",
    "AgentState",
    "TurnSnapshot",
]
