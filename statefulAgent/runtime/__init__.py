"""Runtime: the agent loop and its assembly."""

from .agent import StatefulAgent
from .app import build_agent
from .callbacks import AgentCallbacks, AgentStepEvent, StepType

__all__ = ["StatefulAgent", "build_agent", "AgentCallbacks", "AgentStepEvent", "StepType"]
