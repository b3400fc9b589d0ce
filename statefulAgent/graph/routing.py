"""Routing decisions for the agent loop."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Callable, NamedTuple

from langchain_core.messages import AIMessage

from statefulAgent.agents.interfaces import IntentType
from statefulAgent.utils.logging_utils import log_routing_decision

from .message_utils import extract_text_content, is_function_call_json
from .state import AgentTurn, StepObservation

LOGGER = logging.getLogger("statefulAgent.routing")

_CONVERSATIONAL_INTENTS = frozenset({IntentType.CHAT, IntentType.CLARIFY})


class ResponseKind(str, Enum):
    TOOL_CALLS = "tool_calls"
    TEXT = "text"
    EMPTY = "empty"


class CompletionDecision(NamedTuple):
    complete: bool
    reason: str


def classify_response(response: AIMessage) -> ResponseKind:
    """Tool calls, a text answer, or nothing usable at all."""
    if response.tool_calls:
        return ResponseKind.TOOL_CALLS
    text = extract_text_content(response).strip()
    if not text or is_function_call_json(text):
        return ResponseKind.EMPTY
    return ResponseKind.TEXT


def evaluate_completion(
    turn: AgentTurn,
    needs_presentation: Callable[[StepObservation], bool],
    max_render_reminders: int,
    logger: logging.LoggerAdapter = None,
) -> CompletionDecision:
    """Decide whether a tool-free text reply ends the turn.

    Complete when a render tool already ran, when the turn is conversational,
    or when no successful business result is waiting to be shown. Otherwise
    ask for a render call, at most ``max_render_reminders`` times.
    """
    log = logger or LOGGER

    if turn.render_done:
        decision = CompletionDecision(True, "render step already ran")
    elif turn.intent is not None and turn.intent.intent_type in _CONVERSATIONAL_INTENTS:
        decision = CompletionDecision(True, "conversational turn")
    elif not any(o.success and needs_presentation(o) for o in turn.observations):
        decision = CompletionDecision(True, "no business result pending presentation")
    elif turn.render_reminders >= max_render_reminders:
        decision = CompletionDecision(True, f"accepted text reply after {turn.render_reminders} render reminders")
    else:
        decision = CompletionDecision(False, "business result not yet rendered")

    log_routing_decision(log, "complete" if decision.complete else "continue", decision.reason)
    return decision
