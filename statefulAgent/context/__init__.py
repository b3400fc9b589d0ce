"""Context window management."""

from .manager import ContextManagementReport, ContextManager
from .token_tracker import TokenUsage, estimate_message_tokens, estimate_messages_tokens, estimate_tokens
from .truncator import ContextStats, ContextTrimmer

__all__ = [
    "ContextManagementReport",
    "ContextManager",
    "TokenUsage",
    "estimate_tokens",
    "estimate_message_tokens",
    "estimate_messages_tokens",
    "ContextStats",
    "ContextTrimmer",
]
