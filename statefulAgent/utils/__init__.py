"""Utilities for the stateful agent."""

from .cancellation import (
    CancellationController,
    CancellationToken,
    cancellable_delay,
    with_cancellation,
)
from .error_handler import (
    CancellationError,
    CancellationReason,
    ConfirmationRejectedError,
    InvalidStateError,
    ModelInvocationError,
    OperationTimeoutError,
    PermissionDeniedError,
    RateLimitError,
    StatefulAgentError,
    ToolNotFoundError,
    format_tool_error,
    handle_model_error,
    safe_callback,
)
from .logging_utils import AgentLogger, get_agent_logger, setup_logging
from .retry import RetryConfig, calculate_backoff_delay, is_retryable_error, with_retry, with_timeout

__all__ = [
    "CancellationController",
    "CancellationToken",
    "cancellable_delay",
    "with_cancellation",
    "CancellationError",
    "CancellationReason",
    "ConfirmationRejectedError",
    "InvalidStateError",
    "ModelInvocationError",
    "OperationTimeoutError",
    "PermissionDeniedError",
    "RateLimitError",
    "StatefulAgentError",
    "ToolNotFoundError",
    "format_tool_error",
    "handle_model_error",
    "safe_callback",
    "AgentLogger",
    "get_agent_logger",
    "setup_logging",
    "RetryConfig",
    "calculate_backoff_delay",
    "is_retryable_error",
    "with_retry",
    "with_timeout",
]
