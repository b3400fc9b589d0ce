"""Unified error taxonomy for the stateful agent loop."""

from __future__ import annotations

import functools
import json
import logging
from enum import Enum
from typing import Any, Callable, Optional

LOGGER = logging.getLogger("statefulAgent.errors")


class CancellationReason(str, Enum):
    """Why a turn was cancelled."""

    USER_CANCELLED = "user_cancelled"
    TIMEOUT = "timeout"
    COMPONENT_UNMOUNTED = "component_unmounted"
    SUPERSEDED = "superseded"


class StatefulAgentError(Exception):
    """Base exception for stateful agent errors."""

    def __init__(self, message: str, user_message: str = None):
        super().__init__(message)
        self.user_message = user_message or message


class CancellationError(StatefulAgentError):
    """The turn's cancellation token fired. Never retried."""

    def __init__(self, reason: CancellationReason = CancellationReason.USER_CANCELLED):
        super().__init__(f"Operation cancelled: {reason.value}", "操作已取消")
        self.reason = reason


class OperationTimeoutError(StatefulAgentError):
    """An awaited operation exceeded its deadline."""

    def __init__(self, message: str, timeout: float):
        super().__init__(f"{message} (timeout after {timeout:g}s)", "响应超时，请稍后重试")
        self.timeout = timeout


class ModelInvocationError(StatefulAgentError):
    """Error during model invocation."""
    pass


class RateLimitError(StatefulAgentError):
    """Rate limit exceeded error."""
    pass


class ToolNotFoundError(StatefulAgentError):
    """The model asked for a tool that is not registered."""

    def __init__(self, tool_name: str):
        super().__init__(f"Unknown tool: {tool_name}", f"工具 {tool_name} 不存在")
        self.tool_name = tool_name


class PermissionDeniedError(StatefulAgentError):
    """The permission gate blocked a call (rate limit, cooldown)."""

    def __init__(self, tool_name: str, reason: str):
        super().__init__(f"Permission denied for {tool_name}: {reason}", reason)
        self.tool_name = tool_name
        self.reason = reason


class ConfirmationRejectedError(StatefulAgentError):
    """The user rejected a pending confirmation."""

    def __init__(self, reason: str = ""):
        super().__init__(f"Confirmation rejected: {reason or 'no reason given'}", reason)
        self.reason = reason


class ConfirmationPendingError(StatefulAgentError):
    """A confirmation was requested while another one is still unresolved."""
    pass


class ProviderEmptyResponseError(StatefulAgentError):
    """The provider returned neither content nor tool calls."""

    def __init__(self, message: str = "Provider returned an empty response"):
        super().__init__(message, "AI 没有返回任何内容")


class MaxIterationsExceededError(StatefulAgentError):
    """The loop ran out of rounds before the task completed."""

    def __init__(self, max_iterations: int):
        super().__init__(
            f"Exceeded maximum iterations ({max_iterations})",
            f"已达到最大执行轮数（{max_iterations}），任务未能完成，请简化请求后重试。",
        )
        self.max_iterations = max_iterations


class RepeatedCallLoopError(StatefulAgentError):
    """The model kept issuing the same tool call."""

    def __init__(self, tool_name: str, repeats: int):
        super().__init__(
            f"Repeated call loop detected on {tool_name} ({repeats} repeats)",
            f"检测到重复调用 {tool_name}，已停止执行以避免死循环。请换一种说法重新描述你的需求。",
        )
        self.tool_name = tool_name
        self.repeats = repeats


class InvalidStateError(StatefulAgentError):
    """The host drove the agent from a state that does not allow it."""
    pass


def safe_callback(name: str, logger: Optional[logging.Logger] = None):
    """Decorator for host callbacks: failures are logged, never propagated.

    Args:
        name: Callback name used in the log line

    Example:
        notify = safe_callback("on_step")(callbacks.on_step)
    """
    log = logger or LOGGER

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> None:
            try:
                func(*args, **kwargs)
            except Exception as e:
                log.exception(f"Callback {name} failed", exc_info=e)
        return wrapper
    return decorator


def format_tool_error(error: Exception) -> str:
    """Render a tool failure as ToolMessage content."""
    message = getattr(error, "user_message", None) or str(error)
    return json.dumps({"ok": False, "error": f"Error: {message}"}, ensure_ascii=False)


def handle_model_error(error: Exception) -> str:
    """Convert model invocation errors to user-friendly messages.

    Args:
        error: Exception raised during model invocation

    Returns:
        User-friendly error message
    """
    if isinstance(error, OperationTimeoutError):
        return "AI 响应超时，请重试"

    error_str = str(error).lower()

    if "rate_limit" in error_str or "rate limit" in error_str or "429" in error_str:
        return "请求过于频繁，请稍后再试"

    if "timeout" in error_str:
        return "AI 响应超时，请重试"

    if "context_length" in error_str or "maximum context" in error_str:
        return "对话历史过长，请开启新会话"

    if "invalid_api_key" in error_str or "authentication" in error_str:
        return "API 密钥无效，请联系管理员"

    if "quota" in error_str or "insufficient" in error_str:
        return "AI 服务配额不足，请联系管理员"

    return f"AI 服务暂时不可用：{str(error)}"
