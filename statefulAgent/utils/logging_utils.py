"""Logging utilities for the stateful agent."""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, MutableMapping, Optional, Tuple, Union

ROOT_LOGGER_NAME = "statefulAgent"


def setup_logging(
    level: Union[int, str] = logging.INFO,
    log_dir: Union[str, Path] = "logs",
    to_file: bool = False,
) -> logging.Logger:
    """Setup logging configuration for the statefulAgent logger tree.

    Args:
        level: Minimum level of the package logger
        log_dir: Directory for the session log file
        to_file: Also write a detailed DEBUG log file

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(level)
    logger.propagate = False

    # Clear existing handlers
    logger.handlers = []

    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.WARNING)
    console_handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
    logger.addHandler(console_handler)

    if to_file:
        logs_dir = Path(log_dir)
        logs_dir.mkdir(parents=True, exist_ok=True)
        log_file = logs_dir / f"stateful_agent_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(
            "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        ))
        logger.addHandler(file_handler)
        logger.info(f"Log file: {log_file}")

    return logger


class AgentLogger(logging.LoggerAdapter):
    """Logger scoped to one agent instance.

    Every record is prefixed with the current turn's trace id, and records
    below ``min_level`` are dropped regardless of the wrapped logger's level.
    """

    def __init__(self, logger: logging.Logger, min_level: int = logging.DEBUG, trace_id: str = ""):
        super().__init__(logger, {"trace_id": trace_id})
        self.min_level = min_level

    @property
    def trace_id(self) -> str:
        return self.extra["trace_id"]

    def new_trace(self) -> str:
        """Start a new trace id (one per turn)."""
        trace_id = f"trace_{uuid.uuid4().hex[:12]}"
        self.extra = {"trace_id": trace_id}
        return trace_id

    def isEnabledFor(self, level: int) -> bool:
        if level < self.min_level:
            return False
        return self.logger.isEnabledFor(level)

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> Tuple[Any, MutableMapping[str, Any]]:
        trace_id = self.extra.get("trace_id")
        extra = dict(kwargs.get("extra") or {})
        extra.setdefault("trace_id", trace_id)
        kwargs["extra"] = extra
        if trace_id:
            return f"[{trace_id}] {msg}", kwargs
        return msg, kwargs


def get_agent_logger(
    name: str = ROOT_LOGGER_NAME,
    min_level: Union[int, str] = logging.DEBUG,
    logger: Optional[logging.Logger] = None,
) -> AgentLogger:
    """Wrap ``logger`` (or the named package logger) in an AgentLogger."""
    if isinstance(min_level, str):
        min_level = logging.getLevelName(min_level.upper())
    return AgentLogger(logger or logging.getLogger(name), min_level=min_level)


def _preview(value: Any, limit: int = 200) -> str:
    text = value if isinstance(value, str) else str(value)
    if len(text) > limit:
        return text[:limit] + "... (truncated)"
    return text


def log_state_transition(logger: logging.LoggerAdapter, from_state: str, to_state: str, accepted: bool = True) -> None:
    """Log a state machine transition (or a rejected one)."""
    if accepted:
        logger.info(f"State transition: {from_state} → {to_state}")
    else:
        logger.debug(f"Ignored illegal transition: {from_state} → {to_state}")


def log_tool_call(logger: logging.LoggerAdapter, tool_name: str, args: Dict[str, Any]) -> None:
    """Log tool invocation.

    Args:
        logger: Logger instance
        tool_name: Name of the tool being called
        args: Tool arguments
    """
    logger.info(f"Tool call: {tool_name}")
    logger.debug(f"  Arguments: {json.dumps(args, ensure_ascii=False, default=str)}")


def log_tool_result(
    logger: logging.LoggerAdapter,
    tool_name: str,
    result: Any,
    success: bool = True,
    duration: Optional[float] = None,
) -> None:
    """Log tool execution result.

    Args:
        logger: Logger instance
        tool_name: Name of the tool
        result: Tool execution result
        success: Whether the tool executed successfully
        duration: Wall time in seconds
    """
    status = "✓ Success" if success else "✗ Failed"
    elapsed = f" ({duration:.2f}s)" if duration is not None else ""
    logger.info(f"Tool result: {tool_name} - {status}{elapsed}")
    logger.debug(f"  Result: {_preview(result, 500)}")


def log_llm_call(logger: logging.LoggerAdapter, iteration: int, message_count: int, has_image: bool = False) -> None:
    logger.info(f"LLM call #{iteration}: {message_count} messages{' (with image)' if has_image else ''}")


def log_retry(logger: logging.LoggerAdapter, operation: str, attempt: int, error: Exception, delay: float) -> None:
    """Log a retry decision with attempt count and backoff."""
    logger.warning(
        f"{operation} failed (attempt {attempt}): {type(error).__name__}: {error}; "
        f"retrying in {delay:.2f}s"
    )


def log_error(logger: logging.LoggerAdapter, error: Exception, context: str = "") -> None:
    """Log error with context.

    Args:
        logger: Logger instance
        error: Exception instance
        context: Additional context about where the error occurred
    """
    logger.error(f"Error occurred: {type(error).__name__}: {str(error)}")
    if context:
        logger.error(f"  Context: {context}")
    logger.debug("Full traceback:", exc_info=error)


def log_user_message(logger: logging.LoggerAdapter, content: str) -> None:
    logger.info(f"User input: {content[:100]}{'...' if len(content) > 100 else ''}")


def log_agent_response(logger: logging.LoggerAdapter, content: str) -> None:
    logger.info(f"Agent response: {content[:100]}{'...' if len(content) > 100 else ''}")


def log_routing_decision(logger: logging.LoggerAdapter, decision: str, reason: str = "") -> None:
    """Log how the loop decided to continue or stop."""
    logger.info(f"Routing decision: {decision}")
    if reason:
        logger.info(f"  Reason: {reason}")


def log_context_stats(logger: logging.LoggerAdapter, stats: Any) -> None:
    logger.info(
        f"Context: {stats.original_count} → {stats.final_count} messages, "
        f"~{stats.estimated_tokens}/{stats.budget} tokens ({stats.usage_percent:.1f}%), "
        f"trimmed {stats.trimmed_count}"
    )
