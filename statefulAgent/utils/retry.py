"""Retry with exponential backoff, and deadline guards.

Example:
    config = RetryConfig(max_retries=2, initial_delay=2.0, max_delay=15.0)
    response = await with_retry(
        lambda: with_timeout(model.ainvoke(messages), 60, "LLM 调用超时"),
        config,
    )
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, Sequence, TypeVar

from .cancellation import CancellationToken, cancellable_delay, discard_late_result
from .error_handler import CancellationError, OperationTimeoutError, RateLimitError

LOGGER = logging.getLogger("statefulAgent.retry")

T = TypeVar("T")

# Substrings of provider / transport errors that are worth another attempt
RETRYABLE_ERROR_KEYWORDS: Sequence[str] = (
    "network",
    "econnreset",
    "etimedout",
    "econnrefused",
    "connection reset",
    "connection refused",
    "fetch failed",
    "timed out",
    "timeout",
    "rate limit",
    "rate_limit",
    "too many requests",
    "429",
    "quota",
    "500",
    "502",
    "503",
    "504",
    "internal server error",
    "bad gateway",
    "service unavailable",
    "gateway timeout",
)


def is_retryable_error(error: BaseException) -> bool:
    """Default retry predicate: transport failures, timeouts and throttling."""
    if isinstance(error, CancellationError):
        return False
    if isinstance(error, (OperationTimeoutError, RateLimitError, ConnectionError, asyncio.TimeoutError)):
        return True
    message = str(error).lower()
    return any(keyword in message for keyword in RETRYABLE_ERROR_KEYWORDS)


@dataclass
class RetryConfig:
    """Backoff policy for :func:`with_retry`."""

    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    jitter_ratio: float = 0.3
    is_retryable: Callable[[BaseException], bool] = is_retryable_error
    # Called as on_retry(attempt, error, next_delay) before waiting
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None
    token: Optional[CancellationToken] = None
    random_fn: Callable[[], float] = field(default=random.random, repr=False)


def calculate_backoff_delay(attempt: int, config: RetryConfig) -> float:
    """Delay before retry number ``attempt`` (0-based).

    ``min(initial * multiplier**attempt + jitter, max_delay)`` where jitter
    is a uniform fraction of the base delay in ``±jitter_ratio``.
    """
    base = config.initial_delay * (config.backoff_multiplier ** attempt)
    jitter = base * config.jitter_ratio * (config.random_fn() * 2 - 1)
    return max(0.0, min(base + jitter, config.max_delay))


async def with_retry(operation: Callable[[], Awaitable[T]], config: Optional[RetryConfig] = None) -> T:
    """Run ``operation`` until it succeeds or retries are exhausted.

    Args:
        operation: Factory producing a fresh awaitable per attempt
        config: Backoff policy

    Returns:
        The operation's result

    Raises:
        The last error unchanged when it is not retryable or attempts run out.
    """
    config = config or RetryConfig()
    attempt = 0
    while True:
        if config.token is not None:
            config.token.throw_if_cancelled()
        try:
            return await operation()
        except CancellationError:
            raise
        except Exception as e:
            if attempt >= config.max_retries or not config.is_retryable(e):
                raise
            delay = calculate_backoff_delay(attempt, config)
            attempt += 1
            if config.on_retry is not None:
                config.on_retry(attempt, e, delay)
            else:
                LOGGER.warning(f"Attempt {attempt} failed: {e}; retrying in {delay:.2f}s")
            if config.token is not None:
                config.token.throw_if_cancelled()
                await cancellable_delay(delay, config.token)
            else:
                await asyncio.sleep(delay)


async def with_timeout(awaitable: Awaitable[T], timeout: Optional[float], message: str = "操作超时") -> T:
    """Await ``awaitable`` for at most ``timeout`` seconds.

    On expiry raises OperationTimeoutError. The operation itself keeps
    running; its late result is discarded.
    """
    if timeout is None or timeout <= 0:
        return await awaitable

    task = asyncio.ensure_future(awaitable)
    try:
        done, _ = await asyncio.wait({task}, timeout=timeout)
    except asyncio.CancelledError:
        task.cancel()
        raise
    if task in done:
        return task.result()

    discard_late_result(task)
    raise OperationTimeoutError(message, timeout)
