"""Cooperative cancellation for one agent turn.

The controller owns a token that awaitables race against. Firing the token
is one-way: subscribers run once, then registered cleanups run once. A
``reset()`` hands out a fresh token so the next turn starts clean.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, TypeVar

from .error_handler import CancellationError, CancellationReason

LOGGER = logging.getLogger("statefulAgent.cancellation")

T = TypeVar("T")

CancelCallback = Callable[[CancellationReason], None]


class CancellationToken:
    """Read-only view of a cancellation signal."""

    def __init__(self) -> None:
        self._cancelled = False
        self._reason: Optional[CancellationReason] = None
        self._callbacks: List[CancelCallback] = []

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> Optional[CancellationReason]:
        return self._reason

    def throw_if_cancelled(self) -> None:
        if self._cancelled:
            raise CancellationError(self._reason or CancellationReason.USER_CANCELLED)

    def on_cancelled(self, callback: CancelCallback) -> Callable[[], None]:
        """Subscribe to the cancellation signal.

        Fires immediately if the token has already been cancelled.

        Returns:
            A function that removes the subscription
        """
        if self._cancelled:
            callback(self._reason)
            return lambda: None

        self._callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unsubscribe

    def _fire(self, reason: CancellationReason) -> None:
        self._cancelled = True
        self._reason = reason
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback(reason)
            except Exception as e:
                LOGGER.exception("Cancellation callback failed", exc_info=e)


class CancellationController:
    """Issues tokens and fires them."""

    def __init__(self, logger: Optional[logging.LoggerAdapter] = None) -> None:
        self._logger = logger or LOGGER
        self._token = CancellationToken()
        self._cleanups: List[Callable[[], None]] = []

    @property
    def token(self) -> CancellationToken:
        return self._token

    @property
    def is_cancelled(self) -> bool:
        return self._token.is_cancelled

    def register_cleanup(self, cleanup: Callable[[], None]) -> None:
        """Run ``cleanup`` once when the current token fires."""
        self._cleanups.append(cleanup)

    def cancel(self, reason: CancellationReason = CancellationReason.USER_CANCELLED) -> bool:
        """Fire the current token.

        Returns:
            False when the token had already fired (the call is a no-op)
        """
        if self._token.is_cancelled:
            self._logger.warning(f"Cancel requested again ({reason.value}); already cancelled")
            return False

        self._logger.info(f"Cancelling: {reason.value}")
        self._token._fire(reason)

        cleanups, self._cleanups = self._cleanups, []
        for cleanup in cleanups:
            try:
                cleanup()
            except Exception as e:
                self._logger.exception("Cleanup failed", exc_info=e)
        return True

    def reset(self) -> CancellationToken:
        """Discard the old token (and its subscribers) and issue a fresh one."""
        self._token._callbacks.clear()
        self._token = CancellationToken()
        self._cleanups = []
        return self._token


def discard_late_result(task: asyncio.Future) -> None:
    """Let an abandoned task finish on its own; swallow its outcome."""

    def _consume(done: asyncio.Future) -> None:
        if not done.cancelled():
            done.exception()

    task.add_done_callback(_consume)


async def with_cancellation(awaitable: Awaitable[T], token: CancellationToken) -> T:
    """Await ``awaitable`` unless ``token`` fires first.

    On cancellation this raises CancellationError immediately. The in-flight
    operation is not torn down; its eventual result is discarded.
    """
    token.throw_if_cancelled()

    loop = asyncio.get_running_loop()
    task = asyncio.ensure_future(awaitable)
    signal = loop.create_future()

    def _on_cancel(_reason: CancellationReason) -> None:
        if not signal.done():
            signal.set_result(None)

    unsubscribe = token.on_cancelled(_on_cancel)
    try:
        await asyncio.wait({task, signal}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        unsubscribe()
        if not signal.done():
            signal.cancel()

    if task.done():
        return task.result()

    discard_late_result(task)
    raise CancellationError(token.reason or CancellationReason.USER_CANCELLED)


async def cancellable_delay(seconds: float, token: CancellationToken) -> None:
    """Sleep that wakes up with CancellationError when the token fires."""
    sleeper = asyncio.ensure_future(asyncio.sleep(seconds))
    try:
        await with_cancellation(sleeper, token)
    except CancellationError:
        sleeper.cancel()
        raise
