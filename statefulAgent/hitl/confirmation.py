"""Confirmation rendezvous between the agent loop and the host.

The loop opens a request and awaits it; the host answers through
``confirm()`` / ``reject(reason)``. Only one request can be pending.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from statefulAgent.utils.error_handler import (
    CancellationError,
    CancellationReason,
    ConfirmationPendingError,
    ConfirmationRejectedError,
)

LOGGER = logging.getLogger("statefulAgent.confirmation")


@dataclass
class ConfirmationRequest:
    """A pending yes/no question for the user."""

    tool_name: str
    args: Dict[str, Any]
    message: str
    risk_level: str = "high"
    warnings: List[str] = field(default_factory=list)
    id: str = field(default_factory=lambda: f"confirm_{uuid.uuid4().hex[:8]}")
    created_at: float = field(default_factory=time.time)
    _on_confirm: Optional[Callable[[], None]] = field(default=None, repr=False, compare=False)
    _on_reject: Optional[Callable[[str], None]] = field(default=None, repr=False, compare=False)

    def confirm(self) -> None:
        if self._on_confirm is not None:
            self._on_confirm()

    def reject(self, reason: str = "") -> None:
        if self._on_reject is not None:
            self._on_reject(reason)


class ConfirmationRendezvous:
    """Single-slot future for confirmations."""

    def __init__(self, logger: Optional[logging.LoggerAdapter] = None) -> None:
        self.logger = logger or LOGGER
        self._request: Optional[ConfirmationRequest] = None
        self._future: Optional[asyncio.Future] = None

    @property
    def pending(self) -> Optional[ConfirmationRequest]:
        return self._request

    def is_pending(self) -> bool:
        return self._future is not None and not self._future.done()

    def open(self, request: ConfirmationRequest) -> ConfirmationRequest:
        """Occupy the slot with ``request``.

        Raises:
            ConfirmationPendingError: another request is still unresolved
        """
        if self.is_pending():
            raise ConfirmationPendingError(
                f"Confirmation {self._request.id} is still pending; cannot open {request.id}"
            )
        self._future = asyncio.get_running_loop().create_future()
        self._request = request
        request._on_confirm = lambda: self._resolve_if_current(request, self.confirm)
        request._on_reject = lambda reason: self._resolve_if_current(request, lambda: self.reject(reason))
        self.logger.info(f"Awaiting confirmation {request.id}: {request.tool_name}")
        return request

    async def wait(self) -> None:
        """Wait for the answer. Raises ConfirmationRejectedError on reject."""
        if self._future is None:
            raise ConfirmationPendingError("No confirmation has been opened")
        future = self._future
        try:
            await future
        finally:
            if self._future is future:
                self._request = None
                self._future = None

    def confirm(self) -> bool:
        if not self.is_pending():
            self.logger.warning("confirm() called with no pending confirmation")
            return False
        self.logger.info(f"Confirmed {self._request.id}")
        self._future.set_result(None)
        return True

    def reject(self, reason: str = "") -> bool:
        if not self.is_pending():
            self.logger.warning("reject() called with no pending confirmation")
            return False
        self.logger.info(f"Rejected {self._request.id}: {reason}")
        self._future.set_exception(ConfirmationRejectedError(reason))
        return True

    def cancel(self, reason: CancellationReason = CancellationReason.USER_CANCELLED) -> bool:
        if not self.is_pending():
            return False
        self._future.set_exception(CancellationError(reason))
        return True

    def clear(self) -> None:
        """Drop any request, failing a pending one with CancellationError."""
        self.cancel()
        if self._future is not None and self._future.done() and not self._future.cancelled():
            # Nobody may ever await it now
            self._future.exception()
        self._request = None
        self._future = None

    def _resolve_if_current(self, request: ConfirmationRequest, resolve: Callable[[], Any]) -> None:
        if self._request is not request:
            self.logger.warning(f"Ignoring answer for stale confirmation {request.id}")
            return
        resolve()
