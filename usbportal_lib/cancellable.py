"""
usbportal_lib/cancellable.py

Caller-supplied cancellation tokens and the bridge linking them to pending
requests.

On cancellation the bridge:
1. fires a best-effort Close on the request path (errors discarded),
2. fails the pending request with PortalCancelledError,
3. lets the pending request tear down its subscription and its link.

A request that already reached a terminal state ignores cancellation: no Close
is sent and the delivered result is left untouched.
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, Callable, Optional

from .bus import Bus
from .errors import PortalCancelledError, PortalErrorContext, UsbPortalError

if TYPE_CHECKING:
    from .pending import PendingRequest

logger = logging.getLogger(__name__)


class Cancellable:
    """
    Cooperative cancellation token.

    Cancelling only guarantees that linked local operations resolve as
    cancelled; the broker may keep processing. Must be used from the event
    loop thread that owns the linked requests.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._handlers: dict[int, Callable[[], None]] = {}
        self._next_id = 1
        self._lock = threading.Lock()

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
            handlers = list(self._handlers.values())
        for handler in handlers:
            try:
                handler()
            except Exception:  # noqa: BLE001
                logger.warning("Cancellation handler failed", exc_info=True)

    def connect(self, handler: Callable[[], None]) -> int:
        """
        Register a handler and return its id.

        When the token is already cancelled the handler runs immediately and
        the returned id is still valid for disconnect().
        """
        with self._lock:
            handler_id = self._next_id
            self._next_id += 1
            self._handlers[handler_id] = handler
            already_cancelled = self._cancelled
        if already_cancelled:
            handler()
        return handler_id

    def disconnect(self, handler_id: int) -> bool:
        with self._lock:
            return self._handlers.pop(handler_id, None) is not None

    def handler_count(self) -> int:
        with self._lock:
            return len(self._handlers)


class CancellationBridge:
    def __init__(self, bus: Bus, *, logger: Optional[logging.Logger] = None) -> None:
        self._bus = bus
        self._log = logger or logging.getLogger(__name__)

    def link(self, pending: "PendingRequest", cancellable: Cancellable) -> int:
        handler_id = cancellable.connect(lambda: self._on_cancelled(pending))
        pending.attach_cancel_link(cancellable, handler_id)
        return handler_id

    def _on_cancelled(self, pending: "PendingRequest") -> None:
        self.abort(
            pending,
            PortalCancelledError(
                f"{pending.operation} call canceled by caller",
                context=PortalErrorContext(phase="cancel", request_path=pending.path),
            ),
        )

    def abort(self, pending: "PendingRequest", error: UsbPortalError) -> bool:
        """
        Send Close for an unfinished request and fail it with `error`.

        Returns False when the request had already reached a terminal state.
        """
        if pending.terminal:
            pending.teardown()
            return False
        self._log.debug("Aborting %s on %s: %s", pending.operation, pending.path, error)
        try:
            self._bus.call_no_reply(
                path=pending.path,
                interface=pending.close_interface,
                member="Close",
            )
        except Exception:  # noqa: BLE001
            self._log.debug("Close on %s could not be sent", pending.path, exc_info=True)
        return pending.fail(error)


__all__ = ["Cancellable", "CancellationBridge"]
