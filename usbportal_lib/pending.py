"""
usbportal_lib/pending.py

Request correlation: one outgoing broker call completed by one later signal.

Rules:
- The signal subscription exists before the initiating call is submitted.
- Exactly one of {signal, call failure, call reply, cancellation, timeout}
  terminates a request; later triggers are no-ops.
- Teardown (unsubscribe + cancel-link removal) runs exactly once and happens
  before the completion is delivered to the awaiting caller.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Callable, Generic, Optional, Sequence, TypeVar

from .bus import Bus, BusMessage, SignalMatch, close_fds
from .cancellable import Cancellable, CancellationBridge
from .const import PORTAL_OBJECT_PATH, REQUEST_INTERFACE, USB_INTERFACE
from .errors import (
    PortalCancelledError,
    PortalErrorContext,
    PortalInvalidState,
    PortalTimeoutError,
    PortalTransportError,
    UsbPortalError,
)

T = TypeVar("T")

SignalDecoder = Callable[[BusMessage], Any]
ReplyHandler = Callable[["PendingRequest[Any]", BusMessage], None]


class PendingState(str, Enum):
    """Lifecycle of one correlated request."""

    PENDING = "pending"
    RESOLVED = "resolved"
    FAILED = "failed"


class PendingRequest(Generic[T]):
    """
    One outstanding broker call.

    The future is single-assignment; resolve() and fail() return False once
    the request is terminal.
    """

    def __init__(
        self,
        path: str,
        *,
        bus: Bus,
        future: asyncio.Future,
        operation: str,
        close_interface: str = REQUEST_INTERFACE,
        on_terminal: Optional[Callable[["PendingRequest[Any]"], None]] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._path = path
        self._bus = bus
        self.future = future
        self.operation = operation
        self.close_interface = close_interface
        self._on_terminal = on_terminal
        self._log = logger or logging.getLogger(__name__)

        self.state = PendingState.PENDING
        self._subscription_id: Optional[int] = None
        self._match: Optional[SignalMatch] = None
        self._signal_cb: Optional[Callable[[BusMessage], None]] = None
        self._cancellable: Optional[Cancellable] = None
        self._cancel_handler_id: Optional[int] = None
        self._torn_down = False

    @property
    def path(self) -> str:
        return self._path

    @property
    def terminal(self) -> bool:
        return self.state is not PendingState.PENDING

    @property
    def torn_down(self) -> bool:
        return self._torn_down

    @property
    def subscription_id(self) -> Optional[int]:
        return self._subscription_id

    def subscribe(self, match: SignalMatch, callback: Callable[[BusMessage], None]) -> None:
        if self._subscription_id is not None:
            raise PortalInvalidState(f"{self.operation} request already subscribed on {self._path}")
        self._match = match
        self._signal_cb = callback
        self._subscription_id = self._bus.subscribe(match, callback)

    def rebind(self, path: str) -> None:
        """Move the request (and its subscription) to a broker-assigned path."""
        if path == self._path or self.terminal:
            return
        self._log.debug("Rebinding %s request from %s to %s", self.operation, self._path, path)
        self._path = path
        if self._subscription_id is None or self._match is None or self._signal_cb is None:
            return
        old_id = self._subscription_id
        self._subscription_id = None
        self._bus.unsubscribe(old_id)
        self._match = SignalMatch(
            interface=self._match.interface,
            member=self._match.member,
            path=path,
            sender=self._match.sender,
        )
        self._subscription_id = self._bus.subscribe(self._match, self._signal_cb)

    def attach_cancel_link(self, cancellable: Cancellable, handler_id: int) -> None:
        if self._torn_down:
            # Cancelled synchronously while linking; the link is already stale.
            cancellable.disconnect(handler_id)
            return
        self._cancellable = cancellable
        self._cancel_handler_id = handler_id

    def teardown(self) -> None:
        if self._torn_down:
            return
        self._torn_down = True
        if self._subscription_id is not None:
            subscription_id = self._subscription_id
            self._subscription_id = None
            self._bus.unsubscribe(subscription_id)
        if self._cancellable is not None and self._cancel_handler_id is not None:
            self._cancellable.disconnect(self._cancel_handler_id)
        self._cancellable = None
        self._cancel_handler_id = None

    def resolve(self, value: T) -> bool:
        if self.terminal:
            return False
        self.state = PendingState.RESOLVED
        self.teardown()
        if not self.future.done():
            self.future.set_result(value)
        self._notify_terminal()
        return True

    def fail(self, error: BaseException) -> bool:
        if self.terminal:
            return False
        self.state = PendingState.FAILED
        self.teardown()
        if not self.future.done():
            self.future.set_exception(error)
        self._notify_terminal()
        return True

    def _notify_terminal(self) -> None:
        if self._on_terminal is not None:
            self._on_terminal(self)


class RequestCorrelator:
    """
    Owns every outstanding correlated request on one bus.

    Typical usage:
        pending = correlator.begin(path, match=..., decode=..., cancellable=token)
        correlator.submit(pending, member="AcquireDevices", signature=..., body=...)
        result = await correlator.wait(pending)
    """

    def __init__(self, bus: Bus, *, logger: Optional[logging.Logger] = None) -> None:
        self._bus = bus
        self._log = logger or logging.getLogger(__name__)
        self.bridge = CancellationBridge(bus, logger=self._log)
        self._pending: dict[str, PendingRequest[Any]] = {}
        self._call_tasks: set[asyncio.Task[None]] = set()

    def pending_count(self) -> int:
        return len(self._pending)

    def get(self, path: str) -> Optional[PendingRequest[Any]]:
        return self._pending.get(path)

    def begin(
        self,
        path: str,
        *,
        operation: str,
        match: Optional[SignalMatch] = None,
        decode: Optional[SignalDecoder] = None,
        cancellable: Optional[Cancellable] = None,
        close_interface: str = REQUEST_INTERFACE,
    ) -> PendingRequest[Any]:
        existing = self._pending.get(path)
        if existing is not None and not existing.terminal:
            raise PortalInvalidState(f"A request is already pending on {path}")

        loop = asyncio.get_running_loop()
        pending: PendingRequest[Any] = PendingRequest(
            path,
            bus=self._bus,
            future=loop.create_future(),
            operation=operation,
            close_interface=close_interface,
            on_terminal=self._forget,
            logger=self._log,
        )
        self._pending[path] = pending

        if match is not None:
            pending.subscribe(match, lambda msg: self._on_signal(pending, msg, decode))
        if cancellable is not None:
            self.bridge.link(pending, cancellable)
        return pending

    def rebind(self, pending: PendingRequest[Any], path: str) -> None:
        if pending.terminal or path == pending.path:
            return
        other = self._pending.get(path)
        if other is not None and other is not pending and not other.terminal:
            raise PortalInvalidState(f"A request is already pending on {path}")
        self._pending.pop(pending.path, None)
        pending.rebind(path)
        self._pending[path] = pending

    def submit(
        self,
        pending: PendingRequest[Any],
        *,
        member: str,
        signature: str = "",
        body: Sequence[Any] = (),
        path: str = PORTAL_OBJECT_PATH,
        interface: str = USB_INTERFACE,
        on_reply: Optional[ReplyHandler] = None,
    ) -> asyncio.Task[None]:
        """Issue the initiating call on the loop without blocking the caller."""

        async def _call() -> None:
            try:
                reply = await self._bus.call(
                    path=path,
                    interface=interface,
                    member=member,
                    signature=signature,
                    body=body,
                )
            except UsbPortalError as exc:
                if pending.fail(exc):
                    self._log.debug("%s call failed: %s", member, exc)
                return
            except Exception as exc:  # noqa: BLE001
                pending.fail(
                    PortalTransportError(
                        f"{member} failed: {exc}",
                        context=PortalErrorContext(phase="call", detail=member, request_path=pending.path),
                        cause=exc,
                    )
                )
                return
            if on_reply is None:
                return
            # on_reply also runs for requests that were already aborted so it
            # can release broker objects the late reply refers to.
            try:
                on_reply(pending, reply)
            except UsbPortalError as exc:
                pending.fail(exc)

        task = asyncio.get_running_loop().create_task(_call())
        self._call_tasks.add(task)
        task.add_done_callback(self._call_tasks.discard)
        return task

    async def wait(self, pending: PendingRequest[T], *, timeout_s: Optional[float] = None) -> T:
        try:
            if timeout_s is None:
                return await asyncio.shield(pending.future)
            return await asyncio.wait_for(asyncio.shield(pending.future), timeout=timeout_s)
        except asyncio.TimeoutError:
            if pending.future.done():
                return pending.future.result()
            self.bridge.abort(
                pending,
                PortalTimeoutError(
                    f"{pending.operation} timed out after {timeout_s}s",
                    context=PortalErrorContext(phase="wait", request_path=pending.path),
                ),
            )
            return await pending.future
        except asyncio.CancelledError:
            self.bridge.abort(
                pending,
                PortalCancelledError(
                    f"{pending.operation} awaiting task was cancelled",
                    context=PortalErrorContext(phase="cancel", request_path=pending.path),
                ),
            )
            if pending.future.done() and not pending.future.cancelled():
                pending.future.exception()
            raise

    def abort(self, pending: PendingRequest[Any], error: UsbPortalError) -> bool:
        return self.bridge.abort(pending, error)

    def abort_all(self, make_error: Callable[[PendingRequest[Any]], UsbPortalError]) -> int:
        """Abort every live request; returns how many were aborted."""
        aborted = 0
        for pending in list(self._pending.values()):
            if self.bridge.abort(pending, make_error(pending)):
                aborted += 1
        return aborted

    def _on_signal(
        self,
        pending: PendingRequest[Any],
        msg: BusMessage,
        decode: Optional[SignalDecoder],
    ) -> None:
        if pending.terminal:
            self._log.debug("Ignoring stray %s signal on %s", msg.member, msg.path)
            close_fds(msg.unix_fds, self._log)
            return
        try:
            value = decode(msg) if decode is not None else msg
        except UsbPortalError as exc:
            close_fds(msg.unix_fds, self._log)
            pending.fail(exc)
            return
        pending.resolve(value)

    def _forget(self, pending: PendingRequest[Any]) -> None:
        if self._pending.get(pending.path) is pending:
            del self._pending[pending.path]


__all__ = ["PendingRequest", "PendingState", "RequestCorrelator"]
