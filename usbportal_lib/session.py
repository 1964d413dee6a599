"""
usbportal_lib/session.py

Portal sessions.

Ownership:
- UsbSession owns its PortalSession (strong reference).
- PortalSession points back at the UsbSession through a weakref only.
- Destroying the PortalSession while the UsbSession is still alive is a
  lifecycle-order violation: it is logged at CRITICAL and recorded on the
  UsbSession as `lifecycle_error`.

UsbSession subscribes to the broadcast DeviceEvents signal (no path filter);
every live session receives every batch and may filter on
DeviceEventBatch.session_path.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import weakref
from enum import Enum
from typing import Any, AsyncIterator, Callable, Optional

from .bus import Bus, BusMessage, SignalMatch
from .cancellable import Cancellable
from .codec import decode_device_events, decode_session_path, session_options
from .const import SESSION_INTERFACE, SIGNATURE_OPTIONS, USB_INTERFACE
from .errors import PortalCancelledError, PortalErrorContext, PortalInvalidState, PortalProtocolError
from .events import DeviceEventBatch
from .pending import PendingRequest, RequestCorrelator
from .tokens import TokenGenerator, random_token, sender_from_unique_name, session_path

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    """Lifecycle of a portal session object."""

    ACTIVE = "active"
    CLOSED = "closed"
    DESTROYED = "destroyed"


class PortalSession:
    """
    Generic portal session bound to one broker session path.

    close() asks the broker to close the session; destroy() releases local
    resources and must only run after the owning UsbSession was disposed.
    """

    def __init__(self, bus: Bus, path: str, *, logger: Optional[logging.Logger] = None) -> None:
        self._bus = bus
        self.path = path
        self._log = logger or logging.getLogger(__name__)
        self.state = SessionState.ACTIVE
        self._usb_ref: Optional[weakref.ReferenceType[UsbSession]] = None
        self._closed_callbacks: list[Callable[[PortalSession], None]] = []
        self._closed_notified = False
        self._closed_subscription: Optional[int] = bus.subscribe(
            SignalMatch(interface=SESSION_INTERFACE, member="Closed", path=path),
            self._on_closed_signal,
        )

    def __repr__(self) -> str:
        return f"PortalSession(path={self.path!r}, state={self.state.value})"

    @property
    def is_closed(self) -> bool:
        return self.state is not SessionState.ACTIVE

    @property
    def usb_session(self) -> Optional[UsbSession]:
        if self._usb_ref is None:
            return None
        return self._usb_ref()

    def attach_usb(self, usb: UsbSession) -> None:
        current = self.usb_session
        if current is not None and current is not usb:
            raise PortalInvalidState(f"Session {self.path} already has a USB handle attached.")
        self._usb_ref = weakref.ref(usb)

    def detach_usb(self, usb: UsbSession) -> None:
        if self.usb_session is usb:
            self._usb_ref = None

    def on_closed(self, callback: Callable[[PortalSession], None]) -> Callable[[], None]:
        """Register a callback for session closure; returns an unsubscribe callable."""
        self._closed_callbacks.append(callback)

        def _remove() -> None:
            if callback in self._closed_callbacks:
                self._closed_callbacks.remove(callback)

        return _remove

    def close(self) -> None:
        """Ask the broker to close the session. Safe to call multiple times."""
        if self.state is not SessionState.ACTIVE:
            return
        self._log.debug("Closing session %s", self.path)
        self._bus.call_no_reply(path=self.path, interface=SESSION_INTERFACE, member="Close")
        self.state = SessionState.CLOSED
        self._notify_closed()

    def destroy(self) -> None:
        if self.state is SessionState.DESTROYED:
            return
        self.state = SessionState.DESTROYED
        if self._closed_subscription is not None:
            subscription_id = self._closed_subscription
            self._closed_subscription = None
            self._bus.unsubscribe(subscription_id)
        self._closed_callbacks.clear()

        usb = self.usb_session
        self._usb_ref = None
        if usb is not None:
            self._log.critical(
                "PortalSession %s destroyed before its UsbSession; session references were mismanaged",
                self.path,
            )
            usb._on_parent_destroyed(self)

    def _on_closed_signal(self, msg: BusMessage) -> None:
        del msg
        if self.state is SessionState.DESTROYED:
            return
        self._log.debug("Session %s closed by the broker", self.path)
        self.state = SessionState.CLOSED
        self._notify_closed()

    def _notify_closed(self) -> None:
        if self._closed_notified:
            return
        self._closed_notified = True
        for callback in list(self._closed_callbacks):
            try:
                callback(self)
            except Exception:  # noqa: BLE001
                self._log.warning("Session closed callback failed", exc_info=True)


class UsbSession:
    """
    USB monitoring session.

    Typical usage:
        usb = await client.async_create_session()
        unsubscribe = usb.subscribe(on_batch)
        ...
        usb.close()
        usb.dispose()
    """

    def __init__(
        self,
        bus: Bus,
        parent_session: PortalSession,
        *,
        event_queue_size: int = 256,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._bus = bus
        self._log = logger or logging.getLogger(__name__)
        self.path = parent_session.path
        self._parent: Optional[PortalSession] = parent_session
        parent_session.attach_usb(self)

        self.lifecycle_error: Optional[PortalInvalidState] = None
        self._disposed = False
        self._callbacks: list[Callable[[DeviceEventBatch], None]] = []
        self._callback_lock = threading.Lock()
        self._callback_error_types: set[type] = set()
        self._event_queue: asyncio.Queue[Optional[DeviceEventBatch]] = asyncio.Queue(
            maxsize=event_queue_size if event_queue_size > 0 else 256
        )

        self._events_subscription: Optional[int] = bus.subscribe(
            SignalMatch(interface=USB_INTERFACE, member="DeviceEvents"),
            self._on_device_events,
        )

    def __repr__(self) -> str:
        return f"UsbSession(path={self.path!r}, disposed={self._disposed})"

    @property
    def session(self) -> Optional[PortalSession]:
        """The generic session, borrowed. None once disposed or lost."""
        return self._parent

    @property
    def disposed(self) -> bool:
        return self._disposed

    def subscribe(self, callback: Callable[[DeviceEventBatch], None]) -> Callable[[], None]:
        with self._callback_lock:
            if callback not in self._callbacks:
                self._callbacks.append(callback)
        return lambda: self.unsubscribe(callback)

    def unsubscribe(self, callback: Callable[[DeviceEventBatch], None]) -> bool:
        with self._callback_lock:
            if callback not in self._callbacks:
                return False
            self._callbacks.remove(callback)
        return True

    def events(self) -> AsyncIterator[DeviceEventBatch]:
        """Async iterator of event batches; ends when the session is disposed."""
        async def _iter() -> AsyncIterator[DeviceEventBatch]:
            while True:
                batch = await self._event_queue.get()
                if batch is None:
                    break
                yield batch

        return _iter()

    def close(self) -> None:
        """Close the broker session. Subscriptions stay until dispose()."""
        if self._parent is None:
            raise PortalInvalidState(
                f"UsbSession {self.path} has no generic session to close.",
                context=PortalErrorContext(phase="close", request_path=self.path),
            )
        self._parent.close()

    def dispose(self) -> None:
        """
        Release the session: drop the DeviceEvents subscription, clear the
        back-reference and destroy the owned generic session. Idempotent.
        """
        if self._disposed:
            return
        self._disposed = True

        if self._events_subscription is not None:
            subscription_id = self._events_subscription
            self._events_subscription = None
            self._bus.unsubscribe(subscription_id)

        parent = self._parent
        self._parent = None
        if parent is None:
            self._log.critical(
                "UsbSession %s disposed after its PortalSession was destroyed; session references were mismanaged",
                self.path,
            )
        else:
            parent.detach_usb(self)
            parent.destroy()

        with self._callback_lock:
            self._callbacks.clear()
        self._signal_event_stream_end()

    def _on_parent_destroyed(self, parent: PortalSession) -> None:
        if self._parent is not parent:
            return
        self._parent = None
        self.lifecycle_error = PortalInvalidState(
            f"PortalSession {parent.path} was destroyed before its UsbSession",
            context=PortalErrorContext(phase="lifecycle", request_path=parent.path),
        )

    def _on_device_events(self, msg: BusMessage) -> None:
        if self._disposed:
            return
        try:
            batch = decode_device_events(msg)
        except PortalProtocolError as exc:
            self._log.warning("Dropping malformed DeviceEvents signal: %s", exc)
            return

        self._enqueue_event(batch)
        with self._callback_lock:
            callbacks = list(self._callbacks)
        for cb in callbacks:
            try:
                cb(batch)
            except Exception as exc:  # noqa: BLE001
                exc_type = type(exc)
                if exc_type not in self._callback_error_types:
                    self._callback_error_types.add(exc_type)
                    self._log.warning("DeviceEvents subscriber failed: %s", exc_type.__name__)

    def _enqueue_event(self, batch: Optional[DeviceEventBatch]) -> None:
        if self._event_queue.full():
            try:
                self._event_queue.get_nowait()
            except asyncio.QueueEmpty:
                pass
        try:
            self._event_queue.put_nowait(batch)
        except asyncio.QueueFull:
            pass

    def _signal_event_stream_end(self) -> None:
        self._enqueue_event(None)


async def create_usb_session(
    bus: Bus,
    correlator: RequestCorrelator,
    *,
    cancellable: Optional[Cancellable] = None,
    token_generator: TokenGenerator = random_token,
    response_timeout_s: Optional[float] = None,
    event_queue_size: int = 256,
    logger: Optional[logging.Logger] = None,
) -> UsbSession:
    """
    CreateSession, then wrap the returned path in a PortalSession/UsbSession
    pair.

    A cancellation before the reply sends Session.Close on the predicted path;
    a reply that arrives afterwards is closed as an orphan.
    """
    log = logger or logging.getLogger(__name__)
    if cancellable is not None and cancellable.is_cancelled:
        raise PortalCancelledError(
            "Create USB session canceled before the call was issued",
            context=PortalErrorContext(phase="create_session"),
        )
    try:
        sender = sender_from_unique_name(bus.unique_name)
    except ValueError as exc:
        raise PortalInvalidState("Bus has no unique name (not connected).", cause=exc) from exc

    token = token_generator()
    predicted = session_path(sender, token)
    pending = correlator.begin(
        predicted,
        operation="CreateSession",
        cancellable=cancellable,
        close_interface=SESSION_INTERFACE,
    )

    def _on_reply(req: PendingRequest[Any], reply: BusMessage) -> None:
        path = decode_session_path(reply)
        if req.terminal:
            log.debug("CreateSession reply for aborted request; closing orphan session %s", path)
            bus.call_no_reply(path=path, interface=SESSION_INTERFACE, member="Close")
            return
        req.resolve(path)

    correlator.submit(
        pending,
        member="CreateSession",
        signature=SIGNATURE_OPTIONS,
        body=[session_options(token)],
        on_reply=_on_reply,
    )
    path = await correlator.wait(pending, timeout_s=response_timeout_s)
    log.debug("Created USB session %s", path)
    parent_session = PortalSession(bus, path, logger=log)
    return UsbSession(bus, parent_session, event_queue_size=event_queue_size, logger=log)


__all__ = ["PortalSession", "SessionState", "UsbSession", "create_usb_session"]
