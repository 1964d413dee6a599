"""
Bus facade for the USB portal client.

Responsibilities:
- Own the single shared message-bus connection (dbus-fast, asyncio).
- Issue method calls and surface failures as PortalTransportError.
- Issue best-effort fire-and-forget calls whose errors are discarded.
- Keep a local table of signal subscriptions and dispatch incoming signals.

Non-responsibilities (explicit):
- Correlating calls with signals (belongs to pending.RequestCorrelator).
- Decoding payloads (belongs to codec).

Portal signals are addressed to our unique name, so subscriptions are local
filters only and never install bus match rules.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional, Sequence

from dbus_fast import BusType as DbusBusType
from dbus_fast import Message, MessageFlag, MessageType
from dbus_fast.aio import MessageBus
from dbus_fast.errors import DBusError

from .const import PORTAL_BUS_NAME
from .errors import PortalErrorContext, PortalInvalidState, PortalTransportError
from .types import BusType, ClientConfig

logger = logging.getLogger(__name__)

DBUS_DAEMON_NAME = "org.freedesktop.DBus"
DBUS_DAEMON_PATH = "/org/freedesktop/DBus"


@dataclass(frozen=True, slots=True)
class BusMessage:
    """A method reply or a signal, detached from the transport."""

    path: Optional[str] = None
    interface: Optional[str] = None
    member: Optional[str] = None
    sender: Optional[str] = None
    signature: str = ""
    body: Sequence[Any] = ()
    unix_fds: Sequence[int] = ()


def close_fds(fds: Iterable[Optional[int]], log: Optional[logging.Logger] = None) -> None:
    """Close descriptors that will never be handed to a caller."""
    for fd in fds:
        if fd is None:
            continue
        try:
            os.close(fd)
        except OSError as exc:
            (log or logger).debug("Closing fd %s failed: %s", fd, exc)


@dataclass(frozen=True, slots=True)
class SignalMatch:
    """Filter for signal subscriptions. None means "any"."""

    interface: str
    member: str
    path: Optional[str] = None
    sender: Optional[str] = PORTAL_BUS_NAME

    def matches(self, msg: BusMessage, *, sender_owner: Optional[str] = None) -> bool:
        if msg.interface != self.interface or msg.member != self.member:
            return False
        if self.path is not None and msg.path != self.path:
            return False
        if self.sender is None or msg.sender is None:
            return True
        if msg.sender == self.sender:
            return True
        # Unknown owner of a well-known name: accept rather than drop.
        if sender_owner is None:
            return True
        return msg.sender == sender_owner


SignalCallback = Callable[[BusMessage], None]


@dataclass(slots=True)
class _Subscription:
    subscription_id: int
    match: SignalMatch
    callback: SignalCallback
    error_types: set[type] = field(default_factory=set)


class Bus(ABC):
    """
    Transport seam used by every other component.

    Subclasses provide the call primitives; the subscription table and signal
    dispatch live here so fakes and the real bus behave identically.
    """

    def __init__(self) -> None:
        self._subscriptions: dict[int, _Subscription] = {}
        self._next_subscription_id = 1
        self._sub_lock = threading.Lock()

    @property
    @abstractmethod
    def unique_name(self) -> Optional[str]:
        """Unique connection name assigned by the bus daemon."""

    async def connect(self) -> "Bus":
        return self

    async def disconnect(self) -> None:
        return None

    @abstractmethod
    async def call(
        self,
        *,
        path: str,
        interface: str,
        member: str,
        signature: str = "",
        body: Sequence[Any] = (),
        destination: str = PORTAL_BUS_NAME,
    ) -> BusMessage:
        """Issue a method call and return its reply; raise PortalTransportError."""

    @abstractmethod
    def call_no_reply(
        self,
        *,
        path: str,
        interface: str,
        member: str,
        signature: str = "",
        body: Sequence[Any] = (),
        destination: str = PORTAL_BUS_NAME,
    ) -> None:
        """Fire-and-forget call. Never raises for transport errors."""

    def sender_owner(self, name: str) -> Optional[str]:
        """Unique name owning a well-known name, if known."""
        del name
        return None

    def subscribe(self, match: SignalMatch, callback: SignalCallback) -> int:
        with self._sub_lock:
            subscription_id = self._next_subscription_id
            self._next_subscription_id += 1
            self._subscriptions[subscription_id] = _Subscription(
                subscription_id=subscription_id, match=match, callback=callback
            )
        logger.debug(
            "Subscribed id=%s to %s.%s path=%s",
            subscription_id,
            match.interface,
            match.member,
            match.path,
        )
        return subscription_id

    def unsubscribe(self, subscription_id: int) -> bool:
        with self._sub_lock:
            removed = self._subscriptions.pop(subscription_id, None)
        if removed is None:
            logger.warning("Unsubscribe of unknown subscription id=%s", subscription_id)
            return False
        logger.debug("Unsubscribed id=%s", subscription_id)
        return True

    def subscription_count(self) -> int:
        with self._sub_lock:
            return len(self._subscriptions)

    def dispatch_signal(self, msg: BusMessage) -> int:
        """Deliver a signal to every matching subscription; return the count."""
        with self._sub_lock:
            subscriptions = list(self._subscriptions.values())
        delivered = 0
        for sub in subscriptions:
            owner = self.sender_owner(sub.match.sender) if sub.match.sender else None
            if not sub.match.matches(msg, sender_owner=owner):
                continue
            with self._sub_lock:
                if sub.subscription_id not in self._subscriptions:
                    # Removed by an earlier callback in this dispatch round.
                    continue
            delivered += 1
            try:
                sub.callback(msg)
            except Exception as exc:  # noqa: BLE001
                exc_type = type(exc)
                if exc_type not in sub.error_types:
                    sub.error_types.add(exc_type)
                    logger.warning(
                        "Signal callback for %s.%s failed: %s",
                        msg.interface,
                        msg.member,
                        exc_type.__name__,
                        exc_info=True,
                    )
        return delivered


class DbusFastBus(Bus):
    """
    Bus facade backed by a dbus-fast asyncio MessageBus.

    Typical usage:
        bus = DbusFastBus(ClientConfig())
        await bus.connect()
        reply = await bus.call(path=..., interface=..., member=..., signature="a{sv}", body=[{}])
    """

    def __init__(
        self,
        config: Optional[ClientConfig] = None,
        *,
        message_bus: Optional[MessageBus] = None,
    ) -> None:
        super().__init__()
        self.cfg = config or ClientConfig()
        self._bus: Optional[MessageBus] = message_bus
        self._owners: dict[str, str] = {}
        self._background: set[asyncio.Task[Any]] = set()
        self._handler_installed = False
        if message_bus is not None:
            self._install_handler()

    @property
    def unique_name(self) -> Optional[str]:
        if self._bus is None:
            return None
        return self._bus.unique_name

    @property
    def connected(self) -> bool:
        return self._bus is not None and bool(getattr(self._bus, "connected", True))

    async def connect(self) -> "DbusFastBus":
        if self._bus is not None:
            return self
        bus_type = DbusBusType.SYSTEM if self.cfg.bus_type is BusType.SYSTEM else DbusBusType.SESSION
        logger.info("Connecting to the %s bus", self.cfg.bus_address or bus_type.name.lower())
        try:
            self._bus = await MessageBus(
                bus_address=self.cfg.bus_address,
                bus_type=bus_type,
                negotiate_unix_fd=self.cfg.negotiate_unix_fd,
            ).connect()
        except (DBusError, OSError, EOFError, ValueError) as exc:
            self._bus = None
            raise PortalTransportError(
                f"Failed to connect to the message bus: {exc}",
                context=PortalErrorContext(phase="connect"),
                cause=exc,
            ) from exc
        self._install_handler()
        await self._resolve_owner(PORTAL_BUS_NAME)
        logger.info("Connected as %s", self._bus.unique_name)
        return self

    async def disconnect(self) -> None:
        """Disconnect the bus. Safe to call multiple times."""
        bus = self._bus
        if bus is None:
            return
        if self._handler_installed:
            bus.remove_message_handler(self._handle_message)
            self._handler_installed = False
        self._bus = None
        self._owners.clear()
        bus.disconnect()
        with contextlib.suppress(Exception):
            await bus.wait_for_disconnect()
        logger.info("Disconnected from the message bus")

    def sender_owner(self, name: str) -> Optional[str]:
        return self._owners.get(name)

    def _install_handler(self) -> None:
        if self._bus is None or self._handler_installed:
            return
        self._bus.add_message_handler(self._handle_message)
        self._handler_installed = True

    def _require_bus(self) -> MessageBus:
        if self._bus is None:
            raise PortalInvalidState("Bus is not connected (call connect() successfully first).")
        return self._bus

    async def _resolve_owner(self, name: str) -> None:
        try:
            reply = await self.call(
                path=DBUS_DAEMON_PATH,
                interface=DBUS_DAEMON_NAME,
                member="GetNameOwner",
                signature="s",
                body=[name],
                destination=DBUS_DAEMON_NAME,
            )
        except PortalTransportError as exc:
            logger.debug("Could not resolve owner of %s: %s", name, exc)
            return
        if reply.body and isinstance(reply.body[0], str):
            self._owners[name] = reply.body[0]

    async def call(
        self,
        *,
        path: str,
        interface: str,
        member: str,
        signature: str = "",
        body: Sequence[Any] = (),
        destination: str = PORTAL_BUS_NAME,
    ) -> BusMessage:
        bus = self._require_bus()
        msg = Message(
            destination=destination,
            path=path,
            interface=interface,
            member=member,
            signature=signature,
            body=list(body),
        )
        if self.cfg.wire_log and logger.isEnabledFor(logging.DEBUG):
            logger.debug("TX %s.%s path=%s body=%r", interface, member, path, msg.body)
        context = PortalErrorContext(phase="call", detail=f"{interface}.{member}", request_path=path)
        try:
            reply = await bus.call(msg)
        except DBusError as exc:
            raise PortalTransportError(
                f"{member} failed: {exc}", error_name=exc.type, context=context, cause=exc
            ) from exc
        except (OSError, EOFError) as exc:
            raise PortalTransportError(
                f"{member} failed: connection lost ({exc})", context=context, cause=exc
            ) from exc
        if reply is None:
            raise PortalTransportError(f"{member} returned no reply", context=context)
        if reply.message_type == MessageType.ERROR:
            text = reply.body[0] if reply.body and isinstance(reply.body[0], str) else None
            raise PortalTransportError(
                f"{member} failed: {reply.error_name}" + (f": {text}" if text else ""),
                error_name=reply.error_name,
                context=context,
            )
        result = _to_bus_message(reply)
        if self.cfg.wire_log and logger.isEnabledFor(logging.DEBUG):
            logger.debug("RX reply %s.%s body=%r", interface, member, result.body)
        return result

    def call_no_reply(
        self,
        *,
        path: str,
        interface: str,
        member: str,
        signature: str = "",
        body: Sequence[Any] = (),
        destination: str = PORTAL_BUS_NAME,
    ) -> None:
        bus = self._bus
        if bus is None:
            logger.debug("Dropping %s.%s on %s: bus not connected", interface, member, path)
            return
        msg = Message(
            destination=destination,
            path=path,
            interface=interface,
            member=member,
            signature=signature,
            body=list(body),
            flags=MessageFlag.NO_REPLY_EXPECTED,
        )
        task = asyncio.get_running_loop().create_task(bus.call(msg))
        self._background.add(task)
        task.add_done_callback(self._discard_background)

    def _discard_background(self, task: asyncio.Task[Any]) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.debug("Ignoring failure of fire-and-forget call: %s", exc)

    def _handle_message(self, msg: Message) -> None:
        if msg.message_type != MessageType.SIGNAL:
            return None
        bus_msg = _to_bus_message(msg)
        if self.cfg.wire_log and logger.isEnabledFor(logging.DEBUG):
            logger.debug(
                "RX signal %s.%s path=%s sender=%s body=%r",
                bus_msg.interface,
                bus_msg.member,
                bus_msg.path,
                bus_msg.sender,
                bus_msg.body,
            )
        if not self.dispatch_signal(bus_msg) and bus_msg.unix_fds:
            logger.debug(
                "Closing %d fd(s) of unclaimed %s signal on %s",
                len(bus_msg.unix_fds),
                bus_msg.member,
                bus_msg.path,
            )
            close_fds(bus_msg.unix_fds)
        return None


def _to_bus_message(msg: Message) -> BusMessage:
    return BusMessage(
        path=msg.path,
        interface=msg.interface,
        member=msg.member,
        sender=msg.sender,
        signature=msg.signature or "",
        body=tuple(msg.body or ()),
        unix_fds=tuple(msg.unix_fds or ()),
    )


__all__ = ["Bus", "BusMessage", "DbusFastBus", "SignalCallback", "SignalMatch", "close_fds"]
