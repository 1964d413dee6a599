from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Optional, Sequence

from usbportal_lib.bus import Bus, BusMessage
from usbportal_lib.const import (
    PORTAL_BUS_NAME,
    PORTAL_OBJECT_PATH,
    REQUEST_INTERFACE,
    USB_INTERFACE,
)
from usbportal_lib.tokens import request_path, sender_from_unique_name, session_path


@dataclass
class CallRecord:
    path: str
    interface: str
    member: str
    signature: str
    body: list[Any]


async def settle(rounds: int = 10) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


def _token_from_options(options: Any, key: str) -> Optional[str]:
    if not isinstance(options, dict):
        return None
    value = options.get(key)
    return getattr(value, "value", value)


class FakeBus(Bus):
    """
    In-memory bus.

    Replies are scripted per member with reply()/fail()/hold(); unscripted
    AcquireDevices and CreateSession calls echo the path the broker would
    derive from the handle token, everything else returns an empty body.
    """

    def __init__(self, unique_name: Optional[str] = ":1.42") -> None:
        super().__init__()
        self._unique_name = unique_name
        self.calls: list[CallRecord] = []
        self.no_reply_calls: list[CallRecord] = []
        self.unsubscribed: list[int] = []
        self._scripts: dict[str, list[Any]] = {}

    @property
    def unique_name(self) -> Optional[str]:
        return self._unique_name

    # --- scripting ---

    def reply(self, member: str, body: Sequence[Any] = (), *, unix_fds: Sequence[int] = ()) -> None:
        self._scripts.setdefault(member, []).append(BusMessage(body=tuple(body), unix_fds=tuple(unix_fds)))

    def fail(self, member: str, exc: BaseException) -> None:
        self._scripts.setdefault(member, []).append(exc)

    def hold(self, member: str) -> asyncio.Future:
        future = asyncio.get_running_loop().create_future()
        self._scripts.setdefault(member, []).append(future)
        return future

    def emit(
        self,
        interface: str,
        member: str,
        path: str,
        body: Sequence[Any] = (),
        *,
        sender: Optional[str] = PORTAL_BUS_NAME,
        unix_fds: Sequence[int] = (),
    ) -> int:
        return self.dispatch_signal(
            BusMessage(
                path=path,
                interface=interface,
                member=member,
                sender=sender,
                body=tuple(body),
                unix_fds=tuple(unix_fds),
            )
        )

    def emit_response(
        self,
        path: str,
        status: int,
        results: Sequence[Any] = (),
        *,
        unix_fds: Sequence[int] = (),
    ) -> int:
        return self.emit(REQUEST_INTERFACE, "Response", path, (status, list(results)), unix_fds=unix_fds)

    def emit_device_events(self, session: str, events: Sequence[Any]) -> int:
        return self.emit(USB_INTERFACE, "DeviceEvents", PORTAL_OBJECT_PATH, (session, list(events)))

    def calls_to(self, member: str) -> list[CallRecord]:
        return [call for call in self.calls if call.member == member]

    def closes(self, interface: Optional[str] = None) -> list[CallRecord]:
        return [
            call
            for call in self.no_reply_calls
            if call.member == "Close" and (interface is None or call.interface == interface)
        ]

    # --- Bus ---

    def unsubscribe(self, subscription_id: int) -> bool:
        self.unsubscribed.append(subscription_id)
        return super().unsubscribe(subscription_id)

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
        self.calls.append(CallRecord(path, interface, member, signature, list(body)))
        await asyncio.sleep(0)
        script = self._scripts.get(member)
        if script:
            item = script.pop(0)
            if isinstance(item, asyncio.Future):
                item = await item
            if isinstance(item, BaseException):
                raise item
            return item
        return self._default_reply(member, list(body))

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
        self.no_reply_calls.append(CallRecord(path, interface, member, signature, list(body)))

    def _default_reply(self, member: str, body: list[Any]) -> BusMessage:
        sender = sender_from_unique_name(self._unique_name)
        if member == "AcquireDevices" and len(body) == 3:
            token = _token_from_options(body[2], "handle_token")
            if token:
                return BusMessage(body=(request_path(sender, token),))
        if member == "CreateSession" and body:
            token = _token_from_options(body[0], "session_handle_token")
            if token:
                return BusMessage(body=(session_path(sender, token),))
        return BusMessage(body=())


__all__ = ["CallRecord", "FakeBus", "settle"]
