"""Payload builders and decoders for the USB portal wire contract."""

from __future__ import annotations

from typing import Any, Iterable, Mapping, Optional, Sequence

from dbus_fast import Variant

from .bus import BusMessage
from .const import RESPONSE_CANCELLED, RESPONSE_SUCCESS
from .errors import (
    PortalCancelledError,
    PortalErrorContext,
    PortalOperationFailed,
    PortalProtocolError,
)
from .events import DeviceEvent, DeviceEventBatch
from .types import AcquiredDevice, DeviceSpec, UsbDeviceInfo


def unwrap_variant(value: Any) -> Any:
    """Recursively replace Variants with their plain Python values."""
    if isinstance(value, Variant):
        return unwrap_variant(value.value)
    if isinstance(value, Mapping):
        return {key: unwrap_variant(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [unwrap_variant(item) for item in value]
    return value


def _lookup(props: Mapping[str, Any], key: str, *, expected: type | tuple[type, ...]) -> Any:
    value = props.get(key)
    if isinstance(value, Variant):
        value = value.value
    if isinstance(value, bool) and expected is int:
        return None
    return value if isinstance(value, expected) else None


def resolve_fd(value: Optional[int], unix_fds: Sequence[int]) -> Optional[int]:
    """
    Map an `h` value to a descriptor.

    An `h` is an index into the message's unix fds. An index with no matching
    descriptor (fds not negotiated, or out of range) resolves to None.
    """
    if value is None:
        return None
    if 0 <= value < len(unix_fds):
        return unix_fds[value]
    return None


# -------------------------
# Builders
# -------------------------

def session_options(token: str) -> dict[str, Variant]:
    return {"session_handle_token": Variant("s", token)}


def request_options(token: str) -> dict[str, Variant]:
    return {"handle_token": Variant("s", token)}


def encode_device_specs(devices: Iterable[DeviceSpec]) -> list[list[Any]]:
    """Serialize specs as a(sa{sv}) preserving order."""
    encoded: list[list[Any]] = []
    for device in devices:
        encoded.append([device.device_id, {"writable": Variant("b", bool(device.writable))}])
    return encoded


def decode_device_specs(payload: Iterable[Sequence[Any]]) -> list[DeviceSpec]:
    """Inverse of encode_device_specs()."""
    specs: list[DeviceSpec] = []
    for entry in payload:
        device_id, props = _split_entry(entry, what="device spec")
        writable = _lookup(props, "writable", expected=bool)
        specs.append(DeviceSpec(device_id=device_id, writable=bool(writable)))
    return specs


def build_acquire_devices_body(
    identity_handle: str,
    devices: Iterable[DeviceSpec],
    token: str,
) -> list[Any]:
    return [identity_handle, encode_device_specs(devices), request_options(token)]


# -------------------------
# Decoders
# -------------------------

def _split_entry(entry: Any, *, what: str) -> tuple[str, Mapping[str, Any]]:
    if not isinstance(entry, (list, tuple)) or len(entry) != 2:
        raise PortalProtocolError(f"Malformed {what} entry: {entry!r}")
    device_id, props = entry
    if not isinstance(device_id, str) or not isinstance(props, Mapping):
        raise PortalProtocolError(f"Malformed {what} entry: {entry!r}")
    return device_id, props


def decode_device_result(entry: Any, unix_fds: Sequence[int] = ()) -> AcquiredDevice:
    """Decode one (s a{sv}) result carrying success / fd / error."""
    device_id, props = _split_entry(entry, what="device result")
    success = _lookup(props, "success", expected=bool)
    fd = resolve_fd(_lookup(props, "fd", expected=int), unix_fds)
    if success and fd is not None:
        return AcquiredDevice.granted(device_id, fd)
    return AcquiredDevice.denied(device_id, _lookup(props, "error", expected=str))


def decode_acquire_response(msg: BusMessage) -> tuple[AcquiredDevice, ...]:
    """
    Interpret a Request.Response for AcquireDevices.

    Status 0 keeps only entries reporting success with a descriptor; entries
    reporting failure are dropped here and only surface through the finish loop.
    """
    context = PortalErrorContext(phase="acquire", detail="Response", request_path=msg.path)
    if len(msg.body) < 1 or isinstance(msg.body[0], bool) or not isinstance(msg.body[0], int):
        raise PortalProtocolError("Response is missing its status code", context=context)
    status = msg.body[0]
    if status == RESPONSE_CANCELLED:
        raise PortalCancelledError("Acquire USB devices canceled", context=context)
    if status != RESPONSE_SUCCESS:
        raise PortalOperationFailed("Acquire USB devices failed", status=status, context=context)

    results = msg.body[1] if len(msg.body) > 1 else []
    if not isinstance(results, (list, tuple)):
        raise PortalProtocolError("Response results must be an array", context=context)
    granted: list[AcquiredDevice] = []
    for entry in results:
        device = decode_device_result(entry, msg.unix_fds)
        if device.success:
            granted.append(device)
    return tuple(granted)


def decode_finish_reply(msg: BusMessage) -> tuple[AcquiredDevice, bool]:
    """Decode one AcquireDevicesFinish reply: ((s a{sv}) b)."""
    if len(msg.body) != 2 or not isinstance(msg.body[1], bool):
        raise PortalProtocolError(
            f"Malformed AcquireDevicesFinish reply: {list(msg.body)!r}",
            context=PortalErrorContext(phase="finish"),
        )
    return decode_device_result(msg.body[0], msg.unix_fds), msg.body[1]


def decode_enumerated_devices(msg: BusMessage) -> list[UsbDeviceInfo]:
    if len(msg.body) != 1 or not isinstance(msg.body[0], (list, tuple)):
        raise PortalProtocolError(
            "Malformed EnumerateDevices reply",
            context=PortalErrorContext(phase="enumerate"),
        )
    devices: list[UsbDeviceInfo] = []
    for entry in msg.body[0]:
        device_id, props = _split_entry(entry, what="enumerated device")
        devices.append(UsbDeviceInfo(device_id=device_id, properties=unwrap_variant(props)))
    return devices


def decode_session_path(msg: BusMessage) -> str:
    if len(msg.body) != 1 or not isinstance(msg.body[0], str) or not msg.body[0]:
        raise PortalProtocolError(
            "Malformed CreateSession reply",
            context=PortalErrorContext(phase="create_session"),
        )
    return msg.body[0]


def decode_request_path(msg: BusMessage) -> Optional[str]:
    """Return the request handle acknowledged by the broker, if any."""
    if msg.body and isinstance(msg.body[0], str) and msg.body[0]:
        return msg.body[0]
    return None


def decode_device_events(msg: BusMessage) -> DeviceEventBatch:
    """Decode DeviceEvents: (o a(ssa{sv}))."""
    if len(msg.body) != 2 or not isinstance(msg.body[0], str) or not isinstance(msg.body[1], (list, tuple)):
        raise PortalProtocolError("Malformed DeviceEvents signal", context=PortalErrorContext(phase="events"))
    events: list[DeviceEvent] = []
    for entry in msg.body[1]:
        if not isinstance(entry, (list, tuple)) or len(entry) != 3:
            raise PortalProtocolError(f"Malformed device event: {entry!r}")
        device_id, kind, props = entry
        if not isinstance(device_id, str) or not isinstance(kind, str) or not isinstance(props, Mapping):
            raise PortalProtocolError(f"Malformed device event: {entry!r}")
        events.append(DeviceEvent(device_id=device_id, kind=kind, properties=unwrap_variant(props)))
    return DeviceEventBatch(session_path=msg.body[0], events=tuple(events))


__all__ = [
    "build_acquire_devices_body",
    "decode_acquire_response",
    "decode_device_events",
    "decode_device_result",
    "decode_device_specs",
    "decode_enumerated_devices",
    "decode_finish_reply",
    "decode_request_path",
    "decode_session_path",
    "encode_device_specs",
    "request_options",
    "resolve_fd",
    "session_options",
    "unwrap_variant",
]
