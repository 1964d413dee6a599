"""Public types for the USB portal client."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional


class BusType(str, Enum):
    """Which message bus the client connects to."""

    SESSION = "session"
    SYSTEM = "system"


@dataclass(frozen=True, slots=True)
class ClientConfig:
    """
    Immutable client configuration.

    This config is intended to be provided once at construction time and
    treated as read-only thereafter. Use config.client_config_from_mapping()
    to build one from untrusted input.
    """

    bus_type: BusType = BusType.SESSION
    bus_address: Optional[str] = None
    negotiate_unix_fd: bool = True
    response_timeout_s: Optional[float] = None
    event_queue_size: int = 256
    logger_name: Optional[str] = None
    wire_log: bool = False


@dataclass(frozen=True, slots=True)
class DeviceSpec:
    """
    A request to acquire one device.

    Immutable once submitted; copy with dataclasses.replace().
    """

    device_id: str
    writable: bool = False


@dataclass(frozen=True, slots=True)
class AcquiredDevice:
    """
    Outcome for one requested device.

    Exactly one of fd / error is meaningful: a granted device carries the file
    descriptor handed over by the broker, a denied one carries the broker's
    error message (possibly None when the broker gave none).
    """

    device_id: str
    fd: Optional[int] = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.fd is not None

    @classmethod
    def granted(cls, device_id: str, fd: int) -> "AcquiredDevice":
        return cls(device_id=device_id, fd=fd, error=None)

    @classmethod
    def denied(cls, device_id: str, error: Optional[str]) -> "AcquiredDevice":
        return cls(device_id=device_id, fd=None, error=error)


@dataclass(frozen=True, slots=True)
class AcquireRequest:
    """
    Opaque handle for an acquisition that the broker accepted.

    Pass it (or its handle string) to the finish loop to collect the devices.
    `granted` holds the successful entries reported by the Response signal.
    """

    handle: str
    granted: tuple[AcquiredDevice, ...] = ()


@dataclass(frozen=True, slots=True)
class UsbDeviceInfo:
    """
    One enumerated device.
    """

    device_id: str
    properties: Mapping[str, Any] = field(default_factory=dict)

    @property
    def writable(self) -> Optional[bool]:
        value = self.properties.get("writable")
        return value if isinstance(value, bool) else None

    @property
    def readable(self) -> Optional[bool]:
        value = self.properties.get("readable")
        return value if isinstance(value, bool) else None

    @property
    def parent(self) -> Optional[str]:
        value = self.properties.get("parent")
        return value if isinstance(value, str) else None


__all__ = [
    "AcquireRequest",
    "AcquiredDevice",
    "BusType",
    "ClientConfig",
    "DeviceSpec",
    "UsbDeviceInfo",
]
