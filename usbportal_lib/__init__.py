"""Client library for the USB device-access portal."""

from __future__ import annotations

from .acquire import AcquireState, DeviceAcquisition
from .bus import Bus, BusMessage, DbusFastBus, SignalMatch
from .cancellable import Cancellable
from .client import Result, UsbPortalClient
from .config import client_config_from_mapping, client_config_to_mapping
from .errors import (
    PortalCancelledError,
    PortalErrorContext,
    PortalInvalidArgument,
    PortalInvalidState,
    PortalOperationFailed,
    PortalProtocolError,
    PortalTimeoutError,
    PortalTransportError,
    UsbPortalError,
)
from .events import DeviceEvent, DeviceEventBatch
from .parent import CallbackParent, Parent, StaticParent
from .session import PortalSession, SessionState, UsbSession
from .tokens import random_token, sequential_tokens
from .types import (
    AcquiredDevice,
    AcquireRequest,
    BusType,
    ClientConfig,
    DeviceSpec,
    UsbDeviceInfo,
)

__all__ = [
    "AcquireRequest",
    "AcquireState",
    "AcquiredDevice",
    "Bus",
    "BusMessage",
    "BusType",
    "CallbackParent",
    "Cancellable",
    "ClientConfig",
    "DbusFastBus",
    "DeviceAcquisition",
    "DeviceEvent",
    "DeviceEventBatch",
    "DeviceSpec",
    "Parent",
    "PortalCancelledError",
    "PortalErrorContext",
    "PortalInvalidArgument",
    "PortalInvalidState",
    "PortalOperationFailed",
    "PortalProtocolError",
    "PortalSession",
    "PortalTimeoutError",
    "PortalTransportError",
    "Result",
    "SessionState",
    "SignalMatch",
    "StaticParent",
    "UsbDeviceInfo",
    "UsbPortalClient",
    "UsbPortalError",
    "UsbSession",
    "client_config_from_mapping",
    "client_config_to_mapping",
    "random_token",
    "sequential_tokens",
]
