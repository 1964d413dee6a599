"""
usbportal_lib/acquire.py

AcquireDevices flow:
    AWAITING_IDENTITY -> CALLING -> AWAITING_RESPONSE -> {SUCCEEDED, CANCELLED, FAILED}

The flow returns the request handle plus the devices the Response reported as
granted; the authoritative per-device list comes from the finish loop.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Optional, Sequence

from .bus import Bus, BusMessage, SignalMatch
from .cancellable import Cancellable
from .codec import build_acquire_devices_body, decode_acquire_response, decode_request_path
from .const import REQUEST_INTERFACE, SIGNATURE_ACQUIRE_DEVICES
from .errors import (
    PortalCancelledError,
    PortalErrorContext,
    PortalInvalidArgument,
    PortalInvalidState,
)
from .parent import Parent
from .pending import PendingRequest, RequestCorrelator
from .tokens import TokenGenerator, random_token, request_path, sender_from_unique_name
from .types import AcquiredDevice, AcquireRequest, DeviceSpec

logger = logging.getLogger(__name__)


class AcquireState(str, Enum):
    """Lifecycle of one AcquireDevices operation."""

    AWAITING_IDENTITY = "awaiting_identity"
    CALLING = "calling"
    AWAITING_RESPONSE = "awaiting_response"
    SUCCEEDED = "succeeded"
    CANCELLED = "cancelled"
    FAILED = "failed"


def validate_device_specs(devices: Sequence[DeviceSpec]) -> tuple[DeviceSpec, ...]:
    if isinstance(devices, (str, bytes)) or not isinstance(devices, Sequence):
        raise PortalInvalidArgument("devices must be a sequence of DeviceSpec.")
    specs = tuple(devices)
    if not specs:
        raise PortalInvalidArgument("At least one device must be requested.")
    for spec in specs:
        if not isinstance(spec, DeviceSpec):
            raise PortalInvalidArgument(f"Expected DeviceSpec, got {type(spec).__name__}.")
        if not spec.device_id:
            raise PortalInvalidArgument("DeviceSpec.device_id must be a non-empty string.")
    return specs


class DeviceAcquisition:
    """
    One AcquireDevices operation.

    Typical usage:
        flow = DeviceAcquisition(bus, correlator, devices=[DeviceSpec("A", writable=True)])
        request = await flow.run()
    """

    def __init__(
        self,
        bus: Bus,
        correlator: RequestCorrelator,
        *,
        devices: Sequence[DeviceSpec],
        parent: Optional[Parent] = None,
        cancellable: Optional[Cancellable] = None,
        token_generator: TokenGenerator = random_token,
        response_timeout_s: Optional[float] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._bus = bus
        self._correlator = correlator
        self.devices = validate_device_specs(devices)
        self._parent = parent
        self._cancellable = cancellable
        self._token_generator = token_generator
        self._response_timeout_s = response_timeout_s
        self._log = logger or logging.getLogger(__name__)

        self.state = AcquireState.AWAITING_IDENTITY
        self.request_path: Optional[str] = None
        self._started = False

    def _set_state(self, state: AcquireState) -> None:
        if state is self.state:
            return
        self._log.debug("AcquireDevices %s -> %s", self.state.value, state.value)
        self.state = state

    def _check_cancelled(self) -> None:
        if self._cancellable is not None and self._cancellable.is_cancelled:
            raise PortalCancelledError(
                "Acquire USB devices canceled before the call was issued",
                context=PortalErrorContext(phase="acquire", request_path=self.request_path),
            )

    async def run(self) -> AcquireRequest:
        if self._started:
            raise PortalInvalidState("DeviceAcquisition.run() may only be awaited once.")
        self._started = True
        try:
            granted = await self._run()
        except (PortalCancelledError, asyncio.CancelledError):
            self._set_state(AcquireState.CANCELLED)
            raise
        except BaseException:
            self._set_state(AcquireState.FAILED)
            raise
        self._set_state(AcquireState.SUCCEEDED)
        assert self.request_path is not None
        return AcquireRequest(handle=self.request_path, granted=granted)

    async def _run(self) -> tuple[AcquiredDevice, ...]:
        self._check_cancelled()
        identity = ""
        if self._parent is not None:
            identity = await self._parent.export()
        try:
            self._check_cancelled()
            self._set_state(AcquireState.CALLING)
            pending = self._begin(identity)
            self._set_state(AcquireState.AWAITING_RESPONSE)
            return await self._correlator.wait(pending, timeout_s=self._response_timeout_s)
        finally:
            if self._parent is not None:
                self._parent.unexport()

    def _begin(self, identity: str) -> PendingRequest[tuple[AcquiredDevice, ...]]:
        try:
            sender = sender_from_unique_name(self._bus.unique_name)
        except ValueError as exc:
            raise PortalInvalidState("Bus has no unique name (not connected).", cause=exc) from exc
        token = self._token_generator()
        path = request_path(sender, token)
        self.request_path = path

        pending = self._correlator.begin(
            path,
            operation="AcquireDevices",
            match=SignalMatch(interface=REQUEST_INTERFACE, member="Response", path=path),
            decode=decode_acquire_response,
            cancellable=self._cancellable,
        )
        self._log.debug("AcquireDevices for %s on %s", [d.device_id for d in self.devices], path)
        self._correlator.submit(
            pending,
            member="AcquireDevices",
            signature=SIGNATURE_ACQUIRE_DEVICES,
            body=build_acquire_devices_body(identity, self.devices, token),
            on_reply=self._on_reply,
        )
        return pending

    def _on_reply(self, pending: PendingRequest[Any], reply: BusMessage) -> None:
        returned = decode_request_path(reply)
        if returned is None or returned == pending.path:
            return
        if pending.terminal:
            # Close went to the predicted path; the broker's request is elsewhere.
            self._log.debug("AcquireDevices reply for aborted request; closing orphan request %s", returned)
            self._bus.call_no_reply(path=returned, interface=REQUEST_INTERFACE, member="Close")
            return
        self._correlator.rebind(pending, returned)
        self.request_path = returned


__all__ = ["AcquireState", "DeviceAcquisition", "validate_device_specs"]
