"""
Stable client facade for the USB portal.

This wraps the bus facade, the request correlator and the operation flows with:
- async, exception-raising operations (async_* methods)
- Result-returning twins for the blocking-style calls
- normalized typed errors
- ownership of live USB sessions
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from dataclasses import dataclass
from typing import Generic, Iterable, Optional, Sequence, TypeVar, Union

from .acquire import DeviceAcquisition
from .bus import Bus, DbusFastBus
from .cancellable import Cancellable
from .codec import decode_enumerated_devices
from .const import (
    PORTAL_OBJECT_PATH,
    SIGNATURE_OPTIONS,
    SIGNATURE_RELEASE_DEVICES,
    USB_INTERFACE,
)
from .errors import (
    PortalErrorContext,
    PortalInvalidArgument,
    PortalInvalidState,
    PortalTimeoutError,
    PortalTransportError,
    UsbPortalError,
)
from .finish import finish_acquire_devices
from .parent import Parent
from .pending import PendingRequest, RequestCorrelator
from .session import UsbSession, create_usb_session
from .tokens import TokenGenerator, random_token, sender_from_unique_name
from .types import AcquiredDevice, AcquireRequest, ClientConfig, DeviceSpec, UsbDeviceInfo

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class Result(Generic[T]):
    ok: bool
    data: Optional[T] = None
    error: Optional[BaseException] = None

    @classmethod
    def success(cls, value: T) -> "Result[T]":
        return cls(ok=True, data=value, error=None)

    @classmethod
    def failure(cls, error: BaseException) -> "Result[T]":
        return cls(ok=False, data=None, error=error)

    def unwrap(self) -> T:
        if self.ok:
            return self.data  # type: ignore[return-value]
        if self.error is not None:
            raise self.error
        raise UsbPortalError("Unknown error.")


__all__ = ["Result", "UsbPortalClient"]


_CLIENT_EXCEPTIONS = (
    UsbPortalError,
    OSError,
    EOFError,
    TimeoutError,
    asyncio.TimeoutError,
    ValueError,
    TypeError,
    KeyError,
    RuntimeError,
)

RequestHandle = Union[AcquireRequest, str]


def _iter_causes(exc: BaseException) -> Iterable[BaseException]:
    current: Optional[BaseException] = exc
    seen: set[int] = set()
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__ or current.__context__


class UsbPortalClient:
    """
    Stable client API for consumers of the USB portal.

    Typical usage:
        client = UsbPortalClient()
        await client.async_connect()
        devices = await client.async_enumerate_devices()
        acquired = await client.async_acquire_and_finish([DeviceSpec(devices[0].device_id)])
        await client.async_release_devices([d.device_id for d in acquired if d.success])
        await client.async_disconnect()
    """

    def __init__(
        self,
        config: ClientConfig | None = None,
        *,
        bus: Optional[Bus] = None,
        token_generator: Optional[TokenGenerator] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.cfg = config or ClientConfig()
        self._log = logger or logging.getLogger(__name__)
        if logger is None and self.cfg.logger_name:
            self._log = logging.getLogger(self.cfg.logger_name)
        self._owns_bus = bus is None
        self._bus: Bus = bus if bus is not None else DbusFastBus(self.cfg)
        self._token_generator: TokenGenerator = token_generator or random_token
        self._correlator = RequestCorrelator(self._bus, logger=self._log)
        self._sessions: weakref.WeakSet[UsbSession] = weakref.WeakSet()
        self._finished_handles: set[str] = set()
        self._finishing_handles: set[str] = set()
        self._connected = False

    @property
    def bus(self) -> Bus:
        return self._bus

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def sender(self) -> str:
        """Our unique bus name in request-path form ("1_42")."""
        try:
            return sender_from_unique_name(self._bus.unique_name)
        except ValueError as exc:
            raise PortalInvalidState("Client is not connected.", cause=exc) from exc

    def pending_count(self) -> int:
        return self._correlator.pending_count()

    def sessions(self) -> list[UsbSession]:
        return [session for session in self._sessions if not session.disposed]

    # --- connection lifecycle ---

    async def async_connect(self) -> None:
        """Connect to the message bus."""
        try:
            await self._bus.connect()
        except UsbPortalError:
            raise
        except _CLIENT_EXCEPTIONS as exc:
            raise self._normalize_error(exc, phase="connect") from exc
        self._connected = True

    async def async_disconnect(self) -> None:
        """Dispose live sessions, abort pending requests and disconnect."""
        for session in self.sessions():
            session.dispose()
        aborted = self._correlator.abort_all(self._disconnect_error)
        if aborted:
            self._log.debug("Aborted %d pending request(s) on disconnect", aborted)
        if self._owns_bus:
            await self._bus.disconnect()
        self._connected = False

    @staticmethod
    def _disconnect_error(pending: PendingRequest) -> UsbPortalError:
        return PortalTransportError(
            f"{pending.operation} aborted: client disconnected",
            context=PortalErrorContext(phase="disconnect", request_path=pending.path),
        )

    async def connect(self) -> Result[None]:
        try:
            await self.async_connect()
            return Result.success(None)
        except _CLIENT_EXCEPTIONS as exc:
            return Result.failure(self._normalize_error(exc, phase="connect"))

    async def disconnect(self) -> Result[None]:
        try:
            await self.async_disconnect()
            return Result.success(None)
        except _CLIENT_EXCEPTIONS as exc:
            return Result.failure(self._normalize_error(exc, phase="disconnect"))

    # --- sessions ---

    async def async_create_session(self, cancellable: Optional[Cancellable] = None) -> UsbSession:
        """Create a USB monitoring session."""
        usb = await create_usb_session(
            self._bus,
            self._correlator,
            cancellable=cancellable,
            token_generator=self._token_generator,
            response_timeout_s=self.cfg.response_timeout_s,
            event_queue_size=self.cfg.event_queue_size,
            logger=self._log,
        )
        self._sessions.add(usb)
        return usb

    # --- devices ---

    async def async_enumerate_devices(self) -> list[UsbDeviceInfo]:
        """Return the devices the broker is willing to expose to us."""
        reply = await self._bus.call(
            path=PORTAL_OBJECT_PATH,
            interface=USB_INTERFACE,
            member="EnumerateDevices",
            signature=SIGNATURE_OPTIONS,
            body=[{}],
        )
        return decode_enumerated_devices(reply)

    async def async_acquire_devices(
        self,
        devices: Sequence[DeviceSpec],
        parent: Optional[Parent] = None,
        cancellable: Optional[Cancellable] = None,
    ) -> AcquireRequest:
        """
        Ask the broker for access to `devices`.

        Resolves once the broker answered the request; collect the descriptors
        with async_finish_acquire_devices().
        """
        flow = DeviceAcquisition(
            self._bus,
            self._correlator,
            devices=devices,
            parent=parent,
            cancellable=cancellable,
            token_generator=self._token_generator,
            response_timeout_s=self.cfg.response_timeout_s,
            logger=self._log,
        )
        return await flow.run()

    async def async_finish_acquire_devices(self, request: RequestHandle) -> list[AcquiredDevice]:
        handle = request.handle if isinstance(request, AcquireRequest) else request
        if not isinstance(handle, str) or not handle:
            raise PortalInvalidArgument("request must be an AcquireRequest or a request handle.")
        if handle in self._finished_handles:
            raise PortalInvalidArgument(
                f"Acquisition {handle} was already finished.",
                context=PortalErrorContext(phase="finish", request_path=handle),
            )
        if handle in self._finishing_handles:
            raise PortalInvalidState(
                f"Acquisition {handle} is already being finished.",
                context=PortalErrorContext(phase="finish", request_path=handle),
            )
        self._finishing_handles.add(handle)
        try:
            devices = await finish_acquire_devices(self._bus, handle, logger=self._log)
        finally:
            self._finishing_handles.discard(handle)
        self._finished_handles.add(handle)
        return devices

    async def async_acquire_and_finish(
        self,
        devices: Sequence[DeviceSpec],
        parent: Optional[Parent] = None,
        cancellable: Optional[Cancellable] = None,
    ) -> list[AcquiredDevice]:
        request = await self.async_acquire_devices(devices, parent=parent, cancellable=cancellable)
        return await self.async_finish_acquire_devices(request)

    async def async_release_devices(self, device_ids: Sequence[str]) -> None:
        if isinstance(device_ids, str) or not isinstance(device_ids, Sequence):
            raise PortalInvalidArgument("device_ids must be a sequence of device id strings.")
        ids = list(device_ids)
        for device_id in ids:
            if not isinstance(device_id, str) or not device_id:
                raise PortalInvalidArgument("device ids must be non-empty strings.")
        await self._bus.call(
            path=PORTAL_OBJECT_PATH,
            interface=USB_INTERFACE,
            member="ReleaseDevices",
            signature=SIGNATURE_RELEASE_DEVICES,
            body=[ids],
        )

    # --- Result twins ---

    async def enumerate_devices(self) -> Result[list[UsbDeviceInfo]]:
        try:
            return Result.success(await self.async_enumerate_devices())
        except _CLIENT_EXCEPTIONS as exc:
            return Result.failure(self._normalize_error(exc, phase="enumerate"))

    async def finish_acquire_devices(self, request: RequestHandle) -> Result[list[AcquiredDevice]]:
        try:
            return Result.success(await self.async_finish_acquire_devices(request))
        except _CLIENT_EXCEPTIONS as exc:
            return Result.failure(self._normalize_error(exc, phase="finish"))

    async def release_devices(self, device_ids: Sequence[str]) -> Result[None]:
        try:
            await self.async_release_devices(device_ids)
            return Result.success(None)
        except _CLIENT_EXCEPTIONS as exc:
            return Result.failure(self._normalize_error(exc, phase="release"))

    # --- errors ---

    def _normalize_error(
        self,
        exc: BaseException,
        *,
        phase: Optional[str] = None,
        detail: Optional[str] = None,
    ) -> UsbPortalError:
        context = PortalErrorContext(phase=phase, detail=detail)

        for err in _iter_causes(exc):
            if isinstance(err, UsbPortalError):
                return err
            if isinstance(err, (TimeoutError, asyncio.TimeoutError)):
                return PortalTimeoutError(str(err) or "Portal operation timed out.", context=context, cause=err)
            if isinstance(err, (OSError, EOFError)):
                return PortalTransportError(str(err) or "Connection lost.", context=context, cause=err)
            if isinstance(err, (ValueError, TypeError)):
                return PortalInvalidArgument(str(err) or "Invalid argument.", context=context, cause=err)

        return UsbPortalError(str(exc) or "Portal operation failed.", context=context, cause=exc)
