"""
usbportal_lib/errors.py

Error taxonomy for the USB portal client.

Rules:
- Bus/connection failures surface as PortalTransportError, immediately.
- Cancellation (local or broker-reported) surfaces as PortalCancelledError.
- A non-zero, non-cancel Response status surfaces as PortalOperationFailed.
- Lifecycle-order violations are PortalInvalidState; the session back-reference
  case is diagnosed through logging and recorded, never raised to callers.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True, slots=True)
class PortalErrorContext:
    phase: Optional[str] = None
    detail: Optional[str] = None
    request_path: Optional[str] = None


class UsbPortalError(Exception):
    """Base exception for all portal client failures."""

    def __init__(
        self,
        message: str = "",
        *,
        context: Optional[PortalErrorContext] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message)
        self.context = context or PortalErrorContext()
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    @property
    def request_path(self) -> Optional[str]:
        return self.context.request_path


class PortalTransportError(UsbPortalError):
    """The bus call or connection failed."""

    def __init__(
        self,
        message: str = "",
        *,
        error_name: Optional[str] = None,
        context: Optional[PortalErrorContext] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message, context=context, cause=cause)
        self.error_name = error_name


class PortalCancelledError(UsbPortalError):
    """The operation was cancelled by the caller or by the broker."""


class PortalOperationFailed(UsbPortalError):
    """The broker reported a generic failure status."""

    def __init__(
        self,
        message: str = "",
        *,
        status: Optional[int] = None,
        context: Optional[PortalErrorContext] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message, context=context, cause=cause)
        self.status = status


class PortalTimeoutError(UsbPortalError):
    """No Response signal arrived within the configured timeout."""


class PortalProtocolError(UsbPortalError):
    """A reply or signal did not have the expected shape."""


class PortalInvalidArgument(UsbPortalError, ValueError):
    """A caller-supplied argument was rejected before touching the bus."""


class PortalInvalidState(UsbPortalError):
    """An object was used outside of its valid lifecycle."""


__all__ = [
    "PortalCancelledError",
    "PortalErrorContext",
    "PortalInvalidArgument",
    "PortalInvalidState",
    "PortalOperationFailed",
    "PortalProtocolError",
    "PortalTimeoutError",
    "PortalTransportError",
    "UsbPortalError",
]
