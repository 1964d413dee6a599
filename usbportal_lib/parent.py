"""
Caller window identity export.

Some broker calls take an identity handle (for example "x11:1a00004" or
"wayland:<token>") so the broker can parent its dialogs to the caller's window.
Exporting is platform specific and asynchronous; this module only defines the
seam the acquisition flow awaits.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Callable, Optional

from .errors import PortalErrorContext, PortalInvalidArgument, UsbPortalError

logger = logging.getLogger(__name__)

ExportDone = Callable[[Optional[str]], None]


class Parent(ABC):
    """A caller context that can be exported to an identity handle."""

    @abstractmethod
    async def export(self) -> str:
        """Return the identity handle, or "" when none could be produced."""

    def unexport(self) -> None:
        """Release any resource held for the exported handle."""
        return None


class StaticParent(Parent):
    """Parent whose handle is already known."""

    def __init__(self, handle: str) -> None:
        if not isinstance(handle, str):
            raise PortalInvalidArgument("Parent handle must be a string.")
        self.handle = handle

    async def export(self) -> str:
        return self.handle

    def __repr__(self) -> str:
        return f"StaticParent({self.handle!r})"


class CallbackParent(Parent):
    """
    Adapter for toolkit exporters that report completion through a callback.

    `exporter` is invoked with a single `done(handle)` callable; passing None
    (or an empty string) means the export failed and the call proceeds with an
    empty identity handle. `done` may be called from any thread.
    """

    def __init__(
        self,
        exporter: Callable[[ExportDone], None],
        *,
        unexporter: Optional[Callable[[], None]] = None,
    ) -> None:
        self._exporter = exporter
        self._unexporter = unexporter
        self._exported = False

    async def export(self) -> str:
        loop = asyncio.get_running_loop()
        future: asyncio.Future[str] = loop.create_future()

        def _set(handle: Optional[str]) -> None:
            if not future.done():
                future.set_result(handle or "")

        def _done(handle: Optional[str]) -> None:
            try:
                loop.call_soon_threadsafe(_set, handle)
            except RuntimeError:
                logger.debug("Identity export completed after the loop closed")

        try:
            self._exporter(_done)
        except UsbPortalError:
            raise
        except Exception as exc:
            raise UsbPortalError(
                f"Failed to export parent window: {exc}",
                context=PortalErrorContext(phase="export"),
                cause=exc,
            ) from exc

        handle = await future
        if not handle:
            logger.warning("Parent window export returned no handle; continuing without one")
        self._exported = bool(handle)
        return handle

    def unexport(self) -> None:
        if not self._exported:
            return
        self._exported = False
        if self._unexporter is not None:
            self._unexporter()


__all__ = ["CallbackParent", "ExportDone", "Parent", "StaticParent"]
