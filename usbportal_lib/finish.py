"""
AcquireDevicesFinish polling.

The broker streams one device result per call; the loop keeps calling until a
reply carries completed=True. Partial results are never returned.
"""

from __future__ import annotations

import logging
from typing import Optional

from .bus import Bus, close_fds
from .codec import decode_finish_reply
from .const import PORTAL_OBJECT_PATH, SIGNATURE_ACQUIRE_FINISH, USB_INTERFACE
from .errors import PortalErrorContext, PortalInvalidArgument, PortalProtocolError
from .types import AcquiredDevice

logger = logging.getLogger(__name__)

# Guards against a broker that never reports completion.
MAX_FINISH_POLLS = 4096


async def finish_acquire_devices(
    bus: Bus,
    handle: str,
    *,
    max_polls: int = MAX_FINISH_POLLS,
    logger: Optional[logging.Logger] = None,
) -> list[AcquiredDevice]:
    """
    Drain AcquireDevicesFinish for `handle` and return one AcquiredDevice per
    reply, in broker order.

    Any failing iteration propagates its error, discards what was gathered
    and closes the descriptors received so far.
    """
    log = logger or logging.getLogger(__name__)
    if not isinstance(handle, str) or not handle:
        raise PortalInvalidArgument("Request handle must be a non-empty object path.")

    devices: list[AcquiredDevice] = []
    completed = False
    polls = 0
    try:
        while not completed:
            if polls >= max_polls:
                raise PortalProtocolError(
                    f"AcquireDevicesFinish did not complete after {max_polls} replies",
                    context=PortalErrorContext(phase="finish", request_path=handle),
                )
            polls += 1
            reply = await bus.call(
                path=PORTAL_OBJECT_PATH,
                interface=USB_INTERFACE,
                member="AcquireDevicesFinish",
                signature=SIGNATURE_ACQUIRE_FINISH,
                body=[handle, {}],
            )
            try:
                device, completed = decode_finish_reply(reply)
            except BaseException:
                close_fds(reply.unix_fds, log)
                raise
            if device.success:
                log.debug("AcquireDevicesFinish %s: %s granted (fd=%s)", handle, device.device_id, device.fd)
            else:
                log.debug("AcquireDevicesFinish %s: %s denied: %s", handle, device.device_id, device.error)
            devices.append(device)
    except BaseException:
        # Descriptors already received belong to nobody once the list is dropped.
        close_fds((d.fd for d in devices if d.success), log)
        raise

    log.debug("AcquireDevicesFinish %s completed with %d device(s)", handle, len(devices))
    return devices


__all__ = ["MAX_FINISH_POLLS", "finish_acquire_devices"]
