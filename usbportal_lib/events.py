"""
usbportal_lib/events.py

Device event dataclasses.

Rules:
- The codec constructs these directly from the DeviceEvents payload.
- Events are immutable point-in-time observations.
- The broker multiplexes every session on one broadcast signal, so each batch
  carries the session path it was addressed to; consumers filter if needed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping

EVENT_KIND_ADD = "add"
EVENT_KIND_CHANGE = "change"
EVENT_KIND_REMOVE = "remove"


@dataclass(frozen=True, slots=True)
class DeviceEvent:
    device_id: str
    kind: str
    properties: Mapping[str, Any] = field(default_factory=dict)

    @property
    def added(self) -> bool:
        return self.kind == EVENT_KIND_ADD

    @property
    def removed(self) -> bool:
        return self.kind == EVENT_KIND_REMOVE


@dataclass(frozen=True, slots=True)
class DeviceEventBatch:
    session_path: str
    events: tuple[DeviceEvent, ...]

    def for_session(self, session_path: str) -> bool:
        return self.session_path == session_path


__all__ = [
    "DeviceEvent",
    "DeviceEventBatch",
    "EVENT_KIND_ADD",
    "EVENT_KIND_CHANGE",
    "EVENT_KIND_REMOVE",
]
