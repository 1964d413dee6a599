"""Validation of client configuration supplied as plain mappings."""

from __future__ import annotations

from typing import Any, Mapping

import voluptuous as vol

from .errors import PortalErrorContext, PortalInvalidArgument
from .types import BusType, ClientConfig

CONF_BUS_TYPE = "bus_type"
CONF_BUS_ADDRESS = "bus_address"
CONF_NEGOTIATE_UNIX_FD = "negotiate_unix_fd"
CONF_RESPONSE_TIMEOUT = "response_timeout_s"
CONF_EVENT_QUEUE_SIZE = "event_queue_size"
CONF_LOGGER_NAME = "logger_name"
CONF_WIRE_LOG = "wire_log"

CLIENT_CONFIG_SCHEMA = vol.Schema(
    {
        vol.Optional(CONF_BUS_TYPE, default=BusType.SESSION.value): vol.Any(
            vol.Coerce(BusType), vol.All(str, vol.Lower, vol.Coerce(BusType))
        ),
        vol.Optional(CONF_BUS_ADDRESS, default=None): vol.Any(None, vol.All(str, vol.Length(min=1))),
        vol.Optional(CONF_NEGOTIATE_UNIX_FD, default=True): vol.Boolean(),
        vol.Optional(CONF_RESPONSE_TIMEOUT, default=None): vol.Any(
            None, vol.All(vol.Coerce(float), vol.Range(min=0, min_included=False))
        ),
        vol.Optional(CONF_EVENT_QUEUE_SIZE, default=256): vol.All(vol.Coerce(int), vol.Range(min=1)),
        vol.Optional(CONF_LOGGER_NAME, default=None): vol.Any(None, str),
        vol.Optional(CONF_WIRE_LOG, default=False): vol.Boolean(),
    },
    extra=vol.PREVENT_EXTRA,
)


def client_config_from_mapping(data: Mapping[str, Any] | None) -> ClientConfig:
    """Validate a mapping and return the matching ClientConfig."""
    try:
        validated = CLIENT_CONFIG_SCHEMA(dict(data or {}))
    except vol.Invalid as exc:
        raise PortalInvalidArgument(
            f"Invalid client configuration: {exc}",
            context=PortalErrorContext(phase="config", detail=str(exc.path)),
            cause=exc,
        ) from exc
    return ClientConfig(
        bus_type=validated[CONF_BUS_TYPE],
        bus_address=validated[CONF_BUS_ADDRESS],
        negotiate_unix_fd=validated[CONF_NEGOTIATE_UNIX_FD],
        response_timeout_s=validated[CONF_RESPONSE_TIMEOUT],
        event_queue_size=validated[CONF_EVENT_QUEUE_SIZE],
        logger_name=validated[CONF_LOGGER_NAME],
        wire_log=validated[CONF_WIRE_LOG],
    )


def client_config_to_mapping(config: ClientConfig) -> dict[str, Any]:
    """Return a JSON-serializable representation of a ClientConfig."""
    return {
        CONF_BUS_TYPE: config.bus_type.value,
        CONF_BUS_ADDRESS: config.bus_address,
        CONF_NEGOTIATE_UNIX_FD: config.negotiate_unix_fd,
        CONF_RESPONSE_TIMEOUT: config.response_timeout_s,
        CONF_EVENT_QUEUE_SIZE: config.event_queue_size,
        CONF_LOGGER_NAME: config.logger_name,
        CONF_WIRE_LOG: config.wire_log,
    }


__all__ = ["CLIENT_CONFIG_SCHEMA", "client_config_from_mapping", "client_config_to_mapping"]
