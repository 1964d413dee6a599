"""Constants for the USB portal wire contract."""

from __future__ import annotations

PORTAL_BUS_NAME = "org.freedesktop.portal.Desktop"
PORTAL_OBJECT_PATH = "/org/freedesktop/portal/desktop"

USB_INTERFACE = "org.freedesktop.portal.Usb"
REQUEST_INTERFACE = "org.freedesktop.portal.Request"
SESSION_INTERFACE = "org.freedesktop.portal.Session"

REQUEST_PATH_PREFIX = "/org/freedesktop/portal/desktop/request/"
SESSION_PATH_PREFIX = "/org/freedesktop/portal/desktop/session/"

# Request.Response status codes
RESPONSE_SUCCESS = 0
RESPONSE_CANCELLED = 1

# Upper bound (exclusive) for generated correlation tokens
TOKEN_MAX = 2_147_483_647
TOKEN_PREFIX = "portal"

SIGNATURE_OPTIONS = "a{sv}"
SIGNATURE_ACQUIRE_DEVICES = "sa(sa{sv})a{sv}"
SIGNATURE_ACQUIRE_FINISH = "sa{sv}"
SIGNATURE_RELEASE_DEVICES = "as"
