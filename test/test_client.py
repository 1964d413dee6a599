from __future__ import annotations

import asyncio
import logging

import pytest
from dbus_fast import Variant

from fakes import FakeBus, settle
from usbportal_lib.client import Result, UsbPortalClient
from usbportal_lib.config import client_config_from_mapping, client_config_to_mapping
from usbportal_lib.const import (
    PORTAL_OBJECT_PATH,
    REQUEST_INTERFACE,
    SIGNATURE_OPTIONS,
    SIGNATURE_RELEASE_DEVICES,
    USB_INTERFACE,
)
from usbportal_lib.errors import (
    PortalInvalidArgument,
    PortalInvalidState,
    PortalTimeoutError,
    PortalTransportError,
    UsbPortalError,
)
from usbportal_lib.types import AcquiredDevice, BusType, ClientConfig, DeviceSpec, UsbDeviceInfo

REQUEST_PATH = "/org/freedesktop/portal/desktop/request/1_42/portal0"


@pytest.mark.asyncio
async def test_enumerate_devices(client: UsbPortalClient, bus: FakeBus) -> None:
    bus.reply(
        "EnumerateDevices",
        (
            [
                ("dev1", {"readable": Variant("b", True), "writable": Variant("b", False)}),
                ("dev2", {"parent": Variant("s", "dev1")}),
            ],
        ),
    )

    devices = await client.async_enumerate_devices()

    assert [d.device_id for d in devices] == ["dev1", "dev2"]
    assert devices[0] == UsbDeviceInfo("dev1", {"readable": True, "writable": False})
    assert devices[1].parent == "dev1"
    call = bus.calls_to("EnumerateDevices")[0]
    assert call.path == PORTAL_OBJECT_PATH
    assert call.interface == USB_INTERFACE
    assert call.signature == SIGNATURE_OPTIONS
    assert call.body == [{}]


@pytest.mark.asyncio
async def test_release_devices(client: UsbPortalClient, bus: FakeBus) -> None:
    await client.async_release_devices(["dev1", "dev2"])

    call = bus.calls_to("ReleaseDevices")[0]
    assert call.signature == SIGNATURE_RELEASE_DEVICES
    assert call.body == [["dev1", "dev2"]]


@pytest.mark.asyncio
async def test_release_devices_rejects_bad_input(client: UsbPortalClient, bus: FakeBus) -> None:
    with pytest.raises(PortalInvalidArgument):
        await client.async_release_devices("dev1")
    with pytest.raises(PortalInvalidArgument):
        await client.async_release_devices(["dev1", ""])
    assert bus.calls == []


@pytest.mark.asyncio
async def test_result_twins_wrap_errors(client: UsbPortalClient, bus: FakeBus) -> None:
    bus.fail("EnumerateDevices", PortalTransportError("service unknown"))
    result = await client.enumerate_devices()
    assert result.ok is False
    assert isinstance(result.error, PortalTransportError)
    with pytest.raises(PortalTransportError):
        result.unwrap()

    bus.fail("ReleaseDevices", OSError("broken pipe"))
    result = await client.release_devices(["dev1"])
    assert result.ok is False
    assert isinstance(result.error, PortalTransportError)

    result = await client.release_devices(["dev1"])
    assert result == Result.success(None)


@pytest.mark.asyncio
async def test_result_twin_success(client: UsbPortalClient, bus: FakeBus) -> None:
    bus.reply("EnumerateDevices", ([("dev1", {})],))

    result = await client.enumerate_devices()

    assert result.ok is True
    assert result.unwrap() == [UsbDeviceInfo("dev1", {})]


@pytest.mark.asyncio
async def test_acquire_and_finish(client: UsbPortalClient, bus: FakeBus) -> None:
    bus.reply("AcquireDevicesFinish", (("A", {"success": True, "fd": 0}), False), unix_fds=(11,))
    bus.reply("AcquireDevicesFinish", (("B", {"success": False, "error": "denied"}), True))

    task = asyncio.create_task(
        client.async_acquire_and_finish([DeviceSpec("A", writable=True), DeviceSpec("B")])
    )
    await settle()
    bus.emit_response(REQUEST_PATH, 0, [("A", {"success": True, "fd": 0})], unix_fds=(11,))

    devices = await task

    assert devices == [AcquiredDevice.granted("A", 11), AcquiredDevice.denied("B", "denied")]
    assert [call.body[0] for call in bus.calls_to("AcquireDevicesFinish")] == [REQUEST_PATH, REQUEST_PATH]


@pytest.mark.asyncio
async def test_disconnect_disposes_sessions_and_aborts_requests(client: UsbPortalClient, bus: FakeBus) -> None:
    await client.async_connect()
    usb = await client.async_create_session()
    task = asyncio.create_task(client.async_acquire_devices([DeviceSpec("A")]))
    await settle()

    await client.async_disconnect()

    with pytest.raises(PortalTransportError):
        await task
    assert usb.disposed
    assert bus.subscription_count() == 0
    assert client.pending_count() == 0
    assert [c.interface for c in bus.closes()] == [REQUEST_INTERFACE]
    assert client.connected is False


@pytest.mark.asyncio
async def test_connect_and_disconnect_result_twins(client: UsbPortalClient) -> None:
    assert (await client.connect()).ok is True
    assert client.connected is True
    assert (await client.disconnect()).ok is True
    assert client.connected is False


def test_sender_requires_unique_name() -> None:
    client = UsbPortalClient(bus=FakeBus(unique_name=None))
    with pytest.raises(PortalInvalidState):
        client.sender
    assert UsbPortalClient(bus=FakeBus(":1.42")).sender == "1_42"


def test_logger_name_from_config() -> None:
    client = UsbPortalClient(ClientConfig(logger_name="usbportal.custom"), bus=FakeBus())
    assert client._log.name == "usbportal.custom"

    injected = logging.getLogger("injected")
    client = UsbPortalClient(ClientConfig(logger_name="ignored"), bus=FakeBus(), logger=injected)
    assert client._log is injected


def test_normalize_error_maps_builtin_exceptions() -> None:
    client = UsbPortalClient(bus=FakeBus())

    assert isinstance(client._normalize_error(OSError("x")), PortalTransportError)
    assert isinstance(client._normalize_error(TimeoutError()), PortalTimeoutError)
    assert isinstance(client._normalize_error(ValueError("x")), PortalInvalidArgument)
    original = PortalInvalidState("x")
    assert client._normalize_error(original) is original

    wrapped = RuntimeError("outer")
    wrapped.__cause__ = OSError("inner")
    assert isinstance(client._normalize_error(wrapped), PortalTransportError)

    plain = client._normalize_error(KeyError("k"), phase="finish")
    assert type(plain) is UsbPortalError
    assert plain.context.phase == "finish"


def test_client_config_from_mapping() -> None:
    cfg = client_config_from_mapping(
        {
            "bus_type": "SYSTEM",
            "response_timeout_s": "2.5",
            "negotiate_unix_fd": "false",
            "event_queue_size": 16,
        }
    )

    assert cfg.bus_type is BusType.SYSTEM
    assert cfg.response_timeout_s == 2.5
    assert cfg.negotiate_unix_fd is False
    assert cfg.event_queue_size == 16
    assert client_config_from_mapping(client_config_to_mapping(cfg)) == cfg
    assert client_config_from_mapping(None) == ClientConfig()


@pytest.mark.parametrize(
    "data",
    [
        {"bus_type": "user"},
        {"event_queue_size": 0},
        {"response_timeout_s": -1},
        {"unknown": True},
    ],
)
def test_client_config_rejects_invalid(data) -> None:
    with pytest.raises(PortalInvalidArgument):
        client_config_from_mapping(data)
