from __future__ import annotations

import pytest

from fakes import FakeBus
from usbportal_lib.client import UsbPortalClient
from usbportal_lib.tokens import sequential_tokens
from usbportal_lib.types import ClientConfig


@pytest.fixture
def bus() -> FakeBus:
    return FakeBus()


@pytest.fixture
def client(bus: FakeBus) -> UsbPortalClient:
    return UsbPortalClient(ClientConfig(), bus=bus, token_generator=sequential_tokens())
