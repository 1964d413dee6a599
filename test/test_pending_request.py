import asyncio
import os
import unittest

from fakes import FakeBus, settle
from usbportal_lib.bus import BusMessage, SignalMatch
from usbportal_lib.cancellable import Cancellable
from usbportal_lib.const import REQUEST_INTERFACE
from usbportal_lib.errors import (
    PortalCancelledError,
    PortalInvalidState,
    PortalProtocolError,
    PortalTimeoutError,
    PortalTransportError,
)
from usbportal_lib.pending import PendingState, RequestCorrelator

PATH = "/org/freedesktop/portal/desktop/request/1_42/portal0"


def _status(msg: BusMessage) -> int:
    return msg.body[0]


class RequestCorrelatorTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.bus = FakeBus()
        self.correlator = RequestCorrelator(self.bus)
        self.token = Cancellable()

    def _begin(self, path: str = PATH):
        return self.correlator.begin(
            path,
            operation="Test",
            match=SignalMatch(interface=REQUEST_INTERFACE, member="Response", path=path),
            decode=_status,
            cancellable=self.token,
        )

    def _assert_torn_down(self, pending) -> None:
        self.assertTrue(pending.torn_down)
        self.assertEqual(self.bus.subscription_count(), 0)
        self.assertEqual(self.token.handler_count(), 0)
        self.assertEqual(self.correlator.pending_count(), 0)
        self.assertEqual(len(self.bus.unsubscribed), len(set(self.bus.unsubscribed)))

    async def test_subscription_exists_before_call_is_issued(self) -> None:
        pending = self._begin()
        self.assertEqual(self.bus.subscription_count(), 1)
        self.assertEqual(self.bus.calls, [])

        self.correlator.submit(pending, member="Test")
        await settle()
        self.assertEqual(len(self.bus.calls_to("Test")), 1)
        self.assertEqual(pending.state, PendingState.PENDING)

    async def test_signal_resolves_and_tears_down_once(self) -> None:
        pending = self._begin()
        self.correlator.submit(pending, member="Test")
        await settle()

        self.bus.emit_response(PATH, 0)
        result = await asyncio.wait_for(self.correlator.wait(pending), timeout=1)

        self.assertEqual(result, 0)
        self._assert_torn_down(pending)
        self.assertEqual(len(self.bus.unsubscribed), 1)

    async def test_cancel_after_resolution_is_noop(self) -> None:
        pending = self._begin()
        self.correlator.submit(pending, member="Test")
        await settle()
        self.bus.emit_response(PATH, 0)

        self.token.cancel()

        self.assertEqual(await self.correlator.wait(pending), 0)
        self.assertEqual(self.bus.closes(), [])
        self.assertEqual(pending.state, PendingState.RESOLVED)
        self._assert_torn_down(pending)

    async def test_call_failure_fails_request_and_ignores_signal(self) -> None:
        self.bus.fail("Test", PortalTransportError("access denied"))
        pending = self._begin()
        self.correlator.submit(pending, member="Test")

        with self.assertRaises(PortalTransportError):
            await asyncio.wait_for(self.correlator.wait(pending), timeout=1)
        self._assert_torn_down(pending)

        self.assertEqual(self.bus.emit_response(PATH, 0), 0)
        self.token.cancel()
        self.assertEqual(self.bus.closes(), [])

    async def test_unexpected_call_exception_becomes_transport_error(self) -> None:
        self.bus.fail("Test", OSError("socket closed"))
        pending = self._begin()
        self.correlator.submit(pending, member="Test")

        with self.assertRaises(PortalTransportError) as ctx:
            await self.correlator.wait(pending)
        self.assertIsInstance(ctx.exception.__cause__, OSError)
        self._assert_torn_down(pending)

    async def test_cancellation_sends_one_close_and_ignores_late_signal(self) -> None:
        pending = self._begin()
        self.correlator.submit(pending, member="Test")
        await settle()

        self.token.cancel()
        with self.assertRaises(PortalCancelledError):
            await self.correlator.wait(pending)

        closes = self.bus.closes()
        self.assertEqual(len(closes), 1)
        self.assertEqual(closes[0].path, PATH)
        self.assertEqual(closes[0].interface, REQUEST_INTERFACE)
        self._assert_torn_down(pending)

        self.assertEqual(self.bus.emit_response(PATH, 0), 0)
        self.token.cancel()
        self.assertEqual(len(self.bus.closes()), 1)

    async def test_timeout_aborts_with_close(self) -> None:
        pending = self._begin()
        self.correlator.submit(pending, member="Test")

        with self.assertRaises(PortalTimeoutError):
            await self.correlator.wait(pending, timeout_s=0.01)

        self.assertEqual(len(self.bus.closes()), 1)
        self._assert_torn_down(pending)

    async def test_cancelled_waiter_aborts_request(self) -> None:
        pending = self._begin()
        self.correlator.submit(pending, member="Test")
        waiter = asyncio.ensure_future(self.correlator.wait(pending))
        await settle()

        waiter.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await waiter

        self.assertEqual(pending.state, PendingState.FAILED)
        self.assertEqual(len(self.bus.closes()), 1)
        self._assert_torn_down(pending)

    async def test_rebind_moves_subscription(self) -> None:
        pending = self._begin()
        first_sub = pending.subscription_id
        self.correlator.rebind(pending, "/r1")

        self.assertEqual(pending.path, "/r1")
        self.assertEqual(self.bus.unsubscribed, [first_sub])
        self.assertEqual(self.bus.subscription_count(), 1)
        self.assertIs(self.correlator.get("/r1"), pending)
        self.assertIsNone(self.correlator.get(PATH))

        self.assertEqual(self.bus.emit_response(PATH, 0), 0)
        self.bus.emit_response("/r1", 0)
        self.assertEqual(await self.correlator.wait(pending), 0)
        self._assert_torn_down(pending)

    async def test_path_collision_is_rejected(self) -> None:
        pending = self._begin()
        with self.assertRaises(PortalInvalidState):
            self._begin()
        self.token.cancel()
        with self.assertRaises(PortalCancelledError):
            await self.correlator.wait(pending)

    async def test_already_cancelled_token_fails_at_begin(self) -> None:
        self.token.cancel()
        pending = self._begin()

        self.assertEqual(pending.state, PendingState.FAILED)
        with self.assertRaises(PortalCancelledError):
            await self.correlator.wait(pending)
        self._assert_torn_down(pending)


def _reject(msg: BusMessage) -> int:
    raise PortalProtocolError("unexpected payload")


def _is_open(fd: int) -> bool:
    try:
        os.fstat(fd)
    except OSError:
        return False
    return True


class SignalDescriptorTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.bus = FakeBus()
        self.correlator = RequestCorrelator(self.bus)
        self.read_fd, self.write_fd = os.pipe()

    async def asyncTearDown(self) -> None:
        for fd in (self.read_fd, self.write_fd):
            try:
                os.close(fd)
            except OSError:
                pass

    def _begin(self, decode):
        return self.correlator.begin(
            PATH,
            operation="Test",
            match=SignalMatch(interface=REQUEST_INTERFACE, member="Response", path=PATH),
            decode=decode,
        )

    async def test_undecodable_signal_closes_its_fds(self) -> None:
        pending = self._begin(_reject)

        self.bus.emit_response(PATH, 0, unix_fds=(self.read_fd,))

        with self.assertRaises(PortalProtocolError):
            await self.correlator.wait(pending)
        self.assertFalse(_is_open(self.read_fd))

    async def test_signal_for_finished_request_closes_its_fds(self) -> None:
        pending = self._begin(_status)
        self.bus.emit_response(PATH, 0)
        self.assertEqual(await self.correlator.wait(pending), 0)

        self.correlator._on_signal(
            pending,
            BusMessage(path=PATH, member="Response", body=(0, []), unix_fds=(self.read_fd,)),
            _status,
        )

        self.assertFalse(_is_open(self.read_fd))
        self.assertTrue(_is_open(self.write_fd))
