from __future__ import annotations

import logging

from usbportal_lib.cancellable import Cancellable


def test_cancel_runs_connected_handlers_once() -> None:
    token = Cancellable()
    calls: list[str] = []
    token.connect(lambda: calls.append("a"))
    token.connect(lambda: calls.append("b"))

    token.cancel()
    token.cancel()

    assert token.is_cancelled
    assert calls == ["a", "b"]


def test_disconnected_handler_is_not_run() -> None:
    token = Cancellable()
    calls: list[int] = []
    handler_id = token.connect(lambda: calls.append(1))

    assert token.disconnect(handler_id) is True
    assert token.disconnect(handler_id) is False
    token.cancel()

    assert calls == []
    assert token.handler_count() == 0


def test_connect_after_cancel_runs_immediately() -> None:
    token = Cancellable()
    token.cancel()
    calls: list[int] = []

    handler_id = token.connect(lambda: calls.append(1))

    assert calls == [1]
    assert token.disconnect(handler_id) is True


def test_failing_handler_does_not_stop_others(caplog) -> None:
    token = Cancellable()
    calls: list[int] = []

    def _boom() -> None:
        raise RuntimeError("boom")

    token.connect(_boom)
    token.connect(lambda: calls.append(2))

    with caplog.at_level(logging.WARNING):
        token.cancel()

    assert calls == [2]
    assert any("Cancellation handler failed" in rec.getMessage() for rec in caplog.records)
