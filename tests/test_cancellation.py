from __future__ import annotations

import asyncio

import pytest

from llm.cancellation import CancellationController, CancellationToken
from llm.errors import RequestCancelledError


def test_token_cancel_runs_callbacks_once() -> None:
    calls: list[str] = []
    token = CancellationToken(1)
    token.add_abort_callback(lambda: calls.append("close"))

    assert token.cancel() is True
    assert token.cancel() is False
    assert token.cancelled is True
    assert calls == ["close"]
    with pytest.raises(RequestCancelledError):
        token.raise_if_cancelled()


def test_callback_added_after_cancel_runs_immediately() -> None:
    calls: list[str] = []
    token = CancellationToken(1)
    token.cancel()
    token.add_abort_callback(lambda: calls.append("late"))
    assert calls == ["late"]


def test_failing_callback_does_not_block_others() -> None:
    calls: list[str] = []
    token = CancellationToken(1)

    def _boom() -> None:
        raise OSError("already closed")

    token.add_abort_callback(_boom)
    token.add_abort_callback(lambda: calls.append("second"))
    token.cancel()
    assert calls == ["second"]


def test_wait_returns_after_cancel() -> None:
    async def run() -> None:
        token = CancellationToken(1)
        waiter = asyncio.create_task(token.wait())
        await asyncio.sleep(0)
        assert not waiter.done()
        token.cancel()
        await asyncio.wait_for(waiter, timeout=1)

    asyncio.run(run())


def test_controller_tracks_single_active_token() -> None:
    controller = CancellationController()
    assert controller.cancel_active() is False

    first = controller.new_token()
    assert controller.active is first
    second = controller.new_token()
    assert first.cancelled is True
    assert controller.active is second

    controller.clear(first)
    assert controller.active is second
    assert controller.cancel_active() is True
    assert second.cancelled is True
    controller.clear(second)
    assert controller.active is None
    assert second.sequence == first.sequence + 1
