from __future__ import annotations

import asyncio

import pytest

from core.admission import AdmissionQueue
from core.errors import AdmissionTimeoutError


def test_acquire_is_exclusive_until_release() -> None:
    async def run() -> None:
        queue = AdmissionQueue(timeout=1)
        first = await queue.acquire()
        assert queue.busy is True

        second_task = asyncio.create_task(queue.acquire())
        await asyncio.sleep(0.01)
        assert not second_task.done()
        assert queue.waiting == 1

        await queue.release(first)
        second = await asyncio.wait_for(second_task, timeout=1)
        assert second.sequence == first.sequence + 1
        assert queue.waiting == 0
        await queue.release(second)
        assert queue.busy is False

    asyncio.run(run())


def test_acquire_times_out_with_retryable_error() -> None:
    async def run() -> None:
        queue = AdmissionQueue(timeout=0.05)
        holder = await queue.acquire()
        with pytest.raises(AdmissionTimeoutError) as exc_info:
            await queue.acquire()
        assert exc_info.value.retryable is True
        assert "try again" in str(exc_info.value)
        assert queue.waiting == 0
        await queue.release(holder)
        ticket = await queue.acquire()
        await queue.release(ticket)

    asyncio.run(run())


def test_release_is_idempotent_and_rejects_foreign_ticket() -> None:
    async def run() -> None:
        queue = AdmissionQueue()
        first = await queue.acquire()
        await queue.release(first)
        await queue.release(first)

        second = await queue.acquire()
        await queue.release(second)
        third = await queue.acquire()
        stale = second
        stale.released = False
        with pytest.raises(ValueError):
            await queue.release(stale)
        await queue.release(third)

    asyncio.run(run())


def test_hold_releases_on_error() -> None:
    async def run() -> None:
        queue = AdmissionQueue()
        with pytest.raises(RuntimeError):
            async with queue.hold():
                assert queue.busy is True
                raise RuntimeError("boom")
        assert queue.busy is False

    asyncio.run(run())
