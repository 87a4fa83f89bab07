"""Tests for cancellation tokens and bounded fan-out."""

from __future__ import annotations

import asyncio

import pytest

from hive_scheduler.utils.concurrency import CancellationToken, gather_bounded


def test_cancel_callbacks_run_once_and_failures_are_isolated() -> None:
    token = CancellationToken()
    calls: list[str] = []

    def _broken() -> None:
        raise RuntimeError("callback failed")

    token.on_cancel(_broken)
    token.on_cancel(lambda: calls.append("first"))
    unregister = token.on_cancel(lambda: calls.append("removed"))
    unregister()

    token.cancel("stop requested")
    token.cancel("second reason ignored")
    token.on_cancel(lambda: calls.append("late"))

    assert calls == ["first", "late"]
    assert token.reason == "stop requested"
    with pytest.raises(asyncio.CancelledError):
        token.raise_if_cancelled()


@pytest.mark.asyncio
async def test_wait_returns_once_cancelled() -> None:
    token = CancellationToken()
    waiter = asyncio.create_task(token.wait())
    await asyncio.sleep(0)
    assert not waiter.done()

    token.cancel()
    await asyncio.wait_for(waiter, timeout=1.0)

    assert token.is_cancelled
    token_without_reason = CancellationToken()
    token_without_reason.raise_if_cancelled()


@pytest.mark.asyncio
async def test_gather_bounded_limits_concurrency_and_keeps_order() -> None:
    running = 0
    peak = 0

    async def _job(value: int) -> int:
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.005 * (5 - value))
        running -= 1
        if value == 3:
            raise ValueError("job 3 failed")
        return value * 10

    results = await gather_bounded([_job(value) for value in range(5)], limit=2)

    assert peak == 2
    assert results[:3] == [0, 10, 20]
    assert isinstance(results[3], ValueError)
    assert results[4] == 40


@pytest.mark.asyncio
async def test_gather_bounded_handles_empty_input_and_rejects_bad_limit() -> None:
    assert await gather_bounded([], limit=3) == []
    with pytest.raises(ValueError, match="limit"):
        await gather_bounded([], limit=0)


@pytest.mark.asyncio
async def test_gather_bounded_cancels_children_when_caller_is_cancelled() -> None:
    started = asyncio.Event()
    cancelled: list[int] = []

    async def _forever(index: int) -> int:
        started.set()
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            cancelled.append(index)
            raise
        return index

    outer = asyncio.create_task(gather_bounded([_forever(i) for i in range(3)], limit=3))
    await started.wait()
    outer.cancel()

    with pytest.raises(asyncio.CancelledError):
        await outer
    assert sorted(cancelled) == [0, 1, 2]
