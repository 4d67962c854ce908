from __future__ import annotations

import asyncio

import pytest

from pywaweb.util.events import AsyncEventEmitter


@pytest.mark.asyncio
async def test_listeners_run_in_order_and_failures_are_isolated() -> None:
    ee = AsyncEventEmitter()
    calls: list[str] = []

    def first(x: int) -> None:
        calls.append(f"sync:{x}")
        raise RuntimeError("listener bug")

    async def second(x: int) -> None:
        calls.append(f"async:{x}")

    ee.on("evt", first)
    ee.on("evt", second)
    assert ee.listener_count("evt") == 2

    assert await ee.emit("evt", 1) is True
    assert calls == ["sync:1", "async:1"]

    ee.off("evt", first)
    ee.off("evt", first)
    await ee.emit("evt", 2)
    assert calls[-1] == "async:2"
    assert ee.listener_count("evt") == 1

    ee.remove_all_listeners()
    assert ee.listener_count("evt") == 0
    assert await ee.emit("evt", 3) is False


@pytest.mark.asyncio
async def test_wait_for_matches_predicate_and_times_out() -> None:
    ee = AsyncEventEmitter()

    waiter = asyncio.create_task(ee.wait_for("n", predicate=lambda v: v > 1, timeout_s=1.0))
    await asyncio.sleep(0)
    await ee.emit("n", 1)
    assert not waiter.done()
    await ee.emit("n", 2)
    assert await waiter == 2

    with pytest.raises(asyncio.TimeoutError):
        await ee.wait_for("never", timeout_s=0.01)


@pytest.mark.asyncio
async def test_multi_argument_events_resolve_to_a_tuple() -> None:
    ee = AsyncEventEmitter()
    fut = ee.wait_for_future("pair")

    await ee.emit("pair", "a", "b")

    assert fut.result() == ("a", "b")
