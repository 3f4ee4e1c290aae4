from __future__ import annotations

import asyncio

import pytest

from imagegate.runtime.scheduler import Scheduler

from tests.fixtures.fake_clock import FakeClock


def make_scheduler() -> tuple[Scheduler, FakeClock]:
    clock = FakeClock()
    return Scheduler(clock=clock.monotonic), clock


def recorder(log: list[str], label: str):
    async def callback() -> None:
        log.append(label)
    return callback


@pytest.mark.asyncio
async def test_one_shot_entry_fires_once_when_due() -> None:
    scheduler, clock = make_scheduler()
    fired: list[str] = []
    scheduler.schedule("req_1", 120, recorder(fired, "early"))

    clock.advance(119)
    assert await scheduler.run_pending() == 0

    clock.advance(1)
    assert await scheduler.run_pending() == 1

    clock.advance(1000)
    assert await scheduler.run_pending() == 0
    assert fired == ["early"]
    assert scheduler.has("req_1") is False


@pytest.mark.asyncio
async def test_recurring_entry_fires_every_interval() -> None:
    scheduler, clock = make_scheduler()
    fired: list[str] = []
    scheduler.schedule("req_1", 300, recorder(fired, "poll"), interval=300)

    for _ in range(3):
        clock.advance(300)
        await scheduler.run_pending()

    assert fired == ["poll", "poll", "poll"]
    assert scheduler.has("req_1") is True


@pytest.mark.asyncio
async def test_cancel_removes_all_entries_for_key_and_is_idempotent() -> None:
    scheduler, clock = make_scheduler()
    fired: list[str] = []
    scheduler.schedule("req_1", 10, recorder(fired, "a"))
    scheduler.schedule("req_1", 10, recorder(fired, "b"), interval=10)
    scheduler.schedule("req_2", 10, recorder(fired, "other"))

    assert scheduler.cancel("req_1") == 2
    assert scheduler.cancel("req_1") == 0

    clock.advance(10)
    await scheduler.run_pending()
    assert fired == ["other"]


@pytest.mark.asyncio
async def test_cancel_from_inside_running_callback() -> None:
    scheduler, clock = make_scheduler()
    fired: list[str] = []

    async def stop_self() -> None:
        fired.append("tick")
        scheduler.cancel("req_1")
        scheduler.cancel("req_1")

    scheduler.schedule("req_1", 5, stop_self, interval=5)
    scheduler.schedule("req_1", 5, recorder(fired, "sibling"))

    clock.advance(5)
    await scheduler.run_pending()
    clock.advance(5)
    await scheduler.run_pending()

    assert fired == ["tick"]
    assert scheduler.has("req_1") is False


@pytest.mark.asyncio
async def test_failing_callback_does_not_stop_other_entries() -> None:
    scheduler, clock = make_scheduler()
    fired: list[str] = []

    async def explode() -> None:
        raise RuntimeError("chainctl exploded")

    scheduler.schedule("req_bad", 1, explode, interval=1)
    scheduler.schedule("req_good", 1, recorder(fired, "good"), interval=1)

    clock.advance(1)
    await scheduler.run_pending()
    clock.advance(1)
    await scheduler.run_pending()

    assert fired == ["good", "good"]
    assert scheduler.has("req_bad") is True


@pytest.mark.asyncio
async def test_cancel_all() -> None:
    scheduler, clock = make_scheduler()
    fired: list[str] = []
    scheduler.schedule("a", 1, recorder(fired, "a"))
    scheduler.schedule("b", 1, recorder(fired, "b"), interval=1)

    scheduler.cancel_all()
    clock.advance(5)

    assert await scheduler.run_pending() == 0
    assert scheduler.next_fire_time() is None


def test_interval_must_be_positive() -> None:
    scheduler, _ = make_scheduler()
    with pytest.raises(ValueError):
        scheduler.schedule("a", 0, recorder([], "a"), interval=0)


@pytest.mark.asyncio
async def test_background_loop_runs_due_entries() -> None:
    scheduler = Scheduler()
    done = asyncio.Event()

    async def callback() -> None:
        done.set()

    await scheduler.start()
    try:
        scheduler.schedule("req_1", 0.01, callback)
        await asyncio.wait_for(done.wait(), timeout=2)
    finally:
        await scheduler.stop()

    assert done.is_set()


@pytest.mark.asyncio
async def test_cancelled_entries_are_compacted_out_of_the_heap() -> None:
    scheduler, clock = make_scheduler()
    fired: list[str] = []
    for key in ("req_1", "req_2", "req_3"):
        scheduler.schedule(key, 120, recorder(fired, key))
        scheduler.schedule(key, 300, recorder(fired, key), interval=300)
        scheduler.schedule(key, 86400, recorder(fired, key))

    scheduler.cancel("req_1")
    assert len(scheduler._heap) == 9

    scheduler.cancel("req_2")
    assert len(scheduler._heap) == 3
    assert scheduler.next_fire_time() == clock.monotonic() + 120

    clock.advance(300)
    await scheduler.run_pending()
    assert fired == ["req_3", "req_3"]
