"""Tests for RepeatingTask and the virtual clock."""

import asyncio

import pytest

from faceproctor.scheduler import RepeatingTask


def test_fires_after_initial_delay_then_every_interval(clock):
    fired = []

    async def scenario():
        task = RepeatingTask(lambda: fired.append(clock.now()), interval=1.0, initial_delay=3.0, clock=clock).start()
        await clock.advance(6.5)
        task.cancel()
        await clock.advance(5)

    asyncio.run(scenario())
    assert fired == pytest.approx([3.0, 4.0, 5.0, 6.0])


def test_ticks_stay_aligned_when_callback_schedules_work(clock):
    fired = []

    async def slow():
        await clock.sleep(0.7)

    def on_tick():
        fired.append(clock.now())
        asyncio.get_running_loop().create_task(slow())

    async def scenario():
        task = RepeatingTask(on_tick, interval=1.0, initial_delay=0.0, clock=clock).start()
        await clock.advance(3)
        task.cancel()

    asyncio.run(scenario())
    assert fired == pytest.approx([0.0, 1.0, 2.0, 3.0])


def test_cancel_before_first_tick(clock):
    fired = []

    async def scenario():
        task = RepeatingTask(lambda: fired.append(1), interval=1.0, initial_delay=3.0, clock=clock).start()
        await clock.advance(2)
        task.cancel()
        assert task.cancelled
        await clock.advance(10)
        assert not task.running

    asyncio.run(scenario())
    assert fired == []


def test_failing_callback_keeps_ticking(clock):
    calls = []

    def flaky():
        calls.append(clock.now())
        raise RuntimeError("tick failed")

    async def scenario():
        task = RepeatingTask(flaky, interval=2.0, clock=clock).start()
        await clock.advance(4)
        task.cancel()

    asyncio.run(scenario())
    assert calls == pytest.approx([0.0, 2.0, 4.0])


def test_rejects_bad_arguments():
    with pytest.raises(ValueError):
        RepeatingTask(lambda: None, interval=0)
    with pytest.raises(ValueError):
        RepeatingTask(lambda: None, interval=1, initial_delay=-1)


def test_cannot_start_twice(clock):
    async def scenario():
        task = RepeatingTask(lambda: None, interval=1.0, clock=clock).start()
        with pytest.raises(RuntimeError):
            task.start()
        task.cancel()

    asyncio.run(scenario())
