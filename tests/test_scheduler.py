import asyncio

import pytest

from mailmirror.infra.config_store import RefreshSettings
from mailmirror.services.scheduler import RefreshScheduler, SchedulerState


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


def _scheduler(tick, **settings):
    values = {"quick_interval": 5.0, "quick_ticks": 3, "steady_interval": 30.0, "min_spacing": 3.0}
    values.update(settings)
    clock = FakeClock()
    return RefreshScheduler(tick, settings=RefreshSettings(**values), clock=clock), clock


@pytest.mark.asyncio
async def test_quick_phase_moves_to_steady_after_configured_ticks():
    calls = []

    async def _tick():
        calls.append(1)

    scheduler, clock = _scheduler(_tick)
    scheduler.state = SchedulerState.QUICK

    intervals = []
    for _ in range(4):
        intervals.append(await scheduler.step())
        clock.now += 10

    assert intervals == [5.0, 5.0, 30.0, 30.0]
    assert scheduler.state == SchedulerState.STEADY
    assert len(calls) == 4


@pytest.mark.asyncio
async def test_tick_too_soon_after_previous_is_skipped():
    calls = []

    async def _tick():
        calls.append(1)

    scheduler, clock = _scheduler(_tick)
    scheduler.state = SchedulerState.QUICK

    await scheduler.step()
    clock.now += 1.0
    interval = await scheduler.step()

    assert interval == 5.0
    assert len(calls) == 1
    assert scheduler.ticks_skipped == 1
    assert scheduler.quick_ticks_done == 1


@pytest.mark.asyncio
async def test_tick_is_skipped_while_another_is_in_flight():
    gate = asyncio.Event()
    calls = []

    async def _tick():
        calls.append(1)
        await gate.wait()

    scheduler, clock = _scheduler(_tick)
    first = asyncio.create_task(scheduler.step())
    await asyncio.sleep(0)
    assert scheduler.tick_in_flight is True

    clock.now += 60
    await scheduler.step()
    gate.set()
    await first

    assert len(calls) == 1
    assert scheduler.ticks_skipped == 1
    assert scheduler.tick_in_flight is False


@pytest.mark.asyncio
async def test_failing_tick_is_logged_and_loop_continues():
    async def _tick():
        raise RuntimeError("provider down")

    scheduler, clock = _scheduler(_tick)

    assert await scheduler.step() == 30.0
    assert scheduler.ticks_run == 1
    assert scheduler.tick_in_flight is False


@pytest.mark.asyncio
async def test_running_loop_ticks_and_stop_cancels_it():
    calls = []

    async def _tick():
        calls.append(1)

    scheduler, clock = _scheduler(_tick, quick_interval=0.01, quick_ticks=2, steady_interval=0.01, min_spacing=0.0)
    scheduler.start()
    assert scheduler.state == SchedulerState.QUICK

    for _ in range(50):
        clock.now += 1
        await asyncio.sleep(0.01)
        if len(calls) >= 3:
            break

    assert len(calls) >= 3
    assert scheduler.state == SchedulerState.STEADY

    scheduler.stop()
    await asyncio.sleep(0)
    assert scheduler.state == SchedulerState.STOPPED
    assert scheduler.running is False
    stopped_at = len(calls)
    await asyncio.sleep(0.05)
    assert len(calls) == stopped_at


@pytest.mark.asyncio
async def test_stop_cancels_tick_in_flight():
    started = asyncio.Event()
    cancelled = []

    async def _tick():
        started.set()
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            cancelled.append(True)
            raise

    scheduler, _ = _scheduler(_tick, quick_interval=0.0)
    scheduler.start()
    await asyncio.wait_for(started.wait(), timeout=1)

    scheduler.stop()
    await asyncio.sleep(0.01)

    assert cancelled == [True]
    assert scheduler.tick_in_flight is False


@pytest.mark.asyncio
async def test_pause_and_resume_restart_quick_phase():
    async def _tick():
        return None

    scheduler, _ = _scheduler(_tick)
    scheduler.start()
    scheduler.state = SchedulerState.STEADY

    scheduler.pause()
    assert scheduler.paused is True
    assert scheduler.running is False

    scheduler.resume()
    assert scheduler.paused is False
    assert scheduler.state == SchedulerState.QUICK
    assert scheduler.running is True
    scheduler.stop()


@pytest.mark.asyncio
async def test_pause_and_resume_are_no_ops_when_never_started():
    async def _tick():
        return None

    scheduler, _ = _scheduler(_tick)

    scheduler.pause()
    scheduler.resume()

    assert scheduler.state == SchedulerState.STOPPED
    assert scheduler.paused is False
    assert scheduler.running is False


@pytest.mark.asyncio
async def test_tick_now_runs_a_guarded_tick():
    calls = []

    async def _tick():
        calls.append(1)

    scheduler, _ = _scheduler(_tick)

    await scheduler.tick_now()
    await scheduler.tick_now()

    assert len(calls) == 1
    assert scheduler.ticks_skipped == 1
