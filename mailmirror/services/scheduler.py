import asyncio
import logging
import time
from enum import Enum

from mailmirror.infra.config_store import RefreshSettings

logger = logging.getLogger(__name__)


class SchedulerState(str, Enum):
    STOPPED = "stopped"
    QUICK = "quick"
    STEADY = "steady"


class RefreshScheduler:
    """Background refresh loop: a few quick ticks after start, then a steady cadence.

    ``tick`` is an async callable. At most one tick runs at a time and ticks
    never start closer together than ``settings.min_spacing`` seconds; a
    guarded-out tick is skipped, not queued.
    """

    def __init__(self, tick, settings=None, clock=time.monotonic, name="refresh"):
        self._tick = tick
        self.settings = settings or RefreshSettings()
        self.name = name
        self.state = SchedulerState.STOPPED
        self.paused = False
        self.tick_in_flight = False
        self.quick_ticks_done = 0
        self.last_tick_started = None
        self.ticks_run = 0
        self.ticks_skipped = 0
        self._clock = clock
        self._task = None
        self._requested = set()

    @property
    def running(self):
        return self._task is not None and not self._task.done()

    def interval(self):
        if self.state == SchedulerState.QUICK:
            return self.settings.quick_interval
        return self.settings.steady_interval

    def start(self):
        """Begin (or restart) in the quick phase. Must be called from the event loop."""
        self._cancel_tasks()
        self.quick_ticks_done = 0
        self.paused = False
        self.state = SchedulerState.QUICK if self.settings.quick_ticks > 0 else SchedulerState.STEADY
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.info("Scheduler %s started in %s phase", self.name, self.state.value)

    def stop(self):
        self._cancel_tasks()
        self.paused = False
        if self.state != SchedulerState.STOPPED:
            logger.info("Scheduler %s stopped", self.name)
        self.state = SchedulerState.STOPPED

    def pause(self):
        if self.state == SchedulerState.STOPPED or self.paused:
            return
        self._cancel_tasks()
        self.paused = True
        logger.info("Scheduler %s paused", self.name)

    def resume(self):
        if not self.paused:
            return
        self.start()

    def tick_now(self):
        """Request an immediate guarded tick alongside the regular cadence."""
        task = asyncio.get_running_loop().create_task(self.step())
        self._requested.add(task)
        task.add_done_callback(self._requested.discard)
        return task

    async def step(self):
        """Run one guarded tick and return the interval until the next one."""
        now = self._clock()
        if self.tick_in_flight:
            self.ticks_skipped += 1
            logger.debug("Scheduler %s skipped a tick: previous tick still running", self.name)
            return self.interval()
        if self.last_tick_started is not None and now - self.last_tick_started < self.settings.min_spacing:
            self.ticks_skipped += 1
            logger.debug("Scheduler %s skipped a tick: too soon after the last one", self.name)
            return self.interval()

        self.tick_in_flight = True
        self.last_tick_started = now
        try:
            await self._tick()
        except Exception as exc:
            logger.warning("Scheduler %s tick failed: %s", self.name, exc)
        finally:
            self.tick_in_flight = False
        self.ticks_run += 1
        self._advance()
        return self.interval()

    def _advance(self):
        if self.state != SchedulerState.QUICK:
            return
        self.quick_ticks_done += 1
        if self.quick_ticks_done >= self.settings.quick_ticks:
            self.state = SchedulerState.STEADY
            logger.info("Scheduler %s entering steady phase", self.name)

    async def _run(self):
        delay = self.interval()
        while True:
            await asyncio.sleep(delay)
            delay = await self.step()

    def _cancel_tasks(self):
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
        for task in list(self._requested):
            task.cancel()
        self._requested.clear()


__all__ = ["RefreshScheduler", "SchedulerState"]
