# src/taskmaster_sync/sync/poll_scheduler.py

"""
Adaptive poll scheduler.

A small timer-driven loop that:
- fetches the current task list from an injected TaskSource,
- hands failures to the connection state machine,
- publishes tasksUpdated only when the snapshot actually changed,
- adapts the polling interval to recent activity.

Ticks never overlap: a tick requested while another is in flight is skipped.
Every tick runs in its own task, so cancelling a timer never interrupts a fetch.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable

from ..core.ports import TaskSource
from .connection import ConnectionStateMachine
from .notifications import NotificationHub, TasksUpdated
from .session import PollSession

logger = logging.getLogger(__name__)

HIGH_ACTIVITY_PER_MINUTE = 2.0
MODERATE_ACTIVITY_PER_MINUTE = 0.5
IDLE_TICKS_BEFORE_BACKOFF = 3
IDLE_BACKOFF_BASE = 1.5
IDLE_BACKOFF_CAP = 4.0


class AdaptivePollScheduler:
    def __init__(
        self,
        session: PollSession,
        source: TaskSource,
        hub: NotificationHub,
        *,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        self._session = session
        self._source = source
        self._hub = hub
        self._clock = clock
        self.connection = ConnectionStateMachine(session, hub, self, wall_clock=wall_clock)

        self._timer: asyncio.Task[None] | None = None
        self._retry: asyncio.Task[None] | None = None
        self._refresh: asyncio.Task[None] | None = None
        self._ticks: set[asyncio.Task[bool]] = set()

    @property
    def session(self) -> PollSession:
        return self._session

    @property
    def timer_armed(self) -> bool:
        return self._timer is not None and not self._timer.done()

    @property
    def retry_armed(self) -> bool:
        return self._retry is not None and not self._retry.done()

    # ---- lifecycle ----

    async def start(self) -> None:
        s = self._session
        if s.is_polling:
            return
        logger.info("Starting task polling (interval=%.1fs)", s.current_interval)
        s.is_polling = True
        s.error_count = 0
        await self.tick("polling")
        # The first tick may have failed and handed control to the retry timer.
        if s.is_polling and not self.retry_armed:
            self._arm()

    def stop(self) -> None:
        """Cancel the regular timer and any armed retry. A tick already in flight is allowed to finish."""
        s = self._session
        if s.is_polling:
            logger.info("Stopping task polling")
        s.is_polling = False
        self._cancel(self._timer)
        self._timer = None
        self.cancel_retry()

    async def close(self) -> None:
        self.stop()
        self._cancel(self._refresh)
        self._refresh = None
        ticks = list(self._ticks)
        for t in ticks:
            t.cancel()
        if ticks:
            await asyncio.gather(*ticks, return_exceptions=True)

    # ---- timers (PollTimers) ----

    @staticmethod
    def _cancel(task: asyncio.Task[None] | None) -> None:
        if task is not None and not task.done():
            task.cancel()

    def _arm(self) -> None:
        self._cancel(self._timer)
        self._timer = asyncio.create_task(self._run_timer(self._session.current_interval))

    async def _run_timer(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            self._launch_tick("polling")

    def suspend(self) -> None:
        """Cancel the regular timer but keep the session in polling mode."""
        self._cancel(self._timer)
        self._timer = None

    def resume(self) -> None:
        if self._session.is_polling and not self.timer_armed:
            self._arm()

    def schedule_retry(self, delay: float, *, source: str) -> None:
        self._cancel(self._retry)
        self._retry = asyncio.create_task(self._run_once(delay, source))

    def cancel_retry(self) -> None:
        self._cancel(self._retry)
        self._retry = None

    def schedule_refresh(self, delay: float, *, source: str = "refresh") -> None:
        self._cancel(self._refresh)
        self._refresh = asyncio.create_task(self._run_once(delay, source))

    async def _run_once(self, delay: float, source: str) -> None:
        await asyncio.sleep(delay)
        self._launch_tick(source)

    def _launch_tick(self, source: str) -> None:
        if self._session.tick_in_flight:
            logger.debug("Tick skipped (%s): previous fetch still running", source)
            return
        task = asyncio.create_task(self.tick(source))
        self._ticks.add(task)
        task.add_done_callback(self._ticks.discard)

    # ---- polling ----

    async def tick(self, source: str = "polling") -> bool:
        """One fetch/compare cycle. Returns False when skipped."""
        s = self._session
        if s.tick_in_flight:
            logger.debug("Tick skipped (%s): previous fetch still running", source)
            return False

        s.tick_in_flight = True
        try:
            logger.debug("Polling for task updates (%s)", source)
            try:
                tasks = await self._source.fetch_tasks()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                await self.connection.handle_failure(e)
                return True

            await self.connection.handle_success()

            if s.detector.observe(tasks):
                logger.info("Task changes detected (%d tasks)", len(tasks))
                s.record_change(self._clock())
                await self._hub.publish(TasksUpdated(data=tasks, source=source))
            else:
                s.no_change_count += 1

            self.adjust_interval()
            return True
        finally:
            s.tick_in_flight = False

    def compute_interval(self) -> float:
        s = self._session
        rate = s.changes_per_minute(self._clock())

        if rate > HIGH_ACTIVITY_PER_MINUTE:
            return max(s.min_interval, s.base_interval * 0.5)
        if rate > MODERATE_ACTIVITY_PER_MINUTE:
            return s.base_interval
        if s.no_change_count > IDLE_TICKS_BEFORE_BACKOFF:
            factor = min(IDLE_BACKOFF_CAP, IDLE_BACKOFF_BASE ** (s.no_change_count - IDLE_TICKS_BEFORE_BACKOFF))
            return min(s.max_interval, s.base_interval * factor)
        return s.base_interval

    def adjust_interval(self) -> float:
        s = self._session
        new_interval = self.compute_interval()

        if abs(new_interval - s.current_interval) > s.hysteresis and s.is_polling:
            logger.info("Adjusting polling interval %.1fs -> %.1fs", s.current_interval, new_interval)
            s.current_interval = new_interval
            if self.timer_armed:
                self._arm()
        else:
            s.current_interval = new_interval
        return new_interval
