# src/taskmaster_sync/sync/connection.py

"""
Connection / offline state machine.

    online --failure--> reconnecting --failure (attempts >= max)--> offline
      ^                      |                                        |
      +------success---------+<------- manual attemptReconnection ----+

Timers are owned by the scheduler; this module only decides when to stop, resume or
arm the one-shot retry.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Protocol

from .notifications import ConnectionStatusUpdate, NetworkOffline, NotificationHub
from .session import ConnectionStatus, PollSession

logger = logging.getLogger(__name__)


class PollTimers(Protocol):
    def stop(self) -> None: ...
    def suspend(self) -> None: ...
    def resume(self) -> None: ...
    def schedule_retry(self, delay: float, *, source: str) -> None: ...
    def cancel_retry(self) -> None: ...
    async def tick(self, source: str = "polling") -> bool: ...


class ConnectionStateMachine:
    def __init__(
        self,
        session: PollSession,
        hub: NotificationHub,
        timers: PollTimers,
        *,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        self._session = session
        self._hub = hub
        self._timers = timers
        self._wall_clock = wall_clock

    @property
    def status(self) -> ConnectionStatus:
        return self._session.status

    async def _notify(self, status: ConnectionStatus, message: str) -> None:
        s = self._session
        await self._hub.publish(
            ConnectionStatusUpdate(
                status=status.value,
                message=message,
                attempts=s.reconnect_attempts,
                max_attempts=s.max_reconnect_attempts,
                is_offline=s.is_offline,
                timestamp=self._wall_clock(),
            )
        )

    async def handle_failure(self, error: BaseException) -> None:
        s = self._session
        s.error_count += 1

        if s.is_offline:
            # Automatic probe failed; stay offline quietly and re-arm the probe.
            logger.info("Offline probe failed: %s", error)
            self._arm_offline_probe()
            return

        s.reconnect_attempts += 1
        logger.error(
            "Fetch failed (attempt %d/%d): %s",
            s.reconnect_attempts,
            s.max_reconnect_attempts,
            error,
        )

        if s.reconnect_attempts >= s.max_reconnect_attempts:
            await self.enter_offline()
            return

        delay = min(s.max_interval, s.current_interval * s.backoff_multiplier ** s.reconnect_attempts)
        s.status = ConnectionStatus.RECONNECTING
        logger.info("Retrying in %.1fs (attempt %d)", delay, s.reconnect_attempts)
        await self._notify(
            ConnectionStatus.RECONNECTING,
            f"Reconnecting... ({s.reconnect_attempts}/{s.max_reconnect_attempts})",
        )

        self._timers.suspend()
        self._timers.cancel_retry()
        if s.is_polling:
            self._timers.schedule_retry(delay, source="retry")

    async def enter_offline(self) -> None:
        s = self._session
        logger.warning("Entering offline mode after %d failed attempts", s.reconnect_attempts)

        s.status = ConnectionStatus.OFFLINE
        self._timers.stop()
        self._timers.cancel_retry()

        if s.last_snapshot is not None:
            s.offline_cache = list(s.last_snapshot)

        await self._notify(ConnectionStatus.OFFLINE, "Offline - using cached data")
        await self._hub.publish(
            NetworkOffline(
                cached_tasks=s.offline_cache,
                last_successful_connection=s.last_successful_connection,
                reconnect_attempts=s.reconnect_attempts,
            )
        )
        self._arm_offline_probe()

    def _arm_offline_probe(self) -> None:
        interval = self._session.offline_retry_interval
        if interval > 0:
            self._timers.cancel_retry()
            self._timers.schedule_retry(interval, source="probe")

    async def handle_success(self) -> None:
        s = self._session
        previous = s.status

        s.reset_connection_counters()
        s.last_successful_connection = self._wall_clock()

        if previous == ConnectionStatus.ONLINE:
            return

        s.status = ConnectionStatus.ONLINE
        s.offline_cache = None
        if previous == ConnectionStatus.OFFLINE:
            # A successful probe brings regular polling back.
            s.is_polling = True
        self._timers.cancel_retry()
        logger.info("Connection restored (was %s)", previous.value)
        await self._notify(ConnectionStatus.ONLINE, "Connected")
        self._timers.resume()

    async def attempt_reconnection(self) -> bool:
        """Manual reconnect; only meaningful while offline."""
        s = self._session
        if not s.is_offline:
            return False

        logger.info("Attempting to reconnect from offline mode")
        s.reset_connection_counters()
        s.status = ConnectionStatus.RECONNECTING
        self._timers.cancel_retry()
        s.is_polling = True
        await self._notify(ConnectionStatus.RECONNECTING, "Attempting to reconnect...")
        await self._timers.tick("reconnect")
        return True
