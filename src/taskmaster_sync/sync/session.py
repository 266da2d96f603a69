# src/taskmaster_sync/sync/session.py

"""
Poll/connection session state.

One PollSession exists while at least one subscriber is attached. It is plain data:
the scheduler and the connection state machine are the only writers.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from enum import StrEnum

from ..config import PollingSettings
from ..core.ports import TaskRecord
from .change_detector import ChangeDetector


class ConnectionStatus(StrEnum):
    ONLINE = "online"
    RECONNECTING = "reconnecting"
    OFFLINE = "offline"


@dataclass(slots=True)
class PollSession:
    base_interval: float
    min_interval: float
    max_interval: float
    hysteresis: float
    activity_window: float
    max_reconnect_attempts: int
    backoff_multiplier: float
    offline_retry_interval: float = 0.0

    current_interval: float = 0.0
    no_change_count: int = 0
    change_timestamps: deque[float] = field(default_factory=deque)
    error_count: int = 0
    reconnect_attempts: int = 0
    last_successful_connection: float | None = None  # wall clock, seconds
    status: ConnectionStatus = ConnectionStatus.ONLINE
    detector: ChangeDetector = field(default_factory=ChangeDetector)
    offline_cache: list[TaskRecord] | None = None
    is_polling: bool = False
    tick_in_flight: bool = False

    def __post_init__(self) -> None:
        if self.current_interval <= 0:
            self.current_interval = self.base_interval

    @classmethod
    def from_settings(cls, polling: PollingSettings) -> PollSession:
        return cls(
            base_interval=polling.base_interval,
            min_interval=polling.min_interval,
            max_interval=polling.max_interval,
            hysteresis=polling.hysteresis,
            activity_window=polling.activity_window,
            max_reconnect_attempts=polling.max_reconnect_attempts,
            backoff_multiplier=polling.reconnect_backoff,
            offline_retry_interval=polling.offline_retry_interval,
        )

    @property
    def is_offline(self) -> bool:
        return self.status == ConnectionStatus.OFFLINE

    @property
    def last_snapshot(self) -> list[TaskRecord] | None:
        return self.detector.snapshot

    def record_change(self, now: float) -> None:
        self.change_timestamps.append(now)
        self.no_change_count = 0

    def prune_window(self, now: float) -> None:
        cutoff = now - self.activity_window
        while self.change_timestamps and self.change_timestamps[0] <= cutoff:
            self.change_timestamps.popleft()

    def changes_per_minute(self, now: float) -> float:
        """Changes in the trailing window divided by the time since the oldest one."""
        self.prune_window(now)
        if not self.change_timestamps:
            return 0.0
        duration = min(self.activity_window, now - self.change_timestamps[0])
        if duration <= 0:
            return 0.0
        return len(self.change_timestamps) / duration * 60.0

    def reset_connection_counters(self) -> None:
        self.error_count = 0
        self.reconnect_attempts = 0
