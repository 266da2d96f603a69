# src/taskmaster_sync/sync/notifications.py

from __future__ import annotations

import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import Any

from ..core.ports import Message, Subscriber, TaskRecord

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class TasksUpdated:
    data: list[TaskRecord]
    source: str = "polling"

    def to_message(self) -> Message:
        return {"type": "tasksUpdated", "data": self.data, "source": self.source}


@dataclass(slots=True, frozen=True)
class ConnectionStatusUpdate:
    status: str
    message: str
    attempts: int
    max_attempts: int
    is_offline: bool
    timestamp: float = field(default_factory=time.time)

    def to_message(self) -> Message:
        return {
            "type": "connectionStatusUpdate",
            "data": {
                "status": self.status,
                "message": self.message,
                "timestamp": self.timestamp,
                "isOfflineMode": self.is_offline,
                "reconnectAttempts": self.attempts,
                "maxReconnectAttempts": self.max_attempts,
            },
        }


@dataclass(slots=True, frozen=True)
class NetworkOffline:
    cached_tasks: list[TaskRecord] | None
    last_successful_connection: float | None
    reconnect_attempts: int

    def to_message(self) -> Message:
        return {
            "type": "networkOffline",
            "data": {
                "cachedTasks": self.cached_tasks,
                "lastSuccessfulConnection": self.last_successful_connection,
                "reconnectAttempts": self.reconnect_attempts,
            },
        }


Notification = TasksUpdated | ConnectionStatusUpdate | NetworkOffline


class NotificationHub:
    """
    Fan-out to attached subscribers.

    Delivery is best-effort: a subscriber that raises is logged and skipped, the
    remaining subscribers still receive the message.
    """

    def __init__(self) -> None:
        self._subscribers: list[Subscriber] = []

    def __len__(self) -> int:
        return len(self._subscribers)

    def subscribe(self, subscriber: Subscriber) -> bool:
        """Returns True when this is the first subscriber."""
        if subscriber not in self._subscribers:
            self._subscribers.append(subscriber)
        return len(self._subscribers) == 1

    def unsubscribe(self, subscriber: Subscriber) -> bool:
        """Returns True when no subscribers remain."""
        if subscriber in self._subscribers:
            self._subscribers.remove(subscriber)
        return not self._subscribers

    async def publish(self, notification: Notification | Message) -> None:
        message: Message
        if isinstance(notification, dict):
            message = notification
        else:
            message = notification.to_message()

        for subscriber in list(self._subscribers):
            try:
                result: Any = subscriber(message)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Subscriber failed on %s", message.get("type"))
