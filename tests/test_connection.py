# tests/test_connection.py

from __future__ import annotations

import asyncio

import pytest

from taskmaster_sync.config import PollingSettings
from taskmaster_sync.errors import ServiceConnectionError
from taskmaster_sync.sync.notifications import NotificationHub
from taskmaster_sync.sync.poll_scheduler import AdaptivePollScheduler
from taskmaster_sync.sync.session import ConnectionStatus, PollSession

from .fakes import FakeClock, FakeTaskSource, RecordingSubscriber, task_record


def _down() -> ServiceConnectionError:
    return ServiceConnectionError("service unreachable")


def _scheduler(source, polling: PollingSettings | None = None):
    hub = NotificationHub()
    subscriber = RecordingSubscriber()
    hub.subscribe(subscriber)
    session = PollSession.from_settings(polling or PollingSettings())
    session.is_polling = True
    scheduler = AdaptivePollScheduler(session, source, hub, wall_clock=FakeClock(1000.0))
    return scheduler, subscriber


@pytest.mark.asyncio
async def test_failures_escalate_to_offline() -> None:
    tasks = [task_record("1")]
    source = FakeTaskSource(tasks, _down(), _down(), _down())
    scheduler, subscriber = _scheduler(source)
    s = scheduler.session

    await scheduler.tick()
    subscriber.clear()

    await scheduler.tick()
    assert s.status is ConnectionStatus.RECONNECTING
    assert scheduler.retry_armed
    assert not scheduler.timer_armed

    await scheduler.tick()
    await scheduler.tick()

    assert s.status is ConnectionStatus.OFFLINE
    assert not s.is_polling
    assert not scheduler.retry_armed
    assert s.offline_cache == tasks

    statuses = [m["data"]["status"] for m in subscriber.of_type("connectionStatusUpdate")]
    assert statuses == ["reconnecting", "reconnecting", "offline"]
    offline = subscriber.of_type("networkOffline")
    assert len(offline) == 1
    assert offline[0]["data"]["cachedTasks"] == tasks
    assert offline[0]["data"]["lastSuccessfulConnection"] == 1000.0
    assert offline[0]["data"]["reconnectAttempts"] == 3

    await scheduler.close()


@pytest.mark.asyncio
async def test_reconnecting_message_carries_attempt_counters() -> None:
    scheduler, subscriber = _scheduler(FakeTaskSource(_down()))

    await scheduler.tick()

    update = subscriber.of_type("connectionStatusUpdate")[0]["data"]
    assert update["reconnectAttempts"] == 1
    assert update["maxReconnectAttempts"] == 3
    assert update["isOfflineMode"] is False
    assert update["timestamp"] == 1000.0
    assert scheduler.session.error_count == 1

    await scheduler.close()


@pytest.mark.asyncio
async def test_offline_session_stays_quiet_until_manual_reconnect() -> None:
    source = FakeTaskSource(_down(), _down(), _down(), [task_record("1"), task_record("2")])
    scheduler, subscriber = _scheduler(source)
    s = scheduler.session

    for _ in range(3):
        await scheduler.tick()
    assert s.is_offline

    subscriber.clear()
    await asyncio.sleep(0.02)
    assert subscriber.messages == []
    assert not scheduler.timer_armed

    assert await scheduler.connection.attempt_reconnection()

    assert s.status is ConnectionStatus.ONLINE
    assert s.is_polling
    assert s.reconnect_attempts == 0
    assert s.offline_cache is None
    assert scheduler.timer_armed

    kinds = [m["type"] for m in subscriber.messages]
    assert kinds == ["connectionStatusUpdate", "connectionStatusUpdate", "tasksUpdated"]
    assert [m["data"]["status"] for m in subscriber.of_type("connectionStatusUpdate")] == [
        "reconnecting",
        "online",
    ]
    assert subscriber.of_type("tasksUpdated")[0]["source"] == "reconnect"

    await scheduler.close()


@pytest.mark.asyncio
async def test_reconnect_is_rejected_while_online() -> None:
    scheduler, subscriber = _scheduler(FakeTaskSource([task_record("1")]))

    assert await scheduler.connection.attempt_reconnection() is False
    assert subscriber.messages == []


@pytest.mark.asyncio
async def test_failed_manual_reconnect_returns_to_offline() -> None:
    polling = PollingSettings(max_reconnect_attempts=1)
    scheduler, _ = _scheduler(FakeTaskSource(_down()), polling)
    s = scheduler.session

    await scheduler.tick()
    assert s.is_offline

    assert await scheduler.connection.attempt_reconnection()
    assert s.is_offline
    assert s.reconnect_attempts == 1

    await scheduler.close()


@pytest.mark.asyncio
async def test_automatic_probe_restores_polling() -> None:
    polling = PollingSettings(offline_retry_interval=0.01)
    source = FakeTaskSource(_down(), _down(), _down(), [task_record("1")])
    scheduler, subscriber = _scheduler(source, polling)
    s = scheduler.session

    for _ in range(3):
        await scheduler.tick()
    assert s.is_offline
    assert scheduler.retry_armed

    await asyncio.sleep(0.05)

    assert s.status is ConnectionStatus.ONLINE
    assert s.is_polling
    assert scheduler.timer_armed
    assert subscriber.of_type("tasksUpdated")[0]["source"] == "probe"

    await scheduler.close()


@pytest.mark.asyncio
async def test_failed_probe_rearms_without_notifications() -> None:
    polling = PollingSettings(offline_retry_interval=0.01)
    source = FakeTaskSource(_down())
    scheduler, subscriber = _scheduler(source, polling)

    for _ in range(3):
        await scheduler.tick()
    subscriber.clear()
    calls = source.calls

    await asyncio.sleep(0.05)

    assert source.calls > calls
    assert scheduler.session.is_offline
    assert subscriber.messages == []

    await scheduler.close()


@pytest.mark.asyncio
async def test_retry_delay_grows_with_backoff_up_to_max(monkeypatch: pytest.MonkeyPatch) -> None:
    polling = PollingSettings(base_interval=4.0, max_interval=10.0, max_reconnect_attempts=4)
    scheduler, _ = _scheduler(FakeTaskSource(_down()), polling)
    scheduled: list[tuple[float, str]] = []
    monkeypatch.setattr(scheduler, "schedule_retry", lambda delay, *, source: scheduled.append((delay, source)))

    for _ in range(4):
        await scheduler.tick()

    assert scheduled == [(6.0, "retry"), (9.0, "retry"), (10.0, "retry")]
    assert scheduler.session.is_offline

    await scheduler.close()
