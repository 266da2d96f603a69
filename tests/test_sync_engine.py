# tests/test_sync_engine.py

from __future__ import annotations

import asyncio

import pytest

from taskmaster_sync.config import PollingSettings
from taskmaster_sync.errors import ServiceConnectionError
from taskmaster_sync.sync.engine import SyncEngine
from taskmaster_sync.sync.sources import LocalTaskSource
from taskmaster_sync.tasks.task_service import TaskService

from .fakes import FakeTaskSource, FakeToolClient, RecordingSubscriber, task_record


@pytest.mark.asyncio
async def test_unknown_command_echoes_request_id(service: TaskService) -> None:
    engine = SyncEngine(service, LocalTaskSource(service))

    reply = await engine.handle_command({"type": "frobnicate", "requestId": "r-1"})

    assert reply == {
        "type": "error",
        "requestId": "r-1",
        "success": False,
        "error": "Unknown command: frobnicate",
        "errorCode": "UNKNOWN_COMMAND",
    }


@pytest.mark.asyncio
async def test_first_subscriber_starts_polling_last_one_stops_it(service: TaskService) -> None:
    await service.storage.save([task_record("1")])
    engine = SyncEngine(service, LocalTaskSource(service))
    first, second = RecordingSubscriber(), RecordingSubscriber()

    await engine.attach(first)
    assert engine.session is not None and engine.session.is_polling
    assert engine.scheduler.timer_armed
    assert len(first.of_type("tasksUpdated")) == 1

    await engine.attach(second)
    await engine.detach(first)
    assert engine.session is not None

    status = await engine.handle_command({"type": "getPollingStatus", "requestId": 1})
    assert status["type"] == "pollingStatus"
    assert status["data"]["isPolling"] is True
    assert status["data"]["interval"] == 5.0

    await engine.detach(second)
    assert engine.session is None

    reply = await engine.handle_command({"type": "startPolling", "requestId": 2})
    assert reply["success"] is False
    assert reply["errorCode"] == "NO_SESSION"


@pytest.mark.asyncio
async def test_task_commands_round_trip(service: TaskService) -> None:
    engine = SyncEngine(service, LocalTaskSource(service))

    added = await engine.handle_command(
        {"type": "addTask", "requestId": "a", "data": {"task": {"title": "API", "description": "Build it"}}}
    )
    assert added["type"] == "taskAdded"
    assert added["success"] is True
    assert added["data"]["id"] == "1"

    sub = await engine.handle_command(
        {"type": "addSubtask", "requestId": "b", "data": {"parentTaskId": "1", "subtaskData": {"title": "Routes"}}}
    )
    assert sub["data"]["subtask"]["id"] == 1

    rejected = await engine.handle_command(
        {"type": "updateTaskStatus", "requestId": "c", "data": {"taskId": "1", "newStatus": "done"}}
    )
    assert rejected["type"] == "taskStatusUpdated"
    assert rejected["requestId"] == "c"
    assert rejected["success"] is False
    assert rejected["errorCode"] == "TASK_STATE_ERROR"

    done_sub = await engine.handle_command(
        {"type": "updateTaskStatus", "requestId": "d", "data": {"taskId": "1.1", "newStatus": "done"}}
    )
    assert done_sub["data"] == {"taskId": "1.1", "newStatus": "done"}

    done = await engine.handle_command(
        {"type": "updateTaskStatus", "requestId": "e", "data": {"taskId": "1", "newStatus": "done"}}
    )
    assert done["success"] is True

    updated = await engine.handle_command(
        {"type": "updateTask", "requestId": "f", "data": {"taskId": "1", "updates": {"priority": "high"}}}
    )
    assert updated["data"]["task"]["priority"] == "high"

    tasks = await engine.handle_command({"type": "getTasks", "requestId": "g"})
    assert tasks["type"] == "tasksData"
    assert [t["status"] for t in tasks["data"]] == ["done"]

    deleted = await engine.handle_command({"type": "deleteTask", "requestId": "h", "data": {"taskId": "1"}})
    assert deleted["data"] == {"taskId": "1"}

    missing = await engine.handle_command({"type": "deleteTask", "requestId": "i", "data": {"taskId": "1"}})
    assert missing["errorCode"] == "NOT_FOUND"
    assert missing["details"] == {"taskId": "1", "tag": "master"}


@pytest.mark.asyncio
async def test_missing_fields_are_validation_errors(service: TaskService) -> None:
    engine = SyncEngine(service, LocalTaskSource(service))

    reply = await engine.handle_command({"type": "updateSubtaskStatus", "requestId": "x", "data": {}})

    assert reply["success"] is False
    assert reply["errorCode"] == "VALIDATION_ERROR"
    assert reply["details"] == {"missing": ["subtaskId", "newStatus"]}


@pytest.mark.asyncio
async def test_get_tasks_while_offline_returns_cached_data(service: TaskService) -> None:
    tasks = [task_record("1")]
    source = FakeTaskSource(tasks, ServiceConnectionError("down"), tasks)
    engine = SyncEngine(service, source, polling=PollingSettings(max_reconnect_attempts=1))
    subscriber = RecordingSubscriber()

    await engine.attach(subscriber)
    await engine.scheduler.tick()
    assert engine.session.is_offline

    reply = await engine.handle_command({"type": "getTasks", "requestId": "t"})
    assert reply["success"] is False
    assert reply["errorCode"] == "OFFLINE"
    assert reply["data"] == tasks

    network = await engine.handle_command({"type": "getNetworkStatus", "requestId": "n"})
    assert network["data"]["isOfflineMode"] is True
    assert network["data"]["cachedTaskCount"] == 1

    reconnect = await engine.handle_command({"type": "attemptReconnection", "requestId": "r"})
    assert reconnect["success"] is True
    assert reconnect["data"] == {"status": "online"}

    again = await engine.handle_command({"type": "attemptReconnection", "requestId": "r2"})
    assert again["errorCode"] == "NOT_OFFLINE"

    await engine.close()


@pytest.mark.asyncio
async def test_get_tasks_failure_counts_against_connection(service: TaskService) -> None:
    source = FakeTaskSource([task_record("1")], OSError("socket closed"))
    engine = SyncEngine(service, source)
    await engine.attach(RecordingSubscriber())

    reply = await engine.handle_command({"type": "getTasks", "requestId": "g"})

    assert reply["success"] is False
    assert reply["errorCode"] == "CONNECTION_ERROR"
    assert engine.session.reconnect_attempts == 1
    assert engine.session.status.value == "reconnecting"

    await engine.close()


@pytest.mark.asyncio
async def test_rewrite_schedules_refresh(service: TaskService) -> None:
    await service.storage.save([task_record("1")])
    engine = SyncEngine(
        service,
        LocalTaskSource(service),
        polling=PollingSettings(post_tool_refresh_delay=0.01),
    )
    subscriber = RecordingSubscriber()
    await engine.attach(subscriber)
    subscriber.clear()

    reply = await engine.handle_command(
        {"type": "rewriteTask", "requestId": "w", "data": {"taskId": "1", "prompt": "Add acceptance criteria"}}
    )
    assert reply["type"] == "taskRewritten"
    assert reply["data"]["details"] == "Generated details"

    await asyncio.sleep(0.05)
    refreshed = subscriber.of_type("tasksUpdated")
    assert len(refreshed) == 1
    assert refreshed[0]["source"] == "refresh"

    await engine.close()


@pytest.mark.asyncio
async def test_invoke_tool(store) -> None:
    tools = FakeToolClient(responses={"expand_task": {"expanded": 3}})
    service = TaskService(store, tool_client=tools)
    engine = SyncEngine(service, LocalTaskSource(service))

    reply = await engine.handle_command(
        {"type": "invokeTool", "requestId": "t", "data": {"toolName": "expand_task", "params": {"id": "2"}}}
    )
    assert reply == {"type": "toolInvoked", "requestId": "t", "success": True, "data": {"expanded": 3}}
    assert tools.calls == [("expand_task", {"id": "2"})]

    bare = SyncEngine(TaskService(store), LocalTaskSource(service))
    failed = await bare.handle_command({"type": "invokeTool", "data": {"toolName": "x"}})
    assert failed["errorCode"] == "CONFIG_ERROR"
    assert failed["requestId"] is None
