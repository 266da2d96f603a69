# src/taskmaster_sync/sync/engine.py

"""
Sync engine: session lifecycle + command dispatch for UI collaborators.

- attach(subscriber): first subscriber creates the PollSession and starts polling
- detach(subscriber): last subscriber tears the session down (timers cancelled)
- handle_command(message): {"type", "requestId", "data"} -> response dict

Responses always echo requestId and carry success plus data or error. Task and
connection errors are reported on the response and never raised to the caller.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

from ..config import PollingSettings
from ..core.ports import Message, Subscriber, TaskSource
from ..errors import ServiceConnectionError, TaskMasterError, ValidationError
from ..tasks.task_service import TaskService
from .notifications import NotificationHub
from .poll_scheduler import AdaptivePollScheduler
from .session import PollSession

logger = logging.getLogger(__name__)

CommandHandler = Callable[[dict[str, Any]], Awaitable[Any]]


class CommandRejected(TaskMasterError):
    """A command that is understood but cannot run in the current session state."""

    error_code = "COMMAND_REJECTED"

    def __init__(self, message: str, *, error_code: str | None = None, data: Any = None) -> None:
        super().__init__(message, error_code=error_code)
        self.data = data


def _require(data: dict[str, Any], *keys: str) -> None:
    missing = [k for k in keys if data.get(k) in (None, "")]
    if missing:
        raise ValidationError(f"Missing command field(s): {', '.join(missing)}", details={"missing": missing})


class SyncEngine:
    def __init__(
        self,
        service: TaskService,
        source: TaskSource,
        *,
        polling: PollingSettings | None = None,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        self._service = service
        self._source = source
        self._polling = polling or PollingSettings()
        self._clock = clock
        self._wall_clock = wall_clock

        self.hub = NotificationHub()
        self._scheduler: AdaptivePollScheduler | None = None

        self._commands: dict[str, tuple[str, CommandHandler]] = {}
        self._register_commands()

    @property
    def service(self) -> TaskService:
        return self._service

    @property
    def session(self) -> PollSession | None:
        return self._scheduler.session if self._scheduler is not None else None

    @property
    def scheduler(self) -> AdaptivePollScheduler | None:
        return self._scheduler

    # ---- session lifecycle ----

    async def attach(self, subscriber: Subscriber, *, start_polling: bool = True) -> None:
        first = self.hub.subscribe(subscriber)
        if first and self._scheduler is None:
            session = PollSession.from_settings(self._polling)
            self._scheduler = AdaptivePollScheduler(
                session, self._source, self.hub, clock=self._clock, wall_clock=self._wall_clock
            )
            logger.info("Sync session created")
            if start_polling:
                await self._scheduler.start()

    async def detach(self, subscriber: Subscriber) -> None:
        last = self.hub.unsubscribe(subscriber)
        if last and self._scheduler is not None:
            scheduler, self._scheduler = self._scheduler, None
            await scheduler.close()
            logger.info("Sync session discarded")

    async def close(self) -> None:
        if self._scheduler is not None:
            scheduler, self._scheduler = self._scheduler, None
            await scheduler.close()
        await self._service.close()

    # ---- commands ----

    def register(self, command: str, reply_type: str, handler: CommandHandler) -> None:
        self._commands[command] = (reply_type, handler)

    def _register_commands(self) -> None:
        self.register("startPolling", "pollingStarted", self._cmd_start_polling)
        self.register("stopPolling", "pollingStopped", self._cmd_stop_polling)
        self.register("getPollingStatus", "pollingStatus", self._cmd_polling_status)
        self.register("getNetworkStatus", "networkStatus", self._cmd_network_status)
        self.register("attemptReconnection", "reconnectionAttempted", self._cmd_reconnect)
        self.register("getTasks", "tasksData", self._cmd_get_tasks)
        self.register("updateTaskStatus", "taskStatusUpdated", self._cmd_update_status)
        self.register("updateTask", "taskUpdated", self._cmd_update_task)
        self.register("addTask", "taskAdded", self._cmd_add_task)
        self.register("deleteTask", "taskDeleted", self._cmd_delete_task)
        self.register("addSubtask", "subtaskAdded", self._cmd_add_subtask)
        self.register("updateSubtaskStatus", "subtaskStatusUpdated", self._cmd_subtask_status)
        self.register("rewriteTask", "taskRewritten", self._cmd_rewrite_task)
        self.register("invokeTool", "toolInvoked", self._cmd_invoke_tool)

    async def handle_command(self, message: Message) -> Message:
        kind = str(message.get("type") or "")
        request_id = message.get("requestId")
        data = message.get("data")
        data = data if isinstance(data, dict) else {}

        entry = self._commands.get(kind)
        if entry is None:
            logger.warning("Unknown command: %r", kind)
            return {
                "type": "error",
                "requestId": request_id,
                "success": False,
                "error": f"Unknown command: {kind}",
                "errorCode": "UNKNOWN_COMMAND",
            }

        reply_type, handler = entry
        logger.debug("Command %s (requestId=%s)", kind, request_id)
        try:
            result = await handler(data)
        except TaskMasterError as e:
            logger.info("Command %s failed: %s", kind, e.message)
            if isinstance(e, ServiceConnectionError):
                await self._feed_failure(e)
            return self._error(reply_type, request_id, e)
        except Exception as e:
            logger.exception("Command %s crashed", kind)
            return {
                "type": reply_type,
                "requestId": request_id,
                "success": False,
                "error": str(e) or e.__class__.__name__,
                "errorCode": "INTERNAL_ERROR",
            }

        return {"type": reply_type, "requestId": request_id, "success": True, "data": result}

    @staticmethod
    def _error(reply_type: str, request_id: Any, error: TaskMasterError) -> Message:
        out: Message = {
            "type": reply_type,
            "requestId": request_id,
            "success": False,
            "error": error.message,
            "errorCode": error.error_code,
            "details": error.details,
        }
        if isinstance(error, CommandRejected) and error.data is not None:
            out["data"] = error.data
        return out

    def _need_scheduler(self) -> AdaptivePollScheduler:
        if self._scheduler is None:
            raise CommandRejected("No active sync session", error_code="NO_SESSION")
        return self._scheduler

    async def _feed_failure(self, error: BaseException) -> None:
        if self._scheduler is not None and not self._scheduler.session.is_offline:
            await self._scheduler.connection.handle_failure(error)

    def _schedule_refresh(self) -> None:
        if self._scheduler is not None:
            self._scheduler.schedule_refresh(self._polling.post_tool_refresh_delay)

    # ---- polling commands ----

    async def _cmd_start_polling(self, data: dict[str, Any]) -> Any:
        await self._need_scheduler().start()
        return None

    async def _cmd_stop_polling(self, data: dict[str, Any]) -> Any:
        self._need_scheduler().stop()
        return None

    async def _cmd_polling_status(self, data: dict[str, Any]) -> Any:
        s = self.session
        if s is None:
            return {"isPolling": False, "interval": None, "errorCount": 0, "status": None}
        return {
            "isPolling": s.is_polling,
            "interval": s.current_interval,
            "errorCount": s.error_count,
            "noChangeCount": s.no_change_count,
            "status": s.status.value,
        }

    async def _cmd_network_status(self, data: dict[str, Any]) -> Any:
        s = self.session
        if s is None:
            return {"isOfflineMode": False, "status": None}
        return {
            "status": s.status.value,
            "isOfflineMode": s.is_offline,
            "lastSuccessfulConnection": s.last_successful_connection,
            "reconnectAttempts": s.reconnect_attempts,
            "maxReconnectAttempts": s.max_reconnect_attempts,
            "cachedTaskCount": len(s.offline_cache or []),
        }

    async def _cmd_reconnect(self, data: dict[str, Any]) -> Any:
        scheduler = self._need_scheduler()
        if not await scheduler.connection.attempt_reconnection():
            raise CommandRejected("Not in offline mode", error_code="NOT_OFFLINE")
        return {"status": scheduler.session.status.value}

    async def _cmd_get_tasks(self, data: dict[str, Any]) -> Any:
        s = self.session
        if s is not None and s.is_offline:
            raise CommandRejected("Offline - using cached data", error_code="OFFLINE", data=s.offline_cache or [])
        try:
            return await self._source.fetch_tasks()
        except TaskMasterError:
            raise
        except Exception as e:
            # handle_command feeds ServiceConnectionError to the state machine.
            raise ServiceConnectionError(f"Failed to get tasks: {e}") from e

    # ---- task commands ----

    async def _cmd_update_status(self, data: dict[str, Any]) -> Any:
        _require(data, "taskId", "newStatus")
        task_id = str(data["taskId"])
        if "." in task_id:
            subtask = await self._service.set_subtask_status(task_id, data["newStatus"], data.get("tag"))
            return {"taskId": task_id, "newStatus": subtask.status.value}
        task = await self._service.set_task_status(task_id, data["newStatus"], data.get("tag"))
        return {"taskId": task.id, "newStatus": task.status.value}

    async def _cmd_update_task(self, data: dict[str, Any]) -> Any:
        _require(data, "taskId", "updates")
        updates = data["updates"]
        if not isinstance(updates, dict):
            raise ValidationError("updates must be an object")
        task = await self._service.update_task(str(data["taskId"]), updates, data.get("tag"))
        return {"taskId": task.id, "task": task.to_dict()}

    async def _cmd_add_task(self, data: dict[str, Any]) -> Any:
        _require(data, "task")
        payload = data["task"]
        if not isinstance(payload, dict):
            raise ValidationError("task must be an object")
        task = await self._service.add_task(payload, data.get("tag"))
        return task.to_dict()

    async def _cmd_delete_task(self, data: dict[str, Any]) -> Any:
        _require(data, "taskId")
        await self._service.delete_task(str(data["taskId"]), data.get("tag"))
        return {"taskId": str(data["taskId"])}

    async def _cmd_add_subtask(self, data: dict[str, Any]) -> Any:
        _require(data, "parentTaskId", "subtaskData")
        subtask_data = data["subtaskData"]
        if not isinstance(subtask_data, dict):
            raise ValidationError("subtaskData must be an object")
        subtask = await self._service.add_subtask(str(data["parentTaskId"]), subtask_data, data.get("tag"))
        return {"parentTaskId": str(data["parentTaskId"]), "subtask": subtask.to_dict()}

    async def _cmd_subtask_status(self, data: dict[str, Any]) -> Any:
        _require(data, "subtaskId", "newStatus")
        subtask = await self._service.set_subtask_status(str(data["subtaskId"]), data["newStatus"], data.get("tag"))
        return {"subtaskId": str(data["subtaskId"]), "newStatus": subtask.status.value}

    # ---- collaborator commands ----

    async def _cmd_rewrite_task(self, data: dict[str, Any]) -> Any:
        _require(data, "taskId", "prompt")
        options = data.get("options") if isinstance(data.get("options"), dict) else {}
        try:
            task = await self._service.rewrite_task(
                str(data["taskId"]),
                str(data["prompt"]),
                field_name=str(options.get("field", "details")),
                append=bool(options.get("append", False)),
                tag=data.get("tag"),
            )
        finally:
            self._schedule_refresh()
        return task.to_dict()

    async def _cmd_invoke_tool(self, data: dict[str, Any]) -> Any:
        _require(data, "toolName")
        params = data.get("params") if isinstance(data.get("params"), dict) else {}
        try:
            return await self._service.invoke_tool(str(data["toolName"]), params)
        finally:
            self._schedule_refresh()
