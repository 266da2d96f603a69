# src/taskmaster_sync/sync/sources.py

from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any

from ..core.ports import TaskRecord, ToolClient
from ..errors import RemoteToolError
from ..tasks.task_service import TaskService

logger = logging.getLogger(__name__)


class LocalTaskSource:
    """Reads the active tag straight from the task service."""

    def __init__(self, service: TaskService, *, tag: str | None = None) -> None:
        self._service = service
        self._tag = tag

    async def fetch_tasks(self) -> list[TaskRecord]:
        result = await self._service.get_task_list(tag=self._tag)
        return result.records()


def extract_tasks(payload: Any) -> list[TaskRecord]:
    """
    Accepts the shapes the remote service answers with:
    a bare list, {"tasks": [...]}, or {"data": {"tasks": [...]}}.
    """
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        data = payload.get("data", payload)
        if isinstance(data, list):
            return data
        if isinstance(data, dict):
            tasks = data.get("tasks")
            if tasks is None:
                return []
            if isinstance(tasks, list):
                return tasks
    raise RemoteToolError("Unexpected get_tasks response shape", details={"type": type(payload).__name__})


class RemoteTaskSource:
    """
    Fetches through the remote tool service (`get_tasks`).

    The tag is resolved on every fetch: `tag_provider` (usually the service's active
    tag) wins over the fixed `tag`.
    """

    def __init__(
        self,
        client: ToolClient,
        *,
        project_root: str | Path,
        tag: str | None = None,
        tag_provider: Callable[[], str | None] | None = None,
        with_subtasks: bool = True,
    ) -> None:
        self._client = client
        self._project_root = str(project_root)
        self._tag = tag
        self._tag_provider = tag_provider
        self._with_subtasks = with_subtasks

    def current_tag(self) -> str | None:
        if self._tag_provider is not None:
            return self._tag_provider()
        return self._tag

    async def fetch_tasks(self) -> list[TaskRecord]:
        params: dict[str, Any] = {"projectRoot": self._project_root, "withSubtasks": self._with_subtasks}
        tag = self.current_tag()
        if tag:
            params["tag"] = tag
        payload = await self._client.invoke("get_tasks", params)
        return extract_tasks(payload)
