# src/taskmaster_sync/core/ports.py

"""
Ports (interfaces) used by the core.

The sync engine and the task service depend on Protocols instead of concrete classes.
This keeps the store, the remote service and the content providers swappable and makes
testing easier (see tests/fakes.py).
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Protocol

TaskRecord = dict[str, Any]
# Plain JSON task as stored on disk / sent to subscribers.

Message = dict[str, Any]
# Wire message for the UI collaborator: {"type": "...", "data": {...}, "requestId": "..."}.


class TaskStorage(Protocol):
    """Persistence contract consumed by TaskService (FileTaskStore implements it)."""

    async def initialize(self) -> None: ...
    async def close(self) -> None: ...

    async def load(self, tag: str | None = None) -> list[TaskRecord]: ...
    async def save(self, tasks: list[TaskRecord], tag: str | None = None) -> None: ...
    async def exists(self, tag: str | None = None) -> bool: ...
    async def list_tags(self) -> list[str]: ...
    async def rename(self, old_tag: str, new_tag: str) -> None: ...
    async def copy(self, source_tag: str, target_tag: str) -> None: ...
    async def delete(self, tag: str) -> None: ...
    async def load_metadata(self, tag: str | None = None) -> Any: ...
    async def transform(
        self,
        mutate: Callable[[list[TaskRecord]], Any],
        tag: str | None = None,
        *,
        create: bool = False,
    ) -> Any: ...
    async def append_tasks(self, tasks: list[TaskRecord], tag: str | None = None) -> int: ...
    async def update_task(
        self,
        task_id: str,
        updates: dict[str, Any],
        tag: str | None = None,
    ) -> TaskRecord: ...
    async def delete_task(self, task_id: str, tag: str | None = None) -> None: ...
    async def get_stats(self) -> Any: ...


class TaskSource(Protocol):
    """What the poll scheduler fetches. Raising means "unreachable"."""

    async def fetch_tasks(self) -> list[TaskRecord]: ...


class ToolClient(Protocol):
    """Opaque remote capability: invoke(toolName, params) -> result | error."""

    async def invoke(self, tool_name: str, params: dict[str, Any] | None = None) -> Any: ...
    async def aclose(self) -> None: ...


class ContentGenerator(Protocol):
    """Drafts or rewrites task text (OpenAI-compatible client or offline fallback)."""

    def generate_text(self, prompt: str, *, system_prompt: str) -> str: ...


class Subscriber(Protocol):
    """
    Receives outward notifications (tasksUpdated, connectionStatusUpdate, networkOffline).

    May be sync or async; exceptions are logged by the hub and never reach the engine.
    """

    def __call__(self, message: Message) -> Awaitable[None] | None: ...
