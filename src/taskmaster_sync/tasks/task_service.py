# src/taskmaster_sync/tasks/task_service.py

"""
Task service facade.

The only entry point other components use for task data:
- reads: load raw records, re-validate each into a Task, filter in memory
- writes: validate through the Task entity inside the store's per-tag write queue
- tags: list/copy/rename/delete/use (active tag lives in ProjectConfig)
- collaborators: content generation and remote tools, both optional capabilities
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from ..config import ProjectConfig
from ..core.ports import ContentGenerator, TaskRecord, TaskStorage, ToolClient
from ..errors import ConfigurationError, NotFoundError, TaskMasterError, ValidationError
from .task_models import (
    DEFAULT_TAG,
    FINISHED_STATUSES,
    Subtask,
    Task,
    TaskFilter,
    TaskPriority,
    TaskStatus,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

REWRITE_SYSTEM_PROMPT = (
    "You maintain a software project's task list. Rewrite or extend the given task field "
    "according to the user's instructions. Reply with the new text only."
)


@dataclass(slots=True, frozen=True)
class InvalidRecord:
    index: int
    task_id: str | None
    message: str


@dataclass(slots=True)
class TaskListResult:
    tasks: list[Task]
    total: int
    filtered: int
    tag: str
    invalid: list[InvalidRecord] = field(default_factory=list)

    def records(self) -> list[TaskRecord]:
        return [t.to_dict() for t in self.tasks]


@dataclass(slots=True)
class TaskStats:
    total: int
    by_status: dict[str, int]
    with_subtasks: int
    blocked: int
    completion_percentage: float
    subtasks_total: int
    subtasks_done: int


def _id_sort_key(task_id: str) -> tuple[int, int, str]:
    return (0, int(task_id), "") if task_id.isdigit() else (1, 0, task_id)


def parse_subtask_ref(ref: str) -> tuple[str, int]:
    """"3.2" -> ("3", 2)."""
    parent, sep, child = str(ref).rpartition(".")
    if not sep or not parent or not child.isdigit():
        raise ValidationError(f"Invalid subtask id: {ref!r}", details={"subtaskId": ref})
    return parent, int(child)


def _find_record(records: list[TaskRecord], task_id: str, tag: str) -> tuple[int, Task]:
    for i, record in enumerate(records):
        if isinstance(record, dict) and str(record.get("id")) == str(task_id):
            return i, Task.from_dict(record)
    raise NotFoundError(
        f"Task {task_id} not found in tag {tag!r}", details={"taskId": task_id, "tag": tag}
    )


def _store_entity(records: list[TaskRecord], index: int, task: Task) -> None:
    out = task.to_dict()
    # Keep the id exactly as it was on disk (legacy files use integer ids).
    out["id"] = records[index].get("id", task.id)
    records[index] = out


class TaskService:
    def __init__(
        self,
        storage: TaskStorage,
        *,
        project_config: ProjectConfig | None = None,
        content_generator: ContentGenerator | None = None,
        tool_client: ToolClient | None = None,
        default_tag: str = DEFAULT_TAG,
    ) -> None:
        self._storage = storage
        self._config = project_config
        self._generator = content_generator
        self._tools = tool_client
        self._default_tag = default_tag
        self._initialized = False

    @property
    def storage(self) -> TaskStorage:
        return self._storage

    @property
    def active_tag(self) -> str:
        if self._config is not None:
            return self._config.active_tag
        return self._default_tag

    def _tag(self, tag: str | None) -> str:
        return tag if tag else self.active_tag

    async def initialize(self) -> None:
        if self._initialized:
            return
        await self._storage.initialize()
        self._initialized = True

    async def close(self) -> None:
        await self._storage.close()
        if self._tools is not None:
            await self._tools.aclose()
        self._initialized = False

    # ---- reads ----

    async def get_task_list(
        self,
        task_filter: TaskFilter | None = None,
        tag: str | None = None,
        *,
        include_subtasks: bool = True,
        strict: bool = False,
    ) -> TaskListResult:
        """
        Load, validate and filter.

        `total` is the number of records on disk (before validation and filtering), so
        callers can tell "nothing matches" from "empty store". Records that fail
        validation are reported one by one in `invalid` (or raise when strict=True).
        """
        tag_name = self._tag(tag)
        raw = await self._storage.load(tag_name)

        tasks: list[Task] = []
        invalid: list[InvalidRecord] = []
        for index, record in enumerate(raw):
            try:
                tasks.append(Task.from_dict(record))
            except ValidationError as e:
                if strict:
                    raise
                task_id = str(record.get("id")) if isinstance(record, dict) else None
                logger.error(
                    "Invalid task record tag=%s index=%d id=%s: %s", tag_name, index, task_id, e.message
                )
                invalid.append(InvalidRecord(index=index, task_id=task_id, message=e.message))

        if task_filter is not None:
            tasks = [t for t in tasks if task_filter.matches(t)]

        if not include_subtasks:
            for t in tasks:
                t.subtasks = []

        return TaskListResult(
            tasks=tasks, total=len(raw), filtered=len(tasks), tag=tag_name, invalid=invalid
        )

    async def get_task(self, task_id: str, tag: str | None = None) -> Task | None:
        result = await self.get_task_list(tag=tag)
        for task in result.tasks:
            if task.id == str(task_id):
                return task
        return None

    async def get_subtask(self, subtask_ref: str, tag: str | None = None) -> Subtask | None:
        parent_id, subtask_id = parse_subtask_ref(subtask_ref)
        parent = await self.get_task(parent_id, tag)
        return parent.get_subtask(subtask_id) if parent is not None else None

    async def get_tasks_by_status(
        self, status: TaskStatus | str | list[TaskStatus | str], tag: str | None = None
    ) -> list[Task]:
        statuses = status if isinstance(status, list) else [status]
        result = await self.get_task_list(TaskFilter(status=statuses), tag)
        return result.tasks

    async def get_task_stats(self, tag: str | None = None) -> TaskStats:
        result = await self.get_task_list(tag=tag)
        by_status = {s.value: 0 for s in TaskStatus}
        with_subtasks = 0
        subtasks_total = 0
        subtasks_done = 0
        for task in result.tasks:
            by_status[task.status.value] += 1
            if task.has_subtasks():
                with_subtasks += 1
            subtasks_total += len(task.subtasks)
            subtasks_done += sum(1 for s in task.subtasks if s.status == TaskStatus.DONE)

        completion = (by_status[TaskStatus.DONE.value] / result.total * 100.0) if result.total else 0.0
        return TaskStats(
            total=result.total,
            by_status=by_status,
            with_subtasks=with_subtasks,
            blocked=by_status[TaskStatus.BLOCKED.value],
            completion_percentage=round(completion, 2),
            subtasks_total=subtasks_total,
            subtasks_done=subtasks_done,
        )

    async def get_next_task(self, tag: str | None = None) -> Task | None:
        """
        Highest priority actionable task.

        Actionable: not done/cancelled/blocked, and every dependency is done/cancelled.
        A dependency on an id that does not exist is not satisfied.
        Ties: lowest numeric id first, then lexicographic.
        """
        result = await self.get_task_list(tag=tag)
        finished = {t.id for t in result.tasks if t.status in FINISHED_STATUSES}

        candidates = [
            t
            for t in result.tasks
            if t.status not in FINISHED_STATUSES
            and t.status != TaskStatus.BLOCKED
            and all(dep in finished for dep in t.dependencies)
        ]
        if not candidates:
            return None
        candidates.sort(key=lambda t: (-t.priority.rank, _id_sort_key(t.id)))
        return candidates[0]

    # ---- writes ----

    async def add_task(self, data: dict[str, Any], tag: str | None = None) -> Task:
        tag_name = self._tag(tag)
        payload = dict(data)

        def mutate(records: list[TaskRecord]) -> Task:
            existing = {str(r.get("id")) for r in records if isinstance(r, dict)}
            if payload.get("id") in (None, ""):
                numeric = [int(i) for i in existing if i.isdigit()]
                payload["id"] = str(max(numeric, default=0) + 1)
            if str(payload["id"]) in existing:
                raise ValidationError(
                    f"Task {payload['id']} already exists", details={"taskId": payload["id"], "tag": tag_name}
                )
            now = utc_now_iso()
            payload.setdefault("status", TaskStatus.PENDING.value)
            payload.setdefault("priority", TaskPriority.MEDIUM.value)
            payload.setdefault("createdAt", now)
            payload.setdefault("updatedAt", now)
            task = Task.from_dict(payload)
            records.append(task.to_dict())
            return task

        task = await self._storage.transform(mutate, tag_name, create=True)
        logger.info("Task added id=%s tag=%s", task.id, tag_name)
        return task

    async def update_task(self, task_id: str, updates: dict[str, Any], tag: str | None = None) -> Task:
        tag_name = self._tag(tag)

        def mutate(records: list[TaskRecord]) -> Task:
            index, task = _find_record(records, task_id, tag_name)
            task.apply_updates(updates)
            _store_entity(records, index, task)
            return task

        task = await self._storage.transform(mutate, tag_name)
        logger.info("Task updated id=%s fields=%s", task.id, ",".join(sorted(updates)))
        return task

    async def set_task_status(self, task_id: str, status: TaskStatus | str, tag: str | None = None) -> Task:
        tag_name = self._tag(tag)

        def mutate(records: list[TaskRecord]) -> Task:
            index, task = _find_record(records, task_id, tag_name)
            task.update_status(status)
            _store_entity(records, index, task)
            return task

        task = await self._storage.transform(mutate, tag_name)
        logger.info("Task %s -> %s", task.id, task.status.value)
        return task

    async def complete_task(self, task_id: str, tag: str | None = None) -> Task:
        tag_name = self._tag(tag)

        def mutate(records: list[TaskRecord]) -> Task:
            index, task = _find_record(records, task_id, tag_name)
            task.mark_as_complete()
            _store_entity(records, index, task)
            return task

        task = await self._storage.transform(mutate, tag_name)
        logger.info("Task %s completed", task.id)
        return task

    async def reopen_task(self, task_id: str, tag: str | None = None) -> Task:
        tag_name = self._tag(tag)

        def mutate(records: list[TaskRecord]) -> Task:
            index, task = _find_record(records, task_id, tag_name)
            task.reopen()
            _store_entity(records, index, task)
            return task

        task = await self._storage.transform(mutate, tag_name)
        logger.info("Task %s reopened", task.id)
        return task

    async def delete_task(self, task_id: str, tag: str | None = None) -> None:
        """Remove a task and every dependency pointing at it."""
        tag_name = self._tag(tag)
        target = str(task_id)

        def mutate(records: list[TaskRecord]) -> None:
            # No validation here: a malformed record must still be deletable.
            index = next(
                (i for i, r in enumerate(records) if isinstance(r, dict) and str(r.get("id")) == target),
                None,
            )
            if index is None:
                raise NotFoundError(
                    f"Task {target} not found in tag {tag_name!r}", details={"taskId": target, "tag": tag_name}
                )
            del records[index]
            for record in records:
                deps = record.get("dependencies") if isinstance(record, dict) else None
                if isinstance(deps, list) and any(str(d) == target for d in deps):
                    record["dependencies"] = [d for d in deps if str(d) != target]

        await self._storage.transform(mutate, tag_name)
        logger.info("Task deleted id=%s tag=%s", target, tag_name)

    async def add_subtask(self, parent_id: str, data: dict[str, Any], tag: str | None = None) -> Subtask:
        tag_name = self._tag(tag)

        def mutate(records: list[TaskRecord]) -> Subtask:
            index, task = _find_record(records, parent_id, tag_name)
            subtask = task.add_subtask(data)
            _store_entity(records, index, task)
            return subtask

        subtask = await self._storage.transform(mutate, tag_name)
        logger.info("Subtask added %s.%s", parent_id, subtask.id)
        return subtask

    async def set_subtask_status(
        self, subtask_ref: str, status: TaskStatus | str, tag: str | None = None
    ) -> Subtask:
        tag_name = self._tag(tag)
        parent_id, subtask_id = parse_subtask_ref(subtask_ref)

        def mutate(records: list[TaskRecord]) -> Subtask:
            index, task = _find_record(records, parent_id, tag_name)
            subtask = task.update_subtask_status(subtask_id, status)
            _store_entity(records, index, task)
            return subtask

        subtask = await self._storage.transform(mutate, tag_name)
        logger.info("Subtask %s -> %s", subtask_ref, subtask.status.value)
        return subtask

    # ---- collaborators ----

    async def rewrite_task(
        self,
        task_id: str,
        prompt: str,
        *,
        field_name: str = "details",
        append: bool = False,
        tag: str | None = None,
    ) -> Task:
        """Draft new text for one task field with the content generator, then save it."""
        if self._generator is None:
            raise ConfigurationError("No content generator configured")
        if field_name not in ("title", "description", "details", "testStrategy"):
            raise ValidationError(f"Field cannot be rewritten: {field_name}")

        task = await self.get_task(task_id, tag)
        if task is None:
            raise NotFoundError(f"Task {task_id} not found", details={"taskId": task_id})

        current = task.to_dict().get(field_name) or ""
        user_prompt = f"Task {task.id}: {task.title}\nCurrent {field_name}:\n{current}\n\nInstructions:\n{prompt}"
        text = await asyncio.to_thread(
            self._generator.generate_text, user_prompt, system_prompt=REWRITE_SYSTEM_PROMPT
        )
        text = text.strip()
        if not text:
            raise TaskMasterError("Content generator returned no text", details={"taskId": task_id})

        if append and current:
            stamp = utc_now_iso()
            text = f"{current}\n\n<info added on {stamp}>\n{text}\n</info added on {stamp}>"
        return await self.update_task(task.id, {field_name: text}, tag)

    async def invoke_tool(self, tool_name: str, params: dict[str, Any] | None = None) -> Any:
        if self._tools is None:
            raise ConfigurationError("No remote tool client configured")
        return await self._tools.invoke(tool_name, params or {})

    # ---- tags ----

    async def list_tags(self) -> list[str]:
        return await self._storage.list_tags()

    async def copy_tag(self, source_tag: str, target_tag: str) -> None:
        await self._storage.copy(source_tag, target_tag)

    async def rename_tag(self, old_tag: str, new_tag: str) -> None:
        await self._storage.rename(old_tag, new_tag)
        if self._config is not None and self.active_tag == old_tag:
            self._config.set_active_tag(new_tag)

    async def delete_tag(self, tag: str) -> None:
        await self._storage.delete(tag)
        if self._config is not None and self.active_tag == tag:
            self._config.set_active_tag(self._default_tag)

    async def use_tag(self, tag: str) -> None:
        if not await self._storage.exists(tag):
            raise NotFoundError(f"Tag {tag!r} does not exist", details={"tag": tag})
        if self._config is None:
            raise ConfigurationError("No project configuration to store the active tag")
        self._config.set_active_tag(tag)

    async def get_storage_stats(self) -> Any:
        return await self._storage.get_stats()
