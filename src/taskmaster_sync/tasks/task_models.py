# src/taskmaster_sync/tasks/task_models.py

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any

from ..errors import NotFoundError, TaskStateError, ValidationError

DEFAULT_TAG = "master"
METADATA_VERSION = "1.0.0"


class TaskStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    DONE = "done"
    DEFERRED = "deferred"
    CANCELLED = "cancelled"
    BLOCKED = "blocked"
    REVIEW = "review"

    @classmethod
    def parse(cls, raw: Any) -> TaskStatus:
        try:
            return cls(raw)
        except ValueError:
            raise ValidationError(
                f"Invalid task status: {raw!r}", details={"status": raw}
            ) from None


class TaskPriority(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]

    @classmethod
    def parse(cls, raw: Any) -> TaskPriority:
        try:
            return cls(raw)
        except ValueError:
            raise ValidationError(
                f"Invalid task priority: {raw!r}", details={"priority": raw}
            ) from None


_PRIORITY_RANK = {
    TaskPriority.LOW: 0,
    TaskPriority.MEDIUM: 1,
    TaskPriority.HIGH: 2,
    TaskPriority.CRITICAL: 3,
}

# Statuses that satisfy a dependency / finish a subtask.
FINISHED_STATUSES = frozenset({TaskStatus.DONE, TaskStatus.CANCELLED})

COMPLEXITY_LEVELS = ("low", "medium", "high")

TaskRecord = dict[str, Any]
# A task as stored on disk: camelCase keys, plain JSON values.


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _normalize_id(raw: Any, *, what: str) -> str:
    # bool is an int subclass; "true" is never a valid id.
    if isinstance(raw, bool):
        raise ValidationError(f"{what} must be a string", details={"id": raw})
    if isinstance(raw, int) and raw >= 0:
        return str(raw)
    if not isinstance(raw, str) or not raw.strip():
        raise ValidationError(
            f"{what} is required and must be a non-empty string", details={"id": raw}
        )
    return raw


def _require_text(data: dict[str, Any], key: str, *, task_id: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(
            f"Task {key} is required", details={"taskId": task_id, "field": key}
        )
    return value


def _optional_text(data: dict[str, Any], key: str, *, task_id: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValidationError(
            f"Task {key} must be a string", details={"taskId": task_id, "field": key}
        )
    return value


def _dependency_list(raw: Any, *, owner: str) -> list[str]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValidationError("dependencies must be a list", details={"owner": owner})
    return [_normalize_id(dep, what=f"Dependency of {owner}") for dep in raw]


def _validate_complexity(raw: Any, *, task_id: str) -> Any:
    if raw is None:
        return None
    if isinstance(raw, bool):
        raise ValidationError("Invalid complexity", details={"taskId": task_id})
    if isinstance(raw, (int, float)) or raw in COMPLEXITY_LEVELS:
        return raw
    raise ValidationError(
        f"Invalid complexity: {raw!r}", details={"taskId": task_id, "complexity": raw}
    )


_SUBTASK_KEYS = {"id", "title", "description", "status", "dependencies", "details", "testStrategy", "parentId"}


@dataclass(slots=True)
class Subtask:
    id: int
    title: str
    status: TaskStatus
    description: str = ""
    dependencies: list[str] = field(default_factory=list)
    details: str = ""
    test_strategy: str = ""
    parent_id: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def is_finished(self) -> bool:
        return self.status in FINISHED_STATUSES

    @classmethod
    def from_dict(cls, data: Any, *, parent_id: str) -> Subtask:
        if not isinstance(data, dict):
            raise ValidationError(
                "Subtask must be an object", details={"taskId": parent_id}
            )
        raw_id = data.get("id")
        if isinstance(raw_id, bool) or not isinstance(raw_id, int):
            raise ValidationError(
                "Subtask id must be an integer",
                details={"taskId": parent_id, "subtaskId": raw_id},
            )
        title = data.get("title")
        if not isinstance(title, str) or not title.strip():
            raise ValidationError(
                "Subtask title is required",
                details={"taskId": parent_id, "subtaskId": raw_id},
            )
        return cls(
            id=raw_id,
            title=title,
            status=TaskStatus.parse(data.get("status", TaskStatus.PENDING.value)),
            description=str(data.get("description") or ""),
            dependencies=_dependency_list(
                data.get("dependencies"), owner=f"{parent_id}.{raw_id}"
            ),
            details=str(data.get("details") or ""),
            test_strategy=str(data.get("testStrategy") or ""),
            parent_id=parent_id,
            extra={k: v for k, v in data.items() if k not in _SUBTASK_KEYS},
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = dict(self.extra)
        out.update(
            {
                "id": self.id,
                "title": self.title,
                "description": self.description,
                "status": self.status.value,
                "dependencies": list(self.dependencies),
                "details": self.details,
                "testStrategy": self.test_strategy,
            }
        )
        if self.parent_id is not None:
            out["parentId"] = self.parent_id
        return out


_TASK_KEYS = {
    "id",
    "title",
    "description",
    "status",
    "priority",
    "dependencies",
    "details",
    "testStrategy",
    "subtasks",
    "createdAt",
    "updatedAt",
    "effort",
    "actualEffort",
    "tags",
    "assignee",
    "complexity",
}

# Fields apply_updates() may change. Status has its own transition rules.
_UPDATABLE = {
    "title",
    "description",
    "priority",
    "dependencies",
    "details",
    "testStrategy",
    "effort",
    "actualEffort",
    "tags",
    "assignee",
    "complexity",
}


@dataclass(slots=True)
class Task:
    """
    Validated task entity.

    Construction goes through from_dict(), which rejects malformed records instead of
    guessing. Status changes go through update_status()/mark_as_complete()/reopen() so
    the completion rules cannot be bypassed:
    - done requires every subtask done/cancelled and the task not blocked
    - done -> pending only via reopen()
    """

    id: str
    title: str
    description: str
    status: TaskStatus
    priority: TaskPriority
    dependencies: list[str] = field(default_factory=list)
    details: str = ""
    test_strategy: str = ""
    subtasks: list[Subtask] = field(default_factory=list)

    created_at: str | None = None
    updated_at: str | None = None
    effort: float | None = None
    actual_effort: float | None = None
    tags: list[str] | None = None
    assignee: str | None = None
    complexity: Any = None

    extra: dict[str, Any] = field(default_factory=dict)

    # ---- construction / serialization ----

    @classmethod
    def from_dict(cls, data: Any) -> Task:
        if not isinstance(data, dict):
            raise ValidationError("Task record must be an object")

        task_id = _normalize_id(data.get("id"), what="Task ID")
        title = _require_text(data, "title", task_id=task_id)
        description = _require_text(data, "description", task_id=task_id)
        status = TaskStatus.parse(data.get("status"))
        priority = TaskPriority.parse(data.get("priority"))

        raw_subtasks = data.get("subtasks") or []
        if not isinstance(raw_subtasks, list):
            raise ValidationError("subtasks must be a list", details={"taskId": task_id})
        subtasks = [Subtask.from_dict(s, parent_id=task_id) for s in raw_subtasks]
        seen: set[int] = set()
        for st in subtasks:
            if st.id in seen:
                raise ValidationError(
                    f"Duplicate subtask id {st.id}",
                    details={"taskId": task_id, "subtaskId": st.id},
                )
            seen.add(st.id)

        tags = data.get("tags")
        if tags is not None and (
            not isinstance(tags, list) or not all(isinstance(t, str) for t in tags)
        ):
            raise ValidationError("tags must be a list of strings", details={"taskId": task_id})

        assignee = data.get("assignee")
        if assignee is not None and not isinstance(assignee, str):
            raise ValidationError("assignee must be a string", details={"taskId": task_id})

        return cls(
            id=task_id,
            title=title,
            description=description,
            status=status,
            priority=priority,
            dependencies=_dependency_list(data.get("dependencies"), owner=task_id),
            details=_optional_text(data, "details", task_id=task_id),
            test_strategy=_optional_text(data, "testStrategy", task_id=task_id),
            subtasks=subtasks,
            created_at=data.get("createdAt"),
            updated_at=data.get("updatedAt"),
            effort=data.get("effort"),
            actual_effort=data.get("actualEffort"),
            tags=list(tags) if tags is not None else None,
            assignee=assignee,
            complexity=_validate_complexity(data.get("complexity"), task_id=task_id),
            extra={k: v for k, v in data.items() if k not in _TASK_KEYS},
        )

    @classmethod
    def from_list(cls, records: list[Any]) -> list[Task]:
        return [cls.from_dict(r) for r in records]

    def to_dict(self) -> TaskRecord:
        out: TaskRecord = dict(self.extra)
        out.update(
            {
                "id": self.id,
                "title": self.title,
                "description": self.description,
                "status": self.status.value,
                "priority": self.priority.value,
                "dependencies": list(self.dependencies),
                "details": self.details,
                "testStrategy": self.test_strategy,
                "subtasks": [s.to_dict() for s in self.subtasks],
            }
        )
        optional = {
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "effort": self.effort,
            "actualEffort": self.actual_effort,
            "tags": list(self.tags) if self.tags is not None else None,
            "assignee": self.assignee,
            "complexity": self.complexity,
        }
        out.update({k: v for k, v in optional.items() if v is not None})
        return out

    def touch(self) -> None:
        self.updated_at = utc_now_iso()

    # ---- queries ----

    def has_dependencies(self) -> bool:
        return bool(self.dependencies)

    def has_subtasks(self) -> bool:
        return bool(self.subtasks)

    def incomplete_subtasks(self) -> list[Subtask]:
        return [s for s in self.subtasks if not s.is_finished]

    def can_complete(self) -> bool:
        if self.status in FINISHED_STATUSES or self.status == TaskStatus.BLOCKED:
            return False
        return not self.incomplete_subtasks()

    def get_subtask(self, subtask_id: int) -> Subtask | None:
        for st in self.subtasks:
            if st.id == subtask_id:
                return st
        return None

    # ---- mutations ----

    def mark_as_complete(self) -> None:
        if not self.can_complete():
            raise TaskStateError(
                "Task cannot be marked as complete",
                details={
                    "taskId": self.id,
                    "currentStatus": self.status.value,
                    "incompleteSubtasks": [s.id for s in self.incomplete_subtasks()],
                },
            )
        self.status = TaskStatus.DONE
        self.touch()

    def update_status(self, new_status: TaskStatus | str) -> None:
        status = TaskStatus.parse(new_status)
        if status == self.status:
            return
        if self.status == TaskStatus.DONE and status == TaskStatus.PENDING:
            raise TaskStateError(
                "Cannot move completed task back to pending; reopen it instead",
                details={"taskId": self.id},
            )
        if status == TaskStatus.DONE:
            self.mark_as_complete()
            return
        self.status = status
        self.touch()

    def reopen(self) -> None:
        if self.status != TaskStatus.DONE:
            raise TaskStateError(
                "Only completed tasks can be reopened",
                details={"taskId": self.id, "currentStatus": self.status.value},
            )
        self.status = TaskStatus.PENDING
        self.touch()

    def apply_updates(self, updates: dict[str, Any]) -> None:
        """Merge content fields and re-validate the whole record."""
        if "id" in updates and str(updates["id"]) != self.id:
            raise ValidationError("Task ID cannot be changed", details={"taskId": self.id})
        if "status" in updates:
            raise ValidationError(
                "Use update_status() to change status", details={"taskId": self.id}
            )
        unknown = set(updates) - _UPDATABLE - {"id"}
        if unknown:
            raise ValidationError(
                f"Fields cannot be updated: {', '.join(sorted(unknown))}",
                details={"taskId": self.id},
            )

        merged = self.to_dict()
        merged.update(updates)
        fresh = Task.from_dict(merged)
        for name in self.__slots__:
            setattr(self, name, getattr(fresh, name))
        self.touch()

    def add_subtask(self, data: dict[str, Any]) -> Subtask:
        next_id = max((s.id for s in self.subtasks), default=0) + 1
        payload = dict(data)
        payload["id"] = next_id
        payload.setdefault("status", TaskStatus.PENDING.value)
        subtask = Subtask.from_dict(payload, parent_id=self.id)
        self.subtasks.append(subtask)
        self.touch()
        return subtask

    def update_subtask_status(self, subtask_id: int, new_status: TaskStatus | str) -> Subtask:
        subtask = self.get_subtask(subtask_id)
        if subtask is None:
            raise NotFoundError(
                f"Subtask {self.id}.{subtask_id} not found",
                details={"taskId": self.id, "subtaskId": subtask_id},
            )
        subtask.status = TaskStatus.parse(new_status)
        self.touch()
        return subtask


@dataclass(slots=True)
class TaskFilter:
    status: TaskStatus | str | list[TaskStatus | str] | None = None
    priority: TaskPriority | str | list[TaskPriority | str] | None = None
    tags: list[str] | None = None
    assignee: str | None = None
    complexity: Any = None
    search: str | None = None
    has_subtasks: bool | None = None

    @staticmethod
    def _as_list(value: Any) -> list[Any]:
        return list(value) if isinstance(value, (list, tuple, set, frozenset)) else [value]

    def matches(self, task: Task) -> bool:
        if self.status is not None:
            wanted = {TaskStatus.parse(s) for s in self._as_list(self.status)}
            if task.status not in wanted:
                return False

        if self.priority is not None:
            wanted_p = {TaskPriority.parse(p) for p in self._as_list(self.priority)}
            if task.priority not in wanted_p:
                return False

        if self.tags:
            if not task.tags or not any(t in task.tags for t in self.tags):
                return False

        if self.assignee and task.assignee != self.assignee:
            return False

        if self.complexity is not None:
            if task.complexity is None or task.complexity not in self._as_list(self.complexity):
                return False

        if self.search:
            needle = self.search.lower()
            haystacks = (task.title, task.description, task.details)
            if not any(needle in h.lower() for h in haystacks):
                return False

        if self.has_subtasks is not None and task.has_subtasks() != self.has_subtasks:
            return False

        return True

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> TaskFilter:
        data = data or {}
        return cls(
            status=data.get("status"),
            priority=data.get("priority"),
            tags=data.get("tags"),
            assignee=data.get("assignee"),
            complexity=data.get("complexity"),
            search=data.get("search"),
            has_subtasks=data.get("hasSubtasks"),
        )


@dataclass(slots=True)
class TaskMetadata:
    version: str = METADATA_VERSION
    last_modified: str = ""
    task_count: int = 0
    completed_count: int = 0
    tags: list[str] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def derive(cls, tasks: list[TaskRecord], *, tag: str, base: TaskMetadata | None = None) -> TaskMetadata:
        """Recompute counts from the task array; keep unknown keys from `base`."""
        extra = dict(base.extra) if base is not None else {}
        return cls(
            version=METADATA_VERSION,
            last_modified=utc_now_iso(),
            task_count=len(tasks),
            completed_count=sum(
                1 for t in tasks if isinstance(t, dict) and t.get("status") == TaskStatus.DONE.value
            ),
            tags=[tag],
            extra=extra,
        )

    @classmethod
    def from_dict(cls, raw: Any, *, tasks: list[TaskRecord], tag: str) -> TaskMetadata:
        """Read stored metadata, reconstructing whatever is missing from the tasks."""
        raw = raw if isinstance(raw, dict) else {}
        derived = cls.derive(tasks, tag=tag)
        known = {"version", "lastModified", "taskCount", "completedCount", "tags"}
        return cls(
            version=str(raw.get("version") or derived.version),
            last_modified=str(raw.get("lastModified") or raw.get("updated") or raw.get("created") or ""),
            task_count=raw["taskCount"] if isinstance(raw.get("taskCount"), int) else derived.task_count,
            completed_count=(
                raw["completedCount"]
                if isinstance(raw.get("completedCount"), int)
                else derived.completed_count
            ),
            tags=list(raw["tags"]) if isinstance(raw.get("tags"), list) else derived.tags,
            extra={k: v for k, v in raw.items() if k not in known},
        )

    def to_dict(self) -> dict[str, Any]:
        out = dict(self.extra)
        out.update(
            {
                "version": self.version,
                "lastModified": self.last_modified,
                "taskCount": self.task_count,
                "completedCount": self.completed_count,
                "tags": list(self.tags),
            }
        )
        return out
