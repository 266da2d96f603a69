# src/taskmaster_sync/errors.py

"""
Exception hierarchy.

Every error raised on purpose by this package derives from TaskMasterError so callers
(the sync engine, the console) can catch one type and still read a stable error_code.

- ValidationError: a task record violates the schema (never coerced, never retried)
- NotFoundError: the targeted task id / tag does not exist
- StorageError: I/O failure other than "file absent" (permissions, disk, bad JSON)
- ServiceConnectionError: store/service unreachable; drives the offline state machine
- RemoteToolError: the remote side answered, but with an error
- TaskStateError: business-rule violation (e.g. completing a task with open subtasks)
- ConfigurationError: unreadable project configuration
"""

from __future__ import annotations

from pathlib import Path
from typing import Any


class TaskMasterError(Exception):
    """Base class with a stable error code and structured details."""

    error_code = "TASKMASTER_ERROR"

    def __init__(
        self,
        message: str,
        *,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.message = message
        if error_code is not None:
            self.error_code = error_code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.__class__.__name__,
            "code": self.error_code,
            "message": self.message,
            "details": dict(self.details),
        }


class ValidationError(TaskMasterError):
    error_code = "VALIDATION_ERROR"


class NotFoundError(TaskMasterError):
    error_code = "NOT_FOUND"


class StorageError(TaskMasterError):
    """I/O failure distinct from "file does not exist"."""

    error_code = "STORAGE_ERROR"

    def __init__(
        self,
        message: str,
        *,
        path: str | Path | None = None,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.path = Path(path) if path is not None else None
        merged = dict(details or {})
        if self.path is not None:
            merged.setdefault("path", str(self.path))
        super().__init__(message, error_code=error_code, details=merged)


class ServiceConnectionError(TaskMasterError, ConnectionError):
    """The task service / remote endpoint could not be reached."""

    error_code = "CONNECTION_ERROR"


class RemoteToolError(TaskMasterError):
    error_code = "REMOTE_TOOL_ERROR"


class TaskStateError(TaskMasterError):
    error_code = "TASK_STATE_ERROR"


class ConfigurationError(TaskMasterError):
    error_code = "CONFIG_ERROR"
