# src/taskmaster_sync/tasks/task_store.py

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import re
import shutil
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, TypeVar

from ..errors import NotFoundError, StorageError, ValidationError
from .task_models import DEFAULT_TAG, TaskMetadata, TaskRecord, utc_now_iso

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_FILENAME = "tasks.json"
BACKUP_DIRNAME = "backups"
_RESERVED_STEMS = {"tasks"}
_TAG_UNSAFE = re.compile(r"[^a-zA-Z0-9_-]")


# --------------------------------------------------------------------------------------
# Document codec: the two on-disk shapes are decoded here and nowhere else.
# --------------------------------------------------------------------------------------


@dataclass(slots=True)
class TagPayload:
    tasks: list[TaskRecord]
    metadata: TaskMetadata


@dataclass(slots=True)
class StandardDocument:
    """`{"tasks": [...], "metadata": {...}}`"""

    payload: TagPayload
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class LegacyDocument:
    """`{"<tag>": {"tasks": [...], "metadata": {...}}, ...other tags}`"""

    key: str
    payload: TagPayload
    siblings: dict[str, Any] = field(default_factory=dict)


StorageDocument = StandardDocument | LegacyDocument


def _decode_payload(body: dict[str, Any], *, tag: str, path: Path) -> TagPayload:
    tasks = body.get("tasks", [])
    if not isinstance(tasks, list):
        raise StorageError(f"Malformed tasks document {path}: 'tasks' is not a list", path=path)
    return TagPayload(
        tasks=tasks,
        metadata=TaskMetadata.from_dict(body.get("metadata"), tasks=tasks, tag=tag),
    )


def decode_document(raw: Any, *, tag: str, path: Path) -> StorageDocument:
    if not isinstance(raw, dict):
        raise StorageError(f"Malformed tasks document {path}: top level is not an object", path=path)

    nested = raw.get(tag)
    # A top-level "tasks" list always means the standard shape, even for a tag named
    # like one of its keys (e.g. "metadata").
    if isinstance(nested, dict) and not isinstance(raw.get("tasks"), list):
        return LegacyDocument(
            key=tag,
            payload=_decode_payload(nested, tag=tag, path=path),
            siblings={k: v for k, v in raw.items() if k != tag},
        )

    return StandardDocument(
        payload=_decode_payload(raw, tag=tag, path=path),
        extra={k: v for k, v in raw.items() if k not in ("tasks", "metadata")},
    )


def encode_document(doc: StorageDocument) -> dict[str, Any]:
    body = {"tasks": doc.payload.tasks, "metadata": doc.payload.metadata.to_dict()}
    if isinstance(doc, LegacyDocument):
        out = dict(doc.siblings)
        out[doc.key] = body
        return out
    out = dict(doc.extra)
    out.update(body)
    return out


def compose_document(existing: StorageDocument | None, tasks: list[TaskRecord], *, tag: str) -> StorageDocument:
    """Build the next version of a document, keeping the shape already on disk."""
    base = existing.payload.metadata if existing is not None else None
    payload = TagPayload(tasks=tasks, metadata=TaskMetadata.derive(tasks, tag=tag, base=base))
    if isinstance(existing, LegacyDocument):
        return LegacyDocument(key=existing.key, payload=payload, siblings=existing.siblings)
    if isinstance(existing, StandardDocument):
        return StandardDocument(payload=payload, extra=existing.extra)
    return StandardDocument(payload=payload)


@dataclass(slots=True, frozen=True)
class StorageStats:
    total_tasks: int
    total_tags: int
    last_modified: str


# --------------------------------------------------------------------------------------
# Store
# --------------------------------------------------------------------------------------


class FileTaskStore:
    """
    JSON file task store, one document per tag.

    Layout:
    - <root>/.taskmaster/tasks/tasks.json     default tag
    - <root>/.taskmaster/tasks/<tag>.json     other tags (sanitized)
    - <root>/.taskmaster/tasks/backups/       <stem>-<timestamp>.json

    Writes:
    - serialized to a temp sibling, fsynced, then os.replace()d over the target
    - every write job for one path runs after the previous job for that path
      (read-modify-write included); different paths do not wait on each other
    - queued jobs are shielded from caller cancellation; close() drains them

    File I/O runs in worker threads so the event loop is never blocked.
    """

    def __init__(
        self,
        project_root: str | Path,
        *,
        auto_backup: bool = False,
        max_backups: int = 10,
        default_tag: str = DEFAULT_TAG,
    ) -> None:
        self._project_root = Path(project_root)
        self._tasks_dir = self._project_root / ".taskmaster" / "tasks"
        self._backups_dir = self._tasks_dir / BACKUP_DIRNAME
        self._auto_backup = auto_backup
        self._max_backups = max(0, int(max_backups))
        self._default_tag = default_tag

        self._write_queue: dict[Path, asyncio.Task[Any]] = {}
        self._pending: set[asyncio.Task[Any]] = set()

    @property
    def tasks_dir(self) -> Path:
        return self._tasks_dir

    @property
    def backups_dir(self) -> Path:
        return self._backups_dir

    @property
    def default_tag(self) -> str:
        return self._default_tag

    # ---- lifecycle ----

    async def initialize(self) -> None:
        try:
            await asyncio.to_thread(self._tasks_dir.mkdir, parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(
                f"Failed to create storage directory: {e}", path=self._tasks_dir
            ) from e
        logger.info(
            "FileTaskStore ready dir=%s auto_backup=%s max_backups=%s",
            self._tasks_dir,
            self._auto_backup,
            self._max_backups,
        )

    async def close(self) -> None:
        """Wait for every queued write; a half-written file is never left behind."""
        while self._pending:
            pending = list(self._pending)
            logger.debug("FileTaskStore close: waiting for %d queued writes", len(pending))
            await asyncio.gather(*pending, return_exceptions=True)

    # ---- path helpers ----

    @staticmethod
    def sanitize_tag(tag: str) -> str:
        return _TAG_UNSAFE.sub("_", tag).lower()

    def _tag_name(self, tag: str | None) -> str:
        name = self._default_tag if tag is None else tag
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("Tag name must be a non-empty string", details={"tag": tag})
        return name

    def path_for(self, tag: str | None = None) -> Path:
        name = self._tag_name(tag)
        if name == self._default_tag:
            return self._tasks_dir / DEFAULT_FILENAME
        stem = self.sanitize_tag(name)
        if stem in _RESERVED_STEMS:
            raise ValidationError(f"Tag name is reserved: {name!r}", details={"tag": name})
        return self._tasks_dir / f"{stem}.json"

    # ---- low-level helpers (run in worker threads) ----

    @staticmethod
    def _read_raw(path: Path) -> Any | None:
        try:
            content = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StorageError(f"Failed to read file {path}: {e}", path=path) from e
        try:
            return json.loads(content)
        except json.JSONDecodeError as e:
            raise StorageError(f"Invalid JSON in file {path}: {e}", path=path) from e

    def _read_document(self, path: Path, tag: str) -> StorageDocument | None:
        raw = self._read_raw(path)
        if raw is None:
            return None
        return decode_document(raw, tag=tag, path=path)

    def _read_existing_for_write(self, path: Path, tag: str) -> StorageDocument | None:
        # Shape detection before a full overwrite: an unreadable file is replaced
        # with the standard shape rather than blocking the save.
        try:
            return self._read_document(path, tag)
        except StorageError:
            logger.warning("Existing file %s is unreadable; rewriting in standard shape", path)
            return None

    def _write_raw(self, path: Path, data: dict[str, Any]) -> None:
        tmp = path.with_name(path.name + ".tmp")
        try:
            content = json.dumps(data, ensure_ascii=False, indent=2)
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp, "w", encoding="utf-8") as fh:
                fh.write(content)
                fh.write("\n")
                fh.flush()
                os.fsync(fh.fileno())

            if self._auto_backup and path.exists():
                self._create_backup(path)

            os.replace(tmp, path)
        except BaseException as e:
            with contextlib.suppress(OSError):
                tmp.unlink()
            if isinstance(e, (OSError, TypeError, ValueError)):
                raise StorageError(f"Failed to write file {path}: {e}", path=path) from e
            raise

    def _write_document(self, path: Path, doc: StorageDocument) -> None:
        self._write_raw(path, encode_document(doc))
        logger.debug(
            "Wrote %s shape=%s tasks=%d",
            path.name,
            "legacy" if isinstance(doc, LegacyDocument) else "standard",
            len(doc.payload.tasks),
        )

    def _backup_pattern(self, stem: str) -> re.Pattern[str]:
        return re.compile(rf"^{re.escape(stem)}-\d{{8}}T\d{{12}}Z\.json$")

    def _create_backup(self, path: Path) -> None:
        try:
            self._backups_dir.mkdir(parents=True, exist_ok=True)
            stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
            target = self._backups_dir / f"{path.stem}-{stamp}.json"
            shutil.copy2(path, target)
            logger.debug("Backup created %s", target.name)
            if self._max_backups:
                self._prune_backups(path.stem)
        except OSError:
            logger.warning("Backup of %s failed; continuing with write", path, exc_info=True)

    def _prune_backups(self, stem: str) -> None:
        pattern = self._backup_pattern(stem)
        backups = sorted(p for p in self._backups_dir.iterdir() if pattern.match(p.name))
        for old in backups[: max(0, len(backups) - self._max_backups)]:
            try:
                old.unlink()
                logger.debug("Backup pruned %s", old.name)
            except OSError:
                logger.warning("Failed to prune backup %s", old, exc_info=True)

    def list_backups(self, tag: str | None = None) -> list[Path]:
        """Backups for one tag, oldest first."""
        stem = self.path_for(tag).stem
        if not self._backups_dir.is_dir():
            return []
        pattern = self._backup_pattern(stem)
        return sorted(p for p in self._backups_dir.iterdir() if pattern.match(p.name))

    # ---- write queue ----

    async def _enqueue(self, path: Path, job: Callable[[], T]) -> T:
        previous = self._write_queue.get(path)
        task: asyncio.Task[T] = asyncio.create_task(
            self._run_job(previous, job), name=f"taskstore-write:{path.name}"
        )
        self._write_queue[path] = task
        self._pending.add(task)
        task.add_done_callback(lambda t, p=path: self._job_finished(p, t))
        return await asyncio.shield(task)

    @staticmethod
    async def _run_job(previous: asyncio.Task[Any] | None, job: Callable[[], T]) -> T:
        if previous is not None:
            # The previous job's outcome belongs to its own caller.
            await asyncio.wait([previous])
        return await asyncio.to_thread(job)

    def _job_finished(self, path: Path, task: asyncio.Task[Any]) -> None:
        self._pending.discard(task)
        if self._write_queue.get(path) is task:
            del self._write_queue[path]
        if not task.cancelled() and task.exception() is not None:
            logger.debug("Write job for %s failed: %s", path.name, task.exception())

    def _modify(self, path: Path, tag: str, mutate: Callable[[list[TaskRecord]], T]) -> Callable[[], T]:
        """Read-modify-write job; the file must already exist."""

        def job() -> T:
            existing = self._read_document(path, tag)
            if existing is None:
                raise NotFoundError(f"Tag {tag!r} does not exist", details={"tag": tag})
            tasks = list(existing.payload.tasks)
            result = mutate(tasks)
            self._write_document(path, compose_document(existing, tasks, tag=tag))
            return result

        return job

    # ---- public API ----

    async def load(self, tag: str | None = None) -> list[TaskRecord]:
        name = self._tag_name(tag)
        path = self.path_for(name)
        doc = await asyncio.to_thread(self._read_document, path, name)
        if doc is None:
            return []
        return doc.payload.tasks

    async def load_document(self, tag: str | None = None) -> StorageDocument | None:
        name = self._tag_name(tag)
        return await asyncio.to_thread(self._read_document, self.path_for(name), name)

    async def save(self, tasks: list[TaskRecord], tag: str | None = None) -> None:
        name = self._tag_name(tag)
        path = self.path_for(name)
        snapshot = list(tasks)

        def job() -> None:
            existing = self._read_existing_for_write(path, name)
            self._write_document(path, compose_document(existing, snapshot, tag=name))

        await self._enqueue(path, job)

    async def exists(self, tag: str | None = None) -> bool:
        path = self.path_for(tag)
        return await asyncio.to_thread(path.is_file)

    async def list_tags(self) -> list[str]:
        def scan() -> list[str]:
            try:
                names = sorted(p.name for p in self._tasks_dir.iterdir() if p.is_file())
            except FileNotFoundError:
                return []
            except OSError as e:
                raise StorageError(f"Failed to list tags: {e}", path=self._tasks_dir) from e
            tags: list[str] = []
            for name in names:
                if not name.endswith(".json"):
                    continue
                if name == DEFAULT_FILENAME:
                    tags.insert(0, self._default_tag)
                else:
                    tags.append(name[: -len(".json")])
            return tags

        return await asyncio.to_thread(scan)

    async def load_metadata(self, tag: str | None = None) -> TaskMetadata | None:
        doc = await self.load_document(tag)
        return doc.payload.metadata if doc is not None else None

    async def transform(
        self,
        mutate: Callable[[list[TaskRecord]], T],
        tag: str | None = None,
        *,
        create: bool = False,
    ) -> T:
        """
        Run `mutate(tasks)` inside the tag's write queue and persist the list it edited.

        `mutate` runs in a worker thread against the freshly read records, so rules it
        checks cannot be invalidated by an earlier queued write. Anything it raises
        aborts the write. With create=True a missing file starts as an empty list.
        """
        name = self._tag_name(tag)
        path = self.path_for(name)
        if not create:
            return await self._enqueue(path, self._modify(path, name, mutate))

        def job() -> T:
            existing = self._read_document(path, name)
            tasks = list(existing.payload.tasks) if existing is not None else []
            result = mutate(tasks)
            self._write_document(path, compose_document(existing, tasks, tag=name))
            return result

        return await self._enqueue(path, job)

    async def append_tasks(self, tasks: list[TaskRecord], tag: str | None = None) -> int:
        """Append records whose id is not present yet; returns how many were added."""
        name = self._tag_name(tag)
        path = self.path_for(name)
        incoming = list(tasks)

        def job() -> int:
            existing = self._read_document(path, name)
            current = list(existing.payload.tasks) if existing is not None else []
            known = {str(t.get("id")) for t in current if isinstance(t, dict)}
            added = [t for t in incoming if str(t.get("id")) not in known]
            current.extend(added)
            self._write_document(path, compose_document(existing, current, tag=name))
            return len(added)

        return await self._enqueue(path, job)

    async def update_task(self, task_id: str, updates: dict[str, Any], tag: str | None = None) -> TaskRecord:
        name = self._tag_name(tag)
        path = self.path_for(name)
        patch = dict(updates)

        def mutate(tasks: list[TaskRecord]) -> TaskRecord:
            for i, record in enumerate(tasks):
                if isinstance(record, dict) and str(record.get("id")) == str(task_id):
                    merged = {**record, **patch}
                    merged["id"] = record.get("id")
                    merged["updatedAt"] = utc_now_iso()
                    tasks[i] = merged
                    return merged
            raise NotFoundError(
                f"Task {task_id} not found in tag {name!r}", details={"taskId": task_id, "tag": name}
            )

        return await self._enqueue(path, self._modify(path, name, mutate))

    async def delete_task(self, task_id: str, tag: str | None = None) -> None:
        name = self._tag_name(tag)
        path = self.path_for(name)

        def mutate(tasks: list[TaskRecord]) -> None:
            for i, record in enumerate(tasks):
                if isinstance(record, dict) and str(record.get("id")) == str(task_id):
                    del tasks[i]
                    return
            raise NotFoundError(
                f"Task {task_id} not found in tag {name!r}", details={"taskId": task_id, "tag": name}
            )

        await self._enqueue(path, self._modify(path, name, mutate))

    async def delete(self, tag: str) -> None:
        name = self._tag_name(tag)
        path = self.path_for(name)

        def job() -> None:
            existing = self._read_document(path, name)
            if existing is None:
                raise NotFoundError(f"Tag {name!r} does not exist", details={"tag": name})
            if isinstance(existing, LegacyDocument) and existing.siblings:
                # Shared legacy file: drop only this tag's key.
                self._write_raw(path, dict(existing.siblings))
                return
            try:
                path.unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                raise StorageError(f"Failed to delete {path}: {e}", path=path) from e

        await self._enqueue(path, job)
        logger.info("Tag deleted tag=%s", name)

    async def copy(self, source_tag: str, target_tag: str) -> None:
        src = self._tag_name(source_tag)
        dst = self._tag_name(target_tag)
        src_path = self.path_for(src)
        dst_path = self.path_for(dst)

        def job() -> int:
            # Existence check and write share the target's queue slot.
            source = self._read_document(src_path, src)
            if source is None:
                raise NotFoundError(f"Tag {src!r} does not exist", details={"tag": src})
            if dst_path.is_file():
                raise ValidationError(f"Tag {dst!r} already exists", details={"tag": dst})
            tasks = list(source.payload.tasks)
            self._write_document(dst_path, compose_document(None, tasks, tag=dst))
            return len(tasks)

        copied = await self._enqueue(dst_path, job)
        logger.info("Tag copied %s -> %s (%d tasks)", src, dst, copied)

    async def rename(self, old_tag: str, new_tag: str) -> None:
        await self.copy(old_tag, new_tag)
        await self.delete(old_tag)
        logger.info("Tag renamed %s -> %s", old_tag, new_tag)

    async def get_stats(self) -> StorageStats:
        tags = await self.list_tags()
        total_tasks = 0
        latest = 0.0
        for tag in tags:
            path = self.path_for(tag)
            try:
                mtime = (await asyncio.to_thread(path.stat)).st_mtime
            except FileNotFoundError:
                continue
            except OSError as e:
                raise StorageError(f"Failed to stat {path}: {e}", path=path) from e
            total_tasks += len(await self.load(tag))
            latest = max(latest, mtime)

        last_modified = (
            datetime.fromtimestamp(latest, timezone.utc).isoformat().replace("+00:00", "Z")
            if latest
            else utc_now_iso()
        )
        return StorageStats(total_tasks=total_tasks, total_tags=len(tags), last_modified=last_modified)
