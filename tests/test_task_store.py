# tests/test_task_store.py

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from taskmaster_sync.errors import NotFoundError, StorageError, ValidationError
from taskmaster_sync.tasks.task_store import FileTaskStore, LegacyDocument

from .fakes import task_record


def _write_json(path: Path, data) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data), encoding="utf-8")


def _read_json(path: Path):
    return json.loads(path.read_text(encoding="utf-8"))


@pytest.mark.asyncio
async def test_save_load_round_trip(store: FileTaskStore) -> None:
    tasks = [task_record("1"), task_record("2", dependencies=["1"], status="done")]

    await store.save(tasks, "master")

    assert await store.load("master") == tasks
    raw = _read_json(store.tasks_dir / "tasks.json")
    assert raw["metadata"]["taskCount"] == 2
    assert raw["metadata"]["completedCount"] == 1
    assert raw["metadata"]["tags"] == ["master"]


@pytest.mark.asyncio
async def test_missing_tag_loads_empty(store: FileTaskStore) -> None:
    assert await store.load("nothing-here") == []
    assert await store.load_metadata("nothing-here") is None
    assert not await store.exists("nothing-here")


@pytest.mark.asyncio
async def test_invalid_json_is_a_storage_error(store: FileTaskStore) -> None:
    path = store.tasks_dir / "tasks.json"
    path.parent.mkdir(parents=True)
    path.write_text("{not json", encoding="utf-8")

    with pytest.raises(StorageError) as exc:
        await store.load()

    assert "Invalid JSON" in exc.value.message
    assert exc.value.path == path


@pytest.mark.asyncio
async def test_failed_write_keeps_previous_content(store: FileTaskStore) -> None:
    good = [task_record("1")]
    await store.save(good)

    with pytest.raises(StorageError):
        await store.save([task_record("2", details={1, 2})])

    assert await store.load() == good
    assert not list(store.tasks_dir.glob("*.tmp"))


@pytest.mark.asyncio
async def test_legacy_shape_is_preserved(store: FileTaskStore) -> None:
    path = store.tasks_dir / "tasks.json"
    _write_json(
        path,
        {
            "master": {"tasks": [task_record(1)], "metadata": {"created": "2024-01-01"}},
            "archive": {"tasks": [task_record(9)]},
        },
    )

    doc = await store.load_document("master")
    assert isinstance(doc, LegacyDocument)

    tasks = await store.load("master")
    tasks.append(task_record(2))
    await store.save(tasks, "master")

    raw = _read_json(path)
    assert "tasks" not in raw
    assert [t["id"] for t in raw["master"]["tasks"]] == [1, 2]
    assert raw["archive"] == {"tasks": [task_record(9)]}


@pytest.mark.asyncio
async def test_delete_legacy_tag_keeps_siblings(store: FileTaskStore) -> None:
    path = store.tasks_dir / "tasks.json"
    _write_json(path, {"master": {"tasks": [task_record(1)]}, "archive": {"tasks": []}})

    await store.delete("master")

    assert _read_json(path) == {"archive": {"tasks": []}}


@pytest.mark.asyncio
async def test_concurrent_saves_to_different_tags(store: FileTaskStore) -> None:
    master_first = [task_record(str(i)) for i in range(1, 200)]
    master_last = [task_record("1", title="Final")]
    feature = [task_record("f1"), task_record("f2")]

    first = asyncio.create_task(store.save(master_first, "master"))
    await asyncio.sleep(0)
    await asyncio.gather(store.save(feature, "feature-x"), store.save(master_last, "master"))
    await first

    assert await store.load("master") == master_last
    assert await store.load("feature-x") == feature


@pytest.mark.asyncio
async def test_queued_read_modify_writes_do_not_lose_updates(store: FileTaskStore) -> None:
    await store.save([])

    await asyncio.gather(*(store.append_tasks([task_record(str(i))]) for i in range(1, 21)))

    ids = sorted(int(t["id"]) for t in await store.load())
    assert ids == list(range(1, 21))


@pytest.mark.asyncio
async def test_close_waits_for_queued_writes(store: FileTaskStore) -> None:
    pending = [asyncio.create_task(store.save([task_record(str(i))])) for i in range(5)]
    await asyncio.sleep(0)

    await store.close()

    assert all(t.done() for t in pending)
    assert await store.load() == [task_record("4")]


@pytest.mark.asyncio
async def test_update_and_delete_task(store: FileTaskStore) -> None:
    await store.save([task_record(1), task_record(2)])

    updated = await store.update_task("1", {"title": "Changed", "id": "99"})
    assert updated["id"] == 1
    assert updated["title"] == "Changed"
    assert "updatedAt" in updated

    await store.delete_task("2")
    assert [t["id"] for t in await store.load()] == [1]

    with pytest.raises(NotFoundError):
        await store.delete_task("2")
    with pytest.raises(NotFoundError):
        await store.update_task("1", {"title": "x"}, tag="missing")


@pytest.mark.asyncio
async def test_tags_copy_rename_list(store: FileTaskStore) -> None:
    await store.save([task_record("1")], "master")
    await store.save([task_record("2")], "Feature X")

    assert (store.tasks_dir / "feature_x.json").is_file()
    assert await store.list_tags() == ["master", "feature_x"]

    await store.copy("master", "backup")
    with pytest.raises(ValidationError):
        await store.copy("master", "backup")
    with pytest.raises(NotFoundError):
        await store.copy("ghost", "other")

    await store.rename("backup", "archive")
    assert await store.list_tags() == ["master", "archive", "feature_x"]
    assert await store.load("archive") == [task_record("1")]

    with pytest.raises(NotFoundError):
        await store.delete("backup")


def test_reserved_and_empty_tag_names(store: FileTaskStore) -> None:
    with pytest.raises(ValidationError):
        store.path_for("tasks")
    with pytest.raises(ValidationError):
        store.path_for("   ")
    assert store.path_for(None).name == "tasks.json"


@pytest.mark.asyncio
async def test_backups_are_pruned(project_root: Path) -> None:
    store = FileTaskStore(project_root, auto_backup=True, max_backups=2)

    for i in range(5):
        await store.save([task_record(str(i))])

    backups = store.list_backups()
    assert len(backups) == 2
    assert all(p.name.startswith("tasks-") for p in backups)
    assert _read_json(backups[-1])["tasks"] == [task_record("3")]


@pytest.mark.asyncio
async def test_storage_stats(store: FileTaskStore) -> None:
    await store.save([task_record("1"), task_record("2")])
    await store.save([task_record("3")], "other")

    stats = await store.get_stats()
    assert stats.total_tasks == 3
    assert stats.total_tags == 2
    assert stats.last_modified.endswith("Z")


@pytest.mark.asyncio
async def test_failed_backup_does_not_block_write(project_root: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    store = FileTaskStore(project_root, auto_backup=True)
    await store.save([task_record("1")])

    def broken_copy(src, dst):
        raise PermissionError("backups/ is read-only")

    monkeypatch.setattr("taskmaster_sync.tasks.task_store.shutil.copy2", broken_copy)
    await store.save([task_record("2")])

    assert await store.load() == [task_record("2")]
    assert store.list_backups() == []


@pytest.mark.asyncio
async def test_same_tag_saves_land_in_submission_order(store: FileTaskStore, monkeypatch: pytest.MonkeyPatch) -> None:
    written: list[str] = []
    write_document = store._write_document

    def recording_write(path, doc):
        written.append(doc.payload.tasks[0]["id"])
        write_document(path, doc)

    monkeypatch.setattr(store, "_write_document", recording_write)

    await asyncio.gather(*(store.save([task_record(str(i))]) for i in range(10)))

    assert written == [str(i) for i in range(10)]
    assert await store.load() == [task_record("9")]


@pytest.mark.asyncio
async def test_unexpected_write_error_removes_temp_file(store: FileTaskStore, monkeypatch: pytest.MonkeyPatch) -> None:
    await store.save([task_record("1")])

    def failing_fsync(fd):
        raise RuntimeError("device vanished")

    monkeypatch.setattr("taskmaster_sync.tasks.task_store.os.fsync", failing_fsync)
    with pytest.raises(RuntimeError):
        await store.save([task_record("2")])

    assert not (store.tasks_dir / "tasks.json.tmp").exists()
    assert await store.load() == [task_record("1")]


@pytest.mark.asyncio
async def test_copy_checks_target_inside_its_write_queue(store: FileTaskStore) -> None:
    await store.save([task_record("1")])

    copied, saved = await asyncio.gather(
        store.copy("master", "sprint"), store.save([task_record("7")], "sprint"), return_exceptions=True
    )
    assert copied is None and saved is None
    assert await store.load("sprint") == [task_record("7")]

    saved, copied = await asyncio.gather(
        store.save([task_record("8")], "release"), store.copy("master", "release"), return_exceptions=True
    )
    assert saved is None
    assert isinstance(copied, ValidationError)
    assert await store.load("release") == [task_record("8")]
