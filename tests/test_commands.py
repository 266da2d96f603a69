# tests/test_commands.py

from __future__ import annotations

import logging
import logging.handlers

import pytest

from taskmaster_sync.cli.commands import CommandRegistry, registry
from taskmaster_sync.cli.console import BackgroundLoop, make_console_subscriber, start_background_loop
from taskmaster_sync.core.state import AppState
from taskmaster_sync.errors import NotFoundError
from taskmaster_sync.logging_setup import _ConsoleNoiseFilter, setup_logging


@pytest.fixture()
def background():
    loop = start_background_loop()
    yield loop
    loop.stop()
    loop.join(timeout=5.0)


def test_command_registry_routes_3_and_4_params(state: AppState) -> None:
    reg = CommandRegistry()
    called = {"h3": 0, "h4": 0}

    def h3(state, args, run):
        called["h3"] += 1
        return "h3"

    def h4(state, args, run, emit):
        called["h4"] += 1
        if emit is not None:
            emit("note")
        return "h4"

    reg.register("a", h3, "a")
    reg.register("b", h4, "b", aliases=["bee"])

    notes: list[str] = []
    assert reg.handle(state, "/a x", run=lambda c: None) == "h3"
    assert reg.handle(state, "/BEE y", run=lambda c: None, emit=notes.append) == "h4"
    assert called == {"h3": 1, "h4": 1}
    assert notes == ["note"]
    assert "/b - b" in reg.build_help()


def test_command_registry_unknown_and_non_command(state: AppState) -> None:
    reg = CommandRegistry()
    assert reg.handle(state, "hello", run=lambda c: None) is None
    assert "Unknown command" in (reg.handle(state, "/nope", run=lambda c: None) or "")
    assert "Empty command" in (reg.handle(state, "/", run=lambda c: None) or "")


def test_task_errors_become_replies(state: AppState) -> None:
    reg = CommandRegistry()

    def boom(state, args, run):
        raise NotFoundError("Task 9 not found")

    reg.register("boom", boom, "boom")
    assert reg.handle(state, "/boom", run=lambda c: None) == "Error: Task 9 not found"


def test_console_commands_against_real_store(state: AppState, background: BackgroundLoop) -> None:
    run = background.run

    assert registry.handle(state, "/add Write docs | Describe the API", run) == "Added task 1: Write docs"
    assert registry.handle(state, "/sub 1 Draft outline", run) == "Added subtask 1.1: Draft outline"
    assert "Write docs" in registry.handle(state, "/list", run)
    assert registry.handle(state, "/done 1", run).startswith("Error: Task cannot be marked as complete")

    assert registry.handle(state, "/set 1.1 done", run) == "Subtask 1.1 -> done"
    assert registry.handle(state, "/done 1", run) == "Task 1 completed."
    assert registry.handle(state, "/next", run) == "No actionable task."
    assert registry.handle(state, "/reopen 1", run) == "Task 1 reopened."
    assert "Next task:" in registry.handle(state, "/next", run)

    assert "* master" in registry.handle(state, "/tags", run)
    assert registry.handle(state, "/tags copy master sprint", run) == "Copied master -> sprint"
    assert registry.handle(state, "/tags use sprint", run) == "Active tag: sprint"
    assert state.service.active_tag == "sprint"

    assert "Polling: OFF" in registry.handle(state, "/status", run)
    assert registry.handle(state, "/poll now", run) == "Fetched 1 tasks."
    assert registry.handle(state, "/rm 1", run) == "Task 1 deleted."
    assert registry.handle(state, "/show 1", run) == "Task 1 not found."

    run(state.store.close())


def test_console_subscriber_keeps_bounded_inbox(state: AppState) -> None:
    subscriber = make_console_subscriber(state, echo=False)

    for i in range(250):
        subscriber({"type": "tasksUpdated", "data": [], "source": str(i)})

    assert len(state.inbox) == 200
    assert state.inbox[-1]["source"] == "249"


def test_console_filter_quiets_poll_loop_and_libraries() -> None:
    f = _ConsoleNoiseFilter()

    def record(name: str, level: int) -> logging.LogRecord:
        return logging.LogRecord(name, level, __file__, 1, "msg", None, None)

    assert f.filter(record("taskmaster_sync.tasks.task_service", logging.INFO))
    assert not f.filter(record("taskmaster_sync.sync.poll_scheduler", logging.INFO))
    assert f.filter(record("taskmaster_sync.sync.poll_scheduler", logging.WARNING))
    assert not f.filter(record("httpx", logging.WARNING))
    assert f.filter(record("httpx", logging.ERROR))


def test_setup_logging_installs_console_and_rotating_file(tmp_path) -> None:
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    try:
        log_file = setup_logging(log_dir=tmp_path / "logs", max_bytes=1024, backup_count=2)

        assert log_file == tmp_path / "logs" / "taskmaster-sync.log"
        rotating = [h for h in root.handlers if isinstance(h, logging.handlers.RotatingFileHandler)]
        assert len(rotating) == 1
        assert rotating[0].maxBytes == 1024
        assert rotating[0].backupCount == 2
        assert logging.getLogger("httpx").level == logging.WARNING
    finally:
        for h in list(root.handlers):
            root.removeHandler(h)
            h.close()
        for h in saved_handlers:
            root.addHandler(h)
        root.setLevel(saved_level)
        logging.captureWarnings(False)
