# tests/conftest.py

from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace

import pytest

from taskmaster_sync.config import PollingSettings, ProjectConfig
from taskmaster_sync.core.state import AppState
from taskmaster_sync.sync.engine import SyncEngine
from taskmaster_sync.sync.sources import LocalTaskSource
from taskmaster_sync.tasks.task_service import TaskService
from taskmaster_sync.tasks.task_store import FileTaskStore

from .fakes import FakeContentGenerator


@pytest.fixture()
def project_root(tmp_path: Path) -> Path:
    return tmp_path


@pytest.fixture()
def settings(project_root: Path) -> SimpleNamespace:
    """
    Minimal settings object compatible with AppState and the CLI.

    We intentionally use a SimpleNamespace rather than importing real config,
    to keep unit tests isolated from the developer's environment / .env.
    """
    return SimpleNamespace(
        app_name="taskmaster-sync-test",
        log_level="DEBUG",
        project_root=project_root,
        data_dir=project_root / ".taskmaster" / "logs",
        tag_override=None,
        auto_backup=False,
        max_backups=10,
        polling=PollingSettings(),
        remote_url=None,
        remote_timeout=5.0,
        remote_retry_attempts=1,
    )


@pytest.fixture()
def store(project_root: Path) -> FileTaskStore:
    return FileTaskStore(project_root)


@pytest.fixture()
def project_config(project_root: Path) -> ProjectConfig:
    return ProjectConfig(project_root)


@pytest.fixture()
def generator() -> FakeContentGenerator:
    return FakeContentGenerator()


@pytest.fixture()
def service(
    store: FileTaskStore,
    project_config: ProjectConfig,
    generator: FakeContentGenerator,
) -> TaskService:
    return TaskService(store, project_config=project_config, content_generator=generator)


@pytest.fixture()
def state(
    settings: SimpleNamespace,
    project_config: ProjectConfig,
    store: FileTaskStore,
    service: TaskService,
    generator: FakeContentGenerator,
) -> AppState:
    """
    AppState wired like the CLI does it, but with a fake content generator.

    NOTE: We keep the real file store here because its behavior is part of what
    the command tests exercise.
    """
    source = LocalTaskSource(service)
    return AppState(
        settings=settings,
        project_config=project_config,
        store=store,
        service=service,
        source=source,
        engine=SyncEngine(service, source, polling=settings.polling),
        content_generator=generator,
    )
