# src/taskmaster_sync/cli/bootstrap.py

"""
CLI bootstrap helpers.

This module is the "composition root":
- loads settings once,
- reads the project configuration (.taskmaster/config.json),
- wires concrete implementations into AppState (store/service/source/engine/LLM),
- picks the remote tool service when an endpoint is configured, the local store otherwise.
"""

from __future__ import annotations

import logging

from ..config import ProjectConfig, Settings, get_settings
from ..core.ports import ContentGenerator, TaskSource, ToolClient
from ..core.state import AppState
from ..errors import ConfigurationError
from ..llm.client import OpenAIContentGenerator
from ..llm.offline import OfflineContentGenerator
from ..remote.tool_client import HttpToolClient
from ..sync.engine import SyncEngine
from ..sync.sources import LocalTaskSource, RemoteTaskSource
from ..tasks.task_service import TaskService
from ..tasks.task_store import FileTaskStore

logger = logging.getLogger(__name__)


def _ensure_local_dirs(settings: Settings) -> None:
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    (settings.project_root / ".taskmaster" / "tasks").mkdir(parents=True, exist_ok=True)


def _content_generator(settings: Settings) -> ContentGenerator:
    try:
        return OpenAIContentGenerator.from_settings(settings)
    except ConfigurationError as e:
        # Local runs without external services still get deterministic drafts.
        logger.info("Using offline content generator: %s", e.message)
        return OfflineContentGenerator()


def create_initial_state(*, settings: Settings | None = None) -> AppState:
    """
    Create AppState from the provided settings.

    Keeping settings injectable makes the app easier to test and avoids hidden global config reads.
    If settings is None, falls back to get_settings().
    """
    if settings is None:
        settings = get_settings()

    _ensure_local_dirs(settings)

    project_config = ProjectConfig(settings.project_root, tag_override=settings.tag_override)
    storage = project_config.storage_settings()

    store = FileTaskStore(
        settings.project_root,
        auto_backup=settings.auto_backup or storage["autoBackup"],
        max_backups=settings.max_backups,
    )

    remote_url = settings.remote_url or storage.get("apiEndpoint")
    tool_client: ToolClient | None = None
    if remote_url:
        tool_client = HttpToolClient(
            remote_url,
            timeout=settings.remote_timeout,
            retry_attempts=settings.remote_retry_attempts,
            headers=settings.extra_headers,
        )

    generator = _content_generator(settings)
    service = TaskService(
        store,
        project_config=project_config,
        content_generator=generator,
        tool_client=tool_client,
    )

    source: TaskSource
    if tool_client is not None:
        source = RemoteTaskSource(
            tool_client, project_root=settings.project_root, tag_provider=lambda: service.active_tag
        )
        logger.info("Syncing from remote task service at %s", remote_url)
    else:
        source = LocalTaskSource(service)
        logger.info("Syncing from local store at %s", store.tasks_dir)

    engine = SyncEngine(service, source, polling=settings.polling)

    return AppState(
        settings=settings,
        project_config=project_config,
        store=store,
        service=service,
        source=source,
        engine=engine,
        content_generator=generator,
        tool_client=tool_client,
    )