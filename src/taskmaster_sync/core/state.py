# src/taskmaster_sync/core/state.py

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from ..config import ProjectConfig, Settings
from ..core.ports import ContentGenerator, Message, TaskSource, ToolClient
from ..tasks.task_service import TaskService
from ..tasks.task_store import FileTaskStore

if TYPE_CHECKING:
    from ..sync.engine import SyncEngine


@dataclass
class AppState:
    """Everything the front ends need, wired once by the composition root."""

    settings: Settings
    project_config: ProjectConfig
    store: FileTaskStore
    service: TaskService
    source: TaskSource
    engine: SyncEngine
    content_generator: ContentGenerator
    tool_client: ToolClient | None = None

    # Notifications received by the console subscriber, newest last.
    inbox: list[Message] = field(default_factory=list)

    @property
    def remote_mode(self) -> bool:
        return self.tool_client is not None
