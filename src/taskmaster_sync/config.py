# src/taskmaster_sync/config.py

"""Centralized settings loaded from environment variables (+ optional .env).

Two layers:
- Settings: process-level knobs (logging, polling cadence, remote endpoint, LLM keys).
- ProjectConfig: per-project `.taskmaster/config.json` (active tag, storage settings).

No secrets are required at import time.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

from .errors import ConfigurationError
from .tasks.task_models import DEFAULT_TAG

logger = logging.getLogger(__name__)

ENV_PREFIX = "TASKMASTER"

load_dotenv(override=False)


def _k(suffix: str) -> str:
    """Build env var name with the project prefix."""
    return f"{ENV_PREFIX}_{suffix}"


def _env(name: str, default: str = "") -> str:
    v = os.getenv(name)
    return default if v is None else v


def _first_env(*names: str, default: str | None = None) -> str | None:
    for n in names:
        v = os.getenv(n)
        if v is not None and v.strip() != "":
            return v
    return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_list(name: str, default: List[str]) -> List[str]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return list(default)
    parts = [p.strip() for p in raw.replace(",", " ").split() if p.strip()]
    return parts


def _env_path(name: str, default: Path) -> Path:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return Path(raw).expanduser()


@dataclass(frozen=True, slots=True)
class PollingSettings:
    """Cadence and reconnection bounds (seconds)."""

    base_interval: float = 5.0
    min_interval: float = 2.0
    max_interval: float = 60.0
    hysteresis: float = 0.5
    activity_window: float = 300.0
    max_reconnect_attempts: int = 3
    reconnect_backoff: float = 1.5
    # 0 disables automatic probing once offline (manual reconnect only).
    offline_retry_interval: float = 0.0
    post_tool_refresh_delay: float = 2.0


@dataclass(frozen=True, slots=True)
class Settings:
    # ---- App / logging ----
    app_name: str
    log_level: str

    # ---- Project / storage ----
    project_root: Path
    data_dir: Path
    tag_override: Optional[str]
    auto_backup: bool
    max_backups: int

    # ---- Sync engine ----
    polling: PollingSettings

    # ---- Remote task service (optional) ----
    remote_url: Optional[str]
    remote_timeout: float
    remote_retry_attempts: int

    # ---- LLM / OpenAI-compatible ----
    openai_api_key: Optional[str]
    openai_base_url: str
    llm_models: List[str]
    extra_headers: Dict[str, str]

    @staticmethod
    def from_env() -> "Settings":
        app_name = _env(_k("APP_NAME"), "taskmaster-sync")
        log_level = _env(_k("LOG_LEVEL"), "INFO")

        project_root = _env_path(_k("PROJECT_ROOT"), Path.cwd())
        data_dir = _env_path(_k("DATA_DIR"), project_root / ".taskmaster" / "logs")
        tag_override = _first_env(_k("TAG"), default=None)

        polling = PollingSettings(
            base_interval=_env_float(_k("POLL_BASE_INTERVAL"), 5.0),
            min_interval=_env_float(_k("POLL_MIN_INTERVAL"), 2.0),
            max_interval=_env_float(_k("POLL_MAX_INTERVAL"), 60.0),
            max_reconnect_attempts=_env_int(_k("MAX_RECONNECT_ATTEMPTS"), 3),
            reconnect_backoff=_env_float(_k("RECONNECT_BACKOFF"), 1.5),
            offline_retry_interval=_env_float(_k("OFFLINE_RETRY_INTERVAL"), 0.0),
            post_tool_refresh_delay=_env_float(_k("POST_TOOL_REFRESH_DELAY"), 2.0),
        )

        remote_url = (_first_env(_k("REMOTE_URL"), default="") or "").strip() or None

        title = _env(_k("APP_TITLE"), app_name)
        extra_headers = {"X-Title": title}

        return Settings(
            app_name=app_name,
            log_level=log_level,
            project_root=project_root,
            data_dir=data_dir,
            tag_override=tag_override,
            auto_backup=_env_bool(_k("AUTO_BACKUP"), False),
            max_backups=_env_int(_k("MAX_BACKUPS"), 10),
            polling=polling,
            remote_url=remote_url,
            remote_timeout=_env_float(_k("REMOTE_TIMEOUT"), 30.0),
            remote_retry_attempts=_env_int(_k("REMOTE_RETRY_ATTEMPTS"), 3),
            openai_api_key=_first_env(_k("OPENAI_API_KEY"), "OPENAI_API_KEY", default=None),
            openai_base_url=_env(_k("OPENAI_BASE_URL"), "https://api.openai.com/v1"),
            llm_models=_env_list(_k("LLM_MODELS"), ["gpt-4o-mini"]),
            extra_headers=extra_headers,
        )


SETTINGS = Settings.from_env()


def get_settings() -> Settings:
    return SETTINGS


class ProjectConfig:
    """
    `.taskmaster/config.json`: active tag plus storage settings.

    A missing file means defaults; a malformed one is a ConfigurationError.
    The TASKMASTER_TAG override (Settings.tag_override) wins over the file.
    """

    def __init__(self, project_root: str | Path, *, tag_override: str | None = None) -> None:
        self._path = Path(project_root) / ".taskmaster" / "config.json"
        self._tag_override = tag_override
        self._data: dict[str, Any] = {}
        self._loaded = False

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> dict[str, Any]:
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.debug("No config.json at %s, using defaults", self._path)
            self._data = {}
            self._loaded = True
            return self._data
        except OSError as e:
            raise ConfigurationError(
                "Failed to load configuration", details={"configPath": str(self._path)}
            ) from e

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ConfigurationError(
                f"Invalid JSON in {self._path}: {e}", details={"configPath": str(self._path)}
            ) from e
        if not isinstance(data, dict):
            raise ConfigurationError(
                "Configuration must be a JSON object", details={"configPath": str(self._path)}
            )

        self._data = data
        self._loaded = True
        return self._data

    def _ensure_loaded(self) -> None:
        if not self._loaded:
            self.load()

    def save(self) -> None:
        self._ensure_loaded()
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self._path.with_suffix(".tmp")
            tmp.write_text(json.dumps(self._data, ensure_ascii=False, indent=2), "utf-8")
            os.replace(tmp, self._path)
        except OSError as e:
            raise ConfigurationError(
                "Failed to save configuration", details={"configPath": str(self._path)}
            ) from e

    @property
    def active_tag(self) -> str:
        if self._tag_override:
            return self._tag_override
        self._ensure_loaded()
        tag = self._data.get("activeTag")
        return tag if isinstance(tag, str) and tag.strip() else DEFAULT_TAG

    def set_active_tag(self, tag: str) -> None:
        self._ensure_loaded()
        self._data["activeTag"] = tag
        self.save()
        # An explicit switch replaces the startup override for the rest of the session.
        self._tag_override = None
        logger.info("Active tag set to %s", tag)

    def storage_settings(self) -> dict[str, Any]:
        """`storage` section; unknown/partial configurations fall back to file storage."""
        self._ensure_loaded()
        storage = self._data.get("storage")
        storage = storage if isinstance(storage, dict) else {}
        max_backups = storage.get("maxBackups", 10)
        out: dict[str, Any] = {
            "type": "file",
            "autoBackup": bool(storage.get("autoBackup", False)),
            "maxBackups": max_backups if isinstance(max_backups, int) and max_backups >= 0 else 10,
        }
        if storage.get("type") == "api" and storage.get("apiEndpoint"):
            out["type"] = "api"
            out["apiEndpoint"] = str(storage["apiEndpoint"])
        return out

    def update(self, updates: dict[str, Any]) -> None:
        self._ensure_loaded()
        self._data.update(updates)
        self.save()
