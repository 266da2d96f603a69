# tests/test_config.py

from __future__ import annotations

import json
from pathlib import Path

import pytest

from taskmaster_sync.config import ProjectConfig, Settings
from taskmaster_sync.errors import ConfigurationError


def _write_config(root: Path, data) -> Path:
    path = root / ".taskmaster" / "config.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(data if isinstance(data, str) else json.dumps(data), encoding="utf-8")
    return path


def test_missing_config_means_defaults(tmp_path: Path) -> None:
    config = ProjectConfig(tmp_path)
    assert config.active_tag == "master"
    assert config.storage_settings() == {"type": "file", "autoBackup": False, "maxBackups": 10}


def test_malformed_config_is_a_configuration_error(tmp_path: Path) -> None:
    _write_config(tmp_path, "{broken")
    with pytest.raises(ConfigurationError):
        ProjectConfig(tmp_path).load()

    _write_config(tmp_path, "[1, 2]")
    with pytest.raises(ConfigurationError):
        ProjectConfig(tmp_path).active_tag


def test_active_tag_is_persisted_and_override_wins(tmp_path: Path) -> None:
    _write_config(tmp_path, {"activeTag": "feature", "models": {"main": "x"}})

    config = ProjectConfig(tmp_path)
    assert config.active_tag == "feature"

    config.set_active_tag("release")
    saved = json.loads(config.path.read_text(encoding="utf-8"))
    assert saved == {"activeTag": "release", "models": {"main": "x"}}

    assert ProjectConfig(tmp_path, tag_override="hotfix").active_tag == "hotfix"


def test_storage_settings(tmp_path: Path) -> None:
    _write_config(
        tmp_path,
        {"storage": {"type": "api", "apiEndpoint": "http://tm.local/mcp", "autoBackup": True, "maxBackups": -1}},
    )
    assert ProjectConfig(tmp_path).storage_settings() == {
        "type": "api",
        "autoBackup": True,
        "maxBackups": 10,
        "apiEndpoint": "http://tm.local/mcp",
    }

    _write_config(tmp_path, {"storage": {"type": "api"}})
    assert ProjectConfig(tmp_path).storage_settings()["type"] == "file"


def test_settings_from_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("TASKMASTER_PROJECT_ROOT", str(tmp_path))
    monkeypatch.setenv("TASKMASTER_POLL_BASE_INTERVAL", "7.5")
    monkeypatch.setenv("TASKMASTER_MAX_RECONNECT_ATTEMPTS", "not-a-number")
    monkeypatch.setenv("TASKMASTER_LLM_MODELS", "a, b  c")
    monkeypatch.setenv("TASKMASTER_REMOTE_URL", "   ")
    monkeypatch.delenv("TASKMASTER_DATA_DIR", raising=False)

    settings = Settings.from_env()

    assert settings.project_root == tmp_path
    assert settings.data_dir == tmp_path / ".taskmaster" / "logs"
    assert settings.polling.base_interval == 7.5
    assert settings.polling.max_reconnect_attempts == 3
    assert settings.polling.min_interval == 2.0
    assert settings.llm_models == ["a", "b", "c"]
    assert settings.remote_url is None


def test_explicit_switch_replaces_startup_override(tmp_path: Path) -> None:
    config = ProjectConfig(tmp_path, tag_override="hotfix")
    assert config.active_tag == "hotfix"

    config.set_active_tag("release")

    assert config.active_tag == "release"
    assert json.loads(config.path.read_text(encoding="utf-8"))["activeTag"] == "release"
