# config.example.py

"""
Documentation-only module (safe to commit).

The real configuration is loaded from environment variables (optionally via a local .env file)
and from the per-project `.taskmaster/config.json`. Do NOT commit real secrets; keep them in
.env (local, gitignored).

This file exists to make the repo self-documenting even without opening .env.
"""

ENV_VARS = {
    # App / logging
    "TASKMASTER_APP_NAME": "App display name (default: taskmaster-sync).",
    "TASKMASTER_APP_TITLE": "Optional X-Title header sent to remote/LLM endpoints.",
    "TASKMASTER_LOG_LEVEL": "Console logging level (default: INFO). The log file always gets DEBUG.",
    # Project / storage
    "TASKMASTER_PROJECT_ROOT": "Project root holding .taskmaster/ (default: current directory).",
    "TASKMASTER_DATA_DIR": "Log directory (default: <project_root>/.taskmaster/logs).",
    "TASKMASTER_TAG": "Active tag override; wins over activeTag in .taskmaster/config.json.",
    "TASKMASTER_AUTO_BACKUP": "Back up each tag file before it is replaced (true/false).",
    "TASKMASTER_MAX_BACKUPS": "Backups kept per tag, oldest pruned first (default: 10).",
    # Sync engine (seconds)
    "TASKMASTER_POLL_BASE_INTERVAL": "Base polling interval (default: 5).",
    "TASKMASTER_POLL_MIN_INTERVAL": "Fastest polling interval under high activity (default: 2).",
    "TASKMASTER_POLL_MAX_INTERVAL": "Slowest polling interval / backoff ceiling (default: 60).",
    "TASKMASTER_MAX_RECONNECT_ATTEMPTS": "Consecutive failures before offline mode (default: 3).",
    "TASKMASTER_RECONNECT_BACKOFF": "Retry delay multiplier per failed attempt (default: 1.5).",
    "TASKMASTER_OFFLINE_RETRY_INTERVAL": "Automatic probe interval while offline; 0 = manual only (default: 0).",
    "TASKMASTER_POST_TOOL_REFRESH_DELAY": "Refresh delay after rewrite/tool commands (default: 2).",
    # Remote task service (optional; local store is used when unset)
    "TASKMASTER_REMOTE_URL": "JSON-RPC endpoint of the remote task service.",
    "TASKMASTER_REMOTE_TIMEOUT": "Per-request timeout (default: 30).",
    "TASKMASTER_REMOTE_RETRY_ATTEMPTS": "Attempts per tool call (default: 3).",
    # LLM / OpenAI-compatible
    "TASKMASTER_OPENAI_API_KEY": "API key (falls back to OPENAI_API_KEY). Offline drafts when unset.",
    "TASKMASTER_OPENAI_BASE_URL": "Base URL (default: https://api.openai.com/v1).",
    "TASKMASTER_LLM_MODELS": "Comma/space separated list of models to try in order.",
}

PROJECT_CONFIG_EXAMPLE = {
    # <project_root>/.taskmaster/config.json
    "activeTag": "master",
    "storage": {
        "type": "file",  # or "api" together with apiEndpoint
        "autoBackup": False,
        "maxBackups": 10,
    },
}
