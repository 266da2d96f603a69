# src/taskmaster_sync/logging_setup.py

from __future__ import annotations

import logging
import logging.handlers
import sys
from pathlib import Path

# Loggers that speak on every poll tick; the console only shows their problems.
_BACKGROUND_LOGGERS = ("taskmaster_sync.sync.poll_scheduler",)

# HTTP stacks behind the remote tool service and the LLM client.
_HTTP_LOGGERS = ("httpx", "httpcore", "openai")


class _ConsoleNoiseFilter(logging.Filter):
    """
    Console view of the sync process.

    Task and command logs pass through. The poll loop is only shown at WARNING+,
    so a healthy sync stays silent between user commands. Everything else
    (HTTP clients, captured py.warnings) reaches the console at ERROR+ only.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        name = record.name

        if name.startswith("taskmaster_sync."):
            if name.startswith(_BACKGROUND_LOGGERS):
                return record.levelno >= logging.WARNING
            return True

        return record.levelno >= logging.ERROR


def setup_logging(
    *,
    log_dir: str | Path = ".taskmaster/logs",
    console_level: int = logging.INFO,
    file_level: int = logging.DEBUG,
    log_name: str = "taskmaster-sync.log",
    max_bytes: int = 5 * 1024 * 1024,
    backup_count: int = 3,
) -> Path:
    """
    Route taskmaster_sync logs to a filtered stderr console and a rotating file.

    The file keeps every tick at DEBUG, so it rotates instead of growing with
    the session. Per-request INFO lines from httpx are dropped at the source.
    Call once from the entry point; returns the active log file.
    """
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / log_name

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    for h in list(root.handlers):
        root.removeHandler(h)

    fmt = logging.Formatter(
        fmt="%(asctime)s.%(msecs)03d %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(console_level)
    console.setFormatter(fmt)
    console.addFilter(_ConsoleNoiseFilter())
    root.addHandler(console)

    file_handler = logging.handlers.RotatingFileHandler(
        log_file, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
    )
    file_handler.setLevel(file_level)
    file_handler.setFormatter(fmt)
    root.addHandler(file_handler)

    for name in _HTTP_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.captureWarnings(True)
    return log_file
