# src/taskmaster_sync/sync/change_detector.py

"""
Snapshot comparison for the poll loop.

Order of tasks, of dependency ids and of subtasks is not meaningful, so both snapshots
are normalized before the canonical JSON forms are compared. Anything that cannot be
compared counts as a change: a spurious refresh is harmless, a missed one is not.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from ..core.ports import TaskRecord

logger = logging.getLogger(__name__)


def _natural_key(value: Any) -> tuple[int, int, str]:
    s = str(value)
    return (0, int(s), "") if s.isdigit() else (1, 0, s)


def _sorted_deps(raw: Any) -> list[Any]:
    if not raw:
        return []
    return sorted(raw, key=_natural_key)


def _normalize(tasks: list[TaskRecord]) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    for task in tasks:
        item = dict(task)
        item["dependencies"] = _sorted_deps(task.get("dependencies"))
        subtasks = task.get("subtasks") or []
        item["subtasks"] = sorted(
            ({**st, "dependencies": _sorted_deps(st.get("dependencies"))} for st in subtasks),
            key=lambda st: _natural_key(st.get("id")),
        )
        out.append(item)
    out.sort(key=lambda t: _natural_key(t.get("id")))
    return out


def has_changed(previous: list[TaskRecord] | None, current: list[TaskRecord]) -> bool:
    if previous is None:
        return True
    if len(previous) != len(current):
        return True
    try:
        before = json.dumps(_normalize(previous), sort_keys=True, default=str)
        after = json.dumps(_normalize(current), sort_keys=True, default=str)
    except Exception:
        logger.warning("Snapshot comparison failed, treating as changed", exc_info=True)
        return True
    return before != after


class ChangeDetector:
    """Keeps the last adopted snapshot; the first observation is always a change."""

    def __init__(self, baseline: list[TaskRecord] | None = None) -> None:
        self._snapshot = baseline

    @property
    def snapshot(self) -> list[TaskRecord] | None:
        return self._snapshot

    def observe(self, current: list[TaskRecord]) -> bool:
        changed = has_changed(self._snapshot, current)
        if changed:
            self._snapshot = current
        return changed

    def reset(self) -> None:
        self._snapshot = None
