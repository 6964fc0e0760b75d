"""Which tasks currently have a running agent session."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any


class ExecutionLivenessTracker:
    """Set of task ids believed to have a running session.

    Observational state for live indicators, not a lock: the
    one-running-session rule is enforced by the state machine, which is also
    the only writer.
    """

    __slots__ = ("_running",)

    def __init__(self) -> None:
        self._running: set[str] = set()

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._running

    def __len__(self) -> int:
        return len(self._running)

    def mark_running(self, task_id: str) -> bool:
        if task_id in self._running:
            return False
        self._running.add(task_id)
        return True

    def mark_idle(self, task_id: str) -> bool:
        if task_id not in self._running:
            return False
        self._running.discard(task_id)
        return True

    def is_running(self, task_id: str) -> bool:
        return task_id in self._running

    def running_task_ids(self) -> frozenset[str]:
        return frozenset(self._running)

    def recompute(self, sessions: Iterable[Mapping[str, Any]]) -> None:
        """Rebuild from session statuses: a task is live iff it has a running session."""
        self._running = {s["task_id"] for s in sessions if s.get("status") == "running"}

    def clear(self) -> None:
        self._running.clear()
