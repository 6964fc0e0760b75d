"""Task and session vocabularies and row shapes."""

from __future__ import annotations

import re
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any, TypedDict, cast

# Lifecycle order; used for display and for validating snapshots.
TASK_STATUSES = (
    "todo",
    "planning",
    "planning_review",
    "in_progress",
    "ai_review",
    "fix",
    "review",
    "done",
)
VALID_TASK_STATUSES = frozenset(TASK_STATUSES)
TASK_TERMINAL_STATUSES = frozenset({"done"})

TASK_TRANSITIONS: dict[str, frozenset[str]] = {
    "todo": frozenset({"planning"}),
    "planning": frozenset({"planning_review"}),
    "planning_review": frozenset({"planning", "in_progress"}),
    "in_progress": frozenset({"ai_review"}),
    "ai_review": frozenset({"fix", "review"}),
    "fix": frozenset({"in_progress"}),
    "review": frozenset({"done", "fix"}),
    "done": frozenset(),
}

SESSION_PHASES = ("planning", "implementation", "review")
VALID_SESSION_PHASES = frozenset(SESSION_PHASES)

VALID_SESSION_STATUSES = frozenset({"pending", "running", "completed", "failed", "aborted"})
SESSION_TERMINAL_STATUSES = frozenset({"completed", "failed", "aborted"})
SESSION_FORWARD = {
    "pending": frozenset({"running", "completed", "failed", "aborted"}),
    "running": SESSION_TERMINAL_STATUSES,
    "completed": frozenset(),
    "failed": frozenset(),
    "aborted": frozenset(),
}

# Task statuses in which an AI session does the work, and which phase it runs.
PHASE_FOR_STATUS = {
    "planning": "planning",
    "in_progress": "implementation",
    "ai_review": "review",
}

# The server names fix-round sessions separately; they run the implementation phase.
_PHASE_ALIASES = {"fix": "implementation"}


_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


def normalize_status(value: str) -> str:
    """Map a status as spelled by the service (``PlanningReview``) to ``planning_review``."""
    if value in VALID_TASK_STATUSES:
        return value
    return _CAMEL_BOUNDARY.sub("_", value.strip()).lower()


def utcnow() -> str:
    """ISO 8601 UTC timestamp."""
    return datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


class TaskRow(TypedDict):
    id: str
    title: str
    description: str
    status: str
    created_at: str
    updated_at: str


class SessionRow(TypedDict):
    id: str
    task_id: str
    phase: str
    status: str
    created_at: str
    started_at: str | None
    completed_at: str | None
    error: str | None


class SessionOutcome(TypedDict):
    """Terminal value of a session; a failed session is data, not an exception."""

    session_id: str
    task_id: str
    phase: str
    status: str
    success: bool
    error: str | None


def task_from_mapping(data: Mapping[str, Any]) -> TaskRow:
    """Normalize a task snapshot from the API; rejects unknown statuses."""
    task_id = data.get("id")
    if not task_id:
        raise ValueError("Task snapshot is missing 'id'")
    status = data.get("status", "todo")
    if isinstance(status, str):
        status = normalize_status(status)
    if status not in VALID_TASK_STATUSES:
        raise ValueError(
            f"Invalid task status '{status}'. Must be one of: {', '.join(TASK_STATUSES)}"
        )
    now = utcnow()
    return {
        "id": str(task_id),
        "title": str(data.get("title") or ""),
        "description": str(data.get("description") or ""),
        "status": cast(str, status),
        "created_at": str(data.get("created_at") or now),
        "updated_at": str(data.get("updated_at") or now),
    }


def session_from_mapping(data: Mapping[str, Any]) -> SessionRow:
    """Normalize a session snapshot from the API."""
    session_id = data.get("id")
    task_id = data.get("task_id")
    if not session_id or not task_id:
        raise ValueError("Session snapshot requires 'id' and 'task_id'")
    phase = data.get("phase", "planning")
    if isinstance(phase, str):
        phase = _PHASE_ALIASES.get(phase, phase)
    if phase not in VALID_SESSION_PHASES:
        raise ValueError(f"Invalid session phase '{phase}'")
    status = data.get("status", "pending")
    if status not in VALID_SESSION_STATUSES:
        raise ValueError(f"Invalid session status '{status}'")
    return {
        "id": str(session_id),
        "task_id": str(task_id),
        "phase": cast(str, phase),
        "status": cast(str, status),
        "created_at": str(data.get("created_at") or utcnow()),
        "started_at": data.get("started_at"),
        "completed_at": data.get("completed_at"),
        "error": data.get("error"),
    }


def sort_sessions(sessions: list[SessionRow]) -> list[SessionRow]:
    """Order sessions for listings: oldest first by ``created_at``."""
    return sorted(sessions, key=lambda s: (s["created_at"], s["id"]))
