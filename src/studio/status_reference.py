"""Lifecycle status reference used by ``studio help-status``."""

from __future__ import annotations

from typing import Any

from studio.kanban import project_column
from studio.models import (
    PHASE_FOR_STATUS,
    SESSION_FORWARD,
    TASK_STATUSES,
    TASK_TRANSITIONS,
)

STATUS_REFERENCE_SCHEMA = "studio_status_reference_v1"

_TASK_MEANINGS = {
    "todo": "Task is in the backlog and has not been started.",
    "planning": "Planning agent is producing an implementation plan.",
    "planning_review": "Plan is ready and waits for a human to approve it or ask for a re-plan.",
    "in_progress": "Implementation agent is changing the code.",
    "ai_review": "Review agent is checking the implementation.",
    "fix": "AI or human review found issues; waits for a fix session to be dispatched.",
    "review": "Work passed AI review and waits for human approval.",
    "done": "Task approved; terminal state.",
}

_SESSION_MEANINGS = {
    "pending": "Session created but the agent has not started yet.",
    "running": "Agent is working; the task shows as live.",
    "completed": "Agent finished its phase.",
    "failed": "Agent stopped with an error; the task stays put until retried.",
    "aborted": "Session was stopped before finishing.",
}

_SESSION_ORDER = ("pending", "running", "completed", "failed", "aborted")


def _task_statuses() -> list[dict[str, Any]]:
    rows = []
    for status in TASK_STATUSES:
        placement = project_column(status)
        rows.append(
            {
                "status": status,
                "meaning": _TASK_MEANINGS[status],
                "typical_transitions": sorted(
                    TASK_TRANSITIONS[status], key=TASK_STATUSES.index
                ),
                "column": placement["column"],
                "agent_phase": PHASE_FOR_STATUS.get(status),
            }
        )
    return rows


def _session_statuses() -> list[dict[str, Any]]:
    return [
        {
            "status": status,
            "meaning": _SESSION_MEANINGS[status],
            "typical_transitions": sorted(SESSION_FORWARD[status], key=_SESSION_ORDER.index),
        }
        for status in _SESSION_ORDER
    ]


def get_status_reference() -> dict[str, Any]:
    """Return a machine-parseable lifecycle reference payload."""
    return {
        "schema": STATUS_REFERENCE_SCHEMA,
        "lifecycles": [
            {
                "type": "task",
                "label": "Task lifecycle",
                "description": "Statuses a task moves through from backlog to done.",
                "statuses": _task_statuses(),
            },
            {
                "type": "session",
                "label": "Session lifecycle",
                "description": "Statuses of one agent run for a task phase.",
                "statuses": _session_statuses(),
            },
        ],
    }
