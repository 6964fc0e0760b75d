"""Kanban board projection of task statuses."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any, TypedDict

from studio.liveness import ExecutionLivenessTracker
from studio.models import TASK_STATUSES

KANBAN_COLUMNS = ("backlog", "planning", "in_progress", "review", "done")

# status -> (column, subgroup); subgroup is None for single-status columns
_PLACEMENT: dict[str, tuple[str, str | None]] = {
    "todo": ("backlog", None),
    "planning": ("planning", "planning"),
    "planning_review": ("planning", "planning_review"),
    "in_progress": ("in_progress", "in_progress"),
    "ai_review": ("in_progress", "ai_review"),
    "fix": ("in_progress", "fix"),
    "review": ("review", None),
    "done": ("done", None),
}

COLUMN_SUBGROUPS: dict[str, tuple[str, ...]] = {
    column: tuple(s for s in TASK_STATUSES if _PLACEMENT[s][0] == column and _PLACEMENT[s][1])
    for column in KANBAN_COLUMNS
}


class ColumnPlacement(TypedDict):
    column: str
    subgroup: str | None


def project_column(status: str) -> ColumnPlacement:
    """Map a task status to its board column (and subgroup within it)."""
    try:
        column, subgroup = _PLACEMENT[status]
    except KeyError:
        raise ValueError(f"Unknown task status '{status}'") from None
    return {"column": column, "subgroup": subgroup}


def build_board(
    tasks: Iterable[Mapping[str, Any]],
    liveness: ExecutionLivenessTracker | None = None,
) -> list[dict[str, Any]]:
    """Group tasks into ordered columns.

    Each column lists its tasks by status order then ``created_at``; columns
    with subgroups also carry ``subgroups``, a status -> task ids mapping.
    """
    columns: dict[str, list[dict[str, Any]]] = {column: [] for column in KANBAN_COLUMNS}
    for task in tasks:
        placement = project_column(task["status"])
        columns[placement["column"]].append(
            {
                "id": task["id"],
                "title": task.get("title", ""),
                "status": task["status"],
                "subgroup": placement["subgroup"],
                "is_running": liveness.is_running(task["id"]) if liveness is not None else False,
                "created_at": task.get("created_at", ""),
            }
        )

    board = []
    for column in KANBAN_COLUMNS:
        items = sorted(
            columns[column],
            key=lambda t: (TASK_STATUSES.index(t["status"]), t["created_at"], t["id"]),
        )
        entry: dict[str, Any] = {"column": column, "count": len(items), "tasks": items}
        if COLUMN_SUBGROUPS[column]:
            entry["subgroups"] = {
                sub: [t["id"] for t in items if t["subgroup"] == sub]
                for sub in COLUMN_SUBGROUPS[column]
            }
        board.append(entry)
    return board


def column_counts(tasks: Iterable[Mapping[str, Any]]) -> dict[str, int]:
    counts = dict.fromkeys(KANBAN_COLUMNS, 0)
    for task in tasks:
        counts[project_column(task["status"])["column"]] += 1
    return counts
