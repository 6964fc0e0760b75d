"""Tests for the kanban projection."""

from __future__ import annotations

import pytest

from studio.kanban import KANBAN_COLUMNS, build_board, column_counts, project_column
from studio.liveness import ExecutionLivenessTracker
from studio.models import TASK_STATUSES


@pytest.mark.parametrize(
    "status, column, subgroup",
    [
        ("todo", "backlog", None),
        ("planning", "planning", "planning"),
        ("planning_review", "planning", "planning_review"),
        ("in_progress", "in_progress", "in_progress"),
        ("ai_review", "in_progress", "ai_review"),
        ("fix", "in_progress", "fix"),
        ("review", "review", None),
        ("done", "done", None),
    ],
)
def test_project_column(status, column, subgroup):
    assert project_column(status) == {"column": column, "subgroup": subgroup}


def test_projection_is_total_over_statuses():
    for status in TASK_STATUSES:
        assert project_column(status)["column"] in KANBAN_COLUMNS


def test_unknown_status_rejected():
    with pytest.raises(ValueError, match="archived"):
        project_column("archived")


def _tasks():
    return [
        {"id": "t3", "title": "C", "status": "fix", "created_at": "2025-01-03"},
        {"id": "t1", "title": "A", "status": "in_progress", "created_at": "2025-01-05"},
        {"id": "t2", "title": "B", "status": "todo", "created_at": "2025-01-01"},
        {"id": "t4", "title": "D", "status": "ai_review", "created_at": "2025-01-02"},
    ]


def test_build_board_groups_and_orders():
    liveness = ExecutionLivenessTracker()
    liveness.mark_running("t1")
    board = build_board(_tasks(), liveness)

    assert [c["column"] for c in board] == list(KANBAN_COLUMNS)
    in_progress = board[2]
    assert [t["id"] for t in in_progress["tasks"]] == ["t1", "t4", "t3"]
    assert in_progress["subgroups"] == {"in_progress": ["t1"], "ai_review": ["t4"], "fix": ["t3"]}
    assert in_progress["tasks"][0]["is_running"] is True
    assert in_progress["tasks"][1]["is_running"] is False
    assert "subgroups" not in board[0]
    assert board[0]["count"] == 1


def test_column_counts():
    counts = column_counts(_tasks())
    assert counts == {"backlog": 1, "planning": 0, "in_progress": 3, "review": 0, "done": 0}
