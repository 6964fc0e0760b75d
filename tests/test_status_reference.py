"""Tests for the status lifecycle reference payload."""

from __future__ import annotations

from studio.models import TASK_STATUSES, TASK_TRANSITIONS
from studio.status_reference import STATUS_REFERENCE_SCHEMA, get_status_reference


def test_reference_covers_every_task_status():
    payload = get_status_reference()
    assert payload["schema"] == STATUS_REFERENCE_SCHEMA
    task = next(lc for lc in payload["lifecycles"] if lc["type"] == "task")
    assert [s["status"] for s in task["statuses"]] == list(TASK_STATUSES)
    for entry in task["statuses"]:
        assert set(entry["typical_transitions"]) == TASK_TRANSITIONS[entry["status"]]
        assert entry["meaning"]


def test_reference_marks_agent_phases_and_columns():
    task = get_status_reference()["lifecycles"][0]
    by_status = {s["status"]: s for s in task["statuses"]}
    assert by_status["in_progress"]["agent_phase"] == "implementation"
    assert by_status["fix"]["agent_phase"] is None
    assert by_status["ai_review"]["column"] == "in_progress"


def test_session_lifecycle_terminal_states():
    session = get_status_reference()["lifecycles"][1]
    by_status = {s["status"]: s for s in session["statuses"]}
    assert by_status["running"]["typical_transitions"] == ["completed", "failed", "aborted"]
    assert by_status["completed"]["typical_transitions"] == []
