"""Tests for the activity merger: replace-in-place, timestamp order, finished handling."""

from __future__ import annotations

import json

import pytest

from studio.activity import parse_activity_frame
from studio.errors import MalformedFrameError
from studio.merger import ActivityMerger


def _frame(kind: str, ts: str, **fields) -> str:
    return json.dumps({"type": kind, "timestamp": ts, **fields})


def test_sorted_by_timestamp_not_arrival():
    merger = ActivityMerger("s1")
    merger.ingest_frame("agent_message", _frame("agent_message", "2025-01-01T00:00:03Z", id="m2"))
    merger.ingest_frame("agent_message", _frame("agent_message", "2025-01-01T00:00:01Z", id="m1"))
    merger.ingest_frame("reasoning", _frame("reasoning", "2025-01-01T00:00:02Z"))

    stamps = [r["timestamp"] for r in merger.snapshot()]
    assert stamps == [
        "2025-01-01T00:00:01Z",
        "2025-01-01T00:00:02Z",
        "2025-01-01T00:00:03Z",
    ]


def test_same_id_replaces_in_place():
    merger = ActivityMerger()
    merger.ingest_frame(
        "tool_call", _frame("tool_call", "2025-01-01T00:00:01Z", id="a", tool_name="bash")
    )
    merger.ingest_frame("reasoning", _frame("reasoning", "2025-01-01T00:00:01Z"))
    merger.ingest_frame(
        "tool_call",
        _frame("tool_call", "2025-01-01T00:00:01Z", id="a", tool_name="bash", status="done"),
    )

    records = merger.snapshot()
    assert len(records) == 2
    # Equal timestamps keep first-delivery position.
    assert records[0]["id"] == "a"
    assert records[0]["status"] == "done"
    assert records[1]["type"] == "reasoning"


def test_replacement_can_move_record_by_new_timestamp():
    merger = ActivityMerger()
    merger.ingest({"type": "agent_message", "id": "x", "timestamp": "2025-01-01T00:00:01Z"})
    merger.ingest({"type": "agent_message", "id": "y", "timestamp": "2025-01-01T00:00:02Z"})
    merger.ingest(
        {"type": "agent_message", "id": "x", "timestamp": "2025-01-01T00:00:05Z", "content": "!"}
    )

    assert [r["id"] for r in merger.snapshot()] == ["y", "x"]


def test_identical_redelivery_is_not_a_change():
    merger = ActivityMerger()
    record = {"type": "agent_message", "id": "m", "timestamp": "2025-01-01T00:00:01Z"}
    assert merger.ingest(dict(record)) is True
    assert merger.ingest(dict(record)) is False
    assert len(merger) == 1


def test_records_without_id_never_merge():
    merger = ActivityMerger()
    patch_record = {"type": "json_patch", "timestamp": "2025-01-01T00:00:01Z", "patch": []}
    merger.ingest(dict(patch_record))
    merger.ingest(dict(patch_record))
    assert len(merger.snapshot()) == 2


def test_empty_id_is_treated_as_absent():
    record = parse_activity_frame("reasoning", _frame("reasoning", "2025-01-01T00:00:01Z", id=""))
    assert "id" not in record


def test_malformed_frame_dropped_and_following_frames_kept(caplog):
    merger = ActivityMerger("s1")
    assert merger.ingest_frame("agent_message", "{not json") is None
    assert merger.ingest_frame("agent_message", json.dumps({"type": "agent_message"})) is None
    merger.ingest_frame("agent_message", _frame("agent_message", "2025-01-01T00:00:01Z"))

    assert len(merger.snapshot()) == 1
    assert "dropping frame" in caplog.text


def test_second_finished_record_ignored():
    merger = ActivityMerger()
    first = {"type": "finished", "timestamp": "2025-01-01T00:00:09Z", "success": True}
    merger.ingest(first)
    changed = merger.ingest(
        {"type": "finished", "timestamp": "2025-01-01T00:00:10Z", "success": False}
    )

    assert changed is False
    assert merger.finished_record is first
    assert len(merger.snapshot()) == 1


def test_snapshot_is_a_copy():
    merger = ActivityMerger()
    merger.ingest({"type": "reasoning", "timestamp": "2025-01-01T00:00:01Z"})
    snap = merger.snapshot()
    snap.clear()
    assert len(merger.snapshot()) == 1


def test_clear_resets_everything():
    merger = ActivityMerger()
    merger.ingest({"type": "finished", "timestamp": "2025-01-01T00:00:01Z", "success": True})
    merger.clear()
    assert merger.snapshot() == []
    assert merger.is_finished is False


@pytest.mark.parametrize(
    "event, payload, reason",
    [
        ("finished", {"timestamp": "2025-01-01T00:00:01Z"}, "success"),
        ("json_patch", {"timestamp": "2025-01-01T00:00:01Z", "patch": {}}, "array"),
        ("tool_call", {"type": "tool_result", "timestamp": "2025-01-01T00:00:01Z"}, "match"),
        ("reasoning", {"timestamp": "yesterday"}, "timestamp"),
        ("reasoning", [1, 2], "object"),
    ],
)
def test_parse_rejects_bad_frames(event, payload, reason):
    with pytest.raises(MalformedFrameError, match=reason):
        parse_activity_frame(event, json.dumps(payload))


def test_parse_inherits_type_from_event_name():
    record = parse_activity_frame("step_start", json.dumps({"timestamp": "2025-01-01T00:00:01Z"}))
    assert record["type"] == "step_start"


def test_naive_and_offset_timestamps_compare():
    merger = ActivityMerger()
    merger.ingest({"type": "reasoning", "timestamp": "2025-01-01T02:00:00+02:00", "n": 1})
    merger.ingest({"type": "reasoning", "timestamp": "2025-01-01T00:30:00", "n": 2})
    assert [r["n"] for r in merger.snapshot()] == [1, 2]


def test_ingest_rejects_invalid_record_up_front():
    merger = ActivityMerger()
    with pytest.raises(MalformedFrameError, match="timestamp"):
        merger.ingest({"type": "reasoning", "id": "r1"})
    with pytest.raises(MalformedFrameError, match="bad timestamp"):
        merger.ingest({"type": "reasoning", "timestamp": "soon"})

    assert len(merger) == 0
    assert merger.snapshot() == []
