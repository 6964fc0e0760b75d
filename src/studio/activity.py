"""Activity records: the unit of session telemetry pushed over the activity stream.

Each SSE frame is named after its record type and carries the record as JSON::

    event: tool_call
    id: 12
    data: {"type": "tool_call", "id": "call_1", "tool_name": "bash", "args": {...},
           "timestamp": "2025-01-01T12:00:00Z"}

Records with an ``id`` are updated in place by later frames carrying the same
``id`` (a tool call growing into its result, a streamed message growing chunk by
chunk). ``json_patch`` and ``finished`` records have no id.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any

from jsonschema import Draft7Validator
from jsonschema.exceptions import best_match

from studio.errors import MalformedFrameError

ACTIVITY_TYPES = (
    "tool_call",
    "tool_result",
    "agent_message",
    "reasoning",
    "step_start",
    "json_patch",
    "finished",
)
FINISHED = "finished"

ActivityRecord = dict[str, Any]

_TIMESTAMP = {"type": "string", "minLength": 1}

ACTIVITY_RECORD_SCHEMA: dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "required": ["type", "timestamp"],
    "properties": {
        "type": {"enum": list(ACTIVITY_TYPES)},
        "id": {"type": "string"},
        "timestamp": _TIMESTAMP,
    },
    "allOf": [
        {
            "if": {"properties": {"type": {"const": "finished"}}},
            "then": {
                "required": ["success"],
                "properties": {
                    "success": {"type": "boolean"},
                    "error": {"type": ["string", "null"]},
                },
            },
        },
        {
            "if": {"properties": {"type": {"const": "json_patch"}}},
            "then": {"required": ["patch"], "properties": {"patch": {"type": "array"}}},
        },
        {
            "if": {"properties": {"type": {"enum": ["tool_call", "tool_result"]}}},
            "then": {"properties": {"tool_name": {"type": "string"}}},
        },
        {
            "if": {"properties": {"type": {"const": "tool_result"}}},
            "then": {"properties": {"success": {"type": "boolean"}}},
        },
        {
            "if": {"properties": {"type": {"enum": ["agent_message", "reasoning"]}}},
            "then": {"properties": {"content": {"type": "string"}}},
        },
    ],
}

_validator = Draft7Validator(ACTIVITY_RECORD_SCHEMA)


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO 8601 timestamp; naive values are taken as UTC."""
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def parse_activity_frame(event: str, data: str) -> ActivityRecord:
    """Decode one SSE frame into a validated activity record.

    The frame's event name is authoritative for the record type: a payload
    without ``type`` inherits it, a payload that disagrees is rejected.
    Raises :class:`MalformedFrameError` for anything that is not a usable record.
    """
    try:
        record = json.loads(data)
    except (json.JSONDecodeError, TypeError) as exc:
        raise MalformedFrameError(event, f"invalid JSON ({exc})") from exc
    if not isinstance(record, dict):
        raise MalformedFrameError(event, "payload is not an object")

    record.setdefault("type", event)
    if record["type"] != event:
        raise MalformedFrameError(event, f"payload type '{record['type']}' does not match")

    validate_activity_record(record)
    if record.get("id") == "":
        del record["id"]
    return record


def validate_activity_record(record: ActivityRecord) -> None:
    """Check a decoded record against the schema and its timestamp.

    Raises :class:`MalformedFrameError` named after the record's type.
    """
    kind = str(record.get("type", "")) if isinstance(record, dict) else ""
    error = best_match(_validator.iter_errors(record))
    if error is not None:
        location = "/".join(str(p) for p in error.path) or "<root>"
        raise MalformedFrameError(kind, f"{location}: {error.message}")
    try:
        parse_timestamp(record["timestamp"])
    except ValueError as exc:
        raise MalformedFrameError(kind, f"bad timestamp {record['timestamp']!r}") from exc


def correlation_id(record: ActivityRecord) -> str | None:
    """Return the record's non-empty correlation id, if any."""
    value = record.get("id")
    return value if isinstance(value, str) and value else None


def timestamp_key(record: ActivityRecord) -> datetime:
    return parse_timestamp(record["timestamp"])


def is_finished(record: ActivityRecord) -> bool:
    return record.get("type") == FINISHED
