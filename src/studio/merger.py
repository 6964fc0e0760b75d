"""Ordered, deduplicated activity timeline for one session subscription."""

from __future__ import annotations

import logging

from studio.activity import (
    ActivityRecord,
    correlation_id,
    is_finished,
    parse_activity_frame,
    timestamp_key,
    validate_activity_record,
)
from studio.errors import MalformedFrameError

log = logging.getLogger(__name__)


class ActivityMerger:
    """Merges raw activity records into a stable timeline.

    Records sharing a correlation ``id`` replace each other in place: the
    position is fixed by the first delivery, the content by the latest one.
    The displayed order is by ``timestamp``; ties keep merge order.
    """

    def __init__(self, session_id: str | None = None) -> None:
        self.session_id = session_id
        self._records: list[ActivityRecord] = []
        self._positions: dict[str, int] = {}
        self._sorted: list[ActivityRecord] | None = None
        self.finished_record: ActivityRecord | None = None

    def __len__(self) -> int:
        return len(self._records)

    @property
    def is_finished(self) -> bool:
        return self.finished_record is not None

    def ingest(self, record: ActivityRecord) -> bool:
        """Merge one record. Returns True if the timeline changed.

        Raises :class:`MalformedFrameError` if *record* is not a valid activity record.
        """
        validate_activity_record(record)
        return self._merge(record)

    def _merge(self, record: ActivityRecord) -> bool:
        if is_finished(record):
            if self.finished_record is not None:
                log.debug("Session %s: ignoring repeated finished record", self.session_id)
                return False
            self.finished_record = record

        key = correlation_id(record)
        if key is not None and key in self._positions:
            position = self._positions[key]
            if self._records[position] == record:
                return False
            self._records[position] = record
        else:
            if key is not None:
                self._positions[key] = len(self._records)
            self._records.append(record)
        self._sorted = None
        return True

    def ingest_frame(self, event: str, data: str) -> ActivityRecord | None:
        """Parse and merge one raw frame; malformed frames are dropped."""
        try:
            record = parse_activity_frame(event, data)
        except MalformedFrameError as exc:
            log.warning("Session %s: dropping frame: %s", self.session_id, exc)
            return None
        self._merge(record)
        return record

    def snapshot(self) -> list[ActivityRecord]:
        """All known records, sorted by timestamp ascending."""
        if self._sorted is None:
            self._sorted = sorted(self._records, key=timestamp_key)
        return list(self._sorted)

    def clear(self) -> None:
        self._records = []
        self._positions = {}
        self._sorted = None
        self.finished_record = None
