"""User-facing notices (connection loss, failed sessions, phase changes)."""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Callable
from typing import TypedDict

from studio.models import utcnow

log = logging.getLogger(__name__)

NOTICE_LEVELS = ("info", "success", "warning", "error")


class Notice(TypedDict):
    level: str
    message: str
    key: str | None
    task_id: str | None
    created_at: str


class NoticeBoard:
    """Bounded queue of notices plus keyed persistent ones.

    Keyed notices (e.g. ``"connection"``) replace each other and stay until
    dismissed, which is how a non-blocking "disconnected" indicator is shown.
    """

    def __init__(self, limit: int = 50) -> None:
        self._queue: deque[Notice] = deque(maxlen=max(1, limit))
        self._persistent: dict[str, Notice] = {}
        self._listeners: list[Callable[[Notice], None]] = []

    def subscribe(self, listener: Callable[[Notice], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def push(
        self,
        level: str,
        message: str,
        *,
        key: str | None = None,
        task_id: str | None = None,
    ) -> Notice:
        if level not in NOTICE_LEVELS:
            raise ValueError(f"Invalid notice level '{level}'. Must be one of: {NOTICE_LEVELS}")
        notice: Notice = {
            "level": level,
            "message": message,
            "key": key,
            "task_id": task_id,
            "created_at": utcnow(),
        }
        if key is not None:
            self._persistent[key] = notice
        else:
            self._queue.append(notice)
        for listener in list(self._listeners):
            try:
                listener(notice)
            except Exception:
                log.exception("Notice listener failed")
        return notice

    def dismiss(self, key: str) -> bool:
        return self._persistent.pop(key, None) is not None

    def persistent(self) -> list[Notice]:
        return list(self._persistent.values())

    def recent(self) -> list[Notice]:
        return list(self._queue)

    def drain(self) -> list[Notice]:
        """Return and forget queued (non-persistent) notices."""
        items = list(self._queue)
        self._queue.clear()
        return items
