"""Global task/session event stream applied to the local state machine.

``GET /api/events`` pushes one envelope per frame, with the frame's event
name equal to ``event.type``::

    event: task.status_changed
    data: {"id": "…", "timestamp": "…",
           "event": {"type": "task.status_changed", "task_id": "…",
                     "from_status": "planning", "to_status": "planning_review"}}

Anything the machine cannot apply (unknown task, rejected transition, a new
or edited task) is reported through ``on_resync`` so the owner can reload
snapshots from the REST API.
"""

from __future__ import annotations

import json
import logging
from collections import OrderedDict
from collections.abc import Callable, Iterable
from typing import Any

import httpx

from studio.errors import InvariantViolation, TransportError, UnknownEntityError
from studio.models import PHASE_FOR_STATUS, normalize_status
from studio.notices import NoticeBoard
from studio.sse import SseTransport
from studio.state_machine import PhaseStateMachine
from studio.stream import BackoffPolicy, EventStream, Subscription

log = logging.getLogger(__name__)

TASK_EVENT_TYPES = (
    "task.created",
    "task.updated",
    "task.status_changed",
    "session.started",
    "session.ended",
    "phase.completed",
    "phase.continuing",
    "agent.message",
    "tool.execution",
    "workspace.created",
    "workspace.merged",
    "workspace.deleted",
    "project.opened",
    "project.closed",
    "error",
)

# Task list changes we cannot apply from the event alone.
_RESYNC_TYPES = frozenset(
    {
        "task.created",
        "task.updated",
        "workspace.created",
        "workspace.merged",
        "workspace.deleted",
        "project.opened",
        "project.closed",
    }
)

DEDUP_WINDOW = 1024


def events_url(api_url: str, task_ids: Iterable[str] | None = None) -> str:
    url = httpx.URL(f"{api_url.rstrip('/')}/api/events")
    ids = [t for t in (task_ids or ()) if t]
    if ids:
        url = url.copy_merge_params({"task_ids": ",".join(ids)})
    return str(url)


class TaskEventStream:
    """Subscribes to ``/api/events`` and feeds a :class:`PhaseStateMachine`."""

    def __init__(
        self,
        machine: PhaseStateMachine,
        *,
        api_url: str,
        task_ids: Iterable[str] | None = None,
        transport: SseTransport | None = None,
        backoff: BackoffPolicy | None = None,
        notices: NoticeBoard | None = None,
        on_event: Callable[[dict[str, Any]], None] | None = None,
        on_resync: Callable[[str], None] | None = None,
        on_connection_change: Callable[[bool], None] | None = None,
        on_error: Callable[[TransportError], None] | None = None,
    ) -> None:
        self.machine = machine
        self.notices = notices
        self.on_event = on_event
        self.on_resync = on_resync
        self._seen: OrderedDict[str, None] = OrderedDict()
        self.stream = EventStream(
            events_url(api_url, task_ids),
            self._handle_frame,
            event_names=TASK_EVENT_TYPES,
            transport=transport,
            backoff=backoff,
            on_connection_change=on_connection_change,
            on_error=on_error,
        )

    def connect(self) -> Subscription:
        return self.stream.connect()

    def close(self) -> None:
        self.stream.close()

    async def aclose(self) -> None:
        await self.stream.aclose()

    @property
    def is_connected(self) -> bool:
        return self.stream.is_connected

    # -- Frames ---------------------------------------------------------------

    def _remember(self, envelope_id: str) -> bool:
        """Record an envelope id; False if it was already seen."""
        if envelope_id in self._seen:
            return False
        self._seen[envelope_id] = None
        if len(self._seen) > DEDUP_WINDOW:
            self._seen.popitem(last=False)
        return True

    def _handle_frame(self, name: str, data: str) -> None:
        try:
            envelope = json.loads(data)
        except json.JSONDecodeError:
            log.warning("Dropping '%s' event: invalid JSON", name)
            return
        event = envelope.get("event") if isinstance(envelope, dict) else None
        if not isinstance(event, dict) or not isinstance(event.get("type"), str):
            log.warning("Dropping '%s' event: missing envelope body", name)
            return
        envelope_id = envelope.get("id")
        if envelope_id and not self._remember(str(envelope_id)):
            log.debug("Skipping duplicate event %s", envelope_id)
            return

        self.apply(event)
        if self.on_event is not None:
            self.on_event(event)

    def _resync(self, reason: str) -> None:
        log.info("Resync needed: %s", reason)
        if self.on_resync is not None:
            self.on_resync(reason)

    def apply(self, event: dict[str, Any]) -> None:
        """Apply one decoded event to the state machine."""
        kind = event["type"]
        task_id = event.get("task_id")
        try:
            if kind == "task.status_changed":
                self.machine.apply_remote_status(
                    str(task_id), normalize_status(str(event.get("to_status")))
                )
            elif kind == "session.started":
                self.machine.register_session(
                    {
                        "id": event.get("session_id"),
                        "task_id": task_id,
                        "phase": event.get("phase") or self._current_phase(task_id),
                        "status": event.get("status") or "running",
                        "created_at": event.get("created_at"),
                    }
                )
            elif kind == "session.ended":
                self.machine.finish_session(
                    str(event.get("session_id")),
                    bool(event.get("success")),
                    event.get("error"),
                )
            elif kind in _RESYNC_TYPES:
                self._resync(kind)
            elif kind == "phase.completed":
                message = f"Phase {event.get('phase_number')}/{event.get('total_phases')} completed"
                if event.get("phase_title"):
                    message += f": {event['phase_title']}"
                self._notify("success", message, task_id)
            elif kind == "phase.continuing":
                self._notify(
                    "info",
                    f"Starting phase {event.get('next_phase_number')}/{event.get('total_phases')}",
                    task_id,
                )
            elif kind == "error":
                self._notify("error", str(event.get("message") or "Server error"), None)
        except UnknownEntityError as exc:
            self._resync(str(exc))
        except (InvariantViolation, ValueError) as exc:
            log.warning("Rejected '%s' event: %s", kind, exc)
            self._resync(f"{kind}: {exc}")

    def _current_phase(self, task_id: Any) -> str | None:
        if not task_id or not self.machine.has_task(str(task_id)):
            return None
        return PHASE_FOR_STATUS.get(self.machine.task(str(task_id))["status"])

    def _notify(self, level: str, message: str, task_id: Any) -> None:
        if self.notices is not None:
            self.notices.push(level, message, task_id=str(task_id) if task_id else None)
