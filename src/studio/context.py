"""Client-side coordination of task status, session activity and notices.

A :class:`StudioContext` is built explicitly and passed to whoever needs it;
there is no module-level state. It owns one liveness tracker, one state
machine, one notice board and at most one activity feed per session id.

Typical use::

    async with StudioContext(load_config()) as ctx:
        await ctx.refresh()
        ctx.watch_events()
        sub = ctx.subscribe(session_id, on_activity=print)
        ...
        sub.unsubscribe()
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable
from typing import Any

from studio.activity import ActivityRecord
from studio.activity_feed import SessionActivityFeed
from studio.api_client import StudioApiClient
from studio.config import StudioConfig, load_config
from studio.errors import (
    ApiError,
    InvalidTransition,
    InvariantViolation,
    TransportError,
)
from studio.kanban import ColumnPlacement, build_board, project_column
from studio.liveness import ExecutionLivenessTracker
from studio.models import PHASE_FOR_STATUS, TaskRow, normalize_status
from studio.notices import NoticeBoard
from studio.relay import EventRelay
from studio.sse import SseTransport
from studio.state_machine import PhaseStateMachine, can_transition
from studio.stream import BackoffPolicy, Subscription
from studio.task_events import TaskEventStream

log = logging.getLogger(__name__)

CONNECTION_NOTICE_KEY = "connection"
EVENTS_CHANNEL = "events"


class StudioContext:
    def __init__(
        self,
        config: StudioConfig | None = None,
        *,
        api: StudioApiClient | None = None,
        transport: SseTransport | None = None,
        backoff: BackoffPolicy | None = None,
        relay: EventRelay | None = None,
    ) -> None:
        self.config = config if config is not None else load_config()
        self.backoff = backoff or BackoffPolicy.from_config(self.config["reconnect"])
        self.liveness = ExecutionLivenessTracker()
        self.notices = NoticeBoard(limit=self.config["notice_limit"])
        self.machine = PhaseStateMachine(self.liveness, notices=self.notices)
        self._api = api
        self._owns_api = api is None
        self._transport = transport
        self._feeds: dict[str, SessionActivityFeed] = {}
        self._events: TaskEventStream | None = None
        self._channels: dict[str, bool] = {}
        self._board_listeners: list[Callable[[dict[str, Any]], None]] = []
        self._refresh_task: asyncio.Task[None] | None = None
        self._closed = False

        self.machine.on_transition(self._board_changed)
        self._owns_relay = relay is None and self.config["relay_enabled"]
        if self._owns_relay:
            relay = EventRelay(self.config["redis_url"])
        self.relay = relay
        if relay is not None:
            self.machine.on_transition(relay.publish)

    @property
    def api(self) -> StudioApiClient:
        if self._api is None:
            self._api = StudioApiClient(self.config["api_url"])
        return self._api

    # -- Lifecycle ------------------------------------------------------------

    async def __aenter__(self) -> StudioContext:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close every stream, then the API client and relay if this context created them."""
        if self._closed:
            return
        self._closed = True
        feeds = list(self._feeds.values())
        self._feeds.clear()
        for feed in feeds:
            feed.stop()
        if self._events is not None:
            await self._events.aclose()
            self._events = None
        if self._refresh_task is not None and not self._refresh_task.done():
            self._refresh_task.cancel()
        if self._owns_api and self._api is not None:
            await self._api.aclose()
        if self._owns_relay and self.relay is not None:
            await self.relay.aclose()
        self._channels.clear()

    # -- Session activity -----------------------------------------------------

    def subscribe(
        self,
        session_id: str,
        on_activity: Callable[[ActivityRecord], None] | None = None,
        on_finished: Callable[[bool, str | None], None] | None = None,
    ) -> Subscription:
        """Stream a session's activity; a second call for the same id replaces the first."""
        if self._closed:
            raise RuntimeError("StudioContext is closed")
        previous = self._feeds.pop(session_id, None)
        if previous is not None:
            previous.stop()

        channel = f"session:{session_id}"
        feed = SessionActivityFeed(
            api_url=self.config["api_url"],
            transport=self._transport,
            backoff=self.backoff,
            on_activity=on_activity,
            on_connection_change=lambda connected: self._channel_state(channel, connected),
            on_error=lambda exc: self._channel_error(channel, exc),
        )
        feed.on_finished = lambda success, error: self._session_finished(
            session_id, success, error, on_finished
        )
        self._feeds[session_id] = feed
        feed.watch(session_id)

        def dispose() -> None:
            feed.stop()
            if self._feeds.get(session_id) is feed:
                del self._feeds[session_id]
            self._forget_channel(channel)

        return Subscription(dispose)

    def feed(self, session_id: str) -> SessionActivityFeed | None:
        return self._feeds.get(session_id)

    def get_ordered_activities(self, session_id: str) -> list[ActivityRecord]:
        feed = self._feeds.get(session_id)
        return feed.get_ordered_activities() if feed is not None else []

    def _session_finished(
        self,
        session_id: str,
        success: bool,
        error: str | None,
        callback: Callable[[bool, str | None], None] | None,
    ) -> None:
        self._forget_channel(f"session:{session_id}")
        if self.machine.has_session(session_id):
            try:
                self.machine.finish_session(session_id, success, error)
            except InvariantViolation:
                log.exception("Could not apply finish of session %s", session_id)
        else:
            log.debug("Finished session %s is not tracked locally", session_id)
        if callback is not None:
            callback(success, error)

    # -- Board ----------------------------------------------------------------

    def is_task_running(self, task_id: str) -> bool:
        return self.liveness.is_running(task_id)

    def project_column(self, status: str) -> ColumnPlacement:
        return project_column(status)

    def board(self) -> list[dict[str, Any]]:
        return build_board(self.machine.tasks(), self.liveness)

    def on_board_change(self, listener: Callable[[dict[str, Any]], None]) -> Callable[[], None]:
        self._board_listeners.append(listener)

        def remove() -> None:
            if listener in self._board_listeners:
                self._board_listeners.remove(listener)

        return remove

    def _board_changed(self, event: dict[str, Any]) -> None:
        for listener in list(self._board_listeners):
            try:
                listener(event)
            except Exception:
                log.exception("Board listener failed")

    # -- Remote state ---------------------------------------------------------

    async def refresh(self) -> None:
        """Reload task and session snapshots from the service."""
        tasks = await self.api.list_tasks()
        sessions = await self.api.list_sessions()
        self.machine.load(tasks, sessions)
        log.info("Loaded %d task(s), %d session(s)", len(tasks), len(sessions))
        self._board_changed({"type": "board.reloaded", "tasks": len(tasks)})

    def _schedule_refresh(self, reason: str) -> None:
        if self._closed:
            return
        if self._refresh_task is not None and not self._refresh_task.done():
            return
        log.debug("Scheduling refresh: %s", reason)
        self._refresh_task = asyncio.get_running_loop().create_task(self.refresh())
        self._refresh_task.add_done_callback(self._refresh_done)

    def _refresh_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        if isinstance(exc, (ApiError, ValueError)):
            log.warning("Refresh failed: %s", exc)
            self.notices.push("warning", f"Could not refresh tasks: {exc}")
        else:
            log.error("Refresh failed", exc_info=exc)

    def watch_events(
        self,
        task_ids: Iterable[str] | None = None,
        on_event: Callable[[dict[str, Any]], None] | None = None,
    ) -> Subscription:
        """Follow the service's task/session events; replaces any previous watch."""
        if self._closed:
            raise RuntimeError("StudioContext is closed")
        if self._events is not None:
            self._events.close()
        self._events = TaskEventStream(
            self.machine,
            api_url=self.config["api_url"],
            task_ids=task_ids,
            transport=self._transport,
            backoff=self.backoff,
            notices=self.notices,
            on_event=on_event,
            on_resync=self._schedule_refresh,
            on_connection_change=lambda connected: self._channel_state(EVENTS_CHANNEL, connected),
            on_error=lambda exc: self._channel_error(EVENTS_CHANNEL, exc),
        )
        events = self._events
        events.connect()

        def dispose() -> None:
            events.close()
            if self._events is events:
                self._events = None
            self._forget_channel(EVENTS_CHANNEL)

        return Subscription(dispose)

    @property
    def events(self) -> TaskEventStream | None:
        return self._events

    # -- Task actions ---------------------------------------------------------

    async def _perform(self, task_id: str, to_status: str) -> TaskRow:
        """Ask the service for a transition, then start the new phase's agent if it has one."""
        task = self.machine.task(task_id)
        if not can_transition(task["status"], to_status):
            raise InvalidTransition(task_id, task["status"], to_status)
        if self.liveness.is_running(task_id):
            raise InvariantViolation(f"Task {task_id} has a running session")

        result = await self.api.transition_task(task_id, to_status)
        remote = result.get("task", result) if isinstance(result, dict) else {}
        status = normalize_status(str(remote.get("status") or to_status))
        self.machine.apply_remote_status(task_id, status)
        if to_status in PHASE_FOR_STATUS:
            await self.api.execute_task(task_id)
            await self.refresh()
        return self.machine.task(task_id)

    async def start_task(self, task_id: str) -> TaskRow:
        return await self._perform(task_id, "planning")

    async def request_replan(self, task_id: str) -> TaskRow:
        return await self._perform(task_id, "planning")

    async def approve_plan(self, task_id: str) -> TaskRow:
        return await self._perform(task_id, "in_progress")

    async def dispatch_fix(self, task_id: str) -> TaskRow:
        return await self._perform(task_id, "in_progress")

    async def approve(self, task_id: str) -> TaskRow:
        return await self._perform(task_id, "done")

    async def request_changes(self, task_id: str) -> TaskRow:
        return await self._perform(task_id, "fix")

    async def retry(self, task_id: str) -> TaskRow:
        """Re-run the current phase's agent after a failed session."""
        task = self.machine.task(task_id)
        if task["status"] not in PHASE_FOR_STATUS:
            raise InvariantViolation(
                f"Task {task_id} is '{task['status']}'; no agent phase to retry"
            )
        if self.liveness.is_running(task_id):
            raise InvariantViolation(f"Task {task_id} has a running session")
        await self.api.execute_task(task_id)
        await self.refresh()
        return self.machine.task(task_id)

    # -- Connectivity ---------------------------------------------------------

    def _channel_state(self, channel: str, connected: bool) -> None:
        self._channels[channel] = connected
        if not connected:
            self.notices.push(
                "warning", "Disconnected from server, reconnecting", key=CONNECTION_NOTICE_KEY
            )
        elif all(self._channels.values()):
            self.notices.dismiss(CONNECTION_NOTICE_KEY)

    def _channel_error(self, channel: str, exc: TransportError) -> None:
        self._channels[channel] = False
        self.notices.push("error", str(exc), key=CONNECTION_NOTICE_KEY)

    def _forget_channel(self, channel: str) -> None:
        self._channels.pop(channel, None)
        if all(self._channels.values()):
            self.notices.dismiss(CONNECTION_NOTICE_KEY)

    def connection_status(self) -> dict[str, Any]:
        return {
            "connected": all(self._channels.values()),
            "channels": dict(self._channels),
            "notice": next(
                (n for n in self.notices.persistent() if n["key"] == CONNECTION_NOTICE_KEY),
                None,
            ),
        }
