"""Live activity timeline for the session a viewer is looking at."""

from __future__ import annotations

import logging
from collections.abc import Callable

from studio.activity import ActivityRecord
from studio.errors import TransportError
from studio.merger import ActivityMerger
from studio.sse import SseTransport
from studio.stream import ActivityEventStream, BackoffPolicy, Subscription

log = logging.getLogger(__name__)

ActivityHandler = Callable[[ActivityRecord], None]
FinishedHandler = Callable[[bool, str | None], None]


class SessionActivityFeed:
    """Owns at most one activity stream and its merger.

    Watching another session (or the same one again) tears the previous
    stream down first, so records from an old session never reach the new
    timeline. ``on_finished`` fires at most once per watched session.
    """

    def __init__(
        self,
        *,
        api_url: str,
        transport: SseTransport | None = None,
        backoff: BackoffPolicy | None = None,
        on_activity: ActivityHandler | None = None,
        on_finished: FinishedHandler | None = None,
        on_connection_change: Callable[[bool], None] | None = None,
        on_error: Callable[[TransportError], None] | None = None,
    ) -> None:
        self.api_url = api_url
        self._transport = transport
        self._backoff = backoff
        self.on_activity = on_activity
        self.on_finished = on_finished
        self.on_connection_change = on_connection_change
        self.on_error = on_error
        self.session_id: str | None = None
        self._merger = ActivityMerger()
        self._stream: ActivityEventStream | None = None
        self._subscription: Subscription | None = None
        self._finished_reported = False

    # -- State ----------------------------------------------------------------

    @property
    def activities(self) -> list[ActivityRecord]:
        return self._merger.snapshot()

    def get_ordered_activities(self) -> list[ActivityRecord]:
        return self._merger.snapshot()

    @property
    def is_connected(self) -> bool:
        return self._stream is not None and self._stream.is_connected

    @property
    def is_finished(self) -> bool:
        return self._merger.is_finished

    @property
    def error(self) -> TransportError | None:
        return self._stream.error if self._stream is not None else None

    @property
    def stream(self) -> ActivityEventStream | None:
        return self._stream

    # -- Lifecycle ------------------------------------------------------------

    def watch(self, session_id: str | None, enabled: bool = True) -> Subscription | None:
        """Switch the feed to *session_id*; ``None`` or ``enabled=False`` just stops it."""
        self.stop()
        self._merger = ActivityMerger(session_id)
        self._finished_reported = False
        self.session_id = session_id
        if session_id is None or not enabled:
            return None

        stream = ActivityEventStream(
            session_id,
            lambda event, data: self._handle_frame(stream, event, data),
            api_url=self.api_url,
            transport=self._transport,
            backoff=self._backoff,
            on_connection_change=lambda connected: self._handle_connection(stream, connected),
            on_error=lambda exc: self._handle_error(stream, exc),
        )
        self._stream = stream
        self._subscription = stream.connect()
        log.debug("Watching activity for session %s", session_id)
        return self._subscription

    def stop(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
        self._subscription = None
        self._stream = None

    def clear(self) -> None:
        """Stop streaming and forget all records."""
        self.stop()
        self._merger.clear()
        self._finished_reported = False
        self.session_id = None

    async def wait_closed(self) -> None:
        if self._stream is not None:
            await self._stream.wait_closed()

    # -- Stream callbacks -----------------------------------------------------

    def _handle_frame(self, stream: ActivityEventStream, event: str, data: str) -> None:
        if stream is not self._stream:
            return
        was_finished = self._merger.is_finished
        record = self._merger.ingest_frame(event, data)
        if record is None or (was_finished and record.get("type") == "finished"):
            return
        if self.on_activity is not None:
            try:
                self.on_activity(record)
            except Exception:
                log.exception("Activity handler failed for session %s", self.session_id)
        if record.get("type") == "finished" and not self._finished_reported:
            self._finished_reported = True
            if self.on_finished is not None:
                self.on_finished(bool(record["success"]), record.get("error"))

    def _handle_connection(self, stream: ActivityEventStream, connected: bool) -> None:
        if stream is not self._stream or self.on_connection_change is None:
            return
        if not connected and stream.terminated:
            return
        self.on_connection_change(connected)

    def _handle_error(self, stream: ActivityEventStream, exc: TransportError) -> None:
        if stream is self._stream and self.on_error is not None:
            self.on_error(exc)
