"""Cancellable server-push subscriptions.

An :class:`EventStream` owns one SSE channel: it connects, delivers accepted
frames to a single ``on_frame`` callback in delivery order, reconnects with
bounded exponential backoff, and stops for good when closed. Closing is
synchronous and idempotent; once :meth:`EventStream.close` returns no callback
fires again, even for frames the transport had already buffered.

:class:`ActivityEventStream` is the per-session activity channel. It also stops
itself after delivering the ``finished`` frame.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass

import httpx

from studio.activity import ACTIVITY_TYPES, FINISHED
from studio.config import ReconnectConfig
from studio.errors import TransportError
from studio.sse import HttpxSseTransport, SseEvent, SseTransport

log = logging.getLogger(__name__)

FrameHandler = Callable[[str, str], None]
ConnectionHandler = Callable[[bool], None]
ErrorHandler = Callable[[TransportError], None]


@dataclass(frozen=True)
class BackoffPolicy:
    """Reconnect schedule: ``initial_delay * multiplier**n`` capped at ``max_delay``."""

    max_attempts: int = 5
    initial_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 1.5

    @classmethod
    def from_config(cls, config: ReconnectConfig) -> BackoffPolicy:
        return cls(
            max_attempts=max(1, int(config["max_attempts"])),
            initial_delay=float(config["initial_delay"]),
            max_delay=float(config["max_delay"]),
            multiplier=float(config["multiplier"]),
        )

    def next_delay(self, delay: float) -> float:
        return min(delay * self.multiplier, self.max_delay)


class Subscription:
    """Disposer returned by ``connect``; calling it more than once is harmless."""

    __slots__ = ("_dispose", "_disposed")

    def __init__(self, dispose: Callable[[], None]) -> None:
        self._dispose = dispose
        self._disposed = False

    @property
    def closed(self) -> bool:
        return self._disposed

    def unsubscribe(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        self._dispose()

    __call__ = unsubscribe


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        # Like EventSource: a 4xx answer will not get better by asking again.
        return exc.response.status_code >= 500
    return True


class EventStream:
    """One server-push subscription with reconnect and deterministic teardown."""

    def __init__(
        self,
        url: str,
        on_frame: FrameHandler,
        *,
        event_names: Iterable[str],
        terminal_event: str | None = None,
        transport: SseTransport | None = None,
        backoff: BackoffPolicy | None = None,
        on_connection_change: ConnectionHandler | None = None,
        on_error: ErrorHandler | None = None,
    ) -> None:
        self.url = url
        self._on_frame = on_frame
        self._event_names = frozenset(event_names)
        self._terminal_event = terminal_event
        self._transport: SseTransport = transport or HttpxSseTransport()
        self._backoff = backoff or BackoffPolicy()
        self._on_connection_change = on_connection_change
        self._on_error = on_error
        self._task: asyncio.Task[None] | None = None
        self._closed = False
        self._connected = False
        self._terminated = False
        self._last_event_id: str | None = None
        self.error: TransportError | None = None

    # -- Public state ---------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def terminated(self) -> bool:
        """True once the terminal frame was delivered."""
        return self._terminated

    @property
    def last_event_id(self) -> str | None:
        return self._last_event_id

    # -- Lifecycle ------------------------------------------------------------

    def connect(self) -> Subscription:
        """Start the read loop on the running event loop and return its disposer."""
        if self._task is not None or self._closed:
            raise RuntimeError(f"Stream for {self.url} was already started")
        self._task = asyncio.get_running_loop().create_task(self._run())
        return Subscription(self.close)

    def close(self) -> None:
        """Tear the channel down now. No callback fires after this returns."""
        if self._closed:
            return
        self._closed = True
        self._connected = False
        task = self._task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def aclose(self) -> None:
        self.close()
        await self.wait_closed()

    async def wait_closed(self) -> None:
        """Wait for the read loop to exit (after close, termination, or giving up)."""
        task = self._task
        if task is None:
            return
        with contextlib.suppress(asyncio.CancelledError):
            await task

    # -- Internals ------------------------------------------------------------

    def _set_connected(self, value: bool) -> None:
        if self._connected == value:
            return
        self._connected = value
        if self._closed or self._on_connection_change is None:
            return
        try:
            self._on_connection_change(value)
        except Exception:
            log.exception("Connection-change handler failed for %s", self.url)

    def _deliver(self, event: SseEvent) -> None:
        if event.event not in self._event_names:
            log.debug("Ignoring unknown event '%s' on %s", event.event, self.url)
            return
        try:
            self._on_frame(event.event, event.data)
        except Exception:
            log.exception("Frame handler failed for '%s' on %s", event.event, self.url)
        if event.event == self._terminal_event:
            self._terminated = True

    def _give_up(self, attempts: int, reason: str) -> None:
        self.error = TransportError(self.url, attempts, reason)
        log.warning("%s", self.error)
        if self._closed or self._on_error is None:
            return
        try:
            self._on_error(self.error)
        except Exception:
            log.exception("Error handler failed for %s", self.url)

    async def _run(self) -> None:
        failures = 0
        delay = self._backoff.initial_delay
        try:
            while not self._closed:
                reason = "server closed the stream"
                try:
                    async with self._transport.open(
                        self.url, last_event_id=self._last_event_id
                    ) as events:
                        self._set_connected(True)
                        failures = 0
                        delay = self._backoff.initial_delay
                        async for event in events:
                            if self._closed:
                                return
                            if event.id is not None:
                                self._last_event_id = event.id
                            self._deliver(event)
                            if self._closed or self._terminated:
                                return
                except asyncio.CancelledError:
                    raise
                except (httpx.HTTPError, OSError) as exc:
                    reason = str(exc) or type(exc).__name__
                    self._set_connected(False)
                    if not _is_retryable(exc):
                        self._give_up(failures + 1, reason)
                        return
                    failures += 1
                    log.info(
                        "Stream %s failed (attempt %d/%d): %s",
                        self.url,
                        failures,
                        self._backoff.max_attempts,
                        reason,
                    )
                    if failures >= self._backoff.max_attempts:
                        self._give_up(failures, reason)
                        return
                else:
                    self._set_connected(False)
                    log.info("Stream %s ended by server, reconnecting", self.url)

                if self._closed:
                    return
                await asyncio.sleep(delay)
                delay = self._backoff.next_delay(delay)
        finally:
            if not self._closed:
                self._set_connected(False)
                self._closed = True
            self._connected = False


def activity_url(api_url: str, session_id: str) -> str:
    return f"{api_url.rstrip('/')}/api/sessions/{session_id}/activity"


class ActivityEventStream(EventStream):
    """Activity channel for one agent session; closes itself after ``finished``."""

    def __init__(
        self,
        session_id: str,
        on_frame: FrameHandler,
        *,
        api_url: str,
        transport: SseTransport | None = None,
        backoff: BackoffPolicy | None = None,
        on_connection_change: ConnectionHandler | None = None,
        on_error: ErrorHandler | None = None,
    ) -> None:
        super().__init__(
            activity_url(api_url, session_id),
            on_frame,
            event_names=ACTIVITY_TYPES,
            terminal_event=FINISHED,
            transport=transport,
            backoff=backoff,
            on_connection_change=on_connection_change,
            on_error=on_error,
        )
        self.session_id = session_id
