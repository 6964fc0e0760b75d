"""Server-sent events: line decoder and the httpx-backed transport."""

from __future__ import annotations

import contextlib
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Protocol

import httpx

log = logging.getLogger(__name__)

# Opening the channel is bounded; reading is not (sessions may be silent for a long time).
CONNECT_TIMEOUT = 10.0


@dataclass
class SseEvent:
    """One dispatched server-sent event."""

    event: str
    data: str
    id: str | None = None
    retry: int | None = None


class SseDecoder:
    """Incremental ``text/event-stream`` decoder, fed one line at a time."""

    def __init__(self) -> None:
        self._event = ""
        self._data: list[str] = []
        self._retry: int | None = None
        self.last_event_id: str | None = None

    def feed(self, line: str) -> SseEvent | None:
        """Consume one line; returns an event when a blank line dispatches one."""
        line = line.rstrip("\r\n")
        if not line:
            return self._dispatch()
        if line.startswith(":"):
            return None  # comment / keep-alive

        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]

        if field == "event":
            self._event = value
        elif field == "data":
            self._data.append(value)
        elif field == "id":
            if "\0" not in value:
                self.last_event_id = value
        elif field == "retry":
            if value.isdigit():
                self._retry = int(value)
        return None

    def _dispatch(self) -> SseEvent | None:
        if not self._data:
            self._event = ""
            return None
        event = SseEvent(
            event=self._event or "message",
            data="\n".join(self._data),
            id=self.last_event_id,
            retry=self._retry,
        )
        self._event = ""
        self._data = []
        self._retry = None
        return event


class SseTransport(Protocol):
    """Opens one SSE connection; the context yields events until the server closes it."""

    def open(
        self, url: str, *, last_event_id: str | None = None
    ) -> contextlib.AbstractAsyncContextManager[AsyncIterator[SseEvent]]: ...


async def iter_sse_events(lines: AsyncIterator[str]) -> AsyncIterator[SseEvent]:
    decoder = SseDecoder()
    async for line in lines:
        event = decoder.feed(line)
        if event is not None:
            yield event


class HttpxSseTransport:
    """SSE over a streaming ``httpx.AsyncClient`` GET request.

    Raises ``httpx.HTTPError`` subclasses (including ``HTTPStatusError`` for
    non-2xx responses); retry policy belongs to the caller.
    """

    def __init__(
        self, *, client: httpx.AsyncClient | None = None, connect_timeout: float = CONNECT_TIMEOUT
    ) -> None:
        self._client = client
        self._timeout = httpx.Timeout(connect_timeout, read=None)

    @contextlib.asynccontextmanager
    async def open(
        self, url: str, *, last_event_id: str | None = None
    ) -> AsyncIterator[AsyncIterator[SseEvent]]:
        headers = {"Accept": "text/event-stream", "Cache-Control": "no-cache"}
        if last_event_id is not None:
            headers["Last-Event-ID"] = last_event_id

        owns_client = self._client is None
        client = self._client or httpx.AsyncClient(timeout=self._timeout)
        try:
            async with client.stream("GET", url, headers=headers) as response:
                response.raise_for_status()
                log.debug("SSE connected: %s", url)
                yield iter_sse_events(response.aiter_lines())
        finally:
            if owns_client:
                await client.aclose()
