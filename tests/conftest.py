"""Shared test fixtures: a scripted SSE transport and fast reconnect settings."""

from __future__ import annotations

import asyncio
import contextlib
import json
from collections import deque
from collections.abc import AsyncIterator, Callable

import pytest

from studio.config import default_config
from studio.sse import SseEvent
from studio.stream import BackoffPolicy

_CLOSE = object()


class FakeConnection:
    """One server-side SSE response whose frames the test pushes on demand."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue = asyncio.Queue()
        self._seq = 0

    def push(self, event: str, data: str | dict, *, id: str | None = None) -> None:
        if isinstance(data, dict):
            data = json.dumps(data)
        self._queue.put_nowait(SseEvent(event=event, data=data, id=id))

    def push_seq(self, event: str, data: str | dict) -> None:
        """Push with an auto-incrementing ``id:`` like the activity endpoint."""
        self._seq += 1
        self.push(event, data, id=str(self._seq))

    def close(self) -> None:
        """Server ends the response cleanly."""
        self._queue.put_nowait(_CLOSE)

    def fail(self, exc: BaseException) -> None:
        """Connection drops mid-stream."""
        self._queue.put_nowait(exc)

    async def events(self) -> AsyncIterator[SseEvent]:
        while True:
            item = await self._queue.get()
            if item is _CLOSE:
                return
            if isinstance(item, BaseException):
                raise item
            yield item


class FakeTransport:
    """Scripted ``SseTransport``: each ``open`` takes the next connection or error.

    With nothing scripted, ``open`` hands out an idle connection that never
    sends anything.
    """

    def __init__(self) -> None:
        self._script: deque[FakeConnection | BaseException] = deque()
        self.opened: list[tuple[str, str | None]] = []
        self.connections: list[FakeConnection] = []

    def add_connection(self) -> FakeConnection:
        conn = FakeConnection()
        self._script.append(conn)
        return conn

    def add_failure(self, exc: BaseException) -> None:
        self._script.append(exc)

    @contextlib.asynccontextmanager
    async def open(self, url: str, *, last_event_id: str | None = None):
        self.opened.append((url, last_event_id))
        item = self._script.popleft() if self._script else FakeConnection()
        if isinstance(item, BaseException):
            raise item
        self.connections.append(item)
        yield item.events()


async def _wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Spin the event loop until *predicate* holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached before timeout")
        await asyncio.sleep(0.001)


async def _settle(ticks: int = 20) -> None:
    for _ in range(ticks):
        await asyncio.sleep(0)


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def backoff() -> BackoffPolicy:
    return BackoffPolicy(max_attempts=3, initial_delay=0.0, max_delay=0.0, multiplier=1.5)


@pytest.fixture
def config():
    cfg = default_config()
    cfg["api_url"] = "http://studio.test"
    cfg["reconnect"]["initial_delay"] = 0.0
    cfg["reconnect"]["max_delay"] = 0.0
    cfg["reconnect"]["max_attempts"] = 3
    return cfg


@pytest.fixture
def wait_for():
    return _wait_for


@pytest.fixture
def settle():
    return _settle
