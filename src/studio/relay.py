"""Fan status events out to other local tools through a Redis Stream.

The state machine's transition events (``task.status_changed``,
``session.started``, ``session.ended``) are appended to
``studio:events:stream`` so dashboards and scripts can follow a board without
their own connection to the task service. Publishing is best-effort: Redis
being down never affects the client.

:class:`EventRelay` runs on the client's event loop and writes with
``redis.asyncio``; :class:`EventSubscriber` is a plain blocking iterator for
scripts.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import time
import uuid
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

from redis import ConnectionPool, Redis
from redis import asyncio as aioredis
from redis.exceptions import RedisError

from studio.config import DEFAULT_REDIS_URL

log = logging.getLogger(__name__)

EVENTS_STREAM = "studio:events:stream"
# Max entries retained in the stream
EVENTS_STREAM_MAXLEN = int(os.environ.get("STUDIO_EVENTS_STREAM_MAXLEN", "1000"))
EVENT_VERSION = 1
REDIS_SOCKET_TIMEOUT = 2.0

_pools: dict[str, ConnectionPool] = {}


def get_redis(url: str = DEFAULT_REDIS_URL) -> Redis:
    pool = _pools.get(url)
    if pool is None:
        pool = _pools[url] = ConnectionPool.from_url(
            url, socket_connect_timeout=REDIS_SOCKET_TIMEOUT
        )
    return Redis(connection_pool=pool)


class EventRelay:
    """Publishes state machine events to the Redis stream.

    Pass :meth:`publish` to ``PhaseStateMachine.on_transition``. It only
    schedules the write on the running loop; writes go out one at a time in
    publish order. Await :meth:`flush` to wait for them and :meth:`aclose`
    when done.
    """

    def __init__(
        self,
        redis_url: str = DEFAULT_REDIS_URL,
        *,
        source: str = "client",
        client: aioredis.Redis | None = None,
    ) -> None:
        self.redis_url = redis_url
        self.source = source
        self.published = 0
        self.failed = 0
        self._redis = client
        self._owns_client = client is None
        self._lock = asyncio.Lock()
        self._pending: set[asyncio.Task[None]] = set()

    @property
    def redis(self) -> aioredis.Redis:
        if self._redis is None:
            self._redis = aioredis.from_url(
                self.redis_url,
                socket_connect_timeout=REDIS_SOCKET_TIMEOUT,
                socket_timeout=REDIS_SOCKET_TIMEOUT,
            )
        return self._redis

    @property
    def pending(self) -> int:
        return len(self._pending)

    def _envelope(self, event: Mapping[str, Any]) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "event_id": str(uuid.uuid4()),
            "source": self.source,
            "v": EVENT_VERSION,
            "ts": datetime.now(UTC).isoformat(),
        }
        payload.update(event)
        return payload

    def publish(self, event: Mapping[str, Any]) -> None:
        """Queue one event for the stream without waiting on Redis."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.failed += 1
            log.warning(
                "Event publish skipped (no running event loop): %s %s",
                event.get("type"),
                event.get("task_id"),
            )
            return
        task = loop.create_task(self._send(self._envelope(event)))
        self._pending.add(task)
        task.add_done_callback(self._sent)

    __call__ = publish

    async def _send(self, payload: dict[str, Any]) -> None:
        async with self._lock:
            try:
                await self.redis.xadd(
                    EVENTS_STREAM,
                    {"data": json.dumps(payload)},
                    maxlen=EVENTS_STREAM_MAXLEN,
                    approximate=True,
                )
            except RedisError:
                self.failed += 1
                log.warning(
                    "Event publish failed (Redis unavailable): %s %s",
                    payload.get("type"),
                    payload.get("task_id"),
                )
                return
        self.published += 1

    def _sent(self, task: asyncio.Task[None]) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.failed += 1
            log.error("Event publish failed", exc_info=exc)

    async def flush(self) -> None:
        """Wait until every scheduled write has finished."""
        while self._pending:
            await asyncio.wait(set(self._pending))

    async def aclose(self) -> None:
        await self.flush()
        if self._owns_client and self._redis is not None:
            await self._redis.aclose()
            self._redis = None


class EventSubscriber:
    """Iterator over relayed events, optionally scoped to one task.

    Uses ``XREAD BLOCK``; ``__next__`` returns the next matching event or
    ``None`` after ``timeout`` seconds without one. When Redis is unreachable
    it sleeps for ``timeout`` and returns ``None``.
    """

    def __init__(
        self,
        *,
        redis_url: str = DEFAULT_REDIS_URL,
        task_id: str | None = None,
        timeout: float = 30.0,
        cursor: str = "$",
    ) -> None:
        self.task_id = task_id
        self.timeout = timeout
        self._cursor = cursor  # "$" = only new entries, "0" = from beginning
        self._redis: Redis | None
        try:
            self._redis = get_redis(redis_url)
            self._redis.ping()
        except RedisError:
            log.info("Redis unavailable at %s; relay subscriber idle", redis_url)
            self._redis = None

    def __iter__(self):
        return self

    @staticmethod
    def _decode(entry_id, fields) -> dict | None:
        data = fields.get("data") or fields.get(b"data")
        if not data:
            return None
        if isinstance(data, bytes):
            data = data.decode()
        try:
            event = json.loads(data)
        except (json.JSONDecodeError, TypeError):
            return None
        if not isinstance(event, dict):
            return None
        event["_stream_id"] = entry_id.decode() if isinstance(entry_id, bytes) else entry_id
        return event

    def _matches(self, event: dict) -> bool:
        return not (self.task_id and event.get("task_id") != self.task_id)

    def __next__(self) -> dict | None:
        if self._redis is None:
            time.sleep(self.timeout)
            return None
        while True:
            result = self._redis.xread(
                {EVENTS_STREAM: self._cursor}, block=int(self.timeout * 1000), count=10
            )
            if not result:
                return None
            for _stream_name, entries in result:
                for entry_id, fields in entries:
                    self._cursor = entry_id
                    event = self._decode(entry_id, fields)
                    if event is not None and self._matches(event):
                        return event
