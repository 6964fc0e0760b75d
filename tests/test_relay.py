"""Tests for relaying state machine events through the Redis stream."""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from redis.exceptions import RedisError

from studio.relay import EVENTS_STREAM, EVENTS_STREAM_MAXLEN, EventRelay, EventSubscriber
from studio.state_machine import PhaseStateMachine


def _client(**xadd_kwargs) -> MagicMock:
    client = MagicMock()
    client.xadd = AsyncMock(**xadd_kwargs)
    client.aclose = AsyncMock()
    return client


@pytest.mark.asyncio
async def test_publish_returns_without_waiting_on_redis():
    gate = asyncio.Event()

    async def slow_xadd(*args, **kwargs):
        await gate.wait()

    relay = EventRelay(client=_client(side_effect=slow_xadd))
    relay.publish({"type": "task.status_changed", "task_id": "t1"})

    # Other work on the loop runs while the write is outstanding.
    other = asyncio.create_task(asyncio.sleep(0.01, result="ran"))
    assert await other == "ran"
    assert relay.pending == 1
    assert relay.published == 0

    gate.set()
    await relay.flush()
    assert relay.pending == 0
    assert relay.published == 1


@pytest.mark.asyncio
async def test_publish_is_best_effort(caplog):
    """Redis being down never reaches the caller."""
    relay = EventRelay(client=_client(side_effect=RedisError("Redis down")))
    relay.publish({"type": "task.status_changed", "task_id": "t1"})
    await relay.flush()

    assert relay.failed == 1
    assert relay.published == 0
    assert "Redis unavailable" in caplog.text


@pytest.mark.asyncio
async def test_unexpected_error_is_collected_and_logged(caplog):
    relay = EventRelay(client=_client(side_effect=ValueError("boom")))
    relay.publish({"type": "session.started"})
    await relay.flush()

    assert relay.failed == 1
    assert "Event publish failed" in caplog.text
    assert "boom" in caplog.text


def test_publish_outside_event_loop_is_skipped():
    client = _client()
    relay = EventRelay(client=client)
    relay.publish({"type": "session.started", "task_id": "t1"})

    assert relay.failed == 1
    client.xadd.assert_not_called()


@pytest.mark.asyncio
async def test_publish_payload_shape():
    client = _client()
    relay = EventRelay(source="cli", client=client)
    relay.publish({"type": "task.status_changed", "task_id": "t1", "to_status": "fix"})
    await relay.flush()

    client.xadd.assert_awaited_once()
    args, kwargs = client.xadd.call_args
    assert args[0] == EVENTS_STREAM
    payload = json.loads(args[1]["data"])
    assert payload["type"] == "task.status_changed"
    assert payload["task_id"] == "t1"
    assert payload["to_status"] == "fix"
    assert payload["source"] == "cli"
    assert "event_id" in payload
    assert "ts" in payload
    assert kwargs["maxlen"] == EVENTS_STREAM_MAXLEN
    assert kwargs["approximate"] is True


@pytest.mark.asyncio
async def test_relay_follows_state_machine_in_order():
    client = _client()
    machine = PhaseStateMachine()
    relay = EventRelay(client=client)
    machine.on_transition(relay.publish)
    machine.add_task({"id": "t1", "title": "x", "status": "todo"})
    machine.start("t1")
    await relay.flush()

    types = [json.loads(c.args[1]["data"])["type"] for c in client.xadd.call_args_list]
    assert types == ["task.status_changed", "session.started"]
    assert relay.published == 2


@pytest.mark.asyncio
async def test_aclose_flushes_and_closes_own_client():
    client = _client()
    with patch("studio.relay.aioredis.from_url", return_value=client) as from_url:
        relay = EventRelay("redis://redis.test:6379/0")
        relay.publish({"type": "session.ended", "task_id": "t1"})
        await relay.aclose()

    assert from_url.call_args.kwargs["socket_connect_timeout"] > 0
    assert relay.published == 1
    client.aclose.assert_awaited_once()


@pytest.mark.asyncio
async def test_aclose_leaves_injected_client_open():
    client = _client()
    relay = EventRelay(client=client)
    await relay.aclose()
    client.aclose.assert_not_awaited()


def _entry(event: dict, entry_id: str = "1-0") -> list:
    return [[EVENTS_STREAM, [(entry_id, {"data": json.dumps(event)})]]]


def test_subscriber_filters_by_task():
    mock_redis = MagicMock()
    mock_redis.xread.side_effect = [
        _entry({"type": "session.started", "task_id": "other"}, "1-0"),
        _entry({"type": "session.started", "task_id": "t1"}, "2-0"),
    ]
    with patch("studio.relay.get_redis", return_value=mock_redis):
        sub = EventSubscriber(task_id="t1", timeout=0.01)
        event = next(sub)

    assert event["task_id"] == "t1"
    assert event["_stream_id"] == "2-0"


def test_subscriber_skips_garbage_and_times_out():
    mock_redis = MagicMock()
    mock_redis.xread.side_effect = [
        [[EVENTS_STREAM, [(b"1-0", {b"data": b"not json"})]]],
        [],
    ]
    with patch("studio.relay.get_redis", return_value=mock_redis):
        sub = EventSubscriber(timeout=0.01)
        assert next(sub) is None


def test_subscriber_without_redis_returns_none():
    mock_redis = MagicMock()
    mock_redis.ping.side_effect = RedisError("down")
    with (
        patch("studio.relay.get_redis", return_value=mock_redis),
        patch("studio.relay.time.sleep") as sleep,
    ):
        sub = EventSubscriber(timeout=5)
        assert next(sub) is None
    sleep.assert_called_once_with(5)
