"""Tests for SessionActivityFeed: merged timeline, finish signal, session switching."""

from __future__ import annotations

import httpx
import pytest

from studio.activity_feed import SessionActivityFeed

API = "http://studio.test"


def _rec(kind: str, ts: str, **fields) -> dict:
    return {"type": kind, "timestamp": f"2025-01-01T00:00:{ts}Z", **fields}


def _feed(transport, backoff, **kwargs) -> SessionActivityFeed:
    return SessionActivityFeed(api_url=API, transport=transport, backoff=backoff, **kwargs)


@pytest.mark.asyncio
async def test_watch_collects_ordered_activity(transport, backoff, wait_for):
    seen = []
    conn = transport.add_connection()
    conn.push("tool_call", _rec("tool_call", "02", id="c1", tool_name="bash"))
    conn.push("agent_message", _rec("agent_message", "01", id="m1", content="hi"))
    conn.push("tool_call", _rec("tool_call", "02", id="c1", tool_name="bash", output="ok"))

    feed = _feed(transport, backoff, on_activity=seen.append)
    feed.watch("s1")
    await wait_for(lambda: len(seen) == 3)

    ordered = feed.get_ordered_activities()
    assert [r["id"] for r in ordered] == ["m1", "c1"]
    assert ordered[1]["output"] == "ok"
    assert feed.is_connected
    assert feed.activities == ordered
    feed.stop()


@pytest.mark.asyncio
async def test_finished_fires_once_and_stops(transport, backoff):
    finished = []
    conn = transport.add_connection()
    conn.push("reasoning", _rec("reasoning", "01"))
    conn.push("finished", _rec("finished", "02", success=False, error="model crashed"))
    conn.push("finished", _rec("finished", "03", success=True))

    feed = _feed(transport, backoff, on_finished=lambda ok, err: finished.append((ok, err)))
    feed.watch("s1")
    await feed.wait_closed()

    assert finished == [(False, "model crashed")]
    assert feed.is_finished
    assert not feed.is_connected
    assert feed.error is None
    assert len(feed.activities) == 2


@pytest.mark.asyncio
async def test_malformed_finished_frame_does_not_report(transport, backoff):
    finished = []
    conn = transport.add_connection()
    conn.push("finished", _rec("finished", "02"))

    feed = _feed(transport, backoff, on_finished=lambda ok, err: finished.append(ok))
    feed.watch("s1")
    await feed.wait_closed()

    assert finished == []
    assert feed.activities == []


@pytest.mark.asyncio
async def test_switching_session_discards_previous(transport, backoff, wait_for, settle):
    seen = []
    old = transport.add_connection()
    new = transport.add_connection()
    old.push("reasoning", _rec("reasoning", "01", session="old"))

    feed = _feed(transport, backoff, on_activity=seen.append)
    feed.watch("s-old")
    await wait_for(lambda: len(seen) == 1)

    feed.watch("s-new")
    old.push("reasoning", _rec("reasoning", "02", session="old"))
    new.push("reasoning", _rec("reasoning", "03", session="new"))
    await wait_for(lambda: len(seen) == 2)
    await settle()

    assert [r["session"] for r in feed.activities] == ["new"]
    assert seen[-1]["session"] == "new"
    assert transport.opened[1][0] == f"{API}/api/sessions/s-new/activity"
    feed.stop()


@pytest.mark.asyncio
async def test_watch_disabled_or_none_only_resets(transport, backoff):
    feed = _feed(transport, backoff)
    assert feed.watch("s1", enabled=False) is None
    assert feed.watch(None) is None
    assert transport.opened == []
    assert feed.activities == []


@pytest.mark.asyncio
async def test_error_reported_after_attempts_exhausted(transport, backoff):
    errors = []
    for _ in range(backoff.max_attempts):
        transport.add_failure(httpx.ConnectError("refused"))

    feed = _feed(transport, backoff, on_error=errors.append)
    feed.watch("s1")
    await feed.wait_closed()

    assert len(errors) == 1
    assert feed.error is errors[0]


@pytest.mark.asyncio
async def test_clear_forgets_records(transport, backoff, wait_for):
    conn = transport.add_connection()
    conn.push("reasoning", _rec("reasoning", "01"))
    feed = _feed(transport, backoff)
    feed.watch("s1")
    await wait_for(lambda: feed.activities)

    feed.clear()
    assert feed.activities == []
    assert feed.session_id is None
    assert not feed.is_connected


@pytest.mark.asyncio
async def test_activity_handler_error_does_not_lose_finish(transport, backoff):
    finished = []
    conn = transport.add_connection()
    conn.push("finished", _rec("finished", "01", success=False, error="timeout"))

    def broken(record):
        raise RuntimeError("render failed")

    feed = _feed(
        transport,
        backoff,
        on_activity=broken,
        on_finished=lambda ok, err: finished.append((ok, err)),
    )
    feed.watch("s1")
    await feed.wait_closed()

    assert finished == [(False, "timeout")]
    assert feed.is_finished
