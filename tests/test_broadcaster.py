from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone

import httpx

from grove_mcp.events import EventBroadcaster, format_sse, sse_stream
from grove_mcp.sessions import SessionWithStatus
from grove_mcp.terminal import ActivityState


def _session(session_id: str, state: ActivityState, *, is_active: bool = True) -> SessionWithStatus:
    return SessionWithStatus(
        id=session_id,
        repo_id="r1",
        repo_name="app",
        worktree=f"/repos/app-{session_id}",
        branch=f"branch-{session_id}",
        port=7681,
        terminal_url="https://localhost:7681",
        created_at=datetime(2025, 1, 1, tzinfo=timezone.utc),
        skip_permissions=False,
        is_active=is_active,
        state=state,
    )


class SessionFeed:
    """Returns the next scripted snapshot on every call, repeating the last one."""

    def __init__(self, *snapshots: list[SessionWithStatus]) -> None:
        self._snapshots = list(snapshots)
        self.calls = 0

    async def __call__(self) -> list[SessionWithStatus]:
        index = min(self.calls, len(self._snapshots) - 1)
        self.calls += 1
        return self._snapshots[index]


def test_polling_runs_once_for_many_subscribers() -> None:
    broadcaster = EventBroadcaster(SessionFeed([]), poll_interval=60)

    async def scenario():
        first = broadcaster.subscribe()
        second = broadcaster.subscribe()
        observed = (broadcaster.poll_starts, broadcaster.is_polling, broadcaster.subscriber_count)
        first.unsubscribe()
        still_polling = broadcaster.is_polling
        second.unsubscribe()
        stopped = not broadcaster.is_polling
        broadcaster.subscribe()
        restarted = broadcaster.poll_starts
        await broadcaster.aclose()
        return observed, still_polling, stopped, restarted

    observed, still_polling, stopped, restarted = asyncio.run(scenario())

    assert observed == (1, True, 2)
    assert still_polling
    assert stopped
    assert restarted == 2


def test_subscriber_receives_connected_then_sessions() -> None:
    feed = SessionFeed([_session("a", ActivityState.WAITING)])
    broadcaster = EventBroadcaster(feed, poll_interval=0.01)

    async def scenario():
        subscription = broadcaster.subscribe()
        first = await asyncio.wait_for(subscription.get(), timeout=1)
        second = await asyncio.wait_for(subscription.get(), timeout=1)
        await broadcaster.aclose()
        return first, second

    first, second = asyncio.run(scenario())

    assert first == {"type": "connected"}
    assert second["type"] == "sessions"
    assert second["sessions"][0]["id"] == "a"
    assert second["sessions"][0]["state"] == "waiting"


def test_busy_to_waiting_emits_state_change_and_webhook() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200)

    feed = SessionFeed(
        [_session("a", ActivityState.BUSY), _session("b", ActivityState.WAITING)],
        [_session("a", ActivityState.WAITING), _session("b", ActivityState.BUSY)],
    )
    broadcaster = EventBroadcaster(
        feed,
        webhook_url=lambda: "https://hooks.example/grove",
        poll_interval=60,
        http_transport=httpx.MockTransport(handler),
    )

    async def scenario():
        subscription = broadcaster.subscribe()
        await broadcaster.broadcast_sessions()
        await broadcaster.broadcast_sessions()
        await asyncio.gather(*list(broadcaster._tasks))
        events = subscription.drain()
        await broadcaster.aclose()
        return events

    events = asyncio.run(scenario())

    changes = [event for event in events if event["type"] == "state_change"]
    assert changes == [
        {
            "type": "state_change",
            "session": {"id": "a", "repo_name": "app", "branch": "branch-a"},
            "from": "busy",
            "to": "waiting",
        }
    ]
    assert [event["type"] for event in events] == ["connected", "sessions", "state_change", "sessions"]
    assert len(requests) == 1
    assert str(requests[0].url) == "https://hooks.example/grove"
    assert json.loads(requests[0].content) == changes[0]


def test_removed_session_forgets_previous_state() -> None:
    feed = SessionFeed(
        [_session("a", ActivityState.BUSY)],
        [],
        [_session("a", ActivityState.WAITING)],
    )
    broadcaster = EventBroadcaster(feed, poll_interval=60)

    async def scenario():
        subscription = broadcaster.subscribe()
        for _ in range(3):
            await broadcaster.broadcast_sessions()
        events = subscription.drain()
        await broadcaster.aclose()
        return events

    events = asyncio.run(scenario())

    assert not [event for event in events if event["type"] == "state_change"]
    assert broadcaster._previous_states == {"a": ActivityState.WAITING}


def test_webhook_failures_are_logged(caplog) -> None:
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    def reject(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500)

    unreachable = EventBroadcaster(
        SessionFeed([]),
        webhook_url=lambda: "https://hooks.example/down",
        http_transport=httpx.MockTransport(refuse),
    )
    failing = EventBroadcaster(
        SessionFeed([]),
        webhook_url=lambda: "https://hooks.example/error",
        http_transport=httpx.MockTransport(reject),
    )
    unconfigured = EventBroadcaster(SessionFeed([]))

    with caplog.at_level(logging.WARNING):
        assert asyncio.run(unreachable.fire_webhook({"type": "state_change"})) is False
        assert asyncio.run(failing.fire_webhook({"type": "state_change"})) is False
    assert asyncio.run(unconfigured.fire_webhook({"type": "state_change"})) is False

    messages = [record.getMessage() for record in caplog.records]
    assert "Webhook delivery failed" in messages
    assert "Webhook rejected" in messages


def test_setup_progress_events() -> None:
    broadcaster = EventBroadcaster(SessionFeed([]), poll_interval=60)

    async def scenario():
        subscription = broadcaster.subscribe()
        broadcaster.publish_setup_progress("s1", 0, "running", name="Install")
        broadcaster.publish_setup_progress("s1", 0, "running", "added 10 packages\n", name="Install")
        events = subscription.drain()
        await broadcaster.aclose()
        return events

    events = asyncio.run(scenario())

    assert events[1] == {"type": "setup_progress", "session_id": "s1", "step": 0, "name": "Install", "status": "running"}
    assert events[2]["output"] == "added 10 packages\n"


def test_on_subscribe_hook_runs_after_connected() -> None:
    seen: list[int] = []
    broadcaster = EventBroadcaster(
        SessionFeed([]),
        poll_interval=60,
        on_subscribe=lambda: seen.append(broadcaster.subscriber_count),
    )

    async def scenario():
        broadcaster.subscribe()
        await broadcaster.aclose()

    asyncio.run(scenario())

    assert seen == [1]


def test_full_queue_drops_subscriber() -> None:
    broadcaster = EventBroadcaster(SessionFeed([]), poll_interval=60, queue_size=1)

    async def scenario():
        subscription = broadcaster.subscribe()
        broadcaster.publish({"type": "sessions", "sessions": []})
        result = (subscription.closed, broadcaster.subscriber_count, broadcaster.is_polling)
        await broadcaster.aclose()
        return result

    assert asyncio.run(scenario()) == (True, 0, False)


def test_format_sse() -> None:
    assert format_sse({"type": "connected"}) == 'data: {"type": "connected"}\n\n'


def test_sse_stream_yields_frames_and_heartbeats() -> None:
    broadcaster = EventBroadcaster(SessionFeed([]), poll_interval=60)

    async def scenario():
        subscription = broadcaster.subscribe()
        stream = sse_stream(subscription, heartbeat=0.01)
        first = await stream.__anext__()
        second = await stream.__anext__()
        await stream.aclose()
        return first, second, broadcaster.subscriber_count

    first, second, remaining = asyncio.run(scenario())

    assert first == format_sse({"type": "connected"})
    assert second == format_sse({"type": "heartbeat"})
    assert remaining == 0
