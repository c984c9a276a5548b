"""Fan-out of session and setup events to stream subscribers."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

import httpx

from ..sessions import SessionWithStatus
from ..terminal import ActivityState

logger = logging.getLogger(__name__)

SessionLister = Callable[[], Awaitable[list[SessionWithStatus]]]
WebhookUrlSource = Callable[[], Optional[str]]


def format_sse(event: dict[str, Any]) -> str:
    """Render one event as a server-sent-events ``data:`` frame."""

    return f"data: {json.dumps(event)}\n\n"


async def sse_stream(subscription: "Subscription", *, heartbeat: float = 30.0) -> AsyncIterator[str]:
    """Yield SSE frames for a subscription, with heartbeats while idle."""

    try:
        while not subscription.closed:
            try:
                event = await asyncio.wait_for(subscription.get(), timeout=heartbeat)
            except asyncio.TimeoutError:
                event = {"type": "heartbeat"}
            yield format_sse(event)
    finally:
        subscription.unsubscribe()


class Subscription:
    """A single stream sink backed by a bounded queue."""

    def __init__(self, broadcaster: "EventBroadcaster", maxsize: int) -> None:
        self._broadcaster = broadcaster
        self.queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize)
        self.closed = False

    def push(self, event: dict[str, Any]) -> bool:
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            return False
        return True

    async def get(self) -> dict[str, Any]:
        return await self.queue.get()

    def drain(self) -> list[dict[str, Any]]:
        events = []
        while not self.queue.empty():
            events.append(self.queue.get_nowait())
        return events

    def unsubscribe(self) -> None:
        if not self.closed:
            self.closed = True
            self._broadcaster._remove(self)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> dict[str, Any]:
        if self.closed:
            raise StopAsyncIteration
        return await self.get()


class EventBroadcaster:
    """Push session snapshots, state transitions and setup progress to subscribers.

    Session polling runs only while at least one subscriber is attached: the
    first subscription starts the poll task and removing the last one stops it.
    """

    def __init__(
        self,
        list_sessions: SessionLister,
        *,
        webhook_url: WebhookUrlSource | None = None,
        poll_interval: float = 2.0,
        webhook_timeout: float = 10.0,
        http_transport: httpx.AsyncBaseTransport | None = None,
        on_subscribe: Callable[[], None] | None = None,
        queue_size: int = 256,
    ) -> None:
        self._list_sessions = list_sessions
        self._webhook_url = webhook_url or (lambda: None)
        self._poll_interval = poll_interval
        self._webhook_timeout = webhook_timeout
        self._http_transport = http_transport
        self._on_subscribe = on_subscribe
        self._queue_size = queue_size
        self._subscribers: set[Subscription] = set()
        self._previous_states: dict[str, ActivityState] = {}
        self._poll_task: asyncio.Task[None] | None = None
        self._tasks: set[asyncio.Task[Any]] = set()
        self.poll_starts = 0

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    @property
    def is_polling(self) -> bool:
        return self._poll_task is not None

    def subscribe(self) -> Subscription:
        subscription = Subscription(self, self._queue_size)
        self._subscribers.add(subscription)
        subscription.push({"type": "connected"})
        if self._poll_task is None:
            self._start_polling()
        if self._on_subscribe is not None:
            self._on_subscribe()
        logger.debug("Subscriber attached", extra={"subscribers": len(self._subscribers)})
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        self._subscribers.discard(subscription)
        logger.debug("Subscriber detached", extra={"subscribers": len(self._subscribers)})
        if not self._subscribers:
            self._stop_polling()

    def _start_polling(self) -> None:
        self._poll_task = asyncio.create_task(self._poll_loop())
        self.poll_starts += 1

    def _stop_polling(self) -> None:
        if self._poll_task is not None:
            self._poll_task.cancel()
            self._poll_task = None

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self._poll_interval)
            try:
                await self.broadcast_sessions()
            except Exception:  # keep polling through a bad tick
                logger.exception("Session broadcast failed")

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def publish(self, event: dict[str, Any]) -> None:
        for subscription in list(self._subscribers):
            if not subscription.push(event):
                logger.warning("Dropping subscriber with full queue")
                subscription.unsubscribe()

    async def broadcast_sessions(self) -> list[SessionWithStatus]:
        """Push the full session list and announce busy-to-waiting transitions."""

        sessions = await self._list_sessions()
        seen: set[str] = set()
        for session in sessions:
            seen.add(session.id)
            previous = self._previous_states.get(session.id)
            if previous is ActivityState.BUSY and session.state is ActivityState.WAITING:
                payload = {
                    "type": "state_change",
                    "session": {
                        "id": session.id,
                        "repo_name": session.repo_name,
                        "branch": session.branch,
                    },
                    "from": ActivityState.BUSY.value,
                    "to": ActivityState.WAITING.value,
                }
                logger.info("Session is waiting for input", extra={"session_id": session.id})
                self.publish(payload)
                self._spawn(self.fire_webhook(payload))
            self._previous_states[session.id] = session.state

        for session_id in set(self._previous_states) - seen:
            del self._previous_states[session_id]

        self.publish({"type": "sessions", "sessions": [session.model_dump(mode="json") for session in sessions]})
        return sessions

    def notify_sessions_changed(self) -> None:
        self._spawn(self.broadcast_sessions())

    def publish_setup_progress(
        self,
        session_id: str,
        step: int,
        status: str,
        output: str | None = None,
        *,
        name: str | None = None,
    ) -> None:
        event: dict[str, Any] = {
            "type": "setup_progress",
            "session_id": session_id,
            "step": step,
            "name": name,
            "status": status,
        }
        if output is not None:
            event["output"] = output
        self.publish(event)

    async def fire_webhook(self, payload: dict[str, Any]) -> bool:
        """POST ``payload`` to the configured webhook. Failures are logged only."""

        url = self._webhook_url()
        if not url:
            return False
        try:
            async with httpx.AsyncClient(timeout=self._webhook_timeout, transport=self._http_transport) as client:
                response = await client.post(url, json=payload)
        except httpx.HTTPError as exc:
            logger.warning("Webhook delivery failed", extra={"url": url, "error": str(exc)})
            return False
        if response.is_error:
            logger.warning("Webhook rejected", extra={"url": url, "status_code": response.status_code})
            return False
        return True

    async def aclose(self) -> None:
        for subscription in list(self._subscribers):
            subscription.unsubscribe()
        self._stop_polling()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


__all__ = ["EventBroadcaster", "Subscription", "format_sse", "sse_stream"]
