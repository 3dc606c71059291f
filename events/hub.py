"""
EventHub — in-process publish/subscribe for live notifications.

Delivery is at-most-once and best-effort: nothing is persisted, a
subscriber that joins late misses earlier events, and a failing observer
only produces a log line.

Handlers may be plain callables or coroutine functions. Coroutine handlers
run as tracked background tasks so a slow observer never holds up the
publisher or the other observers.

    hub = EventHub()
    unsubscribe = hub.subscribe(EventTopic.NEW_MESSAGE, on_message)
    hub.publish(EventTopic.NEW_MESSAGE, {"contact_id": "+57...", ...})
    unsubscribe()

The SSE endpoint uses `stream()`, a bounded per-observer queue that drops
the oldest event when the observer falls behind.
"""
from __future__ import annotations

import asyncio
import inspect
import threading
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional, Union

import structlog

from models.schemas import EventTopic

logger = structlog.get_logger()

Handler = Callable[[dict[str, Any]], Any]
TopicLike = Union[EventTopic, str]


def _topic_key(topic: TopicLike) -> str:
    return topic.value if isinstance(topic, EventTopic) else str(topic)


class EventHub:

    def __init__(self, default_queue_size: int = 100):
        self.default_queue_size = default_queue_size
        self._subscribers: dict[str, list[Handler]] = defaultdict(list)
        self._lock = threading.Lock()
        self._tasks: set[asyncio.Task] = set()

    # ── Subscription ──────────────────────────────────────

    def subscribe(self, topic: TopicLike, handler: Handler) -> Callable[[], None]:
        """Register `handler` for `topic`. Returns an idempotent unsubscribe callable."""
        key = _topic_key(topic)
        with self._lock:
            self._subscribers[key].append(handler)

        removed = False

        def unsubscribe() -> None:
            nonlocal removed
            with self._lock:
                if removed:
                    return
                removed = True
                handlers = self._subscribers.get(key, [])
                if handler in handlers:
                    handlers.remove(handler)
                if not handlers:
                    self._subscribers.pop(key, None)

        return unsubscribe

    def subscriber_count(self, topic: Optional[TopicLike] = None) -> int:
        with self._lock:
            if topic is None:
                return sum(len(h) for h in self._subscribers.values())
            return len(self._subscribers.get(_topic_key(topic), []))

    # ── Publishing ────────────────────────────────────────

    def publish(self, topic: TopicLike, payload: Optional[dict[str, Any]] = None) -> int:
        """Deliver to every current subscriber of `topic`. Returns deliveries attempted."""
        key = _topic_key(topic)
        with self._lock:
            handlers = list(self._subscribers.get(key, []))
        if not handlers:
            return 0

        event = {
            **(payload or {}),
            "topic": key,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        for handler in handlers:
            self._deliver(key, handler, dict(event))
        return len(handlers)

    def _deliver(self, topic: str, handler: Handler, event: dict[str, Any]) -> None:
        if inspect.iscoroutinefunction(handler):
            self._spawn(topic, handler(event))
            return
        try:
            result = handler(event)
        except Exception as e:
            logger.error("event_handler_failed", topic=topic, error=str(e))
            return
        if inspect.isawaitable(result):
            self._spawn(topic, result)

    def _spawn(self, topic: str, awaitable) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            close = getattr(awaitable, "close", None)
            if close is not None:
                close()
            logger.warning("event_handler_no_loop", topic=topic)
            return
        task = loop.create_task(self._guard(topic, awaitable))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    @staticmethod
    async def _guard(topic: str, awaitable) -> None:
        try:
            await awaitable
        except Exception as e:
            logger.error("event_handler_failed", topic=topic, error=str(e))

    async def drain(self) -> None:
        """Wait for in-flight coroutine handlers (shutdown and tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ── Streaming ─────────────────────────────────────────

    def stream(self, topics: Optional[Iterable[TopicLike]] = None,
               max_queue: Optional[int] = None) -> "EventStream":
        """Subscribe a bounded queue to `topics` (default: all topics)."""
        return EventStream(self, list(topics or EventTopic), max_queue or self.default_queue_size)


class EventStream:
    """
    One observer's view of the hub. Subscribed on creation, unsubscribed on
    close(). Use as an async context manager or async iterator.
    """

    def __init__(self, hub: EventHub, topics: list[TopicLike], max_queue: int):
        self.topics = [_topic_key(t) for t in topics]
        self.dropped = 0
        self._queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=max(1, max_queue))
        self._unsubscribers = [hub.subscribe(t, self._enqueue) for t in self.topics]

    def _enqueue(self, event: dict[str, Any]) -> None:
        while True:
            try:
                self._queue.put_nowait(event)
                return
            except asyncio.QueueFull:
                try:
                    self._queue.get_nowait()
                    self.dropped += 1
                except asyncio.QueueEmpty:
                    pass

    async def get(self, timeout: Optional[float] = None) -> Optional[dict[str, Any]]:
        """Next event, or None if `timeout` elapses first."""
        if timeout is None:
            return await self._queue.get()
        try:
            return await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    def pending(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

    async def __aenter__(self) -> "EventStream":
        return self

    async def __aexit__(self, *exc) -> None:
        self.close()

    def __aiter__(self) -> "EventStream":
        return self

    async def __anext__(self) -> dict[str, Any]:
        return await self._queue.get()
