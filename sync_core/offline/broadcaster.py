# =============================================================================
# sync_core/offline/broadcaster.py
# In-Process Live Update Broadcaster with Deduplication
# =============================================================================
"""
LiveUpdateBroadcaster - one publish/subscribe topic per data category.

Features:
- Lazy topic creation; the last published value is retained per topic
- Replays the latest value to new subscribers
- Suppresses publishes that are equal (per-topic equality) to the last value
- Per-topic locks, no global lock on the publish path
- Thread-safe delivery onto each subscriber's event loop
- Closing a topic terminates its subscriber streams

Usage:
    broadcaster = LiveUpdateBroadcaster()
    subscription = broadcaster.subscribe("dashboard")
    broadcaster.publish("dashboard", data)
    async for value in subscription:
        ...
"""

from __future__ import annotations
import asyncio
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
import logging

from sync_core.offline.equality import EqualityFn, equality_for
from sync_core.offline.models import category_name

logger = logging.getLogger(__name__)

_UNSET = object()
_CLOSED = object()


class Subscription:
    """
    Push-based stream of values for one topic.

    Iterate with ``async for``. ``close()`` unsubscribes and is idempotent;
    iteration ends once the subscription or its topic is closed.
    """

    def __init__(self, topic: str, broadcaster: LiveUpdateBroadcaster):
        self.topic = topic
        self._broadcaster = broadcaster
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False
        self._finished = False
        try:
            self._loop: Optional[asyncio.AbstractEventLoop] = asyncio.get_running_loop()
        except RuntimeError:
            self._loop = None

    @property
    def closed(self) -> bool:
        return self._closed

    def _put(self, item: Any) -> None:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if self._loop is None or running is self._loop:
            self._queue.put_nowait(item)
        elif not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._queue.put_nowait, item)

    def _deliver(self, value: Any) -> None:
        if not self._closed:
            self._put(value)

    def _terminate(self) -> None:
        if not self._closed:
            self._closed = True
            self._put(_CLOSED)

    def close(self) -> None:
        """Stop delivery. Safe to call more than once."""
        if self._closed:
            return
        self._broadcaster._unsubscribe(self)
        self._terminate()

    unsubscribe = close

    def pending(self) -> List[Any]:
        """Values delivered but not yet consumed, without waiting."""
        items = []
        while True:
            try:
                item = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            if item is _CLOSED:
                self._finished = True
                break
            items.append(item)
        return items

    async def next(self, timeout: Optional[float] = None) -> Any:
        """
        Wait for the next value.

        Raises:
            StopAsyncIteration: the subscription has ended
            asyncio.TimeoutError: nothing arrived within ``timeout``
        """
        if self._finished:
            raise StopAsyncIteration
        if timeout is None:
            item = await self._queue.get()
        else:
            item = await asyncio.wait_for(self._queue.get(), timeout)
        if item is _CLOSED:
            self._finished = True
            raise StopAsyncIteration
        return item

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> Any:
        return await self.next()

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.close()
        return False

    async def __aenter__(self) -> Subscription:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.close()
        return False


@dataclass
class TopicStats:
    topic: str
    subscribers: int
    delivered: int
    suppressed: int
    has_value: bool
    closed: bool


class _Topic:
    """Per-topic state guarded by its own lock."""

    def __init__(self, name: str, equality: EqualityFn):
        self.name = name
        self.equality = equality
        self.lock = threading.RLock()
        self.last_published: Any = _UNSET
        self.subscribers: List[Subscription] = []
        self.closed = False
        self.delivered = 0
        self.suppressed = 0

    @property
    def has_value(self) -> bool:
        return self.last_published is not _UNSET


class LiveUpdateBroadcaster:
    """Publish/subscribe hub with equality-based deduplication per topic."""

    def __init__(self, equality_overrides: Optional[Dict[str, EqualityFn]] = None):
        self._equality_overrides: Dict[str, EqualityFn] = dict(equality_overrides or {})
        self._topics: Dict[str, _Topic] = {}
        self._registry_lock = threading.Lock()  # guards topic creation only
        self._closed = False

    @property
    def is_closed(self) -> bool:
        return self._closed

    def _topic(self, topic: Any) -> _Topic:
        name = category_name(topic)
        existing = self._topics.get(name)
        if existing is not None:
            return existing
        with self._registry_lock:
            if name not in self._topics:
                self._topics[name] = _Topic(name, equality_for(name, self._equality_overrides))
                if self._closed:
                    self._topics[name].closed = True
                logger.debug(f"Created broadcast topic '{name}'")
            return self._topics[name]

    def register_equality(self, topic: Any, equality: EqualityFn) -> None:
        """Replace the equality function used to deduplicate ``topic``."""
        name = category_name(topic)
        self._equality_overrides[name] = equality
        state = self._topic(name)
        with state.lock:
            state.equality = equality

    # =========================================================================
    # PUBLISH / SUBSCRIBE
    # =========================================================================

    def subscribe(self, topic: Any, replay_latest: bool = True) -> Subscription:
        """
        Subscribe to ``topic``.

        With ``replay_latest`` the current value (if any) is delivered first.
        Subscribing after shutdown yields an already-terminated stream.
        """
        state = self._topic(topic)
        subscription = Subscription(state.name, self)

        with state.lock:
            if state.closed:
                subscription._terminate()
                return subscription
            state.subscribers.append(subscription)
            if replay_latest and state.has_value:
                subscription._deliver(state.last_published)

        logger.debug(f"New subscriber on '{state.name}' ({len(state.subscribers)} total)")
        return subscription

    def publish(self, topic: Any, value: Any) -> bool:
        """
        Publish ``value`` unless it equals the last published value.

        Returns:
            True when the value was delivered, False when suppressed or closed
        """
        state = self._topic(topic)

        with state.lock:
            if state.closed:
                logger.debug(f"Dropping publish on closed topic '{state.name}'")
                return False

            if state.has_value and self._is_equal(state, state.last_published, value):
                state.suppressed += 1
                logger.debug(f"Suppressed duplicate update on '{state.name}'")
                return False

            state.last_published = value
            state.delivered += 1
            for subscription in list(state.subscribers):
                subscription._deliver(value)

        return True

    @staticmethod
    def _is_equal(state: _Topic, old: Any, new: Any) -> bool:
        try:
            return bool(state.equality(old, new))
        except Exception as e:
            logger.warning(f"Equality check failed on '{state.name}', delivering: {e}")
            return False

    def _unsubscribe(self, subscription: Subscription) -> None:
        state = self._topics.get(subscription.topic)
        if state is None:
            return
        with state.lock:
            if subscription in state.subscribers:
                state.subscribers.remove(subscription)

    # =========================================================================
    # INSPECTION
    # =========================================================================

    def last_value(self, topic: Any, default: Any = None) -> Any:
        state = self._topics.get(category_name(topic))
        if state is None or not state.has_value:
            return default
        return state.last_published

    def subscriber_count(self, topic: Any) -> int:
        state = self._topics.get(category_name(topic))
        return len(state.subscribers) if state else 0

    def topics(self) -> List[str]:
        return sorted(self._topics)

    def stats(self) -> List[TopicStats]:
        return [
            TopicStats(
                topic=t.name,
                subscribers=len(t.subscribers),
                delivered=t.delivered,
                suppressed=t.suppressed,
                has_value=t.has_value,
                closed=t.closed,
            )
            for t in self._topics.values()
        ]

    def forget(self, topic: Any) -> None:
        """Drop the retained value so the next publish is always delivered."""
        state = self._topics.get(category_name(topic))
        if state is not None:
            with state.lock:
                state.last_published = _UNSET

    # =========================================================================
    # SHUTDOWN
    # =========================================================================

    def close_topic(self, topic: Any) -> None:
        """Close one topic; its subscribers' streams end."""
        state = self._topic(topic)
        with state.lock:
            if state.closed:
                return
            state.closed = True
            subscribers, state.subscribers = state.subscribers, []
        for subscription in subscribers:
            subscription._terminate()
        logger.debug(f"Closed topic '{state.name}'")

    def close_all(self) -> None:
        """Close every topic. Idempotent."""
        with self._registry_lock:
            if self._closed:
                return
            self._closed = True
            names = list(self._topics)
        for name in names:
            self.close_topic(name)
        logger.info("Live update broadcaster closed")


__all__ = ["LiveUpdateBroadcaster", "Subscription", "TopicStats"]
