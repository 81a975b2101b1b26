"""
In-Process Message Bus

Typed publish/subscribe router that decouples platform adapters, the agent,
the scheduler and the subagent manager.

Routing:
    Every message type declares a ``topic`` tag (see messages.py). The bus keeps
    one channel per topic, created lazily on first publish or subscribe.

Delivery:
    Each subscription owns its own buffer, so every subscriber of a topic sees
    every message published after it subscribed, in publish order (broadcast).
    Messages published while a topic has no subscribers wait in a backlog that
    the first subscriber drains.

Backpressure:
    Buffers are bounded (default 1024). A publish that would overflow any
    subscriber's buffer suspends until that subscriber catches up. Nothing is
    dropped. ``capacity <= 0`` makes every buffer unbounded.

Shutdown:
    ``close()`` ends every subscription once it has drained what was already
    queued, releases suspended publishers with BusClosedError and rejects
    later publishes.

Usage:
    bus = MessageBus()

    async with bus.subscribe(UserMessage) as messages:
        async for message in messages:
            ...

    await bus.publish(UserMessage(platform="cli", user_id="me", content="hi"))
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections import deque
from typing import Any, Generic, TypeVar

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 1024

T = TypeVar("T")


class BusClosedError(RuntimeError):
    """Raised when publishing to a bus that has already been closed."""
    pass


def topic_of(message_or_type: Any) -> str:
    """Return the routing tag of a message instance or message class."""
    topic = getattr(message_or_type, "topic", None)
    if not isinstance(topic, str) or not topic:
        name = getattr(message_or_type, "__name__", type(message_or_type).__name__)
        raise TypeError(f"{name} has no 'topic' tag and cannot be routed")
    return topic


# =============================================================================
# Channel
# =============================================================================

class _Channel:
    """Per-topic state: live subscriptions, backlog and wait queue."""

    def __init__(self, topic: str, capacity: int):
        self.topic = topic
        self.capacity = capacity
        self.subscriptions: list[Subscription] = []
        self.backlog: deque = deque()
        self._waiters: set[asyncio.Future] = set()

    def has_room(self) -> bool:
        if self.capacity <= 0:
            return True
        if self.subscriptions:
            return all(len(s._buffer) < self.capacity for s in self.subscriptions)
        return len(self.backlog) < self.capacity

    def put(self, message: Any):
        if self.subscriptions:
            for subscription in self.subscriptions:
                subscription._buffer.append(message)
        else:
            self.backlog.append(message)

    async def wait(self):
        """Suspend until something on this channel changes."""
        future = asyncio.get_running_loop().create_future()
        self._waiters.add(future)
        try:
            await future
        finally:
            self._waiters.discard(future)

    def wake(self):
        for future in self._waiters:
            if not future.done():
                future.set_result(None)


# =============================================================================
# Subscription
# =============================================================================

class Subscription(Generic[T]):
    """One independent subscriber of a topic.

    Iterate with ``async for``. The subscription ends when it is closed, when
    the consuming task is cancelled while waiting, or when the bus closes and
    the buffer is drained. Ending always unregisters exactly once.
    """

    def __init__(self, bus: "MessageBus", channel: _Channel):
        self._bus = bus
        self._channel = channel
        self._buffer: deque = deque()
        self._closed = False

    @property
    def topic(self) -> str:
        return self._channel.topic

    @property
    def closed(self) -> bool:
        return self._closed

    def pending(self) -> int:
        """Messages delivered to this subscription but not yet consumed."""
        return len(self._buffer)

    def close(self):
        """Stop receiving. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self._buffer.clear()
        self._bus._unregister(self)

    def __aiter__(self) -> "Subscription[T]":
        return self

    async def __anext__(self) -> T:
        while True:
            if self._closed:
                raise StopAsyncIteration
            if self._buffer:
                message = self._buffer.popleft()
                self._channel.wake()
                return message
            if self._bus.closed:
                self.close()
                raise StopAsyncIteration
            try:
                await self._channel.wait()
            except asyncio.CancelledError:
                self.close()
                raise

    async def get(self, timeout: float | None = None) -> T:
        """Receive the next message, optionally within ``timeout`` seconds.

        Raises StopAsyncIteration if the subscription has ended and
        asyncio.TimeoutError if the deadline passes first. A timeout leaves
        the subscription open.
        """
        if timeout is None:
            return await self.__anext__()

        deadline = asyncio.get_running_loop().time() + timeout
        while True:
            if self._closed:
                raise StopAsyncIteration
            if self._buffer:
                message = self._buffer.popleft()
                self._channel.wake()
                return message
            if self._bus.closed:
                self.close()
                raise StopAsyncIteration
            remaining = deadline - asyncio.get_running_loop().time()
            if remaining <= 0:
                raise asyncio.TimeoutError()
            try:
                await asyncio.wait_for(self._channel.wait(), remaining)
            except asyncio.TimeoutError:
                continue

    async def __aenter__(self) -> "Subscription[T]":
        return self

    async def __aexit__(self, *exc_info):
        self.close()

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"<Subscription topic={self.topic!r} {state} pending={len(self._buffer)}>"


# =============================================================================
# Bus
# =============================================================================

class MessageBus:
    """Typed in-process pub/sub with per-subscriber bounded buffers."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        self.capacity = capacity
        self._channels: dict[str, _Channel] = {}
        self._subscriber_counts: dict[str, int] = {}
        self._channels_lock = threading.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _get_channel(self, topic: str) -> _Channel:
        channel = self._channels.get(topic)
        if channel is not None:
            return channel
        with self._channels_lock:
            channel = self._channels.get(topic)
            if channel is None:
                channel = _Channel(topic, self.capacity)
                self._channels[topic] = channel
                logger.debug("[Bus] Created channel %s (capacity=%s)", topic, self.capacity)
            return channel

    async def publish(self, message: Any, timeout: float | None = None):
        """Deliver ``message`` to every subscriber of its topic.

        Suspends while any subscriber's buffer is full. Raises BusClosedError
        if the bus is (or becomes) closed, and asyncio.TimeoutError if
        ``timeout`` elapses before the message could be queued.
        """
        if timeout is not None:
            await asyncio.wait_for(self._publish(message), timeout)
        else:
            await self._publish(message)

    async def _publish(self, message: Any):
        channel = self._get_channel(topic_of(message))
        while True:
            if self._closed:
                raise BusClosedError(
                    f"Message bus is already closed; cannot publish {type(message).__name__}"
                )
            if channel.has_room():
                channel.put(message)
                channel.wake()
                return
            await channel.wait()

    def subscribe(self, message_type: type[T]) -> Subscription[T]:
        """Open a new independent subscription to ``message_type``."""
        topic = topic_of(message_type)
        channel = self._get_channel(topic)
        subscription: Subscription[T] = Subscription(self, channel)

        # First subscriber takes over whatever was published with nobody listening
        if not channel.subscriptions and channel.backlog:
            subscription._buffer.extend(channel.backlog)
            channel.backlog.clear()

        channel.subscriptions.append(subscription)
        self._subscriber_counts[topic] = self._subscriber_counts.get(topic, 0) + 1
        channel.wake()
        return subscription

    def _unregister(self, subscription: Subscription):
        channel = subscription._channel
        try:
            channel.subscriptions.remove(subscription)
        except ValueError:
            return
        self._subscriber_counts[channel.topic] = max(0, self._subscriber_counts.get(channel.topic, 0) - 1)
        # A slow subscriber leaving can unblock waiting publishers
        channel.wake()

    def subscriber_count(self, message_type: Any) -> int:
        """Number of active subscriptions for a type. Observability only."""
        return self._subscriber_counts.get(topic_of(message_type), 0)

    def close(self):
        """Close the bus. Idempotent."""
        if self._closed:
            return
        self._closed = True
        for channel in list(self._channels.values()):
            channel.wake()
        logger.info("[Bus] Closed (%d channels)", len(self._channels))
