"""
Unit tests for bus.py

Tests cover:
- Topic routing by message type
- Per-subscriber broadcast and publish order
- Backlog hand-off to the first subscriber
- Backpressure on bounded buffers and publish timeouts
- Shutdown: drain-then-end, BusClosedError, idempotent close
- Subscriber counting on close and on consumer cancellation
"""

import asyncio

import pytest

from bus import BusClosedError, MessageBus, topic_of
from messages import AgentResponse, MessageTopic, ToolResult, UserMessage


def user(content: str, user_id: str = "u1") -> UserMessage:
    return UserMessage(platform="cli", user_id=user_id, content=content)


# =============================================================================
# Routing
# =============================================================================


class TestTopics:

    def test_topic_of_instance_and_class(self):
        assert topic_of(UserMessage) == MessageTopic.USER_MESSAGE
        assert topic_of(user("hi")) == MessageTopic.USER_MESSAGE

    def test_untagged_type_rejected(self):
        class Untagged:
            pass

        with pytest.raises(TypeError, match="no 'topic' tag"):
            topic_of(Untagged)

    def test_subscribe_untagged_raises(self, bus):
        with pytest.raises(TypeError):
            bus.subscribe(dict)

    @pytest.mark.asyncio
    async def test_messages_only_reach_their_topic(self, bus):
        users = bus.subscribe(UserMessage)
        replies = bus.subscribe(AgentResponse)

        await bus.publish(user("hello"))
        await bus.publish(AgentResponse(platform="cli", user_id="u1", content="hi"))

        assert (await users.get(timeout=1)).content == "hello"
        assert (await replies.get(timeout=1)).content == "hi"
        assert users.pending() == 0
        assert replies.pending() == 0


# =============================================================================
# Delivery
# =============================================================================


class TestDelivery:

    @pytest.mark.asyncio
    async def test_publish_order_preserved(self, bus):
        sub = bus.subscribe(UserMessage)
        for i in range(5):
            await bus.publish(user(str(i)))

        received = [(await sub.get(timeout=1)).content for _ in range(5)]
        assert received == ["0", "1", "2", "3", "4"]

    @pytest.mark.asyncio
    async def test_every_subscriber_gets_every_message(self, bus):
        first = bus.subscribe(UserMessage)
        second = bus.subscribe(UserMessage)

        await bus.publish(user("a"))
        await bus.publish(user("b"))

        assert [(await first.get(timeout=1)).content for _ in range(2)] == ["a", "b"]
        assert [(await second.get(timeout=1)).content for _ in range(2)] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_backlog_goes_to_first_subscriber(self, bus):
        await bus.publish(user("early"))

        first = bus.subscribe(UserMessage)
        second = bus.subscribe(UserMessage)

        assert (await first.get(timeout=1)).content == "early"
        assert second.pending() == 0

    @pytest.mark.asyncio
    async def test_async_iteration_wakes_on_publish(self, bus):
        sub = bus.subscribe(UserMessage)
        received = []

        async def consume():
            async for message in sub:
                received.append(message.content)
                if len(received) == 2:
                    break

        consumer = asyncio.create_task(consume())
        await asyncio.sleep(0)
        await bus.publish(user("x"))
        await bus.publish(user("y"))
        await asyncio.wait_for(consumer, timeout=1)

        assert received == ["x", "y"]

    @pytest.mark.asyncio
    async def test_get_timeout_leaves_subscription_open(self, bus):
        sub = bus.subscribe(UserMessage)
        with pytest.raises(asyncio.TimeoutError):
            await sub.get(timeout=0.05)
        assert not sub.closed

        await bus.publish(user("late"))
        assert (await sub.get(timeout=1)).content == "late"


# =============================================================================
# Backpressure
# =============================================================================


class TestBackpressure:

    @pytest.mark.asyncio
    async def test_publish_waits_for_full_subscriber(self):
        bus = MessageBus(capacity=2)
        sub = bus.subscribe(UserMessage)
        await bus.publish(user("1"))
        await bus.publish(user("2"))

        blocked = asyncio.create_task(bus.publish(user("3")))
        await asyncio.sleep(0.05)
        assert not blocked.done()

        assert (await sub.get(timeout=1)).content == "1"
        await asyncio.wait_for(blocked, timeout=1)
        assert sub.pending() == 2

    @pytest.mark.asyncio
    async def test_slowest_subscriber_sets_the_pace(self):
        bus = MessageBus(capacity=1)
        fast = bus.subscribe(UserMessage)
        slow = bus.subscribe(UserMessage)
        await bus.publish(user("1"))
        await fast.get(timeout=1)

        blocked = asyncio.create_task(bus.publish(user("2")))
        await asyncio.sleep(0.05)
        assert not blocked.done()

        await slow.get(timeout=1)
        await asyncio.wait_for(blocked, timeout=1)

    @pytest.mark.asyncio
    async def test_publish_timeout(self):
        bus = MessageBus(capacity=1)
        bus.subscribe(UserMessage)
        await bus.publish(user("1"))

        with pytest.raises(asyncio.TimeoutError):
            await bus.publish(user("2"), timeout=0.05)

    @pytest.mark.asyncio
    async def test_unsubscribing_releases_publisher(self):
        bus = MessageBus(capacity=1)
        sub = bus.subscribe(UserMessage)
        await bus.publish(user("1"))

        blocked = asyncio.create_task(bus.publish(user("2")))
        await asyncio.sleep(0.05)
        sub.close()
        await asyncio.wait_for(blocked, timeout=1)

    @pytest.mark.asyncio
    async def test_zero_capacity_is_unbounded(self):
        bus = MessageBus(capacity=0)
        sub = bus.subscribe(UserMessage)
        for i in range(2000):
            await bus.publish(user(str(i)))
        assert sub.pending() == 2000


# =============================================================================
# Shutdown
# =============================================================================


class TestClose:

    @pytest.mark.asyncio
    async def test_publish_after_close_raises(self, bus):
        bus.close()
        with pytest.raises(BusClosedError):
            await bus.publish(user("nope"))

    def test_close_is_idempotent(self, bus):
        bus.close()
        bus.close()
        assert bus.closed

    @pytest.mark.asyncio
    async def test_subscriber_drains_then_ends(self, bus):
        sub = bus.subscribe(UserMessage)
        await bus.publish(user("queued"))
        bus.close()

        received = [m.content async for m in sub]
        assert received == ["queued"]
        assert sub.closed

    @pytest.mark.asyncio
    async def test_waiting_consumer_ends_on_close(self, bus):
        sub = bus.subscribe(UserMessage)
        consumer = asyncio.create_task(sub.get())
        await asyncio.sleep(0)
        bus.close()

        with pytest.raises(StopAsyncIteration):
            await asyncio.wait_for(consumer, timeout=1)

    @pytest.mark.asyncio
    async def test_blocked_publisher_released_with_error(self):
        bus = MessageBus(capacity=1)
        bus.subscribe(ToolResult)
        await bus.publish(ToolResult(tool_name="t", success=True, result="1"))

        blocked = asyncio.create_task(bus.publish(ToolResult(tool_name="t", success=True, result="2")))
        await asyncio.sleep(0.05)
        bus.close()

        with pytest.raises(BusClosedError):
            await asyncio.wait_for(blocked, timeout=1)


# =============================================================================
# Subscriber Counting
# =============================================================================


class TestSubscriberCount:

    def test_count_tracks_subscribe_and_close(self, bus):
        first = bus.subscribe(UserMessage)
        bus.subscribe(UserMessage)
        assert bus.subscriber_count(UserMessage) == 2

        first.close()
        first.close()
        assert bus.subscriber_count(UserMessage) == 1
        assert bus.subscriber_count(AgentResponse) == 0

    @pytest.mark.asyncio
    async def test_context_manager_unsubscribes(self, bus):
        async with bus.subscribe(UserMessage):
            assert bus.subscriber_count(UserMessage) == 1
        assert bus.subscriber_count(UserMessage) == 0

    @pytest.mark.asyncio
    async def test_cancelled_consumer_unsubscribes_once(self, bus):
        sub = bus.subscribe(UserMessage)

        async def consume():
            async for _ in sub:
                pass

        consumer = asyncio.create_task(consume())
        await asyncio.sleep(0)
        consumer.cancel()
        with pytest.raises(asyncio.CancelledError):
            await consumer

        assert bus.subscriber_count(UserMessage) == 0
        sub.close()
        assert bus.subscriber_count(UserMessage) == 0
