"""Unit tests for the EventBroadcaster."""

import asyncio
import threading

import pytest

from backend.src.models.event import Event, EventType
from backend.src.services.dependencies import get_event_broadcaster, reset_services
from backend.src.services.event_broadcaster import EventBroadcaster


@pytest.fixture(autouse=True)
def reset_globals() -> None:
    """Reset global service instances around each test."""
    reset_services()
    yield
    reset_services()


# =============================================================================
# Subscription
# =============================================================================


class TestSubscription:
    """Tests for subscribe and unsubscribe."""

    @pytest.mark.asyncio
    async def test_subscribe_and_unsubscribe(self) -> None:
        broadcaster = EventBroadcaster()

        subscriber = broadcaster.subscribe()
        assert broadcaster.subscriber_count == 1

        assert broadcaster.unsubscribe(subscriber) is True
        assert broadcaster.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_unsubscribe_twice_returns_false(self) -> None:
        broadcaster = EventBroadcaster()
        subscriber = broadcaster.subscribe()
        broadcaster.unsubscribe(subscriber)

        assert broadcaster.unsubscribe(subscriber) is False

    def test_subscribe_requires_running_loop(self) -> None:
        with pytest.raises(RuntimeError):
            EventBroadcaster().subscribe()


# =============================================================================
# Delivery
# =============================================================================


class TestPublish:
    """Tests for fan-out delivery."""

    @pytest.mark.asyncio
    async def test_every_subscriber_receives_event(self) -> None:
        broadcaster = EventBroadcaster()
        first = broadcaster.subscribe()
        second = broadcaster.subscribe()

        broadcaster.publish(EventType.NODE_REGISTERED, {"node": {"id": "n1"}})

        for subscriber in (first, second):
            event = await subscriber.get(timeout=1)
            assert event.type == EventType.NODE_REGISTERED
            assert event.data == {"node": {"id": "n1"}}

    @pytest.mark.asyncio
    async def test_events_arrive_in_publish_order(self) -> None:
        broadcaster = EventBroadcaster()
        subscriber = broadcaster.subscribe()

        for i in range(5):
            broadcaster.publish("tick", {"i": i})

        received = [(await subscriber.get(timeout=1)).data["i"] for _ in range(5)]
        assert received == [0, 1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_publish_without_subscribers(self) -> None:
        broadcaster = EventBroadcaster()

        event = broadcaster.publish("tick")

        assert isinstance(event, Event)
        assert broadcaster.published_count == 1

    @pytest.mark.asyncio
    async def test_unsubscribed_client_gets_nothing(self) -> None:
        broadcaster = EventBroadcaster()
        subscriber = broadcaster.subscribe()
        broadcaster.unsubscribe(subscriber)

        broadcaster.publish("tick")

        assert subscriber.queue.empty()

    @pytest.mark.asyncio
    async def test_full_queue_drops_oldest(self) -> None:
        """A slow subscriber loses its oldest events, never the newest."""
        broadcaster = EventBroadcaster(max_queue_size=3)
        slow = broadcaster.subscribe()

        for i in range(5):
            broadcaster.publish("tick", {"i": i})

        received = [(await slow.get(timeout=1)).data["i"] for _ in range(3)]
        assert received == [2, 3, 4]
        assert slow.dropped == 2

    @pytest.mark.asyncio
    async def test_slow_subscriber_does_not_affect_others(self) -> None:
        broadcaster = EventBroadcaster(max_queue_size=2)
        slow = broadcaster.subscribe()
        fast = broadcaster.subscribe()

        for i in range(4):
            broadcaster.publish("tick", {"i": i})
            assert (await fast.get(timeout=1)).data["i"] == i

        assert slow.queue.qsize() == 2

    @pytest.mark.asyncio
    async def test_publish_from_another_thread(self) -> None:
        """Events published off the loop thread are handed over safely."""
        broadcaster = EventBroadcaster()
        subscriber = broadcaster.subscribe()

        thread = threading.Thread(target=broadcaster.publish, args=("tick", {"from": "thread"}))
        thread.start()
        thread.join()

        event = await subscriber.get(timeout=1)
        assert event.data == {"from": "thread"}

    @pytest.mark.asyncio
    async def test_get_times_out(self) -> None:
        subscriber = EventBroadcaster().subscribe()

        with pytest.raises(asyncio.TimeoutError):
            await subscriber.get(timeout=0.05)


# =============================================================================
# Global instance
# =============================================================================


class TestGlobalBroadcaster:
    """Tests for the process-wide instance."""

    def test_get_returns_same_instance(self) -> None:
        assert get_event_broadcaster() is get_event_broadcaster()

    def test_reset_creates_new_instance(self) -> None:
        first = get_event_broadcaster()
        reset_services()

        assert get_event_broadcaster() is not first
