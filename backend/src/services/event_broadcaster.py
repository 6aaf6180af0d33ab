"""Fan-out of events to stream subscribers.

Each subscriber owns a bounded queue. ``publish`` copies the subscriber
list under the lock and delivers outside it, so a slow subscriber never
blocks publishers or (un)subscription. When a queue is full its oldest
event is dropped. Delivery is best effort and at most once.
"""

from __future__ import annotations

import asyncio
import logging
from threading import Lock
from typing import Any, Dict, List, Optional

from ..models.event import Event

logger = logging.getLogger(__name__)


class Subscriber:
    """One connected stream client."""

    def __init__(self, loop: asyncio.AbstractEventLoop, max_queue_size: int):
        self.loop = loop
        self.queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=max_queue_size)
        self.dropped = 0
        self.closed = False

    def offer(self, event: Event) -> None:
        """Enqueue without blocking, from any thread."""
        if self.closed:
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is self.loop:
            self._put(event)
            return
        try:
            self.loop.call_soon_threadsafe(self._put, event)
        except RuntimeError:
            # loop already closed
            self.closed = True

    def _put(self, event: Event) -> None:
        if self.queue.full():
            try:
                self.queue.get_nowait()
                self.dropped += 1
            except asyncio.QueueEmpty:
                pass
            if self.dropped == 1 or self.dropped % 100 == 0:
                logger.warning(f"Subscriber queue full, dropped {self.dropped} event(s) so far")
        self.queue.put_nowait(event)

    async def get(self, timeout: Optional[float] = None) -> Event:
        if timeout is None:
            return await self.queue.get()
        return await asyncio.wait_for(self.queue.get(), timeout=timeout)


class EventBroadcaster:
    """Delivers every published event to every current subscriber."""

    def __init__(self, max_queue_size: int = 100):
        self.max_queue_size = max_queue_size
        self._subscribers: List[Subscriber] = []
        self._lock = Lock()
        self._published = 0

    def subscribe(self) -> Subscriber:
        """Register a subscriber bound to the running event loop."""
        subscriber = Subscriber(asyncio.get_running_loop(), self.max_queue_size)
        with self._lock:
            self._subscribers.append(subscriber)
            count = len(self._subscribers)
        logger.debug(f"Subscriber added ({count} connected)")
        return subscriber

    def unsubscribe(self, subscriber: Subscriber) -> bool:
        subscriber.closed = True
        with self._lock:
            try:
                self._subscribers.remove(subscriber)
            except ValueError:
                return False
            count = len(self._subscribers)
        logger.debug(f"Subscriber removed ({count} connected)")
        return True

    def publish(self, event_type: str, data: Optional[Dict[str, Any]] = None) -> Event:
        """Build an event and deliver it."""
        event = Event(type=event_type, data=data or {})
        self.publish_event(event)
        return event

    def publish_event(self, event: Event) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
            self._published += 1

        for subscriber in subscribers:
            try:
                subscriber.offer(event)
            except Exception as e:
                logger.error(f"Error delivering {event.type} to subscriber: {e}")
        logger.debug(f"Published {event.type} to {len(subscribers)} subscriber(s)")

    def clear(self) -> None:
        with self._lock:
            for subscriber in self._subscribers:
                subscriber.closed = True
            self._subscribers.clear()

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    @property
    def published_count(self) -> int:
        with self._lock:
            return self._published


__all__ = ["EventBroadcaster", "Subscriber"]
