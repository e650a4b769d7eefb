# src/infrastructure/events/broker.py

import asyncio
import logging
import threading
from typing import AsyncIterator, Callable, Dict, Optional, Set

from src.domain.events import TransitionEvent

logger = logging.getLogger(__name__)

EventFilter = Callable[[TransitionEvent], bool]


class Subscription:
    """
    One subscriber on one channel. Events are handed over through a
    bounded queue owned by the subscriber's event loop.
    """

    def __init__(
        self,
        broker: "EventBroker",
        channel: str,
        loop: asyncio.AbstractEventLoop,
        max_queue_size: int,
        event_filter: Optional[EventFilter] = None,
    ):
        self.broker = broker
        self.channel = channel
        self.loop = loop
        self.event_filter = event_filter
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue_size)
        self.dropped = 0
        self.closed = False

    def offer(self, event: TransitionEvent) -> bool:
        """Thread-safe, never blocks. Returns False if the event was skipped."""
        if self.closed:
            return False
        if self.event_filter is not None and not self.event_filter(event):
            return False
        try:
            self.loop.call_soon_threadsafe(self._put, event)
        except RuntimeError:
            # Subscriber's loop is gone; it will be reaped on close.
            logger.warning("Dropping event for closed loop on channel=%s", self.channel)
            return False
        return True

    def _put(self, event: TransitionEvent) -> None:
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                "Subscriber queue full, dropping event. channel=%s booking_id=%s dropped=%s",
                self.channel,
                event.booking_id,
                self.dropped,
            )

    async def get(self) -> TransitionEvent:
        return await self.queue.get()

    async def __aiter__(self) -> AsyncIterator[TransitionEvent]:
        while not self.closed:
            yield await self.queue.get()

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.broker.unsubscribe(self)


class EventBroker:
    """
    In-process publish/subscribe registry keyed by channel id.
    Delivery is at-most-once with no persistence.
    """

    def __init__(self, max_queue_size: int = 100):
        self.max_queue_size = max_queue_size
        self._lock = threading.Lock()
        self._subscriptions: Dict[str, Set[Subscription]] = {}

    def subscribe(
        self,
        channel: str,
        event_filter: Optional[EventFilter] = None,
    ) -> Subscription:
        """Must be called from the subscriber's running event loop."""
        subscription = Subscription(
            broker=self,
            channel=channel,
            loop=asyncio.get_running_loop(),
            max_queue_size=self.max_queue_size,
            event_filter=event_filter,
        )
        with self._lock:
            self._subscriptions.setdefault(channel, set()).add(subscription)
        logger.debug("Subscribed to channel=%s", channel)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            members = self._subscriptions.get(subscription.channel)
            if not members:
                return
            members.discard(subscription)
            if not members:
                del self._subscriptions[subscription.channel]
        logger.debug("Unsubscribed from channel=%s", subscription.channel)

    def publish(self, channel: str, event: TransitionEvent) -> int:
        with self._lock:
            members = list(self._subscriptions.get(channel, ()))

        delivered = 0
        for subscription in members:
            if subscription.offer(event):
                delivered += 1
        return delivered

    def subscriber_count(self, channel: str) -> int:
        with self._lock:
            return len(self._subscriptions.get(channel, ()))
