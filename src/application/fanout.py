import logging
from typing import Optional

from src.domain.events import (
    POOL_CHANNEL,
    BookingSnapshot,
    EventType,
    TransitionEvent,
    booking_channel,
    provider_channel,
)
from src.domain.state_machine import BookingStatus
from src.infrastructure.db.models import Booking
from src.infrastructure.events.broker import EventBroker

logger = logging.getLogger(__name__)

_PROVIDER_DIRECTED = {EventType.ASSIGNED, EventType.REASSIGNED, EventType.CANCELLED}
_POOL_DIRECTED = {EventType.AVAILABLE, EventType.CLAIMED}


def snapshot(booking: Booking) -> dict:
    return BookingSnapshot.model_validate(booking).model_dump(mode="json")


def route_event(event: TransitionEvent) -> list[str]:
    """
    Channels that must see `event`:
    the booking room always, the provider room for direct targeting,
    the pool room whenever pool membership changes.
    """
    channels = [booking_channel(event.booking_id)]
    provider_id = event.booking.get("provider_id")

    if provider_id and (
        event.event_type in _PROVIDER_DIRECTED
        or event.to_status == BookingStatus.REJECTED
    ):
        channels.append(provider_channel(provider_id))

    left_pool_unclaimed = (
        event.event_type == EventType.CANCELLED
        and event.from_status == BookingStatus.PENDING
        and provider_id is None
    )
    if event.event_type in _POOL_DIRECTED or left_pool_unclaimed:
        channels.append(POOL_CHANNEL)

    return channels


class EventFanout:
    """
    Publishes transition events after the store commit.
    Publishing is best-effort: failures are logged and never reach the caller.
    """

    def __init__(self, broker: Optional[EventBroker]):
        self.broker = broker

    def publish(
        self,
        booking: Booking,
        event_type: EventType,
        from_status: Optional[BookingStatus],
    ) -> Optional[TransitionEvent]:
        if self.broker is None:
            return None

        try:
            event = TransitionEvent(
                event_type=event_type,
                booking_id=booking.id,
                from_status=from_status,
                to_status=booking.status,
                booking=snapshot(booking),
            )
            for channel in route_event(event):
                delivered = self.broker.publish(channel, event)
                logger.debug(
                    "Published %s to channel=%s subscribers=%s",
                    event_type.value,
                    channel,
                    delivered,
                )
            return event
        except Exception:
            logger.exception(
                "Event publication failed. booking_id=%s event_type=%s",
                booking.id,
                event_type.value,
            )
            return None
