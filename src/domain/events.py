# src/domain/events.py

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from src.domain.state_machine import BookingStatus


class ChannelKind(str, Enum):
    BOOKING = "booking"
    PROVIDER = "provider"
    POOL = "pool"


POOL_CHANNEL = ChannelKind.POOL.value


def booking_channel(booking_id: str) -> str:
    return f"{ChannelKind.BOOKING.value}:{booking_id}"


def provider_channel(provider_id: str) -> str:
    return f"{ChannelKind.PROVIDER.value}:{provider_id}"


class EventType(str, Enum):
    ASSIGNED = "booking.assigned"
    AVAILABLE = "booking.available"
    CLAIMED = "booking.claimed"
    STATUS_UPDATED = "booking.status_updated"
    CANCELLED = "booking.cancelled"
    REASSIGNED = "booking.reassigned"


class BookingSnapshot(BaseModel):
    """Full booking state as carried by events and REST reads."""

    id: str
    customer_id: str
    service_id: str
    service_category: str
    provider_id: Optional[str] = None
    dispatch_mode: str
    status: BookingStatus
    scheduled_time: datetime
    address: str
    notes: Optional[str] = None
    total_amount: Decimal
    commission_rate: Optional[Decimal] = None
    commission_amount: Optional[Decimal] = None
    net_amount: Optional[Decimal] = None
    rejection_reason: Optional[str] = None
    cancelled_by: Optional[str] = None
    declined_provider_ids: list[str] = Field(default_factory=list)
    status_history: list[dict[str, Any]] = Field(default_factory=list)
    version: int
    assigned_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class TransitionEvent(BaseModel):
    event_type: EventType
    booking_id: str
    from_status: Optional[BookingStatus] = None
    to_status: BookingStatus
    booking: dict[str, Any]
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def service_category(self) -> Optional[str]:
        return self.booking.get("service_category")

    def to_message(self) -> dict[str, Any]:
        return self.model_dump(mode="json")
