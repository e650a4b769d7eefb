from datetime import datetime
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from src.domain.events import BookingSnapshot
from src.domain.state_machine import BookingStatus


class BookingCreateRequest(BaseModel):
    service_id: str
    scheduled_time: datetime
    address: str = Field(min_length=1, max_length=255)
    notes: Optional[str] = Field(default=None, max_length=1000)
    # Administrator-created bookings name the customer explicitly.
    customer_id: Optional[str] = None
    preferred_provider_id: Optional[str] = None
    surcharge: Decimal = Field(default=Decimal("0"), ge=0)
    commission_rate_override: Optional[Decimal] = Field(default=None, ge=0, le=100)


class CommandRequest(BaseModel):
    expected_version: Optional[int] = Field(default=None, ge=0)


class ReasonedCommandRequest(CommandRequest):
    reason: Optional[str] = Field(default=None, max_length=500)


class BookingResponse(BookingSnapshot):
    pass


class ClaimResponse(BaseModel):
    outcome: Literal["won"] = "won"
    booking: BookingResponse


class SettlementResponse(BaseModel):
    booking_id: str
    status: BookingStatus
    total_amount: Decimal
    commission_rate: Optional[Decimal] = None
    commission_amount: Optional[Decimal] = None
    net_amount: Optional[Decimal] = None
    completed_at: Optional[datetime] = None
    settled: bool


class ExpireAssignmentsResponse(BaseModel):
    expired: int
    bookings: list[BookingResponse]


class ErrorDetail(BaseModel):
    code: str
    message: str

    model_config = ConfigDict(frozen=True)
