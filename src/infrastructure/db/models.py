# src/infrastructure/db/models.py

from sqlalchemy import (
    String,
    Integer,
    DateTime,
    Enum,
    Text,
    Numeric,
    JSON,
    CheckConstraint,
    Index,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

from src.infrastructure.db.session import Base
from src.domain.state_machine import BookingStatus


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class DispatchMode:
    TARGETED = "targeted"
    POOLED = "pooled"


class Booking(Base):
    """
    Booking table reflecting domain state.
    Domain controls transitions.
    Every write after creation is a conditional update on `version`.
    """

    __tablename__ = "bookings"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid4()),
    )
    customer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    service_id: Mapped[str] = mapped_column(String(64), nullable=False)
    service_category: Mapped[str] = mapped_column(String(64), nullable=False)
    provider_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    dispatch_mode: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=DispatchMode.POOLED,
    )
    status: Mapped[BookingStatus] = mapped_column(
        Enum(
            BookingStatus,
            name="booking_status",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
        default=BookingStatus.PENDING,
    )

    scheduled_time: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )
    address: Mapped[str] = mapped_column(String(255), nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    commission_rate_override: Mapped[Decimal | None] = mapped_column(
        Numeric(5, 2),
        nullable=True,
    )
    commission_rate: Mapped[Decimal | None] = mapped_column(Numeric(5, 2), nullable=True)
    commission_amount: Mapped[Decimal | None] = mapped_column(
        Numeric(12, 2),
        nullable=True,
    )
    net_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)

    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancelled_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    declined_provider_ids: Mapped[list] = mapped_column(
        JSON,
        nullable=False,
        default=list,
    )
    status_history: Mapped[list] = mapped_column(
        JSON,
        nullable=False,
        default=list,
    )

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    assigned_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    accepted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    cancelled_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        CheckConstraint("total_amount >= 0", name="ck_booking_total_nonnegative"),
        CheckConstraint("version >= 0", name="ck_booking_version_nonnegative"),
        Index("ix_bookings_pool", "status", "service_category", "provider_id"),
        Index("ix_bookings_customer", "customer_id", "status", "created_at"),
        Index("ix_bookings_provider", "provider_id", "status", "created_at"),
        Index("ix_bookings_assigned_at", "status", "dispatch_mode", "assigned_at"),
    )
