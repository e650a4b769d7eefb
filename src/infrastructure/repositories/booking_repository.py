# src/infrastructure/repositories/booking_repository.py

from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session
from sqlalchemy import select, update

from src.infrastructure.db.models import Booking, DispatchMode, utc_now
from src.domain.state_machine import BookingStatus


class BookingRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(
        self,
        booking_id: str,
    ) -> Booking | None:

        stmt = select(Booking).where(Booking.id == booking_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def create_booking(self, **fields: Any) -> Booking:
        booking = Booking(
            status=BookingStatus.PENDING,
            version=0,
            **fields,
        )

        self.db.add(booking)
        self.db.flush()
        return booking

    def compare_and_set(
        self,
        booking_id: str,
        expected_version: int,
        expected_status: BookingStatus,
        values: dict[str, Any],
        require_unassigned: bool = False,
    ) -> bool:
        """
        Single conditional UPDATE; the row count is the only arbiter.
        Returns True if this call applied the change.
        """

        values = dict(values)
        stmt = (
            update(Booking)
            .where(Booking.id == booking_id)
            .where(Booking.version == expected_version)
            .where(Booking.status == expected_status)
        )
        if require_unassigned:
            stmt = stmt.where(Booking.provider_id.is_(None))

        stmt = stmt.values(
            version=Booking.version + 1,
            updated_at=values.pop("updated_at", utc_now()),
            **values,
        ).execution_options(synchronize_session=False)

        result = self.db.execute(stmt)
        return result.rowcount == 1

    def list_poolable(
        self,
        category: str | None,
        page: int = 1,
        page_size: int = 20,
    ) -> list[Booking]:

        stmt = (
            select(Booking)
            .where(Booking.status == BookingStatus.PENDING)
            .where(Booking.provider_id.is_(None))
        )
        if category is not None:
            stmt = stmt.where(Booking.service_category == category)

        stmt = stmt.order_by(Booking.scheduled_time, Booking.created_at)
        return self._paginate(stmt, page, page_size)

    def list_by_customer(
        self,
        customer_id: str,
        status: BookingStatus | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> list[Booking]:

        stmt = select(Booking).where(Booking.customer_id == customer_id)
        if status is not None:
            stmt = stmt.where(Booking.status == status)

        stmt = stmt.order_by(Booking.created_at.desc())
        return self._paginate(stmt, page, page_size)

    def list_by_provider(
        self,
        provider_id: str,
        status: BookingStatus | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> list[Booking]:

        stmt = select(Booking).where(Booking.provider_id == provider_id)
        if status is not None:
            stmt = stmt.where(Booking.status == status)

        stmt = stmt.order_by(Booking.created_at.desc())
        return self._paginate(stmt, page, page_size)

    def list_unanswered_assignments(
        self,
        assigned_before: datetime,
        limit: int = 100,
    ) -> list[Booking]:

        stmt = (
            select(Booking)
            .where(Booking.status == BookingStatus.PENDING)
            .where(Booking.dispatch_mode == DispatchMode.TARGETED)
            .where(Booking.provider_id.is_not(None))
            .where(Booking.assigned_at < assigned_before)
            .order_by(Booking.assigned_at)
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def list_rejected(self, limit: int = 100) -> list[Booking]:

        stmt = (
            select(Booking)
            .where(Booking.status == BookingStatus.REJECTED)
            .order_by(Booking.updated_at)
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def _paginate(self, stmt, page: int, page_size: int) -> list[Booking]:
        offset = (max(page, 1) - 1) * page_size
        stmt = stmt.offset(offset).limit(page_size)
        return list(self.db.execute(stmt).scalars().all())
