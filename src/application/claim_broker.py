import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from sqlalchemy.orm import Session

from src.domain.exceptions import BookingNotFoundError
from src.domain.state_machine import BookingStatus
from src.infrastructure.db.models import Booking, utc_now
from src.infrastructure.repositories.booking_repository import BookingRepository

logger = logging.getLogger(__name__)


class ClaimOutcome(str, Enum):
    WON = "won"
    LOST = "lost"


class LostReason(str, Enum):
    ALREADY_CLAIMED = "already_claimed"
    VERSION_CONFLICT = "version_conflict"


@dataclass
class ClaimResult:
    outcome: ClaimOutcome
    booking: Booking
    reason: Optional[LostReason] = None

    @property
    def won(self) -> bool:
        return self.outcome == ClaimOutcome.WON


class ClaimBroker:
    """
    Resolves concurrent claims on a pooled booking to exactly one winner.

    The decision is a single conditional UPDATE that only matches an
    unassigned pending row at the expected version. Whichever statement the
    database applies first wins; every other one matches zero rows.
    """

    def __init__(self, db: Session, repository: Optional[BookingRepository] = None):
        self.db = db
        self.repository = repository or BookingRepository(db)

    def claim(
        self,
        booking_id: str,
        provider_id: str,
        expected_version: int,
        extra_values: Optional[dict[str, Any]] = None,
    ) -> ClaimResult:
        now = utc_now()
        values = {
            "provider_id": provider_id,
            "status": BookingStatus.ACCEPTED,
            "accepted_at": now,
            "assigned_at": now,
            "updated_at": now,
            **(extra_values or {}),
        }

        applied = self.repository.compare_and_set(
            booking_id=booking_id,
            expected_version=expected_version,
            expected_status=BookingStatus.PENDING,
            values=values,
            require_unassigned=True,
        )

        if applied:
            self.db.commit()
            booking = self.repository.get_by_id(booking_id)
            logger.info(
                "Claim won. booking_id=%s provider_id=%s version=%s",
                booking_id,
                provider_id,
                booking.version,
            )
            return ClaimResult(outcome=ClaimOutcome.WON, booking=booking)

        # Nothing was written; drop the transaction so the re-read is fresh.
        self.db.rollback()
        current = self.repository.get_by_id(booking_id)
        if current is None:
            raise BookingNotFoundError(booking_id)

        if current.provider_id is not None or current.status != BookingStatus.PENDING:
            reason = LostReason.ALREADY_CLAIMED
        else:
            reason = LostReason.VERSION_CONFLICT

        logger.info(
            "Claim lost. booking_id=%s provider_id=%s reason=%s",
            booking_id,
            provider_id,
            reason.value,
        )
        return ClaimResult(outcome=ClaimOutcome.LOST, booking=current, reason=reason)
