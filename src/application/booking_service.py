import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Optional

from sqlalchemy.orm import Session

from src import config
from src.application.claim_broker import ClaimBroker, LostReason
from src.application.dispatch_router import DispatchPlan, DispatchRouter, RejectionPolicy
from src.application.fanout import EventFanout
from src.application.ports import AvailabilityGateway, CatalogGateway
from src.domain.events import EventType
from src.domain.exceptions import (
    AlreadyClaimedError,
    BookingNotFoundError,
    InvalidTransitionError,
    ServiceNotFoundError,
    UnauthorizedActorError,
    VersionConflictError,
)
from src.domain.settlement import (
    compute_settlement,
    ensure_not_settled,
    parse_rate,
    resolve_commission_rate,
    valid_rate_or_none,
)
from src.domain.state_machine import (
    Actor,
    ActorRole,
    BookingStateMachine,
    BookingStatus,
    LifecycleCommand,
)
from src.infrastructure.db.models import Booking, utc_now
from src.infrastructure.repositories.booking_repository import BookingRepository

logger = logging.getLogger(__name__)

DISPATCH_ACTOR = Actor(id="dispatch", role=ActorRole.SYSTEM)
RESPONSE_TIMEOUT_REASON = "Provider response timed out"

ValuesBuilder = Callable[[Booking], dict[str, Any]]


class BookingService:
    """Application service coordinating the booking lifecycle."""

    def __init__(
        self,
        db: Session,
        catalog: CatalogGateway,
        availability: AvailabilityGateway,
        fanout: Optional[EventFanout] = None,
        rejection_policy: RejectionPolicy | str = config.TARGETED_REJECTION_POLICY,
        default_commission_rate: Decimal = config.PLATFORM_COMMISSION_RATE,
        response_timeout_seconds: int = config.TARGETED_RESPONSE_TIMEOUT_SECONDS,
    ):
        self.db = db
        self.catalog = catalog
        self.booking_repository = BookingRepository(db)
        self.claim_broker = ClaimBroker(db, self.booking_repository)
        self.dispatch_router = DispatchRouter(availability, RejectionPolicy(rejection_policy))
        self.fanout = fanout or EventFanout(None)
        self.default_commission_rate = default_commission_rate
        self.response_timeout_seconds = response_timeout_seconds

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def create_booking(
        self,
        actor: Actor,
        service_id: str,
        scheduled_time: datetime,
        address: str,
        notes: Optional[str] = None,
        customer_id: Optional[str] = None,
        preferred_provider_id: Optional[str] = None,
        surcharge: Decimal = Decimal("0"),
        commission_rate_override: Optional[Decimal] = None,
    ) -> Booking:
        if actor.role == ActorRole.CUSTOMER:
            if customer_id is not None and customer_id != actor.id:
                raise UnauthorizedActorError("Customers can only book for themselves")
            if commission_rate_override is not None:
                raise UnauthorizedActorError("Only administrators can override commission")
            customer_id = actor.id
        elif actor.role == ActorRole.ADMIN:
            if not customer_id:
                raise ValueError("customer_id is required for administrator bookings")
        else:
            raise UnauthorizedActorError("Only customers and administrators create bookings")

        commission_rate_override = parse_rate(commission_rate_override)
        pricing = self.catalog.get_service_pricing(service_id)
        if pricing is None:
            raise ServiceNotFoundError(service_id)

        plan = self.dispatch_router.route_new_booking(preferred_provider_id)
        now = utc_now()

        booking = self.booking_repository.create_booking(
            customer_id=customer_id,
            service_id=service_id,
            service_category=pricing.category,
            provider_id=plan.provider_id,
            dispatch_mode=plan.mode,
            scheduled_time=scheduled_time,
            address=address,
            notes=notes,
            total_amount=pricing.price + (surcharge or Decimal("0")),
            commission_rate_override=commission_rate_override,
            assigned_at=now if plan.is_targeted else None,
            declined_provider_ids=[],
            status_history=[
                self._history_entry(BookingStatus.PENDING, actor, "Booking created", now)
            ],
            created_at=now,
            updated_at=now,
        )
        self.db.commit()
        booking = self._load(booking.id)

        logger.info(
            "Booking created. booking_id=%s mode=%s provider_id=%s category=%s",
            booking.id,
            booking.dispatch_mode,
            booking.provider_id,
            booking.service_category,
        )
        event_type = EventType.ASSIGNED if plan.is_targeted else EventType.AVAILABLE
        self.fanout.publish(booking, event_type, None)
        return booking

    def claim_booking(
        self,
        booking_id: str,
        actor: Actor,
        expected_version: Optional[int] = None,
    ) -> Booking:
        booking = self._load(booking_id)

        if BookingStateMachine.is_replay(LifecycleCommand.CLAIM, booking, actor):
            return booking

        if booking.status != BookingStatus.PENDING or booking.provider_id is not None:
            if booking.status in (
                BookingStatus.ACCEPTED,
                BookingStatus.IN_PROGRESS,
                BookingStatus.COMPLETED,
            ):
                raise AlreadyClaimedError(booking_id)
            if booking.status == BookingStatus.PENDING:
                if booking.provider_id == actor.id:
                    raise UnauthorizedActorError(
                        "Booking is targeted at you; accept this targeted booking instead"
                    )
                raise UnauthorizedActorError("Booking is targeted at another provider")
            raise InvalidTransitionError(
                from_state=booking.status.value,
                to_state=BookingStatus.ACCEPTED.value,
            )

        BookingStateMachine.authorize(LifecycleCommand.CLAIM, booking, actor)
        if not self.dispatch_router.is_pool_eligible(actor.id, booking.service_category):
            raise UnauthorizedActorError(
                "Provider is not available for this service category"
            )

        version = self._check_version(booking, expected_version)
        history = list(booking.status_history or []) + [
            self._history_entry(BookingStatus.ACCEPTED, actor, "Claimed from pool")
        ]

        result = self.claim_broker.claim(
            booking_id=booking_id,
            provider_id=actor.id,
            expected_version=version,
            extra_values={"status_history": history},
        )
        if not result.won:
            if result.reason == LostReason.ALREADY_CLAIMED:
                raise AlreadyClaimedError(booking_id)
            raise VersionConflictError(booking_id, version, result.booking.version)

        self.fanout.publish(result.booking, EventType.CLAIMED, BookingStatus.PENDING)
        return result.booking

    def accept_booking(
        self,
        booking_id: str,
        actor: Actor,
        expected_version: Optional[int] = None,
    ) -> Booking:
        return self._transition(
            LifecycleCommand.ACCEPT,
            self._load(booking_id),
            actor,
            expected_version,
            lambda booking: {"accepted_at": utc_now()},
            EventType.STATUS_UPDATED,
            note="Accepted by provider",
        )

    def reject_booking(
        self,
        booking_id: str,
        actor: Actor,
        reason: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> Booking:
        def _rejection_values(booking: Booking) -> dict[str, Any]:
            declined = list(booking.declined_provider_ids or [])
            if booking.provider_id and booking.provider_id not in declined:
                declined.append(booking.provider_id)
            return {
                "rejection_reason": reason or "",
                "declined_provider_ids": declined,
            }

        rejected = self._transition(
            LifecycleCommand.REJECT,
            self._load(booking_id),
            actor,
            expected_version,
            _rejection_values,
            EventType.STATUS_UPDATED,
            note=reason or "",
        )

        plan = self.dispatch_router.plan_after_rejection(
            rejected.service_category,
            rejected.declined_provider_ids or [],
        )
        if plan is None:
            logger.info("Rejection is final. booking_id=%s", rejected.id)
            return rejected
        return self._reopen(rejected, DISPATCH_ACTOR, plan)

    def reopen_booking(
        self,
        booking_id: str,
        actor: Actor,
        expected_version: Optional[int] = None,
    ) -> Booking:
        booking = self._load(booking_id)
        plan = self.dispatch_router.plan_after_rejection(
            booking.service_category,
            booking.declined_provider_ids or [],
        )
        if plan is None:
            # Explicit reopen under a terminal policy goes to the pool.
            plan = self.dispatch_router.route_new_booking(None)
        return self._reopen(booking, actor, plan, expected_version)

    def start_service(
        self,
        booking_id: str,
        actor: Actor,
        expected_version: Optional[int] = None,
    ) -> Booking:
        return self._transition(
            LifecycleCommand.START,
            self._load(booking_id),
            actor,
            expected_version,
            lambda booking: {"started_at": utc_now()},
            EventType.STATUS_UPDATED,
            note="Service started",
        )

    def complete_service(
        self,
        booking_id: str,
        actor: Actor,
        expected_version: Optional[int] = None,
    ) -> Booking:
        booking = self._load(booking_id)
        if booking.status == BookingStatus.COMPLETED:
            ensure_not_settled(booking.id, booking.commission_amount, booking.net_amount)

        return self._transition(
            LifecycleCommand.COMPLETE,
            booking,
            actor,
            expected_version,
            self._settlement_values,
            EventType.STATUS_UPDATED,
            note="Service completed",
        )

    def cancel_booking(
        self,
        booking_id: str,
        actor: Actor,
        reason: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> Booking:
        return self._transition(
            LifecycleCommand.CANCEL,
            self._load(booking_id),
            actor,
            expected_version,
            lambda booking: {
                "rejection_reason": reason or "",
                "cancelled_by": actor.id,
                "cancelled_at": utc_now(),
            },
            EventType.CANCELLED,
            note=reason or "",
        )

    def expire_unanswered_assignments(
        self,
        now: Optional[datetime] = None,
        limit: int = 100,
    ) -> list[Booking]:
        """
        Timer hook: targeted bookings nobody answered within the response
        window are rejected on the provider's behalf and redispatched.
        Rejections whose redispatch never committed are picked up in the
        same sweep.
        """
        cutoff = (now or utc_now()) - timedelta(seconds=self.response_timeout_seconds)
        stale = self.booking_repository.list_unanswered_assignments(cutoff, limit=limit)

        expired: dict[str, Booking] = {}
        for booking in stale:
            booking_id = booking.id
            try:
                rejected = self.reject_booking(
                    booking_id,
                    DISPATCH_ACTOR,
                    reason=RESPONSE_TIMEOUT_REASON,
                    expected_version=booking.version,
                )
                expired[rejected.id] = rejected
            except (VersionConflictError, InvalidTransitionError) as exc:
                # Either the provider answered first, or the rejection
                # committed and its redispatch lost a race.
                logger.info(
                    "Skipping expiry. booking_id=%s reason=%s",
                    booking_id,
                    exc,
                )

        for booking in self.recover_stranded_rejections(limit=limit):
            expired[booking.id] = booking

        if expired:
            logger.info("Expired %s unanswered assignments", len(expired))
        return list(expired.values())

    def recover_stranded_rejections(self, limit: int = 100) -> list[Booking]:
        """
        Redispatches bookings left `rejected` although the policy reopens
        them. Nothing to do under the terminal policy.
        """
        if self.dispatch_router.rejection_policy == RejectionPolicy.TERMINAL:
            return []

        recovered = []
        for booking in self.booking_repository.list_rejected(limit=limit):
            booking_id = booking.id
            plan = self.dispatch_router.plan_after_rejection(
                booking.service_category,
                booking.declined_provider_ids or [],
            )
            try:
                recovered.append(
                    self._reopen(booking, DISPATCH_ACTOR, plan, booking.version)
                )
            except (VersionConflictError, InvalidTransitionError) as exc:
                logger.info(
                    "Skipping stranded rejection. booking_id=%s reason=%s",
                    booking_id,
                    exc,
                )

        if recovered:
            logger.warning("Recovered %s stranded rejections", len(recovered))
        return recovered

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_booking(self, booking_id: str, actor: Actor) -> Booking:
        booking = self._load(booking_id)
        if BookingStateMachine.can_view(
            actor, booking.customer_id, booking.provider_id, booking.status
        ):
            return booking
        raise UnauthorizedActorError("Not authorized to view this booking")

    def get_settlement(self, booking_id: str, actor: Actor) -> Booking:
        booking = self.get_booking(booking_id, actor)
        if actor.role == ActorRole.PROVIDER and booking.provider_id != actor.id:
            raise UnauthorizedActorError("Not authorized to view this settlement")
        return booking

    def list_poolable(
        self,
        actor: Actor,
        category: Optional[str] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> list[Booking]:
        if self._is_privileged(actor):
            return self.booking_repository.list_poolable(category, page, page_size)

        if actor.role != ActorRole.PROVIDER:
            raise UnauthorizedActorError("Only providers can browse the pool")

        category = category or actor.category
        if not category:
            return []
        # Recomputed on every read; an unavailable provider simply sees nothing.
        if not self.dispatch_router.is_pool_eligible(actor.id, category):
            return []
        return self.booking_repository.list_poolable(category, page, page_size)

    def list_by_customer(
        self,
        actor: Actor,
        customer_id: str,
        status: Optional[BookingStatus] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> list[Booking]:
        if not self._is_privileged(actor) and not (
            actor.role == ActorRole.CUSTOMER and actor.id == customer_id
        ):
            raise UnauthorizedActorError("Not authorized to list these bookings")
        return self.booking_repository.list_by_customer(
            customer_id, status, page, page_size
        )

    def list_by_provider(
        self,
        actor: Actor,
        provider_id: str,
        status: Optional[BookingStatus] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> list[Booking]:
        if not self._is_privileged(actor) and not (
            actor.role == ActorRole.PROVIDER and actor.id == provider_id
        ):
            raise UnauthorizedActorError("Not authorized to list these bookings")
        return self.booking_repository.list_by_provider(
            provider_id, status, page, page_size
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _transition(
        self,
        command: LifecycleCommand,
        booking: Booking,
        actor: Actor,
        expected_version: Optional[int],
        build_values: Optional[ValuesBuilder],
        event_type: EventType,
        note: str = "",
    ) -> Booking:
        if BookingStateMachine.is_replay(command, booking, actor):
            logger.info(
                "Replay ignored. booking_id=%s command=%s actor_id=%s",
                booking.id,
                command.value,
                actor.id,
            )
            return booking

        from_status = booking.status
        to_status = BookingStateMachine.validate_command(command, from_status)
        BookingStateMachine.authorize(command, booking, actor)
        version = self._check_version(booking, expected_version)

        values = build_values(booking) if build_values else {}
        now = utc_now()
        values.update(
            status=to_status,
            updated_at=now,
            status_history=list(booking.status_history or [])
            + [self._history_entry(to_status, actor, note, now)],
        )

        booking_id = booking.id
        applied = self.booking_repository.compare_and_set(
            booking_id=booking_id,
            expected_version=version,
            expected_status=from_status,
            values=values,
        )
        if not applied:
            self.db.rollback()
            current = self._load(booking_id)
            logger.info(
                "Transition lost a race. booking_id=%s command=%s expected_version=%s actual_version=%s",
                booking_id,
                command.value,
                version,
                current.version,
            )
            raise VersionConflictError(booking_id, version, current.version)

        self.db.commit()
        booking = self._load(booking_id)
        logger.info(
            "Booking transitioned. booking_id=%s %s -> %s version=%s actor=%s:%s",
            booking_id,
            from_status.value,
            to_status.value,
            booking.version,
            actor.role.value,
            actor.id,
        )

        self.fanout.publish(booking, event_type, from_status)
        return booking

    def _reopen(
        self,
        booking: Booking,
        actor: Actor,
        plan: DispatchPlan,
        expected_version: Optional[int] = None,
    ) -> Booking:
        def _reopen_values(_booking: Booking) -> dict[str, Any]:
            return {
                "provider_id": plan.provider_id,
                "dispatch_mode": plan.mode,
                "assigned_at": utc_now() if plan.is_targeted else None,
                "accepted_at": None,
            }

        note = (
            f"Reassigned to {plan.provider_id}" if plan.is_targeted else "Reopened to pool"
        )
        event_type = EventType.REASSIGNED if plan.is_targeted else EventType.AVAILABLE
        return self._transition(
            LifecycleCommand.REOPEN,
            booking,
            actor,
            expected_version,
            _reopen_values,
            event_type,
            note=note,
        )

    def _settlement_values(self, booking: Booking) -> dict[str, Any]:
        ensure_not_settled(booking.id, booking.commission_amount, booking.net_amount)

        pricing = self.catalog.get_service_pricing(booking.service_id)
        provider_rate = (
            valid_rate_or_none(
                self.catalog.get_provider_commission(booking.provider_id),
                f"provider {booking.provider_id}",
            )
            if booking.provider_id
            else None
        )
        service_rate = (
            valid_rate_or_none(pricing.commission_rate, f"service {booking.service_id}")
            if pricing
            else None
        )
        rate = resolve_commission_rate(
            override=booking.commission_rate_override,
            provider_rate=provider_rate,
            service_rate=service_rate,
            default_rate=self.default_commission_rate,
        )
        settlement = compute_settlement(booking.total_amount, rate)
        logger.info(
            "Settlement computed. booking_id=%s rate=%s commission=%s net=%s",
            booking.id,
            settlement.commission_rate,
            settlement.commission_amount,
            settlement.net_amount,
        )
        return {
            "commission_rate": settlement.commission_rate,
            "commission_amount": settlement.commission_amount,
            "net_amount": settlement.net_amount,
            "completed_at": utc_now(),
        }

    def _load(self, booking_id: str) -> Booking:
        booking = self.booking_repository.get_by_id(booking_id)
        if not booking:
            raise BookingNotFoundError(booking_id)
        return booking

    @staticmethod
    def _check_version(booking: Booking, expected_version: Optional[int]) -> int:
        if expected_version is not None and expected_version != booking.version:
            raise VersionConflictError(booking.id, expected_version, booking.version)
        return booking.version

    @staticmethod
    def _is_privileged(actor: Actor) -> bool:
        return actor.role in (ActorRole.ADMIN, ActorRole.SYSTEM)

    @staticmethod
    def _history_entry(
        status: BookingStatus,
        actor: Actor,
        note: str = "",
        at: Optional[datetime] = None,
    ) -> dict[str, Any]:
        return {
            "status": status.value,
            "actor_id": actor.id,
            "role": actor.role.value,
            "note": note,
            "at": (at or utc_now()).isoformat(),
        }
