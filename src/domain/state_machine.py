# src/domain/state_machine.py

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Protocol, Set

from src.domain.exceptions import InvalidTransitionError, UnauthorizedActorError


class BookingStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REJECTED = "rejected"


class ActorRole(str, Enum):
    CUSTOMER = "customer"
    PROVIDER = "provider"
    ADMIN = "admin"
    SYSTEM = "system"


class LifecycleCommand(str, Enum):
    CLAIM = "claim"
    ACCEPT = "accept"
    REJECT = "reject"
    REOPEN = "reopen"
    START = "start"
    COMPLETE = "complete"
    CANCEL = "cancel"


@dataclass(frozen=True)
class Actor:
    """Authenticated caller as resolved by the identity collaborator."""

    id: str
    role: ActorRole
    category: Optional[str] = None


class AssignableBooking(Protocol):
    customer_id: str
    provider_id: Optional[str]
    status: BookingStatus


class BookingStateMachine:
    """
    Central lifecycle controller for booking transitions.
    Defines the legal state transitions and who may trigger them.
    """

    _ALLOWED_TRANSITIONS: Dict[BookingStatus, Set[BookingStatus]] = {
        BookingStatus.PENDING: {
            BookingStatus.ACCEPTED,
            BookingStatus.REJECTED,
            BookingStatus.CANCELLED,
        },
        BookingStatus.ACCEPTED: {
            BookingStatus.IN_PROGRESS,
            BookingStatus.CANCELLED,
        },
        BookingStatus.IN_PROGRESS: {
            BookingStatus.COMPLETED,
            BookingStatus.CANCELLED,
        },
        # Reopening starts a new assignment episode.
        BookingStatus.REJECTED: {
            BookingStatus.PENDING,
        },
        BookingStatus.COMPLETED: set(),
        BookingStatus.CANCELLED: set(),
    }

    _TERMINAL: Set[BookingStatus] = {
        BookingStatus.COMPLETED,
        BookingStatus.CANCELLED,
        BookingStatus.REJECTED,
    }

    _COMMAND_TARGETS: Dict[LifecycleCommand, BookingStatus] = {
        LifecycleCommand.CLAIM: BookingStatus.ACCEPTED,
        LifecycleCommand.ACCEPT: BookingStatus.ACCEPTED,
        LifecycleCommand.REJECT: BookingStatus.REJECTED,
        LifecycleCommand.REOPEN: BookingStatus.PENDING,
        LifecycleCommand.START: BookingStatus.IN_PROGRESS,
        LifecycleCommand.COMPLETE: BookingStatus.COMPLETED,
        LifecycleCommand.CANCEL: BookingStatus.CANCELLED,
    }

    # Commands sharing a target status are distinguished by their source.
    _COMMAND_SOURCES: Dict[LifecycleCommand, Set[BookingStatus]] = {
        LifecycleCommand.CLAIM: {BookingStatus.PENDING},
        LifecycleCommand.ACCEPT: {BookingStatus.PENDING},
        LifecycleCommand.REJECT: {BookingStatus.PENDING},
        LifecycleCommand.REOPEN: {BookingStatus.REJECTED},
        LifecycleCommand.START: {BookingStatus.ACCEPTED},
        LifecycleCommand.COMPLETE: {BookingStatus.IN_PROGRESS},
        LifecycleCommand.CANCEL: {
            BookingStatus.PENDING,
            BookingStatus.ACCEPTED,
            BookingStatus.IN_PROGRESS,
        },
    }

    @classmethod
    def can_transition(
        cls,
        from_status: BookingStatus,
        to_status: BookingStatus,
    ) -> bool:
        """
        Returns True if transition is allowed.
        """
        cls._ensure_valid_status(from_status)
        cls._ensure_valid_status(to_status)

        return to_status in cls._ALLOWED_TRANSITIONS.get(from_status, set())

    @classmethod
    def validate_transition(
        cls,
        from_status: BookingStatus,
        to_status: BookingStatus,
    ) -> None:
        """
        Raises InvalidTransitionError if transition is illegal.
        """
        if not cls.can_transition(from_status, to_status):
            raise InvalidTransitionError(
                from_state=from_status.value,
                to_state=to_status.value,
            )

    @classmethod
    def is_terminal(cls, status: BookingStatus) -> bool:
        """
        Returns True if no service progress is possible from this state.
        A rejected booking only leaves its state through a reopen.
        """
        cls._ensure_valid_status(status)
        return status in cls._TERMINAL

    @classmethod
    def get_allowed_transitions(
        cls, status: BookingStatus
    ) -> Set[BookingStatus]:
        """
        Returns allowed next states from current state.
        """
        cls._ensure_valid_status(status)
        return set(cls._ALLOWED_TRANSITIONS.get(status, set()))

    @classmethod
    def target_for(cls, command: LifecycleCommand) -> BookingStatus:
        return cls._COMMAND_TARGETS[command]

    @classmethod
    def validate_command(
        cls,
        command: LifecycleCommand,
        from_status: BookingStatus,
    ) -> BookingStatus:
        """
        Returns the status the command leads to from `from_status`,
        or raises InvalidTransitionError.
        """
        cls._ensure_valid_status(from_status)
        to_status = cls._COMMAND_TARGETS[command]

        if from_status not in cls._COMMAND_SOURCES[command]:
            raise InvalidTransitionError(
                from_state=from_status.value,
                to_state=to_status.value,
            )
        cls.validate_transition(from_status, to_status)
        return to_status

    @classmethod
    def authorize(
        cls,
        command: LifecycleCommand,
        booking: AssignableBooking,
        actor: Actor,
    ) -> None:
        """
        Raises UnauthorizedActorError if `actor` may not issue `command`
        against `booking` in its current state.
        """
        is_assigned_provider = (
            actor.role == ActorRole.PROVIDER
            and booking.provider_id is not None
            and booking.provider_id == actor.id
        )

        if command == LifecycleCommand.CLAIM:
            if actor.role != ActorRole.PROVIDER:
                raise UnauthorizedActorError("Only providers can claim bookings")
            return

        if command == LifecycleCommand.ACCEPT:
            if actor.role == ActorRole.PROVIDER and booking.provider_id is None:
                raise UnauthorizedActorError(
                    "Pooled bookings must be claimed, not accepted"
                )
            if not is_assigned_provider:
                raise UnauthorizedActorError(
                    "Only the targeted provider can accept this booking"
                )
            return

        if command == LifecycleCommand.REJECT:
            if actor.role == ActorRole.SYSTEM or is_assigned_provider:
                return
            raise UnauthorizedActorError(
                "Only the targeted provider can reject this booking"
            )

        if command == LifecycleCommand.REOPEN:
            if actor.role in (ActorRole.SYSTEM, ActorRole.ADMIN):
                return
            raise UnauthorizedActorError("Only dispatch can reopen a booking")

        if command in (LifecycleCommand.START, LifecycleCommand.COMPLETE):
            if not is_assigned_provider:
                raise UnauthorizedActorError(
                    "Only the assigned provider can update service progress"
                )
            return

        if command == LifecycleCommand.CANCEL:
            if actor.role == ActorRole.ADMIN:
                return
            if booking.status == BookingStatus.IN_PROGRESS:
                raise UnauthorizedActorError(
                    "Cancelling a service in progress requires an operator override"
                )
            if actor.role == ActorRole.CUSTOMER and booking.customer_id == actor.id:
                return
            if is_assigned_provider:
                return
            raise UnauthorizedActorError(
                "Only the customer or the assigned provider can cancel this booking"
            )

        raise UnauthorizedActorError(f"Unsupported command {command.value}")

    @staticmethod
    def can_view(
        actor: Actor,
        customer_id: Optional[str],
        provider_id: Optional[str],
        status: BookingStatus,
    ) -> bool:
        """
        Read access to one booking. Providers only see bookings assigned
        to them, plus unassigned pending ones while they sit in the pool.
        """
        if actor.role in (ActorRole.ADMIN, ActorRole.SYSTEM):
            return True
        if actor.role == ActorRole.CUSTOMER:
            return customer_id == actor.id
        if actor.role == ActorRole.PROVIDER:
            if provider_id is not None:
                return provider_id == actor.id
            return status == BookingStatus.PENDING
        return False

    @classmethod
    def is_replay(
        cls,
        command: LifecycleCommand,
        booking: AssignableBooking,
        actor: Actor,
    ) -> bool:
        """
        Returns True when the store already reflects what `actor`
        asked for, so the command is a no-op.
        """
        if booking.status != cls._COMMAND_TARGETS[command]:
            return False

        if command in (
            LifecycleCommand.CLAIM,
            LifecycleCommand.ACCEPT,
            LifecycleCommand.START,
        ):
            return actor.role == ActorRole.PROVIDER and booking.provider_id == actor.id

        if command == LifecycleCommand.CANCEL:
            return (
                actor.role == ActorRole.ADMIN
                or (actor.role == ActorRole.CUSTOMER and booking.customer_id == actor.id)
                or (actor.role == ActorRole.PROVIDER and booking.provider_id == actor.id)
            )

        return False

    @staticmethod
    def _ensure_valid_status(status: BookingStatus) -> None:
        if not isinstance(status, BookingStatus):
            raise TypeError(
                f"Expected BookingStatus, got {type(status)}"
            )
