

class DispatchCoreError(Exception):
    """
    Base exception for all domain-level errors
    inside the booking dispatch core.
    """

    code = "DISPATCH_ERROR"


class BookingNotFoundError(DispatchCoreError):
    """Raised when a booking id does not exist in the store."""

    code = "NOT_FOUND"

    def __init__(self, booking_id: str):
        self.booking_id = booking_id
        super().__init__(f"Booking {booking_id} not found")


class ServiceNotFoundError(DispatchCoreError):
    """Raised when the catalog has no pricing for a service."""

    code = "NOT_FOUND"

    def __init__(self, service_id: str):
        self.service_id = service_id
        super().__init__(f"Service {service_id} not found or inactive")


class InvalidTransitionError(DispatchCoreError):
    """
    Raised when an illegal booking state transition is attempted.
    """

    code = "INVALID_TRANSITION"

    def __init__(self, from_state: str, to_state: str):
        self.from_state = from_state
        self.to_state = to_state

        message = (
            f"Illegal booking transition attempted: "
            f"{from_state} -> {to_state}"
        )
        super().__init__(message)


class AlreadyClaimedError(DispatchCoreError):
    """
    Raised when a claim lost the race for a pooled booking.
    Callers should refresh the pool instead of retrying the same booking.
    """

    code = "ALREADY_CLAIMED"

    def __init__(self, booking_id: str):
        self.booking_id = booking_id
        super().__init__("Booking is no longer available")


class UnauthorizedActorError(DispatchCoreError):
    """Raised when the actor may not perform the requested transition."""

    code = "UNAUTHORIZED"


class VersionConflictError(DispatchCoreError):
    """Raised when the caller's expected version is stale."""

    code = "VERSION_CONFLICT"

    def __init__(self, booking_id: str, expected: int | None, actual: int):
        self.booking_id = booking_id
        self.expected = expected
        self.actual = actual
        super().__init__("Booking changed, please retry")


class SettlementAlreadyAppliedError(DispatchCoreError):
    """Raised when settlement is recomputed on a settled booking."""

    code = "SETTLEMENT_ALREADY_APPLIED"

    def __init__(self, booking_id: str):
        self.booking_id = booking_id
        super().__init__(f"Settlement already applied for booking {booking_id}")


class CollaboratorUnavailableError(DispatchCoreError):
    """Raised when a catalog or availability lookup cannot be completed."""

    code = "COLLABORATOR_UNAVAILABLE"
