import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from src.api.deps import get_booking_service, get_current_actor, require_admin
from src.api.schemas.schemas import (
    BookingCreateRequest,
    BookingResponse,
    ClaimResponse,
    CommandRequest,
    ErrorDetail,
    ExpireAssignmentsResponse,
    ReasonedCommandRequest,
    SettlementResponse,
)
from src.application.booking_service import BookingService
from src.domain.exceptions import (
    AlreadyClaimedError,
    BookingNotFoundError,
    CollaboratorUnavailableError,
    DispatchCoreError,
    InvalidTransitionError,
    ServiceNotFoundError,
    SettlementAlreadyAppliedError,
    UnauthorizedActorError,
    VersionConflictError,
)
from src.domain.state_machine import Actor, BookingStatus
from src.infrastructure.db.models import Booking


router = APIRouter()
logger = logging.getLogger(__name__)

_STATUS_BY_ERROR = {
    BookingNotFoundError: status.HTTP_404_NOT_FOUND,
    ServiceNotFoundError: status.HTTP_404_NOT_FOUND,
    InvalidTransitionError: status.HTTP_409_CONFLICT,
    AlreadyClaimedError: status.HTTP_409_CONFLICT,
    VersionConflictError: status.HTTP_409_CONFLICT,
    SettlementAlreadyAppliedError: status.HTTP_409_CONFLICT,
    UnauthorizedActorError: status.HTTP_403_FORBIDDEN,
    CollaboratorUnavailableError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def _to_http(exc: DispatchCoreError) -> HTTPException:
    status_code = _STATUS_BY_ERROR.get(type(exc), status.HTTP_400_BAD_REQUEST)
    if status_code >= 500:
        logger.warning("Collaborator failure surfaced to caller: %s", exc)
    return HTTPException(
        status_code=status_code,
        detail=ErrorDetail(code=exc.code, message=str(exc)).model_dump(),
    )


def _expected_version(request: Optional[CommandRequest]) -> Optional[int]:
    return request.expected_version if request else None


def _reason(request: Optional[ReasonedCommandRequest]) -> Optional[str]:
    return request.reason if request else None


def _response(booking: Booking) -> BookingResponse:
    return BookingResponse.model_validate(booking)


@router.get("/health")
def health():
    return {"message": "Booking dispatch core is running"}


# -----------------------------
# Commands
# -----------------------------
@router.post(
    "/bookings",
    response_model=BookingResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_booking(
    request: BookingCreateRequest,
    actor: Actor = Depends(get_current_actor),
    service: BookingService = Depends(get_booking_service),
):
    try:
        booking = service.create_booking(
            actor=actor,
            service_id=request.service_id,
            scheduled_time=request.scheduled_time,
            address=request.address,
            notes=request.notes,
            customer_id=request.customer_id,
            preferred_provider_id=request.preferred_provider_id,
            surcharge=request.surcharge,
            commission_rate_override=request.commission_rate_override,
        )
    except DispatchCoreError as exc:
        raise _to_http(exc) from exc
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc

    return _response(booking)


@router.post("/bookings/{booking_id}/claim", response_model=ClaimResponse)
def claim_booking(
    booking_id: str,
    request: Optional[CommandRequest] = None,
    actor: Actor = Depends(get_current_actor),
    service: BookingService = Depends(get_booking_service),
):
    try:
        booking = service.claim_booking(
            booking_id=booking_id,
            actor=actor,
            expected_version=_expected_version(request),
        )
    except DispatchCoreError as exc:
        raise _to_http(exc) from exc

    return ClaimResponse(booking=_response(booking))


@router.post("/bookings/{booking_id}/accept", response_model=BookingResponse)
def accept_booking(
    booking_id: str,
    request: Optional[CommandRequest] = None,
    actor: Actor = Depends(get_current_actor),
    service: BookingService = Depends(get_booking_service),
):
    try:
        booking = service.accept_booking(
            booking_id=booking_id,
            actor=actor,
            expected_version=_expected_version(request),
        )
    except DispatchCoreError as exc:
        raise _to_http(exc) from exc

    return _response(booking)


@router.post("/bookings/{booking_id}/reject", response_model=BookingResponse)
def reject_booking(
    booking_id: str,
    request: Optional[ReasonedCommandRequest] = None,
    actor: Actor = Depends(get_current_actor),
    service: BookingService = Depends(get_booking_service),
):
    try:
        booking = service.reject_booking(
            booking_id=booking_id,
            actor=actor,
            reason=_reason(request),
            expected_version=_expected_version(request),
        )
    except DispatchCoreError as exc:
        raise _to_http(exc) from exc

    return _response(booking)


@router.post("/bookings/{booking_id}/reopen", response_model=BookingResponse)
def reopen_booking(
    booking_id: str,
    request: Optional[CommandRequest] = None,
    actor: Actor = Depends(require_admin),
    service: BookingService = Depends(get_booking_service),
):
    try:
        booking = service.reopen_booking(
            booking_id=booking_id,
            actor=actor,
            expected_version=_expected_version(request),
        )
    except DispatchCoreError as exc:
        raise _to_http(exc) from exc

    return _response(booking)


@router.post("/bookings/{booking_id}/start", response_model=BookingResponse)
def start_service(
    booking_id: str,
    request: Optional[CommandRequest] = None,
    actor: Actor = Depends(get_current_actor),
    service: BookingService = Depends(get_booking_service),
):
    try:
        booking = service.start_service(
            booking_id=booking_id,
            actor=actor,
            expected_version=_expected_version(request),
        )
    except DispatchCoreError as exc:
        raise _to_http(exc) from exc

    return _response(booking)


@router.post("/bookings/{booking_id}/complete", response_model=BookingResponse)
def complete_service(
    booking_id: str,
    request: Optional[CommandRequest] = None,
    actor: Actor = Depends(get_current_actor),
    service: BookingService = Depends(get_booking_service),
):
    try:
        booking = service.complete_service(
            booking_id=booking_id,
            actor=actor,
            expected_version=_expected_version(request),
        )
    except DispatchCoreError as exc:
        raise _to_http(exc) from exc

    return _response(booking)


@router.post("/bookings/{booking_id}/cancel", response_model=BookingResponse)
def cancel_booking(
    booking_id: str,
    request: Optional[ReasonedCommandRequest] = None,
    actor: Actor = Depends(get_current_actor),
    service: BookingService = Depends(get_booking_service),
):
    try:
        booking = service.cancel_booking(
            booking_id=booking_id,
            actor=actor,
            reason=_reason(request),
            expected_version=_expected_version(request),
        )
    except DispatchCoreError as exc:
        raise _to_http(exc) from exc

    return _response(booking)


@router.post("/dispatch/expire", response_model=ExpireAssignmentsResponse)
def expire_unanswered_assignments(
    limit: int = 100,
    actor: Actor = Depends(require_admin),
    service: BookingService = Depends(get_booking_service),
):
    safe_limit = max(1, min(limit, 500))
    try:
        expired = service.expire_unanswered_assignments(limit=safe_limit)
    except DispatchCoreError as exc:
        raise _to_http(exc) from exc

    logger.info("Manual expiry sweep by admin_id=%s expired=%s", actor.id, len(expired))
    return ExpireAssignmentsResponse(
        expired=len(expired),
        bookings=[_response(booking) for booking in expired],
    )


# -----------------------------
# Queries
# -----------------------------
@router.get("/bookings/pool", response_model=list[BookingResponse])
def list_poolable(
    category: Optional[str] = None,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
    actor: Actor = Depends(get_current_actor),
    service: BookingService = Depends(get_booking_service),
):
    try:
        bookings = service.list_poolable(
            actor=actor,
            category=category,
            page=page,
            page_size=page_size,
        )
    except DispatchCoreError as exc:
        raise _to_http(exc) from exc

    return [_response(booking) for booking in bookings]


@router.get("/bookings/customer/{customer_id}", response_model=list[BookingResponse])
def list_by_customer(
    customer_id: str,
    status_filter: Optional[BookingStatus] = Query(default=None, alias="status"),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
    actor: Actor = Depends(get_current_actor),
    service: BookingService = Depends(get_booking_service),
):
    try:
        bookings = service.list_by_customer(
            actor=actor,
            customer_id=customer_id,
            status=status_filter,
            page=page,
            page_size=page_size,
        )
    except DispatchCoreError as exc:
        raise _to_http(exc) from exc

    return [_response(booking) for booking in bookings]


@router.get("/bookings/provider/{provider_id}", response_model=list[BookingResponse])
def list_by_provider(
    provider_id: str,
    status_filter: Optional[BookingStatus] = Query(default=None, alias="status"),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
    actor: Actor = Depends(get_current_actor),
    service: BookingService = Depends(get_booking_service),
):
    try:
        bookings = service.list_by_provider(
            actor=actor,
            provider_id=provider_id,
            status=status_filter,
            page=page,
            page_size=page_size,
        )
    except DispatchCoreError as exc:
        raise _to_http(exc) from exc

    return [_response(booking) for booking in bookings]


@router.get("/bookings/{booking_id}", response_model=BookingResponse)
def get_booking(
    booking_id: str,
    actor: Actor = Depends(get_current_actor),
    service: BookingService = Depends(get_booking_service),
):
    try:
        booking = service.get_booking(booking_id, actor)
    except DispatchCoreError as exc:
        raise _to_http(exc) from exc

    return _response(booking)


@router.get("/bookings/{booking_id}/settlement", response_model=SettlementResponse)
def get_settlement(
    booking_id: str,
    actor: Actor = Depends(get_current_actor),
    service: BookingService = Depends(get_booking_service),
):
    try:
        booking = service.get_settlement(booking_id, actor)
    except DispatchCoreError as exc:
        raise _to_http(exc) from exc

    return SettlementResponse(
        booking_id=booking.id,
        status=booking.status,
        total_amount=booking.total_amount,
        commission_rate=booking.commission_rate,
        commission_amount=booking.commission_amount,
        net_amount=booking.net_amount,
        completed_at=booking.completed_at,
        settled=booking.commission_amount is not None,
    )
