import asyncio
import contextlib
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, WebSocket, WebSocketDisconnect, status
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import sessionmaker

from src.api.deps import (
    get_availability,
    get_catalog,
    get_event_broker,
    get_session_factory,
    resolve_actor,
)
from src.application.booking_service import BookingService
from src.application.dispatch_router import DispatchRouter
from src.application.ports import AvailabilityGateway, CatalogGateway
from src.domain.events import POOL_CHANNEL, TransitionEvent, booking_channel, provider_channel
from src.domain.exceptions import DispatchCoreError
from src.domain.state_machine import Actor, ActorRole, BookingStateMachine
from src.infrastructure.events.broker import EventBroker, EventFilter

router = APIRouter()
logger = logging.getLogger(__name__)

POLICY_VIOLATION = status.WS_1008_POLICY_VIOLATION


def _websocket_actor(websocket: WebSocket) -> Optional[Actor]:
    try:
        return resolve_actor(
            websocket.headers.get("x-actor-id"),
            websocket.headers.get("x-actor-role"),
            websocket.headers.get("x-actor-category"),
        )
    except HTTPException:
        return None


def booking_room_filter(actor: Actor) -> EventFilter:
    """
    Access to a booking room is re-checked on every event, so a provider
    who joined while the booking was pooled stops hearing about it once
    someone else holds it.
    """

    def _visible(event: TransitionEvent) -> bool:
        return BookingStateMachine.can_view(
            actor,
            event.booking.get("customer_id"),
            event.booking.get("provider_id"),
            event.to_status,
        )

    return _visible


async def _stream(
    websocket: WebSocket,
    broker: EventBroker,
    channel: str,
    event_filter: Optional[EventFilter] = None,
) -> None:
    """
    Relays channel events until the client disconnects.
    The `subscribed` ack tells the client it can reconcile over REST.
    """
    await websocket.accept()
    subscription = broker.subscribe(channel, event_filter)
    await websocket.send_json({"type": "subscribed", "channel": channel})

    async def _pump() -> None:
        async for event in subscription:
            await websocket.send_json({"type": "event", **event.to_message()})

    pump = asyncio.create_task(_pump())
    try:
        while True:
            # Client frames are ignored; receiving is how disconnects surface.
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.debug("Subscriber left channel=%s", channel)
    finally:
        subscription.close()
        pump.cancel()
        with contextlib.suppress(asyncio.CancelledError, Exception):
            await pump


async def _deny(websocket: WebSocket, reason: str) -> None:
    logger.info("Subscription denied: %s", reason)
    await websocket.close(code=POLICY_VIOLATION, reason=reason)


@router.websocket("/ws/bookings/{booking_id}")
async def booking_room(
    websocket: WebSocket,
    booking_id: str,
    factory: sessionmaker = Depends(get_session_factory),
    catalog: CatalogGateway = Depends(get_catalog),
    availability: AvailabilityGateway = Depends(get_availability),
    broker: EventBroker = Depends(get_event_broker),
):
    actor = _websocket_actor(websocket)
    if actor is None:
        await _deny(websocket, "Missing actor identity")
        return

    def _authorize() -> None:
        with factory() as db:
            BookingService(db, catalog, availability).get_booking(booking_id, actor)

    try:
        await run_in_threadpool(_authorize)
    except DispatchCoreError as exc:
        await _deny(websocket, str(exc))
        return

    await _stream(
        websocket,
        broker,
        booking_channel(booking_id),
        booking_room_filter(actor),
    )


@router.websocket("/ws/providers/{provider_id}")
async def provider_room(
    websocket: WebSocket,
    provider_id: str,
    broker: EventBroker = Depends(get_event_broker),
):
    actor = _websocket_actor(websocket)
    if actor is None:
        await _deny(websocket, "Missing actor identity")
        return

    is_owner = actor.role == ActorRole.PROVIDER and actor.id == provider_id
    if not (is_owner or actor.role == ActorRole.ADMIN):
        await _deny(websocket, "Not authorized for this provider channel")
        return

    await _stream(websocket, broker, provider_channel(provider_id))


@router.websocket("/ws/pool")
async def pool_room(
    websocket: WebSocket,
    category: Optional[str] = None,
    availability: AvailabilityGateway = Depends(get_availability),
    broker: EventBroker = Depends(get_event_broker),
):
    actor = _websocket_actor(websocket)
    if actor is None:
        await _deny(websocket, "Missing actor identity")
        return

    category = category or actor.category
    if actor.role == ActorRole.PROVIDER:
        if not category:
            await _deny(websocket, "A service category is required")
            return
        router_ = DispatchRouter(availability)
        try:
            eligible = await run_in_threadpool(
                router_.is_pool_eligible, actor.id, category
            )
        except DispatchCoreError as exc:
            await _deny(websocket, str(exc))
            return
        if not eligible:
            await _deny(websocket, "Provider is not available for this category")
            return
    elif actor.role != ActorRole.ADMIN:
        await _deny(websocket, "Only providers can join the pool")
        return

    event_filter = None
    if category:
        event_filter = lambda event: event.service_category == category  # noqa: E731

    await _stream(websocket, broker, POOL_CHANNEL, event_filter)
