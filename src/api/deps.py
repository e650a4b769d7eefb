from urllib.parse import unquote

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.orm import Session, sessionmaker

from src import config
from src.application.booking_service import BookingService
from src.application.fanout import EventFanout
from src.application.ports import AvailabilityGateway, CatalogGateway
from src.domain.state_machine import Actor, ActorRole
from src.infrastructure.db.session import SessionLocal
from src.infrastructure.events.broker import EventBroker
from src.infrastructure.gateways.catalog_client import AvailabilityClient, CatalogClient


def get_session_factory() -> sessionmaker:
    return SessionLocal


def get_db(factory: sessionmaker = Depends(get_session_factory)):
    db = factory()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


# ---------------------------------------------------------------------------
# Identity: trusted headers injected by the gateway after authentication
# ---------------------------------------------------------------------------


def resolve_actor(
    actor_id: str | None,
    actor_role: str | None,
    actor_category: str | None = None,
) -> Actor:
    if not actor_id or not actor_role:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing actor identity from gateway",
        )
    try:
        role = ActorRole(actor_role.lower())
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Unknown actor role: {actor_role}",
        ) from None

    # The system role is reserved for in-process timers.
    if role == ActorRole.SYSTEM:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="System role cannot be asserted over HTTP",
        )

    return Actor(
        id=unquote(actor_id),
        role=role,
        category=actor_category or None,
    )


def get_current_actor(
    x_actor_id: str | None = Header(default=None),
    x_actor_role: str | None = Header(default=None),
    x_actor_category: str | None = Header(default=None),
) -> Actor:
    """
    Reads the identity headers set by the gateway.
    The token has already been verified upstream; these headers are trusted.
    """
    return resolve_actor(x_actor_id, x_actor_role, x_actor_category)


def require_admin(actor: Actor = Depends(get_current_actor)) -> Actor:
    if actor.role != ActorRole.ADMIN:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Administrator role required",
        )
    return actor


# ---------------------------------------------------------------------------
# Collaborators and fan-out
# ---------------------------------------------------------------------------

_catalog_client = CatalogClient()
_availability_client = AvailabilityClient()
_event_broker = EventBroker(max_queue_size=config.EVENT_QUEUE_MAX_SIZE)


def get_catalog() -> CatalogGateway:
    return _catalog_client


def get_availability() -> AvailabilityGateway:
    return _availability_client


def get_event_broker() -> EventBroker:
    return _event_broker


def get_booking_service(
    db: Session = Depends(get_db),
    catalog: CatalogGateway = Depends(get_catalog),
    availability: AvailabilityGateway = Depends(get_availability),
    broker: EventBroker = Depends(get_event_broker),
) -> BookingService:
    return BookingService(
        db=db,
        catalog=catalog,
        availability=availability,
        fanout=EventFanout(broker),
    )
