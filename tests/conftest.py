"""
Shared pytest fixtures.
Every test gets its own SQLite file so concurrent sessions behave like
separate processes hitting one store.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from fastapi.testclient import TestClient

from src.api.deps import (
    get_availability,
    get_catalog,
    get_event_broker,
    get_session_factory,
)
from src.application.booking_service import BookingService
from src.application.fanout import EventFanout
from src.infrastructure.db.models import Base
from src.infrastructure.db.session import create_db_engine, create_session_factory
from src.infrastructure.events.broker import EventBroker
from src.main import app

from tests.factories import FakeAvailability, FakeCatalog


@pytest.fixture
def engine(tmp_path):
    engine = create_db_engine(f"sqlite:///{tmp_path / 'dispatch.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def catalog():
    catalog = FakeCatalog()
    catalog.add_service("svc-clean", "500", "cleaning", commission_rate="10")
    catalog.add_service("svc-pipe", "120.50", "plumbing")
    return catalog


@pytest.fixture
def availability():
    availability = FakeAvailability()
    availability.set_provider("prov-a", ["cleaning"])
    availability.set_provider("prov-b", ["cleaning"])
    availability.set_provider("prov-c", ["cleaning", "plumbing"])
    availability.set_provider("prov-p", ["plumbing"])
    return availability


@pytest.fixture
def broker():
    return EventBroker(max_queue_size=10)


@pytest.fixture
def make_service(session_factory, catalog, availability, broker):
    sessions = []

    def _make(**kwargs):
        session = session_factory()
        sessions.append(session)
        return BookingService(
            db=session,
            catalog=catalog,
            availability=availability,
            fanout=EventFanout(broker),
            **kwargs,
        )

    yield _make

    for session in sessions:
        session.close()


@pytest.fixture
def service(make_service):
    return make_service()


@pytest.fixture
def client(session_factory, catalog, availability, broker):
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_catalog] = lambda: catalog
    app.dependency_overrides[get_availability] = lambda: availability
    app.dependency_overrides[get_event_broker] = lambda: broker

    yield TestClient(app)

    app.dependency_overrides.clear()
