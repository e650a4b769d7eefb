# tests/integration/test_claim_race.py

import threading

from src.domain.exceptions import AlreadyClaimedError
from src.domain.state_machine import Actor, ActorRole, BookingStatus

from tests.factories import ADMIN, CUSTOMER, tomorrow

RACERS = 6


def test_concurrent_claims_have_exactly_one_winner(make_service, availability):
    service = make_service()
    booking = service.create_booking(
        actor=CUSTOMER,
        service_id="svc-clean",
        scheduled_time=tomorrow(),
        address="12 Harbour Rd",
    )

    providers = [f"racer-{index}" for index in range(RACERS)]
    for provider_id in providers:
        availability.set_provider(provider_id, ["cleaning"])

    # One session per racer, created up front on the main thread.
    racers = [
        (Actor(id=provider_id, role=ActorRole.PROVIDER), make_service())
        for provider_id in providers
    ]
    barrier = threading.Barrier(RACERS)
    results = {}
    lock = threading.Lock()

    def race(actor, racer_service):
        barrier.wait()
        try:
            claimed = racer_service.claim_booking(booking.id, actor, expected_version=0)
            outcome = ("won", claimed.provider_id)
        except AlreadyClaimedError:
            outcome = ("lost", None)
        except Exception as exc:
            outcome = ("error", repr(exc))
        with lock:
            results[actor.id] = outcome

    threads = [
        threading.Thread(target=race, args=(actor, racer_service))
        for actor, racer_service in racers
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)

    outcomes = list(results.values())
    winners = [provider_id for kind, provider_id in outcomes if kind == "won"]

    assert len(outcomes) == RACERS
    assert [kind for kind, _ in outcomes if kind == "error"] == []
    assert len(winners) == 1

    stored = make_service().get_booking(booking.id, ADMIN)
    assert stored.status == BookingStatus.ACCEPTED
    assert stored.provider_id == winners[0]
    assert stored.version == 1
