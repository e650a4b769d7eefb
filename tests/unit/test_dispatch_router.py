# tests/unit/test_dispatch_router.py

from src.application.dispatch_router import DispatchRouter, RejectionPolicy
from src.infrastructure.db.models import DispatchMode

from tests.factories import FakeAvailability


def _availability():
    availability = FakeAvailability()
    availability.set_provider("prov-a", ["cleaning"])
    availability.set_provider("prov-b", ["cleaning"])
    availability.set_provider("prov-c", ["cleaning", "plumbing"])
    return availability


def test_preferred_provider_gets_targeted_booking():
    plan = DispatchRouter(_availability()).route_new_booking("prov-a")

    assert plan.is_targeted
    assert plan.mode == DispatchMode.TARGETED
    assert plan.provider_id == "prov-a"


def test_no_preference_goes_to_pool():
    plan = DispatchRouter(_availability()).route_new_booking(None)

    assert not plan.is_targeted
    assert plan.mode == DispatchMode.POOLED
    assert plan.provider_id is None


def test_pool_eligibility_follows_category_and_availability():
    availability = _availability()
    router = DispatchRouter(availability)

    assert router.is_pool_eligible("prov-a", "cleaning")
    assert not router.is_pool_eligible("prov-a", "plumbing")
    assert not router.is_pool_eligible("unknown", "cleaning")

    availability.set_available("prov-a", False)
    assert not router.is_pool_eligible("prov-a", "cleaning")


def test_reopen_pool_policy_sends_rejections_to_pool():
    router = DispatchRouter(_availability(), RejectionPolicy.REOPEN_POOL)

    plan = router.plan_after_rejection("cleaning", ["prov-a"])

    assert plan.mode == DispatchMode.POOLED
    assert plan.provider_id is None


def test_terminal_policy_ends_the_booking():
    router = DispatchRouter(_availability(), RejectionPolicy.TERMINAL)

    assert router.plan_after_rejection("cleaning", ["prov-a"]) is None


def test_next_candidate_skips_declined_providers():
    router = DispatchRouter(_availability(), RejectionPolicy.NEXT_CANDIDATE)

    plan = router.plan_after_rejection("cleaning", ["prov-a"])
    assert plan.is_targeted
    assert plan.provider_id == "prov-b"

    plan = router.plan_after_rejection("cleaning", ["prov-a", "prov-b"])
    assert plan.provider_id == "prov-c"


def test_next_candidate_falls_back_to_pool_when_exhausted():
    router = DispatchRouter(_availability(), "next_candidate")

    plan = router.plan_after_rejection("cleaning", ["prov-a", "prov-b", "prov-c"])

    assert plan.mode == DispatchMode.POOLED


def test_next_candidate_ignores_unavailable_providers():
    availability = _availability()
    availability.set_available("prov-b", False)
    router = DispatchRouter(availability, RejectionPolicy.NEXT_CANDIDATE)

    assert router.next_candidate("cleaning", ["prov-a"]) == "prov-c"
