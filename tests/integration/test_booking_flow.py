from decimal import Decimal

import pytest
from starlette.websockets import WebSocketDisconnect

from tests.factories import (
    ADMIN,
    CUSTOMER,
    OTHER_CUSTOMER,
    PLUMBER,
    PROVIDER_A,
    PROVIDER_B,
    actor_headers,
    tomorrow,
)


def _create(client, actor=CUSTOMER, **overrides):
    payload = {
        "service_id": "svc-clean",
        "scheduled_time": tomorrow().isoformat(),
        "address": "12 Harbour Rd",
    }
    payload.update(overrides)
    return client.post("/bookings", json=payload, headers=actor_headers(actor))


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200


def test_booking_flow(client):
    response = _create(client, preferred_provider_id="prov-a")

    assert response.status_code == 201
    booking_id = response.json()["id"]
    assert response.json()["status"] == "pending"
    assert response.json()["dispatch_mode"] == "targeted"

    accept_response = client.post(
        f"/bookings/{booking_id}/accept",
        json={"expected_version": 0},
        headers=actor_headers(PROVIDER_A),
    )
    assert accept_response.status_code == 200
    assert accept_response.json()["status"] == "accepted"

    start_response = client.post(
        f"/bookings/{booking_id}/start",
        headers=actor_headers(PROVIDER_A),
    )
    assert start_response.status_code == 200
    assert start_response.json()["status"] == "in_progress"

    complete_response = client.post(
        f"/bookings/{booking_id}/complete",
        headers=actor_headers(PROVIDER_A),
    )
    assert complete_response.status_code == 200
    body = complete_response.json()
    assert body["status"] == "completed"
    assert Decimal(body["commission_amount"]) == Decimal("50")
    assert Decimal(body["net_amount"]) == Decimal("450")

    settlement = client.get(
        f"/bookings/{booking_id}/settlement",
        headers=actor_headers(CUSTOMER),
    )
    assert settlement.status_code == 200
    assert settlement.json()["settled"] is True
    assert Decimal(settlement.json()["total_amount"]) == Decimal("500")

    again = client.post(
        f"/bookings/{booking_id}/complete",
        headers=actor_headers(PROVIDER_A),
    )
    assert again.status_code == 409
    assert again.json()["detail"]["code"] == "SETTLEMENT_ALREADY_APPLIED"


def test_pool_claim_flow(client):
    booking_id = _create(client).json()["id"]

    pool = client.get("/bookings/pool", headers=actor_headers(PROVIDER_A))
    assert pool.status_code == 200
    assert [item["id"] for item in pool.json()] == [booking_id]

    claim = client.post(
        f"/bookings/{booking_id}/claim",
        headers=actor_headers(PROVIDER_A),
    )
    assert claim.status_code == 200
    assert claim.json()["outcome"] == "won"
    assert claim.json()["booking"]["provider_id"] == "prov-a"

    lost = client.post(
        f"/bookings/{booking_id}/claim",
        headers=actor_headers(PROVIDER_B),
    )
    assert lost.status_code == 409
    assert lost.json()["detail"]["code"] == "ALREADY_CLAIMED"
    assert lost.json()["detail"]["message"] == "Booking is no longer available"

    pool = client.get("/bookings/pool", headers=actor_headers(PROVIDER_B))
    assert pool.json() == []


def test_error_mapping(client):
    booking_id = _create(client, preferred_provider_id="prov-a").json()["id"]

    missing = client.post("/bookings/nope/accept", headers=actor_headers(PROVIDER_A))
    assert missing.status_code == 404
    assert missing.json()["detail"]["code"] == "NOT_FOUND"

    unknown_service = _create(client, service_id="svc-missing")
    assert unknown_service.status_code == 404

    forbidden = client.post(
        f"/bookings/{booking_id}/accept",
        headers=actor_headers(PROVIDER_B),
    )
    assert forbidden.status_code == 403
    assert forbidden.json()["detail"]["code"] == "UNAUTHORIZED"

    stale = client.post(
        f"/bookings/{booking_id}/accept",
        json={"expected_version": 3},
        headers=actor_headers(PROVIDER_A),
    )
    assert stale.status_code == 409
    assert stale.json()["detail"]["code"] == "VERSION_CONFLICT"

    illegal = client.post(
        f"/bookings/{booking_id}/start",
        headers=actor_headers(PROVIDER_A),
    )
    assert illegal.status_code == 409
    assert illegal.json()["detail"]["code"] == "INVALID_TRANSITION"


def test_identity_headers_are_required(client):
    assert client.post("/bookings", json={}).status_code in (401, 422)

    response = client.get(
        "/bookings/pool",
        headers={"X-Actor-Id": "robot", "X-Actor-Role": "system"},
    )
    assert response.status_code == 403

    response = client.get(
        "/bookings/pool",
        headers={"X-Actor-Id": "robot", "X-Actor-Role": "wizard"},
    )
    assert response.status_code == 401


def test_admin_only_operations(client):
    booking_id = _create(client, preferred_provider_id="prov-a").json()["id"]

    denied = client.post("/dispatch/expire", headers=actor_headers(CUSTOMER))
    assert denied.status_code == 403

    sweep = client.post("/dispatch/expire", headers=actor_headers(ADMIN))
    assert sweep.status_code == 200
    assert sweep.json()["expired"] == 0

    denied = client.post(f"/bookings/{booking_id}/reopen", headers=actor_headers(PROVIDER_A))
    assert denied.status_code == 403


def test_reject_and_cancel(client):
    booking_id = _create(client, preferred_provider_id="prov-a").json()["id"]

    rejected = client.post(
        f"/bookings/{booking_id}/reject",
        json={"reason": "Fully booked"},
        headers=actor_headers(PROVIDER_A),
    )
    assert rejected.status_code == 200
    assert rejected.json()["status"] == "pending"
    assert rejected.json()["provider_id"] is None
    assert rejected.json()["declined_provider_ids"] == ["prov-a"]

    denied = client.post(
        f"/bookings/{booking_id}/cancel",
        headers=actor_headers(OTHER_CUSTOMER),
    )
    assert denied.status_code == 403

    cancelled = client.post(
        f"/bookings/{booking_id}/cancel",
        json={"reason": "Found someone else"},
        headers=actor_headers(CUSTOMER),
    )
    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "cancelled"
    assert cancelled.json()["cancelled_by"] == "cust-1"


def test_listing_endpoints(client):
    first = _create(client, preferred_provider_id="prov-a").json()["id"]
    _create(client)

    mine = client.get("/bookings/customer/cust-1", headers=actor_headers(CUSTOMER))
    assert mine.status_code == 200
    assert len(mine.json()) == 2

    pending = client.get(
        "/bookings/customer/cust-1",
        params={"status": "pending", "page_size": 1},
        headers=actor_headers(CUSTOMER),
    )
    assert len(pending.json()) == 1

    other = client.get("/bookings/customer/cust-1", headers=actor_headers(OTHER_CUSTOMER))
    assert other.status_code == 403

    assigned = client.get("/bookings/provider/prov-a", headers=actor_headers(PROVIDER_A))
    assert [item["id"] for item in assigned.json()] == [first]


# ---------------------
# REAL-TIME
# ---------------------

def test_booking_room_streams_transitions(client):
    booking_id = _create(client, preferred_provider_id="prov-a").json()["id"]

    with client.websocket_connect(
        f"/ws/bookings/{booking_id}",
        headers=actor_headers(CUSTOMER),
    ) as websocket:
        ack = websocket.receive_json()
        assert ack == {"type": "subscribed", "channel": f"booking:{booking_id}"}

        client.post(f"/bookings/{booking_id}/accept", headers=actor_headers(PROVIDER_A))

        message = websocket.receive_json()
        assert message["type"] == "event"
        assert message["event_type"] == "booking.status_updated"
        assert message["from_status"] == "pending"
        assert message["to_status"] == "accepted"
        assert message["booking"]["version"] == 1


def test_pool_room_sees_new_and_claimed_bookings(client):
    with client.websocket_connect(
        "/ws/pool?category=cleaning",
        headers=actor_headers(PROVIDER_B),
    ) as websocket:
        assert websocket.receive_json()["channel"] == "pool"

        # Other categories are filtered out of this room.
        _create(client, service_id="svc-pipe")
        booking_id = _create(client).json()["id"]

        available = websocket.receive_json()
        assert available["event_type"] == "booking.available"
        assert available["booking_id"] == booking_id

        client.post(f"/bookings/{booking_id}/claim", headers=actor_headers(PROVIDER_A))

        claimed = websocket.receive_json()
        assert claimed["event_type"] == "booking.claimed"
        assert claimed["booking"]["provider_id"] == "prov-a"


def test_provider_room_receives_assignment(client):
    with client.websocket_connect(
        "/ws/providers/prov-a",
        headers=actor_headers(PROVIDER_A),
    ) as websocket:
        websocket.receive_json()

        booking_id = _create(client, preferred_provider_id="prov-a").json()["id"]

        message = websocket.receive_json()
        assert message["event_type"] == "booking.assigned"
        assert message["booking_id"] == booking_id


def test_unauthorized_subscriptions_are_refused(client):
    booking_id = _create(client).json()["id"]

    with pytest.raises(WebSocketDisconnect) as exc_info:
        with client.websocket_connect(
            f"/ws/bookings/{booking_id}",
            headers=actor_headers(OTHER_CUSTOMER),
        ):
            pass
    assert exc_info.value.code == 1008

    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect(
            "/ws/providers/prov-a",
            headers=actor_headers(PROVIDER_B),
        ):
            pass

    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect(
            "/ws/pool?category=cleaning",
            headers=actor_headers(PLUMBER),
        ):
            pass

    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/ws/pool"):
            pass


def test_invalid_collaborator_rate_does_not_break_completion(client, catalog):
    catalog.provider_rates["prov-a"] = Decimal("150")
    booking_id = _create(client, preferred_provider_id="prov-a").json()["id"]
    client.post(f"/bookings/{booking_id}/accept", headers=actor_headers(PROVIDER_A))
    client.post(f"/bookings/{booking_id}/start", headers=actor_headers(PROVIDER_A))

    response = client.post(
        f"/bookings/{booking_id}/complete",
        headers=actor_headers(PROVIDER_A),
    )

    assert response.status_code == 200
    assert Decimal(response.json()["commission_rate"]) == Decimal("10")
    assert Decimal(response.json()["net_amount"]) == Decimal("450")

    override = _create(
        client,
        actor=ADMIN,
        customer_id="cust-1",
        commission_rate_override="150",
    )
    assert override.status_code == 422
