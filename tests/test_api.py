"""
Integration tests for the REST API endpoints.

The ``client`` fixture injects a ``TripEngine`` bound to a per-test SQLite
file, a fake clock and a recording event sink, so routes run end-to-end
without PostgreSQL or Redis.
"""

from decimal import Decimal

import pytest
from httpx import AsyncClient

from tests.conftest import wait_for

RIDER = {"X-User-Id": "rider-1"}
DRIVER = {"X-User-Id": "drv-1", "X-User-Role": "fulfiller"}
OPS = {"X-User-Id": "ops-1", "X-User-Role": "operator"}

RIDE_BODY = {
    "request_type": "ride",
    "vehicle_class": "motorcycle",
    "payment_method": "cash",
    "origin": {"address": "SM Megamall", "latitude": 14.5849, "longitude": 121.0563},
    "destination": {"address": "BGC High Street", "latitude": 14.5509, "longitude": 121.0503},
    "distance_meters": 2500,
    "duration_seconds": 600,
    "surge_multiplier": 1.0,
}

PROMO_BODY = {
    "code": "TENOFF",
    "discount_type": "percentage",
    "value": "10",
    "scope": "all",
    "valid_from": "2026-01-01T00:00:00Z",
    "valid_until": "2026-12-31T00:00:00Z",
}


async def _create(client: AsyncClient, **overrides) -> dict:
    resp = await client.post("/api/v1/requests", json={**RIDE_BODY, **overrides}, headers=RIDER)
    assert resp.status_code == 201, resp.text
    return resp.json()


async def _pending_offer(client: AsyncClient, request_id: int) -> dict:
    async def _find():
        resp = await client.get(f"/api/v1/requests/{request_id}/offers", headers=RIDER)
        return next((o for o in resp.json() if o["outcome"] == "pending"), None)

    return await wait_for(_find)


# ── Tests ─────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_health(client: AsyncClient):
    await _create(client)
    resp = await client.get("/api/v1/admin/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "ok"
    assert data["requests_by_status"]["created"] == 1


@pytest.mark.asyncio
async def test_create_request_returns_201(client: AsyncClient):
    data = await _create(client)
    assert data["id"] is not None
    assert data["status"] == "created"
    assert data["requester_id"] == "rider-1"
    assert Decimal(data["fare"]["total"]) == Decimal("70")
    assert data["fare"]["display_total"] == "₱70"


@pytest.mark.asyncio
async def test_create_requires_principal(client: AsyncClient):
    resp = await client.post("/api/v1/requests", json=RIDE_BODY)
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_create_rejects_bad_body(client: AsyncClient):
    resp = await client.post(
        "/api/v1/requests", json={**RIDE_BODY, "request_type": "boat"}, headers=RIDER
    )
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_create_ride_without_pickup(client: AsyncClient):
    resp = await client.post(
        "/api/v1/requests", json={**RIDE_BODY, "origin": None}, headers=RIDER
    )
    assert resp.status_code == 422
    assert resp.json()["code"] == "validation_error"


@pytest.mark.asyncio
async def test_idempotency_key(client: AsyncClient):
    first = await _create(client, idempotency_key="unique-key-123")
    second = await _create(client, idempotency_key="unique-key-123")
    assert first["id"] == second["id"]


@pytest.mark.asyncio
async def test_get_request(client: AsyncClient):
    created = await _create(client)
    resp = await client.get(f"/api/v1/requests/{created['id']}", headers=RIDER)
    assert resp.status_code == 200
    assert resp.json()["id"] == created["id"]


@pytest.mark.asyncio
async def test_get_request_not_found(client: AsyncClient):
    resp = await client.get("/api/v1/requests/9999", headers=RIDER)
    assert resp.status_code == 404
    assert resp.json()["code"] == "not_found"


@pytest.mark.asyncio
async def test_list_defaults_to_caller(client: AsyncClient):
    mine = await _create(client)
    await client.post(
        "/api/v1/requests", json=RIDE_BODY, headers={"X-User-Id": "rider-2"}
    )
    resp = await client.get("/api/v1/requests", headers=RIDER)
    assert resp.status_code == 200
    assert [r["id"] for r in resp.json()] == [mine["id"]]


@pytest.mark.asyncio
async def test_unknown_promo_returns_kind(client: AsyncClient):
    created = await _create(client)
    resp = await client.post(
        f"/api/v1/requests/{created['id']}/promo", json={"code": "NOPE"}, headers=RIDER
    )
    assert resp.status_code == 422
    body = resp.json()
    assert body["code"] == "promo_error"
    assert body["kind"] == "NotFound"


@pytest.mark.asyncio
async def test_apply_and_remove_promo(client: AsyncClient):
    assert (await client.post("/api/v1/promos", json=PROMO_BODY, headers=OPS)).status_code == 201
    created = await _create(client)
    url = f"/api/v1/requests/{created['id']}/promo"

    applied = await client.post(url, json={"code": "tenoff"}, headers=RIDER)
    assert applied.status_code == 200
    assert applied.json()["promo_code"] == "TENOFF"
    assert Decimal(applied.json()["fare"]["total"]) == Decimal("63")

    removed = await client.delete(url, headers=RIDER)
    assert removed.json()["promo_code"] is None
    assert Decimal(removed.json()["fare"]["total"]) == Decimal("70")


@pytest.mark.asyncio
async def test_promo_admin_is_operator_only(client: AsyncClient):
    resp = await client.post("/api/v1/promos", json=PROMO_BODY, headers=RIDER)
    assert resp.status_code == 403

    resp = await client.post("/api/v1/promos", json=PROMO_BODY, headers=OPS)
    assert resp.status_code == 201
    assert resp.json()["usage_count"] == 0

    resp = await client.get("/api/v1/promos/tenoff")
    assert resp.status_code == 200
    assert resp.json()["code"] == "TENOFF"

    resp = await client.post("/api/v1/promos", json=PROMO_BODY, headers=OPS)
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_quote_does_not_store(client: AsyncClient):
    resp = await client.post("/api/v1/quotes", json=RIDE_BODY, headers=RIDER)
    assert resp.status_code == 200
    assert Decimal(resp.json()["total"]) == Decimal("70")
    listed = await client.get("/api/v1/requests", headers=RIDER)
    assert listed.json() == []


@pytest.mark.asyncio
async def test_cancel_twice_conflicts(client: AsyncClient):
    created = await _create(client)
    url = f"/api/v1/requests/{created['id']}/cancel"
    first = await client.post(url, json={"reason": "changed plans"}, headers=RIDER)
    assert first.status_code == 200
    assert first.json()["status"] == "cancelled"
    assert first.json()["cancellation_reason"] == "changed plans"

    second = await client.post(url, headers=RIDER)
    assert second.status_code == 409
    assert second.json()["code"] == "invalid_transition"


@pytest.mark.asyncio
async def test_assigned_is_not_settable(client: AsyncClient):
    created = await _create(client)
    await client.post(f"/api/v1/requests/{created['id']}/confirm", headers=RIDER)
    resp = await client.post(
        f"/api/v1/requests/{created['id']}/status", json={"status": "assigned"}, headers=OPS
    )
    assert resp.status_code == 409


@pytest.mark.asyncio
async def test_dispatch_flow(client: AsyncClient):
    created = await _create(client)
    request_id = created["id"]

    confirmed = await client.post(f"/api/v1/requests/{request_id}/confirm", headers=RIDER)
    assert confirmed.status_code == 200
    assert confirmed.json()["status"] == "confirmed"

    offer = await _pending_offer(client, request_id)
    assert offer["candidate_id"] == "drv-1"

    reply = await client.post(
        f"/api/v1/offers/{offer['id']}/respond", json={"accept": True}, headers=DRIVER
    )
    assert reply.status_code == 200
    assert reply.json()["offer"]["outcome"] == "accepted"
    assert reply.json()["request"]["status"] == "assigned"
    assert reply.json()["request"]["fulfiller_id"] == "drv-1"

    started = await client.post(
        f"/api/v1/requests/{request_id}/status", json={"status": "in_progress"}, headers=DRIVER
    )
    assert started.status_code == 200
    assert started.json()["started_at"] is not None

    events = await client.get(f"/api/v1/requests/{request_id}/events", headers=RIDER)
    kinds = [e["kind"] for e in events.json()]
    assert kinds.count("request.transition") == 4
    assert "offer.created" in kinds


@pytest.mark.asyncio
async def test_late_accept_returns_410(client: AsyncClient, clock):
    created = await _create(client)
    await client.post(f"/api/v1/requests/{created['id']}/confirm", headers=RIDER)
    offer = await _pending_offer(client, created["id"])

    clock.advance(31)
    reply = await client.post(
        f"/api/v1/offers/{offer['id']}/respond", json={"accept": True}, headers=DRIVER
    )
    assert reply.status_code == 410
    assert reply.json()["code"] == "offer_expired"

    current = await client.get(f"/api/v1/requests/{created['id']}", headers=RIDER)
    assert current.json()["status"] == "confirmed"


@pytest.mark.asyncio
async def test_respond_as_wrong_candidate(client: AsyncClient):
    created = await _create(client)
    await client.post(f"/api/v1/requests/{created['id']}/confirm", headers=RIDER)
    offer = await _pending_offer(client, created["id"])
    reply = await client.post(
        f"/api/v1/offers/{offer['id']}/respond",
        json={"accept": True},
        headers={"X-User-Id": "drv-2", "X-User-Role": "fulfiller"},
    )
    assert reply.status_code == 404


@pytest.mark.asyncio
async def test_manual_dispatch_cycle(client: AsyncClient):
    resp = await client.post("/api/v1/admin/dispatch", headers=RIDER)
    assert resp.status_code == 403
    resp = await client.post("/api/v1/admin/dispatch", headers=OPS)
    assert resp.status_code == 200
    assert resp.json() == {"dispatch_started": 0, "events_republished": 0}


@pytest.mark.asyncio
async def test_reads_are_limited_to_parties(client: AsyncClient):
    created = await _create(client)
    request_id = created["id"]
    await client.post(f"/api/v1/requests/{request_id}/confirm", headers=RIDER)
    offer = await _pending_offer(client, request_id)

    stranger = {"X-User-Id": "rider-2"}
    for path in ("", "/offers", "/events"):
        url = f"/api/v1/requests/{request_id}{path}"
        assert (await client.get(url)).status_code == 401
        assert (await client.get(url, headers=stranger)).status_code == 404
        assert (await client.get(url, headers=OPS)).status_code == 200

    offer_url = f"/api/v1/offers/{offer['id']}"
    assert (await client.get(offer_url, headers=DRIVER)).status_code == 200
    assert (await client.get(offer_url, headers=RIDER)).status_code == 200
    assert (await client.get(offer_url, headers=stranger)).status_code == 404
    other_driver = {"X-User-Id": "drv-2", "X-User-Role": "fulfiller"}
    assert (await client.get(offer_url, headers=other_driver)).status_code == 404
