"""
Integration tests for the REST API endpoints.

Runs the real routes against a throw-away SQLite database.  The payment
processor, Redis and the clock are replaced through dependency overrides,
and ``app.state.sessions`` holds a search registry whose dispatch backend
and status feed are in-process fakes.  The lifespan (Redis, reconciliation
worker) is never entered.
"""

from __future__ import annotations

import functools
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from ridehold.api.app import create_app
from ridehold.api.dependencies import get_clock, get_db, get_processor, get_redis_client
from ridehold.api.middleware import limiter
from ridehold.domain.search import SearchPolicy
from ridehold.services.sessions import SearchSessionRegistry
from ridehold.workers import reconciler

from conftest import DESTINATION, DRIVER_ID, PICKUP, RIDER_ID, FakeFeed


@pytest.fixture
def dispatch():
    mock = AsyncMock()
    mock.fetch_status = AsyncMock(return_value=None)
    return mock


@pytest.fixture
def payments():
    return AsyncMock()


@pytest.fixture
def redis():
    return AsyncMock()


@pytest_asyncio.fixture
async def registry(dispatch, payments):
    sessions = SearchSessionRegistry(
        dispatch, payments, FakeFeed(), policy=SearchPolicy(timeout_seconds=3600)
    )
    yield sessions
    await sessions.close_all()


@pytest_asyncio.fixture
async def client(session_factory, processor, redis, clock, registry):
    """AsyncClient backed by SQLite and fake collaborators."""

    async def _test_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app = create_app()
    app.state.sessions = registry
    app.dependency_overrides[get_db] = _test_db
    app.dependency_overrides[get_processor] = lambda: processor
    app.dependency_overrides[get_redis_client] = lambda: redis
    app.dependency_overrides[get_clock] = lambda: clock
    limiter.reset()

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


TRIP_BODY = {
    "rider_id": RIDER_ID,
    "pickup": PICKUP,
    "destination": DESTINATION,
    "estimated_amount": 25.0,
}


async def _create_trip(client: AsyncClient, **overrides) -> dict:
    resp = await client.post("/api/v1/trips", json={**TRIP_BODY, **overrides})
    assert resp.status_code == 202
    return resp.json()


async def _completed_trip(client: AsyncClient) -> dict:
    trip = await _create_trip(client)
    path = f"/api/v1/trips/{trip['id']}"
    await client.patch(f"{path}/status", json={"status": "ACCEPTED", "driver_id": DRIVER_ID})
    await client.patch(f"{path}/status", json={"status": "IN_PROGRESS"})
    resp = await client.post(f"{path}/settle", json={})
    assert resp.status_code == 200
    return resp.json()


async def _file_dispute(client: AsyncClient, trip_id: int):
    return await client.post(
        "/api/v1/disputes",
        json={
            "trip_id": trip_id,
            "rider_id": RIDER_ID,
            "reason": "overcharge",
            "description": "Charged for a detour",
            "evidence": [
                {"type": "route_deviation", "timestamp": "2026-10-17T11:30:00Z"}
            ],
        },
    )


# ── Health ────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_health(client: AsyncClient):
    resp = await client.get("/api/v1/admin/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


# ── Trips ─────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_create_trip_authorizes_and_starts_search(
    client: AsyncClient, processor, redis, registry, dispatch
):
    data = await _create_trip(client)
    assert data["status"] == "SEARCHING"
    assert data["payment_status"] == "AUTHORIZED"
    assert data["payment_ref"] == "pi_test_1"
    assert processor.count("authorize") == 1
    redis.publish.assert_awaited_once()

    await registry.get(data["id"]).flush()
    dispatch.resend_match_request.assert_awaited_once_with(data["id"], False)

    resp = await client.get(f"/api/v1/trips/{data['id']}/search")
    assert resp.status_code == 200
    assert resp.json()["phase"] == "SEARCHING"
    assert resp.json()["remaining_attempts"] == 6


@pytest.mark.asyncio
async def test_create_trip_rejects_non_positive_fare(client: AsyncClient):
    resp = await client.post("/api/v1/trips", json={**TRIP_BODY, "estimated_amount": 0})
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_idempotency_key(client: AsyncClient, processor):
    first = await _create_trip(client, idempotency_key="unique-key-123")
    second = await _create_trip(client, idempotency_key="unique-key-123")
    assert first["id"] == second["id"]
    assert processor.count("authorize") == 1


@pytest.mark.asyncio
async def test_get_trip_not_found(client: AsyncClient):
    resp = await client.get("/api/v1/trips/9999")
    assert resp.status_code == 404
    assert resp.json()["code"] == "TRIP_NOT_FOUND"


@pytest.mark.asyncio
async def test_invalid_status_change_is_a_conflict(client: AsyncClient):
    trip = await _create_trip(client)
    resp = await client.patch(
        f"/api/v1/trips/{trip['id']}/status", json={"status": "COMPLETED"}
    )
    assert resp.status_code == 409
    assert resp.json()["code"] == "INVALID_STATE_TRANSITION"


@pytest.mark.asyncio
async def test_cancel_releases_authorization(client: AsyncClient, processor):
    trip = await _create_trip(client)
    resp = await client.patch(f"/api/v1/trips/{trip['id']}/cancel", json={})
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "CANCELLED"
    assert data["cancelled_by"] == "RIDER"
    assert data["payment_status"] == "RELEASED"
    assert processor.of("release") == [("release", "pi_test_1")]

    again = await client.patch(f"/api/v1/trips/{trip['id']}/cancel", json={})
    assert again.status_code == 200
    assert processor.count("release") == 1


@pytest.mark.asyncio
async def test_settle_captures_fare(client: AsyncClient, processor):
    data = await _completed_trip(client)
    assert data["status"] == "COMPLETED"
    assert data["payment_status"] == "COMPLETED"
    assert processor.of("capture") == [("capture", "pi_test_1", 25.0)]


# ── Driver search ─────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_rider_cancels_search(client: AsyncClient, dispatch, payments):
    trip = await _create_trip(client)
    resp = await client.post(f"/api/v1/trips/{trip['id']}/search/cancel", json={})
    assert resp.status_code == 200
    assert resp.json()["phase"] == "CANCELLED"
    assert resp.json()["reason_code"] == "RIDER_CANCELLED_WHILE_SEARCHING"
    payments.release.assert_awaited_once()
    dispatch.cancel_trip.assert_awaited_once()

    # the finished search stays readable
    resp = await client.get(f"/api/v1/trips/{trip['id']}/search")
    assert resp.json()["phase"] == "CANCELLED"


@pytest.mark.asyncio
async def test_retry_outside_decision_changes_nothing(client: AsyncClient):
    trip = await _create_trip(client)
    resp = await client.post(f"/api/v1/trips/{trip['id']}/search/retry")
    assert resp.status_code == 200
    assert resp.json()["phase"] == "SEARCHING"
    assert resp.json()["attempt"] == 0


@pytest.mark.asyncio
async def test_search_not_found(client: AsyncClient):
    resp = await client.get("/api/v1/trips/9999/search")
    assert resp.status_code == 404
    assert resp.json()["code"] == "SEARCH_NOT_FOUND"


# ── Disputes ──────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_dispute_lifecycle(client: AsyncClient, processor):
    trip = await _completed_trip(client)

    resp = await _file_dispute(client, trip["id"])
    assert resp.status_code == 201
    dispute = resp.json()
    assert dispute["status"] == "pending"
    assert dispute["amount"] == 25.0
    assert dispute["overdue"] is False
    assert dispute["evidence"][0]["type"] == "route_deviation"

    dup = await _file_dispute(client, trip["id"])
    assert dup.status_code == 422
    assert dup.json()["code"] == "DISPUTE_EXISTS"

    resp = await client.patch(
        f"/api/v1/disputes/{dispute['id']}/status",
        json={"status": "under_review", "reviewer_id": "ops-1"},
    )
    assert resp.json()["status"] == "under_review"

    resp = await client.post(
        f"/api/v1/disputes/{dispute['id']}/resolve",
        json={
            "decision": "approved",
            "resolution": "Detour confirmed from GPS trace",
            "refund_amount": 10.0,
            "resolved_by": "ops-1",
        },
    )
    assert resp.status_code == 200
    assert resp.json()["status"] == "approved"
    assert resp.json()["refund_amount"] == 10.0
    assert processor.of("refund") == [("refund", "pi_test_1", 10.0)]

    resp = await client.get(f"/api/v1/trips/{trip['id']}")
    assert resp.json()["payment_status"] == "REFUNDED"

    resp = await client.get(f"/api/v1/users/{RIDER_ID}/disputes")
    assert [d["id"] for d in resp.json()] == [dispute["id"]]


@pytest.mark.asyncio
async def test_dispute_window_expired(client: AsyncClient, clock):
    trip = await _completed_trip(client)
    clock.advance(hours=24, minutes=1)
    resp = await _file_dispute(client, trip["id"])
    assert resp.status_code == 422
    assert resp.json()["code"] == "DISPUTE_WINDOW_EXPIRED"


@pytest.mark.asyncio
async def test_dispute_not_found(client: AsyncClient):
    resp = await client.get("/api/v1/disputes/dispute_missing")
    assert resp.status_code == 404
    assert resp.json()["code"] == "DISPUTE_NOT_FOUND"


@pytest.mark.asyncio
async def test_pending_queue_flags_overdue(client: AsyncClient, clock):
    trip = await _completed_trip(client)
    await _file_dispute(client, trip["id"])

    clock.advance(hours=49)
    resp = await client.get("/api/v1/admin/disputes/pending")
    assert resp.status_code == 200
    [pending] = resp.json()
    assert pending["overdue"] is True


# ── Safety holds ──────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_hold_then_void(client: AsyncClient, processor):
    trip = await _completed_trip(client)

    resp = await client.post(
        f"/api/v1/trips/{trip['id']}/payment/hold",
        json={"reason": "SOS_TRIGGERED", "auto_hold": True},
    )
    assert resp.status_code == 200
    assert resp.json()["status"] == "held"
    assert resp.json()["authorization_ref"] == "pi_test_1"

    resp = await client.post(
        f"/api/v1/trips/{trip['id']}/payment/void",
        json={"reason": "Safety incident confirmed"},
    )
    assert resp.status_code == 200
    assert resp.json()["payment_status"] == "VOIDED"
    assert processor.of("refund") == [("refund", "pi_test_1", 25.0)]


@pytest.mark.asyncio
async def test_trip_request_hold_is_rejected(client: AsyncClient):
    trip = await _completed_trip(client)
    resp = await client.post(
        f"/api/v1/trips/{trip['id']}/payment/hold", json={"reason": "TRIP_REQUEST"}
    )
    assert resp.status_code == 422
    assert resp.json()["code"] == "INVALID_HOLD_REASON"


# ── Reconciliation ────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_reconcile_reports_skip_when_locked(client: AsyncClient, redis):
    redis.set = AsyncMock(return_value=False)
    resp = await client.post("/api/v1/admin/reconcile")
    assert resp.status_code == 200
    assert resp.json() == {"skipped": True, "auto_released": 0, "orphaned_released": 0}


@pytest.mark.asyncio
async def test_reconcile_runs_a_sweep(
    client: AsyncClient, redis, session_factory, monkeypatch
):
    monkeypatch.setattr(
        reconciler,
        "run_reconcile_cycle",
        functools.partial(reconciler.run_reconcile_cycle, session_factory=session_factory),
    )
    redis.set = AsyncMock(return_value=True)
    trip = await _create_trip(client)
    await client.patch(f"/api/v1/trips/{trip['id']}/cancel", json={})

    resp = await client.post("/api/v1/admin/reconcile")
    assert resp.status_code == 200
    assert resp.json() == {"skipped": False, "auto_released": 0, "orphaned_released": 0}
