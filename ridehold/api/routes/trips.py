"""
Trip endpoints
==============

POST  /api/v1/trips                      -- request a trip (202 Accepted, search starts)
GET   /api/v1/trips/{trip_id}            -- trip and payment status
PATCH /api/v1/trips/{trip_id}/status     -- dispatch / driver status updates
PATCH /api/v1/trips/{trip_id}/cancel     -- authoritative cancel, always releases funds
POST  /api/v1/trips/{trip_id}/settle     -- capture the fare and complete

GET   /api/v1/trips/{trip_id}/search          -- driver search progress
POST  /api/v1/trips/{trip_id}/search/retry    -- rider asks for another attempt
POST  /api/v1/trips/{trip_id}/search/decline  -- rider gives up
POST  /api/v1/trips/{trip_id}/search/cancel   -- rider cancels while searching

Status changes are committed before they are published on the trip's
status channel, and the driver search only starts once the trip row is
committed.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from ridehold.api.dependencies import get_db, get_sessions, get_trip_service
from ridehold.api.middleware import limiter
from ridehold.api.schemas import (
    SearchCancelRequest,
    SearchStateResponse,
    TripCancelRequest,
    TripCreateRequest,
    TripResponse,
    TripSettleRequest,
    TripStatusUpdate,
)
from ridehold.services.sessions import SearchSessionRegistry
from ridehold.services.trips import TripService

router = APIRouter(prefix="/trips", tags=["trips"])


@router.post(
    "",
    status_code=202,
    response_model=TripResponse,
    summary="Request a trip",
    responses={202: {"description": "Fare authorized; driver search runs asynchronously."}},
)
@limiter.limit("100/minute")
async def create_trip(
    request: Request,
    body: TripCreateRequest,
    db: AsyncSession = Depends(get_db),
    trips: TripService = Depends(get_trip_service),
    sessions: SearchSessionRegistry = Depends(get_sessions),
):
    trip = await trips.create_trip(
        rider_id=body.rider_id,
        pickup=body.pickup.model_dump(),
        destination=body.destination.model_dump(),
        stops=[s.model_dump() for s in body.stops],
        vehicle_class=body.vehicle_class,
        estimated_amount=body.estimated_amount,
        payment_method=body.payment_method,
        idempotency_key=body.idempotency_key,
    )
    await db.commit()
    await trips.publish_pending()
    await sessions.start(trip.id)
    return trip


@router.get("/{trip_id}", response_model=TripResponse, summary="Get trip status")
@limiter.limit("100/minute")
async def get_trip(
    request: Request,
    trip_id: int,
    trips: TripService = Depends(get_trip_service),
):
    return await trips.get_trip(trip_id)


@router.patch(
    "/{trip_id}/status",
    response_model=TripResponse,
    summary="Update trip status",
    description="Used by dispatch and the driver app. CANCELLED is routed to the cancel path.",
)
@limiter.limit("100/minute")
async def update_trip_status(
    request: Request,
    trip_id: int,
    body: TripStatusUpdate,
    db: AsyncSession = Depends(get_db),
    trips: TripService = Depends(get_trip_service),
):
    trip = await trips.update_status(trip_id, body.status, driver_id=body.driver_id)
    await db.commit()
    await trips.publish_pending()
    return trip


@router.patch("/{trip_id}/cancel", response_model=TripResponse, summary="Cancel a trip")
@limiter.limit("100/minute")
async def cancel_trip(
    request: Request,
    trip_id: int,
    body: TripCancelRequest,
    db: AsyncSession = Depends(get_db),
    trips: TripService = Depends(get_trip_service),
):
    trip = await trips.cancel_trip(trip_id, body.cancelled_by, body.reason, body.reason_code)
    await db.commit()
    await trips.publish_pending()
    return trip


@router.post("/{trip_id}/settle", response_model=TripResponse, summary="Settle a trip")
@limiter.limit("100/minute")
async def settle_trip(
    request: Request,
    trip_id: int,
    body: TripSettleRequest,
    db: AsyncSession = Depends(get_db),
    trips: TripService = Depends(get_trip_service),
):
    trip = await trips.settle_trip(trip_id, final_amount=body.final_amount)
    await db.commit()
    await trips.publish_pending()
    return trip


# ── Driver search ─────────────────────────────────────────────────────


@router.get("/{trip_id}/search", response_model=SearchStateResponse, summary="Search progress")
@limiter.limit("100/minute")
async def get_search(
    request: Request,
    trip_id: int,
    sessions: SearchSessionRegistry = Depends(get_sessions),
):
    return SearchStateResponse.model_validate(sessions.state(trip_id))


@router.post("/{trip_id}/search/retry", response_model=SearchStateResponse)
@limiter.limit("30/minute")
async def retry_search(
    request: Request,
    trip_id: int,
    sessions: SearchSessionRegistry = Depends(get_sessions),
):
    state = await sessions.manual_retry(trip_id)
    return SearchStateResponse.model_validate(state)


@router.post("/{trip_id}/search/decline", response_model=SearchStateResponse)
@limiter.limit("30/minute")
async def decline_search(
    request: Request,
    trip_id: int,
    sessions: SearchSessionRegistry = Depends(get_sessions),
):
    state = await sessions.decline_retry(trip_id)
    return SearchStateResponse.model_validate(state)


@router.post("/{trip_id}/search/cancel", response_model=SearchStateResponse)
@limiter.limit("30/minute")
async def cancel_search(
    request: Request,
    trip_id: int,
    body: SearchCancelRequest,
    sessions: SearchSessionRegistry = Depends(get_sessions),
):
    state = await sessions.cancel(trip_id, body.reason)
    return SearchStateResponse.model_validate(state)
