"""
Dispute and escrow endpoints
============================

POST  /api/v1/disputes                        -- file a dispute (within 24 h of completion)
GET   /api/v1/disputes/{dispute_id}           -- dispute detail
PATCH /api/v1/disputes/{dispute_id}/status    -- pending <-> under_review
POST  /api/v1/disputes/{dispute_id}/evidence  -- attach evidence
POST  /api/v1/disputes/{dispute_id}/resolve   -- approve (with refund) or deny
GET   /api/v1/users/{user_id}/disputes        -- a rider's or driver's disputes

POST  /api/v1/trips/{trip_id}/payment/hold    -- safety hold (SOS, unanswered alert)
POST  /api/v1/trips/{trip_id}/payment/void    -- refund the rider in full
"""

from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, Query, Request

from ridehold.api.dependencies import get_dispute_engine
from ridehold.api.middleware import limiter
from ridehold.api.schemas import (
    DisputeCreateRequest,
    DisputeResolveRequest,
    DisputeResponse,
    DisputeStatusUpdate,
    EscrowResponse,
    EvidenceIn,
    PaymentHoldRequest,
    PaymentVoidRequest,
    TripResponse,
)
from ridehold.infrastructure.models import DisputeModel
from ridehold.services.disputes import DisputeResolutionEngine

router = APIRouter(tags=["disputes"])


def _to_response(engine: DisputeResolutionEngine, dispute: DisputeModel) -> DisputeResponse:
    response = DisputeResponse.model_validate(dispute)
    response.overdue = engine.is_overdue(dispute)
    return response


@router.post(
    "/disputes",
    status_code=201,
    response_model=DisputeResponse,
    summary="File a payment dispute",
)
@limiter.limit("20/minute")
async def create_dispute(
    request: Request,
    body: DisputeCreateRequest,
    engine: DisputeResolutionEngine = Depends(get_dispute_engine),
):
    dispute = await engine.create_dispute(
        trip_id=body.trip_id,
        rider_id=body.rider_id,
        reason=body.reason,
        description=body.description,
        evidence=[e.model_dump(mode="json") for e in body.evidence],
    )
    return _to_response(engine, dispute)


@router.get("/disputes/{dispute_id}", response_model=DisputeResponse)
@limiter.limit("100/minute")
async def get_dispute(
    request: Request,
    dispute_id: str,
    engine: DisputeResolutionEngine = Depends(get_dispute_engine),
):
    return _to_response(engine, await engine.get_dispute(dispute_id))


@router.patch("/disputes/{dispute_id}/status", response_model=DisputeResponse)
@limiter.limit("100/minute")
async def update_dispute_status(
    request: Request,
    dispute_id: str,
    body: DisputeStatusUpdate,
    engine: DisputeResolutionEngine = Depends(get_dispute_engine),
):
    dispute = await engine.update_dispute_status(dispute_id, body.status, body.reviewer_id)
    return _to_response(engine, dispute)


@router.post("/disputes/{dispute_id}/evidence", response_model=DisputeResponse)
@limiter.limit("100/minute")
async def add_evidence(
    request: Request,
    dispute_id: str,
    body: EvidenceIn,
    engine: DisputeResolutionEngine = Depends(get_dispute_engine),
):
    dispute = await engine.add_evidence(dispute_id, body.model_dump(mode="json"))
    return _to_response(engine, dispute)


@router.post(
    "/disputes/{dispute_id}/resolve",
    response_model=DisputeResponse,
    summary="Resolve a dispute",
    description=(
        "Approved with a refund returns funds to the rider (fully or partially); "
        "denied, or approved without a refund, releases escrow to the driver."
    ),
)
@limiter.limit("100/minute")
async def resolve_dispute(
    request: Request,
    dispute_id: str,
    body: DisputeResolveRequest,
    engine: DisputeResolutionEngine = Depends(get_dispute_engine),
):
    dispute = await engine.resolve_dispute(
        dispute_id,
        decision=body.decision,
        resolution=body.resolution,
        refund_amount=body.refund_amount,
        issue_strike=body.issue_strike,
        resolved_by=body.resolved_by,
    )
    return _to_response(engine, dispute)


@router.get("/users/{user_id}/disputes", response_model=list[DisputeResponse])
@limiter.limit("100/minute")
async def list_user_disputes(
    request: Request,
    user_id: int,
    role: Literal["rider", "driver"] = Query("rider"),
    engine: DisputeResolutionEngine = Depends(get_dispute_engine),
):
    disputes = await engine.list_user_disputes(user_id, role)
    return [_to_response(engine, d) for d in disputes]


# ── Safety holds ──────────────────────────────────────────────────────


@router.post(
    "/trips/{trip_id}/payment/hold",
    response_model=EscrowResponse,
    summary="Hold a trip's payment in escrow",
)
@limiter.limit("30/minute")
async def hold_payment(
    request: Request,
    trip_id: int,
    body: PaymentHoldRequest,
    engine: DisputeResolutionEngine = Depends(get_dispute_engine),
):
    return await engine.hold_payment(trip_id, body.reason, auto_hold=body.auto_hold)


@router.post(
    "/trips/{trip_id}/payment/void",
    response_model=TripResponse,
    summary="Void a trip's payment",
)
@limiter.limit("30/minute")
async def void_payment(
    request: Request,
    trip_id: int,
    body: PaymentVoidRequest,
    engine: DisputeResolutionEngine = Depends(get_dispute_engine),
):
    return await engine.void_payment(trip_id, body.reason)
