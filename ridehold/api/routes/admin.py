"""
Admin / operations endpoints
============================

GET  /api/v1/admin/health            -- simple health check
GET  /api/v1/admin/disputes/pending  -- review queue, overdue disputes flagged
POST /api/v1/admin/reconcile         -- run one reconciliation sweep now
"""

from fastapi import APIRouter, Depends, Request

from ridehold.api.dependencies import get_dispute_engine, get_processor, get_redis_client
from ridehold.api.middleware import limiter
from ridehold.api.schemas import DisputeResponse, HealthResponse, ReconcileResponse
from ridehold.services.disputes import DisputeResolutionEngine
from ridehold.workers import reconciler

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get(
    "/disputes/pending",
    response_model=list[DisputeResponse],
    summary="List disputes awaiting review",
)
@limiter.limit("100/minute")
async def list_pending_disputes(
    request: Request,
    engine: DisputeResolutionEngine = Depends(get_dispute_engine),
):
    result: list[DisputeResponse] = []
    for d in await engine.list_pending_disputes():
        dto = DisputeResponse.model_validate(d)
        dto.overdue = engine.is_overdue(d)
        result.append(dto)
    return result


@router.post(
    "/reconcile",
    response_model=ReconcileResponse,
    summary="Release expired holds and orphaned authorizations",
)
@limiter.limit("10/minute")
async def reconcile(
    request: Request,
    processor=Depends(get_processor),
    redis=Depends(get_redis_client),
):
    counts = await reconciler.run_reconcile_cycle(processor, redis=redis)
    if counts is None:
        return ReconcileResponse(skipped=True)
    return ReconcileResponse(**counts)


@router.get("/health", response_model=HealthResponse, summary="Health check")
async def health():
    return HealthResponse()
