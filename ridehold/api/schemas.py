"""Pydantic request / response schemas for the REST API."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from ridehold.domain.enums import (
    CancelledBy,
    CancelReasonCode,
    DisputeDecision,
    DisputeReason,
    DisputeStatus,
    EscrowStatus,
    EvidenceType,
    HoldReason,
    PaymentStatus,
    TripStatus,
    VehicleClass,
)
from ridehold.domain.search import RIDER_CANCEL_TEXT, SearchPhase


# ── Requests ──────────────────────────────────────────────────────────


class LocationIn(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    address: Optional[str] = Field(None, max_length=255)


class TripCreateRequest(BaseModel):
    rider_id: int
    pickup: LocationIn
    destination: LocationIn
    stops: list[LocationIn] = Field(default_factory=list, max_length=5)
    vehicle_class: VehicleClass = VehicleClass.STANDARD
    estimated_amount: float = Field(..., gt=0, description="Fare locked at request time.")
    payment_method: Optional[str] = Field(
        None,
        max_length=160,
        description='Legacy "provider:id" reference for pre-authorized cards.',
    )
    idempotency_key: Optional[str] = Field(
        None,
        max_length=64,
        description="Client-generated UUID to prevent double-booking on retries.",
    )


class TripStatusUpdate(BaseModel):
    status: TripStatus
    driver_id: Optional[int] = None


class TripCancelRequest(BaseModel):
    cancelled_by: CancelledBy = CancelledBy.RIDER
    reason: str = Field("Rider cancelled", max_length=255)
    reason_code: CancelReasonCode = CancelReasonCode.RIDER_CANCELLED


class TripSettleRequest(BaseModel):
    final_amount: Optional[float] = Field(None, gt=0)


class SearchCancelRequest(BaseModel):
    reason: str = Field(RIDER_CANCEL_TEXT, max_length=255)


class EvidenceIn(BaseModel):
    type: EvidenceType
    timestamp: datetime
    url: Optional[str] = None
    description: Optional[str] = None
    data: Optional[dict[str, Any]] = None


class DisputeCreateRequest(BaseModel):
    trip_id: int
    rider_id: int
    reason: DisputeReason
    description: str = Field("", max_length=2000)
    evidence: list[EvidenceIn] = Field(default_factory=list)


class DisputeStatusUpdate(BaseModel):
    status: DisputeStatus
    reviewer_id: Optional[str] = None


class DisputeResolveRequest(BaseModel):
    decision: DisputeDecision
    resolution: str = Field(..., min_length=1, max_length=2000)
    refund_amount: Optional[float] = Field(None, ge=0)
    issue_strike: bool = False
    resolved_by: str = Field(..., min_length=1, max_length=64)


class PaymentHoldRequest(BaseModel):
    reason: HoldReason
    auto_hold: bool = False


class PaymentVoidRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=255)


# ── Responses ─────────────────────────────────────────────────────────


class TripResponse(BaseModel):
    id: int
    rider_id: int
    driver_id: Optional[int] = None
    status: TripStatus
    vehicle_class: VehicleClass
    estimated_amount: float
    final_amount: Optional[float] = None
    currency: str
    payment_ref: Optional[str] = None
    payment_status: PaymentStatus
    escrow_id: Optional[str] = None
    cancelled_by: Optional[CancelledBy] = None
    cancel_reason_code: Optional[str] = None
    cancellation_reason: Optional[str] = None
    search_attempt: int = 0
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class SearchStateResponse(BaseModel):
    trip_id: int
    phase: SearchPhase
    attempt: int
    remaining_attempts: int
    exhausted: bool
    reason_code: Optional[str] = None
    message: Optional[str] = None

    model_config = {"from_attributes": True}


class DisputeResponse(BaseModel):
    id: str
    trip_id: int
    rider_id: int
    driver_id: Optional[int] = None
    amount: float
    reason: DisputeReason
    description: str
    evidence: list[dict[str, Any]] = []
    status: DisputeStatus
    auto_hold: bool
    escrow_id: Optional[str] = None
    refund_amount: Optional[float] = None
    resolution: Optional[str] = None
    strike_issued: bool
    resolved_by: Optional[str] = None
    created_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    overdue: bool = False

    model_config = {"from_attributes": True}


class EscrowResponse(BaseModel):
    id: str
    trip_id: int
    dispute_id: Optional[str] = None
    authorization_ref: Optional[str] = None
    amount: float
    status: EscrowStatus
    hold_reason: Optional[str] = None
    release_reason: Optional[str] = None

    model_config = {"from_attributes": True}


class ReconcileResponse(BaseModel):
    skipped: bool = False
    auto_released: int = 0
    orphaned_released: int = 0


class HealthResponse(BaseModel):
    status: str = "ok"


class ErrorResponse(BaseModel):
    detail: str
    code: Optional[str] = None
