"""
Dispute Resolution Engine
=========================

Post-trip disputes, escrow resolution and the held-payment sweep.

Lifecycle
---------
* ``create_dispute`` -- only within ``DISPUTE_WINDOW_HOURS`` of completion
  and only when no pending / under-review dispute exists for the trip.
  Ensures the trip's payment sits in escrow and queues the dispute for
  operations.
* ``resolve_dispute`` -- approved with a refund: escrow is refunded in full
  or in part and the processor refund is issued; denied (or approved
  without a refund): escrow is released to the driver.
* ``auto_resolve_held_payments`` -- any payment HELD for longer than the
  window with no open dispute is released to the driver, so funds are
  never frozen indefinitely.
* ``void_payment`` -- safety outcomes: everything goes back to the rider.

Resolution and the sweep both lock the trip row before touching escrow,
so they can not both settle the same trip.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession

from ridehold.config import settings
from ridehold.domain.entities import Evidence, ensure_utc, utcnow
from ridehold.domain.enums import (
    AUTO_RELEASE_NOTE,
    OPEN_DISPUTE_STATUSES,
    DisputeDecision,
    DisputeReason,
    DisputeStatus,
    EscrowStatus,
    HoldReason,
    PaymentStatus,
)
from ridehold.domain.errors import (
    DISPUTE_ALREADY_RESOLVED,
    DISPUTE_EXISTS,
    DISPUTE_NOT_FOUND,
    DISPUTE_WINDOW_EXPIRED,
    REFUND_EXCEEDS_AMOUNT,
    TRIP_NOT_COMPLETED,
    TRIP_NOT_FOUND,
    ConsistencyError,
    RideholdError,
    TransientNetworkError,
    ValidationError,
)
from ridehold.infrastructure.models import DisputeModel, EscrowModel, TripModel
from ridehold.infrastructure.repositories import (
    DisputeRepository,
    EscrowRepository,
    TripRepository,
)
from .ledger import PaymentAuthorizationLedger
from .notifications import DisputeNotifier
from .strikes import StrikeIssuer

logger = logging.getLogger(__name__)

EvidenceInput = Union[Evidence, dict]


def _evidence_dict(item: EvidenceInput) -> dict:
    return item.to_dict() if isinstance(item, Evidence) else dict(item)


class DisputeResolutionEngine:
    def __init__(
        self,
        session: AsyncSession,
        ledger: PaymentAuthorizationLedger,
        notifier: Optional[DisputeNotifier] = None,
        strikes: Optional[StrikeIssuer] = None,
        clock: Callable[[], datetime] = utcnow,
        window_hours: int = settings.dispute_window_hours,
        review_deadline_hours: int = settings.review_deadline_hours,
    ):
        self.session = session
        self.ledger = ledger
        self.notifier = notifier or DisputeNotifier(session)
        self.strikes = strikes or StrikeIssuer(session)
        self.clock = clock
        self.window = timedelta(hours=window_hours)
        self.review_deadline = timedelta(hours=review_deadline_hours)
        self.trips = TripRepository(session)
        self.disputes = DisputeRepository(session)
        self.escrows = EscrowRepository(session)

    # ── Filing ────────────────────────────────────────────────────

    async def create_dispute(
        self,
        trip_id: int,
        rider_id: int,
        reason: DisputeReason,
        description: str = "",
        evidence: Iterable[EvidenceInput] = (),
    ) -> DisputeModel:
        trip = await self._trip(trip_id)
        now = self.clock()

        if trip.completed_at is None:
            raise ValidationError(
                "Disputes can only be filed for completed trips.", code=TRIP_NOT_COMPLETED
            )
        if now - ensure_utc(trip.completed_at) > self.window:
            raise ValidationError(
                "Dispute window has expired. Disputes must be filed within "
                f"{int(self.window.total_seconds() // 3600)} hours.",
                code=DISPUTE_WINDOW_EXPIRED,
            )
        if await self.disputes.get_open_for_trip(trip_id) is not None:
            raise ValidationError(
                "A dispute already exists for this trip.", code=DISPUTE_EXISTS
            )

        dispute = await self.disputes.create(
            DisputeModel(
                trip_id=trip.id,
                rider_id=rider_id,
                driver_id=trip.driver_id,
                amount=round(trip.amount, 2),
                reason=reason,
                description=description,
                evidence=[_evidence_dict(e) for e in evidence],
                status=DisputeStatus.PENDING,
                auto_hold=trip.auto_hold,
                strike_issued=False,
                created_at=now,
                updated_at=now,
            )
        )

        if trip.payment_status is not PaymentStatus.HELD:
            await self.ledger.hold(trip.id, dispute.amount, HoldReason.DISPUTE)
        escrow = await self.escrows.get_held_for_trip(trip.id)
        if escrow is not None:
            self._link(escrow, dispute)

        await self.notifier.dispute_filed(dispute)
        await self.session.flush()
        logger.info("Dispute %s created for trip %s", dispute.id, trip.id)
        return dispute

    async def hold_payment(
        self, trip_id: int, reason: HoldReason, auto_hold: bool = False
    ) -> EscrowModel:
        """Withhold a trip's payment pending review (SOS, unanswered safety alert)."""
        if reason is HoldReason.TRIP_REQUEST:
            raise ValidationError(
                "Trip request holds are placed when the trip is created.",
                code="INVALID_HOLD_REASON",
            )
        trip = await self._trip(trip_id)
        await self.ledger.hold(trip.id, trip.amount, reason, auto_hold=auto_hold)
        escrow = await self.escrows.get_held_for_trip(trip.id)
        return escrow

    # ── Review ────────────────────────────────────────────────────

    async def get_dispute(self, dispute_id: str) -> DisputeModel:
        dispute = await self.disputes.get_by_id(dispute_id)
        if dispute is None:
            raise ConsistencyError(f"Dispute {dispute_id} not found", code=DISPUTE_NOT_FOUND)
        return dispute

    async def update_dispute_status(
        self, dispute_id: str, status: DisputeStatus, reviewer_id: Optional[str] = None
    ) -> DisputeModel:
        dispute = await self.get_dispute(dispute_id)
        if dispute.status not in OPEN_DISPUTE_STATUSES or status not in OPEN_DISPUTE_STATUSES:
            raise ValidationError(
                f"Cannot move dispute from {dispute.status.value} to {status.value}; "
                "use resolve instead.",
                code=DISPUTE_ALREADY_RESOLVED,
            )
        dispute.status = status
        dispute.reviewed_by = reviewer_id
        dispute.updated_at = self.clock()
        await self.session.flush()
        return dispute

    async def add_evidence(self, dispute_id: str, evidence: EvidenceInput) -> DisputeModel:
        dispute = await self.get_dispute(dispute_id)
        # Reassign so the JSON column is flagged dirty
        dispute.evidence = [*dispute.evidence, _evidence_dict(evidence)]
        dispute.updated_at = self.clock()
        await self.session.flush()
        return dispute

    async def list_user_disputes(self, user_id: int, role: str) -> list[DisputeModel]:
        return await self.disputes.list_for_user(user_id, role)

    async def list_pending_disputes(self) -> list[DisputeModel]:
        return await self.disputes.list_open()

    def is_overdue(self, dispute: DisputeModel) -> bool:
        if dispute.status not in OPEN_DISPUTE_STATUSES or dispute.created_at is None:
            return False
        return self.clock() - ensure_utc(dispute.created_at) > self.review_deadline

    # ── Resolution ────────────────────────────────────────────────

    async def resolve_dispute(
        self,
        dispute_id: str,
        decision: DisputeDecision,
        resolution: str,
        refund_amount: Optional[float] = None,
        issue_strike: bool = False,
        resolved_by: str = "",
    ) -> DisputeModel:
        dispute = await self.get_dispute(dispute_id)
        trip = await self._trip(dispute.trip_id)
        if dispute.status not in OPEN_DISPUTE_STATUSES:
            raise ValidationError(
                f"Dispute {dispute_id} is already {dispute.status.value}",
                code=DISPUTE_ALREADY_RESOLVED,
            )
        refund = round(refund_amount or 0.0, 2)
        if refund > dispute.amount:
            raise ValidationError(
                f"Refund {refund:.2f} exceeds disputed amount {dispute.amount:.2f}",
                code=REFUND_EXCEEDS_AMOUNT,
            )

        now = self.clock()
        refunding = decision is DisputeDecision.APPROVED and refund > 0
        escrow = await self._escrow_for(dispute)
        ref = self._authorization_ref(trip, escrow)

        if refunding:
            if ref is not None:
                await self.ledger.refund(ref, refund)
            else:
                logger.warning("Dispute %s refund has no authorization to refund against", dispute_id)
            escrow_status = (
                EscrowStatus.REFUNDED_TO_RIDER
                if refund >= dispute.amount
                else EscrowStatus.PARTIALLY_REFUNDED
            )
        else:
            if ref is not None:
                await self.ledger.settle_to_driver(ref)
            escrow_status = EscrowStatus.RELEASED_TO_DRIVER

        if escrow is not None:
            self._close_escrow(escrow, escrow_status, resolution, now)

        dispute.status = DisputeStatus(decision.value)
        dispute.resolution = resolution
        dispute.refund_amount = refund
        dispute.strike_issued = issue_strike
        dispute.resolved_at = now
        dispute.resolved_by = resolved_by
        dispute.updated_at = now

        if issue_strike and dispute.driver_id is not None:
            strike = await self.strikes.issue(
                dispute.driver_id,
                dispute.trip_id,
                "safety_incident",
                f"Dispute resolved against driver: {resolution}",
                severity="high",
            )
            dispute.strike_id = strike.id

        trip.payment_status = PaymentStatus.REFUNDED if refunding else PaymentStatus.COMPLETED
        trip.dispute_resolution = resolution

        await self.notifier.dispute_resolved(dispute, decision, resolution)
        await self.session.flush()
        logger.info("Dispute %s resolved: %s", dispute_id, decision.value)
        return dispute

    async def auto_resolve_held_payments(self) -> list[int]:
        """Release every payment held past the window without an open dispute."""
        cutoff = self.clock() - self.window
        released: list[int] = []

        candidate_ids = [trip.id for trip in await self.trips.get_held_before(cutoff)]
        for trip_id in candidate_ids:
            # One trip's failure rolls back only its own savepoint.
            try:
                async with self.session.begin_nested():
                    if await self._auto_release(trip_id):
                        released.append(trip_id)
            except TransientNetworkError:
                logger.warning("Auto-release of trip %s deferred: processor unavailable", trip_id)
            except RideholdError as exc:
                logger.error(
                    "Auto-release of trip %s failed (%s): %s", trip_id, exc.code, exc.message
                )

        await self.session.flush()
        return released

    async def _auto_release(self, trip_id: int) -> bool:
        trip = await self.trips.get_for_update(trip_id)
        if trip is None or trip.payment_status is not PaymentStatus.HELD:
            return False
        if await self.disputes.get_open_for_trip(trip.id) is not None:
            return False

        escrow = await self._held_escrow(trip)
        ref = self._authorization_ref(trip, escrow)
        if ref is not None:
            await self.ledger.settle_to_driver(ref)

        if escrow is not None:
            self._close_escrow(
                escrow, EscrowStatus.RELEASED_TO_DRIVER, AUTO_RELEASE_NOTE, self.clock()
            )
        trip.payment_status = PaymentStatus.COMPLETED
        logger.info("Payment auto-released for trip %s", trip.id)
        return True

    async def void_payment(self, trip_id: int, reason: str) -> TripModel:
        """Refund the rider in full; the driver is credited nothing."""
        trip = await self._trip(trip_id)
        escrow = await self._held_escrow(trip)
        ref = self._authorization_ref(trip, escrow)
        if ref is None:
            live = await self.ledger.live_authorization(trip)
            ref = live.reference if live is not None else None

        if ref is not None:
            await self.ledger.void(ref, reason)
        else:
            logger.warning("Trip %s has no authorization to void", trip_id)

        if escrow is not None:
            self._close_escrow(escrow, EscrowStatus.VOIDED, reason, self.clock())
        trip.payment_status = PaymentStatus.VOIDED
        trip.payment_void_reason = reason
        await self.session.flush()
        logger.info("Payment voided for trip %s", trip_id)
        return trip

    # ── Internals ─────────────────────────────────────────────────

    async def _trip(self, trip_id: int) -> TripModel:
        trip = await self.trips.get_for_update(trip_id)
        if trip is None:
            raise ConsistencyError(f"Trip {trip_id} not found", code=TRIP_NOT_FOUND)
        return trip

    async def _held_escrow(self, trip: TripModel) -> Optional[EscrowModel]:
        if trip.escrow_id:
            escrow = await self.escrows.get_by_id(trip.escrow_id)
            if escrow is not None and escrow.status is EscrowStatus.HELD:
                return escrow
        return await self.escrows.get_held_for_trip(trip.id)

    async def _escrow_for(self, dispute: DisputeModel) -> Optional[EscrowModel]:
        if dispute.escrow_id:
            escrow = await self.escrows.get_by_id(dispute.escrow_id)
            if escrow is not None and escrow.status is EscrowStatus.HELD:
                return escrow
        return await self.escrows.get_held_for_trip(dispute.trip_id)

    def _authorization_ref(self, trip: TripModel, escrow: Optional[EscrowModel]):
        if escrow is not None and escrow.authorization_ref:
            return escrow.authorization_ref
        return self.ledger.resolve_reference(trip)

    @staticmethod
    def _link(escrow: EscrowModel, dispute: DisputeModel) -> None:
        if escrow.trip_id != dispute.trip_id:
            raise ValidationError(
                f"Escrow {escrow.id} belongs to trip {escrow.trip_id}, "
                f"dispute {dispute.id} to trip {dispute.trip_id}",
                code="ESCROW_TRIP_MISMATCH",
            )
        if escrow.dispute_id is None:
            escrow.dispute_id = dispute.id
        dispute.escrow_id = escrow.id

    @staticmethod
    def _close_escrow(
        escrow: EscrowModel, status: EscrowStatus, reason: str, when: datetime
    ) -> None:
        escrow.status = status
        escrow.release_reason = reason
        escrow.released_at = when
        logger.info("Escrow %s closed: %s", escrow.id, status.value)
