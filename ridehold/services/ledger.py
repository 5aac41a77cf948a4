"""
Payment Authorization Ledger
============================

Idempotent hold / capture / release / void / refund against the payment
processor, keyed by trip.

Guarantees
----------
* A trip has at most one live (AUTHORIZED or CAPTURED) authorization;
  ``hold`` for a trip request returns the live one instead of placing a
  second hold.
* Authorization state only moves forward.  ``release`` / ``void`` on an
  authorization that is already RELEASED or VOIDED (and ``release`` on a
  CAPTURED one) return the current state without calling the processor.
* Every mutation locks the authorization row first, so a release can not
  race a capture on the same trip.
* References are normalised through ``resolve_payment_reference`` before
  they reach the processor; callers may pass the canonical id or a
  ``PaymentReference``.

Callers that must always make progress (the search coordinator, the trip
cancel path) wrap ``release`` and treat a failure as "funds remain
authorized"; ``release_orphaned`` in the reconciliation sweep puts them
right later.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession

from ridehold.domain.entities import transition_authorization, utcnow
from ridehold.domain.enums import (
    AuthorizationState,
    EscrowStatus,
    HoldReason,
    PaymentStatus,
)
from ridehold.domain.errors import (
    AUTHORIZATION_NOT_FOUND,
    CAPTURE_EXCEEDS_AUTHORIZATION,
    REFUND_EXCEEDS_AMOUNT,
    TRIP_NOT_FOUND,
    ConsistencyError,
    RideholdError,
    ValidationError,
)
from ridehold.domain.payment_ref import PaymentReference, resolve_payment_reference
from ridehold.infrastructure.models import (
    EscrowModel,
    PaymentAuthorizationModel,
    TripModel,
)
from ridehold.infrastructure.processor import PaymentProcessor, refund_key
from ridehold.infrastructure.repositories import (
    AuthorizationRepository,
    EscrowRepository,
    TripRepository,
)

logger = logging.getLogger(__name__)

Ref = Union[PaymentReference, str]

_EPSILON = 0.005


def _ref_id(ref: Ref) -> str:
    return ref.id if isinstance(ref, PaymentReference) else str(ref)


class PaymentAuthorizationLedger:
    def __init__(
        self,
        session: AsyncSession,
        processor: PaymentProcessor,
        clock: Callable = utcnow,
    ):
        self.session = session
        self.processor = processor
        self.clock = clock
        self.trips = TripRepository(session)
        self.authorizations = AuthorizationRepository(session)
        self.escrows = EscrowRepository(session)

    # ── Reference resolution ──────────────────────────────────────

    def resolve_reference(self, trip: TripModel) -> Optional[PaymentReference]:
        return resolve_payment_reference(
            trip.payment_ref, trip.payment_method, self.processor.provider
        )

    async def live_authorization(
        self, trip: TripModel
    ) -> Optional[PaymentAuthorizationModel]:
        ref = self.resolve_reference(trip)
        if ref is not None:
            authorization = await self._locked(ref, trip)
            if authorization.state in (
                AuthorizationState.AUTHORIZED,
                AuthorizationState.CAPTURED,
            ):
                return authorization
        return await self.authorizations.get_live_for_trip(trip.id)

    # ── Operations ────────────────────────────────────────────────

    async def hold(
        self,
        trip_id: int,
        amount: float,
        reason: HoldReason,
        *,
        auto_hold: bool = False,
    ) -> Optional[PaymentAuthorizationModel]:
        """Authorize funds for a trip; for non-settlement reasons open escrow instead."""
        trip = await self._trip(trip_id)
        live = await self.live_authorization(trip)

        if reason is HoldReason.TRIP_REQUEST:
            if live is not None:
                logger.info("Trip %s already holds %s", trip_id, live.reference)
                return live
            return await self._authorize(trip, amount, reason)

        # Escrow only withholds what the trip already holds or has taken; it
        # never places a fresh charge on the rider.
        if live is None:
            logger.warning("Trip %s has no live authorization; escrow is bookkeeping only", trip_id)
        await self.open_escrow(trip, live, amount, reason, auto_hold=auto_hold)
        return live

    async def release(self, ref: Ref, trip_id: int, reason: str) -> AuthorizationState:
        trip = await self.trips.get_by_id(trip_id)
        authorization = await self._locked(ref, trip)
        if authorization.state is not AuthorizationState.AUTHORIZED:
            logger.info(
                "Release of %s skipped: already %s",
                authorization.reference,
                authorization.state.value,
            )
            return authorization.state

        await self.processor.release(authorization.reference)
        authorization.state = transition_authorization(
            authorization.state, AuthorizationState.RELEASED
        )
        authorization.release_reason = reason
        if trip is not None and trip.payment_status is PaymentStatus.AUTHORIZED:
            trip.payment_status = PaymentStatus.RELEASED
        await self.session.flush()
        logger.info("Released %s for trip %s (%s)", authorization.reference, trip_id, reason)
        return authorization.state

    async def release_for_trip(
        self, trip_id: int, reason: str
    ) -> Optional[AuthorizationState]:
        """Release whatever authorization the trip record points at."""
        trip = await self._trip(trip_id)
        ref = self.resolve_reference(trip)
        if ref is None:
            live = await self.authorizations.get_live_for_trip(trip_id)
            if live is None:
                logger.info("Trip %s has no payment reference to release", trip_id)
                return None
            ref = live.reference
        return await self.release(ref, trip_id, reason)

    async def capture(self, ref: Ref, amount: float) -> AuthorizationState:
        authorization = await self._locked(ref)
        if amount <= 0 or amount > authorization.amount + _EPSILON:
            raise ValidationError(
                f"Cannot capture {amount:.2f} of a {authorization.amount:.2f} hold",
                code=CAPTURE_EXCEEDS_AUTHORIZATION,
            )
        if authorization.state is not AuthorizationState.AUTHORIZED:
            logger.warning(
                "Capture of %s skipped: already %s",
                authorization.reference,
                authorization.state.value,
            )
            return authorization.state

        await self.processor.capture(authorization.reference, amount)
        authorization.state = transition_authorization(
            authorization.state, AuthorizationState.CAPTURED
        )
        authorization.captured_amount = round(amount, 2)
        await self.session.flush()
        return authorization.state

    async def void(self, ref: Ref, reason: str) -> AuthorizationState:
        authorization = await self._locked(ref)
        if authorization.state in (AuthorizationState.RELEASED, AuthorizationState.VOIDED):
            return authorization.state

        if authorization.state is AuthorizationState.CAPTURED:
            refundable = round(authorization.captured_amount - authorization.refunded_amount, 2)
            if refundable > 0:
                await self._processor_refund(authorization, refundable)
        else:
            await self.processor.release(authorization.reference)

        authorization.state = transition_authorization(
            authorization.state, AuthorizationState.VOIDED
        )
        authorization.release_reason = reason
        await self.session.flush()
        logger.info("Voided %s (%s)", authorization.reference, reason)
        return authorization.state

    async def refund(self, ref: Ref, amount: float) -> float:
        """Return *amount* to the rider.

        Against a capture this is a processor refund.  Against an
        authorization that was never captured, the rider is simply charged
        less: the remainder is captured, or the hold released outright.
        ``refunded_amount`` only counts money the processor sent back, so
        ``captured_amount - refunded_amount`` is always what the rider paid.
        """
        authorization = await self._locked(ref)
        if amount <= 0:
            return 0.0

        if authorization.state is AuthorizationState.CAPTURED:
            refundable = authorization.captured_amount - authorization.refunded_amount
            if amount > refundable + _EPSILON:
                raise ValidationError(
                    f"Cannot refund {amount:.2f}, only {refundable:.2f} is refundable",
                    code=REFUND_EXCEEDS_AMOUNT,
                )
            await self._processor_refund(authorization, amount)
        elif authorization.state is AuthorizationState.AUTHORIZED:
            remainder = round(authorization.amount - amount, 2)
            if remainder > 0:
                await self.processor.capture(authorization.reference, remainder)
                authorization.captured_amount = remainder
                new_state = AuthorizationState.CAPTURED
            else:
                await self.processor.release(authorization.reference)
                amount = authorization.amount
                new_state = AuthorizationState.RELEASED
            authorization.state = transition_authorization(authorization.state, new_state)
        else:
            logger.warning(
                "Refund against %s skipped: already %s",
                authorization.reference,
                authorization.state.value,
            )
            return 0.0

        await self.session.flush()
        return round(amount, 2)

    async def settle_to_driver(self, ref: Ref) -> AuthorizationState:
        """Make sure the driver gets paid: capture a still-uncaptured hold in full."""
        authorization = await self._locked(ref)
        if authorization.state is AuthorizationState.AUTHORIZED:
            return await self.capture(ref, authorization.amount)
        return authorization.state

    async def release_orphaned(self) -> int:
        """Release authorizations left behind on cancelled trips."""
        released = 0
        for trip in await self.trips.get_cancelled_with_live_authorization():
            for authorization in await self.authorizations.list_for_trip(trip.id):
                if authorization.state is not AuthorizationState.AUTHORIZED:
                    continue
                reference = authorization.reference
                try:
                    async with self.session.begin_nested():
                        await self.release(reference, trip.id, "Reconciliation: trip cancelled")
                    released += 1
                except RideholdError as exc:
                    logger.warning(
                        "Reconciliation could not release %s (%s)", reference, exc.code
                    )
        return released

    # ── Escrow ────────────────────────────────────────────────────

    async def open_escrow(
        self,
        trip: TripModel,
        authorization: Optional[PaymentAuthorizationModel],
        amount: float,
        reason: HoldReason,
        *,
        auto_hold: bool = False,
    ) -> EscrowModel:
        escrow = await self.escrows.get_held_for_trip(trip.id)
        if escrow is None:
            escrow = await self.escrows.create(
                EscrowModel(
                    trip_id=trip.id,
                    authorization_ref=authorization.reference if authorization else None,
                    amount=round(amount, 2),
                    status=EscrowStatus.HELD,
                    hold_reason=reason.value,
                )
            )
            logger.info("Payment held for trip %s, escrow %s", trip.id, escrow.id)

        trip.payment_status = PaymentStatus.HELD
        trip.payment_hold_reason = reason.value
        trip.payment_held_at = self.clock()
        trip.escrow_id = escrow.id
        trip.auto_hold = trip.auto_hold or auto_hold
        await self.session.flush()
        return escrow

    # ── Internals ─────────────────────────────────────────────────

    async def _trip(self, trip_id: int) -> TripModel:
        trip = await self.trips.get_for_update(trip_id)
        if trip is None:
            raise ConsistencyError(f"Trip {trip_id} not found", code=TRIP_NOT_FOUND)
        return trip

    async def _authorize(
        self, trip: TripModel, amount: float, reason: HoldReason
    ) -> PaymentAuthorizationModel:
        reference = await self.processor.authorize(amount, trip.currency)
        authorization = await self.authorizations.create(
            PaymentAuthorizationModel(
                reference=reference,
                provider=self.processor.provider,
                trip_id=trip.id,
                amount=round(amount, 2),
                currency=trip.currency,
                state=AuthorizationState.AUTHORIZED,
                hold_reason=reason.value,
            )
        )
        trip.payment_ref = reference
        if trip.payment_status in (PaymentStatus.PENDING, PaymentStatus.RELEASED):
            trip.payment_status = PaymentStatus.AUTHORIZED
        await self.session.flush()
        logger.info("Authorized %.2f %s for trip %s as %s", amount, trip.currency, trip.id, reference)
        return authorization

    async def _processor_refund(
        self, authorization: PaymentAuthorizationModel, amount: float
    ) -> None:
        # Keyed on what was refunded before, so a retry replays and a second
        # refund of the same amount does not.
        key = refund_key(authorization.reference, authorization.refunded_amount, amount)
        await self.processor.refund(authorization.reference, amount, key=key)
        authorization.refunded_amount = round(authorization.refunded_amount + amount, 2)

    async def _locked(
        self, ref: Ref, trip: Optional[TripModel] = None
    ) -> PaymentAuthorizationModel:
        reference = _ref_id(ref)
        authorization = await self.authorizations.get_by_reference_for_update(reference)
        if authorization is not None:
            return authorization
        if trip is None:
            raise ConsistencyError(
                f"Authorization {reference} not found", code=AUTHORIZATION_NOT_FOUND
            )
        # Written by an older client that only stored the reference on the trip.
        logger.info("Adopting untracked authorization %s for trip %s", reference, trip.id)
        provider = ref.provider if isinstance(ref, PaymentReference) else self.processor.provider
        return await self.authorizations.create(
            PaymentAuthorizationModel(
                reference=reference,
                provider=provider,
                trip_id=trip.id,
                amount=round(trip.amount, 2),
                currency=trip.currency,
                state=AuthorizationState.AUTHORIZED,
                hold_reason=HoldReason.TRIP_REQUEST.value,
            )
        )
