"""
Trip directory: the authoritative record of a trip's lifecycle.

Every status change goes through ``transition_trip`` on a row-locked trip
and is queued for publication on the trip's status channel.  Publication
happens in ``publish_pending`` once the caller has committed, so a
subscriber never sees a status that was rolled back.

``cancel_trip`` always releases the rider's authorization; a release
failure is logged and left for the reconciliation sweep, never surfaced
as a failed cancel.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncSession

from ridehold.config import settings
from ridehold.domain.entities import transition_trip, utcnow
from ridehold.domain.enums import (
    CancelledBy,
    CancelReasonCode,
    HoldReason,
    PaymentStatus,
    TripStatus,
    VehicleClass,
)
from ridehold.domain.errors import (
    TRIP_NOT_FOUND,
    ConsistencyError,
    TransientNetworkError,
    ValidationError,
)
from ridehold.infrastructure.models import TripModel
from ridehold.infrastructure.repositories import TripRepository
from ridehold.infrastructure.trip_feed import publish_status
from .ledger import PaymentAuthorizationLedger

logger = logging.getLogger(__name__)


class TripService:
    def __init__(
        self,
        session: AsyncSession,
        ledger: PaymentAuthorizationLedger,
        redis: Optional[aioredis.Redis] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session = session
        self.ledger = ledger
        self.redis = redis
        self.clock = clock
        self.repo = TripRepository(session)
        self._pending: list[tuple] = []

    async def create_trip(
        self,
        rider_id: int,
        pickup: dict,
        destination: dict,
        estimated_amount: float,
        vehicle_class: VehicleClass = VehicleClass.STANDARD,
        stops: Optional[list[dict]] = None,
        payment_method: Optional[str] = None,
        currency: str = settings.currency,
        idempotency_key: Optional[str] = None,
    ) -> TripModel:
        """Record the request, authorize the fare and open the search."""
        if idempotency_key:
            existing = await self.repo.get_by_idempotency_key(idempotency_key)
            if existing is not None:
                return existing

        trip = await self.repo.create(
            TripModel(
                rider_id=rider_id,
                pickup=pickup,
                destination=destination,
                stops=stops or [],
                vehicle_class=vehicle_class,
                estimated_amount=round(estimated_amount, 2),
                currency=currency,
                status=TripStatus.REQUESTED,
                payment_method=payment_method,
                payment_status=PaymentStatus.PENDING,
                search_attempt=0,
                idempotency_key=idempotency_key,
            )
        )
        await self.ledger.hold(trip.id, trip.estimated_amount, HoldReason.TRIP_REQUEST)

        trip.status = transition_trip(trip.status, TripStatus.SEARCHING)
        self._queue(trip)
        await self.session.flush()
        logger.info("Trip %s requested by rider %s", trip.id, rider_id)
        return trip

    async def get_trip(self, trip_id: int) -> TripModel:
        trip = await self.repo.get_by_id(trip_id)
        if trip is None:
            raise ConsistencyError(f"Trip {trip_id} not found", code=TRIP_NOT_FOUND)
        return trip

    async def update_status(
        self, trip_id: int, status: TripStatus, driver_id: Optional[int] = None
    ) -> TripModel:
        if status is TripStatus.CANCELLED:
            return await self.cancel_trip(
                trip_id,
                CancelledBy.DRIVER,
                "Driver cancelled",
                CancelReasonCode.DRIVER_CANCELLED,
            )

        trip = await self._locked(trip_id)
        if trip.status is status:
            return trip
        trip.status = transition_trip(trip.status, status)
        if driver_id is not None:
            trip.driver_id = driver_id
        if status is TripStatus.COMPLETED:
            trip.completed_at = self.clock()
        self._queue(trip)
        await self.session.flush()
        logger.info("Trip %s -> %s", trip_id, status.value)
        return trip

    async def cancel_trip(
        self,
        trip_id: int,
        cancelled_by: CancelledBy,
        reason_text: str,
        reason_code: CancelReasonCode,
    ) -> TripModel:
        trip = await self._locked(trip_id)
        if trip.status is TripStatus.CANCELLED:
            logger.info("Trip %s already cancelled", trip_id)
            return trip

        trip.status = transition_trip(trip.status, TripStatus.CANCELLED)
        trip.cancelled_by = cancelled_by
        trip.cancel_reason_code = reason_code.value
        trip.cancellation_reason = reason_text
        trip.cancelled_at = self.clock()
        await self.session.flush()

        try:
            await self.ledger.release_for_trip(trip_id, reason_text)
        except (TransientNetworkError, ValidationError):
            logger.warning(
                "Trip %s cancelled but its authorization could not be released",
                trip_id,
                exc_info=True,
            )

        self._queue(trip)
        logger.info(
            "Trip %s cancelled by %s (%s)", trip_id, cancelled_by.value, reason_code.value
        )
        return trip

    async def settle_trip(
        self, trip_id: int, final_amount: Optional[float] = None
    ) -> TripModel:
        """Capture the fare and complete the trip."""
        trip = await self._locked(trip_id)
        if trip.status is TripStatus.IN_PROGRESS:
            trip.status = transition_trip(trip.status, TripStatus.AWAITING_SETTLEMENT)
        next_status = transition_trip(trip.status, TripStatus.COMPLETED)

        if final_amount is not None:
            trip.final_amount = round(final_amount, 2)
        authorization = await self.ledger.live_authorization(trip)
        if authorization is not None:
            await self.ledger.capture(authorization.reference, trip.amount)
        else:
            logger.warning("Trip %s settled without a live authorization", trip_id)

        trip.status = next_status
        trip.completed_at = self.clock()
        if trip.payment_status is not PaymentStatus.HELD:
            trip.payment_status = PaymentStatus.COMPLETED
        self._queue(trip)
        await self.session.flush()
        logger.info("Trip %s settled at %.2f %s", trip_id, trip.amount, trip.currency)
        return trip

    async def record_search_attempt(self, trip_id: int) -> int:
        trip = await self._locked(trip_id)
        trip.search_attempt += 1
        await self.session.flush()
        return trip.search_attempt

    async def publish_pending(self) -> None:
        """Publish queued status changes; call after the session has committed."""
        pending, self._pending = self._pending, []
        if self.redis is None:
            return
        for trip_id, status, cancelled_by, reason_code in pending:
            try:
                await publish_status(
                    self.redis,
                    trip_id,
                    status,
                    cancelled_by=cancelled_by,
                    cancel_reason_code=reason_code,
                )
            except Exception:
                logger.exception("Could not publish status of trip %s", trip_id)

    def _queue(self, trip: TripModel) -> None:
        self._pending.append(
            (trip.id, trip.status, trip.cancelled_by, trip.cancel_reason_code)
        )

    async def _locked(self, trip_id: int) -> TripModel:
        trip = await self.repo.get_for_update(trip_id)
        if trip is None:
            raise ConsistencyError(f"Trip {trip_id} not found", code=TRIP_NOT_FOUND)
        return trip
