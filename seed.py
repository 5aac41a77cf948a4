"""
Seed script -- populates the database with sample data for reviewers.

Run after migrations:
    python seed.py

Creates:
  - 4 riders and 3 drivers
  - 5 sample trips covering the payment paths:
      * completed, captured, still inside the dispute window
      * completed with only a legacy ``provider:id`` payment method
      * completed, payment HELD for more than 24 h (picked up by the sweep)
      * cancelled with its authorization released
      * still searching for a driver
"""

import asyncio
from datetime import timedelta

from sqlalchemy import text

from ridehold.config import settings
from ridehold.domain.entities import utcnow
from ridehold.domain.enums import (
    AuthorizationState,
    CancelledBy,
    CancelReasonCode,
    EscrowStatus,
    HoldReason,
    PaymentStatus,
    TripStatus,
)
from ridehold.infrastructure.database import async_session_factory
from ridehold.infrastructure.models import (
    EscrowModel,
    PaymentAuthorizationModel,
    TripModel,
    UserModel,
)

# George Town, Grand Cayman (approx)
AIRPORT = {"latitude": 19.2928, "longitude": -81.3577, "address": "Owen Roberts Intl"}
SEVEN_MILE = {"latitude": 19.3340, "longitude": -81.3860, "address": "Seven Mile Beach"}
CAMANA_BAY = {"latitude": 19.3260, "longitude": -81.3780, "address": "Camana Bay"}

USERS = [
    {"name": "Alicia Ebanks", "email": "alicia@example.com", "role": "rider"},
    {"name": "Marcus Bodden", "email": "marcus@example.com", "role": "rider"},
    {"name": "Tanya Rivers", "email": "tanya@example.com", "role": "rider"},
    {"name": "Devon McLaughlin", "email": "devon@example.com", "role": "rider"},
    {"name": "Kurt Connolly", "email": "kurt@example.com", "role": "driver"},
    {"name": "Shanice Whittaker", "email": "shanice@example.com", "role": "driver"},
    {"name": "Ray Solomon", "email": "ray@example.com", "role": "driver"},
]


def _trip(rider, driver, status, amount, **extra) -> TripModel:
    return TripModel(
        rider_id=rider.id,
        driver_id=driver.id if driver else None,
        pickup=AIRPORT,
        destination=extra.pop("destination", SEVEN_MILE),
        stops=[],
        estimated_amount=amount,
        currency=settings.currency,
        status=status,
        **extra,
    )


async def seed():
    async with async_session_factory() as session:
        # Check if already seeded
        result = await session.execute(text("SELECT count(*) FROM users"))
        if result.scalar() > 0:
            print("Database already seeded. Skipping.")
            return

        # ── Users ─────────────────────────────────────────────────────
        users = [UserModel(**u) for u in USERS]
        session.add_all(users)
        await session.flush()
        riders, drivers = users[:4], users[4:]
        print(f"  Created {len(users)} users")

        now = utcnow()

        # ── Trips ─────────────────────────────────────────────────────
        captured = _trip(
            riders[0], drivers[0], TripStatus.COMPLETED, 32.50,
            final_amount=32.50,
            payment_ref="pi_seed_captured",
            payment_status=PaymentStatus.COMPLETED,
            completed_at=now - timedelta(hours=3),
        )
        legacy = _trip(
            riders[1], drivers[1], TripStatus.COMPLETED, 18.00,
            destination=CAMANA_BAY,
            payment_method="stripe:pi_seed_legacy",
            payment_status=PaymentStatus.AUTHORIZED,
            completed_at=now - timedelta(hours=1),
        )
        held = _trip(
            riders[2], drivers[2], TripStatus.COMPLETED, 45.00,
            final_amount=45.00,
            payment_ref="pi_seed_held",
            payment_status=PaymentStatus.HELD,
            payment_hold_reason=HoldReason.SOS_TRIGGERED.value,
            payment_held_at=now - timedelta(hours=30),
            auto_hold=True,
            completed_at=now - timedelta(hours=31),
        )
        cancelled = _trip(
            riders[3], None, TripStatus.CANCELLED, 21.00,
            payment_ref="pi_seed_released",
            payment_status=PaymentStatus.RELEASED,
            cancelled_by=CancelledBy.SYSTEM,
            cancel_reason_code=CancelReasonCode.NO_DRIVERS_AVAILABLE.value,
            cancellation_reason="No drivers available after multiple attempts",
            cancelled_at=now - timedelta(minutes=20),
            search_attempt=6,
        )
        searching = _trip(
            riders[0], None, TripStatus.SEARCHING, 27.75,
            destination=CAMANA_BAY,
            payment_ref="pi_seed_searching",
            payment_status=PaymentStatus.AUTHORIZED,
            search_attempt=1,
        )
        trips = [captured, legacy, held, cancelled, searching]
        session.add_all(trips)
        await session.flush()
        print(f"  Created {len(trips)} trips")

        # ── Authorizations (the legacy trip is adopted on first touch) ─
        session.add_all(
            [
                PaymentAuthorizationModel(
                    reference="pi_seed_captured", provider="stripe", trip_id=captured.id,
                    amount=32.50, currency=settings.currency, captured_amount=32.50,
                    state=AuthorizationState.CAPTURED, hold_reason=HoldReason.TRIP_REQUEST.value,
                ),
                PaymentAuthorizationModel(
                    reference="pi_seed_held", provider="stripe", trip_id=held.id,
                    amount=45.00, currency=settings.currency,
                    state=AuthorizationState.AUTHORIZED, hold_reason=HoldReason.TRIP_REQUEST.value,
                ),
                PaymentAuthorizationModel(
                    reference="pi_seed_released", provider="stripe", trip_id=cancelled.id,
                    amount=21.00, currency=settings.currency,
                    state=AuthorizationState.RELEASED, hold_reason=HoldReason.TRIP_REQUEST.value,
                    release_reason="No drivers available",
                ),
                PaymentAuthorizationModel(
                    reference="pi_seed_searching", provider="stripe", trip_id=searching.id,
                    amount=27.75, currency=settings.currency,
                    state=AuthorizationState.AUTHORIZED, hold_reason=HoldReason.TRIP_REQUEST.value,
                ),
            ]
        )

        # ── Escrow for the SOS hold ───────────────────────────────────
        escrow = EscrowModel(
            trip_id=held.id,
            authorization_ref="pi_seed_held",
            amount=45.00,
            status=EscrowStatus.HELD,
            hold_reason=HoldReason.SOS_TRIGGERED.value,
        )
        session.add(escrow)
        await session.flush()
        held.escrow_id = escrow.id
        print("  Created 4 authorizations and 1 escrow")

        await session.commit()
        print("Seed complete.")


if __name__ == "__main__":
    asyncio.run(seed())
