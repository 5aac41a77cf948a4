"""
Shared test fixtures.

Uses a throw-away SQLite database per test (via aiosqlite) so tests run
without Docker / PostgreSQL / Redis.  The processor, dispatch backend and
status feed are replaced by in-process fakes that record what they were
asked to do.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from ridehold.domain.enums import PaymentStatus, TripStatus
from ridehold.domain.errors import TransientNetworkError
from ridehold.infrastructure.database import Base
from ridehold.infrastructure.models import TripModel, UserModel
from ridehold.infrastructure.processor import PaymentProcessor
from ridehold.infrastructure.trip_feed import Subscription, TripFeed
from ridehold.services.ledger import PaymentAuthorizationLedger

RIDER_ID = 1
DRIVER_ID = 2

PICKUP = {"latitude": 19.2928, "longitude": -81.3577, "address": "Owen Roberts Intl"}
DESTINATION = {"latitude": 19.3340, "longitude": -81.3860, "address": "Seven Mile Beach"}


# ── Fakes ─────────────────────────────────────────────────────────────


class FakeClock:
    """Injectable clock; starts at a fixed instant and only moves when told."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeProcessor(PaymentProcessor):
    provider = "stripe"

    def __init__(self):
        self.calls: list[tuple] = []
        self.fail_release = False
        self.refund_keys: list[Optional[str]] = []
        self._seq = 0

    async def authorize(self, amount: float, currency: str) -> str:
        self._seq += 1
        ref = f"pi_test_{self._seq}"
        self.calls.append(("authorize", ref, amount))
        return ref

    async def capture(self, ref: str, amount: float) -> None:
        self.calls.append(("capture", ref, amount))

    async def release(self, ref: str) -> None:
        if self.fail_release:
            raise TransientNetworkError("processor unavailable")
        self.calls.append(("release", ref))

    async def refund(self, ref: str, amount: float, key: Optional[str] = None) -> None:
        self.calls.append(("refund", ref, amount))
        self.refund_keys.append(key)

    def count(self, op: str) -> int:
        return sum(1 for call in self.calls if call[0] == op)

    def of(self, op: str) -> list[tuple]:
        return [call for call in self.calls if call[0] == op]


class FakeSubscription(Subscription):
    def __init__(self):
        self.closed = False

    async def close(self) -> None:
        self.closed = True


class FakeFeed(TripFeed):
    def __init__(self):
        self.callbacks: dict[int, object] = {}
        self.subscriptions: list[tuple[int, FakeSubscription]] = []

    async def subscribe(self, trip_id, callback):
        subscription = FakeSubscription()
        self.callbacks[trip_id] = callback
        self.subscriptions.append((trip_id, subscription))
        return subscription

    async def push(self, message) -> None:
        await self.callbacks[message.trip_id](message)


# ── Database ──────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker, None]:
    """Create tables in a fresh SQLite file, yield a session factory, then dispose."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with async_sessionmaker(engine, expire_on_commit=False)() as session:
        session.add_all(
            [
                UserModel(id=RIDER_ID, name="Test Rider", email="rider@example.com"),
                UserModel(
                    id=DRIVER_ID, name="Test Driver", email="driver@example.com", role="driver"
                ),
            ]
        )
        await session.commit()

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def processor() -> FakeProcessor:
    return FakeProcessor()


@pytest.fixture
def ledger(db_session, processor, clock) -> PaymentAuthorizationLedger:
    return PaymentAuthorizationLedger(db_session, processor, clock=clock)


async def make_trip(session: AsyncSession, **overrides) -> TripModel:
    values = {
        "rider_id": RIDER_ID,
        "pickup": PICKUP,
        "destination": DESTINATION,
        "stops": [],
        "estimated_amount": 25.0,
        "currency": "KYD",
        "status": TripStatus.SEARCHING,
        "payment_status": PaymentStatus.PENDING,
    }
    values.update(overrides)
    trip = TripModel(**values)
    session.add(trip)
    await session.flush()
    await session.refresh(trip)
    return trip
