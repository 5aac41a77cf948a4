"""FastAPI dependency injection helpers."""

from datetime import datetime
from typing import Callable

import redis.asyncio as aioredis
from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from ridehold.domain.entities import utcnow
from ridehold.infrastructure.database import async_session_factory
from ridehold.infrastructure.processor import PaymentProcessor
from ridehold.services.disputes import DisputeResolutionEngine
from ridehold.services.ledger import PaymentAuthorizationLedger
from ridehold.services.sessions import SearchSessionRegistry
from ridehold.services.trips import TripService


async def get_db() -> AsyncSession:  # type: ignore[misc]
    """Yield an async DB session; commit on success, rollback on error."""
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def get_clock() -> Callable[[], datetime]:
    return utcnow


def get_processor(request: Request) -> PaymentProcessor:
    return request.app.state.processor


def get_redis_client(request: Request) -> aioredis.Redis:
    return request.app.state.redis


def get_sessions(request: Request) -> SearchSessionRegistry:
    return request.app.state.sessions


def get_ledger(
    db: AsyncSession = Depends(get_db),
    processor: PaymentProcessor = Depends(get_processor),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> PaymentAuthorizationLedger:
    return PaymentAuthorizationLedger(db, processor, clock=clock)


def get_trip_service(
    db: AsyncSession = Depends(get_db),
    ledger: PaymentAuthorizationLedger = Depends(get_ledger),
    redis: aioredis.Redis = Depends(get_redis_client),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> TripService:
    return TripService(db, ledger, redis=redis, clock=clock)


def get_dispute_engine(
    db: AsyncSession = Depends(get_db),
    ledger: PaymentAuthorizationLedger = Depends(get_ledger),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> DisputeResolutionEngine:
    return DisputeResolutionEngine(db, ledger, clock=clock)
