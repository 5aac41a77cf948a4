"""
Per-trip status change feed over Redis pub/sub.

The trip directory publishes a ``TripStatusMessage`` on ``trip:{id}:status``
after every committed status change; search sessions subscribe to it.
Messages are validated on the way in and malformed ones are dropped with a
warning instead of being pushed further inward.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Awaitable, Callable, Optional

import redis.asyncio as aioredis
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from ridehold.domain.entities import utcnow
from ridehold.domain.enums import CancelledBy, TripStatus
from ridehold.domain.errors import MalformedTripRecord

logger = logging.getLogger(__name__)


class TripStatusMessage(BaseModel):
    trip_id: int
    status: TripStatus
    cancelled_by: Optional[CancelledBy] = None
    cancel_reason_code: Optional[str] = None
    updated_at: datetime


StatusCallback = Callable[[TripStatusMessage], Awaitable[None]]


def channel_for(trip_id: int) -> str:
    return f"trip:{trip_id}:status"


def parse_message(raw: str | bytes) -> TripStatusMessage:
    try:
        return TripStatusMessage.model_validate_json(raw)
    except PydanticValidationError as exc:
        raise MalformedTripRecord(f"Rejected trip status message: {exc}") from exc


async def publish_status(
    client: aioredis.Redis,
    trip_id: int,
    status: TripStatus,
    cancelled_by: Optional[CancelledBy] = None,
    cancel_reason_code: Optional[str] = None,
) -> None:
    message = TripStatusMessage(
        trip_id=trip_id,
        status=status,
        cancelled_by=cancelled_by,
        cancel_reason_code=cancel_reason_code,
        updated_at=utcnow(),
    )
    await client.publish(channel_for(trip_id), message.model_dump_json())


class Subscription(ABC):
    @abstractmethod
    async def close(self) -> None: ...


class TripFeed(ABC):
    @abstractmethod
    async def subscribe(self, trip_id: int, callback: StatusCallback) -> Subscription: ...


class RedisSubscription(Subscription):
    def __init__(self, pubsub, channel: str, task: asyncio.Task):
        self.pubsub = pubsub
        self.channel = channel
        self.task = task

    async def close(self) -> None:
        self.task.cancel()
        try:
            await self.task
        except asyncio.CancelledError:
            pass
        await self.pubsub.unsubscribe(self.channel)
        await self.pubsub.aclose()


class RedisTripFeed(TripFeed):
    def __init__(self, client: aioredis.Redis):
        self.redis = client

    async def subscribe(self, trip_id: int, callback: StatusCallback) -> Subscription:
        channel = channel_for(trip_id)
        pubsub = self.redis.pubsub()
        await pubsub.subscribe(channel)
        task = asyncio.create_task(self._read(pubsub, callback))
        logger.info("Subscribed to %s", channel)
        return RedisSubscription(pubsub, channel, task)

    @staticmethod
    async def _read(pubsub, callback: StatusCallback) -> None:
        async for raw in pubsub.listen():
            if raw.get("type") != "message":
                continue
            try:
                message = parse_message(raw["data"])
            except MalformedTripRecord:
                logger.warning("Dropping malformed trip status message", exc_info=True)
                continue
            try:
                await callback(message)
            except Exception:
                logger.exception("Trip status callback failed for trip %s", message.trip_id)
