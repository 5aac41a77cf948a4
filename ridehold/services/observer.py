"""
Trip status observer.

Holds at most one feed subscription at a time.  Watching the trip that is
already watched is a no-op; watching a different trip tears the old
subscription down before the new one is opened.  Repeated deliveries of
the status last seen are dropped, everything else is classified and handed
to the listener.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Optional

from ridehold.domain.enums import TripStatus
from ridehold.domain.status_events import TripEvent, classify
from ridehold.infrastructure.trip_feed import Subscription, TripFeed, TripStatusMessage

logger = logging.getLogger(__name__)

TripEventListener = Callable[[TripEvent], Awaitable[None]]


class TripStatusObserver:
    def __init__(self, feed: TripFeed):
        self.feed = feed
        self.trip_id: Optional[int] = None
        self.last_status: Optional[TripStatus] = None
        self._subscription: Optional[Subscription] = None
        self._listener: Optional[TripEventListener] = None

    async def watch(self, trip_id: int, listener: TripEventListener) -> None:
        if self.trip_id == trip_id and self._subscription is not None:
            return
        await self.close()
        self.trip_id = trip_id
        self._listener = listener
        self._subscription = await self.feed.subscribe(trip_id, self._on_message)

    async def _on_message(self, message: TripStatusMessage) -> None:
        if message.trip_id != self.trip_id or self._listener is None:
            return
        if message.status is self.last_status:
            return
        self.last_status = message.status
        event = classify(
            message.trip_id,
            message.status,
            cancelled_by=message.cancelled_by,
            reason_code=message.cancel_reason_code,
        )
        logger.debug("Trip %s status %s -> %s", message.trip_id, message.status.value, event.kind.value)
        await self._listener(event)

    async def close(self) -> None:
        subscription, self._subscription = self._subscription, None
        self.trip_id = None
        self.last_status = None
        self._listener = None
        if subscription is not None:
            await subscription.close()
