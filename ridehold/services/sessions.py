"""
Search sessions.

``SearchSessionRegistry`` owns one coordinator and one status observer per
trip that is currently looking for a driver.  Sessions are removed once
their search reaches MATCHED or CANCELLED; the final state stays readable.

The production collaborators open their own database session per call and
commit it, since they run outside any request.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import async_sessionmaker

from ridehold.domain.enums import CancelledBy, CancelReasonCode
from ridehold.domain.errors import ConsistencyError
from ridehold.domain.search import RIDER_CANCEL_TEXT, SearchPolicy, SearchState
from ridehold.domain.status_events import TripEvent, classify
from ridehold.infrastructure.database import async_session_factory
from ridehold.infrastructure.dispatch_queue import enqueue_match_request
from ridehold.infrastructure.processor import PaymentProcessor
from ridehold.infrastructure.repositories import TripRepository
from ridehold.infrastructure.trip_feed import TripFeed
from .coordinator import AuthorizationReleaser, DispatchClient, MatchRequestCoordinator
from .ledger import PaymentAuthorizationLedger
from .observer import TripStatusObserver
from .trips import TripService

logger = logging.getLogger(__name__)


class QueueDispatchClient(DispatchClient):
    """Match requests go to the dispatch queue; cancels go through the trip directory."""

    def __init__(
        self,
        redis: aioredis.Redis,
        processor: PaymentProcessor,
        session_factory: async_sessionmaker = async_session_factory,
    ):
        self.redis = redis
        self.processor = processor
        self.session_factory = session_factory

    def _trips(self, session) -> TripService:
        return TripService(
            session, PaymentAuthorizationLedger(session, self.processor), redis=self.redis
        )

    async def resend_match_request(self, trip_id: int, expand_search: bool) -> None:
        async with self.session_factory() as session:
            attempt = await self._trips(session).record_search_attempt(trip_id)
            await session.commit()
        await enqueue_match_request(self.redis, trip_id, expand_search, attempt)

    async def cancel_trip(
        self,
        trip_id: int,
        cancelled_by: CancelledBy,
        reason_text: str,
        reason_code: CancelReasonCode,
    ) -> None:
        async with self.session_factory() as session:
            trips = self._trips(session)
            await trips.cancel_trip(trip_id, cancelled_by, reason_text, reason_code)
            await session.commit()
        await trips.publish_pending()

    async def fetch_status(self, trip_id: int) -> Optional[TripEvent]:
        async with self.session_factory() as session:
            trip = await TripRepository(session).get_by_id(trip_id)
            if trip is None:
                return None
            return classify(
                trip.id,
                trip.status,
                cancelled_by=trip.cancelled_by,
                reason_code=trip.cancel_reason_code,
            )


class LedgerReleaser(AuthorizationReleaser):
    def __init__(
        self,
        processor: PaymentProcessor,
        session_factory: async_sessionmaker = async_session_factory,
    ):
        self.processor = processor
        self.session_factory = session_factory

    async def release(self, trip_id: int, reason: str) -> None:
        async with self.session_factory() as session:
            ledger = PaymentAuthorizationLedger(session, self.processor)
            await ledger.release_for_trip(trip_id, reason)
            await session.commit()


class SearchSessionRegistry:
    def __init__(
        self,
        dispatch: DispatchClient,
        payments: AuthorizationReleaser,
        feed: TripFeed,
        policy: Optional[SearchPolicy] = None,
    ):
        self.dispatch = dispatch
        self.payments = payments
        self.feed = feed
        self.policy = policy or SearchPolicy.from_settings()
        self._sessions: dict[int, tuple[MatchRequestCoordinator, TripStatusObserver]] = {}
        self._finished: dict[int, SearchState] = {}
        self._cleanup: set[asyncio.Task] = set()

    async def start(self, trip_id: int) -> SearchState:
        if trip_id in self._sessions:
            return self._sessions[trip_id][0].state

        coordinator = MatchRequestCoordinator(
            trip_id, self.dispatch, self.payments, policy=self.policy
        )
        observer = TripStatusObserver(self.feed)
        self._sessions[trip_id] = (coordinator, observer)
        coordinator.subscribe(lambda state: self._on_state(trip_id, state))

        await observer.watch(trip_id, coordinator.on_status_change)
        return await coordinator.start()

    def get(self, trip_id: int) -> MatchRequestCoordinator:
        try:
            return self._sessions[trip_id][0]
        except KeyError:
            raise ConsistencyError(
                f"No active search for trip {trip_id}", code="SEARCH_NOT_FOUND"
            ) from None

    def state(self, trip_id: int) -> SearchState:
        if trip_id in self._sessions:
            return self._sessions[trip_id][0].state
        if trip_id in self._finished:
            return self._finished[trip_id]
        raise ConsistencyError(f"No search for trip {trip_id}", code="SEARCH_NOT_FOUND")

    async def manual_retry(self, trip_id: int) -> SearchState:
        return await self.get(trip_id).manual_retry()

    async def decline_retry(self, trip_id: int) -> SearchState:
        return await self.get(trip_id).decline_retry()

    async def cancel(self, trip_id: int, reason: str = RIDER_CANCEL_TEXT) -> SearchState:
        return await self.get(trip_id).cancel(reason)

    async def stop(self, trip_id: int) -> None:
        entry = self._sessions.pop(trip_id, None)
        if entry is None:
            return
        coordinator, observer = entry
        self._finished[trip_id] = coordinator.state
        await observer.close()
        await coordinator.close()
        logger.info("Search session for trip %s closed (%s)", trip_id, coordinator.state.phase.value)

    async def close_all(self) -> None:
        for trip_id in list(self._sessions):
            await self.stop(trip_id)
        if self._cleanup:
            await asyncio.gather(*self._cleanup, return_exceptions=True)

    def _on_state(self, trip_id: int, state: SearchState) -> None:
        if not state.terminal:
            return
        self._finished[trip_id] = state
        # The terminal event may be running inside the feed reader or a
        # coordinator task, so teardown happens on a task of its own.
        task = asyncio.get_running_loop().create_task(self.stop(trip_id))
        self._cleanup.add(task)
        task.add_done_callback(self._cleanup.discard)
