"""
Match-request coordinator
=========================

Async runtime around the pure search machine in ``domain.search``.  One
coordinator owns the search for one trip: it feeds events into
``transition`` and carries out the effects that come back.

Runtime rules
-------------
* The deadline and the in-flight match request each run as an
  ``asyncio.Task``; starting a new one cancels the previous one.  A task is
  never asked to cancel itself.
* When a deadline fires the backend status is read first.  A match or a
  cancellation that the feed has not delivered yet is applied instead of
  the timeout.
* Collaborator failures (dispatch, payments) are logged and the search
  carries on; the next deadline is the retry point.
* Listeners registered with ``subscribe`` receive every new state.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Callable, Optional

from ridehold.domain.enums import CancelledBy, CancelReasonCode
from ridehold.domain.search import (
    RIDER_CANCEL_TEXT,
    Cancel,
    CancelDeadline,
    CancelTrip,
    DeclineRetry,
    DiscardInflight,
    DispatchMatchRequest,
    Effect,
    Event,
    ManualRetry,
    NotifyUser,
    PauseDeadline,
    PromptUser,
    ReleaseAuthorization,
    ResendCompleted,
    SearchPolicy,
    SearchState,
    Start,
    StartDeadline,
    StatusChanged,
    Timeout,
    transition,
)
from ridehold.domain.status_events import TripEvent, TripEventKind

logger = logging.getLogger(__name__)

StateListener = Callable[[SearchState], None]


class DispatchClient(ABC):
    """What the coordinator needs from the dispatch backend."""

    @abstractmethod
    async def resend_match_request(self, trip_id: int, expand_search: bool) -> None: ...

    @abstractmethod
    async def cancel_trip(
        self,
        trip_id: int,
        cancelled_by: CancelledBy,
        reason_text: str,
        reason_code: CancelReasonCode,
    ) -> None: ...

    @abstractmethod
    async def fetch_status(self, trip_id: int) -> Optional[TripEvent]:
        """Current status of the trip, classified; ``None`` if unknown."""


class AuthorizationReleaser(ABC):
    @abstractmethod
    async def release(self, trip_id: int, reason: str) -> None: ...


class MatchRequestCoordinator:
    def __init__(
        self,
        trip_id: int,
        dispatch: DispatchClient,
        payments: AuthorizationReleaser,
        policy: Optional[SearchPolicy] = None,
    ):
        self.trip_id = trip_id
        self.dispatch = dispatch
        self.payments = payments
        self.policy = policy or SearchPolicy.from_settings()
        self._state = SearchState(trip_id=trip_id)
        self._deadline: Optional[asyncio.Task] = None
        self._inflight: Optional[asyncio.Task] = None
        self._listeners: list[StateListener] = []

    @property
    def state(self) -> SearchState:
        return self._state

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # ── Inputs ────────────────────────────────────────────────────

    async def start(self) -> SearchState:
        return await self._apply(Start(trip_id=self.trip_id))

    async def on_timeout(self, deadline_id: Optional[int] = None) -> SearchState:
        if deadline_id is None:
            deadline_id = self._state.deadline_id
        return await self._apply(Timeout(deadline_id=deadline_id))

    async def manual_retry(self) -> SearchState:
        return await self._apply(ManualRetry())

    async def decline_retry(self) -> SearchState:
        return await self._apply(DeclineRetry())

    async def on_status_change(self, event: TripEvent) -> SearchState:
        return await self._apply(StatusChanged(event=event))

    async def cancel(self, reason: str = RIDER_CANCEL_TEXT) -> SearchState:
        return await self._apply(Cancel(reason=reason))

    async def flush(self) -> None:
        """Wait for the in-flight match request, if any, to finish."""
        task = self._inflight
        if task is not None and task is not asyncio.current_task():
            await asyncio.gather(task, return_exceptions=True)

    async def close(self) -> None:
        for task in (self._deadline, self._inflight):
            if task is None or task is asyncio.current_task():
                continue
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        self._deadline = None
        self._inflight = None
        self._listeners.clear()

    # ── Machine ───────────────────────────────────────────────────

    async def _apply(self, event: Event) -> SearchState:
        previous = self._state
        self._state, effects = transition(previous, event, self.policy)
        changed = self._state != previous
        if changed:
            logger.debug(
                "Trip %s search %s -> %s (%s)",
                self.trip_id,
                previous.phase.value,
                self._state.phase.value,
                type(event).__name__,
            )
        for effect in effects:
            await self._execute(effect)
        # Listeners hear about a state only once its effects have been carried out
        if changed:
            self._notify()
        return self._state

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self._state)
            except Exception:
                logger.exception("Search listener failed for trip %s", self.trip_id)

    async def _execute(self, effect: Effect) -> None:
        if isinstance(effect, DispatchMatchRequest):
            self._cancel_task(self._inflight)
            self._inflight = asyncio.create_task(
                self._send(effect.request_id, effect.expand_search)
            )
        elif isinstance(effect, StartDeadline):
            self._cancel_task(self._deadline)
            self._deadline = asyncio.create_task(
                self._wait_deadline(effect.deadline_id, effect.seconds)
            )
        elif isinstance(effect, (PauseDeadline, CancelDeadline)):
            self._cancel_task(self._deadline)
            self._deadline = None
        elif isinstance(effect, DiscardInflight):
            self._cancel_task(self._inflight)
            self._inflight = None
        elif isinstance(effect, ReleaseAuthorization):
            try:
                await self.payments.release(self.trip_id, effect.reason)
            except Exception:
                logger.warning(
                    "Could not release authorization for trip %s", self.trip_id, exc_info=True
                )
        elif isinstance(effect, CancelTrip):
            try:
                await self.dispatch.cancel_trip(
                    self.trip_id,
                    effect.cancelled_by,
                    effect.reason_text,
                    effect.reason_code,
                )
            except Exception:
                logger.warning("Could not cancel trip %s", self.trip_id, exc_info=True)
        elif isinstance(effect, PromptUser):
            logger.info(
                "Trip %s: no driver yet, %d attempts left", self.trip_id, effect.remaining_attempts
            )
        elif isinstance(effect, NotifyUser):
            logger.info("Trip %s: %s", self.trip_id, effect.message)

    @staticmethod
    def _cancel_task(task: Optional[asyncio.Task]) -> None:
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    # ── Tasks ─────────────────────────────────────────────────────

    async def _send(self, request_id: int, expand_search: bool) -> None:
        try:
            await self.dispatch.resend_match_request(self.trip_id, expand_search)
        except Exception:
            logger.warning(
                "Match request %s for trip %s failed", request_id, self.trip_id, exc_info=True
            )
        await self._apply(ResendCompleted(request_id=request_id))

    async def _wait_deadline(self, deadline_id: int, seconds: float) -> None:
        await asyncio.sleep(seconds)
        await self._checkpoint()
        await self._apply(Timeout(deadline_id=deadline_id))

    async def _checkpoint(self) -> None:
        try:
            event = await self.dispatch.fetch_status(self.trip_id)
        except Exception:
            logger.warning("Status check for trip %s failed", self.trip_id, exc_info=True)
            return
        if event is not None and event.kind in (
            TripEventKind.MATCH_FOUND,
            TripEventKind.TRIP_CANCELLED,
        ):
            await self._apply(StatusChanged(event=event))
