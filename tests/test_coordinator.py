"""
Tests for the async match-request coordinator.

The dispatch backend and the payment releaser are ``AsyncMock`` objects;
deadlines are driven by hand (``on_timeout``) except where the deadline
task itself is under test.
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from ridehold.domain.enums import CancelledBy, CancelReasonCode, TripStatus
from ridehold.domain.errors import TransientNetworkError
from ridehold.domain.search import (
    NO_DRIVERS_CANCEL_TEXT,
    NO_DRIVERS_RELEASE_REASON,
    RIDER_CANCEL_TEXT,
    SearchPhase,
    SearchPolicy,
)
from ridehold.domain.status_events import classify
from ridehold.services.coordinator import MatchRequestCoordinator

TRIP_ID = 42
SLOW = SearchPolicy(timeout_seconds=3600)


@pytest.fixture
def dispatch():
    mock = AsyncMock()
    mock.fetch_status = AsyncMock(return_value=None)
    return mock


@pytest.fixture
def payments():
    return AsyncMock()


@pytest_asyncio.fixture
async def coordinator(dispatch, payments):
    c = MatchRequestCoordinator(TRIP_ID, dispatch, payments, policy=SLOW)
    yield c
    await c.close()


async def _step(coordinator, action):
    state = await action()
    await coordinator.flush()
    return state


@pytest.mark.asyncio
async def test_start_sends_narrow_request(coordinator, dispatch):
    await _step(coordinator, coordinator.start)
    dispatch.resend_match_request.assert_awaited_once_with(TRIP_ID, False)
    assert coordinator.state.phase is SearchPhase.SEARCHING


@pytest.mark.asyncio
async def test_auto_retry_returns_to_searching_once_sent(coordinator, dispatch):
    await _step(coordinator, coordinator.start)
    await _step(coordinator, coordinator.on_timeout)
    assert coordinator.state.phase is SearchPhase.SEARCHING
    assert coordinator.state.attempt == 1
    assert dispatch.resend_match_request.await_args_list[-1].args == (TRIP_ID, True)


@pytest.mark.asyncio
async def test_sixth_timeout_releases_and_cancels_exactly_once(coordinator, dispatch, payments):
    await _step(coordinator, coordinator.start)
    for _ in range(6):
        if coordinator.state.phase is SearchPhase.AWAITING_USER_DECISION:
            await _step(coordinator, coordinator.manual_retry)
        await _step(coordinator, coordinator.on_timeout)

    state = coordinator.state
    assert state.phase is SearchPhase.CANCELLED
    assert state.exhausted is True
    payments.release.assert_awaited_once_with(TRIP_ID, NO_DRIVERS_RELEASE_REASON)
    dispatch.cancel_trip.assert_awaited_once_with(
        TRIP_ID,
        CancelledBy.SYSTEM,
        NO_DRIVERS_CANCEL_TEXT,
        CancelReasonCode.NO_DRIVERS_AVAILABLE,
    )
    assert dispatch.resend_match_request.await_count == 6


@pytest.mark.asyncio
async def test_match_while_deadline_pending(coordinator, dispatch, payments):
    await _step(coordinator, coordinator.start)
    await coordinator.on_status_change(classify(TRIP_ID, TripStatus.ACCEPTED))
    assert coordinator.state.phase is SearchPhase.MATCHED

    await coordinator.on_timeout()
    assert coordinator.state.phase is SearchPhase.MATCHED
    payments.release.assert_not_awaited()
    dispatch.cancel_trip.assert_not_awaited()


@pytest.mark.asyncio
async def test_rider_cancel(coordinator, dispatch, payments):
    await _step(coordinator, coordinator.start)
    await coordinator.cancel()
    assert coordinator.state.phase is SearchPhase.CANCELLED
    assert coordinator.state.reason_code == "RIDER_CANCELLED_WHILE_SEARCHING"
    payments.release.assert_awaited_once_with(TRIP_ID, RIDER_CANCEL_TEXT)
    dispatch.cancel_trip.assert_awaited_once_with(
        TRIP_ID,
        CancelledBy.RIDER,
        RIDER_CANCEL_TEXT,
        CancelReasonCode.RIDER_CANCELLED_WHILE_SEARCHING,
    )


@pytest.mark.asyncio
async def test_release_failure_does_not_stop_cancel(coordinator, dispatch, payments):
    payments.release.side_effect = TransientNetworkError("processor down")
    await _step(coordinator, coordinator.start)
    await coordinator.cancel()
    assert coordinator.state.phase is SearchPhase.CANCELLED
    dispatch.cancel_trip.assert_awaited_once()


@pytest.mark.asyncio
async def test_resend_failure_keeps_searching(coordinator, dispatch):
    dispatch.resend_match_request.side_effect = TransientNetworkError("dispatch down")
    await _step(coordinator, coordinator.start)
    await _step(coordinator, coordinator.on_timeout)
    assert coordinator.state.phase is SearchPhase.SEARCHING
    assert coordinator.state.attempt == 1


@pytest.mark.asyncio
async def test_observed_cancel_releases_without_cancelling_again(coordinator, dispatch, payments):
    await _step(coordinator, coordinator.start)
    await coordinator.on_status_change(
        classify(TRIP_ID, TripStatus.CANCELLED, CancelledBy.RIDER, "RIDER_CANCELLED")
    )
    assert coordinator.state.phase is SearchPhase.CANCELLED
    payments.release.assert_awaited_once()
    dispatch.cancel_trip.assert_not_awaited()


@pytest.mark.asyncio
async def test_listeners_see_every_new_state(coordinator):
    phases = []
    unsubscribe = coordinator.subscribe(lambda state: phases.append(state.phase))
    await _step(coordinator, coordinator.start)
    await coordinator.cancel()
    unsubscribe()
    await coordinator.on_timeout()
    assert phases[0] is SearchPhase.SEARCHING
    assert phases[-1] is SearchPhase.CANCELLED


@pytest.mark.asyncio
async def test_deadline_fires_and_asks_rider_after_three_timeouts(dispatch, payments):
    c = MatchRequestCoordinator(
        TRIP_ID, dispatch, payments, policy=SearchPolicy(timeout_seconds=0.01)
    )
    try:
        await c.start()
        for _ in range(100):
            if c.state.phase is SearchPhase.AWAITING_USER_DECISION:
                break
            await asyncio.sleep(0.01)
        assert c.state.phase is SearchPhase.AWAITING_USER_DECISION
        assert c.state.attempt == 3
        assert dispatch.fetch_status.await_count == 3
    finally:
        await c.close()


@pytest.mark.asyncio
async def test_deadline_checkpoint_applies_match_instead_of_timeout(dispatch, payments):
    dispatch.fetch_status.return_value = classify(TRIP_ID, TripStatus.ACCEPTED)
    c = MatchRequestCoordinator(
        TRIP_ID, dispatch, payments, policy=SearchPolicy(timeout_seconds=0.01)
    )
    try:
        await c.start()
        for _ in range(100):
            if c.state.terminal:
                break
            await asyncio.sleep(0.01)
        assert c.state.phase is SearchPhase.MATCHED
        assert c.state.attempt == 0
        payments.release.assert_not_awaited()
    finally:
        await c.close()
