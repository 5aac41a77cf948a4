"""Tests for the trip directory service."""

import json
from unittest.mock import AsyncMock

import pytest

from ridehold.domain.entities import InvalidStateTransition
from ridehold.domain.enums import (
    AuthorizationState,
    CancelledBy,
    CancelReasonCode,
    PaymentStatus,
    TripStatus,
)
from ridehold.domain.errors import TRIP_NOT_FOUND, ConsistencyError
from ridehold.infrastructure.repositories import AuthorizationRepository
from ridehold.services.trips import TripService

from conftest import DESTINATION, PICKUP, RIDER_ID, make_trip


@pytest.fixture
def redis():
    return AsyncMock()


@pytest.fixture
def trips(db_session, ledger, redis, clock):
    return TripService(db_session, ledger, redis=redis, clock=clock)


def _published(redis):
    return [
        (call.args[0], json.loads(call.args[1]))
        for call in redis.publish.await_args_list
    ]


async def _create(trips, **kwargs):
    return await trips.create_trip(
        rider_id=RIDER_ID,
        pickup=PICKUP,
        destination=DESTINATION,
        estimated_amount=kwargs.pop("estimated_amount", 25.0),
        **kwargs,
    )


class TestCreateTrip:
    @pytest.mark.asyncio
    async def test_authorizes_and_starts_searching(self, trips, processor):
        trip = await _create(trips)
        assert trip.status is TripStatus.SEARCHING
        assert trip.payment_status is PaymentStatus.AUTHORIZED
        assert trip.payment_ref == "pi_test_1"
        assert processor.of("authorize") == [("authorize", "pi_test_1", 25.0)]

    @pytest.mark.asyncio
    async def test_idempotency_key_prevents_double_booking(self, trips, processor):
        first = await _create(trips, idempotency_key="abc-123")
        second = await _create(trips, idempotency_key="abc-123")
        assert first.id == second.id
        assert processor.count("authorize") == 1

    @pytest.mark.asyncio
    async def test_status_is_published_only_after_publish_pending(self, trips, redis):
        trip = await _create(trips)
        redis.publish.assert_not_awaited()

        await trips.publish_pending()
        [(channel, payload)] = _published(redis)
        assert channel == f"trip:{trip.id}:status"
        assert payload["status"] == "SEARCHING"

        await trips.publish_pending()
        assert redis.publish.await_count == 1


class TestUpdateStatus:
    @pytest.mark.asyncio
    async def test_accept_assigns_driver(self, trips):
        trip = await _create(trips)
        updated = await trips.update_status(trip.id, TripStatus.ACCEPTED, driver_id=2)
        assert updated.status is TripStatus.ACCEPTED
        assert updated.driver_id == 2

    @pytest.mark.asyncio
    async def test_same_status_is_a_no_op(self, trips, redis):
        trip = await _create(trips)
        await trips.publish_pending()
        await trips.update_status(trip.id, TripStatus.SEARCHING)
        await trips.publish_pending()
        assert redis.publish.await_count == 1

    @pytest.mark.asyncio
    async def test_invalid_transition(self, trips):
        trip = await _create(trips)
        with pytest.raises(InvalidStateTransition):
            await trips.update_status(trip.id, TripStatus.COMPLETED)

    @pytest.mark.asyncio
    async def test_cancelled_status_is_a_driver_cancel(self, trips, processor):
        trip = await _create(trips)
        cancelled = await trips.update_status(trip.id, TripStatus.CANCELLED)
        assert cancelled.cancelled_by is CancelledBy.DRIVER
        assert cancelled.cancel_reason_code == "DRIVER_CANCELLED"
        assert processor.count("release") == 1

    @pytest.mark.asyncio
    async def test_unknown_trip(self, trips):
        with pytest.raises(ConsistencyError) as exc:
            await trips.update_status(404, TripStatus.ACCEPTED)
        assert exc.value.code == TRIP_NOT_FOUND


class TestCancelTrip:
    @pytest.mark.asyncio
    async def test_cancel_records_reason_and_releases(self, trips, processor, redis, clock):
        trip = await _create(trips)
        await trips.cancel_trip(
            trip.id,
            CancelledBy.SYSTEM,
            "No drivers available after multiple attempts",
            CancelReasonCode.NO_DRIVERS_AVAILABLE,
        )
        assert trip.status is TripStatus.CANCELLED
        assert trip.cancelled_by is CancelledBy.SYSTEM
        assert trip.cancel_reason_code == "NO_DRIVERS_AVAILABLE"
        assert trip.payment_status is PaymentStatus.RELEASED
        assert processor.of("release") == [("release", "pi_test_1")]

        await trips.publish_pending()
        payload = _published(redis)[-1][1]
        assert payload["status"] == "CANCELLED"
        assert payload["cancelled_by"] == "SYSTEM"
        assert payload["cancel_reason_code"] == "NO_DRIVERS_AVAILABLE"

    @pytest.mark.asyncio
    async def test_cancel_twice_releases_once(self, trips, processor):
        trip = await _create(trips)
        for _ in range(2):
            await trips.cancel_trip(
                trip.id, CancelledBy.RIDER, "Rider cancelled", CancelReasonCode.RIDER_CANCELLED
            )
        assert processor.count("release") == 1

    @pytest.mark.asyncio
    async def test_release_failure_does_not_fail_cancel(self, trips, processor, db_session):
        trip = await _create(trips)
        processor.fail_release = True

        await trips.cancel_trip(
            trip.id, CancelledBy.RIDER, "Rider cancelled", CancelReasonCode.RIDER_CANCELLED
        )
        assert trip.status is TripStatus.CANCELLED
        [authorization] = await AuthorizationRepository(db_session).list_for_trip(trip.id)
        assert authorization.state is AuthorizationState.AUTHORIZED

    @pytest.mark.asyncio
    async def test_cancel_completed_trip_fails(self, trips, db_session):
        trip = await make_trip(db_session, status=TripStatus.COMPLETED)
        with pytest.raises(InvalidStateTransition):
            await trips.cancel_trip(
                trip.id, CancelledBy.RIDER, "Rider cancelled", CancelReasonCode.RIDER_CANCELLED
            )


class TestSettleTrip:
    @pytest.mark.asyncio
    async def test_settle_captures_final_fare(self, trips, processor, clock):
        trip = await _create(trips)
        await trips.update_status(trip.id, TripStatus.ACCEPTED, driver_id=2)
        await trips.update_status(trip.id, TripStatus.IN_PROGRESS)

        settled = await trips.settle_trip(trip.id, final_amount=22.5)
        assert settled.status is TripStatus.COMPLETED
        assert settled.payment_status is PaymentStatus.COMPLETED
        assert settled.completed_at == clock.now
        assert processor.of("capture") == [("capture", "pi_test_1", 22.5)]

    @pytest.mark.asyncio
    async def test_settle_requires_a_started_trip(self, trips):
        trip = await _create(trips)
        with pytest.raises(InvalidStateTransition):
            await trips.settle_trip(trip.id)


@pytest.mark.asyncio
async def test_record_search_attempt_counts_up(trips):
    trip = await _create(trips)
    assert await trips.record_search_attempt(trip.id) == 1
    assert await trips.record_search_attempt(trip.id) == 2


@pytest.mark.asyncio
async def test_publish_failure_is_logged_not_raised(trips, redis):
    redis.publish.side_effect = ConnectionError("redis gone")
    await _create(trips)
    await trips.publish_pending()
