"""Tests for the trip status observer and the Redis status feed plumbing."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from ridehold.domain.enums import CancelledBy, TripStatus
from ridehold.domain.errors import MalformedTripRecord
from ridehold.domain.status_events import TripEventKind
from ridehold.infrastructure.trip_feed import (
    RedisTripFeed,
    TripStatusMessage,
    channel_for,
    parse_message,
)
from ridehold.services.observer import TripStatusObserver

from conftest import FakeFeed

NOW = datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc)


def _msg(trip_id, status, **extra) -> TripStatusMessage:
    return TripStatusMessage(trip_id=trip_id, status=status, updated_at=NOW, **extra)


class Recorder:
    def __init__(self):
        self.events = []

    async def __call__(self, event):
        self.events.append(event)


@pytest.mark.asyncio
async def test_watch_delivers_classified_events():
    feed = FakeFeed()
    observer = TripStatusObserver(feed)
    listener = Recorder()
    await observer.watch(10, listener)

    await feed.push(_msg(10, TripStatus.ACCEPTED))
    assert [e.kind for e in listener.events] == [TripEventKind.MATCH_FOUND]


@pytest.mark.asyncio
async def test_repeated_status_is_delivered_once():
    feed = FakeFeed()
    observer = TripStatusObserver(feed)
    listener = Recorder()
    await observer.watch(10, listener)

    await feed.push(_msg(10, TripStatus.SEARCHING))
    await feed.push(_msg(10, TripStatus.SEARCHING))
    await feed.push(_msg(10, TripStatus.ACCEPTED))
    assert [e.status for e in listener.events] == [TripStatus.SEARCHING, TripStatus.ACCEPTED]


@pytest.mark.asyncio
async def test_watching_same_trip_twice_keeps_one_subscription():
    feed = FakeFeed()
    observer = TripStatusObserver(feed)
    await observer.watch(10, Recorder())
    await observer.watch(10, Recorder())
    assert len(feed.subscriptions) == 1


@pytest.mark.asyncio
async def test_switching_trips_closes_previous_subscription():
    feed = FakeFeed()
    observer = TripStatusObserver(feed)
    listener = Recorder()
    await observer.watch(10, listener)
    await observer.watch(11, listener)

    (first_id, first), (second_id, second) = feed.subscriptions
    assert (first_id, second_id) == (10, 11)
    assert first.closed is True
    assert second.closed is False

    # late delivery for the old trip is ignored
    await feed.push(_msg(10, TripStatus.ACCEPTED))
    assert listener.events == []


@pytest.mark.asyncio
async def test_cancellation_details_are_carried():
    feed = FakeFeed()
    observer = TripStatusObserver(feed)
    listener = Recorder()
    await observer.watch(10, listener)

    await feed.push(
        _msg(
            10,
            TripStatus.CANCELLED,
            cancelled_by=CancelledBy.DRIVER,
            cancel_reason_code="DRIVER_CANCELLED",
        )
    )
    event = listener.events[0]
    assert event.kind is TripEventKind.TRIP_CANCELLED
    assert event.cancelled_by is CancelledBy.DRIVER
    assert event.reason_code == "DRIVER_CANCELLED"


@pytest.mark.asyncio
async def test_close_stops_delivery():
    feed = FakeFeed()
    observer = TripStatusObserver(feed)
    listener = Recorder()
    await observer.watch(10, listener)
    await observer.close()

    assert feed.subscriptions[0][1].closed is True
    await feed.push(_msg(10, TripStatus.ACCEPTED))
    assert listener.events == []


# ── Feed plumbing ─────────────────────────────────────────────────────


def test_channel_name():
    assert channel_for(5) == "trip:5:status"


def test_parse_message_accepts_valid_payload():
    raw = _msg(5, TripStatus.COMPLETED).model_dump_json()
    assert parse_message(raw).status is TripStatus.COMPLETED


@pytest.mark.parametrize(
    "raw",
    [
        b"not json",
        '{"trip_id": 5}',
        '{"trip_id": 5, "status": "TELEPORTED", "updated_at": "2026-10-17T12:00:00Z"}',
    ],
)
def test_parse_message_rejects_malformed_payload(raw):
    with pytest.raises(MalformedTripRecord):
        parse_message(raw)


class FakePubSub:
    def __init__(self, frames):
        self.frames = frames

    async def listen(self):
        for frame in self.frames:
            yield frame


@pytest.mark.asyncio
async def test_reader_skips_control_frames_and_malformed_messages():
    good = _msg(5, TripStatus.ACCEPTED).model_dump_json()
    pubsub = FakePubSub(
        [
            {"type": "subscribe", "data": 1},
            {"type": "message", "data": b"garbage"},
            {"type": "message", "data": good},
        ]
    )
    received = []

    async def callback(message):
        received.append(message)

    await RedisTripFeed._read(pubsub, callback)
    assert [m.status for m in received] == [TripStatus.ACCEPTED]


@pytest.mark.asyncio
async def test_reader_survives_callback_failure():
    frames = [
        {"type": "message", "data": _msg(5, TripStatus.ACCEPTED).model_dump_json()},
        {"type": "message", "data": _msg(5, TripStatus.IN_PROGRESS).model_dump_json()},
    ]
    seen = []

    async def callback(message):
        seen.append(message.status)
        if len(seen) == 1:
            raise RuntimeError("listener blew up")

    await RedisTripFeed._read(FakePubSub(frames), callback)
    assert seen == [TripStatus.ACCEPTED, TripStatus.IN_PROGRESS]
