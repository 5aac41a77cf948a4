"""Translate raw trip status values into the events the search coordinator consumes."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Optional

from .enums import CancelledBy, TripStatus


class TripEventKind(str, enum.Enum):
    MATCH_FOUND = "MATCH_FOUND"
    TRIP_CANCELLED = "TRIP_CANCELLED"
    TRIP_SETTLING = "TRIP_SETTLING"
    STATUS_PASSTHROUGH = "STATUS_PASSTHROUGH"


_KIND_BY_STATUS: dict[TripStatus, TripEventKind] = {
    TripStatus.ACCEPTED: TripEventKind.MATCH_FOUND,
    TripStatus.DRIVER_ARRIVING: TripEventKind.MATCH_FOUND,
    TripStatus.CANCELLED: TripEventKind.TRIP_CANCELLED,
    TripStatus.AWAITING_SETTLEMENT: TripEventKind.TRIP_SETTLING,
    TripStatus.COMPLETED: TripEventKind.TRIP_SETTLING,
}


@dataclass(frozen=True)
class TripEvent:
    kind: TripEventKind
    trip_id: int
    status: TripStatus
    cancelled_by: Optional[CancelledBy] = None
    reason_code: Optional[str] = None


def classify(
    trip_id: int,
    status: TripStatus,
    cancelled_by: Optional[CancelledBy] = None,
    reason_code: Optional[str] = None,
) -> TripEvent:
    kind = _KIND_BY_STATUS.get(status, TripEventKind.STATUS_PASSTHROUGH)
    if kind is not TripEventKind.TRIP_CANCELLED:
        cancelled_by, reason_code = None, None
    return TripEvent(
        kind=kind,
        trip_id=trip_id,
        status=status,
        cancelled_by=cancelled_by,
        reason_code=reason_code,
    )
