"""
Domain entities and transition guards.

Patterns used
-------------
- **State Pattern** on trips and authorizations: both lifecycles are
  enforced through the transition tables in ``enums``.  Authorizations
  only ever move forward.
- ``Evidence`` and ``Location`` are value objects stored as JSON on the
  trip / dispute rows.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from .enums import (
    AUTHORIZATION_TRANSITIONS,
    TRIP_TRANSITIONS,
    AuthorizationState,
    EvidenceType,
    TripStatus,
)


class InvalidStateTransition(Exception):
    """Raised when a status change violates a state machine."""


# ── Value Objects ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class Location:
    latitude: float
    longitude: float
    address: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Evidence:
    type: EvidenceType
    timestamp: datetime
    url: Optional[str] = None
    description: Optional[str] = None
    data: Optional[dict[str, Any]] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "timestamp": ensure_utc(self.timestamp).isoformat(),
            "url": self.url,
            "description": self.description,
            "data": self.data,
        }


# ── Transition guards ─────────────────────────────────────────────────


def transition_trip(current: TripStatus | str, new: TripStatus) -> TripStatus:
    """Return *new* if the trip may move there from *current*, else raise."""
    current = TripStatus(current)
    if new not in TRIP_TRANSITIONS.get(current, set()):
        raise InvalidStateTransition(f"Cannot transition trip from {current} to {new}")
    return new


def transition_authorization(
    current: AuthorizationState | str, new: AuthorizationState
) -> AuthorizationState:
    current = AuthorizationState(current)
    if new not in AUTHORIZATION_TRANSITIONS.get(current, set()):
        raise InvalidStateTransition(
            f"Cannot transition authorization from {current} to {new}"
        )
    return new


# ── Time helpers ──────────────────────────────────────────────────────


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; treat those as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
