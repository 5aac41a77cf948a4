"""
Driver-search state machine
===========================

Pure ``(state, event) -> (state, effects)`` transitions for the requesting
side of a trip.  Nothing in here touches timers, the network or the
database; the async runtime in ``services.coordinator`` executes the
returned effects.

Phases
------
IDLE -> SEARCHING -> {AUTO_RETRYING -> SEARCHING}* -> AWAITING_USER_DECISION
-> {SEARCHING | exhausted} -> MATCHED | CANCELLED

Budget
------
* The first match request is narrow; every later one searches island-wide.
* Timeouts 1 and 2 resend automatically.
* Timeouts 3-5 pause and ask the rider whether to keep searching.
* Timeout 6 (or the rider declining) exhausts the budget: the authorization
  is released and the trip is cancelled by the system with
  ``NO_DRIVERS_AVAILABLE``.

Ordering
--------
Every match request carries a fresh ``request_id`` and every deadline a
fresh ``deadline_id``.  Completions and timeouts carrying an older id are
ignored, as is every event once a terminal phase has been reached.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, replace
from typing import Optional, Union

from ridehold.config import settings
from .enums import CancelledBy, CancelReasonCode
from .status_events import TripEvent, TripEventKind


class SearchPhase(str, enum.Enum):
    IDLE = "IDLE"
    SEARCHING = "SEARCHING"
    AUTO_RETRYING = "AUTO_RETRYING"
    AWAITING_USER_DECISION = "AWAITING_USER_DECISION"
    MATCHED = "MATCHED"
    CANCELLED = "CANCELLED"


TERMINAL_PHASES = frozenset({SearchPhase.MATCHED, SearchPhase.CANCELLED})
_TIMED_PHASES = frozenset({SearchPhase.SEARCHING, SearchPhase.AUTO_RETRYING})

NO_DRIVERS_MESSAGE = (
    "We couldn't find any drivers at this time. Your payment authorization "
    "has been cancelled and funds will be returned shortly."
)
NO_DRIVERS_RELEASE_REASON = "No drivers available"
NO_DRIVERS_CANCEL_TEXT = "No drivers available after multiple attempts"
RIDER_CANCEL_TEXT = "Rider cancelled while searching"
OBSERVED_CANCEL_RELEASE_REASON = "Trip cancelled"


@dataclass(frozen=True)
class SearchPolicy:
    timeout_seconds: int = 60
    auto_retry_attempts: int = 3
    max_manual_retries: int = 3

    @property
    def total_max_retries(self) -> int:
        return self.auto_retry_attempts + self.max_manual_retries

    @classmethod
    def from_settings(cls) -> "SearchPolicy":
        return cls(
            timeout_seconds=settings.request_timeout_seconds,
            auto_retry_attempts=settings.auto_retry_attempts,
            max_manual_retries=settings.max_manual_retries,
        )


@dataclass(frozen=True)
class SearchState:
    trip_id: Optional[int] = None
    phase: SearchPhase = SearchPhase.IDLE
    attempt: int = 0
    request_id: int = 0
    deadline_id: int = 0
    remaining_attempts: int = 0
    exhausted: bool = False
    reason_code: Optional[str] = None
    message: Optional[str] = None

    @property
    def terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES


# ── Events ────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Start:
    trip_id: int


@dataclass(frozen=True)
class Timeout:
    deadline_id: int


@dataclass(frozen=True)
class ResendCompleted:
    request_id: int


@dataclass(frozen=True)
class ManualRetry:
    pass


@dataclass(frozen=True)
class DeclineRetry:
    pass


@dataclass(frozen=True)
class StatusChanged:
    event: TripEvent


@dataclass(frozen=True)
class Cancel:
    reason: str = RIDER_CANCEL_TEXT


Event = Union[Start, Timeout, ResendCompleted, ManualRetry, DeclineRetry, StatusChanged, Cancel]


# ── Effects ───────────────────────────────────────────────────────────


@dataclass(frozen=True)
class DispatchMatchRequest:
    request_id: int
    expand_search: bool


@dataclass(frozen=True)
class StartDeadline:
    deadline_id: int
    seconds: int


@dataclass(frozen=True)
class PauseDeadline:
    pass


@dataclass(frozen=True)
class CancelDeadline:
    pass


@dataclass(frozen=True)
class DiscardInflight:
    pass


@dataclass(frozen=True)
class ReleaseAuthorization:
    reason: str


@dataclass(frozen=True)
class CancelTrip:
    cancelled_by: CancelledBy
    reason_text: str
    reason_code: CancelReasonCode


@dataclass(frozen=True)
class PromptUser:
    remaining_attempts: int


@dataclass(frozen=True)
class NotifyUser:
    message: str


Effect = Union[
    DispatchMatchRequest,
    StartDeadline,
    PauseDeadline,
    CancelDeadline,
    DiscardInflight,
    ReleaseAuthorization,
    CancelTrip,
    PromptUser,
    NotifyUser,
]


# ── Transitions ───────────────────────────────────────────────────────


def transition(
    state: SearchState, event: Event, policy: SearchPolicy = SearchPolicy()
) -> tuple[SearchState, list[Effect]]:
    if state.terminal:
        return state, []

    if isinstance(event, Start):
        return _start(state, event, policy)
    if isinstance(event, Timeout):
        return _timeout(state, event, policy)
    if isinstance(event, ResendCompleted):
        if state.phase is SearchPhase.AUTO_RETRYING and event.request_id == state.request_id:
            return replace(state, phase=SearchPhase.SEARCHING), []
        return state, []
    if isinstance(event, ManualRetry):
        if state.phase is not SearchPhase.AWAITING_USER_DECISION:
            return state, []
        return _resend(state, SearchPhase.SEARCHING, expand_search=True, policy=policy)
    if isinstance(event, DeclineRetry):
        if state.phase is not SearchPhase.AWAITING_USER_DECISION:
            return state, []
        return _exhaust(state)
    if isinstance(event, StatusChanged):
        # Before start the deadline checkpoint picks up whatever was missed.
        if state.phase is SearchPhase.IDLE:
            return state, []
        return _status_changed(state, event.event)
    if isinstance(event, Cancel):
        if state.phase is SearchPhase.IDLE:
            return state, []
        return _rider_cancel(state, event.reason)
    raise TypeError(f"Unknown search event: {event!r}")


def _start(state, event, policy):
    if state.phase is not SearchPhase.IDLE:
        return state, []
    started = replace(
        state,
        trip_id=event.trip_id,
        phase=SearchPhase.SEARCHING,
        attempt=0,
        remaining_attempts=policy.total_max_retries,
    )
    return _resend(started, SearchPhase.SEARCHING, expand_search=False, policy=policy)


def _resend(state, phase, *, expand_search, policy):
    request_id = state.request_id + 1
    deadline_id = state.deadline_id + 1
    new_state = replace(
        state,
        phase=phase,
        request_id=request_id,
        deadline_id=deadline_id,
        message=None,
    )
    return new_state, [
        DispatchMatchRequest(request_id=request_id, expand_search=expand_search),
        StartDeadline(deadline_id=deadline_id, seconds=policy.timeout_seconds),
    ]


def _timeout(state, event, policy):
    if state.phase not in _TIMED_PHASES or event.deadline_id != state.deadline_id:
        return state, []

    attempt = state.attempt + 1
    remaining = policy.total_max_retries - attempt
    counted = replace(state, attempt=attempt, remaining_attempts=remaining)

    if attempt < policy.auto_retry_attempts:
        return _resend(
            counted,
            SearchPhase.AUTO_RETRYING,
            expand_search=attempt >= 1,
            policy=policy,
        )

    if attempt < policy.total_max_retries:
        awaiting = replace(counted, phase=SearchPhase.AWAITING_USER_DECISION)
        return awaiting, [
            PauseDeadline(),
            DiscardInflight(),
            PromptUser(remaining_attempts=remaining),
        ]

    return _exhaust(counted)


def _exhaust(state):
    final = replace(
        state,
        phase=SearchPhase.CANCELLED,
        exhausted=True,
        remaining_attempts=0,
        reason_code=CancelReasonCode.NO_DRIVERS_AVAILABLE.value,
        message=NO_DRIVERS_MESSAGE,
    )
    return final, [
        CancelDeadline(),
        DiscardInflight(),
        ReleaseAuthorization(reason=NO_DRIVERS_RELEASE_REASON),
        CancelTrip(
            cancelled_by=CancelledBy.SYSTEM,
            reason_text=NO_DRIVERS_CANCEL_TEXT,
            reason_code=CancelReasonCode.NO_DRIVERS_AVAILABLE,
        ),
        NotifyUser(message=NO_DRIVERS_MESSAGE),
    ]


def _rider_cancel(state, reason):
    final = replace(
        state,
        phase=SearchPhase.CANCELLED,
        remaining_attempts=0,
        reason_code=CancelReasonCode.RIDER_CANCELLED_WHILE_SEARCHING.value,
    )
    return final, [
        CancelDeadline(),
        DiscardInflight(),
        ReleaseAuthorization(reason=reason),
        CancelTrip(
            cancelled_by=CancelledBy.RIDER,
            reason_text=reason,
            reason_code=CancelReasonCode.RIDER_CANCELLED_WHILE_SEARCHING,
        ),
    ]


def _status_changed(state, event: TripEvent):
    if event.kind is TripEventKind.MATCH_FOUND:
        return replace(state, phase=SearchPhase.MATCHED, remaining_attempts=0), [
            CancelDeadline(),
            DiscardInflight(),
        ]
    if event.kind is TripEventKind.TRIP_CANCELLED:
        final = replace(
            state,
            phase=SearchPhase.CANCELLED,
            remaining_attempts=0,
            reason_code=event.reason_code,
        )
        # Redundant with the server-side cancel path; the ledger makes it a no-op.
        return final, [
            CancelDeadline(),
            DiscardInflight(),
            ReleaseAuthorization(reason=OBSERVED_CANCEL_RELEASE_REASON),
        ]
    return state, []
