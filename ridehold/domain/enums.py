"""Domain enumerations, reason codes and state-transition rules."""

import enum


class TripStatus(str, enum.Enum):
    REQUESTED = "REQUESTED"
    SEARCHING = "SEARCHING"
    ACCEPTED = "ACCEPTED"
    DRIVER_ARRIVING = "DRIVER_ARRIVING"
    IN_PROGRESS = "IN_PROGRESS"
    AWAITING_SETTLEMENT = "AWAITING_SETTLEMENT"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


_CANCELLABLE = {TripStatus.CANCELLED}

# State machine: maps current status -> set of valid next statuses
TRIP_TRANSITIONS: dict[TripStatus, set[TripStatus]] = {
    TripStatus.REQUESTED: {TripStatus.SEARCHING} | _CANCELLABLE,
    TripStatus.SEARCHING: {TripStatus.ACCEPTED} | _CANCELLABLE,
    TripStatus.ACCEPTED: {TripStatus.DRIVER_ARRIVING, TripStatus.IN_PROGRESS}
    | _CANCELLABLE,
    TripStatus.DRIVER_ARRIVING: {TripStatus.IN_PROGRESS} | _CANCELLABLE,
    TripStatus.IN_PROGRESS: {TripStatus.AWAITING_SETTLEMENT} | _CANCELLABLE,
    TripStatus.AWAITING_SETTLEMENT: {TripStatus.COMPLETED} | _CANCELLABLE,
    TripStatus.COMPLETED: set(),
    TripStatus.CANCELLED: set(),
}

TERMINAL_TRIP_STATUSES = frozenset({TripStatus.COMPLETED, TripStatus.CANCELLED})


class CancelledBy(str, enum.Enum):
    RIDER = "RIDER"
    DRIVER = "DRIVER"
    SYSTEM = "SYSTEM"


class CancelReasonCode(str, enum.Enum):
    """Persisted verbatim on the trip for downstream accounting."""

    RIDER_CANCELLED_WHILE_SEARCHING = "RIDER_CANCELLED_WHILE_SEARCHING"
    NO_DRIVERS_AVAILABLE = "NO_DRIVERS_AVAILABLE"
    RIDER_CANCELLED = "RIDER_CANCELLED"
    DRIVER_CANCELLED = "DRIVER_CANCELLED"


class VehicleClass(str, enum.Enum):
    STANDARD = "STANDARD"
    XL = "XL"
    PREMIUM = "PREMIUM"


class AuthorizationState(str, enum.Enum):
    AUTHORIZED = "AUTHORIZED"
    CAPTURED = "CAPTURED"
    RELEASED = "RELEASED"
    VOIDED = "VOIDED"


# Forward-only: an authorization never moves back to an earlier state.
AUTHORIZATION_TRANSITIONS: dict[AuthorizationState, set[AuthorizationState]] = {
    AuthorizationState.AUTHORIZED: {
        AuthorizationState.CAPTURED,
        AuthorizationState.RELEASED,
        AuthorizationState.VOIDED,
    },
    AuthorizationState.CAPTURED: {AuthorizationState.VOIDED},
    AuthorizationState.RELEASED: set(),
    AuthorizationState.VOIDED: set(),
}

TERMINAL_AUTHORIZATION_STATES = frozenset(
    {AuthorizationState.RELEASED, AuthorizationState.VOIDED}
)


class PaymentStatus(str, enum.Enum):
    """Payment status as recorded on the trip itself."""

    PENDING = "PENDING"
    AUTHORIZED = "AUTHORIZED"
    RELEASED = "RELEASED"
    HELD = "HELD"
    COMPLETED = "COMPLETED"
    REFUNDED = "REFUNDED"
    VOIDED = "VOIDED"


class HoldReason(str, enum.Enum):
    TRIP_REQUEST = "TRIP_REQUEST"
    DISPUTE = "DISPUTE"
    SOS_TRIGGERED = "SOS_TRIGGERED"
    NO_RESPONSE_TO_SAFETY_ALERT = "no_response_to_safety_alert"


class DisputeReason(str, enum.Enum):
    SAFETY_VIOLATION = "safety_violation"
    TERMS_BREACH = "terms_breach"
    FRAUD = "fraud"
    ROUTE_ABUSE = "route_abuse"
    EARLY_COMPLETION = "early_completion"
    OVERCHARGE = "overcharge"
    SERVICE_NOT_RECEIVED = "service_not_received"
    SOS_TRIGGERED = "sos_triggered"
    OTHER = "other"


class DisputeStatus(str, enum.Enum):
    PENDING = "pending"
    UNDER_REVIEW = "under_review"
    APPROVED = "approved"
    DENIED = "denied"


OPEN_DISPUTE_STATUSES = frozenset({DisputeStatus.PENDING, DisputeStatus.UNDER_REVIEW})


class DisputeDecision(str, enum.Enum):
    APPROVED = "approved"
    DENIED = "denied"


class EscrowStatus(str, enum.Enum):
    HELD = "held"
    RELEASED_TO_DRIVER = "released_to_driver"
    REFUNDED_TO_RIDER = "refunded_to_rider"
    PARTIALLY_REFUNDED = "partially_refunded"
    VOIDED = "voided"


class EvidenceType(str, enum.Enum):
    SPEED_LOG = "speed_log"
    ROUTE_DEVIATION = "route_deviation"
    GPS_DATA = "gps_data"
    CHAT_LOG = "chat_log"
    PHOTO = "photo"
    VIDEO = "video"
    AUDIO = "audio"
    REPORT = "report"


AUTO_RELEASE_NOTE = "Auto-released: No dispute filed within window"
