"""
SQLAlchemy ORM models.

Tables
------
* ``users``                  -- riders and drivers
* ``trips``                  -- trip requests and their payment bookkeeping
* ``payment_authorizations`` -- processor holds, forward-only state
* ``payment_disputes``       -- rider disputes filed after completion
* ``payment_escrows``        -- funds held outside normal settlement
* ``notifications``          -- per-user notification inbox
* ``admin_alerts``           -- operations review queue
* ``driver_strikes``         -- standing penalties issued on dispute outcomes

Indexes
-------
B-Tree on the columns the reconciliation sweep and the dispute checks
filter on: ``trips.payment_status`` / ``payment_held_at``,
``payment_disputes.trip_id`` / ``status``, ``payment_authorizations.trip_id``.
"""

import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)

from .database import Base
from ridehold.domain.enums import (
    AuthorizationState,
    CancelledBy,
    DisputeReason,
    DisputeStatus,
    EscrowStatus,
    PaymentStatus,
    TripStatus,
    VehicleClass,
)


def _enum(enum_cls, name: str) -> Enum:
    """Persist enum *values* so reason/status codes are stored verbatim."""
    return Enum(
        enum_cls,
        name=name,
        values_callable=lambda members: [m.value for m in members],
    )


def _prefixed_id(prefix: str):
    return lambda: f"{prefix}_{uuid.uuid4().hex[:16]}"


class UserModel(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(120), nullable=False)
    email = Column(String(255), unique=True, nullable=False)
    role = Column(String(20), default="rider", nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class TripModel(Base):
    __tablename__ = "trips"

    id = Column(Integer, primary_key=True, autoincrement=True)
    rider_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    driver_id = Column(Integer, ForeignKey("users.id"), nullable=True)

    pickup = Column(JSON, nullable=False)
    destination = Column(JSON, nullable=False)
    stops = Column(JSON, nullable=False, default=list)
    vehicle_class = Column(
        _enum(VehicleClass, "vehicleclass"), default=VehicleClass.STANDARD, nullable=False
    )

    # Locked fare at request time; final fare once settled
    estimated_amount = Column(Float, nullable=False)
    final_amount = Column(Float, nullable=True)
    currency = Column(String(3), nullable=False)

    status = Column(_enum(TripStatus, "tripstatus"), default=TripStatus.REQUESTED, nullable=False)
    cancelled_by = Column(_enum(CancelledBy, "cancelledby"), nullable=True)
    cancel_reason_code = Column(String(64), nullable=True)
    cancellation_reason = Column(String(255), nullable=True)
    search_attempt = Column(Integer, default=0, nullable=False)

    # Canonical processor reference, plus the legacy "provider:id" field
    payment_ref = Column(String(128), nullable=True)
    payment_method = Column(String(160), nullable=True)
    payment_status = Column(
        _enum(PaymentStatus, "paymentstatus"), default=PaymentStatus.PENDING, nullable=False
    )
    payment_hold_reason = Column(String(64), nullable=True)
    payment_held_at = Column(DateTime(timezone=True), nullable=True)
    payment_void_reason = Column(String(255), nullable=True)
    auto_hold = Column(Boolean, default=False, nullable=False)
    escrow_id = Column(String(64), nullable=True)
    dispute_resolution = Column(Text, nullable=True)

    idempotency_key = Column(String(64), unique=True, nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("idx_trips_status", "status"),
        Index("idx_trips_rider", "rider_id"),
        Index("idx_trips_payment_status", "payment_status", "payment_held_at"),
        Index("idx_trips_idempotency", "idempotency_key"),
    )

    @property
    def amount(self) -> float:
        return self.final_amount or self.estimated_amount or 0.0


class PaymentAuthorizationModel(Base):
    __tablename__ = "payment_authorizations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    reference = Column(String(128), unique=True, nullable=False)
    provider = Column(String(32), nullable=False)
    trip_id = Column(Integer, ForeignKey("trips.id"), nullable=False)
    amount = Column(Float, nullable=False)
    currency = Column(String(3), nullable=False)
    captured_amount = Column(Float, default=0.0, nullable=False)
    refunded_amount = Column(Float, default=0.0, nullable=False)
    state = Column(
        _enum(AuthorizationState, "authorizationstate"),
        default=AuthorizationState.AUTHORIZED,
        nullable=False,
    )
    hold_reason = Column(String(64), nullable=True)
    release_reason = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("idx_authorizations_trip", "trip_id"),
        Index("idx_authorizations_state", "state"),
    )


class DisputeModel(Base):
    __tablename__ = "payment_disputes"

    id = Column(String(64), primary_key=True, default=_prefixed_id("dispute"))
    trip_id = Column(Integer, ForeignKey("trips.id"), nullable=False)
    rider_id = Column(Integer, nullable=False)
    driver_id = Column(Integer, nullable=True)
    amount = Column(Float, nullable=False)
    reason = Column(_enum(DisputeReason, "disputereason"), nullable=False)
    description = Column(Text, nullable=False, default="")
    evidence = Column(JSON, nullable=False, default=list)
    status = Column(
        _enum(DisputeStatus, "disputestatus"), default=DisputeStatus.PENDING, nullable=False
    )
    auto_hold = Column(Boolean, default=False, nullable=False)
    strike_issued = Column(Boolean, default=False, nullable=False)
    strike_id = Column(Integer, nullable=True)
    escrow_id = Column(String(64), nullable=True)
    refund_amount = Column(Float, nullable=True)
    resolution = Column(Text, nullable=True)
    reviewed_by = Column(String(64), nullable=True)
    resolved_by = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    resolved_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_disputes_trip_status", "trip_id", "status"),
        Index("idx_disputes_rider", "rider_id"),
        Index("idx_disputes_driver", "driver_id"),
    )


class EscrowModel(Base):
    __tablename__ = "payment_escrows"

    id = Column(String(64), primary_key=True, default=_prefixed_id("escrow"))
    trip_id = Column(Integer, ForeignKey("trips.id"), nullable=False)
    dispute_id = Column(String(64), ForeignKey("payment_disputes.id"), nullable=True)
    authorization_ref = Column(String(128), nullable=True)
    amount = Column(Float, nullable=False)
    status = Column(_enum(EscrowStatus, "escrowstatus"), default=EscrowStatus.HELD, nullable=False)
    hold_reason = Column(String(64), nullable=True)
    release_reason = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    released_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_escrows_trip", "trip_id"),
        Index("idx_escrows_status", "status"),
    )


class NotificationModel(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False)
    type = Column(String(40), nullable=False)
    title = Column(String(120), nullable=False)
    message = Column(Text, nullable=False)
    data = Column(JSON, nullable=False, default=dict)
    read = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (Index("idx_notifications_user", "user_id"),)


class AdminAlertModel(Base):
    __tablename__ = "admin_alerts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    type = Column(String(40), nullable=False)
    priority = Column(String(10), nullable=False, default="medium")
    dispute_id = Column(String(64), nullable=True)
    trip_id = Column(Integer, nullable=True)
    rider_id = Column(Integer, nullable=True)
    driver_id = Column(Integer, nullable=True)
    amount = Column(Float, nullable=True)
    reason = Column(String(64), nullable=True)
    status = Column(String(20), nullable=False, default="unread")
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (Index("idx_admin_alerts_status", "status"),)


class StrikeModel(Base):
    __tablename__ = "driver_strikes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    driver_id = Column(Integer, nullable=False)
    trip_id = Column(Integer, nullable=True)
    type = Column(String(40), nullable=False)
    description = Column(Text, nullable=False)
    severity = Column(String(10), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (Index("idx_strikes_driver", "driver_id"),)
