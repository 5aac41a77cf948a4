"""Initial schema: trips, payment authorizations, escrow, disputes.

Revision ID: 001
Create Date: 2026-10-17
"""

from alembic import op
import sqlalchemy as sa


revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps(*names: str) -> list[sa.Column]:
    return [
        sa.Column(name, sa.DateTime(timezone=True), server_default=sa.func.now())
        for name in names
    ]


def upgrade() -> None:
    # ── users ─────────────────────────────────────────────────────────
    op.create_table(
        "users",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(120), nullable=False),
        sa.Column("email", sa.String(255), unique=True, nullable=False),
        sa.Column("role", sa.String(20), nullable=False, server_default="rider"),
        *_timestamps("created_at"),
    )

    # ── trips ─────────────────────────────────────────────────────────
    op.create_table(
        "trips",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("rider_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("driver_id", sa.Integer, sa.ForeignKey("users.id"), nullable=True),
        sa.Column("pickup", sa.JSON, nullable=False),
        sa.Column("destination", sa.JSON, nullable=False),
        sa.Column("stops", sa.JSON, nullable=False),
        sa.Column(
            "vehicle_class",
            sa.Enum("STANDARD", "XL", "PREMIUM", name="vehicleclass"),
            nullable=False,
        ),
        sa.Column("estimated_amount", sa.Float, nullable=False),
        sa.Column("final_amount", sa.Float, nullable=True),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column(
            "status",
            sa.Enum(
                "REQUESTED",
                "SEARCHING",
                "ACCEPTED",
                "DRIVER_ARRIVING",
                "IN_PROGRESS",
                "AWAITING_SETTLEMENT",
                "COMPLETED",
                "CANCELLED",
                name="tripstatus",
            ),
            nullable=False,
        ),
        sa.Column(
            "cancelled_by",
            sa.Enum("RIDER", "DRIVER", "SYSTEM", name="cancelledby"),
            nullable=True,
        ),
        sa.Column("cancel_reason_code", sa.String(64), nullable=True),
        sa.Column("cancellation_reason", sa.String(255), nullable=True),
        sa.Column("search_attempt", sa.Integer, nullable=False, server_default="0"),
        sa.Column("payment_ref", sa.String(128), nullable=True),
        sa.Column("payment_method", sa.String(160), nullable=True),
        sa.Column(
            "payment_status",
            sa.Enum(
                "PENDING",
                "AUTHORIZED",
                "RELEASED",
                "HELD",
                "COMPLETED",
                "REFUNDED",
                "VOIDED",
                name="paymentstatus",
            ),
            nullable=False,
        ),
        sa.Column("payment_hold_reason", sa.String(64), nullable=True),
        sa.Column("payment_held_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payment_void_reason", sa.String(255), nullable=True),
        sa.Column("auto_hold", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("escrow_id", sa.String(64), nullable=True),
        sa.Column("dispute_resolution", sa.Text, nullable=True),
        sa.Column("idempotency_key", sa.String(64), unique=True, nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps("created_at", "updated_at"),
    )
    op.create_index("idx_trips_status", "trips", ["status"])
    op.create_index("idx_trips_rider", "trips", ["rider_id"])
    op.create_index("idx_trips_payment_status", "trips", ["payment_status", "payment_held_at"])
    op.create_index("idx_trips_idempotency", "trips", ["idempotency_key"])

    # ── payment_authorizations ────────────────────────────────────────
    op.create_table(
        "payment_authorizations",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("reference", sa.String(128), unique=True, nullable=False),
        sa.Column("provider", sa.String(32), nullable=False),
        sa.Column("trip_id", sa.Integer, sa.ForeignKey("trips.id"), nullable=False),
        sa.Column("amount", sa.Float, nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("captured_amount", sa.Float, nullable=False, server_default="0"),
        sa.Column("refunded_amount", sa.Float, nullable=False, server_default="0"),
        sa.Column(
            "state",
            sa.Enum("AUTHORIZED", "CAPTURED", "RELEASED", "VOIDED", name="authorizationstate"),
            nullable=False,
        ),
        sa.Column("hold_reason", sa.String(64), nullable=True),
        sa.Column("release_reason", sa.String(255), nullable=True),
        *_timestamps("created_at", "updated_at"),
    )
    op.create_index("idx_authorizations_trip", "payment_authorizations", ["trip_id"])
    op.create_index("idx_authorizations_state", "payment_authorizations", ["state"])

    # ── payment_disputes ──────────────────────────────────────────────
    op.create_table(
        "payment_disputes",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("trip_id", sa.Integer, sa.ForeignKey("trips.id"), nullable=False),
        sa.Column("rider_id", sa.Integer, nullable=False),
        sa.Column("driver_id", sa.Integer, nullable=True),
        sa.Column("amount", sa.Float, nullable=False),
        sa.Column(
            "reason",
            sa.Enum(
                "safety_violation",
                "terms_breach",
                "fraud",
                "route_abuse",
                "early_completion",
                "overcharge",
                "service_not_received",
                "sos_triggered",
                "other",
                name="disputereason",
            ),
            nullable=False,
        ),
        sa.Column("description", sa.Text, nullable=False),
        sa.Column("evidence", sa.JSON, nullable=False),
        sa.Column(
            "status",
            sa.Enum("pending", "under_review", "approved", "denied", name="disputestatus"),
            nullable=False,
        ),
        sa.Column("auto_hold", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("strike_issued", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("strike_id", sa.Integer, nullable=True),
        sa.Column("escrow_id", sa.String(64), nullable=True),
        sa.Column("refund_amount", sa.Float, nullable=True),
        sa.Column("resolution", sa.Text, nullable=True),
        sa.Column("reviewed_by", sa.String(64), nullable=True),
        sa.Column("resolved_by", sa.String(64), nullable=True),
        *_timestamps("created_at", "updated_at"),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("idx_disputes_trip_status", "payment_disputes", ["trip_id", "status"])
    op.create_index("idx_disputes_rider", "payment_disputes", ["rider_id"])
    op.create_index("idx_disputes_driver", "payment_disputes", ["driver_id"])

    # ── payment_escrows ───────────────────────────────────────────────
    op.create_table(
        "payment_escrows",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("trip_id", sa.Integer, sa.ForeignKey("trips.id"), nullable=False),
        sa.Column(
            "dispute_id", sa.String(64), sa.ForeignKey("payment_disputes.id"), nullable=True
        ),
        sa.Column("authorization_ref", sa.String(128), nullable=True),
        sa.Column("amount", sa.Float, nullable=False),
        sa.Column(
            "status",
            sa.Enum(
                "held",
                "released_to_driver",
                "refunded_to_rider",
                "partially_refunded",
                "voided",
                name="escrowstatus",
            ),
            nullable=False,
        ),
        sa.Column("hold_reason", sa.String(64), nullable=True),
        sa.Column("release_reason", sa.Text, nullable=True),
        *_timestamps("created_at"),
        sa.Column("released_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("idx_escrows_trip", "payment_escrows", ["trip_id"])
    op.create_index("idx_escrows_status", "payment_escrows", ["status"])

    # ── notifications / admin_alerts / driver_strikes ─────────────────
    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Integer, nullable=False),
        sa.Column("type", sa.String(40), nullable=False),
        sa.Column("title", sa.String(120), nullable=False),
        sa.Column("message", sa.Text, nullable=False),
        sa.Column("data", sa.JSON, nullable=False),
        sa.Column("read", sa.Boolean, nullable=False, server_default=sa.false()),
        *_timestamps("created_at"),
    )
    op.create_index("idx_notifications_user", "notifications", ["user_id"])

    op.create_table(
        "admin_alerts",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("type", sa.String(40), nullable=False),
        sa.Column("priority", sa.String(10), nullable=False),
        sa.Column("dispute_id", sa.String(64), nullable=True),
        sa.Column("trip_id", sa.Integer, nullable=True),
        sa.Column("rider_id", sa.Integer, nullable=True),
        sa.Column("driver_id", sa.Integer, nullable=True),
        sa.Column("amount", sa.Float, nullable=True),
        sa.Column("reason", sa.String(64), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="unread"),
        *_timestamps("created_at"),
    )
    op.create_index("idx_admin_alerts_status", "admin_alerts", ["status"])

    op.create_table(
        "driver_strikes",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("driver_id", sa.Integer, nullable=False),
        sa.Column("trip_id", sa.Integer, nullable=True),
        sa.Column("type", sa.String(40), nullable=False),
        sa.Column("description", sa.Text, nullable=False),
        sa.Column("severity", sa.String(10), nullable=False),
        *_timestamps("created_at"),
    )
    op.create_index("idx_strikes_driver", "driver_strikes", ["driver_id"])


def downgrade() -> None:
    op.drop_table("driver_strikes")
    op.drop_table("admin_alerts")
    op.drop_table("notifications")
    op.drop_table("payment_escrows")
    op.drop_table("payment_disputes")
    op.drop_table("payment_authorizations")
    op.drop_table("trips")
    op.drop_table("users")
    for enum_name in (
        "escrowstatus",
        "disputestatus",
        "disputereason",
        "authorizationstate",
        "paymentstatus",
        "cancelledby",
        "tripstatus",
        "vehicleclass",
    ):
        op.execute(f"DROP TYPE IF EXISTS {enum_name}")
