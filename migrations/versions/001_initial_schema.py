"""Initial schema: guests, accounts, bookings and the settlement ledger.

Revision ID: 001
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "001"
down_revision = None
branch_labels = None
depends_on = None


ENUMS = {
    "bookingstatus": (
        "draft",
        "pending_payment",
        "payment_confirmed",
        "payment_failed",
        "in_progress",
        "completed",
        "cancelled",
    ),
    "bookingtype": ("on_demand", "scheduled", "advance"),
    "paymentmethod": ("cash_bank", "processor"),
    "intentstatus": ("requires_payment", "succeeded", "failed"),
    "transactionstatus": ("pending", "completed", "failed"),
    "recipienttype": ("driver", "support_worker", "platform", "processor"),
    "splitstatus": ("pending", "paid"),
    "notificationtype": (
        "booking_confirmation",
        "payment_receipt",
        "payment_rejection",
        "admin_payment_confirmation",
        "admin_payment_rejection",
        "booking_cancelled",
        "account_created",
    ),
    "issuestatus": ("open", "resolved"),
}


def _enum(name: str) -> postgresql.ENUM:
    return postgresql.ENUM(*ENUMS[name], name=name, create_type=False)


def _timestamps(*names: str) -> list[sa.Column]:
    return [
        sa.Column(name, sa.DateTime(timezone=True), server_default=sa.func.now())
        for name in names
    ]


def _money(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.Numeric(10, 2), nullable=nullable)


def upgrade() -> None:
    bind = op.get_bind()
    for name, values in ENUMS.items():
        postgresql.ENUM(*values, name=name).create(bind, checkfirst=True)

    # ── accounts ──────────────────────────────────────────────────────
    op.create_table(
        "accounts",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("email", sa.String(255), unique=True, nullable=False),
        sa.Column("name", sa.String(120), nullable=False),
        sa.Column("phone", sa.String(40), nullable=True),
        sa.Column("password_hash", sa.String(255), nullable=False),
        sa.Column("role", sa.String(20), nullable=False, server_default="rider"),
        sa.Column("promoted_from_guest_id", sa.String(36), unique=True, nullable=True),
        *_timestamps("created_at", "updated_at"),
    )

    # ── guest_identities ──────────────────────────────────────────────
    op.create_table(
        "guest_identities",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(120), nullable=False),
        sa.Column("email", sa.String(255), unique=True, nullable=False),
        sa.Column("phone", sa.String(40), nullable=False),
        sa.Column(
            "promoted_account_id",
            sa.String(36),
            sa.ForeignKey("accounts.id"),
            nullable=True,
        ),
        *_timestamps("created_at", "updated_at"),
    )

    # ── bookings ──────────────────────────────────────────────────────
    op.create_table(
        "bookings",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "guest_identity_id",
            sa.String(36),
            sa.ForeignKey("guest_identities.id"),
            nullable=True,
        ),
        sa.Column("account_id", sa.String(36), sa.ForeignKey("accounts.id"), nullable=True),
        sa.Column("linked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("pickup_address", sa.String(255), nullable=False),
        sa.Column("pickup_lat", sa.Float, nullable=False),
        sa.Column("pickup_lng", sa.Float, nullable=False),
        sa.Column("dropoff_address", sa.String(255), nullable=False),
        sa.Column("dropoff_lat", sa.Float, nullable=False),
        sa.Column("dropoff_lng", sa.Float, nullable=False),
        sa.Column("pickup_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("vehicle_features", sa.JSON, nullable=False),
        sa.Column("support_workers_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("booking_type", _enum("bookingtype"), nullable=False),
        sa.Column("payment_method", _enum("paymentmethod"), nullable=False),
        sa.Column(
            "status", _enum("bookingstatus"), nullable=False, server_default="draft"
        ),
        sa.Column("currency", sa.String(3), nullable=False),
        _money("fare_estimate"),
        _money("base_fare"),
        _money("distance_fare"),
        _money("vehicle_feature_fare"),
        _money("support_worker_fare"),
        _money("peak_surcharge"),
        sa.Column("driver_id", sa.String(36), nullable=True),
        sa.Column("support_worker_ids", sa.JSON, nullable=False),
        sa.Column("special_requirements", sa.Text, nullable=True),
        sa.Column("notes", sa.Text, nullable=True),
        sa.Column("failure_reason", sa.Text, nullable=True),
        *_timestamps("created_at", "updated_at"),
    )
    op.create_index("idx_bookings_status", "bookings", ["status"])
    op.create_index("idx_bookings_guest", "bookings", ["guest_identity_id"])
    op.create_index("idx_bookings_account", "bookings", ["account_id"])
    op.create_index("idx_bookings_driver", "bookings", ["driver_id"])

    # ── booking_access_tokens ─────────────────────────────────────────
    op.create_table(
        "booking_access_tokens",
        sa.Column("token", sa.String(64), primary_key=True),
        sa.Column("booking_id", sa.String(36), sa.ForeignKey("bookings.id"), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        *_timestamps("created_at"),
    )
    op.create_index("idx_access_tokens_booking", "booking_access_tokens", ["booking_id"])

    # ── payment_intents ───────────────────────────────────────────────
    op.create_table(
        "payment_intents",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "booking_id",
            sa.String(36),
            sa.ForeignKey("bookings.id"),
            unique=True,
            nullable=False,
        ),
        sa.Column("processor_intent_id", sa.String(255), unique=True, nullable=False),
        sa.Column("client_secret", sa.String(255), nullable=False),
        _money("amount"),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("destination_account", sa.String(255), nullable=True),
        _money("application_fee", nullable=True),
        sa.Column(
            "status",
            _enum("intentstatus"),
            nullable=False,
            server_default="requires_payment",
        ),
        *_timestamps("created_at", "updated_at"),
    )

    # ── payment_transactions ──────────────────────────────────────────
    op.create_table(
        "payment_transactions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "booking_id",
            sa.String(36),
            sa.ForeignKey("bookings.id"),
            unique=True,
            nullable=False,
        ),
        _money("amount"),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("payment_method", _enum("paymentmethod"), nullable=False),
        sa.Column("processor_intent_id", sa.String(255), nullable=True),
        sa.Column(
            "status", _enum("transactionstatus"), nullable=False, server_default="pending"
        ),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
    )

    # ── payment_splits ────────────────────────────────────────────────
    op.create_table(
        "payment_splits",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "payment_transaction_id",
            sa.String(36),
            sa.ForeignKey("payment_transactions.id"),
            nullable=False,
        ),
        sa.Column("recipient_id", sa.String(36), nullable=True),
        sa.Column("recipient_type", _enum("recipienttype"), nullable=False),
        _money("amount"),
        sa.Column("status", _enum("splitstatus"), nullable=False, server_default="pending"),
    )
    op.create_index("idx_splits_transaction", "payment_splits", ["payment_transaction_id"])

    # ── payout_accounts ───────────────────────────────────────────────
    op.create_table(
        "payout_accounts",
        sa.Column("recipient_id", sa.String(36), primary_key=True),
        sa.Column("processor_account_id", sa.String(255), nullable=False),
        *_timestamps("created_at", "updated_at"),
    )

    # ── notifications ─────────────────────────────────────────────────
    op.create_table(
        "notifications",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("recipient", sa.String(255), nullable=False),
        sa.Column("subject", sa.String(255), nullable=False),
        sa.Column("body", sa.Text, nullable=False),
        sa.Column("booking_id", sa.String(36), nullable=True),
        sa.Column("notification_type", _enum("notificationtype"), nullable=False),
        sa.Column("priority", sa.Integer, nullable=False, server_default="2"),
        sa.Column("retry_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer, nullable=False, server_default="3"),
        sa.Column("status", sa.String(20), nullable=False, server_default="queued"),
        *_timestamps("created_at"),
    )
    op.create_index("idx_notifications_status", "notifications", ["status"])
    op.create_index("idx_notifications_booking", "notifications", ["booking_id"])

    # ── reconciliation_issues ─────────────────────────────────────────
    op.create_table(
        "reconciliation_issues",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("booking_id", sa.String(36), nullable=True),
        sa.Column("processor_intent_id", sa.String(255), nullable=True),
        _money("amount", nullable=True),
        sa.Column("reason", sa.Text, nullable=False),
        sa.Column("status", _enum("issuestatus"), nullable=False, server_default="open"),
        *_timestamps("created_at"),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("idx_reconciliation_status", "reconciliation_issues", ["status"])


def downgrade() -> None:
    for table in (
        "reconciliation_issues",
        "notifications",
        "payout_accounts",
        "payment_splits",
        "payment_transactions",
        "payment_intents",
        "booking_access_tokens",
        "bookings",
        "guest_identities",
        "accounts",
    ):
        op.drop_table(table)
    for name in ENUMS:
        op.execute(f"DROP TYPE IF EXISTS {name}")
