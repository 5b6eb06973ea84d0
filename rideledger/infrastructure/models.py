"""
SQLAlchemy ORM models  (maps to PostgreSQL).

Tables
------
* ``guest_identities``       -- unauthenticated riders, keyed by email
* ``booking_access_tokens``  -- bearer tokens for guest booking lookup
* ``accounts``               -- durable identities (promoted guests)
* ``bookings``               -- journeys, owned by a guest or an account
* ``payment_intents``        -- one processor intent per booking
* ``payment_transactions``   -- one settled payment per booking
* ``payment_splits``         -- per-recipient shares of a transaction
* ``payout_accounts``        -- processor connected accounts of drivers / workers
* ``notifications``          -- outbox drained by the notification dispatcher
* ``reconciliation_issues``  -- charges the ledger failed to record

Indexes
-------
* **Unique** on ``guest_identities.email``, ``accounts.email``,
  ``payment_intents.booking_id`` and ``payment_transactions.booking_id``;
  these back the idempotency and single-settlement guarantees.
* **B-Tree** on ``bookings.status`` and the owner columns.
"""

import uuid

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)

from .database import Base
from rideledger.domain.entities import utcnow
from rideledger.domain.enums import (
    BookingStatus,
    BookingType,
    IntentStatus,
    IssueStatus,
    NotificationType,
    PaymentMethod,
    RecipientType,
    SplitStatus,
    TransactionStatus,
)


def _uuid() -> str:
    return str(uuid.uuid4())


def _enum(enum_cls, name: str) -> Enum:
    return Enum(
        enum_cls,
        name=name,
        values_callable=lambda members: [m.value for m in members],
    )


Money = Numeric(10, 2)
PaymentMethodType = _enum(PaymentMethod, "paymentmethod")


class GuestIdentityModel(Base):
    __tablename__ = "guest_identities"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(120), nullable=False)
    email = Column(String(255), unique=True, nullable=False)
    phone = Column(String(40), nullable=False)
    promoted_account_id = Column(String(36), ForeignKey("accounts.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class AccessTokenModel(Base):
    __tablename__ = "booking_access_tokens"

    token = Column(String(64), primary_key=True)
    booking_id = Column(String(36), ForeignKey("bookings.id"), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (Index("idx_access_tokens_booking", "booking_id"),)


class AccountModel(Base):
    __tablename__ = "accounts"

    id = Column(String(36), primary_key=True, default=_uuid)
    email = Column(String(255), unique=True, nullable=False)
    name = Column(String(120), nullable=False)
    phone = Column(String(40), nullable=True)
    password_hash = Column(String(255), nullable=False)
    role = Column(String(20), default="rider", nullable=False)
    promoted_from_guest_id = Column(String(36), unique=True, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class BookingModel(Base):
    __tablename__ = "bookings"

    id = Column(String(36), primary_key=True, default=_uuid)

    # Owner: guest identity, and the account it was promoted into (if any)
    guest_identity_id = Column(
        String(36), ForeignKey("guest_identities.id"), nullable=True
    )
    account_id = Column(String(36), ForeignKey("accounts.id"), nullable=True)
    linked_at = Column(DateTime(timezone=True), nullable=True)

    pickup_address = Column(String(255), nullable=False)
    pickup_lat = Column(Float, nullable=False)
    pickup_lng = Column(Float, nullable=False)
    dropoff_address = Column(String(255), nullable=False)
    dropoff_lat = Column(Float, nullable=False)
    dropoff_lng = Column(Float, nullable=False)
    pickup_time = Column(DateTime(timezone=True), nullable=False)

    vehicle_features = Column(JSON, default=list, nullable=False)
    support_workers_count = Column(Integer, default=0, nullable=False)
    booking_type = Column(_enum(BookingType, "bookingtype"), nullable=False)
    payment_method = Column(PaymentMethodType, nullable=False)
    status = Column(
        _enum(BookingStatus, "bookingstatus"),
        default=BookingStatus.DRAFT,
        nullable=False,
    )

    # Fare components feed the split calculator at settlement time
    currency = Column(String(3), nullable=False)
    fare_estimate = Column(Money, nullable=False)
    base_fare = Column(Money, nullable=False)
    distance_fare = Column(Money, nullable=False)
    vehicle_feature_fare = Column(Money, nullable=False)
    support_worker_fare = Column(Money, nullable=False)
    peak_surcharge = Column(Money, nullable=False)

    driver_id = Column(String(36), nullable=True)
    support_worker_ids = Column(JSON, default=list, nullable=False)

    special_requirements = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)
    failure_reason = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_bookings_status", "status"),
        Index("idx_bookings_guest", "guest_identity_id"),
        Index("idx_bookings_account", "account_id"),
        Index("idx_bookings_driver", "driver_id"),
    )


class PaymentIntentModel(Base):
    __tablename__ = "payment_intents"

    id = Column(String(36), primary_key=True, default=_uuid)
    booking_id = Column(
        String(36), ForeignKey("bookings.id"), unique=True, nullable=False
    )
    processor_intent_id = Column(String(255), unique=True, nullable=False)
    client_secret = Column(String(255), nullable=False)
    amount = Column(Money, nullable=False)
    currency = Column(String(3), nullable=False)
    # Destination charge: the driver's share goes straight to this account
    destination_account = Column(String(255), nullable=True)
    application_fee = Column(Money, nullable=True)
    status = Column(
        _enum(IntentStatus, "intentstatus"),
        default=IntentStatus.REQUIRES_PAYMENT,
        nullable=False,
    )
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class PaymentTransactionModel(Base):
    __tablename__ = "payment_transactions"

    id = Column(String(36), primary_key=True, default=_uuid)
    booking_id = Column(
        String(36), ForeignKey("bookings.id"), unique=True, nullable=False
    )
    amount = Column(Money, nullable=False)
    currency = Column(String(3), nullable=False)
    payment_method = Column(PaymentMethodType, nullable=False)
    processor_intent_id = Column(String(255), nullable=True)
    status = Column(
        _enum(TransactionStatus, "transactionstatus"),
        default=TransactionStatus.PENDING,
        nullable=False,
    )
    processed_at = Column(DateTime(timezone=True), nullable=True)


class PaymentSplitModel(Base):
    __tablename__ = "payment_splits"

    id = Column(String(36), primary_key=True, default=_uuid)
    payment_transaction_id = Column(
        String(36), ForeignKey("payment_transactions.id"), nullable=False
    )
    recipient_id = Column(String(36), nullable=True)
    recipient_type = Column(_enum(RecipientType, "recipienttype"), nullable=False)
    amount = Column(Money, nullable=False)
    status = Column(
        _enum(SplitStatus, "splitstatus"), default=SplitStatus.PENDING, nullable=False
    )

    __table_args__ = (Index("idx_splits_transaction", "payment_transaction_id"),)


class PayoutAccountModel(Base):
    __tablename__ = "payout_accounts"

    recipient_id = Column(String(36), primary_key=True)
    processor_account_id = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class NotificationModel(Base):
    __tablename__ = "notifications"

    id = Column(String(36), primary_key=True, default=_uuid)
    recipient = Column(String(255), nullable=False)
    subject = Column(String(255), nullable=False)
    body = Column(Text, nullable=False)
    booking_id = Column(String(36), nullable=True)
    notification_type = Column(
        _enum(NotificationType, "notificationtype"), nullable=False
    )
    priority = Column(Integer, default=2, nullable=False)
    retry_count = Column(Integer, default=0, nullable=False)
    max_retries = Column(Integer, default=3, nullable=False)
    status = Column(String(20), default="queued", nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("idx_notifications_status", "status"),
        Index("idx_notifications_booking", "booking_id"),
    )


class ReconciliationIssueModel(Base):
    __tablename__ = "reconciliation_issues"

    id = Column(String(36), primary_key=True, default=_uuid)
    booking_id = Column(String(36), nullable=True)
    processor_intent_id = Column(String(255), nullable=True)
    amount = Column(Money, nullable=True)
    reason = Column(Text, nullable=False)
    status = Column(
        _enum(IssueStatus, "issuestatus"), default=IssueStatus.OPEN, nullable=False
    )
    created_at = Column(DateTime(timezone=True), default=utcnow)
    resolved_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (Index("idx_reconciliation_status", "status"),)
