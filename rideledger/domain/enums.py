"""Domain enumerations and state-transition rules."""

import enum


class BookingStatus(str, enum.Enum):
    DRAFT = "draft"
    PENDING_PAYMENT = "pending_payment"
    PAYMENT_CONFIRMED = "payment_confirmed"
    PAYMENT_FAILED = "payment_failed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# State machine: maps current status -> set of valid next statuses
BOOKING_TRANSITIONS: dict[BookingStatus, set[BookingStatus]] = {
    BookingStatus.DRAFT: {BookingStatus.PENDING_PAYMENT, BookingStatus.CANCELLED},
    BookingStatus.PENDING_PAYMENT: {
        BookingStatus.PAYMENT_CONFIRMED,
        BookingStatus.PAYMENT_FAILED,
        BookingStatus.CANCELLED,
    },
    BookingStatus.PAYMENT_CONFIRMED: {
        BookingStatus.IN_PROGRESS,
        BookingStatus.CANCELLED,
    },
    BookingStatus.PAYMENT_FAILED: {BookingStatus.CANCELLED},
    BookingStatus.IN_PROGRESS: {BookingStatus.COMPLETED, BookingStatus.CANCELLED},
    BookingStatus.COMPLETED: set(),
    BookingStatus.CANCELLED: set(),
}


class BookingType(str, enum.Enum):
    ON_DEMAND = "on_demand"
    SCHEDULED = "scheduled"
    ADVANCE = "advance"


class PaymentMethod(str, enum.Enum):
    CASH_BANK = "cash_bank"
    PROCESSOR = "processor"


class TransactionStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class RecipientType(str, enum.Enum):
    DRIVER = "driver"
    SUPPORT_WORKER = "support_worker"
    PLATFORM = "platform"
    PROCESSOR = "processor"


class SplitStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"


class IntentStatus(str, enum.Enum):
    REQUIRES_PAYMENT = "requires_payment"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class NotificationType(str, enum.Enum):
    BOOKING_CONFIRMATION = "booking_confirmation"
    PAYMENT_RECEIPT = "payment_receipt"
    PAYMENT_REJECTION = "payment_rejection"
    ADMIN_PAYMENT_CONFIRMATION = "admin_payment_confirmation"
    ADMIN_PAYMENT_REJECTION = "admin_payment_rejection"
    BOOKING_CANCELLED = "booking_cancelled"
    ACCOUNT_CREATED = "account_created"


class IssueStatus(str, enum.Enum):
    OPEN = "open"
    RESOLVED = "resolved"
