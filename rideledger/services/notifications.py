"""
Notification outbox.

The core never talks to a mail server.  It writes one queued row per
outcome into ``notifications`` inside the same DB transaction as the
state change; the external dispatcher drains the table and owns the
retry budget (``retry_count`` / ``max_retries``).
"""

from __future__ import annotations

from decimal import Decimal
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from rideledger.config import settings
from rideledger.domain.enums import NotificationType, PaymentMethod
from rideledger.infrastructure.models import BookingModel, NotificationModel
from rideledger.infrastructure.repositories import NotificationRepository

HIGH = 1
NORMAL = 2

METHOD_LABELS = {
    PaymentMethod.CASH_BANK: "Cash/Bank Transfer",
    PaymentMethod.PROCESSOR: "Card",
}


def short_ref(booking_id: str) -> str:
    return booking_id[:8]


class Notifier:
    def __init__(
        self,
        session: AsyncSession,
        admin_email: Optional[str] = None,
        max_retries: Optional[int] = None,
    ):
        self.repo = NotificationRepository(session)
        self.admin_email = admin_email or settings.admin_email
        self.max_retries = (
            max_retries if max_retries is not None else settings.notification_max_retries
        )

    async def enqueue(
        self,
        *,
        recipient: str,
        subject: str,
        body: str,
        booking_id: Optional[str],
        notification_type: NotificationType,
        priority: int = NORMAL,
    ) -> NotificationModel:
        return await self.repo.enqueue(
            NotificationModel(
                recipient=recipient,
                subject=subject,
                body=body,
                booking_id=booking_id,
                notification_type=notification_type,
                priority=priority,
                retry_count=0,
                max_retries=self.max_retries,
                status="queued",
            )
        )

    async def booking_created(
        self, booking: BookingModel, email: str, name: str
    ) -> None:
        await self.enqueue(
            recipient=email,
            subject=f"Booking received - {short_ref(booking.id)}",
            body=(
                f"Dear {name},\n"
                f"Your journey from {booking.pickup_address} to "
                f"{booking.dropoff_address} is booked for {booking.pickup_time:%Y-%m-%d %H:%M}.\n"
                f"Fare estimate: {booking.currency} {booking.fare_estimate:.2f}"
            ),
            booking_id=booking.id,
            notification_type=NotificationType.BOOKING_CONFIRMATION,
        )

    async def payment_confirmed(
        self,
        booking: BookingModel,
        email: str,
        name: str,
        amount: Decimal,
        confirmed_by: str,
    ) -> None:
        method = METHOD_LABELS[PaymentMethod(booking.payment_method)]
        await self.enqueue(
            recipient=email,
            subject=f"Payment Confirmed - Booking {short_ref(booking.id)}",
            body=(
                f"Dear {name},\n"
                f"Your payment of {booking.currency} {amount:.2f} ({method}) "
                "has been confirmed."
            ),
            booking_id=booking.id,
            notification_type=NotificationType.PAYMENT_RECEIPT,
            priority=NORMAL,
        )
        await self.enqueue(
            recipient=self.admin_email,
            subject=f"Payment Confirmed by {confirmed_by} - Booking {short_ref(booking.id)}",
            body=(
                f"Booking {booking.id}\nCustomer: {name} ({email})\n"
                f"Amount: {booking.currency} {amount:.2f}\nMethod: {method}\n"
                f"Confirmed by: {confirmed_by}"
            ),
            booking_id=booking.id,
            notification_type=NotificationType.ADMIN_PAYMENT_CONFIRMATION,
            priority=HIGH,
        )

    async def payment_rejected(
        self,
        booking: BookingModel,
        email: str,
        name: str,
        reason: str,
        rejected_by: str,
    ) -> None:
        await self.enqueue(
            recipient=email,
            subject=f"Payment Issue - Booking {short_ref(booking.id)}",
            body=(
                f"Dear {name},\n"
                f"We could not confirm your payment of {booking.currency} "
                f"{booking.fare_estimate:.2f}.\nIssue: {reason}\n"
                f"Please contact {self.admin_email} quoting {short_ref(booking.id)}."
            ),
            booking_id=booking.id,
            notification_type=NotificationType.PAYMENT_REJECTION,
            priority=HIGH,
        )
        await self.enqueue(
            recipient=self.admin_email,
            subject=f"Payment Rejected by {rejected_by} - Booking {short_ref(booking.id)}",
            body=(
                f"Booking {booking.id}\nCustomer: {name} ({email})\n"
                f"Amount: {booking.currency} {booking.fare_estimate:.2f}\n"
                f"Reason: {reason}\nRejected by: {rejected_by}"
            ),
            booking_id=booking.id,
            notification_type=NotificationType.ADMIN_PAYMENT_REJECTION,
            priority=HIGH,
        )

    async def booking_cancelled(
        self, booking: BookingModel, email: str, name: str
    ) -> None:
        await self.enqueue(
            recipient=email,
            subject=f"Booking Cancelled - {short_ref(booking.id)}",
            body=f"Dear {name},\nYour booking {short_ref(booking.id)} has been cancelled.",
            booking_id=booking.id,
            notification_type=NotificationType.BOOKING_CANCELLED,
        )

    async def account_created(self, email: str, name: str) -> None:
        await self.enqueue(
            recipient=email,
            subject="Your account is ready",
            body=f"Dear {name},\nYour bookings are now available in your account.",
            booking_id=None,
            notification_type=NotificationType.ACCOUNT_CREATED,
        )
