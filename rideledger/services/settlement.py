"""
Manual cash/bank settlement.

A driver confirms or rejects an offline payment for a booking in
``pending_payment``.  Confirm and reject race through the same
compare-and-set on the booking status, so exactly one of them wins and
the other gets ``ConflictError`` without writing anything.
"""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from rideledger.domain.enums import BookingStatus, PaymentMethod
from rideledger.domain.errors import ConflictError, ValidationError
from rideledger.infrastructure.models import BookingModel
from rideledger.services.bookings import BookingService, rider_contact
from rideledger.services.ledger import LedgerWriter, SettlementRecord
from rideledger.services.notifications import Notifier

logger = logging.getLogger(__name__)


class ManualSettlementService:
    def __init__(self, session: AsyncSession, notifier: Optional[Notifier] = None):
        self.session = session
        self.notifier = notifier or Notifier(session)
        self.bookings = BookingService(session, notifier=self.notifier)
        self.ledger = LedgerWriter(session)

    async def _cash_booking(self, booking_id: str, driver_id: str) -> BookingModel:
        booking = await self.bookings.get(booking_id)
        if booking.payment_method != PaymentMethod.CASH_BANK:
            raise ConflictError("Booking is not paid by cash or bank transfer")
        self.bookings.check_driver(booking, driver_id)
        return booking

    async def confirm_payment(self, booking_id: str, driver_id: str) -> SettlementRecord:
        booking = await self._cash_booking(booking_id, driver_id)
        booking = await self.bookings.transition(
            booking,
            BookingStatus.PAYMENT_CONFIRMED,
            expected=frozenset({BookingStatus.PENDING_PAYMENT}),
            driver_id=booking.driver_id or driver_id,
        )
        record = await self.ledger.record(booking, payment_method=PaymentMethod.CASH_BANK)
        contact = await rider_contact(self.session, booking)
        await self.notifier.payment_confirmed(
            booking,
            contact.email,
            contact.name,
            record.transaction.amount,
            confirmed_by=f"driver {driver_id}",
        )
        await self.session.commit()
        logger.info(
            "Cash payment of %s confirmed for booking %s by driver %s",
            record.transaction.amount,
            booking.id,
            driver_id,
        )
        return record

    async def reject_payment(
        self, booking_id: str, driver_id: str, reason: str
    ) -> BookingModel:
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("A reason is required to reject a payment")

        booking = await self._cash_booking(booking_id, driver_id)
        booking = await self.bookings.transition(
            booking,
            BookingStatus.PAYMENT_FAILED,
            expected=frozenset({BookingStatus.PENDING_PAYMENT}),
            driver_id=booking.driver_id or driver_id,
            failure_reason=reason,
        )
        contact = await rider_contact(self.session, booking)
        await self.notifier.payment_rejected(
            booking, contact.email, contact.name, reason, rejected_by=f"driver {driver_id}"
        )
        await self.session.commit()
        logger.info("Cash payment rejected for booking %s by driver %s", booking.id, driver_id)
        return booking
