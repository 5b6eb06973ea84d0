"""
Payment Orchestrator
====================

Talks to the external payment processor and folds its verdicts back
onto bookings.

* ``create_intent`` is idempotent per booking: the stored
  ``payment_intents`` row is returned on retry, the processor call
  carries a booking-derived idempotency key, and a per-booking
  ``DistributedLock`` keeps concurrent retries from racing to the
  processor.
* ``settle_intent`` writes the transaction, its splits and the
  ``payment_confirmed`` status in one DB transaction.  If that write
  fails after the processor has taken the money, the failure is
  recorded as an open ``ReconciliationIssue``, logged on the
  ``rideledger.reconciliation`` logger and re-raised as
  ``ReconciliationError``; it is never dropped.
* Crew with a registered payout account are paid through the processor.
  An assigned driver's share rides on the charge itself as a destination
  charge, the platform keeping the rest as the application fee.  Support
  worker shares follow as transfers once the booking settles
  (``pay_out``); a failed transfer is flagged, never raised into the
  webhook.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

import redis.asyncio as aioredis
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from rideledger.config import settings
from rideledger.domain.entities import utcnow
from rideledger.domain.enums import (
    BookingStatus,
    IntentStatus,
    IssueStatus,
    PaymentMethod,
    RecipientType,
    SplitStatus,
)
from rideledger.domain.errors import (
    ConflictError,
    NotFoundError,
    ProcessorError,
    ReconciliationError,
)
from rideledger.domain.pricing import PaymentSplitBreakdown
from rideledger.infrastructure.locks import optional_lock
from rideledger.infrastructure.models import (
    BookingModel,
    PaymentIntentModel,
    PayoutAccountModel,
    ReconciliationIssueModel,
)
from rideledger.infrastructure.processor import (
    EVENT_FAILED,
    EVENT_SUCCEEDED,
    SUCCEEDED,
    PaymentProcessor,
    ProcessorEvent,
    to_minor_units,
)
from rideledger.infrastructure.repositories import (
    BookingRepository,
    LedgerRepository,
    PaymentIntentRepository,
    PayoutAccountRepository,
    ReconciliationIssueRepository,
)
from rideledger.services.bookings import rider_contact
from rideledger.services.ledger import LedgerWriter, booking_split
from rideledger.services.notifications import Notifier

logger = logging.getLogger(__name__)
reconciliation_logger = logging.getLogger("rideledger.reconciliation")

PAYABLE = (BookingStatus.DRAFT, BookingStatus.PENDING_PAYMENT)
CREW = (RecipientType.DRIVER, RecipientType.SUPPORT_WORKER)


@dataclass
class IntentResult:
    booking_id: str
    processor_intent_id: str
    client_secret: str
    amount: Decimal
    currency: str
    created: bool


def _result(intent: PaymentIntentModel, created: bool) -> IntentResult:
    return IntentResult(
        booking_id=intent.booking_id,
        processor_intent_id=intent.processor_intent_id,
        client_secret=intent.client_secret,
        amount=Decimal(intent.amount),
        currency=intent.currency,
        created=created,
    )


def intent_metadata(booking: BookingModel, split: PaymentSplitBreakdown) -> dict[str, str]:
    metadata = {
        "booking_id": booking.id,
        "driver_id": booking.driver_id or "",
        "support_worker_ids": ",".join(booking.support_worker_ids or []),
    }
    metadata.update({f"split_{key}": value for key, value in split.as_dict().items()})
    return metadata


class PaymentOrchestrator:
    def __init__(
        self,
        session: AsyncSession,
        processor: PaymentProcessor,
        notifier: Optional[Notifier] = None,
        redis: Optional[aioredis.Redis] = None,
    ):
        self.session = session
        self.processor = processor
        self.notifier = notifier or Notifier(session)
        self.redis = redis
        self.bookings = BookingRepository(session)
        self.intents = PaymentIntentRepository(session)
        self.issues = ReconciliationIssueRepository(session)
        self.transactions = LedgerRepository(session)
        self.payouts = PayoutAccountRepository(session)
        self.ledger = LedgerWriter(session)

    async def _booking(self, booking_id: str) -> BookingModel:
        booking = await self.bookings.get_by_id(booking_id)
        if booking is None:
            raise NotFoundError("Booking not found")
        return booking

    # ── Intent creation ───────────────────────────────────────────────

    async def create_intent(self, booking_id: str) -> IntentResult:
        booking = await self._booking(booking_id)
        if booking.payment_method != PaymentMethod.PROCESSOR:
            raise ConflictError("Booking is not paid through the payment processor")
        status = BookingStatus(booking.status)
        if status not in PAYABLE:
            raise ConflictError(f"Booking is {status.value}; no payment is due")

        existing = await self.intents.get_for_booking(booking_id)
        if existing is not None:
            return await self._reuse(booking, existing)

        async with optional_lock(
            self.redis, f"intent:{booking_id}", settings.lock_ttl_seconds
        ):
            existing = await self.intents.get_for_booking(booking_id)
            if existing is not None:
                return await self._reuse(booking, existing)

            amount = Decimal(booking.fare_estimate)
            split = booking_split(booking)
            metadata = intent_metadata(booking, split)
            destination = fee = None
            payout = await self.payouts.get(booking.driver_id) if booking.driver_id else None
            if payout is not None:
                destination = payout.processor_account_id
                fee = amount - split.driver_share
                metadata["driver_account"] = destination
            remote = await self.processor.create_payment_intent(
                amount=amount,
                currency=booking.currency,
                metadata=metadata,
                idempotency_key=f"booking-{booking_id}-intent",
                transfer_destination=destination,
                application_fee=fee,
            )
            try:
                intent = await self.intents.create(
                    PaymentIntentModel(
                        booking_id=booking_id,
                        processor_intent_id=remote.id,
                        client_secret=remote.client_secret,
                        amount=amount,
                        currency=booking.currency,
                        destination_account=destination,
                        application_fee=fee,
                        status=IntentStatus.REQUIRES_PAYMENT,
                    )
                )
            except IntegrityError:
                await self.session.rollback()
                existing = await self.intents.get_for_booking(booking_id)
                if existing is None:
                    raise
                return await self._reuse(await self._booking(booking_id), existing)

            await self._expose(booking)
            await self.session.commit()

        logger.info("Payment intent %s created for booking %s", intent.processor_intent_id, booking_id)
        return _result(intent, created=True)

    async def _reuse(self, booking: BookingModel, intent: PaymentIntentModel) -> IntentResult:
        if Decimal(intent.amount) != Decimal(booking.fare_estimate):
            raise ConflictError("Booking fare changed after its payment intent was created")
        if booking.status == BookingStatus.DRAFT:
            await self._expose(booking)
            await self.session.commit()
        return _result(intent, created=False)

    async def _expose(self, booking: BookingModel) -> None:
        if booking.status != BookingStatus.DRAFT:
            return
        # Losing this race only means someone else already moved the booking on.
        await self.bookings.compare_and_set_status(
            booking.id, BookingStatus.DRAFT, BookingStatus.PENDING_PAYMENT
        )
        await self.bookings.refresh(booking)

    # ── Confirmation ──────────────────────────────────────────────────

    async def confirm_with_processor(
        self, booking_id: str, payment_method: str
    ) -> BookingModel:
        """Confirm the booking's intent server-side and settle on success."""
        booking = await self._booking(booking_id)
        status = BookingStatus(booking.status)
        if status == BookingStatus.PAYMENT_CONFIRMED:
            return booking
        if status != BookingStatus.PENDING_PAYMENT:
            raise ConflictError(f"Booking is {status.value}; no payment is due")
        intent = await self.intents.get_for_booking(booking_id)
        if intent is None:
            raise ConflictError("Booking has no payment intent")

        # Declines and timeouts raise ProcessorError and leave the booking pending.
        remote = await self.processor.confirm_payment(
            client_secret=intent.client_secret, payment_method=payment_method
        )
        if remote.status != SUCCEEDED:
            logger.info("Intent %s is %s after confirm", remote.id, remote.status)
            return booking
        booking = await self.settle_intent(remote.id)
        await self.pay_out(booking_id)
        return booking

    async def handle_processor_event(self, event: ProcessorEvent) -> Optional[BookingModel]:
        if event.type == EVENT_SUCCEEDED:
            booking = await self.settle_intent(event.intent_id, event.amount_minor)
            await self.pay_out(booking.id)
            return booking
        if event.type == EVENT_FAILED:
            return await self.fail_intent(event.intent_id, event.failure_message)
        logger.debug("Ignoring processor event %s", event.type)
        return None

    async def _settled_by(self, booking_id: str, processor_intent_id: str) -> bool:
        transaction = await self.transactions.get_transaction_for_booking(booking_id)
        return (
            transaction is not None
            and transaction.processor_intent_id == processor_intent_id
        )

    async def settle_intent(
        self, processor_intent_id: str, amount_minor: Optional[int] = None
    ) -> BookingModel:
        intent = await self.intents.get_by_processor_id(processor_intent_id)
        if intent is None:
            raise await self._flag(
                None,
                processor_intent_id,
                Decimal(amount_minor) / 100 if amount_minor is not None else None,
                "Processor reported a charge for an unknown payment intent",
            )
        booking_id = intent.booking_id
        amount = Decimal(intent.amount)

        if await self._settled_by(booking_id, processor_intent_id):
            logger.info("Intent %s already settled; ignoring redelivery", processor_intent_id)
            return await self._booking(booking_id)
        if amount_minor is not None and amount_minor != to_minor_units(amount):
            raise await self._flag(
                booking_id,
                processor_intent_id,
                amount,
                f"Processor charged {amount_minor} minor units; intent is for "
                f"{to_minor_units(amount)}",
            )

        booking = await self._booking(booking_id)
        try:
            won = await self.bookings.compare_and_set_status(
                booking_id, BookingStatus.PENDING_PAYMENT, BookingStatus.PAYMENT_CONFIRMED
            )
            if won:
                await self.bookings.refresh(booking)
                record = await self.ledger.record(
                    booking,
                    payment_method=PaymentMethod.PROCESSOR,
                    processor_intent_id=processor_intent_id,
                )
                intent.status = IntentStatus.SUCCEEDED
                if intent.destination_account:
                    # The processor already routed the driver share with the charge
                    for split in record.splits:
                        if split.recipient_type == RecipientType.DRIVER:
                            split.status = SplitStatus.PAID
                contact = await rider_contact(self.session, booking)
                await self.notifier.payment_confirmed(
                    booking,
                    contact.email,
                    contact.name,
                    record.transaction.amount,
                    confirmed_by="payment processor",
                )
                await self.session.commit()
        except Exception as exc:
            await self.session.rollback()
            raise await self._flag(
                booking_id, processor_intent_id, amount, f"Ledger write failed: {exc}"
            ) from exc

        if not won:
            await self.session.rollback()
            if await self._settled_by(booking_id, processor_intent_id):
                return await self._booking(booking_id)
            booking = await self._booking(booking_id)
            raise await self._flag(
                booking_id,
                processor_intent_id,
                amount,
                f"Charge succeeded but booking is {BookingStatus(booking.status).value}",
            )

        logger.info("Booking %s settled by intent %s", booking_id, processor_intent_id)
        return booking

    async def fail_intent(
        self, processor_intent_id: str, failure_message: Optional[str] = None
    ) -> Optional[BookingModel]:
        intent = await self.intents.get_by_processor_id(processor_intent_id)
        if intent is None:
            logger.warning("Failure reported for unknown intent %s", processor_intent_id)
            return None
        booking_id = intent.booking_id
        booking = await self._booking(booking_id)
        if booking.status != BookingStatus.PENDING_PAYMENT:
            logger.info(
                "Ignoring failure of intent %s; booking %s is %s",
                processor_intent_id,
                booking_id,
                BookingStatus(booking.status).value,
            )
            return booking

        reason = failure_message or "Payment was declined"
        won = await self.bookings.compare_and_set_status(
            booking_id,
            BookingStatus.PENDING_PAYMENT,
            BookingStatus.PAYMENT_FAILED,
            failure_reason=reason,
        )
        if not won:
            await self.session.rollback()
            return await self._booking(booking_id)

        await self.bookings.refresh(booking)
        intent.status = IntentStatus.FAILED
        contact = await rider_contact(self.session, booking)
        await self.notifier.payment_rejected(
            booking, contact.email, contact.name, reason, rejected_by="payment processor"
        )
        await self.session.commit()
        logger.info("Booking %s payment failed: %s", booking_id, reason)
        return booking

    # ── Crew payouts ──────────────────────────────────────────────────

    async def register_payout_account(
        self, recipient_id: str, processor_account_id: str
    ) -> PayoutAccountModel:
        account = await self.payouts.upsert(recipient_id, processor_account_id)
        await self.session.commit()
        logger.info("Payout account for %s set to %s", recipient_id, processor_account_id)
        return account

    async def pay_out(self, booking_id: str) -> Optional[ReconciliationError]:
        """
        Transfer pending crew shares of a card payment to connected accounts.

        Shares whose recipient has no payout account stay pending for a
        manual payout.  A processor failure is flagged and returned; the
        charge itself is already settled.
        """
        transaction = await self.transactions.get_transaction_for_booking(booking_id)
        if transaction is None or transaction.payment_method != PaymentMethod.PROCESSOR:
            return None
        pending = [
            split
            for split in await self.transactions.get_splits(transaction.id)
            if split.recipient_type in CREW
            and split.recipient_id
            and split.status == SplitStatus.PENDING
        ]
        accounts = await self.payouts.accounts_for(split.recipient_id for split in pending)
        intent_id = transaction.processor_intent_id
        currency = transaction.currency

        for split in pending:
            destination = accounts.get(split.recipient_id)
            if destination is None:
                continue
            split_id, recipient_id = split.id, split.recipient_id
            amount = Decimal(split.amount)
            try:
                transfer_id = await self.processor.create_transfer(
                    amount=amount,
                    currency=currency,
                    destination=destination,
                    metadata={
                        "booking_id": booking_id,
                        "split_id": split_id,
                        "recipient_id": recipient_id,
                    },
                    idempotency_key=f"booking-{booking_id}-transfer-{split_id}",
                )
            except ProcessorError as exc:
                return await self._flag(
                    booking_id,
                    intent_id,
                    amount,
                    f"Transfer to {recipient_id} failed: {exc.message}",
                )
            split.status = SplitStatus.PAID
            await self.session.commit()
            logger.info(
                "Transfer %s paid %s to %s for booking %s",
                transfer_id,
                amount,
                recipient_id,
                booking_id,
            )
        return None

    # ── Reconciliation ────────────────────────────────────────────────

    async def _flag(
        self,
        booking_id: Optional[str],
        processor_intent_id: Optional[str],
        amount: Optional[Decimal],
        reason: str,
    ) -> ReconciliationError:
        """Record (or reuse) an open issue and build the error to raise."""
        issue = (
            await self.issues.get_open_for_intent(processor_intent_id)
            if processor_intent_id
            else None
        )
        if issue is None:
            issue = await self.issues.create(
                ReconciliationIssueModel(
                    booking_id=booking_id,
                    processor_intent_id=processor_intent_id,
                    amount=amount,
                    reason=reason,
                    status=IssueStatus.OPEN,
                )
            )
            await self.session.commit()
        reconciliation_logger.error(
            "Reconciliation issue %s: booking=%s intent=%s amount=%s: %s",
            issue.id,
            booking_id,
            processor_intent_id,
            amount,
            reason,
        )
        return ReconciliationError(reason, issue_id=issue.id)

    async def list_open_issues(self) -> list[ReconciliationIssueModel]:
        return await self.issues.list_open()

    async def _open_issue(self, issue_id: str) -> ReconciliationIssueModel:
        issue = await self.issues.get_by_id(issue_id)
        if issue is None:
            raise NotFoundError("Reconciliation issue not found")
        if issue.status != IssueStatus.OPEN:
            raise ConflictError("Reconciliation issue is already resolved")
        return issue

    async def retry_reconciliation(self, issue_id: str) -> BookingModel:
        """Re-run settlement for a flagged charge; resolves the issue on success."""
        issue = await self._open_issue(issue_id)
        if not issue.processor_intent_id:
            raise ConflictError("Issue has no payment intent to settle; resolve it manually")
        booking = await self.settle_intent(issue.processor_intent_id)
        error = await self.pay_out(booking.id)
        if error is not None:
            raise error
        await self.resolve_issue(issue_id)
        return booking

    async def resolve_issue(self, issue_id: str) -> ReconciliationIssueModel:
        issue = await self._open_issue(issue_id)
        issue.status = IssueStatus.RESOLVED
        issue.resolved_at = utcnow()
        await self.session.commit()
        logger.info("Reconciliation issue %s resolved", issue_id)
        return issue
