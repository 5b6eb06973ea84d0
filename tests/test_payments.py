"""
Payment orchestrator: idempotent intents, settlement and reconciliation.
"""

import asyncio
import json
import logging
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest

from rideledger.domain.enums import (
    BookingStatus,
    IntentStatus,
    IssueStatus,
    NotificationType,
    PaymentMethod,
    RecipientType,
    SplitStatus,
)
from rideledger.domain.errors import ConflictError, ProcessorError, ReconciliationError
from rideledger.infrastructure.models import (
    NotificationModel,
    PaymentIntentModel,
    ReconciliationIssueModel,
)
from rideledger.infrastructure.processor import (
    EVENT_FAILED,
    EVENT_SUCCEEDED,
    ProcessorEvent,
    to_minor_units,
)
from rideledger.infrastructure.repositories import LedgerRepository
from rideledger.services.bookings import BookingService
from rideledger.services.ledger import LedgerWriter, booking_split
from rideledger.services.payments import PaymentOrchestrator
from rideledger.services.settlement import ManualSettlementService
from tests.fakes import DECLINED_CARD, count, guest_booking


async def card_booking(session, processor, **kwargs):
    return await guest_booking(
        session, processor, payment_method=PaymentMethod.PROCESSOR, **kwargs
    )


class TestCreateIntent:
    @pytest.mark.asyncio
    async def test_booking_gets_intent(self, db_session, processor):
        result = await card_booking(db_session, processor)

        assert result.booking.status == BookingStatus.PENDING_PAYMENT
        assert result.intent.created is True
        assert result.intent.client_secret.startswith(result.intent.processor_intent_id)
        assert result.intent.amount == result.fare.total
        assert processor.create_calls == [f"booking-{result.booking.id}-intent"]

    @pytest.mark.asyncio
    async def test_metadata_carries_split(self, db_session, processor):
        result = await card_booking(db_session, processor)
        metadata = processor.metadata[result.intent.processor_intent_id]
        assert metadata["booking_id"] == result.booking.id
        assert Decimal(metadata["split_total"]) == result.fare.total

    @pytest.mark.asyncio
    async def test_retry_returns_same_intent(self, db_session, processor):
        result = await card_booking(db_session, processor)
        orchestrator = PaymentOrchestrator(db_session, processor)

        again = await orchestrator.create_intent(result.booking.id)
        third = await orchestrator.create_intent(result.booking.id)

        assert again.created is False
        assert again.processor_intent_id == third.processor_intent_id == result.intent.processor_intent_id
        assert len(processor.create_calls) == 1
        assert await count(db_session, PaymentIntentModel, booking_id=result.booking.id) == 1

    @pytest.mark.asyncio
    async def test_concurrent_retries_create_one_intent(self, session_factory, processor):
        processor.fail_next = ProcessorError("Payment processor timed out")
        async with session_factory() as session:
            booking_id = (await card_booking(session, processor)).booking.id

        async def create():
            async with session_factory() as session:
                return await PaymentOrchestrator(session, processor).create_intent(booking_id)

        results = await asyncio.gather(create(), create(), create())

        assert len({r.processor_intent_id for r in results}) == 1
        async with session_factory() as session:
            assert await count(session, PaymentIntentModel, booking_id=booking_id) == 1

    @pytest.mark.asyncio
    async def test_changed_fare_conflicts(self, db_session, processor):
        result = await card_booking(db_session, processor)
        result.booking.fare_estimate = result.fare.total + Decimal("5.00")
        await db_session.commit()

        with pytest.raises(ConflictError):
            await PaymentOrchestrator(db_session, processor).create_intent(result.booking.id)

    @pytest.mark.asyncio
    async def test_cash_booking_has_no_intent(self, db_session, processor):
        booking_id = (await guest_booking(db_session)).booking.id
        with pytest.raises(ConflictError):
            await PaymentOrchestrator(db_session, processor).create_intent(booking_id)

    @pytest.mark.asyncio
    async def test_processor_timeout_leaves_booking_retryable(self, db_session, processor):
        processor.fail_next = ProcessorError("Payment processor timed out")

        result = await card_booking(db_session, processor)

        assert result.intent is None
        assert result.payment_error == "Payment processor timed out"
        assert result.payment_retryable is True
        assert result.booking.status == BookingStatus.PENDING_PAYMENT
        assert await count(db_session, PaymentIntentModel) == 0

        retried = await PaymentOrchestrator(db_session, processor).create_intent(result.booking.id)
        assert retried.created is True

    @pytest.mark.asyncio
    async def test_lock_held_elsewhere_conflicts(self, db_session, processor):
        processor.fail_next = ProcessorError("Payment processor timed out")
        booking_id = (await card_booking(db_session, processor)).booking.id
        redis = AsyncMock()
        redis.set = AsyncMock(return_value=False)

        with pytest.raises(ConflictError, match="already in progress"):
            await PaymentOrchestrator(db_session, processor, redis=redis).create_intent(booking_id)


class TestProcessorConfirm:
    @pytest.mark.asyncio
    async def test_succeeded_confirm_settles(self, db_session, processor):
        booking_id = (await card_booking(db_session, processor)).booking.id

        booking = await PaymentOrchestrator(db_session, processor).confirm_with_processor(
            booking_id, "pm_card_visa"
        )

        assert booking.status == BookingStatus.PAYMENT_CONFIRMED
        transaction = await LedgerRepository(db_session).get_transaction_for_booking(booking_id)
        assert transaction.payment_method == PaymentMethod.PROCESSOR
        splits = await LedgerRepository(db_session).get_splits(transaction.id)
        assert sum(Decimal(s.amount) for s in splits) == Decimal(transaction.amount)

    @pytest.mark.asyncio
    async def test_decline_keeps_pending(self, db_session, processor):
        booking_id = (await card_booking(db_session, processor)).booking.id

        with pytest.raises(ProcessorError) as exc_info:
            await PaymentOrchestrator(db_session, processor).confirm_with_processor(
                booking_id, DECLINED_CARD
            )

        assert exc_info.value.retryable is False
        booking = await BookingService(db_session).get(booking_id)
        assert booking.status == BookingStatus.PENDING_PAYMENT

    @pytest.mark.asyncio
    async def test_requires_action_leaves_pending(self, db_session, processor):
        processor.confirm_status = "requires_action"
        booking_id = (await card_booking(db_session, processor)).booking.id

        booking = await PaymentOrchestrator(db_session, processor).confirm_with_processor(
            booking_id, "pm_card_3ds"
        )
        assert booking.status == BookingStatus.PENDING_PAYMENT


class TestProcessorEvents:
    @pytest.mark.asyncio
    async def test_succeeded_event_settles_once(self, db_session, processor):
        result = await card_booking(db_session, processor)
        orchestrator = PaymentOrchestrator(db_session, processor)
        event = ProcessorEvent(
            type=EVENT_SUCCEEDED,
            intent_id=result.intent.processor_intent_id,
            amount_minor=to_minor_units(result.fare.total),
        )

        first = await orchestrator.handle_processor_event(event)
        redelivered = await orchestrator.handle_processor_event(event)

        assert first.status == redelivered.status == BookingStatus.PAYMENT_CONFIRMED
        assert await LedgerRepository(db_session).count_transactions(result.booking.id) == 1
        intent = await orchestrator.intents.get_by_processor_id(result.intent.processor_intent_id)
        assert intent.status == IntentStatus.SUCCEEDED
        assert await count(
            db_session,
            NotificationModel,
            booking_id=result.booking.id,
            notification_type=NotificationType.PAYMENT_RECEIPT,
        ) == 1

    @pytest.mark.asyncio
    async def test_failed_event_marks_booking_failed(self, db_session, processor):
        result = await card_booking(db_session, processor)

        booking = await PaymentOrchestrator(db_session, processor).handle_processor_event(
            ProcessorEvent(
                type=EVENT_FAILED,
                intent_id=result.intent.processor_intent_id,
                failure_message="Insufficient funds",
            )
        )

        assert booking.status == BookingStatus.PAYMENT_FAILED
        assert booking.failure_reason == "Insufficient funds"
        assert await LedgerRepository(db_session).count_transactions(result.booking.id) == 0

    @pytest.mark.asyncio
    async def test_unrelated_events_ignored(self, db_session, processor):
        orchestrator = PaymentOrchestrator(db_session, processor)
        assert await orchestrator.handle_processor_event(
            ProcessorEvent(type="charge.refunded", intent_id="pi_x")
        ) is None


class TestReconciliation:
    @pytest.mark.asyncio
    async def test_ledger_failure_is_flagged_not_dropped(self, db_session, processor, caplog):
        result = await card_booking(db_session, processor)
        booking_id = result.booking.id
        intent_id = result.intent.processor_intent_id
        orchestrator = PaymentOrchestrator(db_session, processor)

        with patch.object(
            LedgerWriter, "record", AsyncMock(side_effect=RuntimeError("disk full"))
        ), caplog.at_level(logging.ERROR, logger="rideledger.reconciliation"):
            with pytest.raises(ReconciliationError) as exc_info:
                await orchestrator.settle_intent(intent_id)

        issue = await orchestrator.issues.get_by_id(exc_info.value.issue_id)
        assert issue.status == IssueStatus.OPEN
        assert issue.booking_id == booking_id
        assert "disk full" in issue.reason
        assert any("Reconciliation issue" in r.message for r in caplog.records)

        booking = await BookingService(db_session).get(booking_id)
        assert booking.status == BookingStatus.PENDING_PAYMENT
        assert await LedgerRepository(db_session).count_transactions(booking_id) == 0

    @pytest.mark.asyncio
    async def test_redelivered_failure_reuses_open_issue(self, db_session, processor):
        result = await card_booking(db_session, processor)
        intent_id = result.intent.processor_intent_id
        orchestrator = PaymentOrchestrator(db_session, processor)

        with patch.object(LedgerWriter, "record", AsyncMock(side_effect=RuntimeError("boom"))):
            for _ in range(2):
                with pytest.raises(ReconciliationError):
                    await orchestrator.settle_intent(intent_id)

        assert await count(db_session, ReconciliationIssueModel) == 1

    @pytest.mark.asyncio
    async def test_retry_settles_and_resolves(self, db_session, processor):
        result = await card_booking(db_session, processor)
        booking_id = result.booking.id
        intent_id = result.intent.processor_intent_id
        orchestrator = PaymentOrchestrator(db_session, processor)
        with patch.object(LedgerWriter, "record", AsyncMock(side_effect=RuntimeError("boom"))):
            with pytest.raises(ReconciliationError) as exc_info:
                await orchestrator.settle_intent(intent_id)

        booking = await orchestrator.retry_reconciliation(exc_info.value.issue_id)

        assert booking.status == BookingStatus.PAYMENT_CONFIRMED
        assert await LedgerRepository(db_session).count_transactions(booking_id) == 1
        assert await orchestrator.list_open_issues() == []

    @pytest.mark.asyncio
    async def test_charge_for_cancelled_booking_is_flagged(self, db_session, processor):
        result = await card_booking(db_session, processor)
        await BookingService(db_session).cancel(result.booking.id, cancelled_by="rider")

        with pytest.raises(ReconciliationError, match="cancelled"):
            await PaymentOrchestrator(db_session, processor).settle_intent(
                result.intent.processor_intent_id
            )
        assert await count(db_session, ReconciliationIssueModel, status=IssueStatus.OPEN) == 1

    @pytest.mark.asyncio
    async def test_amount_mismatch_is_flagged(self, db_session, processor):
        result = await card_booking(db_session, processor)

        with pytest.raises(ReconciliationError):
            await PaymentOrchestrator(db_session, processor).settle_intent(
                result.intent.processor_intent_id, amount_minor=1
            )
        booking = await BookingService(db_session).get(result.booking.id)
        assert booking.status == BookingStatus.PENDING_PAYMENT

    @pytest.mark.asyncio
    async def test_unknown_intent_is_flagged(self, db_session, processor):
        with pytest.raises(ReconciliationError):
            await PaymentOrchestrator(db_session, processor).settle_intent("pi_ghost", 4200)
        issue = (await PaymentOrchestrator(db_session, processor).list_open_issues())[0]
        assert issue.booking_id is None
        assert issue.amount == Decimal("42.00")

    @pytest.mark.asyncio
    async def test_resolve_by_hand(self, db_session, processor):
        with pytest.raises(ReconciliationError) as exc_info:
            await PaymentOrchestrator(db_session, processor).settle_intent("pi_ghost")
        orchestrator = PaymentOrchestrator(db_session, processor)

        issue = await orchestrator.resolve_issue(exc_info.value.issue_id)

        assert issue.status == IssueStatus.RESOLVED
        assert issue.resolved_at is not None
        with pytest.raises(ConflictError):
            await orchestrator.resolve_issue(issue.id)



PAYOUT_ACCOUNTS = {
    "driver-a": "acct_driverA",
    "worker-1": "acct_worker1",
    "worker-2": "acct_worker2",
}


async def routed_booking(session, processor, workers=("worker-1", "worker-2")):
    """Card booking whose crew is assigned before its intent exists."""
    orchestrator = PaymentOrchestrator(session, processor)
    for recipient_id, account_id in PAYOUT_ACCOUNTS.items():
        await orchestrator.register_payout_account(recipient_id, account_id)
    processor.fail_next = ProcessorError("Payment processor timed out")
    booking_id = (await card_booking(session, processor, support_workers_count=2)).booking.id
    await BookingService(session).assign_crew(booking_id, "driver-a", list(workers))
    intent = await orchestrator.create_intent(booking_id)
    return booking_id, intent


def succeeded(intent) -> ProcessorEvent:
    return ProcessorEvent(
        type=EVENT_SUCCEEDED,
        intent_id=intent.processor_intent_id,
        amount_minor=to_minor_units(intent.amount),
    )


async def crew_split_status(session, booking_id) -> dict:
    ledger = LedgerRepository(session)
    transaction = await ledger.get_transaction_for_booking(booking_id)
    return {
        split.recipient_id: split.status
        for split in await ledger.get_splits(transaction.id)
        if split.recipient_type in (RecipientType.DRIVER, RecipientType.SUPPORT_WORKER)
    }


class TestCrewPayouts:
    @pytest.mark.asyncio
    async def test_driver_share_rides_on_the_charge(self, db_session, processor):
        booking_id, intent = await routed_booking(db_session, processor)

        booking = await BookingService(db_session).get(booking_id)
        split = booking_split(booking)
        destination, fee = processor.routing[intent.processor_intent_id]
        assert destination == "acct_driverA"
        assert fee == intent.amount - split.driver_share
        assert processor.metadata[intent.processor_intent_id]["driver_account"] == "acct_driverA"

        stored = await PaymentOrchestrator(db_session, processor).intents.get_for_booking(booking_id)
        assert stored.destination_account == "acct_driverA"
        assert Decimal(stored.application_fee) == fee

    @pytest.mark.asyncio
    async def test_driver_without_account_is_not_routed(self, db_session, processor):
        result = await card_booking(db_session, processor)
        assert processor.routing[result.intent.processor_intent_id] == (None, None)

    @pytest.mark.asyncio
    async def test_settlement_transfers_worker_shares_once(self, db_session, processor):
        booking_id, intent = await routed_booking(db_session, processor)
        orchestrator = PaymentOrchestrator(db_session, processor)

        await orchestrator.handle_processor_event(succeeded(intent))
        await orchestrator.handle_processor_event(succeeded(intent))

        assert len(processor.transfer_calls) == 2
        destinations = sorted(dest for dest, _ in processor.transfers.values())
        assert destinations == ["acct_worker1", "acct_worker2"]
        booking = await BookingService(db_session).get(booking_id)
        assert sum(amount for _, amount in processor.transfers.values()) == (
            booking_split(booking).support_worker_share
        )
        assert await crew_split_status(db_session, booking_id) == {
            "driver-a": SplitStatus.PAID,
            "worker-1": SplitStatus.PAID,
            "worker-2": SplitStatus.PAID,
        }

    @pytest.mark.asyncio
    async def test_worker_without_account_stays_pending(self, db_session, processor):
        booking_id, intent = await routed_booking(
            db_session, processor, workers=("worker-1", "worker-9")
        )

        await PaymentOrchestrator(db_session, processor).handle_processor_event(succeeded(intent))

        assert [dest for dest, _ in processor.transfers.values()] == ["acct_worker1"]
        statuses = await crew_split_status(db_session, booking_id)
        assert statuses["worker-1"] == SplitStatus.PAID
        assert statuses["worker-9"] == SplitStatus.PENDING

    @pytest.mark.asyncio
    async def test_failed_transfer_is_flagged_then_retried(self, db_session, processor):
        booking_id, intent = await routed_booking(db_session, processor)
        orchestrator = PaymentOrchestrator(db_session, processor)
        processor.fail_next_transfer = ProcessorError("Payment processor timed out")

        booking = await orchestrator.handle_processor_event(succeeded(intent))

        assert booking.status == BookingStatus.PAYMENT_CONFIRMED
        issues = await orchestrator.list_open_issues()
        assert len(issues) == 1
        assert issues[0].booking_id == booking_id
        assert "Transfer to worker-" in issues[0].reason

        await orchestrator.retry_reconciliation(issues[0].id)

        assert await orchestrator.list_open_issues() == []
        assert len(processor.transfers) == 2
        assert set((await crew_split_status(db_session, booking_id)).values()) == {
            SplitStatus.PAID
        }

    @pytest.mark.asyncio
    async def test_cash_settlement_makes_no_transfers(self, db_session, processor):
        orchestrator = PaymentOrchestrator(db_session, processor)
        await orchestrator.register_payout_account("worker-1", "acct_worker1")
        booking_id = (await guest_booking(db_session)).booking.id
        await BookingService(db_session).assign_crew(booking_id, "driver-a", ["worker-1"])

        await ManualSettlementService(db_session).confirm_payment(booking_id, "driver-a")

        assert await orchestrator.pay_out(booking_id) is None
        assert processor.transfer_calls == []

    @pytest.mark.asyncio
    async def test_routed_driver_cannot_be_swapped(self, db_session, processor):
        booking_id, _ = await routed_booking(db_session, processor)
        service = BookingService(db_session)

        with pytest.raises(ConflictError, match="routes the driver share"):
            await service.assign_crew(booking_id, "driver-b", ["worker-1"])

        booking = await service.assign_crew(booking_id, "driver-a", ["worker-2"])
        assert booking.support_worker_ids == ["worker-2"]

    @pytest.mark.asyncio
    async def test_payout_account_is_replaced(self, db_session, processor):
        orchestrator = PaymentOrchestrator(db_session, processor)
        await orchestrator.register_payout_account("driver-a", "acct_old")
        account = await orchestrator.register_payout_account("driver-a", "acct_new")

        assert account.processor_account_id == "acct_new"
        assert await orchestrator.payouts.accounts_for(["driver-a", "nobody"]) == {
            "driver-a": "acct_new"
        }
