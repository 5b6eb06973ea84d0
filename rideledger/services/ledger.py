"""
Settlement ledger writer shared by the card and cash/bank paths.

``record`` adds a completed ``PaymentTransaction`` and its splits to the
caller's unit of work; the caller commits them together with the status
change, so a reader never sees a completed transaction with missing
splits.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from rideledger.config import settings
from rideledger.domain.entities import utcnow
from rideledger.domain.enums import (
    PaymentMethod,
    RecipientType,
    SplitStatus,
    TransactionStatus,
)
from rideledger.domain.pricing import PaymentSplitBreakdown, allocate_evenly, compute_split
from rideledger.infrastructure.models import (
    BookingModel,
    PaymentSplitModel,
    PaymentTransactionModel,
)
from rideledger.infrastructure.repositories import LedgerRepository


@dataclass
class SettlementRecord:
    transaction: PaymentTransactionModel
    splits: list[PaymentSplitModel]
    breakdown: PaymentSplitBreakdown


def split_rates() -> dict[str, Decimal]:
    return {
        "driver_rate": settings.driver_share_rate,
        "support_worker_rate": settings.support_worker_share_rate,
        "processor_rate": settings.processor_fee_rate,
        "processor_fixed": settings.processor_fee_fixed,
    }


def booking_split(booking: BookingModel) -> PaymentSplitBreakdown:
    """Split a booking's stored fare components with the configured rates."""
    return compute_split(
        booking.base_fare,
        booking.distance_fare,
        booking.vehicle_feature_fare,
        booking.support_worker_fare,
        booking.peak_surcharge,
        **split_rates(),
    )


def split_rows(
    breakdown: PaymentSplitBreakdown,
    driver_id: Optional[str],
    support_worker_ids: list[str],
) -> list[PaymentSplitModel]:
    rows = [
        PaymentSplitModel(
            recipient_id=driver_id,
            recipient_type=RecipientType.DRIVER,
            amount=breakdown.driver_share,
            status=SplitStatus.PENDING,
        )
    ]
    if breakdown.support_worker_share > 0:
        # Unassigned workers: the share is held under a single open row.
        recipients = support_worker_ids or [None]
        for worker_id, amount in zip(
            recipients, allocate_evenly(breakdown.support_worker_share, len(recipients))
        ):
            rows.append(
                PaymentSplitModel(
                    recipient_id=worker_id,
                    recipient_type=RecipientType.SUPPORT_WORKER,
                    amount=amount,
                    status=SplitStatus.PENDING,
                )
            )
    rows.append(
        PaymentSplitModel(
            recipient_type=RecipientType.PROCESSOR,
            amount=breakdown.processor_fee,
            status=SplitStatus.PAID,
        )
    )
    rows.append(
        PaymentSplitModel(
            recipient_type=RecipientType.PLATFORM,
            amount=breakdown.platform_fee,
            status=SplitStatus.PENDING,
        )
    )
    return rows


class LedgerWriter:
    def __init__(self, session: AsyncSession):
        self.repo = LedgerRepository(session)

    async def record(
        self,
        booking: BookingModel,
        *,
        payment_method: PaymentMethod,
        processor_intent_id: Optional[str] = None,
    ) -> SettlementRecord:
        breakdown = booking_split(booking)
        if breakdown.total != Decimal(booking.fare_estimate):
            raise ValueError(
                f"Fare components of booking {booking.id} do not add up to its estimate"
            )

        transaction = await self.repo.add_transaction(
            PaymentTransactionModel(
                booking_id=booking.id,
                amount=breakdown.total,
                currency=booking.currency,
                payment_method=payment_method,
                processor_intent_id=processor_intent_id,
                status=TransactionStatus.COMPLETED,
                processed_at=utcnow(),
            )
        )
        rows = split_rows(breakdown, booking.driver_id, list(booking.support_worker_ids or []))
        for row in rows:
            row.payment_transaction_id = transaction.id
        splits = await self.repo.add_splits(rows)
        return SettlementRecord(transaction=transaction, splits=splits, breakdown=breakdown)
