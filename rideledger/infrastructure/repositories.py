"""
Repository Pattern -- abstracts DB access so domain logic stays DB-agnostic.

Each repository receives an ``AsyncSession`` (unit-of-work) and exposes
domain-relevant queries only.  Status changes go through
``BookingRepository.compare_and_set_status`` so that two actors racing on
the same booking cannot both win.
"""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .models import (
    AccessTokenModel,
    AccountModel,
    BookingModel,
    GuestIdentityModel,
    NotificationModel,
    PaymentIntentModel,
    PaymentSplitModel,
    PaymentTransactionModel,
    PayoutAccountModel,
    ReconciliationIssueModel,
)
from rideledger.domain.entities import utcnow
from rideledger.domain.enums import BookingStatus, IssueStatus


def normalize_email(email: str) -> str:
    return email.strip().lower()


class GuestIdentityRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, guest_id: str) -> Optional[GuestIdentityModel]:
        return await self.session.get(GuestIdentityModel, guest_id)

    async def get_by_email(self, email: str) -> Optional[GuestIdentityModel]:
        result = await self.session.execute(
            select(GuestIdentityModel).where(
                GuestIdentityModel.email == normalize_email(email)
            )
        )
        return result.scalar_one_or_none()

    async def create(self, *, name: str, email: str, phone: str) -> GuestIdentityModel:
        guest = GuestIdentityModel(
            name=name, email=normalize_email(email), phone=phone
        )
        self.session.add(guest)
        await self.session.flush()
        return guest


class AccessTokenRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self, *, token: str, booking_id: str, expires_at: datetime
    ) -> AccessTokenModel:
        row = AccessTokenModel(token=token, booking_id=booking_id, expires_at=expires_at)
        self.session.add(row)
        await self.session.flush()
        return row

    async def get(self, token: str) -> Optional[AccessTokenModel]:
        return await self.session.get(AccessTokenModel, token)


class AccountRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, account_id: str) -> Optional[AccountModel]:
        return await self.session.get(AccountModel, account_id)

    async def get_by_email(self, email: str) -> Optional[AccountModel]:
        result = await self.session.execute(
            select(AccountModel).where(AccountModel.email == normalize_email(email))
        )
        return result.scalar_one_or_none()

    async def create(self, account: AccountModel) -> AccountModel:
        self.session.add(account)
        await self.session.flush()
        return account


class BookingRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, booking: BookingModel) -> BookingModel:
        self.session.add(booking)
        await self.session.flush()
        return booking

    async def get_by_id(self, booking_id: str) -> Optional[BookingModel]:
        return await self.session.get(BookingModel, booking_id)

    async def refresh(self, booking: BookingModel) -> BookingModel:
        await self.session.refresh(booking)
        return booking

    async def update_if_status(
        self,
        booking_id: str,
        expected: BookingStatus | Iterable[BookingStatus],
        **values,
    ) -> bool:
        """UPDATE ... WHERE status IN (expected).  True if this caller won."""
        if isinstance(expected, BookingStatus):
            expected = (expected,)
        result = await self.session.execute(
            update(BookingModel)
            .where(
                BookingModel.id == booking_id,
                BookingModel.status.in_(list(expected)),
            )
            .values(updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def compare_and_set_status(
        self,
        booking_id: str,
        expected: BookingStatus | Iterable[BookingStatus],
        new_status: BookingStatus,
        **values,
    ) -> bool:
        return await self.update_if_status(booking_id, expected, status=new_status, **values)

    async def list_for_guest(self, guest_identity_id: str) -> list[BookingModel]:
        result = await self.session.execute(
            select(BookingModel)
            .where(BookingModel.guest_identity_id == guest_identity_id)
            .order_by(BookingModel.created_at)
        )
        return list(result.scalars().all())

    async def link_to_account(
        self, booking_ids: list[str], account_id: str
    ) -> None:
        if not booking_ids:
            return
        await self.session.execute(
            update(BookingModel)
            .where(
                BookingModel.id.in_(booking_ids),
                BookingModel.account_id.is_(None),
            )
            .values(account_id=account_id, linked_at=utcnow(), updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )


class PaymentIntentRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_for_booking(self, booking_id: str) -> Optional[PaymentIntentModel]:
        result = await self.session.execute(
            select(PaymentIntentModel).where(PaymentIntentModel.booking_id == booking_id)
        )
        return result.scalar_one_or_none()

    async def get_by_processor_id(
        self, processor_intent_id: str
    ) -> Optional[PaymentIntentModel]:
        result = await self.session.execute(
            select(PaymentIntentModel).where(
                PaymentIntentModel.processor_intent_id == processor_intent_id
            )
        )
        return result.scalar_one_or_none()

    async def create(self, intent: PaymentIntentModel) -> PaymentIntentModel:
        self.session.add(intent)
        await self.session.flush()
        return intent


class PayoutAccountRepository:
    """Processor connected accounts keyed by driver / support worker id."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, recipient_id: str) -> Optional[PayoutAccountModel]:
        return await self.session.get(PayoutAccountModel, recipient_id)

    async def accounts_for(self, recipient_ids: Iterable[str]) -> dict[str, str]:
        ids = [r for r in recipient_ids if r]
        if not ids:
            return {}
        result = await self.session.execute(
            select(PayoutAccountModel).where(PayoutAccountModel.recipient_id.in_(ids))
        )
        return {row.recipient_id: row.processor_account_id for row in result.scalars()}

    async def upsert(self, recipient_id: str, processor_account_id: str) -> PayoutAccountModel:
        account = await self.get(recipient_id)
        if account is None:
            account = PayoutAccountModel(
                recipient_id=recipient_id, processor_account_id=processor_account_id
            )
            self.session.add(account)
        else:
            account.processor_account_id = processor_account_id
        await self.session.flush()
        return account


class LedgerRepository:
    """Payment transactions and their splits."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def add_transaction(
        self, transaction: PaymentTransactionModel
    ) -> PaymentTransactionModel:
        self.session.add(transaction)
        await self.session.flush()
        return transaction

    async def add_splits(self, splits: list[PaymentSplitModel]) -> list[PaymentSplitModel]:
        self.session.add_all(splits)
        await self.session.flush()
        return splits

    async def get_transaction_for_booking(
        self, booking_id: str
    ) -> Optional[PaymentTransactionModel]:
        result = await self.session.execute(
            select(PaymentTransactionModel).where(
                PaymentTransactionModel.booking_id == booking_id
            )
        )
        return result.scalar_one_or_none()

    async def get_splits(self, transaction_id: str) -> list[PaymentSplitModel]:
        result = await self.session.execute(
            select(PaymentSplitModel).where(
                PaymentSplitModel.payment_transaction_id == transaction_id
            )
        )
        return list(result.scalars().all())

    async def count_transactions(self, booking_id: str) -> int:
        result = await self.session.execute(
            select(func.count())
            .select_from(PaymentTransactionModel)
            .where(PaymentTransactionModel.booking_id == booking_id)
        )
        return result.scalar() or 0


class NotificationRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def enqueue(self, notification: NotificationModel) -> NotificationModel:
        self.session.add(notification)
        await self.session.flush()
        return notification

    async def list_for_booking(self, booking_id: str) -> list[NotificationModel]:
        result = await self.session.execute(
            select(NotificationModel)
            .where(NotificationModel.booking_id == booking_id)
            .order_by(NotificationModel.created_at)
        )
        return list(result.scalars().all())


class ReconciliationIssueRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, issue: ReconciliationIssueModel) -> ReconciliationIssueModel:
        self.session.add(issue)
        await self.session.flush()
        return issue

    async def get_by_id(self, issue_id: str) -> Optional[ReconciliationIssueModel]:
        return await self.session.get(ReconciliationIssueModel, issue_id)

    async def list_open(self) -> list[ReconciliationIssueModel]:
        result = await self.session.execute(
            select(ReconciliationIssueModel)
            .where(ReconciliationIssueModel.status == IssueStatus.OPEN)
            .order_by(ReconciliationIssueModel.created_at)
        )
        return list(result.scalars().all())

    async def get_open_for_intent(
        self, processor_intent_id: str
    ) -> Optional[ReconciliationIssueModel]:
        result = await self.session.execute(
            select(ReconciliationIssueModel).where(
                ReconciliationIssueModel.processor_intent_id == processor_intent_id,
                ReconciliationIssueModel.status == IssueStatus.OPEN,
            )
        )
        return result.scalars().first()
