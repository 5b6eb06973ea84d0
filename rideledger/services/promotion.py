"""
Identity promotion: turn a guest identity into an account.

The account is keyed back to the guest through ``promoted_from_guest_id``
so a retried promotion finds the account it created earlier instead of
making a second one.  Relinking only fills ``account_id`` where it is
still empty, which makes it safe to run again.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from rideledger.config import settings
from rideledger.domain.errors import (
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from rideledger.infrastructure.models import AccountModel, GuestIdentityModel
from rideledger.infrastructure.passwords import check_password, make_password
from rideledger.infrastructure.repositories import AccountRepository, BookingRepository
from rideledger.services.guests import GuestIdentityManager
from rideledger.services.notifications import Notifier

logger = logging.getLogger(__name__)


@dataclass
class PromotionResult:
    account: AccountModel
    relinked_booking_ids: list[str]
    resumed: bool


class PromotionService:
    def __init__(
        self,
        session: AsyncSession,
        notifier: Optional[Notifier] = None,
        min_password_length: Optional[int] = None,
    ):
        self.session = session
        self.notifier = notifier or Notifier(session)
        self.guests = GuestIdentityManager(session)
        self.accounts = AccountRepository(session)
        self.bookings = BookingRepository(session)
        self.min_password_length = min_password_length or settings.min_password_length

    async def promote(
        self,
        guest_identity_id: str,
        booking_id: str,
        password: str,
        include_history: bool = True,
    ) -> PromotionResult:
        if not password or len(password) < self.min_password_length:
            raise ValidationError(
                f"Password must be at least {self.min_password_length} characters"
            )
        guest = await self.guests.get(guest_identity_id)
        booking = await self.bookings.get_by_id(booking_id)
        if booking is None or booking.guest_identity_id != guest.id:
            raise NotFoundError("Booking not found for this guest")

        account, resumed = await self._account_for(guest, password)

        booking_ids = [booking_id]
        if include_history:
            booking_ids += [
                row.id
                for row in await self.bookings.list_for_guest(guest_identity_id)
                if row.id != booking_id
            ]
        await self.bookings.link_to_account(booking_ids, account.id)

        guest = await self.guests.get(guest_identity_id)
        guest.promoted_account_id = account.id
        if not resumed:
            await self.notifier.account_created(account.email, account.name)
        await self.session.commit()

        logger.info(
            "Guest %s promoted to account %s (%d bookings, resumed=%s)",
            guest_identity_id,
            account.id,
            len(booking_ids),
            resumed,
        )
        return PromotionResult(
            account=account, relinked_booking_ids=booking_ids, resumed=resumed
        )

    def _verify(
        self, account: AccountModel, guest_identity_id: str, password: str
    ) -> AccountModel:
        if account.promoted_from_guest_id != guest_identity_id:
            raise ConflictError("An account with this email already exists")
        if not check_password(password, account.password_hash):
            raise PermissionDeniedError("Password does not match the existing account")
        return account

    async def _account_for(
        self, guest: GuestIdentityModel, password: str
    ) -> tuple[AccountModel, bool]:
        """Find the account this guest was already promoted into, or create it."""
        guest_id, email = guest.id, guest.email

        existing = await self.accounts.get_by_email(email)
        if existing is not None:
            return self._verify(existing, guest_id, password), True

        try:
            account = await self.accounts.create(
                AccountModel(
                    email=email,
                    name=guest.name,
                    phone=guest.phone,
                    password_hash=make_password(password),
                    role="rider",
                    promoted_from_guest_id=guest_id,
                )
            )
        except IntegrityError:
            await self.session.rollback()
            existing = await self.accounts.get_by_email(email)
            if existing is None:
                raise
            return self._verify(existing, guest_id, password), True
        return account, False
