"""
Guest Identity Manager
======================

Guests are keyed by email (case-insensitive).  A repeat booking from the
same email reuses the identity and refreshes its name and phone.

Access tokens are the only credential a guest has.  They are minted once
per booking, never rotated by lookups, and expire purely by time.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta
from typing import Optional

from email_validator import EmailNotValidError, validate_email
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from rideledger.config import settings
from rideledger.domain.entities import as_utc, utcnow
from rideledger.domain.errors import NotFoundError, TokenExpiredError, ValidationError
from rideledger.infrastructure.models import AccessTokenModel, GuestIdentityModel
from rideledger.infrastructure.repositories import (
    AccessTokenRepository,
    GuestIdentityRepository,
)

logger = logging.getLogger(__name__)


def validate_contact(name: str, email: str, phone: str) -> None:
    if not name or not name.strip():
        raise ValidationError("Guest name is required")
    try:
        validate_email((email or "").strip(), check_deliverability=False)
    except EmailNotValidError as exc:
        raise ValidationError(f"A valid email address is required: {exc}")
    if not phone or not phone.strip():
        raise ValidationError("Guest phone number is required")


class GuestIdentityManager:
    def __init__(self, session: AsyncSession, token_ttl_days: Optional[int] = None):
        self.session = session
        self.guests = GuestIdentityRepository(session)
        self.tokens = AccessTokenRepository(session)
        self.token_ttl = timedelta(
            days=token_ttl_days if token_ttl_days is not None else settings.access_token_ttl_days
        )

    async def upsert(self, name: str, email: str, phone: str) -> GuestIdentityModel:
        """Create or refresh the guest for *email*.

        Must be the first write of the unit of work: a lost insert race is
        resolved by rolling back and re-reading the winner's row.
        """
        validate_contact(name, email, phone)
        name, phone = name.strip(), phone.strip()

        guest = await self.guests.get_by_email(email)
        if guest is None:
            try:
                return await self.guests.create(name=name, email=email, phone=phone)
            except IntegrityError:
                await self.session.rollback()
                guest = await self.guests.get_by_email(email)
                if guest is None:
                    raise
                logger.info("Guest %s created concurrently; reusing", guest.id)

        guest.name = name
        guest.phone = phone
        await self.session.flush()
        return guest

    async def get(self, guest_id: str) -> GuestIdentityModel:
        guest = await self.guests.get_by_id(guest_id)
        if guest is None:
            raise NotFoundError("Guest not found")
        return guest

    async def issue_token(
        self, booking_id: str, now: Optional[datetime] = None
    ) -> AccessTokenModel:
        now = now or utcnow()
        return await self.tokens.create(
            token=secrets.token_urlsafe(32),
            booking_id=booking_id,
            expires_at=now + self.token_ttl,
        )

    async def resolve_token(
        self, token: str, now: Optional[datetime] = None
    ) -> AccessTokenModel:
        """Return the live token row; unknown -> NotFound, stale -> Expired."""
        row = await self.tokens.get(token) if token else None
        if row is None:
            raise NotFoundError("Booking not found")
        if as_utc(row.expires_at) <= as_utc(now or utcnow()):
            raise TokenExpiredError("Access token has expired")
        return row
