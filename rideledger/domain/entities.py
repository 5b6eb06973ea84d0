"""
Domain value objects and lifecycle rules.

Patterns used
-------------
- **State Pattern** on bookings: ``ensure_transition`` enforces the
  lifecycle (draft -> pending_payment -> payment_confirmed |
  payment_failed -> in_progress -> completed, or cancelled before
  completion).
- **Tagged union** for booking ownership: a booking belongs either to a
  guest identity or to an account, resolved once by ``owner_of``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Union

from .enums import BOOKING_TRANSITIONS, BookingStatus
from .errors import InvalidStateTransition


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(moment: datetime) -> datetime:
    """Naive datetimes are taken to be UTC (SQLite drops tzinfo)."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def ensure_transition(current: BookingStatus, new: BookingStatus) -> None:
    """Raise unless *current* -> *new* is a legal booking transition."""
    allowed = BOOKING_TRANSITIONS.get(BookingStatus(current), set())
    if new not in allowed:
        raise InvalidStateTransition(
            f"Cannot transition booking from {BookingStatus(current).value} "
            f"to {new.value}"
        )


# ── Value Objects ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class Location:
    latitude: float
    longitude: float


@dataclass(frozen=True)
class GuestRef:
    id: str
    kind: str = "guest"


@dataclass(frozen=True)
class AccountRef:
    id: str
    kind: str = "account"


BookingOwner = Union[GuestRef, AccountRef]


def owner_of(
    guest_identity_id: Optional[str], account_id: Optional[str]
) -> BookingOwner:
    """Resolve the owner of a booking row; a linked account wins."""
    if account_id:
        return AccountRef(account_id)
    if guest_identity_id:
        return GuestRef(guest_identity_id)
    raise ValueError("Booking has no owner")
