"""Guest-to-account promotion."""

from unittest.mock import AsyncMock, patch

import pytest

from rideledger.domain.entities import AccountRef, GuestRef, owner_of
from rideledger.domain.enums import NotificationType
from rideledger.domain.errors import (
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from rideledger.infrastructure.models import AccountModel, BookingModel, NotificationModel
from rideledger.infrastructure.passwords import check_password, make_password
from rideledger.infrastructure.repositories import BookingRepository
from rideledger.services.promotion import PromotionService
from tests.fakes import count, guest_booking

PASSWORD = "correct horse battery"


async def two_guest_bookings(session):
    first = await guest_booking(session)
    second = await guest_booking(session)
    return first.guest.id, first.booking.id, second.booking.id


class TestPromote:
    @pytest.mark.asyncio
    async def test_creates_account_and_relinks_history(self, db_session):
        guest_id, booking_id, other_id = await two_guest_bookings(db_session)

        result = await PromotionService(db_session).promote(guest_id, booking_id, PASSWORD)

        assert result.resumed is False
        assert sorted(result.relinked_booking_ids) == sorted([booking_id, other_id])
        assert result.account.email == "ada@example.com"
        assert result.account.promoted_from_guest_id == guest_id
        assert check_password(PASSWORD, result.account.password_hash)
        assert await count(db_session, BookingModel, account_id=result.account.id) == 2
        assert await count(
            db_session, NotificationModel, notification_type=NotificationType.ACCOUNT_CREATED
        ) == 1

    @pytest.mark.asyncio
    async def test_without_history_links_only_the_presented_booking(self, db_session):
        guest_id, booking_id, other_id = await two_guest_bookings(db_session)

        result = await PromotionService(db_session).promote(
            guest_id, booking_id, PASSWORD, include_history=False
        )

        assert result.relinked_booking_ids == [booking_id]
        assert await count(db_session, BookingModel, account_id=result.account.id) == 1
        assert await count(db_session, BookingModel, id=other_id, account_id=None) == 1

    @pytest.mark.asyncio
    async def test_linked_booking_is_owned_by_the_account(self, db_session):
        guest_id, booking_id, _ = await two_guest_bookings(db_session)
        result = await PromotionService(db_session).promote(guest_id, booking_id, PASSWORD)

        booking = await BookingRepository(db_session).get_by_id(booking_id)
        await db_session.refresh(booking)

        assert booking.guest_identity_id == guest_id
        assert owner_of(booking.guest_identity_id, booking.account_id) == AccountRef(
            result.account.id
        )
        assert owner_of(guest_id, None) == GuestRef(guest_id)


class TestPromoteIsIdempotent:
    @pytest.mark.asyncio
    async def test_second_promotion_resumes(self, db_session):
        guest_id, booking_id, other_id = await two_guest_bookings(db_session)
        service = PromotionService(db_session)

        first = await service.promote(guest_id, booking_id, PASSWORD, include_history=False)
        second = await service.promote(guest_id, booking_id, PASSWORD)

        assert second.resumed is True
        assert second.account.id == first.account.id
        assert await count(db_session, AccountModel) == 1
        assert await count(db_session, BookingModel, account_id=first.account.id) == 2
        assert await count(
            db_session, NotificationModel, notification_type=NotificationType.ACCOUNT_CREATED
        ) == 1

    @pytest.mark.asyncio
    async def test_failure_midway_leaves_nothing_behind(self, db_session):
        guest_id, booking_id, _ = await two_guest_bookings(db_session)
        service = PromotionService(db_session)

        with patch.object(
            BookingRepository,
            "link_to_account",
            AsyncMock(side_effect=RuntimeError("connection reset")),
        ):
            with pytest.raises(RuntimeError):
                await service.promote(guest_id, booking_id, PASSWORD)
        await db_session.rollback()

        assert await count(db_session, AccountModel) == 0

        result = await service.promote(guest_id, booking_id, PASSWORD)
        assert result.resumed is False
        assert await count(db_session, AccountModel) == 1
        assert await count(db_session, BookingModel, account_id=result.account.id) == 2

    @pytest.mark.asyncio
    async def test_resume_requires_the_same_password(self, db_session):
        guest_id, booking_id, _ = await two_guest_bookings(db_session)
        service = PromotionService(db_session)
        await service.promote(guest_id, booking_id, PASSWORD)

        with pytest.raises(PermissionDeniedError):
            await service.promote(guest_id, booking_id, "another password")


class TestPromoteRejects:
    @pytest.mark.asyncio
    async def test_short_password(self, db_session):
        guest_id, booking_id, _ = await two_guest_bookings(db_session)
        with pytest.raises(ValidationError):
            await PromotionService(db_session).promote(guest_id, booking_id, "short")
        assert await count(db_session, AccountModel) == 0

    @pytest.mark.asyncio
    async def test_email_already_registered(self, db_session):
        guest_id, booking_id, _ = await two_guest_bookings(db_session)
        db_session.add(
            AccountModel(
                email="ada@example.com",
                name="Someone Else",
                password_hash=make_password(PASSWORD),
                role="rider",
            )
        )
        await db_session.commit()

        with pytest.raises(ConflictError):
            await PromotionService(db_session).promote(guest_id, booking_id, PASSWORD)
        assert await count(db_session, BookingModel, guest_identity_id=guest_id, account_id=None) == 2

    @pytest.mark.asyncio
    async def test_booking_of_another_guest(self, db_session):
        guest_id, _, _ = await two_guest_bookings(db_session)
        stranger = await guest_booking(db_session, email="grace@example.com")
        stranger_booking_id = stranger.booking.id

        with pytest.raises(NotFoundError):
            await PromotionService(db_session).promote(guest_id, stranger_booking_id, PASSWORD)

    @pytest.mark.asyncio
    async def test_unknown_guest(self, db_session):
        _, booking_id, _ = await two_guest_bookings(db_session)
        with pytest.raises(NotFoundError):
            await PromotionService(db_session).promote("no-such-guest", booking_id, PASSWORD)
