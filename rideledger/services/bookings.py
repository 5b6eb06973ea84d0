"""
Booking Lifecycle
=================

Creates guest and account bookings, prices them, and moves them through
the status machine in ``rideledger.domain.enums``.

Every status change is a compare-and-set on the current status
(``BookingRepository.compare_and_set_status``).  Reading the row first
only produces a friendlier error; the conditional UPDATE is what decides
the winner when a driver, an admin, the rider and the processor webhook
act on the same booking at once.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from rideledger.config import settings
from rideledger.domain.entities import (
    AccountRef,
    Location,
    ensure_transition,
    owner_of,
)
from rideledger.domain.enums import BOOKING_TRANSITIONS, BookingStatus, BookingType, PaymentMethod
from rideledger.domain.errors import (
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    ProcessorError,
    ValidationError,
)
from rideledger.domain.pricing import FareBreakdown, FareCalculator, validate_pickup_time
from rideledger.infrastructure.models import AccessTokenModel, BookingModel, GuestIdentityModel
from rideledger.infrastructure.repositories import (
    AccountRepository,
    BookingRepository,
    GuestIdentityRepository,
    PaymentIntentRepository,
)
from rideledger.services.guests import GuestIdentityManager
from rideledger.services.notifications import Notifier

if TYPE_CHECKING:
    from rideledger.services.payments import IntentResult, PaymentOrchestrator

logger = logging.getLogger(__name__)

CANCELLABLE = frozenset(
    status
    for status, allowed in BOOKING_TRANSITIONS.items()
    if BookingStatus.CANCELLED in allowed
)
CREW_EDITABLE = (BookingStatus.DRAFT, BookingStatus.PENDING_PAYMENT)


def fare_calculator() -> FareCalculator:
    return FareCalculator(
        base_fare=settings.base_fare,
        rate_per_mile=settings.rate_per_mile,
        average_speed_mph=settings.average_speed_mph,
        peak_multiplier=settings.peak_multiplier,
    )


@dataclass
class JourneyRequest:
    pickup_address: str
    pickup: Location
    dropoff_address: str
    dropoff: Location
    pickup_time: datetime
    payment_method: PaymentMethod = PaymentMethod.CASH_BANK
    vehicle_features: Sequence[str] = ()
    support_workers_count: int = 0
    booking_type: Optional[BookingType] = None
    special_requirements: Optional[str] = None
    notes: Optional[str] = None


@dataclass
class Contact:
    email: str
    name: str
    phone: Optional[str] = None


@dataclass
class BookingResult:
    booking: BookingModel
    fare: FareBreakdown
    guest: Optional[GuestIdentityModel] = None
    access_token: Optional[AccessTokenModel] = None
    intent: Optional["IntentResult"] = None
    payment_error: Optional[str] = None
    payment_retryable: bool = False


async def rider_contact(session: AsyncSession, booking: BookingModel) -> Contact:
    """Resolve who to write to about *booking*, whichever shape owns it."""
    owner = owner_of(booking.guest_identity_id, booking.account_id)
    if isinstance(owner, AccountRef):
        account = await AccountRepository(session).get_by_id(owner.id)
        if account is not None:
            return Contact(email=account.email, name=account.name, phone=account.phone)
    if booking.guest_identity_id:
        guest = await GuestIdentityRepository(session).get_by_id(booking.guest_identity_id)
        if guest is not None:
            return Contact(email=guest.email, name=guest.name, phone=guest.phone)
    raise NotFoundError(f"No contact for booking {booking.id}")


class BookingService:
    def __init__(
        self,
        session: AsyncSession,
        notifier: Optional[Notifier] = None,
        calculator: Optional[FareCalculator] = None,
    ):
        self.session = session
        self.repo = BookingRepository(session)
        self.guests = GuestIdentityManager(session)
        self.notifier = notifier or Notifier(session)
        self.calculator = calculator or fare_calculator()

    # ── Queries ───────────────────────────────────────────────────────

    async def get(self, booking_id: str) -> BookingModel:
        booking = await self.repo.get_by_id(booking_id)
        if booking is None:
            raise NotFoundError("Booking not found")
        return booking

    async def get_by_token(self, token: str) -> BookingModel:
        row = await self.guests.resolve_token(token)
        return await self.get(row.booking_id)

    def quote(self, journey: JourneyRequest, now: Optional[datetime] = None) -> FareBreakdown:
        return self.calculator.quote(
            journey.pickup,
            journey.dropoff,
            vehicle_features=journey.vehicle_features,
            support_workers_count=journey.support_workers_count,
            pickup_time=journey.pickup_time,
            booking_type=journey.booking_type,
            now=now,
        )

    # ── Creation ──────────────────────────────────────────────────────

    def _validate(
        self,
        journey: JourneyRequest,
        now: Optional[datetime],
        payments: Optional["PaymentOrchestrator"] = None,
    ) -> FareBreakdown:
        if journey.payment_method == PaymentMethod.PROCESSOR and payments is None:
            raise ValidationError("Card payments are not available")
        if not journey.pickup_address.strip() or not journey.dropoff_address.strip():
            raise ValidationError("Pickup and dropoff addresses are required")
        if journey.pickup == journey.dropoff:
            raise ValidationError("Pickup and dropoff must differ")
        validate_pickup_time(
            journey.pickup_time,
            now=now,
            min_lead_minutes=settings.min_lead_minutes,
            max_lead_days=settings.max_lead_days,
        )
        return self.quote(journey, now=now)

    def _new_booking(self, journey: JourneyRequest, fare: FareBreakdown, **owner) -> BookingModel:
        return BookingModel(
            pickup_address=journey.pickup_address.strip(),
            pickup_lat=journey.pickup.latitude,
            pickup_lng=journey.pickup.longitude,
            dropoff_address=journey.dropoff_address.strip(),
            dropoff_lat=journey.dropoff.latitude,
            dropoff_lng=journey.dropoff.longitude,
            pickup_time=journey.pickup_time,
            vehicle_features=list(journey.vehicle_features),
            support_workers_count=journey.support_workers_count,
            booking_type=fare.booking_type,
            payment_method=journey.payment_method,
            status=BookingStatus.DRAFT,
            currency=settings.currency,
            fare_estimate=fare.total,
            base_fare=fare.base_fare,
            distance_fare=fare.distance_fare,
            vehicle_feature_fare=fare.vehicle_feature_fare,
            support_worker_fare=fare.support_worker_fare,
            peak_surcharge=fare.peak_surcharge,
            support_worker_ids=[],
            special_requirements=journey.special_requirements,
            notes=journey.notes,
            **owner,
        )

    async def create_guest_booking(
        self,
        journey: JourneyRequest,
        *,
        name: str,
        email: str,
        phone: str,
        payments: Optional["PaymentOrchestrator"] = None,
        now: Optional[datetime] = None,
    ) -> BookingResult:
        fare = self._validate(journey, now, payments)

        guest = await self.guests.upsert(name, email, phone)
        booking = await self.repo.create(
            self._new_booking(journey, fare, guest_identity_id=guest.id)
        )
        token = await self.guests.issue_token(booking.id, now=now)
        await self.notifier.booking_created(booking, guest.email, guest.name)
        await self.session.commit()
        logger.info("Guest booking %s created for guest %s", booking.id, guest.id)

        result = BookingResult(booking=booking, fare=fare, guest=guest, access_token=token)
        return await self._expose(result, payments)

    async def create_account_booking(
        self,
        account_id: str,
        journey: JourneyRequest,
        *,
        payments: Optional["PaymentOrchestrator"] = None,
        now: Optional[datetime] = None,
    ) -> BookingResult:
        fare = self._validate(journey, now, payments)
        account = await AccountRepository(self.session).get_by_id(account_id)
        if account is None:
            raise NotFoundError("Account not found")

        booking = await self.repo.create(
            self._new_booking(journey, fare, account_id=account.id)
        )
        await self.notifier.booking_created(booking, account.email, account.name)
        await self.session.commit()
        logger.info("Account booking %s created for account %s", booking.id, account.id)

        return await self._expose(BookingResult(booking=booking, fare=fare), payments)

    async def _expose(
        self, result: BookingResult, payments: Optional["PaymentOrchestrator"]
    ) -> BookingResult:
        """draft -> pending_payment; the card path then asks for an intent."""
        booking = result.booking
        booking_id = booking.id
        result.booking = booking = await self.transition(
            booking, BookingStatus.PENDING_PAYMENT
        )
        await self.session.commit()
        if booking.payment_method == PaymentMethod.CASH_BANK:
            return result

        try:
            result.intent = await payments.create_intent(booking_id)
        except ProcessorError as exc:
            # Booking and token survive in pending_payment; the intent can be retried.
            logger.warning("Intent for booking %s failed: %s", booking_id, exc.message)
            result.payment_error = exc.message
            result.payment_retryable = exc.retryable
        result.booking = await self.get(booking_id)
        return result

    # ── Transitions ───────────────────────────────────────────────────

    async def transition(
        self,
        booking: BookingModel,
        new_status: BookingStatus,
        expected: Optional[frozenset[BookingStatus]] = None,
        **values,
    ) -> BookingModel:
        """CAS *booking* from its current status to *new_status* (caller commits)."""
        current = BookingStatus(booking.status)
        ensure_transition(current, new_status)
        won = await self.repo.compare_and_set_status(
            booking.id, expected or current, new_status, **values
        )
        if not won:
            booking_id = booking.id
            await self.session.rollback()
            fresh = await self.get(booking_id)
            raise ConflictError(
                f"Booking {booking_id} is already {BookingStatus(fresh.status).value}"
            )
        return await self.repo.refresh(booking)

    async def cancel(self, booking_id: str, *, cancelled_by: str) -> BookingModel:
        booking = await self.get(booking_id)
        booking = await self.transition(
            booking, BookingStatus.CANCELLED, expected=CANCELLABLE
        )
        contact = await rider_contact(self.session, booking)
        await self.notifier.booking_cancelled(booking, contact.email, contact.name)
        await self.session.commit()
        logger.info("Booking %s cancelled by %s", booking.id, cancelled_by)
        return booking

    async def cancel_by_token(self, token: str) -> BookingModel:
        row = await self.guests.resolve_token(token)
        return await self.cancel(row.booking_id, cancelled_by="rider")

    def check_driver(self, booking: BookingModel, driver_id: str) -> None:
        if booking.driver_id and booking.driver_id != driver_id:
            raise PermissionDeniedError("Booking is assigned to another driver")

    async def start_trip(self, booking_id: str, driver_id: str) -> BookingModel:
        booking = await self.get(booking_id)
        self.check_driver(booking, driver_id)
        booking = await self.transition(
            booking, BookingStatus.IN_PROGRESS, driver_id=booking.driver_id or driver_id
        )
        await self.session.commit()
        return booking

    async def complete_trip(self, booking_id: str, driver_id: str) -> BookingModel:
        booking = await self.get(booking_id)
        self.check_driver(booking, driver_id)
        booking = await self.transition(booking, BookingStatus.COMPLETED)
        await self.session.commit()
        return booking

    async def assign_crew(
        self,
        booking_id: str,
        driver_id: Optional[str],
        support_worker_ids: Sequence[str] = (),
    ) -> BookingModel:
        """Set who the driver / support-worker splits are paid to."""
        booking = await self.get(booking_id)
        if BookingStatus(booking.status) not in CREW_EDITABLE:
            raise ConflictError("Crew can only change before payment is settled")
        workers = list(dict.fromkeys(support_worker_ids))
        if len(workers) > booking.support_workers_count:
            raise ValidationError(
                f"Booking needs {booking.support_workers_count} support workers, got {len(workers)}"
            )
        intent = await PaymentIntentRepository(self.session).get_for_booking(booking_id)
        if intent is not None and intent.destination_account and driver_id != booking.driver_id:
            raise ConflictError("The card payment already routes the driver share")

        won = await self.repo.update_if_status(
            booking_id, CREW_EDITABLE, driver_id=driver_id, support_worker_ids=workers
        )
        if not won:
            await self.session.rollback()
            raise ConflictError("Crew can only change before payment is settled")
        booking = await self.repo.refresh(booking)
        await self.session.commit()
        logger.info("Booking %s crew set: driver=%s workers=%s", booking_id, driver_id, workers)
        return booking

