"""
Fare & Split Calculator  (Strategy Pattern)
===========================================

Quote
-----
Fare = (Base + Distance x Rate_Per_Mile + Features + Support_Workers)
       x Booking_Type_Multiplier  (+ 15 % peak surcharge)

* **Booking_Type_Multiplier**: on-demand x1.5 (pickup within 3 h),
  scheduled x1.0 (within 12 h), advance x0.9 (further out).
* **Support_Workers**: hours x tiered hourly rate x head count, at least
  one hour per worker.

Each component is scaled and rounded on its own so the components add
up to the quoted total to the penny.

Split
-----
``compute_split`` divides a settled amount between driver, support
workers, the card processor and the platform.  The platform fee is the
residual ``total - driver - support - processor`` so the four shares
always sum to ``total`` exactly.

Complexity: O(1) per calculation.
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional, Sequence, Union

from .distance import haversine_miles
from .entities import Location, as_utc, utcnow
from .enums import BookingType
from .errors import ValidationError

Number = Union[Decimal, int, float, str]

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

DRIVER_SHARE_RATE = Decimal("0.70")
SUPPORT_WORKER_SHARE_RATE = Decimal("0.70")
PROCESSOR_FEE_RATE = Decimal("0.029")
PROCESSOR_FEE_FIXED = Decimal("0.30")

VEHICLE_FEATURES: dict[str, tuple[str, Decimal]] = {
    "wheelchair": ("Wheelchair Accessible", Decimal("6.00")),
    "patient-lift": ("Patient Lift", Decimal("12.00")),
    "oxygen-support": ("Oxygen Support", Decimal("15.00")),
}

# head count -> hourly rate per worker
SUPPORT_WORKER_RATES: dict[int, Decimal] = {
    0: Decimal("0.00"),
    1: Decimal("20.50"),
    2: Decimal("18.50"),
    3: Decimal("17.50"),
    4: Decimal("16.50"),
}

PEAK_HOURS = ((6, 9), (15, 18))


def round2(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def to_money(value: Number, name: str = "amount") -> Decimal:
    """Coerce *value* to a non-negative finite Decimal or raise."""
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{name} is not a number: {value!r}")
    if not amount.is_finite():
        raise ValidationError(f"{name} must be a finite number")
    if amount < 0:
        raise ValidationError(f"{name} cannot be negative")
    return amount


# ── Split ─────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class PaymentSplitBreakdown:
    total: Decimal
    driver_share: Decimal
    support_worker_share: Decimal
    processor_fee: Decimal
    platform_fee: Decimal

    def as_dict(self) -> dict[str, str]:
        return {
            "total": str(self.total),
            "driver_share": str(self.driver_share),
            "support_worker_share": str(self.support_worker_share),
            "processor_fee": str(self.processor_fee),
            "platform_fee": str(self.platform_fee),
        }


def compute_split(
    base_fare: Number,
    distance_fare: Number,
    vehicle_feature_fare: Number,
    support_worker_fare: Number,
    peak_surcharge: Number = ZERO,
    *,
    driver_rate: Decimal = DRIVER_SHARE_RATE,
    support_worker_rate: Decimal = SUPPORT_WORKER_SHARE_RATE,
    processor_rate: Decimal = PROCESSOR_FEE_RATE,
    processor_fixed: Decimal = PROCESSOR_FEE_FIXED,
) -> PaymentSplitBreakdown:
    base = to_money(base_fare, "base_fare")
    distance = to_money(distance_fare, "distance_fare")
    features = to_money(vehicle_feature_fare, "vehicle_feature_fare")
    support = to_money(support_worker_fare, "support_worker_fare")
    peak = to_money(peak_surcharge, "peak_surcharge")

    total = round2(base + distance + features + support + peak)
    driver_share = round2(driver_rate * (base + distance + features + peak))
    support_share = round2(support_worker_rate * support)
    processor_fee = round2(total * processor_rate + processor_fixed)
    # Residual; never rounded independently.
    platform_fee = total - driver_share - support_share - processor_fee

    return PaymentSplitBreakdown(
        total=total,
        driver_share=driver_share,
        support_worker_share=support_share,
        processor_fee=processor_fee,
        platform_fee=platform_fee,
    )


def allocate_evenly(amount: Decimal, parts: int) -> list[Decimal]:
    """Divide *amount* into *parts* penny-exact shares (first shares get the remainder)."""
    if parts <= 0:
        return []
    cents = int((amount / CENT).to_integral_value())
    share, remainder = divmod(cents, parts)
    return [
        (Decimal(share + (1 if i < remainder else 0)) * CENT).quantize(CENT)
        for i in range(parts)
    ]


# ── Booking-type strategy hierarchy ──────────────────────────────────


class BookingTypePricing(ABC):
    booking_type: BookingType

    @property
    @abstractmethod
    def multiplier(self) -> Decimal: ...

    def apply(self, amount: Decimal) -> Decimal:
        return round2(amount * self.multiplier)


class OnDemandPricing(BookingTypePricing):
    """Short-notice pickup: +50 %."""

    booking_type = BookingType.ON_DEMAND

    @property
    def multiplier(self) -> Decimal:
        return Decimal("1.5")


class ScheduledPricing(BookingTypePricing):
    booking_type = BookingType.SCHEDULED

    @property
    def multiplier(self) -> Decimal:
        return Decimal("1.0")


class AdvancePricing(BookingTypePricing):
    """Booked more than 12 h ahead: 10 % off."""

    booking_type = BookingType.ADVANCE

    @property
    def multiplier(self) -> Decimal:
        return Decimal("0.9")


STRATEGIES: dict[BookingType, BookingTypePricing] = {
    s.booking_type: s
    for s in (OnDemandPricing(), ScheduledPricing(), AdvancePricing())
}


def booking_type_for_lead_time(lead_time_hours: float) -> BookingType:
    if lead_time_hours <= 3:
        return BookingType.ON_DEMAND
    if lead_time_hours <= 12:
        return BookingType.SCHEDULED
    return BookingType.ADVANCE


def is_peak_time(moment: datetime) -> bool:
    return any(start <= moment.hour < end for start, end in PEAK_HOURS)


# ── Quote ─────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class FareBreakdown:
    distance_miles: float
    estimated_minutes: int
    booking_type: BookingType
    booking_type_multiplier: Decimal
    is_peak: bool
    base_fare: Decimal
    distance_fare: Decimal
    vehicle_feature_fare: Decimal
    support_workers_count: int
    support_worker_hours: int
    support_worker_rate: Decimal
    support_worker_fare: Decimal
    peak_surcharge: Decimal
    total: Decimal
    vehicle_features: tuple[tuple[str, Decimal], ...] = field(default=())

    def split(self, **rates: Decimal) -> PaymentSplitBreakdown:
        return compute_split(
            self.base_fare,
            self.distance_fare,
            self.vehicle_feature_fare,
            self.support_worker_fare,
            self.peak_surcharge,
            **rates,
        )


class FareCalculator:
    """High-level API used by the booking service and the quote endpoint."""

    def __init__(
        self,
        base_fare: Decimal = Decimal("8.50"),
        rate_per_mile: Decimal = Decimal("2.20"),
        average_speed_mph: float = 20.0,
        peak_multiplier: Decimal = Decimal("1.15"),
    ):
        self.base_fare = base_fare
        self.rate_per_mile = rate_per_mile
        self.average_speed_mph = average_speed_mph
        self.peak_multiplier = peak_multiplier

    @staticmethod
    def feature_prices(features: Sequence[str]) -> list[tuple[str, Decimal]]:
        priced = []
        for feature_id in features:
            if feature_id not in VEHICLE_FEATURES:
                raise ValidationError(f"Unknown vehicle feature: {feature_id}")
            priced.append((feature_id, VEHICLE_FEATURES[feature_id][1]))
        return priced

    @staticmethod
    def support_worker_rate(count: int) -> Decimal:
        if count not in SUPPORT_WORKER_RATES:
            raise ValidationError(
                f"Support workers must be between 0 and {max(SUPPORT_WORKER_RATES)}"
            )
        return SUPPORT_WORKER_RATES[count]

    def estimate_minutes(self, miles: float) -> int:
        return max(1, math.ceil(miles / self.average_speed_mph * 60))

    def quote(
        self,
        pickup: Location,
        dropoff: Location,
        vehicle_features: Sequence[str] = (),
        support_workers_count: int = 0,
        pickup_time: Optional[datetime] = None,
        booking_type: Optional[BookingType] = None,
        now: Optional[datetime] = None,
    ) -> FareBreakdown:
        now = as_utc(now) if now else utcnow()
        # Peak hours are judged on the wall clock the rider supplied.
        local_pickup = pickup_time or now
        pickup_time = as_utc(local_pickup)

        if booking_type is None:
            lead_hours = (pickup_time - now).total_seconds() / 3600
            booking_type = booking_type_for_lead_time(lead_hours)
        strategy = STRATEGIES[booking_type]

        miles = haversine_miles(pickup, dropoff)
        minutes = self.estimate_minutes(miles)
        features = self.feature_prices(vehicle_features)
        rate = self.support_worker_rate(support_workers_count)
        hours = max(1, math.ceil(minutes / 60))

        raw_distance = Decimal(str(miles)) * self.rate_per_mile
        raw_features = sum((price for _, price in features), ZERO)
        raw_support = rate * hours * support_workers_count

        base = strategy.apply(self.base_fare)
        distance = strategy.apply(raw_distance)
        feature_fare = strategy.apply(raw_features)
        support = strategy.apply(raw_support)

        peak = is_peak_time(local_pickup)
        surcharge = ZERO
        if peak:
            subtotal = base + distance + feature_fare + support
            surcharge = round2(subtotal * (self.peak_multiplier - 1))

        return FareBreakdown(
            distance_miles=round(miles, 2),
            estimated_minutes=minutes,
            booking_type=booking_type,
            booking_type_multiplier=strategy.multiplier,
            is_peak=peak,
            base_fare=base,
            distance_fare=distance,
            vehicle_feature_fare=feature_fare,
            support_workers_count=support_workers_count,
            support_worker_hours=hours if support_workers_count else 0,
            support_worker_rate=rate,
            support_worker_fare=support,
            peak_surcharge=surcharge,
            total=base + distance + feature_fare + support + surcharge,
            vehicle_features=tuple(features),
        )


def validate_pickup_time(
    pickup_time: datetime,
    now: Optional[datetime] = None,
    min_lead_minutes: int = 30,
    max_lead_days: int = 10,
) -> None:
    now = as_utc(now) if now else utcnow()
    pickup_time = as_utc(pickup_time)
    if pickup_time < now + timedelta(minutes=min_lead_minutes):
        raise ValidationError(
            f"Pickup time must be at least {min_lead_minutes} minutes from now"
        )
    if pickup_time > now + timedelta(days=max_lead_days):
        raise ValidationError(
            f"Pickup time cannot be more than {max_lead_days} days ahead"
        )
