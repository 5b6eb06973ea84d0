"""Unit tests for the fare quote and the revenue split."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from rideledger.domain.distance import haversine_miles
from rideledger.domain.entities import Location
from rideledger.domain.enums import BookingType
from rideledger.domain.errors import ValidationError
from rideledger.domain.pricing import (
    FareCalculator,
    allocate_evenly,
    booking_type_for_lead_time,
    compute_split,
    is_peak_time,
    round2,
    validate_pickup_time,
)

KINGS_CROSS = Location(51.5308, -0.1238)
ST_THOMAS = Location(51.4988, -0.1181)
NOW = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)


class TestComputeSplit:
    def test_example_fare(self):
        split = compute_split(
            Decimal("8.50"), Decimal("11.00"), Decimal("6.00"), Decimal("20.50"), Decimal("0")
        )
        assert split.total == Decimal("46.00")
        assert split.driver_share == Decimal("17.85")
        assert split.support_worker_share == Decimal("14.35")
        assert split.processor_fee == Decimal("1.63")
        assert split.platform_fee == Decimal("12.17")

    @pytest.mark.parametrize(
        "components",
        [
            ("8.50", "4.89", "0", "0", "0"),
            ("12.75", "16.50", "18.00", "55.50", "15.41"),
            ("7.65", "0.01", "13.50", "29.70", "0"),
            ("0.01", "0", "0", "0", "0"),
        ],
    )
    def test_shares_always_add_up_to_total(self, components):
        split = compute_split(*components)
        assert (
            split.driver_share
            + split.support_worker_share
            + split.processor_fee
            + split.platform_fee
            == split.total
        )

    def test_platform_fee_is_residual_not_rounded_separately(self):
        split = compute_split("10.01", "0", "0", "0.03", "0")
        expected = split.total - split.driver_share - split.support_worker_share - split.processor_fee
        assert split.platform_fee == expected

    def test_peak_surcharge_goes_to_driver_share(self):
        without = compute_split("10.00", "10.00", "0", "0", "0")
        with_peak = compute_split("10.00", "10.00", "0", "0", "3.00")
        assert with_peak.driver_share - without.driver_share == Decimal("2.10")

    @pytest.mark.parametrize("bad", ["-1.00", "NaN", "Infinity", "abc"])
    def test_invalid_inputs_rejected(self, bad):
        with pytest.raises(ValidationError):
            compute_split("8.50", bad, "0", "0", "0")

    def test_custom_rates(self):
        split = compute_split(
            "10.00", "0", "0", "0", "0",
            driver_rate=Decimal("0.80"),
            processor_rate=Decimal("0"),
            processor_fixed=Decimal("0"),
        )
        assert split.driver_share == Decimal("8.00")
        assert split.platform_fee == Decimal("2.00")


class TestAllocateEvenly:
    def test_remainder_goes_to_first_share(self):
        assert allocate_evenly(Decimal("14.35"), 2) == [Decimal("7.18"), Decimal("7.17")]

    def test_even_amount(self):
        assert allocate_evenly(Decimal("9.00"), 3) == [Decimal("3.00")] * 3

    def test_no_parts(self):
        assert allocate_evenly(Decimal("1.00"), 0) == []


class TestBookingType:
    @pytest.mark.parametrize(
        "hours, expected",
        [
            (0.5, BookingType.ON_DEMAND),
            (3, BookingType.ON_DEMAND),
            (6, BookingType.SCHEDULED),
            (12, BookingType.SCHEDULED),
            (48, BookingType.ADVANCE),
        ],
    )
    def test_lead_time_thresholds(self, hours, expected):
        assert booking_type_for_lead_time(hours) == expected

    def test_peak_windows(self):
        assert is_peak_time(datetime(2026, 3, 2, 7, 30))
        assert is_peak_time(datetime(2026, 3, 2, 15, 0))
        assert not is_peak_time(datetime(2026, 3, 2, 9, 0))
        assert not is_peak_time(datetime(2026, 3, 2, 12, 0))


class TestFareCalculator:
    def setup_method(self):
        self.calculator = FareCalculator()

    def quote(self, **kwargs):
        kwargs.setdefault("pickup_time", datetime(2026, 3, 2, 14, 0, tzinfo=timezone.utc))
        kwargs.setdefault("now", NOW)
        return self.calculator.quote(KINGS_CROSS, ST_THOMAS, **kwargs)

    def test_components_add_up_to_total(self):
        fare = self.quote(vehicle_features=["wheelchair", "oxygen-support"], support_workers_count=2)
        assert fare.total == (
            fare.base_fare
            + fare.distance_fare
            + fare.vehicle_feature_fare
            + fare.support_worker_fare
            + fare.peak_surcharge
        )

    def test_scheduled_fare(self):
        fare = self.quote(vehicle_features=["wheelchair"], support_workers_count=1)
        assert fare.booking_type == BookingType.SCHEDULED
        assert fare.base_fare == Decimal("8.50")
        assert fare.vehicle_feature_fare == Decimal("6.00")
        assert fare.support_worker_fare == Decimal("20.50")
        miles = haversine_miles(Location(51.5308, -0.1238), Location(51.4988, -0.1181))
        assert fare.distance_fare == round2(Decimal(str(miles)) * Decimal("2.20"))
        assert fare.peak_surcharge == Decimal("0.00")

    def test_on_demand_multiplier(self):
        fare = self.quote(pickup_time=NOW + timedelta(hours=1))
        assert fare.booking_type == BookingType.ON_DEMAND
        assert fare.base_fare == Decimal("12.75")

    def test_advance_discount(self):
        fare = self.quote(booking_type=BookingType.ADVANCE)
        assert fare.base_fare == Decimal("7.65")

    def test_peak_surcharge(self):
        fare = self.quote(pickup_time=datetime(2026, 3, 2, 16, 0, tzinfo=timezone.utc))
        subtotal = fare.base_fare + fare.distance_fare + fare.vehicle_feature_fare + fare.support_worker_fare
        assert fare.is_peak
        assert fare.peak_surcharge == round2(subtotal * Decimal("0.15"))

    def test_support_worker_rate_is_tiered(self):
        fare = self.quote(support_workers_count=3)
        assert fare.support_worker_rate == Decimal("17.50")
        assert fare.support_worker_fare == Decimal("52.50")

    def test_unknown_feature_rejected(self):
        with pytest.raises(ValidationError, match="Unknown vehicle feature"):
            self.quote(vehicle_features=["jetpack"])

    def test_too_many_support_workers_rejected(self):
        with pytest.raises(ValidationError):
            self.quote(support_workers_count=5)

    def test_split_of_quote_is_conserved(self):
        split = self.quote(vehicle_features=["patient-lift"], support_workers_count=2).split()
        assert (
            split.driver_share + split.support_worker_share + split.processor_fee + split.platform_fee
            == split.total
        )


class TestPickupWindow:
    def test_too_soon(self):
        with pytest.raises(ValidationError, match="at least 30 minutes"):
            validate_pickup_time(NOW + timedelta(minutes=10), now=NOW)

    def test_too_far_ahead(self):
        with pytest.raises(ValidationError, match="10 days"):
            validate_pickup_time(NOW + timedelta(days=11), now=NOW)

    def test_naive_time_is_taken_as_utc(self):
        validate_pickup_time(datetime(2026, 3, 3, 9, 0), now=NOW)


class TestHaversine:
    def test_zero_distance(self):
        assert haversine_miles(Location(51.5, -0.12), Location(51.5, -0.12)) == 0.0

    def test_symmetric(self):
        there = haversine_miles(Location(51.5308, -0.1238), Location(51.4988, -0.1181))
        back = haversine_miles(Location(51.4988, -0.1181), Location(51.5308, -0.1238))
        assert there == pytest.approx(back)
        assert 2.0 < there < 2.5
