"""
Fare calculator: tiered distance charge, time and holiday surcharges,
add-ons, airport fees and the return-journey discount.
"""
from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from transfer_exchange.db import models as m
from transfer_exchange.errors import ExternalDependencyError
from transfer_exchange.services.distance_oracle import RouteDistance
from transfer_exchange.services.fare_calculator import (
    NIGHT,
    PEAK,
    FareCalculator,
    FareRequest,
    detect_airport,
    is_holiday,
    price_leg,
    price_return,
    tiered_distance_charge,
    time_surcharge_band,
)
from transfer_exchange.services.rate_resolver import RateTable
from transfer_exchange.services.settings_service import MarketplaceConfig

UTC = timezone.utc
R = m.PricingRuleType
SALOON = m.VehicleType.SALOON

PICKUP = (51.5014, -0.1419)
DROPOFF = (51.4723, -0.4887)

# £15 base + 14 miles at a flat £2.50 = £50 before surcharges
FLAT_SALOON = RateTable(
    rules={
        (R.BASE_FARE, SALOON, None): Decimal("15"),
        (R.PER_MILE_RATE, SALOON, None): Decimal("2.50"),
        (R.RATE_REDUCTION_PER_100_MILES, SALOON, None): Decimal("0"),
    }
)
FOURTEEN_MILES = RouteDistance(miles=Decimal("14"), minutes=30)
CONFIG = MarketplaceConfig()


def _request(pickup_at: datetime, **kwargs) -> FareRequest:
    return FareRequest(
        vehicle_type=SALOON,
        pickup=PICKUP,
        dropoff=DROPOFF,
        pickup_at=pickup_at,
        **kwargs,
    )


def test_tiered_charge_second_bracket():
    """120 miles: 100 at £2.50 and 20 at £2.20."""
    charge = tiered_distance_charge(120, Decimal("2.50"), Decimal("0.30"))
    assert charge == Decimal("294.00")


def test_tiered_charge_without_reduction_is_linear():
    assert tiered_distance_charge(250, Decimal("2.75"), Decimal("0")) == Decimal("687.50")


def test_tiered_charge_is_non_decreasing_and_concave():
    charges = [
        tiered_distance_charge(miles, Decimal("2.50"), Decimal("0.30"))
        for miles in range(0, 1500, 50)
    ]
    steps = [later - earlier for earlier, later in zip(charges, charges[1:])]

    assert all(step >= 0 for step in steps)
    assert all(later <= earlier for earlier, later in zip(steps, steps[1:]))


def test_tiered_charge_rate_never_below_a_penny():
    # brackets run 2.50, 1.50, 0.50, then the 0.01 floor
    charge = tiered_distance_charge(400, Decimal("2.50"), Decimal("1.00"))
    assert charge == Decimal("451.00")


def test_night_surcharge_applies_to_base_plus_distance():
    """23:00 pickup: 25% of £50 is £12.50, running total £62.50."""
    breakdown = price_leg(
        _request(datetime(2026, 3, 10, 23, 0, tzinfo=UTC)),
        FOURTEEN_MILES,
        FLAT_SALOON,
        CONFIG,
        zone="UTC",
    )

    assert breakdown.time_surcharge_band == NIGHT
    assert breakdown.time_surcharge == Decimal("12.50")
    assert breakdown.running_total_before_addons == Decimal("62.50")
    assert breakdown.total == Decimal("62.50")


def test_peak_surcharge_on_weekday_morning_only():
    tuesday = price_leg(
        _request(datetime(2026, 3, 10, 8, 0, tzinfo=UTC)), FOURTEEN_MILES, FLAT_SALOON, CONFIG, zone="UTC"
    )
    saturday = price_leg(
        _request(datetime(2026, 3, 14, 8, 0, tzinfo=UTC)), FOURTEEN_MILES, FLAT_SALOON, CONFIG, zone="UTC"
    )

    assert tuesday.time_surcharge_band == PEAK
    assert tuesday.time_surcharge == Decimal("5.00")
    assert saturday.time_surcharge_band is None
    assert saturday.total == Decimal("50.00")


def test_night_wins_over_overlapping_peak():
    config = replace(CONFIG, peak_morning_start=5)
    assert time_surcharge_band(datetime(2026, 3, 10, 5, 30), config) == NIGHT
    assert time_surcharge_band(datetime(2026, 3, 10, 6, 30), config) == PEAK


def test_pickup_hour_is_read_in_marketplace_timezone():
    """21:30 UTC in July is 22:30 in London, inside the night window."""
    breakdown = price_leg(
        _request(datetime(2026, 7, 14, 21, 30, tzinfo=UTC)),
        FOURTEEN_MILES,
        FLAT_SALOON,
        CONFIG,
        zone="Europe/London",
    )
    assert breakdown.time_surcharge_band == NIGHT


def test_holiday_surcharge_on_christmas_day():
    breakdown = price_leg(
        _request(datetime(2026, 12, 25, 12, 0, tzinfo=UTC)), FOURTEEN_MILES, FLAT_SALOON, CONFIG, zone="UTC"
    )

    assert breakdown.holiday_surcharge_percent == Decimal("50")
    assert breakdown.holiday_surcharge == Decimal("25.00")
    assert breakdown.total == Decimal("75.00")


def test_is_holiday_covers_new_year_but_not_ordinary_days():
    assert is_holiday(datetime(2026, 12, 31, 10, 0), CONFIG)
    assert is_holiday(datetime(2027, 1, 1, 10, 0), CONFIG)
    assert is_holiday(datetime(2026, 12, 24, 10, 0), CONFIG)
    assert not is_holiday(datetime(2026, 12, 27, 10, 0), CONFIG)
    assert not is_holiday(datetime(2026, 3, 10, 10, 0), CONFIG)


def test_add_ons_are_added_after_surcharges():
    breakdown = price_leg(
        _request(
            datetime(2026, 3, 10, 12, 0, tzinfo=UTC),
            meet_and_greet=True,
            child_seats=2,
            booster_seats=1,
            pick_and_drop=True,
        ),
        FOURTEEN_MILES,
        FLAT_SALOON,
        CONFIG,
        zone="UTC",
    )

    assert breakdown.meet_and_greet_fee == Decimal("10.00")
    assert breakdown.child_seat_fee == Decimal("20.00")
    assert breakdown.booster_seat_fee == Decimal("5.00")
    assert breakdown.pick_and_drop_fee == Decimal("7.00")
    assert breakdown.running_total_before_addons == Decimal("50.00")
    assert breakdown.total == Decimal("92.00")


def test_airport_fee_looked_up_per_airport():
    rates = RateTable(
        rules={**FLAT_SALOON.rules, (R.AIRPORT_FEE, None, "LHR"): Decimal("6.00")}
    )
    noon = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)

    pickup = price_leg(
        _request(noon, service_type=m.ServiceType.AIRPORT_PICKUP, pickup_postcode="TW6 2GA"),
        FOURTEEN_MILES,
        rates,
        CONFIG,
        zone="UTC",
    )
    point_to_point = price_leg(
        _request(noon, pickup_postcode="TW6 2GA"), FOURTEEN_MILES, rates, CONFIG, zone="UTC"
    )

    assert pickup.airport_code == "LHR"
    assert pickup.airport_fee == Decimal("6.00")
    assert pickup.total == Decimal("56.00")
    assert point_to_point.airport_code is None
    assert point_to_point.airport_fee == Decimal("0.00")


def test_detect_airport_by_postcode_prefix():
    assert detect_airport("tw6 2ga") == "LHR"
    assert detect_airport("CM24 1QW") == "STN"
    assert detect_airport("RH6 0NP") == "LGW"
    assert detect_airport("SW1A 1AA") is None
    assert detect_airport(None) is None


def test_return_discount_applied_once_to_combined_total():
    outbound = price_leg(
        _request(datetime(2026, 3, 10, 12, 0, tzinfo=UTC)), FOURTEEN_MILES, FLAT_SALOON, CONFIG, zone="UTC"
    )
    return_leg = price_leg(
        _request(datetime(2026, 3, 10, 23, 0, tzinfo=UTC)), FOURTEEN_MILES, FLAT_SALOON, CONFIG, zone="UTC"
    )

    quote = price_return(outbound, return_leg, FLAT_SALOON)

    assert quote.subtotal == Decimal("112.50")
    assert quote.discount_percent == Decimal("5")
    assert quote.discount_amount == Decimal("5.63")
    assert quote.total == Decimal("106.87")
    # legs themselves stay undiscounted
    assert quote.outbound.total == Decimal("50.00")
    assert quote.return_leg.total == Decimal("62.50")


def test_rate_table_lookup_order():
    rates = RateTable(
        rules={
            (R.NIGHT_SURCHARGE, m.VehicleType.EXECUTIVE, None): Decimal("40"),
            (R.NIGHT_SURCHARGE, None, None): Decimal("30"),
        },
        setting_values={"PEAK_SURCHARGE_PERCENT": "12.5", "HOLIDAY_SURCHARGE_PERCENT": "abc"},
    )

    assert rates.get(R.NIGHT_SURCHARGE, m.VehicleType.EXECUTIVE) == Decimal("40")
    assert rates.get(R.NIGHT_SURCHARGE, SALOON) == Decimal("30")
    assert rates.get(R.PEAK_SURCHARGE, SALOON) == Decimal("12.5")
    # malformed setting falls through to the built-in default
    assert rates.get(R.HOLIDAY_SURCHARGE, SALOON) == Decimal("50")
    assert rates.get(R.BASE_FARE, m.VehicleType.MINIBUS) == Decimal("50")



def test_rate_table_ignores_non_finite_settings():
    rates = RateTable(
        setting_values={"NIGHT_SURCHARGE_PERCENT": "NaN", "MEET_AND_GREET_FEE": "Infinity"}
    )

    assert rates.get(R.NIGHT_SURCHARGE, SALOON) == Decimal("25")
    assert rates.get(R.MEET_AND_GREET, SALOON) == Decimal("10")

def test_rate_table_airport_setting_key():
    rates = RateTable(setting_values={"AIRPORT_FEE_LGW": "4.50"})

    assert rates.get(R.AIRPORT_FEE, SALOON, airport_code="lgw") == Decimal("4.50")
    assert rates.get(R.AIRPORT_FEE, SALOON, airport_code="LHR") == Decimal("0")


class _FixedOracle:
    def __init__(self, *distances: RouteDistance):
        self.distances = list(distances)
        self.calls = []

    async def measure(self, pickup, dropoff, waypoints=()):
        self.calls.append((pickup, dropoff, tuple(waypoints)))
        return self.distances.pop(0)


class _BrokenOracle:
    async def measure(self, pickup, dropoff, waypoints=()):
        raise ExternalDependencyError("distance lookup failed: timeout")


@pytest.mark.asyncio
async def test_quote_uses_default_rates_when_table_is_empty(async_session):
    """Test: with no rules stored the built-in SALOON rates price the leg."""
    oracle = _FixedOracle(FOURTEEN_MILES)
    calculator = FareCalculator(oracle=oracle, zone="UTC")

    breakdown = await calculator.quote(
        _request(datetime(2026, 3, 10, 12, 0, tzinfo=UTC)), session=async_session
    )

    assert breakdown.base_fare == Decimal("15.00")
    assert breakdown.distance_charge == Decimal("35.00")
    assert breakdown.total == Decimal("50.00")
    assert oracle.calls == [(PICKUP, DROPOFF, ())]


@pytest.mark.asyncio
async def test_quote_reads_stored_pricing_rules(async_session):
    async_session.add_all(
        [
            m.pricing_rules(rule_type=R.BASE_FARE, vehicle_type=SALOON, value=Decimal("20")),
            m.pricing_rules(
                rule_type=R.BASE_FARE, vehicle_type=SALOON, value=Decimal("99"), is_active=False
            ),
        ]
    )
    await async_session.commit()
    calculator = FareCalculator(oracle=_FixedOracle(FOURTEEN_MILES), zone="UTC")

    breakdown = await calculator.quote(
        _request(datetime(2026, 3, 10, 12, 0, tzinfo=UTC)), session=async_session
    )

    assert breakdown.base_fare == Decimal("20.00")
    assert breakdown.total == Decimal("55.00")


@pytest.mark.asyncio
async def test_quote_return_prices_both_legs(async_session):
    calculator = FareCalculator(
        oracle=_FixedOracle(FOURTEEN_MILES, FOURTEEN_MILES), zone="UTC"
    )

    quote = await calculator.quote_return(
        _request(datetime(2026, 3, 10, 12, 0, tzinfo=UTC)),
        FareRequest(
            vehicle_type=SALOON,
            pickup=DROPOFF,
            dropoff=PICKUP,
            pickup_at=datetime(2026, 3, 10, 18, 0, tzinfo=UTC),
        ),
        session=async_session,
    )

    # evening leg falls in the 17-19 peak window: 50 + 10%
    assert quote.return_leg.total == Decimal("55.00")
    assert quote.subtotal == Decimal("105.00")
    assert quote.discount_amount == Decimal("5.25")
    assert quote.total == Decimal("99.75")


@pytest.mark.asyncio
async def test_quote_propagates_distance_failure(async_session):
    calculator = FareCalculator(oracle=_BrokenOracle(), zone="UTC")

    with pytest.raises(ExternalDependencyError):
        await calculator.quote(
            _request(datetime(2026, 3, 10, 12, 0, tzinfo=UTC)), session=async_session
        )
