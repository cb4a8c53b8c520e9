"""
Fare calculator: distance + vehicle class + pickup time + add-ons -> price.

Every line item is rounded to pennies (ROUND_HALF_UP) at the moment it is
computed, so percentage surcharges apply to already-rounded amounts.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from transfer_exchange.db import models as m
from transfer_exchange.services import time_service
from transfer_exchange.services.distance_oracle import LatLng, OSRMDistanceOracle, RouteDistance
from transfer_exchange.services.rate_resolver import RateTable, load_rate_table
from transfer_exchange.services.settings_service import (
    MarketplaceConfig,
    _maybe_session,
    load_marketplace_config,
)

logger = logging.getLogger("marketplace.fares")

TWO_PLACES = Decimal("0.01")
HUNDRED = Decimal("100")
BRACKET_MILES = Decimal("100")
MIN_PER_MILE_RATE = Decimal("0.01")
CURRENCY = "GBP"

AIRPORT_POSTCODE_PREFIXES: dict[str, str] = {
    "TW6": "LHR",
    "UB7": "LHR",
    "RH6": "LGW",
    "CM24": "STN",
    "LU2": "LTN",
    "SS2": "SEN",
    "M90": "MAN",
    "B26": "BHX",
    "LS19": "LBA",
    "BS48": "BRS",
    "EH12": "EDI",
    "PA3": "GLA",
}

NIGHT = "NIGHT"
PEAK = "PEAK"


def _money(value: Decimal) -> Decimal:
    return Decimal(value).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def _percent_of(amount: Decimal, percent: Decimal) -> Decimal:
    return _money(amount * percent / HUNDRED)


def tiered_distance_charge(
    miles: Decimal | float | int,
    per_mile_rate: Decimal,
    reduction_per_100: Decimal,
) -> Decimal:
    """Charge for *miles*, bracket by bracket.

    Bracket n (0-based, 100 miles wide) is billed at
    ``max(per_mile_rate - n * reduction_per_100, 0.01)``. A reduction of 0
    disables tiering.
    """
    remaining = max(Decimal(str(miles)), Decimal("0"))
    per_mile_rate = Decimal(per_mile_rate)
    reduction = max(Decimal(reduction_per_100), Decimal("0"))
    if reduction == 0:
        return _money(remaining * max(per_mile_rate, MIN_PER_MILE_RATE))

    total = Decimal("0")
    bracket = 0
    while remaining > 0:
        rate = max(per_mile_rate - reduction * bracket, MIN_PER_MILE_RATE)
        if rate == MIN_PER_MILE_RATE:
            total += remaining * rate
            break
        chunk = min(remaining, BRACKET_MILES)
        total += chunk * rate
        remaining -= chunk
        bracket += 1
    return _money(total)


def _hour_in_window(hour: int, start: int, end: int) -> bool:
    if start == end:
        return False
    if start < end:
        return start <= hour < end
    # wraps past midnight, e.g. 22 -> 6
    return hour >= start or hour < end


def time_surcharge_band(local_pickup: datetime, config: MarketplaceConfig) -> Optional[str]:
    """NIGHT, PEAK or None. Night wins when both would match."""
    hour = local_pickup.hour
    if _hour_in_window(hour, config.night_start_hour, config.night_end_hour):
        return NIGHT
    if config.peak_weekdays_only and local_pickup.isoweekday() > 5:
        return None
    if _hour_in_window(hour, config.peak_morning_start, config.peak_morning_end):
        return PEAK
    if _hour_in_window(hour, config.peak_evening_start, config.peak_evening_end):
        return PEAK
    return None


def is_holiday(local_pickup: datetime, config: MarketplaceConfig) -> bool:
    """Christmas range or New Year's Eve/Day, whatever the year."""
    today = (local_pickup.month, local_pickup.day)
    start = time_service.parse_month_day(config.christmas_start, default=(12, 24))
    end = time_service.parse_month_day(config.christmas_end, default=(12, 26))
    if start <= end:
        in_christmas = start <= today <= end
    else:
        in_christmas = today >= start or today <= end
    if in_christmas:
        return True
    new_year_eve = time_service.parse_month_day(config.new_year_eve, default=(12, 31))
    new_year_day = time_service.parse_month_day(config.new_year_day, default=(1, 1))
    return today in (new_year_eve, new_year_day)


def detect_airport(postcode: Optional[str]) -> Optional[str]:
    normalized = (postcode or "").upper().replace(" ", "")
    if not normalized:
        return None
    # longest prefix first so CM24 is not shadowed by a shorter entry
    for prefix in sorted(AIRPORT_POSTCODE_PREFIXES, key=len, reverse=True):
        if normalized.startswith(prefix):
            return AIRPORT_POSTCODE_PREFIXES[prefix]
    return None


@dataclass(frozen=True)
class FareRequest:
    vehicle_type: m.VehicleType
    pickup: LatLng
    dropoff: LatLng
    pickup_at: datetime
    waypoints: Sequence[LatLng] = ()
    service_type: m.ServiceType = m.ServiceType.POINT_TO_POINT
    pickup_postcode: Optional[str] = None
    dropoff_postcode: Optional[str] = None
    meet_and_greet: bool = False
    child_seats: int = 0
    booster_seats: int = 0
    pick_and_drop: bool = False

    @property
    def airport_postcode(self) -> Optional[str]:
        if self.service_type == m.ServiceType.AIRPORT_PICKUP:
            return self.pickup_postcode
        if self.service_type == m.ServiceType.AIRPORT_DROPOFF:
            return self.dropoff_postcode
        return None


@dataclass(frozen=True)
class FareBreakdown:
    vehicle_type: m.VehicleType
    distance_miles: Decimal
    duration_minutes: int
    base_fare: Decimal
    per_mile_rate: Decimal
    rate_reduction_per_100: Decimal
    distance_charge: Decimal
    time_surcharge_band: Optional[str]
    time_surcharge_percent: Decimal
    time_surcharge: Decimal
    holiday_surcharge_percent: Decimal
    holiday_surcharge: Decimal
    meet_and_greet_fee: Decimal
    airport_code: Optional[str]
    airport_fee: Decimal
    child_seat_fee: Decimal
    booster_seat_fee: Decimal
    pick_and_drop_fee: Decimal
    subtotal: Decimal
    total: Decimal
    currency: str = CURRENCY

    @property
    def running_total_before_addons(self) -> Decimal:
        return self.base_fare + self.distance_charge + self.time_surcharge + self.holiday_surcharge


@dataclass(frozen=True)
class ReturnFareQuote:
    outbound: FareBreakdown
    return_leg: FareBreakdown
    subtotal: Decimal
    discount_percent: Decimal
    discount_amount: Decimal
    total: Decimal
    currency: str = CURRENCY


def price_leg(
    request: FareRequest,
    distance: RouteDistance,
    rates: RateTable,
    config: MarketplaceConfig,
    *,
    zone: Optional[str] = None,
) -> FareBreakdown:
    """Pure pricing of one journey leg."""
    vehicle = request.vehicle_type
    base_fare = _money(rates.get(m.PricingRuleType.BASE_FARE, vehicle))
    per_mile = rates.get(m.PricingRuleType.PER_MILE_RATE, vehicle)
    reduction = rates.get(m.PricingRuleType.RATE_REDUCTION_PER_100_MILES, vehicle)
    distance_charge = tiered_distance_charge(distance.miles, per_mile, reduction)
    fare_before_surcharges = base_fare + distance_charge

    local_pickup = time_service.to_local(request.pickup_at, zone)
    band = time_surcharge_band(local_pickup, config)
    if band == NIGHT:
        time_percent = rates.get(m.PricingRuleType.NIGHT_SURCHARGE, vehicle)
    elif band == PEAK:
        time_percent = rates.get(m.PricingRuleType.PEAK_SURCHARGE, vehicle)
    else:
        time_percent = Decimal("0")
    time_surcharge = _percent_of(fare_before_surcharges, time_percent)

    holiday_percent = (
        rates.get(m.PricingRuleType.HOLIDAY_SURCHARGE, vehicle)
        if is_holiday(local_pickup, config)
        else Decimal("0")
    )
    holiday_surcharge = _percent_of(fare_before_surcharges, holiday_percent)

    meet_and_greet_fee = (
        _money(rates.get(m.PricingRuleType.MEET_AND_GREET, vehicle))
        if request.meet_and_greet
        else Decimal("0.00")
    )

    airport_code = detect_airport(request.airport_postcode)
    airport_fee = Decimal("0.00")
    if airport_code:
        fee = _money(rates.get(m.PricingRuleType.AIRPORT_FEE, vehicle, airport_code=airport_code))
        if fee > 0:
            airport_fee = fee

    child_seat_fee = _money(
        rates.get(m.PricingRuleType.CHILD_SEAT, vehicle) * max(request.child_seats, 0)
    )
    booster_seat_fee = _money(
        rates.get(m.PricingRuleType.BOOSTER_SEAT, vehicle) * max(request.booster_seats, 0)
    )
    pick_and_drop_fee = (
        _money(rates.get(m.PricingRuleType.PICK_AND_DROP, vehicle))
        if request.pick_and_drop
        else Decimal("0.00")
    )

    subtotal = _money(
        base_fare
        + distance_charge
        + time_surcharge
        + holiday_surcharge
        + meet_and_greet_fee
        + airport_fee
        + child_seat_fee
        + booster_seat_fee
        + pick_and_drop_fee
    )

    return FareBreakdown(
        vehicle_type=vehicle,
        distance_miles=distance.miles,
        duration_minutes=distance.minutes,
        base_fare=base_fare,
        per_mile_rate=_money(per_mile),
        rate_reduction_per_100=_money(reduction),
        distance_charge=distance_charge,
        time_surcharge_band=band,
        time_surcharge_percent=time_percent,
        time_surcharge=time_surcharge,
        holiday_surcharge_percent=holiday_percent,
        holiday_surcharge=holiday_surcharge,
        meet_and_greet_fee=meet_and_greet_fee,
        airport_code=airport_code,
        airport_fee=airport_fee,
        child_seat_fee=child_seat_fee,
        booster_seat_fee=booster_seat_fee,
        pick_and_drop_fee=pick_and_drop_fee,
        subtotal=subtotal,
        total=subtotal,
    )


def price_return(
    outbound: FareBreakdown,
    return_leg: FareBreakdown,
    rates: RateTable,
) -> ReturnFareQuote:
    """Discount applied once to the combined subtotal of both legs."""
    subtotal = _money(outbound.total + return_leg.total)
    discount_percent = rates.get(m.PricingRuleType.RETURN_DISCOUNT, outbound.vehicle_type)
    discount_amount = _percent_of(subtotal, discount_percent)
    return ReturnFareQuote(
        outbound=outbound,
        return_leg=return_leg,
        subtotal=subtotal,
        discount_percent=discount_percent,
        discount_amount=discount_amount,
        total=_money(subtotal - discount_amount),
    )


@dataclass
class FareCalculator:
    """Async front door: asks the oracle for distance, loads rates, prices."""

    oracle: OSRMDistanceOracle = field(default_factory=OSRMDistanceOracle)
    zone: Optional[str] = None

    async def _load_inputs(
        self, session: Optional[AsyncSession]
    ) -> tuple[RateTable, MarketplaceConfig]:
        async with _maybe_session(session) as s:
            rates = await load_rate_table(s)
            config = await load_marketplace_config(s)
        return rates, config

    async def _measure(self, request: FareRequest) -> RouteDistance:
        # oracle failures propagate: no quote without a distance
        return await self.oracle.measure(request.pickup, request.dropoff, request.waypoints)

    async def quote(
        self, request: FareRequest, *, session: Optional[AsyncSession] = None
    ) -> FareBreakdown:
        distance = await self._measure(request)
        rates, config = await self._load_inputs(session)
        breakdown = price_leg(request, distance, rates, config, zone=self.zone)
        logger.info(
            "[fares] vehicle=%s miles=%s band=%s total=%s",
            request.vehicle_type.value,
            distance.miles,
            breakdown.time_surcharge_band or "-",
            breakdown.total,
        )
        return breakdown

    async def quote_return(
        self,
        outbound: FareRequest,
        return_leg: FareRequest,
        *,
        session: Optional[AsyncSession] = None,
    ) -> ReturnFareQuote:
        outbound_distance, return_distance = await asyncio.gather(
            self._measure(outbound), self._measure(return_leg)
        )
        rates, config = await self._load_inputs(session)
        quote = price_return(
            price_leg(outbound, outbound_distance, rates, config, zone=self.zone),
            price_leg(return_leg, return_distance, rates, config, zone=self.zone),
            rates,
        )
        logger.info(
            "[fares] return vehicle=%s subtotal=%s discount=%s total=%s",
            outbound.vehicle_type.value,
            quote.subtotal,
            quote.discount_amount,
            quote.total,
        )
        return quote
