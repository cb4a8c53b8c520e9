from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Mapping, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from transfer_exchange.db import models as m
from transfer_exchange.services import settings_service as settings_store

logger = logging.getLogger("marketplace.rates")

RuleKey = tuple[m.PricingRuleType, Optional[m.VehicleType], Optional[str]]

# base fare, per-mile rate, per-mile reduction for every further 100 miles
DEFAULT_VEHICLE_RATES: dict[m.VehicleType, tuple[Decimal, Decimal, Decimal]] = {
    m.VehicleType.SALOON: (Decimal("15"), Decimal("2.50"), Decimal("0.30")),
    m.VehicleType.ESTATE: (Decimal("18"), Decimal("2.75"), Decimal("0.15")),
    m.VehicleType.MPV: (Decimal("25"), Decimal("3.00"), Decimal("0.30")),
    m.VehicleType.EXECUTIVE: (Decimal("35"), Decimal("4.00"), Decimal("0.25")),
    m.VehicleType.MINIBUS: (Decimal("50"), Decimal("4.50"), Decimal("0.20")),
    m.VehicleType.EXECUTIVE_LUXURY: (Decimal("55"), Decimal("5.00"), Decimal("0.20")),
    m.VehicleType.EXECUTIVE_PEOPLE_CARRIER: (Decimal("45"), Decimal("4.25"), Decimal("0.20")),
    m.VehicleType.GREEN_CAR: (Decimal("20"), Decimal("2.75"), Decimal("0")),
}

DEFAULT_GLOBAL_RATES: dict[m.PricingRuleType, Decimal] = {
    m.PricingRuleType.NIGHT_SURCHARGE: Decimal("25"),
    m.PricingRuleType.PEAK_SURCHARGE: Decimal("10"),
    m.PricingRuleType.HOLIDAY_SURCHARGE: Decimal("50"),
    m.PricingRuleType.MEET_AND_GREET: Decimal("10"),
    m.PricingRuleType.AIRPORT_FEE: Decimal("0"),
    m.PricingRuleType.CHILD_SEAT: Decimal("10"),
    m.PricingRuleType.BOOSTER_SEAT: Decimal("5"),
    m.PricingRuleType.PICK_AND_DROP: Decimal("7"),
    m.PricingRuleType.RETURN_DISCOUNT: Decimal("5"),
}

# settings-table key acting as the system-wide value of a rule
RULE_SETTING_KEYS: dict[m.PricingRuleType, str] = {
    m.PricingRuleType.NIGHT_SURCHARGE: "NIGHT_SURCHARGE_PERCENT",
    m.PricingRuleType.PEAK_SURCHARGE: "PEAK_SURCHARGE_PERCENT",
    m.PricingRuleType.HOLIDAY_SURCHARGE: "HOLIDAY_SURCHARGE_PERCENT",
    m.PricingRuleType.MEET_AND_GREET: "MEET_AND_GREET_FEE",
    m.PricingRuleType.AIRPORT_FEE: "AIRPORT_FEE",
    m.PricingRuleType.CHILD_SEAT: "CHILD_SEAT_FEE",
    m.PricingRuleType.BOOSTER_SEAT: "BOOSTER_SEAT_FEE",
    m.PricingRuleType.PICK_AND_DROP: "PICK_AND_DROP_FEE",
    m.PricingRuleType.RETURN_DISCOUNT: "RETURN_DISCOUNT_PERCENT",
    m.PricingRuleType.BASE_FARE: "DEFAULT_BASE_FARE",
    m.PricingRuleType.PER_MILE_RATE: "DEFAULT_PER_MILE_RATE",
    m.PricingRuleType.RATE_REDUCTION_PER_100_MILES: "DEFAULT_RATE_REDUCTION_PER_100_MILES",
}

_VEHICLE_RULE_INDEX = {
    m.PricingRuleType.BASE_FARE: 0,
    m.PricingRuleType.PER_MILE_RATE: 1,
    m.PricingRuleType.RATE_REDUCTION_PER_100_MILES: 2,
}


def _builtin_default(
    rule: m.PricingRuleType, vehicle: Optional[m.VehicleType]
) -> Optional[Decimal]:
    index = _VEHICLE_RULE_INDEX.get(rule)
    if index is not None:
        if vehicle is None or vehicle not in DEFAULT_VEHICLE_RATES:
            return None
        return DEFAULT_VEHICLE_RATES[vehicle][index]
    return DEFAULT_GLOBAL_RATES.get(rule)


@dataclass(frozen=True)
class RateTable:
    """Immutable view over active pricing rules plus their fallbacks.

    Lookup order for ``rule`` x ``vehicle`` (x ``airport``):
      1. active rule for exactly that pair (and airport code)
      2. active rule with no vehicle (system-wide row)
      3. settings-table key for the rule
      4. built-in default
    A pair with no value anywhere yields 0, never an exception.
    """

    rules: Mapping[RuleKey, Decimal] = field(default_factory=dict)
    setting_values: Mapping[str, str] = field(default_factory=dict)

    def get(
        self,
        rule: m.PricingRuleType,
        vehicle: Optional[m.VehicleType] = None,
        *,
        airport_code: Optional[str] = None,
    ) -> Decimal:
        airport = airport_code.upper() if airport_code else None
        candidates: list[RuleKey] = []
        if vehicle is not None:
            candidates.append((rule, vehicle, airport))
        candidates.append((rule, None, airport))
        for key in candidates:
            value = self.rules.get(key)
            if value is not None:
                return value

        setting_key = RULE_SETTING_KEYS.get(rule)
        if setting_key is not None and airport:
            setting_key = f"{setting_key}_{airport}"
        if setting_key is not None:
            raw = self.setting_values.get(setting_key)
            if raw is not None:
                value = settings_store.parse_decimal(raw, Decimal("-1"))
                if value >= 0:
                    return value
                logger.warning("[rates] malformed setting %s=%r ignored", setting_key, raw)

        default = _builtin_default(rule, vehicle)
        if default is not None:
            return default
        logger.warning(
            "[rates] no value for rule=%s vehicle=%s airport=%s, using 0",
            rule.value,
            vehicle.value if vehicle else "-",
            airport or "-",
        )
        return Decimal("0")


async def load_rate_table(session: Optional[AsyncSession] = None) -> RateTable:
    """Read active pricing rules and their settings-table fallbacks in one go."""
    async with settings_store._maybe_session(session) as s:
        rows = await s.execute(
            select(
                m.pricing_rules.rule_type,
                m.pricing_rules.vehicle_type,
                m.pricing_rules.airport_code,
                m.pricing_rules.value,
            )
            .where(m.pricing_rules.is_active.is_(True))
            .order_by(m.pricing_rules.id)
        )
        rules: dict[RuleKey, Decimal] = {}
        for rule_type, vehicle_type, airport_code, value in rows:
            # later rows win for duplicates
            key = (rule_type, vehicle_type, airport_code.upper() if airport_code else None)
            rules[key] = Decimal(str(value))

        setting_rows = await s.execute(
            select(m.settings.key, m.settings.value).where(
                m.settings.key.in_(list(RULE_SETTING_KEYS.values()))
                | m.settings.key.startswith("AIRPORT_FEE_", autoescape=True)
            )
        )
        setting_values = {row.key: row.value for row in setting_rows}
    return RateTable(rules=rules, setting_values=setting_values)
