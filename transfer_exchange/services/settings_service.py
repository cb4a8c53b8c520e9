"""Business tunables stored in the ``settings`` table.

Values are strings with a declared ``value_type``; every reader supplies a
default so a missing or malformed row never breaks a caller.
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Iterable, Mapping, Optional

from sqlalchemy import insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from transfer_exchange.config import settings as env_settings
from transfer_exchange.db import models as m
from transfer_exchange.db.session import SessionLocal

logger = logging.getLogger("marketplace.settings")

_VALUE_TYPES = {"INT", "DECIMAL", "BOOL", "STR"}
_TRUE_VALUES = {"1", "true", "yes", "on"}

_CONFIG_CACHE: Optional["MarketplaceConfig"] = None
_CONFIG_CACHE_TIMESTAMP: Optional[datetime] = None


@asynccontextmanager
async def _maybe_session(session: Optional[AsyncSession]):
    if session is not None:
        yield session
        return
    async with SessionLocal() as s:
        yield s


def _normalize_value_type(value_type: str) -> str:
    normalized = (value_type or "STR").strip().upper()
    return normalized if normalized in _VALUE_TYPES else "STR"


def _serialize_value(value: object, value_type: str) -> str:
    if value_type == "BOOL":
        return "true" if bool(value) else "false"
    if value is None:
        return ""
    return str(value)


def parse_int(raw: Optional[str], default: int) -> int:
    if raw is None:
        return default
    try:
        return int(str(raw).strip())
    except (TypeError, ValueError):
        return default


def parse_decimal(raw: Optional[str], default: Decimal) -> Decimal:
    if raw is None or not str(raw).strip():
        return default
    try:
        value = Decimal(str(raw).strip())
    except (InvalidOperation, ValueError):
        return default
    # NaN and Infinity parse but cannot be compared or priced
    return value if value.is_finite() else default


def parse_bool(raw: Optional[str], default: bool) -> bool:
    if raw is None or not str(raw).strip():
        return default
    return str(raw).strip().lower() in _TRUE_VALUES


async def get_values(
    keys: Iterable[str], *, session: Optional[AsyncSession] = None
) -> dict[str, str]:
    keys = list(keys)
    if not keys:
        return {}
    async with _maybe_session(session) as s:
        rows = await s.execute(
            select(m.settings.key, m.settings.value).where(m.settings.key.in_(keys))
        )
        return {row.key: row.value for row in rows}


async def get_int(key: str, default: int, *, session: Optional[AsyncSession] = None) -> int:
    values = await get_values([key], session=session)
    return parse_int(values.get(key), default)


async def get_decimal(
    key: str, default: Decimal, *, session: Optional[AsyncSession] = None
) -> Decimal:
    values = await get_values([key], session=session)
    return parse_decimal(values.get(key), default)


async def get_bool(key: str, default: bool, *, session: Optional[AsyncSession] = None) -> bool:
    values = await get_values([key], session=session)
    return parse_bool(values.get(key), default)


async def get_str(key: str, default: str, *, session: Optional[AsyncSession] = None) -> str:
    values = await get_values([key], session=session)
    value = values.get(key)
    return value if value not in (None, "") else default


async def set_value(
    key: str,
    value: object,
    *,
    value_type: str = "STR",
    description: Optional[str] = None,
    session: Optional[AsyncSession] = None,
) -> None:
    """Upsert one setting and drop the cached MarketplaceConfig."""
    normalized = _normalize_value_type(value_type)
    payload = _serialize_value(value, normalized)

    async with _maybe_session(session) as s:
        existing = await s.execute(select(m.settings.key).where(m.settings.key == key))
        if existing.scalar_one_or_none() is not None:
            values = {"value": payload, "value_type": normalized}
            if description is not None:
                values["description"] = description
            await s.execute(update(m.settings).where(m.settings.key == key).values(**values))
        else:
            await s.execute(
                insert(m.settings).values(
                    key=key, value=payload, value_type=normalized, description=description
                )
            )
        if session is None:
            await s.commit()
        else:
            await s.flush()
    invalidate_config_cache()
    logger.info("[settings] %s=%s (%s)", key, payload, normalized)


@dataclass(frozen=True)
class MarketplaceConfig:
    """Snapshot of the tunables with safe defaults."""
    default_bidding_window_hours: int = 1
    return_bidding_window_hours: int = 2
    reopen_bidding_hours: int = 24
    acceptance_window_minutes: int = 30
    min_bid_percent: Decimal = Decimal("50")
    max_bid_percent: Decimal = Decimal("75")
    postcode_filtering: bool = True
    night_start_hour: int = 22
    night_end_hour: int = 6
    peak_morning_start: int = 7
    peak_morning_end: int = 9
    peak_evening_start: int = 17
    peak_evening_end: int = 19
    peak_weekdays_only: bool = True
    christmas_start: str = "12-24"
    christmas_end: str = "12-26"
    new_year_eve: str = "12-31"
    new_year_day: str = "01-01"
    payouts_enabled: bool = True
    payout_hold_days: int = 14
    payout_held_back_count: int = 2
    payout_day_of_week: int = 5
    scheduler_tick_seconds: int = 30

    @classmethod
    def from_values(cls, values: Mapping[str, str]) -> "MarketplaceConfig":
        d = cls()
        return cls(
            default_bidding_window_hours=parse_int(
                values.get("DEFAULT_BIDDING_WINDOW_HOURS"), d.default_bidding_window_hours
            ),
            return_bidding_window_hours=parse_int(
                values.get("RETURN_BIDDING_WINDOW_HOURS"), d.return_bidding_window_hours
            ),
            reopen_bidding_hours=parse_int(
                values.get("REOPEN_BIDDING_DEFAULT_HOURS"), d.reopen_bidding_hours
            ),
            acceptance_window_minutes=parse_int(
                values.get("ACCEPTANCE_WINDOW_MINUTES"), d.acceptance_window_minutes
            ),
            min_bid_percent=parse_decimal(values.get("MIN_BID_PERCENT"), d.min_bid_percent),
            max_bid_percent=parse_decimal(values.get("MAX_BID_PERCENT"), d.max_bid_percent),
            postcode_filtering=parse_bool(
                values.get("ENABLE_POSTCODE_FILTERING"), d.postcode_filtering
            ),
            night_start_hour=parse_int(values.get("NIGHT_HOURS_START"), d.night_start_hour),
            night_end_hour=parse_int(values.get("NIGHT_HOURS_END"), d.night_end_hour),
            peak_morning_start=parse_int(values.get("PEAK_MORNING_START"), d.peak_morning_start),
            peak_morning_end=parse_int(values.get("PEAK_MORNING_END"), d.peak_morning_end),
            peak_evening_start=parse_int(values.get("PEAK_EVENING_START"), d.peak_evening_start),
            peak_evening_end=parse_int(values.get("PEAK_EVENING_END"), d.peak_evening_end),
            peak_weekdays_only=parse_bool(values.get("PEAK_WEEKDAYS_ONLY"), d.peak_weekdays_only),
            christmas_start=values.get("CHRISTMAS_START") or d.christmas_start,
            christmas_end=values.get("CHRISTMAS_END") or d.christmas_end,
            new_year_eve=values.get("NEW_YEAR_EVE") or d.new_year_eve,
            new_year_day=values.get("NEW_YEAR_DAY") or d.new_year_day,
            payouts_enabled=parse_bool(values.get("PAYOUTS_ENABLED"), d.payouts_enabled),
            payout_hold_days=parse_int(
                values.get("INITIAL_PAYOUT_DELAY_DAYS"), d.payout_hold_days
            ),
            payout_held_back_count=parse_int(
                values.get("JOBS_HELD_FOR_NEXT_PAYOUT"), d.payout_held_back_count
            ),
            payout_day_of_week=parse_int(values.get("PAYOUT_DAY_OF_WEEK"), d.payout_day_of_week),
            scheduler_tick_seconds=parse_int(
                values.get("SCHEDULER_TICK_SECONDS"), env_settings.scheduler_tick_seconds
            ),
        )


CONFIG_KEYS = (
    "DEFAULT_BIDDING_WINDOW_HOURS",
    "RETURN_BIDDING_WINDOW_HOURS",
    "REOPEN_BIDDING_DEFAULT_HOURS",
    "ACCEPTANCE_WINDOW_MINUTES",
    "MIN_BID_PERCENT",
    "MAX_BID_PERCENT",
    "ENABLE_POSTCODE_FILTERING",
    "NIGHT_HOURS_START",
    "NIGHT_HOURS_END",
    "PEAK_MORNING_START",
    "PEAK_MORNING_END",
    "PEAK_EVENING_START",
    "PEAK_EVENING_END",
    "PEAK_WEEKDAYS_ONLY",
    "CHRISTMAS_START",
    "CHRISTMAS_END",
    "NEW_YEAR_EVE",
    "NEW_YEAR_DAY",
    "PAYOUTS_ENABLED",
    "INITIAL_PAYOUT_DELAY_DAYS",
    "JOBS_HELD_FOR_NEXT_PAYOUT",
    "PAYOUT_DAY_OF_WEEK",
    "SCHEDULER_TICK_SECONDS",
)


def invalidate_config_cache() -> None:
    global _CONFIG_CACHE, _CONFIG_CACHE_TIMESTAMP
    _CONFIG_CACHE = None
    _CONFIG_CACHE_TIMESTAMP = None


async def load_marketplace_config(
    session: Optional[AsyncSession] = None,
) -> MarketplaceConfig:
    """Load the tunables, cached for ``CONFIG_CACHE_TTL_SECONDS``."""
    global _CONFIG_CACHE, _CONFIG_CACHE_TIMESTAMP

    now = datetime.now(timezone.utc)
    if (
        _CONFIG_CACHE is not None
        and _CONFIG_CACHE_TIMESTAMP is not None
        and (now - _CONFIG_CACHE_TIMESTAMP).total_seconds() < env_settings.config_cache_ttl_seconds
    ):
        return _CONFIG_CACHE

    values = await get_values(CONFIG_KEYS, session=session)
    config = MarketplaceConfig.from_values(values)

    _CONFIG_CACHE = config
    _CONFIG_CACHE_TIMESTAMP = now
    logger.debug("[settings] marketplace config reloaded from DB and cached")
    return config
