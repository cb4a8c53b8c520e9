from decimal import Decimal

import pytest

from transfer_exchange.db import models as m
from transfer_exchange.services import settings_service
from transfer_exchange.services.settings_service import (
    MarketplaceConfig,
    load_marketplace_config,
    parse_bool,
    parse_decimal,
    parse_int,
)


def test_parsers_fall_back_to_defaults():
    assert parse_int(" 12 ", 1) == 12
    assert parse_int("twelve", 1) == 1
    assert parse_int(None, 3) == 3
    assert parse_decimal("7.5", Decimal("0")) == Decimal("7.5")
    assert parse_decimal("", Decimal("2")) == Decimal("2")
    assert parse_decimal("n/a", Decimal("2")) == Decimal("2")
    assert parse_bool("Yes", False) is True
    assert parse_bool("0", True) is False
    assert parse_bool(None, True) is True


def test_decimal_parser_rejects_non_finite_values():
    assert parse_decimal("NaN", Decimal("25")) == Decimal("25")
    assert parse_decimal("Infinity", Decimal("25")) == Decimal("25")
    assert parse_decimal("-inf", Decimal("25")) == Decimal("25")


def test_config_from_values_uses_defaults_for_missing_keys():
    cfg = MarketplaceConfig.from_values(
        {
            "ACCEPTANCE_WINDOW_MINUTES": "45",
            "MIN_BID_PERCENT": "40",
            "ENABLE_POSTCODE_FILTERING": "false",
            "PAYOUT_DAY_OF_WEEK": "oops",
        }
    )

    assert cfg.acceptance_window_minutes == 45
    assert cfg.min_bid_percent == Decimal("40")
    assert cfg.postcode_filtering is False
    assert cfg.payout_day_of_week == 5
    assert cfg.default_bidding_window_hours == 1
    assert cfg.return_bidding_window_hours == 2
    assert cfg.payout_hold_days == 14
    assert cfg.payout_held_back_count == 2


@pytest.mark.asyncio
async def test_set_value_round_trip(async_session):
    await settings_service.set_value(
        "ACCEPTANCE_WINDOW_MINUTES", 20, value_type="int", description="offer window", session=async_session
    )
    await async_session.commit()

    assert await settings_service.get_int("ACCEPTANCE_WINDOW_MINUTES", 30, session=async_session) == 20
    row = await async_session.get(m.settings, "ACCEPTANCE_WINDOW_MINUTES")
    assert row.value_type == "INT"
    assert row.description == "offer window"

    await settings_service.set_value("ACCEPTANCE_WINDOW_MINUTES", 25, value_type="INT", session=async_session)
    await async_session.commit()
    assert await settings_service.get_int("ACCEPTANCE_WINDOW_MINUTES", 30, session=async_session) == 25


@pytest.mark.asyncio
async def test_typed_getters_default_when_missing(async_session):
    assert await settings_service.get_str("NOPE", "fallback", session=async_session) == "fallback"
    assert await settings_service.get_bool("NOPE", True, session=async_session) is True
    assert await settings_service.get_decimal("NOPE", Decimal("1.5"), session=async_session) == Decimal("1.5")


@pytest.mark.asyncio
async def test_config_cache_is_dropped_on_write(async_session):
    """Test: a settings write is visible to the next config load."""
    first = await load_marketplace_config(session=async_session)
    assert first.reopen_bidding_hours == 24
    assert await load_marketplace_config(session=async_session) is first

    await settings_service.set_value(
        "REOPEN_BIDDING_DEFAULT_HOURS", 12, value_type="INT", session=async_session
    )
    await async_session.commit()

    second = await load_marketplace_config(session=async_session)
    assert second is not first
    assert second.reopen_bidding_hours == 12
