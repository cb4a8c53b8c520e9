from __future__ import annotations

import re
from datetime import date, datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from transfer_exchange.config import settings

UTC = timezone.utc
_MONTH_DAY_RE = re.compile(r"^(?P<month>\d{1,2})-(?P<day>\d{1,2})$")


def now_utc() -> datetime:
    return datetime.now(UTC)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive values (sqlite hands them back without tzinfo)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def resolve_timezone(zone: Optional[str | ZoneInfo] = None) -> ZoneInfo:
    if isinstance(zone, ZoneInfo):
        return zone
    name = zone or settings.timezone
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo("UTC")


def to_local(value: datetime, zone: Optional[str | ZoneInfo] = None) -> datetime:
    return ensure_utc(value).astimezone(resolve_timezone(zone))


def parse_month_day(value: str, *, default: Optional[tuple[int, int]] = None) -> tuple[int, int]:
    """'12-24' -> (12, 24)."""
    match = _MONTH_DAY_RE.fullmatch((value or "").strip())
    if not match:
        if default is not None:
            return default
        raise ValueError(f"Invalid MM-DD value: {value!r}")
    month = int(match.group("month"))
    day = int(match.group("day"))
    if not (1 <= month <= 12 and 1 <= day <= 31):
        if default is not None:
            return default
        raise ValueError(f"Invalid month/day bounds for value: {value!r}")
    return month, day


def next_weekday_on_or_after(day: date, iso_weekday: int) -> date:
    """First date >= *day* falling on *iso_weekday* (1=Mon .. 7=Sun)."""
    iso_weekday = min(7, max(1, int(iso_weekday)))
    delta = (iso_weekday - day.isoweekday()) % 7
    return day + timedelta(days=delta)
