import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from transfer_exchange.services import live_log
from transfer_exchange.services.timers import (
    TimerRegistry,
    acceptance_key,
    window_close_key,
)

UTC = timezone.utc
T0 = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)


def test_timer_keys():
    assert window_close_key(42) == "close-bidding-42"
    assert acceptance_key(7) == "acceptance-7"


@pytest.mark.asyncio
async def test_due_timer_fires_and_frees_its_key():
    timers = TimerRegistry()
    fired = []

    async def callback():
        fired.append("close")

    task = timers.schedule("close-bidding-1", T0 - timedelta(seconds=5), callback, now=T0)
    await task

    assert fired == ["close"]
    assert timers.pending() == []


@pytest.mark.asyncio
async def test_rescheduling_replaces_previous_timer():
    timers = TimerRegistry()
    fired = []

    async def first():
        fired.append("first")

    async def second():
        fired.append("second")

    old = timers.schedule("acceptance-1", T0 + timedelta(hours=1), first, now=T0)
    new = timers.schedule("acceptance-1", T0, second, now=T0)
    await new
    await asyncio.sleep(0)

    assert old.cancelled()
    assert fired == ["second"]


@pytest.mark.asyncio
async def test_cancel_and_shutdown():
    timers = TimerRegistry()

    async def never():
        raise AssertionError("cancelled timer must not run")

    timers.schedule("a", T0 + timedelta(hours=1), never, now=T0)
    timers.schedule("b", T0 + timedelta(hours=2), never, now=T0)
    assert timers.pending() == ["a", "b"]

    assert timers.cancel("a") is True
    assert timers.cancel("a") is False
    assert not timers.is_scheduled("a")

    await timers.shutdown()
    assert timers.pending() == []


@pytest.mark.asyncio
async def test_failing_callback_is_logged_not_raised():
    timers = TimerRegistry()

    async def boom():
        raise RuntimeError("lost connection")

    task = timers.schedule("close-bidding-9", T0, boom, now=T0)
    await task

    entries = live_log.snapshot(source="timers")
    assert entries and entries[-1].level == "ERROR"
    assert "close-bidding-9" in entries[-1].message
