"""
Scheduler loop for bidding windows, acceptance deadlines and the weekly payout run.

In-memory timers (``services.timers``) fire at the exact deadline; this loop
is the safety net that re-derives overdue work from the database on every tick,
so a restart or a lost timer only delays a transition by one tick.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Optional

from aiogram import Bot
from sqlalchemy import and_, select

from transfer_exchange.db import models as m
from transfer_exchange.db.session import SessionLocal
from transfer_exchange.infra.notify import send_log
from transfer_exchange.infra.structured_logging import (
    MarketplaceEvent,
    log_marketplace_event,
)
from transfer_exchange.services import live_log
from transfer_exchange.services.acceptance_service import (
    expire_offer,
    schedule_acceptance_deadline,
)
from transfer_exchange.services.jobs_service import close_bidding, schedule_window_close
from transfer_exchange.services.payout_service import run_payouts
from transfer_exchange.services.settings_service import load_marketplace_config
from transfer_exchange.services.time_service import ensure_utc, now_utc, to_local

logger = logging.getLogger("marketplace.scheduler")

SWEEP_BATCH = 200


def _sched_log(message: str, *, level: str = "INFO") -> None:
    live_log.push("scheduler", message, level=level)


@dataclass(slots=True)
class TickResult:
    closed: list[int] = field(default_factory=list)
    expired: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)


async def _overdue_windows(session_factory, now: datetime) -> list[int]:
    async with session_factory() as session:
        rows = await session.scalars(
            select(m.jobs.id)
            .where(
                and_(
                    m.jobs.status == m.JobStatus.OPEN_FOR_BIDDING,
                    m.jobs.bidding_window_closes_at <= now,
                )
            )
            .order_by(m.jobs.bidding_window_closes_at, m.jobs.id)
            .limit(SWEEP_BATCH)
        )
        return list(rows)


async def _overdue_offers(session_factory, now: datetime) -> list[tuple[int, int]]:
    async with session_factory() as session:
        rows = await session.execute(
            select(m.jobs.id, m.jobs.current_offered_bid_id)
            .where(
                and_(
                    m.jobs.status == m.JobStatus.PENDING_ACCEPTANCE,
                    m.jobs.current_offered_bid_id.is_not(None),
                    m.jobs.acceptance_deadline <= now,
                )
            )
            .order_by(m.jobs.acceptance_deadline, m.jobs.id)
            .limit(SWEEP_BATCH)
        )
        return [(row.id, row.current_offered_bid_id) for row in rows]


async def tick_once(
    session_factory=SessionLocal,
    *,
    now: Optional[datetime] = None,
    bot: Optional[Bot] = None,
) -> TickResult:
    """Close overdue bidding windows and expire overdue offers.

    Each job runs in its own session; a failure is logged and the sweep
    carries on with the next job.
    """
    now = now or now_utc()
    result = TickResult()

    for job_id in await _overdue_windows(session_factory, now):
        try:
            async with session_factory() as session:
                status = await close_bidding(session, job_id, now=now, bot=bot)
            if status is not None:
                result.closed.append(job_id)
        except Exception as exc:
            result.failed.append(job_id)
            logger.exception("[scheduler] close job=%s failed: %s", job_id, exc)
            _sched_log(f"close job#{job_id} failed: {exc}", level="ERROR")
            log_marketplace_event(
                MarketplaceEvent.ERROR, job_id=job_id, reason=str(exc), level="ERROR"
            )

    for job_id, bid_id in await _overdue_offers(session_factory, now):
        try:
            async with session_factory() as session:
                if await expire_offer(session, job_id=job_id, bid_id=bid_id, now=now, bot=bot):
                    result.expired.append(job_id)
        except Exception as exc:
            result.failed.append(job_id)
            logger.exception("[scheduler] expire job=%s bid=%s failed: %s", job_id, bid_id, exc)
            _sched_log(f"expire job#{job_id} failed: {exc}", level="ERROR")
            log_marketplace_event(
                MarketplaceEvent.ERROR, job_id=job_id, bid_id=bid_id, reason=str(exc), level="ERROR"
            )

    if result.closed or result.expired or result.failed:
        logger.info(
            "[scheduler] tick closed=%s expired=%s failed=%s",
            result.closed,
            result.expired,
            result.failed,
        )
    return result


async def rearm_timers(
    session_factory=SessionLocal,
    *,
    now: Optional[datetime] = None,
    bot: Optional[Bot] = None,
) -> int:
    """Recreate in-memory timers for open windows and outstanding offers."""
    now = now or now_utc()
    async with session_factory() as session:
        rows = (
            await session.execute(
                select(
                    m.jobs.id,
                    m.jobs.status,
                    m.jobs.bidding_window_closes_at,
                    m.jobs.current_offered_bid_id,
                    m.jobs.acceptance_deadline,
                ).where(
                    m.jobs.status.in_(
                        (m.JobStatus.OPEN_FOR_BIDDING, m.JobStatus.PENDING_ACCEPTANCE)
                    )
                )
            )
        ).all()

    armed = 0
    for row in rows:
        if row.status == m.JobStatus.OPEN_FOR_BIDDING:
            schedule_window_close(
                session_factory,
                job_id=row.id,
                closes_at=ensure_utc(row.bidding_window_closes_at),
                bot=bot,
                now=now,
            )
            armed += 1
        elif row.current_offered_bid_id is not None and row.acceptance_deadline is not None:
            schedule_acceptance_deadline(
                session_factory,
                job_id=row.id,
                bid_id=row.current_offered_bid_id,
                deadline=ensure_utc(row.acceptance_deadline),
                bot=bot,
                now=now,
            )
            armed += 1
    logger.info("[scheduler] re-armed %s timer(s)", armed)
    _sched_log(f"re-armed {armed} timer(s)")
    return armed


def payout_run_due(now: datetime, payout_day_of_week: int, last_run: Optional[date]) -> bool:
    """True once per local day that falls on the payout weekday."""
    today = to_local(now).date()
    return today.isoweekday() == payout_day_of_week and last_run != today


async def run_scheduler(
    session_factory=SessionLocal,
    *,
    bot: Optional[Bot] = None,
) -> None:
    await rearm_timers(session_factory, bot=bot)
    await send_log(bot, "Bidding scheduler started")
    _sched_log("scheduler started")

    sleep_for = 30
    last_payout_run: Optional[date] = None
    while True:
        try:
            async with session_factory() as session:
                cfg = await load_marketplace_config(session=session)
            sleep_for = max(1, cfg.scheduler_tick_seconds)
            now = now_utc()
            await tick_once(session_factory, now=now, bot=bot)
            if cfg.payouts_enabled and payout_run_due(now, cfg.payout_day_of_week, last_payout_run):
                async with session_factory() as session:
                    await run_payouts(session, now=now, bot=bot)
                last_payout_run = to_local(now).date()
        except Exception as exc:
            logger.exception("[scheduler] exception: %s", exc)
            _sched_log(f"exception: {exc}", level="ERROR")
        await asyncio.sleep(sleep_for)
