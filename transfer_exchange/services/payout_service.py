"""
Operator payouts.

Completed jobs carry ``payout_status`` PENDING until paid. For each operator
the unpaid jobs split three ways (oldest first by ``completed_at``):

* HELD_BACK: the N most recently completed, whatever their age;
* ELIGIBLE: the rest that completed at least ``hold_days`` ago;
* IN_HOLD: the rest, with the days left until they mature.

A payout run moves ELIGIBLE jobs of operators with bank details to
PROCESSING; ``complete_payout`` confirms the transfer and writes the ledger
row. Payout status never moves backwards.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Iterable, Optional, Sequence

from aiogram import Bot
from sqlalchemy import and_, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from transfer_exchange.db import models as m
from transfer_exchange.errors import ValidationError
from transfer_exchange.infra.structured_logging import (
    MarketplaceEvent,
    log_marketplace_event,
)
from transfer_exchange.services import live_log
from transfer_exchange.services.push_notifications import (
    NotificationEvent,
    notify_admin,
    notify_operator,
)
from transfer_exchange.services.settings_service import (
    MarketplaceConfig,
    load_marketplace_config,
)
from transfer_exchange.services.time_service import (
    ensure_utc,
    next_weekday_on_or_after,
    now_utc,
    to_local,
)

logger = logging.getLogger("marketplace.payouts")

ZERO = Decimal("0.00")
MISSING_BANK_DETAILS = "Missing bank details"


@dataclass(slots=True, frozen=True)
class PayoutJob:
    job_id: int
    amount: Decimal
    completed_at: datetime


@dataclass(slots=True, frozen=True)
class HeldJob:
    job: PayoutJob
    days_remaining: int


@dataclass(slots=True)
class PayoutPartition:
    eligible: list[PayoutJob] = field(default_factory=list)
    in_hold: list[HeldJob] = field(default_factory=list)
    held_back: list[PayoutJob] = field(default_factory=list)

    @property
    def eligible_total(self) -> Decimal:
        return sum((job.amount for job in self.eligible), ZERO)

    @property
    def job_ids(self) -> set[int]:
        return (
            {job.job_id for job in self.eligible}
            | {held.job.job_id for held in self.in_hold}
            | {job.job_id for job in self.held_back}
        )


def partition_payout_jobs(
    jobs: Iterable[PayoutJob],
    *,
    now: datetime,
    hold_days: int,
    held_back_count: int,
) -> PayoutPartition:
    ordered = sorted(jobs, key=lambda job: (ensure_utc(job.completed_at), job.job_id))
    held_back_count = max(0, int(held_back_count))
    split = max(0, len(ordered) - held_back_count)
    older, newest = ordered[:split], ordered[split:]

    partition = PayoutPartition(held_back=list(newest))
    cutoff = ensure_utc(now) - timedelta(days=hold_days)
    for job in older:
        completed_at = ensure_utc(job.completed_at)
        if completed_at <= cutoff:
            partition.eligible.append(job)
        else:
            remaining = (completed_at - cutoff).total_seconds() / 86400
            partition.in_hold.append(HeldJob(job=job, days_remaining=max(1, math.ceil(remaining))))
    return partition


async def unpaid_jobs_for_operator(session: AsyncSession, operator_id: int) -> list[PayoutJob]:
    """COMPLETED jobs still waiting for payment (PROCESSING ones are excluded)."""
    rows = await session.execute(
        select(m.jobs.id, m.jobs.winning_bid_amount, m.jobs.completed_at).where(
            and_(
                m.jobs.assigned_operator_id == operator_id,
                m.jobs.status == m.JobStatus.COMPLETED,
                m.jobs.payout_status == m.PayoutStatus.PENDING,
                m.jobs.completed_at.is_not(None),
            )
        )
    )
    return [
        PayoutJob(
            job_id=row.id,
            amount=Decimal(str(row.winning_bid_amount or 0)),
            completed_at=ensure_utc(row.completed_at),
        )
        for row in rows
    ]


async def get_operator_payout_partition(
    session: AsyncSession,
    operator_id: int,
    *,
    now: Optional[datetime] = None,
    cfg: Optional[MarketplaceConfig] = None,
) -> PayoutPartition:
    now = now or now_utc()
    cfg = cfg or await load_marketplace_config(session=session)
    return partition_payout_jobs(
        await unpaid_jobs_for_operator(session, operator_id),
        now=now,
        hold_days=cfg.payout_hold_days,
        held_back_count=cfg.payout_held_back_count,
    )


@dataclass(slots=True)
class OperatorPayout:
    operator_id: int
    company_name: str
    job_ids: list[int]
    total: Decimal


@dataclass(slots=True)
class SkippedOperator:
    operator_id: int
    company_name: str
    reason: str


@dataclass(slots=True)
class PayoutRunSummary:
    enabled: bool = True
    paid: list[OperatorPayout] = field(default_factory=list)
    skipped: list[SkippedOperator] = field(default_factory=list)

    @property
    def total(self) -> Decimal:
        return sum((item.total for item in self.paid), ZERO)


def _fmt_skipped(skipped: Sequence[SkippedOperator]) -> str:
    if not skipped:
        return "none"
    return ", ".join(f"{item.company_name} ({item.reason})" for item in skipped)


async def run_payouts(
    session: AsyncSession,
    *,
    now: Optional[datetime] = None,
    bot: Optional[Bot] = None,
) -> PayoutRunSummary:
    """Move every ELIGIBLE job to PROCESSING, operator by operator."""
    now = now or now_utc()
    cfg = await load_marketplace_config(session=session)
    if not cfg.payouts_enabled:
        logger.info("[payouts] run skipped: payouts disabled")
        live_log.push("payouts", "payout run skipped (disabled)", level="WARNING")
        return PayoutRunSummary(enabled=False)

    summary = PayoutRunSummary()
    operators = (
        await session.scalars(
            select(m.operators)
            .where(m.operators.approval_status == m.OperatorApprovalStatus.APPROVED)
            .order_by(m.operators.id)
        )
    ).all()
    for operator in operators:
        if not operator.has_bank_details:
            summary.skipped.append(
                SkippedOperator(operator.id, operator.company_name, MISSING_BANK_DETAILS)
            )
            logger.warning("[payouts] op=%s skipped: %s", operator.id, MISSING_BANK_DETAILS)
            continue
        partition = await get_operator_payout_partition(session, operator.id, now=now, cfg=cfg)
        if not partition.eligible:
            continue

        job_ids = [job.job_id for job in partition.eligible]
        try:
            async with session.begin_nested():
                result = await session.execute(
                    update(m.jobs)
                    .where(
                        and_(
                            m.jobs.id.in_(job_ids),
                            m.jobs.assigned_operator_id == operator.id,
                            m.jobs.payout_status == m.PayoutStatus.PENDING,
                        )
                    )
                    .values(payout_status=m.PayoutStatus.PROCESSING)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != len(job_ids):
                    raise ValidationError(
                        f"payout jobs for operator {operator.id} changed during the run"
                    )
        except ValidationError as exc:
            logger.warning("[payouts] op=%s skipped: %s", operator.id, exc)
            summary.skipped.append(SkippedOperator(operator.id, operator.company_name, str(exc)))
            continue

        payout = OperatorPayout(
            operator_id=operator.id,
            company_name=operator.company_name,
            job_ids=job_ids,
            total=partition.eligible_total,
        )
        summary.paid.append(payout)
        await notify_operator(
            session,
            operator_id=operator.id,
            event=NotificationEvent.PAYOUT_PROCESSING,
            amount=payout.total,
            count=len(job_ids),
        )
        logger.info(
            "[payouts] op=%s jobs=%s total=%s -> PROCESSING", operator.id, job_ids, payout.total
        )
    await session.commit()

    live_log.push(
        "payouts",
        f"payout run: {len(summary.paid)} paid, total £{summary.total}, {len(summary.skipped)} skipped",
    )
    log_marketplace_event(
        MarketplaceEvent.PAYOUT_RUN,
        amount=summary.total,
        details={
            "paid": {item.operator_id: item.job_ids for item in summary.paid},
            "skipped": {item.operator_id: item.reason for item in summary.skipped},
        },
    )
    await notify_admin(
        bot,
        event=NotificationEvent.PAYOUT_RUN_SUMMARY,
        paid_count=len(summary.paid),
        total=summary.total,
        skipped=_fmt_skipped(summary.skipped),
    )
    return summary


async def complete_payout(
    session: AsyncSession,
    *,
    operator_id: int,
    job_ids: Sequence[int],
    admin_user_id: Optional[int] = None,
    bank_reference: Optional[str] = None,
    now: Optional[datetime] = None,
) -> m.payout_transactions:
    """Confirm a bank transfer: PROCESSING jobs become COMPLETED and a ledger row is written."""
    now = now or now_utc()
    wanted = sorted(set(int(job_id) for job_id in job_ids))
    if not wanted:
        raise ValidationError("no jobs given")
    rows = (
        await session.execute(
            select(m.jobs.id, m.jobs.winning_bid_amount).where(
                and_(
                    m.jobs.id.in_(wanted),
                    m.jobs.assigned_operator_id == operator_id,
                    m.jobs.payout_status == m.PayoutStatus.PROCESSING,
                )
            )
        )
    ).all()
    found = {row.id for row in rows}
    if found != set(wanted):
        missing = sorted(set(wanted) - found)
        raise ValidationError(
            f"jobs {missing} are not processing payouts for operator {operator_id}"
        )
    total = sum((Decimal(str(row.winning_bid_amount or 0)) for row in rows), ZERO)

    transaction = m.payout_transactions(
        operator_id=operator_id,
        amount=total,
        job_ids=wanted,
        status=m.TransactionStatus.COMPLETED,
        bank_reference=bank_reference,
        admin_user_id=admin_user_id,
        completed_at=now,
    )
    session.add(transaction)
    await session.flush()
    await session.execute(
        update(m.jobs)
        .where(
            and_(m.jobs.id.in_(wanted), m.jobs.payout_status == m.PayoutStatus.PROCESSING)
        )
        .values(payout_status=m.PayoutStatus.COMPLETED, payout_transaction_id=transaction.id)
        .execution_options(synchronize_session=False)
    )
    await notify_operator(
        session,
        operator_id=operator_id,
        event=NotificationEvent.PAYOUT_COMPLETED,
        amount=total,
        bank_reference=bank_reference or "-",
    )
    await session.commit()

    logger.info(
        "[payouts] op=%s payout tx=%s jobs=%s total=%s completed",
        operator_id,
        transaction.id,
        wanted,
        total,
    )
    live_log.push("payouts", f"op#{operator_id} paid £{total} ref={bank_reference or '-'}")
    log_marketplace_event(
        MarketplaceEvent.PAYOUT_COMPLETED,
        operator_id=operator_id,
        amount=total,
        details={"job_ids": wanted, "transaction_id": transaction.id},
    )
    return transaction


@dataclass(slots=True)
class EarningsSummary:
    operator_id: int
    pending_total: Decimal
    processing_total: Decimal
    completed_total: Decimal
    partition: PayoutPartition
    next_payout_date: date
    next_payout_amount: Decimal


def next_payout_date(now: datetime, cfg: MarketplaceConfig, zone=None) -> date:
    """Next configured payout weekday, today included."""
    return next_weekday_on_or_after(to_local(now, zone).date(), cfg.payout_day_of_week)


async def earnings_summary(
    session: AsyncSession,
    operator_id: int,
    *,
    now: Optional[datetime] = None,
) -> EarningsSummary:
    """Totals per payout status plus what the next payout run should pay."""
    now = now or now_utc()
    operator = await session.get(m.operators, operator_id)
    if operator is None:
        raise ValidationError(f"operator {operator_id} not found")
    cfg = await load_marketplace_config(session=session)

    totals = {
        status: Decimal(str(amount or 0))
        for status, amount in (
            await session.execute(
                select(m.jobs.payout_status, func.sum(m.jobs.winning_bid_amount))
                .where(
                    and_(
                        m.jobs.assigned_operator_id == operator_id,
                        m.jobs.status == m.JobStatus.COMPLETED,
                    )
                )
                .group_by(m.jobs.payout_status)
            )
        ).all()
    }
    partition = await get_operator_payout_partition(session, operator_id, now=now, cfg=cfg)

    payout_day = next_payout_date(now, cfg)
    days_ahead = (payout_day - to_local(now).date()).days
    # what the run on payout_day would see, same rules applied at that moment
    forecast = partition_payout_jobs(
        await unpaid_jobs_for_operator(session, operator_id),
        now=now + timedelta(days=days_ahead),
        hold_days=cfg.payout_hold_days,
        held_back_count=cfg.payout_held_back_count,
    )
    return EarningsSummary(
        operator_id=operator_id,
        pending_total=totals.get(m.PayoutStatus.PENDING, ZERO).quantize(Decimal("0.01")),
        processing_total=totals.get(m.PayoutStatus.PROCESSING, ZERO).quantize(Decimal("0.01")),
        completed_total=totals.get(m.PayoutStatus.COMPLETED, ZERO).quantize(Decimal("0.01")),
        partition=partition,
        next_payout_date=payout_day,
        next_payout_amount=forecast.eligible_total if operator.has_bank_details else ZERO,
    )
