"""
Job lifecycle: creation on payment, bidding window close, reopen, manual
assignment, start, completion and cancellation.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from aiogram import Bot
from sqlalchemy import and_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from transfer_exchange.db import models as m
from transfer_exchange.db.session import sessionmaker_for
from transfer_exchange.errors import ConflictError, ValidationError
from transfer_exchange.infra.structured_logging import (
    MarketplaceEvent,
    log_marketplace_event,
)
from transfer_exchange.services import live_log
from transfer_exchange.services.acceptance_service import (
    assign_job,
    offer_after_close,
    send_escalation_alert,
)
from transfer_exchange.services.job_state import (
    PRE_ASSIGNMENT_STATUSES,
    can_advance_payout,
)
from transfer_exchange.services.job_transitions import (
    history_context,
    job_lock,
    load_job,
    load_job_for_booking,
    record_history,
    release_job_lock,
    set_booking_status,
    transition_job,
)
from transfer_exchange.services.push_notifications import (
    NotificationEvent,
    notify_operator,
)
from transfer_exchange.services.settings_service import (
    MarketplaceConfig,
    load_marketplace_config,
)
from transfer_exchange.services.time_service import ensure_utc, now_utc
from transfer_exchange.services.timers import acceptance_key, registry, window_close_key

logger = logging.getLogger("marketplace.jobs")

TWO_PLACES = Decimal("0.01")
# timers may wake a hair early; anything this close to the deadline counts as due
CLOSE_TOLERANCE = timedelta(seconds=1)


def _jobs_log(message: str, *, level: str = "INFO") -> None:
    live_log.push("jobs", message, level=level)


def postcode_prefix(postcode: Optional[str]) -> str:
    return (postcode or "").replace(" ", "").upper()[:3]


def operator_serves(operator: m.operators, pickup_postcode: Optional[str]) -> bool:
    """Postcode prefix match; operators without service areas see everything."""
    prefixes = {postcode_prefix(code) for code in (operator.service_postcodes or []) if code}
    if not prefixes or not pickup_postcode:
        return True
    return postcode_prefix(pickup_postcode) in prefixes


def bidding_window_hours(
    journey_type: m.JourneyType, cfg: MarketplaceConfig, override: Optional[int] = None
) -> int:
    if override is not None:
        if override <= 0:
            raise ValidationError("bidding window must be at least one hour")
        return int(override)
    if journey_type == m.JourneyType.RETURN:
        return cfg.return_bidding_window_hours
    return cfg.default_bidding_window_hours


def schedule_window_close(
    session_factory,
    *,
    job_id: int,
    closes_at: datetime,
    bot: Optional[Bot] = None,
    now: Optional[datetime] = None,
) -> asyncio.Task:
    """Arm the timer that closes bidding on *job_id* at *closes_at*."""

    async def _fire() -> None:
        async with session_factory() as session:
            await close_bidding(session, job_id, bot=bot)

    return registry.schedule(window_close_key(job_id), ensure_utc(closes_at), _fire, now=now)


async def _announce_job(
    session: AsyncSession,
    job: m.jobs,
    booking: m.bookings,
    cfg: MarketplaceConfig,
) -> int:
    operators = (
        await session.scalars(
            select(m.operators).where(
                m.operators.approval_status == m.OperatorApprovalStatus.APPROVED
            )
        )
    ).all()
    sent = 0
    for operator in operators:
        if cfg.postcode_filtering and not operator_serves(operator, booking.pickup_postcode):
            continue
        queued = await notify_operator(
            session,
            operator_id=operator.id,
            event=NotificationEvent.NEW_JOB,
            job_id=job.id,
            pickup=booking.pickup_postcode or booking.pickup_address or "-",
            pickup_at=ensure_utc(booking.pickup_at).isoformat(timespec="minutes"),
            vehicle=booking.vehicle_type.value,
            closes_at=ensure_utc(job.bidding_window_closes_at).isoformat(timespec="minutes"),
        )
        sent += int(queued)
    return sent


async def _spawn_job(
    session: AsyncSession,
    booking: m.bookings,
    *,
    now: datetime,
    window_hours: Optional[int] = None,
    urgency: Optional[m.JourneyType] = None,
) -> m.jobs:
    existing = await load_job_for_booking(session, booking.id)
    if existing is not None:
        raise ValidationError(f"booking {booking.reference} already has job {existing.id}")
    cfg = await load_marketplace_config(session=session)
    hours = bidding_window_hours(urgency or booking.journey_type, cfg, window_hours)
    job = m.jobs(
        booking_id=booking.id,
        status=m.JobStatus.OPEN_FOR_BIDDING,
        bidding_window_hours=hours,
        bidding_window_opens_at=now,
        bidding_window_closes_at=now + timedelta(hours=hours),
        acceptance_attempt_count=0,
        payout_status=m.PayoutStatus.NOT_ELIGIBLE,
        version=1,
    )
    session.add(job)
    await session.flush()
    await record_history(
        session,
        job_id=job.id,
        from_status=None,
        to_status=m.JobStatus.OPEN_FOR_BIDDING,
        reason="booking_paid",
        context=history_context(booking_id=booking.id, window_hours=hours),
    )
    announced = await _announce_job(session, job, booking, cfg)
    logger.info(
        "[jobs] job=%s created for booking=%s window=%sh closes=%s announced=%s",
        job.id,
        booking.id,
        hours,
        job.bidding_window_closes_at.isoformat(),
        announced,
    )
    return job


def _after_create(session: AsyncSession, job: m.jobs, booking: m.bookings, now: datetime, bot) -> None:
    schedule_window_close(
        sessionmaker_for(session),
        job_id=job.id,
        closes_at=job.bidding_window_closes_at,
        bot=bot,
        now=now,
    )
    _jobs_log(f"job#{job.id} open for bidding until {ensure_utc(job.bidding_window_closes_at):%H:%M}")
    log_marketplace_event(
        MarketplaceEvent.JOB_CREATED,
        job_id=job.id,
        booking_id=booking.id,
        to_status=m.JobStatus.OPEN_FOR_BIDDING,
        deadline=job.bidding_window_closes_at,
        details={"window_hours": job.bidding_window_hours},
    )


async def create_job_for_booking(
    session: AsyncSession,
    booking_id: int,
    *,
    urgency: Optional[m.JourneyType] = None,
    window_hours: Optional[int] = None,
    now: Optional[datetime] = None,
    bot: Optional[Bot] = None,
) -> m.jobs:
    """Open a job for a paid booking.

    The bidding window comes from ``window_hours`` when given, else from the
    journey type (``urgency`` overrides the booking's own): return legs get
    RETURN_BIDDING_WINDOW_HOURS, everything else DEFAULT_BIDDING_WINDOW_HOURS.
    """
    now = now or now_utc()
    booking = await session.get(m.bookings, booking_id)
    if booking is None:
        raise ValidationError(f"booking {booking_id} not found")
    if booking.status != m.BookingStatus.PAID:
        raise ValidationError(f"booking {booking.reference} is not paid ({booking.status.value})")
    job = await _spawn_job(session, booking, now=now, window_hours=window_hours, urgency=urgency)
    await session.commit()
    _after_create(session, job, booking, now, bot)
    return job


async def mark_booking_paid(
    session: AsyncSession,
    booking_id: int,
    *,
    now: Optional[datetime] = None,
    bot: Optional[Bot] = None,
) -> m.jobs:
    """Payment confirmation: booking becomes PAID and its job opens for bidding."""
    now = now or now_utc()
    booking = await session.get(m.bookings, booking_id, populate_existing=True)
    if booking is None:
        raise ValidationError(f"booking {booking_id} not found")
    if booking.status != m.BookingStatus.PENDING_PAYMENT:
        raise ValidationError(f"booking {booking.reference} is {booking.status.value}")
    booking.status = m.BookingStatus.PAID
    booking.paid_at = now
    await session.flush()
    job = await _spawn_job(session, booking, now=now)
    await session.commit()
    _after_create(session, job, booking, now, bot)
    return job


async def close_bidding(
    session: AsyncSession,
    job_id: int,
    *,
    now: Optional[datetime] = None,
    bot: Optional[Bot] = None,
    early: bool = False,
    actor_type: m.ActorType = m.ActorType.SYSTEM,
    actor_id: Optional[int] = None,
) -> Optional[m.JobStatus]:
    """Close the bidding window and hand the job to the acceptance cycle.

    Idempotent: returns None (and changes nothing) unless the job is still
    OPEN_FOR_BIDDING. A scheduled close that arrives before ``closes_at`` is
    ignored too; ``early=True`` is for admins closing ahead of time.
    """
    now = now or now_utc()
    async with job_lock(job_id):
        job = await load_job(session, job_id)
        if job is None or job.status != m.JobStatus.OPEN_FOR_BIDDING:
            logger.info(
                "[jobs] job=%s close ignored (status=%s)",
                job_id,
                job.status.value if job else None,
            )
            return None
        closes_at = ensure_utc(job.bidding_window_closes_at)
        if not early and now + CLOSE_TOLERANCE < closes_at:
            logger.info("[jobs] job=%s close ignored, window open until %s", job_id, closes_at)
            return None
        registry.cancel(window_close_key(job_id))

        first_bid = await session.scalar(
            select(m.bids.id)
            .where(and_(m.bids.job_id == job.id, m.bids.status == m.BidStatus.PENDING))
            .limit(1)
        )
        moved = await transition_job(
            session,
            job,
            m.JobStatus.BIDDING_CLOSED,
            reason="closed_early" if early else "window_elapsed",
            actor_type=actor_type,
            actor_id=actor_id,
            context=history_context(closes_at=closes_at, has_bids=first_bid is not None),
        )
        if not moved:
            await session.rollback()
            return None
        outcome = await offer_after_close(session, job, now=now, bot=bot)
        await session.commit()

    _jobs_log(f"job#{job_id} bidding closed -> {job.status.value}")
    log_marketplace_event(
        MarketplaceEvent.BIDDING_CLOSED,
        job_id=job_id,
        booking_id=job.booking_id,
        from_status=m.JobStatus.OPEN_FOR_BIDDING,
        to_status=job.status,
        details={"early": early},
    )
    await send_escalation_alert(session, job, outcome, bot)
    return job.status


async def reopen_bidding(
    session: AsyncSession,
    job_id: int,
    *,
    admin_id: Optional[int] = None,
    hours: Optional[int] = None,
    now: Optional[datetime] = None,
    bot: Optional[Bot] = None,
) -> m.jobs:
    """Give an escalated job a fresh bidding window (REOPEN_BIDDING_DEFAULT_HOURS by default)."""
    now = now or now_utc()
    async with job_lock(job_id):
        job = await load_job(session, job_id)
        if job is None:
            raise ValidationError(f"job {job_id} not found")
        if job.status != m.JobStatus.NO_BIDS_RECEIVED:
            raise ValidationError(f"job {job_id} is {job.status.value}, only escalated jobs reopen")
        cfg = await load_marketplace_config(session=session)
        window = int(hours) if hours is not None else cfg.reopen_bidding_hours
        if window <= 0:
            raise ValidationError("bidding window must be at least one hour")
        closes_at = now + timedelta(hours=window)
        moved = await transition_job(
            session,
            job,
            m.JobStatus.OPEN_FOR_BIDDING,
            reason="reopened",
            actor_type=m.ActorType.ADMIN,
            actor_id=admin_id,
            context=history_context(
                previous_escalation=job.escalation_reason, window_hours=window
            ),
            values=dict(
                bidding_window_hours=window,
                bidding_window_opens_at=now,
                bidding_window_closes_at=closes_at,
                escalation_reason=None,
                escalated_at=None,
                acceptance_attempt_count=0,
                current_offered_bid_id=None,
                acceptance_deadline=None,
            ),
        )
        if not moved:
            await session.rollback()
            raise ConflictError(f"job {job_id} changed while reopening")
        await session.commit()

    schedule_window_close(
        sessionmaker_for(session), job_id=job.id, closes_at=closes_at, bot=bot, now=now
    )
    _jobs_log(f"job#{job.id} reopened for {window}h by admin#{admin_id}")
    log_marketplace_event(
        MarketplaceEvent.BIDDING_REOPENED,
        job_id=job.id,
        booking_id=job.booking_id,
        to_status=m.JobStatus.OPEN_FOR_BIDDING,
        deadline=closes_at,
    )
    return job


async def manual_assign(
    session: AsyncSession,
    job_id: int,
    operator_id: int,
    *,
    admin_id: Optional[int] = None,
    amount: Optional[Decimal] = None,
    now: Optional[datetime] = None,
) -> m.jobs:
    """Admin override: award the job to *operator_id* from any pre-assignment status.

    Without ``amount`` the operator's existing bid amount is used. Pending
    timers for the job are cancelled.
    """
    now = now or now_utc()
    async with job_lock(job_id):
        job = await load_job(session, job_id)
        if job is None:
            raise ValidationError(f"job {job_id} not found")
        if job.status not in PRE_ASSIGNMENT_STATUSES:
            raise ValidationError(f"job {job_id} is {job.status.value} and cannot be reassigned")
        operator = await session.get(m.operators, operator_id)
        if operator is None or operator.approval_status != m.OperatorApprovalStatus.APPROVED:
            raise ValidationError(f"operator {operator_id} is not approved")
        booking = await session.get(m.bookings, job.booking_id)

        bid = await session.scalar(
            select(m.bids)
            .where(and_(m.bids.job_id == job_id, m.bids.operator_id == operator_id))
            .execution_options(populate_existing=True)
        )
        if amount is None:
            if bid is None:
                raise ValidationError("amount is required when the operator has not bid")
            amount = Decimal(bid.bid_amount)
        amount = Decimal(str(amount)).quantize(TWO_PLACES, ROUND_HALF_UP)
        if amount <= 0 or amount > Decimal(booking.customer_price):
            raise ValidationError(
                f"amount must be between 0.01 and the customer price {booking.customer_price}"
            )

        if bid is None:
            bid = m.bids(
                job_id=job_id,
                operator_id=operator_id,
                bid_amount=amount,
                status=m.BidStatus.PENDING,
                notes="manual assignment",
                submitted_at=now,
            )
            session.add(bid)
        else:
            bid.bid_amount = amount
            bid.updated_at = now
        await session.flush()

        previous_offer = job.current_offered_bid_id
        assigned = await assign_job(
            session,
            job,
            bid_id=bid.id,
            operator_id=operator_id,
            amount=amount,
            now=now,
            reason="manual_assign",
            actor_type=m.ActorType.ADMIN,
            actor_id=admin_id,
            winner_event=NotificationEvent.JOB_ASSIGNED_MANUALLY,
        )
        if not assigned:
            await session.rollback()
            raise ConflictError(f"job {job_id} changed while assigning")
        registry.cancel(window_close_key(job_id))
        if previous_offer is not None:
            registry.cancel(acceptance_key(previous_offer))
        await session.commit()

    _jobs_log(f"job#{job_id} manually assigned to op#{operator_id} for £{amount}")
    log_marketplace_event(
        MarketplaceEvent.MANUAL_ASSIGN,
        job_id=job_id,
        bid_id=bid.id,
        operator_id=operator_id,
        booking_id=job.booking_id,
        to_status=m.JobStatus.ASSIGNED,
        amount=amount,
        details={"admin_id": admin_id},
    )
    return job


async def start_job(
    session: AsyncSession,
    job_id: int,
    *,
    operator_id: int,
    now: Optional[datetime] = None,
) -> m.jobs:
    now = now or now_utc()
    async with job_lock(job_id):
        job = await load_job(session, job_id)
        if job is None:
            raise ValidationError(f"job {job_id} not found")
        if job.status != m.JobStatus.ASSIGNED or job.assigned_operator_id != operator_id:
            raise ValidationError(f"job {job_id} is not assigned to operator {operator_id}")
        moved = await transition_job(
            session,
            job,
            m.JobStatus.IN_PROGRESS,
            reason="journey_started",
            actor_type=m.ActorType.OPERATOR,
            actor_id=operator_id,
            values=dict(started_at=now),
        )
        if not moved:
            await session.rollback()
            raise ConflictError(f"job {job_id} changed while starting")
        await set_booking_status(session, job.booking_id, m.BookingStatus.IN_PROGRESS)
        await session.commit()

    log_marketplace_event(
        MarketplaceEvent.JOB_STARTED,
        job_id=job_id,
        operator_id=operator_id,
        to_status=m.JobStatus.IN_PROGRESS,
    )
    return job


async def complete_job(
    session: AsyncSession,
    job_id: int,
    *,
    operator_id: Optional[int] = None,
    admin_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> m.jobs:
    """Finish the journey; the job's payout becomes PENDING from here on."""
    now = now or now_utc()
    async with job_lock(job_id):
        job = await load_job(session, job_id)
        if job is None:
            raise ValidationError(f"job {job_id} not found")
        if job.status != m.JobStatus.IN_PROGRESS:
            raise ValidationError(f"job {job_id} is {job.status.value}, not in progress")
        if operator_id is not None and job.assigned_operator_id != operator_id:
            raise ValidationError(f"job {job_id} is not assigned to operator {operator_id}")
        if not can_advance_payout(job.payout_status, m.PayoutStatus.PENDING):
            raise ValidationError(f"job {job_id} payout is already {job.payout_status.value}")
        if admin_id is not None:
            actor_type, actor_id = m.ActorType.ADMIN, admin_id
        else:
            actor_type, actor_id = m.ActorType.OPERATOR, job.assigned_operator_id
        moved = await transition_job(
            session,
            job,
            m.JobStatus.COMPLETED,
            reason="journey_completed",
            actor_type=actor_type,
            actor_id=actor_id,
            values=dict(completed_at=now, payout_status=m.PayoutStatus.PENDING),
        )
        if not moved:
            await session.rollback()
            raise ConflictError(f"job {job_id} changed while completing")
        await set_booking_status(session, job.booking_id, m.BookingStatus.COMPLETED)
        await session.commit()
    release_job_lock(job_id)

    _jobs_log(f"job#{job_id} completed by op#{job.assigned_operator_id}")
    log_marketplace_event(
        MarketplaceEvent.JOB_COMPLETED,
        job_id=job_id,
        operator_id=job.assigned_operator_id,
        to_status=m.JobStatus.COMPLETED,
        amount=job.winning_bid_amount,
    )
    return job


async def cancel_booking(
    session: AsyncSession,
    booking_id: int,
    *,
    reason: str,
    admin_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> m.bookings:
    """Cancel a booking and, with it, its job; live bids become LOST."""
    now = now or now_utc()
    booking = await session.get(m.bookings, booking_id, populate_existing=True)
    if booking is None:
        raise ValidationError(f"booking {booking_id} not found")
    if booking.status in (
        m.BookingStatus.COMPLETED,
        m.BookingStatus.CANCELLED,
        m.BookingStatus.REFUNDED,
    ):
        raise ValidationError(f"booking {booking.reference} is {booking.status.value}")

    job = await load_job_for_booking(session, booking_id)
    if job is None:
        booking.status = m.BookingStatus.CANCELLED
        booking.cancelled_at = now
        booking.cancellation_reason = reason
        await session.commit()
        return booking

    job_id = job.id
    async with job_lock(job_id):
        job = await load_job(session, job_id)
        if job.status == m.JobStatus.COMPLETED:
            raise ValidationError(f"job {job_id} is already completed")
        registry.cancel(window_close_key(job_id))
        if job.current_offered_bid_id is not None:
            registry.cancel(acceptance_key(job.current_offered_bid_id))

        affected = set(
            (
                await session.scalars(
                    select(m.bids.operator_id).where(
                        and_(
                            m.bids.job_id == job_id,
                            m.bids.status.in_((m.BidStatus.PENDING, m.BidStatus.OFFERED)),
                        )
                    )
                )
            ).all()
        )
        if job.assigned_operator_id is not None:
            affected.add(job.assigned_operator_id)

        if job.status != m.JobStatus.CANCELLED:
            previous = job.status
            moved = await transition_job(
                session,
                job,
                m.JobStatus.CANCELLED,
                reason="booking_cancelled",
                actor_type=m.ActorType.ADMIN if admin_id is not None else m.ActorType.SYSTEM,
                actor_id=admin_id,
                context=history_context(note=reason),
                values=dict(
                    cancelled_at=now,
                    current_offered_bid_id=None,
                    acceptance_deadline=None,
                ),
            )
            if not moved:
                await session.rollback()
                raise ConflictError(f"job {job_id} changed while cancelling")
            await session.execute(
                update(m.bids)
                .where(
                    and_(
                        m.bids.job_id == job_id,
                        m.bids.status.in_((m.BidStatus.PENDING, m.BidStatus.OFFERED)),
                    )
                )
                .values(status=m.BidStatus.LOST, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            for operator_id in sorted(affected):
                await notify_operator(
                    session,
                    operator_id=operator_id,
                    event=NotificationEvent.JOB_CANCELLED,
                    job_id=job_id,
                    reason=reason,
                )
            logger.info(
                "[jobs] job=%s cancelled from %s: %s", job_id, previous.value, reason
            )

        booking.status = m.BookingStatus.CANCELLED
        booking.cancelled_at = now
        booking.cancellation_reason = reason
        await session.commit()
    release_job_lock(job_id)

    _jobs_log(f"booking {booking.reference} cancelled: {reason}")
    log_marketplace_event(
        MarketplaceEvent.JOB_CANCELLED,
        job_id=job_id,
        booking_id=booking_id,
        to_status=m.JobStatus.CANCELLED,
        reason=reason,
    )
    return booking
