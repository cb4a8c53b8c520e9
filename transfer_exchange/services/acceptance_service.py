"""
Offer / accept / decline / timeout cycle after bidding closes.

The cheapest bid (see ``winner_selector``) is offered to its operator with an
acceptance deadline. A decline or a missed deadline moves the offer to the next
bid in the ranking; when nobody is left the job is escalated to admins with
``ALL_OPERATORS_REJECTED``. At most one bid per job is ever WON.

Callers of the underscored helpers must already hold ``job_lock(job.id)``.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
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
from transfer_exchange.services.job_transitions import (
    history_context,
    job_lock,
    load_job,
    set_booking_status,
    transition_job,
)
from transfer_exchange.services.push_notifications import (
    NotificationEvent,
    notify_admin,
    notify_operator,
)
from transfer_exchange.services.settings_service import (
    MarketplaceConfig,
    load_marketplace_config,
)
from transfer_exchange.services.time_service import ensure_utc, now_utc
from transfer_exchange.services.timers import acceptance_key, registry
from transfer_exchange.services.winner_selector import (
    RankedBid,
    fmt_ranking,
    ranked_bids_for_job,
)

logger = logging.getLogger("marketplace.acceptance")

TWO_PLACES = Decimal("0.01")


def _acc_log(message: str, *, level: str = "INFO") -> None:
    live_log.push("acceptance", message, level=level)


@dataclass(slots=True)
class OfferOutcome:
    offered: Optional[RankedBid] = None
    escalation: Optional[m.EscalationReason] = None
    stale: bool = False


def platform_margin(customer_price: Decimal, amount: Decimal) -> Decimal:
    return (Decimal(customer_price) - Decimal(amount)).quantize(TWO_PLACES, ROUND_HALF_UP)


def schedule_acceptance_deadline(
    session_factory,
    *,
    job_id: int,
    bid_id: int,
    deadline: datetime,
    bot: Optional[Bot] = None,
    now: Optional[datetime] = None,
) -> asyncio.Task:
    """Arm the timer that expires the offer on *bid_id* at *deadline*."""

    async def _fire() -> None:
        async with session_factory() as session:
            await expire_offer(session, job_id=job_id, bid_id=bid_id, bot=bot)

    return registry.schedule(acceptance_key(bid_id), deadline, _fire, now=now)


async def _offer_next(
    session: AsyncSession,
    job: m.jobs,
    *,
    now: datetime,
    cfg: MarketplaceConfig,
    bot: Optional[Bot] = None,
    reason: str,
    actor_type: m.ActorType = m.ActorType.SYSTEM,
    actor_id: Optional[int] = None,
) -> OfferOutcome:
    """Offer the job to the best remaining PENDING bid or escalate."""
    ranked = await ranked_bids_for_job(session, job.id)
    previous_bid_id = job.current_offered_bid_id

    if not ranked:
        escalation = (
            m.EscalationReason.NO_BIDS_RECEIVED
            if job.acceptance_attempt_count == 0
            else m.EscalationReason.ALL_OPERATORS_REJECTED
        )
        moved = await transition_job(
            session,
            job,
            m.JobStatus.NO_BIDS_RECEIVED,
            reason=escalation.value.lower(),
            actor_type=actor_type,
            actor_id=actor_id,
            context=history_context(
                trigger=reason,
                previous_bid_id=previous_bid_id,
                attempts=job.acceptance_attempt_count,
            ),
            values=dict(
                escalation_reason=escalation,
                escalated_at=now,
                current_offered_bid_id=None,
                acceptance_deadline=None,
            ),
        )
        if not moved:
            return OfferOutcome(stale=True)
        logger.warning(
            "[acceptance] job=%s escalated reason=%s attempts=%s",
            job.id,
            escalation.value,
            job.acceptance_attempt_count,
        )
        _acc_log(f"job#{job.id} escalated: {escalation.value}", level="WARNING")
        log_marketplace_event(
            MarketplaceEvent.ESCALATION,
            job_id=job.id,
            booking_id=job.booking_id,
            to_status=m.JobStatus.NO_BIDS_RECEIVED,
            reason=escalation.value,
            details={"attempts": job.acceptance_attempt_count},
            level="WARNING",
        )
        return OfferOutcome(escalation=escalation)

    top = ranked[0]
    deadline = now + timedelta(minutes=cfg.acceptance_window_minutes)
    moved = await transition_job(
        session,
        job,
        m.JobStatus.PENDING_ACCEPTANCE,
        reason=reason,
        actor_type=actor_type,
        actor_id=actor_id,
        context=history_context(
            bid_id=top.bid_id,
            operator_id=top.operator_id,
            previous_bid_id=previous_bid_id,
            deadline=deadline,
            ranking=fmt_ranking(ranked),
        ),
        values=dict(
            current_offered_bid_id=top.bid_id,
            acceptance_deadline=deadline,
            acceptance_attempt_count=job.acceptance_attempt_count + 1,
        ),
    )
    if not moved:
        return OfferOutcome(stale=True)

    await session.execute(
        update(m.bids)
        .where(and_(m.bids.id == top.bid_id, m.bids.status == m.BidStatus.PENDING))
        .values(status=m.BidStatus.OFFERED, offered_at=now)
        .execution_options(synchronize_session=False)
    )
    await notify_operator(
        session,
        operator_id=top.operator_id,
        event=NotificationEvent.OFFER_RECEIVED,
        job_id=job.id,
        amount=top.amount,
        deadline=deadline.isoformat(timespec="minutes"),
    )
    schedule_acceptance_deadline(
        sessionmaker_for(session),
        job_id=job.id,
        bid_id=top.bid_id,
        deadline=deadline,
        bot=bot,
        now=now,
    )
    logger.info(
        "[acceptance] job=%s offered bid=%s op=%s amount=%s until=%s ranking=%s",
        job.id,
        top.bid_id,
        top.operator_id,
        top.amount,
        deadline.isoformat(),
        fmt_ranking(ranked),
    )
    _acc_log(f"job#{job.id} offered to op#{top.operator_id} (bid#{top.bid_id}) until {deadline:%H:%M}")
    log_marketplace_event(
        MarketplaceEvent.OFFER_SENT,
        job_id=job.id,
        bid_id=top.bid_id,
        operator_id=top.operator_id,
        amount=top.amount,
        deadline=deadline,
        details={"attempt": job.acceptance_attempt_count, "candidates": len(ranked)},
    )
    return OfferOutcome(offered=top)


async def _retire_current_offer(
    session: AsyncSession,
    job: m.jobs,
    bid: m.bids,
    *,
    now: datetime,
    cfg: MarketplaceConfig,
    bot: Optional[Bot],
    reason: str,
    actor_type: m.ActorType = m.ActorType.SYSTEM,
    actor_id: Optional[int] = None,
) -> OfferOutcome:
    """Mark the offered bid DECLINED and pass the job to the next bid."""
    registry.cancel(acceptance_key(bid.id))
    await session.execute(
        update(m.bids)
        .where(and_(m.bids.id == bid.id, m.bids.status == m.BidStatus.OFFERED))
        .values(status=m.BidStatus.DECLINED, responded_at=now)
        .execution_options(synchronize_session=False)
    )
    if reason != "operator_declined":
        await notify_operator(
            session,
            operator_id=bid.operator_id,
            event=NotificationEvent.OFFER_EXPIRED,
            job_id=job.id,
        )
    log_marketplace_event(
        MarketplaceEvent.OFFER_DECLINED
        if reason == "operator_declined"
        else MarketplaceEvent.OFFER_EXPIRED,
        job_id=job.id,
        bid_id=bid.id,
        operator_id=bid.operator_id,
        reason=reason,
    )
    return await _offer_next(
        session,
        job,
        now=now,
        cfg=cfg,
        bot=bot,
        reason=f"reoffer_after_{reason}",
        actor_type=actor_type,
        actor_id=actor_id,
    )


async def send_escalation_alert(
    session: AsyncSession, job: m.jobs, outcome: OfferOutcome, bot: Optional[Bot]
) -> None:
    if outcome.escalation is None:
        return
    reference = await session.scalar(
        select(m.bookings.reference).where(m.bookings.id == job.booking_id)
    )
    if outcome.escalation == m.EscalationReason.NO_BIDS_RECEIVED:
        await notify_admin(
            bot,
            event=NotificationEvent.ESCALATION_NO_BIDS,
            job_id=job.id,
            booking_reference=reference,
        )
    else:
        await notify_admin(
            bot,
            event=NotificationEvent.ESCALATION_ALL_REJECTED,
            job_id=job.id,
            booking_reference=reference,
            attempts=job.acceptance_attempt_count,
        )


async def assign_job(
    session: AsyncSession,
    job: m.jobs,
    *,
    bid_id: int,
    operator_id: int,
    amount: Decimal,
    now: datetime,
    reason: str,
    actor_type: m.ActorType,
    actor_id: Optional[int] = None,
    winner_event: NotificationEvent = NotificationEvent.JOB_WON,
) -> bool:
    """Award the job to *bid_id*; every other live or declined bid becomes LOST."""
    booking = await session.get(m.bookings, job.booking_id)
    margin = platform_margin(booking.customer_price, amount)
    if margin < 0:
        raise ValidationError("bid amount exceeds the customer price")

    previous_offer = job.current_offered_bid_id
    moved = await transition_job(
        session,
        job,
        m.JobStatus.ASSIGNED,
        reason=reason,
        actor_type=actor_type,
        actor_id=actor_id,
        context=history_context(
            bid_id=bid_id,
            operator_id=operator_id,
            amount=str(amount),
            margin=str(margin),
        ),
        values=dict(
            assigned_operator_id=operator_id,
            winning_bid_id=bid_id,
            winning_bid_amount=amount,
            platform_margin=margin,
            current_offered_bid_id=None,
            acceptance_deadline=None,
            escalation_reason=None,
        ),
    )
    if not moved:
        return False
    if previous_offer is not None:
        registry.cancel(acceptance_key(previous_offer))

    losers = (
        await session.scalars(
            select(m.bids.operator_id).where(
                and_(
                    m.bids.job_id == job.id,
                    m.bids.id != bid_id,
                    m.bids.status.in_(
                        (m.BidStatus.PENDING, m.BidStatus.OFFERED, m.BidStatus.DECLINED)
                    ),
                )
            )
        )
    ).all()
    await session.execute(
        update(m.bids)
        .where(m.bids.id == bid_id)
        .values(status=m.BidStatus.WON, responded_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    await session.execute(
        update(m.bids)
        .where(
            and_(
                m.bids.job_id == job.id,
                m.bids.id != bid_id,
                m.bids.status.notin_((m.BidStatus.WITHDRAWN, m.BidStatus.LOST)),
            )
        )
        .values(status=m.BidStatus.LOST, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    await set_booking_status(session, job.booking_id, m.BookingStatus.ASSIGNED)

    await notify_operator(
        session, operator_id=operator_id, event=winner_event, job_id=job.id, amount=amount
    )
    for loser_id in losers:
        await notify_operator(
            session, operator_id=loser_id, event=NotificationEvent.JOB_LOST, job_id=job.id
        )
    return True


async def accept_offer(
    session: AsyncSession,
    *,
    job_id: int,
    operator_id: int,
    now: Optional[datetime] = None,
    bot: Optional[Bot] = None,
) -> m.jobs:
    """Operator accepts the offer currently standing on their bid.

    Raises ``ConflictError`` when the offer is not (or no longer) theirs,
    including a response that arrives after the deadline. A late response
    whose timer has not fired yet retires the offer first, so the job still
    moves on to the next bid.
    """
    now = now or now_utc()
    async with job_lock(job_id):
        job = await load_job(session, job_id)
        if job is None:
            raise ValidationError(f"job {job_id} not found")
        bid = await session.scalar(
            select(m.bids)
            .where(and_(m.bids.job_id == job_id, m.bids.operator_id == operator_id))
            .execution_options(populate_existing=True)
        )
        if bid is None:
            raise ValidationError(f"operator {operator_id} has no bid on job {job_id}")

        if (
            job.status != m.JobStatus.PENDING_ACCEPTANCE
            or job.current_offered_bid_id != bid.id
            or bid.status != m.BidStatus.OFFERED
        ):
            logger.info(
                "[acceptance] job=%s accept by op=%s rejected: status=%s offered=%s bid=%s",
                job_id,
                operator_id,
                job.status.value,
                job.current_offered_bid_id,
                bid.status.value,
            )
            log_marketplace_event(
                MarketplaceEvent.LATE_ACCEPT_REJECTED,
                job_id=job_id,
                bid_id=bid.id,
                operator_id=operator_id,
                reason="offer_not_current",
            )
            raise ConflictError("this offer is no longer available")

        deadline = ensure_utc(job.acceptance_deadline)
        if deadline is not None and now > deadline:
            cfg = await load_marketplace_config(session=session)
            outcome = await _retire_current_offer(
                session, job, bid, now=now, cfg=cfg, bot=bot, reason="acceptance_timeout"
            )
            await session.commit()
            log_marketplace_event(
                MarketplaceEvent.LATE_ACCEPT_REJECTED,
                job_id=job_id,
                bid_id=bid.id,
                operator_id=operator_id,
                deadline=deadline,
                reason="deadline_passed",
            )
            _acc_log(f"job#{job_id} late accept from op#{operator_id} rejected", level="WARNING")
            await send_escalation_alert(session, job, outcome, bot)
            raise ConflictError("the acceptance window has closed")

        registry.cancel(acceptance_key(bid.id))
        assigned = await assign_job(
            session,
            job,
            bid_id=bid.id,
            operator_id=operator_id,
            amount=Decimal(bid.bid_amount),
            now=now,
            reason="offer_accepted",
            actor_type=m.ActorType.OPERATOR,
            actor_id=operator_id,
        )
        if not assigned:
            await session.rollback()
            raise ConflictError("job changed while accepting; try again")
        await session.commit()

    logger.info(
        "[acceptance] job=%s accepted by op=%s amount=%s margin=%s",
        job.id,
        operator_id,
        job.winning_bid_amount,
        job.platform_margin,
    )
    _acc_log(f"job#{job.id} accepted by op#{operator_id} for £{job.winning_bid_amount}")
    log_marketplace_event(
        MarketplaceEvent.OFFER_ACCEPTED,
        job_id=job.id,
        bid_id=job.winning_bid_id,
        operator_id=operator_id,
        booking_id=job.booking_id,
        to_status=m.JobStatus.ASSIGNED,
        amount=job.winning_bid_amount,
    )
    return job


async def decline_offer(
    session: AsyncSession,
    *,
    job_id: int,
    operator_id: int,
    now: Optional[datetime] = None,
    bot: Optional[Bot] = None,
) -> m.jobs:
    """Operator turns down the standing offer; the next bid gets it at once."""
    now = now or now_utc()
    async with job_lock(job_id):
        job = await load_job(session, job_id)
        if job is None:
            raise ValidationError(f"job {job_id} not found")
        bid = await session.scalar(
            select(m.bids)
            .where(and_(m.bids.job_id == job_id, m.bids.operator_id == operator_id))
            .execution_options(populate_existing=True)
        )
        if (
            bid is None
            or job.status != m.JobStatus.PENDING_ACCEPTANCE
            or job.current_offered_bid_id != bid.id
            or bid.status != m.BidStatus.OFFERED
        ):
            raise ConflictError("this offer is no longer available")

        cfg = await load_marketplace_config(session=session)
        outcome = await _retire_current_offer(
            session,
            job,
            bid,
            now=now,
            cfg=cfg,
            bot=bot,
            reason="operator_declined",
            actor_type=m.ActorType.OPERATOR,
            actor_id=operator_id,
        )
        await session.commit()

    _acc_log(f"job#{job_id} declined by op#{operator_id}")
    await send_escalation_alert(session, job, outcome, bot)
    return job


async def expire_offer(
    session: AsyncSession,
    *,
    job_id: int,
    bid_id: int,
    now: Optional[datetime] = None,
    bot: Optional[Bot] = None,
) -> bool:
    """Deadline handler for the offer on *bid_id*.

    Returns False without touching anything when the offer was already
    answered, replaced or the job moved on.
    """
    now = now or now_utc()
    async with job_lock(job_id):
        job = await load_job(session, job_id)
        if (
            job is None
            or job.status != m.JobStatus.PENDING_ACCEPTANCE
            or job.current_offered_bid_id != bid_id
        ):
            logger.info("[acceptance] job=%s stale deadline for bid=%s ignored", job_id, bid_id)
            return False
        deadline = ensure_utc(job.acceptance_deadline)
        if deadline is not None and now < deadline:
            logger.debug("[acceptance] job=%s bid=%s deadline not reached yet", job_id, bid_id)
            return False
        bid = await session.get(m.bids, bid_id, populate_existing=True)
        if bid is None or bid.status != m.BidStatus.OFFERED:
            return False

        cfg = await load_marketplace_config(session=session)
        outcome = await _retire_current_offer(
            session, job, bid, now=now, cfg=cfg, bot=bot, reason="acceptance_timeout"
        )
        await session.commit()

    logger.info(
        "[acceptance] job=%s offer on bid=%s expired; next=%s",
        job_id,
        bid_id,
        outcome.offered.bid_id if outcome.offered else None,
    )
    _acc_log(f"job#{job_id} offer to op#{bid.operator_id} expired")
    await send_escalation_alert(session, job, outcome, bot)
    return True


async def offer_after_close(
    session: AsyncSession,
    job: m.jobs,
    *,
    now: datetime,
    bot: Optional[Bot] = None,
) -> OfferOutcome:
    """First offer right after bidding closed (caller holds the job lock)."""
    cfg = await load_marketplace_config(session=session)
    return await _offer_next(session, job, now=now, cfg=cfg, bot=bot, reason="bidding_closed")
