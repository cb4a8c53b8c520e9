"""
Operator side of the exchange: sealed bids and the list of jobs an operator
may bid on.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional

from sqlalchemy import and_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from transfer_exchange.db import models as m
from transfer_exchange.errors import ValidationError
from transfer_exchange.infra.structured_logging import (
    MarketplaceEvent,
    log_marketplace_event,
)
from transfer_exchange.services import live_log
from transfer_exchange.services.job_transitions import job_lock
from transfer_exchange.services.jobs_service import operator_serves
from transfer_exchange.services.settings_service import load_marketplace_config
from transfer_exchange.services.time_service import ensure_utc, now_utc

logger = logging.getLogger("marketplace.bids")

TWO_PLACES = Decimal("0.01")
HUNDRED = Decimal("100")


def _money(value: Decimal) -> Decimal:
    return value.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def _parse_amount(amount) -> Decimal:
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(f"invalid bid amount: {amount!r}") from exc
    if not value.is_finite():
        raise ValidationError(f"invalid bid amount: {amount!r}")
    return _money(value)


def bid_limits(customer_price: Decimal, min_percent: Decimal, max_percent: Decimal) -> tuple[Decimal, Decimal]:
    """(minimum accepted bid, suggested maximum bid) for a customer price."""
    price = Decimal(customer_price)
    return _money(price * min_percent / HUNDRED), _money(price * max_percent / HUNDRED)


async def _approved_operator(session: AsyncSession, operator_id: int) -> m.operators:
    operator = await session.get(m.operators, operator_id)
    if operator is None:
        raise ValidationError(f"operator {operator_id} not found")
    if operator.approval_status != m.OperatorApprovalStatus.APPROVED:
        raise ValidationError(
            f"operator {operator_id} is {operator.approval_status.value}, only approved operators bid"
        )
    return operator


async def _find_bid(session: AsyncSession, job_id: int, operator_id: int) -> Optional[m.bids]:
    return await session.scalar(
        select(m.bids)
        .where(and_(m.bids.job_id == job_id, m.bids.operator_id == operator_id))
        .execution_options(populate_existing=True)
    )


async def submit_bid(
    session: AsyncSession,
    *,
    job_id: int,
    operator_id: int,
    amount,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> m.bids:
    """Place or revise the operator's bid on an open job.

    The amount must be in (0, customer price] and at least MIN_BID_PERCENT of
    the price. A second submission from the same operator updates the existing
    bid (back to PENDING) and keeps its original ``submitted_at``.
    """
    now = now or now_utc()
    value = _parse_amount(amount)
    await _approved_operator(session, operator_id)

    async with job_lock(job_id):
        job = await session.get(m.jobs, job_id, populate_existing=True)
        if job is None:
            raise ValidationError(f"job {job_id} not found")
        if job.status != m.JobStatus.OPEN_FOR_BIDDING:
            raise ValidationError(f"job {job_id} is not open for bidding ({job.status.value})")
        if now >= ensure_utc(job.bidding_window_closes_at):
            raise ValidationError(f"bidding on job {job_id} has closed")

        booking = await session.get(m.bookings, job.booking_id)
        price = Decimal(booking.customer_price)
        cfg = await load_marketplace_config(session=session)
        minimum, _ = bid_limits(price, cfg.min_bid_percent, cfg.max_bid_percent)
        if value <= 0:
            raise ValidationError("bid amount must be positive")
        if value > price:
            raise ValidationError(f"bid amount {value} exceeds the customer price {price}")
        if value < minimum:
            raise ValidationError(f"bid amount {value} is below the minimum {minimum}")

        bid = await _find_bid(session, job_id, operator_id)
        created = bid is None
        if created:
            bid = m.bids(
                job_id=job_id,
                operator_id=operator_id,
                bid_amount=value,
                status=m.BidStatus.PENDING,
                notes=notes,
                submitted_at=now,
            )
            try:
                async with session.begin_nested():
                    session.add(bid)
            except IntegrityError:
                # another worker inserted the same (job, operator) pair first
                created = False
                bid = await _find_bid(session, job_id, operator_id)
                if bid is None:
                    raise
        if not created:
            bid.bid_amount = value
            bid.notes = notes if notes is not None else bid.notes
            bid.status = m.BidStatus.PENDING
            bid.updated_at = now
        await session.commit()

    logger.info(
        "[bids] job=%s op=%s bid=%s amount=%s %s",
        job_id,
        operator_id,
        bid.id,
        value,
        "placed" if created else "revised",
    )
    live_log.push("bids", f"job#{job_id} op#{operator_id} bid £{value}")
    log_marketplace_event(
        MarketplaceEvent.BID_SUBMITTED,
        job_id=job_id,
        bid_id=bid.id,
        operator_id=operator_id,
        amount=value,
        details={"revised": not created},
    )
    return bid


async def withdraw_bid(
    session: AsyncSession,
    *,
    job_id: int,
    operator_id: int,
    now: Optional[datetime] = None,
) -> m.bids:
    now = now or now_utc()
    async with job_lock(job_id):
        job = await session.get(m.jobs, job_id, populate_existing=True)
        bid = await _find_bid(session, job_id, operator_id)
        if job is None or bid is None:
            raise ValidationError(f"operator {operator_id} has no bid on job {job_id}")
        if job.status != m.JobStatus.OPEN_FOR_BIDDING or bid.status != m.BidStatus.PENDING:
            raise ValidationError("only pending bids on open jobs can be withdrawn")
        bid.status = m.BidStatus.WITHDRAWN
        bid.updated_at = now
        await session.commit()

    logger.info("[bids] job=%s op=%s bid=%s withdrawn", job_id, operator_id, bid.id)
    log_marketplace_event(
        MarketplaceEvent.BID_WITHDRAWN, job_id=job_id, bid_id=bid.id, operator_id=operator_id
    )
    return bid


@dataclass(slots=True, frozen=True)
class OperatorJobView:
    job_id: int
    booking_reference: str
    vehicle_type: m.VehicleType
    pickup_postcode: Optional[str]
    dropoff_postcode: Optional[str]
    pickup_at: datetime
    closes_at: datetime
    customer_price: Decimal
    min_bid_amount: Decimal
    max_bid_amount: Decimal
    my_bid_amount: Optional[Decimal] = None
    my_bid_status: Optional[m.BidStatus] = None


async def jobs_visible_to_operator(
    session: AsyncSession,
    operator_id: int,
    *,
    now: Optional[datetime] = None,
) -> list[OperatorJobView]:
    """Open jobs the operator can still bid on, soonest closing first."""
    now = now or now_utc()
    operator = await session.get(m.operators, operator_id)
    if operator is None:
        raise ValidationError(f"operator {operator_id} not found")
    cfg = await load_marketplace_config(session=session)

    rows = (
        await session.execute(
            select(m.jobs, m.bookings)
            .join(m.bookings, m.bookings.id == m.jobs.booking_id)
            .where(
                and_(
                    m.jobs.status == m.JobStatus.OPEN_FOR_BIDDING,
                    m.jobs.bidding_window_closes_at > now,
                )
            )
            .order_by(m.jobs.bidding_window_closes_at, m.jobs.id)
        )
    ).all()
    own_bids = {
        bid.job_id: bid
        for bid in (
            await session.scalars(select(m.bids).where(m.bids.operator_id == operator_id))
        ).all()
    }

    views: list[OperatorJobView] = []
    for job, booking in rows:
        if cfg.postcode_filtering and not operator_serves(operator, booking.pickup_postcode):
            continue
        minimum, maximum = bid_limits(
            booking.customer_price, cfg.min_bid_percent, cfg.max_bid_percent
        )
        mine = own_bids.get(job.id)
        views.append(
            OperatorJobView(
                job_id=job.id,
                booking_reference=booking.reference,
                vehicle_type=booking.vehicle_type,
                pickup_postcode=booking.pickup_postcode,
                dropoff_postcode=booking.dropoff_postcode,
                pickup_at=ensure_utc(booking.pickup_at),
                closes_at=ensure_utc(job.bidding_window_closes_at),
                customer_price=Decimal(booking.customer_price),
                min_bid_amount=minimum,
                max_bid_amount=maximum,
                my_bid_amount=Decimal(mine.bid_amount) if mine else None,
                my_bid_status=mine.status if mine else None,
            )
        )
    return views
