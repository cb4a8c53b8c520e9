from decimal import Decimal

import pytest
from sqlalchemy import select, update

from transfer_exchange.db import models as m
from transfer_exchange.errors import ValidationError
from transfer_exchange.services.job_state import (
    JOB_TRANSITIONS,
    TERMINAL_JOB_STATUSES,
    can_advance_payout,
    can_transition_bid,
    can_transition_job,
    ensure_job_transition,
)
from transfer_exchange.services.job_transitions import history_context, transition_job

JS = m.JobStatus
PS = m.PayoutStatus


def test_every_job_status_has_a_transition_entry():
    assert set(JOB_TRANSITIONS) == set(JS)
    for status in TERMINAL_JOB_STATUSES:
        assert JOB_TRANSITIONS[status] == frozenset()


def test_job_transitions():
    assert can_transition_job(JS.OPEN_FOR_BIDDING, JS.BIDDING_CLOSED)
    assert can_transition_job(JS.PENDING_ACCEPTANCE, JS.PENDING_ACCEPTANCE)
    assert can_transition_job(JS.NO_BIDS_RECEIVED, JS.OPEN_FOR_BIDDING)
    assert not can_transition_job(JS.OPEN_FOR_BIDDING, JS.COMPLETED)
    assert not can_transition_job(JS.COMPLETED, JS.CANCELLED)
    with pytest.raises(ValidationError):
        ensure_job_transition(JS.CANCELLED, JS.OPEN_FOR_BIDDING)


def test_won_bid_is_final():
    assert can_transition_bid(m.BidStatus.OFFERED, m.BidStatus.WON)
    assert can_transition_bid(m.BidStatus.DECLINED, m.BidStatus.LOST)
    assert not any(can_transition_bid(m.BidStatus.WON, status) for status in m.BidStatus)


def test_payout_status_moves_one_step_forward():
    assert can_advance_payout(PS.NOT_ELIGIBLE, PS.PENDING)
    assert can_advance_payout(PS.PENDING, PS.PROCESSING)
    assert can_advance_payout(PS.PROCESSING, PS.COMPLETED)
    assert not can_advance_payout(PS.PENDING, PS.COMPLETED)
    assert not can_advance_payout(PS.COMPLETED, PS.PENDING)
    assert not can_advance_payout(PS.PROCESSING, PS.PENDING)


def test_history_context_is_json_friendly(now):
    context = history_context(bid_id=3, amount=Decimal("80.00"), deadline=now, skipped=None)
    assert context == {
        "bid_id": 3,
        "amount": "80.00",
        "deadline": now.isoformat(),
    }


@pytest.mark.asyncio
async def test_transition_writes_history_and_bumps_version(async_session, open_job):
    moved = await transition_job(
        async_session, open_job, JS.BIDDING_CLOSED, reason="window_elapsed"
    )
    await async_session.commit()

    assert moved is True
    assert open_job.status == JS.BIDDING_CLOSED
    assert open_job.version == 2
    reasons = (
        await async_session.scalars(
            select(m.job_status_history.reason).where(m.job_status_history.job_id == open_job.id)
            .order_by(m.job_status_history.id)
        )
    ).all()
    assert reasons == ["booking_paid", "window_elapsed"]


@pytest.mark.asyncio
async def test_stale_transition_is_refused(async_session, open_job):
    """Test: a writer holding an old version loses and sees the fresh row."""
    await async_session.execute(
        update(m.jobs)
        .where(m.jobs.id == open_job.id)
        .values(status=JS.CANCELLED, version=5)
        .execution_options(synchronize_session=False)
    )

    moved = await transition_job(async_session, open_job, JS.BIDDING_CLOSED, reason="window_elapsed")

    assert moved is False
    assert open_job.status == JS.CANCELLED
    assert open_job.version == 5


@pytest.mark.asyncio
async def test_disallowed_transition_raises(async_session, open_job):
    with pytest.raises(ValidationError):
        await transition_job(async_session, open_job, JS.COMPLETED, reason="skip ahead")
