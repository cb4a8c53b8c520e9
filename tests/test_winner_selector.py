import random
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from transfer_exchange.db import models as m
from transfer_exchange.services.winner_selector import (
    RankedBid,
    fmt_ranking,
    rank_bids,
    ranked_bids_for_job,
)

from tests import factories

UTC = timezone.utc
T0 = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)


def _bid(bid_id, amount, reputation, minutes=0):
    return RankedBid(
        bid_id=bid_id,
        operator_id=100 + bid_id,
        amount=Decimal(amount),
        reputation=reputation,
        submitted_at=T0 + timedelta(minutes=minutes),
    )


def test_cheapest_bid_ranks_first():
    ranked = rank_bids([_bid(1, "90.00", 5.0), _bid(2, "75.00", 3.0), _bid(3, "80.00", 4.0)])
    assert [bid.bid_id for bid in ranked] == [2, 3, 1]


def test_equal_amounts_prefer_higher_reputation():
    """£80 @ 4.5 vs £80 @ 4.8: the 4.8 operator wins."""
    ranked = rank_bids([_bid(1, "80.00", 4.5), _bid(2, "80.00", 4.8)])
    assert ranked[0].bid_id == 2
    assert ranked[0].reputation == 4.8


def test_equal_amount_and_reputation_prefer_earliest_submission():
    ranked = rank_bids([_bid(1, "80.00", 4.5, minutes=10), _bid(2, "80.00", 4.5, minutes=3)])
    assert [bid.bid_id for bid in ranked] == [2, 1]


def test_ranking_is_deterministic_for_any_input_order():
    bids = [
        _bid(1, "80.00", 4.5, minutes=5),
        _bid(2, "80.00", 4.5, minutes=5),
        _bid(3, "79.99", 1.0, minutes=9),
        _bid(4, "80.00", 4.9, minutes=1),
        _bid(5, "95.00", 5.0, minutes=0),
    ]
    expected = [bid.bid_id for bid in rank_bids(bids)]

    shuffler = random.Random(7)
    for _ in range(20):
        shuffled = bids[:]
        shuffler.shuffle(shuffled)
        assert [bid.bid_id for bid in rank_bids(shuffled)] == expected
    assert expected == [3, 4, 1, 2, 5]


def test_fmt_ranking_truncates():
    ranked = rank_bids([_bid(i, f"{50 + i}.00", 4.0) for i in range(1, 8)])
    text = fmt_ranking(ranked, limit=2)
    assert text.startswith("#1:bid=1 ")
    assert text.endswith("+5 more")
    assert fmt_ranking([]) == "-"


@pytest.mark.asyncio
async def test_ranked_bids_for_job_skips_non_pending(async_session, open_job, approved_operators, now):
    """Test: only PENDING bids are ranked, with reputation read from the operator."""
    alpha, bravo, charlie = approved_operators
    async_session.add_all(
        [
            m.bids(job_id=open_job.id, operator_id=alpha.id, bid_amount=Decimal("80.00"),
                   status=m.BidStatus.PENDING, submitted_at=now),
            m.bids(job_id=open_job.id, operator_id=bravo.id, bid_amount=Decimal("80.00"),
                   status=m.BidStatus.PENDING, submitted_at=now + timedelta(minutes=5)),
            m.bids(job_id=open_job.id, operator_id=charlie.id, bid_amount=Decimal("60.00"),
                   status=m.BidStatus.WITHDRAWN, submitted_at=now),
        ]
    )
    await async_session.commit()

    ranked = await ranked_bids_for_job(async_session, open_job.id)

    assert [bid.operator_id for bid in ranked] == [bravo.id, alpha.id]
    assert ranked[0].reputation == 4.8
    assert ranked[0].submitted_at.tzinfo is not None


@pytest.mark.asyncio
async def test_ranked_bids_for_job_never_includes_withdrawn(async_session, open_job, now):
    operator = factories.operator(reputation_score=4.0)
    async_session.add(operator)
    await async_session.flush()
    async_session.add(
        m.bids(job_id=open_job.id, operator_id=operator.id, bid_amount=Decimal("70.00"),
               status=m.BidStatus.WITHDRAWN, submitted_at=now)
    )
    await async_session.commit()

    ranked = await ranked_bids_for_job(
        async_session, open_job.id, statuses=(m.BidStatus.PENDING, m.BidStatus.WITHDRAWN)
    )
    assert ranked == []
