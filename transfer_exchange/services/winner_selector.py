from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from transfer_exchange.db import models as m
from transfer_exchange.services.time_service import ensure_utc


@dataclass(frozen=True, slots=True)
class RankedBid:
    bid_id: int
    operator_id: int
    amount: Decimal
    reputation: float
    submitted_at: datetime

    @property
    def sort_key(self) -> tuple:
        # cheapest first, then best reputation, then earliest; id keeps it total
        return (self.amount, -self.reputation, self.submitted_at, self.bid_id)


def rank_bids(bids: Iterable[RankedBid]) -> list[RankedBid]:
    """Full deterministic ranking; position 0 is offered first."""
    return sorted(bids, key=lambda bid: bid.sort_key)


def fmt_ranking(ranked: Sequence[RankedBid], limit: int = 5) -> str:
    parts = [
        f"#{pos}:bid={item.bid_id} op={item.operator_id} amt={item.amount} rep={item.reputation:.2f}"
        for pos, item in enumerate(ranked[:limit], start=1)
    ]
    if len(ranked) > limit:
        parts.append(f"+{len(ranked) - limit} more")
    return " | ".join(parts) or "-"


async def ranked_bids_for_job(
    session: AsyncSession,
    job_id: int,
    *,
    statuses: Iterable[m.BidStatus] = (m.BidStatus.PENDING,),
) -> list[RankedBid]:
    """Rank a job's bids in the given statuses (withdrawn bids never take part)."""
    wanted = [status for status in statuses if status != m.BidStatus.WITHDRAWN]
    rows = await session.execute(
        select(
            m.bids.id,
            m.bids.operator_id,
            m.bids.bid_amount,
            m.bids.submitted_at,
            m.operators.reputation_score,
        )
        .join(m.operators, m.operators.id == m.bids.operator_id)
        .where(m.bids.job_id == job_id, m.bids.status.in_(wanted))
    )
    return rank_bids(
        RankedBid(
            bid_id=row.id,
            operator_id=row.operator_id,
            amount=Decimal(str(row.bid_amount)),
            reputation=float(row.reputation_score or 0.0),
            submitted_at=ensure_utc(row.submitted_at),
        )
        for row in rows
    )
