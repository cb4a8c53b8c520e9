"""Allowed transitions for job, bid and payout statuses."""
from __future__ import annotations

from typing import Mapping

from transfer_exchange.db import models as m
from transfer_exchange.errors import ValidationError

JS = m.JobStatus
BS = m.BidStatus
PS = m.PayoutStatus

JOB_TRANSITIONS: Mapping[m.JobStatus, frozenset[m.JobStatus]] = {
    JS.OPEN_FOR_BIDDING: frozenset({JS.BIDDING_CLOSED, JS.ASSIGNED, JS.CANCELLED}),
    JS.BIDDING_CLOSED: frozenset(
        {JS.PENDING_ACCEPTANCE, JS.NO_BIDS_RECEIVED, JS.ASSIGNED, JS.CANCELLED}
    ),
    JS.PENDING_ACCEPTANCE: frozenset(
        {JS.PENDING_ACCEPTANCE, JS.ASSIGNED, JS.NO_BIDS_RECEIVED, JS.CANCELLED}
    ),
    JS.NO_BIDS_RECEIVED: frozenset({JS.OPEN_FOR_BIDDING, JS.ASSIGNED, JS.CANCELLED}),
    # booking cancellation can still stop an assigned job before completion
    JS.ASSIGNED: frozenset({JS.IN_PROGRESS, JS.CANCELLED}),
    JS.IN_PROGRESS: frozenset({JS.COMPLETED, JS.CANCELLED}),
    JS.COMPLETED: frozenset(),
    JS.CANCELLED: frozenset(),
}

PRE_ASSIGNMENT_STATUSES = frozenset(
    {JS.OPEN_FOR_BIDDING, JS.BIDDING_CLOSED, JS.PENDING_ACCEPTANCE, JS.NO_BIDS_RECEIVED}
)
TERMINAL_JOB_STATUSES = frozenset({JS.COMPLETED, JS.CANCELLED})

BID_TRANSITIONS: Mapping[m.BidStatus, frozenset[m.BidStatus]] = {
    BS.PENDING: frozenset({BS.PENDING, BS.OFFERED, BS.WON, BS.LOST, BS.WITHDRAWN}),
    BS.OFFERED: frozenset({BS.WON, BS.DECLINED, BS.LOST}),
    BS.DECLINED: frozenset({BS.LOST, BS.PENDING, BS.WON}),
    BS.LOST: frozenset({BS.PENDING, BS.WON}),
    BS.WITHDRAWN: frozenset({BS.PENDING, BS.WON}),
    BS.WON: frozenset(),
}

# bids still in the running for an offer
LIVE_BID_STATUSES = frozenset({BS.PENDING, BS.OFFERED})

_PAYOUT_ORDER = {PS.NOT_ELIGIBLE: 0, PS.PENDING: 1, PS.PROCESSING: 2, PS.COMPLETED: 3}


def can_transition_job(current: m.JobStatus, target: m.JobStatus) -> bool:
    return target in JOB_TRANSITIONS.get(current, frozenset())


def ensure_job_transition(current: m.JobStatus, target: m.JobStatus) -> None:
    if not can_transition_job(current, target):
        raise ValidationError(f"job cannot move from {current.value} to {target.value}")


def can_transition_bid(current: m.BidStatus, target: m.BidStatus) -> bool:
    return target in BID_TRANSITIONS.get(current, frozenset())


def can_advance_payout(current: m.PayoutStatus, target: m.PayoutStatus) -> bool:
    """Payout status only ever moves one step forward."""
    return _PAYOUT_ORDER[target] == _PAYOUT_ORDER[current] + 1
