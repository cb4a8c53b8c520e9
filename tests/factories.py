"""Unsaved model instances with sensible defaults for tests."""
from __future__ import annotations

import itertools
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Optional

from transfer_exchange.db import models as m

UTC = timezone.utc
_seq = itertools.count(1)


def operator(
    *,
    company_name: Optional[str] = None,
    reputation_score: float = 4.0,
    approval_status: m.OperatorApprovalStatus = m.OperatorApprovalStatus.APPROVED,
    service_postcodes: Optional[list[str]] = None,
    with_bank_details: bool = True,
    **extra: Any,
) -> m.operators:
    n = next(_seq)
    values: dict[str, Any] = dict(
        company_name=company_name or f"Operator {n}",
        contact_email=f"dispatch{n}@example.test",
        approval_status=approval_status,
        reputation_score=reputation_score,
        service_postcodes=list(service_postcodes or []),
    )
    if with_bank_details:
        values.update(
            bank_account_name=values["company_name"],
            bank_account_number=f"{10000000 + n}",
            bank_sort_code="20-00-00",
        )
    values.update(extra)
    return m.operators(**values)


def booking(
    *,
    customer_price: Decimal = Decimal("100.00"),
    status: m.BookingStatus = m.BookingStatus.PAID,
    paid_at: Optional[datetime] = None,
    pickup_at: Optional[datetime] = None,
    vehicle_type: m.VehicleType = m.VehicleType.SALOON,
    journey_type: m.JourneyType = m.JourneyType.ONE_WAY,
    pickup_postcode: Optional[str] = "SW1A 1AA",
    **extra: Any,
) -> m.bookings:
    n = next(_seq)
    values: dict[str, Any] = dict(
        reference=f"TX-{n:06d}",
        customer_name=f"Customer {n}",
        vehicle_type=vehicle_type,
        service_type=m.ServiceType.POINT_TO_POINT,
        journey_type=journey_type,
        passenger_count=1,
        luggage_count=0,
        pickup_address="Buckingham Palace Road",
        pickup_postcode=pickup_postcode,
        pickup_lat=51.5014,
        pickup_lng=-0.1419,
        dropoff_address="Heathrow Terminal 5",
        dropoff_postcode="TW6 2GA",
        dropoff_lat=51.4723,
        dropoff_lng=-0.4887,
        pickup_at=pickup_at or datetime(2026, 3, 12, 9, 0, tzinfo=UTC),
        meet_and_greet=False,
        child_seats=0,
        booster_seats=0,
        pick_and_drop=False,
        customer_price=customer_price,
        status=status,
        paid_at=paid_at,
    )
    values.update(extra)
    return m.bookings(**values)


def job(
    booking_id: int,
    *,
    opened_at: datetime,
    status: m.JobStatus = m.JobStatus.OPEN_FOR_BIDDING,
    window_hours: int = 1,
    **extra: Any,
) -> m.jobs:
    values: dict[str, Any] = dict(
        booking_id=booking_id,
        status=status,
        bidding_window_hours=window_hours,
        bidding_window_opens_at=opened_at,
        bidding_window_closes_at=opened_at + timedelta(hours=window_hours),
        acceptance_attempt_count=0,
        payout_status=m.PayoutStatus.NOT_ELIGIBLE,
        version=1,
    )
    values.update(extra)
    return m.jobs(**values)


def completed_job(
    booking_id: int,
    operator_id: int,
    *,
    amount: Decimal,
    completed_at: datetime,
    payout_status: m.PayoutStatus = m.PayoutStatus.PENDING,
) -> m.jobs:
    opened_at = completed_at - timedelta(days=2)
    return job(
        booking_id,
        opened_at=opened_at,
        status=m.JobStatus.COMPLETED,
        assigned_operator_id=operator_id,
        winning_bid_amount=amount,
        platform_margin=Decimal("0.00"),
        started_at=completed_at - timedelta(hours=1),
        completed_at=completed_at,
        payout_status=payout_status,
    )
