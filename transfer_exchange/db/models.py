from __future__ import annotations
import enum
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    SmallInteger,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, TimestampMixin, metadata

# JSONB on Postgres, plain JSON elsewhere (sqlite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")

# ===== Enums =====


class VehicleType(str, enum.Enum):
    SALOON = "SALOON"
    ESTATE = "ESTATE"
    MPV = "MPV"
    EXECUTIVE = "EXECUTIVE"
    MINIBUS = "MINIBUS"
    EXECUTIVE_LUXURY = "EXECUTIVE_LUXURY"
    EXECUTIVE_PEOPLE_CARRIER = "EXECUTIVE_PEOPLE_CARRIER"
    GREEN_CAR = "GREEN_CAR"


class ServiceType(str, enum.Enum):
    AIRPORT_PICKUP = "AIRPORT_PICKUP"
    AIRPORT_DROPOFF = "AIRPORT_DROPOFF"
    POINT_TO_POINT = "POINT_TO_POINT"


class JourneyType(str, enum.Enum):
    ONE_WAY = "ONE_WAY"
    OUTBOUND = "OUTBOUND"
    RETURN = "RETURN"


class BookingStatus(str, enum.Enum):
    PENDING_PAYMENT = "PENDING_PAYMENT"
    PAID = "PAID"
    ASSIGNED = "ASSIGNED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


class JobStatus(str, enum.Enum):
    OPEN_FOR_BIDDING = "OPEN_FOR_BIDDING"
    BIDDING_CLOSED = "BIDDING_CLOSED"
    PENDING_ACCEPTANCE = "PENDING_ACCEPTANCE"
    NO_BIDS_RECEIVED = "NO_BIDS_RECEIVED"
    ASSIGNED = "ASSIGNED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class BidStatus(str, enum.Enum):
    PENDING = "PENDING"
    OFFERED = "OFFERED"
    WON = "WON"
    LOST = "LOST"
    DECLINED = "DECLINED"
    WITHDRAWN = "WITHDRAWN"


class PayoutStatus(str, enum.Enum):
    """Forward-only: NOT_ELIGIBLE -> PENDING -> PROCESSING -> COMPLETED."""

    NOT_ELIGIBLE = "NOT_ELIGIBLE"
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"


class EscalationReason(str, enum.Enum):
    NO_BIDS_RECEIVED = "NO_BIDS_RECEIVED"
    ALL_OPERATORS_REJECTED = "ALL_OPERATORS_REJECTED"


class OperatorApprovalStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    SUSPENDED = "SUSPENDED"


class ActorType(str, enum.Enum):
    SYSTEM = "SYSTEM"
    ADMIN = "ADMIN"
    OPERATOR = "OPERATOR"


class PricingRuleType(str, enum.Enum):
    BASE_FARE = "BASE_FARE"
    PER_MILE_RATE = "PER_MILE_RATE"
    RATE_REDUCTION_PER_100_MILES = "RATE_REDUCTION_PER_100_MILES"
    NIGHT_SURCHARGE = "NIGHT_SURCHARGE"
    PEAK_SURCHARGE = "PEAK_SURCHARGE"
    HOLIDAY_SURCHARGE = "HOLIDAY_SURCHARGE"
    MEET_AND_GREET = "MEET_AND_GREET"
    AIRPORT_FEE = "AIRPORT_FEE"
    CHILD_SEAT = "CHILD_SEAT"
    BOOSTER_SEAT = "BOOSTER_SEAT"
    PICK_AND_DROP = "PICK_AND_DROP"
    RETURN_DISCOUNT = "RETURN_DISCOUNT"


class TransactionStatus(str, enum.Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


# ===== Operators =====


class operators(TimestampMixin, Base):
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    company_name: Mapped[str] = mapped_column(String(200), nullable=False)
    contact_email: Mapped[Optional[str]] = mapped_column(String(254))
    approval_status: Mapped[OperatorApprovalStatus] = mapped_column(
        Enum(OperatorApprovalStatus, name="operator_approval_status"),
        nullable=False,
        default=OperatorApprovalStatus.PENDING,
        server_default="PENDING",
        index=True,
    )
    reputation_score: Mapped[float] = mapped_column(
        Float(asdecimal=False), nullable=False, default=0.0, server_default="0"
    )
    # Outward postcode prefixes the operator serves, e.g. ["SW1", "TW6"]
    service_postcodes: Mapped[list[str]] = mapped_column(
        JSONType, nullable=False, default=list
    )
    bank_account_name: Mapped[Optional[str]] = mapped_column(String(160))
    bank_account_number: Mapped[Optional[str]] = mapped_column(String(16))
    bank_sort_code: Mapped[Optional[str]] = mapped_column(String(8))

    @property
    def has_bank_details(self) -> bool:
        return bool(
            (self.bank_account_name or "").strip()
            and (self.bank_account_number or "").strip()
            and (self.bank_sort_code or "").strip()
        )


# ===== Bookings =====


class bookings(TimestampMixin, Base):
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    reference: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    customer_name: Mapped[Optional[str]] = mapped_column(String(160))

    vehicle_type: Mapped[VehicleType] = mapped_column(
        Enum(VehicleType, name="vehicle_type"), nullable=False
    )
    service_type: Mapped[ServiceType] = mapped_column(
        Enum(ServiceType, name="service_type"),
        nullable=False,
        default=ServiceType.POINT_TO_POINT,
        server_default="POINT_TO_POINT",
    )
    journey_type: Mapped[JourneyType] = mapped_column(
        Enum(JourneyType, name="journey_type"),
        nullable=False,
        default=JourneyType.ONE_WAY,
        server_default="ONE_WAY",
    )
    outbound_booking_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("bookings.id", ondelete="SET NULL"), nullable=True, index=True
    )

    passenger_count: Mapped[int] = mapped_column(
        SmallInteger, nullable=False, default=1, server_default="1"
    )
    luggage_count: Mapped[int] = mapped_column(
        SmallInteger, nullable=False, default=0, server_default="0"
    )

    pickup_address: Mapped[Optional[str]] = mapped_column(Text)
    pickup_postcode: Mapped[Optional[str]] = mapped_column(String(10))
    pickup_lat: Mapped[float] = mapped_column(Float(asdecimal=False), nullable=False)
    pickup_lng: Mapped[float] = mapped_column(Float(asdecimal=False), nullable=False)
    dropoff_address: Mapped[Optional[str]] = mapped_column(Text)
    dropoff_postcode: Mapped[Optional[str]] = mapped_column(String(10))
    dropoff_lat: Mapped[float] = mapped_column(Float(asdecimal=False), nullable=False)
    dropoff_lng: Mapped[float] = mapped_column(Float(asdecimal=False), nullable=False)
    pickup_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    meet_and_greet: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default="false"
    )
    child_seats: Mapped[int] = mapped_column(
        SmallInteger, nullable=False, default=0, server_default="0"
    )
    booster_seats: Mapped[int] = mapped_column(
        SmallInteger, nullable=False, default=0, server_default="0"
    )
    pick_and_drop: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default="false"
    )

    distance_miles: Mapped[Optional[Decimal]] = mapped_column(Numeric(8, 2))
    # Fixed at quote time, never changed after payment
    customer_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    status: Mapped[BookingStatus] = mapped_column(
        Enum(BookingStatus, name="booking_status"),
        nullable=False,
        default=BookingStatus.PENDING_PAYMENT,
        server_default="PENDING_PAYMENT",
        index=True,
    )
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text)

    __table_args__ = (
        CheckConstraint("customer_price > 0", name="customer_price_positive"),
    )


# ===== Jobs =====


class jobs(TimestampMixin, Base):
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    booking_id: Mapped[int] = mapped_column(
        ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    booking: Mapped["bookings"] = relationship(lazy="raise_on_sql")

    status: Mapped[JobStatus] = mapped_column(
        Enum(JobStatus, name="job_status"),
        nullable=False,
        default=JobStatus.OPEN_FOR_BIDDING,
        server_default="OPEN_FOR_BIDDING",
        index=True,
    )
    bidding_window_hours: Mapped[int] = mapped_column(
        Integer, nullable=False, default=1, server_default="1"
    )
    bidding_window_opens_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    bidding_window_closes_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )

    # Bid ids are kept without FK: jobs <-> bids would otherwise be a cycle
    current_offered_bid_id: Mapped[Optional[int]] = mapped_column(Integer)
    acceptance_deadline: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), index=True
    )
    acceptance_attempt_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0"
    )
    escalation_reason: Mapped[Optional[EscalationReason]] = mapped_column(
        Enum(EscalationReason, name="escalation_reason")
    )
    escalated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    assigned_operator_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("operators.id", ondelete="SET NULL"), nullable=True, index=True
    )
    winning_bid_id: Mapped[Optional[int]] = mapped_column(Integer)
    winning_bid_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2))
    platform_margin: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2))

    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), index=True
    )
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    payout_status: Mapped[PayoutStatus] = mapped_column(
        Enum(PayoutStatus, name="payout_status"),
        nullable=False,
        default=PayoutStatus.NOT_ELIGIBLE,
        server_default="NOT_ELIGIBLE",
        index=True,
    )
    payout_transaction_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("payout_transactions.id", ondelete="SET NULL"), nullable=True
    )

    version: Mapped[int] = mapped_column(
        Integer, nullable=False, default=1, server_default="1"
    )

    __table_args__ = (
        CheckConstraint(
            "bidding_window_closes_at >= bidding_window_opens_at",
            name="bidding_window_ordered",
        ),
        CheckConstraint(
            "platform_margin IS NULL OR platform_margin >= 0",
            name="platform_margin_non_negative",
        ),
        Index("ix_jobs__operator_payout", "assigned_operator_id", "payout_status"),
    )


class bids(Base):
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    job_id: Mapped[int] = mapped_column(
        ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    operator_id: Mapped[int] = mapped_column(
        ForeignKey("operators.id", ondelete="CASCADE"), nullable=False, index=True
    )
    bid_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    status: Mapped[BidStatus] = mapped_column(
        Enum(BidStatus, name="bid_status"),
        nullable=False,
        default=BidStatus.PENDING,
        server_default="PENDING",
        index=True,
    )
    notes: Mapped[Optional[str]] = mapped_column(Text)
    submitted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    offered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    responded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    operator: Mapped["operators"] = relationship(lazy="raise_on_sql")

    __table_args__ = (
        UniqueConstraint("job_id", "operator_id", name="uq_bids__job_operator"),
        CheckConstraint("bid_amount > 0", name="bid_amount_positive"),
        Index("ix_bids__job_status", "job_id", "status"),
    )


class job_status_history(Base):
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    job_id: Mapped[int] = mapped_column(
        ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    from_status: Mapped[Optional[JobStatus]] = mapped_column(
        Enum(JobStatus, name="job_status"), nullable=True
    )
    to_status: Mapped[JobStatus] = mapped_column(
        Enum(JobStatus, name="job_status"), nullable=False
    )
    reason: Mapped[Optional[str]] = mapped_column(Text)
    actor_type: Mapped[ActorType] = mapped_column(
        Enum(ActorType, name="actor_type"),
        nullable=False,
        default=ActorType.SYSTEM,
        index=True,
    )
    actor_id: Mapped[Optional[int]] = mapped_column(Integer)
    context: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), index=True
    )

    __table_args__ = (
        Index("ix_job_status_history__job_created_at", "job_id", "created_at"),
    )


# ===== Configuration =====


class settings(Base):
    key: Mapped[str] = mapped_column(String(80), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    value_type: Mapped[str] = mapped_column(
        String(16), nullable=False, default="STR", server_default="STR"
    )  # INT/DECIMAL/BOOL/STR
    description: Mapped[Optional[str]] = mapped_column(Text)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class pricing_rules(TimestampMixin, Base):
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    rule_type: Mapped[PricingRuleType] = mapped_column(
        Enum(PricingRuleType, name="pricing_rule_type"), nullable=False, index=True
    )
    # NULL vehicle_type is the system-wide value for the rule
    vehicle_type: Mapped[Optional[VehicleType]] = mapped_column(
        Enum(VehicleType, name="vehicle_type"), nullable=True
    )
    airport_code: Mapped[Optional[str]] = mapped_column(String(8))
    value: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    is_active: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, server_default="true"
    )

    __table_args__ = (
        Index("ix_pricing_rules__rule_vehicle", "rule_type", "vehicle_type"),
    )


# ===== Notifications & payouts =====


class notifications_outbox(Base):
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    operator_id: Mapped[int] = mapped_column(
        ForeignKey("operators.id", ondelete="CASCADE"), nullable=False, index=True
    )
    event: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), index=True
    )
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    attempt_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0"
    )
    last_error: Mapped[Optional[str]] = mapped_column(Text)


class payout_transactions(Base):
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    operator_id: Mapped[int] = mapped_column(
        ForeignKey("operators.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    job_ids: Mapped[list[int]] = mapped_column(JSONType, nullable=False, default=list)
    status: Mapped[TransactionStatus] = mapped_column(
        Enum(TransactionStatus, name="transaction_status"),
        nullable=False,
        default=TransactionStatus.COMPLETED,
        server_default="COMPLETED",
    )
    bank_reference: Mapped[Optional[str]] = mapped_column(String(64))
    admin_user_id: Mapped[Optional[int]] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))


__all__ = [
    "metadata",
    "VehicleType",
    "ServiceType",
    "JourneyType",
    "BookingStatus",
    "JobStatus",
    "BidStatus",
    "PayoutStatus",
    "EscalationReason",
    "OperatorApprovalStatus",
    "ActorType",
    "PricingRuleType",
    "TransactionStatus",
    "operators",
    "bookings",
    "jobs",
    "bids",
    "job_status_history",
    "settings",
    "pricing_rules",
    "notifications_outbox",
    "payout_transactions",
]
