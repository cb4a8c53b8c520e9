"""
Initial marketplace schema: operators, bookings, jobs, bids, history,
settings, pricing rules, notification outbox and payout ledger.

Revision ID: 2026_10_01_0001
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "2026_10_01_0001"
down_revision = None
branch_labels = None
depends_on = None

VEHICLE_TYPE = postgresql.ENUM(
    "SALOON",
    "ESTATE",
    "MPV",
    "EXECUTIVE",
    "MINIBUS",
    "EXECUTIVE_LUXURY",
    "EXECUTIVE_PEOPLE_CARRIER",
    "GREEN_CAR",
    name="vehicle_type",
    create_type=False,
)
SERVICE_TYPE = postgresql.ENUM(
    "AIRPORT_PICKUP", "AIRPORT_DROPOFF", "POINT_TO_POINT", name="service_type", create_type=False
)
JOURNEY_TYPE = postgresql.ENUM("ONE_WAY", "OUTBOUND", "RETURN", name="journey_type", create_type=False)
BOOKING_STATUS = postgresql.ENUM(
    "PENDING_PAYMENT",
    "PAID",
    "ASSIGNED",
    "IN_PROGRESS",
    "COMPLETED",
    "CANCELLED",
    "REFUNDED",
    name="booking_status",
    create_type=False,
)
JOB_STATUS = postgresql.ENUM(
    "OPEN_FOR_BIDDING",
    "BIDDING_CLOSED",
    "PENDING_ACCEPTANCE",
    "NO_BIDS_RECEIVED",
    "ASSIGNED",
    "IN_PROGRESS",
    "COMPLETED",
    "CANCELLED",
    name="job_status",
    create_type=False,
)
BID_STATUS = postgresql.ENUM(
    "PENDING", "OFFERED", "WON", "LOST", "DECLINED", "WITHDRAWN", name="bid_status", create_type=False
)
PAYOUT_STATUS = postgresql.ENUM(
    "NOT_ELIGIBLE", "PENDING", "PROCESSING", "COMPLETED", name="payout_status", create_type=False
)
ESCALATION_REASON = postgresql.ENUM(
    "NO_BIDS_RECEIVED", "ALL_OPERATORS_REJECTED", name="escalation_reason", create_type=False
)
APPROVAL_STATUS = postgresql.ENUM(
    "PENDING", "APPROVED", "REJECTED", "SUSPENDED", name="operator_approval_status", create_type=False
)
ACTOR_TYPE = postgresql.ENUM("SYSTEM", "ADMIN", "OPERATOR", name="actor_type", create_type=False)
PRICING_RULE_TYPE = postgresql.ENUM(
    "BASE_FARE",
    "PER_MILE_RATE",
    "RATE_REDUCTION_PER_100_MILES",
    "NIGHT_SURCHARGE",
    "PEAK_SURCHARGE",
    "HOLIDAY_SURCHARGE",
    "MEET_AND_GREET",
    "AIRPORT_FEE",
    "CHILD_SEAT",
    "BOOSTER_SEAT",
    "PICK_AND_DROP",
    "RETURN_DISCOUNT",
    name="pricing_rule_type",
    create_type=False,
)
TRANSACTION_STATUS = postgresql.ENUM(
    "PENDING", "COMPLETED", "FAILED", "CANCELLED", name="transaction_status", create_type=False
)

ALL_ENUMS = (
    VEHICLE_TYPE,
    SERVICE_TYPE,
    JOURNEY_TYPE,
    BOOKING_STATUS,
    JOB_STATUS,
    BID_STATUS,
    PAYOUT_STATUS,
    ESCALATION_REASON,
    APPROVAL_STATUS,
    ACTOR_TYPE,
    PRICING_RULE_TYPE,
    TRANSACTION_STATUS,
)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    ]


def upgrade() -> None:
    bind = op.get_bind()
    for enum in ALL_ENUMS:
        enum.create(bind, checkfirst=True)

    op.create_table(
        "operators",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("company_name", sa.String(200), nullable=False),
        sa.Column("contact_email", sa.String(254)),
        sa.Column("approval_status", APPROVAL_STATUS, nullable=False, server_default="PENDING"),
        sa.Column("reputation_score", sa.Float(), nullable=False, server_default="0"),
        sa.Column("service_postcodes", postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("bank_account_name", sa.String(160)),
        sa.Column("bank_account_number", sa.String(16)),
        sa.Column("bank_sort_code", sa.String(8)),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_operators"),
    )
    op.create_index("ix_operators__approval_status", "operators", ["approval_status"])

    op.create_table(
        "payout_transactions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("operator_id", sa.Integer(), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("job_ids", postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("status", TRANSACTION_STATUS, nullable=False, server_default="COMPLETED"),
        sa.Column("bank_reference", sa.String(64)),
        sa.Column("admin_user_id", sa.Integer()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()")),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
        sa.PrimaryKeyConstraint("id", name="pk_payout_transactions"),
        sa.ForeignKeyConstraint(
            ["operator_id"],
            ["operators.id"],
            name="fk_payout_transactions__operator_id__operators",
            ondelete="RESTRICT",
        ),
    )
    op.create_index("ix_payout_transactions__operator_id", "payout_transactions", ["operator_id"])

    op.create_table(
        "bookings",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("reference", sa.String(32), nullable=False),
        sa.Column("customer_name", sa.String(160)),
        sa.Column("vehicle_type", VEHICLE_TYPE, nullable=False),
        sa.Column("service_type", SERVICE_TYPE, nullable=False, server_default="POINT_TO_POINT"),
        sa.Column("journey_type", JOURNEY_TYPE, nullable=False, server_default="ONE_WAY"),
        sa.Column("outbound_booking_id", sa.Integer()),
        sa.Column("passenger_count", sa.SmallInteger(), nullable=False, server_default="1"),
        sa.Column("luggage_count", sa.SmallInteger(), nullable=False, server_default="0"),
        sa.Column("pickup_address", sa.Text()),
        sa.Column("pickup_postcode", sa.String(10)),
        sa.Column("pickup_lat", sa.Float(), nullable=False),
        sa.Column("pickup_lng", sa.Float(), nullable=False),
        sa.Column("dropoff_address", sa.Text()),
        sa.Column("dropoff_postcode", sa.String(10)),
        sa.Column("dropoff_lat", sa.Float(), nullable=False),
        sa.Column("dropoff_lng", sa.Float(), nullable=False),
        sa.Column("pickup_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("meet_and_greet", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("child_seats", sa.SmallInteger(), nullable=False, server_default="0"),
        sa.Column("booster_seats", sa.SmallInteger(), nullable=False, server_default="0"),
        sa.Column("pick_and_drop", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("distance_miles", sa.Numeric(8, 2)),
        sa.Column("customer_price", sa.Numeric(10, 2), nullable=False),
        sa.Column("status", BOOKING_STATUS, nullable=False, server_default="PENDING_PAYMENT"),
        sa.Column("paid_at", sa.DateTime(timezone=True)),
        sa.Column("cancelled_at", sa.DateTime(timezone=True)),
        sa.Column("cancellation_reason", sa.Text()),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_bookings"),
        sa.UniqueConstraint("reference", name="uq_bookings__reference"),
        sa.ForeignKeyConstraint(
            ["outbound_booking_id"],
            ["bookings.id"],
            name="fk_bookings__outbound_booking_id__bookings",
            ondelete="SET NULL",
        ),
        sa.CheckConstraint("customer_price > 0", name="ck_bookings__customer_price_positive"),
    )
    op.create_index("ix_bookings__outbound_booking_id", "bookings", ["outbound_booking_id"])
    op.create_index("ix_bookings__status", "bookings", ["status"])

    op.create_table(
        "jobs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("booking_id", sa.Integer(), nullable=False),
        sa.Column("status", JOB_STATUS, nullable=False, server_default="OPEN_FOR_BIDDING"),
        sa.Column("bidding_window_hours", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("bidding_window_opens_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("bidding_window_closes_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("current_offered_bid_id", sa.Integer()),
        sa.Column("acceptance_deadline", sa.DateTime(timezone=True)),
        sa.Column("acceptance_attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("escalation_reason", ESCALATION_REASON),
        sa.Column("escalated_at", sa.DateTime(timezone=True)),
        sa.Column("assigned_operator_id", sa.Integer()),
        sa.Column("winning_bid_id", sa.Integer()),
        sa.Column("winning_bid_amount", sa.Numeric(10, 2)),
        sa.Column("platform_margin", sa.Numeric(10, 2)),
        sa.Column("started_at", sa.DateTime(timezone=True)),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
        sa.Column("cancelled_at", sa.DateTime(timezone=True)),
        sa.Column("payout_status", PAYOUT_STATUS, nullable=False, server_default="NOT_ELIGIBLE"),
        sa.Column("payout_transaction_id", sa.Integer()),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_jobs"),
        sa.UniqueConstraint("booking_id", name="uq_jobs__booking_id"),
        sa.ForeignKeyConstraint(
            ["booking_id"], ["bookings.id"], name="fk_jobs__booking_id__bookings", ondelete="CASCADE"
        ),
        sa.ForeignKeyConstraint(
            ["assigned_operator_id"],
            ["operators.id"],
            name="fk_jobs__assigned_operator_id__operators",
            ondelete="SET NULL",
        ),
        sa.ForeignKeyConstraint(
            ["payout_transaction_id"],
            ["payout_transactions.id"],
            name="fk_jobs__payout_transaction_id__payout_transactions",
            ondelete="SET NULL",
        ),
        sa.CheckConstraint(
            "bidding_window_closes_at >= bidding_window_opens_at",
            name="ck_jobs__bidding_window_ordered",
        ),
        sa.CheckConstraint(
            "platform_margin IS NULL OR platform_margin >= 0",
            name="ck_jobs__platform_margin_non_negative",
        ),
    )
    op.create_index("ix_jobs__status", "jobs", ["status"])
    op.create_index("ix_jobs__bidding_window_closes_at", "jobs", ["bidding_window_closes_at"])
    op.create_index("ix_jobs__acceptance_deadline", "jobs", ["acceptance_deadline"])
    op.create_index("ix_jobs__assigned_operator_id", "jobs", ["assigned_operator_id"])
    op.create_index("ix_jobs__completed_at", "jobs", ["completed_at"])
    op.create_index("ix_jobs__payout_status", "jobs", ["payout_status"])
    op.create_index("ix_jobs__operator_payout", "jobs", ["assigned_operator_id", "payout_status"])

    op.create_table(
        "bids",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("job_id", sa.Integer(), nullable=False),
        sa.Column("operator_id", sa.Integer(), nullable=False),
        sa.Column("bid_amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("status", BID_STATUS, nullable=False, server_default="PENDING"),
        sa.Column("notes", sa.Text()),
        sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True)),
        sa.Column("offered_at", sa.DateTime(timezone=True)),
        sa.Column("responded_at", sa.DateTime(timezone=True)),
        sa.PrimaryKeyConstraint("id", name="pk_bids"),
        sa.UniqueConstraint("job_id", "operator_id", name="uq_bids__job_operator"),
        sa.ForeignKeyConstraint(["job_id"], ["jobs.id"], name="fk_bids__job_id__jobs", ondelete="CASCADE"),
        sa.ForeignKeyConstraint(
            ["operator_id"], ["operators.id"], name="fk_bids__operator_id__operators", ondelete="CASCADE"
        ),
        sa.CheckConstraint("bid_amount > 0", name="ck_bids__bid_amount_positive"),
    )
    op.create_index("ix_bids__job_id", "bids", ["job_id"])
    op.create_index("ix_bids__operator_id", "bids", ["operator_id"])
    op.create_index("ix_bids__status", "bids", ["status"])
    op.create_index("ix_bids__job_status", "bids", ["job_id", "status"])

    op.create_table(
        "job_status_history",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("job_id", sa.Integer(), nullable=False),
        sa.Column("from_status", JOB_STATUS),
        sa.Column("to_status", JOB_STATUS, nullable=False),
        sa.Column("reason", sa.Text()),
        sa.Column("actor_type", ACTOR_TYPE, nullable=False),
        sa.Column("actor_id", sa.Integer()),
        sa.Column("context", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("id", name="pk_job_status_history"),
        sa.ForeignKeyConstraint(
            ["job_id"], ["jobs.id"], name="fk_job_status_history__job_id__jobs", ondelete="CASCADE"
        ),
    )
    op.create_index("ix_job_status_history__job_id", "job_status_history", ["job_id"])
    op.create_index("ix_job_status_history__actor_type", "job_status_history", ["actor_type"])
    op.create_index("ix_job_status_history__created_at", "job_status_history", ["created_at"])
    op.create_index(
        "ix_job_status_history__job_created_at", "job_status_history", ["job_id", "created_at"]
    )

    op.create_table(
        "settings",
        sa.Column("key", sa.String(80), nullable=False),
        sa.Column("value", sa.Text(), nullable=False),
        sa.Column("value_type", sa.String(16), nullable=False, server_default="STR"),
        sa.Column("description", sa.Text()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("key", name="pk_settings"),
    )

    op.create_table(
        "pricing_rules",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("rule_type", PRICING_RULE_TYPE, nullable=False),
        sa.Column("vehicle_type", VEHICLE_TYPE),
        sa.Column("airport_code", sa.String(8)),
        sa.Column("value", sa.Numeric(10, 2), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_pricing_rules"),
    )
    op.create_index("ix_pricing_rules__rule_type", "pricing_rules", ["rule_type"])
    op.create_index("ix_pricing_rules__rule_vehicle", "pricing_rules", ["rule_type", "vehicle_type"])

    op.create_table(
        "notifications_outbox",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("operator_id", sa.Integer(), nullable=False),
        sa.Column("event", sa.String(64), nullable=False),
        sa.Column("payload", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()")),
        sa.Column("processed_at", sa.DateTime(timezone=True)),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text()),
        sa.PrimaryKeyConstraint("id", name="pk_notifications_outbox"),
        sa.ForeignKeyConstraint(
            ["operator_id"],
            ["operators.id"],
            name="fk_notifications_outbox__operator_id__operators",
            ondelete="CASCADE",
        ),
    )
    op.create_index("ix_notifications_outbox__operator_id", "notifications_outbox", ["operator_id"])
    op.create_index("ix_notifications_outbox__created_at", "notifications_outbox", ["created_at"])

    op.bulk_insert(
        sa.table(
            "settings",
            sa.column("key", sa.String),
            sa.column("value", sa.Text),
            sa.column("value_type", sa.String),
            sa.column("description", sa.Text),
        ),
        [
            {"key": "DEFAULT_BIDDING_WINDOW_HOURS", "value": "1", "value_type": "INT", "description": "Bidding window for one-way jobs"},
            {"key": "RETURN_BIDDING_WINDOW_HOURS", "value": "2", "value_type": "INT", "description": "Bidding window for return-leg jobs"},
            {"key": "REOPEN_BIDDING_DEFAULT_HOURS", "value": "24", "value_type": "INT", "description": "Window used when an admin reopens bidding"},
            {"key": "ACCEPTANCE_WINDOW_MINUTES", "value": "30", "value_type": "INT", "description": "Time an operator has to accept an offer"},
            {"key": "MIN_BID_PERCENT", "value": "50", "value_type": "DECIMAL", "description": "Lowest bid as a percentage of the customer price"},
            {"key": "MAX_BID_PERCENT", "value": "75", "value_type": "DECIMAL", "description": "Suggested maximum bid shown to operators"},
            {"key": "INITIAL_PAYOUT_DELAY_DAYS", "value": "14", "value_type": "INT", "description": "Hold period before a completed job can be paid"},
            {"key": "JOBS_HELD_FOR_NEXT_PAYOUT", "value": "2", "value_type": "INT", "description": "Most recent jobs always held back"},
            {"key": "PAYOUT_DAY_OF_WEEK", "value": "5", "value_type": "INT", "description": "ISO weekday of the payout run"},
            {"key": "PAYOUTS_ENABLED", "value": "true", "value_type": "BOOL", "description": "Master switch for payout runs"},
        ],
    )


def downgrade() -> None:
    op.drop_table("notifications_outbox")
    op.drop_table("pricing_rules")
    op.drop_table("settings")
    op.drop_table("job_status_history")
    op.drop_table("bids")
    op.drop_table("jobs")
    op.drop_table("bookings")
    op.drop_table("payout_transactions")
    op.drop_table("operators")

    bind = op.get_bind()
    for enum in reversed(ALL_ENUMS):
        enum.drop(bind, checkfirst=True)
