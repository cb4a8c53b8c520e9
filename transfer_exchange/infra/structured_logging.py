"""
Structured logging for the job/bid lifecycle.

Every state-machine step emits one compact JSON line so a job's history can
be reconstructed from logs alone (grep by ``"job_id":42``).
"""
from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

__all__ = [
    "MarketplaceEvent",
    "MarketplaceLogger",
    "log_marketplace_event",
]

logger = logging.getLogger("marketplace.structured")


class MarketplaceEvent(str, Enum):
    """Types of lifecycle events."""
    JOB_CREATED = "job_created"
    BID_SUBMITTED = "bid_submitted"
    BID_WITHDRAWN = "bid_withdrawn"
    BIDDING_CLOSED = "bidding_closed"
    BIDDING_REOPENED = "bidding_reopened"
    OFFER_SENT = "offer_sent"
    OFFER_ACCEPTED = "offer_accepted"
    OFFER_DECLINED = "offer_declined"
    OFFER_EXPIRED = "offer_expired"
    LATE_ACCEPT_REJECTED = "late_accept_rejected"
    MANUAL_ASSIGN = "manual_assign"
    JOB_STARTED = "job_started"
    JOB_COMPLETED = "job_completed"
    JOB_CANCELLED = "job_cancelled"
    ESCALATION = "escalation"
    STALE_TRANSITION = "stale_transition"
    PAYOUT_RUN = "payout_run"
    PAYOUT_COMPLETED = "payout_completed"
    ERROR = "error"


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat().replace("+00:00", "Z")
    if isinstance(value, Enum):
        return value.value
    return value


@dataclass
class MarketplaceLogEntry:
    """One structured lifecycle log line."""
    timestamp: str
    event: str
    job_id: Optional[int] = None
    bid_id: Optional[int] = None
    operator_id: Optional[int] = None
    booking_id: Optional[int] = None
    from_status: Optional[str] = None
    to_status: Optional[str] = None
    amount: Optional[str] = None
    deadline: Optional[str] = None
    reason: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> str:
        data = {k: v for k, v in asdict(self).items() if v is not None and v != {}}
        return json.dumps(data, ensure_ascii=False, separators=(",", ":"), default=_jsonable)


class MarketplaceLogger:
    def __init__(self, logger_name: str = "marketplace.structured"):
        self.logger = logging.getLogger(logger_name)

    def log_event(
        self,
        event: MarketplaceEvent,
        *,
        job_id: Optional[int] = None,
        bid_id: Optional[int] = None,
        operator_id: Optional[int] = None,
        booking_id: Optional[int] = None,
        from_status: Any = None,
        to_status: Any = None,
        amount: Optional[Decimal] = None,
        deadline: Optional[datetime] = None,
        reason: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        level: str = "INFO",
    ) -> None:
        entry = MarketplaceLogEntry(
            timestamp=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            event=event.value,
            job_id=job_id,
            bid_id=bid_id,
            operator_id=operator_id,
            booking_id=booking_id,
            from_status=_jsonable(from_status),
            to_status=_jsonable(to_status),
            amount=_jsonable(amount) if amount is not None else None,
            deadline=_jsonable(deadline) if deadline is not None else None,
            reason=reason,
            details=details or {},
        )
        log_method = getattr(self.logger, level.lower(), self.logger.info)
        log_method(entry.to_json())


_marketplace_logger = MarketplaceLogger()


def log_marketplace_event(event: MarketplaceEvent, **kwargs: Any) -> None:
    """Module-level shortcut; kwargs go straight to MarketplaceLogger.log_event()."""
    _marketplace_logger.log_event(event, **kwargs)
