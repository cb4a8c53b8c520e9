"""
Operator and admin notifications.

Operator messages are queued in ``notifications_outbox`` inside the caller's
transaction; admin messages go straight to the ops channel through the bot.
Both are best-effort: a failure is logged, never raised.
"""
from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Optional

from aiogram import Bot
from sqlalchemy import insert
from sqlalchemy.ext.asyncio import AsyncSession

from transfer_exchange.db import models as m
from transfer_exchange.infra.notify import send_alert, send_report
from transfer_exchange.services import live_log

logger = logging.getLogger("marketplace.notifications")


class NotificationEvent(str, Enum):
    # operators
    NEW_JOB = "new_job"
    OFFER_RECEIVED = "offer_received"
    OFFER_EXPIRED = "offer_expired"
    JOB_WON = "job_won"
    JOB_LOST = "job_lost"
    JOB_ASSIGNED_MANUALLY = "job_assigned_manually"
    JOB_CANCELLED = "job_cancelled"
    PAYOUT_PROCESSING = "payout_processing"
    PAYOUT_COMPLETED = "payout_completed"

    # admins
    ESCALATION_NO_BIDS = "escalation_no_bids"
    ESCALATION_ALL_REJECTED = "escalation_all_rejected"
    PAYOUT_RUN_SUMMARY = "payout_run_summary"


NOTIFICATION_TEMPLATES = {
    NotificationEvent.NEW_JOB: (
        "New job #{job_id} open for bidding\n"
        "Pickup: {pickup} at {pickup_at}\n"
        "Vehicle: {vehicle}\n"
        "Bidding closes {closes_at}"
    ),
    NotificationEvent.OFFER_RECEIVED: (
        "Your bid of £{amount} on job #{job_id} is the best offer.\n"
        "Accept before {deadline} or it passes to the next operator."
    ),
    NotificationEvent.OFFER_EXPIRED: (
        "The offer for job #{job_id} expired without a response and has moved on."
    ),
    NotificationEvent.JOB_WON: "Job #{job_id} is yours for £{amount}.",
    NotificationEvent.JOB_LOST: "Job #{job_id} was awarded to another operator.",
    NotificationEvent.JOB_ASSIGNED_MANUALLY: (
        "Job #{job_id} has been assigned to you by the operations team for £{amount}."
    ),
    NotificationEvent.JOB_CANCELLED: "Job #{job_id} was cancelled: {reason}",
    NotificationEvent.PAYOUT_PROCESSING: (
        "Payout of £{amount} for {count} job(s) is being processed."
    ),
    NotificationEvent.PAYOUT_COMPLETED: (
        "Payout of £{amount} sent. Bank reference: {bank_reference}"
    ),
    NotificationEvent.ESCALATION_NO_BIDS: (
        "Job #{job_id} (booking {booking_reference}) closed with no bids. "
        "Reopen bidding or assign manually."
    ),
    NotificationEvent.ESCALATION_ALL_REJECTED: (
        "Job #{job_id} (booking {booking_reference}): all {attempts} offer(s) declined "
        "or expired. Manual assignment needed."
    ),
    NotificationEvent.PAYOUT_RUN_SUMMARY: (
        "Payout run: {paid_count} operator(s) moved to processing, total £{total}. "
        "Skipped: {skipped}"
    ),
}


def render(event: NotificationEvent, **kwargs: Any) -> str:
    template = NOTIFICATION_TEMPLATES.get(event) or "Event: {event}"
    try:
        return template.format(event=event.value, **kwargs)
    except (KeyError, IndexError) as exc:
        live_log.push(
            "notifications", f"Template error for {event.value}: missing key {exc}", level="ERROR"
        )
        return f"Event: {event.value}"


def _jsonable_payload(kwargs: dict[str, Any]) -> dict[str, Any]:
    payload: dict[str, Any] = {}
    for key, value in kwargs.items():
        if isinstance(value, (str, int, float, bool)) or value is None:
            payload[key] = value
        else:
            payload[key] = str(value)
    return payload


async def notify_operator(
    session: AsyncSession,
    *,
    operator_id: int,
    event: NotificationEvent,
    **kwargs: Any,
) -> bool:
    """Queue a message for an operator; False when queueing failed."""
    message = render(event, **kwargs)
    try:
        async with session.begin_nested():
            await session.execute(
                insert(m.notifications_outbox).values(
                    operator_id=operator_id,
                    event=event.value,
                    payload={"message": message, **_jsonable_payload(kwargs)},
                )
            )
    except Exception as exc:
        logger.warning(
            "[notify] failed to queue %s for operator=%s: %s", event.value, operator_id, exc
        )
        live_log.push(
            "notifications", f"Queue {event.value} op#{operator_id} failed: {exc}", level="ERROR"
        )
        return False
    live_log.push("notifications", f"Queued {event.value} for op#{operator_id}")
    return True


async def notify_admin(
    bot: Optional[Bot],
    *,
    event: NotificationEvent,
    chat_id: Optional[int] = None,
    **kwargs: Any,
) -> bool:
    message = render(event, **kwargs)
    try:
        if event == NotificationEvent.PAYOUT_RUN_SUMMARY:
            sent = await send_report(bot, message, chat_id=chat_id)
        else:
            sent = await send_alert(bot, message, chat_id=chat_id)
    except Exception as exc:
        logger.warning("[notify] admin %s failed: %s", event.value, exc)
        live_log.push("notifications", f"Failed to send {event.value}: {exc}", level="ERROR")
        return False
    live_log.push(
        "notifications",
        f"{'Sent' if sent else 'Logged'} {event.value} for admins",
        level="INFO" if sent else "WARNING",
    )
    return sent
