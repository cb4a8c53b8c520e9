"""
Guarded job status changes.

Every status change goes through :func:`transition_job`: the allowed-move table
is checked, the row is updated only if its status and version are still what
the caller read, and a ``job_status_history`` row is written in the same
transaction. In-process callers also serialise on :func:`job_lock`.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import and_, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from transfer_exchange.db import models as m
from transfer_exchange.infra.structured_logging import (
    MarketplaceEvent,
    log_marketplace_event,
)
from transfer_exchange.services import live_log
from transfer_exchange.services.job_state import ensure_job_transition

logger = logging.getLogger("marketplace.jobs")

_JOB_LOCKS: dict[int, asyncio.Lock] = {}


def job_lock(job_id: int) -> asyncio.Lock:
    lock = _JOB_LOCKS.get(job_id)
    if lock is None:
        lock = _JOB_LOCKS[job_id] = asyncio.Lock()
    return lock


def release_job_lock(job_id: int) -> None:
    """Forget the lock of a job that can no longer change."""
    lock = _JOB_LOCKS.get(job_id)
    if lock is not None and not lock.locked():
        _JOB_LOCKS.pop(job_id, None)


async def load_job(session: AsyncSession, job_id: int) -> Optional[m.jobs]:
    """Fresh copy of the job row, locked for update where the backend supports it."""
    return await session.get(
        m.jobs, job_id, populate_existing=True, with_for_update=True
    )


async def load_job_for_booking(session: AsyncSession, booking_id: int) -> Optional[m.jobs]:
    return await session.scalar(
        select(m.jobs)
        .where(m.jobs.booking_id == booking_id)
        .execution_options(populate_existing=True)
    )


async def record_history(
    session: AsyncSession,
    *,
    job_id: int,
    from_status: Optional[m.JobStatus],
    to_status: m.JobStatus,
    reason: Optional[str],
    actor_type: m.ActorType = m.ActorType.SYSTEM,
    actor_id: Optional[int] = None,
    context: Optional[dict[str, Any]] = None,
) -> None:
    await session.execute(
        insert(m.job_status_history).values(
            job_id=job_id,
            from_status=from_status,
            to_status=to_status,
            reason=reason,
            actor_type=actor_type,
            actor_id=actor_id,
            context=context or {},
        )
    )


async def transition_job(
    session: AsyncSession,
    job: m.jobs,
    target: m.JobStatus,
    *,
    reason: str,
    actor_type: m.ActorType = m.ActorType.SYSTEM,
    actor_id: Optional[int] = None,
    context: Optional[dict[str, Any]] = None,
    values: Optional[dict[str, Any]] = None,
) -> bool:
    """Move *job* to *target*; False when another writer got there first.

    Raises ``ValidationError`` when the move is not in the transition table.
    On success *job* is refreshed from the row that was written.
    """
    current_status = job.status
    current_version = job.version or 1
    ensure_job_transition(current_status, target)

    result = await session.execute(
        update(m.jobs)
        .where(
            and_(
                m.jobs.id == job.id,
                m.jobs.status == current_status,
                m.jobs.version == current_version,
            )
        )
        .values(status=target, version=current_version + 1, **(values or {}))
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.warning(
            "[jobs] job=%s stale transition %s -> %s (version=%s)",
            job.id,
            current_status.value,
            target.value,
            current_version,
        )
        live_log.push(
            "jobs",
            f"job#{job.id} stale {current_status.value}->{target.value} ignored",
            level="WARNING",
        )
        log_marketplace_event(
            MarketplaceEvent.STALE_TRANSITION,
            job_id=job.id,
            from_status=current_status,
            to_status=target,
            reason=reason,
            level="WARNING",
        )
        await session.refresh(job)
        return False

    await record_history(
        session,
        job_id=job.id,
        from_status=current_status,
        to_status=target,
        reason=reason,
        actor_type=actor_type,
        actor_id=actor_id,
        context=context,
    )
    await session.refresh(job)
    logger.info(
        "[jobs] job=%s %s -> %s reason=%s", job.id, current_status.value, target.value, reason
    )
    return True


async def set_booking_status(
    session: AsyncSession,
    booking_id: int,
    status: m.BookingStatus,
    **values: Any,
) -> None:
    await session.execute(
        update(m.bookings)
        .where(m.bookings.id == booking_id)
        .values(status=status, **values)
        .execution_options(synchronize_session=False)
    )


def history_context(**items: Any) -> dict[str, Any]:
    """Drop empty entries and stringify values so the context stays JSON-friendly."""
    context: dict[str, Any] = {}
    for key, value in items.items():
        if value is None:
            continue
        if isinstance(value, datetime):
            context[key] = value.isoformat()
        elif isinstance(value, (str, int, float, bool, list, dict)):
            context[key] = value
        else:
            context[key] = str(value)
    return context
