"""
In-process cancellable delayed tasks keyed by job/bid id.

A fired timer never trusts itself: callbacks re-read job state and no-op when
the job has already moved on. The database sweep in ``bidding_scheduler``
recovers anything lost to a restart.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from transfer_exchange.services import live_log

logger = logging.getLogger("marketplace.timers")
UTC = timezone.utc

TimerCallback = Callable[[], Awaitable[None]]


def window_close_key(job_id: int) -> str:
    return f"close-bidding-{job_id}"


def acceptance_key(bid_id: int) -> str:
    return f"acceptance-{bid_id}"


class TimerRegistry:
    def __init__(self) -> None:
        self._tasks: dict[str, asyncio.Task] = {}

    def schedule(
        self,
        key: str,
        when: datetime,
        callback: TimerCallback,
        *,
        now: Optional[datetime] = None,
    ) -> asyncio.Task:
        """Run *callback* at *when*; an existing timer with the same key is replaced."""
        self.cancel(key)
        current = now or datetime.now(UTC)
        delay = max(0.0, (when - current).total_seconds())
        task = asyncio.create_task(self._run(key, delay, callback), name=key)
        self._tasks[key] = task
        logger.debug("[timers] scheduled %s in %.1fs", key, delay)
        return task

    def cancel(self, key: str) -> bool:
        task = self._tasks.pop(key, None)
        if task is None:
            return False
        if not task.done():
            task.cancel()
            logger.debug("[timers] cancelled %s", key)
        return True

    def is_scheduled(self, key: str) -> bool:
        task = self._tasks.get(key)
        return task is not None and not task.done()

    def pending(self) -> list[str]:
        return sorted(key for key, task in self._tasks.items() if not task.done())

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _run(self, key: str, delay: float, callback: TimerCallback) -> None:
        await asyncio.sleep(delay)
        task = asyncio.current_task()
        # once fired the key is free; only drop it if nobody rescheduled meanwhile
        if self._tasks.get(key) is task:
            del self._tasks[key]
        try:
            await callback()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("[timers] %s failed: %s", key, exc)
            live_log.push("timers", f"{key} failed: {exc}", level="ERROR")


registry = TimerRegistry()
