from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

__all__ = ["LiveLogEntry", "push", "snapshot", "clear", "size"]


@dataclass(slots=True)
class LiveLogEntry:
    timestamp: datetime
    source: str
    message: str
    level: str = "INFO"


MAX_ENTRIES = 200

_BUFFER = deque[LiveLogEntry](maxlen=MAX_ENTRIES)
UTC = timezone.utc


def push(source: str, message: str, *, level: str = "INFO") -> None:
    """Append a line for the ops feed (scheduler, bids, payouts...)."""
    entry = LiveLogEntry(
        timestamp=datetime.now(UTC),
        source=source,
        message=message,
        level=level.upper(),
    )
    _BUFFER.append(entry)


def snapshot(limit: int = 50, *, source: Optional[str] = None) -> List[LiveLogEntry]:
    """Return up to *limit* recent entries, oldest first, optionally for one source."""
    if limit <= 0:
        return []
    entries = list(_BUFFER)
    if source is not None:
        entries = [entry for entry in entries if entry.source == source]
    return entries[-limit:]


def clear() -> None:
    _BUFFER.clear()


def size() -> int:
    return len(_BUFFER)
