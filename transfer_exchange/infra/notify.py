"""
Ops channel delivery over the Telegram Bot API.

Three channels: alerts (escalations and crashes), reports (payout runs) and
logs (scheduler lifecycle). Every send is best-effort and reports whether the
message actually left.
"""
from __future__ import annotations

import html
import logging
import traceback
from typing import Any, Iterator

from aiogram import Bot
from aiogram.exceptions import TelegramBadRequest

from transfer_exchange.config import settings

__all__ = ["build_bot", "split_message", "send_log", "send_alert", "send_report"]

TELEGRAM_MESSAGE_LIMIT = 4096
ALERT_TRACEBACK_LINES = 3

_logger = logging.getLogger("marketplace.notify")


def build_bot(token: str | None = None) -> Bot | None:
    """Ops channel bot, or None when no token is configured."""
    token = token or settings.alerts_bot_token
    if not token:
        return None
    return Bot(token=token)


def split_message(text: str, limit: int = TELEGRAM_MESSAGE_LIMIT) -> Iterator[str]:
    """Yield *text* in pieces that fit one Telegram message, breaking on lines."""
    text = (text or "").strip()
    chunk: list[str] = []
    used = 0
    for line in text.splitlines():
        while len(line) > limit:
            if chunk:
                yield "\n".join(chunk)
                chunk, used = [], 0
            yield line[:limit]
            line = line[limit:]
        extra = len(line) + (1 if chunk else 0)
        if used + extra > limit:
            yield "\n".join(chunk)
            chunk, used = [], 0
            extra = len(line)
        chunk.append(line)
        used += extra
    if chunk:
        yield "\n".join(chunk)


def _compose_alert(text: str, exc: BaseException | None) -> str:
    parts = [text.strip()] if text else []
    if exc is not None:
        parts.append(f"{type(exc).__name__}: {exc}")
        frames = [
            line.strip()
            for line in traceback.format_exception(exc.__class__, exc, exc.__traceback__)
            if line.strip()
        ]
        if frames:
            parts.append("Traceback:")
            parts.extend(frames[:ALERT_TRACEBACK_LINES])
    alert = "\n".join(parts)
    if len(alert) > TELEGRAM_MESSAGE_LIMIT:
        alert = alert[: TELEGRAM_MESSAGE_LIMIT - 3] + "..."
    return alert


async def _deliver(bot: Bot | None, chat_id: int | None, text: str, **kwargs: Any) -> bool:
    if bot is None or chat_id is None:
        _logger.info("[notify] no bot/chat configured, dropped: %s", text[:200])
        return False
    # escape before splitting so entities never straddle two messages
    pieces = list(split_message(html.escape(text or "", quote=False)))
    if not pieces:
        return False
    try:
        for piece in pieces:
            await bot.send_message(chat_id, piece, **kwargs)
    except TelegramBadRequest as exc:
        _logger.warning("[notify] chat=%s rejected message: %s", chat_id, exc)
        return False
    except Exception:
        _logger.warning("[notify] chat=%s delivery failed", chat_id, exc_info=True)
        return False
    return True


async def send_log(bot: Bot | None, text: str, *, chat_id: int | None = None, **kwargs: Any) -> bool:
    return await _deliver(bot, chat_id if chat_id is not None else settings.logs_channel_id, text, **kwargs)


async def send_alert(
    bot: Bot | None,
    text: str,
    *,
    chat_id: int | None = None,
    exc: BaseException | None = None,
    **kwargs: Any,
) -> bool:
    """Escalations that need a human (no bids, every offer rejected, crashes)."""
    target = chat_id if chat_id is not None else settings.alerts_channel_id
    return await _deliver(bot, target, _compose_alert(text, exc), **kwargs)


async def send_report(
    bot: Bot | None,
    text: str,
    *,
    chat_id: int | None = None,
    **kwargs: Any,
) -> bool:
    """Payout run summaries; long operator lists go out as several messages."""
    target = chat_id if chat_id is not None else settings.reports_channel_id
    return await _deliver(bot, target, text, **kwargs)
