import pytest
from sqlalchemy import select

from transfer_exchange.db import models as m
from transfer_exchange.infra import notify
from transfer_exchange.services import live_log
from transfer_exchange.services.push_notifications import (
    NotificationEvent,
    notify_admin,
    notify_operator,
    render,
)


class _RecordingBot:
    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail

    async def send_message(self, chat_id, text, **kwargs):
        if self.fail:
            raise RuntimeError("telegram unavailable")
        self.sent.append((chat_id, text))


def test_render_fills_template():
    text = render(NotificationEvent.JOB_WON, job_id=5, amount="80.00")
    assert text == "Job #5 is yours for £80.00."


def test_render_with_missing_key_falls_back():
    assert render(NotificationEvent.OFFER_RECEIVED, job_id=5) == "Event: offer_received"
    entries = live_log.snapshot(source="notifications")
    assert entries and entries[-1].level == "ERROR"


@pytest.mark.asyncio
async def test_notify_operator_queues_outbox_row(async_session, approved_operators):
    alpha = approved_operators[0]

    queued = await notify_operator(
        async_session, operator_id=alpha.id, event=NotificationEvent.JOB_LOST, job_id=9
    )
    await async_session.commit()

    assert queued is True
    row = await async_session.scalar(select(m.notifications_outbox))
    assert row.operator_id == alpha.id
    assert row.event == "job_lost"
    assert row.payload == {"message": "Job #9 was awarded to another operator.", "job_id": 9}
    assert row.processed_at is None


@pytest.mark.asyncio
async def test_notify_admin_without_bot_only_logs():
    sent = await notify_admin(None, event=NotificationEvent.ESCALATION_NO_BIDS, job_id=1, booking_reference="TX-1")
    assert sent is False


@pytest.mark.asyncio
async def test_notify_admin_routes_reports_and_alerts():
    bot = _RecordingBot()

    alert_sent = await notify_admin(
        bot,
        event=NotificationEvent.ESCALATION_ALL_REJECTED,
        chat_id=-100,
        job_id=3,
        booking_reference="TX-3",
        attempts=2,
    )
    report_sent = await notify_admin(
        bot,
        event=NotificationEvent.PAYOUT_RUN_SUMMARY,
        chat_id=-200,
        paid_count=1,
        total="50.00",
        skipped="none",
    )

    assert alert_sent and report_sent
    assert [chat for chat, _ in bot.sent] == [-100, -200]
    assert "all 2 offer(s) declined" in bot.sent[0][1]


@pytest.mark.asyncio
async def test_send_failure_is_swallowed():
    bot = _RecordingBot(fail=True)
    assert await notify.send_alert(bot, "job stuck", chat_id=-100) is False


def test_alert_text_includes_exception_summary():
    try:
        raise ValueError("bad row")
    except ValueError as exc:
        text = notify._compose_alert("payout run failed", exc)
    assert text.startswith("payout run failed\nValueError: bad row")
    assert "Traceback:" in text


def test_split_message_breaks_on_lines():
    lines = [f"op#{i}: £{i}.00" for i in range(1, 6)]

    pieces = list(notify.split_message("\n".join(lines), limit=20))

    assert all(len(piece) <= 20 for piece in pieces)
    assert "\n".join(pieces).splitlines() == lines
    assert list(notify.split_message("x" * 45, limit=20)) == ["x" * 20, "x" * 20, "x" * 5]
    assert list(notify.split_message("   ")) == []


@pytest.mark.asyncio
async def test_long_report_is_sent_in_pieces():
    bot = _RecordingBot()
    report = "\n".join(f"op#{i} paid £{i}.00 for jobs [{i}]" for i in range(400))

    assert await notify.send_report(bot, report, chat_id=-200)

    assert len(bot.sent) > 1
    assert all(len(text) <= notify.TELEGRAM_MESSAGE_LIMIT for _, text in bot.sent)
    assert "\n".join(text for _, text in bot.sent) == report
