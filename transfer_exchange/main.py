# transfer_exchange/main.py
from __future__ import annotations

import asyncio
import logging
import os
from contextlib import suppress

from transfer_exchange.infra.notify import build_bot, send_alert
from transfer_exchange.services.bidding_scheduler import run_scheduler
from transfer_exchange.services.timers import registry

logger = logging.getLogger(__name__)


async def main() -> int:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    bot = build_bot()
    if bot is None:
        logger.warning("ALERTS_BOT_TOKEN not set; ops messages will only be logged")

    exit_code = 0
    scheduler_task = asyncio.create_task(run_scheduler(bot=bot), name="bidding_scheduler")
    try:
        await scheduler_task
    except (KeyboardInterrupt, asyncio.CancelledError):
        pass
    except Exception as exc:
        logger.exception("Scheduler stopped: %s", exc)
        await send_alert(bot, f"Bidding scheduler stopped: {type(exc).__name__}: {exc}", exc=exc)
        exit_code = 1
    finally:
        scheduler_task.cancel()
        with suppress(asyncio.CancelledError):
            await scheduler_task
        await registry.shutdown()
        if bot is not None:
            await bot.session.close()
    return exit_code


if __name__ == "__main__":
    raise SystemExit(asyncio.run(main()))
