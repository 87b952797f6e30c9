from __future__ import annotations

import asyncio
import logging

from roulette.game.clock import RoundClock
from roulette.game.settlement import SettlementSummary

logger = logging.getLogger(__name__)

MIN_INTERVAL_SEC = 1


async def run_round_sweeper(clock: RoundClock, interval_sec: int) -> None:
    while True:
        try:
            await sweep_once(clock)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Ошибка проверки раундов")

        await asyncio.sleep(max(MIN_INTERVAL_SEC, interval_sec))


async def sweep_once(clock: RoundClock) -> list[SettlementSummary]:
    summaries = await clock.check_and_settle_due_rounds()
    settled = [s.round_id for s in summaries if not s.already_settled]
    if settled:
        logger.info("Закрыты раунды по таймеру: %s", settled)
    return summaries
