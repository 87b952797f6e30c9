from __future__ import annotations

from datetime import datetime
from typing import Callable

from roulette.db.models import Round
from roulette.db.repository import LedgerRepository
from roulette.game.errors import RoundNotFoundError
from roulette.game.settlement import SettlementEngine, SettlementSummary
from roulette.utils import as_utc, now_utc


def is_due(round_: Round, now: datetime) -> bool:
    return round_.is_open and as_utc(now) >= as_utc(round_.round_deadline)


class RoundClock:
    def __init__(
        self,
        repo: LedgerRepository,
        engine: SettlementEngine,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self._repo = repo
        self._engine = engine
        self._clock = clock

    async def due_round_ids(self) -> list[int]:
        now = self._clock()
        async with self._repo.transaction() as store:
            rounds = await store.list_open_rounds()
        return [round_.id for round_ in rounds if is_due(round_, now)]

    async def check_and_settle_due_rounds(self) -> list[SettlementSummary]:
        summaries: list[SettlementSummary] = []
        for round_id in await self.due_round_ids():
            summaries.append(await self._engine.settle(round_id))
        return summaries

    async def settle_if_due(self) -> SettlementSummary | None:
        summaries = await self.check_and_settle_due_rounds()
        return summaries[0] if summaries else None

    async def settle_round_if_due(self, round_id: int) -> SettlementSummary | None:
        async with self._repo.transaction() as store:
            round_ = await store.find_round(round_id)
        if round_ is None:
            raise RoundNotFoundError(f"Раунд {round_id} не найден")
        # A finished round falls through to the engine's stored summary.
        if round_.is_open and not is_due(round_, self._clock()):
            return None
        return await self._engine.settle(round_id)
