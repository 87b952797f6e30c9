from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Protocol, Sequence, TypeVar

from roulette.config import Settings
from roulette.db.models import Round
from roulette.db.repository import LedgerRepository, LedgerStore
from roulette.game.errors import RoundNotFoundError, UserNotFoundError
from roulette.utils import floor_int, now_utc, to_decimal

logger = logging.getLogger(__name__)


class Weighted(Protocol):
    @property
    def amount(self) -> int: ...


class RandomSource(Protocol):
    def randrange(self, stop: int) -> int: ...


W = TypeVar("W", bound=Weighted)


@dataclass(slots=True)
class SettlementSummary:
    round_id: int
    winner_id: int | None
    total_pool: int
    commission: int
    prize: int
    already_settled: bool = False
    next_round_id: int | None = None

    @classmethod
    def from_finished(cls, round_: Round) -> SettlementSummary:
        prize = round_.total_pool - round_.commission if round_.winner_id is not None else 0
        return cls(
            round_id=round_.id,
            winner_id=round_.winner_id,
            total_pool=round_.total_pool,
            commission=round_.commission,
            prize=prize,
            already_settled=True,
        )

    def same_outcome(self, other: SettlementSummary) -> bool:
        return (
            self.round_id == other.round_id
            and self.winner_id == other.winner_id
            and self.total_pool == other.total_pool
            and self.commission == other.commission
            and self.prize == other.prize
        )


def pick_winner(stakes: Sequence[W], draw: int) -> W:
    """Return the stake whose cumulative interval ``[before, before + amount)`` holds ``draw``.

    ``stakes`` must already be in their fixed order (primary key). A draw that
    lands outside ``[0, sum(amounts))`` selects the last stake; that is the
    defined tie-break, not an error.
    """
    if not stakes:
        raise ValueError("Нет ставок для выбора победителя")

    cumulative = 0
    for stake in stakes:
        cumulative += stake.amount
        if 0 <= draw < cumulative:
            return stake
    return stakes[-1]


def compute_commission(total_pool: int, rate: float) -> int:
    if total_pool <= 0:
        return 0
    return floor_int(to_decimal(total_pool) * to_decimal(rate))


class SettlementEngine:
    def __init__(
        self,
        repo: LedgerRepository,
        settings: Settings,
        rng: RandomSource | None = None,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self._repo = repo
        self._rate = settings.commission_rate
        self._round_duration = timedelta(seconds=settings.round_duration_sec)
        self._rng: RandomSource = rng or random.SystemRandom()
        self._clock = clock

    async def settle(self, round_id: int) -> SettlementSummary:
        return await self._repo.run(
            lambda store: self._settle(store, round_id),
            name=f"settle({round_id})",
        )

    async def _settle(self, store: LedgerStore, round_id: int) -> SettlementSummary:
        now = self._clock()

        # First write of the transaction: concurrent settles queue behind it.
        if not await store.finish_round(round_id, finished_at=now):
            round_ = await store.find_round(round_id)
            if round_ is None:
                raise RoundNotFoundError(f"Раунд {round_id} не найден")
            logger.info("Раунд %s уже завершён", round_id)
            return SettlementSummary.from_finished(round_)

        round_ = await store.find_round(round_id)
        if round_ is None:
            raise RoundNotFoundError(f"Раунд {round_id} не найден")

        stakes = await store.list_stakes_for_round(round_id)
        total_pool = sum(stake.amount for stake in stakes)
        if total_pool != round_.total_pool:
            logger.warning(
                "Пул раунда %s расходится со ставками: %s != %s, пересчитан",
                round_id,
                round_.total_pool,
                total_pool,
            )

        winner_id: int | None = None
        commission = 0
        prize = 0
        if stakes:
            draw = self._rng.randrange(total_pool)
            winner = pick_winner(stakes, draw)
            winner_id = winner.user_id
            commission = compute_commission(total_pool, self._rate)
            prize = total_pool - commission
            if prize > 0 and await store.adjust_balance(winner_id, prize) is None:
                raise UserNotFoundError(f"Победитель {winner_id} не найден")

        await store.update_round(
            round_id,
            winner_id=winner_id,
            commission=commission,
            total_pool=total_pool,
        )
        successor = await store.create_round(created_at=now, deadline=now + self._round_duration)

        logger.info(
            "Раунд %s завершён: победитель=%s пул=%s комиссия=%s выплата=%s, следующий раунд %s",
            round_id,
            winner_id,
            total_pool,
            commission,
            prize,
            successor.id,
        )
        return SettlementSummary(
            round_id=round_id,
            winner_id=winner_id,
            total_pool=total_pool,
            commission=commission,
            prize=prize,
            next_round_id=successor.id,
        )
