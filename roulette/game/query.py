from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from roulette.db.models import Round
from roulette.db.repository import LedgerCounts, LedgerRepository, StakeRow
from roulette.utils import as_utc, now_utc, percent_of

MAX_HISTORY_LIMIT = 50


@dataclass(slots=True)
class PlayerView:
    user_id: int
    username: str | None
    first_name: str | None
    last_name: str | None
    photo_url: str | None = None


@dataclass(slots=True)
class StakeView:
    stake_id: int
    user: PlayerView
    amount: int
    win_percentage: float
    created_at: datetime


@dataclass(slots=True)
class PoolStats:
    total_bets: int
    total_pool: int
    average_bet: float
    min_bet: int
    max_bet: int


@dataclass(slots=True)
class RoundView:
    round_id: int
    status: str
    total_pool: int
    created_at: datetime
    round_deadline: datetime
    time_until_start: float
    stakes: list[StakeView] = field(default_factory=list)
    stats: PoolStats | None = None


@dataclass(slots=True)
class FinishedRoundView:
    round_id: int
    total_pool: int
    commission: int
    prize: int
    winner: PlayerView | None
    created_at: datetime
    finished_at: datetime | None
    stakes: list[StakeView] = field(default_factory=list)


def player_view(row: StakeRow) -> PlayerView:
    user = row.user
    if user is None:
        return PlayerView(user_id=row.stake.user_id, username=None, first_name=None, last_name=None)
    return PlayerView(
        user_id=user.id,
        username=user.username,
        first_name=user.first_name,
        last_name=user.last_name,
        photo_url=user.photo_url,
    )


def stake_views(rows: list[StakeRow], total_pool: int) -> list[StakeView]:
    return [
        StakeView(
            stake_id=row.stake.id,
            user=player_view(row),
            amount=row.stake.amount,
            win_percentage=percent_of(row.stake.amount, total_pool),
            created_at=row.stake.created_at,
        )
        for row in rows
    ]


def pool_stats(rows: list[StakeRow]) -> PoolStats:
    amounts = [row.stake.amount for row in rows]
    if not amounts:
        return PoolStats(total_bets=0, total_pool=0, average_bet=0.0, min_bet=0, max_bet=0)
    return PoolStats(
        total_bets=len(amounts),
        total_pool=sum(amounts),
        average_bet=round(sum(amounts) / len(amounts), 2),
        min_bet=min(amounts),
        max_bet=max(amounts),
    )


def time_until(deadline: datetime, now: datetime) -> float:
    remaining = (as_utc(deadline) - as_utc(now)).total_seconds()
    return max(0.0, round(remaining, 3))


class RoundQuery:
    def __init__(self, repo: LedgerRepository, clock: Callable[[], datetime] = now_utc) -> None:
        self._repo = repo
        self._clock = clock

    async def current_round(self) -> RoundView | None:
        async with self._repo.transaction() as store:
            round_ = await store.find_open_round()
            if round_ is None:
                return None
            rows = (await store.list_stake_rows([round_.id]))[round_.id]

        return self._round_view(round_, rows)

    async def history(self, limit: int = 10) -> list[FinishedRoundView]:
        limit = max(1, min(limit, MAX_HISTORY_LIMIT))
        async with self._repo.transaction() as store:
            rounds = await store.list_finished_rounds(limit=limit)
            rows_by_round = await store.list_stake_rows([round_.id for round_ in rounds])
            winner_ids = [round_.winner_id for round_ in rounds if round_.winner_id is not None]
            winners = await store.find_users(winner_ids)

        views: list[FinishedRoundView] = []
        for round_ in rounds:
            winner = winners.get(round_.winner_id) if round_.winner_id is not None else None
            views.append(
                FinishedRoundView(
                    round_id=round_.id,
                    total_pool=round_.total_pool,
                    commission=round_.commission,
                    prize=round_.total_pool - round_.commission if round_.winner_id is not None else 0,
                    winner=(
                        PlayerView(
                            user_id=winner.id,
                            username=winner.username,
                            first_name=winner.first_name,
                            last_name=winner.last_name,
                            photo_url=winner.photo_url,
                        )
                        if winner
                        else None
                    ),
                    created_at=round_.created_at,
                    finished_at=round_.finished_at,
                    stakes=stake_views(rows_by_round[round_.id], round_.total_pool),
                )
            )
        return views

    async def stats(self) -> LedgerCounts:
        async with self._repo.transaction() as store:
            return await store.count_ledger()

    def _round_view(self, round_: Round, rows: list[StakeRow]) -> RoundView:
        # Stakes are the source of truth for the pool shown to players.
        total_pool = sum(row.stake.amount for row in rows)
        return RoundView(
            round_id=round_.id,
            status=round_.status,
            total_pool=total_pool,
            created_at=round_.created_at,
            round_deadline=round_.round_deadline,
            time_until_start=time_until(round_.round_deadline, self._clock()),
            stakes=stake_views(rows, total_pool),
            stats=pool_stats(rows),
        )
