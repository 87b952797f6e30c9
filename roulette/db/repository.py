from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, TypeVar

from aiogram.utils.web_app import WebAppUser
from sqlalchemy import Select, desc, func, select, update
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from roulette.config import Settings
from roulette.db.models import (
    OPEN_STATUSES,
    ROUND_ACTIVE,
    ROUND_FINISHED,
    ROUND_WAITING,
    Base,
    Round,
    Stake,
    User,
)
from roulette.game.errors import ConcurrencyConflictError, StoreUnavailableError
from roulette.utils import now_utc

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRY_BACKOFF_SEC = 0.05
# serialization_failure, deadlock_detected
CONFLICT_SQLSTATES = {"40001", "40P01"}
SQLITE_LOCK_MARKERS = ("database is locked", "database table is locked")
UNIQUE_VIOLATION_SQLSTATE = "23505"
SQLITE_UNIQUE_MARKER = "unique constraint failed"


@dataclass(slots=True)
class StakeRow:
    stake: Stake
    user: User | None


@dataclass(slots=True)
class LedgerCounts:
    waiting_rounds: int
    active_rounds: int
    finished_rounds: int
    users: int
    stakes: int


def is_conflict(err: DBAPIError) -> bool:
    orig = err.orig
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    message = str(orig).lower()
    if isinstance(err, IntegrityError):
        # Only a lost insert race is worth a retry; FK or NOT NULL failures repeat.
        return sqlstate == UNIQUE_VIOLATION_SQLSTATE or SQLITE_UNIQUE_MARKER in message
    if sqlstate in CONFLICT_SQLSTATES:
        return True
    return any(marker in message for marker in SQLITE_LOCK_MARKERS)


class LedgerStore:
    # Core updates bypass the identity map, so reads use populate_existing.
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    @property
    def session(self) -> AsyncSession:
        return self._session

    async def find_user(self, user_id: int) -> User | None:
        return await self._session.get(User, user_id, populate_existing=True)

    async def upsert_user(self, web_user: WebAppUser, *, starting_balance: int) -> User:
        user = await self.find_user(web_user.id)
        if user:
            user.username = web_user.username
            user.first_name = web_user.first_name
            user.last_name = web_user.last_name
            user.photo_url = web_user.photo_url
            await self._session.flush()
            return user

        user = User(
            id=web_user.id,
            username=web_user.username,
            first_name=web_user.first_name,
            last_name=web_user.last_name,
            photo_url=web_user.photo_url,
            balance=starting_balance,
            created_at=now_utc(),
        )
        self._session.add(user)
        await self._session.flush()
        return user

    async def adjust_balance(self, user_id: int, delta: int) -> User | None:
        query = update(User).where(User.id == user_id).values(balance=User.balance + delta)
        if delta < 0:
            query = query.where(User.balance >= -delta)

        result = await self._session.execute(query.execution_options(synchronize_session=False))
        if result.rowcount != 1:
            return None
        return await self.find_user(user_id)

    async def find_round(self, round_id: int) -> Round | None:
        return await self._session.get(Round, round_id, populate_existing=True)

    async def find_open_round(self) -> Round | None:
        result = await self._session.execute(
            self._open_rounds_query().limit(1).execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_open_rounds(self) -> list[Round]:
        result = await self._session.execute(
            self._open_rounds_query().execution_options(populate_existing=True)
        )
        return list(result.scalars())

    async def create_round(self, *, created_at: datetime, deadline: datetime) -> Round:
        round_ = Round(
            status=ROUND_WAITING,
            total_pool=0,
            commission=0,
            open_slot=True,
            created_at=created_at,
            round_deadline=deadline,
        )
        self._session.add(round_)
        await self._session.flush()
        return round_

    async def finish_round(self, round_id: int, *, finished_at: datetime) -> bool:
        result = await self._session.execute(
            update(Round)
            .where(Round.id == round_id, Round.status.in_(OPEN_STATUSES))
            .values(status=ROUND_FINISHED, finished_at=finished_at, open_slot=None)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def update_round(self, round_id: int, **fields: Any) -> Round | None:
        await self._session.execute(
            update(Round)
            .where(Round.id == round_id)
            .values(**fields)
            .execution_options(synchronize_session=False)
        )
        return await self.find_round(round_id)

    async def add_to_pool(self, round_id: int, amount: int) -> bool:
        result = await self._session.execute(
            update(Round)
            .where(Round.id == round_id, Round.status.in_(OPEN_STATUSES))
            .values(total_pool=Round.total_pool + amount)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def find_stake(self, user_id: int, round_id: int) -> Stake | None:
        result = await self._session.execute(
            select(Stake)
            .where(Stake.user_id == user_id, Stake.round_id == round_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def create_stake(
        self,
        *,
        user_id: int,
        round_id: int,
        amount: int,
        created_at: datetime,
    ) -> Stake:
        stake = Stake(user_id=user_id, round_id=round_id, amount=amount, created_at=created_at)
        self._session.add(stake)
        await self._session.flush()
        return stake

    async def update_stake_amount(self, stake_id: int, delta: int) -> Stake | None:
        await self._session.execute(
            update(Stake)
            .where(Stake.id == stake_id)
            .values(amount=Stake.amount + delta)
            .execution_options(synchronize_session=False)
        )
        return await self._session.get(Stake, stake_id, populate_existing=True)

    async def list_stakes_for_round(self, round_id: int) -> list[Stake]:
        result = await self._session.execute(
            select(Stake)
            .where(Stake.round_id == round_id)
            .order_by(Stake.id.asc())
            .execution_options(populate_existing=True)
        )
        return list(result.scalars())

    async def list_stake_rows(self, round_ids: list[int]) -> dict[int, list[StakeRow]]:
        rows: dict[int, list[StakeRow]] = {round_id: [] for round_id in round_ids}
        if not round_ids:
            return rows

        result = await self._session.execute(
            select(Stake, User)
            .join(User, Stake.user_id == User.id, isouter=True)
            .where(Stake.round_id.in_(round_ids))
            .order_by(Stake.id.asc())
        )
        for stake, user in result.all():
            rows[stake.round_id].append(StakeRow(stake=stake, user=user))
        return rows

    async def list_finished_rounds(self, *, limit: int) -> list[Round]:
        result = await self._session.execute(
            select(Round)
            .where(Round.status == ROUND_FINISHED)
            .order_by(desc(Round.finished_at), Round.id.desc())
            .limit(limit)
        )
        return list(result.scalars())

    async def list_users(self) -> list[User]:
        result = await self._session.execute(
            select(User).order_by(User.created_at.desc(), User.id.desc())
        )
        return list(result.scalars())

    async def find_users(self, user_ids: list[int]) -> dict[int, User]:
        if not user_ids:
            return {}
        result = await self._session.execute(select(User).where(User.id.in_(user_ids)))
        return {user.id: user for user in result.scalars()}

    async def count_ledger(self) -> LedgerCounts:
        status_q = await self._session.execute(
            select(Round.status, func.count(Round.id)).group_by(Round.status)
        )
        by_status = {status: int(count) for status, count in status_q.all()}
        users_q = await self._session.execute(select(func.count(User.id)))
        stakes_q = await self._session.execute(select(func.count(Stake.id)))
        return LedgerCounts(
            waiting_rounds=by_status.get(ROUND_WAITING, 0),
            active_rounds=by_status.get(ROUND_ACTIVE, 0),
            finished_rounds=by_status.get(ROUND_FINISHED, 0),
            users=int(users_q.scalar_one()),
            stakes=int(stakes_q.scalar_one()),
        )

    def _open_rounds_query(self) -> Select[tuple[Round]]:
        return (
            select(Round)
            .where(Round.status.in_(OPEN_STATUSES))
            .order_by(Round.created_at.desc(), Round.id.desc())
        )


class LedgerRepository:
    def __init__(self, session_factory: async_sessionmaker, settings: Settings) -> None:
        self._session_factory = session_factory
        self._attempts = max(1, settings.store_retry_attempts)
        self._starting_balance = settings.starting_balance
        self._round_duration = timedelta(seconds=settings.round_duration_sec)

    async def init_db(self, engine: AsyncEngine) -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[LedgerStore]:
        async with self._session_factory() as session:
            async with session.begin():
                yield LedgerStore(session)

    async def run(
        self,
        operation: Callable[[LedgerStore], Awaitable[T]],
        *,
        name: str = "transaction",
        attempts: int | None = None,
    ) -> T:
        budget = max(1, attempts or self._attempts)
        attempt = 0
        while True:
            attempt += 1
            try:
                async with self.transaction() as store:
                    return await operation(store)
            except DBAPIError as err:
                if not is_conflict(err):
                    logger.error("Хранилище недоступно (%s): %s", name, err.orig)
                    raise StoreUnavailableError("Хранилище недоступно") from err
                if attempt >= budget:
                    logger.warning("Конфликт %s не разрешился за %s попыток", name, budget)
                    raise ConcurrencyConflictError(
                        f"Не удалось выполнить {name}: конкурентное изменение"
                    ) from err

                logger.info("Конфликт %s, повтор %s/%s: %s", name, attempt, budget, err.orig)
                await asyncio.sleep(RETRY_BACKOFF_SEC * attempt)

    async def ensure_user(self, web_user: WebAppUser) -> User:
        return await self.run(
            lambda store: store.upsert_user(web_user, starting_balance=self._starting_balance),
            name="ensure_user",
        )

    async def list_users(self) -> list[User]:
        async with self.transaction() as store:
            return await store.list_users()

    async def get_user(self, user_id: int) -> User | None:
        async with self._session_factory() as session:
            return await session.get(User, user_id)

    async def ensure_open_round(self) -> Round:
        async def _bootstrap(store: LedgerStore) -> Round:
            existing = await store.find_open_round()
            if existing:
                return existing

            now = now_utc()
            round_ = await store.create_round(created_at=now, deadline=now + self._round_duration)
            logger.info("Создан стартовый раунд %s", round_.id)
            return round_

        return await self.run(_bootstrap, name="ensure_open_round")
