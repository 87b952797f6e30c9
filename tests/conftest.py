from __future__ import annotations

import hashlib
import hmac
import json
import time
from datetime import datetime, timedelta
from typing import Any
from urllib.parse import urlencode

import pytest
from sqlalchemy import func, select

from roulette.config import Settings
from roulette.db.models import OPEN_STATUSES, Round, Stake, User
from roulette.db.repository import LedgerRepository
from roulette.db.session import create_engine_for_url
from roulette.utils import now_utc

BOT_TOKEN = "123456:TEST-TOKEN"


class FixedDraw:
    """Random source that replays predetermined draws."""

    def __init__(self, *values: int) -> None:
        self._values = list(values) or [0]
        self.calls: list[int] = []

    def randrange(self, stop: int) -> int:
        self.calls.append(stop)
        if len(self._values) > 1:
            return self._values.pop(0)
        return self._values[0]


class FrozenClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or now_utc()

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "BOT_TOKEN": BOT_TOKEN,
        "ROUND_DURATION_SEC": 30,
        "COMMISSION_RATE": 0.05,
        "STARTING_BALANCE": 1000,
        "ALLOW_TOP_UP": True,
        "STORE_RETRY_ATTEMPTS": 10,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def sign_init_data(
    user: dict[str, Any],
    *,
    token: str = BOT_TOKEN,
    auth_date: int | None = None,
) -> str:
    fields = {
        "auth_date": str(auth_date if auth_date is not None else int(time.time())),
        "query_id": "AAHdF6IQAAAAAN0XohDhrOrc",
        "user": json.dumps(user, separators=(",", ":")),
    }
    data_check = "\n".join(f"{key}={value}" for key, value in sorted(fields.items()))
    secret = hmac.new(b"WebAppData", token.encode(), hashlib.sha256).digest()
    fields["hash"] = hmac.new(secret, data_check.encode(), hashlib.sha256).hexdigest()
    return urlencode(fields)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
async def db(tmp_path):
    # A file database gives every session its own connection, so concurrent
    # transactions really contend for the SQLite write lock.
    engine, session_factory = create_engine_for_url(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    yield engine, session_factory
    await engine.dispose()


@pytest.fixture
async def repo(db, settings) -> LedgerRepository:
    engine, session_factory = db
    repository = LedgerRepository(session_factory, settings)
    await repository.init_db(engine)
    return repository


async def add_user(repo: LedgerRepository, user_id: int, balance: int) -> None:
    async with repo.transaction() as store:
        store.session.add(
            User(id=user_id, username=f"user{user_id}", first_name="Test", balance=balance, created_at=now_utc())
        )


async def balance_of(repo: LedgerRepository, user_id: int) -> int:
    async with repo.transaction() as store:
        user = await store.find_user(user_id)
        assert user is not None
        return user.balance


async def load_round(repo: LedgerRepository, round_id: int) -> Round:
    async with repo.transaction() as store:
        round_ = await store.find_round(round_id)
        assert round_ is not None
        return round_


async def stakes_of(repo: LedgerRepository, round_id: int) -> list[Stake]:
    async with repo.transaction() as store:
        return await store.list_stakes_for_round(round_id)


async def open_round_count(repo: LedgerRepository) -> int:
    async with repo.transaction() as store:
        result = await store.session.execute(
            select(func.count(Round.id)).where(Round.status.in_(OPEN_STATUSES))
        )
        return int(result.scalar_one())


async def round_count(repo: LedgerRepository) -> int:
    async with repo.transaction() as store:
        result = await store.session.execute(select(func.count(Round.id)))
        return int(result.scalar_one())
