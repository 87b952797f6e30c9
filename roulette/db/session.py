from __future__ import annotations

from typing import Any

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from roulette.config import Settings

SQLITE_BUSY_TIMEOUT_SEC = 5.0


def create_engine_and_sessionmaker(settings: Settings) -> tuple[AsyncEngine, async_sessionmaker]:
    return create_engine_for_url(settings.database_url)


def create_engine_for_url(database_url: str) -> tuple[AsyncEngine, async_sessionmaker]:
    is_sqlite = make_url(database_url).get_backend_name() == "sqlite"
    connect_args: dict[str, Any] = {"timeout": SQLITE_BUSY_TIMEOUT_SEC} if is_sqlite else {}

    engine = create_async_engine(database_url, future=True, echo=False, connect_args=connect_args)
    if is_sqlite:
        event.listen(engine.sync_engine, "connect", _enable_sqlite_foreign_keys)

    session_factory = async_sessionmaker(bind=engine, expire_on_commit=False)
    return engine, session_factory


def _enable_sqlite_foreign_keys(dbapi_connection: Any, _connection_record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()
