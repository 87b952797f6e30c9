from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from aiohttp import web
from sqlalchemy.ext.asyncio import async_sessionmaker

from roulette.api.routes import SERVICES_KEY, error_middleware, routes
from roulette.config import Settings
from roulette.db.repository import LedgerRepository
from roulette.game.clock import RoundClock
from roulette.game.intake import StakeIntake
from roulette.game.query import RoundQuery
from roulette.game.settlement import RandomSource, SettlementEngine
from roulette.utils import now_utc


@dataclass(slots=True)
class GameServices:
    settings: Settings
    repo: LedgerRepository
    intake: StakeIntake
    engine: SettlementEngine
    clock: RoundClock
    query: RoundQuery


def build_services(
    settings: Settings,
    session_factory: async_sessionmaker,
    rng: RandomSource | None = None,
    clock: Callable[[], datetime] = now_utc,
) -> GameServices:
    repo = LedgerRepository(session_factory, settings)
    engine = SettlementEngine(repo, settings, rng=rng, clock=clock)
    return GameServices(
        settings=settings,
        repo=repo,
        intake=StakeIntake(repo, settings, clock=clock),
        engine=engine,
        clock=RoundClock(repo, engine, clock=clock),
        query=RoundQuery(repo, clock=clock),
    )


def create_app(services: GameServices) -> web.Application:
    app = web.Application(middlewares=[error_middleware])
    app[SERVICES_KEY] = services
    app.add_routes(routes)
    return app
