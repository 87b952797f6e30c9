from __future__ import annotations

import asyncio
import logging

from aiohttp import web

from roulette.api.app import build_services, create_app
from roulette.config import get_settings
from roulette.db.session import create_engine_and_sessionmaker
from roulette.services.round_sweeper import run_round_sweeper

logger = logging.getLogger(__name__)


async def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )

    settings = get_settings()
    if not settings.clean_bot_token:
        raise RuntimeError(
            "BOT_TOKEN is empty in .env. Set BOT_TOKEN from @BotFather to validate Mini App init data."
        )

    engine, session_factory = create_engine_and_sessionmaker(settings)
    services = build_services(settings, session_factory)
    await services.repo.init_db(engine)
    current = await services.repo.ensure_open_round()
    logger.info("Текущий раунд %s, дедлайн %s", current.id, current.round_deadline)

    runner = web.AppRunner(create_app(services))
    await runner.setup()
    site = web.TCPSite(runner, settings.web_host, settings.web_port)

    sweeper_task = asyncio.create_task(
        run_round_sweeper(services.clock, settings.sweep_interval_sec),
        name="round-sweeper",
    )

    try:
        await site.start()
        logger.info("API слушает %s:%s", settings.web_host, settings.web_port)
        await asyncio.Event().wait()
    finally:
        sweeper_task.cancel()
        try:
            await sweeper_task
        except asyncio.CancelledError:
            pass

        await runner.cleanup()
        await engine.dispose()


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("Server stopped by user.")


if __name__ == "__main__":
    run()
