from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from aiohttp import web
from aiogram.utils.web_app import WebAppUser

from roulette.db.models import Stake, User
from roulette.game.errors import (
    AlreadyStakedError,
    AuthError,
    ConcurrencyConflictError,
    InsufficientBalanceError,
    InvalidAmountError,
    NoActiveRoundError,
    RoundClosedError,
    RoundNotFoundError,
    RouletteError,
    StoreUnavailableError,
    UserNotFoundError,
)
from roulette.game.intake import validate_amount
from roulette.game.query import FinishedRoundView, PlayerView, RoundView, StakeView
from roulette.game.settlement import SettlementSummary
from roulette.services.telegram_auth import authenticate
from roulette.utils import as_utc

if TYPE_CHECKING:
    from roulette.api.app import GameServices

logger = logging.getLogger(__name__)

routes = web.RouteTableDef()
SERVICES_KEY: web.AppKey[GameServices] = web.AppKey("services")

ERROR_STATUS: dict[type[RouletteError], int] = {
    InvalidAmountError: 400,
    InsufficientBalanceError: 400,
    AuthError: 401,
    RoundNotFoundError: 404,
    UserNotFoundError: 404,
    NoActiveRoundError: 404,
    RoundClosedError: 409,
    AlreadyStakedError: 409,
    ConcurrencyConflictError: 409,
    StoreUnavailableError: 503,
}


def _error(code: str, message: str, status: int) -> web.Response:
    return web.json_response({"ok": False, "error": code, "message": message}, status=status)


@web.middleware
async def error_middleware(
    request: web.Request,
    handler: Callable[[web.Request], Awaitable[web.StreamResponse]],
) -> web.StreamResponse:
    try:
        return await handler(request)
    except RouletteError as err:
        status = ERROR_STATUS.get(type(err), 400)
        if status >= 500:
            logger.error("%s %s: %s", request.method, request.path, err)
        return _error(err.code, str(err), status)


def _services(request: web.Request) -> GameServices:
    return request.app[SERVICES_KEY]


def _web_user(request: web.Request) -> WebAppUser:
    settings = _services(request).settings
    return authenticate(
        request.headers.get("Authorization"),
        settings.clean_bot_token,
        max_age_sec=settings.init_data_max_age_sec,
    )


async def _json_body(request: web.Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return as_utc(value).isoformat()


def user_payload(user: User) -> dict[str, Any]:
    return {
        "id": user.id,
        "username": user.username,
        "firstName": user.first_name,
        "lastName": user.last_name,
        "photoUrl": user.photo_url,
        "balance": user.balance,
        "createdAt": _iso(user.created_at),
    }


def player_payload(player: PlayerView) -> dict[str, Any]:
    return {
        "id": player.user_id,
        "username": player.username,
        "firstName": player.first_name,
        "lastName": player.last_name,
        "photoUrl": player.photo_url,
    }


def stake_payload(stake: StakeView) -> dict[str, Any]:
    return {
        "id": stake.stake_id,
        "amount": stake.amount,
        "winPercentage": stake.win_percentage,
        "createdAt": _iso(stake.created_at),
        "user": player_payload(stake.user),
    }


def round_payload(view: RoundView) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": view.round_id,
        "status": view.status,
        "totalPool": view.total_pool,
        "createdAt": _iso(view.created_at),
        "roundDeadline": _iso(view.round_deadline),
        "timeUntilStart": view.time_until_start,
        "bets": [stake_payload(stake) for stake in view.stakes],
    }
    if view.stats:
        payload["stats"] = {
            "totalBets": view.stats.total_bets,
            "totalPool": view.stats.total_pool,
            "averageBet": view.stats.average_bet,
            "minBet": view.stats.min_bet,
            "maxBet": view.stats.max_bet,
        }
    return payload


def finished_payload(view: FinishedRoundView) -> dict[str, Any]:
    return {
        "id": view.round_id,
        "status": "finished",
        "totalPool": view.total_pool,
        "commission": view.commission,
        "prize": view.prize,
        "winnerId": view.winner.user_id if view.winner else None,
        "winner": player_payload(view.winner) if view.winner else None,
        "createdAt": _iso(view.created_at),
        "finishedAt": _iso(view.finished_at),
        "bets": [stake_payload(stake) for stake in view.stakes],
    }


def summary_payload(summary: SettlementSummary) -> dict[str, Any]:
    return {
        "roundId": summary.round_id,
        "winnerId": summary.winner_id,
        "totalPool": summary.total_pool,
        "commission": summary.commission,
        "prize": summary.prize,
        "alreadySettled": summary.already_settled,
        "nextRoundId": summary.next_round_id,
    }


def own_stake_payload(stake: Stake) -> dict[str, Any]:
    return {
        "id": stake.id,
        "roundId": stake.round_id,
        "amount": stake.amount,
        "createdAt": _iso(stake.created_at),
    }


async def _current_round(services: GameServices) -> RoundView:
    await services.clock.settle_if_due()
    view = await services.query.current_round()
    if view is None:
        raise NoActiveRoundError("Нет активного раунда")
    return view


@routes.post("/api/auth/telegram")
async def auth_telegram(request: web.Request) -> web.Response:
    services = _services(request)
    web_user = _web_user(request)
    user = await services.repo.ensure_user(web_user)
    logger.info("Авторизован пользователь %s", user.id)
    return web.json_response({"ok": True, "user": user_payload(user)})


@routes.get("/api/user/me")
async def user_me(request: web.Request) -> web.Response:
    services = _services(request)
    web_user = _web_user(request)
    user = await services.repo.get_user(web_user.id)
    if user is None:
        raise UserNotFoundError("Пользователь не найден")
    return web.json_response({"ok": True, "user": user_payload(user)})


@routes.get("/api/users")
async def users_list(request: web.Request) -> web.Response:
    users = await _services(request).repo.list_users()
    return web.json_response({"ok": True, "users": [user_payload(user) for user in users]})


@routes.get("/api/game/current")
async def game_current(request: web.Request) -> web.Response:
    view = await _current_round(_services(request))
    return web.json_response({"ok": True, "game": round_payload(view)})


@routes.post("/api/bet")
async def place_bet(request: web.Request) -> web.Response:
    services = _services(request)
    web_user = _web_user(request)
    body = await _json_body(request)

    amount = validate_amount(body.get("amount"))
    round_id = body.get("roundId")
    if round_id is None:
        round_id = (await _current_round(services)).round_id
    else:
        await services.clock.settle_if_due()
    if isinstance(round_id, bool) or not isinstance(round_id, int):
        raise RoundNotFoundError("Некорректный идентификатор раунда")

    stake = await services.intake.place_stake(web_user.id, round_id, amount)
    user = await services.repo.get_user(web_user.id)
    view = await services.query.current_round()
    return web.json_response(
        {
            "ok": True,
            "bet": own_stake_payload(stake),
            "user": user_payload(user) if user else None,
            "game": round_payload(view) if view else None,
        }
    )


@routes.post("/api/game/finish")
async def game_finish(request: web.Request) -> web.Response:
    services = _services(request)
    round_id = (await _json_body(request)).get("roundId")
    if round_id is None:
        summary = await services.clock.settle_if_due()
    elif isinstance(round_id, bool) or not isinstance(round_id, int):
        raise RoundNotFoundError("Некорректный идентификатор раунда")
    else:
        summary = await services.clock.settle_round_if_due(round_id)
    if summary is None:
        view = await services.query.current_round()
        if view is None:
            raise NoActiveRoundError("Нет активного раунда")
        return web.json_response(
            {
                "ok": False,
                "error": "round_not_due",
                "message": "Раунд ещё не завершён",
                "timeUntilStart": view.time_until_start,
            },
            status=409,
        )
    return web.json_response({"ok": True, "game": summary_payload(summary)})


@routes.get("/api/game/history")
async def game_history(request: web.Request) -> web.Response:
    services = _services(request)
    raw_limit = request.query.get("limit")
    try:
        limit = int(raw_limit) if raw_limit else services.settings.history_limit
    except ValueError:
        return _error("invalid_limit", "limit должен быть числом", 400)

    history = await services.query.history(limit)
    return web.json_response({"ok": True, "history": [finished_payload(v) for v in history]})


@routes.get("/api/game/stats")
async def game_stats(request: web.Request) -> web.Response:
    counts = await _services(request).query.stats()
    return web.json_response(
        {
            "ok": True,
            "stats": {
                "waitingGames": counts.waiting_rounds,
                "activeGames": counts.active_rounds,
                "finishedGames": counts.finished_rounds,
                "totalUsers": counts.users,
                "totalBets": counts.stakes,
            },
        }
    )
