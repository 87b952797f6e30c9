from __future__ import annotations

from datetime import datetime, timedelta

from aiogram.utils.web_app import WebAppInitData, WebAppUser, safe_parse_webapp_init_data

from roulette.game.errors import AuthError
from roulette.utils import as_utc, now_utc

AUTH_SCHEME = "tma"


def init_data_from_header(authorization: str | None) -> str:
    if not authorization:
        raise AuthError("Не передан заголовок Authorization")

    scheme, _, init_data = authorization.strip().partition(" ")
    if scheme.lower() != AUTH_SCHEME:
        raise AuthError('Ожидается схема авторизации "tma"')
    init_data = init_data.strip()
    if not init_data:
        raise AuthError("Пустые данные инициализации")
    return init_data


def parse_init_data(
    init_data: str,
    bot_token: str,
    *,
    max_age_sec: int | None = None,
    now: datetime | None = None,
) -> WebAppUser:
    if not bot_token:
        raise AuthError("BOT_TOKEN не задан")

    try:
        parsed: WebAppInitData = safe_parse_webapp_init_data(token=bot_token, init_data=init_data)
    except ValueError as err:
        raise AuthError("Неверная подпись данных инициализации") from err

    if max_age_sec and parsed.auth_date:
        age = as_utc(now or now_utc()) - as_utc(parsed.auth_date)
        if age > timedelta(seconds=max_age_sec):
            raise AuthError("Данные инициализации устарели")

    if parsed.user is None:
        raise AuthError("В данных инициализации нет пользователя")
    return parsed.user


def authenticate(
    authorization: str | None,
    bot_token: str,
    *,
    max_age_sec: int | None = None,
) -> WebAppUser:
    return parse_init_data(
        init_data_from_header(authorization),
        bot_token,
        max_age_sec=max_age_sec,
    )
