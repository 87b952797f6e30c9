from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable

from roulette.config import Settings
from roulette.db.models import Stake
from roulette.db.repository import LedgerRepository, LedgerStore
from roulette.game.errors import (
    AlreadyStakedError,
    InsufficientBalanceError,
    InvalidAmountError,
    RoundClosedError,
    RoundNotFoundError,
    UserNotFoundError,
)
from roulette.utils import now_utc

logger = logging.getLogger(__name__)


def validate_amount(amount: Any) -> int:
    # bool is an int subclass; True must not read as a stake of 1.
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmountError("Сумма ставки должна быть целым числом")
    if amount <= 0:
        raise InvalidAmountError("Ставка должна быть больше нуля")
    return amount


class StakeIntake:
    def __init__(
        self,
        repo: LedgerRepository,
        settings: Settings,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self._repo = repo
        self._allow_top_up = settings.allow_top_up
        self._clock = clock

    async def place_stake(self, user_id: int, round_id: int, amount: Any) -> Stake:
        amount = validate_amount(amount)
        stake = await self._repo.run(
            lambda store: self._place(store, user_id, round_id, amount),
            name=f"place_stake({user_id}, {round_id})",
        )
        logger.info("Ставка %s от %s в раунде %s, итого %s", amount, user_id, round_id, stake.amount)
        return stake

    async def _place(self, store: LedgerStore, user_id: int, round_id: int, amount: int) -> Stake:
        round_ = await store.find_round(round_id)
        if round_ is None:
            raise RoundNotFoundError(f"Раунд {round_id} не найден")
        if not round_.is_open:
            raise RoundClosedError(f"Раунд {round_id} уже завершён")

        user = await store.find_user(user_id)
        if user is None:
            raise UserNotFoundError("Пользователь не найден")
        if user.balance < amount:
            raise InsufficientBalanceError("Недостаточно средств")

        existing = await store.find_stake(user_id, round_id)
        if existing and not self._allow_top_up:
            raise AlreadyStakedError("Ставка в этом раунде уже сделана")

        # Guarded writes: a settlement or another stake may have committed
        # since the reads above.
        if not await store.add_to_pool(round_id, amount):
            raise RoundClosedError(f"Раунд {round_id} уже завершён")
        if await store.adjust_balance(user_id, -amount) is None:
            raise InsufficientBalanceError("Недостаточно средств")

        if existing:
            stake = await store.update_stake_amount(existing.id, amount)
            if stake is None:
                raise RoundClosedError(f"Ставка раунда {round_id} недоступна")
            return stake

        return await store.create_stake(
            user_id=user_id,
            round_id=round_id,
            amount=amount,
            created_at=self._clock(),
        )
