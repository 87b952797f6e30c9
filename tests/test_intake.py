from __future__ import annotations

import asyncio

import pytest

from roulette.game.errors import (
    AlreadyStakedError,
    InsufficientBalanceError,
    InvalidAmountError,
    RoundClosedError,
    RoundNotFoundError,
    UserNotFoundError,
)
from roulette.game.intake import StakeIntake
from roulette.game.settlement import SettlementEngine
from tests.conftest import FixedDraw, add_user, balance_of, load_round, make_settings, stakes_of


@pytest.fixture
async def open_round(repo):
    return await repo.ensure_open_round()


@pytest.fixture
def intake(repo, settings):
    return StakeIntake(repo, settings)


async def test_first_stake_debits_balance_and_grows_pool(repo, intake, open_round):
    await add_user(repo, 1, 100)

    stake = await intake.place_stake(1, open_round.id, 40)

    assert stake.amount == 40
    assert stake.user_id == 1
    assert stake.round_id == open_round.id
    assert await balance_of(repo, 1) == 60
    assert (await load_round(repo, open_round.id)).total_pool == 40


async def test_second_stake_tops_up_existing_row(repo, intake, open_round):
    await add_user(repo, 1, 100)

    first = await intake.place_stake(1, open_round.id, 10)
    second = await intake.place_stake(1, open_round.id, 15)

    assert second.id == first.id
    assert second.amount == 25
    stakes = await stakes_of(repo, open_round.id)
    assert [(s.user_id, s.amount) for s in stakes] == [(1, 25)]
    assert await balance_of(repo, 1) == 75
    assert (await load_round(repo, open_round.id)).total_pool == 25


async def test_top_up_beyond_remaining_balance_is_rejected(repo, intake, open_round):
    await add_user(repo, 1, 50)
    await intake.place_stake(1, open_round.id, 30)

    with pytest.raises(InsufficientBalanceError):
        await intake.place_stake(1, open_round.id, 30)

    stakes = await stakes_of(repo, open_round.id)
    assert [s.amount for s in stakes] == [30]
    assert await balance_of(repo, 1) == 20
    assert (await load_round(repo, open_round.id)).total_pool == 30


@pytest.mark.parametrize("amount", [0, -5, 1.5, "10", None, True])
async def test_invalid_amount_is_checked_first(intake, amount):
    # Neither the round nor the user exists: the amount check must win.
    with pytest.raises(InvalidAmountError):
        await intake.place_stake(999, 999, amount)


async def test_unknown_round(repo, intake):
    await add_user(repo, 1, 100)
    with pytest.raises(RoundNotFoundError):
        await intake.place_stake(1, 12345, 10)


async def test_round_check_precedes_user_check(intake):
    with pytest.raises(RoundNotFoundError):
        await intake.place_stake(777, 12345, 10)


async def test_finished_round_is_closed(repo, settings, intake, open_round):
    await add_user(repo, 1, 100)
    await SettlementEngine(repo, settings, rng=FixedDraw(0)).settle(open_round.id)

    with pytest.raises(RoundClosedError):
        await intake.place_stake(1, open_round.id, 10)
    assert await balance_of(repo, 1) == 100


async def test_unknown_user(intake, open_round):
    with pytest.raises(UserNotFoundError):
        await intake.place_stake(42, open_round.id, 10)


async def test_insufficient_balance_leaves_state_untouched(repo, intake, open_round):
    await add_user(repo, 1, 5)

    with pytest.raises(InsufficientBalanceError):
        await intake.place_stake(1, open_round.id, 6)

    assert await balance_of(repo, 1) == 5
    assert await stakes_of(repo, open_round.id) == []
    assert (await load_round(repo, open_round.id)).total_pool == 0


async def test_top_up_can_be_disabled(repo, open_round):
    intake = StakeIntake(repo, make_settings(ALLOW_TOP_UP=False))
    await add_user(repo, 1, 100)
    await intake.place_stake(1, open_round.id, 10)

    with pytest.raises(AlreadyStakedError):
        await intake.place_stake(1, open_round.id, 10)
    assert await balance_of(repo, 1) == 90


async def test_concurrent_stakes_by_one_user_merge(repo, intake, open_round):
    await add_user(repo, 1, 100)

    await asyncio.gather(*(intake.place_stake(1, open_round.id, 10) for _ in range(4)))

    stakes = await stakes_of(repo, open_round.id)
    assert [(s.user_id, s.amount) for s in stakes] == [(1, 40)]
    assert await balance_of(repo, 1) == 60
    assert (await load_round(repo, open_round.id)).total_pool == 40


async def test_concurrent_stakes_never_overdraw(repo, intake, open_round):
    await add_user(repo, 1, 25)

    results = await asyncio.gather(
        *(intake.place_stake(1, open_round.id, 10) for _ in range(4)),
        return_exceptions=True,
    )

    rejected = [r for r in results if isinstance(r, InsufficientBalanceError)]
    assert len(rejected) == 2
    assert await balance_of(repo, 1) == 5
    stakes = await stakes_of(repo, open_round.id)
    assert sum(s.amount for s in stakes) == 20
    assert (await load_round(repo, open_round.id)).total_pool == 20


async def test_pool_matches_stakes_for_many_players(repo, intake, open_round):
    for user_id in range(1, 6):
        await add_user(repo, user_id, 1000)
        await intake.place_stake(user_id, open_round.id, user_id * 11)

    stakes = await stakes_of(repo, open_round.id)
    assert [s.user_id for s in stakes] == [1, 2, 3, 4, 5]
    assert (await load_round(repo, open_round.id)).total_pool == sum(s.amount for s in stakes)
