from __future__ import annotations

from roulette.game.intake import StakeIntake
from roulette.game.query import RoundQuery, time_until
from roulette.game.settlement import SettlementEngine
from roulette.utils import as_utc
from tests.conftest import FixedDraw, FrozenClock, add_user, load_round


async def test_no_round_yields_none(repo):
    assert await RoundQuery(repo).current_round() is None


async def test_current_round_projection(repo, settings):
    round_ = await repo.ensure_open_round()
    intake = StakeIntake(repo, settings)
    await add_user(repo, 1, 100)
    await add_user(repo, 2, 100)
    await intake.place_stake(1, round_.id, 30)
    await intake.place_stake(2, round_.id, 70)
    clock = FrozenClock(as_utc(round_.round_deadline))
    clock.advance(-12.5)

    view = await RoundQuery(repo, clock=clock).current_round()

    assert view is not None
    assert view.round_id == round_.id
    assert view.status == "waiting"
    assert view.total_pool == 100
    assert view.time_until_start == 12.5
    assert [(s.user.user_id, s.amount, s.win_percentage) for s in view.stakes] == [
        (1, 30, 30.0),
        (2, 70, 70.0),
    ]
    assert view.stakes[0].user.username == "user1"
    assert view.stats is not None
    assert view.stats.total_bets == 2
    assert view.stats.average_bet == 50.0
    assert (view.stats.min_bet, view.stats.max_bet) == (30, 70)


async def test_empty_round_has_zero_percentages(repo):
    await repo.ensure_open_round()
    view = await RoundQuery(repo).current_round()

    assert view is not None
    assert view.total_pool == 0
    assert view.stakes == []
    assert view.stats.total_bets == 0


async def test_time_until_start_never_negative(repo):
    round_ = await repo.ensure_open_round()
    clock = FrozenClock(as_utc(round_.round_deadline))
    clock.advance(60)

    view = await RoundQuery(repo, clock=clock).current_round()

    assert view.time_until_start == 0.0
    assert time_until(round_.round_deadline, clock()) == 0.0


async def test_reading_does_not_mutate(repo, settings):
    round_ = await repo.ensure_open_round()
    await add_user(repo, 1, 100)
    await StakeIntake(repo, settings).place_stake(1, round_.id, 10)
    clock = FrozenClock(as_utc(round_.round_deadline))
    clock.advance(120)
    query = RoundQuery(repo, clock=clock)

    await query.current_round()
    await query.current_round()

    stored = await load_round(repo, round_.id)
    assert stored.status == "waiting"
    assert stored.total_pool == 10


async def test_history_lists_finished_rounds_newest_first(repo, settings):
    intake = StakeIntake(repo, settings)
    engine = SettlementEngine(repo, settings, rng=FixedDraw(0))
    await add_user(repo, 1, 1000)

    first = await repo.ensure_open_round()
    await intake.place_stake(1, first.id, 100)
    first_summary = await engine.settle(first.id)
    second_summary = await engine.settle(first_summary.next_round_id)

    history = await RoundQuery(repo).history(10)

    assert [view.round_id for view in history] == [second_summary.round_id, first.id]
    paid = history[1]
    assert paid.winner is not None
    assert paid.winner.user_id == 1
    assert (paid.total_pool, paid.commission, paid.prize) == (100, 5, 95)
    assert [(s.user.user_id, s.win_percentage) for s in paid.stakes] == [(1, 100.0)]
    assert history[0].winner is None
    assert history[0].prize == 0


async def test_history_limit_is_clamped(repo, settings):
    engine = SettlementEngine(repo, settings, rng=FixedDraw(0))
    round_ = await repo.ensure_open_round()
    round_id = round_.id
    for _ in range(3):
        round_id = (await engine.settle(round_id)).next_round_id

    query = RoundQuery(repo)
    assert len(await query.history(0)) == 1
    assert len(await query.history(2)) == 2
    assert len(await query.history(500)) == 3


async def test_stats_counts(repo, settings):
    round_ = await repo.ensure_open_round()
    await add_user(repo, 1, 100)
    await StakeIntake(repo, settings).place_stake(1, round_.id, 10)
    await SettlementEngine(repo, settings, rng=FixedDraw(0)).settle(round_.id)

    stats = await RoundQuery(repo).stats()

    assert stats.finished_rounds == 1
    assert stats.waiting_rounds == 1
    assert stats.active_rounds == 0
    assert stats.users == 1
    assert stats.stakes == 1
