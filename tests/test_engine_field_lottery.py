from datetime import timedelta

import pytest

from database import Bettor, RoundStatus
from rounds import fairness
from rounds.exceptions import BelowMinimum, InvalidField, RoundNotAcceptingBets


def bettor(name):
    return Bettor(bettor_id=name, display_name=name.title())


async def test_round_counts_down_from_creation(engine_for, clock, scheduler):
    engine = await engine_for("lottery")

    round_ = engine.round
    assert round_.status == RoundStatus.CLOSING
    assert round_.ends_at == clock() + timedelta(hours=24)
    assert round_.deadline_at == round_.ends_at
    assert scheduler.pending("lottery-1") == round_.ends_at


@pytest.mark.parametrize("field_number", [0, 26, None, "3"])
async def test_field_must_be_in_range(engine_for, funded, field_number):
    engine = await engine_for("lottery")

    with pytest.raises(InvalidField):
        await engine.place_bet(bettor("alice"), 10, field_number)

    assert funded.get_balance("alice") == 1000


async def test_minimum_bet(engine_for, funded):
    engine = await engine_for("lottery")

    with pytest.raises(BelowMinimum):
        await engine.place_bet(bettor("alice"), 4, 3)


async def test_bets_do_not_move_the_deadline(engine_for, funded, clock):
    engine = await engine_for("lottery")
    deadline = engine.round.deadline_at

    clock.advance(3600)
    await engine.place_bet(bettor("alice"), 10, 1)
    await engine.place_bet(bettor("bob"), 10, 2)
    await engine.place_bet(bettor("alice"), 10, 2)

    assert engine.round.deadline_at == deadline
    assert len(engine.round.participants) == 3
    assert engine.round.distinct_bettors == 2


async def test_bet_at_end_time_rejected(engine_for, funded, clock):
    engine = await engine_for("lottery")

    clock.advance(24 * 3600)
    with pytest.raises(RoundNotAcceptingBets):
        await engine.place_bet(bettor("alice"), 10, 1)

    assert engine.round.pot == 0


async def test_winning_field_splits_pot_proportionally(engine_for, funded, clock, scheduler, store):
    engine = await engine_for("lottery")
    round_ = engine.round
    winning_field = fairness.draw(round_.server_seed, round_.client_seed, round_.nonce, 25) + 1
    other_field = winning_field % 25 + 1

    await engine.place_bet(bettor("alice"), 10, winning_field)
    await engine.place_bet(bettor("bob"), 30, winning_field)
    await engine.place_bet(bettor("carol"), 60, other_field)

    clock.advance(24 * 3600)
    await scheduler.fire_due()

    finished = store.load("lottery-1")
    assert finished.status == RoundStatus.FINISHED
    outcome = finished.outcome
    assert outcome.winning_field == winning_field
    assert outcome.commission == 15
    assert outcome.payouts == {"alice": 21, "bob": 63}
    assert outcome.house_retained == 1

    assert funded.get_balance("alice") == 1011
    assert funded.get_balance("bob") == 1033
    assert funded.get_balance("carol") == 940

    record = store.get_audit("lottery-1")
    assert record.winning_field == winning_field
    assert fairness.verify_round(record)
