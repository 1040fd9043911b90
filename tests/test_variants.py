import random
from datetime import datetime

import pytest

from database import Participant, Round, Stake, Bettor, RoundStatus
from rounds import fairness
from rounds.exceptions import InvariantViolation
from rounds.variants import (
    TICKET_SPACE,
    AscendingBidRules,
    FieldLotteryRules,
    PoolDrawRules,
    check_ticket_partition,
    compute_commission,
    compute_ticket_ranges,
)
from tests.conftest import TEST_CATALOG

NOW = datetime(2026, 1, 1, 12, 0, 0)


def _round(room_id):
    seed = fairness.commit()
    return Round(
        round_id=f"{room_id}-1",
        room_id=room_id,
        nonce=1,
        config=TEST_CATALOG[room_id],
        hashed_server_seed=seed.hashed_server_seed,
        server_seed=seed.server_seed,
        client_seed="client",
    )


def _stake(rules, round_, bettor_id, amount, field_number=None):
    bettor = Bettor(bettor_id=bettor_id, display_name=bettor_id.title())
    stake = Stake(bettor_id=bettor_id, amount=amount, tx_id=f"tx-{len(round_.stakes)}",
                  placed_at=NOW, field_number=field_number)
    return rules.apply_stake(round_, bettor, stake)


@pytest.mark.parametrize("pool,rate,expected", [
    (40, 5, 2),
    (99, 10, 9),
    (520, 10, 52),
    (101, 2.5, 2),
    (0, 5, 0),
    (1000, 0, 0),
])
def test_commission_rounds_down(pool, rate, expected):
    assert compute_commission(pool, rate) == expected


def test_ticket_ranges_proportional_to_stake():
    alice = Participant(bettor_id="alice", display_name="Alice", total_stake=10)
    bob = Participant(bettor_id="bob", display_name="Bob", total_stake=30)

    space = compute_ticket_ranges([alice, bob], 40)

    assert space == TICKET_SPACE
    assert (alice.tickets_start, alice.tickets_end) == (0, 249_999)
    assert (bob.tickets_start, bob.tickets_end) == (250_000, 999_999)


def test_ticket_ranges_partition_for_random_stakes():
    rng = random.Random(42)
    for _ in range(200):
        participants = [
            Participant(bettor_id=f"p{i}", display_name=f"P{i}", total_stake=rng.randint(1, 5000))
            for i in range(rng.randint(1, 12))
        ]
        pot = sum(p.total_stake for p in participants)

        space = compute_ticket_ranges(participants, pot)

        check_ticket_partition(participants, space)
        assert sum(p.ticket_count for p in participants) == space
        assert all(p.ticket_count >= 1 for p in participants)


def test_ticket_space_grows_with_huge_pot():
    small = Participant(bettor_id="a", display_name="A", total_stake=1)
    whale = Participant(bettor_id="b", display_name="B", total_stake=2_000_000)

    space = compute_ticket_ranges([small, whale], 2_000_001)

    assert space == 2_000_001
    assert small.ticket_count == 1
    check_ticket_partition([small, whale], space)


def test_partition_check_detects_gap():
    a = Participant(bettor_id="a", display_name="A", total_stake=1, tickets_start=0, tickets_end=10)
    b = Participant(bettor_id="b", display_name="B", total_stake=1, tickets_start=12, tickets_end=99)

    with pytest.raises(InvariantViolation):
        check_ticket_partition([a, b], 100)


def test_pool_draw_closes_on_second_distinct_bettor():
    rules = PoolDrawRules()
    round_ = _round("classic")
    rules.on_round_created(round_, NOW)

    is_new = _stake(rules, round_, "alice", 10)
    assert is_new
    assert not rules.after_stake(round_, is_new, NOW)
    assert round_.status == RoundStatus.OPEN

    # Same bettor again does not count as a second player
    is_new = _stake(rules, round_, "alice", 5)
    assert not is_new
    assert not rules.after_stake(round_, is_new, NOW)

    is_new = _stake(rules, round_, "bob", 30)
    assert rules.after_stake(round_, is_new, NOW)
    assert round_.status == RoundStatus.CLOSING
    assert round_.pot == 45
    rules.check_invariants(round_)


def test_pool_draw_settle_pays_ticket_holder():
    rules = PoolDrawRules()
    round_ = _round("classic")
    rules.on_round_created(round_, NOW)
    _stake(rules, round_, "alice", 10)
    _stake(rules, round_, "bob", 30)

    outcome = rules.settle(round_)

    expected = fairness.draw(round_.server_seed, "client", 1, TICKET_SPACE)
    assert outcome.result == expected
    assert outcome.winners == (["alice"] if expected < 250_000 else ["bob"])
    assert outcome.commission == 2
    assert outcome.total_paid == 38
    assert outcome.house_retained == 0


def test_pool_draw_settle_without_bets_has_no_winner():
    rules = PoolDrawRules()
    round_ = _round("classic")

    outcome = rules.settle(round_)

    assert outcome.winners == []
    assert outcome.payouts == {}
    assert outcome.outcome_space_size is None


def test_ascending_bid_winner_takes_pot_and_bank():
    rules = AscendingBidRules()
    round_ = _round("auction")
    rules.on_round_created(round_, NOW)
    assert round_.house_bank == 500

    _stake(rules, round_, "alice", 10)
    _stake(rules, round_, "bob", 10)
    outcome = rules.settle(round_)

    assert round_.leader_id == "bob"
    assert outcome.prize_pool == 520
    assert outcome.commission == 52
    assert outcome.payouts == {"bob": 468}
    assert outcome.outcome_space_size is None


def test_field_lottery_splits_among_winning_field():
    rules = FieldLotteryRules()
    round_ = _round("lottery")
    rules.on_round_created(round_, NOW)
    winning_field = fairness.draw(round_.server_seed, "client", 1, 25) + 1
    other_field = winning_field % 25 + 1

    _stake(rules, round_, "alice", 10, winning_field)
    _stake(rules, round_, "bob", 30, winning_field)
    _stake(rules, round_, "carol", 60, other_field)
    outcome = rules.settle(round_)

    assert outcome.winning_field == winning_field
    assert outcome.commission == 15
    # 85 split 10:30 rounds down to 21 + 63
    assert outcome.payouts == {"alice": 21, "bob": 63}
    assert outcome.house_retained == 1
    assert outcome.total_paid + outcome.commission + outcome.house_retained == round_.pot


def test_field_lottery_without_winning_bets_keeps_net_pot():
    rules = FieldLotteryRules()
    round_ = _round("lottery")
    rules.on_round_created(round_, NOW)
    winning_field = fairness.draw(round_.server_seed, "client", 1, 25) + 1

    _stake(rules, round_, "alice", 20, winning_field % 25 + 1)
    outcome = rules.settle(round_)

    assert outcome.payouts == {}
    assert outcome.commission == 3
    assert outcome.house_retained == 17


def test_rebuild_restores_derived_data_from_stakes():
    rules = PoolDrawRules()
    round_ = _round("classic")
    _stake(rules, round_, "alice", 10)
    round_.stakes.append(Stake(bettor_id="bob", amount=30, tx_id="tx-x", placed_at=NOW))

    rules.rebuild(round_, {"bob": ("Bob", None)})

    assert round_.pot == 40
    assert round_.find_participant("bob").display_name == "Bob"
    rules.check_invariants(round_)
