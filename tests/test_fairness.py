import hashlib
import hmac

import pytest

from database import GameVariant, RoundAuditRecord
from rounds import fairness


def _record(variant=GameVariant.POOL_DRAW, space=1_000_000, **overrides):
    seed = fairness.commit()
    outcome = fairness.draw(seed.server_seed, "client", 7, space) if space else None
    data = dict(
        round_id="room-7",
        room_id="room",
        variant=variant,
        hashed_server_seed=seed.hashed_server_seed,
        server_seed=seed.server_seed,
        client_seed="client",
        nonce=7,
        outcome_space_size=space,
        outcome=outcome,
        winning_field=outcome + 1 if variant == GameVariant.FIELD_LOTTERY else None,
        winners=[],
        payouts={},
        commission=0,
        pot=0,
    )
    data.update(overrides)
    return RoundAuditRecord(**data)


def test_commit_publishes_sha256_of_seed():
    seed = fairness.commit()

    assert len(seed.server_seed) == 64
    assert seed.hashed_server_seed == hashlib.sha256(seed.server_seed.encode()).hexdigest()
    assert fairness.verify_commitment(seed.server_seed, seed.hashed_server_seed)


def test_commit_generates_fresh_seeds():
    seeds = {fairness.commit().server_seed for _ in range(20)}
    assert len(seeds) == 20


def test_draw_is_hmac_sha512_of_client_seed_and_nonce():
    digest = hmac.new(b"server", b"client:3", hashlib.sha512).hexdigest()
    expected = int(digest[:16], 16) % 1000

    assert fairness.draw("server", "client", 3, 1000) == expected


def test_draw_is_deterministic_and_in_range():
    for nonce in range(50):
        first = fairness.draw("seed", "client", nonce, 25)
        assert first == fairness.draw("seed", "client", nonce, 25)
        assert 0 <= first < 25


def test_draw_changes_with_client_seed_and_nonce():
    results = {fairness.draw("seed", f"client-{i}", 1, 1_000_000) for i in range(20)}
    results |= {fairness.draw("seed", "client", n, 1_000_000) for n in range(20)}
    assert len(results) > 30


@pytest.mark.parametrize("size", [0, -1, True, 2.5])
def test_draw_rejects_invalid_outcome_space(size):
    with pytest.raises(ValueError):
        fairness.draw("seed", "client", 1, size)


def test_verify_accepts_draw_and_rejects_anything_else():
    outcome = fairness.draw("seed", "client", 9, 1000)

    assert fairness.verify("seed", "client", 9, 1000, outcome)
    assert not fairness.verify("seed", "client", 9, 1000, (outcome + 1) % 1000)
    assert not fairness.verify("seed", "client", 9, 1000, -1)


def test_verify_commitment_rejects_other_seed():
    seed = fairness.commit()
    assert not fairness.verify_commitment(fairness.generate_server_seed(), seed.hashed_server_seed)


def test_hash_rejects_empty_seed():
    with pytest.raises(ValueError):
        fairness.hash_server_seed("")


def test_verify_round_pool_draw():
    assert fairness.verify_round(_record())


def test_verify_round_detects_tampered_outcome():
    record = _record()
    record.outcome = (record.outcome + 1) % record.outcome_space_size
    assert not fairness.verify_round(record)


def test_verify_round_detects_wrong_commitment():
    record = _record(hashed_server_seed="0" * 64)
    assert not fairness.verify_round(record)


def test_verify_round_lottery_checks_winning_field():
    record = _record(variant=GameVariant.FIELD_LOTTERY, space=25)
    assert fairness.verify_round(record)

    record.winning_field = record.outcome + 2
    assert not fairness.verify_round(record)


def test_verify_round_without_draw_checks_commitment_only():
    record = _record(variant=GameVariant.ASCENDING_BID, space=None)
    assert fairness.verify_round(record)
