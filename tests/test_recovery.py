from datetime import timedelta

import pytest

from admin_recovery_tools import RecoveryTools
from database import Bettor, RoundStatus, TransactionKind, TransactionStatus
from rounds.engine import RoomEngine
from rounds.exceptions import TransientStoreError
from rounds.store import ENCRYPTED_SEED_FIELD, RoundStore
from security.audit import AuditEventType
from tests.conftest import ManualScheduler, RecordingNotifier
from utils.encryption import generate_encryption_key


def bettor(name):
    return Bettor(bettor_id=name, display_name=name.title())


async def _bets(engine, *pairs):
    for name, amount in pairs:
        await engine.place_bet(bettor(name), amount)


async def test_rehydrate_rearms_future_deadline(make_engine, funded, clock):
    first = make_engine("classic")
    await first.start()
    await _bets(first, ("alice", 10), ("bob", 30))
    deadline = first.round.deadline_at

    # Process restarts before the deadline
    clock.advance(10)
    scheduler = ManualScheduler(clock)
    second = make_engine("classic", scheduler=scheduler)
    await second.start()

    assert second.round.round_id == "classic-1"
    assert second.round.pot == 40
    assert second.round.status == RoundStatus.CLOSING
    assert scheduler.pending("classic-1") == deadline

    clock.advance(20)
    await scheduler.fire_due()
    assert second.round.status == RoundStatus.FINISHED


async def test_rehydrate_resolves_passed_deadline(make_engine, funded, clock, store):
    first = make_engine("classic")
    await first.start()
    await _bets(first, ("alice", 10), ("bob", 30))

    clock.advance(120)
    second = make_engine("classic")
    await second.start()

    assert second.round.status == RoundStatus.FINISHED
    assert store.get_audit("classic-1") is not None
    paid = sum(tx.amount for tx in funded.round_entries("classic-1", TransactionKind.WIN))
    assert paid == 38


async def test_rehydrate_after_finished_round_waits_for_cooldown(make_engine, funded, clock):
    first = make_engine("classic")
    await first.start()
    await _bets(first, ("alice", 10), ("bob", 30))
    await first.resolve()

    clock.advance(4)
    scheduler = ManualScheduler(clock)
    second = make_engine("classic", scheduler=scheduler)
    await second.start()

    assert second.round.round_id == "classic-1"
    assert scheduler.pending(second.next_round_key) == first.round.ended_at + timedelta(seconds=10)

    clock.advance(6)
    await scheduler.fire_due()
    assert second.round.round_id == "classic-2"


async def test_rehydrate_rebuilds_stakes_from_ledger(make_engine, funded, audit):
    first = make_engine("classic")
    await first.start()

    # Debits committed but the snapshot never caught up
    funded.debit_for_bet("alice", 10, "classic-1", details={"display_name": "Alice"})
    funded.debit_for_bet("bob", 30, "classic-1", details={"display_name": "Bob"})

    second = make_engine("classic")
    await second.start()

    round_ = second.round
    assert round_.pot == 40
    assert round_.stake_total() == 40
    assert round_.find_participant("bob").display_name == "Bob"
    assert (round_.find_participant("alice").tickets_start, round_.find_participant("alice").tickets_end) == (0, 249_999)

    events = audit.get_recent_events(event_type=AuditEventType.LEDGER_RECONCILED)
    assert len(events) == 1
    assert events[0]["round_id"] == "classic-1"


async def test_transient_failure_is_retried(make_engine, funded, store, monkeypatch):
    engine = make_engine("classic")
    await engine.start()
    await _bets(engine, ("alice", 10), ("bob", 30))

    original = store.record_audit
    calls = []

    def flaky(conn, record):
        calls.append(record.round_id)
        if len(calls) == 1:
            raise TransientStoreError("database is locked")
        return original(conn, record)

    monkeypatch.setattr(store, "record_audit", flaky)
    await engine.resolve()

    assert len(calls) == 2
    assert engine.round.status == RoundStatus.FINISHED
    # The failed attempt rolled back, so the winner is paid exactly once
    assert len(funded.round_entries("classic-1", TransactionKind.WIN)) == 1


async def test_exhausted_retries_error_round_and_refund(make_engine, funded, store, db, audit, monkeypatch):
    notifier = RecordingNotifier()
    engine = make_engine("classic", notifier=notifier)
    await engine.start()
    await _bets(engine, ("alice", 10), ("bob", 30))

    def broken(conn, record):
        raise TransientStoreError("disk I/O error")

    monkeypatch.setattr(store, "record_audit", broken)
    await engine.resolve()

    assert engine.round.status == RoundStatus.ERRORED
    assert store.load("classic-1").status == RoundStatus.ERRORED
    assert notifier.names()[-1] == "round_errored"
    assert funded.round_entries("classic-1", TransactionKind.WIN) == []
    assert funded.get_balance("alice") == 990
    assert funded.get_balance("bob") == 970
    statuses = {tx.status for tx in funded.round_entries("classic-1", TransactionKind.BET)}
    assert statuses == {TransactionStatus.PENDING_REVIEW}

    tools = RecoveryTools(db, funded, store, audit)
    unsettled = tools.find_unsettled_rounds()
    assert [r["round_id"] for r in unsettled] == ["classic-1"]
    assert unsettled[0]["held_amount"] == 40

    refunds = tools.refund_round("classic-1", admin_id="ops", reason="store outage")

    assert refunds == {"alice": 10, "bob": 30}
    assert funded.get_balance("alice") == 1000
    assert funded.get_balance("bob") == 1000
    assert tools.refund_round("classic-1", admin_id="ops", reason="again") == {}
    assert funded.get_balance("alice") == 1000
    assert tools.reconcile_round("classic-1")["balanced"]


async def test_refund_rejects_finished_round(make_engine, funded, store, db):
    engine = make_engine("classic")
    await engine.start()
    await _bets(engine, ("alice", 10), ("bob", 30))
    await engine.resolve()

    tools = RecoveryTools(db, funded, store)
    with pytest.raises(ValueError):
        tools.refund_round("classic-1", admin_id="ops", reason="not allowed")

    report = tools.reconcile_round("classic-1")
    assert report["pot_matches_ledger"]
    assert report["balanced"]


async def test_invariant_violation_errors_round_without_payout(make_engine, funded, audit):
    engine = make_engine("classic")
    await engine.start()
    await _bets(engine, ("alice", 10), ("bob", 30))

    engine.round.pot = 999
    await engine.resolve()

    assert engine.round.status == RoundStatus.ERRORED
    assert "Invariant" in engine.round.error
    assert funded.round_entries("classic-1", TransactionKind.WIN) == []
    assert audit.get_recent_events(event_type=AuditEventType.INVARIANT_VIOLATION)


async def test_next_round_follows_errored_round(make_engine, funded, clock):
    scheduler = ManualScheduler(clock)
    engine = make_engine("classic", scheduler=scheduler)
    await engine.start()
    await _bets(engine, ("alice", 10), ("bob", 30))
    engine.round.pot = 1
    await engine.resolve()

    clock.advance(10)
    await scheduler.fire_due()

    assert engine.round.round_id == "classic-2"
    assert engine.round.status == RoundStatus.OPEN


async def test_server_seed_encrypted_while_round_runs(config_provider, db, funded, audit, clock):
    key = generate_encryption_key()
    store = RoundStore(db, seed_encryption_key=key)
    engine = RoomEngine(
        "classic", config_provider, db, funded, store,
        ManualScheduler(clock), RecordingNotifier(),
        audit=audit, clock=clock, retry_base_delay=0, retry_max_delay=0,
    )
    await engine.start()
    seed = engine.round.server_seed

    raw = db.get_round_snapshot("classic-1")
    assert raw["server_seed"] is None
    assert raw[ENCRYPTED_SEED_FIELD]
    assert seed not in raw[ENCRYPTED_SEED_FIELD]
    assert store.load("classic-1").server_seed == seed

    with pytest.raises(ValueError):
        RoundStore(db).load("classic-1")

    await engine.resolve()
    raw = db.get_round_snapshot("classic-1")
    assert raw["server_seed"] == seed
    assert ENCRYPTED_SEED_FIELD not in raw


async def test_failed_startup_load_resumes_stored_round(make_engine, funded, clock, store, monkeypatch):
    first = make_engine("classic")
    await first.start()
    await _bets(first, ("alice", 10))

    original = store.latest_for_room

    def unavailable(room_id):
        raise TransientStoreError("database is locked")

    monkeypatch.setattr(store, "latest_for_room", unavailable)
    scheduler = ManualScheduler(clock)
    second = make_engine("classic", scheduler=scheduler)
    await second.start()

    assert second.round is None
    assert scheduler.pending(second.next_round_key) is not None

    # Still down at the first retry
    clock.advance(10)
    await scheduler.fire_due()
    assert second.round is None

    monkeypatch.setattr(store, "latest_for_room", original)
    clock.advance(10)
    await scheduler.fire_due()

    assert second.round.round_id == "classic-1"
    assert second.round.pot == 10
    assert store.load("classic-2") is None
    assert funded.get_balance("alice") == 990

    # Betting carries on in the resumed round
    await _bets(second, ("bob", 30))
    assert second.round.pot == 40


async def test_unpersisted_errored_round_is_written_before_next_round(
    make_engine, funded, clock, store, audit, monkeypatch
):
    scheduler = ManualScheduler(clock)
    engine = make_engine("classic", scheduler=scheduler)
    await engine.start()
    await _bets(engine, ("alice", 10), ("bob", 30))

    original = store.save

    def broken(conn, round_, event_type, event_data=None):
        raise TransientStoreError("disk I/O error")

    monkeypatch.setattr(store, "save", broken)
    await engine.resolve()

    assert engine.round.status == RoundStatus.ERRORED
    assert store.load("classic-1").status == RoundStatus.CLOSING
    events = audit.get_recent_events(event_type=AuditEventType.STORE_UNAVAILABLE, round_id="classic-1")
    assert any("unpersisted_status" in (e["details"] or "") for e in events)

    # Store still down when the cooldown ends: no new round yet
    clock.advance(10)
    await scheduler.fire_due()
    assert engine.round.round_id == "classic-1"

    monkeypatch.setattr(store, "save", original)
    clock.advance(10)
    await scheduler.fire_due()

    assert store.load("classic-1").status == RoundStatus.ERRORED
    statuses = {tx.status for tx in funded.round_entries("classic-1", TransactionKind.BET)}
    assert statuses == {TransactionStatus.PENDING_REVIEW}
    assert engine.round.round_id == "classic-2"
    assert engine.round.status == RoundStatus.OPEN
