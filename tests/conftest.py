"""Shared fixtures: temporary store, funded ledger, manual scheduler and clock."""
from datetime import datetime, timedelta
from typing import Dict, Tuple

import pytest

from database import Database, GameVariant, RoomConfig
from notifications import Notifier
from room_config import RoomConfigProvider
from rounds.engine import RoomEngine
from rounds.ledger import Ledger
from rounds.scheduler import RoundScheduler
from rounds.store import RoundStore
from security.audit import AuditLogger

START = datetime(2026, 1, 1, 12, 0, 0)


class FakeClock:
    """Controllable naive-UTC clock."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float):
        self.now += timedelta(seconds=seconds)


class ManualScheduler(RoundScheduler):
    """Records schedules; fires them only when a test asks."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.pending_calls: Dict[str, Tuple[datetime, object]] = {}
        self.fired = []

    def schedule_at(self, key, when, callback):
        self.pending_calls[key] = (when, callback)

    def cancel(self, key):
        return self.pending_calls.pop(key, None) is not None

    def cancel_all(self):
        self.pending_calls.clear()

    def pending(self, key):
        entry = self.pending_calls.get(key)
        return entry[0] if entry else None

    async def fire_due(self):
        """Fire every schedule whose time has come, earliest first."""
        while True:
            due = [(when, key) for key, (when, _) in self.pending_calls.items() if when <= self.clock()]
            if not due:
                return
            when, key = min(due)
            _, callback = self.pending_calls.pop(key)
            self.fired.append(key)
            await callback()


class RecordingNotifier(Notifier):
    def __init__(self):
        self.events = []

    async def send(self, event, room_id, payload):
        self.events.append((event, room_id, payload))

    def names(self):
        return [name for name, _, _ in self.events]

    def last(self, name):
        for event, _, payload in reversed(self.events):
            if event == name:
                return payload
        return None


TEST_CATALOG = {
    "classic": RoomConfig(
        room_id="classic",
        variant=GameVariant.POOL_DRAW,
        name="Classic",
        min_bet=1,
        max_bet=100,
        timer_seconds=30,
        commission_rate_percent=5,
    ),
    "spin": RoomConfig(
        room_id="spin",
        variant=GameVariant.POOL_DRAW,
        name="Classic with reveal pause",
        min_bet=1,
        max_bet=100,
        timer_seconds=30,
        commission_rate_percent=5,
        reveal_delay_seconds=5,
    ),
    "auction": RoomConfig(
        room_id="auction",
        variant=GameVariant.ASCENDING_BID,
        name="Auction",
        min_bet=10,
        max_bet=10,
        timer_seconds=15,
        commission_rate_percent=10,
        initial_bank=500,
        default_client_seed="default_client_seed_auction",
    ),
    "lottery": RoomConfig(
        room_id="lottery",
        variant=GameVariant.FIELD_LOTTERY,
        name="Lottery",
        min_bet=5,
        commission_rate_percent=15,
        field_count=25,
        round_duration_seconds=24 * 3600,
        default_client_seed="default_client_seed_lottery",
    ),
}


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "rounds_test.db")


@pytest.fixture
def db(db_path):
    return Database(db_path)


@pytest.fixture
def ledger(db):
    return Ledger(db)


@pytest.fixture
def store(db):
    return RoundStore(db)


@pytest.fixture
def audit(db_path):
    return AuditLogger(db_path)


@pytest.fixture
def scheduler(clock):
    return ManualScheduler(clock)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def config_provider():
    return RoomConfigProvider(catalog=TEST_CATALOG, override_file=None)


@pytest.fixture
def funded(ledger):
    """Open accounts with 1000 coins each."""
    for user in ("alice", "bob", "carol", "dave"):
        ledger.open_account(user, display_name=user.title(), initial_balance=1000)
    return ledger


@pytest.fixture
def make_engine(config_provider, db, ledger, store, audit, clock):
    """Build an engine; each call gets its own scheduler and notifier unless given."""

    def _make(room_id, scheduler=None, notifier=None, **options):
        options.setdefault("cooldown_seconds", 10)
        options.setdefault("retry_base_delay", 0)
        options.setdefault("retry_max_delay", 0)
        return RoomEngine(
            room_id,
            config_provider,
            db,
            ledger,
            store,
            scheduler or ManualScheduler(clock),
            notifier or RecordingNotifier(),
            audit=audit,
            clock=clock,
            **options
        )

    return _make


@pytest.fixture
async def engine_for(make_engine, scheduler, notifier):
    """Started engine sharing the test's scheduler and notifier."""
    engines = []

    async def _start(room_id, **options):
        engine = make_engine(room_id, scheduler=scheduler, notifier=notifier, **options)
        await engine.start()
        engines.append(engine)
        return engine

    yield _start

    for engine in engines:
        await engine.stop()
