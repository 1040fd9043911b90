import asyncio
from datetime import timedelta

from rounds.scheduler import AsyncioScheduler
from utils.formatting import utcnow


def _recorder(calls, name):
    async def callback():
        calls.append(name)
    return callback


async def test_fires_after_delay():
    scheduler = AsyncioScheduler()
    calls = []

    when = utcnow() + timedelta(milliseconds=20)
    scheduler.schedule_at("round-1", when, _recorder(calls, "deadline"))
    assert scheduler.pending("round-1") == when

    await asyncio.sleep(0.1)

    assert calls == ["deadline"]
    assert scheduler.pending("round-1") is None


async def test_rescheduling_replaces_previous_callback():
    scheduler = AsyncioScheduler()
    calls = []

    scheduler.schedule_at("round-1", utcnow() + timedelta(milliseconds=10), _recorder(calls, "old"))
    scheduler.schedule_at("round-1", utcnow() + timedelta(milliseconds=30), _recorder(calls, "new"))

    await asyncio.sleep(0.1)

    assert calls == ["new"]


async def test_cancel_prevents_firing():
    scheduler = AsyncioScheduler()
    calls = []

    scheduler.schedule_at("round-1", utcnow(), _recorder(calls, "deadline"))
    assert scheduler.cancel("round-1")
    assert not scheduler.cancel("round-1")

    await asyncio.sleep(0.05)

    assert calls == []


async def test_past_deadline_fires_immediately_and_errors_are_contained():
    scheduler = AsyncioScheduler()
    calls = []

    async def broken():
        raise RuntimeError("boom")

    scheduler.schedule_at("a", utcnow() - timedelta(seconds=5), broken)
    scheduler.schedule_at("b", utcnow() - timedelta(seconds=5), _recorder(calls, "b"))

    await asyncio.sleep(0.05)

    assert calls == ["b"]


async def test_cancel_all():
    scheduler = AsyncioScheduler()
    calls = []

    for key in ("a", "b", "c"):
        scheduler.schedule_at(key, utcnow() + timedelta(milliseconds=10), _recorder(calls, key))
    scheduler.cancel_all()

    await asyncio.sleep(0.05)

    assert calls == []
    assert scheduler.pending("a") is None
