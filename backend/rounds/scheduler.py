"""
RoundScheduler: one pending deadline callback per key.

Scheduling a key again replaces (and cancels) whatever was pending for it.
A cancelled schedule never fires, even if its timer already expired and the
callback is waiting to run on the event loop.
"""
import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Dict, Optional, Tuple

from utils.formatting import utcnow

logger = logging.getLogger(__name__)

Callback = Callable[[], Awaitable[None]]


class RoundScheduler:
    """Interface used by room engines to arm phase-transition deadlines."""

    def schedule_at(self, key: str, when: datetime, callback: Callback):
        raise NotImplementedError

    def cancel(self, key: str) -> bool:
        raise NotImplementedError

    def cancel_all(self):
        raise NotImplementedError

    def pending(self, key: str) -> Optional[datetime]:
        """Deadline currently armed for a key, if any."""
        raise NotImplementedError


class AsyncioScheduler(RoundScheduler):
    """Wall-clock scheduler on the running asyncio loop."""

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.clock = clock
        self._handles: Dict[str, Tuple[int, datetime, asyncio.TimerHandle]] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._token = 0

    def schedule_at(self, key: str, when: datetime, callback: Callback):
        self.cancel(key)

        self._token += 1
        token = self._token
        delay = max(0.0, (when - self.clock()).total_seconds())

        loop = asyncio.get_running_loop()
        handle = loop.call_later(delay, self._fire, key, token, callback)
        self._handles[key] = (token, when, handle)
        logger.debug(f"[SCHEDULER] {key} armed for {when.isoformat()} (in {delay:.1f}s)")

    def _fire(self, key: str, token: int, callback: Callback):
        entry = self._handles.get(key)
        if entry is None or entry[0] != token:
            return
        del self._handles[key]

        task = asyncio.ensure_future(self._run(key, callback))
        self._tasks[key] = task
        task.add_done_callback(lambda t, k=key: self._tasks.pop(k, None) if self._tasks.get(k) is t else None)

    async def _run(self, key: str, callback: Callback):
        try:
            await callback()
        except Exception as e:
            logger.error(f"[SCHEDULER] Callback for {key} failed: {e}", exc_info=True)

    def cancel(self, key: str) -> bool:
        entry = self._handles.pop(key, None)
        if entry is None:
            return False
        entry[2].cancel()
        logger.debug(f"[SCHEDULER] {key} cancelled")
        return True

    def cancel_all(self):
        for key in list(self._handles):
            self.cancel(key)
        for task in list(self._tasks.values()):
            task.cancel()
        self._tasks.clear()

    def pending(self, key: str) -> Optional[datetime]:
        entry = self._handles.get(key)
        return entry[1] if entry else None
