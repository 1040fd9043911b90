"""
Registry of room engines: one independently-locked engine per room.
"""
import asyncio
import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional

from database import Database
from notifications import Notifier
from security.audit import AuditLogger
from utils.formatting import utcnow
from .engine import RoomEngine
from .exceptions import RoomNotFound
from .ledger import Ledger
from .scheduler import RoundScheduler
from .store import RoundStore

logger = logging.getLogger(__name__)


class RoomRegistry:
    """Owns the engines of every configured room."""

    def __init__(self, engines: Optional[Dict[str, RoomEngine]] = None):
        self._engines: Dict[str, RoomEngine] = dict(engines or {})

    @classmethod
    def build(
        cls,
        config_provider,
        db: Database,
        ledger: Ledger,
        store: RoundStore,
        scheduler: RoundScheduler,
        notifier: Notifier,
        audit: Optional[AuditLogger] = None,
        clock: Callable[[], datetime] = utcnow,
        room_ids: Optional[List[str]] = None,
        **engine_options
    ) -> "RoomRegistry":
        """Create one engine per room known to the config provider."""
        engines = {}
        for room_id in room_ids or config_provider.room_ids():
            engines[room_id] = RoomEngine(
                room_id,
                config_provider,
                db,
                ledger,
                store,
                scheduler,
                notifier,
                audit=audit,
                clock=clock,
                **engine_options
            )
        return cls(engines)

    def get(self, room_id: str) -> RoomEngine:
        engine = self._engines.get(room_id)
        if engine is None:
            raise RoomNotFound(room_id)
        return engine

    def room_ids(self) -> List[str]:
        return list(self._engines)

    def engines(self) -> List[RoomEngine]:
        return list(self._engines.values())

    async def start_all(self):
        """Rehydrate every room in parallel."""
        results = await asyncio.gather(
            *(engine.start() for engine in self._engines.values()),
            return_exceptions=True,
        )
        for room_id, result in zip(self._engines, results):
            if isinstance(result, Exception):
                logger.error(f"[ROUND] Failed to start room {room_id}: {result}", exc_info=result)
            else:
                logger.info(f"[ROUND] Room {room_id} started")

    async def stop_all(self):
        await asyncio.gather(*(engine.stop() for engine in self._engines.values()))
