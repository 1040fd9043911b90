"""
Room Configuration

Room catalog and engine settings. Values can be overridden from the
environment (.env) and, per room, from a JSON file named by ROOM_CONFIG_FILE.
Rounds snapshot their room config at creation, so edits only ever apply
from the next round on.
"""
import json
import logging
import os
from typing import Dict, List, Optional

from dotenv import load_dotenv

from database.models import GameVariant, RoomConfig

load_dotenv()
logger = logging.getLogger(__name__)

# =============================================================================
# ENGINE SETTINGS
# =============================================================================

ROUNDS_DB_PATH = os.getenv("ROUNDS_DB_PATH", "rounds.db")
ROUND_COOLDOWN_SECONDS = float(os.getenv("ROUND_COOLDOWN_SECONDS", "10"))

# Durable-store retries: base delay doubles per attempt up to the max
STORE_MAX_RETRIES = int(os.getenv("STORE_MAX_RETRIES", "3"))
STORE_RETRY_BASE_DELAY = float(os.getenv("STORE_RETRY_BASE_DELAY", "0.1"))
STORE_RETRY_MAX_DELAY = float(os.getenv("STORE_RETRY_MAX_DELAY", "2"))

SEED_ENCRYPTION_KEY = os.getenv("SEED_ENCRYPTION_KEY") or None
ROOM_CONFIG_FILE = os.getenv("ROOM_CONFIG_FILE") or None
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

# =============================================================================
# ROOM CATALOG
# =============================================================================

ROOM_CATALOG: Dict[str, RoomConfig] = {
    "classic1": RoomConfig(
        room_id="classic1",
        variant=GameVariant.POOL_DRAW,
        name="Classic Room - Low Roller",
        min_bet=1,
        max_bet=100,               # Cumulative per player per round
        timer_seconds=30,          # Starts once 2 distinct players have bet
        commission_rate_percent=5,
        reveal_delay_seconds=5,
    ),
    "classic2": RoomConfig(
        room_id="classic2",
        variant=GameVariant.POOL_DRAW,
        name="Classic Room - Mid Stakes",
        min_bet=10,
        max_bet=500,
        timer_seconds=45,
        commission_rate_percent=4,
        reveal_delay_seconds=5,
    ),
    "classic3": RoomConfig(
        room_id="classic3",
        variant=GameVariant.POOL_DRAW,
        name="Classic Room - High Roller",
        min_bet=100,
        max_bet=2000,
        timer_seconds=60,
        commission_rate_percent=3,
        reveal_delay_seconds=5,
    ),
    "auction1": RoomConfig(
        room_id="auction1",
        variant=GameVariant.ASCENDING_BID,
        name="Auction Game",
        min_bet=10,                # Fixed bid
        max_bet=10,
        timer_seconds=15,          # Reset on every bid
        commission_rate_percent=10,
        initial_bank=500,          # House-funded opening bank
        default_client_seed="default_client_seed_auction",
    ),
    "lottery1": RoomConfig(
        room_id="lottery1",
        variant=GameVariant.FIELD_LOTTERY,
        name="Lottery Game",
        min_bet=5,                 # Per field bet
        commission_rate_percent=15,
        field_count=25,            # 5x5 grid
        round_duration_seconds=24 * 3600,
        default_client_seed="default_client_seed_lottery",
    ),
}


class RoomConfigProvider:
    """Supplies per-room config, reloading the override file when it changes."""

    def __init__(self, catalog: Optional[Dict[str, RoomConfig]] = None,
                 override_file: Optional[str] = ROOM_CONFIG_FILE):
        self._base = dict(catalog if catalog is not None else ROOM_CATALOG)
        self._rooms = dict(self._base)
        self.override_file = override_file
        self._loaded_mtime: Optional[float] = None

    def _maybe_reload(self):
        if not self.override_file:
            return
        try:
            mtime = os.path.getmtime(self.override_file)
        except OSError:
            return
        if mtime == self._loaded_mtime:
            return

        try:
            with open(self.override_file) as f:
                overrides = json.load(f)
        except (OSError, ValueError) as e:
            logger.error(f"Failed to read room config {self.override_file}: {e}")
            return

        rooms = dict(self._base)
        for room_id, values in overrides.items():
            merged = rooms[room_id].to_dict() if room_id in rooms else {}
            merged.update(values)
            merged["room_id"] = room_id
            try:
                rooms[room_id] = RoomConfig.from_dict(merged)
            except (KeyError, ValueError, TypeError) as e:
                logger.error(f"Ignoring invalid config for room {room_id}: {e}")

        self._rooms = rooms
        self._loaded_mtime = mtime
        logger.info(f"Loaded room config overrides from {self.override_file}")

    def get(self, room_id: str) -> Optional[RoomConfig]:
        """Current config for a room (None if unknown)."""
        self._maybe_reload()
        return self._rooms.get(room_id)

    def room_ids(self) -> List[str]:
        self._maybe_reload()
        return list(self._rooms)
