"""
RoundStore: current snapshot plus append-only event log per round.

Snapshots of rounds that are still running may keep the server seed
encrypted at rest; it is stored in clear once the round is over and the
seed has been revealed.
"""
import logging
import sqlite3
from typing import Optional, List, Dict, Any

from cryptography.fernet import InvalidToken

from database import Database, Round, RoundStatus, RoundAuditRecord
from utils.encryption import encrypt_secret, decrypt_secret
from utils.formatting import utcnow

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = [RoundStatus.OPEN, RoundStatus.CLOSING, RoundStatus.RESOLVING]
ENCRYPTED_SEED_FIELD = "server_seed_encrypted"


class RoundStore:
    """Persistence and recovery of round documents."""

    def __init__(self, db: Database, seed_encryption_key: Optional[str] = None):
        self.db = db
        self.seed_encryption_key = seed_encryption_key

    # === Snapshot encoding ===

    def _encode(self, round_: Round) -> Dict[str, Any]:
        data = round_.to_dict()
        if self.seed_encryption_key and not round_.status.is_terminal:
            data[ENCRYPTED_SEED_FIELD] = encrypt_secret(round_.server_seed, self.seed_encryption_key)
            data["server_seed"] = None
        return data

    def _decode(self, data: Dict[str, Any]) -> Round:
        data = dict(data)
        encrypted = data.pop(ENCRYPTED_SEED_FIELD, None)
        if encrypted:
            if not self.seed_encryption_key:
                raise ValueError(f"Round {data.get('round_id')} has an encrypted seed but no key is configured")
            try:
                data["server_seed"] = decrypt_secret(encrypted, self.seed_encryption_key)
            except InvalidToken as e:
                raise ValueError(f"Cannot decrypt server seed of round {data.get('round_id')}") from e
        return Round.from_dict(data)

    # === Writes (always inside a caller's unit of work) ===

    def save(self, conn: sqlite3.Connection, round_: Round, event_type: str,
             event_data: Optional[Dict[str, Any]] = None):
        """Persist the round's current snapshot and append one event."""
        self.db.save_round_snapshot(
            conn,
            round_.round_id,
            round_.room_id,
            round_.nonce,
            round_.variant.value,
            round_.status.value,
            round_.deadline_at,
            self._encode(round_),
        )
        self.db.append_round_event(conn, round_.round_id, event_type, event_data)

    def record_audit(self, conn: sqlite3.Connection, record: RoundAuditRecord):
        """Write the immutable audit record of a finished round."""
        self.db.insert_round_audit(
            conn,
            record.round_id,
            record.room_id,
            record.to_dict(),
            record.finished_at or utcnow(),
        )

    # === Reads ===

    def load(self, round_id: str) -> Optional[Round]:
        data = self.db.get_round_snapshot(round_id)
        return self._decode(data) if data else None

    def latest_for_room(self, room_id: str) -> Optional[Round]:
        """Highest-numbered round of a room, terminal or not."""
        data = self.db.get_latest_round_snapshot(room_id)
        return self._decode(data) if data else None

    def active_rounds(self, room_id: Optional[str] = None) -> List[Round]:
        """Rounds persisted in a non-terminal state."""
        rows = self.db.get_round_snapshots_by_status([s.value for s in ACTIVE_STATUSES], room_id=room_id)
        return [self._decode(row) for row in rows]

    def errored_rounds(self, room_id: Optional[str] = None, limit: int = 100) -> List[Round]:
        rows = self.db.get_round_snapshots_by_status([RoundStatus.ERRORED.value], room_id=room_id, limit=limit)
        return [self._decode(row) for row in rows]

    def finished_rounds(self, room_id: Optional[str] = None, limit: int = 20) -> List[Round]:
        rows = self.db.get_round_snapshots_by_status([RoundStatus.FINISHED.value], room_id=room_id, limit=limit)
        return [self._decode(row) for row in rows]

    def next_nonce(self, room_id: str, conn: Optional[sqlite3.Connection] = None) -> int:
        return self.db.get_max_nonce(room_id, conn=conn) + 1

    def events(self, round_id: str) -> List[Dict[str, Any]]:
        return self.db.get_round_events(round_id)

    def get_audit(self, round_id: str) -> Optional[RoundAuditRecord]:
        data = self.db.get_round_audit(round_id)
        return RoundAuditRecord.from_dict(data) if data else None
