"""
Database repository for the round engine.
SQLite store for accounts, ledger entries, round snapshots, round events
and finished-round audit records.

Writes go through `transaction()`, which opens an IMMEDIATE transaction so
every unit of work (balance update + ledger entry + round snapshot) commits
or rolls back as one.
"""
import json
import sqlite3
import logging
from contextlib import contextmanager
from typing import Optional, List, Dict, Any, Callable, Iterator
from datetime import datetime

from utils.formatting import utcnow
from utils.retry import RetryExhausted
from .models import Account, Transaction, TransactionKind, TransactionStatus

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Base class for durable-store failures."""


class TransientStoreError(StoreError):
    """Store call failed in a way that may succeed on retry (locked, busy, IO)."""


class StoreUnavailable(RetryExhausted, StoreError):
    """Store calls kept failing after every retry."""


# SQLite messages for failures that can clear up on their own
TRANSIENT_MESSAGES = ("locked", "busy", "disk i/o", "unable to open")


def store_error(e: sqlite3.OperationalError) -> StoreError:
    """Classify an SQLite operational error.

    Locked, busy and I/O failures are transient; anything else (missing
    table, bad SQL) is a permanent StoreError and is never retried.
    """
    message = str(e).lower()
    if any(marker in message for marker in TRANSIENT_MESSAGES):
        return TransientStoreError(str(e))
    return StoreError(str(e))


class Database:
    """Database repository."""

    def __init__(self, db_path: str = "rounds.db", timeout: float = 5.0):
        self.db_path = db_path
        self.timeout = timeout
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=self.timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Open an IMMEDIATE transaction; commit on success, roll back on any error.

        Raises:
            TransientStoreError: If SQLite reports a locked/busy/IO failure
        """
        try:
            conn = self._connect()
        except sqlite3.OperationalError as e:
            raise store_error(e) from e

        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.execute("COMMIT")
        except sqlite3.OperationalError as e:
            self._rollback(conn)
            raise store_error(e) from e
        except BaseException:
            self._rollback(conn)
            raise
        finally:
            conn.close()

    @staticmethod
    def _rollback(conn: sqlite3.Connection):
        if conn.in_transaction:
            try:
                conn.execute("ROLLBACK")
            except sqlite3.Error as e:
                logger.error(f"Rollback failed: {e}")

    @contextmanager
    def reader(self) -> Iterator[sqlite3.Connection]:
        """Connection for read-only queries."""
        try:
            conn = self._connect()
        except sqlite3.OperationalError as e:
            raise store_error(e) from e
        try:
            yield conn
        except sqlite3.OperationalError as e:
            raise store_error(e) from e
        finally:
            conn.close()

    def run_in_transaction(self, fn: Callable[..., Any], *args, **kwargs) -> Any:
        """Run `fn(conn, *args, **kwargs)` as one unit of work."""
        with self.transaction() as conn:
            return fn(conn, *args, **kwargs)

    def _init_db(self):
        """Initialize database schema."""
        conn = sqlite3.connect(self.db_path)
        cursor = conn.cursor()

        # WAL lets readers proceed while a unit of work is committing
        cursor.execute("PRAGMA journal_mode=WAL")

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS accounts (
                user_id TEXT PRIMARY KEY,
                balance INTEGER NOT NULL DEFAULT 0 CHECK (balance >= 0),
                display_name TEXT,
                created_at TEXT,
                updated_at TEXT
            )
        """)

        # Ledger entries are append-only; only `status` is ever updated
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS transactions (
                tx_id TEXT PRIMARY KEY,
                kind TEXT NOT NULL,
                amount INTEGER NOT NULL CHECK (amount >= 0),
                round_id TEXT,
                user_id TEXT,
                status TEXT NOT NULL DEFAULT 'completed',
                currency TEXT NOT NULL DEFAULT 'coins',
                description TEXT,
                details TEXT,
                timestamp TEXT NOT NULL,
                FOREIGN KEY (user_id) REFERENCES accounts(user_id)
            )
        """)

        # Current snapshot per round
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS rounds (
                round_id TEXT PRIMARY KEY,
                room_id TEXT NOT NULL,
                nonce INTEGER NOT NULL,
                variant TEXT NOT NULL,
                status TEXT NOT NULL,
                deadline_at TEXT,
                snapshot TEXT NOT NULL,
                created_at TEXT,
                updated_at TEXT,
                UNIQUE (room_id, nonce)
            )
        """)

        # Append-only event log per round
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS round_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                round_id TEXT NOT NULL,
                event_type TEXT NOT NULL,
                data TEXT,
                created_at TEXT NOT NULL,
                FOREIGN KEY (round_id) REFERENCES rounds(round_id)
            )
        """)

        # Written once when a round finishes, never updated
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS round_audits (
                round_id TEXT PRIMARY KEY,
                room_id TEXT NOT NULL,
                record TEXT NOT NULL,
                finished_at TEXT NOT NULL
            )
        """)

        cursor.execute("CREATE INDEX IF NOT EXISTS idx_tx_round ON transactions(round_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_tx_user ON transactions(user_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_rounds_room ON rounds(room_id, nonce)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_rounds_status ON rounds(status)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_events_round ON round_events(round_id)")

        conn.commit()
        conn.close()
        logger.info(f"Database initialized at {self.db_path}")

    # === Account Operations ===

    def get_account(self, user_id: str, conn: Optional[sqlite3.Connection] = None) -> Optional[Account]:
        """Get account by user ID."""
        if conn is not None:
            row = conn.execute("SELECT * FROM accounts WHERE user_id = ?", (user_id,)).fetchone()
        else:
            with self.reader() as c:
                row = c.execute("SELECT * FROM accounts WHERE user_id = ?", (user_id,)).fetchone()

        if not row:
            return None

        return self._row_to_account(row)

    def insert_account(self, conn: sqlite3.Connection, account: Account):
        """Create an account; existing accounts are left untouched."""
        conn.execute("""
            INSERT OR IGNORE INTO accounts (user_id, balance, display_name, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
        """, (
            account.user_id, account.balance, account.display_name,
            account.created_at.isoformat(), account.updated_at.isoformat()
        ))

    def decrement_balance(self, conn: sqlite3.Connection, user_id: str, amount: int) -> bool:
        """Subtract `amount` only if the balance covers it.

        Returns:
            True if the balance was decremented, False if funds were short
            or the account does not exist
        """
        cursor = conn.execute("""
            UPDATE accounts SET balance = balance - ?, updated_at = ?
            WHERE user_id = ? AND balance >= ?
        """, (amount, utcnow().isoformat(), user_id, amount))
        return cursor.rowcount == 1

    def increment_balance(self, conn: sqlite3.Connection, user_id: str, amount: int) -> bool:
        """Add `amount` to an existing account."""
        cursor = conn.execute("""
            UPDATE accounts SET balance = balance + ?, updated_at = ?
            WHERE user_id = ?
        """, (amount, utcnow().isoformat(), user_id))
        return cursor.rowcount == 1

    def _row_to_account(self, row: sqlite3.Row) -> Account:
        """Convert database row to Account object."""
        return Account(
            user_id=row["user_id"],
            balance=row["balance"],
            display_name=row["display_name"],
            created_at=datetime.fromisoformat(row["created_at"]) if row["created_at"] else utcnow(),
            updated_at=datetime.fromisoformat(row["updated_at"]) if row["updated_at"] else utcnow(),
        )

    # === Ledger Operations ===

    def insert_transaction(self, conn: sqlite3.Connection, tx: Transaction):
        """Append a ledger entry."""
        conn.execute("""
            INSERT INTO transactions (
                tx_id, kind, amount, round_id, user_id, status, currency,
                description, details, timestamp
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            tx.tx_id, tx.kind.value, tx.amount, tx.round_id, tx.user_id, tx.status.value,
            tx.currency, tx.description, json.dumps(tx.details), tx.timestamp.isoformat()
        ))

    def set_transaction_status(
        self,
        conn: sqlite3.Connection,
        round_id: str,
        kind: TransactionKind,
        from_status: TransactionStatus,
        to_status: TransactionStatus,
    ) -> int:
        """Move a round's entries of one kind between administrative statuses."""
        cursor = conn.execute("""
            UPDATE transactions SET status = ?
            WHERE round_id = ? AND kind = ? AND status = ?
        """, (to_status.value, round_id, kind.value, from_status.value))
        return cursor.rowcount

    def get_round_transactions(
        self,
        round_id: str,
        kind: Optional[TransactionKind] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> List[Transaction]:
        """Get ledger entries for a round, oldest first."""
        query = "SELECT * FROM transactions WHERE round_id = ?"
        params: list = [round_id]
        if kind:
            query += " AND kind = ?"
            params.append(kind.value)
        query += " ORDER BY timestamp ASC, rowid ASC"

        if conn is not None:
            rows = conn.execute(query, params).fetchall()
        else:
            with self.reader() as c:
                rows = c.execute(query, params).fetchall()

        return [self._row_to_transaction(row) for row in rows]

    def get_user_transactions(self, user_id: str, limit: int = 20) -> List[Transaction]:
        """Get recent ledger entries for a user."""
        with self.reader() as conn:
            rows = conn.execute("""
                SELECT * FROM transactions
                WHERE user_id = ?
                ORDER BY timestamp DESC, rowid DESC
                LIMIT ?
            """, (user_id, limit)).fetchall()

        return [self._row_to_transaction(row) for row in rows]

    def _row_to_transaction(self, row: sqlite3.Row) -> Transaction:
        """Convert database row to Transaction object."""
        return Transaction(
            tx_id=row["tx_id"],
            kind=TransactionKind(row["kind"]),
            amount=row["amount"],
            round_id=row["round_id"],
            user_id=row["user_id"],
            status=TransactionStatus(row["status"]),
            currency=row["currency"],
            description=row["description"] or "",
            details=json.loads(row["details"]) if row["details"] else {},
            timestamp=datetime.fromisoformat(row["timestamp"]),
        )

    # === Round Operations ===

    def save_round_snapshot(
        self,
        conn: sqlite3.Connection,
        round_id: str,
        room_id: str,
        nonce: int,
        variant: str,
        status: str,
        deadline_at: Optional[datetime],
        snapshot: Dict[str, Any],
    ):
        """Insert or replace the current snapshot of a round."""
        now = utcnow().isoformat()
        conn.execute("""
            INSERT INTO rounds (
                round_id, room_id, nonce, variant, status, deadline_at, snapshot, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(round_id) DO UPDATE SET
                status = excluded.status,
                deadline_at = excluded.deadline_at,
                snapshot = excluded.snapshot,
                updated_at = excluded.updated_at
        """, (
            round_id, room_id, nonce, variant, status,
            deadline_at.isoformat() if deadline_at else None,
            json.dumps(snapshot), now, now
        ))

    def append_round_event(
        self,
        conn: sqlite3.Connection,
        round_id: str,
        event_type: str,
        data: Optional[Dict[str, Any]] = None,
    ):
        """Append to a round's event log."""
        conn.execute("""
            INSERT INTO round_events (round_id, event_type, data, created_at)
            VALUES (?, ?, ?, ?)
        """, (round_id, event_type, json.dumps(data or {}), utcnow().isoformat()))

    def get_round_snapshot(self, round_id: str) -> Optional[Dict[str, Any]]:
        """Get the stored snapshot of a round."""
        with self.reader() as conn:
            row = conn.execute("SELECT snapshot FROM rounds WHERE round_id = ?", (round_id,)).fetchone()

        if not row:
            return None

        return json.loads(row["snapshot"])

    def get_latest_round_snapshot(self, room_id: str) -> Optional[Dict[str, Any]]:
        """Get the highest-nonce round of a room."""
        with self.reader() as conn:
            row = conn.execute("""
                SELECT snapshot FROM rounds
                WHERE room_id = ?
                ORDER BY nonce DESC
                LIMIT 1
            """, (room_id,)).fetchone()

        if not row:
            return None

        return json.loads(row["snapshot"])

    def get_round_snapshots_by_status(
        self,
        statuses: List[str],
        room_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        """Get round snapshots in any of the given statuses, newest first."""
        placeholders = ",".join("?" for _ in statuses)
        query = f"SELECT snapshot FROM rounds WHERE status IN ({placeholders})"
        params: list = list(statuses)

        if room_id:
            query += " AND room_id = ?"
            params.append(room_id)

        query += " ORDER BY updated_at DESC LIMIT ?"
        params.append(limit)

        with self.reader() as conn:
            rows = conn.execute(query, params).fetchall()

        return [json.loads(row["snapshot"]) for row in rows]

    def get_max_nonce(self, room_id: str, conn: Optional[sqlite3.Connection] = None) -> int:
        """Highest round number used by a room (0 if none)."""
        query = "SELECT MAX(nonce) AS n FROM rounds WHERE room_id = ?"
        if conn is not None:
            row = conn.execute(query, (room_id,)).fetchone()
        else:
            with self.reader() as c:
                row = c.execute(query, (room_id,)).fetchone()
        return row["n"] or 0

    def get_round_events(self, round_id: str) -> List[Dict[str, Any]]:
        """Get a round's event log, oldest first."""
        with self.reader() as conn:
            rows = conn.execute("""
                SELECT event_type, data, created_at FROM round_events
                WHERE round_id = ?
                ORDER BY id ASC
            """, (round_id,)).fetchall()

        return [
            {
                "event_type": row["event_type"],
                "data": json.loads(row["data"]) if row["data"] else {},
                "created_at": row["created_at"],
            }
            for row in rows
        ]

    # === Audit Record Operations ===

    def insert_round_audit(self, conn: sqlite3.Connection, round_id: str, room_id: str,
                           record: Dict[str, Any], finished_at: datetime):
        """Write a finished round's audit record. Fails if one already exists."""
        conn.execute("""
            INSERT INTO round_audits (round_id, room_id, record, finished_at)
            VALUES (?, ?, ?, ?)
        """, (round_id, room_id, json.dumps(record), finished_at.isoformat()))

    def get_round_audit(self, round_id: str) -> Optional[Dict[str, Any]]:
        """Get a finished round's audit record."""
        with self.reader() as conn:
            row = conn.execute("SELECT record FROM round_audits WHERE round_id = ?", (round_id,)).fetchone()

        if not row:
            return None

        return json.loads(row["record"])
