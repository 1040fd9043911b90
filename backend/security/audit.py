"""
Round audit trail.
Records settlements, failures and anomalies for forensics and manual
reconciliation, and mirrors every entry into the application log.
"""
import json
import logging
import sqlite3
from datetime import timedelta
from typing import Optional, Union, Dict, Any
from enum import Enum

from utils.formatting import utcnow

logger = logging.getLogger(__name__)


class AuditEventType(Enum):
    """Types of round events to audit."""
    # Round lifecycle
    ROUND_CREATED = "round_created"
    ROUND_FINISHED = "round_finished"
    ROUND_ERRORED = "round_errored"

    # Anomalies
    INVARIANT_VIOLATION = "invariant_violation"
    STORE_UNAVAILABLE = "store_unavailable"
    LEDGER_RECONCILED = "ledger_reconciled"

    # Money movement
    PAYOUT_PROCESSED = "payout_processed"
    REFUND_ISSUED = "refund_issued"

    # Admin Actions
    ADMIN_ACTION = "admin_action"


class AuditSeverity(Enum):
    """Severity levels for audit events."""
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class AuditLogger:
    """Audit logging system for round events."""

    def __init__(self, db_path: str = "rounds.db"):
        self.db_path = db_path
        self._init_audit_table()

    def _init_audit_table(self):
        """Initialize audit log table."""
        conn = sqlite3.connect(self.db_path)
        cursor = conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS audit_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                event_type TEXT NOT NULL,
                user_id TEXT,
                room_id TEXT,
                round_id TEXT,
                details TEXT,
                severity TEXT NOT NULL,
                timestamp TEXT NOT NULL
            )
        """)

        cursor.execute("CREATE INDEX IF NOT EXISTS idx_audit_timestamp ON audit_logs(timestamp)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_audit_round ON audit_logs(round_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_audit_severity ON audit_logs(severity)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_audit_event_type ON audit_logs(event_type)")

        conn.commit()
        conn.close()

    def log(
        self,
        event_type: AuditEventType,
        severity: AuditSeverity = AuditSeverity.INFO,
        user_id: Optional[str] = None,
        room_id: Optional[str] = None,
        round_id: Optional[str] = None,
        details: Optional[Union[str, Dict[str, Any]]] = None,
    ):
        """Log an audit event. Never raises.

        Args:
            event_type: Type of event
            severity: Severity level
            user_id: Bettor or operator, if applicable
            room_id: Room, if applicable
            round_id: Round, if applicable
            details: Additional details (dict is stored as JSON)
        """
        if isinstance(details, dict):
            details = json.dumps(details, default=str)

        try:
            conn = sqlite3.connect(self.db_path)
            cursor = conn.cursor()

            cursor.execute("""
                INSERT INTO audit_logs (
                    event_type, user_id, room_id, round_id, details, severity, timestamp
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                event_type.value,
                user_id,
                room_id,
                round_id,
                details,
                severity.value,
                utcnow().isoformat()
            ))

            conn.commit()
            conn.close()

            # Also log to application logger
            log_msg = f"[AUDIT] {event_type.value}"
            if round_id:
                log_msg += f" | round={round_id}"
            if user_id:
                log_msg += f" | user={user_id}"
            if details:
                log_msg += f" | {details}"

            if severity == AuditSeverity.CRITICAL:
                logger.critical(log_msg)
            elif severity == AuditSeverity.WARNING:
                logger.warning(log_msg)
            else:
                logger.info(log_msg)

        except Exception as e:
            logger.error(f"Failed to write audit log: {e}", exc_info=True)

    def get_recent_events(
        self,
        limit: int = 100,
        severity: Optional[AuditSeverity] = None,
        event_type: Optional[AuditEventType] = None,
        round_id: Optional[str] = None
    ) -> list:
        """Get recent audit events, newest first."""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        cursor = conn.cursor()

        query = "SELECT * FROM audit_logs WHERE 1=1"
        params = []

        if severity:
            query += " AND severity = ?"
            params.append(severity.value)

        if event_type:
            query += " AND event_type = ?"
            params.append(event_type.value)

        if round_id:
            query += " AND round_id = ?"
            params.append(round_id)

        query += " ORDER BY timestamp DESC, id DESC LIMIT ?"
        params.append(limit)

        cursor.execute(query, params)
        rows = cursor.fetchall()
        conn.close()

        return [dict(row) for row in rows]

    def get_summary(self, hours: int = 24) -> dict:
        """Counts by severity and event type for the last N hours."""
        conn = sqlite3.connect(self.db_path)
        cursor = conn.cursor()

        cutoff = (utcnow() - timedelta(hours=hours)).isoformat()

        cursor.execute("""
            SELECT severity, COUNT(*) as count
            FROM audit_logs
            WHERE timestamp > ?
            GROUP BY severity
        """, (cutoff,))

        severity_counts = dict(cursor.fetchall())

        cursor.execute("""
            SELECT event_type, COUNT(*) as count
            FROM audit_logs
            WHERE timestamp > ?
            GROUP BY event_type
            ORDER BY count DESC
            LIMIT 10
        """, (cutoff,))

        event_counts = dict(cursor.fetchall())

        # Rounds that needed attention
        cursor.execute("""
            SELECT DISTINCT round_id
            FROM audit_logs
            WHERE timestamp > ? AND event_type IN ('round_errored', 'invariant_violation')
            AND round_id IS NOT NULL
        """, (cutoff,))

        flagged_rounds = [row[0] for row in cursor.fetchall()]

        conn.close()

        return {
            "period_hours": hours,
            "severity_counts": severity_counts,
            "top_events": event_counts,
            "flagged_rounds": flagged_rounds,
            "total_critical": severity_counts.get("critical", 0),
            "total_warnings": severity_counts.get("warning", 0),
        }
