"""
Admin tools for reconciling rounds that failed.

SECURITY: These tools move funds and should only be used:
1. When a round has been forced to errored and its stakes are held for review
2. When a round looks stuck and needs investigation
3. For manual intervention after thorough investigation

ALL RECOVERY OPERATIONS ARE LOGGED TO AUDIT SYSTEM.
"""
import logging
from collections import OrderedDict
from typing import Optional, List, Dict, Any

from database import Database, RoundStatus, TransactionKind, TransactionStatus
from rounds.exceptions import RoundNotFound, AccountNotFound
from rounds.fairness import verify_round
from rounds.ledger import Ledger
from rounds.store import RoundStore
from security.audit import AuditLogger, AuditEventType, AuditSeverity
from utils.formatting import utcnow

logger = logging.getLogger(__name__)


class RecoveryTools:
    """Admin tools for round reconciliation."""

    def __init__(self, db: Database, ledger: Ledger, store: RoundStore,
                 audit: Optional[AuditLogger] = None):
        self.db = db
        self.ledger = ledger
        self.store = store
        self.audit = audit

    def _audit(self, event_type, severity, round_id=None, user_id=None, details=None):
        if self.audit:
            self.audit.log(event_type, severity, user_id=user_id, round_id=round_id, details=details)

    def refund_round(self, round_id: str, admin_id: str, reason: str) -> Dict[str, int]:
        """Refund every stake held by an errored round.

        One `refund` entry is written per bettor (sum of their held stakes) and
        the held `bet` entries are flipped to reconciled, all in one
        transaction. Running it again refunds nothing.

        Args:
            round_id: Errored round to refund
            admin_id: Operator performing the refund
            reason: Reason for the refund (for audit log)

        Returns:
            Dict of bettor id -> refunded amount
        """
        round_ = self.store.load(round_id)
        if not round_:
            raise RoundNotFound(round_id)

        if round_.status != RoundStatus.ERRORED:
            raise ValueError(f"Round {round_id} is {round_.status.value}; only errored rounds can be refunded")

        self._audit(
            AuditEventType.ADMIN_ACTION,
            AuditSeverity.CRITICAL,
            round_id=round_id,
            user_id=admin_id,
            details=f"REFUND REQUESTED: Round {round_id} | Reason: {reason}",
        )

        def refund(conn):
            held = [
                tx for tx in self.ledger.round_entries(round_id, TransactionKind.BET, conn=conn)
                if tx.status == TransactionStatus.PENDING_REVIEW
            ]
            totals: Dict[str, int] = OrderedDict()
            for tx in held:
                totals[tx.user_id] = totals.get(tx.user_id, 0) + tx.amount

            for bettor_id, amount in totals.items():
                self.ledger.credit_payout(
                    bettor_id, amount, TransactionKind.REFUND, round_id, conn=conn,
                    description=f"Refund for errored round {round_id}",
                    details={"admin_id": admin_id, "reason": reason},
                )
            self.ledger.mark_round_reconciled(round_id, conn=conn)
            return dict(totals)

        refunds = self.db.run_in_transaction(refund)

        if not refunds:
            logger.info(f"[RECOVERY] Round {round_id} has no held stakes; nothing refunded")
            return refunds

        for bettor_id, amount in refunds.items():
            self._audit(
                AuditEventType.REFUND_ISSUED,
                AuditSeverity.WARNING,
                round_id=round_id,
                user_id=bettor_id,
                details={"amount": amount, "admin_id": admin_id},
            )
        logger.info(f"[RECOVERY] Refunded {sum(refunds.values())} to {len(refunds)} bettors for round {round_id}")

        return refunds

    def find_unsettled_rounds(self, stale_after_seconds: float = 300) -> List[Dict[str, Any]]:
        """Find rounds that still hold player funds.

        Returns:
            Errored rounds with held stakes, plus active rounds whose
            deadline passed more than `stale_after_seconds` ago
        """
        now = utcnow()
        found = []

        for round_ in self.store.errored_rounds(limit=1000):
            held = [
                tx for tx in self.ledger.round_entries(round_.round_id, TransactionKind.BET)
                if tx.status == TransactionStatus.PENDING_REVIEW
            ]
            if held:
                found.append({
                    "round_id": round_.round_id,
                    "room_id": round_.room_id,
                    "status": round_.status.value,
                    "held_amount": sum(tx.amount for tx in held),
                    "bettors": len({tx.user_id for tx in held}),
                    "error": round_.error,
                    "ended_at": round_.ended_at.isoformat() if round_.ended_at else None,
                })

        for round_ in self.store.active_rounds():
            if round_.deadline_at and (now - round_.deadline_at).total_seconds() > stale_after_seconds:
                found.append({
                    "round_id": round_.round_id,
                    "room_id": round_.room_id,
                    "status": round_.status.value,
                    "held_amount": round_.pot,
                    "bettors": round_.distinct_bettors,
                    "error": "deadline passed without settlement",
                    "ended_at": None,
                })

        return found

    def reconcile_round(self, round_id: str) -> Dict[str, Any]:
        """Compare a round's snapshot with its ledger entries.

        Returns:
            Dict with snapshot pot, ledger totals per kind and whether they agree
        """
        round_ = self.store.load(round_id)
        if not round_:
            raise RoundNotFound(round_id)

        totals: Dict[str, int] = {kind.value: 0 for kind in TransactionKind}
        for tx in self.ledger.round_entries(round_id):
            totals[tx.kind.value] += tx.amount

        # Round-scoped adjustments are house retention; deposits carry no round
        credited = totals["win"] + totals["commission"] + totals["refund"] + totals["adjustment"]
        report = {
            "round_id": round_id,
            "status": round_.status.value,
            "snapshot_pot": round_.pot,
            "house_bank": round_.house_bank,
            "ledger": totals,
            "house_net": self.ledger.house_net(round_id),
            "pot_matches_ledger": round_.pot == totals["bet"],
        }

        if round_.status == RoundStatus.FINISHED and round_.outcome:
            report["balanced"] = (
                credited == totals["bet"] + totals["house_bank"]
                and totals["adjustment"] == round_.outcome.house_retained
            )
        elif round_.status == RoundStatus.ERRORED:
            report["balanced"] = totals["refund"] in (0, totals["bet"])
        else:
            report["balanced"] = report["pot_matches_ledger"]

        return report

    def verify_finished_rounds(self, limit: int = 50) -> Dict[str, Any]:
        """Re-run fairness verification on recent finished rounds."""
        results = {"checked": 0, "verified": 0, "failed": [], "missing_audit": []}

        for round_ in self.store.finished_rounds(limit=limit):
            results["checked"] += 1
            record = self.store.get_audit(round_.round_id)
            if not record:
                results["missing_audit"].append(round_.round_id)
                continue
            if verify_round(record):
                results["verified"] += 1
            else:
                results["failed"].append(round_.round_id)

        return results

    def credit_account(self, user_id: str, amount: int, admin_id: str, reason: str) -> int:
        """Credit funds to an existing account on behalf of the payment side.

        Returns:
            The new balance
        """
        if not self.db.get_account(user_id):
            raise AccountNotFound(user_id)

        tx = self.ledger.deposit(user_id, amount, description=f"Admin credit: {reason}")
        self._audit(
            AuditEventType.ADMIN_ACTION,
            AuditSeverity.WARNING,
            user_id=user_id,
            details={"action": "credit", "amount": amount, "admin_id": admin_id,
                     "reason": reason, "tx_id": tx.tx_id},
        )
        logger.info(f"[RECOVERY] {admin_id} credited {amount} to {user_id} ({reason})")
        return self.ledger.get_balance(user_id)

    def export_account(self, user_id: str, limit: int = 1000) -> Dict[str, Any]:
        """Export an account and its ledger history for support."""
        account = self.db.get_account(user_id)
        if not account:
            raise AccountNotFound(user_id)

        transactions = self.db.get_user_transactions(user_id, limit=limit)

        return {
            "account": {
                "user_id": account.user_id,
                "display_name": account.display_name,
                "balance": account.balance,
                "created_at": account.created_at.isoformat(),
            },
            "transactions": [
                {
                    "tx_id": t.tx_id,
                    "kind": t.kind.value,
                    "amount": t.amount,
                    "round_id": t.round_id,
                    "status": t.status.value,
                    "timestamp": t.timestamp.isoformat(),
                }
                for t in transactions
            ],
        }
