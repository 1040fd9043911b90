"""
Admin Dashboard for the round engine

SECURITY: This tool can refund held stakes and credit accounts.
Only run this on a secure, admin-only machine.

Features:
- View active and errored rounds
- Refund errored rounds
- Reconcile a round against the ledger
- Verify finished rounds
- Inspect and credit accounts
- Review audit events and the 24h audit summary
"""
import logging
from typing import Optional

from dotenv import load_dotenv
from tabulate import tabulate

from admin_recovery_tools import RecoveryTools
from database import Database
from room_config import ROUNDS_DB_PATH, SEED_ENCRYPTION_KEY
from rounds.ledger import Ledger
from rounds.store import RoundStore
from security.audit import AuditLogger, AuditSeverity
from utils.formatting import format_percentage, format_remaining, format_timestamp, truncate_seed, utcnow

load_dotenv()
logger = logging.getLogger(__name__)


class AdminDashboard:
    """Console for round reconciliation."""

    def __init__(self, db_path: Optional[str] = None, admin_id: str = "admin"):
        db_path = db_path or ROUNDS_DB_PATH
        self.db = Database(db_path)
        self.ledger = Ledger(self.db)
        self.store = RoundStore(self.db, SEED_ENCRYPTION_KEY)
        self.audit = AuditLogger(db_path)
        self.recovery = RecoveryTools(self.db, self.ledger, self.store, self.audit)
        self.admin_id = admin_id

    def main_menu(self):
        """Display main menu."""
        while True:
            print("\n" + "="*60)
            print("ROUND ENGINE ADMIN DASHBOARD")
            print("="*60)
            print("\nROUNDS:")
            print("  1. View Active Rounds")
            print("  2. View Unsettled / Errored Rounds")
            print("  3. Refund Errored Round")
            print("  4. Reconcile Round Against Ledger")
            print("  5. Verify Recent Finished Rounds")
            print("\nACCOUNTS & AUDIT:")
            print("  6. Look Up Account")
            print("  7. View Recent Audit Events")
            print("  8. Credit Account")
            print("  9. Audit Summary (24h)")
            print("\n  0. Exit")
            print("="*60)

            choice = input("\nSelect option: ").strip()

            try:
                if choice == "1":
                    self.view_active_rounds()
                elif choice == "2":
                    self.view_unsettled_rounds()
                elif choice == "3":
                    self.refund_round()
                elif choice == "4":
                    self.reconcile_round()
                elif choice == "5":
                    self.verify_rounds()
                elif choice == "6":
                    self.lookup_account()
                elif choice == "7":
                    self.view_audit_events()
                elif choice == "8":
                    self.credit_account()
                elif choice == "9":
                    self.view_audit_summary()
                elif choice == "0":
                    print("\nExiting admin dashboard...")
                    break
                else:
                    print("\nInvalid option. Try again.")
            except KeyboardInterrupt:
                print("\n\nExiting admin dashboard...")
                break
            except Exception as e:
                logger.error(f"Dashboard error: {e}", exc_info=True)
                print(f"\nError: {e}")
                input("\nPress Enter to continue...")

    def render_active_rounds(self) -> str:
        now = utcnow()
        rows = [
            {
                "Round": r.round_id,
                "Variant": r.variant.value,
                "Status": r.status.value,
                "Pot": r.pot,
                "Bettors": r.distinct_bettors,
                "Commission": format_percentage(r.commission_rate_percent),
                "Deadline": format_timestamp(r.deadline_at),
                "Remaining": format_remaining(r.remaining_seconds(now)),
                "Commitment": truncate_seed(r.hashed_server_seed),
            }
            for r in self.store.active_rounds()
        ]
        if not rows:
            return "No active rounds."
        return tabulate(rows, headers="keys", tablefmt="grid")

    def render_unsettled_rounds(self) -> str:
        rows = [
            {
                "Round": r["round_id"],
                "Status": r["status"],
                "Held": r["held_amount"],
                "Bettors": r["bettors"],
                "Error": (r["error"] or "")[:40],
            }
            for r in self.recovery.find_unsettled_rounds()
        ]
        if not rows:
            return "No unsettled rounds."
        return tabulate(rows, headers="keys", tablefmt="grid")

    def render_audit_summary(self, hours: int = 24) -> str:
        summary = self.audit.get_summary(hours=hours)
        lines = [
            f"Last {summary['period_hours']}h: {summary['total_critical']} critical, "
            f"{summary['total_warnings']} warnings",
        ]
        if summary["top_events"]:
            lines.append(tabulate(summary["top_events"].items(), headers=["Event", "Count"], tablefmt="grid"))
        if summary["flagged_rounds"]:
            lines.append(f"Flagged rounds: {', '.join(summary['flagged_rounds'])}")
        return "\n".join(lines)

    def view_active_rounds(self):
        print("\n" + self.render_active_rounds())
        input("\nPress Enter to continue...")

    def view_unsettled_rounds(self):
        print("\n" + self.render_unsettled_rounds())
        input("\nPress Enter to continue...")

    def refund_round(self):
        """Refund the held stakes of an errored round."""
        round_id = input("\nEnter Round ID: ").strip()
        reason = input("Enter reason for refund: ").strip()

        if not all([round_id, reason]):
            print("\nAll fields are required.")
            return

        confirm = input(f"\nConfirm refund of round {round_id}? (yes/no): ").strip().lower()
        if confirm != "yes":
            print("\nRefund cancelled.")
            return

        refunds = self.recovery.refund_round(round_id, self.admin_id, reason)
        if refunds:
            print("\n" + tabulate(refunds.items(), headers=["Bettor", "Refunded"], tablefmt="grid"))
        else:
            print("\nNothing to refund.")
        input("\nPress Enter to continue...")

    def reconcile_round(self):
        round_id = input("\nEnter Round ID: ").strip()
        report = self.recovery.reconcile_round(round_id)
        print("\n" + tabulate(report["ledger"].items(), headers=["Kind", "Total"], tablefmt="grid"))
        print(f"\nSnapshot pot: {report['snapshot_pot']} | Matches ledger: {report['pot_matches_ledger']}"
              f" | Balanced: {report['balanced']} | House net: {report['house_net']}")
        input("\nPress Enter to continue...")

    def verify_rounds(self):
        results = self.recovery.verify_finished_rounds()
        print(f"\nChecked: {results['checked']} | Verified: {results['verified']}")
        if results["failed"]:
            print(f"FAILED: {', '.join(results['failed'])}")
        if results["missing_audit"]:
            print(f"Missing audit records: {', '.join(results['missing_audit'])}")
        input("\nPress Enter to continue...")

    def lookup_account(self):
        user_id = input("\nEnter User ID: ").strip()
        data = self.recovery.export_account(user_id, limit=20)
        account = data["account"]
        print(f"\n{account['user_id']} ({account['display_name'] or '-'}): balance {account['balance']}")
        if data["transactions"]:
            print(tabulate(data["transactions"], headers="keys", tablefmt="grid"))
        input("\nPress Enter to continue...")

    def view_audit_events(self):
        severity = input("\nFilter severity (info/warning/critical, blank for all): ").strip().lower()
        events = self.audit.get_recent_events(
            limit=50,
            severity=AuditSeverity(severity) if severity else None,
        )
        rows = [
            {
                "Time": e["timestamp"][:19],
                "Event": e["event_type"],
                "Severity": e["severity"],
                "Round": e["round_id"] or "-",
                "User": e["user_id"] or "-",
            }
            for e in events
        ]
        print("\n" + (tabulate(rows, headers="keys", tablefmt="grid") if rows else "No events."))
        input("\nPress Enter to continue...")

    def credit_account(self):
        """Credit an account, e.g. after a payment the ledger missed."""
        user_id = input("\nEnter User ID: ").strip()
        amount = input("Enter amount: ").strip()
        reason = input("Enter reason: ").strip()

        if not all([user_id, amount, reason]):
            print("\nAll fields are required.")
            return
        if not amount.isdigit() or int(amount) <= 0:
            print("\nAmount must be a positive whole number.")
            return

        confirm = input(f"\nConfirm credit of {amount} to {user_id}? (yes/no): ").strip().lower()
        if confirm != "yes":
            print("\nCredit cancelled.")
            return

        balance = self.recovery.credit_account(user_id, int(amount), self.admin_id, reason)
        print(f"\n{user_id} credited. New balance: {balance}")
        input("\nPress Enter to continue...")

    def view_audit_summary(self):
        print("\n" + self.render_audit_summary())
        input("\nPress Enter to continue...")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    AdminDashboard().main_menu()
