"""
Ledger: atomic balance mutations with an append-only entry per mutation.

Every balance change writes its ledger entry in the same SQLite transaction.
Pass `conn` to join a larger unit of work (a bet together with its round
snapshot); omit it to run the operation as its own unit.

Per-bettor serialization comes from the conditional UPDATE
(`balance >= amount`) executed inside an IMMEDIATE transaction, so
concurrent debits can never both spend the same funds.
"""
import logging
import sqlite3
import uuid
from typing import Optional, List, Dict, Any

from database import (
    Database,
    Account,
    Transaction,
    TransactionKind,
    TransactionStatus,
)
from utils.formatting import utcnow, format_coins
from .exceptions import InsufficientFunds, AccountNotFound

logger = logging.getLogger(__name__)

PAYOUT_KINDS = (
    TransactionKind.WIN,
    TransactionKind.COMMISSION,
    TransactionKind.REFUND,
    TransactionKind.ADJUSTMENT,
)

# House entries (user_id NULL) that add to the house's take
HOUSE_INCOME_KINDS = (TransactionKind.COMMISSION, TransactionKind.ADJUSTMENT)


def generate_tx_id() -> str:
    """Generate unique ledger entry ID."""
    return f"tx_{uuid.uuid4().hex[:16]}"


class Ledger:
    """Balance and pot accounting over the durable account store."""

    def __init__(self, db: Database, currency: str = "coins"):
        self.db = db
        self.currency = currency

    def _run(self, conn: Optional[sqlite3.Connection], fn, *args, **kwargs):
        if conn is not None:
            return fn(conn, *args, **kwargs)
        return self.db.run_in_transaction(fn, *args, **kwargs)

    # === Accounts ===

    def open_account(self, user_id: str, display_name: Optional[str] = None,
                     initial_balance: int = 0) -> Account:
        """Create an account, optionally funded with an opening deposit.

        Opening an existing account leaves its balance alone.
        """
        def _open(conn):
            existing = self.db.get_account(user_id, conn=conn)
            if existing:
                return existing

            self.db.insert_account(conn, Account(user_id=user_id, display_name=display_name))
            if initial_balance > 0:
                self._credit(conn, user_id, initial_balance, TransactionKind.ADJUSTMENT,
                             None, "Opening deposit", {})
            return self.db.get_account(user_id, conn=conn)

        account = self.db.run_in_transaction(_open)
        logger.info(f"[LEDGER] Account {user_id} ready (balance {format_coins(account.balance, self.currency)})")
        return account

    def get_balance(self, user_id: str, conn: Optional[sqlite3.Connection] = None) -> int:
        """Current balance of an account.

        Raises:
            AccountNotFound: If the account does not exist
        """
        account = self.db.get_account(user_id, conn=conn)
        if not account:
            raise AccountNotFound(user_id)
        return account.balance

    def deposit(self, user_id: str, amount: int, description: str = "Deposit") -> Transaction:
        """Credit funds from the payment collaborator."""
        return self.credit_payout(user_id, amount, TransactionKind.ADJUSTMENT, None,
                                  description=description)

    # === Primitives ===

    def debit_for_bet(
        self,
        bettor_id: str,
        amount: int,
        round_ref: str,
        conn: Optional[sqlite3.Connection] = None,
        description: str = "",
        details: Optional[Dict[str, Any]] = None,
    ) -> Transaction:
        """Move a stake from a bettor's balance into a round.

        Args:
            bettor_id: Account to debit
            amount: Stake amount (> 0)
            round_ref: Round receiving the stake
            conn: Open transaction to join, or None to run standalone
            description: Human-readable note for the entry
            details: Extra structured data (e.g. field number)

        Returns:
            The `bet` ledger entry

        Raises:
            InsufficientFunds: If the balance does not cover the amount
            AccountNotFound: If the bettor has no account
        """
        if amount <= 0:
            raise ValueError(f"Bet amount must be positive, got {amount}")

        def _debit(c):
            if not self.db.decrement_balance(c, bettor_id, amount):
                account = self.db.get_account(bettor_id, conn=c)
                if not account:
                    raise AccountNotFound(bettor_id)
                raise InsufficientFunds(bettor_id, amount, account.balance)

            tx = Transaction(
                tx_id=generate_tx_id(),
                kind=TransactionKind.BET,
                amount=amount,
                round_id=round_ref,
                user_id=bettor_id,
                currency=self.currency,
                description=description or f"Bet in round {round_ref}",
                details=details or {},
                timestamp=utcnow(),
            )
            self.db.insert_transaction(c, tx)
            return tx

        tx = self._run(conn, _debit)
        logger.info(f"[LEDGER] Debited {format_coins(amount, self.currency)} from {bettor_id} for {round_ref} ({tx.tx_id})")
        return tx

    def credit_payout(
        self,
        recipient_id: Optional[str],
        amount: int,
        kind: TransactionKind,
        round_ref: Optional[str],
        conn: Optional[sqlite3.Connection] = None,
        description: str = "",
        details: Optional[Dict[str, Any]] = None,
    ) -> Transaction:
        """Credit a recipient, or record a house-only entry when there is none.

        Args:
            recipient_id: Account to credit, or None for house entries
            amount: Amount (> 0)
            kind: win / commission / refund / adjustment
            round_ref: Related round, if any
            conn: Open transaction to join, or None to run standalone
            description: Human-readable note for the entry
            details: Extra structured data

        Returns:
            The ledger entry

        Raises:
            AccountNotFound: If the recipient has no account
        """
        if kind not in PAYOUT_KINDS:
            raise ValueError(f"{kind.value} is not a credit kind")
        if amount <= 0:
            raise ValueError(f"Credit amount must be positive, got {amount}")

        tx = self._run(conn, self._credit, recipient_id, amount, kind, round_ref,
                       description, details or {})

        target = recipient_id or "house"
        logger.info(f"[LEDGER] {kind.value}: {format_coins(amount, self.currency)} to {target} for {round_ref} ({tx.tx_id})")
        return tx

    def record_house_bank(
        self,
        amount: int,
        round_ref: str,
        conn: Optional[sqlite3.Connection] = None,
        description: str = "",
    ) -> Transaction:
        """Record house money paid into a round's prize pool.

        This is a house debit, so it is kept apart from the house's income
        entries and subtracted in `house_net`.
        """
        if amount <= 0:
            raise ValueError(f"House bank amount must be positive, got {amount}")

        tx = self._run(conn, self._credit, None, amount, TransactionKind.HOUSE_BANK, round_ref,
                       description or f"House bank contributed to round {round_ref}", {})
        logger.info(f"[LEDGER] house_bank: {format_coins(amount, self.currency)} from house into {round_ref} ({tx.tx_id})")
        return tx

    def _credit(self, conn, recipient_id, amount, kind, round_ref, description, details) -> Transaction:
        if recipient_id is not None and not self.db.increment_balance(conn, recipient_id, amount):
            raise AccountNotFound(recipient_id)

        tx = Transaction(
            tx_id=generate_tx_id(),
            kind=kind,
            amount=amount,
            round_id=round_ref,
            user_id=recipient_id,
            currency=self.currency,
            description=description or f"{kind.value} for round {round_ref}",
            details=details,
            timestamp=utcnow(),
        )
        self.db.insert_transaction(conn, tx)
        return tx

    # === Round accounting ===

    def round_entries(self, round_id: str, kind: Optional[TransactionKind] = None,
                      conn: Optional[sqlite3.Connection] = None) -> List[Transaction]:
        """Ledger entries recorded against a round."""
        return self.db.get_round_transactions(round_id, kind=kind, conn=conn)

    def staked_total(self, round_id: str, conn: Optional[sqlite3.Connection] = None) -> int:
        """Sum of all bet entries for a round: the authoritative pot."""
        return sum(tx.amount for tx in self.round_entries(round_id, TransactionKind.BET, conn=conn))

    def house_net(self, round_id: str, conn: Optional[sqlite3.Connection] = None) -> int:
        """House result for a round: commission plus retention, minus any house bank paid out."""
        net = 0
        for tx in self.round_entries(round_id, conn=conn):
            if tx.user_id is not None:
                continue
            if tx.kind == TransactionKind.HOUSE_BANK:
                net -= tx.amount
            elif tx.kind in HOUSE_INCOME_KINDS:
                net += tx.amount
        return net

    def hold_round_for_review(self, round_id: str, conn: Optional[sqlite3.Connection] = None) -> int:
        """Flag a round's completed bet entries as pending manual review."""
        return self._run(
            conn,
            lambda c: self.db.set_transaction_status(
                c, round_id, TransactionKind.BET,
                TransactionStatus.COMPLETED, TransactionStatus.PENDING_REVIEW,
            ),
        )

    def mark_round_reconciled(self, round_id: str, conn: Optional[sqlite3.Connection] = None) -> int:
        """Flag a round's held bet entries as reconciled after refunds."""
        return self._run(
            conn,
            lambda c: self.db.set_transaction_status(
                c, round_id, TransactionKind.BET,
                TransactionStatus.PENDING_REVIEW, TransactionStatus.RECONCILED,
            ),
        )
