"""Database module for the round engine."""
from .models import (
    GameVariant,
    RoundStatus,
    TransactionKind,
    TransactionStatus,
    RoomConfig,
    Bettor,
    Stake,
    Participant,
    Outcome,
    Round,
    Transaction,
    Account,
    RoundAuditRecord,
)
from .repo import Database, StoreError, TransientStoreError, StoreUnavailable

__all__ = [
    "GameVariant",
    "RoundStatus",
    "TransactionKind",
    "TransactionStatus",
    "RoomConfig",
    "Bettor",
    "Stake",
    "Participant",
    "Outcome",
    "Round",
    "Transaction",
    "Account",
    "RoundAuditRecord",
    "Database",
    "StoreError",
    "TransientStoreError",
    "StoreUnavailable",
]
