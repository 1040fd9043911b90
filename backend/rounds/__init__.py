"""Round engine: fairness, ledger, persistence, scheduling and per-room state machines."""
from .engine import RoomEngine
from .exceptions import (
    RoundEngineError,
    RoomNotFound,
    RoundNotFound,
    AccountNotFound,
    BetRejected,
    RoundNotAcceptingBets,
    BelowMinimum,
    AboveMaximum,
    GamingSuspended,
    InvalidField,
    AlreadyLeading,
    InvalidClientSeed,
    ClientSeedLocked,
    InsufficientFunds,
    InvariantViolation,
    StoreError,
    TransientStoreError,
    StoreUnavailable,
)
from .fairness import commit, draw, verify, verify_commitment, verify_round, SeedCommitment
from .ledger import Ledger
from .registry import RoomRegistry
from .scheduler import RoundScheduler, AsyncioScheduler
from .store import RoundStore
from .variants import (
    PoolDrawRules,
    AscendingBidRules,
    FieldLotteryRules,
    rules_for,
    compute_commission,
    compute_ticket_ranges,
    TICKET_SPACE,
)

__all__ = [
    "RoomEngine",
    "RoomRegistry",
    "Ledger",
    "RoundStore",
    "RoundScheduler",
    "AsyncioScheduler",
    "SeedCommitment",
    "commit",
    "draw",
    "verify",
    "verify_commitment",
    "verify_round",
    "PoolDrawRules",
    "AscendingBidRules",
    "FieldLotteryRules",
    "rules_for",
    "compute_commission",
    "compute_ticket_ranges",
    "TICKET_SPACE",
    "RoundEngineError",
    "RoomNotFound",
    "RoundNotFound",
    "AccountNotFound",
    "BetRejected",
    "RoundNotAcceptingBets",
    "BelowMinimum",
    "AboveMaximum",
    "GamingSuspended",
    "InvalidField",
    "AlreadyLeading",
    "InvalidClientSeed",
    "ClientSeedLocked",
    "InsufficientFunds",
    "InvariantViolation",
    "StoreError",
    "TransientStoreError",
    "StoreUnavailable",
]
