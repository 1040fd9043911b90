"""
Round engine exceptions.

Validation and resource errors are raised before any state changes and go
back to the caller only. Store errors come from the durable layer. An
InvariantViolation means the engine produced an impossible state; the round
is forced to errored and nothing is paid.
"""
from typing import Optional, Dict, Any

from database.repo import StoreError, TransientStoreError, StoreUnavailable


class RoundEngineError(Exception):
    """Base class for all round engine errors."""
    pass


# ============ Lookup ============

class RoomNotFound(RoundEngineError):
    """Room is not registered."""
    def __init__(self, room_id):
        self.room_id = room_id
        super().__init__(f"Room {room_id} not found")


class RoundNotFound(RoundEngineError):
    """Round does not exist."""
    def __init__(self, round_id):
        self.round_id = round_id
        super().__init__(f"Round {round_id} not found")


class AccountNotFound(RoundEngineError):
    """Account does not exist in the ledger."""
    def __init__(self, user_id):
        self.user_id = user_id
        super().__init__(f"Account {user_id} not found")


# ============ Bet validation ============

class BetRejected(RoundEngineError):
    """A bet or seed update was refused. Nothing was changed."""
    pass


class RoundNotAcceptingBets(BetRejected):
    """Round is not in a bettable phase, or its deadline has passed."""
    pass


class BelowMinimum(BetRejected):
    """Stake is below the room minimum."""
    pass


class AboveMaximum(BetRejected):
    """Stake (or a bettor's cumulative stake) exceeds the room maximum."""
    pass


class GamingSuspended(BetRejected):
    """Bettor is serving a gaming suspension."""
    def __init__(self, bettor_id, until):
        self.bettor_id = bettor_id
        self.until = until
        super().__init__(f"Gaming is disabled for {bettor_id} until {until.isoformat()}")


class InvalidField(BetRejected):
    """Field number outside the lottery grid."""
    pass


class AlreadyLeading(BetRejected):
    """Current leader tried to bid again before being outbid."""
    pass


class InvalidClientSeed(BetRejected):
    """Client seed fails the length/character rules."""
    pass


class ClientSeedLocked(BetRejected):
    """Round has entered resolution; its client seed can no longer change."""
    pass


# ============ Resource ============

class InsufficientFunds(BetRejected):
    """Bettor's balance does not cover the stake."""
    def __init__(self, user_id, amount, balance=None):
        self.user_id = user_id
        self.amount = amount
        self.balance = balance
        msg = f"Insufficient balance for {user_id}: need {amount}"
        if balance is not None:
            msg += f", have {balance}"
        super().__init__(msg)


# ============ Invariants ============

class InvariantViolation(RoundEngineError):
    """Engine reached a state that must never happen."""
    def __init__(self, message: str, snapshot: Optional[Dict[str, Any]] = None):
        self.snapshot = snapshot
        super().__init__(message)


__all__ = [
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
