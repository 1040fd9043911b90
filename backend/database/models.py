"""
Data models for the wagering round engine.

All amounts are whole currency units (int). All datetimes are naive UTC.
"""
from dataclasses import dataclass, field, asdict
from typing import Optional, List, Dict, Any
from datetime import datetime
from enum import Enum

from utils.formatting import utcnow


class GameVariant(Enum):
    """Round shape a room runs."""
    POOL_DRAW = "pool_draw"          # Weighted ticket draw among all bettors
    ASCENDING_BID = "ascending_bid"  # Last bidder when the countdown expires wins
    FIELD_LOTTERY = "field_lottery"  # Bets on numbered fields, one field is drawn


class RoundStatus(Enum):
    """Phase of a round."""
    OPEN = "open"            # Accepting bets, no deadline yet
    CLOSING = "closing"      # Accepting bets, deadline counting down
    RESOLVING = "resolving"  # Betting closed, outcome being computed and paid
    FINISHED = "finished"    # Settled
    ERRORED = "errored"      # Failed, funds held for manual reconciliation

    @property
    def is_terminal(self) -> bool:
        return self in (RoundStatus.FINISHED, RoundStatus.ERRORED)

    @property
    def accepts_bets(self) -> bool:
        return self in (RoundStatus.OPEN, RoundStatus.CLOSING)


class TransactionKind(Enum):
    """Kind of ledger entry."""
    BET = "bet"                # Debit from a bettor into a round pot
    WIN = "win"                # Credit from a round to a winner
    COMMISSION = "commission"  # House cut of a round
    REFUND = "refund"          # Stake returned to a bettor
    ADJUSTMENT = "adjustment"  # Deposits, house retention
    HOUSE_BANK = "house_bank"  # House money paid out into a round (a house debit)


class TransactionStatus(Enum):
    """Administrative status of a ledger entry."""
    COMPLETED = "completed"
    PENDING_REVIEW = "pending_review"  # Bet held by an errored round
    RECONCILED = "reconciled"          # Bet refunded after review


def _dt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass
class RoomConfig:
    """Per-room configuration, snapshotted into every round it creates."""
    room_id: str
    variant: GameVariant
    name: str = ""
    min_bet: int = 1
    max_bet: int = 0  # 0 = no maximum
    timer_seconds: int = 30
    commission_rate_percent: float = 0
    currency: str = "coins"

    # Pool-draw
    min_distinct_bettors: int = 2
    reveal_delay_seconds: float = 0

    # Ascending-bid
    initial_bank: int = 0

    # Field-lottery
    field_count: int = 0
    round_duration_seconds: int = 0

    default_client_seed: str = "default_client_seed"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["variant"] = self.variant.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RoomConfig":
        data = dict(data)
        data["variant"] = GameVariant(data["variant"])
        known = {f for f in cls.__dataclass_fields__}
        return cls(**{k: v for k, v in data.items() if k in known})

    def public_dict(self) -> Dict[str, Any]:
        """Config fields safe to show to clients."""
        data = self.to_dict()
        data.pop("default_client_seed", None)
        return data


@dataclass
class Bettor:
    """Verified identity supplied by the auth collaborator with every bet."""
    bettor_id: str
    display_name: str
    avatar_ref: Optional[str] = None
    gaming_suspended_until: Optional[datetime] = None

    def is_suspended(self, now: datetime) -> bool:
        return bool(self.gaming_suspended_until and now < self.gaming_suspended_until)


@dataclass
class Stake:
    """One accepted bet, exactly as debited."""
    bettor_id: str
    amount: int
    tx_id: str
    placed_at: datetime = field(default_factory=utcnow)
    field_number: Optional[int] = None  # Field-lottery only

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["placed_at"] = _dt(self.placed_at)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Stake":
        data = dict(data)
        data["placed_at"] = _parse_dt(data.get("placed_at"))
        return cls(**data)


@dataclass
class Participant:
    """A bettor's cumulative position in a round.

    Field-lottery keeps one participant per (bettor, field).
    """
    bettor_id: str
    display_name: str
    avatar_ref: Optional[str] = None
    total_stake: int = 0

    # Pool-draw ticket range, inclusive on both ends
    tickets_start: Optional[int] = None
    tickets_end: Optional[int] = None

    # Ascending-bid
    is_leader: bool = False

    # Field-lottery
    field_number: Optional[int] = None

    @property
    def ticket_count(self) -> int:
        if self.tickets_start is None or self.tickets_end is None:
            return 0
        return self.tickets_end - self.tickets_start + 1

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Participant":
        return cls(**data)


@dataclass
class Outcome:
    """Result of a settled round."""
    prize_pool: int
    commission: int
    outcome_space_size: Optional[int] = None  # None when the variant does not draw
    result: Optional[int] = None              # Raw draw in [0, outcome_space_size)
    winning_field: Optional[int] = None
    winners: List[str] = field(default_factory=list)
    payouts: Dict[str, int] = field(default_factory=dict)
    house_retained: int = 0  # Rounding remainder or undistributed prize, kept by the house

    @property
    def total_paid(self) -> int:
        return sum(self.payouts.values())

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Outcome":
        return cls(**data)


@dataclass
class Round:
    """One room-phase cycle from open to settled."""
    round_id: str
    room_id: str
    nonce: int
    config: RoomConfig
    hashed_server_seed: str
    server_seed: str
    client_seed: str

    status: RoundStatus = RoundStatus.OPEN
    pot: int = 0
    house_bank: int = 0
    participants: List[Participant] = field(default_factory=list)
    stakes: List[Stake] = field(default_factory=list)
    leader_id: Optional[str] = None

    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    deadline_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None

    outcome: Optional[Outcome] = None
    error: Optional[str] = None
    log: List[str] = field(default_factory=list)

    @property
    def variant(self) -> GameVariant:
        return self.config.variant

    @property
    def commission_rate_percent(self) -> float:
        return self.config.commission_rate_percent

    @property
    def distinct_bettors(self) -> int:
        return len({p.bettor_id for p in self.participants})

    def stake_total(self) -> int:
        return sum(s.amount for s in self.stakes)

    def find_participant(self, bettor_id: str, field_number: Optional[int] = None) -> Optional[Participant]:
        for p in self.participants:
            if p.bettor_id == bettor_id and p.field_number == field_number:
                return p
        return None

    def remaining_seconds(self, now: datetime) -> Optional[float]:
        if not self.deadline_at:
            return None
        return max(0.0, (self.deadline_at - now).total_seconds())

    def to_dict(self) -> Dict[str, Any]:
        """Full snapshot, including the server seed."""
        return {
            "round_id": self.round_id,
            "room_id": self.room_id,
            "nonce": self.nonce,
            "config": self.config.to_dict(),
            "hashed_server_seed": self.hashed_server_seed,
            "server_seed": self.server_seed,
            "client_seed": self.client_seed,
            "status": self.status.value,
            "pot": self.pot,
            "house_bank": self.house_bank,
            "participants": [p.to_dict() for p in self.participants],
            "stakes": [s.to_dict() for s in self.stakes],
            "leader_id": self.leader_id,
            "created_at": _dt(self.created_at),
            "started_at": _dt(self.started_at),
            "deadline_at": _dt(self.deadline_at),
            "ends_at": _dt(self.ends_at),
            "ended_at": _dt(self.ended_at),
            "outcome": self.outcome.to_dict() if self.outcome else None,
            "error": self.error,
            "log": list(self.log),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Round":
        return cls(
            round_id=data["round_id"],
            room_id=data["room_id"],
            nonce=data["nonce"],
            config=RoomConfig.from_dict(data["config"]),
            hashed_server_seed=data["hashed_server_seed"],
            server_seed=data["server_seed"],
            client_seed=data["client_seed"],
            status=RoundStatus(data["status"]),
            pot=data.get("pot", 0),
            house_bank=data.get("house_bank", 0),
            participants=[Participant.from_dict(p) for p in data.get("participants", [])],
            stakes=[Stake.from_dict(s) for s in data.get("stakes", [])],
            leader_id=data.get("leader_id"),
            created_at=_parse_dt(data.get("created_at")),
            started_at=_parse_dt(data.get("started_at")),
            deadline_at=_parse_dt(data.get("deadline_at")),
            ends_at=_parse_dt(data.get("ends_at")),
            ended_at=_parse_dt(data.get("ended_at")),
            outcome=Outcome.from_dict(data["outcome"]) if data.get("outcome") else None,
            error=data.get("error"),
            log=list(data.get("log", [])),
        )

    def public_dict(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Snapshot safe to broadcast: the server seed stays hidden until the round is over."""
        data = self.to_dict()
        if not self.status.is_terminal:
            data["server_seed"] = None
        data.pop("stakes", None)
        data["config"] = self.config.public_dict()
        if now is not None:
            data["timer_remaining"] = self.remaining_seconds(now)
        return data


@dataclass
class Transaction:
    """Immutable ledger entry for one balance mutation.

    Amounts are always positive; the kind says which way the money moved.
    `user_id` is None for house-only entries (commission, house bank, retention).
    """
    tx_id: str
    kind: TransactionKind
    amount: int
    round_id: Optional[str] = None
    user_id: Optional[str] = None
    status: TransactionStatus = TransactionStatus.COMPLETED
    currency: str = "coins"
    description: str = ""
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class Account:
    """A bettor's balance in the durable account store."""
    user_id: str
    balance: int = 0
    display_name: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class RoundAuditRecord:
    """Immutable record of a finished round, sufficient to re-run verification."""
    round_id: str
    room_id: str
    variant: GameVariant
    hashed_server_seed: str
    server_seed: str
    client_seed: str
    nonce: int
    outcome_space_size: Optional[int]
    outcome: Optional[int]
    winning_field: Optional[int]
    winners: List[str]
    payouts: Dict[str, int]
    commission: int
    pot: int
    house_bank: int = 0
    house_retained: int = 0
    finished_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["variant"] = self.variant.value
        data["finished_at"] = _dt(self.finished_at)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RoundAuditRecord":
        data = dict(data)
        data["variant"] = GameVariant(data["variant"])
        data["finished_at"] = _parse_dt(data.get("finished_at"))
        return cls(**data)
