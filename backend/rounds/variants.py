"""
Variant rules for the three round shapes.

The engine owns phases, persistence and serialization; a rules object only
validates stakes, folds them into the round, decides when the countdown
(re)starts, and computes the settlement outcome. Rules never touch the
ledger or the store.
"""
import logging
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_FLOOR
from typing import Optional, List, Dict

from database.models import (
    GameVariant,
    RoundStatus,
    Round,
    Bettor,
    Stake,
    Participant,
    Outcome,
)
from . import fairness
from .exceptions import (
    RoundNotAcceptingBets,
    BelowMinimum,
    AboveMaximum,
    InvalidField,
    AlreadyLeading,
    InvariantViolation,
)

logger = logging.getLogger(__name__)

TICKET_SPACE = 1_000_000


def compute_commission(prize_pool: int, rate_percent: float) -> int:
    """House cut, rounded down to a whole unit."""
    if prize_pool <= 0 or not rate_percent:
        return 0
    cut = Decimal(prize_pool) * Decimal(str(rate_percent)) / Decimal(100)
    return int(cut.to_integral_value(rounding=ROUND_FLOOR))


def ticket_space_for(pot: int) -> int:
    """Outcome space of a pool draw; never smaller than the pot so every stake owns a ticket."""
    return max(TICKET_SPACE, pot)


def compute_ticket_ranges(participants: List[Participant], pot: int) -> int:
    """Assign contiguous, inclusive ticket ranges proportional to stake.

    Boundaries come from cumulative stakes, so the ranges partition
    [0, space) exactly whatever the stake amounts or ordering.

    Returns:
        The ticket space size (0 when the pot is empty)
    """
    if pot <= 0:
        for p in participants:
            p.tickets_start = None
            p.tickets_end = None
        return 0

    space = ticket_space_for(pot)
    cumulative = 0
    for p in participants:
        start = cumulative * space // pot
        cumulative += p.total_stake
        end = cumulative * space // pot - 1
        if end < start:
            p.tickets_start = None
            p.tickets_end = None
        else:
            p.tickets_start = start
            p.tickets_end = end
    return space


def check_ticket_partition(participants: List[Participant], space: int):
    """Raise InvariantViolation unless the ranges tile [0, space) with no gap or overlap."""
    ranges = sorted(
        (p.tickets_start, p.tickets_end) for p in participants if p.tickets_start is not None
    )
    expected = 0
    for start, end in ranges:
        if start != expected or end < start:
            raise InvariantViolation(f"Ticket ranges broken at {start}-{end} (expected start {expected})")
        expected = end + 1
    if expected != space:
        raise InvariantViolation(f"Ticket ranges cover {expected} of {space} tickets")


class VariantRules:
    """Behaviour shared by every variant."""

    variant: GameVariant = None

    def on_round_created(self, round_: Round, now: datetime):
        round_.status = RoundStatus.OPEN
        round_.started_at = now

    def validate_stake(self, round_: Round, bettor: Bettor, amount: int,
                       field_number: Optional[int], now: datetime):
        config = round_.config
        if amount < config.min_bet:
            raise BelowMinimum(f"Minimum bet is {config.min_bet} {config.currency}")

    def apply_stake(self, round_: Round, bettor: Bettor, stake: Stake) -> bool:
        """Fold an accepted stake into the round.

        Returns:
            True if the bettor was not yet a participant of the round
        """
        is_new_bettor = all(p.bettor_id != bettor.bettor_id for p in round_.participants)

        participant = round_.find_participant(bettor.bettor_id, stake.field_number)
        if participant is None:
            participant = Participant(
                bettor_id=bettor.bettor_id,
                display_name=bettor.display_name,
                avatar_ref=bettor.avatar_ref,
                field_number=stake.field_number,
            )
            round_.participants.append(participant)

        participant.total_stake += stake.amount
        round_.stakes.append(stake)
        round_.pot += stake.amount
        return is_new_bettor

    def after_stake(self, round_: Round, is_new_bettor: bool, now: datetime) -> bool:
        """Re-evaluate phase triggers after a stake.

        Returns:
            True if the deadline was (re)started and must be rescheduled
        """
        return False

    def rebuild(self, round_: Round, names: Optional[Dict[str, tuple]] = None):
        """Recompute derived participant data after the stake list was replaced.

        `names` maps bettor id to (display_name, avatar_ref) for bettors the
        round did not know about yet.
        """
        names = names or {}
        known = {p.bettor_id: (p.display_name, p.avatar_ref) for p in round_.participants}
        by_key: Dict[tuple, Participant] = {}
        for stake in round_.stakes:
            key = (stake.bettor_id, stake.field_number)
            if key not in by_key:
                display_name, avatar_ref = known.get(
                    stake.bettor_id, names.get(stake.bettor_id, (stake.bettor_id, None))
                )
                by_key[key] = Participant(
                    bettor_id=stake.bettor_id,
                    display_name=display_name,
                    avatar_ref=avatar_ref,
                    field_number=stake.field_number,
                )
            by_key[key].total_stake += stake.amount
        round_.participants = list(by_key.values())
        round_.pot = round_.stake_total()

    def check_invariants(self, round_: Round):
        if round_.pot < 0:
            raise InvariantViolation(f"Negative pot {round_.pot}")
        if round_.pot != round_.stake_total():
            raise InvariantViolation(
                f"Pot {round_.pot} does not match accepted stakes {round_.stake_total()}"
            )
        if sum(p.total_stake for p in round_.participants) != round_.pot:
            raise InvariantViolation("Participant totals do not match the pot")

    def settle(self, round_: Round) -> Outcome:
        raise NotImplementedError

    @staticmethod
    def _finalize(outcome: Outcome) -> Outcome:
        outcome.house_retained = outcome.prize_pool - outcome.commission - outcome.total_paid
        if outcome.house_retained < 0:
            raise InvariantViolation(
                f"Payouts {outcome.total_paid} + commission {outcome.commission} exceed prize pool {outcome.prize_pool}"
            )
        return outcome


class PoolDrawRules(VariantRules):
    """Weighted draw: one ticket per share of the pot, winner takes pot minus commission."""

    variant = GameVariant.POOL_DRAW

    def validate_stake(self, round_, bettor, amount, field_number, now):
        super().validate_stake(round_, bettor, amount, field_number, now)
        config = round_.config
        if config.max_bet:
            current = round_.find_participant(bettor.bettor_id)
            already = current.total_stake if current else 0
            if already + amount > config.max_bet:
                raise AboveMaximum(f"Maximum bet per player is {config.max_bet} {config.currency}")

    def apply_stake(self, round_, bettor, stake):
        is_new_bettor = super().apply_stake(round_, bettor, stake)
        compute_ticket_ranges(round_.participants, round_.pot)
        return is_new_bettor

    def after_stake(self, round_, is_new_bettor, now):
        timer = timedelta(seconds=round_.config.timer_seconds)

        if round_.status == RoundStatus.OPEN:
            if round_.distinct_bettors >= round_.config.min_distinct_bettors:
                round_.status = RoundStatus.CLOSING
                round_.deadline_at = now + timer
                return True
            return False

        # Only newly arriving bettors push the deadline back
        if round_.status == RoundStatus.CLOSING and is_new_bettor:
            round_.deadline_at = now + timer
            return True
        return False

    def rebuild(self, round_, names=None):
        super().rebuild(round_, names)
        compute_ticket_ranges(round_.participants, round_.pot)

    def check_invariants(self, round_):
        super().check_invariants(round_)
        if round_.pot > 0:
            check_ticket_partition(round_.participants, ticket_space_for(round_.pot))

    def settle(self, round_):
        if round_.pot == 0:
            return Outcome(prize_pool=0, commission=0)

        space = compute_ticket_ranges(round_.participants, round_.pot)
        check_ticket_partition(round_.participants, space)

        result = fairness.draw(round_.server_seed, round_.client_seed, round_.nonce, space)
        winner = None
        for p in round_.participants:
            if p.tickets_start is not None and p.tickets_start <= result <= p.tickets_end:
                winner = p
                break
        if winner is None:
            raise InvariantViolation(f"No ticket range contains drawn ticket {result}")

        prize_pool = round_.pot + round_.house_bank
        commission = compute_commission(prize_pool, round_.commission_rate_percent)
        payout = prize_pool - commission

        return self._finalize(Outcome(
            prize_pool=prize_pool,
            commission=commission,
            outcome_space_size=space,
            result=result,
            winners=[winner.bettor_id],
            payouts={winner.bettor_id: payout} if payout > 0 else {},
        ))


class AscendingBidRules(VariantRules):
    """Fixed-price bids; each bid restarts the countdown and the last bidder wins."""

    variant = GameVariant.ASCENDING_BID

    def on_round_created(self, round_, now):
        super().on_round_created(round_, now)
        round_.house_bank = round_.config.initial_bank

    def validate_stake(self, round_, bettor, amount, field_number, now):
        super().validate_stake(round_, bettor, amount, field_number, now)
        config = round_.config
        if config.max_bet and amount > config.max_bet:
            raise AboveMaximum(f"Bid must be exactly {config.max_bet} {config.currency}")
        if round_.leader_id == bettor.bettor_id:
            raise AlreadyLeading("You are already the highest bidder")

    def apply_stake(self, round_, bettor, stake):
        is_new_bettor = super().apply_stake(round_, bettor, stake)
        for p in round_.participants:
            p.is_leader = p.bettor_id == bettor.bettor_id
        round_.leader_id = bettor.bettor_id
        return is_new_bettor

    def after_stake(self, round_, is_new_bettor, now):
        round_.status = RoundStatus.CLOSING
        round_.deadline_at = now + timedelta(seconds=round_.config.timer_seconds)
        return True

    def rebuild(self, round_, names=None):
        super().rebuild(round_, names)
        leader = round_.stakes[-1].bettor_id if round_.stakes else None
        round_.leader_id = leader
        for p in round_.participants:
            p.is_leader = p.bettor_id == leader

    def check_invariants(self, round_):
        super().check_invariants(round_)
        if round_.house_bank < 0:
            raise InvariantViolation(f"Negative house bank {round_.house_bank}")
        if round_.leader_id and round_.find_participant(round_.leader_id) is None:
            raise InvariantViolation(f"Leader {round_.leader_id} is not a participant")

    def settle(self, round_):
        if not round_.stakes:
            return Outcome(prize_pool=0, commission=0)

        leader = round_.leader_id
        if not leader or round_.find_participant(leader) is None:
            raise InvariantViolation("Bids were placed but there is no leader")

        prize_pool = round_.pot + round_.house_bank
        commission = compute_commission(prize_pool, round_.commission_rate_percent)
        payout = prize_pool - commission

        return self._finalize(Outcome(
            prize_pool=prize_pool,
            commission=commission,
            winners=[leader],
            payouts={leader: payout} if payout > 0 else {},
        ))


class FieldLotteryRules(VariantRules):
    """Bets on numbered fields; a fixed deadline draws one field and its bettors split the pot."""

    variant = GameVariant.FIELD_LOTTERY

    def on_round_created(self, round_, now):
        super().on_round_created(round_, now)
        round_.status = RoundStatus.CLOSING
        round_.ends_at = now + timedelta(seconds=round_.config.round_duration_seconds)
        round_.deadline_at = round_.ends_at

    def validate_stake(self, round_, bettor, amount, field_number, now):
        if round_.ends_at and now >= round_.ends_at:
            raise RoundNotAcceptingBets("Betting for this lottery round has ended")

        config = round_.config
        if (isinstance(field_number, bool) or not isinstance(field_number, int)
                or not 1 <= field_number <= config.field_count):
            raise InvalidField(f"Field number must be between 1 and {config.field_count}")

        super().validate_stake(round_, bettor, amount, field_number, now)

        if config.max_bet:
            current = round_.find_participant(bettor.bettor_id, field_number)
            already = current.total_stake if current else 0
            if already + amount > config.max_bet:
                raise AboveMaximum(f"Maximum bet per field is {config.max_bet} {config.currency}")

    def settle(self, round_):
        field_count = round_.config.field_count
        result = fairness.draw(round_.server_seed, round_.client_seed, round_.nonce, field_count)
        winning_field = result + 1

        prize_pool = round_.pot + round_.house_bank
        commission = compute_commission(prize_pool, round_.commission_rate_percent)
        net = prize_pool - commission

        on_field = [p for p in round_.participants if p.field_number == winning_field]
        total_on_field = sum(p.total_stake for p in on_field)

        payouts: Dict[str, int] = {}
        if total_on_field > 0:
            for p in on_field:
                share = p.total_stake * net // total_on_field
                if share > 0:
                    payouts[p.bettor_id] = payouts.get(p.bettor_id, 0) + share

        return self._finalize(Outcome(
            prize_pool=prize_pool,
            commission=commission,
            outcome_space_size=field_count,
            result=result,
            winning_field=winning_field,
            winners=[p.bettor_id for p in on_field],
            payouts=payouts,
        ))


RULES = {
    GameVariant.POOL_DRAW: PoolDrawRules(),
    GameVariant.ASCENDING_BID: AscendingBidRules(),
    GameVariant.FIELD_LOTTERY: FieldLotteryRules(),
}


def rules_for(variant: GameVariant) -> VariantRules:
    return RULES[variant]
