"""
RoomEngine: the per-room round state machine.

One engine owns one room. Every mutating path (bets, client seed updates,
deadline callbacks, resolution, next-round creation) runs under the
engine's asyncio lock, so operations on a room are applied strictly in
arrival order while different rooms proceed in parallel.

Each mutation is built on a copy of the round and written as a single
store transaction (ledger entries + round snapshot + round event). The
in-memory round is replaced only after that transaction commits.
"""
import asyncio
import copy
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional, Dict, Any

from database import (
    Database,
    Round,
    RoundStatus,
    Bettor,
    Stake,
    TransactionKind,
    RoundAuditRecord,
)
from notifications import Notifier, RoundEvent
from security.audit import AuditLogger, AuditEventType, AuditSeverity
from utils.formatting import utcnow, format_coins, truncate_seed
from utils.retry import call_with_retries
from utils.validation import is_valid_amount, is_valid_client_seed
from . import fairness
from .exceptions import (
    RoomNotFound,
    AccountNotFound,
    BetRejected,
    BelowMinimum,
    RoundNotAcceptingBets,
    GamingSuspended,
    InsufficientFunds,
    InvalidClientSeed,
    ClientSeedLocked,
    InvariantViolation,
    TransientStoreError,
    StoreUnavailable,
)
from .ledger import Ledger
from .scheduler import RoundScheduler
from .store import RoundStore
from .variants import rules_for

logger = logging.getLogger(__name__)

LEDGER_RECONCILED_EVENT = "ledger_reconciled"


class RoomEngine:
    """Drives the rounds of a single room."""

    def __init__(
        self,
        room_id: str,
        config_provider,
        db: Database,
        ledger: Ledger,
        store: RoundStore,
        scheduler: RoundScheduler,
        notifier: Notifier,
        audit: Optional[AuditLogger] = None,
        clock: Callable[[], datetime] = utcnow,
        cooldown_seconds: float = 10,
        retry_attempts: int = 3,
        retry_base_delay: float = 0.1,
        retry_max_delay: float = 2.0,
    ):
        self.room_id = room_id
        self.config_provider = config_provider
        self.db = db
        self.ledger = ledger
        self.store = store
        self.scheduler = scheduler
        self.notifier = notifier
        self.audit = audit
        self.clock = clock
        self.cooldown_seconds = cooldown_seconds
        self.retry_attempts = retry_attempts
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay

        self.round: Optional[Round] = None
        self.running = False
        self._lock = asyncio.Lock()
        # Errored round the store refused to record; written before any new round
        self._unpersisted_failure: Optional[Round] = None

    @property
    def next_round_key(self) -> str:
        return f"{self.room_id}:next-round"

    # ==================== Helpers ====================

    async def _store_call(self, operation, *args, label: str = "store call", **kwargs):
        """Run a store operation with bounded retries on transient failures."""
        return await call_with_retries(
            operation,
            *args,
            attempts=self.retry_attempts,
            base_delay=self.retry_base_delay,
            max_delay=self.retry_max_delay,
            retry_on=(TransientStoreError,),
            exhausted_error=StoreUnavailable,
            label=f"[{self.room_id}] {label}",
            **kwargs
        )

    async def _unit_of_work(self, fn, label: str):
        """Run `fn(conn)` as one retried store transaction."""
        return await self._store_call(self.db.run_in_transaction, fn, label=label)

    def _audit(self, event_type: AuditEventType, severity: AuditSeverity = AuditSeverity.INFO,
               round_id: Optional[str] = None, user_id: Optional[str] = None, details=None):
        if self.audit:
            self.audit.log(event_type, severity, user_id=user_id, room_id=self.room_id,
                           round_id=round_id, details=details)

    async def _emit(self, event: str, payload: Dict[str, Any]):
        await self.notifier.notify(event, self.room_id, payload)

    def _phase_payload(self, round_: Round) -> Dict[str, Any]:
        return {
            "round_id": round_.round_id,
            "status": round_.status.value,
            "deadline_at": round_.deadline_at.isoformat() if round_.deadline_at else None,
            "timer_remaining": round_.remaining_seconds(self.clock()),
        }

    def _arm_deadline(self, round_: Round):
        round_id, deadline = round_.round_id, round_.deadline_at

        async def fire():
            await self._on_deadline(round_id, deadline)

        self.scheduler.schedule_at(round_id, deadline, fire)

    def _schedule_next_round(self, when: datetime):
        self.scheduler.schedule_at(self.next_round_key, when, self._on_cooldown_elapsed)
        logger.info(f"[ROUND] {self.room_id}: next round at {when.isoformat()}")

    # ==================== Lifecycle ====================

    async def start(self):
        """Rehydrate the room from the store and rearm its timers."""
        async with self._lock:
            self.running = True
            if self._unpersisted_failure is not None and not await self._persist_failure():
                self._schedule_next_round(self.clock() + timedelta(seconds=self.cooldown_seconds))
                return
            await self._rehydrate()

    async def stop(self):
        async with self._lock:
            self.running = False
            if self.round:
                self.scheduler.cancel(self.round.round_id)
            self.scheduler.cancel(self.next_round_key)
        logger.info(f"[ROUND] {self.room_id}: engine stopped")

    def snapshot(self) -> Optional[Dict[str, Any]]:
        """Public view of the current round (server seed hidden until it is over)."""
        if self.round is None:
            return None
        return self.round.public_dict(now=self.clock())

    async def _rehydrate(self):
        try:
            latest = await self._store_call(self.store.latest_for_room, self.room_id, label="load latest round")
        except StoreUnavailable as e:
            logger.error(f"[ROUND] {self.room_id}: cannot load state, retrying after cooldown: {e}")
            self._schedule_next_round(self.clock() + timedelta(seconds=self.cooldown_seconds))
            return

        if latest is None:
            await self._create_round()
            return

        self.round = latest
        now = self.clock()

        if latest.status.is_terminal:
            ended = latest.ended_at or now
            self._schedule_next_round(max(now, ended + timedelta(seconds=self.cooldown_seconds)))
            return

        logger.info(f"[ROUND] {self.room_id}: rehydrating {latest.round_id} ({latest.status.value})")
        if not await self._reconcile_from_ledger():
            return

        current = self.round
        if current.status == RoundStatus.RESOLVING:
            await self._settle()
        elif current.deadline_at:
            if current.deadline_at <= now:
                logger.info(f"[ROUND] {current.round_id}: deadline passed while down, resolving now")
                await self._close_betting(reveal=False)
            else:
                self._arm_deadline(current)

    async def _reconcile_from_ledger(self) -> bool:
        """Rebuild the stake list from `bet` ledger entries when it disagrees with them.

        Returns:
            False if the round had to be failed
        """
        round_ = self.round
        try:
            entries = await self._store_call(
                self.ledger.round_entries, round_.round_id, TransactionKind.BET, label="load round bets"
            )
        except StoreUnavailable as e:
            await self._fail_round(f"Store unavailable during recovery: {e}", AuditEventType.STORE_UNAVAILABLE)
            return False

        recorded = {s.tx_id for s in round_.stakes}
        if sum(tx.amount for tx in entries) == round_.pot and {tx.tx_id for tx in entries} == recorded:
            return True

        working = copy.deepcopy(round_)
        working.stakes = [
            Stake(
                bettor_id=tx.user_id,
                amount=tx.amount,
                tx_id=tx.tx_id,
                placed_at=tx.timestamp,
                field_number=tx.details.get("field_number"),
            )
            for tx in entries
        ]
        names = {
            tx.user_id: (tx.details.get("display_name") or tx.user_id, tx.details.get("avatar_ref"))
            for tx in entries
        }
        rules = rules_for(working.variant)
        rules.rebuild(working, names)
        working.log.append(f"Stakes reconciled from ledger: pot {round_.pot} -> {working.pot}.")
        details = {"previous_pot": round_.pot, "ledger_pot": working.pot, "entries": len(entries)}

        try:
            rules.check_invariants(working)
            await self._unit_of_work(
                lambda conn: self.store.save(conn, working, LEDGER_RECONCILED_EVENT, details),
                label="reconcile round",
            )
        except InvariantViolation as e:
            await self._invariant_violation(e)
            return False
        except StoreUnavailable as e:
            await self._fail_round(f"Store unavailable during reconciliation: {e}", AuditEventType.STORE_UNAVAILABLE)
            return False

        self.round = working
        self._audit(AuditEventType.LEDGER_RECONCILED, AuditSeverity.WARNING,
                    round_id=working.round_id, details=details)
        return True

    async def _on_cooldown_elapsed(self):
        async with self._lock:
            if not self.running:
                return
            if self._unpersisted_failure is not None and not await self._persist_failure():
                self._schedule_next_round(self.clock() + timedelta(seconds=self.cooldown_seconds))
                return
            if self.round is None:
                # Startup never loaded the room; a stored active round must be resumed, not replaced
                await self._rehydrate()
                return
            if not self.round.status.is_terminal:
                return
            await self._create_round()

    async def _create_round(self):
        config = self.config_provider.get(self.room_id)
        if config is None:
            raise RoomNotFound(self.room_id)

        # Snapshot so later config edits never reach this round
        config = copy.deepcopy(config)
        commitment = fairness.commit()
        now = self.clock()
        rules = rules_for(config.variant)

        def create(conn):
            nonce = self.store.next_nonce(self.room_id, conn)
            round_ = Round(
                round_id=f"{self.room_id}-{nonce}",
                room_id=self.room_id,
                nonce=nonce,
                config=config,
                hashed_server_seed=commitment.hashed_server_seed,
                server_seed=commitment.server_seed,
                client_seed=config.default_client_seed,
                created_at=now,
            )
            rules.on_round_created(round_, now)
            round_.log.append(f"Round {nonce} created. Hashed server seed: {commitment.hashed_server_seed}.")
            self.store.save(conn, round_, RoundEvent.ROUND_CREATED, {
                "nonce": nonce,
                "hashed_server_seed": commitment.hashed_server_seed,
            })
            return round_

        try:
            round_ = await self._unit_of_work(create, label="create round")
        except StoreUnavailable as e:
            logger.error(f"[ROUND] {self.room_id}: could not create round, retrying after cooldown: {e}")
            self._audit(AuditEventType.STORE_UNAVAILABLE, AuditSeverity.CRITICAL, details=str(e))
            self._schedule_next_round(self.clock() + timedelta(seconds=self.cooldown_seconds))
            return

        self.round = round_
        logger.info(
            f"[ROUND] {round_.round_id} created ({round_.variant.value}), "
            f"commitment {truncate_seed(round_.hashed_server_seed)}"
        )
        self._audit(AuditEventType.ROUND_CREATED, round_id=round_.round_id,
                    details={"nonce": round_.nonce, "hashed_server_seed": round_.hashed_server_seed})

        if round_.deadline_at:
            self._arm_deadline(round_)

        await self._emit(RoundEvent.ROUND_CREATED, round_.public_dict(now=self.clock()))

    # ==================== Betting ====================

    async def place_bet(self, bettor: Bettor, amount: int, field_number: Optional[int] = None) -> Stake:
        """Accept a stake into the current round.

        Args:
            bettor: Verified bettor identity from the auth collaborator
            amount: Stake in whole currency units
            field_number: Chosen field (field-lottery only)

        Returns:
            The accepted stake

        Raises:
            RoundNotAcceptingBets: No round, or betting has closed
            BelowMinimum / AboveMaximum: Stake outside the room limits
            InvalidField / AlreadyLeading: Variant-specific rejections
            InsufficientFunds: Balance does not cover the stake
            GamingSuspended: Bettor is suspended
            StoreUnavailable: Store kept failing; the round was moved to errored
        """
        valid, error = is_valid_amount(amount)
        if not valid:
            if isinstance(amount, int) and not isinstance(amount, bool):
                raise BelowMinimum(error)
            raise BetRejected(error)

        async with self._lock:
            round_ = self.round
            if round_ is None or not round_.status.accepts_bets:
                raise RoundNotAcceptingBets("Betting is closed for this round")

            now = self.clock()
            rules = rules_for(round_.variant)
            rules.validate_stake(round_, bettor, amount, field_number, now)

            try:
                balance = await self._store_call(self.ledger.get_balance, bettor.bettor_id, label="read balance")
            except AccountNotFound:
                balance = 0
            except StoreUnavailable as e:
                await self._fail_round(f"Store unavailable while reading balance: {e}", AuditEventType.STORE_UNAVAILABLE)
                raise
            if balance < amount:
                raise InsufficientFunds(bettor.bettor_id, amount, balance)

            if bettor.is_suspended(now):
                raise GamingSuspended(bettor.bettor_id, bettor.gaming_suspended_until)

            previous_status = round_.status
            previous_deadline = round_.deadline_at

            def accept(conn):
                working = copy.deepcopy(round_)
                try:
                    tx = self.ledger.debit_for_bet(
                        bettor.bettor_id,
                        amount,
                        round_.round_id,
                        conn=conn,
                        description=f"Bet in {round_.config.name or round_.room_id} round {round_.nonce}",
                        details={
                            "field_number": field_number,
                            "display_name": bettor.display_name,
                            "avatar_ref": bettor.avatar_ref,
                        },
                    )
                except AccountNotFound:
                    raise InsufficientFunds(bettor.bettor_id, amount, 0)

                stake = Stake(
                    bettor_id=bettor.bettor_id,
                    amount=amount,
                    tx_id=tx.tx_id,
                    placed_at=now,
                    field_number=field_number,
                )
                is_new_bettor = rules.apply_stake(working, bettor, stake)
                rescheduled = rules.after_stake(working, is_new_bettor, now)

                line = f"{bettor.display_name} bet {format_coins(amount, working.config.currency)}"
                if field_number is not None:
                    line += f" on field {field_number}"
                working.log.append(f"{line}. Pot: {working.pot}.")

                rules.check_invariants(working)
                self.store.save(conn, working, RoundEvent.BET_ACCEPTED, {
                    "bettor_id": bettor.bettor_id,
                    "amount": amount,
                    "field_number": field_number,
                    "tx_id": tx.tx_id,
                    "pot": working.pot,
                })
                return working, stake, rescheduled

            try:
                working, stake, rescheduled = await self._unit_of_work(accept, label="place bet")
            except InvariantViolation as e:
                await self._invariant_violation(e)
                raise
            except StoreUnavailable as e:
                await self._fail_round(f"Store unavailable while placing bet: {e}", AuditEventType.STORE_UNAVAILABLE)
                raise

            self.round = working
            logger.info(
                f"[ROUND] {working.round_id}: {bettor.bettor_id} staked {amount}"
                f"{f' on field {field_number}' if field_number is not None else ''}, pot {working.pot}"
            )

            if rescheduled:
                self._arm_deadline(working)

            await self._emit(RoundEvent.BET_ACCEPTED, {
                "round_id": working.round_id,
                "bettor_id": bettor.bettor_id,
                "display_name": bettor.display_name,
                "avatar_ref": bettor.avatar_ref,
                "amount": amount,
                "field_number": field_number,
                "participants": [p.to_dict() for p in working.participants],
            })
            await self._emit(RoundEvent.POT_UPDATED, {
                "round_id": working.round_id,
                "pot": working.pot,
                "house_bank": working.house_bank,
                "leader_id": working.leader_id,
            })
            if working.status != previous_status or working.deadline_at != previous_deadline:
                await self._emit(RoundEvent.PHASE_CHANGED, self._phase_payload(working))

            return stake

    async def update_client_seed(self, new_seed: str, bettor_id: Optional[str] = None) -> Round:
        """Replace the round's client seed while betting is still open.

        Raises:
            InvalidClientSeed: Seed is empty, too long or not printable
            ClientSeedLocked: The round has entered resolution
        """
        valid, error = is_valid_client_seed(new_seed)
        if not valid:
            raise InvalidClientSeed(error)

        async with self._lock:
            round_ = self.round
            if round_ is None or not round_.status.accepts_bets:
                raise ClientSeedLocked("Client seed can no longer be changed for this round")

            def update(conn):
                working = copy.deepcopy(round_)
                working.client_seed = new_seed
                working.log.append(f"Client seed updated{f' by {bettor_id}' if bettor_id else ''}.")
                self.store.save(conn, working, RoundEvent.CLIENT_SEED_UPDATED, {
                    "client_seed": new_seed,
                    "bettor_id": bettor_id,
                })
                return working

            try:
                working = await self._unit_of_work(update, label="update client seed")
            except StoreUnavailable as e:
                await self._fail_round(f"Store unavailable while updating client seed: {e}", AuditEventType.STORE_UNAVAILABLE)
                raise

            self.round = working
            await self._emit(RoundEvent.CLIENT_SEED_UPDATED, {
                "round_id": working.round_id,
                "client_seed": new_seed,
            })
            return working

    # ==================== Resolution ====================

    async def _on_deadline(self, round_id: str, deadline: Optional[datetime]):
        async with self._lock:
            round_ = self.round
            if round_ is None or round_.round_id != round_id or round_.status.is_terminal:
                return
            if round_.status == RoundStatus.RESOLVING:
                await self._settle()
                return
            # Superseded by a later deadline
            if round_.deadline_at != deadline:
                return
            await self._close_betting(reveal=True)

    async def resolve(self) -> Optional[Round]:
        """Settle the current round now. Safe to call again once it is finished."""
        async with self._lock:
            round_ = self.round
            if round_ is None or round_.status.is_terminal:
                return round_
            self.scheduler.cancel(round_.round_id)
            if round_.status.accepts_bets:
                await self._close_betting(reveal=False)
            else:
                await self._settle()
            return self.round

    async def _close_betting(self, reveal: bool):
        """Move to resolving; settle now or after the reveal pause."""
        round_ = self.round

        def close(conn):
            working = copy.deepcopy(round_)
            working.status = RoundStatus.RESOLVING
            working.log.append("Betting closed. Determining the winner.")
            self.store.save(conn, working, RoundEvent.PHASE_CHANGED, {"status": working.status.value})
            return working

        try:
            working = await self._unit_of_work(close, label="close betting")
        except StoreUnavailable as e:
            await self._fail_round(f"Store unavailable while closing betting: {e}", AuditEventType.STORE_UNAVAILABLE)
            return

        self.round = working
        await self._emit(RoundEvent.PHASE_CHANGED, self._phase_payload(working))

        delay = working.config.reveal_delay_seconds
        if reveal and delay > 0:
            round_id = working.round_id

            async def fire():
                await self._on_deadline(round_id, None)

            self.scheduler.schedule_at(round_id, self.clock() + timedelta(seconds=delay), fire)
            return

        await self._settle()

    async def _settle(self):
        """Compute the outcome and pay it out as one unit of work."""
        round_ = self.round
        rules = rules_for(round_.variant)
        now = self.clock()

        try:
            rules.check_invariants(round_)
            outcome = rules.settle(copy.deepcopy(round_))
        except InvariantViolation as e:
            await self._invariant_violation(e)
            return

        currency = round_.config.currency

        def settle(conn):
            working = copy.deepcopy(round_)
            working.outcome = outcome
            working.status = RoundStatus.FINISHED
            working.ended_at = now

            for winner_id, payout in outcome.payouts.items():
                self.ledger.credit_payout(
                    winner_id, payout, TransactionKind.WIN, working.round_id, conn=conn,
                    description=f"Win in {working.config.name or working.room_id} round {working.nonce}",
                    details={"winning_field": outcome.winning_field},
                )
            if outcome.commission > 0:
                self.ledger.credit_payout(
                    None, outcome.commission, TransactionKind.COMMISSION, working.round_id, conn=conn,
                    description=f"Commission from round {working.round_id}",
                    details={"rate_percent": working.commission_rate_percent},
                )
            # Any bank in the prize pool leaves the house; what is not won comes back as retention
            if working.house_bank > 0 and outcome.prize_pool > 0:
                self.ledger.record_house_bank(working.house_bank, working.round_id, conn=conn)
            if outcome.house_retained > 0:
                self.ledger.credit_payout(
                    None, outcome.house_retained, TransactionKind.ADJUSTMENT, working.round_id, conn=conn,
                    description=f"House retention from round {working.round_id}",
                    details={"reason": "house_retention"},
                )

            if not outcome.winners:
                line = "No winner."
                if working.house_bank > 0:
                    line += f" House bank of {format_coins(working.house_bank, currency)} not distributed."
                if outcome.house_retained > 0:
                    line += f" {format_coins(outcome.house_retained, currency)} retained by the house."
                working.log.append(line)
            else:
                paid = ", ".join(f"{uid}: {amt}" for uid, amt in outcome.payouts.items()) or "nothing"
                working.log.append(f"Winners: {', '.join(outcome.winners)}. Paid {paid}. Commission {outcome.commission}.")
            working.log.append(f"Server seed revealed: {working.server_seed}.")

            record = RoundAuditRecord(
                round_id=working.round_id,
                room_id=working.room_id,
                variant=working.variant,
                hashed_server_seed=working.hashed_server_seed,
                server_seed=working.server_seed,
                client_seed=working.client_seed,
                nonce=working.nonce,
                outcome_space_size=outcome.outcome_space_size,
                outcome=outcome.result,
                winning_field=outcome.winning_field,
                winners=list(outcome.winners),
                payouts=dict(outcome.payouts),
                commission=outcome.commission,
                pot=working.pot,
                house_bank=working.house_bank,
                house_retained=outcome.house_retained,
                finished_at=now,
            )
            self.store.save(conn, working, RoundEvent.ROUND_RESOLVED, record.to_dict())
            self.store.record_audit(conn, record)
            return working, record

        try:
            working, record = await self._unit_of_work(settle, label="settle round")
        except AccountNotFound as e:
            await self._fail_round(f"Payout failed: {e}")
            return
        except StoreUnavailable as e:
            await self._fail_round(f"Store unavailable during settlement: {e}", AuditEventType.STORE_UNAVAILABLE)
            return

        self.round = working
        logger.info(
            f"[ROUND] {working.round_id} finished: pot {working.pot}, commission {outcome.commission}, "
            f"winners {outcome.winners or 'none'}"
        )
        if not outcome.winners and working.house_bank > 0:
            logger.info(f"[ROUND] {working.round_id}: house bank of {working.house_bank} not distributed")

        self._audit(AuditEventType.ROUND_FINISHED, round_id=working.round_id, details={
            "pot": working.pot,
            "commission": outcome.commission,
            "house_retained": outcome.house_retained,
            "winners": outcome.winners,
        })
        for winner_id, payout in outcome.payouts.items():
            self._audit(AuditEventType.PAYOUT_PROCESSED, round_id=working.round_id,
                        user_id=winner_id, details={"amount": payout})

        payload = record.to_dict()
        payload["status"] = working.status.value
        await self._emit(RoundEvent.ROUND_RESOLVED, payload)

        if self.running:
            self._schedule_next_round(now + timedelta(seconds=self.cooldown_seconds))

    # ==================== Failure ====================

    async def _invariant_violation(self, error: InvariantViolation):
        snapshot = self.round.to_dict() if self.round else None
        logger.critical(f"[ROUND] Invariant violated in room {self.room_id}: {error} | state={snapshot}")
        self._audit(
            AuditEventType.INVARIANT_VIOLATION,
            AuditSeverity.CRITICAL,
            round_id=self.round.round_id if self.round else None,
            details={"error": str(error), "round": snapshot},
        )
        await self._fail_round(f"Invariant violation: {error}")

    async def _fail_round(self, reason: str, event_type: AuditEventType = AuditEventType.ROUND_ERRORED):
        """Force the current round to errored and hold its stakes for review. No payout is made."""
        round_ = self.round
        if round_ is None or round_.status.is_terminal:
            return

        self.scheduler.cancel(round_.round_id)
        now = self.clock()

        working = copy.deepcopy(round_)
        working.status = RoundStatus.ERRORED
        working.error = reason
        working.ended_at = now
        working.log.append(f"Round failed: {reason}. Stakes held for manual reconciliation.")

        try:
            await self._unit_of_work(lambda conn: self._write_failure(conn, working), label="mark round errored")
        except StoreUnavailable as e:
            self._unpersisted_failure = working
            logger.critical(
                f"[ROUND] {working.round_id}: could not persist errored state, "
                f"store still shows it active until the retry succeeds: {e}"
            )
            self._audit(AuditEventType.STORE_UNAVAILABLE, AuditSeverity.CRITICAL, round_id=working.round_id,
                        details={"error": str(e), "unpersisted_status": RoundStatus.ERRORED.value})

        self.round = working
        logger.error(f"[ROUND] {working.round_id} errored: {reason}")
        if event_type != AuditEventType.ROUND_ERRORED:
            self._audit(event_type, AuditSeverity.CRITICAL, round_id=working.round_id, details=reason)
        self._audit(AuditEventType.ROUND_ERRORED, AuditSeverity.CRITICAL, round_id=working.round_id,
                    details={"error": reason, "pot": working.pot})

        await self._emit(RoundEvent.ROUND_ERRORED, {
            "round_id": working.round_id,
            "error": reason,
        })

        if self.running:
            self._schedule_next_round(now + timedelta(seconds=self.cooldown_seconds))

    def _write_failure(self, conn, round_: Round):
        self.store.save(conn, round_, RoundEvent.ROUND_ERRORED, {"error": round_.error})
        self.ledger.hold_round_for_review(round_.round_id, conn=conn)

    async def _persist_failure(self) -> bool:
        """Retry recording an errored round the store refused earlier.

        Returns:
            True once the errored state is durable
        """
        round_ = self._unpersisted_failure
        try:
            await self._unit_of_work(lambda conn: self._write_failure(conn, round_), label="mark round errored")
        except StoreUnavailable as e:
            logger.critical(f"[ROUND] {round_.round_id}: errored state still not persisted: {e}")
            return False

        self._unpersisted_failure = None
        logger.info(f"[ROUND] {round_.round_id}: errored state persisted")
        return True
