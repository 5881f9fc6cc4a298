"""Validation engine — staked validators attest to off-chain fiat payments.

When a counterparty reports payment, the engine opens a ValidationTask
whose threshold is the number of eligible validators at that moment
(every active, unslashed validator who is not a party to the order),
or the configured fallback when nobody is eligible. A task resolves as
soon as one side reaches ``ceil(threshold / 2)`` votes:

    approves ≥ majority  → task APPROVED,  order COMPLETED
    flags    ≥ majority  → task ESCALATED, order DISPUTED

Economics. Each vote locks ``amount_usdc`` of the voter's collateral for
the stake-lock window and credits a fixed reward immediately. At
resolution every voter is scored: voters on the majority side have
their lock for the order released and their accuracy raised; voters on
the losing side forfeit their entire stake and are banned permanently.

Pending tasks past their deadline are auto-approved by
``check_timeouts`` without any scoring.

Lock order: a vote holds the task, then the order and every voter's
profile, so concurrent votes on one task are serialised and a profile
is never scored by two resolutions at once.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from tradeguard.collaborators.ledger import GuardedLedger
from tradeguard.collaborators.publisher import EventPublisher, safe_publish
from tradeguard.engine.order_state_machine import OrderLifecycle
from tradeguard.errors import (
    AuthorizationError,
    InsufficientStakeError,
    InvariantViolation,
    NotFoundError,
    ValidationError,
)
from tradeguard.models.order import Order, OrderChanged, OrderStatus
from tradeguard.models.requests import RegisterValidatorRequest, VoteRequest
from tradeguard.models.validation import (
    EvidenceSnapshot,
    ResolvedBy,
    StakeLock,
    TaskStatus,
    ValidationTask,
    ValidationVote,
    ValidatorProfile,
    VoteDecision,
)
from tradeguard.persistence.event_log import EventKind, EventLog
from tradeguard.persistence.locks import KeyedLocks, order_key, task_key, validator_key
from tradeguard.persistence.repository import Repository
from tradeguard.policy import EngineConfig

logger = logging.getLogger(__name__)

_VERIFIABLE = (OrderStatus.VERIFYING, OrderStatus.PAYMENT_SENT)


def _round_half_up(numerator: int, denominator: int) -> int:
    value = Decimal(numerator) * 100 / Decimal(denominator)
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass
class VoteOutcome:
    """Result of a successful vote."""
    task: ValidationTask
    validator: ValidatorProfile
    resolved: Optional[TaskStatus] = None
    slashed: list[str] = field(default_factory=list)


class ValidationEngine:
    """Opens validation tasks, records votes and resolves consensus."""

    def __init__(
        self,
        repository: Repository,
        locks: KeyedLocks,
        config: EngineConfig,
        lifecycle: OrderLifecycle,
        publisher: Optional[EventPublisher] = None,
        event_log: Optional[EventLog] = None,
        ledger: Optional[GuardedLedger] = None,
    ) -> None:
        self._repo = repository
        self._locks = locks
        self._config = config
        self._lifecycle = lifecycle
        self._publisher = publisher
        self._event_log = event_log
        self._ledger = ledger

    def _record(self, kind: EventKind, actor: str, payload: dict, now: datetime) -> None:
        if self._event_log is not None:
            self._event_log.record(kind, actor, payload, now=now)

    # ------------------------------------------------------------------
    # Validator registry
    # ------------------------------------------------------------------

    def register_validator(
        self,
        request: RegisterValidatorRequest,
        now: Optional[datetime] = None,
    ) -> ValidatorProfile:
        """Register (or reactivate) a validator with the declared stake."""
        if now is None:
            now = datetime.now(timezone.utc)
        minimum = self._config.min_validator_stake
        if request.stake_amount < minimum:
            raise ValidationError(f"Minimum stake is {minimum} USDC")

        if self._ledger is not None:
            on_chain = self._ledger.staked_balance(request.address)
            if on_chain is not None and on_chain < request.stake_amount:
                raise ValidationError(
                    f"On-chain stake {on_chain} USDC is below the declared "
                    f"stake {request.stake_amount} USDC"
                )

        with self._locks.hold(validator_key(request.address)):
            profile = self._repo.get_validator(request.address)
            if profile is not None:
                if profile.is_slashed:
                    raise AuthorizationError(
                        "This address has been slashed and cannot re-register"
                    )
                if profile.is_active:
                    raise ValidationError("Already registered as validator")
                profile.staked = request.stake_amount
                profile.is_active = True
            else:
                profile = ValidatorProfile(
                    address=request.address,
                    staked=request.stake_amount,
                    registered_utc=now,
                )
            self._repo.save_validator(profile)

        logger.info("Validator %s registered with stake %s",
                    profile.address, profile.staked)
        self._record(EventKind.VALIDATOR_REGISTERED, profile.address,
                     {"stake": str(profile.staked)}, now)
        return profile

    def release_expired_locks(
        self,
        address: str,
        now: Optional[datetime] = None,
    ) -> ValidatorProfile:
        """Drop expired stake locks for a validator and persist the result."""
        if now is None:
            now = datetime.now(timezone.utc)
        with self._locks.hold(validator_key(address)):
            profile = self._repo.get_validator(address)
            if profile is None:
                raise NotFoundError(f"Validator not found: {address}")
            before = len(profile.locked_orders)
            profile.release_expired_locks(now)
            if len(profile.locked_orders) != before:
                self._repo.save_validator(profile)
                logger.info("Released %d expired lock(s) for %s",
                            before - len(profile.locked_orders), profile.address)
        return profile

    # ------------------------------------------------------------------
    # Task lifecycle
    # ------------------------------------------------------------------

    def create_task(self, order: Order, now: Optional[datetime] = None) -> ValidationTask:
        """Create (unsaved) the validation task for an order entering VERIFYING.

        The caller holds the order lock and persists the task together
        with the order. A brand-new task is invisible to other threads
        until that write, so it needs no lock of its own.
        """
        if now is None:
            now = datetime.now(timezone.utc)
        if not order.counterparty_address:
            raise InvariantViolation(
                f"Order {order.order_id} has no counterparty to validate"
            )
        eligible = self._repo.eligible_validators(
            exclude=(order.requester_address, order.counterparty_address),
        )
        threshold = len(eligible) if eligible else self._config.fallback_threshold
        task = ValidationTask(
            task_id=self._repo.next_task_id(),
            order_id=order.order_id,
            evidence=EvidenceSnapshot(
                requester_address=order.requester_address.lower(),
                counterparty_address=order.counterparty_address.lower(),
                amount_usdc=order.amount_usdc,
                amount_fiat=order.amount_fiat,
                fiat_currency=order.fiat_currency,
                payment_method=order.payment_method,
                destination_proof_ref=order.destination_proof_ref,
                payment_proof_ref=order.payment_proof_ref,
            ),
            threshold=threshold,
            created_utc=now,
            deadline_utc=now + self._config.validation_timeout,
        )
        logger.info(
            "Opened %s for order %s (threshold %d, majority %d)",
            task.task_id, order.order_id, task.threshold, task.majority,
        )
        return task

    def submit_vote(
        self,
        request: VoteRequest,
        now: Optional[datetime] = None,
    ) -> VoteOutcome:
        """Record a validator's vote and resolve the task on majority.

        Raises without mutating anything when the vote is not allowed.
        """
        if now is None:
            now = datetime.now(timezone.utc)

        # Read before locking: the ledger call can block for its full timeout.
        on_chain = None
        if self._ledger is not None:
            on_chain = self._ledger.staked_balance(request.validator)

        with self._locks.hold(task_key(request.task_id)):
            task = self._repo.get_task(request.task_id)
            if task is None:
                raise NotFoundError(f"Task not found: {request.task_id}")
            keys = [order_key(task.order_id), validator_key(request.validator)]
            keys.extend(validator_key(v.validator) for v in task.votes)
            with self._locks.hold(*keys):
                outcome = self._vote_locked(task, request, on_chain, now)

        if outcome.resolved is not None:
            kind = "completed" if outcome.resolved == TaskStatus.APPROVED else "disputed"
            safe_publish(self._publisher, OrderChanged(task.order_id, kind))
        return outcome

    def _vote_locked(
        self,
        task: ValidationTask,
        request: VoteRequest,
        on_chain: Optional[Decimal],
        now: datetime,
    ) -> VoteOutcome:
        voter = request.validator
        if task.status != TaskStatus.PENDING:
            raise ValidationError(
                f"Task {task.task_id} is no longer accepting votes "
                f"(status: {task.status.value})"
            )
        order = self._repo.get_order(task.order_id)
        if order is None:
            raise InvariantViolation(
                f"Task {task.task_id} references missing order {task.order_id}"
            )
        if order.status not in _VERIFIABLE:
            raise ValidationError(
                f"Order {order.order_id} is no longer under verification "
                f"(status: {order.status.value})"
            )
        if task.involves(voter):
            raise ValidationError("Cannot validate your own order")
        if task.has_voted(voter):
            raise ValidationError("Already voted on this task")

        profile = self._repo.get_validator(voter)
        if profile is not None and profile.is_slashed:
            raise AuthorizationError(
                "Your stake has been slashed. You can no longer validate."
            )
        if profile is None or not profile.is_active:
            raise AuthorizationError(
                "Not registered as DAO validator. Stake USDC to become a validator."
            )
        if len(task.votes) >= task.threshold:
            raise ValidationError("Task already has all the votes it needs")

        if on_chain is not None and on_chain < profile.staked:
            raise ValidationError(
                f"On-chain stake {on_chain} USDC is below recorded "
                f"stake {profile.staked} USDC"
            )

        amount = task.evidence.amount_usdc
        profile.release_expired_locks(now)
        if profile.available_stake < amount:
            raise InsufficientStakeError(amount, profile.available_stake)

        # All checks passed; mutate working copies.
        profile.locked_orders.append(StakeLock(
            order_id=task.order_id,
            amount=amount,
            locked_until=now + self._config.stake_lock_window,
        ))
        profile.recompute_locked()
        profile.total_reviews += 1
        profile.total_earned += self._config.validator_reward
        profile.last_review_utc = now
        task.votes.append(ValidationVote(
            validator=voter,
            decision=request.decision,
            voted_utc=now,
            notes=request.notes,
        ))

        outcome = VoteOutcome(task=task, validator=profile)
        touched: dict[str, ValidatorProfile] = {voter: profile}

        resolved: Optional[TaskStatus] = None
        if task.approve_count >= task.majority:
            resolved = TaskStatus.APPROVED
        elif task.flag_count >= task.majority:
            resolved = TaskStatus.ESCALATED

        if resolved is not None:
            task.status = resolved
            task.resolved_by = ResolvedBy.VALIDATOR_MAJORITY
            task.resolved_utc = now
            winning = (VoteDecision.APPROVE if resolved == TaskStatus.APPROVED
                       else VoteDecision.FLAG)
            outcome.slashed = self._score_voters(task, winning, touched)
            outcome.resolved = resolved
            if resolved == TaskStatus.APPROVED:
                self._lifecycle.complete(order, now)
            else:
                self._lifecycle.dispute(order, "Flagged by validator majority", now)

        with self._repo.atomic():
            for p in touched.values():
                self._repo.save_validator(p)
            self._repo.save_task(task)
            if resolved is not None:
                self._repo.save_order(order)

        logger.info("Vote on %s by %s: %s (%d approve / %d flag of %d)",
                    task.task_id, voter, request.decision.value,
                    task.approve_count, task.flag_count, task.threshold)
        self._record(EventKind.VOTE_CAST, voter, {
            "task_id": task.task_id, "decision": request.decision.value,
        }, now)
        if resolved is not None:
            logger.info("Task %s resolved %s by validator majority",
                        task.task_id, resolved.value)
            self._record(EventKind.TASK_RESOLVED, "system", {
                "task_id": task.task_id, "order_id": task.order_id,
                "status": resolved.value,
                "resolved_by": ResolvedBy.VALIDATOR_MAJORITY.value,
            }, now)
            for address in outcome.slashed:
                self._record(EventKind.VALIDATOR_SLASHED, "system", {
                    "address": address, "task_id": task.task_id,
                }, now)
        return outcome

    def _score_voters(
        self,
        task: ValidationTask,
        winning: VoteDecision,
        touched: dict[str, ValidatorProfile],
    ) -> list[str]:
        """Update accuracy and collateral for every voter. Returns slashed addresses."""
        slashed: list[str] = []
        for vote in task.votes:
            profile = touched.get(vote.validator)
            if profile is None:
                profile = self._repo.get_validator(vote.validator)
                if profile is None:
                    logger.error("Voter %s on %s has no profile; skipping",
                                 vote.validator, task.task_id)
                    continue
                touched[vote.validator] = profile

            correct = vote.decision == winning
            self.update_accuracy(profile, vote.decision, correct)
            if correct:
                profile.release_lock(task.order_id)
            else:
                forfeited = profile.slash()
                slashed.append(profile.address)
                logger.warning(
                    "Slashed validator %s on %s: voted %s against majority %s, "
                    "forfeited %s USDC",
                    profile.address, task.task_id, vote.decision.value,
                    winning.value, forfeited,
                )
        return slashed

    @staticmethod
    def update_accuracy(
        profile: ValidatorProfile,
        decision: VoteDecision,
        correct: bool,
    ) -> None:
        """Count the decision and fold its correctness into accuracy.

        The previous number of correct decisions is derived from the
        stored percentage, so accuracy is an approximation that stays
        within rounding of the true ratio.
        """
        if decision == VoteDecision.APPROVE:
            profile.approvals += 1
        else:
            profile.flags += 1
        total = profile.total_decisions
        previous = total - 1
        prev_correct = int(
            (Decimal(profile.accuracy) * previous / 100).quantize(
                Decimal("1"), rounding=ROUND_HALF_UP,
            )
        )
        now_correct = prev_correct + (1 if correct else 0)
        profile.accuracy = _round_half_up(now_correct, total)

    def freeze_for_dispute(self, task: ValidationTask, now: datetime) -> None:
        """Stop a pending task because a party disputed the order.

        The caller holds the task and order locks and persists the task.
        No voter is scored or slashed.
        """
        if task.status != TaskStatus.PENDING:
            return
        task.status = TaskStatus.ESCALATED
        task.resolved_by = ResolvedBy.DISPUTE
        task.resolved_utc = now
        logger.info("Task %s frozen by dispute on order %s", task.task_id, task.order_id)
        self._record(EventKind.TASK_RESOLVED, "system", {
            "task_id": task.task_id, "order_id": task.order_id,
            "status": task.status.value, "resolved_by": ResolvedBy.DISPUTE.value,
        }, now)

    def check_timeouts(self, now: Optional[datetime] = None) -> list[ValidationTask]:
        """Auto-approve every pending task that has reached its deadline.

        Idempotent: each task is re-read under its lock and skipped if
        another caller already resolved it.
        """
        if now is None:
            now = datetime.now(timezone.utc)
        resolved: list[ValidationTask] = []
        for candidate in self._repo.list_tasks([TaskStatus.PENDING]):
            if now < candidate.deadline_utc:
                continue
            with self._locks.hold(task_key(candidate.task_id), order_key(candidate.order_id)):
                task = self._repo.get_task(candidate.task_id)
                if task is None or task.status != TaskStatus.PENDING:
                    continue
                if now < task.deadline_utc:
                    continue
                task.status = TaskStatus.AUTO_APPROVED
                task.resolved_by = ResolvedBy.TIMEOUT
                task.resolved_utc = now

                order = self._repo.get_order(task.order_id)
                completed = order is not None and order.status == OrderStatus.VERIFYING
                if completed:
                    self._lifecycle.complete(order, now)
                with self._repo.atomic():
                    self._repo.save_task(task)
                    if completed:
                        self._repo.save_order(order)

            logger.info("Task %s auto-approved after timeout (%d vote(s))",
                        task.task_id, len(task.votes))
            self._record(EventKind.TASK_RESOLVED, "system", {
                "task_id": task.task_id, "order_id": task.order_id,
                "status": task.status.value, "resolved_by": ResolvedBy.TIMEOUT.value,
            }, now)
            if completed:
                safe_publish(self._publisher, OrderChanged(task.order_id, "completed"))
            resolved.append(task)
        return resolved
