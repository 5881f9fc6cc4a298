"""Validation models — tasks, votes, and validator collateral profiles.

A ValidationTask is the unit of consensus: one per order verification
cycle. Its evidence snapshot is captured at creation and never changes.
A ValidatorProfile tracks a validator's collateral and the per-order
locks held against it.

Invariant: locked_amount == sum of non-expired locked_orders amounts.
"""

from __future__ import annotations

import enum
import math
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional


class TaskStatus(str, enum.Enum):
    """Lifecycle status of a validation task."""
    PENDING = "pending"
    APPROVED = "approved"
    AUTO_APPROVED = "auto_approved"
    ESCALATED = "escalated"
    FLAGGED = "flagged"


class VoteDecision(str, enum.Enum):
    """A validator's verdict on the payment evidence."""
    APPROVE = "approve"
    FLAG = "flag"


class ResolvedBy(str, enum.Enum):
    """What closed a validation task."""
    VALIDATOR_MAJORITY = "validator_majority"
    TIMEOUT = "timeout"
    ADMIN = "admin"
    DISPUTE = "dispute"


@dataclass(frozen=True)
class EvidenceSnapshot:
    """Order evidence as it stood when the task was opened."""
    requester_address: str
    counterparty_address: str
    amount_usdc: Decimal
    amount_fiat: Decimal
    fiat_currency: str
    payment_method: str
    destination_proof_ref: Optional[str] = None
    payment_proof_ref: Optional[str] = None


@dataclass(frozen=True)
class ValidationVote:
    """A single validator's vote on a task."""
    validator: str
    decision: VoteDecision
    voted_utc: datetime
    notes: str = ""


@dataclass
class ValidationTask:
    """A validation task collecting votes toward a majority outcome."""
    task_id: str
    order_id: str
    evidence: EvidenceSnapshot
    threshold: int
    created_utc: datetime
    deadline_utc: datetime
    status: TaskStatus = TaskStatus.PENDING
    votes: list[ValidationVote] = field(default_factory=list)
    resolved_utc: Optional[datetime] = None
    resolved_by: Optional[ResolvedBy] = None
    version: int = 0

    @property
    def majority(self) -> int:
        """Votes needed on one side to resolve the task."""
        return math.ceil(self.threshold / 2)

    @property
    def approve_count(self) -> int:
        return sum(1 for v in self.votes if v.decision == VoteDecision.APPROVE)

    @property
    def flag_count(self) -> int:
        return sum(1 for v in self.votes if v.decision == VoteDecision.FLAG)

    def has_voted(self, address: str) -> bool:
        addr = address.strip().lower()
        return any(v.validator == addr for v in self.votes)

    def vote_of(self, address: str) -> Optional[VoteDecision]:
        addr = address.strip().lower()
        for v in self.votes:
            if v.validator == addr:
                return v.decision
        return None

    def involves(self, address: str) -> bool:
        """True if the address is a party to the underlying order."""
        addr = address.strip().lower()
        return addr in (
            self.evidence.requester_address.lower(),
            self.evidence.counterparty_address.lower(),
        )


@dataclass(frozen=True)
class StakeLock:
    """Collateral held against a validator for one order."""
    order_id: str
    amount: Decimal
    locked_until: datetime


@dataclass
class ValidatorProfile:
    """A staked validator and its collateral bookkeeping."""
    address: str
    staked: Decimal
    total_reviews: int = 0
    total_earned: Decimal = Decimal("0")
    approvals: int = 0
    flags: int = 0
    accuracy: int = 100
    locked_amount: Decimal = Decimal("0")
    locked_orders: list[StakeLock] = field(default_factory=list)
    is_slashed: bool = False
    is_active: bool = True
    registered_utc: Optional[datetime] = None
    last_review_utc: Optional[datetime] = None
    version: int = 0

    @property
    def available_stake(self) -> Decimal:
        return self.staked - self.locked_amount

    @property
    def total_decisions(self) -> int:
        return self.approvals + self.flags

    def recompute_locked(self) -> None:
        """Re-derive locked_amount from locked_orders."""
        self.locked_amount = sum(
            (lock.amount for lock in self.locked_orders), Decimal("0"),
        )

    def release_expired_locks(self, now: datetime) -> Decimal:
        """Drop locks whose window has passed. Returns the amount freed."""
        active = [lock for lock in self.locked_orders if lock.locked_until > now]
        freed = sum(
            (lock.amount for lock in self.locked_orders if lock.locked_until <= now),
            Decimal("0"),
        )
        self.locked_orders = active
        self.recompute_locked()
        return freed

    def release_lock(self, order_id: str) -> None:
        """Release the lock held for a specific order."""
        self.locked_orders = [
            lock for lock in self.locked_orders if lock.order_id != order_id
        ]
        self.recompute_locked()

    def slash(self) -> Decimal:
        """Forfeit all collateral and ban the validator permanently.

        Returns the amount forfeited.
        """
        forfeited = self.staked
        self.staked = Decimal("0")
        self.locked_amount = Decimal("0")
        self.locked_orders = []
        self.is_slashed = True
        self.is_active = False
        return forfeited
