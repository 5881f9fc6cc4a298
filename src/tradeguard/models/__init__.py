"""Core data models for TradeGuard."""

from tradeguard.models.order import (
    Order,
    OrderAction,
    OrderChanged,
    OrderStatus,
    OrderType,
)
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

__all__ = [
    "Order",
    "OrderAction",
    "OrderChanged",
    "OrderStatus",
    "OrderType",
    "EvidenceSnapshot",
    "ResolvedBy",
    "StakeLock",
    "TaskStatus",
    "ValidationTask",
    "ValidationVote",
    "ValidatorProfile",
    "VoteDecision",
]
