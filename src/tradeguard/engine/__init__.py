"""Consensus and settlement engines — order lifecycle, validation, settlement."""

from tradeguard.engine.order_state_machine import OrderLifecycle, OrderStateMachine
from tradeguard.engine.settlement import SettlementEngine, SettlementResult
from tradeguard.engine.validation import ValidationEngine

__all__ = [
    "OrderLifecycle",
    "OrderStateMachine",
    "SettlementEngine",
    "SettlementResult",
    "ValidationEngine",
]
