"""Order models — the trade between a requester and a counterparty.

All monetary values use Decimal. No floats in finance.

Order lifecycle (see engine.order_state_machine for the full graph):
    CREATED → MATCHED → PAYMENT_PENDING → VERIFYING → COMPLETED → SETTLED
    with DISPUTED / MEDIATION / CANCELLED / EXPIRED side branches.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional


class OrderType(str, enum.Enum):
    """Direction of the trade from the requester's point of view."""
    BUY = "buy"
    SELL = "sell"


class OrderStatus(str, enum.Enum):
    """Lifecycle status of an order."""
    CREATED = "created"
    MATCHED = "matched"
    PAYMENT_PENDING = "payment_pending"
    PAYMENT_SENT = "payment_sent"
    VERIFYING = "verifying"
    COMPLETED = "completed"
    DISPUTED = "disputed"
    MEDIATION = "mediation"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    SETTLED = "settled"


class OrderAction(str, enum.Enum):
    """Actions accepted by the order update operation."""
    MATCH = "match"
    ADD_QR = "add_qr"
    PAYMENT_SENT = "payment_sent"
    COMPLETE = "complete"
    DISPUTE = "dispute"
    CANCEL = "cancel"


@dataclass
class Order:
    """A single requested trade.

    Mutable — the lifecycle state machine applies transitions in place
    on a working copy; the repository persists the result.
    amount_fiat is always derived server-side from amount_usdc and the
    live exchange rate.
    """
    order_id: str
    order_type: OrderType
    requester_id: str
    requester_address: str
    amount_usdc: Decimal
    amount_fiat: Decimal
    fiat_currency: str
    payment_method: str
    status: OrderStatus = OrderStatus.CREATED
    payment_details: str = ""
    exchange_rate: Optional[Decimal] = None
    counterparty_id: Optional[str] = None
    counterparty_address: Optional[str] = None
    destination_proof_ref: Optional[str] = None
    payment_proof_ref: Optional[str] = None
    created_utc: Optional[datetime] = None
    expires_utc: Optional[datetime] = None
    matched_utc: Optional[datetime] = None
    payment_sent_utc: Optional[datetime] = None
    completed_utc: Optional[datetime] = None
    settled_utc: Optional[datetime] = None
    dispute_period_ends_utc: Optional[datetime] = None
    stake_lock_expires_utc: Optional[datetime] = None
    meeting_ref: Optional[str] = None
    mediation_scheduled_utc: Optional[datetime] = None
    mediation_contact: Optional[str] = None
    dispute_reason: Optional[str] = None
    version: int = 0

    def is_party(self, address: str) -> bool:
        """True if the address is the requester or the counterparty."""
        addr = address.strip().lower()
        if addr == self.requester_address.lower():
            return True
        return bool(
            self.counterparty_address
            and addr == self.counterparty_address.lower()
        )


@dataclass(frozen=True)
class OrderChanged:
    """Notification emitted whenever an order changes state."""
    order_id: str
    kind: str
