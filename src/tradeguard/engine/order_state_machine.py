"""Order state machine — enforces valid lifecycle transitions.

Order lifecycle:
    CREATED → MATCHED → PAYMENT_PENDING → VERIFYING → COMPLETED → SETTLED
    MATCHED → VERIFYING (payment reported without a destination proof)
    MATCHED → CREATED (counterparty releases the order)
    CREATED → CANCELLED | EXPIRED
    any active state → DISPUTED → MEDIATION → COMPLETED | CANCELLED

State semantics:
- CREATED: open for a counterparty to claim; expires lazily.
- MATCHED: a counterparty has claimed the order.
- PAYMENT_PENDING: requester attached the destination proof.
- PAYMENT_SENT: legacy state, payment reported before validation existed.
- VERIFYING: fiat payment reported; a validation task is open.
- COMPLETED: payment accepted; the dispute window is running.
- DISPUTED / MEDIATION: awaiting admin arbitration.
- CANCELLED, EXPIRED, SETTLED: terminal.

Fail-closed: invalid transitions raise InvalidStateError and leave the
order untouched. There are no implicit transitions.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from tradeguard.errors import InvalidStateError
from tradeguard.models.order import Order, OrderStatus

logger = logging.getLogger(__name__)

S = OrderStatus

# Valid transitions: {from_state: {allowed_to_states}}
_TRANSITIONS: dict[OrderStatus, set[OrderStatus]] = {
    S.CREATED: {S.MATCHED, S.CANCELLED, S.EXPIRED},
    S.MATCHED: {S.PAYMENT_PENDING, S.VERIFYING, S.DISPUTED, S.CREATED},
    S.PAYMENT_PENDING: {S.VERIFYING, S.DISPUTED},
    S.PAYMENT_SENT: {S.COMPLETED, S.DISPUTED, S.SETTLED},
    S.VERIFYING: {S.COMPLETED, S.DISPUTED, S.CANCELLED},
    S.COMPLETED: {S.DISPUTED, S.SETTLED},
    S.DISPUTED: {S.COMPLETED, S.CANCELLED, S.MEDIATION},
    S.MEDIATION: {S.COMPLETED, S.CANCELLED, S.MEDIATION},
    # Terminal states: no outgoing transitions
    S.CANCELLED: set(),
    S.EXPIRED: set(),
    S.SETTLED: set(),
}

_TERMINAL = frozenset({S.CANCELLED, S.EXPIRED, S.SETTLED})


class OrderStateMachine:
    """Validates and applies order state transitions.

    Pure computation: validates transitions only. Side effects (task
    creation, persistence, publishing) are handled by the engines and
    the service layer.
    """

    @staticmethod
    def validate_transition(
        order: Order,
        target: OrderStatus,
        now: Optional[datetime] = None,
    ) -> list[str]:
        """Check if a transition is valid. Returns errors (empty = OK)."""
        current = order.status
        allowed = _TRANSITIONS.get(current, set())

        if target not in allowed:
            allowed_str = ", ".join(s.value for s in sorted(allowed, key=lambda x: x.value))
            return [
                f"Invalid order transition: {current.value} → {target.value}. "
                f"Allowed from {current.value}: [{allowed_str}]"
            ]

        if current == S.COMPLETED and target == S.DISPUTED:
            if now is None:
                now = datetime.now(timezone.utc)
            ends = order.dispute_period_ends_utc
            if ends is None or now >= ends:
                return ["Dispute period has ended for this order"]
        return []

    @staticmethod
    def apply_transition(
        order: Order,
        target: OrderStatus,
        now: Optional[datetime] = None,
    ) -> list[str]:
        """Validate and apply a state transition.

        Returns errors if transition is invalid. On success,
        mutates order.status and returns empty list.
        """
        errors = OrderStateMachine.validate_transition(order, target, now)
        if errors:
            return errors
        order.status = target
        return []

    @staticmethod
    def is_terminal(state: OrderStatus) -> bool:
        return state in _TERMINAL

    @staticmethod
    def valid_transitions(state: OrderStatus) -> set[OrderStatus]:
        return set(_TRANSITIONS.get(state, set()))


class OrderLifecycle:
    """Applies transitions together with the fields each one sets.

    Every method mutates the given working copy in place and raises
    InvalidStateError without touching it when the transition is not
    allowed.
    """

    def __init__(self, dispute_window: timedelta, stake_lock_window: timedelta) -> None:
        self._dispute_window = dispute_window
        self._stake_lock_window = stake_lock_window

    @staticmethod
    def _move(order: Order, target: OrderStatus, now: datetime) -> None:
        previous = order.status
        errors = OrderStateMachine.apply_transition(order, target, now)
        if errors:
            raise InvalidStateError("; ".join(errors))
        logger.info("Order %s: %s → %s", order.order_id, previous.value, target.value)

    @staticmethod
    def is_expired(order: Order, now: datetime) -> bool:
        return (
            order.status == S.CREATED
            and order.expires_utc is not None
            and now > order.expires_utc
        )

    def expire(self, order: Order, now: datetime) -> bool:
        """Expire a stale CREATED order. Returns False if not due."""
        if not self.is_expired(order, now):
            return False
        self._move(order, S.EXPIRED, now)
        return True

    def match(
        self,
        order: Order,
        counterparty_id: str,
        counterparty_address: str,
        now: datetime,
    ) -> None:
        if order.status != S.CREATED:
            raise InvalidStateError(
                f"Order is not available for matching (status: {order.status.value})"
            )
        self._move(order, S.MATCHED, now)
        order.counterparty_id = counterparty_id
        order.counterparty_address = counterparty_address.strip().lower()
        order.matched_utc = now

    def release(self, order: Order, now: datetime) -> None:
        """Counterparty gives the order back to the open book."""
        self._move(order, S.CREATED, now)
        order.counterparty_id = None
        order.counterparty_address = None
        order.matched_utc = None

    def attach_destination(self, order: Order, proof_ref: str, now: datetime) -> None:
        if order.status != S.MATCHED:
            raise InvalidStateError(
                f"Destination proof can only be added to a matched order "
                f"(status: {order.status.value})"
            )
        self._move(order, S.PAYMENT_PENDING, now)
        order.destination_proof_ref = proof_ref

    def mark_payment_sent(
        self,
        order: Order,
        proof_ref: Optional[str],
        now: datetime,
    ) -> None:
        if order.status not in (S.MATCHED, S.PAYMENT_PENDING):
            raise InvalidStateError(
                f"Payment can only be reported for a matched order "
                f"(status: {order.status.value})"
            )
        self._move(order, S.VERIFYING, now)
        if proof_ref:
            order.payment_proof_ref = proof_ref
        order.payment_sent_utc = now

    def complete(self, order: Order, now: datetime) -> None:
        """Accept the payment and start the dispute window."""
        self._move(order, S.COMPLETED, now)
        order.completed_utc = now
        order.dispute_period_ends_utc = now + self._dispute_window
        order.stake_lock_expires_utc = now + self._stake_lock_window

    def dispute(self, order: Order, reason: Optional[str], now: datetime) -> None:
        self._move(order, S.DISPUTED, now)
        if reason:
            order.dispute_reason = reason

    def cancel(self, order: Order, now: datetime) -> None:
        self._move(order, S.CANCELLED, now)

    def schedule_mediation(
        self,
        order: Order,
        meeting_ref: str,
        contact: str,
        now: datetime,
    ) -> None:
        self._move(order, S.MEDIATION, now)
        order.meeting_ref = meeting_ref
        order.mediation_scheduled_utc = now
        order.mediation_contact = contact

    def settle(self, order: Order, now: datetime) -> None:
        self._move(order, S.SETTLED, now)
        order.settled_utc = now
