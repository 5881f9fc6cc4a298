"""Tests for the order state machine — proves invalid transitions fail closed."""

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from tradeguard.engine.order_state_machine import OrderLifecycle, OrderStateMachine
from tradeguard.errors import InvalidStateError
from tradeguard.models.order import Order, OrderStatus, OrderType


def _now() -> datetime:
    return datetime(2026, 2, 18, 12, 0, 0, tzinfo=timezone.utc)


def _order(status: OrderStatus = OrderStatus.CREATED) -> Order:
    return Order(
        order_id="order_abc123def456",
        order_type=OrderType.SELL,
        requester_id="alice",
        requester_address="0xaaaa000000000000000000000000000000000001",
        amount_usdc=Decimal("50"),
        amount_fiat=Decimal("4175.00"),
        fiat_currency="INR",
        payment_method="UPI",
        status=status,
        created_utc=_now(),
        expires_utc=_now() + timedelta(minutes=15),
    )


@pytest.fixture
def lifecycle() -> OrderLifecycle:
    return OrderLifecycle(timedelta(hours=24), timedelta(hours=24))


class TestTransitionTable:
    def test_valid_transition_returns_no_errors(self) -> None:
        order = _order()
        assert OrderStateMachine.validate_transition(order, OrderStatus.MATCHED) == []

    def test_invalid_transition_lists_allowed(self) -> None:
        order = _order()
        errors = OrderStateMachine.validate_transition(order, OrderStatus.COMPLETED)
        assert len(errors) == 1
        assert "created → completed" in errors[0]
        assert "cancelled, expired, matched" in errors[0]

    def test_apply_leaves_order_untouched_on_error(self) -> None:
        order = _order()
        errors = OrderStateMachine.apply_transition(order, OrderStatus.SETTLED)
        assert errors
        assert order.status == OrderStatus.CREATED

    @pytest.mark.parametrize("state", [
        OrderStatus.CANCELLED, OrderStatus.EXPIRED, OrderStatus.SETTLED,
    ])
    def test_terminal_states_have_no_exits(self, state) -> None:
        assert OrderStateMachine.is_terminal(state)
        assert OrderStateMachine.valid_transitions(state) == set()

    def test_valid_transitions_is_a_copy(self) -> None:
        allowed = OrderStateMachine.valid_transitions(OrderStatus.CREATED)
        allowed.add(OrderStatus.SETTLED)
        assert OrderStatus.SETTLED not in OrderStateMachine.valid_transitions(
            OrderStatus.CREATED)

    def test_completed_dispute_inside_window(self) -> None:
        order = _order(OrderStatus.COMPLETED)
        order.dispute_period_ends_utc = _now() + timedelta(hours=24)
        assert OrderStateMachine.validate_transition(
            order, OrderStatus.DISPUTED, now=_now() + timedelta(hours=23),
        ) == []

    def test_completed_dispute_after_window(self) -> None:
        order = _order(OrderStatus.COMPLETED)
        order.dispute_period_ends_utc = _now() + timedelta(hours=24)
        errors = OrderStateMachine.validate_transition(
            order, OrderStatus.DISPUTED, now=_now() + timedelta(hours=24),
        )
        assert errors == ["Dispute period has ended for this order"]

    def test_legacy_payment_sent_can_settle(self) -> None:
        order = _order(OrderStatus.PAYMENT_SENT)
        assert OrderStateMachine.validate_transition(order, OrderStatus.SETTLED) == []


class TestLifecycle:
    def test_match_sets_counterparty(self, lifecycle) -> None:
        order = _order()
        lifecycle.match(order, "lp1", "0xBBBB000000000000000000000000000000000002", _now())
        assert order.status == OrderStatus.MATCHED
        assert order.counterparty_id == "lp1"
        assert order.counterparty_address == "0xbbbb000000000000000000000000000000000002"
        assert order.matched_utc == _now()

    def test_match_requires_created(self, lifecycle) -> None:
        order = _order(OrderStatus.VERIFYING)
        with pytest.raises(InvalidStateError, match="not available for matching"):
            lifecycle.match(order, "lp1", "0xbbbb", _now())

    def test_release_clears_counterparty(self, lifecycle) -> None:
        order = _order()
        lifecycle.match(order, "lp1", "0xbbbb", _now())
        lifecycle.release(order, _now())
        assert order.status == OrderStatus.CREATED
        assert order.counterparty_id is None
        assert order.counterparty_address is None
        assert order.matched_utc is None

    def test_destination_then_payment(self, lifecycle) -> None:
        order = _order()
        lifecycle.match(order, "lp1", "0xbbbb", _now())
        lifecycle.attach_destination(order, "ipfs://bafyqr", _now())
        assert order.status == OrderStatus.PAYMENT_PENDING
        assert order.destination_proof_ref == "ipfs://bafyqr"
        lifecycle.mark_payment_sent(order, "ipfs://bafyproof", _now())
        assert order.status == OrderStatus.VERIFYING
        assert order.payment_proof_ref == "ipfs://bafyproof"
        assert order.payment_sent_utc == _now()

    def test_payment_requires_match(self, lifecycle) -> None:
        order = _order()
        with pytest.raises(InvalidStateError, match="matched order"):
            lifecycle.mark_payment_sent(order, None, _now())
        assert order.status == OrderStatus.CREATED

    def test_complete_starts_windows(self, lifecycle) -> None:
        order = _order(OrderStatus.VERIFYING)
        lifecycle.complete(order, _now())
        assert order.completed_utc == _now()
        assert order.dispute_period_ends_utc == _now() + timedelta(hours=24)
        assert order.stake_lock_expires_utc == _now() + timedelta(hours=24)

    def test_dispute_keeps_reason(self, lifecycle) -> None:
        order = _order(OrderStatus.VERIFYING)
        lifecycle.dispute(order, "wrong amount", _now())
        assert order.status == OrderStatus.DISPUTED
        assert order.dispute_reason == "wrong amount"

    def test_mediation_can_be_rescheduled(self, lifecycle) -> None:
        order = _order(OrderStatus.DISPUTED)
        lifecycle.schedule_mediation(order, "meet-1", "ops@example", _now())
        later = _now() + timedelta(hours=2)
        lifecycle.schedule_mediation(order, "meet-2", "ops@example", later)
        assert order.status == OrderStatus.MEDIATION
        assert order.meeting_ref == "meet-2"
        assert order.mediation_scheduled_utc == later

    def test_settled_is_final(self, lifecycle) -> None:
        order = _order(OrderStatus.COMPLETED)
        lifecycle.settle(order, _now())
        assert order.settled_utc == _now()
        with pytest.raises(InvalidStateError):
            lifecycle.dispute(order, None, _now())


class TestExpiry:
    def test_not_expired_at_deadline(self, lifecycle) -> None:
        order = _order()
        assert not lifecycle.expire(order, _now() + timedelta(minutes=15))
        assert order.status == OrderStatus.CREATED

    def test_expires_after_deadline(self, lifecycle) -> None:
        order = _order()
        assert lifecycle.expire(order, _now() + timedelta(minutes=16))
        assert order.status == OrderStatus.EXPIRED

    def test_expire_is_idempotent(self, lifecycle) -> None:
        order = _order()
        later = _now() + timedelta(minutes=16)
        assert lifecycle.expire(order, later)
        assert not lifecycle.expire(order, later)
        assert order.status == OrderStatus.EXPIRED

    def test_matched_orders_never_expire(self, lifecycle) -> None:
        order = _order(OrderStatus.MATCHED)
        assert not lifecycle.expire(order, _now() + timedelta(days=2))
