"""Tests for request parsing at the API boundary."""

import pytest
from decimal import Decimal

from tradeguard.errors import ValidationError
from tradeguard.models.order import OrderAction, OrderStatus, OrderType
from tradeguard.models.requests import (
    CreateOrderRequest,
    OrderQuery,
    RegisterValidatorRequest,
    ResolveDisputeRequest,
    ResolveValidationRequest,
    UpdateOrderRequest,
    VoteRequest,
)
from tradeguard.models.validation import VoteDecision


def _create(**overrides):
    data = {
        "requester_id": "alice",
        "requester_address": "0xaaaa",
        "amount_usdc": "50",
        "fiat_currency": "inr",
        "payment_method": "UPI",
    }
    data.update(overrides)
    return data


class TestCreateOrderRequest:
    def test_parses_and_normalises(self) -> None:
        request = CreateOrderRequest.from_dict(_create(amount_fiat="1"))
        assert request.amount_usdc == Decimal("50")
        assert request.fiat_currency == "INR"
        assert request.order_type == OrderType.SELL
        assert request.destination_proof is None

    def test_collects_every_error(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            CreateOrderRequest.from_dict({"amount_usdc": "-5"})
        message = str(exc_info.value)
        assert "Missing requester_id" in message
        assert "Missing payment_method" in message
        assert "must be positive" in message

    @pytest.mark.parametrize("amount", ["abc", "NaN", "Infinity", True, "0"])
    def test_rejects_bad_amounts(self, amount) -> None:
        with pytest.raises(ValidationError):
            CreateOrderRequest.from_dict(_create(amount_usdc=amount))

    def test_rejects_unknown_type(self) -> None:
        with pytest.raises(ValidationError, match="Use buy or sell"):
            CreateOrderRequest.from_dict(_create(order_type="swap"))


class TestUpdateOrderRequest:
    def test_match_needs_counterparty(self) -> None:
        with pytest.raises(ValidationError, match="counterparty"):
            UpdateOrderRequest.from_dict({"order_id": "order_1", "action": "match"})

    def test_add_qr_needs_image(self) -> None:
        with pytest.raises(ValidationError, match="QR image is required"):
            UpdateOrderRequest.from_dict({"order_id": "order_1", "action": "add_qr"})

    def test_unknown_action(self) -> None:
        with pytest.raises(ValidationError, match="Invalid action"):
            UpdateOrderRequest.from_dict({"order_id": "order_1", "action": "refund"})

    def test_blank_fields_become_none(self) -> None:
        request = UpdateOrderRequest.from_dict({
            "order_id": "order_1", "action": "dispute", "reason": "  ",
        })
        assert request.action == OrderAction.DISPUTE
        assert request.reason is None


class TestOtherRequests:
    def test_vote_normalises_validator(self) -> None:
        request = VoteRequest.from_dict({
            "task_id": "VAL-00000001", "validator": "0xABCD", "decision": "flag",
        })
        assert request.validator == "0xabcd"
        assert request.decision == VoteDecision.FLAG
        assert request.notes == ""

    def test_vote_bad_decision(self) -> None:
        with pytest.raises(ValidationError, match='Decision must be "approve" or "flag"'):
            VoteRequest.from_dict({
                "task_id": "VAL-00000001", "validator": "0xabcd", "decision": "maybe",
            })

    def test_register_validator(self) -> None:
        request = RegisterValidatorRequest.from_dict(
            {"address": "0xABCD", "stake_amount": 250})
        assert request.address == "0xabcd"
        assert request.stake_amount == Decimal("250")

    def test_query_filters(self) -> None:
        query = OrderQuery.from_dict({"status": "created", "order_type": "buy"})
        assert query.status == OrderStatus.CREATED
        assert query.order_type == OrderType.BUY
        with pytest.raises(ValidationError):
            OrderQuery.from_dict({"status": "lost"})

    def test_resolutions_are_checked(self) -> None:
        with pytest.raises(ValidationError):
            ResolveDisputeRequest.from_dict({
                "admin_address": "0x1", "order_id": "order_1", "resolution": "slash",
            })
        with pytest.raises(ValidationError, match="Invalid resolution type"):
            ResolveValidationRequest.from_dict({
                "admin_address": "0x1", "task_id": "VAL-1", "resolution": "refund",
            })
