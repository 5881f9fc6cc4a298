"""Typed request models — one per API operation.

Each request is parsed from a loosely-typed mapping (a JSON body, CLI
arguments) by ``from_dict``, which performs all boundary validation and
raises ValidationError with every problem found. Engines only ever see
validated request objects.

Client-supplied fiat amounts are accepted by CreateOrderRequest for
compatibility but discarded: the fiat leg is always recomputed from the
live rate.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Optional

from tradeguard.errors import ValidationError
from tradeguard.models.order import OrderAction, OrderStatus, OrderType
from tradeguard.models.validation import VoteDecision


def _require_str(data: Mapping[str, Any], key: str, errors: list[str]) -> str:
    value = data.get(key)
    if value is None or not str(value).strip():
        errors.append(f"Missing {key}")
        return ""
    return str(value).strip()


def _optional_str(data: Mapping[str, Any], key: str) -> Optional[str]:
    value = data.get(key)
    if value is None or not str(value).strip():
        return None
    return str(value).strip()


def _decimal(
    data: Mapping[str, Any], key: str, errors: list[str],
) -> Optional[Decimal]:
    raw = data.get(key)
    if raw is None or raw == "":
        errors.append(f"Missing {key}")
        return None
    if isinstance(raw, bool):
        errors.append(f"Invalid {key}: {raw!r}")
        return None
    try:
        value = Decimal(str(raw))
    except InvalidOperation:
        errors.append(f"Invalid {key}: {raw!r}")
        return None
    if not value.is_finite():
        errors.append(f"Invalid {key}: {raw!r}")
        return None
    return value


def _raise_if(errors: list[str]) -> None:
    if errors:
        raise ValidationError("; ".join(errors))


@dataclass(frozen=True)
class CreateOrderRequest:
    requester_id: str
    requester_address: str
    amount_usdc: Decimal
    fiat_currency: str
    payment_method: str
    order_type: OrderType = OrderType.SELL
    payment_details: str = ""
    destination_proof: Optional[str] = None

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> CreateOrderRequest:
        errors: list[str] = []
        requester_id = _require_str(data, "requester_id", errors)
        requester_address = _require_str(data, "requester_address", errors)
        amount = _decimal(data, "amount_usdc", errors)
        if amount is not None and amount <= 0:
            errors.append("Invalid amount_usdc: must be positive")
        fiat_currency = _require_str(data, "fiat_currency", errors)
        payment_method = _require_str(data, "payment_method", errors)
        raw_type = data.get("order_type", OrderType.SELL.value)
        try:
            order_type = OrderType(raw_type)
        except ValueError:
            errors.append(f"Invalid order_type: {raw_type!r}. Use buy or sell")
            order_type = OrderType.SELL
        _raise_if(errors)
        return CreateOrderRequest(
            requester_id=requester_id,
            requester_address=requester_address,
            amount_usdc=amount,  # type: ignore[arg-type]
            fiat_currency=fiat_currency.upper(),
            payment_method=payment_method,
            order_type=order_type,
            payment_details=str(data.get("payment_details") or ""),
            destination_proof=_optional_str(data, "destination_proof"),
        )


@dataclass(frozen=True)
class OrderQuery:
    status: Optional[OrderStatus] = None
    order_type: Optional[OrderType] = None
    user: Optional[str] = None
    counterparty_id: Optional[str] = None

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> OrderQuery:
        errors: list[str] = []
        status = None
        if data.get("status"):
            try:
                status = OrderStatus(data["status"])
            except ValueError:
                errors.append(f"Invalid status filter: {data['status']!r}")
        order_type = None
        if data.get("order_type"):
            try:
                order_type = OrderType(data["order_type"])
            except ValueError:
                errors.append(f"Invalid order_type filter: {data['order_type']!r}")
        _raise_if(errors)
        return OrderQuery(
            status=status,
            order_type=order_type,
            user=_optional_str(data, "user"),
            counterparty_id=_optional_str(data, "counterparty_id"),
        )


@dataclass(frozen=True)
class UpdateOrderRequest:
    """An order action. Which optional fields are required depends on it.

    match          counterparty_id, counterparty_address
    add_qr         evidence (destination proof)
    payment_sent   evidence (payment proof, optional)
    dispute        reason (optional)
    complete, cancel  no extra fields
    """
    order_id: str
    action: OrderAction
    actor_address: Optional[str] = None
    counterparty_id: Optional[str] = None
    counterparty_address: Optional[str] = None
    evidence: Optional[str] = None
    reason: Optional[str] = None

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> UpdateOrderRequest:
        errors: list[str] = []
        order_id = _require_str(data, "order_id", errors)
        raw_action = data.get("action")
        action: Optional[OrderAction] = None
        if not raw_action:
            errors.append("Missing action")
        else:
            try:
                action = OrderAction(raw_action)
            except ValueError:
                errors.append(f"Invalid action: {raw_action!r}")

        counterparty_id = _optional_str(data, "counterparty_id")
        counterparty_address = _optional_str(data, "counterparty_address")
        evidence = _optional_str(data, "evidence")

        if action == OrderAction.MATCH and not (counterparty_id and counterparty_address):
            errors.append("Missing counterparty_id or counterparty_address")
        if action == OrderAction.ADD_QR and not evidence:
            errors.append("QR image is required")
        _raise_if(errors)
        return UpdateOrderRequest(
            order_id=order_id,
            action=action,  # type: ignore[arg-type]
            actor_address=_optional_str(data, "actor_address"),
            counterparty_id=counterparty_id,
            counterparty_address=counterparty_address,
            evidence=evidence,
            reason=_optional_str(data, "reason"),
        )


@dataclass(frozen=True)
class RegisterValidatorRequest:
    address: str
    stake_amount: Decimal

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> RegisterValidatorRequest:
        errors: list[str] = []
        address = _require_str(data, "address", errors)
        stake = _decimal(data, "stake_amount", errors)
        _raise_if(errors)
        return RegisterValidatorRequest(
            address=address.lower(),
            stake_amount=stake,  # type: ignore[arg-type]
        )


@dataclass(frozen=True)
class VoteRequest:
    task_id: str
    validator: str
    decision: VoteDecision
    notes: str = ""

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> VoteRequest:
        errors: list[str] = []
        task_id = _require_str(data, "task_id", errors)
        validator = _require_str(data, "validator", errors)
        raw = data.get("decision")
        decision: Optional[VoteDecision] = None
        if not raw:
            errors.append("Missing decision")
        else:
            try:
                decision = VoteDecision(raw)
            except ValueError:
                errors.append('Decision must be "approve" or "flag"')
        _raise_if(errors)
        return VoteRequest(
            task_id=task_id,
            validator=validator.lower(),
            decision=decision,  # type: ignore[arg-type]
            notes=str(data.get("notes") or ""),
        )


@dataclass(frozen=True)
class ResolveDisputeRequest:
    admin_address: str
    order_id: str
    resolution: str

    RESOLUTIONS = ("approve", "refund", "schedule_meet")

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> ResolveDisputeRequest:
        errors: list[str] = []
        admin = _require_str(data, "admin_address", errors)
        order_id = _require_str(data, "order_id", errors)
        resolution = _require_str(data, "resolution", errors)
        if resolution and resolution not in ResolveDisputeRequest.RESOLUTIONS:
            errors.append(f"Invalid resolution: {resolution!r}")
        _raise_if(errors)
        return ResolveDisputeRequest(admin, order_id, resolution)


@dataclass(frozen=True)
class ResolveValidationRequest:
    admin_address: str
    task_id: str
    resolution: str
    notes: str = ""

    RESOLUTIONS = ("approve", "slash", "schedule_meet")

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> ResolveValidationRequest:
        errors: list[str] = []
        admin = _require_str(data, "admin_address", errors)
        task_id = _require_str(data, "task_id", errors)
        resolution = _require_str(data, "resolution", errors)
        if resolution and resolution not in ResolveValidationRequest.RESOLUTIONS:
            errors.append(f"Invalid resolution type: {resolution!r}")
        _raise_if(errors)
        return ResolveValidationRequest(
            admin, task_id, resolution, str(data.get("notes") or ""),
        )
