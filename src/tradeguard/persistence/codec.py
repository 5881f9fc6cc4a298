"""Record codec — converts orders, tasks and profiles to and from JSON-safe dicts.

Decimals are stored as strings and datetimes as ISO-8601 so that a
round trip through the durable store is exact. The same dicts are used
as the ``data`` payload of service results.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from tradeguard.errors import InvariantViolation
from tradeguard.models.order import Order, OrderStatus, OrderType
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


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _dec(value: Optional[Decimal]) -> Optional[str]:
    return str(value) if value is not None else None


def _parse_dec(value: Optional[str]) -> Optional[Decimal]:
    return Decimal(value) if value is not None else None


_ORDER_TIMESTAMPS = (
    "created_utc", "expires_utc", "matched_utc", "payment_sent_utc",
    "completed_utc", "settled_utc", "dispute_period_ends_utc",
    "stake_lock_expires_utc", "mediation_scheduled_utc",
)

_ORDER_TEXT = (
    "order_id", "requester_id", "requester_address", "fiat_currency",
    "payment_method", "payment_details", "counterparty_id",
    "counterparty_address", "destination_proof_ref", "payment_proof_ref",
    "meeting_ref", "mediation_contact", "dispute_reason",
)


def order_to_dict(order: Order) -> dict[str, Any]:
    data: dict[str, Any] = {key: getattr(order, key) for key in _ORDER_TEXT}
    data.update({key: _ts(getattr(order, key)) for key in _ORDER_TIMESTAMPS})
    data["order_type"] = order.order_type.value
    data["status"] = order.status.value
    data["amount_usdc"] = _dec(order.amount_usdc)
    data["amount_fiat"] = _dec(order.amount_fiat)
    data["exchange_rate"] = _dec(order.exchange_rate)
    data["version"] = order.version
    return data


def order_from_dict(data: dict[str, Any]) -> Order:
    try:
        kwargs: dict[str, Any] = {key: data.get(key) for key in _ORDER_TEXT}
        kwargs.update({key: _parse_ts(data.get(key)) for key in _ORDER_TIMESTAMPS})
        kwargs["payment_details"] = data.get("payment_details") or ""
        kwargs["order_type"] = OrderType(data["order_type"])
        kwargs["status"] = OrderStatus(data["status"])
        kwargs["amount_usdc"] = Decimal(data["amount_usdc"])
        kwargs["amount_fiat"] = Decimal(data["amount_fiat"])
        kwargs["exchange_rate"] = _parse_dec(data.get("exchange_rate"))
        kwargs["version"] = int(data.get("version", 0))
        return Order(**kwargs)
    except (KeyError, ValueError, TypeError, ArithmeticError) as exc:
        raise InvariantViolation(
            f"Corrupted order record {data.get('order_id')}: {exc}"
        ) from exc


def task_to_dict(task: ValidationTask) -> dict[str, Any]:
    ev = task.evidence
    return {
        "task_id": task.task_id,
        "order_id": task.order_id,
        "status": task.status.value,
        "threshold": task.threshold,
        "created_utc": _ts(task.created_utc),
        "deadline_utc": _ts(task.deadline_utc),
        "resolved_utc": _ts(task.resolved_utc),
        "resolved_by": task.resolved_by.value if task.resolved_by else None,
        "evidence": {
            "requester_address": ev.requester_address,
            "counterparty_address": ev.counterparty_address,
            "amount_usdc": _dec(ev.amount_usdc),
            "amount_fiat": _dec(ev.amount_fiat),
            "fiat_currency": ev.fiat_currency,
            "payment_method": ev.payment_method,
            "destination_proof_ref": ev.destination_proof_ref,
            "payment_proof_ref": ev.payment_proof_ref,
        },
        "votes": [
            {
                "validator": v.validator,
                "decision": v.decision.value,
                "voted_utc": _ts(v.voted_utc),
                "notes": v.notes,
            }
            for v in task.votes
        ],
        "version": task.version,
    }


def task_from_dict(data: dict[str, Any]) -> ValidationTask:
    try:
        ev = data["evidence"]
        evidence = EvidenceSnapshot(
            requester_address=ev["requester_address"],
            counterparty_address=ev["counterparty_address"],
            amount_usdc=Decimal(ev["amount_usdc"]),
            amount_fiat=Decimal(ev["amount_fiat"]),
            fiat_currency=ev["fiat_currency"],
            payment_method=ev["payment_method"],
            destination_proof_ref=ev.get("destination_proof_ref"),
            payment_proof_ref=ev.get("payment_proof_ref"),
        )
        votes = [
            ValidationVote(
                validator=v["validator"],
                decision=VoteDecision(v["decision"]),
                voted_utc=_parse_ts(v["voted_utc"]),
                notes=v.get("notes", ""),
            )
            for v in data.get("votes", [])
        ]
        resolved_by = data.get("resolved_by")
        return ValidationTask(
            task_id=data["task_id"],
            order_id=data["order_id"],
            evidence=evidence,
            threshold=int(data["threshold"]),
            created_utc=_parse_ts(data["created_utc"]),
            deadline_utc=_parse_ts(data["deadline_utc"]),
            status=TaskStatus(data["status"]),
            votes=votes,
            resolved_utc=_parse_ts(data.get("resolved_utc")),
            resolved_by=ResolvedBy(resolved_by) if resolved_by else None,
            version=int(data.get("version", 0)),
        )
    except (KeyError, ValueError, TypeError, ArithmeticError) as exc:
        raise InvariantViolation(
            f"Corrupted validation task {data.get('task_id')}: {exc}"
        ) from exc


def profile_to_dict(profile: ValidatorProfile) -> dict[str, Any]:
    return {
        "address": profile.address,
        "staked": _dec(profile.staked),
        "total_reviews": profile.total_reviews,
        "total_earned": _dec(profile.total_earned),
        "approvals": profile.approvals,
        "flags": profile.flags,
        "accuracy": profile.accuracy,
        "locked_amount": _dec(profile.locked_amount),
        "locked_orders": [
            {
                "order_id": lock.order_id,
                "amount": _dec(lock.amount),
                "locked_until": _ts(lock.locked_until),
            }
            for lock in profile.locked_orders
        ],
        "is_slashed": profile.is_slashed,
        "is_active": profile.is_active,
        "registered_utc": _ts(profile.registered_utc),
        "last_review_utc": _ts(profile.last_review_utc),
        "version": profile.version,
    }


def profile_from_dict(data: dict[str, Any]) -> ValidatorProfile:
    try:
        locks = [
            StakeLock(
                order_id=lock["order_id"],
                amount=Decimal(lock["amount"]),
                locked_until=_parse_ts(lock["locked_until"]),
            )
            for lock in data.get("locked_orders", [])
        ]
        return ValidatorProfile(
            address=data["address"],
            staked=Decimal(data["staked"]),
            total_reviews=int(data.get("total_reviews", 0)),
            total_earned=Decimal(data.get("total_earned", "0")),
            approvals=int(data.get("approvals", 0)),
            flags=int(data.get("flags", 0)),
            accuracy=int(data.get("accuracy", 100)),
            locked_amount=Decimal(data.get("locked_amount", "0")),
            locked_orders=locks,
            is_slashed=bool(data.get("is_slashed", False)),
            is_active=bool(data.get("is_active", True)),
            registered_utc=_parse_ts(data.get("registered_utc")),
            last_review_utc=_parse_ts(data.get("last_review_utc")),
            version=int(data.get("version", 0)),
        )
    except (KeyError, ValueError, TypeError, ArithmeticError) as exc:
        raise InvariantViolation(
            f"Corrupted validator profile {data.get('address')}: {exc}"
        ) from exc
