"""Admin arbitration — the human override for disputes and escalations.

Validators decide routine cases. Admins step in only where consensus
broke down:

- Disputed orders (raised by a party, or by a validator flag majority)
  are approved, refunded, or sent to a mediation call.
- Escalated validation tasks are approved or resolved against the
  counterparty ("slash": the order is cancelled and the requester's
  USDC is returned). Pending tasks belong to validators and are refused.

Every entry point checks the caller against the configured admin
allow-list before reading anything.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from tradeguard.collaborators.publisher import EventPublisher, safe_publish
from tradeguard.engine.order_state_machine import OrderLifecycle
from tradeguard.errors import (
    AuthorizationError,
    InvariantViolation,
    NotFoundError,
    ValidationError,
)
from tradeguard.models.order import Order, OrderChanged, OrderStatus
from tradeguard.models.requests import ResolveDisputeRequest, ResolveValidationRequest
from tradeguard.models.validation import (
    ResolvedBy,
    TaskStatus,
    ValidationTask,
    VoteDecision,
)
from tradeguard.persistence.codec import order_to_dict, profile_to_dict, task_to_dict
from tradeguard.persistence.event_log import EventKind, EventLog
from tradeguard.persistence.locks import KeyedLocks, order_key, task_key
from tradeguard.persistence.repository import Repository
from tradeguard.policy import EngineConfig

logger = logging.getLogger(__name__)

RECENT_ACTIVITY_LIMIT = 30
TOP_VALIDATORS_LIMIT = 20

_ARBITRABLE = (OrderStatus.DISPUTED, OrderStatus.MEDIATION)


class AdminArbitration:
    """Admin-only resolution of disputes and escalated validations."""

    def __init__(
        self,
        repository: Repository,
        locks: KeyedLocks,
        config: EngineConfig,
        lifecycle: OrderLifecycle,
        publisher: Optional[EventPublisher] = None,
        event_log: Optional[EventLog] = None,
    ) -> None:
        self._repo = repository
        self._locks = locks
        self._config = config
        self._lifecycle = lifecycle
        self._publisher = publisher
        self._event_log = event_log

    def _require_admin(self, address: str) -> None:
        if not self._config.is_admin(address):
            raise AuthorizationError("Unauthorized: admin access required")

    def _record(self, kind: EventKind, actor: str, payload: dict, now: datetime) -> None:
        if self._event_log is not None:
            self._event_log.record(kind, actor, payload, now=now)

    def meeting_ref(self, order_id: str, now: datetime) -> str:
        stamp = int(now.timestamp() * 1000)
        return f"{self._config.meeting_url_base}-{order_id[:12]}-{stamp}"

    def resolve_dispute(
        self,
        request: ResolveDisputeRequest,
        now: Optional[datetime] = None,
    ) -> Order:
        """Approve, refund, or schedule mediation for a disputed order."""
        self._require_admin(request.admin_address)
        if now is None:
            now = datetime.now(timezone.utc)

        with self._locks.hold(order_key(request.order_id)):
            order = self._repo.get_order(request.order_id)
            if order is None:
                raise NotFoundError(f"Order not found: {request.order_id}")
            if order.status not in _ARBITRABLE:
                raise ValidationError(
                    f"Order is not in dispute (status: {order.status.value})"
                )

            if request.resolution == "approve":
                self._lifecycle.complete(order, now)
                kind = EventKind.DISPUTE_RESOLVED
            elif request.resolution == "refund":
                self._lifecycle.cancel(order, now)
                kind = EventKind.DISPUTE_RESOLVED
            else:
                self._lifecycle.schedule_mediation(
                    order,
                    self.meeting_ref(order.order_id, now),
                    self._config.mediation_contact,
                    now,
                )
                kind = EventKind.MEDIATION_SCHEDULED
            self._repo.save_order(order)

        logger.info("Admin %s resolved dispute on %s: %s",
                    request.admin_address[:10], order.order_id, request.resolution)
        self._record(kind, request.admin_address, {
            "order_id": order.order_id,
            "resolution": request.resolution,
            "meeting_ref": order.meeting_ref,
        }, now)
        safe_publish(self._publisher, OrderChanged(order.order_id, order.status.value))
        return order

    def resolve_validation(
        self,
        request: ResolveValidationRequest,
        now: Optional[datetime] = None,
    ) -> ValidationTask:
        """Resolve an escalated validation task."""
        self._require_admin(request.admin_address)
        if now is None:
            now = datetime.now(timezone.utc)

        with self._locks.hold(task_key(request.task_id)):
            task = self._repo.get_task(request.task_id)
            if task is None:
                raise NotFoundError(f"Task not found: {request.task_id}")
            if task.status == TaskStatus.PENDING:
                raise ValidationError(
                    "Pending tasks are handled by validators, not admin"
                )
            if task.status != TaskStatus.ESCALATED:
                raise ValidationError("Task already resolved")

            if request.resolution == "schedule_meet":
                logger.info("Admin %s scheduled a meeting for %s: %s",
                            request.admin_address[:10], task.task_id, request.notes)
                self._record(EventKind.MEDIATION_SCHEDULED, request.admin_address, {
                    "task_id": task.task_id, "notes": request.notes,
                }, now)
                return task

            with self._locks.hold(order_key(task.order_id)):
                order = self._repo.get_order(task.order_id)
                if order is None:
                    raise InvariantViolation(
                        f"Task {task.task_id} references missing order {task.order_id}"
                    )
                task.resolved_by = ResolvedBy.ADMIN
                task.resolved_utc = now
                changed = False
                if request.resolution == "approve":
                    task.status = TaskStatus.APPROVED
                    if order.status in (OrderStatus.VERIFYING, OrderStatus.DISPUTED):
                        self._lifecycle.complete(order, now)
                        changed = True
                else:
                    task.status = TaskStatus.FLAGGED
                    if order.status in (OrderStatus.VERIFYING, OrderStatus.DISPUTED,
                                        OrderStatus.MEDIATION):
                        self._lifecycle.cancel(order, now)
                        changed = True
                    else:
                        logger.warning(
                            "Task %s flagged by admin but order %s is %s; "
                            "order left unchanged",
                            task.task_id, order.order_id, order.status.value,
                        )
                with self._repo.atomic():
                    self._repo.save_task(task)
                    if changed:
                        self._repo.save_order(order)

        logger.info("Admin %s resolved %s: %s",
                    request.admin_address[:10], task.task_id, task.status.value)
        self._record(EventKind.VALIDATION_OVERRIDDEN, request.admin_address, {
            "task_id": task.task_id,
            "order_id": task.order_id,
            "resolution": request.resolution,
            "notes": request.notes,
        }, now)
        if changed:
            safe_publish(self._publisher, OrderChanged(order.order_id, order.status.value))
        return task

    def overview(self, admin_address: str) -> dict[str, Any]:
        """Dashboard data: stats, open cases, recent activity and top validators."""
        self._require_admin(admin_address)
        tasks = self._repo.list_tasks()
        profiles = self._repo.list_validators()
        disputed = sorted(
            self._repo.list_orders(_ARBITRABLE),
            key=lambda o: o.created_utc or datetime.min.replace(tzinfo=timezone.utc),
            reverse=True,
        )
        escalated = [t for t in tasks if t.status == TaskStatus.ESCALATED]

        stats = {
            "total_validations": len(tasks),
            "pending": sum(1 for t in tasks if t.status == TaskStatus.PENDING),
            "approved": sum(1 for t in tasks if t.status in (
                TaskStatus.APPROVED, TaskStatus.AUTO_APPROVED)),
            "auto_approved": sum(1 for t in tasks if t.status == TaskStatus.AUTO_APPROVED),
            "escalated": len(escalated),
            "disputed": len(disputed),
            "total_validators": len(profiles),
        }

        escalated_cases = []
        for task in escalated:
            case = task_to_dict(task)
            case["vote_breakdown"] = {
                "total": len(task.votes),
                "approves": task.approve_count,
                "flags": task.flag_count,
                "flag_reasons": [
                    {"validator": v.validator[:10] + "...", "notes": v.notes}
                    for v in task.votes
                    if v.decision == VoteDecision.FLAG and v.notes
                ],
            }
            order = self._repo.get_order(task.order_id)
            case["order"] = order_to_dict(order) if order else None
            escalated_cases.append(case)

        resolved = sorted(
            (t for t in tasks if t.status != TaskStatus.PENDING),
            key=lambda t: t.resolved_utc or t.created_utc,
            reverse=True,
        )[:RECENT_ACTIVITY_LIMIT]
        recent_activity = [
            {
                "task_id": t.task_id,
                "order_id": t.order_id,
                "status": t.status.value,
                "resolved_by": t.resolved_by.value if t.resolved_by else None,
                "resolved_utc": t.resolved_utc.isoformat() if t.resolved_utc else None,
                "amount_usdc": str(t.evidence.amount_usdc),
                "votes": len(t.votes),
                "approves": t.approve_count,
                "flags": t.flag_count,
            }
            for t in resolved
        ]

        top = sorted(profiles, key=lambda p: p.total_reviews, reverse=True)
        return {
            "stats": stats,
            "escalated_cases": escalated_cases,
            "disputed_orders": [order_to_dict(o) for o in disputed],
            "recent_activity": recent_activity,
            "top_validators": [profile_to_dict(p) for p in top[:TOP_VALIDATORS_LIMIT]],
        }
