"""TradeGuard service — unified facade for the consensus and settlement engine.

This is the primary interface for programmatic access to TradeGuard
(the CLI and any web layer sit on top of it). It orchestrates:
- Order lifecycle (create, match, payment, complete, dispute, cancel)
- Validation consensus (validator registry, tasks, votes, timeouts)
- Settlement (dispute-window sweep, single and forced settlement)
- Admin arbitration (disputes, escalations, overview)

Every operation accepts a plain mapping (or a typed request), validates
it at the boundary and returns a ServiceResult. Engine errors become
failed results carrying the error's status code; nothing raises out of
the facade.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional
from uuid import uuid4

from tradeguard import __version__
from tradeguard.collaborators.evidence import EvidenceStore, redact, store_evidence
from tradeguard.collaborators.ledger import GuardedLedger, LedgerClient
from tradeguard.collaborators.publisher import EventPublisher, safe_publish
from tradeguard.collaborators.rates import RateCache, RateOracle, fiat_amount
from tradeguard.engine.order_state_machine import OrderLifecycle
from tradeguard.engine.settlement import SettlementEngine
from tradeguard.engine.validation import ValidationEngine
from tradeguard.errors import (
    AuthorizationError,
    ConcurrentWriteError,
    InsufficientStakeError,
    InvalidStateError,
    NotFoundError,
    TradeGuardError,
    ValidationError,
)
from tradeguard.legal.arbitration import AdminArbitration
from tradeguard.models.order import (
    Order,
    OrderAction,
    OrderChanged,
    OrderStatus,
    OrderType,
)
from tradeguard.models.requests import (
    CreateOrderRequest,
    OrderQuery,
    RegisterValidatorRequest,
    ResolveDisputeRequest,
    ResolveValidationRequest,
    UpdateOrderRequest,
    VoteRequest,
)
from tradeguard.models.validation import TaskStatus, ValidationTask, ValidatorProfile
from tradeguard.persistence.codec import order_to_dict, profile_to_dict, task_to_dict
from tradeguard.persistence.event_log import EventKind, EventLog
from tradeguard.persistence.locks import KeyedLocks, order_key, task_key
from tradeguard.persistence.repository import InMemoryRepository, Repository
from tradeguard.policy import EngineConfig

logger = logging.getLogger(__name__)

_DISPUTE_ATTEMPTS = 3


@dataclass(frozen=True)
class ServiceResult:
    """Result of a service operation."""
    success: bool
    errors: list[str] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)
    status_code: int = 200


def _failure(exc: TradeGuardError) -> ServiceResult:
    data: dict[str, Any] = {}
    if isinstance(exc, InsufficientStakeError):
        data = {
            "required": str(exc.required),
            "available": str(exc.available),
            "shortfall": str(exc.shortfall),
        }
    return ServiceResult(
        success=False, errors=[str(exc)], data=data, status_code=exc.status_code,
    )


def _profile_view(profile: ValidatorProfile) -> dict[str, Any]:
    data = profile_to_dict(profile)
    data["available_stake"] = str(profile.available_stake)
    return data


class TradeGuardService:
    """Order validation consensus & settlement facade.

    Usage:
        config = EngineConfig.from_config_dir(config_dir)
        service = TradeGuardService(config)

        result = service.create_order({...})
        service.update_order({"order_id": oid, "action": "match", ...})
        service.update_order({"order_id": oid, "action": "payment_sent", ...})
        service.submit_vote({"task_id": tid, "validator": addr, "decision": "approve"})
        service.settlement_sweep()

    Collaborators (ledger, evidence store, rate oracle, publisher) are
    optional; without them the engine runs on its documented fallbacks.
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        repository: Optional[Repository] = None,
        ledger: Optional[LedgerClient] = None,
        evidence_store: Optional[EvidenceStore] = None,
        rate_oracle: Optional[RateOracle] = None,
        publisher: Optional[EventPublisher] = None,
        event_log: Optional[EventLog] = None,
        locks: Optional[KeyedLocks] = None,
    ) -> None:
        self._config = config or EngineConfig()
        self._repo = repository if repository is not None else InMemoryRepository()
        self._locks = locks if locks is not None else KeyedLocks()
        self._ledger = GuardedLedger(ledger, self._config.ledger_timeout_seconds)
        self._evidence_store = evidence_store
        self._rates = RateCache(
            rate_oracle,
            self._config.fallback_rate,
            ttl_seconds=self._config.rate_cache_ttl_seconds,
            timeout_seconds=self._config.ledger_timeout_seconds,
        )
        self._publisher = publisher
        self._event_log = event_log

        self._lifecycle = OrderLifecycle(
            self._config.dispute_window, self._config.stake_lock_window,
        )
        self._validation = ValidationEngine(
            self._repo, self._locks, self._config, self._lifecycle,
            publisher=publisher, event_log=event_log, ledger=self._ledger,
        )
        self._settlement = SettlementEngine(
            self._repo, self._locks, self._lifecycle,
            publisher=publisher, event_log=event_log,
        )
        self._arbitration = AdminArbitration(
            self._repo, self._locks, self._config, self._lifecycle,
            publisher=publisher, event_log=event_log,
        )

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def repository(self) -> Repository:
        return self._repo

    def _guarded(self, operation: str, fn: Callable[[], dict[str, Any]]) -> ServiceResult:
        try:
            return ServiceResult(success=True, data=fn())
        except TradeGuardError as exc:
            logger.info("%s rejected: %s", operation, exc)
            return _failure(exc)
        except Exception:
            logger.exception("%s failed unexpectedly", operation)
            return ServiceResult(
                success=False, errors=["Internal error"], status_code=500,
            )

    def _record(self, kind: EventKind, actor: str, payload: dict, now: datetime) -> None:
        if self._event_log is not None:
            self._event_log.record(kind, actor, payload, now=now)

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    def create_order(
        self,
        data: Mapping[str, Any],
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Create an order. The fiat amount is always computed server-side."""
        return self._guarded("create_order", lambda: self._create_order(data, now))

    def _create_order(self, data: Mapping[str, Any], now: Optional[datetime]) -> dict[str, Any]:
        request = CreateOrderRequest.from_dict(data)
        if now is None:
            now = datetime.now(timezone.utc)
        cfg = self._config
        currency = request.fiat_currency

        if request.amount_usdc > cfg.max_order_usdc:
            raise ValidationError(
                f"Order exceeds maximum limit of {cfg.max_order_usdc} USDC"
            )

        rate = self._rates.rate(currency)
        fiat = fiat_amount(request.amount_usdc, rate)

        if request.order_type == OrderType.SELL:
            balance = self._ledger.usdc_balance(request.requester_address)
            if balance is not None and balance < request.amount_usdc:
                raise ValidationError(
                    f"Insufficient balance. Required: {request.amount_usdc} USDC, "
                    f"Available: {balance:.2f} USDC"
                )

        limit = self._ledger.trading_limit(request.requester_address)
        if limit:
            limit_fiat = limit * rate
            if fiat > limit_fiat:
                raise ValidationError(
                    f"Order exceeds tier limit. Max: {limit_fiat:.0f} {currency}, "
                    f"Requested: {fiat:.0f} {currency}"
                )
        elif fiat > cfg.default_fiat_limit:
            raise ValidationError(
                f"Order exceeds default limit. Max: {cfg.default_fiat_limit} {currency}"
            )

        order_id = f"order_{uuid4().hex[:12]}"
        order = Order(
            order_id=order_id,
            order_type=request.order_type,
            requester_id=request.requester_id,
            requester_address=request.requester_address.lower(),
            amount_usdc=request.amount_usdc,
            amount_fiat=fiat,
            fiat_currency=currency,
            payment_method=request.payment_method,
            payment_details=request.payment_details,
            exchange_rate=rate,
            destination_proof_ref=store_evidence(
                self._evidence_store, request.destination_proof,
                f"{order_id}_qr", cfg.evidence_timeout_seconds,
            ),
            created_utc=now,
            expires_utc=now + cfg.order_expiry,
        )
        with self._locks.hold(order_key(order_id)):
            self._repo.save_order(order)

        logger.info("Order %s created: %s %s USDC = %s %s @ %s",
                    order_id, order.order_type.value, order.amount_usdc,
                    fiat, currency, rate)
        self._record(EventKind.ORDER_CREATED, order.requester_address, {
            "order_id": order_id,
            "amount_usdc": str(order.amount_usdc),
            "amount_fiat": str(fiat),
            "fiat_currency": currency,
        }, now)
        safe_publish(self._publisher, OrderChanged(order_id, "created"))
        return {"order": order_to_dict(order)}

    def _load_order(self, order_id: str, now: datetime) -> Order:
        """Read an order under its lock, expiring it first if it is due."""
        with self._locks.hold(order_key(order_id)):
            order = self._repo.get_order(order_id)
            if order is None:
                raise NotFoundError(f"Order not found: {order_id}")
            if self._lifecycle.expire(order, now):
                self._repo.save_order(order)
                expired = True
            else:
                expired = False
        if expired:
            self._record(EventKind.ORDER_EXPIRED, "system", {"order_id": order_id}, now)
            safe_publish(self._publisher, OrderChanged(order_id, "expired"))
        return order

    def get_order(self, order_id: str, now: Optional[datetime] = None) -> ServiceResult:
        def _get() -> dict[str, Any]:
            order = self._load_order(order_id, now or datetime.now(timezone.utc))
            return {"order": order_to_dict(order)}
        return self._guarded("get_order", _get)

    def list_orders(
        self,
        filters: Optional[Mapping[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """List orders, newest first. Stale CREATED orders expire on read."""
        return self._guarded("list_orders", lambda: self._list_orders(filters or {}, now))

    def _list_orders(self, filters: Mapping[str, Any], now: Optional[datetime]) -> dict[str, Any]:
        query = OrderQuery.from_dict(filters)
        if now is None:
            now = datetime.now(timezone.utc)
        orders = []
        for order in self._repo.list_orders():
            if self._lifecycle.is_expired(order, now):
                order = self._load_order(order.order_id, now)
            if query.status is not None and order.status != query.status:
                continue
            if query.order_type is not None and order.order_type != query.order_type:
                continue
            if query.counterparty_id and order.counterparty_id != query.counterparty_id:
                continue
            if query.user:
                user = query.user.lower()
                if not (order.is_party(user) or order.requester_id.lower() == user):
                    continue
            orders.append(order)
        orders.sort(key=lambda o: o.created_utc or now, reverse=True)
        return {"orders": [order_to_dict(o) for o in orders], "count": len(orders)}

    def update_order(
        self,
        data: Mapping[str, Any],
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Apply an order action: match, add_qr, payment_sent, complete, dispute, cancel."""
        return self._guarded("update_order", lambda: self._update_order(data, now))

    def _update_order(self, data: Mapping[str, Any], now: Optional[datetime]) -> dict[str, Any]:
        request = UpdateOrderRequest.from_dict(data)
        if now is None:
            now = datetime.now(timezone.utc)

        # Expire first so every action sees the current status.
        order = self._load_order(request.order_id, now)
        if order.status == OrderStatus.EXPIRED:
            raise InvalidStateError("Order has expired")

        if request.action == OrderAction.DISPUTE:
            return self._dispute(request, now)

        evidence_ref = None
        if request.action in (OrderAction.ADD_QR, OrderAction.PAYMENT_SENT):
            suffix = "qr" if request.action == OrderAction.ADD_QR else "payment_proof"
            evidence_ref = store_evidence(
                self._evidence_store, request.evidence,
                f"{request.order_id}_{suffix}",
                self._config.evidence_timeout_seconds,
            )

        task: Optional[ValidationTask] = None
        with self._locks.hold(order_key(request.order_id)):
            order = self._repo.get_order(request.order_id)
            if order is None:
                raise NotFoundError(f"Order not found: {request.order_id}")
            action = request.action

            if action == OrderAction.MATCH:
                if order.requester_address == request.counterparty_address.lower():
                    raise ValidationError("Cannot match your own order")
                self._lifecycle.match(
                    order, request.counterparty_id, request.counterparty_address, now,
                )
                kind = "matched"
            elif action == OrderAction.ADD_QR:
                self._require_party(order, request.actor_address, requester_only=True)
                self._lifecycle.attach_destination(order, evidence_ref, now)
                kind = "payment_pending"
            elif action == OrderAction.PAYMENT_SENT:
                if (request.actor_address and order.counterparty_address
                        and request.actor_address.lower() != order.counterparty_address):
                    raise AuthorizationError(
                        "Only the matched counterparty can report payment"
                    )
                self._lifecycle.mark_payment_sent(order, evidence_ref, now)
                task = self._validation.create_task(order, now)
                kind = "verifying"
            elif action == OrderAction.COMPLETE:
                self._require_party(order, request.actor_address, requester_only=True)
                if self._repo.find_task_for_order(order.order_id, TaskStatus.PENDING):
                    raise ValidationError(
                        "Payment is under validator review and completes automatically"
                    )
                self._lifecycle.complete(order, now)
                kind = "completed"
            else:
                if order.status == OrderStatus.CREATED:
                    self._require_party(order, request.actor_address, requester_only=True)
                    self._lifecycle.cancel(order, now)
                    kind = "cancelled"
                elif order.status == OrderStatus.MATCHED:
                    if (request.actor_address
                            and request.actor_address.strip().lower()
                            != order.counterparty_address):
                        raise AuthorizationError(
                            "Only the matched counterparty can release this order"
                        )
                    self._lifecycle.release(order, now)
                    kind = "released"
                else:
                    raise InvalidStateError(
                        f"Cannot cancel order with status: {order.status.value}"
                    )

            with self._repo.atomic():
                self._repo.save_order(order)
                if task is not None:
                    self._repo.save_task(task)

        self._record(EventKind.ORDER_TRANSITION, request.actor_address or "system", {
            "order_id": order.order_id, "action": request.action.value,
            "status": order.status.value,
        }, now)
        if task is not None:
            self._record(EventKind.TASK_CREATED, "system", {
                "task_id": task.task_id, "order_id": order.order_id,
                "threshold": task.threshold,
            }, now)
        safe_publish(self._publisher, OrderChanged(order.order_id, kind))
        result: dict[str, Any] = {"order": order_to_dict(order)}
        if task is not None:
            result["task"] = task_to_dict(task)
        return result

    @staticmethod
    def _require_party(
        order: Order,
        actor: Optional[str],
        requester_only: bool = False,
    ) -> None:
        """Check the acting address when the caller supplied one."""
        if not actor:
            return
        if requester_only:
            if actor.strip().lower() != order.requester_address:
                raise AuthorizationError("Only the requester can perform this action")
        elif not order.is_party(actor):
            raise AuthorizationError("Only a party to the order can perform this action")

    def _dispute(self, request: UpdateOrderRequest, now: datetime) -> dict[str, Any]:
        """Dispute an order, freezing any pending validation task.

        The task lock ranks below the order lock, so the pending task is
        looked up first and confirmed again once both locks are held.
        """
        for _ in range(_DISPUTE_ATTEMPTS):
            pending = self._repo.find_task_for_order(request.order_id, TaskStatus.PENDING)
            keys = [order_key(request.order_id)]
            if pending is not None:
                keys.append(task_key(pending.task_id))
            with self._locks.hold(*keys):
                task = self._repo.find_task_for_order(request.order_id, TaskStatus.PENDING)
                if (task and task.task_id) != (pending and pending.task_id):
                    continue
                order = self._repo.get_order(request.order_id)
                if order is None:
                    raise NotFoundError(f"Order not found: {request.order_id}")
                self._require_party(order, request.actor_address)
                self._lifecycle.dispute(order, request.reason, now)
                if task is not None:
                    self._validation.freeze_for_dispute(task, now)
                with self._repo.atomic():
                    self._repo.save_order(order)
                    if task is not None:
                        self._repo.save_task(task)
            break
        else:
            raise ConcurrentWriteError(
                f"Order {request.order_id} kept changing during dispute; retry"
            )

        logger.info("Order %s disputed by %s: %s", order.order_id,
                    request.actor_address or "unknown", request.reason or "")
        self._record(EventKind.ORDER_TRANSITION, request.actor_address or "system", {
            "order_id": order.order_id, "action": "dispute",
            "status": order.status.value, "reason": request.reason,
        }, now)
        safe_publish(self._publisher, OrderChanged(order.order_id, "disputed"))
        result: dict[str, Any] = {"order": order_to_dict(order)}
        if task is not None:
            result["task"] = task_to_dict(task)
        return result

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    def register_validator(
        self,
        data: Mapping[str, Any],
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        def _register() -> dict[str, Any]:
            request = RegisterValidatorRequest.from_dict(data)
            profile = self._validation.register_validator(request, now)
            return {"validator": _profile_view(profile)}
        return self._guarded("register_validator", _register)

    def get_validator(self, address: str, now: Optional[datetime] = None) -> ServiceResult:
        """Look up a validator, releasing any expired stake locks first."""
        def _get() -> dict[str, Any]:
            profile = self._validation.release_expired_locks(address, now)
            return {"validator": _profile_view(profile)}
        return self._guarded("get_validator", _get)

    def list_validators(self) -> ServiceResult:
        def _list() -> dict[str, Any]:
            active = [p for p in self._repo.list_validators()
                      if p.is_active and not p.is_slashed]
            active.sort(key=lambda p: p.total_reviews, reverse=True)
            return {"validators": [_profile_view(p) for p in active],
                    "count": len(active)}
        return self._guarded("list_validators", _list)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def submit_vote(
        self,
        data: Mapping[str, Any],
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        def _vote() -> dict[str, Any]:
            request = VoteRequest.from_dict(data)
            outcome = self._validation.submit_vote(request, now)
            task = outcome.task
            return {
                "task_id": task.task_id,
                "status": task.status.value,
                "votes": len(task.votes),
                "approve_count": task.approve_count,
                "flag_count": task.flag_count,
                "threshold": task.threshold,
                "majority": task.majority,
                "resolved": outcome.resolved.value if outcome.resolved else None,
                "slashed": outcome.slashed,
                "reward": str(self._config.validator_reward),
                "validator": _profile_view(outcome.validator),
            }
        return self._guarded("submit_vote", _vote)

    def list_validation_tasks(
        self,
        viewer: Optional[str] = None,
        include_resolved: bool = False,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Tasks a validator may review. Runs the timeout sweep first.

        Tasks where the viewer is a party are hidden, inline evidence is
        redacted and voter identities are not disclosed.
        """
        def _list() -> dict[str, Any]:
            self._validation.check_timeouts(now)
            statuses = None if include_resolved else [TaskStatus.PENDING]
            tasks = self._repo.list_tasks(statuses)
            if viewer:
                tasks = [t for t in tasks if not t.involves(viewer)]
            views = []
            for task in tasks:
                view = task_to_dict(task)
                del view["votes"]
                view["evidence"]["destination_proof_ref"] = redact(
                    task.evidence.destination_proof_ref)
                view["evidence"]["payment_proof_ref"] = redact(
                    task.evidence.payment_proof_ref)
                view["votes_count"] = len(task.votes)
                view["approve_count"] = task.approve_count
                view["flag_count"] = task.flag_count
                view["majority"] = task.majority
                vote = task.vote_of(viewer) if viewer else None
                view["my_vote"] = vote.value if vote else None
                views.append(view)
            return {"tasks": views, "count": len(views)}
        return self._guarded("list_validation_tasks", _list)

    def get_task_detail(self, task_id: str, viewer: Optional[str] = None) -> ServiceResult:
        def _get() -> dict[str, Any]:
            task = self._repo.get_task(task_id)
            if task is None:
                raise NotFoundError(f"Task not found: {task_id}")
            view = task_to_dict(task)
            view["majority"] = task.majority
            vote = task.vote_of(viewer) if viewer else None
            view["my_vote"] = vote.value if vote else None
            return {"task": view}
        return self._guarded("get_task_detail", _get)

    def check_timeouts(self, now: Optional[datetime] = None) -> ServiceResult:
        def _sweep() -> dict[str, Any]:
            resolved = self._validation.check_timeouts(now)
            return {"resolved": [t.task_id for t in resolved], "count": len(resolved)}
        return self._guarded("check_timeouts", _sweep)

    # ------------------------------------------------------------------
    # Admin arbitration
    # ------------------------------------------------------------------

    def admin_resolve_dispute(
        self,
        data: Mapping[str, Any],
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        def _resolve() -> dict[str, Any]:
            request = ResolveDisputeRequest.from_dict(data)
            order = self._arbitration.resolve_dispute(request, now)
            return {"order": order_to_dict(order)}
        return self._guarded("admin_resolve_dispute", _resolve)

    def admin_resolve_validation(
        self,
        data: Mapping[str, Any],
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        def _resolve() -> dict[str, Any]:
            request = ResolveValidationRequest.from_dict(data)
            task = self._arbitration.resolve_validation(request, now)
            return {"task": task_to_dict(task), "resolution": request.resolution}
        return self._guarded("admin_resolve_validation", _resolve)

    def admin_overview(self, admin_address: str) -> ServiceResult:
        def _overview() -> dict[str, Any]:
            data = self._arbitration.overview(admin_address)
            if self._event_log is not None:
                data["recent_events"] = [
                    e.to_dict() for e in self._event_log.recent(30)
                ]
            return data
        return self._guarded("admin_overview", _overview)

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    def settlement_sweep(self, now: Optional[datetime] = None) -> ServiceResult:
        def _sweep() -> dict[str, Any]:
            results = self._settlement.sweep(now)
            return {
                "settled": [r.order_id for r in results],
                "count": len(results),
            }
        return self._guarded("settlement_sweep", _sweep)

    def settle_order(self, order_id: str, now: Optional[datetime] = None) -> ServiceResult:
        """Settle one order once its dispute window has closed."""
        def _settle() -> dict[str, Any]:
            result = self._settlement.settle(order_id, now=now)
            return {"order_id": result.order_id,
                    "settled_utc": result.settled_utc.isoformat()}
        return self._guarded("settle_order", _settle)

    def settlement_force(
        self,
        admin_address: str,
        order_id: str,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Admin-only settlement that skips the dispute window."""
        def _force() -> dict[str, Any]:
            if not self._config.is_admin(admin_address):
                raise AuthorizationError("Unauthorized: admin access required")
            result = self._settlement.force_settle(order_id, now=now)
            return {"order_id": result.order_id,
                    "settled_utc": result.settled_utc.isoformat(),
                    "forced": True}
        return self._guarded("settlement_force", _force)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status(self) -> dict[str, Any]:
        """Return system-wide status summary."""
        orders = self._repo.list_orders()
        tasks = self._repo.list_tasks()
        validators = self._repo.list_validators()
        order_counts: dict[str, int] = {}
        for order in orders:
            order_counts[order.status.value] = order_counts.get(order.status.value, 0) + 1
        task_counts: dict[str, int] = {}
        for task in tasks:
            task_counts[task.status.value] = task_counts.get(task.status.value, 0) + 1
        return {
            "version": __version__,
            "orders": {"total": len(orders), "by_status": order_counts},
            "validation_tasks": {"total": len(tasks), "by_status": task_counts},
            "validators": {
                "total": len(validators),
                "active": sum(1 for v in validators if v.is_active and not v.is_slashed),
                "slashed": sum(1 for v in validators if v.is_slashed),
            },
            "events": self._event_log.count if self._event_log is not None else 0,
        }
