"""Settlement engine — finalises completed orders once disputes are no longer possible.

A COMPLETED order can still be disputed until its dispute window ends.
After that the sweep moves it to SETTLED, the terminal state that tells
downstream custody the stablecoin leg may be released. Orders left in
the legacy PAYMENT_SENT state settle the same way when they carry a
window end; without one only a forced settlement applies.

Every settlement re-checks the order's status and window under the
order lock, so sweeps are safe to run concurrently and repeatedly.
Notifications go out after the lock is released.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from tradeguard.collaborators.publisher import EventPublisher, safe_publish
from tradeguard.engine.order_state_machine import OrderLifecycle
from tradeguard.errors import NotFoundError, ValidationError
from tradeguard.models.order import Order, OrderChanged, OrderStatus
from tradeguard.persistence.event_log import EventKind, EventLog
from tradeguard.persistence.locks import KeyedLocks, order_key
from tradeguard.persistence.repository import Repository

logger = logging.getLogger(__name__)

SETTLEABLE = (OrderStatus.COMPLETED, OrderStatus.PAYMENT_SENT)


@dataclass(frozen=True)
class SettlementResult:
    order_id: str
    settled_utc: datetime
    amount_usdc: str
    forced: bool = False


class SettlementEngine:
    """Moves orders whose dispute window has closed into SETTLED."""

    def __init__(
        self,
        repository: Repository,
        locks: KeyedLocks,
        lifecycle: OrderLifecycle,
        publisher: Optional[EventPublisher] = None,
        event_log: Optional[EventLog] = None,
    ) -> None:
        self._repo = repository
        self._locks = locks
        self._lifecycle = lifecycle
        self._publisher = publisher
        self._event_log = event_log

    @staticmethod
    def window_closed(order: Order, now: datetime) -> bool:
        """True once the order's dispute window has ended.

        An order without a window end (a legacy PAYMENT_SENT order that
        never completed) has no closed window and settles only by force.
        """
        ends = order.dispute_period_ends_utc
        return ends is not None and ends <= now

    def sweep(self, now: Optional[datetime] = None) -> list[SettlementResult]:
        """Settle every order whose dispute window has elapsed."""
        if now is None:
            now = datetime.now(timezone.utc)
        results: list[SettlementResult] = []
        for candidate in self._repo.list_orders(SETTLEABLE):
            if not self.window_closed(candidate, now):
                continue
            with self._locks.hold(order_key(candidate.order_id)):
                order = self._repo.get_order(candidate.order_id)
                if order is None or order.status not in SETTLEABLE:
                    continue
                if not self.window_closed(order, now):
                    continue
                result = self._settle_locked(order, now, forced=False)
            safe_publish(self._publisher, OrderChanged(result.order_id, "settled"))
            results.append(result)
        if results:
            logger.info("Settlement sweep settled %d order(s)", len(results))
        return results

    def settle(
        self,
        order_id: str,
        skip_dispute_window: bool = False,
        now: Optional[datetime] = None,
    ) -> SettlementResult:
        """Settle a single order.

        Rejects orders that are not COMPLETED/PAYMENT_SENT and, unless
        ``skip_dispute_window`` is set, orders still inside their window.
        """
        if now is None:
            now = datetime.now(timezone.utc)
        with self._locks.hold(order_key(order_id)):
            order = self._repo.get_order(order_id)
            if order is None:
                raise NotFoundError(f"Order not found: {order_id}")
            if order.status not in SETTLEABLE:
                raise ValidationError(
                    f"Cannot settle order with status: {order.status.value}"
                )
            if not skip_dispute_window and not self.window_closed(order, now):
                ends = order.dispute_period_ends_utc
                if ends is None:
                    raise ValidationError(
                        "Order has no dispute period; only an admin can settle it"
                    )
                hours = math.ceil((ends - now).total_seconds() / 3600)
                raise ValidationError(
                    f"Dispute period not ended. {hours}h remaining."
                )
            result = self._settle_locked(order, now, forced=skip_dispute_window)
        safe_publish(self._publisher, OrderChanged(result.order_id, "settled"))
        return result

    def force_settle(
        self,
        order_id: str,
        now: Optional[datetime] = None,
    ) -> SettlementResult:
        return self.settle(order_id, skip_dispute_window=True, now=now)

    def _settle_locked(self, order: Order, now: datetime, forced: bool) -> SettlementResult:
        self._lifecycle.settle(order, now)
        self._repo.save_order(order)
        if forced:
            logger.warning("Order %s force-settled inside its dispute window",
                           order.order_id)
        else:
            logger.info("Order %s settled (%s USDC)", order.order_id, order.amount_usdc)
        if self._event_log is not None:
            self._event_log.record(EventKind.ORDER_SETTLED, "system", {
                "order_id": order.order_id,
                "amount_usdc": str(order.amount_usdc),
                "forced": forced,
            }, now=now)
        return SettlementResult(
            order_id=order.order_id,
            settled_utc=now,
            amount_usdc=str(order.amount_usdc),
            forced=forced,
        )
