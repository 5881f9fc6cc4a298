"""Repository interface and the in-memory implementation.

Engines never hold global maps: they read and write records through a
Repository. Reads return private copies; writes are conditional on the
record's ``version`` and bump it on success, so a writer that loaded a
stale copy gets ConcurrentWriteError instead of silently clobbering a
newer record.

Multi-record mutations run inside ``atomic()``: either every write in
the block lands or none does.
"""

from __future__ import annotations

import abc
import copy
import logging
import threading
from contextlib import contextmanager
from typing import Iterable, Iterator, Optional

from tradeguard.errors import ConcurrentWriteError
from tradeguard.models.order import Order, OrderStatus
from tradeguard.models.validation import (
    TaskStatus,
    ValidationTask,
    ValidatorProfile,
)

logger = logging.getLogger(__name__)


def format_task_id(n: int) -> str:
    return f"VAL-{n:08d}"


class Repository(abc.ABC):
    """Storage for orders, validation tasks and validator profiles."""

    # Orders

    @abc.abstractmethod
    def get_order(self, order_id: str) -> Optional[Order]: ...

    @abc.abstractmethod
    def save_order(self, order: Order) -> None:
        """Conditionally write an order and bump ``order.version``."""

    @abc.abstractmethod
    def list_orders(
        self, statuses: Optional[Iterable[OrderStatus]] = None,
    ) -> list[Order]: ...

    # Validation tasks

    @abc.abstractmethod
    def get_task(self, task_id: str) -> Optional[ValidationTask]: ...

    @abc.abstractmethod
    def save_task(self, task: ValidationTask) -> None: ...

    @abc.abstractmethod
    def list_tasks(
        self, statuses: Optional[Iterable[TaskStatus]] = None,
    ) -> list[ValidationTask]: ...

    @abc.abstractmethod
    def next_task_id(self) -> str:
        """Allocate the next monotonic task id (VAL-00000001, ...)."""

    # Validators

    @abc.abstractmethod
    def get_validator(self, address: str) -> Optional[ValidatorProfile]: ...

    @abc.abstractmethod
    def save_validator(self, profile: ValidatorProfile) -> None: ...

    @abc.abstractmethod
    def list_validators(self) -> list[ValidatorProfile]: ...

    @abc.abstractmethod
    @contextmanager
    def atomic(self) -> Iterator[None]:
        """Run a block of writes as one unit."""

    # Derived queries shared by every backend

    def find_task_for_order(
        self,
        order_id: str,
        status: Optional[TaskStatus] = None,
    ) -> Optional[ValidationTask]:
        """Most recent task for an order, optionally filtered by status."""
        statuses = [status] if status is not None else None
        candidates = [t for t in self.list_tasks(statuses) if t.order_id == order_id]
        if not candidates:
            return None
        return max(candidates, key=lambda t: t.task_id)

    def eligible_validators(self, exclude: Iterable[str] = ()) -> list[ValidatorProfile]:
        """Active, non-slashed validators minus the excluded addresses."""
        excluded = {a.strip().lower() for a in exclude if a}
        return [
            p for p in self.list_validators()
            if p.is_active and not p.is_slashed and p.address not in excluded
        ]


def _check_version(kind: str, ident: str, stored_version: int, incoming: int) -> None:
    if incoming != stored_version:
        raise ConcurrentWriteError(
            f"Stale {kind} write for {ident}: "
            f"have version {incoming}, store has {stored_version}"
        )


class InMemoryRepository(Repository):
    """Dict-backed repository. Thread-safe; used by tests and the CLI demo."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._orders: dict[str, Order] = {}
        self._tasks: dict[str, ValidationTask] = {}
        self._validators: dict[str, ValidatorProfile] = {}
        self._task_counter = 0
        self._depth = 0

    def get_order(self, order_id: str) -> Optional[Order]:
        with self._lock:
            order = self._orders.get(order_id)
            return copy.deepcopy(order) if order else None

    def save_order(self, order: Order) -> None:
        with self._lock:
            stored = self._orders.get(order.order_id)
            _check_version("order", order.order_id,
                           stored.version if stored else 0, order.version)
            order.version += 1
            self._orders[order.order_id] = copy.deepcopy(order)

    def list_orders(
        self, statuses: Optional[Iterable[OrderStatus]] = None,
    ) -> list[Order]:
        wanted = set(statuses) if statuses is not None else None
        with self._lock:
            return [
                copy.deepcopy(o) for o in self._orders.values()
                if wanted is None or o.status in wanted
            ]

    def get_task(self, task_id: str) -> Optional[ValidationTask]:
        with self._lock:
            task = self._tasks.get(task_id)
            return copy.deepcopy(task) if task else None

    def save_task(self, task: ValidationTask) -> None:
        with self._lock:
            stored = self._tasks.get(task.task_id)
            _check_version("task", task.task_id,
                           stored.version if stored else 0, task.version)
            task.version += 1
            self._tasks[task.task_id] = copy.deepcopy(task)

    def list_tasks(
        self, statuses: Optional[Iterable[TaskStatus]] = None,
    ) -> list[ValidationTask]:
        wanted = set(statuses) if statuses is not None else None
        with self._lock:
            return [
                copy.deepcopy(t) for t in self._tasks.values()
                if wanted is None or t.status in wanted
            ]

    def next_task_id(self) -> str:
        with self._lock:
            self._task_counter += 1
            return format_task_id(self._task_counter)

    def get_validator(self, address: str) -> Optional[ValidatorProfile]:
        with self._lock:
            profile = self._validators.get(address.strip().lower())
            return copy.deepcopy(profile) if profile else None

    def save_validator(self, profile: ValidatorProfile) -> None:
        with self._lock:
            stored = self._validators.get(profile.address)
            _check_version("validator", profile.address,
                           stored.version if stored else 0, profile.version)
            profile.version += 1
            self._validators[profile.address] = copy.deepcopy(profile)

    def list_validators(self) -> list[ValidatorProfile]:
        with self._lock:
            return [copy.deepcopy(p) for p in self._validators.values()]

    @contextmanager
    def atomic(self) -> Iterator[None]:
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield
                finally:
                    self._depth -= 1
                return

            snapshot = copy.deepcopy(
                (self._orders, self._tasks, self._validators)
            )
            self._depth = 1
            try:
                yield
            except BaseException:
                self._orders, self._tasks, self._validators = snapshot
                logger.debug("Rolled back in-memory transaction")
                raise
            finally:
                self._depth = 0
