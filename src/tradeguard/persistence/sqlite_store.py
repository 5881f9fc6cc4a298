"""SQLite-backed repository.

Each record is stored as a JSON document alongside the columns the
engines filter on (status, order id) and its version. Writes are
conditional UPDATEs on the stored version; a lost race surfaces as
ConcurrentWriteError. The task-id counter lives in the same database so
ids stay monotonic across restarts.

One connection is shared across threads and serialised with an RLock;
``atomic()`` wraps a block of writes in a single transaction.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, Optional, Union

from tradeguard.errors import ConcurrentWriteError
from tradeguard.models.order import Order, OrderStatus
from tradeguard.models.validation import (
    TaskStatus,
    ValidationTask,
    ValidatorProfile,
)
from tradeguard.persistence.codec import (
    order_from_dict,
    order_to_dict,
    profile_from_dict,
    profile_to_dict,
    task_from_dict,
    task_to_dict,
)
from tradeguard.persistence.repository import Repository, format_task_id

logger = logging.getLogger(__name__)


_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS orders (
        order_id TEXT PRIMARY KEY,
        status TEXT NOT NULL,
        version INTEGER NOT NULL,
        body TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS validation_tasks (
        task_id TEXT PRIMARY KEY,
        order_id TEXT NOT NULL,
        status TEXT NOT NULL,
        version INTEGER NOT NULL,
        body TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_tasks_order ON validation_tasks(order_id)",
    """
    CREATE TABLE IF NOT EXISTS validators (
        address TEXT PRIMARY KEY,
        version INTEGER NOT NULL,
        body TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS counters (
        name TEXT PRIMARY KEY,
        value INTEGER NOT NULL
    )
    """,
)


class SqliteRepository(Repository):
    """Durable repository on a single SQLite database file."""

    def __init__(self, path: Union[str, Path] = ":memory:") -> None:
        self._path = str(path)
        self._lock = threading.RLock()
        self._depth = 0
        self._conn = sqlite3.connect(self._path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        with self._lock:
            for statement in _SCHEMA:
                self._conn.execute(statement)
            self._conn.commit()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _commit(self) -> None:
        if self._depth == 0:
            self._conn.commit()

    def _write(
        self,
        table: str,
        key_column: str,
        key: str,
        record: Any,
        body: dict[str, Any],
        columns: dict[str, Any],
    ) -> None:
        """Conditional upsert: insert at version 0, else update on match."""
        expected = record.version
        body["version"] = expected + 1
        encoded = json.dumps(body, sort_keys=True)
        with self._lock:
            try:
                if expected == 0:
                    names = [key_column, *columns, "version", "body"]
                    placeholders = ", ".join("?" for _ in names)
                    try:
                        self._conn.execute(
                            f"INSERT INTO {table} ({', '.join(names)}) "
                            f"VALUES ({placeholders})",
                            (key, *columns.values(), 1, encoded),
                        )
                    except sqlite3.IntegrityError as exc:
                        raise ConcurrentWriteError(
                            f"Stale write for {key}: record already exists"
                        ) from exc
                else:
                    assignments = ", ".join(f"{c} = ?" for c in columns)
                    prefix = f"{assignments}, " if assignments else ""
                    cursor = self._conn.execute(
                        f"UPDATE {table} SET {prefix}version = ?, body = ? "
                        f"WHERE {key_column} = ? AND version = ?",
                        (*columns.values(), expected + 1, encoded, key, expected),
                    )
                    if cursor.rowcount != 1:
                        raise ConcurrentWriteError(
                            f"Stale write for {key}: version {expected} "
                            f"no longer current"
                        )
                self._commit()
            except ConcurrentWriteError:
                if self._depth == 0:
                    self._conn.rollback()
                raise
        record.version = expected + 1

    def _read_one(self, sql: str, params: tuple, decode: Callable) -> Any:
        with self._lock:
            row = self._conn.execute(sql, params).fetchone()
        return decode(json.loads(row["body"])) if row else None

    def _read_many(self, sql: str, params: tuple, decode: Callable) -> list:
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [decode(json.loads(row["body"])) for row in rows]

    @staticmethod
    def _status_filter(statuses: Optional[Iterable[Any]]) -> tuple[str, tuple]:
        if statuses is None:
            return "", ()
        values = tuple(s.value for s in statuses)
        if not values:
            return " WHERE 1 = 0", ()
        return f" WHERE status IN ({', '.join('?' for _ in values)})", values

    # Orders

    def get_order(self, order_id: str) -> Optional[Order]:
        return self._read_one(
            "SELECT body FROM orders WHERE order_id = ?", (order_id,),
            order_from_dict,
        )

    def save_order(self, order: Order) -> None:
        self._write(
            "orders", "order_id", order.order_id, order,
            order_to_dict(order), {"status": order.status.value},
        )

    def list_orders(
        self, statuses: Optional[Iterable[OrderStatus]] = None,
    ) -> list[Order]:
        where, params = self._status_filter(statuses)
        return self._read_many(
            f"SELECT body FROM orders{where} ORDER BY rowid", params,
            order_from_dict,
        )

    # Validation tasks

    def get_task(self, task_id: str) -> Optional[ValidationTask]:
        return self._read_one(
            "SELECT body FROM validation_tasks WHERE task_id = ?", (task_id,),
            task_from_dict,
        )

    def save_task(self, task: ValidationTask) -> None:
        self._write(
            "validation_tasks", "task_id", task.task_id, task,
            task_to_dict(task),
            {"order_id": task.order_id, "status": task.status.value},
        )

    def list_tasks(
        self, statuses: Optional[Iterable[TaskStatus]] = None,
    ) -> list[ValidationTask]:
        where, params = self._status_filter(statuses)
        return self._read_many(
            f"SELECT body FROM validation_tasks{where} ORDER BY task_id", params,
            task_from_dict,
        )

    def find_task_for_order(
        self,
        order_id: str,
        status: Optional[TaskStatus] = None,
    ) -> Optional[ValidationTask]:
        sql = "SELECT body FROM validation_tasks WHERE order_id = ?"
        params: tuple = (order_id,)
        if status is not None:
            sql += " AND status = ?"
            params += (status.value,)
        return self._read_one(sql + " ORDER BY task_id DESC LIMIT 1", params,
                              task_from_dict)

    def next_task_id(self) -> str:
        with self._lock:
            self._conn.execute(
                "INSERT INTO counters (name, value) VALUES ('task', 1) "
                "ON CONFLICT(name) DO UPDATE SET value = value + 1"
            )
            value = self._conn.execute(
                "SELECT value FROM counters WHERE name = 'task'"
            ).fetchone()["value"]
            self._commit()
        return format_task_id(value)

    # Validators

    def get_validator(self, address: str) -> Optional[ValidatorProfile]:
        return self._read_one(
            "SELECT body FROM validators WHERE address = ?",
            (address.strip().lower(),), profile_from_dict,
        )

    def save_validator(self, profile: ValidatorProfile) -> None:
        self._write(
            "validators", "address", profile.address, profile,
            profile_to_dict(profile), {},
        )

    def list_validators(self) -> list[ValidatorProfile]:
        return self._read_many(
            "SELECT body FROM validators ORDER BY rowid", (), profile_from_dict,
        )

    @contextmanager
    def atomic(self) -> Iterator[None]:
        with self._lock:
            self._depth += 1
            try:
                yield
            except BaseException:
                if self._depth == 1:
                    self._conn.rollback()
                    logger.debug("Rolled back SQLite transaction on %s", self._path)
                raise
            else:
                if self._depth == 1:
                    self._conn.commit()
            finally:
                self._depth -= 1
