"""Per-record locks acquired in a fixed global order.

Every read-modify-write in the engines runs under ``KeyedLocks.hold``.
Keys are ranked task < order < validator and then ordered by id, so two
threads that need overlapping records always acquire them in the same
sequence and cannot deadlock.

A thread that already holds locks may nest a further ``hold`` only for
keys of a higher rank than anything it holds (re-entering a key it
already owns is always allowed).

A key's lock lives only while some thread holds or waits for it, so
the registry stays as small as the set of records in use.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator

from tradeguard.errors import InvariantViolation


_RANKS = {"task": 0, "order": 1, "validator": 2}

LockKey = tuple[str, str]


def task_key(task_id: str) -> LockKey:
    return ("task", task_id)


def order_key(order_id: str) -> LockKey:
    return ("order", order_id)


def validator_key(address: str) -> LockKey:
    return ("validator", address.strip().lower())


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.RLock()
        self.users = 0


class KeyedLocks:
    """A registry of re-entrant locks keyed by (kind, id)."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[LockKey, _Entry] = {}
        self._local = threading.local()

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def _checkout(self, key: LockKey) -> threading.RLock:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = _Entry()
                self._locks[key] = entry
            entry.users += 1
            return entry.lock

    def _checkin(self, key: LockKey) -> None:
        with self._guard:
            entry = self._locks[key]
            entry.users -= 1
            if entry.users == 0:
                del self._locks[key]

    def _held(self) -> list[LockKey]:
        held = getattr(self._local, "held", None)
        if held is None:
            held = []
            self._local.held = held
        return held

    @staticmethod
    def _sort_key(key: LockKey) -> tuple[int, str]:
        kind, ident = key
        if kind not in _RANKS:
            raise InvariantViolation(f"Unknown lock kind: {kind}")
        return (_RANKS[kind], ident)

    @contextmanager
    def hold(self, *keys: LockKey) -> Iterator[None]:
        """Acquire every key in global order for the duration of the block."""
        held = self._held()
        wanted = sorted(set(keys), key=self._sort_key)
        fresh = [k for k in wanted if k not in held]
        if held and fresh:
            ceiling = max(self._sort_key(k) for k in held)
            if self._sort_key(fresh[0]) < ceiling:
                raise InvariantViolation(
                    f"Lock order violation: {fresh[0]} requested while "
                    f"holding {sorted(held, key=self._sort_key)}"
                )

        acquired: list[tuple[LockKey, threading.RLock]] = []
        try:
            for key in wanted:
                lock = self._checkout(key)
                lock.acquire()
                acquired.append((key, lock))
            held.extend(wanted)
            try:
                yield
            finally:
                for key in wanted:
                    held.remove(key)
        finally:
            for key, lock in reversed(acquired):
                lock.release()
                self._checkin(key)
