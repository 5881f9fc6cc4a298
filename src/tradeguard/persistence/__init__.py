"""Storage layer — repositories, per-record locks and the audit log."""

from tradeguard.persistence.event_log import EventKind, EventLog, EventRecord
from tradeguard.persistence.locks import KeyedLocks
from tradeguard.persistence.repository import InMemoryRepository, Repository
from tradeguard.persistence.sqlite_store import SqliteRepository

__all__ = [
    "EventKind",
    "EventLog",
    "EventRecord",
    "KeyedLocks",
    "InMemoryRepository",
    "Repository",
    "SqliteRepository",
]
