"""Tests for the audit event log — proves tampering and replays are rejected."""

import json
import pytest
from datetime import datetime, timezone

from tradeguard.persistence.event_log import EventKind, EventLog, EventRecord


def _now() -> datetime:
    return datetime(2026, 2, 18, 12, 0, 0, tzinfo=timezone.utc)


class TestEventLog:
    def test_record_assigns_sequential_ids(self) -> None:
        log = EventLog()
        first = log.record(EventKind.ORDER_CREATED, "0xaaaa", {"order_id": "o1"}, now=_now())
        second = log.record(EventKind.VOTE_CAST, "0xcccc", {"task_id": "t1"}, now=_now())
        assert first.event_id == "EVT-00000001"
        assert second.event_id == "EVT-00000002"
        assert first.timestamp_utc == "2026-02-18T12:00:00Z"
        assert first.event_hash.startswith("sha256:")
        assert log.count == 2

    def test_duplicate_id_rejected(self) -> None:
        log = EventLog()
        event = EventRecord.create("EVT-00000001", EventKind.ORDER_CREATED, "a", {})
        log.append(event)
        with pytest.raises(ValueError, match="Duplicate event ID"):
            log.append(event)

    def test_filter_and_recent(self) -> None:
        log = EventLog()
        for i in range(5):
            log.record(EventKind.ORDER_TRANSITION, "system", {"n": i}, now=_now())
        log.record(EventKind.ORDER_SETTLED, "system", {"n": 5}, now=_now())
        assert len(log.events(EventKind.ORDER_SETTLED)) == 1
        recent = log.recent(2)
        assert [e.payload["n"] for e in recent] == [5, 4]
        assert log.recent(0) == []


class TestPersistence:
    def test_reload_continues_ids(self, tmp_path) -> None:
        path = tmp_path / "audit.jsonl"
        log = EventLog(storage_path=path)
        log.record(EventKind.ORDER_CREATED, "a", {"order_id": "o1"}, now=_now())
        log.record(EventKind.ORDER_SETTLED, "system", {"order_id": "o1"}, now=_now())

        reloaded = EventLog(storage_path=path)
        assert reloaded.count == 2
        assert reloaded.events()[1].event_kind == EventKind.ORDER_SETTLED
        event = reloaded.record(EventKind.VOTE_CAST, "b", {}, now=_now())
        assert event.event_id == "EVT-00000003"

    def test_tampered_record_rejected(self, tmp_path) -> None:
        path = tmp_path / "audit.jsonl"
        log = EventLog(storage_path=path)
        log.record(EventKind.ORDER_SETTLED, "system", {"amount_usdc": "50"}, now=_now())

        data = json.loads(path.read_text(encoding="utf-8"))
        data["payload"]["amount_usdc"] = "5000"
        path.write_text(json.dumps(data) + "\n", encoding="utf-8")
        with pytest.raises(ValueError, match="Integrity check failed"):
            EventLog(storage_path=path)

    def test_replayed_record_rejected(self, tmp_path) -> None:
        path = tmp_path / "audit.jsonl"
        log = EventLog(storage_path=path)
        log.record(EventKind.ORDER_CREATED, "a", {}, now=_now())
        line = path.read_text(encoding="utf-8")
        path.write_text(line + line, encoding="utf-8")
        with pytest.raises(ValueError, match="Duplicate event ID on recovery"):
            EventLog(storage_path=path)
