"""Concurrency tests — proves keyed locking serialises conflicting writers."""

import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from tradeguard.errors import InvariantViolation
from tradeguard.models.order import OrderStatus
from tradeguard.models.validation import TaskStatus
from tradeguard.persistence.locks import KeyedLocks, order_key, task_key, validator_key
from tradeguard.persistence.sqlite_store import SqliteRepository
from tradeguard.policy import EngineConfig
from tradeguard.service import TradeGuardService


CONFIG_DIR = Path(__file__).resolve().parents[1] / "config"

REQUESTER = "0xaaaa000000000000000000000000000000000001"
LP = "0xbbbb000000000000000000000000000000000002"
VALIDATORS = [f"0x{i:04x}" + "0" * 36 for i in range(0xc000, 0xc005)]


def _now() -> datetime:
    return datetime(2026, 2, 18, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture(params=["memory", "sqlite"])
def service(request, tmp_path):
    config = EngineConfig.from_config_dir(CONFIG_DIR, env={})
    if request.param == "memory":
        yield TradeGuardService(config)
    else:
        repo = SqliteRepository(tmp_path / "tradeguard.db")
        yield TradeGuardService(config, repository=repo)
        repo.close()


def _run_together(fns):
    """Start every callable at once and collect their results in order."""
    barrier = threading.Barrier(len(fns))
    results = [None] * len(fns)

    def worker(i, fn):
        barrier.wait()
        results[i] = fn()

    threads = [threading.Thread(target=worker, args=(i, fn)) for i, fn in enumerate(fns)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)
    return results


def _open_task(service, validators):
    for address in validators:
        assert service.register_validator(
            {"address": address, "stake_amount": "500"}, now=_now()).success
    order_id = service.create_order({
        "requester_id": "alice", "requester_address": REQUESTER,
        "amount_usdc": "50", "fiat_currency": "INR", "payment_method": "UPI",
    }, now=_now()).data["order"]["order_id"]
    service.update_order({
        "order_id": order_id, "action": "match",
        "counterparty_id": "lp1", "counterparty_address": LP,
    }, now=_now())
    sent = service.update_order(
        {"order_id": order_id, "action": "payment_sent"}, now=_now())
    return order_id, sent.data["task"]["task_id"]


class TestConcurrentVotes:
    def test_simultaneous_votes_resolve_once(self, service) -> None:
        order_id, task_id = _open_task(service, VALIDATORS)
        results = _run_together([
            lambda v=v: service.submit_vote(
                {"task_id": task_id, "validator": v, "decision": "approve"}, now=_now())
            for v in VALIDATORS
        ])
        accepted = [r for r in results if r.success]
        assert len(accepted) == 3
        assert sum(1 for r in accepted if r.data["resolved"] == "approved") == 1
        assert all(r.status_code == 400 for r in results if not r.success)

        task = service.repository.get_task(task_id)
        assert task.status == TaskStatus.APPROVED
        assert len(task.votes) == 3
        assert service.repository.get_order(order_id).status == OrderStatus.COMPLETED
        for vote in task.votes:
            profile = service.repository.get_validator(vote.validator)
            assert profile.locked_orders == []
            assert profile.total_reviews == 1

    def test_vote_racing_dispute_stays_consistent(self, service) -> None:
        validators = VALIDATORS[:3]
        order_id, task_id = _open_task(service, validators)
        assert service.submit_vote(
            {"task_id": task_id, "validator": validators[0], "decision": "approve"},
            now=_now()).success

        results = _run_together([
            lambda: service.submit_vote(
                {"task_id": task_id, "validator": validators[1], "decision": "approve"},
                now=_now()),
            lambda: service.update_order(
                {"order_id": order_id, "action": "dispute", "actor_address": REQUESTER},
                now=_now()),
        ])
        assert results[1].success, results[1].errors
        assert results[0].success or results[0].status_code == 400
        assert service.repository.get_order(order_id).status == OrderStatus.DISPUTED
        task = service.repository.get_task(task_id)
        assert task.status in (TaskStatus.APPROVED, TaskStatus.ESCALATED)


class TestConcurrentWriters:
    def test_parallel_sweeps_settle_once(self, service) -> None:
        order_id, task_id = _open_task(service, VALIDATORS[:1])
        service.submit_vote(
            {"task_id": task_id, "validator": VALIDATORS[0], "decision": "approve"},
            now=_now())
        later = _now() + timedelta(hours=24)
        results = _run_together([lambda: service.settlement_sweep(now=later)] * 4)
        assert sum(r.data["count"] for r in results) == 1
        assert service.repository.get_order(order_id).status == OrderStatus.SETTLED

    def test_parallel_registration_admits_one(self, service) -> None:
        address = VALIDATORS[0]
        results = _run_together([
            lambda: service.register_validator(
                {"address": address, "stake_amount": "500"}, now=_now())
        ] * 4)
        assert sum(1 for r in results if r.success) == 1
        assert len(service.repository.list_validators()) == 1

    def test_parallel_timeout_sweeps(self, service) -> None:
        _, task_id = _open_task(service, VALIDATORS[:3])
        later = _now() + timedelta(hours=1)
        results = _run_together([lambda: service.check_timeouts(now=later)] * 4)
        assert sum(r.data["count"] for r in results) == 1
        assert service.repository.get_task(task_id).status == TaskStatus.AUTO_APPROVED


class TestKeyedLocks:
    def test_nested_lower_rank_rejected(self) -> None:
        locks = KeyedLocks()
        with locks.hold(order_key("o1")):
            with pytest.raises(InvariantViolation, match="Lock order violation"):
                with locks.hold(task_key("t1")):
                    pass

    def test_nested_higher_rank_and_reentry_allowed(self) -> None:
        locks = KeyedLocks()
        with locks.hold(task_key("t1")):
            with locks.hold(task_key("t1"), order_key("o1"), validator_key("0xA")):
                with locks.hold(validator_key("0xa")):
                    pass
            with locks.hold(order_key("o2")):
                pass

    def test_locks_released_after_failure(self) -> None:
        locks = KeyedLocks()
        with pytest.raises(RuntimeError):
            with locks.hold(order_key("o1")):
                raise RuntimeError("boom")
        acquired = []

        def other():
            with locks.hold(order_key("o1")):
                acquired.append(True)

        t = threading.Thread(target=other)
        t.start()
        t.join(timeout=5)
        assert acquired == [True]

    def test_unknown_kind_rejected(self) -> None:
        with pytest.raises(InvariantViolation):
            with KeyedLocks().hold(("wallet", "x")):
                pass

    def test_unused_locks_are_pruned(self) -> None:
        locks = KeyedLocks()
        with locks.hold(task_key("t1"), order_key("o1")):
            with locks.hold(task_key("t1"), validator_key("0xa")):
                assert len(locks) == 3
            assert len(locks) == 2
        assert len(locks) == 0

    def test_pruned_after_failure(self) -> None:
        locks = KeyedLocks()
        with pytest.raises(RuntimeError):
            with locks.hold(order_key("o1")):
                raise RuntimeError("boom")
        assert len(locks) == 0

    def test_service_leaves_no_locks_behind(self) -> None:
        locks = KeyedLocks()
        config = EngineConfig.from_config_dir(CONFIG_DIR, env={})
        service = TradeGuardService(config, locks=locks)
        order_id, task_id = _open_task(service, VALIDATORS[:3])
        _run_together([
            lambda v=v: service.submit_vote(
                {"task_id": task_id, "validator": v, "decision": "approve"}, now=_now())
            for v in VALIDATORS[:3]
        ])
        service.settlement_sweep(now=_now() + timedelta(hours=24))
        assert service.repository.get_order(order_id).status == OrderStatus.SETTLED
        assert len(locks) == 0
