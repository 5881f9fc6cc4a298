"""Tests for repositories — proves both backends share read/write semantics."""

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from tradeguard.errors import ConcurrentWriteError
from tradeguard.models.order import Order, OrderStatus, OrderType
from tradeguard.models.validation import (
    EvidenceSnapshot,
    StakeLock,
    TaskStatus,
    ValidationTask,
    ValidationVote,
    ValidatorProfile,
    VoteDecision,
)
from tradeguard.persistence.repository import InMemoryRepository
from tradeguard.persistence.sqlite_store import SqliteRepository


def _now() -> datetime:
    return datetime(2026, 2, 18, 12, 0, 0, tzinfo=timezone.utc)


def _order(order_id: str = "order_000000000001") -> Order:
    return Order(
        order_id=order_id,
        order_type=OrderType.SELL,
        requester_id="alice",
        requester_address="0xaaaa",
        amount_usdc=Decimal("50"),
        amount_fiat=Decimal("4175.00"),
        fiat_currency="INR",
        payment_method="UPI",
        exchange_rate=Decimal("83.50"),
        created_utc=_now(),
        expires_utc=_now() + timedelta(minutes=15),
    )


def _task(task_id: str, order_id: str = "order_000000000001") -> ValidationTask:
    return ValidationTask(
        task_id=task_id,
        order_id=order_id,
        evidence=EvidenceSnapshot(
            requester_address="0xaaaa",
            counterparty_address="0xbbbb",
            amount_usdc=Decimal("50"),
            amount_fiat=Decimal("4175.00"),
            fiat_currency="INR",
            payment_method="UPI",
            payment_proof_ref="ipfs://bafyproof",
        ),
        threshold=3,
        created_utc=_now(),
        deadline_utc=_now() + timedelta(hours=1),
    )


@pytest.fixture(params=["memory", "sqlite"])
def repo(request, tmp_path):
    if request.param == "memory":
        yield InMemoryRepository()
    else:
        store = SqliteRepository(tmp_path / "tradeguard.db")
        yield store
        store.close()


class TestOrders:
    def test_save_and_get(self, repo) -> None:
        order = _order()
        repo.save_order(order)
        assert order.version == 1
        loaded = repo.get_order(order.order_id)
        assert loaded == order
        assert loaded.exchange_rate == Decimal("83.50")
        assert loaded.created_utc == _now()

    def test_reads_are_copies(self, repo) -> None:
        repo.save_order(_order())
        loaded = repo.get_order("order_000000000001")
        loaded.status = OrderStatus.CANCELLED
        assert repo.get_order("order_000000000001").status == OrderStatus.CREATED

    def test_missing_order_is_none(self, repo) -> None:
        assert repo.get_order("order_missing") is None

    def test_stale_write_rejected(self, repo) -> None:
        repo.save_order(_order())
        first = repo.get_order("order_000000000001")
        second = repo.get_order("order_000000000001")
        first.status = OrderStatus.MATCHED
        repo.save_order(first)
        second.status = OrderStatus.CANCELLED
        with pytest.raises(ConcurrentWriteError):
            repo.save_order(second)
        assert repo.get_order("order_000000000001").status == OrderStatus.MATCHED

    def test_duplicate_insert_rejected(self, repo) -> None:
        repo.save_order(_order())
        with pytest.raises(ConcurrentWriteError):
            repo.save_order(_order())

    def test_list_filters_by_status(self, repo) -> None:
        repo.save_order(_order("order_a"))
        other = _order("order_b")
        other.status = OrderStatus.COMPLETED
        repo.save_order(other)
        assert [o.order_id for o in repo.list_orders([OrderStatus.COMPLETED])] == ["order_b"]
        assert len(repo.list_orders()) == 2
        assert repo.list_orders([]) == []


class TestTasks:
    def test_task_ids_are_monotonic(self, repo) -> None:
        assert repo.next_task_id() == "VAL-00000001"
        assert repo.next_task_id() == "VAL-00000002"

    def test_votes_round_trip(self, repo) -> None:
        task = _task("VAL-00000001")
        task.votes.append(ValidationVote("0xcccc", VoteDecision.FLAG, _now(), "blurry"))
        repo.save_task(task)
        loaded = repo.get_task("VAL-00000001")
        assert loaded.votes == task.votes
        assert loaded.evidence == task.evidence
        assert loaded.flag_count == 1

    def test_find_task_for_order_prefers_latest(self, repo) -> None:
        repo.save_task(_task("VAL-00000001"))
        second = _task("VAL-00000002")
        second.status = TaskStatus.ESCALATED
        repo.save_task(second)
        assert repo.find_task_for_order("order_000000000001").task_id == "VAL-00000002"
        pending = repo.find_task_for_order("order_000000000001", TaskStatus.PENDING)
        assert pending.task_id == "VAL-00000001"
        assert repo.find_task_for_order("order_other") is None

    def test_list_pending(self, repo) -> None:
        repo.save_task(_task("VAL-00000001"))
        resolved = _task("VAL-00000002", order_id="order_2")
        resolved.status = TaskStatus.APPROVED
        repo.save_task(resolved)
        pending = repo.list_tasks([TaskStatus.PENDING])
        assert [t.task_id for t in pending] == ["VAL-00000001"]


class TestValidators:
    def test_lookup_is_case_insensitive(self, repo) -> None:
        repo.save_validator(ValidatorProfile(address="0xcccc", staked=Decimal("500")))
        assert repo.get_validator("0xCCCC").staked == Decimal("500")

    def test_locks_round_trip(self, repo) -> None:
        profile = ValidatorProfile(address="0xcccc", staked=Decimal("500"))
        profile.locked_orders.append(
            StakeLock("order_a", Decimal("50"), _now() + timedelta(hours=24)))
        profile.recompute_locked()
        repo.save_validator(profile)
        loaded = repo.get_validator("0xcccc")
        assert loaded.locked_orders == profile.locked_orders
        assert loaded.available_stake == Decimal("450")

    def test_eligible_excludes_parties_and_slashed(self, repo) -> None:
        repo.save_validator(ValidatorProfile(address="0xaaaa", staked=Decimal("100")))
        repo.save_validator(ValidatorProfile(address="0xcccc", staked=Decimal("100")))
        slashed = ValidatorProfile(address="0xdddd", staked=Decimal("100"))
        slashed.slash()
        repo.save_validator(slashed)
        eligible = repo.eligible_validators(exclude=("0xAAAA", None))
        assert [p.address for p in eligible] == ["0xcccc"]


class TestAtomic:
    def test_rollback_discards_every_write(self, repo) -> None:
        repo.save_order(_order())
        order = repo.get_order("order_000000000001")
        with pytest.raises(RuntimeError):
            with repo.atomic():
                order.status = OrderStatus.MATCHED
                repo.save_order(order)
                repo.save_task(_task("VAL-00000001"))
                raise RuntimeError("boom")
        assert repo.get_order("order_000000000001").status == OrderStatus.CREATED
        assert repo.get_task("VAL-00000001") is None

    def test_nested_blocks_commit_together(self, repo) -> None:
        with repo.atomic():
            repo.save_order(_order())
            with repo.atomic():
                repo.save_task(_task("VAL-00000001"))
        assert repo.get_order("order_000000000001") is not None
        assert repo.get_task("VAL-00000001") is not None

    def test_conflict_inside_block_rolls_back(self, repo) -> None:
        repo.save_order(_order())
        stale = repo.get_order("order_000000000001")
        fresh = repo.get_order("order_000000000001")
        repo.save_order(fresh)
        with pytest.raises(ConcurrentWriteError):
            with repo.atomic():
                repo.save_task(_task("VAL-00000001"))
                repo.save_order(stale)
        assert repo.get_task("VAL-00000001") is None


class TestSqliteDurability:
    def test_state_survives_reopen(self, tmp_path) -> None:
        path = tmp_path / "tradeguard.db"
        first = SqliteRepository(path)
        first.save_order(_order())
        assert first.next_task_id() == "VAL-00000001"
        first.close()

        second = SqliteRepository(path)
        assert second.get_order("order_000000000001").version == 1
        assert second.next_task_id() == "VAL-00000002"
        second.close()
