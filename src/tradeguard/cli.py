"""TradeGuard CLI — command-line interface for the consensus and settlement engine.

Usage:
    python -m tradeguard.cli status
    python -m tradeguard.cli create-order --requester-id alice --address 0xabc --amount 50 --currency INR --method UPI
    python -m tradeguard.cli update-order --order-id order_1 --action match --counterparty-id lp1 --counterparty-address 0xdef
    python -m tradeguard.cli register-validator --address 0x123 --stake 500
    python -m tradeguard.cli vote --task-id VAL-00000001 --validator 0x123 --decision approve
    python -m tradeguard.cli check-timeouts
    python -m tradeguard.cli settle-sweep

State lives in a SQLite database and JSONL audit logs under the data
directory (``--data-dir``, default ``data/``; ``TRADEGUARD_DB_PATH``
overrides the database file).
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any

from tradeguard.collaborators.publisher import EventLogPublisher
from tradeguard.models.order import OrderAction, OrderType
from tradeguard.persistence.event_log import EventLog
from tradeguard.persistence.sqlite_store import SqliteRepository
from tradeguard.policy import EngineConfig
from tradeguard.service import ServiceResult, TradeGuardService


DEFAULT_CONFIG = Path(__file__).resolve().parents[2] / "config"
DEFAULT_DATA = Path(__file__).resolve().parents[2] / "data"


def _make_service(args: argparse.Namespace) -> TradeGuardService:
    """Create a TradeGuardService with durable persistence."""
    data_dir: Path = args.data_dir
    data_dir.mkdir(parents=True, exist_ok=True)
    config = EngineConfig.from_config_dir(args.config)
    db_path = Path(config.db_path) if config.db_path else data_dir / "tradeguard.db"
    return TradeGuardService(
        config,
        repository=SqliteRepository(db_path),
        publisher=EventLogPublisher(EventLog(storage_path=data_dir / "notifications.jsonl")),
        event_log=EventLog(storage_path=data_dir / "audit.jsonl"),
    )


def _emit(result: ServiceResult) -> int:
    if result.success:
        print(json.dumps(result.data, indent=2, default=str))
        return 0
    print(f"Failed ({result.status_code}): {'; '.join(result.errors)}", file=sys.stderr)
    return 1


def cmd_status(args: argparse.Namespace) -> int:
    service = _make_service(args)
    print(json.dumps(service.status(), indent=2))
    return 0


def cmd_create_order(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _emit(service.create_order({
        "requester_id": args.requester_id,
        "requester_address": args.address,
        "amount_usdc": args.amount,
        "fiat_currency": args.currency,
        "payment_method": args.method,
        "order_type": args.type,
        "payment_details": args.details,
    }))


def cmd_update_order(args: argparse.Namespace) -> int:
    service = _make_service(args)
    data: dict[str, Any] = {
        "order_id": args.order_id,
        "action": args.action,
        "actor_address": args.actor,
        "counterparty_id": args.counterparty_id,
        "counterparty_address": args.counterparty_address,
        "evidence": args.evidence,
        "reason": args.reason,
    }
    return _emit(service.update_order(data))


def cmd_register_validator(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _emit(service.register_validator({
        "address": args.address, "stake_amount": args.stake,
    }))


def cmd_vote(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _emit(service.submit_vote({
        "task_id": args.task_id,
        "validator": args.validator,
        "decision": args.decision,
        "notes": args.notes,
    }))


def cmd_list_tasks(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _emit(service.list_validation_tasks(
        viewer=args.viewer, include_resolved=args.all,
    ))


def cmd_check_timeouts(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _emit(service.check_timeouts())


def cmd_settle_sweep(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _emit(service.settlement_sweep())


def cmd_settle(args: argparse.Namespace) -> int:
    service = _make_service(args)
    if args.force:
        return _emit(service.settlement_force(args.admin or "", args.order_id))
    return _emit(service.settle_order(args.order_id))


def cmd_resolve_dispute(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _emit(service.admin_resolve_dispute({
        "admin_address": args.admin,
        "order_id": args.order_id,
        "resolution": args.resolution,
    }))


def cmd_resolve_validation(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _emit(service.admin_resolve_validation({
        "admin_address": args.admin,
        "task_id": args.task_id,
        "resolution": args.resolution,
        "notes": args.notes,
    }))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tradeguard",
        description="TradeGuard — order validation consensus & settlement CLI",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG,
        help="Path to config directory (default: config/)",
    )
    parser.add_argument(
        "--data-dir",
        type=Path,
        default=DEFAULT_DATA,
        help="Directory for the database and audit logs (default: data/)",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
    )
    sub = parser.add_subparsers(dest="command")

    # status
    sub.add_parser("status", help="Show system status")

    # create-order
    p_create = sub.add_parser("create-order", help="Create a trade order")
    p_create.add_argument("--requester-id", required=True)
    p_create.add_argument("--address", required=True, help="Requester wallet address")
    p_create.add_argument("--amount", required=True, help="Amount in USDC (Decimal)")
    p_create.add_argument("--currency", required=True, help="Fiat currency code")
    p_create.add_argument("--method", required=True, help="Fiat payment method")
    p_create.add_argument("--type", default="sell", choices=[t.value for t in OrderType])
    p_create.add_argument("--details", default="", help="Payment details")

    # update-order
    p_update = sub.add_parser("update-order", help="Apply an order action")
    p_update.add_argument("--order-id", required=True)
    p_update.add_argument("--action", required=True, choices=[a.value for a in OrderAction])
    p_update.add_argument("--actor", help="Acting wallet address")
    p_update.add_argument("--counterparty-id")
    p_update.add_argument("--counterparty-address")
    p_update.add_argument("--evidence", help="Evidence payload or reference")
    p_update.add_argument("--reason", help="Dispute reason")

    # register-validator
    p_reg = sub.add_parser("register-validator", help="Register a staked validator")
    p_reg.add_argument("--address", required=True)
    p_reg.add_argument("--stake", required=True, help="Stake in USDC (Decimal)")

    # vote
    p_vote = sub.add_parser("vote", help="Vote on a validation task")
    p_vote.add_argument("--task-id", required=True)
    p_vote.add_argument("--validator", required=True)
    p_vote.add_argument("--decision", required=True, choices=["approve", "flag"])
    p_vote.add_argument("--notes", default="")

    # list-tasks
    p_list = sub.add_parser("list-tasks", help="List validation tasks")
    p_list.add_argument("--viewer", help="Validator address viewing the list")
    p_list.add_argument("--all", action="store_true", help="Include resolved tasks")

    sub.add_parser("check-timeouts", help="Auto-approve overdue validation tasks")
    sub.add_parser("settle-sweep", help="Settle orders whose dispute window ended")

    # settle
    p_settle = sub.add_parser("settle", help="Settle a single order")
    p_settle.add_argument("--order-id", required=True)
    p_settle.add_argument("--force", action="store_true",
                          help="Skip the dispute window (admin only)")
    p_settle.add_argument("--admin", help="Admin address (required with --force)")

    # resolve-dispute
    p_rd = sub.add_parser("resolve-dispute", help="Admin: resolve a disputed order")
    p_rd.add_argument("--admin", required=True)
    p_rd.add_argument("--order-id", required=True)
    p_rd.add_argument("--resolution", required=True,
                      choices=["approve", "refund", "schedule_meet"])

    # resolve-validation
    p_rv = sub.add_parser("resolve-validation", help="Admin: resolve an escalated task")
    p_rv.add_argument("--admin", required=True)
    p_rv.add_argument("--task-id", required=True)
    p_rv.add_argument("--resolution", required=True,
                      choices=["approve", "slash", "schedule_meet"])
    p_rv.add_argument("--notes", default="")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command is None:
        parser.print_help()
        return 0

    commands = {
        "status": cmd_status,
        "create-order": cmd_create_order,
        "update-order": cmd_update_order,
        "register-validator": cmd_register_validator,
        "vote": cmd_vote,
        "list-tasks": cmd_list_tasks,
        "check-timeouts": cmd_check_timeouts,
        "settle-sweep": cmd_settle_sweep,
        "settle": cmd_settle,
        "resolve-dispute": cmd_resolve_dispute,
        "resolve-validation": cmd_resolve_validation,
    }

    handler = commands.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}", file=sys.stderr)
        return 1

    return handler(args)


if __name__ == "__main__":
    raise SystemExit(main())
