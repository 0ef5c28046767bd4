"""Drops CLI — command-line interface for the drops ledger.

Usage:
    python -m drops.cli add-oracle --caller drops --oracle oracle.a
    python -m drops.cli init --caller drops
    python -m drops.cli enable --caller drops
    python -m drops.cli commit --oracle oracle.a --epoch 1 --digest <sha256 hex>
    python -m drops.cli reveal --oracle oracle.a --epoch 1 --payload secret
    python -m drops.cli issue --payer alice --funds 1.0000 --count 3 --seed <32+ chars>
    python -m drops.cli item-value --token 1234567890 --epoch 1
    python -m drops.cli status

Settings are read from the environment (a ``.env`` file in the working
directory is loaded first): DROPS_CONFIG_DIR, DROPS_DATA_DIR,
DROPS_LOG_LEVEL. Every command prints its result as JSON on stdout and
exits 0 on success, 1 on failure.
"""

from __future__ import annotations

import argparse
import json
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from drops.logging_config import setup_logging
from drops.outbox import InMemoryDispatcher, MessageKind, OutboxMessage
from drops.persistence.event_log import EventLog
from drops.persistence.state_store import StateStore
from drops.policy.resolver import PolicyResolver
from drops.service import DropsService, ServiceResult


DEFAULT_CONFIG = Path(__file__).resolve().parents[2] / "config"
DEFAULT_DATA = Path(__file__).resolve().parents[2] / "data"


def _make_service(args: argparse.Namespace) -> DropsService:
    """Create a DropsService with durable persistence.

    Messages the service dispatches are kept on ``args.dispatcher`` so the
    command can print them; this process is the only delivery channel.
    """
    data_dir: Path = args.data
    data_dir.mkdir(parents=True, exist_ok=True)
    resolver = PolicyResolver.from_config_dir(args.config)
    args.dispatcher = InMemoryDispatcher()
    return DropsService(
        resolver,
        dispatcher=args.dispatcher,
        event_log=EventLog(storage_path=data_dir / "events.jsonl"),
        state_store=StateStore(storage_path=data_dir / "state.json"),
    )


def _now(args: argparse.Namespace) -> datetime:
    if getattr(args, "at", None):
        moment = datetime.fromisoformat(args.at)
        return moment if moment.tzinfo else moment.replace(tzinfo=timezone.utc)
    return datetime.now(timezone.utc)


def _emit(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _message_to_dict(message: OutboxMessage) -> dict[str, Any]:
    entry: dict[str, Any] = {
        "kind": message.kind.value,
        "recipient": message.recipient,
        "topic": message.topic,
    }
    if message.kind == MessageKind.FUNDS_TRANSFER:
        entry["amount"] = str(message.amount)
        entry["memo"] = message.memo
    else:
        entry["payload"] = message.payload
    return entry


def _report(result: ServiceResult, args: argparse.Namespace) -> int:
    if result.success:
        data = dict(result.data)
        dispatcher = getattr(args, "dispatcher", None)
        if dispatcher is not None and dispatcher.delivered:
            data["dispatched"] = [_message_to_dict(m) for m in dispatcher.delivered]
        _emit(data)
        return 0
    print(f"Failed [{result.error_code}]: {'; '.join(result.errors)}", file=sys.stderr)
    if result.data:
        print(json.dumps(result.data, indent=2, default=str), file=sys.stderr)
    return 1


# ----------------------------------------------------------------------
# Commands
# ----------------------------------------------------------------------


def cmd_status(args: argparse.Namespace) -> int:
    _emit(_make_service(args).status())
    return 0


def cmd_init(args: argparse.Namespace) -> int:
    return _report(_make_service(args).init(args.caller, _now(args)), args)


def cmd_add_oracle(args: argparse.Namespace) -> int:
    return _report(_make_service(args).add_oracle(args.caller, args.oracle), args)


def cmd_remove_oracle(args: argparse.Namespace) -> int:
    return _report(_make_service(args).remove_oracle(args.caller, args.oracle), args)


def cmd_subscribe(args: argparse.Namespace) -> int:
    return _report(
        _make_service(args).subscribe(args.caller or args.subscriber, args.subscriber), args,
    )


def cmd_unsubscribe(args: argparse.Namespace) -> int:
    return _report(
        _make_service(args).unsubscribe(args.caller or args.subscriber, args.subscriber), args,
    )


def cmd_enable(args: argparse.Namespace) -> int:
    return _report(_make_service(args).enable(args.caller, not args.disable), args)


def cmd_wipe(args: argparse.Namespace) -> int:
    return _report(_make_service(args).wipe(args.caller), args)


def cmd_advance(args: argparse.Namespace) -> int:
    service = _make_service(args)
    if args.catch_up:
        return _report(service.advance_until_current(_now(args)), args)
    return _report(service.advance(_now(args)), args)


def cmd_commit(args: argparse.Namespace) -> int:
    result = _make_service(args).commit(
        args.caller or args.oracle, args.oracle, args.epoch, args.digest, _now(args),
    )
    return _report(result, args)


def cmd_reveal(args: argparse.Namespace) -> int:
    result = _make_service(args).reveal(
        args.caller or args.oracle, args.oracle, args.epoch, args.payload, _now(args),
    )
    return _report(result, args)


def cmd_finalize(args: argparse.Namespace) -> int:
    return _report(_make_service(args).finalize_if_ready(args.epoch), args)


def cmd_issue(args: argparse.Namespace) -> int:
    result = _make_service(args).issue(
        args.caller or args.payer, args.payer, args.funds, args.count, args.seed,
    )
    return _report(result, args)


def cmd_funds_received(args: argparse.Namespace) -> int:
    """Replay a funds-transfer notification from the funds ledger."""
    result = _make_service(args).on_funds_received(
        args.sender, args.recipient, args.amount, args.memo,
    )
    return _report(result, args)


def cmd_transfer(args: argparse.Namespace) -> int:
    result = _make_service(args).transfer(
        args.caller or args.sender, args.sender, args.recipient, args.tokens,
    )
    return _report(result, args)


def cmd_destroy(args: argparse.Namespace) -> int:
    result = _make_service(args).destroy(args.caller or args.owner, args.owner, args.tokens)
    return _report(result, args)


def cmd_destroy_all(args: argparse.Namespace) -> int:
    return _report(_make_service(args).destroy_all(args.caller), args)


def cmd_enroll(args: argparse.Namespace) -> int:
    result = _make_service(args).enroll(args.caller or args.account, args.account, args.epoch)
    return _report(result, args)


def cmd_entropy(args: argparse.Namespace) -> int:
    result = _make_service(args).compute_epoch_entropy(args.epoch, notify=args.notify)
    return _report(result, args)


def cmd_item_value(args: argparse.Namespace) -> int:
    service = _make_service(args)
    if args.epoch is None:
        return _report(service.compute_latest_item_value(args.token, notify=args.notify), args)
    return _report(service.compute_item_value(args.epoch, args.token, notify=args.notify), args)


def cmd_anchor(args: argparse.Namespace) -> int:
    rpc_url = os.getenv("DROPS_ANCHOR_RPC_URL")
    private_key = os.getenv("DROPS_ANCHOR_PRIVATE_KEY")
    if not rpc_url or not private_key:
        print(
            "Failed: DROPS_ANCHOR_RPC_URL and DROPS_ANCHOR_PRIVATE_KEY must be set",
            file=sys.stderr,
        )
        return 1
    result = _make_service(args).anchor_entropy(args.caller, args.epoch, rpc_url, private_key)
    return _report(result, args)


def cmd_check_invariants(args: argparse.Namespace) -> int:
    report = _make_service(args).check_invariants()
    _emit(report)
    return 0 if not any(report.values()) else 1


# ----------------------------------------------------------------------
# Parser
# ----------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="drops",
        description="Drops ledger — capacity-backed drops with commit-reveal entropy",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=Path(os.getenv("DROPS_CONFIG_DIR", str(DEFAULT_CONFIG))),
        help="Path to config directory (default: config/)",
    )
    parser.add_argument(
        "--data",
        type=Path,
        default=Path(os.getenv("DROPS_DATA_DIR", str(DEFAULT_DATA))),
        help="Path to data directory holding state.json and events.jsonl",
    )
    parser.add_argument("--log-file", type=Path, help="Also write logs to this file")
    sub = parser.add_subparsers(dest="command")

    def add(name: str, help_text: str, caller: str = "optional", at: bool = False):
        p = sub.add_parser(name, help=help_text)
        if caller == "required":
            p.add_argument("--caller", required=True, help="Account signing the operation")
        elif caller == "optional":
            p.add_argument("--caller", help="Signing account (default: the named principal)")
        if at:
            p.add_argument("--at", help="ISO-8601 timestamp to use as the current time")
        return p

    add("status", "Show system status", caller="none")
    add("check-invariants", "Check balance and entropy invariants", caller="none")

    add("init", "Create epoch 1 (admin)", caller="required", at=True)

    p = add("add-oracle", "Register an oracle (admin)", caller="required")
    p.add_argument("--oracle", required=True)
    p = add("remove-oracle", "Remove an oracle (admin)", caller="required")
    p.add_argument("--oracle", required=True)

    p = add("subscribe", "Subscribe to epoch-advance notices")
    p.add_argument("--subscriber", required=True)
    p = add("unsubscribe", "Unsubscribe from epoch-advance notices")
    p.add_argument("--subscriber", required=True)

    p = add("enable", "Enable the ledger (admin)", caller="required")
    p.add_argument("--disable", action="store_true", help="Disable instead")
    add("wipe", "Erase every table (admin)", caller="required")

    p = add("advance", "Advance to the next epoch", caller="none", at=True)
    p.add_argument("--catch-up", action="store_true", help="Advance until the epoch is current")

    p = add("commit", "Submit an oracle commit digest", at=True)
    p.add_argument("--oracle", required=True)
    p.add_argument("--epoch", type=int, required=True)
    p.add_argument("--digest", required=True, help="SHA-256 of the secret, 64 hex chars")

    p = add("reveal", "Reveal an oracle secret", at=True)
    p.add_argument("--oracle", required=True)
    p.add_argument("--epoch", type=int, required=True)
    p.add_argument("--payload", required=True)

    p = add("finalize", "Finalize an epoch if every oracle revealed", caller="none")
    p.add_argument("--epoch", type=int, required=True)

    p = add("issue", "Issue drops against capacity")
    p.add_argument("--payer", required=True)
    p.add_argument("--funds", required=True, help="Funds provided (Decimal)")
    p.add_argument("--count", type=int, required=True)
    p.add_argument("--seed", required=True)

    p = add("funds-received", "Process a funds-transfer notification", caller="none")
    p.add_argument("--sender", required=True)
    p.add_argument("--recipient", required=True)
    p.add_argument("--amount", required=True)
    p.add_argument("--memo", default="")

    p = add("transfer", "Transfer drops")
    p.add_argument("--sender", required=True)
    p.add_argument("--recipient", required=True)
    p.add_argument("--tokens", type=int, nargs="+", required=True)

    p = add("destroy", "Destroy drops and reclaim capacity value")
    p.add_argument("--owner", required=True)
    p.add_argument("--tokens", type=int, nargs="+", required=True)

    add("destroy-all", "Destroy every drop (admin)", caller="required")

    p = add("enroll", "Pre-create a stat row for an epoch")
    p.add_argument("--account", required=True)
    p.add_argument("--epoch", type=int, required=True)

    p = add("entropy", "Recompute an epoch's entropy", caller="none")
    p.add_argument("--epoch", type=int, required=True)
    p.add_argument("--notify", help="Account to notify with the result")

    p = add("item-value", "Derive a drop's value", caller="none")
    p.add_argument("--token", type=int, required=True)
    p.add_argument("--epoch", type=int, help="Epoch (default: the previous epoch)")
    p.add_argument("--notify", help="Account to notify with the result")

    p = add("anchor", "Anchor a finalized epoch's entropy on-chain (admin)", caller="required")
    p.add_argument("--epoch", type=int, required=True)

    return parser


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(log_file=args.log_file)

    if args.command is None:
        parser.print_help()
        return 0

    commands = {
        "status": cmd_status,
        "check-invariants": cmd_check_invariants,
        "init": cmd_init,
        "add-oracle": cmd_add_oracle,
        "remove-oracle": cmd_remove_oracle,
        "subscribe": cmd_subscribe,
        "unsubscribe": cmd_unsubscribe,
        "enable": cmd_enable,
        "wipe": cmd_wipe,
        "advance": cmd_advance,
        "commit": cmd_commit,
        "reveal": cmd_reveal,
        "finalize": cmd_finalize,
        "issue": cmd_issue,
        "funds-received": cmd_funds_received,
        "transfer": cmd_transfer,
        "destroy": cmd_destroy,
        "destroy-all": cmd_destroy_all,
        "enroll": cmd_enroll,
        "entropy": cmd_entropy,
        "item-value": cmd_item_value,
        "anchor": cmd_anchor,
    }

    handler = commands.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}", file=sys.stderr)
        return 1

    return handler(args)


if __name__ == "__main__":
    raise SystemExit(main())
