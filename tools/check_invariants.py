#!/usr/bin/env python3
"""Drops invariant checks against the policy parameters file."""

import json
import sys
from decimal import Decimal, InvalidOperation
from pathlib import Path


ROOT = Path(__file__).resolve().parents[1]
PARAMS_PATH = ROOT / "config" / "drops_params.json"

MIN_SEED_LENGTH = 32


def load_json(path: Path) -> dict:
    with path.open("r", encoding="utf-8") as handle:
        return json.load(handle)


def as_decimal(value: object, label: str, errors: list[str]) -> Decimal | None:
    try:
        return Decimal(str(value))
    except InvalidOperation:
        errors.append(f"{label} must be a decimal string, got {value!r}")
        return None


def check_capacity(capacity: dict, errors: list[str]) -> None:
    """Row sizes must be positive integers; the buffer may be zero."""
    for key in ("record_size", "account_row", "stat_row"):
        value = capacity.get(key)
        if not isinstance(value, int) or value <= 0:
            errors.append(f"capacity.{key} must be a positive integer, got {value!r}")
    buffer = capacity.get("purchase_buffer")
    if not isinstance(buffer, int) or buffer < 0:
        errors.append(f"capacity.purchase_buffer must be >= 0, got {buffer!r}")

    fee_rate = as_decimal(capacity.get("fee_rate"), "capacity.fee_rate", errors)
    if fee_rate is not None and not Decimal("0") <= fee_rate < Decimal("1"):
        errors.append(f"capacity.fee_rate must be in [0, 1), got {fee_rate}")


def check(path: Path = PARAMS_PATH) -> int:
    params = load_json(path)
    errors: list[str] = []

    # --- Principals ---
    contract = params.get("contract_account", "")
    market = params.get("market_account", "")
    if not contract:
        errors.append("contract_account must be set")
    if not market:
        errors.append("market_account must be set")
    if contract and contract == market:
        errors.append("contract_account and market_account must differ")

    # --- Epoch timing ---
    phase = params["epoch"]["phase_seconds"]
    if not isinstance(phase, int) or phase <= 0:
        errors.append(f"epoch.phase_seconds must be a positive integer, got {phase!r}")

    # --- Capacity ---
    check_capacity(params["capacity"], errors)

    # --- Issuance ---
    issuance = params["issuance"]
    if issuance["min_seed_length"] < MIN_SEED_LENGTH:
        errors.append(f"issuance.min_seed_length must be >= {MIN_SEED_LENGTH}")
    if not issuance["memo_separator"]:
        errors.append("issuance.memo_separator must not be empty")
    if issuance["memo_separator"] in issuance["bypass_memo"]:
        errors.append("issuance.bypass_memo must not contain the memo separator")

    # --- Market seed reserves ---
    if params["market"]["initial_units"] <= 0:
        errors.append("market.initial_units must be > 0")
    funds = as_decimal(params["market"]["initial_funds"], "market.initial_funds", errors)
    if funds is not None and funds <= 0:
        errors.append("market.initial_funds must be > 0")

    # --- Funds precision ---
    precision = as_decimal(params["funds"]["precision"], "funds.precision", errors)
    if precision is not None and not Decimal("0") < precision <= Decimal("1"):
        errors.append("funds.precision must be in (0, 1]")

    if errors:
        print("Invariant check failed:")
        for err in errors:
            print(f"- {err}")
        return 1

    print("Invariant check passed.")
    return 0


if __name__ == "__main__":
    raise SystemExit(check())
