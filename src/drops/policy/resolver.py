"""Policy resolver — loads ledger parameters from the config directory.

All tunables (phase duration, capacity row sizes, fee rate, issuance
rules, market seed reserves) live in ``drops_params.json``. Loading is
fail-closed: a missing or malformed key raises ValueError at startup,
never at the first operation that needs it.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any


PARAMS_FILE = "drops_params.json"


@dataclass(frozen=True)
class CapacityPolicy:
    """Capacity units consumed by each persisted row kind."""
    record_size: int
    purchase_buffer: int
    account_row: int
    stat_row: int
    fee_rate: Decimal


@dataclass(frozen=True)
class IssuancePolicy:
    min_seed_length: int
    bypass_memo: str
    memo_separator: str


class PolicyResolver:
    """Typed access to the ledger parameters.

    Usage:
        resolver = PolicyResolver.from_config_dir(Path("config"))
        resolver.epoch_phase_duration()   # timedelta
        resolver.capacity_policy().record_size
    """

    def __init__(self, params: dict[str, Any]) -> None:
        self._params = params
        self._validate()

    @classmethod
    def from_config_dir(cls, config_dir: Path) -> PolicyResolver:
        path = Path(config_dir) / PARAMS_FILE
        if not path.exists():
            raise ValueError(f"Policy file not found: {path}")
        with path.open("r", encoding="utf-8") as handle:
            return cls(json.load(handle))

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    def contract_account(self) -> str:
        return self._params["contract_account"]

    def market_account(self) -> str:
        return self._params["market_account"]

    def epoch_phase_duration(self) -> timedelta:
        return timedelta(seconds=self._params["epoch"]["phase_seconds"])

    def capacity_policy(self) -> CapacityPolicy:
        cap = self._params["capacity"]
        return CapacityPolicy(
            record_size=int(cap["record_size"]),
            purchase_buffer=int(cap["purchase_buffer"]),
            account_row=int(cap["account_row"]),
            stat_row=int(cap["stat_row"]),
            fee_rate=Decimal(str(cap["fee_rate"])),
        )

    def issuance_policy(self) -> IssuancePolicy:
        iss = self._params["issuance"]
        return IssuancePolicy(
            min_seed_length=int(iss["min_seed_length"]),
            bypass_memo=iss["bypass_memo"],
            memo_separator=iss["memo_separator"],
        )

    def market_reserves(self) -> tuple[int, Decimal]:
        """Initial (units, funds) held by the bonding-curve market."""
        market = self._params["market"]
        return int(market["initial_units"]), Decimal(str(market["initial_funds"]))

    def funds_precision(self) -> Decimal:
        return Decimal(str(self._params["funds"]["precision"]))

    def funds_symbol(self) -> str:
        return self._params["funds"]["symbol"]

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _validate(self) -> None:
        required = {
            "contract_account": None,
            "market_account": None,
            "epoch": ("phase_seconds",),
            "capacity": ("record_size", "purchase_buffer", "account_row", "stat_row", "fee_rate"),
            "issuance": ("min_seed_length", "bypass_memo", "memo_separator"),
            "market": ("initial_units", "initial_funds"),
            "funds": ("precision", "symbol"),
        }
        for section, keys in required.items():
            if section not in self._params:
                raise ValueError(f"Missing policy section: {section}")
            for key in keys or ():
                if key not in self._params[section]:
                    raise ValueError(f"Missing policy key: {section}.{key}")

        if self._params["epoch"]["phase_seconds"] <= 0:
            raise ValueError("epoch.phase_seconds must be positive")
        try:
            fee = Decimal(str(self._params["capacity"]["fee_rate"]))
            Decimal(str(self._params["market"]["initial_funds"]))
            Decimal(str(self._params["funds"]["precision"]))
        except InvalidOperation as e:
            raise ValueError(f"Malformed decimal in policy: {e}") from e
        if not Decimal("0") <= fee < Decimal("1"):
            raise ValueError(f"capacity.fee_rate must be in [0, 1), got {fee}")
