"""Ledger models — drop tokens, account balances, per-epoch stats.

All monetary values use Decimal. Capacity is counted in integer units.

Invariant maintained by every balance-affecting operation:
    Account(A).drops == sum(EpochStat(A, e).drops for every epoch e)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal


@dataclass
class Token:
    """A single drop. Owner changes on transfer; the row is deleted on burn."""
    token_id: int
    owner: str
    epoch: int


@dataclass
class Account:
    account: str
    drops: int = 0


@dataclass
class EpochStat:
    """Count of drops an account holds that were created in a given epoch."""
    account: str
    epoch: int
    drops: int = 0


@dataclass
class GlobalState:
    """Single-row system state: current epoch pointer and enabled flag."""
    epoch: int = 0
    enabled: bool = False
    initialized: bool = False


@dataclass(frozen=True)
class IssueResult:
    """Return value of an issuance."""
    drops: int
    epoch: int
    cost: Decimal
    refund: Decimal
    total_drops: int
    epoch_drops: int
    token_ids: tuple[int, ...] = field(default=())


@dataclass(frozen=True)
class DestroyResult:
    units_released: int
    proceeds: Decimal


@dataclass(frozen=True)
class DestroyAllResult:
    drops_destroyed: int
    units_released: int
    proceeds_by_owner: dict[str, Decimal]
