"""Epoch models — epochs, oracle commits and reveals, finalized entropy.

An epoch's phase is never stored. It is derived from the wall clock at
call time against the stored start/end boundaries, plus the completed
flag:

    PENDING    now <= start            (no commits yet)
    OPEN       start < now < end       (commit phase)
    CLOSED     now >= end              (reveal phase)
    FINALIZED  completed flag set      (entropy persisted)
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Any


class EpochPhase(str, enum.Enum):
    PENDING = "pending"
    OPEN = "open"
    CLOSED = "closed"
    FINALIZED = "finalized"


@dataclass
class Epoch:
    """A fixed-duration commit/reveal period.

    The oracle snapshot is frozen at creation. The only later mutation
    is the completed flag, set once at finalization.
    """
    number: int
    start: datetime
    end: datetime
    oracles: tuple[str, ...]
    completed: bool = False

    def phase(self, now: datetime) -> EpochPhase:
        if self.completed:
            return EpochPhase.FINALIZED
        if now >= self.end:
            return EpochPhase.CLOSED
        if now > self.start:
            return EpochPhase.OPEN
        return EpochPhase.PENDING

    def accepts_commits(self, now: datetime) -> bool:
        return self.start < now < self.end

    def to_dict(self) -> dict[str, Any]:
        return {
            "number": self.number,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "oracles": list(self.oracles),
            "completed": self.completed,
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> Epoch:
        return Epoch(
            number=int(data["number"]),
            start=datetime.fromisoformat(data["start"]),
            end=datetime.fromisoformat(data["end"]),
            oracles=tuple(data["oracles"]),
            completed=bool(data["completed"]),
        )


@dataclass(frozen=True)
class Commit:
    """An oracle's sealed digest for an epoch. One per (oracle, epoch)."""
    oracle: str
    epoch: int
    digest: str  # lowercase hex SHA-256


@dataclass(frozen=True)
class Reveal:
    """An oracle's disclosed value. Must hash to the matching Commit digest."""
    oracle: str
    epoch: int
    payload: str


@dataclass(frozen=True)
class EpochEntropy:
    """The aggregate digest of an epoch's reveals. Written exactly once."""
    epoch: int
    value: str  # lowercase hex SHA-256

    @property
    def raw(self) -> bytes:
        return bytes.fromhex(self.value)
