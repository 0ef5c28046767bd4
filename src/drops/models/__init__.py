"""Core data models for the drops ledger."""

from drops.models.epoch import Commit, Epoch, EpochEntropy, EpochPhase, Reveal
from drops.models.ledger import (
    Account,
    DestroyAllResult,
    DestroyResult,
    EpochStat,
    GlobalState,
    IssueResult,
    Token,
)

__all__ = [
    "Account",
    "Commit",
    "DestroyAllResult",
    "DestroyResult",
    "Epoch",
    "EpochEntropy",
    "EpochPhase",
    "EpochStat",
    "GlobalState",
    "IssueResult",
    "Reveal",
    "Token",
]
