"""Commit-reveal coordinator — per-epoch commit/reveal bookkeeping.

Protocol per epoch:
    1. During the commit window (start < now < end) each oracle in the
       epoch's snapshot submits sha256(secret) once.
    2. Once the window has closed (now >= end) each oracle discloses its
       secret once. The secret must hash exactly to its commit.
    3. When every snapshot oracle has revealed, the epoch is finalized:
       completed flag set and entropy persisted, both exactly once.

No oracle can see another's secret before committing its own, because
reveals are only accepted after the commit window has closed.
Finalization is idempotent and also exposed on its own for recovery.
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Union

from drops.errors import (
    CommitNotFound,
    DuplicateCommit,
    DuplicateReveal,
    EpochCompleted,
    EpochNotFound,
    OracleNotEligible,
    PhaseViolation,
    RevealMismatch,
    ValidationError,
)
from drops.models.epoch import Commit, Epoch, EpochEntropy, Reveal
from drops.randomness.aggregator import RandomnessAggregator, sha256_hex
from drops.state import LedgerState


_HEX_DIGEST = re.compile(r"^[0-9a-fA-F]{64}$")


def normalize_digest(digest: Union[str, bytes]) -> str:
    """Accept a 32-byte digest or its 64-char hex form; return lowercase hex."""
    if isinstance(digest, bytes):
        if len(digest) != 32:
            raise ValidationError(f"Commit digest must be 32 bytes, got {len(digest)}")
        return digest.hex()
    if not _HEX_DIGEST.match(digest):
        raise ValidationError("Commit digest must be a 64-character hex SHA-256 value")
    return digest.lower()


class CommitRevealCoordinator:
    """Runs the commit/reveal protocol against a LedgerState.

    Usage:
        coordinator = CommitRevealCoordinator(state)
        coordinator.commit("oracle.a", 5, sha256_hex("foo"), now=t0)
        coordinator.reveal("oracle.a", 5, "foo", now=t1)
        coordinator.finalize_if_ready(5)
    """

    def __init__(self, state: LedgerState) -> None:
        self._state = state
        self._aggregator = RandomnessAggregator(state)

    def commit(
        self,
        oracle: str,
        epoch: int,
        digest: Union[str, bytes],
        now: datetime,
    ) -> Commit:
        record = self._get_epoch(epoch)
        if oracle not in record.oracles:
            raise OracleNotEligible(
                f"Oracle {oracle} is not in the list of oracles for epoch {epoch}"
            )
        if now <= record.start:
            raise PhaseViolation(f"Epoch {epoch} not started")
        if now >= record.end:
            raise PhaseViolation(f"Epoch {epoch} no longer accepting commits")
        if (oracle, epoch) in self._state.commits:
            raise DuplicateCommit(f"Oracle {oracle} has already committed for epoch {epoch}")

        commit = Commit(oracle=oracle, epoch=epoch, digest=normalize_digest(digest))
        self._state.commits[(oracle, epoch)] = commit
        return commit

    def reveal(self, oracle: str, epoch: int, payload: str, now: datetime) -> Reveal:
        """Record a reveal, then finalize the epoch if it was the last one."""
        record = self._get_epoch(epoch)
        if record.completed:
            raise EpochCompleted(f"Epoch {epoch} has already completed")
        if now < record.end:
            raise PhaseViolation(f"Epoch {epoch} has not concluded")
        if (oracle, epoch) in self._state.reveals:
            raise DuplicateReveal(f"Oracle {oracle} has already revealed for epoch {epoch}")
        commit = self._state.commits.get((oracle, epoch))
        if commit is None:
            raise CommitNotFound(f"Oracle {oracle} never committed for epoch {epoch}")

        computed = sha256_hex(payload)
        if computed != commit.digest:
            raise RevealMismatch(payload, computed=computed, expected=commit.digest)

        reveal = Reveal(oracle=oracle, epoch=epoch, payload=payload)
        self._state.reveals[(oracle, epoch)] = reveal
        self.finalize_if_ready(epoch)
        return reveal

    def finalize_if_ready(self, epoch: int) -> EpochEntropy | None:
        """Finalize the epoch if every snapshot oracle has revealed.

        Returns the newly persisted entropy, or None when the epoch was
        already finalized or is still waiting on reveals. Never raises for
        those cases, so it is safe to call repeatedly.
        """
        record = self._get_epoch(epoch)
        if record.completed or self.pending_oracles(epoch):
            return None

        entropy = self._aggregator.compute_epoch_entropy(epoch)
        record.completed = True
        self._state.entropy[epoch] = entropy
        return entropy

    def pending_oracles(self, epoch: int) -> list[str]:
        """Snapshot oracles that have not yet revealed for the epoch."""
        record = self._get_epoch(epoch)
        return [o for o in record.oracles if (o, epoch) not in self._state.reveals]

    def _get_epoch(self, epoch: int) -> Epoch:
        record = self._state.epochs.get(epoch)
        if record is None:
            raise EpochNotFound(f"Epoch {epoch} does not exist")
        return record
