"""Error taxonomy for the drops ledger.

Every error aborts the invoking operation with no partial effect. Core
components raise these; the service layer rolls back and reports them.
Each class carries a stable ``code`` so callers (and the CLI) can branch
on the kind without string matching.
"""

from __future__ import annotations

from typing import Any, Optional


class DropsError(Exception):
    """Base class for all ledger and protocol errors."""

    code = "drops_error"

    def __init__(self, message: str, context: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}


class ValidationError(DropsError):
    """Malformed or out-of-range input."""

    code = "validation_error"


class AuthorizationError(DropsError):
    """Caller is not entitled to act as the named principal."""

    code = "authorization_error"


class PhaseViolation(DropsError):
    """Operation attempted outside its valid epoch phase."""

    code = "phase_violation"


class DuplicateSubmission(DropsError):
    """A commit, reveal, enrollment or registration was repeated."""

    code = "duplicate_submission"


class NotFound(DropsError):
    """Referenced epoch, token, oracle or commit is absent."""

    code = "not_found"


class InsufficientFunds(DropsError):
    code = "insufficient_funds"


class Disabled(DropsError):
    code = "disabled"


class EpochNotResolved(DropsError):
    """Entropy was requested for an epoch that has not been finalized."""

    code = "epoch_not_resolved"


class RevealMismatch(DropsError):
    """A reveal payload does not hash to the stored commit digest."""

    code = "reveal_mismatch"

    def __init__(self, payload: str, computed: str, expected: str) -> None:
        super().__init__(
            f"Reveal value '{payload}' hashes to '{computed}' which does not "
            f"match commit value '{expected}'.",
            context={"computed": computed, "expected": expected},
        )
        self.computed = computed
        self.expected = expected


# Specific kinds


class NotEnded(PhaseViolation):
    code = "not_ended"


class EpochCompleted(PhaseViolation):
    code = "epoch_completed"


class EpochNotFound(NotFound):
    code = "epoch_not_found"


class TokenNotFound(NotFound):
    code = "token_not_found"


class CommitNotFound(NotFound):
    code = "commit_not_found"


class NoOracles(NotFound):
    code = "no_oracles"


class OracleNotEligible(AuthorizationError):
    code = "oracle_not_eligible"


class NotOwner(AuthorizationError):
    code = "not_owner"


class DuplicateCommit(DuplicateSubmission):
    code = "duplicate_commit"


class DuplicateReveal(DuplicateSubmission):
    code = "duplicate_reveal"


class AlreadyEnrolled(DuplicateSubmission):
    code = "already_enrolled"


class TokenIdCollision(ValidationError):
    code = "token_id_collision"


class LedgerInvariantError(DropsError):
    """A balance counter would go negative. Indicates corrupted state."""

    code = "ledger_invariant"


class AnchorError(DropsError):
    """Publishing entropy to the anchoring chain failed (RPC, signing or receipt)."""

    code = "anchor_failed"
