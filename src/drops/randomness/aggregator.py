"""Randomness aggregator — deterministic digests over reveal sets.

Epoch entropy:
    sha256( utf8( str(epoch) + reveal_1 + reveal_2 + ... ) )
with reveals sorted by their UTF-8 byte value. Sorting makes the result
independent of submission order, so any third party holding the reveal
set can reproduce the digest.

Item value:
    sha256( entropy_bytes(32) + token_id as 8 bytes little-endian )

Both are one-way and unpredictable until the last oracle reveals. No
state of its own: every function reads from the LedgerState it is given.
"""

from __future__ import annotations

import hashlib
from typing import Iterable

from drops.errors import EpochNotFound, EpochNotResolved, NotFound, TokenNotFound, ValidationError
from drops.models.epoch import EpochEntropy
from drops.state import LedgerState


TOKEN_ID_BYTES = 8


def sha256_hex(text: str) -> str:
    """SHA-256 of a string's UTF-8 bytes, as lowercase hex."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def token_id_bytes(token_id: int) -> bytes:
    return token_id.to_bytes(TOKEN_ID_BYTES, "little")


def token_id_from_digest(digest: bytes) -> int:
    """Truncate a digest to a 64-bit token id (first 8 bytes, little-endian)."""
    return int.from_bytes(digest[:TOKEN_ID_BYTES], "little")


def entropy_from_payloads(epoch: int, payloads: Iterable[str]) -> str:
    """Aggregate reveal payloads into the epoch's entropy hex digest."""
    ordered = sorted(payloads, key=lambda p: p.encode("utf-8"))
    return sha256_hex(str(epoch) + "".join(ordered))


def item_value(entropy_hex: str, token_id: int) -> str:
    """Combine finalized entropy with a token id into the token's value."""
    if token_id < 0 or token_id >= 1 << (8 * TOKEN_ID_BYTES):
        raise ValidationError(f"Token id out of 64-bit range: {token_id}")
    return hashlib.sha256(bytes.fromhex(entropy_hex) + token_id_bytes(token_id)).hexdigest()


class RandomnessAggregator:
    """Computes epoch entropy and per-item values from ledger state.

    Usage:
        aggregator = RandomnessAggregator(state)
        entropy = aggregator.compute_epoch_entropy(5)
        value = aggregator.derive_item_value(5, token_id)
    """

    def __init__(self, state: LedgerState) -> None:
        self._state = state

    def compute_epoch_entropy(self, epoch: int) -> EpochEntropy:
        """Compute (without persisting) the entropy from the epoch's reveals."""
        if epoch not in self._state.epochs:
            raise EpochNotFound(f"Epoch {epoch} does not exist")
        reveals = self._state.reveals_for(epoch)
        if not reveals:
            raise NotFound(f"Epoch {epoch} has no reveal values")
        value = entropy_from_payloads(epoch, (r.payload for r in reveals))
        return EpochEntropy(epoch=epoch, value=value)

    def derive_item_value(self, epoch: int, token_id: int) -> str:
        token = self._state.tokens.get(token_id)
        if token is None:
            raise TokenNotFound(f"Drop not found: {token_id}")
        if token.epoch > epoch:
            raise ValidationError(
                f"Drop {token_id} was created in epoch {token.epoch}, after epoch "
                f"{epoch}, and is not valid for computation"
            )
        entropy = self._state.entropy.get(epoch)
        if entropy is None:
            raise EpochNotResolved(f"Epoch {epoch} has not yet been resolved")
        return item_value(entropy.value, token_id)

    def derive_latest_item_value(self, token_id: int) -> str:
        """Item value against the epoch before the current one."""
        return self.derive_item_value(self._state.current_epoch - 1, token_id)
