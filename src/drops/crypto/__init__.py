"""Public anchoring of finalized entropy."""

from drops.crypto.anchor import AnchorRecord, anchor_entropy, build_anchor_transaction

__all__ = ["AnchorRecord", "anchor_entropy", "build_anchor_transaction"]
