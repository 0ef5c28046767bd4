"""Tests for entropy anchoring — transaction construction only, no network."""

from drops.crypto.anchor import SEPOLIA_CHAIN_ID, build_anchor_transaction
from drops.models.epoch import EpochEntropy
from drops.randomness.aggregator import sha256_hex


class TestBuildAnchorTransaction:
    def test_self_send_carries_digest(self) -> None:
        entropy = EpochEntropy(epoch=5, value=sha256_hex("5barfoo"))
        tx = build_anchor_transaction(
            address="0x000000000000000000000000000000000000dEaD",
            nonce=7,
            entropy=entropy,
            chain_id=SEPOLIA_CHAIN_ID,
            gas=30_000,
            gas_price_wei=2_000_000_000,
        )
        assert tx["to"] == "0x000000000000000000000000000000000000dEaD"
        assert tx["value"] == 0
        assert tx["nonce"] == 7
        assert tx["chainId"] == SEPOLIA_CHAIN_ID
        assert tx["data"] == bytes.fromhex(entropy.value)
        assert len(tx["data"]) == 32
