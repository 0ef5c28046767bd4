"""Entropy anchoring — publishes a finalized epoch's entropy on an EVM chain.

Once an epoch is finalized anyone can recompute its entropy from the
reveal set. Anchoring adds a public, timestamped witness: the 32-byte
digest is embedded in a 0-value self-send transaction, so later
disputes can show the value existed before a given block.

No contract code executes on-chain. The chain only serves as a notary.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from drops.models.epoch import EpochEntropy

logger = logging.getLogger(__name__)

SEPOLIA_CHAIN_ID = 11155111
EXPLORERS = {SEPOLIA_CHAIN_ID: "https://sepolia.etherscan.io/tx/"}


@dataclass(frozen=True)
class AnchorRecord:
    """A record of a successful entropy anchor."""
    epoch: int
    entropy: str
    tx_hash: str
    block_number: int
    chain_id: int
    timestamp_utc: str
    explorer_url: str


def build_anchor_transaction(
    address: str,
    nonce: int,
    entropy: EpochEntropy,
    chain_id: int,
    gas: int,
    gas_price_wei: int,
) -> dict[str, Any]:
    """Build the unsigned self-send transaction carrying the entropy digest."""
    return {
        "to": address,
        "value": 0,
        "gas": gas,
        "gasPrice": gas_price_wei,
        "nonce": nonce,
        "chainId": chain_id,
        "data": entropy.raw,
    }


def anchor_entropy(
    entropy: EpochEntropy,
    rpc_url: str,
    private_key: str,
    chain_id: int = SEPOLIA_CHAIN_ID,
    gas: int = 30_000,
    gas_price_gwei: str = "2",
    timeout: int = 300,
) -> AnchorRecord:
    """Send the anchor transaction and wait for one confirmation."""
    from eth_account import Account
    from web3 import HTTPProvider, Web3

    w3 = Web3(HTTPProvider(rpc_url))
    acct = Account.from_key(private_key)

    tx = build_anchor_transaction(
        address=acct.address,
        nonce=w3.eth.get_transaction_count(acct.address),
        entropy=entropy,
        chain_id=chain_id,
        gas=gas,
        gas_price_wei=w3.to_wei(gas_price_gwei, "gwei"),
    )
    signed = acct.sign_transaction(tx)
    tx_hash = w3.eth.send_raw_transaction(signed.raw_transaction)
    logger.info("Anchor tx for epoch %d sent: %s", entropy.epoch, tx_hash.hex())

    receipt = w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout)
    logger.info("Anchor tx confirmed in block %d", receipt.blockNumber)

    return AnchorRecord(
        epoch=entropy.epoch,
        entropy=entropy.value,
        tx_hash=tx_hash.hex(),
        block_number=receipt.blockNumber,
        chain_id=chain_id,
        timestamp_utc=datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        explorer_url=EXPLORERS.get(chain_id, "") + tx_hash.hex(),
    )
