"""Drop issuance, transfer, destruction and balance bookkeeping."""

from drops.ledger.balances import AccountBalanceTracker
from drops.ledger.resource_ledger import ResourceLedger, derive_token_id

__all__ = ["AccountBalanceTracker", "ResourceLedger", "derive_token_id"]
