"""Account balance tracker — one place where drop counters change.

Every mint, transfer and burn goes through ``apply_delta`` so that an
account's total and its per-epoch stat always move together. Rows are
created lazily on first touch and are never deleted here.
"""

from __future__ import annotations

from collections import Counter
from typing import Iterable

from drops.errors import LedgerInvariantError
from drops.models.ledger import Account, EpochStat
from drops.state import LedgerState


class AccountBalanceTracker:
    def __init__(self, state: LedgerState) -> None:
        self._state = state

    def apply_delta(self, account: str, epoch: int, delta: int) -> tuple[int, int]:
        """Apply a signed delta to (account, epoch). Returns (total, epoch count)."""
        acct = self._state.accounts.get(account)
        stat = self._state.stats.get((account, epoch))
        total = (acct.drops if acct else 0) + delta
        epoch_count = (stat.drops if stat else 0) + delta
        if total < 0 or epoch_count < 0:
            raise LedgerInvariantError(
                f"Balance underflow for {account} in epoch {epoch}: "
                f"total={total}, epoch={epoch_count}"
            )

        if acct is None:
            acct = Account(account=account)
            self._state.accounts[account] = acct
        if stat is None:
            stat = EpochStat(account=account, epoch=epoch)
            self._state.stats[(account, epoch)] = stat
        acct.drops = total
        stat.drops = epoch_count
        return total, epoch_count

    def apply_epoch_counts(self, account: str, counts: Counter[int], sign: int) -> None:
        """Apply a per-epoch multiset of counts, all with the same sign."""
        for epoch in sorted(counts):
            self.apply_delta(account, epoch, sign * counts[epoch])

    def has_account(self, account: str) -> bool:
        return account in self._state.accounts

    def has_stat(self, account: str, epoch: int) -> bool:
        return (account, epoch) in self._state.stats

    def open_stat(self, account: str, epoch: int) -> EpochStat:
        """Create zero-balance account and stat rows where absent."""
        if account not in self._state.accounts:
            self._state.accounts[account] = Account(account=account)
        stat = self._state.stats.get((account, epoch))
        if stat is None:
            stat = EpochStat(account=account, epoch=epoch)
            self._state.stats[(account, epoch)] = stat
        return stat

    def is_consistent(self, account: str) -> bool:
        """True when the account total equals the sum of its epoch stats."""
        acct = self._state.accounts.get(account)
        total = acct.drops if acct else 0
        return total == sum(s.drops for s in self._state.stats_for(account))

    def inconsistent_accounts(self, accounts: Iterable[str] | None = None) -> list[str]:
        names = self._state.accounts.keys() if accounts is None else accounts
        return [a for a in names if not self.is_consistent(a)]
