"""Tests for the account balance tracker — proves totals and epoch stats move together."""

from collections import Counter

import pytest

from drops.errors import LedgerInvariantError
from drops.ledger.balances import AccountBalanceTracker
from drops.state import LedgerState


@pytest.fixture
def state() -> LedgerState:
    return LedgerState()


@pytest.fixture
def tracker(state: LedgerState) -> AccountBalanceTracker:
    return AccountBalanceTracker(state)


class TestApplyDelta:
    def test_creates_rows_lazily(self, tracker, state) -> None:
        assert tracker.apply_delta("alice", 1, 3) == (3, 3)
        assert state.accounts["alice"].drops == 3
        assert state.stats[("alice", 1)].drops == 3

    def test_accumulates_across_epochs(self, tracker) -> None:
        tracker.apply_delta("alice", 1, 3)
        assert tracker.apply_delta("alice", 2, 2) == (5, 2)
        assert tracker.apply_delta("alice", 1, -1) == (4, 2)
        assert tracker.is_consistent("alice")

    def test_underflow_rejected_without_writes(self, tracker, state) -> None:
        tracker.apply_delta("alice", 1, 1)
        with pytest.raises(LedgerInvariantError):
            tracker.apply_delta("alice", 2, -1)
        assert state.accounts["alice"].drops == 1
        assert ("alice", 2) not in state.stats

    def test_zero_rows_are_kept(self, tracker, state) -> None:
        tracker.apply_delta("alice", 1, 2)
        tracker.apply_delta("alice", 1, -2)
        assert state.accounts["alice"].drops == 0
        assert state.stats[("alice", 1)].drops == 0


class TestEpochCounts:
    def test_apply_multiset(self, tracker, state) -> None:
        tracker.apply_epoch_counts("bob", Counter({1: 2, 3: 1}), +1)
        assert state.accounts["bob"].drops == 3
        assert state.stats[("bob", 1)].drops == 2
        assert state.stats[("bob", 3)].drops == 1

        tracker.apply_epoch_counts("bob", Counter({1: 2}), -1)
        assert state.accounts["bob"].drops == 1
        assert tracker.is_consistent("bob")


class TestOpenStat:
    def test_creates_zero_rows(self, tracker, state) -> None:
        stat = tracker.open_stat("carol", 4)
        assert stat.drops == 0
        assert tracker.has_account("carol")
        assert tracker.has_stat("carol", 4)
        assert tracker.is_consistent("carol")

    def test_existing_row_returned(self, tracker) -> None:
        tracker.apply_delta("carol", 4, 2)
        assert tracker.open_stat("carol", 4).drops == 2


class TestConsistency:
    def test_detects_drift(self, tracker, state) -> None:
        tracker.apply_delta("alice", 1, 2)
        tracker.apply_delta("bob", 1, 1)
        state.accounts["alice"].drops = 5
        assert tracker.inconsistent_accounts() == ["alice"]

    def test_missing_account_is_consistent(self, tracker) -> None:
        assert tracker.is_consistent("nobody")
