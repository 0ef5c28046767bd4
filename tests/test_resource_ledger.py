"""Tests for the resource ledger — proves issuance pricing, transfers and burns keep balances exact."""

import hashlib
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path

import pytest

from drops.errors import (
    AlreadyEnrolled,
    Disabled,
    InsufficientFunds,
    NotOwner,
    TokenIdCollision,
    TokenNotFound,
    ValidationError,
)
from drops.ledger.balances import AccountBalanceTracker
from drops.ledger.resource_ledger import ResourceLedger, derive_token_id
from drops.market.capacity import BondingCurveMarket
from drops.models.epoch import Epoch
from drops.outbox import MessageKind, Outbox
from drops.policy.resolver import PolicyResolver
from drops.state import LedgerState


CONFIG_DIR = Path(__file__).resolve().parents[1] / "config"
SEED = "0123456789abcdef0123456789abcdef"
OTHER_SEED = "fedcba9876543210fedcba9876543210"


@pytest.fixture
def resolver() -> PolicyResolver:
    return PolicyResolver.from_config_dir(CONFIG_DIR)


@pytest.fixture
def state() -> LedgerState:
    s = LedgerState()
    start = datetime(2026, 1, 1, tzinfo=timezone.utc)
    s.epochs[1] = Epoch(number=1, start=start, end=start + timedelta(seconds=90), oracles=("o",))
    s.global_state.epoch = 1
    s.global_state.enabled = True
    s.global_state.initialized = True
    return s


@pytest.fixture
def market(resolver: PolicyResolver) -> BondingCurveMarket:
    units, funds = resolver.market_reserves()
    return BondingCurveMarket(units, funds, resolver.capacity_policy().fee_rate)


@pytest.fixture
def ledger(state, market, resolver) -> ResourceLedger:
    return ResourceLedger(state, market, resolver.capacity_policy(), resolver.issuance_policy())


def _advance_epoch(state: LedgerState) -> None:
    prev = state.epochs[state.current_epoch]
    n = prev.number + 1
    state.epochs[n] = Epoch(number=n, start=prev.end, end=prev.end + timedelta(seconds=90), oracles=("o",))
    state.global_state.epoch = n


class TestTokenIds:
    def test_derivation(self) -> None:
        digest = hashlib.sha256(("0" + SEED).encode()).digest()
        assert derive_token_id(0, SEED) == int.from_bytes(digest[:8], "little")

    def test_index_changes_id(self) -> None:
        assert derive_token_id(0, SEED) != derive_token_id(1, SEED)


class TestIssue:
    def test_new_account_pricing_and_refund(self, ledger, market, resolver, state) -> None:
        cap = resolver.capacity_policy()
        expected_units = 3 * (cap.record_size + cap.purchase_buffer) + cap.account_row + cap.stat_row
        assert ledger.required_units("alice", 3) == expected_units

        expected_cost = market.buy_cost(expected_units)
        funds = Decimal("1.0000")
        outbox = Outbox()
        result = ledger.issue("alice", funds, 3, SEED, outbox)

        assert result.drops == 3
        assert result.epoch == 1
        assert result.cost == expected_cost
        assert result.refund == funds - expected_cost
        assert result.total_drops == 3
        assert result.epoch_drops == 3
        assert list(result.token_ids) == [derive_token_id(i, SEED) for i in range(3)]

        refunds = [m for m in outbox.messages if m.kind == MessageKind.FUNDS_TRANSFER]
        assert len(refunds) == 1
        assert refunds[0].recipient == "alice"
        assert refunds[0].amount == funds - expected_cost

        for token_id in result.token_ids:
            assert state.tokens[token_id].owner == "alice"
            assert state.tokens[token_id].epoch == 1

    def test_surcharges_only_once(self, ledger, resolver, state) -> None:
        cap = resolver.capacity_policy()
        ledger.issue("alice", Decimal("1"), 1, SEED, Outbox())
        assert ledger.required_units("alice", 2) == 2 * (cap.record_size + cap.purchase_buffer)
        _advance_epoch(state)
        assert ledger.required_units("alice", 2) == (
            2 * (cap.record_size + cap.purchase_buffer) + cap.stat_row
        )

    def test_exact_funds_no_refund(self, ledger, market) -> None:
        cost = market.buy_cost(ledger.required_units("alice", 1))
        outbox = Outbox()
        result = ledger.issue("alice", cost, 1, SEED, outbox)
        assert result.refund == Decimal("0")
        assert len(outbox) == 0

    def test_insufficient_funds_rolls_back_reservation(self, ledger, market) -> None:
        reserves = market.reserves
        with pytest.raises(InsufficientFunds) as exc_info:
            ledger.issue("alice", Decimal("0.0001"), 3, SEED, Outbox())
        assert exc_info.value.context["provided"] == "0.0001"
        assert market.reserves == reserves
        assert market.pending_reservations == []
        assert not ledger.has_pending_settlement

    def test_validation(self, ledger) -> None:
        with pytest.raises(ValidationError):
            ledger.issue("alice", Decimal("0"), 1, SEED, Outbox())
        with pytest.raises(ValidationError):
            ledger.issue("alice", Decimal("1"), 0, SEED, Outbox())
        with pytest.raises(ValidationError):
            ledger.issue("alice", Decimal("1"), 1, "too-short", Outbox())

    def test_disabled(self, ledger, state) -> None:
        state.global_state.enabled = False
        with pytest.raises(Disabled):
            ledger.issue("alice", Decimal("1"), 1, SEED, Outbox())

    def test_collision_with_existing_token(self, ledger, market) -> None:
        ledger.issue("alice", Decimal("1"), 2, SEED, Outbox())
        reserves = market.reserves
        with pytest.raises(TokenIdCollision):
            ledger.issue("bob", Decimal("1"), 1, SEED, Outbox())
        assert market.reserves == reserves

    def test_settle_confirms_reservation(self, ledger, market) -> None:
        units = ledger.required_units("alice", 1)
        ledger.issue("alice", Decimal("1"), 1, SEED, Outbox())
        assert len(market.pending_reservations) == 1
        ledger.settle()
        assert market.pending_reservations == []
        assert market.units_held == units

    def test_abandon_rolls_back(self, ledger, market) -> None:
        reserves = market.reserves
        ledger.issue("alice", Decimal("1"), 1, SEED, Outbox())
        ledger.abandon()
        assert market.reserves == reserves
        assert market.units_held == 0


class TestTransfer:
    def test_moves_ownership_and_stats(self, ledger, state) -> None:
        result = ledger.issue("alice", Decimal("1"), 3, SEED, Outbox())
        _advance_epoch(state)
        second = ledger.issue("alice", Decimal("1"), 1, OTHER_SEED, Outbox())

        moving = [result.token_ids[0], second.token_ids[0]]
        outbox = Outbox()
        ledger.transfer("alice", "bob", moving, outbox)

        assert all(state.tokens[t].owner == "bob" for t in moving)
        assert state.accounts["alice"].drops == 2
        assert state.stats[("alice", 1)].drops == 2
        assert state.stats[("alice", 2)].drops == 0
        assert state.accounts["bob"].drops == 2
        assert state.stats[("bob", 1)].drops == 1
        assert state.stats[("bob", 2)].drops == 1
        assert AccountBalanceTracker(state).inconsistent_accounts() == []
        assert [m.recipient for m in outbox.messages] == ["alice", "bob"]
        notice = outbox.messages[0].payload
        assert notice == {"from_account": "alice", "to_account": "bob", "drops": moving}

    def test_not_owner(self, ledger) -> None:
        result = ledger.issue("alice", Decimal("1"), 1, SEED, Outbox())
        with pytest.raises(NotOwner):
            ledger.transfer("bob", "carol", list(result.token_ids), Outbox())

    def test_unknown_token(self, ledger) -> None:
        with pytest.raises(TokenNotFound):
            ledger.transfer("alice", "bob", [12345], Outbox())

    def test_duplicate_ids(self, ledger) -> None:
        result = ledger.issue("alice", Decimal("1"), 1, SEED, Outbox())
        token = result.token_ids[0]
        with pytest.raises(ValidationError):
            ledger.transfer("alice", "bob", [token, token], Outbox())

    def test_no_market_interaction(self, ledger, market) -> None:
        result = ledger.issue("alice", Decimal("1"), 2, SEED, Outbox())
        ledger.settle()
        reserves = market.reserves
        ledger.transfer("alice", "bob", list(result.token_ids), Outbox())
        ledger.settle()
        assert market.reserves == reserves


class TestDestroy:
    def test_round_trip(self, ledger, market, resolver, state) -> None:
        result = ledger.issue("alice", Decimal("1"), 3, SEED, Outbox())
        ledger.settle()
        held = market.units_held
        expected_proceeds = market.sell_proceeds(3 * resolver.capacity_policy().record_size)

        outbox = Outbox()
        destroyed = ledger.destroy("alice", list(result.token_ids), outbox)
        ledger.settle()

        assert destroyed.units_released == 3 * resolver.capacity_policy().record_size
        assert destroyed.proceeds == expected_proceeds
        assert market.units_held == held - destroyed.units_released
        assert state.accounts["alice"].drops == 0
        assert state.stats[("alice", 1)].drops == 0
        assert state.tokens == {}
        payouts = [m for m in outbox.messages if m.kind == MessageKind.FUNDS_TRANSFER]
        assert payouts[0].recipient == "alice"
        assert payouts[0].amount == expected_proceeds

    def test_release_proportional_to_count(self, ledger, resolver) -> None:
        result = ledger.issue("alice", Decimal("1"), 4, SEED, Outbox())
        ledger.settle()
        one = ledger.destroy("alice", [result.token_ids[0]], Outbox())
        ledger.settle()
        two = ledger.destroy("alice", list(result.token_ids[1:3]), Outbox())
        assert two.units_released == 2 * one.units_released

    def test_not_owner(self, ledger) -> None:
        result = ledger.issue("alice", Decimal("1"), 1, SEED, Outbox())
        with pytest.raises(NotOwner):
            ledger.destroy("bob", list(result.token_ids), Outbox())

    def test_empty_request(self, ledger) -> None:
        with pytest.raises(ValidationError):
            ledger.destroy("alice", [], Outbox())


class TestDestroyAll:
    def test_per_owner_proceeds(self, ledger, market, resolver, state) -> None:
        ledger.issue("alice", Decimal("1"), 3, SEED, Outbox())
        ledger.issue("bob", Decimal("1"), 1, OTHER_SEED, Outbox())
        ledger.settle()
        record_size = resolver.capacity_policy().record_size
        alice_quote = market.sell_proceeds(3 * record_size)
        bob_quote = market.sell_proceeds(1 * record_size)

        outbox = Outbox()
        result = ledger.destroy_all(outbox)
        ledger.settle()

        assert result.drops_destroyed == 4
        assert result.units_released == 4 * record_size
        assert result.proceeds_by_owner == {"alice": alice_quote, "bob": bob_quote}
        assert state.tokens == {}
        assert all(a.drops == 0 for a in state.accounts.values())
        assert all(s.drops == 0 for s in state.stats.values())
        assert {m.recipient for m in outbox.messages} == {"alice", "bob"}

    def test_empty_ledger(self, ledger) -> None:
        result = ledger.destroy_all(Outbox())
        assert result.drops_destroyed == 0
        assert result.proceeds_by_owner == {}
        assert not ledger.has_pending_settlement


class TestEnroll:
    def test_creates_zero_stat(self, ledger, state) -> None:
        stat = ledger.enroll("dave", 3)
        assert stat.drops == 0
        assert state.accounts["dave"].drops == 0

    def test_enrolled_account_skips_surcharges(self, ledger, resolver) -> None:
        cap = resolver.capacity_policy()
        ledger.enroll("dave", 1)
        assert ledger.required_units("dave", 1) == cap.record_size + cap.purchase_buffer

    def test_twice_rejected(self, ledger) -> None:
        ledger.enroll("dave", 1)
        with pytest.raises(AlreadyEnrolled):
            ledger.enroll("dave", 1)

    def test_invalid_epoch(self, ledger) -> None:
        with pytest.raises(ValidationError):
            ledger.enroll("dave", 0)
