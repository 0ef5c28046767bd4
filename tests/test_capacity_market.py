"""Tests for the bonding-curve capacity market — proves reserve/confirm/rollback semantics."""

from decimal import Decimal

import pytest

from drops.market.capacity import BondingCurveMarket


def _market() -> BondingCurveMarket:
    return BondingCurveMarket(
        units_reserve=1_000_000,
        funds_reserve=Decimal("1000.0000"),
        fee_rate=Decimal("0.005"),
    )


class TestQuotes:
    def test_buy_cost_includes_fee(self) -> None:
        market = _market()
        # gross = 1000 * 1000 / 999000 = 1.001001.. -> 1.0011; fee = ceil(0.0050055) -> 0.0051
        assert market.buy_cost(1000) == Decimal("1.0062")

    def test_sell_proceeds_net_of_fee(self) -> None:
        market = _market()
        # gross = 1000 * 1000 / 1001000 = 0.999000.. -> 0.9990; fee = ceil(0.004995) -> 0.0050
        assert market.sell_proceeds(1000) == Decimal("0.9940")

    def test_price_rises_with_size(self) -> None:
        market = _market()
        assert market.buy_cost(2000) > 2 * market.buy_cost(1000) - Decimal("0.0002")

    def test_non_positive_units_rejected(self) -> None:
        with pytest.raises(ValueError):
            _market().buy_cost(0)

    def test_cannot_buy_entire_reserve(self) -> None:
        with pytest.raises(ValueError):
            _market().reserve(1_000_000)

    def test_invalid_reserves(self) -> None:
        with pytest.raises(ValueError):
            BondingCurveMarket(0, Decimal("1"), Decimal("0"))


class TestReservations:
    def test_reserve_moves_price(self) -> None:
        market = _market()
        before = market.buy_cost(1000)
        reservation = market.reserve(5000)
        assert market.buy_cost(1000) > before
        assert market.units_held == 5000
        assert market.pending_reservations == [reservation]

    def test_rollback_restores_exactly(self) -> None:
        market = _market()
        reserves = market.reserves
        reservation = market.reserve(5000)
        market.rollback(reservation)
        assert market.reserves == reserves
        assert market.units_held == 0
        assert market.fees_collected == Decimal("0")
        assert market.pending_reservations == []

    def test_confirm_keeps_purchase(self) -> None:
        market = _market()
        reservation = market.reserve(5000)
        market.confirm(reservation)
        assert market.units_held == 5000
        assert market.pending_reservations == []

    def test_unknown_reservation(self) -> None:
        market = _market()
        reservation = market.reserve(10)
        market.confirm(reservation)
        with pytest.raises(ValueError):
            market.rollback(reservation)


class TestRelease:
    def test_release_pays_quote(self) -> None:
        market = _market()
        market.confirm(market.reserve(5000))
        quote = market.sell_proceeds(1000)
        assert market.release(1000) == quote
        assert market.units_held == 4000

    def test_cannot_release_more_than_held(self) -> None:
        market = _market()
        with pytest.raises(ValueError):
            market.release(1)


class TestSerialization:
    def test_round_trip(self) -> None:
        market = _market()
        market.confirm(market.reserve(5000))
        restored = BondingCurveMarket.from_dict(market.to_dict())
        assert restored.reserves == market.reserves
        assert restored.units_held == market.units_held
        assert restored.fees_collected == market.fees_collected
        assert restored.buy_cost(100) == market.buy_cost(100)

    def test_pending_reservation_blocks_serialization(self) -> None:
        market = _market()
        market.reserve(10)
        with pytest.raises(ValueError):
            market.to_dict()
