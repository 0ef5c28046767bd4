"""Capacity market — the priced resource that backs every drop.

The ledger treats the market as an opaque collaborator. It asks for
quotes (buy_cost, sell_proceeds), reserves capacity before it knows the
caller's funds cover it, and then either confirms or rolls back the
reservation:

    reservation = market.reserve(units)     # price moves
    ... mint, then verify funds >= reservation.cost ...
    market.confirm(reservation)             # or market.rollback(reservation)

BondingCurveMarket is an in-memory constant-product market with a
proportional fee, used by the CLI and tests. Any object satisfying the
CapacityMarket protocol can replace it.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_CEILING, ROUND_FLOOR, Decimal
from typing import Any, Protocol
from uuid import uuid4


@dataclass(frozen=True)
class Reservation:
    """Capacity bought but not yet confirmed."""
    reservation_id: str
    units: int
    cost: Decimal  # total charged, fee included
    fee: Decimal


class CapacityMarket(Protocol):
    def buy_cost(self, units: int) -> Decimal: ...

    def sell_proceeds(self, units: int) -> Decimal: ...

    def reserve(self, units: int) -> Reservation: ...

    def confirm(self, reservation: Reservation) -> None: ...

    def rollback(self, reservation: Reservation) -> None: ...

    def release(self, units: int) -> Decimal: ...


class BondingCurveMarket:
    """Constant-product market between capacity units and funds.

    Price of buying ``u`` units from reserves (U units, F funds):
        gross = F * u / (U - u), fee = ceil(gross * fee_rate)
    Proceeds of selling ``u`` units:
        gross = F * u / (U + u), fee = ceil(gross * fee_rate)

    Usage:
        market = BondingCurveMarket(64_000_000_000, Decimal("8000000"), Decimal("0.005"))
        market.buy_cost(1000)
    """

    def __init__(
        self,
        units_reserve: int,
        funds_reserve: Decimal,
        fee_rate: Decimal,
        precision: Decimal = Decimal("0.0001"),
    ) -> None:
        if units_reserve <= 0 or funds_reserve <= Decimal("0"):
            raise ValueError("Market reserves must be positive")
        self._units = units_reserve
        self._funds = funds_reserve
        self._fee_rate = fee_rate
        self._precision = precision
        self._pending: dict[str, Reservation] = {}
        self.fees_collected = Decimal("0")
        self.units_held = 0  # capacity currently owned by the ledger

    # ------------------------------------------------------------------
    # Quotes
    # ------------------------------------------------------------------

    def buy_cost(self, units: int) -> Decimal:
        gross, fee = self._buy_quote(units)
        return gross + fee

    def sell_proceeds(self, units: int) -> Decimal:
        gross, fee = self._sell_quote(units)
        return max(gross - fee, Decimal("0"))

    # ------------------------------------------------------------------
    # Trades
    # ------------------------------------------------------------------

    def reserve(self, units: int) -> Reservation:
        gross, fee = self._buy_quote(units)
        self._units -= units
        self._funds += gross
        self.fees_collected += fee
        self.units_held += units
        reservation = Reservation(
            reservation_id=uuid4().hex[:12],
            units=units,
            cost=gross + fee,
            fee=fee,
        )
        self._pending[reservation.reservation_id] = reservation
        return reservation

    def confirm(self, reservation: Reservation) -> None:
        if self._pending.pop(reservation.reservation_id, None) is None:
            raise ValueError(f"Unknown reservation: {reservation.reservation_id}")

    def rollback(self, reservation: Reservation) -> None:
        """Undo an unconfirmed reservation exactly, restoring the price."""
        if self._pending.pop(reservation.reservation_id, None) is None:
            raise ValueError(f"Unknown reservation: {reservation.reservation_id}")
        self._units += reservation.units
        self._funds -= reservation.cost - reservation.fee
        self.fees_collected -= reservation.fee
        self.units_held -= reservation.units

    def release(self, units: int) -> Decimal:
        """Sell units back to the market; returns proceeds net of fee."""
        if units > self.units_held:
            raise ValueError(f"Cannot release {units} units, only {self.units_held} held")
        gross, fee = self._sell_quote(units)
        self._units += units
        self._funds -= gross
        self.fees_collected += fee
        self.units_held -= units
        return max(gross - fee, Decimal("0"))

    @property
    def pending_reservations(self) -> list[Reservation]:
        return list(self._pending.values())

    @property
    def reserves(self) -> tuple[int, Decimal]:
        return self._units, self._funds

    def to_dict(self) -> dict[str, Any]:
        if self._pending:
            raise ValueError("Cannot serialize a market with pending reservations")
        return {
            "units_reserve": self._units,
            "funds_reserve": str(self._funds),
            "fee_rate": str(self._fee_rate),
            "precision": str(self._precision),
            "fees_collected": str(self.fees_collected),
            "units_held": self.units_held,
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> BondingCurveMarket:
        market = BondingCurveMarket(
            units_reserve=int(data["units_reserve"]),
            funds_reserve=Decimal(data["funds_reserve"]),
            fee_rate=Decimal(data["fee_rate"]),
            precision=Decimal(data["precision"]),
        )
        market.fees_collected = Decimal(data["fees_collected"])
        market.units_held = int(data["units_held"])
        return market

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _buy_quote(self, units: int) -> tuple[Decimal, Decimal]:
        if units <= 0:
            raise ValueError(f"Units must be positive, got {units}")
        if units >= self._units:
            raise ValueError(f"Market cannot supply {units} units")
        gross = self._round_up(self._funds * units / (self._units - units))
        return gross, self._round_up(gross * self._fee_rate)

    def _sell_quote(self, units: int) -> tuple[Decimal, Decimal]:
        if units <= 0:
            raise ValueError(f"Units must be positive, got {units}")
        gross = self._round_down(self._funds * units / (self._units + units))
        return gross, self._round_up(gross * self._fee_rate)

    def _round_up(self, amount: Decimal) -> Decimal:
        return amount.quantize(self._precision, rounding=ROUND_CEILING)

    def _round_down(self, amount: Decimal) -> Decimal:
        return amount.quantize(self._precision, rounding=ROUND_FLOOR)
