"""Capacity market — the priced resource backing every drop."""

from drops.market.capacity import BondingCurveMarket, CapacityMarket, Reservation

__all__ = ["BondingCurveMarket", "CapacityMarket", "Reservation"]
