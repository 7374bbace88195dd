"""
oracles.py - Reference Price and Volatility Oracles

Simple in-process implementations of the PriceOracle and VolatilityOracle
protocols, for simulations and tests.

Classes:
- StaticPriceOracle: a mark price that changes only when updated
- TimeSeriesPriceOracle: the most recent observation at or before the clock
- FlatVolatilityOracle: one implied volatility for every strike
- StrikeVolatilityOracle: a volatility per strike, nearest-lower lookup
"""

from bisect import bisect_right
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Tuple

from .units import to_decimal


def _positive(value, what: str) -> Decimal:
    value = to_decimal(value)
    if not value.is_finite() or value <= 0:
        raise ValueError(f"{what} must be positive and finite, got {value}")
    return value


class StaticPriceOracle:
    """Mark price fixed until update_price() is called."""

    def __init__(self, price: Decimal):
        self.price = _positive(price, "price")

    def current_mark_price(self) -> Decimal:
        return self.price

    def update_price(self, price: Decimal) -> None:
        self.price = _positive(price, "price")

    def __repr__(self):
        return f"StaticPriceOracle({self.price})"


class TimeSeriesPriceOracle:
    """
    Mark price taken from a price history at the time given by `clock()`.

    Uses the most recent observation at or before the clock. Supports
    incremental add_price() and batch initialization with a full path.
    """

    def __init__(
        self,
        clock: Callable[[], datetime],
        price_path: Optional[List[Tuple[datetime, Decimal]]] = None,
    ):
        self.clock = clock
        self.price_history: List[Tuple[datetime, Decimal]] = []
        if price_path:
            self.price_history = sorted(
                ((ts, _positive(p, "price")) for ts, p in price_path), key=lambda x: x[0]
            )

    def add_price(self, timestamp: datetime, price: Decimal) -> None:
        self.price_history.append((timestamp, _positive(price, "price")))
        self.price_history.sort(key=lambda x: x[0])

    def get_price(self, timestamp: datetime) -> Optional[Decimal]:
        """Price at or before `timestamp`; None if the history starts later."""
        timestamps = [ts for ts, _ in self.price_history]
        idx = bisect_right(timestamps, timestamp)
        if idx == 0:
            return None
        return self.price_history[idx - 1][1]

    def current_mark_price(self) -> Decimal:
        now = self.clock()
        price = self.get_price(now)
        if price is None:
            raise LookupError(f"no price observation at or before {now}")
        return price

    def __repr__(self):
        return f"TimeSeriesPriceOracle({len(self.price_history)} observations)"


class FlatVolatilityOracle:
    """The same implied volatility for every strike."""

    def __init__(self, volatility: Decimal):
        self.volatility = _positive(volatility, "volatility")

    def implied_volatility(self, strike: Decimal) -> Decimal:
        return self.volatility

    def __repr__(self):
        return f"FlatVolatilityOracle({self.volatility})"


class StrikeVolatilityOracle:
    """
    Volatility smile given as strike -> volatility points.

    A strike between two points takes the lower point's volatility; strikes
    below the first point take the first.
    """

    def __init__(self, smile: Dict[Decimal, Decimal]):
        if not smile:
            raise ValueError("smile must contain at least one point")
        points = sorted((_positive(k, "strike"), _positive(v, "volatility")) for k, v in smile.items())
        self.strikes = [k for k, _ in points]
        self.volatilities = [v for _, v in points]

    def implied_volatility(self, strike: Decimal) -> Decimal:
        idx = bisect_right(self.strikes, to_decimal(strike))
        return self.volatilities[max(idx - 1, 0)]

    def __repr__(self):
        return f"StrikeVolatilityOracle({len(self.strikes)} points)"
