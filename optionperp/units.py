"""
units.py - Fixed-Point Scales and Cross-Asset Conversions

Every amount the engine stores is a Decimal quantized to one of a handful of
scales. Quantization happens at the boundary of each calculation, never in
the middle of one, so intermediate products keep the full 50-digit context.

Scales:
    RATE   - fractions (fees, funding, thresholds), 8 decimals
    UNITS  - position contract count, denominated in base asset, 8 decimals
    QUOTE  - quote asset amounts, 6 decimals
    BASE   - base asset amounts, 18 decimals
    PRICE  - quote per base, 8 decimals
    FEES   - fees charged in quote, 6 decimals, always rounded up

Amounts round toward zero (ROUND_DOWN), which truncates signed PnL and
funding symmetrically. Fees round up so the pool never undercharges.
"""

from __future__ import annotations
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_EVEN, ROUND_UP
from typing import Union

Number = Union[Decimal, int, float, str]

ZERO = Decimal("0")

SCALE_RATE = 'RATE'
SCALE_UNITS = 'UNITS'
SCALE_QUOTE = 'QUOTE'
SCALE_BASE = 'BASE'
SCALE_PRICE = 'PRICE'
SCALE_FEES = 'FEES'

DECIMAL_PRECISION = {
    SCALE_RATE: 8,
    SCALE_UNITS: 8,
    SCALE_QUOTE: 6,
    SCALE_BASE: 18,
    SCALE_PRICE: 8,
    SCALE_FEES: 6,
}

DECIMAL_ROUNDING = {
    SCALE_RATE: ROUND_HALF_EVEN,
    SCALE_UNITS: ROUND_DOWN,
    SCALE_QUOTE: ROUND_DOWN,
    SCALE_BASE: ROUND_DOWN,
    SCALE_PRICE: ROUND_DOWN,
    SCALE_FEES: ROUND_UP,
}

SECONDS_PER_DAY = 86_400
DAYS_PER_YEAR = 365


def to_decimal(value: Number) -> Decimal:
    """Convert a number to Decimal without binary float artifacts."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def quantize(value: Number, scale: str) -> Decimal:
    """Quantize a value to the precision and rounding of a named scale."""
    value = to_decimal(value)
    if not value.is_finite():
        raise ValueError(f"cannot quantize non-finite value {value}")
    quantizer = Decimal(10) ** -DECIMAL_PRECISION[scale]
    return value.quantize(quantizer, rounding=DECIMAL_ROUNDING[scale])


def to_rate(value: Number) -> Decimal:
    return quantize(value, SCALE_RATE)


def to_units(value: Number) -> Decimal:
    return quantize(value, SCALE_UNITS)


def to_quote(value: Number) -> Decimal:
    return quantize(value, SCALE_QUOTE)


def to_base(value: Number) -> Decimal:
    return quantize(value, SCALE_BASE)


def to_price(value: Number) -> Decimal:
    return quantize(value, SCALE_PRICE)


def to_fee(value: Number) -> Decimal:
    return quantize(value, SCALE_FEES)


# ============================================================================
# CONVERSIONS
# ============================================================================

def _require_price(price: Decimal) -> Decimal:
    price = to_decimal(price)
    if not price.is_finite() or price <= ZERO:
        raise ValueError(f"price must be positive and finite, got {price}")
    return price


def quote_to_base(amount: Number, price: Number) -> Decimal:
    """Convert a quote amount into base units at `price` (quote per base)."""
    return to_base(to_decimal(amount) / _require_price(price))


def base_to_quote(amount: Number, price: Number) -> Decimal:
    """Convert a base amount into quote units at `price`."""
    return to_quote(to_decimal(amount) * _require_price(price))


def units_for_notional(notional: Number, price: Number) -> Decimal:
    """Contract count for a quote-denominated notional at `price`."""
    return to_units(to_decimal(notional) / _require_price(price))


def notional_value(units: Number, price: Number) -> Decimal:
    """Quote value of a contract count at `price`."""
    return to_quote(to_decimal(units) * to_decimal(price))


def price_for(open_interest: Number, units: Number) -> Decimal:
    """Blended price of an aggregate; 0 when there are no units."""
    units = to_decimal(units)
    if units == ZERO:
        return to_price(ZERO)
    return to_price(to_decimal(open_interest) / units)


def annualized(
    amount: Number, rate: Number, elapsed_seconds: Number, days_per_year: int = DAYS_PER_YEAR
) -> Decimal:
    """Linear accrual of `rate` per year on `amount` over `elapsed_seconds`."""
    year = Decimal(days_per_year * SECONDS_PER_DAY)
    return to_quote(to_decimal(amount) * to_decimal(rate) * to_decimal(elapsed_seconds) / year)
