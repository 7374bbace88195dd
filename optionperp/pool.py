"""
pool.py - Liquidity Pool Records, NAV and Share Pricing

Each side of the market has one Pool. The pool is the counterparty to every
position it collateralizes: the quote pool backs shorts, the base pool backs
longs.

ARCHITECTURE:
    Pool is a frozen dataclass. Every transition below takes a Pool and
    returns a new one; nothing here touches PerpLedger or custody.

Key Formulas:
    free_liquidity = total_deposits - active_deposits
    unrealized_pnl (quote pool, shorts) = open_interest - units * mark
    unrealized_pnl (base pool, longs)   = units * mark - open_interest
    NAV(side) = total_deposits(side) - unrealized_pnl(opposite side) in side's units
    shares_out = amount_in * share_supply / NAV   (par when NAV or supply is zero)
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from decimal import Decimal

from .core import Side, InsufficientLiquidity
from .units import (
    ZERO, notional_value, price_for, quote_to_base,
    to_base, to_decimal, to_quote, to_units, to_price,
)


_DECIMAL_FIELDS = (
    'total_deposits', 'active_deposits', 'margin', 'premium', 'opening_fees',
    'closing_fees', 'open_interest', 'position_units', 'average_open_price',
)


@dataclass(frozen=True, slots=True)
class Pool:
    """
    Aggregate state of one side's liquidity pool.

    total_deposits and active_deposits are in the pool's native asset; every
    other amount is quote-denominated except position_units (base contracts).
    """
    side: Side
    total_deposits: Decimal = ZERO
    active_deposits: Decimal = ZERO
    margin: Decimal = ZERO
    premium: Decimal = ZERO
    opening_fees: Decimal = ZERO
    closing_fees: Decimal = ZERO
    open_interest: Decimal = ZERO
    position_units: Decimal = ZERO
    average_open_price: Decimal = ZERO

    def __post_init__(self):
        """Convert numeric fields to Decimal to ensure type consistency."""
        for name in _DECIMAL_FIELDS:
            value = getattr(self, name)
            if not isinstance(value, Decimal):
                object.__setattr__(self, name, to_decimal(value))

    @property
    def free_liquidity(self) -> Decimal:
        return self.total_deposits - self.active_deposits

    @property
    def has_open_positions(self) -> bool:
        return self.position_units > ZERO


def to_native(side: Side, quote_amount: Decimal, price: Decimal) -> Decimal:
    """Express a quote-denominated amount in a pool's native units."""
    if side is Side.QUOTE:
        return to_quote(quote_amount)
    return quote_to_base(quote_amount, price)


def reserved_exposure(is_short: bool, notional_size: Decimal, position_units: Decimal) -> Decimal:
    """
    Deposits a position locks in its backing pool, in that pool's units.

    A short is backed by its quote notional; a long by its base contracts.
    """
    if is_short:
        return to_quote(notional_size)
    return to_base(position_units)


# ============================================================================
# NAV AND SHARE PRICING
# ============================================================================

def calculate_unrealized_pnl(pool: Pool, mark_price: Decimal) -> Decimal:
    """Trader-side PnL of all positions a pool collateralizes, in quote."""
    if not pool.has_open_positions:
        return to_quote(ZERO)
    value = notional_value(pool.position_units, mark_price)
    if pool.side is Side.QUOTE:
        return to_quote(pool.open_interest - value)
    return to_quote(value - pool.open_interest)


def calculate_net_asset_value(pool: Pool, opposite: Pool, mark_price: Decimal) -> Decimal:
    """
    Redeemable value of a pool in its native units.

    Subtracts the unrealized PnL carried by the opposite side's aggregates,
    converted into this pool's units at the mark price.
    """
    if pool.side is opposite.side:
        raise ValueError(f"opposite pool must be the other side, got {opposite.side}")
    pnl = calculate_unrealized_pnl(opposite, mark_price)
    if pool.side is Side.QUOTE:
        return to_quote(pool.total_deposits - pnl)
    return to_base(pool.total_deposits - quote_to_base(pnl, mark_price))


def calculate_shares_for_deposit(
    side: Side, amount_in: Decimal, share_supply: Decimal, nav: Decimal
) -> Decimal:
    """LP shares minted for a deposit of `amount_in` native units."""
    if nav == ZERO or share_supply == ZERO:
        return native_amount(side, amount_in)
    if nav < ZERO:
        raise InsufficientLiquidity(f"{side.value} pool NAV is negative ({nav}); deposits are suspended")
    return native_amount(side, amount_in * share_supply / nav)


def calculate_withdrawal_amount(
    side: Side, lp_amount: Decimal, share_supply: Decimal, nav: Decimal
) -> Decimal:
    """Native units redeemed for `lp_amount` shares; never negative."""
    if share_supply == ZERO or nav <= ZERO:
        return native_amount(side, ZERO)
    return native_amount(side, lp_amount * nav / share_supply)


def native_amount(side: Side, amount: Decimal) -> Decimal:
    return to_quote(amount) if side is Side.QUOTE else to_base(amount)


# ============================================================================
# POOL TRANSITIONS
# ============================================================================

def pool_after_open(
    pool: Pool,
    notional_size: Decimal,
    position_units: Decimal,
    margin: Decimal,
    premium: Decimal,
    opening_fees: Decimal,
    reserve: Decimal,
    mark_price: Decimal,
) -> Pool:
    """Add a new position to a pool's aggregates."""
    open_interest = to_quote(pool.open_interest + notional_size)
    units = to_units(pool.position_units + position_units)
    if pool.has_open_positions:
        average = price_for(open_interest, units)
    else:
        average = to_price(mark_price)
    return replace(
        pool,
        active_deposits=native_amount(pool.side, pool.active_deposits + reserve),
        margin=to_quote(pool.margin + margin),
        premium=to_quote(pool.premium + premium),
        opening_fees=to_quote(pool.opening_fees + opening_fees),
        open_interest=open_interest,
        position_units=units,
        average_open_price=average,
    )


def pool_after_exit(
    pool: Pool,
    notional_size: Decimal,
    position_units: Decimal,
    margin: Decimal,
    reserve: Decimal,
    deposits_delta: Decimal,
    closing_fees: Decimal = ZERO,
) -> Pool:
    """
    Remove a closed or liquidated position from a pool's aggregates.

    deposits_delta is in native units: positive when the pool earns,
    negative when it pays the trader.
    """
    open_interest = to_quote(pool.open_interest - notional_size)
    units = to_units(pool.position_units - position_units)
    if units <= ZERO:
        open_interest, units = to_quote(ZERO), to_units(ZERO)
    return replace(
        pool,
        total_deposits=native_amount(pool.side, pool.total_deposits + deposits_delta),
        active_deposits=native_amount(pool.side, max(pool.active_deposits - reserve, ZERO)),
        margin=to_quote(pool.margin - margin),
        closing_fees=to_quote(pool.closing_fees + closing_fees),
        open_interest=open_interest,
        position_units=units,
        average_open_price=price_for(open_interest, units),
    )


def pool_with_margin(pool: Pool, delta: Decimal) -> Pool:
    return replace(pool, margin=to_quote(pool.margin + delta))


def pool_with_deposits(pool: Pool, delta: Decimal) -> Pool:
    return replace(pool, total_deposits=native_amount(pool.side, pool.total_deposits + delta))
