"""
pricing.py - Premium, Fees, Funding and Margin Arithmetic

Stateless functions over oracle inputs and position/pool records.

ARCHITECTURE (Pure Function Pattern):
=====================================

1. PURE CALCULATION FUNCTIONS (calculate_*):
   - Take every input explicitly (records, prices, config)
   - No PerpView, no hidden state

2. CONVENIENCE FUNCTIONS (assess_position, funding_rate_for):
   - Read what they need from a PerpView once
   - Call the calculate_* functions
   - Return a frozen PositionHealth snapshot

Key Formulas:
    value       = units * mark
    pnl         = notional - value (short) | value - notional (long)
    funding     = (notional - margin) * rate * elapsed / year
    net_margin  = margin - premium - opening_fees - closing_fee(max(0, notional + pnl)) - funding
    safety      = max(0, net_margin - net_margin * threshold)
    liq_price   = avg + safety / units (short) | avg - safety / units (long)
    collateralized <=> (net_margin - net_margin * threshold) + pnl >= 0

The liquidation price is a linear break-even estimate around the entry
price. It is intentionally not the exact root of net_margin + pnl.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING
import logging

from .config import EngineConfig
from .core import (
    OptionPricer, PerpView, PositionNotOpen, Side, VolatilityOracle,
)
from .units import (
    ZERO, annualized, notional_value, to_decimal, to_fee, to_price, to_quote, to_rate,
)

if TYPE_CHECKING:
    from .lifecycle import Position


logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class PositionHealth:
    """
    Immutable mark-to-market snapshot of one open position.

    All amounts are quote-denominated except the prices (quote per base).
    """
    position_id: int
    mark_price: Decimal
    value: Decimal
    pnl: Decimal
    funding_rate: Decimal
    funding: Decimal
    estimated_closing_fees: Decimal
    net_margin: Decimal
    liquidation_price: Decimal
    is_collateralized: bool


# ============================================================================
# PREMIUM AND FEES
# ============================================================================

def calculate_premium(
    pricer: OptionPricer,
    volatility_oracle: VolatilityOracle,
    mark_price: Decimal,
    notional_size: Decimal,
    expiry: datetime,
    is_put: bool = False,
) -> Decimal:
    """
    At-the-money option premium for a notional, in quote.

    Strike and spot are both the mark price; the per-unit option price is
    scaled by notional / strike.
    """
    strike = to_price(mark_price)
    volatility = to_decimal(volatility_oracle.implied_volatility(strike))
    unit_price = to_decimal(pricer.option_price(is_put, expiry, strike, strike, volatility))
    if not unit_price.is_finite() or unit_price < ZERO:
        raise ValueError(f"option pricer returned invalid price {unit_price}")
    premium = to_quote(unit_price * to_decimal(notional_size) / strike)
    logger.debug("premium strike=%s vol=%s unit=%s notional=%s -> %s",
                 strike, volatility, unit_price, notional_size, premium)
    return premium


def calculate_fee(config: EngineConfig, is_opening: bool, notional: Decimal) -> Decimal:
    """Linear fee on a quote notional; zero for non-positive notionals."""
    notional = to_decimal(notional)
    if notional <= ZERO:
        return to_fee(ZERO)
    rate = config.opening_fee_rate if is_opening else config.closing_fee_rate
    return to_fee(notional * rate)


def calculate_closing_fees(config: EngineConfig, notional_size: Decimal, pnl: Decimal) -> Decimal:
    """Closing fee charged on notional + PnL, never on a negative amount."""
    return calculate_fee(config, False, max(notional_size + pnl, ZERO))


# ============================================================================
# FUNDING
# ============================================================================

def calculate_funding_rate(
    config: EngineConfig,
    long_open_interest: Decimal,
    short_open_interest: Decimal,
    is_short: bool,
) -> Decimal:
    """
    Annual funding rate for one side.

    The long rate rises linearly from min to max as long OI approaches short
    OI and stays at max beyond it. Shorts receive the negated long rate.
    """
    if short_open_interest <= ZERO:
        long_rate = config.min_funding_rate
    else:
        ratio = to_decimal(long_open_interest) / to_decimal(short_open_interest)
        if ratio >= Decimal("1"):
            long_rate = config.max_funding_rate
        else:
            spread = config.max_funding_rate - config.min_funding_rate
            long_rate = config.min_funding_rate + spread * ratio
    long_rate = to_rate(long_rate)
    return -long_rate if is_short else long_rate


def calculate_position_funding(
    config: EngineConfig, position: 'Position', rate: Decimal, now: datetime
) -> Decimal:
    """
    Funding accrued on the borrowed part of a position since it opened.

    Borrowed = notional - margin. Over-collateralized positions have negative
    borrowing and therefore earn funding instead of paying it.
    """
    elapsed = int((now - position.opened_at).total_seconds())
    if elapsed <= 0:
        return to_quote(ZERO)
    borrowed = position.notional_size - position.margin
    return annualized(borrowed, rate, elapsed, config.funding_days_per_year)


# ============================================================================
# VALUE, PNL, MARGIN
# ============================================================================

def calculate_position_value(position: 'Position', mark_price: Decimal) -> Decimal:
    return notional_value(position.position_units, mark_price)


def calculate_position_pnl(position: 'Position', mark_price: Decimal) -> Decimal:
    """Trader PnL at the mark price; positive means profit."""
    value = calculate_position_value(position, mark_price)
    if position.is_short:
        return to_quote(position.notional_size - value)
    return to_quote(value - position.notional_size)


def calculate_net_margin(
    config: EngineConfig, position: 'Position', pnl: Decimal, funding: Decimal
) -> Decimal:
    closing_fees = calculate_closing_fees(config, position.notional_size, pnl)
    return to_quote(
        position.margin
        - position.premium
        - position.opening_fees
        - closing_fees
        - funding
    )


def shrink_net_margin(config: EngineConfig, net_margin: Decimal) -> Decimal:
    """Net margin minus the liquidation safety buffer. Not clamped."""
    return to_quote(net_margin - net_margin * config.liquidation_threshold)


def calculate_liquidation_price(
    config: EngineConfig, position: 'Position', net_margin: Decimal
) -> Decimal:
    """Linear break-even price of the safety margin around the entry price."""
    safety = max(shrink_net_margin(config, net_margin), ZERO)
    if position.position_units <= ZERO:
        return to_price(position.average_open_price)
    move = safety / position.position_units
    if position.is_short:
        return to_price(position.average_open_price + move)
    return to_price(max(position.average_open_price - move, ZERO))


def calculate_is_collateralized(config: EngineConfig, net_margin: Decimal, pnl: Decimal) -> bool:
    return shrink_net_margin(config, net_margin) + pnl >= ZERO


# ============================================================================
# CONVENIENCE FUNCTIONS - read from a PerpView
# ============================================================================

def funding_rate_for(view: PerpView, is_short: bool) -> Decimal:
    """Current funding rate for a side, from both pools' open interest."""
    long_oi = view.get_pool(Side.BASE).open_interest
    short_oi = view.get_pool(Side.QUOTE).open_interest
    return calculate_funding_rate(view.config, long_oi, short_oi, is_short)


def assess_position(view: PerpView, position_id: int) -> PositionHealth:
    """
    Mark an open position to market.

    Raises:
        PositionNotOpen: If the position is closed or liquidated
    """
    position = view.get_position(position_id)
    if not position.is_open:
        raise PositionNotOpen(f"position {position_id} is not open")

    config = view.config
    mark = to_price(view.mark_price())
    rate = funding_rate_for(view, position.is_short)
    funding = calculate_position_funding(config, position, rate, view.current_time)
    pnl = calculate_position_pnl(position, mark)
    net_margin = calculate_net_margin(config, position, pnl, funding)

    return PositionHealth(
        position_id=position_id,
        mark_price=mark,
        value=calculate_position_value(position, mark),
        pnl=pnl,
        funding_rate=rate,
        funding=funding,
        estimated_closing_fees=calculate_closing_fees(config, position.notional_size, pnl),
        net_margin=net_margin,
        liquidation_price=calculate_liquidation_price(config, position, net_margin),
        is_collateralized=calculate_is_collateralized(config, net_margin, pnl),
    )
