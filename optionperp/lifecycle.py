"""
lifecycle.py - Leveraged Position Records and State Transitions

A position moves through exactly one of:

    Open --close/resize--> Closed
    Open --liquidate-----> Liquidated

Collateral changes keep it Open. Closed and liquidated positions are
immutable history.

ARCHITECTURE (Pure Function Pattern):
=====================================

Each transition takes a MarketSnapshot (mark price, time, both pools), the
EngineConfig and the position, and returns a frozen *Outcome holding the new
Position and Pool records plus the amounts that must move. Authorization,
custody transfers and swaps are PerpLedger's job; nothing here mutates.

Key Formulas:
    units    = notional / mark
    floor    = 2 * premium + opening_fee(notional) + closing_fee(notional)
    payout   = max(0, margin + pnl - premium - opening_fees - closing_fees - funding)
    pool    += native(-pnl + funding + closing_fees)            (close)
    pool    += native(margin - margin * liquidation_fee_rate)   (liquidation)
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from typing import Optional

from .config import EngineConfig
from .core import (
    BelowMinimumCollateral, InsufficientLiquidity, InvalidRequest,
    NotCollateralized, PositionNotOpen, SlippageExceeded, Side,
)
from .epoch import LiquidationClaim
from .pool import Pool, pool_after_exit, pool_after_open, pool_with_margin, reserved_exposure, to_native
from .pricing import (
    calculate_closing_fees, calculate_fee, calculate_funding_rate, calculate_is_collateralized,
    calculate_net_margin, calculate_position_funding, calculate_position_pnl,
)
from .units import ZERO, to_decimal, to_price, to_quote, units_for_notional


POSITION_STATE_OPEN = "OPEN"
POSITION_STATE_CLOSED = "CLOSED"
POSITION_STATE_LIQUIDATED = "LIQUIDATED"


# ============================================================================
# RECORDS
# ============================================================================

@dataclass(frozen=True, slots=True)
class Position:
    """
    One leveraged position. is_short and the sizing fields are fixed at open;
    only margin changes while open. Amounts are quote, units are base contracts.
    """
    id: int
    holder: str
    is_short: bool
    position_units: Decimal
    notional_size: Decimal
    average_open_price: Decimal
    margin: Decimal
    premium: Decimal
    opening_fees: Decimal
    opened_at: datetime
    is_open: bool = True
    is_liquidated: bool = False
    closing_fees: Decimal = ZERO
    accrued_funding: Decimal = ZERO
    realized_pnl: Decimal = ZERO
    closed_at: Optional[datetime] = None

    def __post_init__(self):
        """Convert numeric fields to Decimal to ensure type consistency."""
        for name in ('position_units', 'notional_size', 'average_open_price', 'margin',
                     'premium', 'opening_fees', 'closing_fees', 'accrued_funding', 'realized_pnl'):
            value = getattr(self, name)
            if not isinstance(value, Decimal):
                object.__setattr__(self, name, to_decimal(value))

    @property
    def state(self) -> str:
        if self.is_open:
            return POSITION_STATE_OPEN
        return POSITION_STATE_LIQUIDATED if self.is_liquidated else POSITION_STATE_CLOSED

    @property
    def side(self) -> Side:
        """The pool backing this position."""
        return Side.backing(self.is_short)

    @property
    def reserve(self) -> Decimal:
        return reserved_exposure(self.is_short, self.notional_size, self.position_units)


@dataclass(frozen=True, slots=True)
class MarketSnapshot:
    """Everything a transition reads besides the position itself."""
    mark_price: Decimal
    timestamp: datetime
    quote_pool: Pool
    base_pool: Pool

    def pool(self, side: Side) -> Pool:
        return self.quote_pool if side is Side.QUOTE else self.base_pool

    def with_pool(self, pool: Pool) -> 'MarketSnapshot':
        if pool.side is Side.QUOTE:
            return replace(self, quote_pool=pool)
        return replace(self, base_pool=pool)

    def funding_rate(self, config: EngineConfig, is_short: bool) -> Decimal:
        return calculate_funding_rate(
            config, self.base_pool.open_interest, self.quote_pool.open_interest, is_short
        )


@dataclass(frozen=True, slots=True)
class OpenOutcome:
    position: Position
    pool: Pool


@dataclass(frozen=True, slots=True)
class CloseOutcome:
    position: Position
    pool: Pool
    payout: Decimal
    pnl: Decimal
    funding: Decimal
    closing_fees: Decimal


@dataclass(frozen=True, slots=True)
class LiquidationOutcome:
    position: Position
    pool: Pool
    claim: LiquidationClaim
    liquidation_fee: Decimal


@dataclass(frozen=True, slots=True)
class CollateralOutcome:
    position: Position
    pool: Pool


def _require_open(position: Position) -> None:
    if not position.is_open:
        raise PositionNotOpen(f"position {position.id} is {position.state.lower()}")


def _mark_to_market(market: MarketSnapshot, config: EngineConfig, position: Position):
    """(pnl, funding, net_margin, collateralized) for a position at the snapshot."""
    rate = market.funding_rate(config, position.is_short)
    funding = calculate_position_funding(config, position, rate, market.timestamp)
    pnl = calculate_position_pnl(position, market.mark_price)
    net_margin = calculate_net_margin(config, position, pnl, funding)
    return pnl, funding, net_margin, calculate_is_collateralized(config, net_margin, pnl)


# ============================================================================
# TRANSITIONS
# ============================================================================

def open_position(
    market: MarketSnapshot,
    config: EngineConfig,
    position_id: int,
    holder: str,
    is_short: bool,
    notional_size: Decimal,
    collateral: Decimal,
    premium: Decimal,
) -> OpenOutcome:
    """
    Create a position at the mark price.

    Raises:
        InvalidRequest: Non-positive size or collateral, or a size too small to hold one unit tick
        InsufficientLiquidity: The backing pool's free deposits cannot cover the exposure
        BelowMinimumCollateral: Collateral is below 2 * premium + opening and closing fees
    """
    notional_size = to_quote(notional_size)
    collateral = to_quote(collateral)
    if notional_size <= ZERO:
        raise InvalidRequest(f"notional_size must be positive, got {notional_size}")
    if collateral <= ZERO:
        raise InvalidRequest(f"collateral must be positive, got {collateral}")

    mark = to_price(market.mark_price)
    units = units_for_notional(notional_size, mark)
    if units <= ZERO:
        raise InvalidRequest(f"notional_size {notional_size} is below one unit tick at {mark}")

    side = Side.backing(is_short)
    pool = market.pool(side)
    reserve = reserved_exposure(is_short, notional_size, units)
    if reserve > pool.free_liquidity:
        raise InsufficientLiquidity(
            f"{side.value} pool has {pool.free_liquidity} free, position needs {reserve}"
        )

    opening_fees = calculate_fee(config, True, notional_size)
    closing_fees = calculate_fee(config, False, notional_size)
    minimum = 2 * premium + opening_fees + closing_fees
    if collateral < minimum:
        raise BelowMinimumCollateral(
            f"collateral {collateral} below minimum {minimum} "
            f"(premium {premium}, opening fee {opening_fees}, closing fee {closing_fees})"
        )

    position = Position(
        id=position_id,
        holder=holder,
        is_short=is_short,
        position_units=units,
        notional_size=notional_size,
        average_open_price=mark,
        margin=collateral,
        premium=premium,
        opening_fees=opening_fees,
        opened_at=market.timestamp,
    )
    new_pool = pool_after_open(
        pool, notional_size, units, collateral, premium, opening_fees, reserve, mark
    )
    return OpenOutcome(position=position, pool=new_pool)


def close_position(
    market: MarketSnapshot,
    config: EngineConfig,
    position: Position,
    min_amount_out: Decimal = ZERO,
) -> CloseOutcome:
    """
    Realize a position's PnL and funding and release it from its pool.

    Raises:
        PositionNotOpen: If already closed or liquidated
        NotCollateralized: If the position must be liquidated instead
        SlippageExceeded: If the payout is below min_amount_out
    """
    _require_open(position)
    pnl, funding, net_margin, collateralized = _mark_to_market(market, config, position)
    if not collateralized:
        raise NotCollateralized(
            f"position {position.id} is undercollateralized (net margin {net_margin}, pnl {pnl})"
        )

    closing_fees = calculate_closing_fees(config, position.notional_size, pnl)
    payout = to_quote(max(
        position.margin + pnl - position.premium - position.opening_fees - closing_fees - funding,
        ZERO,
    ))
    if payout < to_decimal(min_amount_out):
        raise SlippageExceeded(f"payout {payout} below minimum {min_amount_out}")

    side = position.side
    deposits_delta = to_native(side, -pnl + funding + closing_fees, market.mark_price)
    new_pool = pool_after_exit(
        market.pool(side),
        position.notional_size,
        position.position_units,
        position.margin,
        position.reserve,
        deposits_delta,
        closing_fees,
    )
    closed = replace(
        position,
        is_open=False,
        closing_fees=closing_fees,
        accrued_funding=funding,
        realized_pnl=pnl,
        closed_at=market.timestamp,
    )
    return CloseOutcome(
        position=closed, pool=new_pool, payout=payout,
        pnl=pnl, funding=funding, closing_fees=closing_fees,
    )


def liquidate_position(
    market: MarketSnapshot,
    config: EngineConfig,
    position: Position,
    claim_id: int,
    claim_holder: str,
    epoch: int,
) -> LiquidationOutcome:
    """
    Seize an undercollateralized position's margin and issue a claim.

    The claim is a put for a short and a call for a long, struck at the
    position's entry price for its contract count, expiring with `epoch`.

    Raises:
        PositionNotOpen: If already closed or liquidated
        NotCollateralized: If the position is still collateralized
    """
    _require_open(position)
    pnl, funding, net_margin, collateralized = _mark_to_market(market, config, position)
    if collateralized:
        raise NotCollateralized(
            f"position {position.id} is collateralized (net margin {net_margin}, pnl {pnl}); "
            f"cannot liquidate"
        )

    liquidation_fee = to_quote(position.margin * config.liquidation_fee_rate)
    side = position.side
    deposits_delta = to_native(side, position.margin - liquidation_fee, market.mark_price)
    new_pool = pool_after_exit(
        market.pool(side),
        position.notional_size,
        position.position_units,
        position.margin,
        position.reserve,
        deposits_delta,
    )
    liquidated = replace(
        position,
        is_open=False,
        is_liquidated=True,
        accrued_funding=funding,
        realized_pnl=-position.margin,
        closed_at=market.timestamp,
    )
    claim = LiquidationClaim(
        id=claim_id,
        holder=claim_holder,
        position_id=position.id,
        is_put=position.is_short,
        notional_amount=position.position_units,
        strike=position.average_open_price,
        epoch=epoch,
    )
    return LiquidationOutcome(
        position=liquidated, pool=new_pool, claim=claim, liquidation_fee=liquidation_fee,
    )


def change_collateral(
    market: MarketSnapshot,
    config: EngineConfig,
    position: Position,
    delta: Decimal,
) -> CollateralOutcome:
    """
    Add (delta > 0) or withdraw (delta < 0) margin.

    Adding is always allowed. Withdrawing must stay within the pool's and the
    position's margin and leave the position collateralized.

    Raises:
        PositionNotOpen: If already closed or liquidated
        InvalidRequest: Zero delta, or a withdrawal larger than the margin held
        NotCollateralized: If the withdrawal would leave the position undercollateralized
    """
    _require_open(position)
    delta = to_quote(delta)
    if delta == ZERO:
        raise InvalidRequest("collateral change must be non-zero")

    pool = market.pool(position.side)
    if delta < ZERO:
        amount = -delta
        if amount > pool.margin:
            raise InvalidRequest(f"amount {amount} exceeds {pool.side.value} pool margin {pool.margin}")
        if amount > position.margin:
            raise InvalidRequest(f"amount {amount} exceeds position {position.id} margin {position.margin}")

    updated = replace(position, margin=to_quote(position.margin + delta))
    if delta < ZERO:
        pnl, _, net_margin, collateralized = _mark_to_market(market, config, updated)
        if not collateralized:
            raise NotCollateralized(
                f"withdrawing {-delta} leaves position {position.id} undercollateralized "
                f"(net margin {net_margin}, pnl {pnl})"
            )
    return CollateralOutcome(position=updated, pool=pool_with_margin(pool, delta))
