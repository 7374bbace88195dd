"""
epoch.py - Pricing Epochs and Liquidation Claim Settlement

The engine runs in epochs. Each epoch has an expiry; once it passes, an
external trigger rolls the clock forward and freezes the mark price as that
epoch's expiry price. Liquidation claims minted during an epoch settle
against its frozen price.

Claim payoff:
    call: max(0, expiry_price - strike) * amount, paid in base from the base pool
    put:  max(0, strike - expiry_price) * amount, paid in quote from the quote pool
"""

from __future__ import annotations
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from typing import Dict, Optional

from .core import (
    EpochNotExpired, InsufficientLiquidity, InvalidRequest, Side, TooEarly, WorthlessClaim,
)
from .pool import Pool, pool_with_deposits
from .units import ZERO, quote_to_base, to_decimal, to_price, to_quote


@dataclass(frozen=True, slots=True)
class EpochState:
    """
    Epoch counter, current expiry and the frozen expiry price of every
    finished epoch. Epoch 0 means the engine has not been bootstrapped.
    """
    current_epoch: int = 0
    current_expiry: Optional[datetime] = None
    expiry_prices: Dict[int, Decimal] = field(default_factory=dict)

    @property
    def is_started(self) -> bool:
        return self.current_epoch > 0

    def expiry_price(self, epoch: int) -> Optional[Decimal]:
        return self.expiry_prices.get(epoch)


@dataclass(frozen=True, slots=True)
class LiquidationClaim:
    """
    Option-style receipt issued to the holder of a liquidated position.

    notional_amount is the liquidated position's contract count (base units);
    strike is its average open price.
    """
    id: int
    holder: str
    position_id: int
    is_put: bool
    notional_amount: Decimal
    strike: Decimal
    epoch: int
    is_settled: bool = False
    payout: Decimal = ZERO

    def __post_init__(self):
        """Convert numeric fields to Decimal to ensure type consistency."""
        for name in ('notional_amount', 'strike', 'payout'):
            value = getattr(self, name)
            if not isinstance(value, Decimal):
                object.__setattr__(self, name, to_decimal(value))

    @property
    def paying_side(self) -> Side:
        return Side.QUOTE if self.is_put else Side.BASE


@dataclass(frozen=True, slots=True)
class SettlementOutcome:
    claim: LiquidationClaim
    pool: Pool
    payoff: Decimal         # quote
    amount_out: Decimal     # native units of pool.side


def advance_epoch(
    state: EpochState, now: datetime, next_expiry: datetime, mark_price: Decimal
) -> EpochState:
    """
    Close the current epoch at the mark price and open the next one.

    The first call bootstraps epoch 1 and records no price.

    Raises:
        EpochNotExpired: If the current expiry has not passed
        InvalidRequest: If next_expiry is not in the future
    """
    if state.current_expiry is not None and now <= state.current_expiry:
        raise EpochNotExpired(
            f"epoch {state.current_epoch} expires at {state.current_expiry}, now is {now}"
        )
    if next_expiry <= now:
        raise InvalidRequest(f"next expiry {next_expiry} must be after {now}")

    prices = dict(state.expiry_prices)
    if state.is_started:
        prices[state.current_epoch] = to_price(mark_price)
    return EpochState(
        current_epoch=state.current_epoch + 1,
        current_expiry=next_expiry,
        expiry_prices=prices,
    )


def calculate_claim_payoff(claim: LiquidationClaim, expiry_price: Decimal) -> Decimal:
    """Intrinsic value of a claim at the expiry price, in quote. Never negative."""
    if claim.is_put:
        intrinsic = claim.strike - expiry_price
    else:
        intrinsic = expiry_price - claim.strike
    return to_quote(max(intrinsic, ZERO) * claim.notional_amount)


def settle_claim(state: EpochState, claim: LiquidationClaim, pool: Pool) -> SettlementOutcome:
    """
    Pay out a claim from the pool matching its option type.

    A claim with no positive payoff is rejected and stays unsettled.

    Raises:
        InvalidRequest: If already settled or the wrong pool is passed
        TooEarly: If the claim's epoch has no expiry price
        WorthlessClaim: If the payoff is zero
        InsufficientLiquidity: If the pool's free deposits cannot cover the payout
    """
    if claim.is_settled:
        raise InvalidRequest(f"claim {claim.id} already settled")
    if pool.side is not claim.paying_side:
        raise InvalidRequest(f"claim {claim.id} pays from the {claim.paying_side.value} pool")

    expiry_price = state.expiry_price(claim.epoch)
    if expiry_price is None:
        raise TooEarly(f"epoch {claim.epoch} has no expiry price yet")

    payoff = calculate_claim_payoff(claim, expiry_price)
    if payoff <= ZERO:
        kind = "put" if claim.is_put else "call"
        raise WorthlessClaim(
            f"claim {claim.id} ({kind} struck at {claim.strike}) expired worthless at {expiry_price}"
        )

    if claim.is_put:
        amount_out = payoff
    else:
        amount_out = quote_to_base(payoff, expiry_price)
    if amount_out > pool.free_liquidity:
        raise InsufficientLiquidity(
            f"{pool.side.value} pool has {pool.free_liquidity} free, claim {claim.id} needs {amount_out}"
        )

    return SettlementOutcome(
        claim=replace(claim, is_settled=True, payout=payoff),
        pool=pool_with_deposits(pool, -amount_out),
        payoff=payoff,
        amount_out=amount_out,
    )
