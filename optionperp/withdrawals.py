"""
withdrawals.py - Two-Phase LP Share Redemption

Withdrawals are requested first and fulfilled later, by anyone. The
requester's LP shares are escrowed at request time; the amount out is
priced at fulfilment time from the pool NAV. A priority fee, carved out of
the amount out, rewards whoever fulfils the request.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from .core import InsufficientLiquidity, InvalidRequest, Side, SlippageExceeded
from .pool import Pool, calculate_withdrawal_amount, pool_with_deposits
from .units import ZERO, to_decimal


@dataclass(frozen=True, slots=True)
class PendingWithdrawal:
    """
    A queued redemption.

    lp_amount_in is in LP shares; min_amount_out and priority_fee are in the
    pool's native units.
    """
    id: int
    requester: str
    side: Side
    lp_amount_in: Decimal
    min_amount_out: Decimal
    priority_fee: Decimal
    requested_at: datetime

    def __post_init__(self):
        for name in ('lp_amount_in', 'min_amount_out', 'priority_fee'):
            value = getattr(self, name)
            if not isinstance(value, Decimal):
                object.__setattr__(self, name, to_decimal(value))
        if self.lp_amount_in <= ZERO:
            raise InvalidRequest(f"lp_amount_in must be positive, got {self.lp_amount_in}")
        if self.min_amount_out < ZERO:
            raise InvalidRequest(f"min_amount_out cannot be negative, got {self.min_amount_out}")
        if self.priority_fee < ZERO:
            raise InvalidRequest(f"priority_fee cannot be negative, got {self.priority_fee}")


@dataclass(frozen=True, slots=True)
class WithdrawalOutcome:
    pool: Pool
    amount_out: Decimal
    to_requester: Decimal
    to_fulfiller: Decimal


def fulfil_withdrawal(
    request: PendingWithdrawal, pool: Pool, share_supply: Decimal, nav: Decimal
) -> WithdrawalOutcome:
    """
    Price and settle a queued withdrawal against the pool.

    The liquidity check runs before the slippage check, so an illiquid pool
    always reports InsufficientLiquidity whatever the caller's minimum.

    Raises:
        InsufficientLiquidity: amount_out exceeds the pool's free deposits
        InvalidRequest: the priority fee exceeds amount_out
        SlippageExceeded: amount_out net of the fee is below min_amount_out
    """
    amount_out = calculate_withdrawal_amount(request.side, request.lp_amount_in, share_supply, nav)
    if amount_out > pool.free_liquidity:
        raise InsufficientLiquidity(
            f"{request.side.value} pool has {pool.free_liquidity} free, "
            f"withdrawal {request.id} needs {amount_out}"
        )
    if request.priority_fee > amount_out:
        raise InvalidRequest(
            f"priority fee {request.priority_fee} exceeds amount out {amount_out} "
            f"for withdrawal {request.id}"
        )
    to_requester = amount_out - request.priority_fee
    if to_requester < request.min_amount_out:
        raise SlippageExceeded(
            f"withdrawal {request.id} pays {to_requester}, minimum is {request.min_amount_out}"
        )
    return WithdrawalOutcome(
        pool=pool_with_deposits(pool, -amount_out),
        amount_out=amount_out,
        to_requester=to_requester,
        to_fulfiller=request.priority_fee,
    )
