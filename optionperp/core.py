"""
Core types and protocols for the option-perp margin engine.

This module provides the foundational pieces shared by every other module:
1. Decimal context configuration
2. Side of the market and reserved wallet/asset names
3. Exceptions: PerpError and the rejection taxonomy
4. Protocols: PerpView for read-only engine access, plus the external
   collaborators (oracles, option pricer, swap router, custody)
5. Immutable change records: Transfer, SwapRequest, PendingUpdate

Pure functions elsewhere read a PerpView and return a PendingUpdate. Only
PerpLedger applies one, so no function in this module can mutate state.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_EVEN, getcontext
from enum import Enum
from typing import Optional, Protocol, Tuple, Any, runtime_checkable


# ============================================================================
# DECIMAL CONTEXT CONFIGURATION
# ============================================================================
#
# Engine arithmetic must be deterministic. The global context is configured
# once at import time; code needing a different context uses localcontext().
#
_PERP_DECIMAL_CONTEXT = getcontext()
_PERP_DECIMAL_CONTEXT.prec = 50
_PERP_DECIMAL_CONTEXT.rounding = ROUND_HALF_EVEN


# ============================================================================
# CONSTANTS
# ============================================================================

# Wallet the engine itself holds assets in. Custody implementations exempt it
# from balance validation, the way a ledger exempts its system wallet.
VAULT_WALLET = "vault"

# Transfer kinds (strings, matching how unit types are named elsewhere).
TRANSFER_PULL = "PULL"   # holder -> vault
TRANSFER_PUSH = "PUSH"   # vault -> holder
TRANSFER_MINT = "MINT"   # new receipt/share to holder
TRANSFER_BURN = "BURN"   # receipt/share destroyed from holder

TRANSFER_KINDS = (TRANSFER_PULL, TRANSFER_PUSH, TRANSFER_MINT, TRANSFER_BURN)


class Side(Enum):
    """
    Which pool a position or deposit belongs to.

    QUOTE: stable-asset pool, collateralizes shorts.
    BASE: volatile-asset pool, collateralizes longs.
    """
    QUOTE = "quote"
    BASE = "base"

    @property
    def opposite(self) -> 'Side':
        return Side.BASE if self is Side.QUOTE else Side.QUOTE

    @classmethod
    def backing(cls, is_short: bool) -> 'Side':
        """The pool that collateralizes a position."""
        return cls.QUOTE if is_short else cls.BASE


def lp_share_asset(side: Side) -> str:
    """Symbol of the LP share for a pool."""
    return f"LP-{side.value.upper()}"


def position_receipt_asset(position_id: int) -> str:
    return f"PERP-{position_id}"


def claim_receipt_asset(claim_id: int) -> str:
    return f"CLAIM-{claim_id}"


# ============================================================================
# EXCEPTIONS
# ============================================================================

class PerpError(Exception):
    """Base exception for all engine rejections. Raised before any state change."""
    pass


class InsufficientLiquidity(PerpError):
    """The pool cannot back a new position or pay out a withdrawal."""
    pass


class InsufficientBalance(PerpError):
    """The caller does not hold enough of an asset."""
    pass


class BelowMinimumCollateral(PerpError):
    """Opening collateral is below the premium and fee floor."""
    pass


class NotCollateralized(PerpError):
    """An operation would leave, or requires, an undercollateralized position."""
    pass


class PositionNotOpen(PerpError):
    """The position is closed or liquidated."""
    pass


class NotAuthorized(PerpError):
    """The caller does not hold the position or claim."""
    pass


class InvalidRequest(PerpError):
    """Unknown id, double settlement, or arguments the engine cannot honour."""
    pass


class WorthlessClaim(InvalidRequest):
    """A liquidation claim expired with no positive payoff."""
    pass


class EpochNotExpired(PerpError):
    """The current epoch has not reached its expiry."""
    pass


class TooEarly(PerpError):
    """The claim's epoch has no recorded expiry price yet."""
    pass


class SlippageExceeded(PerpError):
    """The amount delivered would be below the caller's minimum."""
    pass


class ReentrantCall(PerpError):
    """A mutating entry point was invoked while another one was in flight."""
    pass


# ============================================================================
# PROTOCOLS - EXTERNAL COLLABORATORS
# ============================================================================

@runtime_checkable
class PriceOracle(Protocol):
    def current_mark_price(self) -> Decimal:
        """Quote per base."""
        ...


@runtime_checkable
class VolatilityOracle(Protocol):
    def implied_volatility(self, strike: Decimal) -> Decimal:
        """Annualized implied volatility as a fraction (0.8 = 80%)."""
        ...


@runtime_checkable
class OptionPricer(Protocol):
    def option_price(
        self,
        is_put: bool,
        expiry: datetime,
        strike: Decimal,
        spot: Decimal,
        volatility: Decimal,
    ) -> Decimal:
        """Premium in quote per one unit of base."""
        ...


@runtime_checkable
class SwapRouter(Protocol):
    def swap_exact_out(self, from_asset: str, to_asset: str, exact_amount_out: Decimal) -> Decimal:
        """Swap vault assets; returns the amount of `from_asset` spent."""
        ...


@runtime_checkable
class Custody(Protocol):
    """
    Asset custody and ownership records.

    pull/push move assets between a holder and the engine vault. mint/burn
    create and destroy LP shares and receipts. Receipts have a supply of one
    and may change hands outside the engine; owner_of names the current one.
    """

    def pull(self, holder: str, asset: str, amount: Decimal) -> None:
        ...

    def push(self, holder: str, asset: str, amount: Decimal) -> None:
        ...

    def mint(self, holder: str, asset: str, amount: Decimal) -> None:
        ...

    def burn(self, holder: str, asset: str, amount: Decimal) -> None:
        ...

    def balance_of(self, holder: str, asset: str) -> Decimal:
        ...

    def total_supply(self, asset: str) -> Decimal:
        ...

    def owner_of(self, asset: str) -> Optional[str]:
        """Holder of a receipt, or None if it is not outstanding."""
        ...


@runtime_checkable
class PerpView(Protocol):
    """
    Read-only interface to engine state.

    Pricing and lifecycle functions accept a PerpView to declare that they
    only read. PerpLedger implements it; tests use FakeView.
    """

    @property
    def current_time(self) -> datetime:
        ...

    @property
    def config(self) -> Any:
        ...

    def mark_price(self) -> Decimal:
        ...

    def get_pool(self, side: Side) -> Any:
        ...

    def get_position(self, position_id: int) -> Any:
        ...


# ============================================================================
# CHANGE RECORDS
# ============================================================================

@dataclass(frozen=True, slots=True)
class Transfer:
    """
    One custody instruction.

    Attributes:
        kind: PULL, PUSH, MINT or BURN
        asset: Asset or receipt symbol
        holder: Holder reference (the vault only for MINT/BURN of escrowed shares)
        quantity: Positive amount
        reason: Short tag naming the operation that produced it
    """
    kind: str
    asset: str
    holder: str
    quantity: Decimal
    reason: str

    def __post_init__(self):
        if self.kind not in TRANSFER_KINDS:
            raise ValueError(f"Transfer kind must be one of {TRANSFER_KINDS}, got {self.kind}")
        if not self.asset or not self.asset.strip():
            raise ValueError("Transfer asset cannot be empty")
        if not self.holder or not self.holder.strip():
            raise ValueError("Transfer holder cannot be empty")
        if self.holder == VAULT_WALLET and self.kind in (TRANSFER_PULL, TRANSFER_PUSH):
            raise ValueError(f"{self.kind} cannot target the vault itself")
        if not isinstance(self.quantity, Decimal):
            raise ValueError(f"Transfer quantity must be Decimal, got {type(self.quantity)}")
        if not self.quantity.is_finite() or self.quantity <= 0:
            raise ValueError(f"Transfer quantity must be positive and finite, got {self.quantity}")

    def __repr__(self) -> str:
        return f"Transfer({self.kind} {self.quantity} {self.asset} {self.holder})"


@dataclass(frozen=True, slots=True)
class SwapRequest:
    """Vault-internal conversion of `from_asset` into exactly `amount_out` of `to_asset`."""
    from_asset: str
    to_asset: str
    amount_out: Decimal
    reason: str


@dataclass(frozen=True, slots=True)
class PendingUpdate:
    """
    Everything one operation intends to change - represents INTENT.

    Built by pure functions, applied all-or-nothing by PerpLedger.execute().
    Records are full replacement snapshots keyed by their own id/side.

    Attributes:
        operation: Name of the entry point, for logging
        timestamp: Logical time the update was computed at
        pools: New Pool records
        positions: New or replaced Position records
        claims: New or replaced LiquidationClaim records
        withdrawals: New PendingWithdrawal records
        removed_withdrawals: Ids of withdrawal requests consumed or cancelled
        epoch: New EpochState, if the epoch changed
        transfers: Custody instructions
        swaps: Vault swaps to perform before any push
    """
    operation: str
    timestamp: datetime
    pools: Tuple[Any, ...] = ()
    positions: Tuple[Any, ...] = ()
    claims: Tuple[Any, ...] = ()
    withdrawals: Tuple[Any, ...] = ()
    removed_withdrawals: Tuple[int, ...] = ()
    epoch: Optional[Any] = None
    transfers: Tuple[Transfer, ...] = ()
    swaps: Tuple[SwapRequest, ...] = ()

    def is_empty(self) -> bool:
        return not (
            self.pools or self.positions or self.claims or self.withdrawals
            or self.removed_withdrawals or self.epoch is not None
            or self.transfers or self.swaps
        )

    def merge(self, other: 'PendingUpdate') -> 'PendingUpdate':
        """
        Sequence two updates into one. Later records replace earlier ones
        with the same key; transfers and swaps are concatenated.
        """
        def latest(first, second, key):
            merged = {key(r): r for r in first}
            merged.update({key(r): r for r in second})
            return tuple(merged.values())

        return PendingUpdate(
            operation=f"{self.operation}+{other.operation}",
            timestamp=other.timestamp,
            pools=latest(self.pools, other.pools, lambda p: p.side),
            positions=latest(self.positions, other.positions, lambda p: p.id),
            claims=latest(self.claims, other.claims, lambda c: c.id),
            withdrawals=latest(self.withdrawals, other.withdrawals, lambda w: w.id),
            removed_withdrawals=self.removed_withdrawals + other.removed_withdrawals,
            epoch=other.epoch if other.epoch is not None else self.epoch,
            transfers=self.transfers + other.transfers,
            swaps=self.swaps + other.swaps,
        )

    def __repr__(self) -> str:
        return (
            f"PendingUpdate({self.operation}: {len(self.pools)} pools, "
            f"{len(self.positions)} positions, {len(self.transfers)} transfers)"
        )
