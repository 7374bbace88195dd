"""
ledger.py - Stateful Margin Engine

PerpLedger is the central state manager of the engine. It owns the pool,
position, claim and withdrawal tables and the epoch clock, and it is the only
module that mutates them.

Key responsibilities:
    - Implements the PerpView protocol for read-only access by pure functions
    - Turns each entry point into a PendingUpdate built by pure functions
    - Executes updates atomically: custody steps and table changes all
      succeed or the tables are left exactly as they were
    - Serializes mutating calls and rejects re-entrant ones
    - Tracks logical time (advance_time only moves forward)
"""

from __future__ import annotations
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterator, List, Optional, Tuple
import logging
import threading

from . import lifecycle
from .config import EngineConfig
from .core import (
    # Types
    Side, Transfer, SwapRequest, PendingUpdate,
    Custody, OptionPricer, PriceOracle, SwapRouter, VolatilityOracle,
    # Constants
    VAULT_WALLET, TRANSFER_PULL, TRANSFER_PUSH, TRANSFER_MINT, TRANSFER_BURN,
    # Helpers
    lp_share_asset, position_receipt_asset, claim_receipt_asset,
    # Exceptions
    PerpError, InsufficientBalance, InsufficientLiquidity, InvalidRequest,
    NotAuthorized, PositionNotOpen, ReentrantCall, TooEarly,
)
from .epoch import EpochState, LiquidationClaim, advance_epoch as next_epoch_state, settle_claim
from .lifecycle import CloseOutcome, MarketSnapshot, OpenOutcome, Position
from .pool import Pool, calculate_net_asset_value, calculate_shares_for_deposit, native_amount, pool_with_deposits
from .pricing import PositionHealth, assess_position, calculate_premium, funding_rate_for
from .units import ZERO, price_for, to_decimal, to_price, to_quote
from .withdrawals import PendingWithdrawal, fulfil_withdrawal


logger = logging.getLogger(__name__)

_RECEIPT = Decimal("1")
_AVERAGE_PRICE_TOLERANCE = Decimal("0.000001")


class PerpLedger:
    """
    Single-writer ledger for a two-pool option-perp margin engine.

    Implements the PerpView protocol, so it can be passed to the pure pricing
    functions that only read.

    Thread Safety:
        Mutating entry points serialize on an internal RLock. A call made
        from inside an in-flight operation (for example a collaborator calling
        back into the ledger) raises ReentrantCall.

    Example:
        custody = InMemoryCustody()
        oracle = StaticPriceOracle(Decimal("1000"))
        ledger = PerpLedger(
            price_oracle=oracle,
            volatility_oracle=FlatVolatilityOracle(Decimal("0.8")),
            option_pricer=BlackScholesPricer(clock=lambda: ledger.current_time),
            swap_router=OracleSwapRouter(custody, oracle, "USDC", "ETH"),
            custody=custody,
        )
        ledger.advance_epoch(ledger.current_time + timedelta(days=7))
        ledger.deposit("lp", Side.BASE, Decimal("10"))
        position_id = ledger.open_position("alice", False, Decimal("1000"), Decimal("500"))
    """

    def __init__(
        self,
        price_oracle: PriceOracle,
        volatility_oracle: VolatilityOracle,
        option_pricer: OptionPricer,
        swap_router: SwapRouter,
        custody: Custody,
        config: Optional[EngineConfig] = None,
        initial_time: Optional[datetime] = None,
    ):
        """
        Create an engine with empty pools and no epoch.

        Args:
            price_oracle: Source of the mark price (quote per base)
            volatility_oracle: Implied volatility by strike
            option_pricer: Per-unit option price used for premiums
            swap_router: Converts vault base into quote for long payouts
            custody: Holds assets and LP shares, mints and burns receipts
            config: Engine rates and asset symbols (default: EngineConfig())
            initial_time: Starting logical time (default: 1970-01-01)
        """
        self.price_oracle = price_oracle
        self.volatility_oracle = volatility_oracle
        self.option_pricer = option_pricer
        self.swap_router = swap_router
        self.custody = custody
        self._config = config or EngineConfig()
        self._current_time: datetime = initial_time or datetime(1970, 1, 1)

        self.pools: Dict[Side, Pool] = {side: Pool(side=side) for side in Side}
        self.positions: Dict[int, Position] = {}
        self.claims: Dict[int, LiquidationClaim] = {}
        self.withdrawals: Dict[int, PendingWithdrawal] = {}
        self.epoch = EpochState()
        self.update_log: List[PendingUpdate] = []

        # Ids are never reused
        self._next_position_id = 1
        self._next_claim_id = 1
        self._next_withdrawal_id = 1

        self._lock = threading.RLock()
        self._in_flight: Optional[str] = None

    # ========================================================================
    # PerpView PROTOCOL IMPLEMENTATION (read-only methods)
    # ========================================================================

    @property
    def current_time(self) -> datetime:
        """Current logical time of the ledger."""
        return self._current_time

    @property
    def config(self) -> EngineConfig:
        return self._config

    def mark_price(self) -> Decimal:
        """Oracle mark price quantized to the price scale."""
        price = to_price(self.price_oracle.current_mark_price())
        if price <= ZERO:
            raise InvalidRequest(f"oracle returned non-positive mark price {price}")
        return price

    def get_pool(self, side: Side) -> Pool:
        return self.pools[side]

    def get_position(self, position_id: int) -> Position:
        """
        Raises:
            InvalidRequest: If no position has this id
        """
        position = self.positions.get(position_id)
        if position is None:
            raise InvalidRequest(f"unknown position {position_id}")
        return position

    # ========================================================================
    # OTHER READ-ONLY QUERIES
    # ========================================================================

    def get_claim(self, claim_id: int) -> LiquidationClaim:
        claim = self.claims.get(claim_id)
        if claim is None:
            raise InvalidRequest(f"unknown claim {claim_id}")
        return claim

    def get_withdrawal(self, withdrawal_id: int) -> PendingWithdrawal:
        request = self.withdrawals.get(withdrawal_id)
        if request is None:
            raise InvalidRequest(f"unknown withdrawal request {withdrawal_id}")
        return request

    def asset_for(self, side: Side) -> str:
        """Symbol of a pool's native asset."""
        return self._config.quote_asset if side is Side.QUOTE else self._config.base_asset

    def lp_supply(self, side: Side) -> Decimal:
        return to_decimal(self.custody.total_supply(lp_share_asset(side)))

    def net_asset_value(self, side: Side) -> Decimal:
        """Redeemable value of a pool in its native units."""
        return calculate_net_asset_value(
            self.pools[side], self.pools[side.opposite], self.mark_price()
        )

    def funding_rate(self, is_short: bool) -> Decimal:
        return funding_rate_for(self, is_short)

    def assess(self, position_id: int) -> PositionHealth:
        """Mark an open position to market. Raises PositionNotOpen if it is not open."""
        self.get_position(position_id)
        return assess_position(self, position_id)

    def position_value(self, position_id: int) -> Decimal:
        return self.assess(position_id).value

    def position_pnl(self, position_id: int) -> Decimal:
        return self.assess(position_id).pnl

    def position_funding(self, position_id: int) -> Decimal:
        return self.assess(position_id).funding

    def net_margin(self, position_id: int) -> Decimal:
        return self.assess(position_id).net_margin

    def liquidation_price(self, position_id: int) -> Decimal:
        return self.assess(position_id).liquidation_price

    def is_collateralized(self, position_id: int) -> bool:
        return self.assess(position_id).is_collateralized

    def preview_close(self, position_id: int) -> Decimal:
        """
        Payout close_position() would transfer right now. Nothing is mutated.

        Raises:
            PositionNotOpen: If the position is closed or liquidated
            NotCollateralized: If the position can only be liquidated
        """
        position = self._open_record(position_id)
        outcome = lifecycle.close_position(self._market(), self._config, position)
        logger.debug("preview close position %s: payout %s (pnl %s, funding %s, fees %s)",
                     position_id, outcome.payout, outcome.pnl, outcome.funding, outcome.closing_fees)
        return outcome.payout

    def verify_invariants(self) -> Dict[str, Any]:
        """
        Check the pool tables against themselves and the open positions.

        Returns:
            Dict with 'valid' (bool) and 'violations' (list of messages).
        """
        violations: List[str] = []
        open_positions = [p for p in self.positions.values() if p.is_open]

        for side, pool in self.pools.items():
            name = side.value
            if pool.active_deposits > pool.total_deposits:
                violations.append(
                    f"{name}: active_deposits {pool.active_deposits} > total_deposits {pool.total_deposits}"
                )
            if pool.active_deposits < ZERO:
                violations.append(f"{name}: negative active_deposits {pool.active_deposits}")

            backed = [p for p in open_positions if p.side is side]
            expected = {
                'margin': sum((p.margin for p in backed), ZERO),
                'open_interest': sum((p.notional_size for p in backed), ZERO),
                'position_units': sum((p.position_units for p in backed), ZERO),
            }
            for field_name, total in expected.items():
                actual = getattr(pool, field_name)
                if actual != total:
                    violations.append(f"{name}: {field_name} {actual} != sum over open positions {total}")

            if pool.has_open_positions:
                exact = price_for(pool.open_interest, pool.position_units)
                drift = abs(pool.average_open_price - exact)
                # First-open seeding at mark differs from oi/units by the unit truncation
                allowed = _AVERAGE_PRICE_TOLERANCE * pool.average_open_price / pool.position_units
                if drift > allowed + _AVERAGE_PRICE_TOLERANCE:
                    violations.append(
                        f"{name}: average_open_price {pool.average_open_price} != oi/units {exact}"
                    )
            elif pool.open_interest != ZERO or pool.average_open_price != ZERO:
                violations.append(f"{name}: no units but open_interest {pool.open_interest}, "
                                  f"average {pool.average_open_price}")

        return {'valid': not violations, 'violations': violations}

    # ========================================================================
    # TIME MANAGEMENT
    # ========================================================================

    def advance_time(self, new_time: datetime) -> None:
        """
        Advance the ledger's logical clock to a new time.

        Raises:
            ValueError: If new_time is before the current time
        """
        if new_time < self._current_time:
            raise ValueError(
                f"Cannot move time backwards: {new_time} < {self._current_time}"
            )
        self._current_time = new_time

    # ========================================================================
    # LIQUIDITY PROVIDERS (Mutating)
    # ========================================================================

    def deposit(self, depositor: str, side: Side, amount: Decimal) -> Decimal:
        """
        Deposit a pool's native asset and receive LP shares priced at the
        pre-deposit NAV.

        Returns:
            LP shares minted

        Raises:
            InvalidRequest: Non-positive amount, or an amount too small for one share tick
            InsufficientBalance: The depositor cannot fund the deposit
        """
        with self._transaction("deposit"):
            amount = native_amount(side, to_decimal(amount))
            if amount <= ZERO:
                raise InvalidRequest(f"deposit amount must be positive, got {amount}")
            shares = calculate_shares_for_deposit(
                side, amount, self.lp_supply(side), self.net_asset_value(side)
            )
            if shares <= ZERO:
                raise InvalidRequest(f"deposit of {amount} mints no {side.value} shares")

            self.execute(PendingUpdate(
                operation="deposit",
                timestamp=self._current_time,
                pools=(pool_with_deposits(self.pools[side], amount),),
                transfers=(
                    Transfer(TRANSFER_PULL, self.asset_for(side), depositor, amount, "deposit"),
                    Transfer(TRANSFER_MINT, lp_share_asset(side), depositor, shares, "deposit"),
                ),
            ))
            return shares

    def open_withdrawal_request(
        self,
        requester: str,
        side: Side,
        lp_amount_in: Decimal,
        min_amount_out: Decimal = ZERO,
        priority_fee: Decimal = ZERO,
    ) -> int:
        """
        Escrow LP shares and queue them for redemption.

        Returns:
            Withdrawal request id

        Raises:
            InvalidRequest: Non-positive shares or negative minimum/fee
            InsufficientBalance: The requester does not hold the shares
        """
        with self._transaction("open_withdrawal_request"):
            request = PendingWithdrawal(
                id=self._next_withdrawal_id,
                requester=requester,
                side=side,
                lp_amount_in=native_amount(side, to_decimal(lp_amount_in)),
                min_amount_out=native_amount(side, to_decimal(min_amount_out)),
                priority_fee=native_amount(side, to_decimal(priority_fee)),
                requested_at=self._current_time,
            )
            self.execute(PendingUpdate(
                operation="open_withdrawal_request",
                timestamp=self._current_time,
                withdrawals=(request,),
                transfers=(
                    Transfer(TRANSFER_PULL, lp_share_asset(side), requester,
                             request.lp_amount_in, "withdrawal escrow"),
                ),
            ))
            return request.id

    def complete_withdrawal_request(self, fulfiller: str, withdrawal_id: int) -> Decimal:
        """
        Redeem a queued request at the current NAV. Anyone may fulfil one and
        collect its priority fee.

        Returns:
            Amount paid to the requester, in the pool's native asset

        Raises:
            InvalidRequest: Unknown id, or a priority fee above the amount out
            InsufficientLiquidity: The amount out exceeds the pool's free deposits
            SlippageExceeded: The requester would receive less than their minimum
        """
        with self._transaction("complete_withdrawal_request"):
            request = self.get_withdrawal(withdrawal_id)
            side = request.side
            outcome = fulfil_withdrawal(
                request, self.pools[side], self.lp_supply(side), self.net_asset_value(side)
            )
            asset = self.asset_for(side)
            transfers = [
                Transfer(TRANSFER_BURN, lp_share_asset(side), VAULT_WALLET,
                         request.lp_amount_in, "withdrawal"),
            ]
            if outcome.to_requester > ZERO:
                transfers.append(Transfer(TRANSFER_PUSH, asset, request.requester,
                                          outcome.to_requester, "withdrawal"))
            if outcome.to_fulfiller > ZERO:
                transfers.append(Transfer(TRANSFER_PUSH, asset, fulfiller,
                                          outcome.to_fulfiller, "withdrawal priority fee"))

            self.execute(PendingUpdate(
                operation="complete_withdrawal_request",
                timestamp=self._current_time,
                pools=(outcome.pool,),
                removed_withdrawals=(withdrawal_id,),
                transfers=tuple(transfers),
            ))
            return outcome.to_requester

    def cancel_withdrawal_request(self, caller: str, withdrawal_id: int) -> None:
        """
        Return the escrowed shares and drop the request.

        Raises:
            InvalidRequest: Unknown id
            NotAuthorized: The caller is not the requester
        """
        with self._transaction("cancel_withdrawal_request"):
            request = self.get_withdrawal(withdrawal_id)
            if caller != request.requester:
                raise NotAuthorized(f"{caller} did not request withdrawal {withdrawal_id}")
            self.execute(PendingUpdate(
                operation="cancel_withdrawal_request",
                timestamp=self._current_time,
                removed_withdrawals=(withdrawal_id,),
                transfers=(
                    Transfer(TRANSFER_PUSH, lp_share_asset(request.side), request.requester,
                             request.lp_amount_in, "withdrawal cancelled"),
                ),
            ))

    # ========================================================================
    # POSITIONS (Mutating)
    # ========================================================================

    def open_position(
        self, trader: str, is_short: bool, notional_size: Decimal, collateral: Decimal
    ) -> int:
        """
        Open a leveraged position at the mark price.

        Returns:
            New position id

        Raises:
            InvalidRequest: No epoch has started, or non-positive size/collateral
            InsufficientLiquidity: The backing pool cannot cover the exposure
            BelowMinimumCollateral: Collateral below 2 * premium + fees
            InsufficientBalance: The trader cannot fund the collateral
        """
        with self._transaction("open_position"):
            market = self._market()
            opened = self._open_outcome(market, trader, is_short, notional_size, collateral)
            self.execute(self._open_update("open_position", opened))
            return opened.position.id

    def add_collateral(self, caller: str, position_id: int, amount: Decimal) -> None:
        """
        Top up a position's margin. Anyone may pay.

        Raises:
            PositionNotOpen: If closed or liquidated
            InvalidRequest: Non-positive amount
            InsufficientBalance: The caller cannot fund it
        """
        with self._transaction("add_collateral"):
            position = self._open_record(position_id)
            amount = to_quote(amount)
            if amount <= ZERO:
                raise InvalidRequest(f"collateral to add must be positive, got {amount}")
            outcome = lifecycle.change_collateral(self._market(), self._config, position, amount)
            self.execute(PendingUpdate(
                operation="add_collateral",
                timestamp=self._current_time,
                pools=(outcome.pool,),
                positions=(outcome.position,),
                transfers=(
                    Transfer(TRANSFER_PULL, self._config.quote_asset, caller, amount, "add collateral"),
                ),
            ))

    def reduce_collateral(self, caller: str, position_id: int, amount: Decimal) -> None:
        """
        Withdraw margin from a position, keeping it collateralized.

        Raises:
            PositionNotOpen: If closed or liquidated
            NotAuthorized: The caller does not hold the position
            InvalidRequest: Non-positive amount, or more than the pool/position margin
            NotCollateralized: The position would become liquidatable
        """
        with self._transaction("reduce_collateral"):
            position = self._open_record(position_id)
            self._require_receipt(caller, position_receipt_asset(position_id))
            amount = to_quote(amount)
            if amount <= ZERO:
                raise InvalidRequest(f"collateral to withdraw must be positive, got {amount}")
            outcome = lifecycle.change_collateral(self._market(), self._config, position, -amount)
            self.execute(PendingUpdate(
                operation="reduce_collateral",
                timestamp=self._current_time,
                pools=(outcome.pool,),
                positions=(outcome.position,),
                transfers=(
                    Transfer(TRANSFER_PUSH, self._config.quote_asset, caller, amount, "reduce collateral"),
                ),
            ))

    def close_position(self, caller: str, position_id: int, min_amount_out: Decimal = ZERO) -> Decimal:
        """
        Close a position and pay out its margin net of PnL, fees and funding.

        Returns:
            Payout in quote

        Raises:
            PositionNotOpen: If closed or liquidated
            NotAuthorized: The caller does not hold the position
            NotCollateralized: The position can only be liquidated
            SlippageExceeded: The payout is below min_amount_out
        """
        with self._transaction("close_position"):
            position = self._open_record(position_id)
            self._require_receipt(caller, position_receipt_asset(position_id))
            closed = lifecycle.close_position(self._market(), self._config, position, min_amount_out)
            self.execute(self._close_update("close_position", closed, caller))
            return closed.payout

    def resize_position(
        self,
        caller: str,
        position_id: int,
        new_notional_size: Decimal,
        new_collateral: Decimal,
        min_amount_out: Decimal = ZERO,
    ) -> Tuple[Decimal, int]:
        """
        Close a position and open a new one on the same side in one step.

        The new collateral is pulled before the old payout is pushed, so the
        caller must already hold it.

        Returns:
            (payout of the closed position, new position id)
        """
        with self._transaction("resize_position"):
            position = self._open_record(position_id)
            self._require_receipt(caller, position_receipt_asset(position_id))
            market = self._market()
            closed = lifecycle.close_position(market, self._config, position, min_amount_out)
            market = market.with_pool(closed.pool)
            opened = self._open_outcome(
                market, caller, position.is_short, new_notional_size, new_collateral
            )
            pending = self._close_update("resize_position", closed, caller).merge(
                self._open_update("resize_position", opened)
            )
            self.execute(replace(pending, operation="resize_position"))
            return closed.payout, opened.position.id

    def liquidate(self, liquidator: str, position_id: int) -> int:
        """
        Liquidate an undercollateralized position. The liquidator is paid the
        liquidation fee in quote; whoever holds the position receipt receives
        a claim.

        Returns:
            Claim id

        Raises:
            PositionNotOpen: If closed or liquidated
            NotCollateralized: If the position is still collateralized
            InvalidRequest: The position receipt is not outstanding
        """
        with self._transaction("liquidate"):
            position = self._open_record(position_id)
            owner = self._receipt_owner(position_receipt_asset(position_id))
            outcome = lifecycle.liquidate_position(
                self._market(), self._config, position,
                claim_id=self._next_claim_id,
                claim_holder=owner,
                epoch=self.epoch.current_epoch,
            )
            transfers = [
                Transfer(TRANSFER_MINT, claim_receipt_asset(outcome.claim.id), owner,
                         _RECEIPT, "liquidation claim"),
                Transfer(TRANSFER_BURN, position_receipt_asset(position_id), owner,
                         _RECEIPT, "liquidation"),
            ]
            swaps = []
            fee = outcome.liquidation_fee
            if fee > ZERO:
                transfers.append(Transfer(TRANSFER_PUSH, self._config.quote_asset, liquidator,
                                          fee, "liquidation fee"))
                if position.side is Side.BASE:
                    swaps.append(SwapRequest(self._config.base_asset, self._config.quote_asset,
                                             fee, "liquidation fee"))

            self.execute(PendingUpdate(
                operation="liquidate",
                timestamp=self._current_time,
                pools=(outcome.pool,),
                positions=(replace(outcome.position, holder=owner),),
                claims=(outcome.claim,),
                transfers=tuple(transfers),
                swaps=tuple(swaps),
            ))
            return outcome.claim.id

    # ========================================================================
    # EPOCHS AND CLAIMS (Mutating)
    # ========================================================================

    def advance_epoch(self, next_expiry: datetime) -> int:
        """
        Close the current epoch at the mark price and start the next.

        The first call bootstraps epoch 1 without reading the oracle.

        Returns:
            The new epoch number

        Raises:
            EpochNotExpired: The current epoch's expiry has not passed
            InvalidRequest: next_expiry is not after the current time
        """
        with self._transaction("advance_epoch"):
            mark = self.mark_price() if self.epoch.is_started else ZERO
            state = next_epoch_state(self.epoch, self._current_time, next_expiry, mark)
            self.execute(PendingUpdate(
                operation="advance_epoch", timestamp=self._current_time, epoch=state,
            ))
            return state.current_epoch

    def settle(self, caller: str, claim_id: int) -> Decimal:
        """
        Pay out a liquidation claim against its epoch's expiry price.

        Returns:
            Amount paid, in quote for puts and in base for calls

        Raises:
            InvalidRequest: Unknown or already settled claim
            TooEarly: The claim's epoch has not expired
            NotAuthorized: The caller does not hold the claim receipt
            WorthlessClaim: The claim expired out of the money
            InsufficientLiquidity: The paying pool cannot cover it
        """
        with self._transaction("settle"):
            claim = self.get_claim(claim_id)
            if claim.is_settled:
                raise InvalidRequest(f"claim {claim_id} already settled")
            if self.epoch.expiry_price(claim.epoch) is None:
                raise TooEarly(f"epoch {claim.epoch} has no expiry price yet")
            self._require_receipt(caller, claim_receipt_asset(claim_id))

            side = claim.paying_side
            outcome = settle_claim(self.epoch, claim, self.pools[side])
            self.execute(PendingUpdate(
                operation="settle",
                timestamp=self._current_time,
                pools=(outcome.pool,),
                claims=(replace(outcome.claim, holder=caller),),
                transfers=(
                    Transfer(TRANSFER_BURN, claim_receipt_asset(claim_id), caller, _RECEIPT, "settle"),
                    Transfer(TRANSFER_PUSH, self.asset_for(side), caller, outcome.amount_out, "settle"),
                ),
            ))
            return outcome.amount_out

    # ========================================================================
    # EXECUTION
    # ========================================================================

    def execute(self, pending: PendingUpdate) -> None:
        """
        Apply a PendingUpdate atomically.

        Validation runs first (pool invariants, holder balances for pulls and
        burns). Custody steps then run in the order pulls, mints, swaps,
        pushes, burns; if one fails the completed steps are reversed and the
        error propagates. Tables change only after every step succeeded.

        Raises:
            InsufficientLiquidity: A pool would hold less than it has reserved
            InsufficientBalance: A holder cannot cover a pull or burn
            InvalidRequest: A pool aggregate would go negative
        """
        if pending.is_empty():
            return
        with self._lock:
            self._validate_pending(pending)
            self._apply_custody(pending)
            self._commit(pending)

    def _validate_pending(self, pending: PendingUpdate) -> None:
        for pool in pending.pools:
            name = pool.side.value
            if pool.total_deposits < ZERO:
                raise InsufficientLiquidity(f"{name} pool deposits would go negative ({pool.total_deposits})")
            if pool.active_deposits > pool.total_deposits:
                raise InsufficientLiquidity(
                    f"{name} pool would reserve {pool.active_deposits} of {pool.total_deposits} deposits"
                )
            for field_name in ('margin', 'open_interest', 'position_units'):
                if getattr(pool, field_name) < ZERO:
                    raise InvalidRequest(f"{name} pool {field_name} would go negative")

        needed: Dict[Tuple[str, str], Decimal] = defaultdict(lambda: ZERO)
        for transfer in pending.transfers:
            if transfer.kind in (TRANSFER_PULL, TRANSFER_BURN) and transfer.holder != VAULT_WALLET:
                needed[(transfer.holder, transfer.asset)] += transfer.quantity
        for (holder, asset), quantity in needed.items():
            held = to_decimal(self.custody.balance_of(holder, asset))
            if held < quantity:
                raise InsufficientBalance(f"{holder} holds {held} {asset}, {pending.operation} needs {quantity}")

    def _apply_custody(self, pending: PendingUpdate) -> None:
        by_kind = defaultdict(list)
        for transfer in pending.transfers:
            by_kind[transfer.kind].append(transfer)

        done: List[Any] = []
        try:
            for transfer in by_kind[TRANSFER_PULL] + by_kind[TRANSFER_MINT]:
                self._apply_transfer(transfer)
                done.append(transfer)
            for swap in pending.swaps:
                spent = self.swap_router.swap_exact_out(swap.from_asset, swap.to_asset, swap.amount_out)
                done.append((swap, spent))
            for transfer in by_kind[TRANSFER_PUSH] + by_kind[TRANSFER_BURN]:
                self._apply_transfer(transfer)
                done.append(transfer)
        except Exception:
            logger.error("%s failed after %d custody steps; reversing", pending.operation, len(done))
            self._reverse(done)
            raise

    def _apply_transfer(self, transfer: Transfer) -> None:
        action = {
            TRANSFER_PULL: self.custody.pull,
            TRANSFER_PUSH: self.custody.push,
            TRANSFER_MINT: self.custody.mint,
            TRANSFER_BURN: self.custody.burn,
        }[transfer.kind]
        action(transfer.holder, transfer.asset, transfer.quantity)

    def _reverse(self, done: List[Any]) -> None:
        inverse = {
            TRANSFER_PULL: self.custody.push,
            TRANSFER_PUSH: self.custody.pull,
            TRANSFER_MINT: self.custody.burn,
            TRANSFER_BURN: self.custody.mint,
        }
        for step in reversed(done):
            try:
                if isinstance(step, Transfer):
                    inverse[step.kind](step.holder, step.asset, step.quantity)
                else:
                    swap, spent = step
                    self.swap_router.swap_exact_out(swap.to_asset, swap.from_asset, spent)
            except Exception:
                logger.exception("could not reverse custody step %r", step)

    def _commit(self, pending: PendingUpdate) -> None:
        for pool in pending.pools:
            self.pools[pool.side] = pool
        for position in pending.positions:
            self.positions[position.id] = position
            self._next_position_id = max(self._next_position_id, position.id + 1)
        for claim in pending.claims:
            self.claims[claim.id] = claim
            self._next_claim_id = max(self._next_claim_id, claim.id + 1)
        for request in pending.withdrawals:
            self.withdrawals[request.id] = request
            self._next_withdrawal_id = max(self._next_withdrawal_id, request.id + 1)
        for withdrawal_id in pending.removed_withdrawals:
            self.withdrawals.pop(withdrawal_id, None)
        if pending.epoch is not None:
            self.epoch = pending.epoch

        self.update_log.append(pending)
        logger.info("%s committed at %s: %d pools, %d positions, %d transfers, %d swaps",
                    pending.operation, pending.timestamp, len(pending.pools),
                    len(pending.positions), len(pending.transfers), len(pending.swaps))

    # ========================================================================
    # INTERNAL HELPERS
    # ========================================================================

    @contextmanager
    def _transaction(self, operation: str) -> Iterator[None]:
        with self._lock:
            if self._in_flight is not None:
                raise ReentrantCall(f"{operation} called while {self._in_flight} is in flight")
            self._in_flight = operation
            try:
                yield
            except PerpError as exc:
                logger.warning("%s rejected: %s: %s", operation, type(exc).__name__, exc)
                raise
            finally:
                self._in_flight = None

    def _market(self) -> MarketSnapshot:
        return MarketSnapshot(
            mark_price=self.mark_price(),
            timestamp=self._current_time,
            quote_pool=self.pools[Side.QUOTE],
            base_pool=self.pools[Side.BASE],
        )

    def _open_record(self, position_id: int) -> Position:
        position = self.get_position(position_id)
        if not position.is_open:
            raise PositionNotOpen(f"position {position_id} is {position.state.lower()}")
        return position

    def _require_receipt(self, caller: str, receipt: str) -> None:
        held = to_decimal(self.custody.balance_of(caller, receipt))
        if held < _RECEIPT:
            raise NotAuthorized(f"{caller} does not hold {receipt}")

    def _receipt_owner(self, receipt: str) -> str:
        owner = self.custody.owner_of(receipt)
        if owner is None:
            raise InvalidRequest(f"{receipt} is not outstanding")
        return owner

    def _open_outcome(
        self,
        market: MarketSnapshot,
        trader: str,
        is_short: bool,
        notional_size: Decimal,
        collateral: Decimal,
    ) -> OpenOutcome:
        if not self.epoch.is_started:
            raise InvalidRequest("no epoch has started; call advance_epoch first")
        notional_size = to_quote(notional_size)
        if notional_size <= ZERO:
            raise InvalidRequest(f"notional_size must be positive, got {notional_size}")
        premium = calculate_premium(
            self.option_pricer, self.volatility_oracle, market.mark_price,
            notional_size, self.epoch.current_expiry, is_put=is_short,
        )
        return lifecycle.open_position(
            market, self._config, self._next_position_id, trader,
            is_short, notional_size, collateral, premium,
        )

    def _open_update(self, operation: str, opened: OpenOutcome) -> PendingUpdate:
        position = opened.position
        return PendingUpdate(
            operation=operation,
            timestamp=self._current_time,
            pools=(opened.pool,),
            positions=(position,),
            transfers=(
                Transfer(TRANSFER_PULL, self._config.quote_asset, position.holder,
                         position.margin, "collateral"),
                Transfer(TRANSFER_MINT, position_receipt_asset(position.id), position.holder,
                         _RECEIPT, "position receipt"),
            ),
        )

    def _close_update(self, operation: str, closed: CloseOutcome, owner: str) -> PendingUpdate:
        position = replace(closed.position, holder=owner)
        transfers = [
            Transfer(TRANSFER_BURN, position_receipt_asset(position.id), owner,
                     _RECEIPT, "position closed"),
        ]
        swaps = []
        if closed.payout > ZERO:
            transfers.append(Transfer(TRANSFER_PUSH, self._config.quote_asset, owner,
                                      closed.payout, "close payout"))
            if position.side is Side.BASE:
                swaps.append(SwapRequest(self._config.base_asset, self._config.quote_asset,
                                         closed.payout, "close payout"))
        return PendingUpdate(
            operation=operation,
            timestamp=self._current_time,
            pools=(closed.pool,),
            positions=(position,),
            transfers=tuple(transfers),
            swaps=tuple(swaps),
        )

    def __repr__(self) -> str:
        open_count = sum(1 for p in self.positions.values() if p.is_open)
        return (
            f"PerpLedger(epoch={self.epoch.current_epoch}, positions={open_count} open/"
            f"{len(self.positions)}, claims={len(self.claims)}, withdrawals={len(self.withdrawals)})"
        )
