"""
optionperp - Option-Backed Perpetual Margin Engine

Two liquidity pools, one in a stable quote asset and one in a volatile base
asset, underwrite leveraged long/short exposure to the base asset's price.
Undercollateralized positions are liquidated into option-style claims that
settle against the price frozen at the end of each epoch.

Usage:
    from datetime import datetime, timedelta
    from decimal import Decimal
    from optionperp import (
        PerpLedger, Side, InMemoryCustody, OracleSwapRouter,
        StaticPriceOracle, FlatVolatilityOracle, BlackScholesPricer,
    )

    custody = InMemoryCustody()
    oracle = StaticPriceOracle(Decimal("1000"))
    ledger = PerpLedger(
        price_oracle=oracle,
        volatility_oracle=FlatVolatilityOracle(Decimal("0.8")),
        option_pricer=BlackScholesPricer(clock=lambda: ledger.current_time),
        swap_router=OracleSwapRouter(custody, oracle, "USDC", "ETH"),
        custody=custody,
        initial_time=datetime(2024, 1, 1),
    )
    ledger.advance_epoch(datetime(2024, 1, 8))

    # Fund a liquidity provider and a trader
    custody.credit("lp", "ETH", Decimal("10"))
    custody.credit("alice", "USDC", Decimal("500"))
    ledger.deposit("lp", Side.BASE, Decimal("10"))

    # 2x long, then close after the price moves
    position_id = ledger.open_position("alice", False, Decimal("1000"), Decimal("500"))
    oracle.update_price(Decimal("1500"))
    payout = ledger.close_position("alice", position_id)
"""

# Core types
from .core import (
    Side,
    PerpView,
    PriceOracle,
    VolatilityOracle,
    OptionPricer,
    SwapRouter,
    Custody,
    Transfer,
    SwapRequest,
    PendingUpdate,
    PerpError,
    InsufficientLiquidity,
    InsufficientBalance,
    BelowMinimumCollateral,
    NotCollateralized,
    PositionNotOpen,
    NotAuthorized,
    InvalidRequest,
    WorthlessClaim,
    EpochNotExpired,
    TooEarly,
    SlippageExceeded,
    ReentrantCall,
    lp_share_asset,
    position_receipt_asset,
    claim_receipt_asset,
    VAULT_WALLET,
    TRANSFER_PULL,
    TRANSFER_PUSH,
    TRANSFER_MINT,
    TRANSFER_BURN,
)

# Configuration and fixed-point units
from .config import EngineConfig
from .units import (
    quantize, to_rate, to_units, to_quote, to_base, to_price, to_fee,
    quote_to_base, base_to_quote, units_for_notional, price_for,
    DECIMAL_PRECISION, DECIMAL_ROUNDING,
)

# Pools
from .pool import (
    Pool,
    calculate_unrealized_pnl,
    calculate_net_asset_value,
    calculate_shares_for_deposit,
    calculate_withdrawal_amount,
    to_native,
)

# Pricing
from .pricing import (
    PositionHealth,
    calculate_premium,
    calculate_fee,
    calculate_funding_rate,
    calculate_position_funding,
    calculate_position_value,
    calculate_position_pnl,
    calculate_net_margin,
    calculate_liquidation_price,
    calculate_is_collateralized,
    assess_position,
    funding_rate_for,
)

# Positions
from .lifecycle import (
    Position,
    MarketSnapshot,
    open_position,
    close_position,
    liquidate_position,
    change_collateral,
    POSITION_STATE_OPEN,
    POSITION_STATE_CLOSED,
    POSITION_STATE_LIQUIDATED,
)

# Epochs and claims
from .epoch import EpochState, LiquidationClaim, advance_epoch, calculate_claim_payoff, settle_claim

# Withdrawals
from .withdrawals import PendingWithdrawal, fulfil_withdrawal

# Ledger
from .ledger import PerpLedger

# Reference collaborators
from .black_scholes import call, put, BlackScholesPricer
from .oracles import StaticPriceOracle, TimeSeriesPriceOracle, FlatVolatilityOracle, StrikeVolatilityOracle
from .custody import InMemoryCustody, OracleSwapRouter


__all__ = [
    # Core
    'Side', 'PerpView', 'PriceOracle', 'VolatilityOracle', 'OptionPricer', 'SwapRouter', 'Custody',
    'Transfer', 'SwapRequest', 'PendingUpdate',
    'lp_share_asset', 'position_receipt_asset', 'claim_receipt_asset',
    'VAULT_WALLET', 'TRANSFER_PULL', 'TRANSFER_PUSH', 'TRANSFER_MINT', 'TRANSFER_BURN',
    # Exceptions
    'PerpError', 'InsufficientLiquidity', 'InsufficientBalance', 'BelowMinimumCollateral',
    'NotCollateralized', 'PositionNotOpen', 'NotAuthorized', 'InvalidRequest', 'WorthlessClaim',
    'EpochNotExpired', 'TooEarly', 'SlippageExceeded', 'ReentrantCall',
    # Config and units
    'EngineConfig',
    'quantize', 'to_rate', 'to_units', 'to_quote', 'to_base', 'to_price', 'to_fee',
    'quote_to_base', 'base_to_quote', 'units_for_notional', 'price_for',
    'DECIMAL_PRECISION', 'DECIMAL_ROUNDING',
    # Pools
    'Pool', 'calculate_unrealized_pnl', 'calculate_net_asset_value',
    'calculate_shares_for_deposit', 'calculate_withdrawal_amount', 'to_native',
    # Pricing
    'PositionHealth', 'calculate_premium', 'calculate_fee', 'calculate_funding_rate',
    'calculate_position_funding', 'calculate_position_value', 'calculate_position_pnl',
    'calculate_net_margin', 'calculate_liquidation_price', 'calculate_is_collateralized',
    'assess_position', 'funding_rate_for',
    # Positions
    'Position', 'MarketSnapshot', 'open_position', 'close_position', 'liquidate_position',
    'change_collateral', 'POSITION_STATE_OPEN', 'POSITION_STATE_CLOSED', 'POSITION_STATE_LIQUIDATED',
    # Epochs
    'EpochState', 'LiquidationClaim', 'advance_epoch', 'calculate_claim_payoff', 'settle_claim',
    # Withdrawals
    'PendingWithdrawal', 'fulfil_withdrawal',
    # Ledger
    'PerpLedger',
    # Reference collaborators
    'call', 'put', 'BlackScholesPricer',
    'StaticPriceOracle', 'TimeSeriesPriceOracle', 'FlatVolatilityOracle', 'StrikeVolatilityOracle',
    'InMemoryCustody', 'OracleSwapRouter',
]

__version__ = '1.0.0'
