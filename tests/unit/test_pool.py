"""
test_pool.py - Unit tests for pool records, NAV and share pricing

Tests:
- Unrealized PnL of each side's aggregates
- NAV netting the opposite side's PnL
- Share pricing for deposits and withdrawals
- Pool transitions on open and exit, including average price seeding
"""

import pytest
from decimal import Decimal

from optionperp import (
    InsufficientLiquidity, Pool, Side,
    calculate_net_asset_value, calculate_shares_for_deposit,
    calculate_unrealized_pnl, calculate_withdrawal_amount, to_native,
)
from optionperp.pool import pool_after_exit, pool_after_open, pool_with_deposits, reserved_exposure


def _shorts(oi="1000", units="1", total="10000") -> Pool:
    return Pool(side=Side.QUOTE, total_deposits=Decimal(total),
                open_interest=Decimal(oi), position_units=Decimal(units))


def _longs(oi="1000", units="1", total="10") -> Pool:
    return Pool(side=Side.BASE, total_deposits=Decimal(total),
                open_interest=Decimal(oi), position_units=Decimal(units))


class TestUnrealizedPnl:

    def test_shorts_gain_when_price_falls(self):
        assert calculate_unrealized_pnl(_shorts(), Decimal("800")) == Decimal("200")

    def test_longs_lose_when_price_falls(self):
        assert calculate_unrealized_pnl(_longs(), Decimal("800")) == Decimal("-200")

    def test_empty_pool_has_no_pnl(self):
        assert calculate_unrealized_pnl(Pool(side=Side.BASE), Decimal("800")) == Decimal("0")


class TestNetAssetValue:

    def test_quote_nav_subtracts_long_pnl(self):
        quote = Pool(side=Side.QUOTE, total_deposits=Decimal("10000"))
        nav = calculate_net_asset_value(quote, _longs(), Decimal("1200"))
        assert nav == Decimal("9800")

    def test_base_nav_converts_short_pnl_at_mark(self):
        base = Pool(side=Side.BASE, total_deposits=Decimal("10"))
        nav = calculate_net_asset_value(base, _shorts(), Decimal("800"))
        assert nav == Decimal("9.75")

    def test_no_open_positions_means_nav_equals_deposits(self):
        quote = Pool(side=Side.QUOTE, total_deposits=Decimal("5000"))
        assert calculate_net_asset_value(quote, Pool(side=Side.BASE), Decimal("1000")) == Decimal("5000")

    def test_same_side_rejected(self):
        with pytest.raises(ValueError):
            calculate_net_asset_value(_shorts(), _shorts(), Decimal("1000"))


class TestSharePricing:

    def test_first_deposit_at_par(self):
        assert calculate_shares_for_deposit(Side.QUOTE, Decimal("100"), Decimal("0"), Decimal("0")) == Decimal("100")

    def test_deposit_priced_at_nav(self):
        shares = calculate_shares_for_deposit(Side.QUOTE, Decimal("98"), Decimal("10000"), Decimal("9800"))
        assert shares == Decimal("100")

    def test_negative_nav_suspends_deposits(self):
        with pytest.raises(InsufficientLiquidity):
            calculate_shares_for_deposit(Side.QUOTE, Decimal("100"), Decimal("10000"), Decimal("-1"))

    def test_withdrawal_priced_at_nav(self):
        amount = calculate_withdrawal_amount(Side.QUOTE, Decimal("100"), Decimal("10000"), Decimal("9800"))
        assert amount == Decimal("98")

    def test_withdrawal_with_no_supply_is_zero(self):
        assert calculate_withdrawal_amount(Side.BASE, Decimal("1"), Decimal("0"), Decimal("10")) == Decimal("0")


class TestPoolTransitions:

    def test_reserved_exposure(self):
        assert reserved_exposure(True, Decimal("1000"), Decimal("1")) == Decimal("1000")
        assert reserved_exposure(False, Decimal("1000"), Decimal("1")) == Decimal("1")

    def test_to_native(self):
        assert to_native(Side.QUOTE, Decimal("500"), Decimal("1000")) == Decimal("500")
        assert to_native(Side.BASE, Decimal("500"), Decimal("1000")) == Decimal("0.5")

    def test_first_open_seeds_average_at_mark(self):
        pool = Pool(side=Side.BASE, total_deposits=Decimal("10"))
        pool = pool_after_open(pool, Decimal("1000"), Decimal("1"), Decimal("500"),
                               Decimal("40"), Decimal("0.5"), Decimal("1"), Decimal("1000"))
        assert pool.average_open_price == Decimal("1000")
        assert pool.active_deposits == Decimal("1")
        assert pool.margin == Decimal("500")
        assert pool.premium == Decimal("40")
        assert pool.opening_fees == Decimal("0.5")
        assert pool.total_deposits == Decimal("10")

    def test_second_open_blends_average(self):
        pool = Pool(side=Side.BASE, total_deposits=Decimal("10"))
        pool = pool_after_open(pool, Decimal("1000"), Decimal("1"), Decimal("500"),
                               Decimal("40"), Decimal("0.5"), Decimal("1"), Decimal("1000"))
        pool = pool_after_open(pool, Decimal("1200"), Decimal("1"), Decimal("500"),
                               Decimal("40"), Decimal("0.6"), Decimal("1"), Decimal("1200"))
        assert pool.open_interest == Decimal("2200")
        assert pool.position_units == Decimal("2")
        assert pool.average_open_price == Decimal("1100")
        assert pool.active_deposits == Decimal("2")

    def test_exit_recomputes_average(self):
        pool = Pool(side=Side.BASE, total_deposits=Decimal("10"), active_deposits=Decimal("2"),
                    margin=Decimal("1000"), open_interest=Decimal("2200"),
                    position_units=Decimal("2"), average_open_price=Decimal("1100"))
        pool = pool_after_exit(pool, Decimal("1000"), Decimal("1"), Decimal("500"),
                               Decimal("1"), Decimal("0.25"), Decimal("0.6"))
        assert pool.open_interest == Decimal("1200")
        assert pool.average_open_price == Decimal("1200")
        assert pool.total_deposits == Decimal("10.25")
        assert pool.active_deposits == Decimal("1")
        assert pool.margin == Decimal("500")
        assert pool.closing_fees == Decimal("0.6")

    def test_last_exit_resets_aggregates(self):
        pool = Pool(side=Side.QUOTE, total_deposits=Decimal("10000"), active_deposits=Decimal("1000"),
                    margin=Decimal("500"), open_interest=Decimal("1000"),
                    position_units=Decimal("1"), average_open_price=Decimal("1000"))
        pool = pool_after_exit(pool, Decimal("1000"), Decimal("1"), Decimal("500"),
                               Decimal("1000"), Decimal("-100"))
        assert pool.open_interest == Decimal("0")
        assert pool.position_units == Decimal("0")
        assert pool.average_open_price == Decimal("0")
        assert pool.active_deposits == Decimal("0")
        assert pool.total_deposits == Decimal("9900")
        assert not pool.has_open_positions

    def test_free_liquidity(self):
        pool = Pool(side=Side.QUOTE, total_deposits=Decimal("100"), active_deposits=Decimal("30"))
        assert pool.free_liquidity == Decimal("70")
        assert pool_with_deposits(pool, Decimal("-20")).free_liquidity == Decimal("50")
