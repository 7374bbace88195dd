"""
test_position_scenarios.py - End-to-end position, liquidation and LP scenarios

Each test drives a funded engine through a realistic sequence of entry
points and checks balances in custody as well as the ledger tables:

- Long and short positions opened, marked and closed
- Liquidation into a claim, epoch rollover and claim settlement
- LP deposit/withdrawal round trips and illiquid withdrawals
- Collateral top-ups moving the liquidation price
- Resizing a position in one step
- Receipts moved between holders before close, liquidation or settlement
- A long and a short whose pools stay independent
"""

import pytest
from datetime import timedelta
from decimal import Decimal

from optionperp import (
    InsufficientLiquidity, InvalidRequest, NotAuthorized, NotCollateralized, Side,
    TooEarly, WorthlessClaim,
    claim_receipt_asset, lp_share_asset, position_receipt_asset,
)
from optionperp.units import quote_to_base, to_quote
from tests.harness import BASE, QUOTE, START


def _roll_epoch(engine, price):
    """Move past the first expiry, set the mark and start epoch 2."""
    engine.ledger.advance_time(START + timedelta(days=8))
    engine.set_price(price)
    return engine.ledger.advance_epoch(START + timedelta(days=15))


# ============================================================================
# LONG POSITIONS
# ============================================================================

class TestLongLifecycle:

    def test_immediate_close_costs_premium_and_fees(self, engine):
        position_id = engine.ledger.open_position("alice", False, Decimal("1000"), Decimal("500"))
        position = engine.ledger.get_position(position_id)

        payout = engine.ledger.close_position("alice", position_id)

        expected = to_quote(Decimal("500") - position.premium - position.opening_fees - Decimal("0.5"))
        assert payout == expected
        assert engine.balance("alice", QUOTE) == Decimal("9500") + payout
        assert engine.balance("alice", position_receipt_asset(position_id)) == Decimal("0")
        closed = engine.ledger.get_position(position_id)
        assert closed.state == "CLOSED"
        assert closed.closing_fees == Decimal("0.5")

    def test_profitable_close_swaps_base_into_quote(self, engine):
        position_id = engine.ledger.open_position("alice", False, Decimal("1000"), Decimal("500"))
        position = engine.ledger.get_position(position_id)
        engine.set_price("1500")

        assert engine.ledger.position_pnl(position_id) == Decimal("500")
        payout = engine.ledger.close_position("alice", position_id)

        # closing fee is charged on notional + pnl
        assert payout == to_quote(Decimal("1000") - position.premium - position.opening_fees - Decimal("0.75"))
        assert payout > Decimal("500")
        assert len(engine.router.swaps) == 1
        from_asset, to_asset, _, amount_out = engine.router.swaps[0]
        assert (from_asset, to_asset, amount_out) == (BASE, QUOTE, payout)
        assert engine.ledger.get_pool(Side.BASE).total_deposits < Decimal("10")
        assert engine.ledger.verify_invariants()['valid']

    def test_losing_long_is_liquidated_into_a_call(self, engine):
        position_id = engine.ledger.open_position("alice", False, Decimal("1000"), Decimal("500"))
        engine.set_price("500")
        assert not engine.ledger.is_collateralized(position_id)
        with pytest.raises(NotCollateralized):
            engine.ledger.close_position("alice", position_id)

        claim_id = engine.ledger.liquidate("keeper", position_id)

        claim = engine.ledger.get_claim(claim_id)
        assert not claim.is_put
        assert claim.strike == Decimal("1000")
        assert claim.notional_amount == Decimal("1")
        assert claim.holder == "alice"
        assert claim.epoch == 1
        assert engine.ledger.get_position(position_id).state == "LIQUIDATED"
        assert engine.balance("keeper", QUOTE) == Decimal("1.25")
        assert engine.balance("alice", claim_receipt_asset(claim_id)) == Decimal("1")
        assert engine.balance("alice", position_receipt_asset(position_id)) == Decimal("0")
        assert engine.ledger.get_pool(Side.BASE).total_deposits == Decimal("10.9975")

    def test_collateralized_position_cannot_be_liquidated(self, engine):
        position_id = engine.ledger.open_position("alice", False, Decimal("1000"), Decimal("500"))
        with pytest.raises(NotCollateralized):
            engine.ledger.liquidate("keeper", position_id)


# ============================================================================
# CLAIM SETTLEMENT
# ============================================================================

class TestClaimSettlement:

    @pytest.fixture
    def call_claim(self, engine):
        position_id = engine.ledger.open_position("alice", False, Decimal("1000"), Decimal("500"))
        engine.set_price("500")
        return engine.ledger.liquidate("keeper", position_id)

    def test_settle_before_expiry(self, engine, call_claim):
        with pytest.raises(TooEarly):
            engine.ledger.settle("alice", call_claim)

    def test_in_the_money_call_pays_base(self, engine, call_claim):
        assert _roll_epoch(engine, "1200") == 2

        paid = engine.ledger.settle("alice", call_claim)

        assert paid == quote_to_base(Decimal("200"), Decimal("1200"))
        assert engine.balance("alice", BASE) == paid
        assert engine.balance("alice", claim_receipt_asset(call_claim)) == Decimal("0")
        claim = engine.ledger.get_claim(call_claim)
        assert claim.is_settled
        assert claim.payout == Decimal("200")
        with pytest.raises(InvalidRequest):
            engine.ledger.settle("alice", call_claim)

    def test_only_holder_settles(self, engine, call_claim):
        _roll_epoch(engine, "1200")
        with pytest.raises(NotAuthorized):
            engine.ledger.settle("keeper", call_claim)

    def test_worthless_call_stays_unsettled(self, engine, call_claim):
        _roll_epoch(engine, "900")
        with pytest.raises(WorthlessClaim):
            engine.ledger.settle("alice", call_claim)
        assert not engine.ledger.get_claim(call_claim).is_settled
        assert engine.balance("alice", claim_receipt_asset(call_claim)) == Decimal("1")

    def test_short_liquidated_into_a_put(self, engine):
        position_id = engine.ledger.open_position("bob", True, Decimal("1000"), Decimal("500"))
        engine.set_price("1500")

        claim_id = engine.ledger.liquidate("keeper", position_id)

        claim = engine.ledger.get_claim(claim_id)
        assert claim.is_put
        assert claim.strike == Decimal("1000")
        assert engine.ledger.get_pool(Side.QUOTE).total_deposits == Decimal("10498.75")
        assert engine.router.swaps == []

        _roll_epoch(engine, "800")
        assert engine.ledger.settle("bob", claim_id) == Decimal("200")
        assert engine.balance("bob", QUOTE) == Decimal("9700")
        assert engine.ledger.get_pool(Side.QUOTE).total_deposits == Decimal("10298.75")


# ============================================================================
# POOL INDEPENDENCE AND LP FLOWS
# ============================================================================

class TestLiquidityProviders:

    def test_long_activity_leaves_quote_pool_untouched(self, engine):
        before = engine.ledger.get_pool(Side.QUOTE)
        position_id = engine.ledger.open_position("alice", False, Decimal("2000"), Decimal("600"))
        engine.set_price("1100")
        engine.ledger.close_position("alice", position_id)
        assert engine.ledger.get_pool(Side.QUOTE) == before

    def test_reserved_deposits_cannot_be_withdrawn(self, engine):
        engine.ledger.open_position("bob", True, Decimal("9000"), Decimal("2000"))
        assert engine.ledger.get_pool(Side.QUOTE).free_liquidity == Decimal("1000")

        for minimum in ("0", "10000"):
            request_id = engine.ledger.open_withdrawal_request(
                "lp", Side.QUOTE, Decimal("10000"), min_amount_out=Decimal(minimum)
            )
            with pytest.raises(InsufficientLiquidity):
                engine.ledger.complete_withdrawal_request("keeper", request_id)
            engine.ledger.cancel_withdrawal_request("lp", request_id)

        request_id = engine.ledger.open_withdrawal_request("lp", Side.QUOTE, Decimal("1000"))
        assert engine.ledger.complete_withdrawal_request("keeper", request_id) == Decimal("1000")
        assert engine.ledger.get_pool(Side.QUOTE).free_liquidity == Decimal("0")

    def test_deposit_withdraw_round_trip_with_priority_fee(self, engine):
        shares = engine.ledger.deposit("bob", Side.QUOTE, Decimal("1000"))
        assert shares == Decimal("1000")

        request_id = engine.ledger.open_withdrawal_request(
            "bob", Side.QUOTE, shares, priority_fee=Decimal("5")
        )
        paid = engine.ledger.complete_withdrawal_request("keeper", request_id)

        assert paid == Decimal("995")
        assert engine.balance("bob", QUOTE) == Decimal("9995")
        assert engine.balance("keeper", QUOTE) == Decimal("5")
        assert engine.balance("bob", lp_share_asset(Side.QUOTE)) == Decimal("0")
        assert engine.ledger.lp_supply(Side.QUOTE) == Decimal("10000")


# ============================================================================
# COLLATERAL AND RESIZE
# ============================================================================

class TestCollateralManagement:

    @pytest.mark.parametrize("is_short", [False, True])
    def test_liquidation_price_tracks_margin(self, engine, is_short):
        position_id = engine.ledger.open_position("alice", is_short, Decimal("1000"), Decimal("500"))
        original = engine.ledger.liquidation_price(position_id)

        engine.ledger.add_collateral("alice", position_id, Decimal("200"))
        safer = engine.ledger.liquidation_price(position_id)
        if is_short:
            assert safer > original > Decimal("1000")
        else:
            assert safer < original < Decimal("1000")

        engine.ledger.reduce_collateral("alice", position_id, Decimal("200"))
        assert engine.ledger.liquidation_price(position_id) == original
        assert engine.balance("alice", QUOTE) == Decimal("9500")

    def test_cannot_withdraw_into_liquidation(self, engine):
        position_id = engine.ledger.open_position("alice", False, Decimal("1000"), Decimal("500"))
        engine.set_price("700")
        with pytest.raises(NotCollateralized):
            engine.ledger.reduce_collateral("alice", position_id, Decimal("250"))
        assert engine.ledger.get_position(position_id).margin == Decimal("500")

    def test_resize_closes_and_reopens(self, engine):
        position_id = engine.ledger.open_position("alice", False, Decimal("1000"), Decimal("500"))

        payout, new_id = engine.ledger.resize_position("alice", position_id, Decimal("2000"), Decimal("800"))

        assert new_id == position_id + 1
        assert engine.ledger.get_position(position_id).state == "CLOSED"
        resized = engine.ledger.get_position(new_id)
        assert resized.notional_size == Decimal("2000")
        assert resized.position_units == Decimal("2")
        assert resized.holder == "alice"
        assert engine.balance("alice", QUOTE) == Decimal("9500") - Decimal("800") + payout
        assert engine.balance("alice", position_receipt_asset(position_id)) == Decimal("0")
        assert engine.balance("alice", position_receipt_asset(new_id)) == Decimal("1")
        assert engine.ledger.get_pool(Side.BASE).margin == Decimal("800")
        assert engine.ledger.update_log[-1].operation == "resize_position"
        assert engine.ledger.verify_invariants()['valid']


# ============================================================================
# RECEIPT OWNERSHIP
# ============================================================================

class TestReceiptOwnership:

    def test_moved_position_receipt_can_still_be_liquidated(self, engine):
        position_id = engine.ledger.open_position("alice", False, Decimal("1000"), Decimal("500"))
        engine.custody.transfer("alice", "bob", position_receipt_asset(position_id), Decimal("1"))
        engine.set_price("500")
        assert not engine.ledger.is_collateralized(position_id)

        claim_id = engine.ledger.liquidate("keeper", position_id)

        assert engine.ledger.get_claim(claim_id).holder == "bob"
        assert engine.balance("bob", claim_receipt_asset(claim_id)) == Decimal("1")
        assert engine.balance("alice", claim_receipt_asset(claim_id)) == Decimal("0")
        assert engine.custody.total_supply(position_receipt_asset(position_id)) == Decimal("0")
        assert engine.ledger.get_position(position_id).holder == "bob"
        assert engine.balance("keeper", QUOTE) == Decimal("1.25")

    def test_new_receipt_holder_closes_and_is_paid(self, engine):
        position_id = engine.ledger.open_position("alice", False, Decimal("1000"), Decimal("500"))
        engine.custody.transfer("alice", "bob", position_receipt_asset(position_id), Decimal("1"))

        with pytest.raises(NotAuthorized):
            engine.ledger.close_position("alice", position_id)
        payout = engine.ledger.close_position("bob", position_id)

        assert engine.balance("bob", QUOTE) == Decimal("10000") + payout
        assert engine.balance("alice", QUOTE) == Decimal("9500")
        assert engine.ledger.get_position(position_id).holder == "bob"

    def test_moved_claim_receipt_settles_for_new_holder(self, engine):
        position_id = engine.ledger.open_position("alice", False, Decimal("1000"), Decimal("500"))
        engine.set_price("500")
        claim_id = engine.ledger.liquidate("keeper", position_id)
        engine.custody.transfer("alice", "bob", claim_receipt_asset(claim_id), Decimal("1"))
        _roll_epoch(engine, "1200")

        with pytest.raises(NotAuthorized):
            engine.ledger.settle("alice", claim_id)
        paid = engine.ledger.settle("bob", claim_id)

        assert paid == quote_to_base(Decimal("200"), Decimal("1200"))
        assert engine.balance("bob", BASE) == paid
        assert engine.balance("alice", BASE) == Decimal("0")
        claim = engine.ledger.get_claim(claim_id)
        assert claim.is_settled
        assert claim.holder == "bob"


# ============================================================================
# OPPOSITE SIDES
# ============================================================================

class TestOppositeSides:

    def test_closing_one_side_leaves_the_other_pool_intact(self, engine):
        long_id = engine.ledger.open_position("alice", False, Decimal("1000"), Decimal("500"))
        engine.set_price("1200")
        short_id = engine.ledger.open_position("bob", True, Decimal("3000"), Decimal("600"))
        base_pool = engine.ledger.get_pool(Side.BASE)
        assert base_pool.position_units == Decimal("1")
        assert base_pool.average_open_price == Decimal("1000")

        engine.set_price("1100")
        engine.ledger.close_position("bob", short_id)

        assert engine.ledger.get_pool(Side.BASE) == base_pool
        quote_pool = engine.ledger.get_pool(Side.QUOTE)
        assert quote_pool.position_units == Decimal("0")
        assert quote_pool.average_open_price == Decimal("0")
        assert quote_pool.open_interest == Decimal("0")
        assert engine.ledger.get_position(long_id).is_open
        assert engine.ledger.position_pnl(long_id) == Decimal("100")
        assert engine.ledger.verify_invariants()['valid']
