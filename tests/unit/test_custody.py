"""
test_custody.py - Unit tests for InMemoryCustody and OracleSwapRouter
"""

import pytest
from decimal import Decimal

from optionperp import (
    Custody, InMemoryCustody, InsufficientBalance, OracleSwapRouter, StaticPriceOracle,
    SwapRouter, VAULT_WALLET,
)


@pytest.fixture
def custody():
    custody = InMemoryCustody()
    custody.credit("alice", "USDC", Decimal("1000"))
    return custody


class TestInMemoryCustody:

    def test_satisfies_protocol(self, custody):
        assert isinstance(custody, Custody)

    def test_pull_and_push(self, custody):
        custody.pull("alice", "USDC", Decimal("250"))
        assert custody.balance_of("alice", "USDC") == Decimal("750")
        assert custody.balance_of(VAULT_WALLET, "USDC") == Decimal("250")
        custody.push("bob", "USDC", Decimal("100"))
        assert custody.balance_of("bob", "USDC") == Decimal("100")
        assert custody.balance_of(VAULT_WALLET, "USDC") == Decimal("150")

    def test_pull_beyond_balance(self, custody):
        with pytest.raises(InsufficientBalance):
            custody.pull("alice", "USDC", Decimal("1000.01"))
        assert custody.balance_of("alice", "USDC") == Decimal("1000")

    def test_vault_exempt_from_balance_checks(self, custody):
        custody.push("bob", "ETH", Decimal("1"))
        assert custody.balance_of(VAULT_WALLET, "ETH") == Decimal("-1")

    def test_mint_and_burn_track_supply(self, custody):
        custody.mint("alice", "LP-QUOTE", Decimal("10"))
        custody.burn("alice", "LP-QUOTE", Decimal("4"))
        assert custody.total_supply("LP-QUOTE") == Decimal("6")
        with pytest.raises(InsufficientBalance):
            custody.burn("alice", "LP-QUOTE", Decimal("7"))

    def test_transfer(self, custody):
        custody.transfer("alice", "bob", "USDC", Decimal("300"))
        assert custody.balance_of("bob", "USDC") == Decimal("300")
        with pytest.raises(InsufficientBalance):
            custody.transfer("bob", "carol", "USDC", Decimal("301"))

    @pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-1")])
    def test_non_positive_amounts_rejected(self, custody, amount):
        with pytest.raises(ValueError):
            custody.pull("alice", "USDC", amount)


class TestOracleSwapRouter:

    def test_base_to_quote_at_mark(self, custody):
        router = OracleSwapRouter(custody, StaticPriceOracle(Decimal("2000")), "USDC", "ETH")
        spent = router.swap_exact_out("ETH", "USDC", Decimal("500"))
        assert spent == Decimal("0.25")
        assert custody.balance_of(VAULT_WALLET, "ETH") == Decimal("-0.25")
        assert custody.balance_of(VAULT_WALLET, "USDC") == Decimal("500")
        assert router.swaps == [("ETH", "USDC", Decimal("0.25"), Decimal("500"))]
        assert isinstance(router, SwapRouter)

    def test_fee_increases_amount_in(self, custody):
        router = OracleSwapRouter(custody, StaticPriceOracle(Decimal("2000")), "USDC", "ETH",
                                  fee_rate=Decimal("0.01"))
        assert router.swap_exact_out("USDC", "ETH", Decimal("1")) == Decimal("2020")

    def test_unsupported_pair(self, custody):
        router = OracleSwapRouter(custody, StaticPriceOracle(Decimal("2000")), "USDC", "ETH")
        with pytest.raises(ValueError):
            router.swap_exact_out("ETH", "BTC", Decimal("1"))


class TestReceiptOwner:

    def test_follows_transfers_and_burns(self, custody):
        custody.mint("alice", "PERP-1", Decimal("1"))
        assert custody.owner_of("PERP-1") == "alice"
        custody.transfer("alice", "bob", "PERP-1", Decimal("1"))
        assert custody.owner_of("PERP-1") == "bob"
        custody.burn("bob", "PERP-1", Decimal("1"))
        assert custody.owner_of("PERP-1") is None
