"""
conftest.py - Shared pytest fixtures for margin engine tests

Provides common fixtures used across unit, functional and conformance tests:
- A funded, bootstrapped engine (see tests/harness.py)
- The default EngineConfig
- A market snapshot and a sample long position for pure-function tests
"""

import pytest
from decimal import Decimal

from optionperp import EngineConfig, Side, Pool, Position, MarketSnapshot

from tests.harness import START, Harness, build_engine


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def engine() -> Harness:
    """Engine with 10,000 quote and 10 base deposited, mark 1000, epoch 1 open."""
    return build_engine()


@pytest.fixture
def config() -> EngineConfig:
    return EngineConfig()


@pytest.fixture
def market() -> MarketSnapshot:
    """Mark 1000 with 10,000 quote and 10 base of free liquidity."""
    return MarketSnapshot(
        mark_price=Decimal("1000"),
        timestamp=START,
        quote_pool=Pool(side=Side.QUOTE, total_deposits=Decimal("10000")),
        base_pool=Pool(side=Side.BASE, total_deposits=Decimal("10")),
    )


@pytest.fixture
def long_position() -> Position:
    """One base unit long at 1000 with 500 margin and a 40 premium."""
    return Position(
        id=1,
        holder="alice",
        is_short=False,
        position_units=Decimal("1"),
        notional_size=Decimal("1000"),
        average_open_price=Decimal("1000"),
        margin=Decimal("500"),
        premium=Decimal("40"),
        opening_fees=Decimal("0.5"),
        opened_at=START,
    )
