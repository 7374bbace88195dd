"""
config.py - Engine Configuration

All tunable rates live in one frozen dataclass that is built once and handed
to PerpLedger. Rates are fractions, not basis points: 0.0005 is 5 bps.
"""

from __future__ import annotations
from dataclasses import dataclass, fields
from decimal import Decimal
from typing import Any, Mapping

from .units import DAYS_PER_YEAR, ZERO, to_decimal


_RATE_FIELDS = (
    'opening_fee_rate',
    'closing_fee_rate',
    'min_funding_rate',
    'max_funding_rate',
    'liquidation_threshold',
    'liquidation_fee_rate',
)


@dataclass(frozen=True, slots=True)
class EngineConfig:
    """
    Immutable engine parameters.

    Attributes:
        quote_asset: Symbol of the stable asset (collateral, payouts, shorts' pool)
        base_asset: Symbol of the volatile asset (longs' pool)
        opening_fee_rate: Fee on notional when a position opens
        closing_fee_rate: Fee on notional + PnL when a position closes
        min_funding_rate: Annual long funding rate when longs are outweighed
        max_funding_rate: Annual long funding rate once long OI >= short OI
        liquidation_threshold: Fraction of net margin held back as a safety buffer
        liquidation_fee_rate: Fraction of seized margin paid to the liquidator
        funding_days_per_year: Annualization divisor for funding accrual
    """
    quote_asset: str = "USDC"
    base_asset: str = "ETH"
    opening_fee_rate: Decimal = Decimal("0.0005")
    closing_fee_rate: Decimal = Decimal("0.0005")
    min_funding_rate: Decimal = Decimal("0.05")
    max_funding_rate: Decimal = Decimal("0.90")
    liquidation_threshold: Decimal = Decimal("0.05")
    liquidation_fee_rate: Decimal = Decimal("0.0025")
    funding_days_per_year: int = DAYS_PER_YEAR

    def __post_init__(self):
        for name in _RATE_FIELDS:
            value = getattr(self, name)
            if not isinstance(value, Decimal):
                value = to_decimal(value)
                object.__setattr__(self, name, value)
            if not value.is_finite() or value < ZERO:
                raise ValueError(f"{name} must be non-negative and finite, got {value}")

        if not self.quote_asset or not self.base_asset:
            raise ValueError("asset symbols cannot be empty")
        if self.quote_asset == self.base_asset:
            raise ValueError("quote_asset and base_asset must differ")
        if self.min_funding_rate > self.max_funding_rate:
            raise ValueError(
                f"min_funding_rate {self.min_funding_rate} exceeds "
                f"max_funding_rate {self.max_funding_rate}"
            )
        if self.liquidation_threshold >= Decimal("1"):
            raise ValueError(f"liquidation_threshold must be below 1, got {self.liquidation_threshold}")
        if self.liquidation_fee_rate >= Decimal("1"):
            raise ValueError(f"liquidation_fee_rate must be below 1, got {self.liquidation_fee_rate}")
        if self.funding_days_per_year <= 0:
            raise ValueError(f"funding_days_per_year must be positive, got {self.funding_days_per_year}")

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> 'EngineConfig':
        """
        Build a config from a plain mapping, e.g. parsed JSON or TOML.

        Unknown keys are rejected so that a typo never silently falls back
        to a default rate.
        """
        known = {f.name for f in fields(cls)}
        unknown = set(raw) - known
        if unknown:
            raise ValueError(f"unknown config keys: {sorted(unknown)}")
        return cls(**dict(raw))
