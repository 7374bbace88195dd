"""
black_scholes.py - Black-Scholes Option Pricing

Zero-rate Black-Scholes with time in calendar days (365 days/year), the
convention for assets that trade around the clock. Float core on numpy and
scipy, Decimal interface quantized to 8 places.

Provides:
- Standard normal CDF
- d1, d2
- call and put prices
- BlackScholesPricer: an OptionPricer for the engine
"""

from datetime import datetime
from decimal import Decimal, ROUND_HALF_EVEN
from typing import Callable, Union
import math

import numpy as np
from scipy.special import erf as scipy_erf

from .units import SECONDS_PER_DAY, ZERO, to_decimal


# Type alias for scalar or array inputs
Numeric = Union[float, np.ndarray]

# Constants
CALENDAR_DAYS_PER_YEAR = 365.0
SQRT_2 = math.sqrt(2.0)
_PRICE_QUANTUM = Decimal("0.00000001")


# ============================================================================
# NORMAL DISTRIBUTION FUNCTIONS
# ============================================================================

def normal_cdf(x: Numeric) -> Numeric:
    """Standard normal cumulative distribution function."""
    return 0.5 * (1.0 + scipy_erf(np.asarray(x) / SQRT_2))


# ============================================================================
# D1 AND D2
# ============================================================================

def _validate_bs_inputs(s: Numeric, k: Numeric, t_in_days: Numeric, v: Numeric) -> None:
    """Validate Black-Scholes inputs to prevent division by zero and NaN/Inf."""
    s_arr = np.asarray(s)
    k_arr = np.asarray(k)
    t_arr = np.asarray(t_in_days)
    v_arr = np.asarray(v)
    if not np.all(np.isfinite(s_arr)) or np.any(s_arr <= 0):
        raise ValueError("spot price must be positive and finite")
    if not np.all(np.isfinite(k_arr)) or np.any(k_arr <= 0):
        raise ValueError("strike must be positive and finite")
    if not np.all(np.isfinite(t_arr)) or np.any(t_arr <= 0):
        raise ValueError("t_in_days must be positive and finite")
    if not np.all(np.isfinite(v_arr)) or np.any(v_arr <= 0):
        raise ValueError("volatility must be positive and finite")


def d1(s: Numeric, k: Numeric, t_in_days: Numeric, v: Numeric) -> Numeric:
    """
    Calculate d1 in Black-Scholes formula (zero-rate).

    d1 = (ln(S/K) + 0.5*σ²*t) / (σ*√t)

    Raises:
        ValueError: If any input is non-positive or not finite
    """
    _validate_bs_inputs(s, k, t_in_days, v)
    t = t_in_days / CALENDAR_DAYS_PER_YEAR
    return (np.log(s / k) + 0.5 * v * v * t) / (v * np.sqrt(t))


def d2(s: Numeric, k: Numeric, t_in_days: Numeric, v: Numeric) -> Numeric:
    """
    Calculate d2 in Black-Scholes formula (zero-rate).

    d2 = d1 - σ*√t

    Raises:
        ValueError: If any input is non-positive or not finite
    """
    _validate_bs_inputs(s, k, t_in_days, v)
    t = t_in_days / CALENDAR_DAYS_PER_YEAR
    return (np.log(s / k) - 0.5 * v * v * t) / (v * np.sqrt(t))


# ============================================================================
# OPTION PRICES
# ============================================================================

def _call_float(s: Numeric, k: Numeric, t_in_days: Numeric, v: Numeric) -> Numeric:
    """
    Black-Scholes call option price (zero-rate). Internal float implementation.

    C = S*N(d1) - K*N(d2)
    """
    d1_val = d1(s, k, t_in_days, v)
    d2_val = d2(s, k, t_in_days, v)
    return s * normal_cdf(d1_val) - k * normal_cdf(d2_val)


def call(s: Decimal, k: Decimal, t_in_days: Decimal, v: Decimal) -> Decimal:
    """Black-Scholes call option price with Decimal interface."""
    result = _call_float(float(s), float(k), float(t_in_days), float(v))
    return Decimal(str(float(result))).quantize(_PRICE_QUANTUM, rounding=ROUND_HALF_EVEN)


def _put_float(s: Numeric, k: Numeric, t_in_days: Numeric, v: Numeric) -> Numeric:
    """
    Black-Scholes put option price (zero-rate). Internal float implementation.

    P = K*N(-d2) - S*N(-d1)
    """
    d1_val = d1(s, k, t_in_days, v)
    d2_val = d2(s, k, t_in_days, v)
    return k * normal_cdf(-d2_val) - s * normal_cdf(-d1_val)


def put(s: Decimal, k: Decimal, t_in_days: Decimal, v: Decimal) -> Decimal:
    """Black-Scholes put option price with Decimal interface."""
    result = _put_float(float(s), float(k), float(t_in_days), float(v))
    return Decimal(str(float(result))).quantize(_PRICE_QUANTUM, rounding=ROUND_HALF_EVEN)


# ============================================================================
# OPTION PRICER
# ============================================================================

class BlackScholesPricer:
    """
    OptionPricer backed by zero-rate Black-Scholes.

    Time to expiry is measured from `clock()`, normally the ledger's
    logical time. At or past expiry the option is worth its intrinsic value.
    """

    def __init__(self, clock: Callable[[], datetime]):
        self.clock = clock

    def option_price(
        self,
        is_put: bool,
        expiry: datetime,
        strike: Decimal,
        spot: Decimal,
        volatility: Decimal,
    ) -> Decimal:
        strike = to_decimal(strike)
        spot = to_decimal(spot)
        t_in_days = (expiry - self.clock()).total_seconds() / SECONDS_PER_DAY
        if t_in_days <= 0:
            intrinsic = strike - spot if is_put else spot - strike
            return max(intrinsic, ZERO)
        pricer = put if is_put else call
        return pricer(spot, strike, Decimal(str(t_in_days)), to_decimal(volatility))

    def __repr__(self):
        return "BlackScholesPricer(zero-rate, 365d)"
