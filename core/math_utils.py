"""
core/math_utils.py
Sizing and pricing math: fractional Kelly for binary contracts, the normal
CDF used by price-target estimates, and tick-size rounding.

Pure functions, no I/O. The order builder and the scanner both lean on these.
"""

import math
from decimal import ROUND_HALF_UP, Decimal
from statistics import NormalDist
from typing import NamedTuple

from core.constants import KELLY_HARD_CAP_PCT

_STANDARD_NORMAL = NormalDist()


class KellySize(NamedTuple):
    fraction: float
    usd: float


def kelly_size(
    market_price: float,
    our_prob: float,
    bankroll_usd: float,
    kelly_fraction: float = 0.25,
    min_edge: float = 0.05,
) -> KellySize:
    """
    Fractional Kelly stake for buying a binary token at ``market_price``.

    edge = q - p
    b    = (1 - p) / p          net odds per unit wagered
    f*   = (b*q - (1 - q)) / b  full Kelly fraction
    bet  = min(f* * kelly_fraction * bankroll, 6% of bankroll), cents rounded down

    Returns a zero size when the edge is below ``min_edge``, the price is not
    strictly inside (0, 1), or full Kelly is non-positive.
    """
    edge = our_prob - market_price
    if edge < min_edge or market_price <= 0 or market_price >= 1:
        return KellySize(0.0, 0.0)

    b = (1 - market_price) / market_price
    full_kelly = (b * our_prob - (1 - our_prob)) / b
    if full_kelly <= 0:
        return KellySize(0.0, 0.0)

    fraction = full_kelly * kelly_fraction
    usd = min(fraction * bankroll_usd, bankroll_usd * KELLY_HARD_CAP_PCT)
    cents = round(usd, 2)
    if cents > usd:
        cents = round(cents - 0.01, 2)
    return KellySize(fraction, cents)


def normal_cdf(x: float) -> float:
    """P(Z <= x) for a standard normal Z."""
    return _STANDARD_NORMAL.cdf(x)


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def tick_decimals(tick_size: float) -> int:
    """Decimal places implied by a tick: 0.01 -> 2, 0.001 -> 3."""
    if not math.isfinite(tick_size) or tick_size <= 0:
        raise ValueError(f"tick_size must be positive, got {tick_size}")
    return round(-math.log10(tick_size))


def round_to_tick(price: float, tick_size: float) -> Decimal:
    """Round ``price`` half-up to the nearest tick, exact to the tick's decimals."""
    decimals = tick_decimals(tick_size)
    tick = Decimal(str(tick_size))
    steps = (Decimal(str(price)) / tick).quantize(Decimal(1), rounding=ROUND_HALF_UP)
    return (steps * tick).quantize(Decimal(1).scaleb(-decimals))
