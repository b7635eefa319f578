"""
agents/__init__.py
Shared types for the probability desks: the estimate every desk returns, the
scout sentiment it may consume, and the price-feed contract for live prices.
"""

from dataclasses import dataclass, field
from typing import Protocol


@dataclass
class EstimateResult:
    """Standard output from any probability desk."""
    desk: str
    rule: str
    probability: float        # 0.00 - 1.00, P(Yes)
    confidence: float         # 0.00 - 1.00
    reasoning: str


@dataclass
class ScoutContext:
    """Market sentiment supplied by an upstream scout. Any field may be unknown."""
    crypto_bullish: bool | None = None
    relevant_narratives: list[str] = field(default_factory=list)


class PriceFeed(Protocol):
    async def get_prices(self, symbols: list[str]) -> dict[str, float]:
        """Live prices keyed by pair symbol, e.g. ``{"BTC/USD": 97000.0}``."""
        ...
