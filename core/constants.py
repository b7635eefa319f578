"""
core/constants.py
Hard-coded safety rails and protocol constants.
These values are NOT configurable via environment. They are the law.
"""

from typing import Final

# ---------------------------------------------------------------------------
# Sizing rails
# ---------------------------------------------------------------------------
KELLY_HARD_CAP_PCT: Final[float] = 0.06         # no single bet above 6% of bankroll
MIN_CONFIDENCE: Final[float] = 0.45             # estimator confidence floor
MIN_STAKE_USD: Final[float] = 1.0               # smallest stake worth sending
MIN_SCAN_HEADROOM_USD: Final[float] = 2.0       # below this the venue is at capacity

# ---------------------------------------------------------------------------
# Risk rails (position manager)
# ---------------------------------------------------------------------------
STOP_LOSS_LOSS_PCT: Final[float] = 0.60         # loss fraction of cost basis
LIQUIDATION_PROXIMITY_PCT: Final[float] = 0.20  # mark-to-liquidation distance

STRATEGY_CAPS: Final[dict[str, tuple[float, int]]] = {
    # strategy: (max portfolio fraction, max leverage)
    "polymarket": (0.15, 1),
    "hyperliquid": (0.20, 5),
    "kamino": (0.30, 1),
    "jito": (0.25, 1),
    "jupiter_swap": (0.10, 1),
}

# ---------------------------------------------------------------------------
# Polygon / CTF Exchange
# ---------------------------------------------------------------------------
POLYGON_CHAIN_ID: Final[int] = 137
CTF_EXCHANGE: Final[str] = "0x4bFb41d5B3570DeFd03C39a9A4D8dE6Bd8B8982E"
NEG_RISK_CTF_EXCHANGE: Final[str] = "0xC5d563A36AE78145C45a50134d48A1215220f80a"
NEG_RISK_ADAPTER: Final[str] = "0xd91E80cF2E7be2e162c6513ceD06f1dD0dA35296"
USDC_E: Final[str] = "0x2791Bca1f2de4661ED88A30C99A7a9449Aa84174"
CONDITIONAL_TOKENS: Final[str] = "0x4D97DCd97eC945f40cF65F87097ACe5EA0476045"
ZERO_ADDRESS: Final[str] = "0x0000000000000000000000000000000000000000"

USDC_DECIMALS: Final[int] = 6
MAX_UINT256: Final[int] = 2**256 - 1
SUFFICIENT_ALLOWANCE: Final[int] = 1_000_000_000 * 10**USDC_DECIMALS
MAX_SAFE_INTEGER: Final[int] = 2**53 - 1        # salt travels as a JSON number

ORDER_DOMAIN_NAME: Final[str] = "Polymarket CTF Exchange"
CLOB_AUTH_DOMAIN_NAME: Final[str] = "ClobAuthDomain"
CLOB_AUTH_MESSAGE: Final[str] = "This message attests that I control the given wallet"

DEFAULT_TICK_SIZE: Final[float] = 0.01
SIZE_DECIMALS: Final[int] = 2

# ---------------------------------------------------------------------------
# Market data
# ---------------------------------------------------------------------------
FALLBACK_SCAN_LIMIT: Final[int] = 100           # bounded gamma scan in fetch_market
EXIT_PRICE_DISCOUNT: Final[float] = 0.99        # sell 1% under current to fill
MIN_EXIT_PRICE: Final[float] = 0.01

# ---------------------------------------------------------------------------
# System
# ---------------------------------------------------------------------------
SYSTEM_VERSION: Final[str] = "v1.0-trading-core"
