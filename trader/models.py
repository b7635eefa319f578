"""
trader/models.py
Value types passed between the scanner, the order engine and the position
manager. Persisted rows live in database/models.py; these never touch the DB.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


class Side(str, Enum):
    BUY = "BUY"
    SELL = "SELL"

    @property
    def code(self) -> int:
        """EIP-712 uint8 encoding: 0 = BUY, 1 = SELL."""
        return 0 if self is Side.BUY else 1


class OrderState(str, Enum):
    LIVE = "LIVE"
    MATCHED = "MATCHED"
    CANCELLED = "CANCELLED"
    ERROR = "ERROR"


class ActionKind(str, Enum):
    STOP_LOSS = "STOP_LOSS"
    TAKE_PROFIT = "TAKE_PROFIT"
    EXPIRE = "EXPIRE"
    UPDATE_PRICE = "UPDATE_PRICE"


class Urgency(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


# ---------------------------------------------------------------------------
# Markets
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class OutcomeToken:
    token_id: str
    outcome: str              # "Yes" | "No"
    price: float              # 0 or 1 means stale; never clamped
    winner: bool = False

    @property
    def has_valid_price(self) -> bool:
        return 0 < self.price < 1


@dataclass(frozen=True)
class Market:
    """A binary market, normalized from either API payload shape."""
    condition_id: str
    question: str
    end_date: Optional[datetime]
    active: bool
    closed: bool
    liquidity: float
    volume: float
    tokens: tuple[OutcomeToken, OutcomeToken]
    category: str = "crypto"
    tick_size: float = 0.01

    @property
    def yes_token(self) -> Optional[OutcomeToken]:
        return next((t for t in self.tokens if t.outcome == "Yes"), None)

    @property
    def no_token(self) -> Optional[OutcomeToken]:
        return next((t for t in self.tokens if t.outcome == "No"), None)

    def days_to_resolution(self, now: datetime | None = None) -> Optional[float]:
        if self.end_date is None:
            return None
        now = now or datetime.now(timezone.utc)
        return (self.end_date - now).total_seconds() / 86_400


@dataclass(frozen=True)
class MarketFilters:
    min_liquidity_usd: float = 5_000.0
    max_days_to_resolution: int = 90
    limit: int = 200


@dataclass(frozen=True)
class Opportunity:
    market: Market
    target_token: OutcomeToken
    side: str                 # "YES" | "NO"
    estimated_probability: float
    market_price: float
    edge: float
    kelly_fraction: float
    recommended_usd: float
    rationale: str

    @property
    def expected_value_proxy(self) -> float:
        return self.edge * self.recommended_usd


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Credentials:
    api_key: str
    secret: str
    passphrase: str
    source: str = "derived"   # "preconfigured" | "derived"

    def __repr__(self) -> str:
        return f"Credentials(api_key={self.api_key!r}, source={self.source!r})"


@dataclass(frozen=True)
class MarketParams:
    tick_size: float = 0.01
    fee_rate_bps: int = 0
    neg_risk: bool = False


@dataclass(frozen=True)
class SignedOrder:
    salt: str
    maker: str
    signer: str
    taker: str
    token_id: str
    maker_amount: str
    taker_amount: str
    expiration: str
    nonce: str
    fee_rate_bps: str
    side: int                 # 0 = BUY, 1 = SELL
    signature_type: int       # 0 = EOA
    signature: str


@dataclass
class PlacedOrder:
    """Result of an order attempt. Always returned, never raised."""
    condition_id: str
    token_id: str
    outcome: str
    side: Side
    size_usd: float
    limit_price: float
    order_id: str = ""
    status: OrderState = OrderState.ERROR
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    transaction_hash: Optional[str] = None
    error_message: Optional[str] = None


@dataclass(frozen=True)
class OrderStatus:
    status: str               # MATCHED | LIVE | CANCELLED | EXPIRED | UNKNOWN
    filled_size: Optional[float] = None
    transaction_hashes: tuple[str, ...] = ()


# ---------------------------------------------------------------------------
# Live venue snapshots
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class LivePosition:
    condition_id: str
    question: str
    token_id: str
    outcome: str
    size: float
    entry_price: float
    current_price: float
    cost_basis_usd: float
    current_value_usd: float
    unrealized_pnl_usd: float
    redeemable: bool = False


@dataclass(frozen=True)
class LivePerpPosition:
    coin: str
    size_usd: float
    mark_price: float
    liquidation_price: float


@dataclass(frozen=True)
class LendingDeposit:
    """One observed Kamino lending deposit."""
    asset: str
    amount: float
    value_usd: float
    apy: float


@dataclass(frozen=True)
class PortfolioSummary:
    open_positions: int
    total_deployed_usd: float
    unrealized_pnl_usd: float
    positions: tuple[LivePosition, ...]
    timestamp: datetime


# ---------------------------------------------------------------------------
# Risk
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ExposureCheck:
    allowed: bool
    current_exposure_usd: float
    cap_usd: float
    headroom_usd: float
    reason: Optional[str] = None


@dataclass(frozen=True)
class PositionAction:
    position_id: str
    action: ActionKind
    reason: str
    urgency: Urgency
