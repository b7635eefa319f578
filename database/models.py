"""
database/models.py
SQLModel table definitions for the trading core: tracked positions and the
order audit trail. Rows are never deleted; closed positions keep their P&L.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel


def _utcnow() -> datetime:
    """Timezone-aware UTC now (replaces the deprecated utcnow call)."""
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class PositionStrategy(str, Enum):
    POLYMARKET = "polymarket"
    HYPERLIQUID = "hyperliquid"
    KAMINO = "kamino"
    JITO = "jito"
    JUPITER_SWAP = "jupiter_swap"


class PositionStatus(str, Enum):
    OPEN = "OPEN"
    PARTIAL_EXIT = "PARTIAL_EXIT"
    CLOSED = "CLOSED"
    STOP_HIT = "STOP_HIT"
    EXPIRED = "EXPIRED"


# ---------------------------------------------------------------------------
# Position: one tracked holding under a strategy
# ---------------------------------------------------------------------------

class Position(SQLModel, table=True):
    """A tracked position. Prediction-market rows carry conditionId/tokenId in meta."""

    id: str = Field(primary_key=True)

    strategy: PositionStrategy = Field(index=True)
    asset: str
    description: str = ""
    chain: str
    status: PositionStatus = Field(default=PositionStatus.OPEN, index=True)

    # Pricing
    entry_price: float
    current_price: float
    size_units: float
    cost_basis_usd: float
    current_value_usd: float
    realized_pnl_usd: float = 0.0
    unrealized_pnl_usd: float = 0.0

    # References
    entry_tx_hash: Optional[str] = None
    exit_tx_hash: Optional[str] = None
    external_id: Optional[str] = None
    meta: dict[str, Any] = Field(default_factory=dict, sa_column=Column("metadata", JSON))

    # Timing
    opened_at: datetime = Field(default_factory=_utcnow)
    closed_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=_utcnow)


# ---------------------------------------------------------------------------
# OrderRecord: audit trail for every order attempt, success or failure
# ---------------------------------------------------------------------------

class OrderRecord(SQLModel, table=True):
    """One placed (or failed) order as reported back by the order engine."""

    id: Optional[int] = Field(default=None, primary_key=True)

    order_id: str = Field(default="", index=True)
    condition_id: str = Field(index=True)
    token_id: str
    outcome: str
    side: str
    size_usd: float
    limit_price: float
    status: str
    transaction_hash: Optional[str] = None
    error_message: Optional[str] = None

    created_at: datetime = Field(default_factory=_utcnow)
