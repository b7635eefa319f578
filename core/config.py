"""
core/config.py
Environment-based configuration using pydantic-settings.
Loads from .env file automatically. Wallet keys are optional so dry-run and
read-only market scanning work without them.
"""

from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables / .env file."""

    # --- Polymarket wallet + CLOB credentials ---
    POLY_PRIVATE_KEY: str = ""
    POLY_API_KEY: str = ""
    POLY_API_SECRET: str = ""
    POLY_PASSPHRASE: str = ""

    # --- Endpoints ---
    GAMMA_BASE_URL: str = "https://gamma-api.polymarket.com"
    CLOB_BASE_URL: str = "https://clob.polymarket.com"
    DATA_API_BASE_URL: str = "https://data-api.polymarket.com"
    POLYGON_RPC_URL: str = "https://polygon-rpc.com"

    # --- Trading ---
    DRY_RUN: bool = True
    KELLY_FRACTION: float = 0.25
    MIN_EDGE: float = 0.05
    MAX_SINGLE_BET_USD: float = 50.0
    MAX_POLYMARKET_USD: float = 200.0

    # --- Discovery filters ---
    MIN_LIQUIDITY_USD: float = 5_000.0
    MAX_DAYS_TO_RESOLUTION: int = 90
    MARKET_LIST_LIMIT: int = 200

    # --- Timeouts (seconds) ---
    MARKET_DATA_TIMEOUT_SECONDS: float = 10.0
    ORDER_TIMEOUT_SECONDS: float = 30.0
    APPROVAL_RECEIPT_TIMEOUT_SECONDS: int = 180

    # --- Scheduler ---
    SCAN_INTERVAL_MINUTES: int = 30
    POSITION_REFRESH_SECONDS: int = 120
    BANKROLL_USD: float = 1_000.0

    # --- Database ---
    DATABASE_URL: str = "sqlite+aiosqlite:///./trading_core.db"

    # --- Logging ---
    LOG_LEVEL: str = "INFO"

    model_config = {
        "env_file": ".env",
        "extra": "ignore",
    }

    @field_validator("KELLY_FRACTION")
    @classmethod
    def _clamp_kelly_fraction(cls, v: float) -> float:
        return min(1.0, max(0.01, v))

    @field_validator("MIN_EDGE")
    @classmethod
    def _floor_min_edge(cls, v: float) -> float:
        return max(0.01, v)

    @property
    def has_preconfigured_credentials(self) -> bool:
        return bool(self.POLY_API_KEY and self.POLY_API_SECRET and self.POLY_PASSPHRASE)


@lru_cache
def get_settings() -> Settings:
    """Singleton access to application settings."""
    return Settings()
