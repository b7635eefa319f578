"""
tests/conftest.py
Shared fixtures for the test suite.
"""

from collections.abc import AsyncGenerator
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from eth_account import Account
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

import database.models as _models  # noqa: F401 (registers table metadata)
from core.config import Settings
from database.repository import SQLPositionRepository
from trader.models import Market, OutcomeToken

# Well-known throwaway key (hardhat account #0). Never holds funds.
TEST_PRIVATE_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"

# urlsafe base64 of a 32-byte HMAC key
TEST_API_SECRET = "c2VjcmV0LXNlY3JldC1zZWNyZXQtc2VjcmV0LTEyMzQ="

NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from any local .env file."""
    return Settings(
        _env_file=None,
        POLY_PRIVATE_KEY="",
        POLY_API_KEY="",
        POLY_API_SECRET="",
        POLY_PASSPHRASE="",
        DRY_RUN=False,
        DATABASE_URL="sqlite+aiosqlite:///:memory:",
    )


@pytest.fixture
def account():
    return Account.from_key(TEST_PRIVATE_KEY)


@pytest_asyncio.fixture
async def session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """In-memory SQLite shared across sessions via a single static connection."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest_asyncio.fixture
async def repo(session_factory) -> SQLPositionRepository:
    return SQLPositionRepository(session_factory)


def make_market(
    question: str = "Will Bitcoin reach $100k by March 2026?",
    yes_price: float = 0.40,
    no_price: float = 0.60,
    days_left: float = 30,
    liquidity: float = 20_000.0,
    condition_id: str = "0xabc123def4567890",
    tick_size: float = 0.01,
) -> Market:
    """Helper to create a Market with sensible defaults."""
    return Market(
        condition_id=condition_id,
        question=question,
        end_date=NOW + timedelta(days=days_left),
        active=True,
        closed=False,
        liquidity=liquidity,
        volume=100_000.0,
        tokens=(
            OutcomeToken(token_id="1111", outcome="Yes", price=yes_price),
            OutcomeToken(token_id="2222", outcome="No", price=no_price),
        ),
        tick_size=tick_size,
    )
