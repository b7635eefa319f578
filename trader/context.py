"""
trader/context.py
Owned wiring for one trading process: wallet, HTTP clients, credential cache,
allowance memo, repository and the services built on them.

Build once with TradingContext.create() and close with aclose(). Nothing in
the trader package reaches for module-level singletons; everything it needs
comes through here.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import httpx
from eth_account import Account
from eth_account.signers.local import LocalAccount
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from agents import PriceFeed
from core.config import Settings, get_settings
from core.constants import SYSTEM_VERSION
from database.repository import PositionRepository, SQLPositionRepository
from trader.services.approvals import AllowanceManager
from trader.services.credentials import CredentialManager
from trader.services.execution import OrderEngine
from trader.services.polymarket_client import MarketDataClient
from trader.services.position_manager import PositionManager
from trader.services.scanner_service import OpportunityScanner

logger = logging.getLogger(__name__)


def load_account(private_key: str) -> Optional[LocalAccount]:
    """Wallet from a hex key, or None when no key is configured."""
    if not private_key:
        return None
    return Account.from_key(private_key)


@dataclass
class TradingContext:
    settings: Settings
    account: Optional[LocalAccount]
    market_data: MarketDataClient
    credentials: CredentialManager
    allowances: AllowanceManager
    orders: OrderEngine
    repository: PositionRepository
    positions: PositionManager
    scanner: OpportunityScanner

    @property
    def wallet_address(self) -> Optional[str]:
        return self.account.address if self.account is not None else None

    @classmethod
    def create(
        cls,
        settings: Settings | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        price_feed: PriceFeed | None = None,
        market_http: httpx.AsyncClient | None = None,
        clob_http: httpx.AsyncClient | None = None,
    ) -> "TradingContext":
        settings = settings or get_settings()
        if session_factory is None:
            from database.connection import async_session
            session_factory = async_session

        account = load_account(settings.POLY_PRIVATE_KEY)
        if account is None:
            logger.warning("POLY_PRIVATE_KEY not set; running read-only (order placement disabled)")

        market_data = MarketDataClient(market_http, settings)
        credentials = CredentialManager(account, clob_http, settings)
        allowances = AllowanceManager(account, settings=settings)
        repository = SQLPositionRepository(session_factory)

        ctx = cls(
            settings=settings,
            account=account,
            market_data=market_data,
            credentials=credentials,
            allowances=allowances,
            orders=OrderEngine(account, credentials, allowances, audit=repository, settings=settings),
            repository=repository,
            positions=PositionManager(repository),
            scanner=OpportunityScanner(market_data, price_feed, settings),
        )
        logger.info(
            "Trading context %s ready: wallet=%s dry_run=%s",
            SYSTEM_VERSION, ctx.wallet_address or "none", settings.DRY_RUN,
        )
        return ctx

    async def aclose(self) -> None:
        await self.market_data.close()
        await self.credentials.close()
