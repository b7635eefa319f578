"""
database/connection.py
Async engine and session factory over SQLModel metadata.
"""

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

import database.models as _models  # noqa: F401 (registers table metadata)
from core.config import get_settings

engine = create_async_engine(get_settings().DATABASE_URL, echo=False)

async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_db() -> None:
    """Create all tables if they don't exist."""
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
