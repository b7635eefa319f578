"""
database/repository.py
Position repository: the persistence contract the position manager and the
order engine depend on, plus the default SQLModel implementation.

Only OPEN rows count as open. PARTIAL_EXIT / STOP_HIT rows are still held but
are excluded from exposure sums and price refreshes.
"""

import logging
from datetime import datetime, timezone
from typing import Optional, Protocol

from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlmodel import select

from database.models import OrderRecord, Position, PositionStatus, PositionStrategy

logger = logging.getLogger(__name__)


class PositionRepository(Protocol):
    async def get_open_positions(self, strategy: PositionStrategy | None = None) -> list[Position]: ...

    async def upsert_position(self, position: Position) -> None: ...

    async def get_position(self, position_id: str) -> Optional[Position]: ...

    async def update_position_price(
        self, position_id: str, current_price: float, current_value_usd: float
    ) -> None: ...

    async def set_status(self, position_id: str, status: PositionStatus) -> None: ...

    async def close_position(
        self, position_id: str, exit_tx_hash: str, realized_pnl_usd: float
    ) -> None: ...

    async def get_total_realized_pnl(self) -> float: ...

    async def record_order(self, record: OrderRecord) -> None: ...


class SQLPositionRepository:
    """PositionRepository over an async SQLAlchemy session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get_open_positions(self, strategy: PositionStrategy | None = None) -> list[Position]:
        stmt = select(Position).where(Position.status == PositionStatus.OPEN)
        if strategy is not None:
            stmt = stmt.where(Position.strategy == strategy)
        stmt = stmt.order_by(Position.opened_at.desc())
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def upsert_position(self, position: Position) -> None:
        async with self._session_factory() as session:
            await session.merge(position)
            await session.commit()

    async def get_position(self, position_id: str) -> Optional[Position]:
        async with self._session_factory() as session:
            return await session.get(Position, position_id)

    async def update_position_price(
        self, position_id: str, current_price: float, current_value_usd: float
    ) -> None:
        async with self._session_factory() as session:
            position = await session.get(Position, position_id)
            if position is None:
                logger.warning("update_position_price: %s not found", position_id)
                return
            position.current_price = current_price
            position.current_value_usd = current_value_usd
            position.unrealized_pnl_usd = current_value_usd - position.cost_basis_usd
            position.updated_at = datetime.now(timezone.utc)
            session.add(position)
            await session.commit()

    async def set_status(self, position_id: str, status: PositionStatus) -> None:
        async with self._session_factory() as session:
            position = await session.get(Position, position_id)
            if position is None:
                logger.warning("set_status: %s not found", position_id)
                return
            position.status = status
            position.updated_at = datetime.now(timezone.utc)
            session.add(position)
            await session.commit()

    async def close_position(
        self, position_id: str, exit_tx_hash: str, realized_pnl_usd: float
    ) -> None:
        now = datetime.now(timezone.utc)
        async with self._session_factory() as session:
            position = await session.get(Position, position_id)
            if position is None:
                logger.warning("close_position: %s not found", position_id)
                return
            position.status = PositionStatus.CLOSED
            position.exit_tx_hash = exit_tx_hash
            position.realized_pnl_usd = realized_pnl_usd
            position.unrealized_pnl_usd = 0.0
            position.current_value_usd = 0.0
            position.closed_at = now
            position.updated_at = now
            session.add(position)
            await session.commit()

    async def get_total_realized_pnl(self) -> float:
        stmt = select(func.coalesce(func.sum(Position.realized_pnl_usd), 0.0)).where(
            Position.status == PositionStatus.CLOSED
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return float(result.scalar() or 0.0)

    async def record_order(self, record: OrderRecord) -> None:
        async with self._session_factory() as session:
            session.add(record)
            await session.commit()
