"""
trader/services/position_manager.py
Position lifecycle and portfolio risk.

State machine:
  OPEN -> PARTIAL_EXIT -> CLOSED
  OPEN -> STOP_HIT -> CLOSED
  OPEN -> EXPIRED (-> CLOSED once settlement proceeds are known)

Responsibilities:
  - Gate new positions against per-strategy portfolio caps
  - Refresh prices from live venue snapshots
  - Flag stop-loss, liquidation-proximity and disappearance as actions
  - Mirror observed Kamino lending deposits
  - Record realized P&L on close

Actions are returned to the caller; this module never trades.
"""

import asyncio
import logging
import time
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Optional

from core.constants import LIQUIDATION_PROXIMITY_PCT, STOP_LOSS_LOSS_PCT, STRATEGY_CAPS
from core.exceptions import ExposureLimitError, InvalidTransitionError
from database.models import Position, PositionStatus, PositionStrategy
from database.repository import PositionRepository
from trader.models import (
    ActionKind,
    ExposureCheck,
    LendingDeposit,
    LivePerpPosition,
    LivePosition,
    PositionAction,
    Urgency,
)

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[PositionStatus, frozenset[PositionStatus]] = {
    PositionStatus.OPEN: frozenset({
        PositionStatus.PARTIAL_EXIT,
        PositionStatus.STOP_HIT,
        PositionStatus.EXPIRED,
        PositionStatus.CLOSED,
    }),
    PositionStatus.PARTIAL_EXIT: frozenset({PositionStatus.CLOSED}),
    PositionStatus.STOP_HIT: frozenset({PositionStatus.CLOSED}),
    PositionStatus.EXPIRED: frozenset({PositionStatus.CLOSED}),
    PositionStatus.CLOSED: frozenset(),
}


def _now_ms() -> int:
    return int(time.time() * 1000)


class PositionManager:
    """Single source of truth for tracked positions and strategy exposure."""

    def __init__(self, repo: PositionRepository) -> None:
        self._repo = repo
        self._strategy_locks: defaultdict[PositionStrategy, asyncio.Lock] = defaultdict(asyncio.Lock)

    # ------------------------------------------------------------------
    # Exposure gating
    # ------------------------------------------------------------------

    async def check_exposure(
        self,
        strategy: PositionStrategy,
        proposed_usd: float,
        total_portfolio_usd: float,
    ) -> ExposureCheck:
        """Would ``proposed_usd`` more fit under the strategy's share of the portfolio?"""
        fraction, _ = STRATEGY_CAPS[strategy.value]
        cap_usd = fraction * total_portfolio_usd

        open_positions = await self._repo.get_open_positions(strategy)
        current = sum(p.current_value_usd for p in open_positions)
        headroom = cap_usd - current

        if proposed_usd > headroom:
            return ExposureCheck(
                allowed=False,
                current_exposure_usd=current,
                cap_usd=cap_usd,
                headroom_usd=max(0.0, headroom),
                reason=(
                    f"{strategy.value} cap: current ${current:.2f} + new ${proposed_usd:.2f} "
                    f"exceeds cap ${cap_usd:.2f}"
                ),
            )
        return ExposureCheck(allowed=True, current_exposure_usd=current, cap_usd=cap_usd, headroom_usd=headroom)

    async def _open(self, position: Position, proposed_usd: float, total_portfolio_usd: Optional[float]) -> Position:
        """Persist ``position``; with a portfolio total, check-then-write is atomic per strategy."""
        if total_portfolio_usd is None:
            await self._repo.upsert_position(position)
            return position

        async with self._strategy_locks[position.strategy]:
            check = await self.check_exposure(position.strategy, proposed_usd, total_portfolio_usd)
            if not check.allowed:
                logger.warning("Refusing to open %s: %s", position.id, check.reason)
                raise ExposureLimitError(check.reason or "exposure cap exceeded", {
                    "position_id": position.id,
                    "cap_usd": check.cap_usd,
                    "headroom_usd": check.headroom_usd,
                })
            await self._repo.upsert_position(position)
        return position

    # ------------------------------------------------------------------
    # Opening
    # ------------------------------------------------------------------

    async def open_polymarket_position(
        self,
        condition_id: str,
        question: str,
        token_id: str,
        outcome: str,
        order_id: str,
        size_usd: float,
        entry_price: float,
        tx_hash: str | None = None,
        total_portfolio_usd: float | None = None,
    ) -> Position:
        position = Position(
            id=f"poly-{condition_id[:12]}-{_now_ms()}",
            strategy=PositionStrategy.POLYMARKET,
            asset=token_id,
            description=f"{outcome} | {question[:80]}",
            chain="polygon",
            status=PositionStatus.OPEN,
            entry_price=entry_price,
            current_price=entry_price,
            size_units=size_usd / entry_price,
            cost_basis_usd=size_usd,
            current_value_usd=size_usd,
            entry_tx_hash=tx_hash,
            external_id=order_id,
            meta={"conditionId": condition_id, "tokenId": token_id, "outcome": outcome},
        )
        await self._open(position, size_usd, total_portfolio_usd)
        logger.info("Opened %s: %s %r $%.2f", position.id, outcome, question[:50], size_usd)
        return position

    async def open_perp_position(
        self,
        coin: str,
        side: str,
        size_usd: float,
        entry_price: float,
        leverage: int,
        order_id: str | None = None,
        tx_hash: str | None = None,
        total_portfolio_usd: float | None = None,
    ) -> Position:
        """Track a leveraged perp; cost basis is the margin, value is the notional."""
        _, max_leverage = STRATEGY_CAPS[PositionStrategy.HYPERLIQUID.value]
        if leverage > max_leverage:
            raise ExposureLimitError(
                f"hyperliquid leverage {leverage}x exceeds cap {max_leverage}x",
                {"leverage": leverage, "max_leverage": max_leverage},
            )

        position = Position(
            id=f"hl-{coin.lower()}-{_now_ms()}",
            strategy=PositionStrategy.HYPERLIQUID,
            asset=f"{coin}-PERP",
            description=f"{side} {coin} {leverage}x",
            chain="arbitrum",
            status=PositionStatus.OPEN,
            entry_price=entry_price,
            current_price=entry_price,
            size_units=size_usd / entry_price,
            cost_basis_usd=size_usd / leverage,
            current_value_usd=size_usd,
            entry_tx_hash=tx_hash,
            external_id=order_id,
            meta={"coin": coin, "side": side, "leverage": leverage},
        )
        await self._open(position, size_usd, total_portfolio_usd)
        logger.info("Opened %s: %s %s $%.2f @ %dx", position.id, side, coin, size_usd, leverage)
        return position

    # ------------------------------------------------------------------
    # Price refresh
    # ------------------------------------------------------------------

    async def update_polymarket_prices(self, live_positions: list[LivePosition]) -> list[PositionAction]:
        """Refresh open prediction-market positions; flag stop-losses and disappearances."""
        by_token = {p.token_id: p for p in live_positions}
        actions: list[PositionAction] = []

        for pos in await self._repo.get_open_positions(PositionStrategy.POLYMARKET):
            live = by_token.get((pos.meta or {}).get("tokenId"))
            if live is None:
                actions.append(PositionAction(
                    position_id=pos.id,
                    action=ActionKind.EXPIRE,
                    reason="Position not found in current Polymarket data; market may have resolved",
                    urgency=Urgency.HIGH,
                ))
                continue

            await self._repo.update_position_price(pos.id, live.current_price, live.current_value_usd)

            if pos.cost_basis_usd > 0:
                loss_pct = (pos.cost_basis_usd - live.current_value_usd) / pos.cost_basis_usd
                if loss_pct > STOP_LOSS_LOSS_PCT:
                    actions.append(PositionAction(
                        position_id=pos.id,
                        action=ActionKind.STOP_LOSS,
                        reason=f"Position down {loss_pct * 100:.1f}%; exceeds {STOP_LOSS_LOSS_PCT:.0%} stop-loss",
                        urgency=Urgency.CRITICAL,
                    ))

        return actions

    async def update_perp_prices(self, live_perps: list[LivePerpPosition]) -> list[PositionAction]:
        """Refresh open perps; flag liquidation proximity and positions gone from the venue."""
        by_coin = {p.coin: p for p in live_perps}
        actions: list[PositionAction] = []

        for pos in await self._repo.get_open_positions(PositionStrategy.HYPERLIQUID):
            coin = (pos.meta or {}).get("coin")
            live = by_coin.get(coin)
            if live is None:
                actions.append(PositionAction(
                    position_id=pos.id,
                    action=ActionKind.EXPIRE,
                    reason=f"Perp position for {coin} not found on exchange; may have been liquidated",
                    urgency=Urgency.CRITICAL,
                ))
                continue

            await self._repo.update_position_price(pos.id, live.mark_price, live.size_usd)

            if live.liquidation_price > 0 and live.mark_price > 0:
                distance = abs(live.mark_price - live.liquidation_price) / live.mark_price
                if distance < LIQUIDATION_PROXIMITY_PCT:
                    actions.append(PositionAction(
                        position_id=pos.id,
                        action=ActionKind.STOP_LOSS,
                        reason=f"{coin} within {distance * 100:.1f}% of liquidation",
                        urgency=Urgency.CRITICAL,
                    ))

        return actions

    async def sync_kamino_position(self, deposits: list[LendingDeposit], health_factor: float) -> list[Position]:
        """
        Mirror observed Kamino deposits into the tracker, one row per asset.

        A new deposit opens at its current value. An OPEN row gets the new
        size, value and APY; its cost basis stays at the first observation,
        so accrued interest shows as unrealized P&L. Rows that have left
        OPEN are not reopened.
        """
        synced: list[Position] = []
        for dep in deposits:
            position_id = f"kamino-{dep.asset.lower()}-deposit"
            meta = {"apy": dep.apy, "healthFactor": health_factor}
            description = f"Kamino {dep.asset} deposit ({dep.apy * 100:.1f}% APY)"

            position = await self._repo.get_position(position_id)
            if position is None:
                position = Position(
                    id=position_id,
                    strategy=PositionStrategy.KAMINO,
                    asset=dep.asset,
                    description=description,
                    chain="solana",
                    status=PositionStatus.OPEN,
                    entry_price=1.0,
                    current_price=1.0,
                    size_units=dep.amount,
                    cost_basis_usd=dep.value_usd,
                    current_value_usd=dep.value_usd,
                    meta=meta,
                )
            elif position.status is PositionStatus.OPEN:
                position.description = description
                position.size_units = dep.amount
                position.current_value_usd = dep.value_usd
                position.unrealized_pnl_usd = dep.value_usd - position.cost_basis_usd
                position.meta = meta
                position.updated_at = datetime.now(timezone.utc)
            else:
                logger.warning(
                    "Kamino deposit %s observed but position is %s; not reopening",
                    position_id, position.status.value,
                )
                continue

            await self._repo.upsert_position(position)
            synced.append(position)

        logger.info("Synced %d Kamino deposits (health factor %.2f)", len(synced), health_factor)
        return synced

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def transition(self, position_id: str, target: PositionStatus) -> Position:
        """Move a position along the lifecycle. Raises InvalidTransitionError otherwise."""
        position = await self._repo.get_position(position_id)
        if position is None:
            raise KeyError(position_id)
        if target not in ALLOWED_TRANSITIONS[position.status]:
            raise InvalidTransitionError(position_id, position.status.value, target.value)

        if target is PositionStatus.CLOSED:
            # closing needs proceeds; use close_position
            raise InvalidTransitionError(position_id, position.status.value, target.value)

        await self._repo.set_status(position_id, target)
        logger.info("Position %s: %s -> %s", position_id, position.status.value, target.value)
        position.status = target
        return position

    async def close_position(
        self,
        position_id: str,
        exit_price: float,
        exit_tx_hash: str,
        received_usd: float,
    ) -> Optional[float]:
        """Close with ``realized = received - cost_basis``. Returns realized P&L, or None if unknown id."""
        position = await self._repo.get_position(position_id)
        if position is None:
            logger.warning("close_position: %s not found", position_id)
            return None
        if PositionStatus.CLOSED not in ALLOWED_TRANSITIONS[position.status]:
            raise InvalidTransitionError(position_id, position.status.value, PositionStatus.CLOSED.value)

        realized = received_usd - position.cost_basis_usd
        await self._repo.close_position(position_id, exit_tx_hash, realized)

        logger.info(
            "Closed %s @ %.4f: PnL %s$%.2f (%.2f in -> %.2f out)",
            position_id, exit_price, "+" if realized >= 0 else "-", abs(realized),
            position.cost_basis_usd, received_usd,
        )
        return realized

    # ------------------------------------------------------------------
    # Portfolio snapshot
    # ------------------------------------------------------------------

    async def get_portfolio_metrics(self) -> dict[str, Any]:
        open_positions = await self._repo.get_open_positions()
        realized = await self._repo.get_total_realized_pnl()

        by_strategy: dict[str, dict[str, float]] = {}
        for pos in open_positions:
            bucket = by_strategy.setdefault(
                pos.strategy.value, {"open_positions": 0, "total_value_usd": 0.0, "unrealized_pnl_usd": 0.0}
            )
            bucket["open_positions"] += 1
            bucket["total_value_usd"] += pos.current_value_usd
            bucket["unrealized_pnl_usd"] += pos.unrealized_pnl_usd

        return {
            "by_strategy": by_strategy,
            "total_open_positions": len(open_positions),
            "total_value_usd": sum(p.current_value_usd for p in open_positions),
            "total_unrealized_pnl_usd": sum(p.unrealized_pnl_usd for p in open_positions),
            "total_realized_pnl_usd": realized,
        }
