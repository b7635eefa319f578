"""
trader/services/scheduler.py
APScheduler-based background job scheduler.

Two recurring jobs:
  1. Opportunity scan: every SCAN_INTERVAL_MINUTES (default 30m)
  2. Position refresh: every POSITION_REFRESH_SECONDS (default 120s)

Both report through logging only. Nothing here places or closes orders.
"""

import asyncio
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from core.constants import MIN_SCAN_HEADROOM_USD
from core.logging_config import setup_logging
from database.connection import init_db
from trader.context import TradingContext

logger = logging.getLogger(__name__)

_scheduler: AsyncIOScheduler | None = None

TOP_OPPORTUNITIES_LOGGED = 5


async def scan_bankroll(ctx: TradingContext) -> float:
    """Bankroll for sizing: BANKROLL_USD, limited to what MAX_POLYMARKET_USD still allows."""
    deployed = 0.0
    if ctx.wallet_address is not None:
        deployed = await ctx.market_data.get_total_deployed(ctx.wallet_address)
    return min(ctx.settings.BANKROLL_USD, ctx.settings.MAX_POLYMARKET_USD - deployed)


async def _job_opportunity_scan(ctx: TradingContext) -> None:
    """Scheduled job: rank opportunities and log the best few."""
    try:
        headroom = await scan_bankroll(ctx)
        if headroom < MIN_SCAN_HEADROOM_USD:
            logger.info("Polymarket at capacity ($%.2f headroom); skipping scan", headroom)
            return
        opportunities = await ctx.scanner.scan(headroom)
        for opp in opportunities[:TOP_OPPORTUNITIES_LOGGED]:
            logger.info(
                "Opportunity: %s %r @ %.2f -> $%.2f (%s)",
                opp.side, opp.market.question[:60], opp.market_price, opp.recommended_usd, opp.rationale,
            )
    except Exception as exc:
        logger.error("Scheduled scan failed: %s", exc)


async def _job_position_refresh(ctx: TradingContext) -> None:
    """Scheduled job: pull live positions and surface risk actions."""
    if ctx.wallet_address is None:
        logger.debug("No wallet configured; skipping position refresh")
        return
    try:
        live = await ctx.market_data.fetch_positions(ctx.wallet_address)
        actions = await ctx.positions.update_polymarket_prices(live)
        for action in actions:
            logger.warning(
                "Position action [%s] %s: %s (%s)",
                action.urgency.value, action.action.value, action.position_id, action.reason,
            )
    except Exception as exc:
        logger.error("Position refresh failed: %s", exc)


def start_scheduler(ctx: TradingContext) -> None:
    """Initialize and start the APScheduler with both jobs."""
    global _scheduler

    if _scheduler is not None:
        logger.warning("Scheduler already running")
        return

    settings = ctx.settings
    _scheduler = AsyncIOScheduler()

    _scheduler.add_job(
        _job_opportunity_scan,
        "interval",
        minutes=settings.SCAN_INTERVAL_MINUTES,
        args=[ctx],
        id="opportunity_scan",
        name="Opportunity Scanner",
    )

    _scheduler.add_job(
        _job_position_refresh,
        "interval",
        seconds=settings.POSITION_REFRESH_SECONDS,
        args=[ctx],
        id="position_refresh",
        name="Position Refresh",
    )

    _scheduler.start()
    logger.info(
        "Scheduler started: scan every %dm, refresh every %ds",
        settings.SCAN_INTERVAL_MINUTES, settings.POSITION_REFRESH_SECONDS,
    )


def stop_scheduler() -> None:
    """Shut down the scheduler gracefully."""
    global _scheduler

    if _scheduler is None:
        return

    _scheduler.shutdown(wait=False)
    _scheduler = None
    logger.info("Scheduler stopped")


async def run_forever() -> None:
    """Create tables, build the context and run both jobs until the awaiting task is cancelled."""
    setup_logging()
    await init_db()
    ctx = TradingContext.create()
    start_scheduler(ctx)
    try:
        await asyncio.Event().wait()
    finally:
        stop_scheduler()
        await ctx.aclose()

