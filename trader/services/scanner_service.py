"""
trader/services/scanner_service.py
Opportunity scanner: lists relevant markets, asks the rule desk for P(Yes),
and emits Kelly-sized opportunities on whichever side (YES or NO) is
underpriced.

Opportunities are ephemeral; nothing here is persisted or executed.
"""

import logging
from datetime import datetime, timezone

from agents import PriceFeed, ScoutContext
from agents.rule_desk.rules import estimate_probability
from core.config import Settings, get_settings
from core.constants import MIN_CONFIDENCE, MIN_STAKE_USD
from core.math_utils import kelly_size
from trader.models import MarketFilters, Opportunity
from trader.services.polymarket_client import MarketDataClient

logger = logging.getLogger(__name__)


class OpportunityScanner:
    """Ranks mispriced binary markets by edge times stake."""

    def __init__(
        self,
        market_client: MarketDataClient,
        price_feed: PriceFeed | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._markets = market_client
        self._price_feed = price_feed
        self._settings = settings or get_settings()

    async def scan(
        self,
        bankroll_usd: float,
        scout: ScoutContext | None = None,
        filters: MarketFilters | None = None,
        now: datetime | None = None,
    ) -> list[Opportunity]:
        """
        Scan for opportunities, sorted descending by ``edge * recommended_usd``.

        A side is emitted only when its edge clears MIN_EDGE, the estimate's
        confidence clears the floor, and the Kelly stake is at least $1.
        Stakes are capped at MAX_SINGLE_BET_USD.
        """
        s = self._settings
        now = now or datetime.now(timezone.utc)
        markets = await self._markets.list_markets(filters, now=now)
        opportunities: list[Opportunity] = []

        for market in markets:
            yes, no = market.yes_token, market.no_token
            if yes is None or no is None:
                continue

            estimate = await estimate_probability(market, scout, self._price_feed, now=now)
            logger.debug(
                "%r -> prob=%.2f conf=%.2f | %s",
                market.question[:60], estimate.probability, estimate.confidence, estimate.reasoning,
            )

            for token, side in ((yes, "YES"), (no, "NO")):
                if not token.has_valid_price:
                    continue
                side_prob = estimate.probability if side == "YES" else 1 - estimate.probability
                edge = side_prob - token.price

                if edge < s.MIN_EDGE or estimate.confidence < MIN_CONFIDENCE:
                    continue

                sizing = kelly_size(token.price, side_prob, bankroll_usd, s.KELLY_FRACTION, s.MIN_EDGE)
                if sizing.usd < MIN_STAKE_USD:
                    continue

                opportunities.append(Opportunity(
                    market=market,
                    target_token=token,
                    side=side,
                    estimated_probability=side_prob,
                    market_price=token.price,
                    edge=edge,
                    kelly_fraction=sizing.fraction,
                    recommended_usd=min(sizing.usd, s.MAX_SINGLE_BET_USD),
                    rationale=f"{side} | edge={edge * 100:.1f}% | {estimate.reasoning}",
                ))

        opportunities.sort(key=lambda o: o.expected_value_proxy, reverse=True)
        logger.info("%d opportunities found across %d markets", len(opportunities), len(markets))
        return opportunities
