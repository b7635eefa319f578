"""
trader/services/polymarket_client.py
Async read-only client for Polymarket market data: Gamma (discovery), the
CLOB public market endpoint, and the Data API (live positions by wallet).

Network and parse failures are logged and degrade to [] / None. Nothing here
raises to the caller.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from core.config import Settings, get_settings
from core.constants import DEFAULT_TICK_SIZE, FALLBACK_SCAN_LIMIT
from trader.models import LivePosition, Market, MarketFilters, OutcomeToken, PortfolioSummary

logger = logging.getLogger(__name__)


# ------------------------------------------------------------------
# Relevance vocabulary (case-insensitive substring match on the question)
# ------------------------------------------------------------------

MARKET_KEYWORDS: tuple[str, ...] = (
    # Crypto L1/L2
    "bitcoin", "btc", "ethereum", "eth", "solana", "sol", "crypto",
    "polygon", "matic", "avalanche", "avax", "cardano", "ada", "xrp",
    "ripple", "polkadot", "dot", "cosmos", "atom", "near", "sui",
    "aptos", "arbitrum", "optimism", "base", "layer 2", "l2",
    "ton", "toncoin", "sei", "celestia", "tia", "injective", "inj",
    "fantom", "ftm", "sonic", "mantle", "mnt", "starknet", "strk",
    "zksync", "linea", "scroll", "monad", "berachain",
    # DeFi / NFT / Web3
    "defi", "nft", "blockchain", "token", "stablecoin", "altcoin",
    "dex", "amm", "yield", "staking", "airdrop", "dao", "web3",
    "uniswap", "aave", "lido", "maker", "usdc", "usdt", "tether",
    "curve", "pendle", "eigenlayer", "restaking", "liquid staking",
    "jito", "marinade", "raydium", "jupiter", "orca", "drift",
    "morpho", "compound", "sushi", "pancakeswap", "gmx", "perp",
    "ondo", "ethena", "ena", "rwa", "tokeniz",
    # Meme coins
    "doge", "dogecoin", "shiba", "shib", "pepe", "bonk", "wif",
    "floki", "meme coin", "memecoin",
    # Mining / infrastructure
    "mining", "hashrate", "halving", "miner", "asic",
    "chainlink", "link", "oracle", "pyth", "the graph", "grt",
    # Macro / TradFi overlap
    "fed", "interest rate", "inflation", "nasdaq", "sp500", "stock",
    "treasury", "rate cut", "rate hike", "recession", "gdp", "cpi",
    "tariff", "trade war", "sanctions", "fomc", "powell", "yellen",
    "debt ceiling", "unemployment", "jobs report", "nonfarm",
    "oil", "gold", "commodity", "dollar", "dxy",
    # Regulatory
    "sec", "etf", "coinbase", "binance", "ftx", "regulation",
    "cftc", "gensler", "congress", "ban crypto", "kraken", "okx",
    "bybit", "bitfinex", "delist", "listing",
    # AI / tech
    "ai", "nvidia", "openai", "tech", "apple", "microsoft", "google",
    "anthropic", "meta", "tesla", "semiconductor", "gpu", "chatgpt",
    "deepseek", "robot", "agi", "amazon", "alphabet",
    # Geopolitics / politics
    "china", "russia", "trump", "biden", "election", "war", "conflict",
    "ukraine", "taiwan", "iran", "korea", "nato", "opec",
    "democrat", "republican", "senate", "house", "executive order",
    # Gaming / metaverse
    "gaming", "metaverse", "play to earn", "p2e", "virtual world",
    # CBDC / cross-border
    "cbdc", "digital dollar", "digital yuan", "digital euro",
    "cross-chain", "bridge", "interop", "wormhole", "layerzero",
)


def is_relevant(question: str) -> bool:
    text = question.lower()
    return any(kw in text for kw in MARKET_KEYWORDS)


# ------------------------------------------------------------------
# Normalization
# ------------------------------------------------------------------

def _as_list(value: Any) -> list:
    """Gamma sends flat arrays either as lists or as JSON-encoded strings."""
    if value is None:
        return []
    if isinstance(value, str):
        try:
            value = json.loads(value or "[]")
        except json.JSONDecodeError:
            return []
    return list(value) if isinstance(value, (list, tuple)) else []


def _as_float(value: Any) -> float:
    try:
        f = float(value)
    except (TypeError, ValueError):
        return 0.0
    return f if f == f else 0.0   # NaN -> 0


def _parse_datetime(value: Any) -> Optional[datetime]:
    if not value or not isinstance(value, str):
        return None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def _outcome_label(raw: Any) -> Optional[str]:
    """"Yes" / "No" in any case; anything else (Up, Down, a team name) is None."""
    if not isinstance(raw, str):
        return None
    label = raw.strip().capitalize()
    return label if label in ("Yes", "No") else None


def _extract_tokens(raw: dict) -> list[OutcomeToken]:
    """Yes/No tokens from either payload shape; empty if any outcome is something else."""
    nested = raw.get("tokens")
    if nested:
        rows = [
            (t.get("token_id", ""), t.get("outcome"), t.get("price"), bool(t.get("winner", False)))
            for t in nested
            if isinstance(t, dict)
        ]
    else:
        outcomes = _as_list(raw.get("outcomes"))
        prices = _as_list(raw.get("outcomePrices"))
        rows = [
            (
                token_id,
                outcomes[i] if i < len(outcomes) else None,
                prices[i] if i < len(prices) else None,
                False,
            )
            for i, token_id in enumerate(_as_list(raw.get("clobTokenIds")))
        ]

    tokens = []
    for token_id, outcome, price, winner in rows:
        label = _outcome_label(outcome)
        if label is None:
            return []
        tokens.append(OutcomeToken(token_id=str(token_id), outcome=label, price=_as_float(price), winner=winner))
    return tokens


def normalize_market(raw: dict, default_category: str = "crypto") -> Optional[Market]:
    """
    Convert a Gamma or CLOB market payload into a Market.

    Accepts nested ``tokens`` or the flat ``clobTokenIds`` / ``outcomes`` /
    ``outcomePrices`` arrays. Returns None unless the payload yields a
    condition id and exactly one Yes and one No token. Prices are kept as sent.
    """
    condition_id = raw.get("conditionId") or raw.get("condition_id")
    if not condition_id:
        return None

    tokens = _extract_tokens(raw)
    if sorted(t.outcome for t in tokens) != ["No", "Yes"]:
        return None
    tokens.sort(key=lambda t: t.outcome != "Yes")

    liquidity = raw.get("liquidity")
    if liquidity is None:
        liquidity = raw.get("liquidityNum")

    tick = _as_float(raw.get("minimum_tick_size") or raw.get("minimumTickSize")) or DEFAULT_TICK_SIZE

    return Market(
        condition_id=str(condition_id),
        question=raw.get("question") or raw.get("market_slug") or "",
        end_date=_parse_datetime(raw.get("endDate") or raw.get("end_date_iso")),
        active=bool(raw.get("active", True)),
        closed=bool(raw.get("closed", False)),
        liquidity=_as_float(liquidity),
        volume=_as_float(raw.get("volume")),
        tokens=(tokens[0], tokens[1]),
        category=raw.get("category") or default_category,
        tick_size=tick,
    )


def _normalize_or_skip(raw: dict) -> Optional[Market]:
    """normalize_market, but a malformed entry is logged and skipped."""
    try:
        return normalize_market(raw)
    except (AttributeError, TypeError, ValueError) as exc:
        logger.warning(
            "Skipping malformed market %s: %s",
            str(raw.get("conditionId") or raw.get("condition_id") or "?")[:20], exc,
        )
        return None


def _passes_filters(market: Market, filters: MarketFilters, now: datetime) -> bool:
    if market.liquidity < filters.min_liquidity_usd:
        return False
    if market.closed or not market.active:
        return False
    days_left = market.days_to_resolution(now)
    if days_left is None or days_left <= 0 or days_left > filters.max_days_to_resolution:
        return False
    return is_relevant(market.question)


def _to_live_position(row: dict) -> Optional[LivePosition]:
    size = _as_float(row.get("size"))
    if size <= 0:
        return None
    condition_id = str(row.get("conditionId", ""))
    current_value = _as_float(row.get("currentValue"))
    cost_basis = _as_float(row.get("initialValue"))
    cash_pnl = row.get("cashPnl")
    return LivePosition(
        condition_id=condition_id,
        question=row.get("title") or condition_id[:20],
        token_id=str(row.get("asset", "")),
        outcome=str(row.get("outcome", "")),
        size=size,
        entry_price=_as_float(row.get("avgPrice")),
        current_price=_as_float(row.get("curPrice")),
        cost_basis_usd=cost_basis,
        current_value_usd=current_value,
        unrealized_pnl_usd=_as_float(cash_pnl) if cash_pnl is not None else current_value - cost_basis,
        redeemable=bool(row.get("redeemable", False)),
    )


# ------------------------------------------------------------------
# Client
# ------------------------------------------------------------------

class MarketDataClient:
    """Async client for the public Polymarket market-data endpoints."""

    def __init__(self, client: httpx.AsyncClient | None = None, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self._client = client or httpx.AsyncClient(timeout=self._settings.MARKET_DATA_TIMEOUT_SECONDS)

    async def _get_json(self, url: str, params: dict[str, Any] | None = None) -> Any:
        resp = await self._client.get(url, params=params)
        resp.raise_for_status()
        return resp.json()

    async def _gamma_listing(self, limit: int) -> list[dict]:
        params = {
            "active": "true",
            "closed": "false",
            "limit": limit,
            "order": "volume",
            "ascending": "false",
        }
        data = await self._get_json(f"{self._settings.GAMMA_BASE_URL}/markets", params=params)
        return data if isinstance(data, list) else []

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    async def list_markets(
        self,
        filters: MarketFilters | None = None,
        now: datetime | None = None,
    ) -> list[Market]:
        """Active binary markets by volume, filtered by liquidity, horizon and relevance."""
        filters = filters or MarketFilters(
            min_liquidity_usd=self._settings.MIN_LIQUIDITY_USD,
            max_days_to_resolution=self._settings.MAX_DAYS_TO_RESOLUTION,
            limit=self._settings.MARKET_LIST_LIMIT,
        )
        now = now or datetime.now(timezone.utc)

        try:
            raw = await self._gamma_listing(filters.limit)
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Gamma market listing failed: %s", exc)
            return []

        markets: list[Market] = []
        for entry in raw:
            if not isinstance(entry, dict):
                continue
            market = _normalize_or_skip(entry)
            if market is not None and _passes_filters(market, filters, now):
                markets.append(market)

        logger.info("Found %d relevant markets (filtered from %d total)", len(markets), len(raw))
        return markets

    async def fetch_market(self, condition_id: str) -> Optional[Market]:
        """
        Snapshot a single market by condition id.

        The CLOB market endpoint is authoritative. Its answer is used only if
        it echoes the requested id and carries tokens; otherwise a bounded
        Gamma listing is scanned for a match.
        """
        try:
            data = await self._get_json(f"{self._settings.CLOB_BASE_URL}/markets/{condition_id}")
            if not isinstance(data, dict):
                data = {}
            returned_id = data.get("condition_id") or data.get("conditionId")
            if returned_id == condition_id and data.get("tokens"):
                market = _normalize_or_skip(data)
                if market is not None:
                    return market
        except (httpx.HTTPError, ValueError) as exc:
            logger.debug("CLOB market lookup failed for %s: %s", condition_id[:20], exc)

        try:
            listing = await self._gamma_listing(FALLBACK_SCAN_LIMIT)
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Gamma fallback lookup failed for %s: %s", condition_id[:20], exc)
            return None

        for entry in listing:
            if isinstance(entry, dict) and entry.get("conditionId") == condition_id:
                return _normalize_or_skip(entry)

        logger.warning("fetch_market: no result for condition_id=%s...", condition_id[:20])
        return None

    # ------------------------------------------------------------------
    # Live positions (Data API)
    # ------------------------------------------------------------------

    async def fetch_positions(self, address: str) -> list[LivePosition]:
        """Live positions for a wallet. Zero-size rows are dropped."""
        try:
            resp = await self._client.get(
                f"{self._settings.DATA_API_BASE_URL}/positions", params={"user": address}
            )
            if resp.status_code != 200:
                logger.warning("Data API /positions returned %d: %s", resp.status_code, resp.text[:200])
                return []
            raw = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Data API /positions failed: %s", exc)
            return []
        if not isinstance(raw, list):
            return []

        positions = [p for p in (_to_live_position(r) for r in raw if isinstance(r, dict)) if p is not None]
        logger.info(
            "%d active positions (%d live, %d expired/redeemable)",
            len(positions),
            sum(1 for p in positions if p.current_value_usd > 0),
            sum(1 for p in positions if p.current_value_usd == 0),
        )
        return positions

    async def get_total_deployed(self, address: str) -> float:
        return sum(p.current_value_usd for p in await self.fetch_positions(address))

    async def get_unrealized_pnl(self, address: str) -> float:
        return sum(p.unrealized_pnl_usd for p in await self.fetch_positions(address))

    async def get_portfolio_summary(self, address: str) -> PortfolioSummary:
        positions = await self.fetch_positions(address)
        return PortfolioSummary(
            open_positions=len(positions),
            total_deployed_usd=sum(p.current_value_usd for p in positions),
            unrealized_pnl_usd=sum(p.unrealized_pnl_usd for p in positions),
            positions=tuple(positions),
            timestamp=datetime.now(timezone.utc),
        )

    async def close(self) -> None:
        await self._client.aclose()
