"""
agents/rule_desk/rules.py
Rule desk: estimates P(Yes) for a binary market from an ordered table of
keyword and price rules. The first rule that returns an estimate wins.

Price-target questions (BTC/ETH/SOL) use a volatility-scaled normal CDF
against live prices. Everything else is a categorical base rate or a
sentiment nudge. Estimates are heuristic; the scanner's confidence floor
decides which ones are acted on.
"""

import logging
import math
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import NamedTuple, Optional

from agents import EstimateResult, PriceFeed, ScoutContext
from core.math_utils import clamp, normal_cdf
from trader.models import Market

logger = logging.getLogger(__name__)

DESK_NAME = "rule"
PRICE_SYMBOLS = ["SOL/USD", "ETH/USD", "BTC/USD"]


@dataclass
class RuleInput:
    """Everything a rule may look at, computed once per market."""
    question: str                       # lower-cased
    market_price: float                 # Yes token price, 0.5 if unknown
    days_left: Optional[float]          # None when the market has no end date
    bullish: Optional[bool] = None
    narratives: list[str] = field(default_factory=list)
    prices: dict[str, float] = field(default_factory=dict)

    @property
    def days_left_floor(self) -> float:
        return max(0.0, self.days_left or 0.0)


class Rule(NamedTuple):
    name: str
    estimate: Callable[[RuleInput], Optional[EstimateResult]]


def _result(rule: str, prob: float, confidence: float, reasoning: str) -> EstimateResult:
    return EstimateResult(desk=DESK_NAME, rule=rule, probability=prob, confidence=confidence, reasoning=reasoning)


# ------------------------------------------------------------------
# Price targets
# ------------------------------------------------------------------

_BTC_TARGET = re.compile(
    r"(?:btc|bitcoin).*(?:above|reach|exceed|hit|surpass|break).*?\$?(\d[\d,]*(?:\.\d+)?)\s*(k\b)?"
)
_ALT_TARGET = re.compile(
    r"(?:eth(?:ereum)?|sol(?:ana)?|bnb|avax|xrp|ada|dot|matic|near|sui|aptos)"
    r".*(?:above|reach|exceed|hit|break).*?\$?([\d,.]+)"
)
_ALT_TICKER = re.compile(r"\b(eth(?:ereum)?|sol(?:ana)?|bnb|avax|xrp)\b")


def _parse_number(raw: str) -> float:
    try:
        value = float(raw.replace(",", ""))
    except ValueError:
        return 0.0
    return value if math.isfinite(value) else 0.0


def _target_probability(live: float, target: float, daily_vol: float, days: float) -> tuple[float, float, float]:
    """P(price >= target at resolution) under a driftless normal move."""
    period_vol = daily_vol * math.sqrt(max(days, 0.5))
    distance = (target - live) / live
    z = distance / period_vol
    return clamp(normal_cdf(-z), 0.02, 0.98), distance, period_vol


def _btc_price_target(ctx: RuleInput) -> Optional[EstimateResult]:
    match = _BTC_TARGET.search(ctx.question)
    live = ctx.prices.get("BTC/USD")
    if not match or live is None:
        return None

    target = _parse_number(match.group(1)) * (1000 if match.group(2) else 1)
    if target <= 0:
        return None

    days = ctx.days_left_floor
    prob, distance, period_vol = _target_probability(live, target, 0.03, days)
    confidence = 0.75 if days < 1 else 0.65 if days < 7 else 0.55
    return _result(
        "btc_price_target", prob, confidence,
        f"BTC live=${live:.0f} target=${target:,.0f} dist={distance * 100:.1f}% "
        f"vol={period_vol * 100:.1f}% over {days:.1f}d",
    )


def _alt_price_target(ctx: RuleInput) -> Optional[EstimateResult]:
    match = _ALT_TARGET.search(ctx.question)
    if not match:
        return None

    ticker_match = _ALT_TICKER.search(ctx.question)
    ticker = ticker_match.group(1) if ticker_match else ""
    is_eth = "eth" in ticker
    is_sol = "sol" in ticker
    live = ctx.prices.get("ETH/USD") if is_eth else ctx.prices.get("SOL/USD") if is_sol else None

    if live is not None:
        target = _parse_number(match.group(1))
        if target > 0:
            days = ctx.days_left_floor
            daily_vol = 0.04 if is_eth else 0.05 if is_sol else 0.045
            prob, distance, period_vol = _target_probability(live, target, daily_vol, days)
            confidence = 0.72 if days < 1 else 0.62 if days < 7 else 0.50
            return _result(
                "alt_price_target", prob, confidence,
                f"{ticker.upper()} live=${live:.2f} target=${target:g} dist={distance * 100:.1f}% "
                f"vol={period_vol * 100:.1f}% over {days:.1f}d",
            )

    if ctx.bullish is not None:
        return _result(
            "alt_price_target", 0.52 if ctx.bullish else 0.48, 0.3,
            "Crypto price target (no live price, sentiment only)",
        )
    return None


# ------------------------------------------------------------------
# Categorical base rates
# ------------------------------------------------------------------

def _pattern_rule(
    name: str,
    pattern: str,
    prob: float,
    confidence: float,
    reasoning: str,
    bullish_prob: Optional[float] = None,
) -> Rule:
    """A rule that fires on a regex; ``bullish_prob`` replaces ``prob`` only when sentiment is bullish."""
    compiled = re.compile(pattern)

    def estimate(ctx: RuleInput) -> Optional[EstimateResult]:
        if not compiled.search(ctx.question):
            return None
        p = bullish_prob if bullish_prob is not None and ctx.bullish else prob
        return _result(name, p, confidence, reasoning)

    return Rule(name, estimate)


def _politics(ctx: RuleInput) -> Optional[EstimateResult]:
    if not re.search(r"trump|biden|election|congress|senate|house.*(?:pass|vote|bill)|presiden", ctx.question):
        return None
    p = ctx.market_price
    prob = p - 0.08 if p > 0.7 else p + 0.08 if p < 0.3 else p
    return _result("politics", prob, 0.35, "Political: mean-reversion on extreme prices")


def _extreme_price(ctx: RuleInput) -> Optional[EstimateResult]:
    p = ctx.market_price
    if p > 0.85:
        return _result("extreme_price", p - 0.07, 0.35, "Mean-reversion: market >85% often overconfident")
    if p < 0.15:
        return _result("extreme_price", p + 0.07, 0.35, "Mean-reversion: market <15% often overconfident")
    return None


def _geopolitics(ctx: RuleInput) -> Optional[EstimateResult]:
    if not re.search(r"war|conflict|invad|invasion|ceasefire|peace.*(?:deal|agree)|nuclear|missile", ctx.question):
        return None
    prob = 0.35 if re.search(r"ceasefire|peace", ctx.question) else 0.55
    return _result("geopolitics", prob, 0.3, "Geopolitical status-quo bias")


def _exchange_event(ctx: RuleInput) -> Optional[EstimateResult]:
    if not re.search(r"coinbase|binance|kraken|okx|bybit|bitfinex", ctx.question):
        return None
    if re.search(r"delist|remove|shut|close|suspend", ctx.question):
        return _result("exchange_event", 0.3, 0.35, "Exchange delisting base rate (rare)")
    if re.search(r"list|add|support|launch", ctx.question):
        return _result("exchange_event", 0.55, 0.35, "Exchange listing base rate")
    return _result("exchange_event", 0.5, 0.3, "Exchange event: near fair value")


def _meme(ctx: RuleInput) -> Optional[EstimateResult]:
    if not re.search(r"meme.*coin|doge|shib|pepe|bonk|wif|(?:will|can).*(?:10x|100x|pump)", ctx.question):
        return None
    prob = 0.15 if re.search(r"(?:10x|100x)", ctx.question) else 0.5
    return _result("meme", prob, 0.35, "Meme coin heuristic (specific targets rarely hit)")


def _near_expiry(ctx: RuleInput) -> Optional[EstimateResult]:
    days = ctx.days_left
    if days is None or not 0 < days <= 7:
        return None
    p = ctx.market_price
    d = math.ceil(days)
    if p > 0.80:
        return _result("near_expiry", p - 0.05, 0.38, f"Near-expiry ({d}d): >80% still overshoots")
    if p < 0.20:
        return _result("near_expiry", p + 0.05, 0.38, f"Near-expiry ({d}d): <20% still overshoots")
    if ctx.bullish is not None:
        nudge = 0.04 if ctx.bullish else -0.04
        mood = "bull" if ctx.bullish else "bear"
        return _result("near_expiry", clamp(p + nudge, 0.05, 0.95), 0.32, f"Near-expiry sentiment ({d}d, {mood})")
    return None


_TIMEFRAME = re.compile(
    r"this.*(?:year|month|week)|by.*(?:end.*of|year|20\d{2})"
    r"|before.*(?:20\d{2}|january|february|march|april|may|june|july|august"
    r"|september|october|november|december)"
)


def _timeframe(ctx: RuleInput) -> Optional[EstimateResult]:
    if not _TIMEFRAME.search(ctx.question):
        return None
    if re.search(r"crash|fail|collapse|depeg|hack", ctx.question):
        return _result("timeframe", 0.2, 0.35, "Negative event in timeframe: base rate low")
    if ctx.bullish is None:
        prob = 0.52
    else:
        prob = 0.58 if ctx.bullish else 0.45
    return _result("timeframe", prob, 0.32, 'Timeframe question: slight lean toward "yes" for positive events')


def _scout_narrative(ctx: RuleInput) -> Optional[EstimateResult]:
    for narrative in ctx.narratives:
        if narrative and narrative.lower() in ctx.question:
            return _result("scout_narrative", min(0.85, ctx.market_price + 0.12), 0.55, f'Scout narrative: "{narrative}"')
    return None


def _sentiment_nudge(ctx: RuleInput) -> Optional[EstimateResult]:
    if ctx.bullish is None:
        return None
    nudge = 0.07 if ctx.bullish else -0.07
    mood = "bullish" if ctx.bullish else "bearish"
    return _result("sentiment_nudge", clamp(ctx.market_price + nudge, 0.05, 0.95), 0.32, f"Scout sentiment nudge ({mood})")


def _contrarian(ctx: RuleInput) -> Optional[EstimateResult]:
    if 0.40 <= ctx.market_price <= 0.60:
        return _result("contrarian", ctx.market_price - 0.04, 0.3, "No scout: slight contrarian on 40-60% market")
    return None


RULES: tuple[Rule, ...] = (
    Rule("btc_price_target", _btc_price_target),
    Rule("alt_price_target", _alt_price_target),
    _pattern_rule("etf", r"etf.*(?:approv|launch|list|trade)|(?:approv|launch).*etf",
                  0.5, 0.45, "ETF approval heuristic", bullish_prob=0.65),
    _pattern_rule("enforcement", r"\bsec\b|cftc|lawsuit|sue|fine|enforcement|settle|penalty|indic",
                  0.6, 0.35, "Regulatory enforcement heuristic", bullish_prob=0.4),
    _pattern_rule("monetary_policy", r"fed(?:eral)?.*(?:cut|hike|rate|pause)|interest.*rate|fomc|powell",
                  0.45, 0.4, "Fed/monetary policy heuristic", bullish_prob=0.6),
    _pattern_rule("recession", r"recession|downturn|bear.*market|crash|depression|gdp.*contract",
                  0.6, 0.4, "Recession/macro heuristic", bullish_prob=0.35),
    _pattern_rule("inflation", r"inflation|cpi.*(?:above|below|reach)|consumer.*price",
                  0.52, 0.35, "Inflation/CPI base rate"),
    _pattern_rule("launch", r"launch|mainnet|upgrade|ship|deploy|release|fork|merge|hardfork",
                  0.58, 0.4, "Project launch/upgrade base rate"),
    _pattern_rule("adoption",
                  r"(?:users|tvl|volume|market.?cap|mcap|adoption|address|wallet).*(?:reach|exceed|above|surpass|break)",
                  0.42, 0.35, "Adoption milestone heuristic", bullish_prob=0.58),
    _pattern_rule("ai_tech",
                  r"\bai\b|artificial.intell|openai|nvidia|google.*ai|microsoft.*ai|gpu|semiconductor"
                  r"|chatgpt|deepseek|anthropic|agi",
                  0.6, 0.4, "AI/tech sector growth heuristic"),
    _pattern_rule("partnership", r"partner|integrat|listing|list.*(?:coinbase|binance|kraken)|exchang.*(?:add|list)",
                  0.52, 0.35, "Partnership/listing base rate"),
    _pattern_rule("airdrop", r"airdrop|token.*(?:launch|distribute|drop)|tge|ido|ico",
                  0.6, 0.4, "Airdrop/TGE usually delivered"),
    _pattern_rule("depeg",
                  r"depeg|stablecoin.*(?:lose|below|fail)|usdt.*(?:crash|collapse)|bank.*(?:fail|run|collapse)",
                  0.2, 0.45, "Stablecoin/bank failure is rare (base rate ~20%)"),
    _pattern_rule("hack", r"hack|exploit|breach|stolen|drain|rug.*pull",
                  0.25, 0.4, "Hack/exploit base rate (rare in any window)"),
    Rule("politics", _politics),
    _pattern_rule("tariff", r"tariff|trade.*war|sanction|embargo|import.*(?:tax|duty)",
                  0.6, 0.35, "Tariff/trade war heuristic", bullish_prob=0.4),
    _pattern_rule("defi", r"defi|yield|liquidity.*(?:crisis|crunch)|protocol.*(?:fail|close|shut)",
                  0.45, 0.35, "DeFi sector heuristic", bullish_prob=0.55),
    _pattern_rule("mining", r"mining|hashrate|hash.*rate|halving|miner|pow|proof.*work",
                  0.55, 0.35, "Mining/hashrate growth base rate"),
    _pattern_rule("cbdc", r"cbdc|digital.*(?:dollar|yuan|euro|currency)|central.*bank.*digital",
                  0.5, 0.3, "CBDC uncertain: near fair value"),
    _pattern_rule("stock_index",
                  r"nasdaq|s&p|sp500|dow.*jones|stock.*(?:market|index).*(?:reach|above|hit|break|all.time)",
                  0.42, 0.35, "Stock index milestone heuristic", bullish_prob=0.58),
    Rule("extreme_price", _extreme_price),
    Rule("geopolitics", _geopolitics),
    _pattern_rule("corporate_action",
                  r"(?:apple|google|meta|amazon|tesla|microsoft|nvidia).*(?:buy|acquir|merge|split|dividen|layoff|ipo)",
                  0.4, 0.35, "Corporate action base rate (specific events rare)"),
    _pattern_rule("supply",
                  r"supply.*(?:decrease|burn|deflat)|burn.*(?:rate|token)|halving|emission.*(?:cut|reduce)",
                  0.5, 0.35, "Supply-side dynamics heuristic", bullish_prob=0.6),
    Rule("exchange_event", _exchange_event),
    _pattern_rule("gaming", r"gaming|metaverse|play.*earn|p2e|virtual.*world|nft.*(?:volume|sale|floor)",
                  0.45, 0.3, "Gaming/metaverse adoption heuristic", bullish_prob=0.55),
    _pattern_rule("layer2", r"layer.?2|l2|rollup|zk.*(?:sync|proof|rollup)|optimistic.*rollup|scaling",
                  0.6, 0.35, "L2/scaling growth trend"),
    _pattern_rule("rwa", r"rwa|real.*world.*asset|tokeniz|securit.*token|ondo|blackrock.*(?:fund|token)",
                  0.58, 0.35, "RWA/tokenization growth trend"),
    Rule("meme", _meme),
    _pattern_rule("bridge", r"bridge|cross.?chain|interop|wormhole|layerzero|chainlink.*ccip",
                  0.55, 0.3, "Cross-chain/bridge adoption trend"),
    _pattern_rule("stablecoin_dominance", r"(?:usdc|usdt|dai|frax).*(?:dominan|market.*share|flipp|overtake|surpass)",
                  0.35, 0.35, "Stablecoin dominance: status quo bias"),
    _pattern_rule("institutional",
                  r"institutional|blackrock|fidelity|vanguard|grayscale|state.*street"
                  r"|(?:pension|endowment).*(?:crypto|bitcoin)",
                  0.45, 0.4, "Institutional adoption heuristic", bullish_prob=0.6),
    Rule("near_expiry", _near_expiry),
    Rule("timeframe", _timeframe),
    _pattern_rule("commodities", r"oil|opec|energy.*(?:price|crisis)|natural.*gas|commodity|gold.*(?:above|reach|hit)",
                  0.5, 0.3, "Commodity/energy: near fair value"),
    _pattern_rule("employment", r"unemployment|jobs.*(?:report|data)|nonfarm|payroll|labor.*market",
                  0.52, 0.3, "Employment report: slight beat bias"),
    _pattern_rule("governance",
                  r"(?:dao|governance|proposal|vote).*(?:pass|approve|reject)|(?:pass|approve|reject).*(?:proposal|vote)",
                  0.6, 0.35, "DAO governance: proposals that reach vote usually pass"),
    _pattern_rule("correlation",
                  r"correlat|if.*(?:stock|nasdaq|sp500).*(?:then|crypto|bitcoin)"
                  r"|crypto.*(?:follow|track|correlat).*(?:stock|nasdaq)",
                  0.6, 0.35, "Cross-asset correlation: crypto tracks equities"),
    Rule("scout_narrative", _scout_narrative),
    Rule("sentiment_nudge", _sentiment_nudge),
    Rule("contrarian", _contrarian),
)


# ------------------------------------------------------------------
# Entry point
# ------------------------------------------------------------------

async def _fetch_prices(price_feed: PriceFeed | None) -> dict[str, float]:
    if price_feed is None:
        return {}
    try:
        return await price_feed.get_prices(PRICE_SYMBOLS)
    except Exception as exc:
        logger.warning("Price feed unavailable, price-target rules disabled: %s", exc)
        return {}


def evaluate_rules(ctx: RuleInput, rules: tuple[Rule, ...] = RULES) -> EstimateResult:
    """Run the table in order and return the first estimate, or a zero-confidence fallback."""
    for rule in rules:
        result = rule.estimate(ctx)
        if result is not None:
            return result
    return _result("fallback", ctx.market_price, 0.0, "No edge identified: using market price")


async def estimate_probability(
    market: Market,
    scout: ScoutContext | None = None,
    price_feed: PriceFeed | None = None,
    now: datetime | None = None,
) -> EstimateResult:
    """
    Estimate P(Yes) for a market.

    Parameters
    ----------
    market : Market
        Normalized market; the Yes token price seeds the heuristics.
    scout : ScoutContext | None
        Optional sentiment and narratives.
    price_feed : PriceFeed | None
        Live BTC/ETH/SOL prices. Failures degrade to "no live price".
    now : datetime | None
        Clock override for days-to-resolution.
    """
    scout = scout or ScoutContext()
    now = now or datetime.now(timezone.utc)
    yes = market.yes_token

    ctx = RuleInput(
        question=market.question.lower(),
        market_price=yes.price if yes is not None else 0.5,
        days_left=market.days_to_resolution(now),
        bullish=scout.crypto_bullish,
        narratives=list(scout.relevant_narratives),
        prices=await _fetch_prices(price_feed),
    )
    return evaluate_rules(ctx)
