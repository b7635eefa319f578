"""
tests/test_rules.py
Tests for the rule desk probability estimates.
"""

import pytest

from agents import ScoutContext
from agents.rule_desk.rules import RULES, RuleInput, estimate_probability, evaluate_rules
from tests.conftest import NOW, make_market


class _StaticFeed:
    def __init__(self, prices: dict[str, float]) -> None:
        self.prices = prices
        self.calls = 0

    async def get_prices(self, symbols: list[str]) -> dict[str, float]:
        self.calls += 1
        return {s: self.prices[s] for s in symbols if s in self.prices}


class _BrokenFeed:
    async def get_prices(self, symbols: list[str]) -> dict[str, float]:
        raise ConnectionError("feed down")


def _ctx(question: str, price: float = 0.5, days: float | None = 30, **kwargs) -> RuleInput:
    return RuleInput(question=question.lower(), market_price=price, days_left=days, **kwargs)


# ---------------------------------------------------------------------------
# Rule table
# ---------------------------------------------------------------------------

class TestRuleTable:
    def test_rule_names_unique(self):
        names = [r.name for r in RULES]
        assert len(names) == len(set(names))

    def test_price_rules_come_first(self):
        assert RULES[0].name == "btc_price_target"
        assert RULES[1].name == "alt_price_target"
        assert RULES[-1].name == "contrarian"

    def test_fallback_uses_market_price(self):
        """No rule fires → market price at zero confidence."""
        result = evaluate_rules(_ctx("Will it rain in Lisbon?", price=0.33))
        assert result.rule == "fallback"
        assert result.probability == 0.33
        assert result.confidence == 0.0

    def test_extreme_price_mean_reversion(self):
        result = evaluate_rules(_ctx("Will it snow in Paris on Christmas?", price=0.92))
        assert result.rule == "extreme_price"
        assert result.probability == pytest.approx(0.85)
        assert result.confidence == 0.35
        assert ">85%" in result.reasoning

    def test_low_extreme_price(self):
        result = evaluate_rules(_ctx("Will it snow in Paris on Christmas?", price=0.10))
        assert result.probability == pytest.approx(0.17)

    def test_bullish_prob_only_when_bullish(self):
        q = "Will a Solana ETF be approved?"
        assert evaluate_rules(_ctx(q)).probability == 0.5
        assert evaluate_rules(_ctx(q, bullish=True)).probability == 0.65
        assert evaluate_rules(_ctx(q, bullish=False)).probability == 0.5

    def test_depeg_base_rate(self):
        result = evaluate_rules(_ctx("Will USDT depeg in 2026?", price=0.4))
        assert result.rule == "depeg"
        assert result.probability == 0.2
        assert result.confidence == 0.45

    def test_geopolitics_ceasefire(self):
        result = evaluate_rules(_ctx("Will there be a ceasefire in the war?", price=0.5))
        assert result.rule == "geopolitics"
        assert result.probability == 0.35

    def test_near_expiry_overshoot(self):
        result = evaluate_rules(_ctx("Will it rain in Lisbon?", price=0.82, days=2.5))
        assert result.rule == "near_expiry"
        assert result.probability == pytest.approx(0.77)
        assert "(3d)" in result.reasoning

    def test_scout_narrative_capped(self):
        result = evaluate_rules(_ctx("Will restaking TVL double?", price=0.80, narratives=["Restaking"]))
        assert result.rule == "scout_narrative"
        assert result.probability == 0.85
        assert result.confidence == 0.55

    def test_sentiment_nudge_clamped(self):
        result = evaluate_rules(_ctx("Will it rain in Lisbon?", price=0.20, bullish=False))
        assert result.rule == "sentiment_nudge"
        assert result.probability == pytest.approx(0.13)

    def test_contrarian_on_coin_flip(self):
        result = evaluate_rules(_ctx("Will it rain in Lisbon?", price=0.50))
        assert result.rule == "contrarian"
        assert result.probability == pytest.approx(0.46)


# ---------------------------------------------------------------------------
# Price targets
# ---------------------------------------------------------------------------

class TestPriceTargets:
    def test_btc_k_suffix_scales_target(self):
        ctx = _ctx("Will Bitcoin reach $100k by March?", prices={"BTC/USD": 97_000.0})
        result = evaluate_rules(ctx)
        assert result.rule == "btc_price_target"
        assert "target=$100,000" in result.reasoning
        assert result.probability < 0.5

    def test_btc_comma_grouping(self):
        ctx = _ctx("Will BTC be above $1,250,000 this year?", prices={"BTC/USD": 97_000.0})
        result = evaluate_rules(ctx)
        assert "target=$1,250,000" in result.reasoning
        assert result.probability == pytest.approx(0.02)

    def test_btc_target_below_live_is_likely(self):
        ctx = _ctx("Will Bitcoin stay above 90,000?", days=3, prices={"BTC/USD": 97_000.0})
        result = evaluate_rules(ctx)
        assert result.probability > 0.5
        assert result.confidence == 0.65

    def test_btc_without_live_price_falls_through(self):
        result = evaluate_rules(_ctx("Will Bitcoin reach $100k?", price=0.5))
        assert result.rule != "btc_price_target"

    def test_alt_sentiment_only_without_price(self):
        result = evaluate_rules(_ctx("Will Ethereum reach $5,000?", bullish=True))
        assert result.rule == "alt_price_target"
        assert result.probability == 0.52
        assert result.confidence == 0.3


# ---------------------------------------------------------------------------
# estimate_probability
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
class TestEstimateProbability:
    async def test_uses_live_prices(self):
        feed = _StaticFeed({"BTC/USD": 97_000.0})
        market = make_market("Will Bitcoin reach $100k by March 2026?", yes_price=0.40)
        result = await estimate_probability(market, price_feed=feed, now=NOW)
        assert result.rule == "btc_price_target"
        assert feed.calls == 1

    async def test_feed_failure_degrades(self):
        market = make_market("Will Bitcoin reach $100k by March 2026?", yes_price=0.50)
        result = await estimate_probability(market, price_feed=_BrokenFeed(), now=NOW)
        assert result.rule != "btc_price_target"

    async def test_scout_sentiment_passed_through(self):
        market = make_market("Will a Solana ETF be approved?", yes_price=0.50)
        result = await estimate_probability(market, ScoutContext(crypto_bullish=True), now=NOW)
        assert result.probability == 0.65
