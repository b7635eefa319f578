"""
tests/test_execution.py
Tests for the order engine: placement, dry runs, exits and order management.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlmodel import select

from core.exceptions import ClobRequestError
from database.models import OrderRecord
from trader.models import Credentials, LivePosition, OrderState, OutcomeToken, Side
from trader.services.execution import OrderEngine
from tests.conftest import TEST_API_SECRET, make_market


def _credentials(post_response=None, get_side_effect=None) -> MagicMock:
    creds = MagicMock()
    creds.get_credentials = AsyncMock(
        return_value=Credentials(api_key="key-1", secret=TEST_API_SECRET, passphrase="p")
    )
    creds.post = AsyncMock(return_value=post_response)
    creds.get = AsyncMock(side_effect=get_side_effect or (lambda path, authed=False: {}))
    creds.delete = AsyncMock(return_value=None)
    return creds


def _allowances() -> MagicMock:
    allowances = MagicMock()
    allowances.ensure_allowances = AsyncMock()
    return allowances


def _live_position(**overrides) -> LivePosition:
    defaults = dict(
        condition_id="0xcond1",
        question="Will Bitcoin reach $100k?",
        token_id="1111",
        outcome="Yes",
        size=100.0,
        entry_price=0.40,
        current_price=0.50,
        cost_basis_usd=40.0,
        current_value_usd=50.0,
        unrealized_pnl_usd=10.0,
    )
    defaults.update(overrides)
    return LivePosition(**defaults)


# ---------------------------------------------------------------------------
# Buy orders
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
class TestPlaceBuyOrder:
    async def test_successful_order(self, settings, account, repo, session_factory):
        creds = _credentials({"orderID": "0xorder", "status": "matched", "transactionsHashes": ["0xtx"]})
        allowances = _allowances()
        engine = OrderEngine(account, creds, allowances, audit=repo, settings=settings)
        market = make_market()

        result = await engine.place_buy_order(market, market.yes_token, 10.0)

        assert result.status == OrderState.MATCHED
        assert result.order_id == "0xorder"
        assert result.transaction_hash == "0xtx"
        allowances.ensure_allowances.assert_awaited_once_with(False)

        path, payload = creds.post.await_args.args
        assert path == "/order"
        assert payload["owner"] == "key-1"
        assert payload["orderType"] == "GTC"
        assert payload["order"]["side"] == "BUY"
        assert payload["order"]["tokenId"] == "1111"

        async with session_factory() as session:
            rows = (await session.execute(select(OrderRecord))).scalars().all()
        assert [(r.order_id, r.status, r.side) for r in rows] == [("0xorder", "MATCHED", "BUY")]

    async def test_live_status(self, settings, account):
        creds = _credentials({"orderID": "0xorder", "status": "live"})
        engine = OrderEngine(account, creds, _allowances(), settings=settings)
        market = make_market()
        result = await engine.place_buy_order(market, market.yes_token, 10.0)
        assert result.status == OrderState.LIVE
        assert result.transaction_hash is None

    async def test_neg_risk_market_params(self, settings, account):
        def get(path, authed=False):
            if path.startswith("/neg-risk"):
                return {"neg_risk": True}
            if path.startswith("/fee-rate"):
                return {"base_fee": 20}
            return {}

        creds = _credentials({"orderID": "0xorder"}, get_side_effect=get)
        allowances = _allowances()
        engine = OrderEngine(account, creds, allowances, settings=settings)
        market = make_market()
        await engine.place_buy_order(market, market.yes_token, 10.0)

        allowances.ensure_allowances.assert_awaited_once_with(True)
        _, payload = creds.post.await_args.args
        assert payload["order"]["feeRateBps"] == "20"

    @pytest.mark.parametrize("price", [0.0, 1.0])
    async def test_invalid_price_never_signs(self, settings, account, price):
        creds = _credentials()
        engine = OrderEngine(account, creds, _allowances(), settings=settings)
        market = make_market()
        token = OutcomeToken(token_id="1111", outcome="Yes", price=price)

        result = await engine.place_buy_order(market, token, 10.0)

        assert result.status == OrderState.ERROR
        assert "Invalid token price" in result.error_message
        creds.get.assert_not_awaited()
        creds.post.assert_not_awaited()

    async def test_off_range_rounding_rejected_before_any_call(self, settings, account, repo):
        """0.996 is inside (0, 1) but rounds to 1.00 on a 0.01 tick."""
        creds = _credentials({"orderID": "0xorder"})
        allowances = _allowances()
        engine = OrderEngine(account, creds, allowances, audit=repo, settings=settings)
        market = make_market(yes_price=0.996, no_price=0.004)

        result = await engine.place_buy_order(market, market.yes_token, 10.0)

        assert result.status == OrderState.ERROR
        assert "rounds to 1.00" in result.error_message
        creds.get.assert_not_awaited()
        allowances.ensure_allowances.assert_not_awaited()
        creds.post.assert_not_awaited()

    async def test_dust_size_rejected_before_any_call(self, settings, account):
        creds = _credentials()
        allowances = _allowances()
        engine = OrderEngine(account, creds, allowances, settings=settings)
        market = make_market()

        result = await engine.place_buy_order(market, market.yes_token, 0.001)

        assert result.status == OrderState.ERROR
        creds.get.assert_not_awaited()
        allowances.ensure_allowances.assert_not_awaited()

    async def test_dry_run(self, settings, account, repo):
        settings = settings.model_copy(update={"DRY_RUN": True})
        creds = _credentials()
        engine = OrderEngine(account, creds, _allowances(), audit=repo, settings=settings)
        market = make_market()

        result = await engine.place_buy_order(market, market.yes_token, 10.0)

        assert result.status == OrderState.LIVE
        assert result.order_id.startswith("dry-")
        creds.post.assert_not_awaited()

    async def test_missing_order_id_is_error(self, settings, account):
        creds = _credentials({"errorMsg": "not enough balance"})
        engine = OrderEngine(account, creds, _allowances(), settings=settings)
        market = make_market()
        result = await engine.place_buy_order(market, market.yes_token, 10.0)
        assert result.status == OrderState.ERROR
        assert "not enough balance" in result.error_message

    async def test_clob_failure_is_error(self, settings, account):
        creds = _credentials()
        creds.post.side_effect = ClobRequestError("POST", "/order", 500, "boom")
        engine = OrderEngine(account, creds, _allowances(), settings=settings)
        market = make_market()
        result = await engine.place_buy_order(market, market.yes_token, 10.0)
        assert result.status == OrderState.ERROR

    async def test_no_wallet_is_error(self, settings):
        engine = OrderEngine(None, _credentials(), _allowances(), settings=settings)
        market = make_market()
        result = await engine.place_buy_order(market, market.yes_token, 10.0)
        assert result.status == OrderState.ERROR
        assert "POLY_PRIVATE_KEY" in result.error_message


# ---------------------------------------------------------------------------
# Exits
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
class TestExitPosition:
    async def test_half_exit_sells_token_quantity(self, settings, account):
        creds = _credentials({"orderID": "0xsell", "status": "live"})
        engine = OrderEngine(account, creds, _allowances(), settings=settings)

        result = await engine.exit_position(_live_position(), fraction=0.5)

        assert result.side == Side.SELL
        assert result.limit_price == pytest.approx(0.495)
        # 50 tokens at 0.495
        assert result.size_usd == pytest.approx(24.75)
        _, payload = creds.post.await_args.args
        assert payload["order"]["side"] == "SELL"

    async def test_full_exit_never_offers_more_than_held(self, settings, account):
        """0.4393 * 0.99 = 0.434907 rounds to 0.43; the order still offers exactly 100 tokens."""
        creds = _credentials({"orderID": "0xsell", "status": "live"})
        engine = OrderEngine(account, creds, _allowances(), settings=settings)

        result = await engine.exit_position(_live_position(size=100.0, current_price=0.4393))

        assert result.status == OrderState.LIVE
        _, payload = creds.post.await_args.args
        assert payload["order"]["makerAmount"] == "100000000"
        assert payload["order"]["takerAmount"] == "43000000"

    async def test_exit_floors_fractional_holdings(self, settings, account):
        creds = _credentials({"orderID": "0xsell"})
        engine = OrderEngine(account, creds, _allowances(), settings=settings)

        await engine.exit_position(_live_position(size=33.337, current_price=0.61))

        _, payload = creds.post.await_args.args
        assert payload["order"]["makerAmount"] == "33330000"
        assert int(payload["order"]["makerAmount"]) <= 33.337 * 10**6

    async def test_exit_rejected_before_allowances(self, settings, account):
        """A 0.1 tick cannot carry the 0.01 floor price."""
        def get(path, authed=False):
            if path.startswith("/markets/"):
                return {"minimum_tick_size": "0.1"}
            return {}

        creds = _credentials({"orderID": "0xsell"}, get_side_effect=get)
        allowances = _allowances()
        engine = OrderEngine(account, creds, allowances, settings=settings)

        result = await engine.exit_position(_live_position(current_price=0.005))

        assert result.status == OrderState.ERROR
        assert "outside" in result.error_message
        allowances.ensure_allowances.assert_not_awaited()
        creds.post.assert_not_awaited()

    async def test_zero_fraction_is_error(self, settings, account):
        creds = _credentials()
        engine = OrderEngine(account, creds, _allowances(), settings=settings)
        result = await engine.exit_position(_live_position(), fraction=0.0)
        assert result.status == OrderState.ERROR
        creds.get.assert_not_awaited()

    async def test_sell_price_floor(self, settings, account):
        settings = settings.model_copy(update={"DRY_RUN": True})
        engine = OrderEngine(account, _credentials(), _allowances(), settings=settings)
        result = await engine.exit_position(_live_position(current_price=0.005))
        assert result.limit_price == 0.01
        assert result.order_id.startswith("dry-sell-")


# ---------------------------------------------------------------------------
# Order management
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
class TestOrderManagement:
    async def test_order_status(self, settings, account):
        creds = _credentials(get_side_effect=lambda path, authed=False: {
            "status": "matched", "size_matched": "18.18", "transactions_hashes": ["0xa"],
        })
        engine = OrderEngine(account, creds, _allowances(), settings=settings)
        status = await engine.get_order_status("0xorder")
        assert status.status == "MATCHED"
        assert status.filled_size == pytest.approx(18.18)
        assert status.transaction_hashes == ("0xa",)

    async def test_unknown_status(self, settings, account):
        creds = _credentials(get_side_effect=lambda path, authed=False: {"status": "weird"})
        engine = OrderEngine(account, creds, _allowances(), settings=settings)
        assert (await engine.get_order_status("0xorder")).status == "UNKNOWN"

    async def test_cancel_all(self, settings, account):
        creds = _credentials(get_side_effect=lambda path, authed=False: {"data": [{"id": "a"}, {"id": "b"}]})
        creds.delete.side_effect = [None, ClobRequestError("DELETE", "/order/b", 400, "gone")]
        engine = OrderEngine(account, creds, _allowances(), settings=settings)
        assert await engine.cancel_all_orders() == 1

    async def test_cancel_all_missing_endpoint(self, settings, account):
        def get(path, authed=False):
            raise ClobRequestError("GET", path, 404, "not found")

        engine = OrderEngine(account, _credentials(get_side_effect=get), _allowances(), settings=settings)
        assert await engine.cancel_all_orders() == 0
