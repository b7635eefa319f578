"""
trader/services/execution.py
Order engine: places, inspects and cancels GTC limit orders on the
Polymarket CLOB.

Placement never raises: every attempt yields a PlacedOrder, with status
ERROR and a message on failure, and is written to the audit trail when one
is configured. Protocol-invariant violations are caught before any signing
or network I/O.
"""

import logging
import time
from typing import Any, Optional

from eth_account.signers.local import LocalAccount

from core.config import Settings, get_settings
from core.constants import DEFAULT_TICK_SIZE, EXIT_PRICE_DISCOUNT, MIN_EXIT_PRICE
from core.exceptions import AuthenticationError, ClobRequestError, OrderRejected
from database.models import OrderRecord
from database.repository import PositionRepository
from trader.models import (
    LivePosition,
    Market,
    MarketParams,
    OrderState,
    OrderStatus,
    OutcomeToken,
    PlacedOrder,
    Side,
)
from trader.services.approvals import AllowanceManager
from trader.services.credentials import CredentialManager
from trader.services.order_builder import build_signed_order, compute_order_amounts, order_to_payload

logger = logging.getLogger(__name__)

_KNOWN_STATUSES = {"MATCHED", "LIVE", "CANCELLED", "EXPIRED"}


class OrderEngine:
    """Builds, signs and submits orders; tracks and cancels them."""

    def __init__(
        self,
        account: LocalAccount | None,
        credentials: CredentialManager,
        allowances: AllowanceManager,
        audit: PositionRepository | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._account = account
        self._credentials = credentials
        self._allowances = allowances
        self._audit = audit
        self._settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Market parameters
    # ------------------------------------------------------------------

    async def get_market_params(
        self,
        token_id: str,
        condition_id: str | None = None,
        tick_size: float | None = None,
    ) -> MarketParams:
        """Neg-risk flag, fee rate and tick size; each falls back to its default on failure."""
        neg_risk = False
        fee_rate_bps = 0

        try:
            data = await self._credentials.get(f"/neg-risk?token_id={token_id}")
            neg_risk = bool((data or {}).get("neg_risk", False))
        except (ClobRequestError, ValueError, AttributeError) as exc:
            logger.debug("neg-risk lookup failed for %s: %s", token_id[:12], exc)

        try:
            data = await self._credentials.get(f"/fee-rate?token_id={token_id}")
            fee_rate_bps = int((data or {}).get("base_fee", 0) or 0)
        except (ClobRequestError, ValueError, TypeError, AttributeError) as exc:
            logger.debug("fee-rate lookup failed for %s: %s", token_id[:12], exc)

        if tick_size is None:
            tick_size = DEFAULT_TICK_SIZE
            if condition_id:
                try:
                    data = await self._credentials.get(f"/markets/{condition_id}")
                    tick_size = float((data or {}).get("minimum_tick_size") or DEFAULT_TICK_SIZE)
                except (ClobRequestError, ValueError, TypeError, AttributeError) as exc:
                    logger.debug("tick-size lookup failed for %s: %s", condition_id[:12], exc)

        return MarketParams(tick_size=tick_size, fee_rate_bps=fee_rate_bps, neg_risk=neg_risk)

    # ------------------------------------------------------------------
    # Placement
    # ------------------------------------------------------------------

    async def _record(self, order: PlacedOrder) -> PlacedOrder:
        if self._audit is not None:
            await self._audit.record_order(OrderRecord(
                order_id=order.order_id,
                condition_id=order.condition_id,
                token_id=order.token_id,
                outcome=order.outcome,
                side=order.side.value,
                size_usd=order.size_usd,
                limit_price=order.limit_price,
                status=order.status.value,
                transaction_hash=order.transaction_hash,
                error_message=order.error_message,
                created_at=order.created_at,
            ))
        return order

    async def _submit(
        self,
        result: PlacedOrder,
        price: float,
        params: MarketParams,
        size_tokens: float | None = None,
    ) -> None:
        """Sign and POST one order, filling ``result`` in place."""
        if self._account is None:
            raise AuthenticationError("POLY_PRIVATE_KEY is not set; cannot sign orders")

        # amounts must be valid before any approval transaction is sent
        compute_order_amounts(result.side, price, result.size_usd, params.tick_size, size_tokens)
        await self._allowances.ensure_allowances(params.neg_risk)

        signed = build_signed_order(
            self._account, result.token_id, result.side, price, result.size_usd, params,
            size_tokens=size_tokens,
        )
        creds = await self._credentials.get_credentials()
        response: dict[str, Any] = await self._credentials.post("/order", order_to_payload(signed, creds.api_key)) or {}

        order_id = response.get("orderID") or ""
        if not order_id:
            raise ClobRequestError("POST", "/order", 200, response.get("errorMsg") or "no orderID in response")

        hashes = response.get("transactionsHashes") or []
        result.order_id = order_id
        result.status = OrderState.LIVE if response.get("status") == "live" else OrderState.MATCHED
        result.transaction_hash = hashes[0] if hashes else None

    async def place_buy_order(self, market: Market, token: OutcomeToken, size_usd: float) -> PlacedOrder:
        """BUY ``size_usd`` of ``token`` at its current price as a GTC limit order."""
        result = PlacedOrder(
            condition_id=market.condition_id,
            token_id=token.token_id,
            outcome=token.outcome,
            side=Side.BUY,
            size_usd=size_usd,
            limit_price=token.price,
        )

        if not token.has_valid_price:
            result.error_message = f"Invalid token price: {token.price} (must be 0 < price < 1)"
            logger.error("%s for %r", result.error_message, market.question)
            return await self._record(result)

        try:
            compute_order_amounts(Side.BUY, token.price, size_usd, market.tick_size)
        except OrderRejected as exc:
            result.error_message = str(exc)
            logger.error("Order rejected for %r: %s", market.question, exc)
            return await self._record(result)

        if self._settings.DRY_RUN:
            logger.info(
                "DRY RUN: would BUY %s on %r $%.2f @ %.1fc",
                token.outcome, market.question, size_usd, token.price * 100,
            )
            result.order_id = f"dry-{int(time.time() * 1000)}"
            result.status = OrderState.LIVE
            return await self._record(result)

        try:
            params = await self.get_market_params(token.token_id, tick_size=market.tick_size)
            await self._submit(result, token.price, params)
            logger.info(
                "Order placed: %s BUY %s %r $%.2f @ %.1fc",
                result.order_id, token.outcome, market.question, size_usd, token.price * 100,
            )
        except Exception as exc:
            result.error_message = str(exc)
            logger.error("Order failed for %r: %s", market.question, exc)

        return await self._record(result)

    async def exit_position(self, position: LivePosition, fraction: float = 1.0) -> PlacedOrder:
        """
        SELL ``fraction`` of a live position 1% under its current price.

        Sized in tokens, never in notional: the price is rounded to tick
        after discounting, and dividing a notional by that rounded price
        would offer more tokens than the wallet holds.
        """
        fraction = min(1.0, max(0.0, fraction))
        tokens_to_sell = position.size * fraction
        sell_price = max(MIN_EXIT_PRICE, position.current_price * EXIT_PRICE_DISCOUNT)

        result = PlacedOrder(
            condition_id=position.condition_id,
            token_id=position.token_id,
            outcome=position.outcome,
            side=Side.SELL,
            size_usd=tokens_to_sell * sell_price,
            limit_price=sell_price,
        )

        if tokens_to_sell <= 0:
            result.error_message = f"Nothing to sell: {position.size} tokens x {fraction}"
            logger.error("%s for %r", result.error_message, position.question)
            return await self._record(result)

        if self._settings.DRY_RUN:
            logger.info(
                "DRY RUN: would SELL %.0f%% of %s on %r (~$%.2f)",
                fraction * 100, position.outcome, position.question, result.size_usd,
            )
            result.order_id = f"dry-sell-{int(time.time() * 1000)}"
            result.status = OrderState.LIVE
            return await self._record(result)

        try:
            params = await self.get_market_params(position.token_id, condition_id=position.condition_id)
            await self._submit(result, sell_price, params, size_tokens=tokens_to_sell)
            logger.info(
                "Sell order placed: %s %.0f%% of %r $%.2f",
                result.order_id, fraction * 100, position.question, result.size_usd,
            )
        except Exception as exc:
            result.error_message = str(exc)
            logger.error("Sell failed for %r: %s", position.question, exc)

        return await self._record(result)

    # ------------------------------------------------------------------
    # Order management
    # ------------------------------------------------------------------

    async def get_order_status(self, order_id: str) -> Optional[OrderStatus]:
        """MATCHED / LIVE / CANCELLED / EXPIRED / UNKNOWN, or None if the lookup fails."""
        try:
            data = await self._credentials.get(f"/data/order/{order_id}", authed=True)
        except (ClobRequestError, AuthenticationError, ValueError) as exc:
            logger.warning("get_order_status(%s) failed: %s", order_id, exc)
            return None
        if not data:
            return None

        status = str(data.get("status", "")).upper()
        matched = data.get("size_matched")
        hashes = data.get("transactions_hashes") or data.get("transactionsHashes") or []
        return OrderStatus(
            status=status if status in _KNOWN_STATUSES else "UNKNOWN",
            filled_size=float(matched) if matched else None,
            transaction_hashes=tuple(hashes),
        )

    async def cancel_order(self, order_id: str) -> bool:
        try:
            await self._credentials.delete(f"/order/{order_id}")
        except (ClobRequestError, AuthenticationError, ValueError) as exc:
            logger.error("Cancel failed for %s: %s", order_id, exc)
            return False
        logger.info("Cancelled order %s", order_id)
        return True

    async def cancel_all_orders(self) -> int:
        """Cancel every open order. Returns how many cancels succeeded."""
        try:
            raw = await self._credentials.get("/data/orders", authed=True)
        except ClobRequestError as exc:
            if exc.status in (404, 405):
                logger.warning("/data/orders returned %d; assuming no open orders", exc.status)
                return 0
            logger.error("cancel_all_orders: listing failed: %s", exc)
            return 0
        except (AuthenticationError, ValueError) as exc:
            logger.error("cancel_all_orders: listing failed: %s", exc)
            return 0

        if isinstance(raw, dict):
            raw = raw.get("data", [])
        orders = raw if isinstance(raw, list) else []

        cancelled = 0
        for order in orders:
            order_id = order.get("id") if isinstance(order, dict) else None
            if order_id and await self.cancel_order(order_id):
                cancelled += 1
        logger.info("Cancelled %d orders", cancelled)
        return cancelled
