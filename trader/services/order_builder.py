"""
trader/services/order_builder.py
Pure order construction for the CTF Exchange: tick rounding, integer
maker/taker amounts, salt, EIP-712 signing and the wire payload.

Amounts are computed in Decimal from the token size so that
maker/taker (BUY) or taker/maker (SELL) equals the tick-rounded price
exactly. The exchange rejects any order whose implied price is off-tick.
"""

import logging
import math
import random
import time
from decimal import ROUND_FLOOR, ROUND_HALF_UP, Decimal
from typing import Any, NamedTuple

from eth_account.messages import encode_typed_data
from eth_account.signers.local import LocalAccount
from web3 import Web3

from core.constants import (
    CTF_EXCHANGE,
    MAX_SAFE_INTEGER,
    NEG_RISK_CTF_EXCHANGE,
    ORDER_DOMAIN_NAME,
    POLYGON_CHAIN_ID,
    SIZE_DECIMALS,
    USDC_DECIMALS,
    ZERO_ADDRESS,
)
from core.exceptions import OrderRejected
from core.math_utils import round_to_tick, tick_decimals
from trader.models import MarketParams, Side, SignedOrder

logger = logging.getLogger(__name__)

_UNIT = Decimal(10) ** USDC_DECIMALS

ORDER_TYPES = {
    "EIP712Domain": [
        {"name": "name", "type": "string"},
        {"name": "version", "type": "string"},
        {"name": "chainId", "type": "uint256"},
        {"name": "verifyingContract", "type": "address"},
    ],
    "Order": [
        {"name": "salt", "type": "uint256"},
        {"name": "maker", "type": "address"},
        {"name": "signer", "type": "address"},
        {"name": "taker", "type": "address"},
        {"name": "tokenId", "type": "uint256"},
        {"name": "makerAmount", "type": "uint256"},
        {"name": "takerAmount", "type": "uint256"},
        {"name": "expiration", "type": "uint256"},
        {"name": "nonce", "type": "uint256"},
        {"name": "feeRateBps", "type": "uint256"},
        {"name": "side", "type": "uint8"},
        {"name": "signatureType", "type": "uint8"},
    ],
}


class OrderAmounts(NamedTuple):
    price: Decimal            # tick-rounded
    size: Decimal             # outcome tokens, 2dp
    maker_amount: int         # base units (6 decimals)
    taker_amount: int


def exchange_address(neg_risk: bool) -> str:
    return NEG_RISK_CTF_EXCHANGE if neg_risk else CTF_EXCHANGE


def compute_order_amounts(
    side: Side,
    price: float,
    size_usd: float,
    tick_size: float,
    size_tokens: float | None = None,
) -> OrderAmounts:
    """
    Round ``price`` to tick and derive integer amounts for ``size_usd`` of notional.

    With ``size_tokens`` the token quantity is taken as given (floored to
    2dp) and ``size_usd`` is ignored, so a SELL never offers more tokens
    than are held.

    Raises OrderRejected for a non-positive or non-finite price or size, a
    price that rounds outside ``[tick, 1 - tick]``, or amounts that round to zero.
    """
    if not math.isfinite(price) or price <= 0:
        raise OrderRejected(f"Invalid price: {price}", {"price": price})
    if size_tokens is not None:
        if not math.isfinite(size_tokens) or size_tokens <= 0:
            raise OrderRejected(f"Invalid token size: {size_tokens}", {"size_tokens": size_tokens})
    elif not math.isfinite(size_usd) or size_usd <= 0:
        raise OrderRejected(f"Invalid size: {size_usd}", {"size_usd": size_usd})
    try:
        decimals = tick_decimals(tick_size)
    except ValueError as exc:
        raise OrderRejected(str(exc), {"tick_size": tick_size}) from exc

    tick = Decimal(str(tick_size))
    rounded = round_to_tick(price, tick_size)
    if rounded < tick or rounded > 1 - tick:
        raise OrderRejected(
            f"Price {price} rounds to {rounded}, outside [{tick}, {1 - tick}]",
            {"price": price, "rounded": str(rounded)},
        )

    size_step = Decimal(1).scaleb(-SIZE_DECIMALS)
    if size_tokens is not None:
        size = Decimal(str(size_tokens)).quantize(size_step, rounding=ROUND_FLOOR)
    else:
        size = (Decimal(str(size_usd)) / rounded).quantize(size_step, rounding=ROUND_FLOOR)
    quote = (size * rounded).quantize(Decimal(1).scaleb(-(decimals + SIZE_DECIMALS)), rounding=ROUND_HALF_UP)

    size_units = int(size * _UNIT)
    quote_units = int(quote * _UNIT)
    if size_units <= 0 or quote_units <= 0:
        raise OrderRejected(
            f"Order size at {rounded} rounds to zero",
            {"size_usd": size_usd, "size_tokens": size_tokens, "rounded": str(rounded)},
        )

    if side is Side.BUY:
        return OrderAmounts(rounded, size, maker_amount=quote_units, taker_amount=size_units)
    return OrderAmounts(rounded, size, maker_amount=size_units, taker_amount=quote_units)


def generate_salt() -> int:
    """Millisecond clock times 1000 plus jitter. Must stay a safe JSON integer."""
    salt = int(time.time() * 1000) * 1000 + random.randint(0, 999)
    if salt > MAX_SAFE_INTEGER:
        raise OrderRejected(f"Salt {salt} exceeds 2^53 - 1")
    return salt


def build_signed_order(
    account: LocalAccount,
    token_id: str,
    side: Side,
    price: float,
    size_usd: float,
    params: MarketParams,
    expiration: int = 0,
    salt: int | None = None,
    size_tokens: float | None = None,
) -> SignedOrder:
    """Validate, size and EIP-712 sign an order. No network access."""
    amounts = compute_order_amounts(side, price, size_usd, params.tick_size, size_tokens)
    try:
        token_int = int(token_id)
    except (TypeError, ValueError) as exc:
        raise OrderRejected(f"Token id is not a uint256: {token_id!r}") from exc

    salt = generate_salt() if salt is None else salt
    if salt > MAX_SAFE_INTEGER:
        raise OrderRejected(f"Salt {salt} exceeds 2^53 - 1")

    message = {
        "salt": salt,
        "maker": account.address,
        "signer": account.address,
        "taker": ZERO_ADDRESS,
        "tokenId": token_int,
        "makerAmount": amounts.maker_amount,
        "takerAmount": amounts.taker_amount,
        "expiration": expiration,
        "nonce": 0,
        "feeRateBps": params.fee_rate_bps,
        "side": side.code,
        "signatureType": 0,
    }
    typed_data = {
        "types": ORDER_TYPES,
        "primaryType": "Order",
        "domain": {
            "name": ORDER_DOMAIN_NAME,
            "version": "1",
            "chainId": POLYGON_CHAIN_ID,
            "verifyingContract": exchange_address(params.neg_risk),
        },
        "message": message,
    }
    signed = account.sign_message(encode_typed_data(full_message=typed_data))

    logger.debug(
        "Signed %s token=%s price=%s maker=%d taker=%d negRisk=%s fee=%d",
        side.value, token_id[:12], amounts.price, amounts.maker_amount,
        amounts.taker_amount, params.neg_risk, params.fee_rate_bps,
    )

    return SignedOrder(
        salt=str(salt),
        maker=account.address,
        signer=account.address,
        taker=ZERO_ADDRESS,
        token_id=str(token_int),
        maker_amount=str(amounts.maker_amount),
        taker_amount=str(amounts.taker_amount),
        expiration=str(expiration),
        nonce="0",
        fee_rate_bps=str(params.fee_rate_bps),
        side=side.code,
        signature_type=0,
        signature=Web3.to_hex(signed.signature),
    )


def order_to_payload(order: SignedOrder, owner: str, order_type: str = "GTC") -> dict[str, Any]:
    """Wire envelope: numeric salt, string side, ``owner`` is the API key."""
    return {
        "order": {
            "salt": int(order.salt),
            "maker": order.maker,
            "signer": order.signer,
            "taker": order.taker,
            "tokenId": order.token_id,
            "makerAmount": order.maker_amount,
            "takerAmount": order.taker_amount,
            "expiration": order.expiration,
            "nonce": order.nonce,
            "feeRateBps": order.fee_rate_bps,
            "side": Side.BUY.value if order.side == 0 else Side.SELL.value,
            "signatureType": order.signature_type,
            "signature": order.signature,
        },
        "owner": owner,
        "orderType": order_type,
        "deferExec": False,
    }
