"""
trader/services/credentials.py
Two-tier CLOB authentication.

L1: an EIP-712 ``ClobAuth`` signature by the wallet proves key ownership and
    buys an API key / secret / passphrase triple.
L2: every trading request is signed with HMAC-SHA256 keyed by that secret.

The manager caches the triple for the process lifetime. On a 401 it
invalidates, re-derives through L1 and retries the request exactly once.
Invalidate-and-rederive runs under a lock so concurrent 401s derive once.
"""

import asyncio
import base64
import hashlib
import hmac
import json
import logging
import time
from collections.abc import Callable
from typing import Any, Optional

import httpx
from eth_account.messages import encode_typed_data
from eth_account.signers.local import LocalAccount
from web3 import Web3

from core.config import Settings, get_settings
from core.constants import CLOB_AUTH_DOMAIN_NAME, CLOB_AUTH_MESSAGE, POLYGON_CHAIN_ID
from core.exceptions import AuthenticationError, ClobRequestError
from trader.models import Credentials

logger = logging.getLogger(__name__)

_EIP712_DOMAIN_FIELDS = [
    {"name": "name", "type": "string"},
    {"name": "version", "type": "string"},
    {"name": "chainId", "type": "uint256"},
]

_CLOB_AUTH_FIELDS = [
    {"name": "address", "type": "address"},
    {"name": "timestamp", "type": "string"},
    {"name": "nonce", "type": "uint256"},
    {"name": "message", "type": "string"},
]


def build_l2_signature(
    secret: str,
    timestamp: str,
    method: str,
    path: str,
    body: Optional[str] = None,
) -> str:
    """HMAC-SHA256 over ``timestamp + method + path [+ body]``, URL-safe base64."""
    message = f"{timestamp}{method}{path}"
    if body is not None:
        message += body
    key = base64.urlsafe_b64decode(secret)
    digest = hmac.new(key, message.encode("utf-8"), hashlib.sha256).digest()
    return base64.urlsafe_b64encode(digest).decode("utf-8")


def serialize_body(body: Any) -> Optional[str]:
    """Compact JSON. The same string is signed and sent."""
    if body is None:
        return None
    return json.dumps(body, separators=(",", ":"))


class CredentialManager:
    """Owns the CLOB credential cache and the authenticated request helpers."""

    def __init__(
        self,
        account: LocalAccount | None,
        client: httpx.AsyncClient | None = None,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._account = account
        self._settings = settings or get_settings()
        self._client = client or httpx.AsyncClient(timeout=self._settings.ORDER_TIMEOUT_SECONDS)
        self._clock = clock
        self._base_url = self._settings.CLOB_BASE_URL

        self._cached: Optional[Credentials] = None
        self._preconfigured_exhausted = False
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Wallet
    # ------------------------------------------------------------------

    @property
    def address(self) -> str:
        if self._account is None:
            raise AuthenticationError("POLY_PRIVATE_KEY is not set; no wallet to sign with")
        return self._account.address

    @property
    def preconfigured_exhausted(self) -> bool:
        return self._preconfigured_exhausted

    def _timestamp(self) -> str:
        return str(int(self._clock()))

    # ------------------------------------------------------------------
    # L1
    # ------------------------------------------------------------------

    def l1_headers(self, nonce: int = 0) -> dict[str, str]:
        """Sign a ClobAuth attestation and return the POLY_* L1 headers."""
        address = self.address
        timestamp = self._timestamp()
        typed_data = {
            "types": {
                "EIP712Domain": _EIP712_DOMAIN_FIELDS,
                "ClobAuth": _CLOB_AUTH_FIELDS,
            },
            "primaryType": "ClobAuth",
            "domain": {
                "name": CLOB_AUTH_DOMAIN_NAME,
                "version": "1",
                "chainId": POLYGON_CHAIN_ID,
            },
            "message": {
                "address": address,
                "timestamp": timestamp,
                "nonce": nonce,
                "message": CLOB_AUTH_MESSAGE,
            },
        }
        signed = self._account.sign_message(encode_typed_data(full_message=typed_data))
        return {
            "POLY_ADDRESS": address,
            "POLY_SIGNATURE": Web3.to_hex(signed.signature),
            "POLY_TIMESTAMP": timestamp,
            "POLY_NONCE": str(nonce),
        }

    async def derive_credentials(self) -> Credentials:
        """Create (POST /auth/api-key) or fall back to deriving (GET /auth/derive-api-key)."""
        logger.info("Deriving CLOB credentials via L1 auth")
        headers = self.l1_headers()
        try:
            resp = await self._client.post(
                f"{self._base_url}/auth/api-key",
                headers={**headers, "Content-Type": "application/json"},
            )
            if not resp.is_success:
                logger.debug("POST /auth/api-key returned %d, trying GET /auth/derive-api-key", resp.status_code)
                resp = await self._client.get(f"{self._base_url}/auth/derive-api-key", headers=headers)
        except httpx.HTTPError as exc:
            raise AuthenticationError(f"L1 auth request failed: {exc}") from exc

        if not resp.is_success:
            raise AuthenticationError(
                f"L1 auth failed ({resp.status_code}): {resp.text}",
                {"status": resp.status_code},
            )

        try:
            data = resp.json()
        except ValueError as exc:
            raise AuthenticationError(f"L1 auth returned a non-JSON body: {resp.text[:200]}") from exc
        if not isinstance(data, dict):
            raise AuthenticationError("L1 auth returned an unexpected payload")
        api_key, secret, passphrase = data.get("apiKey"), data.get("secret"), data.get("passphrase")
        if not (api_key and secret and passphrase):
            raise AuthenticationError("L1 auth returned incomplete credentials")

        logger.info("CLOB credentials derived via L1")
        return Credentials(api_key=api_key, secret=secret, passphrase=passphrase, source="derived")

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    async def _load_locked(self) -> Credentials:
        if self._cached is not None:
            return self._cached

        s = self._settings
        if not self._preconfigured_exhausted and s.has_preconfigured_credentials:
            self._cached = Credentials(
                api_key=s.POLY_API_KEY,
                secret=s.POLY_API_SECRET,
                passphrase=s.POLY_PASSPHRASE,
                source="preconfigured",
            )
            logger.info("Using pre-configured CLOB credentials")
            return self._cached

        self._cached = await self.derive_credentials()
        return self._cached

    async def get_credentials(self) -> Credentials:
        """Cached credentials, else preconfigured (unless exhausted), else derived."""
        if self._cached is not None:
            return self._cached
        async with self._lock:
            return await self._load_locked()

    def invalidate(self) -> None:
        """Drop the cache. Preconfigured credentials are never used again this process."""
        self._cached = None
        self._preconfigured_exhausted = True
        logger.warning("CLOB credentials invalidated; will re-derive via L1 on next request")

    async def _refresh_after_rejection(self, rejected: Credentials) -> Credentials:
        async with self._lock:
            if self._cached is not None and self._cached is not rejected:
                # another request already re-derived while we waited
                return self._cached
            self.invalidate()
            return await self._load_locked()

    # ------------------------------------------------------------------
    # L2 requests
    # ------------------------------------------------------------------

    def l2_headers(self, creds: Credentials, method: str, path: str, body: Optional[str] = None) -> dict[str, str]:
        timestamp = self._timestamp()
        return {
            "POLY_ADDRESS": self.address,
            "POLY_SIGNATURE": build_l2_signature(creds.secret, timestamp, method, path, body),
            "POLY_TIMESTAMP": timestamp,
            "POLY_API_KEY": creds.api_key,
            "POLY_PASSPHRASE": creds.passphrase,
        }

    async def _send(
        self,
        method: str,
        path: str,
        creds: Optional[Credentials],
        body: Optional[str],
    ) -> httpx.Response:
        headers = {"Content-Type": "application/json"}
        if creds is not None:
            headers.update(self.l2_headers(creds, method, path, body))
        try:
            return await self._client.request(method, f"{self._base_url}{path}", headers=headers, content=body)
        except httpx.HTTPError as exc:
            raise ClobRequestError(method, path, 0, str(exc)) from exc

    @staticmethod
    def _decode(resp: httpx.Response) -> Any:
        if not resp.content:
            return None
        return resp.json()

    async def request(self, method: str, path: str, body: Any = None, authed: bool = True) -> Any:
        """
        Send a CLOB request and return the decoded JSON.

        Authenticated requests that get a 401 are retried once with freshly
        derived credentials; a body ``owner`` field is rewritten to the new
        API key before re-signing.
        """
        method = method.upper()
        if not authed:
            resp = await self._send(method, path, None, serialize_body(body))
            if not resp.is_success:
                raise ClobRequestError(method, path, resp.status_code, resp.text)
            return self._decode(resp)

        creds = await self.get_credentials()
        body_str = serialize_body(body)
        resp = await self._send(method, path, creds, body_str)

        if resp.status_code == 401:
            logger.warning("CLOB %s %s got 401; retrying with fresh credentials", method, path)
            fresh = await self._refresh_after_rejection(creds)
            if isinstance(body, dict) and "owner" in body:
                body = {**body, "owner": fresh.api_key}
            body_str = serialize_body(body)
            retry = await self._send(method, path, fresh, body_str)
            if not retry.is_success:
                raise ClobRequestError(method, path, retry.status_code, retry.text, retried=True)
            return self._decode(retry)

        if not resp.is_success:
            raise ClobRequestError(method, path, resp.status_code, resp.text)
        return self._decode(resp)

    async def get(self, path: str, authed: bool = False) -> Any:
        return await self.request("GET", path, authed=authed)

    async def post(self, path: str, body: Any) -> Any:
        return await self.request("POST", path, body=body)

    async def delete(self, path: str) -> Any:
        return await self.request("DELETE", path)

    async def health_check(self) -> dict[str, Any]:
        """Wallet loads and credentials resolve. The key-info check is best effort."""
        try:
            address = self.address
            await self.get_credentials()
        except Exception as exc:
            return {"ok": False, "wallet_address": None, "error": str(exc)}

        try:
            await self.get("/auth/api-key", authed=True)
        except ClobRequestError as exc:
            logger.debug("Health check /auth/api-key failed: %s", exc)
        return {"ok": True, "wallet_address": address, "error": None}

    async def close(self) -> None:
        await self._client.aclose()
