"""
tests/test_credentials.py
Tests for CLOB L1/L2 authentication and the 401 retry path.
"""

import asyncio
import base64
import hashlib
import hmac
import json

import httpx
import pytest

from core.exceptions import AuthenticationError, ClobRequestError
from trader.services.credentials import CredentialManager, build_l2_signature, serialize_body
from tests.conftest import TEST_API_SECRET

FIXED_TS = 1_700_000_000


def _derived(api_key: str = "derived-key") -> dict:
    return {"apiKey": api_key, "secret": TEST_API_SECRET, "passphrase": "derived-pass"}


def _manager(handler, settings, account) -> CredentialManager:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return CredentialManager(account, client, settings, clock=lambda: FIXED_TS)


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

class TestL2Signature:
    def test_matches_reference_hmac(self):
        body = serialize_body({"a": 1, "b": [1, 2]})
        sig = build_l2_signature(TEST_API_SECRET, "1700000000", "POST", "/order", body)

        key = base64.urlsafe_b64decode(TEST_API_SECRET)
        expected = base64.urlsafe_b64encode(
            hmac.new(key, b'1700000000POST/order{"a":1,"b":[1,2]}', hashlib.sha256).digest()
        ).decode()
        assert sig == expected

    def test_body_is_compact(self):
        assert serialize_body({"x": 1, "y": "z"}) == '{"x":1,"y":"z"}'
        assert serialize_body(None) is None

    def test_no_body_signs_prefix_only(self):
        a = build_l2_signature(TEST_API_SECRET, "1", "GET", "/data/orders")
        b = build_l2_signature(TEST_API_SECRET, "1", "GET", "/data/orders", "")
        assert a == b


# ---------------------------------------------------------------------------
# Credential lifecycle
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
class TestCredentialLifecycle:
    async def test_preconfigured_used_first(self, settings, account):
        settings = settings.model_copy(update={
            "POLY_API_KEY": "pre-key", "POLY_API_SECRET": TEST_API_SECRET, "POLY_PASSPHRASE": "pre-pass",
        })
        manager = _manager(lambda r: httpx.Response(500), settings, account)
        creds = await manager.get_credentials()
        assert creds.api_key == "pre-key"
        assert creds.source == "preconfigured"

    async def test_derive_falls_back_to_get(self, settings, account):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append((request.method, request.url.path))
            if request.method == "POST":
                return httpx.Response(400, json={"error": "exists"})
            assert request.headers["POLY_ADDRESS"] == account.address
            assert request.headers["POLY_NONCE"] == "0"
            assert request.headers["POLY_TIMESTAMP"] == str(FIXED_TS)
            return httpx.Response(200, json=_derived())

        creds = await _manager(handler, settings, account).get_credentials()
        assert creds.api_key == "derived-key"
        assert seen == [("POST", "/auth/api-key"), ("GET", "/auth/derive-api-key")]

    async def test_incomplete_credentials_raise(self, settings, account):
        manager = _manager(lambda r: httpx.Response(200, json={"apiKey": "k"}), settings, account)
        with pytest.raises(AuthenticationError):
            await manager.get_credentials()

    async def test_non_json_body_raises_auth_error(self, settings, account):
        manager = _manager(lambda r: httpx.Response(200, text="<html>gateway</html>"), settings, account)
        with pytest.raises(AuthenticationError, match="non-JSON"):
            await manager.get_credentials()

    async def test_no_wallet_raises(self, settings):
        manager = _manager(lambda r: httpx.Response(200, json=_derived()), settings, None)
        with pytest.raises(AuthenticationError):
            await manager.get_credentials()

    async def test_concurrent_callers_derive_once(self, settings, account):
        posts = []

        def handler(request: httpx.Request) -> httpx.Response:
            posts.append(request.url.path)
            return httpx.Response(200, json=_derived())

        manager = _manager(handler, settings, account)
        results = await asyncio.gather(*(manager.get_credentials() for _ in range(5)))
        assert len({id(c) for c in results}) == 1
        assert posts == ["/auth/api-key"]


# ---------------------------------------------------------------------------
# Authenticated requests
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
class TestAuthedRequest:
    async def test_l2_headers_sent(self, settings, account):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.startswith("/auth"):
                return httpx.Response(200, json=_derived())
            captured.update(request.headers)
            captured["body"] = request.content.decode()
            return httpx.Response(200, json={"ok": True})

        manager = _manager(handler, settings, account)
        await manager.post("/order", {"owner": "derived-key", "n": 1})

        assert captured["poly_api_key"] == "derived-key"
        assert captured["poly_passphrase"] == "derived-pass"
        assert captured["body"] == '{"owner":"derived-key","n":1}'
        assert captured["poly_signature"] == build_l2_signature(
            TEST_API_SECRET, str(FIXED_TS), "POST", "/order", captured["body"]
        )

    async def test_401_rederives_once_and_rewrites_owner(self, settings, account):
        settings = settings.model_copy(update={
            "POLY_API_KEY": "stale-key", "POLY_API_SECRET": TEST_API_SECRET, "POLY_PASSPHRASE": "stale",
        })
        derive_calls = []
        order_bodies = []

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/auth/api-key":
                derive_calls.append(1)
                return httpx.Response(200, json=_derived("fresh-key"))
            body = json.loads(request.content)
            order_bodies.append(body)
            if request.headers["POLY_API_KEY"] == "stale-key":
                return httpx.Response(401, text="unauthorized")
            return httpx.Response(200, json={"orderID": "0x1"})

        manager = _manager(handler, settings, account)
        result = await manager.post("/order", {"owner": "stale-key", "order": {}})

        assert result == {"orderID": "0x1"}
        assert len(derive_calls) == 1
        assert [b["owner"] for b in order_bodies] == ["stale-key", "fresh-key"]
        assert manager.preconfigured_exhausted

    async def test_later_calls_reuse_rederived_credentials(self, settings, account):
        settings = settings.model_copy(update={
            "POLY_API_KEY": "stale-key", "POLY_API_SECRET": TEST_API_SECRET, "POLY_PASSPHRASE": "stale",
        })
        derive_calls = []
        keys_seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/auth/api-key":
                derive_calls.append(1)
                return httpx.Response(200, json=_derived("fresh-key"))
            keys_seen.append(request.headers["POLY_API_KEY"])
            if request.headers["POLY_API_KEY"] == "stale-key":
                return httpx.Response(401, text="unauthorized")
            return httpx.Response(200, json={"orderID": f"0x{len(keys_seen)}"})

        manager = _manager(handler, settings, account)
        await manager.post("/order", {"owner": "stale-key", "order": {}})
        second = await manager.post("/order", {"owner": "fresh-key", "order": {}})
        third = await manager.get("/data/orders", authed=True)

        assert second == {"orderID": "0x3"}
        assert third == {"orderID": "0x4"}
        assert len(derive_calls) == 1
        assert keys_seen == ["stale-key", "fresh-key", "fresh-key", "fresh-key"]

    async def test_second_401_raises_with_retried_flag(self, settings, account):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/auth/api-key":
                return httpx.Response(200, json=_derived())
            return httpx.Response(401, text="still no")

        manager = _manager(handler, settings, account)
        with pytest.raises(ClobRequestError) as exc_info:
            await manager.get("/data/orders", authed=True)
        assert exc_info.value.status == 401
        assert exc_info.value.retried

    async def test_transport_error_wrapped(self, settings, account):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused")

        manager = _manager(handler, settings, account)
        with pytest.raises(ClobRequestError) as exc_info:
            await manager.get("/neg-risk?token_id=1")
        assert exc_info.value.status == 0

    async def test_health_check(self, settings, account):
        manager = _manager(lambda r: httpx.Response(200, json=_derived()), settings, account)
        health = await manager.health_check()
        assert health["ok"] is True
        assert health["wallet_address"] == account.address

    async def test_health_check_without_wallet(self, settings):
        manager = _manager(lambda r: httpx.Response(200, json=_derived()), settings, None)
        health = await manager.health_check()
        assert health["ok"] is False
        assert health["error"]
