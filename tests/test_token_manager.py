"""
Unit tests for auth/token_manager.py

Covers the expiry buffer, silent refresh, refresh-token preservation,
single-flight refresh under concurrency, and the code exchange.
"""

import asyncio
import json
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from auth import (
    EXPIRY_BUFFER_MS,
    CredentialStore,
    CredentialStoreError,
    MemoryCredentialStore,
    OAuthExchangeError,
    TokenManager,
    TokenRecord,
)
from auth.providers import decode_state, encode_state
from config import AccountNotConfiguredError
from conftest import NOW_MS, google_account, make_config, microsoft_account, valid_record

MINUTE_MS = 60 * 1000


def refresh_handler(calls: list, payload: dict, status_code: int = 200):
    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(status_code, json=payload)

    return handler


@pytest.fixture
def config():
    return make_config(google=[google_account("personal")], microsoft=[microsoft_account("work")])


@pytest.fixture
def google(config):
    return config.get_account("google", "personal")


@pytest.fixture
def microsoft(config):
    return config.get_account("microsoft", "work")


class TestTokenRecord:
    """Tests for TokenRecord validity and legacy key handling."""

    def test_valid_outside_buffer(self):
        record = TokenRecord(access_token="a", expires_at=NOW_MS + 10 * MINUTE_MS)
        assert record.is_valid_for(NOW_MS, EXPIRY_BUFFER_MS) is True

    def test_invalid_inside_buffer(self):
        record = TokenRecord(access_token="a", expires_at=NOW_MS + 4 * MINUTE_MS)
        assert record.is_valid_for(NOW_MS, EXPIRY_BUFFER_MS) is False

    def test_missing_expiry_is_invalid(self):
        record = TokenRecord(access_token="a", expires_at=None)
        assert record.is_valid_for(NOW_MS, EXPIRY_BUFFER_MS) is False

    def test_from_dict_reads_legacy_keys(self):
        record = TokenRecord.from_dict(
            {"accessToken": "a", "refreshToken": "r", "expiry_date": 123, "scope": "x y"}
        )
        assert record.access_token == "a"
        assert record.refresh_token == "r"
        assert record.expires_at == 123
        assert record.scopes == ["x", "y"]


class TestGetAccessToken:
    """Tests for get_access_token."""

    @pytest.mark.asyncio
    async def test_missing_record_returns_none(self, google):
        manager = TokenManager(MemoryCredentialStore())
        assert await manager.get_access_token(google) is None

    @pytest.mark.asyncio
    async def test_valid_token_returned_without_refresh(self, google):
        calls = []
        store = MemoryCredentialStore({("google", "personal"): valid_record("still-good")})
        manager = TokenManager(store, transport=httpx.MockTransport(refresh_handler(calls, {})))

        assert await manager.get_access_token(google) == "still-good"
        assert calls == []

    @pytest.mark.asyncio
    async def test_token_expiring_in_four_minutes_is_refreshed(self, google):
        calls = []
        store = MemoryCredentialStore(
            {("google", "personal"): valid_record("old", expires_at=NOW_MS + 4 * MINUTE_MS)}
        )
        transport = httpx.MockTransport(
            refresh_handler(calls, {"access_token": "new", "expires_in": 3600})
        )
        manager = TokenManager(store, transport=transport)

        assert await manager.get_access_token(google) == "new"
        assert len(calls) == 1
        assert str(calls[0].url) == "https://oauth2.googleapis.com/token"

        form = parse_qs(calls[0].content.decode())
        assert form["grant_type"] == ["refresh_token"]
        assert form["refresh_token"] == ["refresh-1"]
        assert form["client_id"] == ["personal-client"]

        saved = await store.get("google", "personal")
        assert saved.access_token == "new"
        assert saved.expires_at > NOW_MS + 50 * MINUTE_MS

    @pytest.mark.asyncio
    async def test_refresh_keeps_old_refresh_token(self, google):
        store = MemoryCredentialStore(
            {("google", "personal"): valid_record("old", "keep-me", expires_at=NOW_MS - 1)}
        )
        transport = httpx.MockTransport(
            refresh_handler([], {"access_token": "new", "expires_in": 3600})
        )
        manager = TokenManager(store, transport=transport)

        await manager.get_access_token(google)

        saved = await store.get("google", "personal")
        assert saved.refresh_token == "keep-me"

    @pytest.mark.asyncio
    async def test_refresh_uses_rotated_refresh_token(self, microsoft):
        calls = []
        store = MemoryCredentialStore(
            {("microsoft", "work"): valid_record("old", "r1", expires_at=NOW_MS - 1)}
        )
        transport = httpx.MockTransport(
            refresh_handler(calls, {"access_token": "new", "refresh_token": "r2", "expires_in": 3600})
        )
        manager = TokenManager(store, transport=transport)

        assert await manager.get_access_token(microsoft) == "new"
        assert (await store.get("microsoft", "work")).refresh_token == "r2"

        # Microsoft wants scopes on the refresh grant and a tenant-specific URL
        assert "login.microsoftonline.com/contoso/oauth2/v2.0/token" in str(calls[0].url)
        form = parse_qs(calls[0].content.decode())
        assert "Files.Read.All" in form["scope"][0]

    @pytest.mark.asyncio
    async def test_failed_refresh_returns_none(self, google):
        store = MemoryCredentialStore(
            {("google", "personal"): valid_record("old", expires_at=NOW_MS - 1)}
        )
        transport = httpx.MockTransport(
            refresh_handler([], {"error": "invalid_grant"}, status_code=400)
        )
        manager = TokenManager(store, transport=transport)

        assert await manager.get_access_token(google) is None
        # Stored record is left untouched
        assert (await store.get("google", "personal")).access_token == "old"

    @pytest.mark.asyncio
    async def test_transport_error_returns_none(self, google):
        def handler(request):
            raise httpx.ConnectError("boom", request=request)

        store = MemoryCredentialStore(
            {("google", "personal"): valid_record("old", expires_at=NOW_MS - 1)}
        )
        manager = TokenManager(store, transport=httpx.MockTransport(handler))

        assert await manager.get_access_token(google) is None

    @pytest.mark.asyncio
    async def test_response_without_access_token_returns_none(self, google):
        store = MemoryCredentialStore(
            {("google", "personal"): valid_record("old", expires_at=NOW_MS - 1)}
        )
        transport = httpx.MockTransport(refresh_handler([], {"expires_in": 3600}))
        manager = TokenManager(store, transport=transport)

        assert await manager.get_access_token(google) is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "payload",
        [
            ["access_token", "new"],
            {"access_token": "new", "expires_in": "3600s"},
        ],
    )
    async def test_malformed_refresh_response_returns_none(self, google, payload):
        original = valid_record("old", expires_at=NOW_MS - 1)
        store = MemoryCredentialStore({("google", "personal"): original})
        manager = TokenManager(store, transport=httpx.MockTransport(refresh_handler([], payload)))

        assert await manager.get_access_token(google) is None
        assert (await store.get("google", "personal")).access_token == "old"

    @pytest.mark.asyncio
    async def test_expired_without_refresh_token_returns_none(self, google):
        calls = []
        store = MemoryCredentialStore(
            {("google", "personal"): TokenRecord(access_token="old", expires_at=NOW_MS - 1)}
        )
        manager = TokenManager(store, transport=httpx.MockTransport(refresh_handler(calls, {})))

        assert await manager.get_access_token(google) is None
        assert calls == []

    @pytest.mark.asyncio
    async def test_concurrent_calls_refresh_once(self, google):
        calls = []
        store = MemoryCredentialStore(
            {("google", "personal"): valid_record("old", expires_at=NOW_MS - 1)}
        )
        transport = httpx.MockTransport(
            refresh_handler(calls, {"access_token": "new", "expires_in": 3600})
        )
        manager = TokenManager(store, transport=transport)

        tokens = await asyncio.gather(*(manager.get_access_token(google) for _ in range(5)))

        assert tokens == ["new"] * 5
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_store_error_propagates(self, google):
        class BrokenStore(CredentialStore):
            async def get(self, provider, alias):
                raise CredentialStoreError("database is locked")

            async def save(self, provider, alias, record):
                raise CredentialStoreError("database is locked")

            async def delete(self, provider, alias):
                raise CredentialStoreError("database is locked")

        manager = TokenManager(BrokenStore())
        with pytest.raises(CredentialStoreError):
            await manager.get_access_token(google)


class TestAuthUrl:
    """Tests for the consent URL."""

    def test_google_auth_url(self, google, token_manager):
        url = urlparse(token_manager.build_auth_url(google))
        params = parse_qs(url.query)

        assert url.netloc == "accounts.google.com"
        assert params["client_id"] == ["personal-client"]
        assert params["access_type"] == ["offline"]
        assert params["response_type"] == ["code"]
        assert json.loads(params["state"][0]) == {"provider": "google", "alias": "personal"}
        assert "https://www.googleapis.com/auth/drive.readonly" in params["scope"][0].split()

    def test_microsoft_auth_url_uses_tenant(self, microsoft, token_manager):
        url = urlparse(token_manager.build_auth_url(microsoft))
        params = parse_qs(url.query)

        assert url.path == "/contoso/oauth2/v2.0/authorize"
        assert params["prompt"] == ["select_account"]
        assert "offline_access" in params["scope"][0].split()

    def test_state_round_trip(self):
        assert decode_state(encode_state("google", "a")) == {"provider": "google", "alias": "a"}

    def test_malformed_state(self):
        assert decode_state("not json") == {}
        assert decode_state(None) == {}


class TestHandleCallback:
    """Tests for the authorization code exchange."""

    @pytest.mark.asyncio
    async def test_successful_exchange_stores_tokens(self, config):
        calls = []
        store = MemoryCredentialStore()
        transport = httpx.MockTransport(
            refresh_handler(
                calls,
                {"access_token": "a", "refresh_token": "r", "expires_in": 3600, "token_type": "Bearer"},
            )
        )
        manager = TokenManager(store, transport=transport)

        alias = await manager.handle_callback(
            config, "google", "auth-code", encode_state("google", "personal")
        )

        assert alias == "personal"
        form = parse_qs(calls[0].content.decode())
        assert form["grant_type"] == ["authorization_code"]
        assert form["code"] == ["auth-code"]

        saved = await store.get("google", "personal")
        assert saved.access_token == "a"
        assert saved.refresh_token == "r"
        assert saved.extra["token_type"] == "Bearer"

    @pytest.mark.asyncio
    async def test_missing_alias_in_state(self, config, token_manager):
        with pytest.raises(OAuthExchangeError):
            await token_manager.handle_callback(config, "google", "code", "garbage")

    @pytest.mark.asyncio
    async def test_unknown_alias_in_state(self, config, token_manager):
        with pytest.raises(AccountNotConfiguredError):
            await token_manager.handle_callback(
                config, "google", "code", encode_state("google", "nobody")
            )

    @pytest.mark.asyncio
    async def test_state_for_other_provider_rejected(self, config):
        calls = []
        transport = httpx.MockTransport(refresh_handler(calls, {"access_token": "a"}))
        manager = TokenManager(MemoryCredentialStore(), transport=transport)

        with pytest.raises(OAuthExchangeError):
            await manager.handle_callback(
                config, "google", "code", encode_state("microsoft", "personal")
            )
        assert calls == []

    @pytest.mark.asyncio
    async def test_malformed_exchange_response(self, config):
        transport = httpx.MockTransport(
            refresh_handler([], {"access_token": "a", "expires_in": "soon"})
        )
        manager = TokenManager(MemoryCredentialStore(), transport=transport)

        with pytest.raises(OAuthExchangeError):
            await manager.handle_callback(
                config, "google", "code", encode_state("google", "personal")
            )

    @pytest.mark.asyncio
    async def test_rejected_code(self, config):
        transport = httpx.MockTransport(
            refresh_handler([], {"error": "invalid_grant"}, status_code=400)
        )
        manager = TokenManager(MemoryCredentialStore(), transport=transport)

        with pytest.raises(OAuthExchangeError):
            await manager.handle_callback(
                config, "microsoft", "bad", encode_state("microsoft", "work")
            )


class TestStatusAndDisconnect:
    """Tests for token_status and disconnect."""

    @pytest.mark.asyncio
    async def test_status_without_token(self, google, token_manager):
        status = await token_manager.token_status(google)
        assert status == {
            "provider": "google",
            "alias": "personal",
            "hasToken": False,
            "expiresAt": None,
        }

    @pytest.mark.asyncio
    async def test_status_with_refreshable_token(self, google):
        record = valid_record(expires_at=NOW_MS - 1)
        manager = TokenManager(MemoryCredentialStore({("google", "personal"): record}))

        status = await manager.token_status(google)
        assert status["hasToken"] is True
        assert status["expiresAt"] == NOW_MS - 1

    @pytest.mark.asyncio
    async def test_disconnect_deletes_record(self, google):
        store = MemoryCredentialStore({("google", "personal"): valid_record()})
        manager = TokenManager(store)

        assert await manager.disconnect(google) is True
        assert await store.get("google", "personal") is None
        assert await manager.disconnect(google) is False
