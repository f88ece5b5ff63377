"""
Token manager: turns stored OAuth state into a usable bearer token.

Provides silent refresh with an expiry buffer, the authorization-code
exchange used by the connect flow, and disconnect. "Not authenticated"
is reported as a None token, never as an exception.
"""

import asyncio
import logging
import time
from typing import Optional

import httpx

from config import AccountConfig, AppConfig

from .credential_store import CredentialStore, TokenRecord
from .providers import OAUTH_PROVIDERS, OAuthProvider, decode_state

logger = logging.getLogger(__name__)

# Refresh tokens that expire within this window
EXPIRY_BUFFER_MS = 5 * 60 * 1000


class OAuthExchangeError(Exception):
    """Raised when an authorization code cannot be exchanged for tokens."""


def _now_ms() -> int:
    return int(time.time() * 1000)


class TokenManager:
    """
    Produces valid access tokens per (provider, alias).

    One instance is created at startup and shared by all connectors; it
    owns a lock per account so that concurrent searches refresh a given
    account at most once.

    Args:
        store: Credential store holding the token records
        timeout: Timeout in seconds for token endpoint calls
        transport: Optional httpx transport (tests use httpx.MockTransport)
    """

    def __init__(
        self,
        store: CredentialStore,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        providers: Optional[dict[str, OAuthProvider]] = None,
    ):
        self.store = store
        self.timeout = timeout
        self._transport = transport
        self._providers = providers or OAUTH_PROVIDERS
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}

    def _provider(self, name: str) -> OAuthProvider:
        try:
            return self._providers[name]
        except KeyError:
            raise ValueError(f"Invalid provider: {name}") from None

    def _lock_for(self, account: AccountConfig) -> asyncio.Lock:
        key = (account.provider, account.alias)
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def get_access_token(self, account: AccountConfig) -> Optional[str]:
        """
        Return a currently-valid access token, refreshing if needed.

        Returns:
            Access token string, or None when the account needs the user
            to (re)connect it

        Raises:
            CredentialStoreError: if the credential store is unavailable
        """
        label = f"{account.provider} account '{account.alias}'"

        async with self._lock_for(account):
            record = await self.store.get(account.provider, account.alias)
            if record is None:
                logger.debug(f"{label}: no stored tokens")
                return None

            if record.is_valid_for(_now_ms(), EXPIRY_BUFFER_MS):
                logger.debug(f"{label}: using saved access token")
                return record.access_token

            if not record.refresh_token:
                logger.warning(f"{label}: token expired and no refresh token, re-authentication required")
                return None

            logger.info(f"{label}: token expired or expiring soon, refreshing...")
            refreshed = await self._refresh(account, record)
            if refreshed is None:
                logger.warning(f"{label}: refresh failed, re-authentication required")
                return None

            await self.store.save(account.provider, account.alias, refreshed)
            logger.info(f"{label}: successfully refreshed access token")
            return refreshed.access_token

    async def _refresh(self, account: AccountConfig, record: TokenRecord) -> Optional[TokenRecord]:
        """Run the refresh_token grant; None on any failure."""
        provider = self._provider(account.provider)
        scopes = list(record.scopes or account.scopes)

        try:
            async with self._client() as client:
                response = await client.post(
                    provider.token_url(account),
                    data=provider.refresh_request(account, record.refresh_token, scopes),
                    headers={"Accept": "application/json"},
                )
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as e:
            logger.warning(f"Token refresh HTTP error: {e.response.status_code}")
            try:
                logger.warning(f"Error response: {e.response.json()}")
            except ValueError:
                pass
            return None
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Token refresh failed: {e!r}")
            return None

        if not isinstance(payload, dict) or not payload.get("access_token"):
            logger.warning("Token refresh response has no access_token")
            return None

        try:
            return self._record_from_response(payload, previous=record, default_scopes=scopes)
        except (TypeError, ValueError) as e:
            logger.warning(f"Token refresh response is malformed: {e!r}")
            return None

    def _record_from_response(
        self,
        payload: dict,
        previous: Optional[TokenRecord] = None,
        default_scopes: Optional[list[str]] = None,
    ) -> TokenRecord:
        """Build a TokenRecord from a token endpoint response."""
        expires_at = None
        if payload.get("expires_in"):
            expires_at = _now_ms() + int(payload["expires_in"]) * 1000

        scopes = payload.get("scope", "").split() if payload.get("scope") else None
        extra = dict(previous.extra) if previous else {}
        if payload.get("token_type"):
            extra["token_type"] = payload["token_type"]
        if payload.get("id_token"):
            extra["id_token"] = payload["id_token"]

        return TokenRecord(
            access_token=payload["access_token"],
            # Providers may not rotate the refresh token
            refresh_token=payload.get("refresh_token")
            or (previous.refresh_token if previous else None),
            expires_at=expires_at,
            scopes=scopes or list(default_scopes or (previous.scopes if previous else [])),
            extra=extra,
        )

    def build_auth_url(self, account: AccountConfig) -> str:
        """Consent URL that starts the connect flow for an account."""
        return self._provider(account.provider).build_auth_url(account)

    async def handle_callback(
        self, config: AppConfig, provider: str, code: str, state: Optional[str]
    ) -> str:
        """
        Exchange an authorization code and store the resulting tokens.

        Returns:
            The alias of the connected account

        Raises:
            AccountNotConfiguredError: if the state names an unknown alias
            OAuthExchangeError: if the state is malformed or the exchange fails
        """
        decoded = decode_state(state)
        alias = decoded.get("alias")
        if not alias:
            raise OAuthExchangeError("Missing alias in OAuth state")
        if decoded.get("provider", provider) != provider:
            raise OAuthExchangeError(
                f"OAuth state is for {decoded['provider']}, not {provider}"
            )

        account = config.get_account(provider, alias)
        oauth = self._provider(provider)

        logger.info(f"Processing {provider} OAuth callback for '{alias}'")
        try:
            async with self._client() as client:
                response = await client.post(
                    oauth.token_url(account),
                    data=oauth.code_request(account, code),
                    headers={"Accept": "application/json"},
                )
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as e:
            raise OAuthExchangeError(
                f"Token exchange failed with status {e.response.status_code}: {e.response.text}"
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise OAuthExchangeError(f"Token exchange failed: {e!r}") from e

        if not isinstance(payload, dict) or not payload.get("access_token"):
            raise OAuthExchangeError(f"No access token received from {provider}")

        try:
            record = self._record_from_response(payload, default_scopes=list(account.scopes))
        except (TypeError, ValueError) as e:
            raise OAuthExchangeError(f"Malformed token response from {provider}: {e!r}") from e
        async with self._lock_for(account):
            await self.store.save(provider, alias, record)

        logger.info(
            f"{provider} OAuth completed for '{alias}' "
            f"(refresh token: {'yes' if record.refresh_token else 'no'})"
        )
        return alias

    async def token_status(self, account: AccountConfig) -> dict:
        """Token state for display; no network calls."""
        record = await self.store.get(account.provider, account.alias)
        has_token = bool(
            record
            and record.access_token
            and (record.refresh_token or record.is_valid_for(_now_ms(), 0))
        )
        return {
            "provider": account.provider,
            "alias": account.alias,
            "hasToken": has_token,
            "expiresAt": record.expires_at if record else None,
        }

    async def disconnect(self, account: AccountConfig) -> bool:
        """Forget the stored tokens for an account."""
        async with self._lock_for(account):
            return await self.store.delete(account.provider, account.alias)
