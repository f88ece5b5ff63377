"""
Base classes and the normalized result record for source connectors.

Every connector returns SearchResult objects with the same shape so the
aggregator can merge, dedupe and rank them without knowing where they
came from.

Error policy:
- One account's failure never aborts the search: connectors catch
  errors and contribute an empty list instead.
- An account without a usable token is skipped before any API call.
- CredentialStoreError is the exception; it always propagates.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Awaitable, Optional

import httpx

from auth import CredentialStoreError, TokenManager
from config import AccountConfig, AppConfig

logger = logging.getLogger(__name__)

# Known, non-actionable provider errors (tenant capability gaps).
# Still degraded to an empty list, but logged at INFO.
EXPECTED_ERROR_MARKERS = (
    "Tenant does not have a SPO license",
    "SearchPlatformResolutionFailed",
)


@dataclass
class SearchResult:
    """
    A normalized search hit.

    id is provider-namespaced (e.g. "gdrive:<fileId>") and stable for
    the same underlying item; (source, id) is the dedupe key. modified
    is an epoch-millisecond timestamp or None when unknown.
    """

    id: str
    title: str
    source: str
    account: str
    url: Optional[str] = None
    modified: Optional[int] = None
    size: Optional[int] = None
    owner: Optional[str] = None
    path: Optional[str] = None
    mime_type: Optional[str] = None
    score: Optional[float] = None  # connector relevance, lower is better
    rank: Optional[float] = None  # assigned by the aggregator

    def to_dict(self) -> dict:
        return asdict(self)


class ProviderAPIError(Exception):
    """Non-2xx response from a provider API."""

    def __init__(self, status_code: int, message: str, url: str = ""):
        self.status_code = status_code
        self.message = message
        self.url = url
        super().__init__(f"{status_code}: {message}")

    @classmethod
    def from_response(cls, response: httpx.Response) -> "ProviderAPIError":
        message = response.text
        try:
            body = response.json()
            error = body.get("error") if isinstance(body, dict) else None
            if isinstance(error, dict):
                code = error.get("code")
                detail = error.get("message") or ""
                message = f"{code} - {detail}" if code else detail
            elif isinstance(error, str):
                message = body.get("error_description") or error
        except ValueError:
            pass
        return cls(response.status_code, message, str(response.request.url))


def is_expected_error(error: Exception) -> bool:
    text = str(error)
    return any(marker in text for marker in EXPECTED_ERROR_MARKERS)


def parse_timestamp(value) -> Optional[int]:
    """Convert an ISO-8601 string or epoch-ms number/string to epoch ms."""
    if value in (None, ""):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    text = str(value)
    if text.isdigit():
        return int(text)
    try:
        return int(datetime.fromisoformat(text.replace("Z", "+00:00")).timestamp() * 1000)
    except ValueError:
        logger.debug(f"Unparseable timestamp: {value!r}")
        return None


def parse_size(value) -> Optional[int]:
    try:
        size = int(value)
    except (TypeError, ValueError):
        return None
    return size or None


class SourceConnector(ABC):
    """
    One provider's search entry point.

    source_prefixes drives coarse provider gating: a source filter entry
    selects this connector when it starts with any of the prefixes.
    """

    provider: str = ""
    display_name: str = ""
    source_prefixes: tuple[str, ...] = ()

    def __init__(self, config: AppConfig):
        self.config = config

    def matches_source_filter(self, include_sources: list[str]) -> bool:
        if not include_sources:
            return True
        return any(s.startswith(self.source_prefixes) for s in include_sources)

    @abstractmethod
    async def search(self, query: str, client: httpx.AsyncClient) -> list[SearchResult]:
        """Search every configured account of this provider."""


class OAuthSourceConnector(SourceConnector):
    """
    Connector for an OAuth provider with multiple accounts.

    Fans out over the configured accounts concurrently; results are
    concatenated in configured account order.
    """

    def __init__(self, config: AppConfig, token_manager: TokenManager):
        super().__init__(config)
        self.token_manager = token_manager

    async def search(self, query: str, client: httpx.AsyncClient) -> list[SearchResult]:
        provider_config = self.config.provider(self.provider)
        if not provider_config.enabled:
            logger.info(f"{self.display_name} provider is disabled in config")
            return []
        if not provider_config.accounts:
            logger.info(f"No {self.display_name} accounts configured")
            return []

        per_account = await asyncio.gather(
            *(
                self._search_account_safe(query, account, client)
                for account in provider_config.accounts
            )
        )

        results = [r for batch in per_account for r in batch]
        logger.info(
            f"{self.display_name} search completed: query={query!r} results={len(results)}"
        )
        return results

    async def _search_account_safe(
        self, query: str, account: AccountConfig, client: httpx.AsyncClient
    ) -> list[SearchResult]:
        label = f"{self.display_name} account '{account.alias}'"

        try:
            token = await self.token_manager.get_access_token(account)
            if not token:
                logger.warning(f"{label}: no valid token available, skipping search")
                return []
            return await self.search_account(query, account, token, client)
        except CredentialStoreError:
            raise
        except Exception as e:
            logger.warning(f"{label}: search failed: {e!r}")
            return []

    @abstractmethod
    async def search_account(
        self, query: str, account: AccountConfig, token: str, client: httpx.AsyncClient
    ) -> list[SearchResult]:
        """Search a single account with a valid bearer token."""

    async def request_json(
        self,
        client: httpx.AsyncClient,
        method: str,
        url: str,
        token: str,
        **kwargs,
    ) -> dict:
        """
        Make an authenticated API request and decode the JSON body.

        Raises:
            ProviderAPIError: on a non-2xx response
            httpx.HTTPError: on transport errors and timeouts
        """
        headers = kwargs.pop("headers", {})
        headers.update({"Authorization": f"Bearer {token}", "Accept": "application/json"})
        response = await client.request(method, url, headers=headers, **kwargs)
        if response.is_error:
            raise ProviderAPIError.from_response(response)
        return response.json() if response.content else {}

    async def run_subquery(
        self, name: str, alias: str, coro: Awaitable[list[SearchResult]]
    ) -> list[SearchResult]:
        """Await one sub-query, degrading any failure to an empty list."""
        try:
            return await coro
        except CredentialStoreError:
            raise
        except Exception as e:
            if is_expected_error(e):
                logger.info(f"Skipping {name} search for '{alias}': {e}")
            else:
                logger.warning(f"{name} search failed for '{alias}': {e!r}")
            return []
