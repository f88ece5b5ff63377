"""
Credential store for per-(provider, alias) OAuth token records.

The token manager only talks to the CredentialStore interface; the
backing implementation (database table, memory) is swappable.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)


class CredentialStoreError(Exception):
    """Raised when the credential backend itself is unavailable."""


@dataclass
class TokenRecord:
    """
    Persisted OAuth state for one account.

    expires_at is an absolute epoch-millisecond timestamp. A record with
    an access token but no expires_at is treated as expired.
    """

    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[int] = None
    scopes: list[str] = field(default_factory=list)
    extra: dict = field(default_factory=dict)
    updated_at: Optional[str] = None

    def is_valid_for(self, now_ms: int, buffer_ms: int) -> bool:
        """True when the access token is usable for at least buffer_ms more."""
        if not self.access_token or not self.expires_at:
            return False
        return self.expires_at - buffer_ms > now_ms

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "TokenRecord":
        """
        Build a record from stored JSON.

        Also reads the key spellings written by older releases
        (accessToken/expiresAt and Google's expiry_date).
        """
        expires_at = (
            data.get("expires_at")
            or data.get("expiresAt")
            or data.get("expiry_date")
        )
        scopes = data.get("scopes") or data.get("scope") or []
        if isinstance(scopes, str):
            scopes = scopes.split()
        return cls(
            access_token=data.get("access_token") or data.get("accessToken"),
            refresh_token=data.get("refresh_token") or data.get("refreshToken"),
            expires_at=int(expires_at) if expires_at else None,
            scopes=list(scopes),
            extra=dict(data.get("extra") or {}),
            updated_at=data.get("updated_at") or data.get("updatedAt"),
        )


class CredentialStore(ABC):
    """Async interface over durable token storage."""

    @abstractmethod
    async def get(self, provider: str, alias: str) -> Optional[TokenRecord]:
        """Return the record for (provider, alias), or None."""

    @abstractmethod
    async def save(self, provider: str, alias: str, record: TokenRecord) -> None:
        """Create or replace the record for (provider, alias)."""

    @abstractmethod
    async def delete(self, provider: str, alias: str) -> bool:
        """Delete the record; True if something was deleted."""


class DatabaseCredentialStore(CredentialStore):
    """
    Credential store backed by the encrypted oauth_tokens table.

    Database calls are blocking, so they run in worker threads.
    """

    def __init__(self, create_schema: bool = True):
        if create_schema:
            from db import init_db

            try:
                init_db()
            except SQLAlchemyError as e:
                raise CredentialStoreError(f"Credential database unavailable: {e}") from e

    async def _call(self, func, *args):
        try:
            return await asyncio.to_thread(func, *args)
        except SQLAlchemyError as e:
            logger.error(f"Credential store error in {getattr(func, '__name__', repr(func))}: {e}")
            raise CredentialStoreError(f"Credential database unavailable: {e}") from e

    async def get(self, provider: str, alias: str) -> Optional[TokenRecord]:
        from db.oauth_tokens import get_oauth_token

        data = await self._call(get_oauth_token, provider, alias)
        if not data:
            logger.debug(f"No tokens found for {provider}:{alias}")
            return None
        return TokenRecord.from_dict(data)

    async def save(self, provider: str, alias: str, record: TokenRecord) -> None:
        from db.oauth_tokens import store_oauth_token

        record.updated_at = datetime.now(timezone.utc).isoformat()
        await self._call(
            store_oauth_token, provider, alias, record.to_dict(), list(record.scopes)
        )

    async def delete(self, provider: str, alias: str) -> bool:
        from db.oauth_tokens import delete_oauth_token

        return await self._call(delete_oauth_token, provider, alias)


class MemoryCredentialStore(CredentialStore):
    """Process-local store, used for dry runs and tests."""

    def __init__(self, records: Optional[dict[tuple[str, str], TokenRecord]] = None):
        self._records: dict[tuple[str, str], dict] = {
            key: record.to_dict() for key, record in (records or {}).items()
        }

    async def get(self, provider: str, alias: str) -> Optional[TokenRecord]:
        data = self._records.get((provider, alias))
        return TokenRecord.from_dict(data) if data else None

    async def save(self, provider: str, alias: str, record: TokenRecord) -> None:
        record.updated_at = datetime.now(timezone.utc).isoformat()
        self._records[(provider, alias)] = record.to_dict()

    async def delete(self, provider: str, alias: str) -> bool:
        return self._records.pop((provider, alias), None) is not None
