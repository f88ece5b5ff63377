"""
SQLAlchemy models for DocFinder.

Only OAuth credential state is persisted; search results never are.
"""

import json
from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class OAuthToken(Base):
    """
    OAuth token state for one (provider, alias) account.

    The token JSON (access token, refresh token, expiry, provider extras)
    is stored Fernet-encrypted; scopes are kept in clear for display.
    """

    __tablename__ = "oauth_tokens"
    __table_args__ = (UniqueConstraint("provider", "alias", name="uq_oauth_provider_alias"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    provider: Mapped[str] = mapped_column(String(50), nullable=False)  # "google", "microsoft"
    alias: Mapped[str] = mapped_column(String(255), nullable=False)

    token_data_encrypted: Mapped[str] = mapped_column(Text, nullable=False)

    scopes_json: Mapped[Optional[str]] = mapped_column(Text)

    last_used: Mapped[Optional[datetime]] = mapped_column(DateTime)
    last_refreshed: Mapped[Optional[datetime]] = mapped_column(DateTime)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    @property
    def scopes(self) -> list[str]:
        """Get scopes as a list."""
        if not self.scopes_json:
            return []
        return json.loads(self.scopes_json)

    @scopes.setter
    def scopes(self, value: list[str]):
        """Set scopes from a list."""
        self.scopes_json = json.dumps(list(value)) if value else "[]"
