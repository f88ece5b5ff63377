"""
CRUD operations for OAuth tokens.

Handles storage and retrieval of per-(provider, alias) token data.
Tokens are encrypted at rest using Fernet symmetric encryption.
"""

import json
import logging
import os
from datetime import datetime
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy import select

from .connection import _ensure_data_dir, get_db_context
from .models import OAuthToken

logger = logging.getLogger(__name__)

# Encryption key - OAUTH_ENCRYPTION_KEY if set, otherwise a key file in the
# data directory shared by the server and CLI processes
_ENCRYPTION_KEY: Optional[bytes] = None

KEY_FILENAME = "oauth.key"


def _load_or_create_key_file() -> bytes:
    """Read the key file, creating it (mode 0600) on first use."""
    key_path = _ensure_data_dir() / KEY_FILENAME
    if key_path.exists():
        return key_path.read_bytes().strip()

    key = Fernet.generate_key()
    try:
        fd = os.open(key_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    except FileExistsError:
        # Another process created it first
        return key_path.read_bytes().strip()
    with os.fdopen(fd, "wb") as f:
        f.write(key)
    logger.info(f"Generated OAuth encryption key at {key_path}")
    return key


def _get_encryption_key() -> bytes:
    """Get or generate the encryption key for token storage."""
    global _ENCRYPTION_KEY
    if _ENCRYPTION_KEY is None:
        key_str = os.environ.get("OAUTH_ENCRYPTION_KEY")
        if key_str:
            _ENCRYPTION_KEY = key_str.encode()
        else:
            _ENCRYPTION_KEY = _load_or_create_key_file()
    return _ENCRYPTION_KEY


def _encrypt(data: str) -> str:
    """Encrypt a string using Fernet."""
    f = Fernet(_get_encryption_key())
    return f.encrypt(data.encode()).decode()


def _decrypt(data: str) -> str:
    """Decrypt a string using Fernet."""
    f = Fernet(_get_encryption_key())
    return f.decrypt(data.encode()).decode()


def store_oauth_token(
    provider: str, alias: str, token_data: dict, scopes: list[str]
) -> int:
    """
    Store or update the token for a provider/alias.

    Args:
        provider: Provider name (e.g., "google")
        alias: Account alias
        token_data: Token dictionary containing access_token, refresh_token, etc.
        scopes: List of granted scopes

    Returns:
        The ID of the created or updated row
    """
    with get_db_context() as session:
        stmt = select(OAuthToken).where(
            OAuthToken.provider == provider,
            OAuthToken.alias == alias,
        )
        existing = session.execute(stmt).scalar_one_or_none()

        encrypted_data = _encrypt(json.dumps(token_data))

        if existing:
            existing.token_data_encrypted = encrypted_data
            existing.scopes = scopes
            existing.last_refreshed = datetime.utcnow()
            session.commit()
            logger.debug(f"Updated OAuth token for {provider}:{alias}")
            return existing.id

        token = OAuthToken(
            provider=provider,
            alias=alias,
            token_data_encrypted=encrypted_data,
            scopes=scopes,
        )
        session.add(token)
        session.commit()
        session.refresh(token)
        logger.info(f"Stored new OAuth token for {provider}:{alias}")
        return token.id


def get_oauth_token(provider: str, alias: str) -> Optional[dict]:
    """
    Get decrypted token data for a provider/alias.

    Returns:
        Decrypted token dictionary or None if not found or unreadable
    """
    with get_db_context() as session:
        stmt = select(OAuthToken).where(
            OAuthToken.provider == provider,
            OAuthToken.alias == alias,
        )
        token = session.execute(stmt).scalar_one_or_none()

        if not token:
            return None

        try:
            token_data = json.loads(_decrypt(token.token_data_encrypted))
        except (InvalidToken, ValueError) as e:
            logger.error(f"Failed to decrypt token for {provider}:{alias}: {e!r}")
            return None

        token.last_used = datetime.utcnow()
        session.commit()
        return token_data


def delete_oauth_token(provider: str, alias: str) -> bool:
    """
    Delete the token for a provider/alias.

    Returns:
        True if deleted, False if not found
    """
    with get_db_context() as session:
        stmt = select(OAuthToken).where(
            OAuthToken.provider == provider,
            OAuthToken.alias == alias,
        )
        token = session.execute(stmt).scalar_one_or_none()

        if not token:
            logger.warning(f"No tokens found to delete for {provider}:{alias}")
            return False

        session.delete(token)
        session.commit()
        logger.info(f"Deleted OAuth token for {provider}:{alias}")
        return True
