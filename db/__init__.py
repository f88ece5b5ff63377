"""
Database layer for DocFinder.

Provides the SQLAlchemy token model and connection management.
"""

from .connection import (
    get_db_context,
    get_engine,
    init_db,
    reset_connection,
)
from .models import Base, OAuthToken
from .oauth_tokens import (
    delete_oauth_token,
    get_oauth_token,
    store_oauth_token,
)

__all__ = [
    "Base",
    "OAuthToken",
    "get_db_context",
    "get_engine",
    "init_db",
    "reset_connection",
    "delete_oauth_token",
    "get_oauth_token",
    "store_oauth_token",
]
