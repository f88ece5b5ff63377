"""
Shared fixtures for DocFinder tests.

Tokens live in a MemoryCredentialStore and all provider HTTP traffic goes
through httpx.MockTransport, so no test touches the network or ~/.docfinder.
"""

import time
from pathlib import Path
from typing import Optional

import pytest

from auth import MemoryCredentialStore, TokenManager, TokenRecord
from config import AppConfig, parse_config

NOW_MS = int(time.time() * 1000)
HOUR_MS = 60 * 60 * 1000


def google_account(alias: str = "personal", **extra) -> dict:
    return {
        "alias": alias,
        "client_id": f"{alias}-client",
        "client_secret": f"{alias}-secret",
        "redirect_uri": "http://localhost:3001/auth/google/callback",
        **extra,
    }


def microsoft_account(alias: str = "work", **extra) -> dict:
    return {
        "alias": alias,
        "client_id": f"{alias}-client",
        "client_secret": f"{alias}-secret",
        "redirect_uri": "http://localhost:3001/auth/microsoft/callback",
        "tenant_id": "contoso",
        **extra,
    }


def make_config(
    google: Optional[list[dict]] = None,
    microsoft: Optional[list[dict]] = None,
    local_include: Optional[list[str]] = None,
    local_enabled: bool = True,
    google_enabled: bool = True,
    microsoft_enabled: bool = True,
    path: Optional[Path] = None,
    **sections,
) -> AppConfig:
    """Build an AppConfig the same way the YAML loader does."""
    data = {
        "local": {"enabled": local_enabled, "include": local_include or []},
        "providers": {
            "google": {"enabled": google_enabled, "accounts": google or []},
            "microsoft": {"enabled": microsoft_enabled, "accounts": microsoft or []},
        },
        **sections,
    }
    return parse_config(data, path)


def valid_record(access_token: str = "access-1", refresh_token: str = "refresh-1", **kwargs) -> TokenRecord:
    kwargs.setdefault("expires_at", NOW_MS + HOUR_MS)
    return TokenRecord(access_token=access_token, refresh_token=refresh_token, **kwargs)


@pytest.fixture
def memory_store():
    return MemoryCredentialStore()


@pytest.fixture
def token_manager(memory_store):
    return TokenManager(memory_store)

