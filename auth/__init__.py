# OAuth token lifecycle: credential storage, provider endpoints, refresh

from auth.credential_store import (
    CredentialStore,
    CredentialStoreError,
    DatabaseCredentialStore,
    MemoryCredentialStore,
    TokenRecord,
)
from auth.providers import OAUTH_PROVIDERS, GoogleOAuth, MicrosoftOAuth, OAuthProvider
from auth.token_manager import EXPIRY_BUFFER_MS, OAuthExchangeError, TokenManager

__all__ = [
    "CredentialStore",
    "CredentialStoreError",
    "DatabaseCredentialStore",
    "MemoryCredentialStore",
    "TokenRecord",
    "OAUTH_PROVIDERS",
    "GoogleOAuth",
    "MicrosoftOAuth",
    "OAuthProvider",
    "EXPIRY_BUFFER_MS",
    "OAuthExchangeError",
    "TokenManager",
]
