"""
Provider-specific OAuth endpoints and request parameters.
"""

import json
from typing import Optional
from urllib.parse import urlencode

from config import AccountConfig


class OAuthProvider:
    """
    Endpoint and parameter details for one OAuth provider.

    Subclasses override the URLs and any extra parameters their token
    endpoint needs.
    """

    name: str = ""
    prompt: str = "consent"

    def token_url(self, account: AccountConfig) -> str:
        raise NotImplementedError

    def authorize_url(self, account: AccountConfig) -> str:
        raise NotImplementedError

    def extra_auth_params(self) -> dict:
        return {}

    def refresh_params(self, account: AccountConfig, scopes: list[str]) -> dict:
        """Form body for a refresh_token grant."""
        return {}

    def build_auth_url(self, account: AccountConfig) -> str:
        params = {
            "client_id": account.client_id,
            "response_type": "code",
            "redirect_uri": account.redirect_uri,
            "scope": " ".join(account.scopes),
            "state": encode_state(self.name, account.alias),
            "prompt": self.prompt,
            **self.extra_auth_params(),
        }
        return f"{self.authorize_url(account)}?{urlencode(params)}"

    def refresh_request(self, account: AccountConfig, refresh_token: str, scopes: list[str]) -> dict:
        return {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": account.client_id,
            "client_secret": account.client_secret,
            **self.refresh_params(account, scopes),
        }

    def code_request(self, account: AccountConfig, code: str) -> dict:
        return {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": account.redirect_uri,
            "client_id": account.client_id,
            "client_secret": account.client_secret,
            **self.refresh_params(account, list(account.scopes)),
        }


class GoogleOAuth(OAuthProvider):
    name = "google"

    def token_url(self, account: AccountConfig) -> str:
        return "https://oauth2.googleapis.com/token"

    def authorize_url(self, account: AccountConfig) -> str:
        return "https://accounts.google.com/o/oauth2/v2/auth"

    def extra_auth_params(self) -> dict:
        # offline access is what makes Google issue a refresh token
        return {"access_type": "offline", "include_granted_scopes": "true"}


class MicrosoftOAuth(OAuthProvider):
    name = "microsoft"
    prompt = "select_account"

    def _base(self, account: AccountConfig) -> str:
        return f"https://login.microsoftonline.com/{account.tenant_id or 'common'}/oauth2/v2.0"

    def token_url(self, account: AccountConfig) -> str:
        return f"{self._base(account)}/token"

    def authorize_url(self, account: AccountConfig) -> str:
        return f"{self._base(account)}/authorize"

    def refresh_params(self, account: AccountConfig, scopes: list[str]) -> dict:
        # The v2.0 endpoint wants the scopes repeated on every grant
        return {"scope": " ".join(scopes or account.scopes)}


OAUTH_PROVIDERS: dict[str, OAuthProvider] = {
    "google": GoogleOAuth(),
    "microsoft": MicrosoftOAuth(),
}


def encode_state(provider: str, alias: str) -> str:
    return json.dumps({"provider": provider, "alias": alias})


def decode_state(state: Optional[str]) -> dict:
    """Parse the OAuth state parameter; malformed input yields {}."""
    if not state:
        return {}
    try:
        data = json.loads(state)
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}
