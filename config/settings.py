"""
Configuration loader for DocFinder.

Loads the YAML configuration file once into frozen dataclasses so that
connectors and the token manager never re-derive defaults themselves.
Also provides the small write path used by account management.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

logger = logging.getLogger(__name__)

# Default location of the YAML configuration file
CONFIG_FILE = Path(__file__).parent / "config.yaml"

PROVIDERS = ("google", "microsoft")

DEFAULT_SCOPES = {
    "google": (
        "https://www.googleapis.com/auth/drive.readonly",
        "https://www.googleapis.com/auth/gmail.readonly",
    ),
    "microsoft": (
        "Files.Read.All",
        "Sites.Read.All",
        "Mail.Read",
        "User.Read",
        "offline_access",
    ),
}

# Older config files used camelCase keys
_KEY_ALIASES = {
    "clientId": "client_id",
    "clientSecret": "client_secret",
    "tenantId": "tenant_id",
    "redirectUri": "redirect_uri",
    "excludeGlobs": "exclude_globs",
    "followSymlinks": "follow_symlinks",
    "maxResults": "max_results",
}


class ConfigError(ValueError):
    """Raised when the configuration file is invalid."""


class AccountNotConfiguredError(ValueError):
    """Raised when a requested account alias is not configured."""

    def __init__(self, alias: str, provider: Optional[str] = None):
        self.alias = alias
        self.provider = provider
        if provider:
            message = f"No {provider} account configured with alias: {alias}"
        else:
            message = f"No account configured with alias: {alias}"
        super().__init__(message)


@dataclass(frozen=True)
class AccountConfig:
    """A configured identity for one OAuth provider."""

    provider: str
    alias: str
    client_id: str
    client_secret: str
    redirect_uri: str = ""
    tenant_id: str = "common"
    scopes: tuple[str, ...] = ()

    def to_dict(self, include_secret: bool = False) -> dict:
        data = {
            "alias": self.alias,
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "scopes": list(self.scopes),
        }
        if self.provider == "microsoft":
            data["tenant_id"] = self.tenant_id
        if include_secret:
            data["client_secret"] = self.client_secret
        return data


@dataclass(frozen=True)
class ProviderConfig:
    enabled: bool = False
    accounts: tuple[AccountConfig, ...] = ()


@dataclass(frozen=True)
class LocalConfig:
    enabled: bool = True
    include: tuple[str, ...] = ()
    exclude_globs: tuple[str, ...] = ()
    follow_symlinks: bool = False
    account: str = "local"


@dataclass(frozen=True)
class SearchSettings:
    timeout: float = 15.0
    max_results: int = 200


@dataclass(frozen=True)
class ServerSettings:
    host: str = "127.0.0.1"
    port: int = 3001


@dataclass(frozen=True)
class AppConfig:
    """Validated application configuration."""

    local: LocalConfig = field(default_factory=LocalConfig)
    providers: dict[str, ProviderConfig] = field(default_factory=dict)
    search: SearchSettings = field(default_factory=SearchSettings)
    server: ServerSettings = field(default_factory=ServerSettings)
    path: Optional[Path] = None

    def provider(self, name: str) -> ProviderConfig:
        if name not in PROVIDERS:
            raise ValueError(f"Invalid provider: {name}")
        return self.providers.get(name, ProviderConfig())

    def get_account(self, provider: str, alias: str) -> AccountConfig:
        """Return the account for (provider, alias) or raise AccountNotConfiguredError."""
        for account in self.provider(provider).accounts:
            if account.alias == alias:
                return account
        raise AccountNotConfiguredError(alias, provider)

    def find_alias(self, alias: str) -> bool:
        """Check whether an alias is known to any source, local included."""
        if alias == self.local.account:
            return True
        return any(
            account.alias == alias
            for provider in self.providers.values()
            for account in provider.accounts
        )


def get_config_path() -> Path:
    """Config path from DOCFINDER_CONFIG, or the bundled default location."""
    env_path = os.environ.get("DOCFINDER_CONFIG")
    if env_path:
        return Path(env_path).expanduser()
    return CONFIG_FILE


def _normalize_keys(data: Any) -> Any:
    if isinstance(data, dict):
        return {_KEY_ALIASES.get(k, k): _normalize_keys(v) for k, v in data.items()}
    if isinstance(data, list):
        return [_normalize_keys(v) for v in data]
    return data


def _string_list(value: Any) -> list[str]:
    """Coerce a string or list of strings into a list, dropping junk."""
    if isinstance(value, str):
        value = value.replace(",", " ").split()
    if not isinstance(value, (list, tuple)):
        return []
    return [str(v).strip() for v in value if isinstance(v, str) and v.strip()]


def normalize_scopes(provider: str, value: Any) -> tuple[str, ...]:
    """
    Normalize configured scopes to an ordered, de-duplicated tuple.

    Falls back to the provider default when the value is absent, empty
    or malformed.
    """
    scopes = list(dict.fromkeys(_string_list(value)))
    if not scopes:
        return DEFAULT_SCOPES[provider]
    return tuple(scopes)


def _parse_account(provider: str, raw: Any, index: int) -> AccountConfig:
    if not isinstance(raw, dict):
        raise ConfigError(f"{provider} account #{index} must be a mapping")

    missing = [k for k in ("alias", "client_id", "client_secret") if not raw.get(k)]
    if missing:
        raise ConfigError(
            f"{provider} account #{index} is missing required fields: {', '.join(missing)}"
        )

    return AccountConfig(
        provider=provider,
        alias=str(raw["alias"]).strip(),
        client_id=str(raw["client_id"]),
        client_secret=str(raw["client_secret"]),
        redirect_uri=str(raw.get("redirect_uri") or ""),
        tenant_id=str(raw.get("tenant_id") or "common"),
        scopes=normalize_scopes(provider, raw.get("scopes")),
    )


def _parse_provider(name: str, raw: Any) -> ProviderConfig:
    if raw is None:
        return ProviderConfig()
    if not isinstance(raw, dict):
        raise ConfigError(f"providers.{name} must be a mapping")

    accounts = []
    seen = set()
    for i, item in enumerate(raw.get("accounts") or []):
        account = _parse_account(name, item, i)
        if account.alias in seen:
            raise ConfigError(f"Duplicate {name} account alias: {account.alias}")
        seen.add(account.alias)
        accounts.append(account)

    return ProviderConfig(enabled=bool(raw.get("enabled", False)), accounts=tuple(accounts))


def parse_config(data: Optional[dict], path: Optional[Path] = None) -> AppConfig:
    """Build an AppConfig from already-parsed YAML data."""
    data = _normalize_keys(data or {})
    if not isinstance(data, dict):
        raise ConfigError("Configuration root must be a mapping")

    local_raw = data.get("local") or {}
    local = LocalConfig(
        enabled=bool(local_raw.get("enabled", True)),
        include=tuple(
            os.path.expanduser(p) for p in _string_list(local_raw.get("include"))
        ),
        exclude_globs=tuple(_string_list(local_raw.get("exclude_globs"))),
        follow_symlinks=bool(local_raw.get("follow_symlinks", False)),
        account=str(local_raw.get("account") or "local"),
    )

    providers_raw = data.get("providers") or {}
    providers = {name: _parse_provider(name, providers_raw.get(name)) for name in PROVIDERS}

    search_raw = data.get("search") or {}
    server_raw = data.get("server") or {}
    try:
        search = SearchSettings(
            timeout=float(search_raw.get("timeout", SearchSettings.timeout)),
            max_results=int(search_raw.get("max_results", SearchSettings.max_results)),
        )
        server = ServerSettings(
            host=str(server_raw.get("host", ServerSettings.host)),
            port=int(server_raw.get("port", ServerSettings.port)),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid search/server settings: {e}") from e

    return AppConfig(
        local=local, providers=providers, search=search, server=server, path=path
    )


def load_config(path: Optional[Path] = None) -> AppConfig:
    """Load and validate the YAML configuration.

    Returns:
        AppConfig with defaults applied
    """
    path = Path(path) if path else get_config_path()
    if not path.exists():
        logger.warning(f"Config file not found: {path} (using empty configuration)")
        return AppConfig(providers={name: ProviderConfig() for name in PROVIDERS}, path=path)

    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        logger.error(f"Failed to parse config at {path}: {e}")
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    config = parse_config(data, path)
    logger.info(
        f"Loaded config from {path}: "
        + ", ".join(
            f"{name}={len(p.accounts)} account(s){'' if p.enabled else ' (disabled)'}"
            for name, p in config.providers.items()
        )
    )
    return config


def _read_raw(path: Path) -> dict:
    if not path.exists():
        return {}
    with open(path, "r") as f:
        return _normalize_keys(yaml.safe_load(f) or {})


def _write_raw(path: Path, data: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        yaml.safe_dump(data, f, sort_keys=False)


def save_account(path: Path, provider: str, account: dict) -> AppConfig:
    """
    Add or update an account in the config file.

    Existing fields of an account with the same alias are kept unless
    overwritten. The result is re-validated before anything is written.

    Returns:
        The reloaded configuration
    """
    if provider not in PROVIDERS:
        raise ValueError(f"Invalid provider: {provider}")

    account = _normalize_keys(dict(account))
    data = _read_raw(path)
    providers = data.setdefault("providers", {})
    provider_raw = providers.setdefault(provider, {"enabled": True, "accounts": []})
    accounts = provider_raw.setdefault("accounts", [])

    for i, existing in enumerate(accounts):
        if existing.get("alias") == account.get("alias"):
            accounts[i] = {**existing, **account}
            break
    else:
        accounts.append(account)

    config = parse_config(data, path)
    _write_raw(path, data)
    logger.info(f"Saved {provider} account '{account.get('alias')}' to {path}")
    return config


def remove_account(path: Path, provider: str, alias: str) -> bool:
    """
    Remove an account from the config file.

    Returns:
        True if removed, False if no such account
    """
    if provider not in PROVIDERS:
        raise ValueError(f"Invalid provider: {provider}")

    data = _read_raw(path)
    provider_raw = (data.get("providers") or {}).get(provider) or {}
    accounts = provider_raw.get("accounts") or []
    remaining = [a for a in accounts if a.get("alias") != alias]
    if len(remaining) == len(accounts):
        return False

    provider_raw["accounts"] = remaining
    _write_raw(path, data)
    logger.info(f"Removed {provider} account '{alias}' from {path}")
    return True
