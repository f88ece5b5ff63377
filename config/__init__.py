"""
Config package: typed application configuration loaded from YAML.
"""

from .settings import (
    DEFAULT_SCOPES,
    PROVIDERS,
    AccountConfig,
    AccountNotConfiguredError,
    AppConfig,
    ConfigError,
    LocalConfig,
    ProviderConfig,
    SearchSettings,
    ServerSettings,
    get_config_path,
    load_config,
    normalize_scopes,
    parse_config,
    remove_account,
    save_account,
)

__all__ = [
    "DEFAULT_SCOPES",
    "PROVIDERS",
    "AccountConfig",
    "AccountNotConfiguredError",
    "AppConfig",
    "ConfigError",
    "LocalConfig",
    "ProviderConfig",
    "SearchSettings",
    "ServerSettings",
    "get_config_path",
    "load_config",
    "normalize_scopes",
    "parse_config",
    "remove_account",
    "save_account",
]
