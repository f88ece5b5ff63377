#!/usr/bin/env python3
"""
DocFinder HTTP server.

Wires the config, credential store, token manager and aggregator into
the Flask app and runs it.

Environment:
    DOCFINDER_CONFIG       Path to the YAML config file
    DATABASE_URL           Token database (default: SQLite under ~/.docfinder)
    DOCFINDER_DATA_DIR     Data directory (default: ~/.docfinder)
    OAUTH_ENCRYPTION_KEY   Fernet key for tokens at rest (default: key file in the data directory)
    LOG_LEVEL              Logging level (default: INFO)
    HOST / PORT            Override the configured bind address
    DEBUG                  Enable Flask debug mode
"""

import logging
import os
from typing import Optional

from auth import DatabaseCredentialStore, TokenManager
from config import AppConfig, load_config
from search import BackgroundLoop
from version import VERSION

logger = logging.getLogger(__name__)


def configure_logging(level: Optional[str] = None) -> None:
    level_name = (level or os.environ.get("LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def build_token_manager(config: AppConfig) -> TokenManager:
    """One token manager per process, backed by the token database."""
    return TokenManager(DatabaseCredentialStore(), timeout=config.search.timeout)


def create_server_app(config: Optional[AppConfig] = None):
    """Build the Flask app with production services."""
    from web import create_app

    config = config or load_config()
    token_manager = build_token_manager(config)
    return create_app(config, token_manager, BackgroundLoop().start())


def main(
    host: Optional[str] = None, port: Optional[int] = None, config: Optional[AppConfig] = None
) -> None:
    configure_logging()
    config = config or load_config()

    host = host or os.environ.get("HOST") or config.server.host
    port = int(port or os.environ.get("PORT") or config.server.port)
    debug = os.environ.get("DEBUG", "false").lower() == "true"

    app = create_server_app(config)

    logger.info("=" * 60)
    logger.info(f"DocFinder v{VERSION}")
    logger.info("=" * 60)
    logger.info(f"Server:   http://{host}:{port}")
    logger.info(f"Config:   {config.path}")
    logger.info(f"Local:    {'enabled' if config.local.enabled else 'disabled'}")
    for name, provider in config.providers.items():
        state = "enabled" if provider.enabled else "disabled"
        aliases = ", ".join(a.alias for a in provider.accounts) or "no accounts"
        logger.info(f"{name.capitalize():<10}{state} ({aliases})")
    logger.info("=" * 60)

    # Reloader would start a second background loop
    app.run(host=host, port=port, debug=debug, use_reloader=False, threaded=True)


if __name__ == "__main__":
    main()
