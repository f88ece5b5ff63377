"""
Flask application for DocFinder.

Provides:
- Unified search API
- Account management (YAML config write path + token status)
- OAuth connect flow (consent redirect and callback)

Request handlers are synchronous; every coroutine (search, token
refresh, code exchange) is submitted to the shared BackgroundLoop.
"""

import concurrent.futures
import logging
from pathlib import Path
from typing import Callable, Optional

from flask import Blueprint, Flask, jsonify, redirect, render_template, request

from auth import CredentialStoreError, OAuthExchangeError, TokenManager
from config import (
    PROVIDERS,
    AccountConfig,
    AccountNotConfiguredError,
    AppConfig,
    ConfigError,
    load_config,
    remove_account,
    save_account,
)
from search import BackgroundLoop, SearchAggregator
from version import VERSION

logger = logging.getLogger(__name__)

WEB_DIR = Path(__file__).parent
TEMPLATE_DIR = WEB_DIR / "templates"

# Upper bound for a blocking wait on the background loop
REQUEST_TIMEOUT = 120


class AppState:
    """
    Mutable holder for the services a request needs.

    Account edits rewrite the YAML file; reload() swaps in the new
    config and a fresh aggregator built on it. The token manager (and
    its per-account locks) survives reloads.
    """

    def __init__(
        self,
        config: AppConfig,
        token_manager: TokenManager,
        runner: BackgroundLoop,
        aggregator_factory: Optional[Callable[[AppConfig], SearchAggregator]] = None,
    ):
        self.token_manager = token_manager
        self.runner = runner
        self._aggregator_factory = aggregator_factory or (
            lambda cfg: SearchAggregator(cfg, token_manager)
        )
        self.config = config
        self.aggregator = self._aggregator_factory(config)

    def reload(self, config: Optional[AppConfig] = None) -> None:
        self.config = config or load_config(self.config.path)
        self.aggregator = self._aggregator_factory(self.config)
        logger.info("Configuration reloaded")

    def run(self, coro):
        return self.runner.run(coro, timeout=REQUEST_TIMEOUT)


def _split_param(value: Optional[str]) -> list[str]:
    return [part.strip() for part in (value or "").split(",") if part.strip()]


def create_api_blueprint(state: AppState) -> Blueprint:
    """Create the blueprint with the search, account and OAuth routes."""
    bp = Blueprint("docfinder", __name__, template_folder=str(TEMPLATE_DIR))

    def lookup_account(provider: str, alias: str) -> AccountConfig:
        if provider not in PROVIDERS:
            raise ValueError(f"Invalid provider: {provider}")
        return state.config.get_account(provider, alias)

    # =========================================================================
    # Search
    # =========================================================================

    @bp.route("/api/health", methods=["GET"])
    def health():
        return jsonify({"ok": True, "version": VERSION})

    @bp.route("/api/search", methods=["GET"])
    def search():
        name = request.args.get("name", "").strip()
        sources = _split_param(request.args.get("sources"))
        accounts = _split_param(request.args.get("accounts"))

        try:
            results = state.run(state.aggregator.search(name, sources, accounts))
        except AccountNotConfiguredError as e:
            return jsonify({"error": str(e)}), 400
        except CredentialStoreError as e:
            logger.error(f"Search failed, credential store unavailable: {e}")
            return jsonify({"error": "Search failed", "details": str(e)}), 500

        return jsonify({"results": [r.to_dict() for r in results]})

    # =========================================================================
    # Accounts
    # =========================================================================

    @bp.route("/api/accounts", methods=["GET"])
    def list_accounts():
        """Configured accounts per provider with token status (no secrets)."""

        async def collect():
            data = {}
            for provider in PROVIDERS:
                provider_config = state.config.provider(provider)
                entries = []
                for account in provider_config.accounts:
                    status = await state.token_manager.token_status(account)
                    entries.append({**account.to_dict(), **status})
                data[provider] = {"enabled": provider_config.enabled, "accounts": entries}
            return data

        try:
            return jsonify(state.run(collect()))
        except CredentialStoreError as e:
            logger.error(f"Failed to load accounts: {e}")
            return jsonify({"error": "Failed to load accounts", "details": str(e)}), 500

    @bp.route("/api/accounts/token/<provider>/<alias>", methods=["GET"])
    def token_status(provider: str, alias: str):
        try:
            account = lookup_account(provider, alias)
        except AccountNotConfiguredError as e:
            return jsonify({"error": str(e)}), 404
        except ValueError as e:
            return jsonify({"error": str(e)}), 400

        try:
            return jsonify(state.run(state.token_manager.token_status(account)))
        except CredentialStoreError as e:
            logger.error(f"Failed to check token status for {provider}:{alias}: {e}")
            return jsonify({"error": "Failed to check token status", "details": str(e)}), 500

    @bp.route("/api/accounts", methods=["POST"])
    def upsert_account():
        """Add or update an account in the YAML config."""
        data = request.get_json(silent=True) or {}
        provider = data.get("provider")
        account = data.get("account")

        if not provider or not isinstance(account, dict) or not account.get("alias"):
            return jsonify({"error": "Missing required fields"}), 400
        if provider not in PROVIDERS:
            return jsonify({"error": "Invalid provider"}), 400

        try:
            config = save_account(state.config.path, provider, account)
        except ConfigError as e:
            return jsonify({"error": str(e)}), 400

        state.reload(config)
        return jsonify({"success": True})

    @bp.route("/api/accounts/<provider>/<alias>", methods=["DELETE"])
    def delete_account(provider: str, alias: str):
        try:
            account = lookup_account(provider, alias)
        except AccountNotConfiguredError:
            return jsonify({"error": "Account not found"}), 404
        except ValueError as e:
            return jsonify({"error": str(e)}), 400

        if not remove_account(state.config.path, provider, alias):
            return jsonify({"error": "Account not found"}), 404

        try:
            state.run(state.token_manager.disconnect(account))
        except CredentialStoreError as e:
            logger.error(f"Removed {provider}:{alias} from config but failed to delete tokens: {e}")
            state.reload()
            return jsonify({"error": "Failed to delete tokens", "details": str(e)}), 500

        state.reload()
        logger.info(f"Deleted account {provider}:{alias}")
        return jsonify({"success": True, "message": "Account deleted successfully"})

    @bp.route("/api/accounts/<provider>/<alias>/disconnect", methods=["POST"])
    def disconnect_account(provider: str, alias: str):
        """Forget the tokens but keep the account configured."""
        try:
            account = lookup_account(provider, alias)
        except AccountNotConfiguredError as e:
            return jsonify({"error": str(e)}), 404
        except ValueError as e:
            return jsonify({"error": str(e)}), 400

        try:
            state.run(state.token_manager.disconnect(account))
        except CredentialStoreError as e:
            logger.error(f"Failed to disconnect {provider}:{alias}: {e}")
            return jsonify({"error": "Failed to disconnect account", "details": str(e)}), 500

        logger.info(f"Disconnected {provider} account '{alias}'")
        return jsonify({"success": True})

    # =========================================================================
    # OAuth connect flow
    # =========================================================================

    @bp.route("/auth/<provider>/start/<alias>", methods=["GET"])
    def oauth_start(provider: str, alias: str):
        try:
            account = lookup_account(provider, alias)
        except ValueError as e:
            logger.error(f"Cannot start {provider} OAuth for '{alias}': {e}")
            return f"Error starting {provider} authentication: {e}", 400

        logger.info(f"Starting {provider} OAuth flow for '{alias}'")
        return redirect(state.token_manager.build_auth_url(account))

    @bp.route("/auth/<provider>/callback", methods=["GET"])
    def oauth_callback(provider: str):
        error = request.args.get("error")
        code = request.args.get("code")
        state_param = request.args.get("state")

        def result_page(status: int, alias: Optional[str] = None, message: Optional[str] = None):
            return (
                render_template(
                    "oauth_result.html",
                    success=status == 200,
                    provider=provider,
                    alias=alias,
                    error=message,
                ),
                status,
            )

        if provider not in PROVIDERS:
            return result_page(400, message=f"Invalid provider: {provider}")
        if error:
            description = request.args.get("error_description") or error
            logger.error(f"{provider} OAuth error: {description}")
            return result_page(400, message=f"Authentication failed: {description}")
        if not code:
            return result_page(400, message="No authorization code received.")

        try:
            alias = state.run(
                state.token_manager.handle_callback(state.config, provider, code, state_param)
            )
        except (OAuthExchangeError, AccountNotConfiguredError) as e:
            logger.error(f"{provider} OAuth callback failed: {e}")
            return result_page(400, message=str(e))
        except CredentialStoreError as e:
            logger.error(f"{provider} OAuth callback could not store tokens: {e}")
            return result_page(500, message="Failed to store tokens.")

        return result_page(200, alias=alias)

    return bp


def create_app(
    config: AppConfig,
    token_manager: TokenManager,
    runner: Optional[BackgroundLoop] = None,
    aggregator_factory: Optional[Callable[[AppConfig], SearchAggregator]] = None,
) -> Flask:
    """
    Create the DocFinder Flask app.

    Args:
        config: Loaded configuration (its path is the account write target)
        token_manager: Shared token manager
        runner: Background event loop; started here if not given
        aggregator_factory: Builds the aggregator for a config (tests inject fakes)
    """
    app = Flask(__name__)
    state = AppState(config, token_manager, runner or BackgroundLoop().start(), aggregator_factory)
    app.extensions["docfinder"] = state
    app.register_blueprint(create_api_blueprint(state))

    @app.errorhandler(concurrent.futures.TimeoutError)
    def request_timeout(e):
        """Handle a coroutine that outlived REQUEST_TIMEOUT (already cancelled)."""
        logger.error(f"Request timed out after {REQUEST_TIMEOUT}s: {request.path}")
        return jsonify({"error": "Request timed out"}), 504

    return app
