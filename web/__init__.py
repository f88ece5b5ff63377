# Flask surface: search API, account management, OAuth connect flow

from web.app import AppState, create_api_blueprint, create_app

__all__ = ["AppState", "create_api_blueprint", "create_app"]
