#!/usr/bin/env python3
"""
DocFinder command line interface.

Usage:
    docfinder search -n NAME [--sources google-drive,local] [--accounts work] [--json]
    docfinder accounts
    docfinder disconnect PROVIDER ALIAS
    docfinder serve [--host HOST] [--port PORT]

Exit codes:
    0   success
    1   credential store or config failure
    2   unknown account alias
"""

import argparse
import asyncio
import json
import logging
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from auth import CredentialStoreError
from config import PROVIDERS, AccountNotConfiguredError, ConfigError, load_config
from search import SearchAggregator
from server import build_token_manager, configure_logging
from server import main as run_server
from version import VERSION

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_UNKNOWN_ACCOUNT = 2


def _csv(value: str) -> list[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


def format_timestamp(modified: Optional[int]) -> str:
    """Epoch ms as ISO-8601 UTC with milliseconds, or "-" when unknown."""
    if modified is None:
        return "-"
    dt = datetime.fromtimestamp(modified / 1000, tz=timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{modified % 1000:03d}Z"


def format_result_line(result) -> str:
    location = result.path or result.url or ""
    return f"{result.source}\t{result.title}\t{format_timestamp(result.modified)}\t{location}"


def cmd_search(args, config) -> int:
    token_manager = build_token_manager(config)
    aggregator = SearchAggregator(config, token_manager)
    results = asyncio.run(aggregator.search(args.name, args.sources, args.accounts))

    if args.json:
        print(json.dumps([r.to_dict() for r in results], indent=2))
        return EXIT_OK

    for result in results:
        print(format_result_line(result))
    if not results:
        print("No matches")
    return EXIT_OK


def cmd_accounts(args, config) -> int:
    token_manager = build_token_manager(config)

    async def collect():
        rows = []
        for provider in PROVIDERS:
            provider_config = config.provider(provider)
            for account in provider_config.accounts:
                status = await token_manager.token_status(account)
                rows.append((provider, provider_config.enabled, status))
        return rows

    rows = asyncio.run(collect())
    if not rows:
        print("No accounts configured")
        return EXIT_OK

    for provider, enabled, status in rows:
        connected = "connected" if status["hasToken"] else "not connected"
        if not enabled:
            connected += " (provider disabled)"
        print(f"{provider}\t{status['alias']}\t{connected}\t{format_timestamp(status['expiresAt'])}")
    return EXIT_OK


def cmd_disconnect(args, config) -> int:
    account = config.get_account(args.provider, args.alias)
    token_manager = build_token_manager(config)
    removed = asyncio.run(token_manager.disconnect(account))
    if removed:
        print(f"Disconnected {args.provider} account '{args.alias}'")
    else:
        print(f"No stored tokens for {args.provider} account '{args.alias}'")
    return EXIT_OK


def cmd_serve(args, config) -> int:
    run_server(host=args.host, port=args.port, config=config)
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="docfinder",
        description="Find documents by name across local, Google, and Microsoft sources",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    parser.add_argument("--config", type=Path, help="Path to config.yaml (default: DOCFINDER_CONFIG)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    search = subparsers.add_parser("search", help="Search by filename")
    search.add_argument("-n", "--name", required=True, help="Name to search for")
    search.add_argument(
        "--sources",
        type=_csv,
        action="extend",
        help="Comma-separated sources to include (e.g. local,google-drive,microsoft-onedrive)",
    )
    search.add_argument(
        "--accounts",
        type=_csv,
        action="extend",
        help="Comma-separated account aliases (alias or provider:alias)",
    )
    search.add_argument("--json", action="store_true", help="Print results as JSON")
    search.set_defaults(func=cmd_search)

    accounts = subparsers.add_parser("accounts", help="List accounts with token status")
    accounts.set_defaults(func=cmd_accounts)

    disconnect = subparsers.add_parser("disconnect", help="Forget stored tokens for an account")
    disconnect.add_argument("provider", choices=PROVIDERS)
    disconnect.add_argument("alias")
    disconnect.set_defaults(func=cmd_disconnect)

    serve = subparsers.add_parser("serve", help="Run the HTTP server")
    serve.add_argument("--host", help="Bind address (default: from config)")
    serve.add_argument("--port", type=int, help="Port (default: from config)")
    serve.set_defaults(func=cmd_serve)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    if args.command != "serve":
        configure_logging(os.environ.get("LOG_LEVEL", "WARNING"))

    try:
        config = load_config(args.config)
        return args.func(args, config)
    except AccountNotConfiguredError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_UNKNOWN_ACCOUNT
    except CredentialStoreError as e:
        print(f"Error: credential store unavailable: {e}", file=sys.stderr)
        return EXIT_FAILURE
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
