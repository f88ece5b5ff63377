"""
Fan-out search aggregator.

Queries every enabled provider concurrently, then merges, filters,
dedupes, ranks and truncates into one ordered list.

Merge order is fixed: providers in connector order (local, google,
microsoft), then configured account order within a provider, then
sub-query order within an account. Dedupe keeps the first occurrence in
that order, so identical data always produces identical winners no
matter which call finishes first.
"""

import asyncio
import logging
import time
from dataclasses import replace
from typing import Iterable, Optional

import httpx

from auth import CredentialStoreError, TokenManager
from config import AccountNotConfiguredError, AppConfig
from connectors import (
    GoogleConnector,
    LocalFilesystemConnector,
    MicrosoftConnector,
    SearchResult,
    SourceConnector,
)

logger = logging.getLogger(__name__)

# Ranking (lower is better)
EXACT_MATCH_SCORE = 0.0
SUBSTRING_MATCH_SCORE = 0.2
DEFAULT_SCORE = 0.6
RECENCY_WEIGHT = 0.02  # per year of age
MAX_AGE_YEARS = 5.0
MS_PER_YEAR = 1000 * 60 * 60 * 24 * 365

MAX_RESULTS = 200


def _dedupe_key(result: SearchResult) -> str:
    if result.id:
        return f"{result.source}:{result.id}"
    return f"{result.title}:{result.size}:{result.modified}"


def dedupe(results: Iterable[SearchResult]) -> list[SearchResult]:
    """Drop later duplicates by source+id (title:size:modified without an id)."""
    seen: dict[str, SearchResult] = {}
    for result in results:
        seen.setdefault(_dedupe_key(result), result)
    return list(seen.values())


def _age_years(modified: Optional[int], now_ms: int) -> float:
    # Unknown recency counts as very old
    if modified is None:
        return MAX_AGE_YEARS
    return min(max((now_ms - modified) / MS_PER_YEAR, 0.0), MAX_AGE_YEARS)


def score_result(result: SearchResult, query: str, now_ms: int) -> float:
    """
    Composite rank score for one result.

    Title matching only applies to a non-empty query; otherwise the
    connector score (or DEFAULT_SCORE) is used. A light recency penalty
    breaks near-ties toward newer items.
    """
    base = result.score if result.score is not None else DEFAULT_SCORE
    q = (query or "").strip().lower()
    if q:
        title = (result.title or "").lower()
        if title == q:
            base = EXACT_MATCH_SCORE
        elif q in title:
            base = SUBSTRING_MATCH_SCORE
    return base + _age_years(result.modified, now_ms) * RECENCY_WEIGHT


def rank(
    results: Iterable[SearchResult],
    query: str,
    now_ms: Optional[int] = None,
    limit: int = MAX_RESULTS,
) -> list[SearchResult]:
    """Score, stable-sort ascending and truncate. Returns ranked copies."""
    now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
    ranked = [replace(r, rank=score_result(r, query, now_ms)) for r in results]
    ranked.sort(key=lambda r: r.rank)
    return ranked[:limit]


def _split_filter(values: Optional[Iterable[str]]) -> list[str]:
    if not values:
        return []
    return [v.strip() for v in values if v and v.strip()]


def normalize_account_filter(values: Optional[Iterable[str]]) -> list[str]:
    """Accept bare aliases or provider:alias entries; return bare aliases."""
    aliases = []
    for value in _split_filter(values):
        provider, sep, alias = value.partition(":")
        aliases.append(alias if sep and alias else value)
    return aliases


class SearchAggregator:
    """
    Runs one search across all enabled providers.

    Args:
        config: Application configuration
        token_manager: Shared token manager for OAuth providers
        connectors: Override the connector list (order is merge order)
        transport: Optional httpx transport for outbound API calls
    """

    def __init__(
        self,
        config: AppConfig,
        token_manager: TokenManager,
        connectors: Optional[list[SourceConnector]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config
        self.token_manager = token_manager
        self.connectors = connectors if connectors is not None else [
            LocalFilesystemConnector(config),
            GoogleConnector(config, token_manager),
            MicrosoftConnector(config, token_manager),
        ]
        self._transport = transport

    async def search(
        self,
        query: str = "",
        include_sources: Optional[Iterable[str]] = None,
        include_accounts: Optional[Iterable[str]] = None,
    ) -> list[SearchResult]:
        """
        Search every in-scope provider and return the ranked results.

        An empty query means browse: no title matching, and the local
        connector switches to listing mode.

        Raises:
            AccountNotConfiguredError: if include_accounts names an unknown alias
            CredentialStoreError: if token storage is unavailable
        """
        query = (query or "").strip()
        sources = _split_filter(include_sources)
        accounts = normalize_account_filter(include_accounts)

        for alias in accounts:
            if not self.config.find_alias(alias):
                raise AccountNotConfiguredError(alias)

        active = [c for c in self.connectors if c.matches_source_filter(sources)]
        logger.info(
            f"Search request: query={query!r} sources={sources or 'all'} "
            f"accounts={accounts or 'all'} providers={[c.provider for c in active]}"
        )

        async with httpx.AsyncClient(
            timeout=self.config.search.timeout, transport=self._transport
        ) as client:
            outcomes = await asyncio.gather(
                *(connector.search(query, client) for connector in active),
                return_exceptions=True,
            )

        merged: list[SearchResult] = []
        for connector, outcome in zip(active, outcomes):
            if isinstance(outcome, CredentialStoreError):
                raise outcome
            if isinstance(outcome, Exception):
                logger.error(f"{connector.display_name} search failed: {outcome!r}")
                continue
            if isinstance(outcome, BaseException):
                raise outcome
            merged.extend(outcome)

        if accounts:
            merged = [r for r in merged if r.account in accounts]
        if sources:
            merged = [r for r in merged if r.source in sources]

        unique = dedupe(merged)
        ranked = rank(unique, query, limit=self.config.search.max_results)

        logger.info(
            f"Search results: total={len(merged)} unique={len(unique)} returned={len(ranked)} "
            f"sources={sorted({r.source for r in ranked})}"
        )
        return ranked
