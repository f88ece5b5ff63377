# Search aggregation: fan-out, merge, dedupe, rank

from search.aggregator import (
    MAX_RESULTS,
    SearchAggregator,
    dedupe,
    normalize_account_filter,
    rank,
    score_result,
)
from search.runner import BackgroundLoop

__all__ = [
    "MAX_RESULTS",
    "SearchAggregator",
    "dedupe",
    "normalize_account_filter",
    "rank",
    "score_result",
    "BackgroundLoop",
]
