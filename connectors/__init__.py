# Source connectors and the normalized search result record

from connectors.base import (
    EXPECTED_ERROR_MARKERS,
    OAuthSourceConnector,
    ProviderAPIError,
    SearchResult,
    SourceConnector,
    parse_timestamp,
)
from connectors.google import GoogleConnector
from connectors.local_filesystem import LocalFilesystemConnector
from connectors.microsoft import MicrosoftConnector

__all__ = [
    "EXPECTED_ERROR_MARKERS",
    "OAuthSourceConnector",
    "ProviderAPIError",
    "SearchResult",
    "SourceConnector",
    "parse_timestamp",
    "GoogleConnector",
    "LocalFilesystemConnector",
    "MicrosoftConnector",
]
