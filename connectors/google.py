"""
Google connector: Drive file search and Gmail attachment search.

Per account, Drive metadata search and Gmail attachment search run
concurrently; Drive results come first in the merged list.
"""

import asyncio
import logging
from typing import Iterator, Optional

import httpx

from config import AccountConfig

from .base import OAuthSourceConnector, SearchResult, parse_size, parse_timestamp

logger = logging.getLogger(__name__)


class GoogleConnector(OAuthSourceConnector):
    """Google Drive + Gmail attachments for every configured Google account."""

    provider = "google"
    display_name = "Google"
    source_prefixes = ("google", "gmail")

    DRIVE_API_BASE = "https://www.googleapis.com/drive/v3"
    GMAIL_API_BASE = "https://gmail.googleapis.com/gmail/v1/users/me"

    DRIVE_PAGE_SIZE = 50
    GMAIL_MAX_MESSAGES = 25

    DRIVE_FIELDS = (
        "files(id, name, mimeType, modifiedTime, size, webViewLink, "
        "webContentLink, owners(emailAddress,displayName))"
    )

    async def search_account(
        self, query: str, account: AccountConfig, token: str, client: httpx.AsyncClient
    ) -> list[SearchResult]:
        drive, gmail = await asyncio.gather(
            self.run_subquery("Google Drive", account.alias, self._search_drive(query, account, token, client)),
            self.run_subquery("Gmail", account.alias, self._search_gmail(query, account, token, client)),
        )
        logger.info(
            f"Google account '{account.alias}': drive={len(drive)} gmail={len(gmail)}"
        )
        return drive + gmail

    # =========================================================================
    # Drive
    # =========================================================================

    @staticmethod
    def build_drive_query(query: str) -> str:
        """Drive `q` expression; the name clause is omitted for an empty query."""
        parts = ["trashed = false"]
        if query and query.strip():
            safe = query.replace("\\", "\\\\").replace("'", "\\'")
            parts.append(f"(name contains '{safe}' or fullText contains '{safe}')")
        return " and ".join(parts)

    async def _search_drive(
        self, query: str, account: AccountConfig, token: str, client: httpx.AsyncClient
    ) -> list[SearchResult]:
        q = self.build_drive_query(query)
        logger.debug(f"Google Drive search for '{account.alias}': q={q}")

        data = await self.request_json(
            client,
            "GET",
            f"{self.DRIVE_API_BASE}/files",
            token,
            params={
                "q": q,
                "corpora": "allDrives",
                "includeItemsFromAllDrives": "true",
                "supportsAllDrives": "true",
                "fields": self.DRIVE_FIELDS,
                "orderBy": "modifiedTime desc",
                "pageSize": self.DRIVE_PAGE_SIZE,
            },
        )
        return [self._drive_result(f, account.alias) for f in data.get("files", [])]

    def _drive_result(self, item: dict, alias: str) -> SearchResult:
        file_id = item.get("id", "")
        owners = item.get("owners") or []
        return SearchResult(
            id=f"gdrive:{file_id}",
            title=item.get("name") or "(untitled)",
            source="google-drive",
            account=alias,
            url=item.get("webViewLink") or f"https://drive.google.com/file/d/{file_id}/view",
            modified=parse_timestamp(item.get("modifiedTime")),
            size=parse_size(item.get("size")),
            owner=owners[0].get("emailAddress") if owners else None,
            mime_type=item.get("mimeType"),
        )

    # =========================================================================
    # Gmail attachments
    # =========================================================================

    async def _search_gmail(
        self, query: str, account: AccountConfig, token: str, client: httpx.AsyncClient
    ) -> list[SearchResult]:
        if not query or not query.strip():
            return []

        listing = await self.request_json(
            client,
            "GET",
            f"{self.GMAIL_API_BASE}/messages",
            token,
            params={"q": f'filename:"{query}"', "maxResults": self.GMAIL_MAX_MESSAGES},
        )
        messages = listing.get("messages") or []
        logger.debug(f"Gmail search for '{account.alias}' returned {len(messages)} messages")

        full_messages = await asyncio.gather(
            *(self._fetch_message(m["id"], token, client) for m in messages if m.get("id"))
        )

        needle = query.lower()
        results = []
        for message in full_messages:
            if not message or not message.get("payload"):
                continue
            for part in self._iter_attachment_parts(message["payload"]):
                if needle in part["filename"].lower():
                    results.append(self._gmail_result(message, part, account.alias))
        return results

    async def _fetch_message(
        self, message_id: str, token: str, client: httpx.AsyncClient
    ) -> Optional[dict]:
        try:
            return await self.request_json(
                client,
                "GET",
                f"{self.GMAIL_API_BASE}/messages/{message_id}",
                token,
                params={"format": "full"},
            )
        except Exception as e:
            logger.warning(f"Failed to fetch email {message_id}: {e!r}")
            return None

    def _iter_attachment_parts(self, payload: dict) -> Iterator[dict]:
        """Walk a message payload depth-first, yielding parts with a filename."""
        if payload.get("filename"):
            yield payload
        for part in payload.get("parts") or []:
            yield from self._iter_attachment_parts(part)

    def _gmail_result(self, message: dict, part: dict, alias: str) -> SearchResult:
        message_id = message.get("id", "")
        return SearchResult(
            id=f"gmail:{message_id}:{part.get('partId', '')}",
            title=part.get("filename") or "(attachment)",
            source="gmail-attachment",
            account=alias,
            url=f"https://mail.google.com/mail/u/0/#inbox/{message_id}",
            modified=parse_timestamp(message.get("internalDate")),
            size=parse_size((part.get("body") or {}).get("size")),
            mime_type=part.get("mimeType"),
        )
