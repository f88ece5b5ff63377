"""
Microsoft connector: OneDrive, SharePoint/Teams and Outlook attachments.

Per account, three Microsoft Graph queries run concurrently:
- OneDrive item search (/me/drive/root/search)
- Unified search (/search/query, driveItem) for SharePoint and Teams
  files that the OneDrive endpoint misses because of tenant search-index
  differences
- Outlook attachment search (recent messages with attachments, filtered
  by attachment filename)

Tenant capability gaps (e.g. no SharePoint Online license) degrade the
affected sub-query to an empty list instead of failing the account.
"""

import asyncio
import logging
from urllib.parse import quote

import httpx

from config import AccountConfig

from .base import OAuthSourceConnector, SearchResult, parse_size, parse_timestamp

logger = logging.getLogger(__name__)


class MicrosoftConnector(OAuthSourceConnector):
    """OneDrive + SharePoint/Teams + Outlook for every configured Microsoft account."""

    provider = "microsoft"
    display_name = "Microsoft"
    source_prefixes = ("microsoft",)

    # Microsoft Graph API endpoint
    GRAPH_API_BASE = "https://graph.microsoft.com/v1.0"

    ONEDRIVE_TOP = 50
    SEARCH_PAGE_SIZE = 50
    OUTLOOK_MAX_MESSAGES = 25
    OUTLOOK_MAX_ATTACHMENTS = 20

    async def search_account(
        self, query: str, account: AccountConfig, token: str, client: httpx.AsyncClient
    ) -> list[SearchResult]:
        alias = account.alias
        onedrive, sharepoint, outlook = await asyncio.gather(
            self.run_subquery("OneDrive", alias, self._search_onedrive(query, alias, token, client)),
            self.run_subquery("SharePoint/Teams", alias, self._search_drive_items(query, alias, token, client)),
            self.run_subquery("Outlook", alias, self._search_outlook(query, alias, token, client)),
        )
        logger.info(
            f"Microsoft account '{alias}': onedrive={len(onedrive)} "
            f"sharepoint={len(sharepoint)} outlook={len(outlook)}"
        )
        return onedrive + sharepoint + outlook

    # =========================================================================
    # OneDrive
    # =========================================================================

    def _onedrive_search_url(self, query: str) -> str:
        # OData string literal: single quotes are doubled
        literal = quote((query or "").replace("'", "''"), safe="")
        return f"{self.GRAPH_API_BASE}/me/drive/root/search(q='{literal}')"

    async def _search_onedrive(
        self, query: str, alias: str, token: str, client: httpx.AsyncClient
    ) -> list[SearchResult]:
        data = await self.request_json(
            client,
            "GET",
            self._onedrive_search_url(query),
            token,
            params={"$top": self.ONEDRIVE_TOP},
        )
        return [
            SearchResult(
                id=f"onedrive:{item.get('id', '')}",
                title=item.get("name") or "(untitled)",
                source="microsoft-onedrive",
                account=alias,
                url=item.get("webUrl"),
                modified=parse_timestamp(item.get("lastModifiedDateTime")),
                size=parse_size(item.get("size")),
                owner=((item.get("createdBy") or {}).get("user") or {}).get("email"),
                mime_type=(item.get("file") or {}).get("mimeType"),
            )
            for item in data.get("value", [])
        ]

    # =========================================================================
    # SharePoint / Teams (unified search)
    # =========================================================================

    async def _search_drive_items(
        self, query: str, alias: str, token: str, client: httpx.AsyncClient
    ) -> list[SearchResult]:
        if not query or not query.strip():
            return []

        body = {
            "requests": [
                {
                    "entityTypes": ["driveItem"],
                    "query": {"queryString": query},
                    "from": 0,
                    "size": self.SEARCH_PAGE_SIZE,
                }
            ]
        }
        data = await self.request_json(
            client, "POST", f"{self.GRAPH_API_BASE}/search/query", token, json=body
        )

        hits = []
        for response in data.get("value") or []:
            for container in response.get("hitsContainers") or []:
                hits.extend(container.get("hits") or [])

        return [self._drive_item_result(hit, alias) for hit in hits]

    def _drive_item_result(self, hit: dict, alias: str) -> SearchResult:
        item = hit.get("resource") or {}
        drive_type = (item.get("parentReference") or {}).get("driveType")
        source = "microsoft-sharepoint" if drive_type == "business" else "microsoft-teams"
        return SearchResult(
            id=f"sp:{item.get('id') or hit.get('hitId', '')}",
            title=item.get("name") or item.get("title") or "item",
            source=source,
            account=alias,
            url=item.get("webUrl") or item.get("webUrlPath"),
            modified=parse_timestamp(
                item.get("lastModifiedDateTime") or item.get("lastModifiedTime")
            ),
            size=parse_size(item.get("size")),
            owner=((item.get("createdBy") or {}).get("user") or {}).get("email"),
        )

    # =========================================================================
    # Outlook attachments
    # =========================================================================

    async def _search_outlook(
        self, query: str, alias: str, token: str, client: httpx.AsyncClient
    ) -> list[SearchResult]:
        if not query or not query.strip():
            return []

        # Graph requires the $orderby property to appear first in $filter
        messages = await self.request_json(
            client,
            "GET",
            f"{self.GRAPH_API_BASE}/me/messages",
            token,
            params={
                "$filter": "receivedDateTime ge 1900-01-01T00:00:00Z and hasAttachments eq true",
                "$orderby": "receivedDateTime desc",
                "$top": self.OUTLOOK_MAX_MESSAGES,
                "$select": "id,receivedDateTime,subject",
            },
        )
        message_list = [m for m in messages.get("value") or [] if m.get("id")]

        attachment_lists = await asyncio.gather(
            *(self._fetch_attachments(m["id"], token, client) for m in message_list)
        )

        needle = query.lower()
        results = []
        for message, attachments in zip(message_list, attachment_lists):
            for attachment in attachments:
                filename = attachment.get("name") or attachment.get("fileName") or ""
                if needle not in filename.lower():
                    continue
                results.append(
                    SearchResult(
                        id=f"outlook:{message['id']}:{attachment.get('id', '')}",
                        title=filename or "(attachment)",
                        source="microsoft-outlook-attachment",
                        account=alias,
                        url=f"https://outlook.office.com/mail/inbox/id/{quote(message['id'], safe='')}",
                        modified=parse_timestamp(message.get("receivedDateTime")),
                        size=parse_size(attachment.get("size")),
                        mime_type=attachment.get("contentType"),
                    )
                )
        return results

    async def _fetch_attachments(
        self, message_id: str, token: str, client: httpx.AsyncClient
    ) -> list[dict]:
        try:
            data = await self.request_json(
                client,
                "GET",
                f"{self.GRAPH_API_BASE}/me/messages/{message_id}/attachments",
                token,
                params={"$top": self.OUTLOOK_MAX_ATTACHMENTS},
            )
        except Exception as e:
            logger.debug(f"Failed to list attachments for message {message_id}: {e!r}")
            return []
        return data.get("value") or []
