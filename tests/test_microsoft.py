"""
Tests for connectors/microsoft.py (OneDrive, SharePoint/Teams, Outlook).
"""

import logging

import httpx
import pytest

from auth import MemoryCredentialStore, TokenManager
from connectors import MicrosoftConnector, ProviderAPIError
from conftest import NOW_MS, make_config, microsoft_account, valid_record

ONEDRIVE_ITEMS = {
    "value": [
        {
            "id": "od1",
            "name": "Budget report.xlsx",
            "webUrl": "https://contoso-my.sharepoint.com/od1",
            "lastModifiedDateTime": "2024-03-01T10:00:00Z",
            "size": 4096,
            "file": {"mimeType": "application/vnd.ms-excel"},
            "createdBy": {"user": {"email": "me@contoso.com"}},
        }
    ]
}

SEARCH_HITS = {
    "value": [
        {
            "hitsContainers": [
                {
                    "hits": [
                        {
                            "hitId": "h1",
                            "resource": {
                                "id": "sp1",
                                "name": "Team report.docx",
                                "webUrl": "https://contoso.sharepoint.com/sp1",
                                "lastModifiedDateTime": "2024-02-01T00:00:00Z",
                                "parentReference": {"driveType": "business"},
                            },
                        },
                        {
                            "hitId": "h2",
                            "resource": {
                                "id": "sp2",
                                "name": "Chat report.pdf",
                                "parentReference": {"driveType": "documentLibrary"},
                            },
                        },
                    ]
                }
            ]
        }
    ]
}

MESSAGES = {"value": [{"id": "msg1", "receivedDateTime": "2024-01-15T08:00:00Z"}, {"id": "msg2"}]}

ATTACHMENTS = {
    "value": [
        {"id": "a1", "name": "Report Q1.pdf", "size": 1234, "contentType": "application/pdf"},
        {"id": "a2", "name": "logo.png", "size": 10},
    ]
}

SPO_LICENSE_ERROR = {
    "error": {
        "code": "BadRequest",
        "message": "Tenant does not have a SPO license.",
    }
}


def graph_api(requests: list, search_error: dict = None, onedrive_status: int = 200, timeout_path: str = None):
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        path = request.url.path
        if path == timeout_path:
            raise httpx.ReadTimeout("timed out", request=request)
        if path.startswith("/v1.0/me/drive/root/search"):
            if onedrive_status != 200:
                return httpx.Response(onedrive_status, json={"error": {"code": "x", "message": "down"}})
            return httpx.Response(200, json=ONEDRIVE_ITEMS)
        if path == "/v1.0/search/query":
            if search_error:
                return httpx.Response(400, json=search_error)
            return httpx.Response(200, json=SEARCH_HITS)
        if path == "/v1.0/me/messages":
            return httpx.Response(200, json=MESSAGES)
        if path == "/v1.0/me/messages/msg1/attachments":
            return httpx.Response(200, json=ATTACHMENTS)
        return httpx.Response(500, json={"error": {"code": "InternalServerError", "message": "boom"}})

    return handler


def connector_with(accounts=None, tokens=None, **options):
    config = make_config(microsoft=accounts or [microsoft_account("work")], **options)
    store = MemoryCredentialStore(
        {("microsoft", alias): record for alias, record in (tokens or {"work": valid_record("tok")}).items()}
    )
    return MicrosoftConnector(config, TokenManager(store))


class TestMicrosoftSearch:
    """Tests for per-account Graph search."""

    @pytest.mark.asyncio
    async def test_merge_order_and_sources(self):
        requests = []
        connector = connector_with()

        async with httpx.AsyncClient(transport=httpx.MockTransport(graph_api(requests))) as client:
            results = await connector.search("report", client)

        assert [(r.source, r.id) for r in results] == [
            ("microsoft-onedrive", "onedrive:od1"),
            ("microsoft-sharepoint", "sp:sp1"),
            ("microsoft-teams", "sp:sp2"),
            ("microsoft-outlook-attachment", "outlook:msg1:a1"),
        ]

        onedrive = results[0]
        assert onedrive.size == 4096
        assert onedrive.owner == "me@contoso.com"
        assert onedrive.mime_type == "application/vnd.ms-excel"

        outlook = results[-1]
        assert outlook.title == "Report Q1.pdf"
        assert outlook.url == "https://outlook.office.com/mail/inbox/id/msg1"
        assert outlook.modified is not None
        assert outlook.account == "work"

    @pytest.mark.asyncio
    async def test_request_details(self):
        requests = []
        connector = connector_with()

        async with httpx.AsyncClient(transport=httpx.MockTransport(graph_api(requests))) as client:
            await connector.search("bob's", client)

        onedrive = next(r for r in requests if "/me/drive/root/search" in r.url.path)
        assert "q='bob''s'" in onedrive.url.path

        search = next(r for r in requests if r.url.path == "/v1.0/search/query")
        assert search.method == "POST"
        assert b'"entityTypes": ["driveItem"]' in search.content or b'"entityTypes":["driveItem"]' in search.content

        messages = next(r for r in requests if r.url.path == "/v1.0/me/messages")
        assert "hasAttachments eq true" in messages.url.params["$filter"]
        assert messages.url.params["$orderby"] == "receivedDateTime desc"

    @pytest.mark.asyncio
    async def test_empty_query_only_searches_onedrive(self):
        requests = []
        connector = connector_with()

        async with httpx.AsyncClient(transport=httpx.MockTransport(graph_api(requests))) as client:
            results = await connector.search("", client)

        assert len(requests) == 1
        assert [r.source for r in results] == ["microsoft-onedrive"]

    @pytest.mark.asyncio
    async def test_spo_license_error_degrades_quietly(self, caplog):
        requests = []
        connector = connector_with()
        transport = httpx.MockTransport(graph_api(requests, search_error=SPO_LICENSE_ERROR))

        with caplog.at_level(logging.INFO, logger="connectors.base"):
            async with httpx.AsyncClient(transport=transport) as client:
                results = await connector.search("report", client)

        sources = [r.source for r in results]
        assert sources == ["microsoft-onedrive", "microsoft-outlook-attachment"]

        license_records = [r for r in caplog.records if "SPO license" in r.getMessage()]
        assert license_records
        assert all(r.levelno == logging.INFO for r in license_records)

    @pytest.mark.asyncio
    async def test_onedrive_failure_keeps_other_subqueries(self):
        connector = connector_with()
        transport = httpx.MockTransport(graph_api([], onedrive_status=503))

        async with httpx.AsyncClient(transport=transport) as client:
            results = await connector.search("report", client)

        assert "microsoft-onedrive" not in {r.source for r in results}
        assert "microsoft-sharepoint" in {r.source for r in results}

    @pytest.mark.asyncio
    async def test_unauthenticated_sibling_account(self):
        connector = connector_with(
            accounts=[microsoft_account("work"), microsoft_account("school")],
            tokens={"school": valid_record("tok-school")},
        )

        async with httpx.AsyncClient(transport=httpx.MockTransport(graph_api([]))) as client:
            results = await connector.search("report", client)

        assert results
        assert {r.account for r in results} == {"school"}

    @pytest.mark.asyncio
    async def test_timeout_keeps_other_subqueries_and_accounts(self):
        connector = connector_with(
            accounts=[microsoft_account("work"), microsoft_account("school")],
            tokens={"work": valid_record("tok-work"), "school": valid_record("tok-school")},
        )
        transport = httpx.MockTransport(graph_api([], timeout_path="/v1.0/search/query"))

        async with httpx.AsyncClient(transport=transport) as client:
            results = await connector.search("report", client)

        assert {r.account for r in results} == {"work", "school"}
        assert {r.source for r in results} == {"microsoft-onedrive", "microsoft-outlook-attachment"}

    @pytest.mark.asyncio
    async def test_malformed_refresh_keeps_sibling_account(self):
        config = make_config(microsoft=[microsoft_account("work"), microsoft_account("school")])
        store = MemoryCredentialStore(
            {
                ("microsoft", "work"): valid_record("tok-work"),
                ("microsoft", "school"): valid_record("tok-school", expires_at=NOW_MS - 1),
            }
        )
        token_endpoint = httpx.MockTransport(
            lambda request: httpx.Response(200, json={"access_token": "new", "expires_in": "3600s"})
        )
        connector = MicrosoftConnector(config, TokenManager(store, transport=token_endpoint))

        async with httpx.AsyncClient(transport=httpx.MockTransport(graph_api([]))) as client:
            results = await connector.search("report", client)

        assert results
        assert {r.account for r in results} == {"work"}
        assert (await store.get("microsoft", "school")).access_token == "tok-school"

    @pytest.mark.asyncio
    async def test_token_lookup_error_keeps_sibling_account(self):
        config = make_config(microsoft=[microsoft_account("work"), microsoft_account("school")])
        store = MemoryCredentialStore({("microsoft", "work"): valid_record("tok-work")})

        class FlakyTokenManager(TokenManager):
            async def get_access_token(self, account):
                if account.alias == "school":
                    raise RuntimeError("unexpected token payload")
                return await super().get_access_token(account)

        connector = MicrosoftConnector(config, FlakyTokenManager(store))

        async with httpx.AsyncClient(transport=httpx.MockTransport(graph_api([]))) as client:
            results = await connector.search("report", client)

        assert {r.account for r in results} == {"work"}

    @pytest.mark.asyncio
    async def test_disabled_provider(self):
        requests = []
        connector = connector_with(microsoft_enabled=False)

        async with httpx.AsyncClient(transport=httpx.MockTransport(graph_api(requests))) as client:
            assert await connector.search("report", client) == []
        assert requests == []


class TestProviderAPIError:
    def test_graph_error_message(self):
        request = httpx.Request("GET", "https://graph.microsoft.com/v1.0/search/query")
        response = httpx.Response(400, json=SPO_LICENSE_ERROR, request=request)

        error = ProviderAPIError.from_response(response)

        assert error.status_code == 400
        assert "Tenant does not have a SPO license" in str(error)
        assert error.url == "https://graph.microsoft.com/v1.0/search/query"
