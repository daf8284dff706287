"""Tests for Office365Connector over a mocked Microsoft Graph transport."""

from __future__ import annotations

import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import httpx
import pytest

from mailbridge.connectors.office365_connector import GraphPageToken, Office365Connector
from mailbridge.core.config import Config
from mailbridge.core.exceptions import (
    ConfigurationError,
    MailBridgeError,
    MalformedResponseError,
    NotFoundError,
    UnsupportedOperationError,
)
from mailbridge.core.models import FileResource, MessageResource

START = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

FOLDERS = [
    {"id": "INBOX-ID", "displayName": "Inbox", "totalItemCount": 40},
    {"id": "SENT-ID", "displayName": "Sent Items", "totalItemCount": 12},
    {"id": "DRAFTS-ID", "displayName": "Drafts", "totalItemCount": 2},
    {"id": "JUNK-ID", "displayName": "Junk Email", "totalItemCount": 3},
    {"id": "RECEIPTS-ID", "displayName": "Receipts", "totalItemCount": 5},
]


def valid_auth(**extra: Any) -> Dict[str, Any]:
    auth = {
        "access_token": "at-1",
        "refresh_token": "rt-1",
        "expiration_date": int(time.time() * 1000) + 3_600_000,
        "email": "me@corp.io",
    }
    auth.update(extra)
    return auth


def make_message(i: int, **extra: Any) -> Dict[str, Any]:
    message = {
        "id": f"o{i}",
        "conversationId": f"c{i}",
        "internetMessageId": f"<m{i}@corp.io>",
        "subject": f"Subject {i}",
        "receivedDateTime": (START - timedelta(minutes=i)).strftime("%Y-%m-%dT%H:%M:%SZ"),
        "from": {"emailAddress": {"address": "Alice@Corp.io", "name": "Alice"}},
        "toRecipients": [{"emailAddress": {"address": "bob@corp.io"}}],
        "ccRecipients": [],
        "bccRecipients": [],
        "body": {"contentType": "html", "content": f"<p>{i}</p>"},
        "hasAttachments": False,
        "isDraft": False,
        "parentFolderId": "INBOX-ID",
    }
    message.update(extra)
    return message


class FakeGraph:
    """``$top``/``$skiptoken`` paged Graph mailbox plus the token endpoint."""

    def __init__(
        self,
        messages: List[Dict[str, Any]],
        attachments: Optional[Dict[str, List[Dict[str, Any]]]] = None,
        folders: Optional[List[Dict[str, Any]]] = None,
    ) -> None:
        self.messages = messages
        self.folders = folders or FOLDERS
        self.attachments = attachments or {}
        self.token_status = 200
        self.token_payload: Dict[str, Any] = {"access_token": "at-2", "expires_in": 3600}
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.host == "login.test":
            return httpx.Response(self.token_status, json=self.token_payload)
        assert request.headers["Authorization"].startswith("Bearer ")
        path = request.url.path
        if path == "/v1.0/me/mailFolders":
            return httpx.Response(200, json={"value": self.folders})
        if path == "/v1.0/me/messages" or (path.startswith("/v1.0/me/mailFolders/") and path.endswith("/messages")):
            return self._page(request)
        parts = path.split("/")
        message_id = parts[4]
        if len(parts) == 5:
            message = next((m for m in self.messages if m["id"] == message_id), None)
            if message is None:
                return httpx.Response(404, json={"error": {"code": "ErrorItemNotFound", "message": "Not found"}})
            return httpx.Response(200, json=message)
        files = self.attachments.get(message_id, [])
        if len(parts) == 6:
            return httpx.Response(200, json={"value": files})
        return httpx.Response(200, json=next(f for f in files if f["id"] == parts[6]))

    def _page(self, request: httpx.Request) -> httpx.Response:
        messages = self.messages
        if request.url.path.startswith("/v1.0/me/mailFolders/"):
            folder_id = request.url.path.split("/")[4]
            messages = [m for m in messages if m["parentFolderId"] == folder_id]
        start = int(request.url.params.get("$skiptoken") or 0)
        top = int(request.url.params["$top"])
        chunk = messages[start:start + top]
        end = start + len(chunk)
        body: Dict[str, Any] = {"value": chunk}
        if end < len(messages):
            next_link = httpx.URL(
                f"https://graph.test{request.url.path}", params={"$top": top, "$skiptoken": end}
            )
            body["@odata.nextLink"] = str(next_link)
        return httpx.Response(200, json=body)

    def list_requests(self) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path.endswith("/messages")]

    def token_requests(self) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.host == "login.test"]


def make_connector(handler, **config: Any) -> Office365Connector:
    settings = {
        "OFFICE365_CLIENT_ID": "client",
        "OFFICE365_CLIENT_SECRET": "secret",
        "OFFICE365_TOKEN_URL": "https://login.test/token",
        "GRAPH_API_URL": "https://graph.test/v1.0",
    }
    settings.update(config)
    return Office365Connector(Config(**settings), transport=httpx.MockTransport(handler))


def test_missing_client_credentials_raise_configuration_error() -> None:
    with pytest.raises(ConfigurationError):
        Office365Connector(Config(OFFICE365_CLIENT_ID="", OFFICE365_CLIENT_SECRET=""))


@pytest.mark.asyncio
async def test_plain_listing_uses_odata_filter_and_loads_attachments() -> None:
    attachment = {
        "id": "att-1",
        "name": "invoice.pdf",
        "contentType": "application/pdf",
        "size": 120,
        "isInline": False,
        "contentId": None,
    }
    backend = FakeGraph([make_message(0, hasAttachments=True)], {"o0": [attachment]})
    connector = make_connector(backend)

    result = await connector.list_messages(
        valid_auth(),
        {
            "limit": 5,
            "before": "2024-03-01T12:00:00Z",
            "after": "2024-02-01T00:00:00Z",
            "from": "alice@corp.io",
            "subject": "Bob's invoice",
            "hasAttachment": True,
        },
    )

    params = backend.list_requests()[0].url.params
    assert params["$filter"] == (
        "hasAttachments eq true and receivedDateTime lt 2024-03-01T12:00:00Z"
        " and receivedDateTime gt 2024-02-01T00:00:00Z"
        " and from/emailAddress/address eq 'alice@corp.io'"
        " and subject eq 'Bob''s invoice' and isDraft eq false"
    )
    assert params["$top"] == "5"
    assert "$search" not in params

    message = result.messages[0]
    assert isinstance(message, MessageResource)
    assert message.service_type == "office365"
    assert message.service_thread_id == "c0"
    assert message.email_message_id == "<m0@corp.io>"
    assert message.addresses.from_.email == "alice@corp.io"
    assert message.folders == ["inbox"]
    assert message.body[0].type == "text/html"
    assert [f.file_name for f in message.files] == ["invoice.pdf"]
    assert message.files[0].service_message_id == "o0"
    assert message.files[0].content_disposition == "attachment"
    assert result.next_page_token is None


@pytest.mark.asyncio
async def test_participants_switch_to_search_and_drop_drafts() -> None:
    messages = [make_message(i, isDraft=(i == 1)) for i in range(6)]
    backend = FakeGraph(messages)
    connector = make_connector(backend)
    params = {"limit": 3, "participants": ["a@corp.io", "b@corp.io"]}

    first = await connector.list_messages(valid_auth(), params, {"idsOnly": True})

    query = backend.list_requests()[0].url.params
    assert query["$search"] == (
        '"(from:a@corp.io OR to:a@corp.io OR cc:a@corp.io'
        ' OR from:b@corp.io OR to:b@corp.io OR cc:b@corp.io)"'
    )
    assert "$filter" not in query
    assert first.messages == ["o0", "o2", "o3"]
    assert GraphPageToken.decode(first.next_page_token).skip == 1

    second = await connector.list_messages(
        valid_auth(), {**params, "pageToken": first.next_page_token}, {"idsOnly": True}
    )

    assert second.messages == ["o4", "o5"]
    assert second.next_page_token is None


@pytest.mark.asyncio
async def test_to_filter_uses_search_and_keeps_drafts_when_requested() -> None:
    backend = FakeGraph([make_message(0), make_message(1, isDraft=True)])
    connector = make_connector(backend)

    result = await connector.list_messages(
        valid_auth(), {"to": "bob@corp.io", "after": START - timedelta(days=1), "includeDrafts": True}, {"idsOnly": True}
    )

    search = backend.list_requests()[0].url.params["$search"]
    assert search == '"received>2024-02-29T12:00:00Z AND to:bob@corp.io"'
    assert result.messages == ["o0", "o1"]


@pytest.mark.asyncio
async def test_next_link_is_accepted_as_page_token() -> None:
    backend = FakeGraph([make_message(i) for i in range(4)])
    connector = make_connector(backend)
    next_link = "https://graph.test/v1.0/me/messages?%24top=2&%24skiptoken=2"

    result = await connector.list_messages(valid_auth(), {"limit": 2, "pageToken": next_link}, {"idsOnly": True})

    assert result.messages == ["o2", "o3"]
    assert result.next_page_token is None
    assert backend.list_requests()[0].url.params["$skiptoken"] == "2"


@pytest.mark.asyncio
async def test_unknown_page_token_is_rejected_before_any_request() -> None:
    backend = FakeGraph([])
    connector = make_connector(backend)

    with pytest.raises(ConfigurationError):
        await connector.list_messages(valid_auth(), {"pageToken": "not-a-token"})
    assert backend.requests == []


@pytest.mark.asyncio
async def test_folder_filter_resolves_display_name_roles() -> None:
    backend = FakeGraph([make_message(0, parentFolderId="SENT-ID")])
    connector = make_connector(backend)

    sent = await connector.list_messages(valid_auth(), {"folder": "sent"})
    await connector.list_messages(valid_auth(), {"folder": "receipts"})

    assert [r.url.path for r in backend.list_requests()] == [
        "/v1.0/me/mailFolders/SENT-ID/messages",
        "/v1.0/me/mailFolders/RECEIPTS-ID/messages",
    ]
    assert sent.messages[0].folders == ["sent"]
    folder_calls = [r for r in backend.requests if r.url.path == "/v1.0/me/mailFolders"]
    assert len(folder_calls) == 1

    with pytest.raises(NotFoundError):
        await connector.list_messages(valid_auth(), {"folder": "newsletters"})


@pytest.mark.asyncio
async def test_folder_matching_several_folders_merges_newest_first() -> None:
    folders = FOLDERS + [{"id": "OLD-SENT-ID", "displayName": "Sent", "totalItemCount": 4}]
    messages = [
        make_message(0, parentFolderId="OLD-SENT-ID"),
        make_message(1, parentFolderId="SENT-ID"),
        make_message(2, parentFolderId="OLD-SENT-ID"),
        make_message(3, parentFolderId="SENT-ID"),
    ]
    backend = FakeGraph(messages, folders=folders)
    connector = make_connector(backend)

    result = await connector.list_messages(valid_auth(), {"limit": 3, "folder": "sent"})

    queried = sorted(r.url.path for r in backend.list_requests())
    assert queried == ["/v1.0/me/mailFolders/OLD-SENT-ID/messages", "/v1.0/me/mailFolders/SENT-ID/messages"]
    assert [m.service_message_id for m in result.messages] == ["o0", "o1", "o2"]
    assert result.messages[0].folders == ["Sent"]
    assert result.next_page_token is None

    with pytest.raises(ConfigurationError):
        await connector.list_messages(
            valid_auth(), {"folder": "sent", "pageToken": "https://graph.test/v1.0/me/messages"}
        )


@pytest.mark.asyncio
async def test_participants_fan_out_above_cap() -> None:
    backend = FakeGraph([make_message(i) for i in range(3)])
    connector = make_connector(backend, OFFICE365_PARTICIPANT_CAP=2)

    result = await connector.list_messages(
        valid_auth(), {"limit": 10, "participants": ["a@corp.io", "b@corp.io", "c@corp.io"]}
    )

    searches = sorted(r.url.params["$search"] for r in backend.list_requests())
    assert len(searches) == 2
    assert "cc:c@corp.io" in searches[1]
    assert [m.service_message_id for m in result.messages] == ["o0", "o1", "o2"]
    assert result.next_page_token is None


@pytest.mark.asyncio
async def test_get_message_reads_headers_and_inline_files() -> None:
    message = make_message(
        0,
        body={"contentType": "html", "content": '<img src="cid:logo@corp">'},
        internetMessageHeaders=[
            {"name": "Message-ID", "value": "<m0@corp.io>"},
            {"name": "In-Reply-To", "value": "<parent@corp.io>"},
        ],
    )
    logo = {
        "id": "att-logo",
        "name": "logo.png",
        "contentType": "image/png",
        "size": 10,
        "isInline": False,
        "contentId": "<logo@corp>",
    }
    backend = FakeGraph([message], {"o0": [logo]})
    connector = make_connector(backend)

    result = await connector.get_message(valid_auth(), {"id": "o0"})

    get_request = next(r for r in backend.requests if r.url.path == "/v1.0/me/messages/o0")
    assert "internetMessageHeaders" in get_request.url.params["$select"]
    assert result.in_reply_to == "<parent@corp.io>"
    assert result.headers["in-reply-to"] == ["<parent@corp.io>"]
    assert result.files[0].content_id == "logo@corp"
    assert result.files[0].is_embedded is True
    assert result.files[0].content_disposition == "inline"
    assert result.attachments is True


@pytest.mark.asyncio
async def test_missing_message_is_not_found() -> None:
    connector = make_connector(FakeGraph([]))

    with pytest.raises(NotFoundError):
        await connector.get_message(valid_auth(), {"id": "nope"})


@pytest.mark.asyncio
async def test_get_file_returns_content_bytes_with_owner_fields() -> None:
    attachment = {
        "id": "att-1",
        "name": "a.txt",
        "contentType": "text/plain",
        "size": 5,
        "isInline": False,
        "contentBytes": "aGVsbG8=",
    }
    backend = FakeGraph([make_message(0, hasAttachments=True)], {"o0": [attachment]})
    connector = make_connector(backend)

    file = await connector.get_file(valid_auth(), {"id": "att-1", "messageId": "o0"})
    raw = await connector.get_file(valid_auth(), {"id": "att-1", "messageId": "o0"}, {"raw": True})

    assert isinstance(file, FileResource)
    assert file.data == "aGVsbG8="
    assert file.service_message_id == "o0"
    assert file.service_thread_id == "c0"
    assert file.addresses.from_.email == "alice@corp.io"
    assert raw["contentBytes"] == "aGVsbG8="


@pytest.mark.asyncio
async def test_attachment_without_content_is_malformed() -> None:
    attachment = {"id": "att-1", "name": "a.txt", "contentType": "text/plain", "size": 5}
    connector = make_connector(FakeGraph([make_message(0)], {"o0": [attachment]}))

    with pytest.raises(MalformedResponseError):
        await connector.get_file(valid_auth(), {"id": "att-1", "messageId": "o0"})


@pytest.mark.asyncio
async def test_list_files_collects_attachments_of_matching_messages() -> None:
    files = {
        "o0": [{"id": "a0", "name": "x.pdf", "contentType": "application/pdf", "size": 1, "isInline": False}],
        "o1": [{"id": "a1", "name": "y.pdf", "contentType": "application/pdf", "size": 2, "isInline": False}],
    }
    backend = FakeGraph([make_message(0, hasAttachments=True), make_message(1, hasAttachments=True)], files)
    connector = make_connector(backend)

    result = await connector.list_files(valid_auth(), {"limit": 5})

    assert [f.service_file_id for f in result.files] == ["a0", "a1"]
    assert "hasAttachments eq true" in backend.list_requests()[0].url.params["$filter"]


@pytest.mark.asyncio
async def test_valid_token_is_not_refreshed() -> None:
    backend = FakeGraph([])
    connector = make_connector(backend)
    auth = valid_auth()

    assert await connector.refresh_auth_credentials(auth) is auth
    assert backend.token_requests() == []


@pytest.mark.asyncio
async def test_expired_token_is_refreshed_and_announced() -> None:
    backend = FakeGraph([make_message(0)])
    announced: List[Dict[str, Any]] = []
    connector = make_connector(backend)
    connector.add_token_listener(announced.append)

    result = await connector.list_messages(valid_auth(expiration_date=1000), {"limit": 1}, {"idsOnly": True})

    form = httpx.QueryParams(backend.token_requests()[0].content.decode())
    assert form["grant_type"] == "refresh_token"
    assert form["refresh_token"] == "rt-1"
    assert form["client_id"] == "client"
    assert announced[0]["access_token"] == "at-2"
    assert announced[0]["refresh_token"] == "rt-1"
    assert announced[0]["expiration_date"] > int(time.time() * 1000)
    assert backend.list_requests()[0].headers["Authorization"] == "Bearer at-2"
    assert result.messages == ["o0"]


@pytest.mark.asyncio
async def test_rejected_refresh_token_is_unauthorized() -> None:
    backend = FakeGraph([])
    backend.token_status = 400
    backend.token_payload = {"error": "invalid_grant"}
    connector = make_connector(backend)

    with pytest.raises(MailBridgeError) as excinfo:
        await connector.refresh_auth_credentials(valid_auth(access_token=None))
    assert excinfo.value.status_code == 401


@pytest.mark.asyncio
async def test_refresh_without_refresh_token_is_a_configuration_error() -> None:
    connector = make_connector(FakeGraph([]))

    with pytest.raises(ConfigurationError):
        await connector.refresh_auth_credentials({"access_token": "", "email": "me@corp.io"})


@pytest.mark.asyncio
async def test_sending_is_not_supported() -> None:
    connector = make_connector(FakeGraph([]))

    with pytest.raises(UnsupportedOperationError):
        await connector.send_message(valid_auth(), {"to": "bob@corp.io"})
