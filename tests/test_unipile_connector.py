"""Tests for UnipileConnector over a mocked HTTP transport."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import httpx
import pytest

from mailbridge.connectors.unipile_connector import UnipileConnector
from mailbridge.core.config import Config
from mailbridge.core.exceptions import (
    ConfigurationError,
    MalformedResponseError,
    NotFoundError,
    RateLimitedError,
)
from mailbridge.paging.compensator import DateCursor

START = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
AUTH = {"access_token": "acc-1"}


def iso(value: datetime) -> str:
    return value.strftime("%Y-%m-%dT%H:%M:%S.000Z")


def make_email(i: int, *, role: str = "inbox", attachments: bool = False) -> Dict[str, Any]:
    return {
        "id": f"e{i}",
        "date": iso(START - timedelta(minutes=i)),
        "subject": f"mail {i}",
        "role": role,
        "folders": ["INBOX"],
        "from_attendee": {"identifier": "sender@corp.io"},
        "to_attendees": [{"identifier": "me@corp.io"}],
        "body": "<p>hi</p>",
        "attachments": [{"id": f"a{i}", "name": f"f{i}.pdf", "mime": "application/pdf", "size": 10}]
        if attachments
        else [],
    }


class FakeUnipile:
    """Offset-paged ``/api/v1/emails`` honouring ``before`` and ``limit``."""

    def __init__(self, emails: List[Dict[str, Any]], folders: Optional[List[Dict[str, Any]]] = None) -> None:
        self.emails = emails
        self.folders = folders or []
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        assert request.headers["X-API-KEY"] == "key"
        if request.url.path == "/api/v1/folders":
            return httpx.Response(200, json={"items": self.folders})
        if request.url.path == "/api/v1/emails":
            return self._list(request.url.params)
        raise AssertionError(f"unexpected request {request.url}")

    def _list(self, params: httpx.QueryParams) -> httpx.Response:
        emails = self.emails
        if params.get("before"):
            before = datetime.fromisoformat(params["before"])
            emails = [e for e in emails if datetime.fromisoformat(e["date"].replace("Z", "+00:00")) < before]
        if params.get("folder"):
            emails = [e for e in emails if params["folder"] in e.get("provider_folders", [params["folder"]])]
        start = int(params.get("cursor") or 0)
        limit = int(params["limit"])
        chunk = emails[start:start + limit]
        end = start + len(chunk)
        return httpx.Response(200, json={"items": chunk, "cursor": str(end) if end < len(emails) else None})

    def email_requests(self) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path == "/api/v1/emails"]


def make_connector(handler, **config: Any) -> UnipileConnector:
    settings = {"UNIPILE_BASE_URL": "https://api.unipile.test", "UNIPILE_ACCESS_TOKEN": "key"}
    settings.update(config)
    return UnipileConnector(Config(**settings), transport=httpx.MockTransport(handler))


def mixed_mailbox() -> List[Dict[str, Any]]:
    emails = []
    for i in range(30):
        role = {3: "trash", 8: "drafts", 13: "spam"}.get(i, "inbox")
        emails.append(make_email(i, role=role, attachments=i % 5 == 0 or i in (3, 8, 13)))
    return emails


@pytest.mark.asyncio
async def test_attachment_filter_refills_and_skips_unwanted_folders() -> None:
    backend = FakeUnipile(mixed_mailbox())
    connector = make_connector(backend, ATTACHMENT_MIN_PAGE_SIZE=5)

    result = await connector.list_messages(AUTH, {"limit": 4, "hasAttachment": True})

    assert [m.service_message_id for m in result.messages] == ["e0", "e5", "e10", "e15"]
    assert all(m.attachments for m in result.messages)
    assert len(backend.email_requests()) == 4
    assert {r.url.params["limit"] for r in backend.email_requests()} == {"5"}
    assert backend.email_requests()[0].url.params["account_id"] == "acc-1"
    assert DateCursor.decode(result.next_page_token).exclude_ids == ["e15"]


@pytest.mark.asyncio
async def test_next_page_continues_after_the_last_returned_message() -> None:
    backend = FakeUnipile(mixed_mailbox())
    connector = make_connector(backend, ATTACHMENT_MIN_PAGE_SIZE=5)

    first = await connector.list_messages(AUTH, {"limit": 2, "hasAttachment": True})
    second = await connector.list_messages(
        AUTH, {"limit": 2, "hasAttachment": True, "pageToken": first.next_page_token}
    )

    assert [m.service_message_id for m in first.messages] == ["e0", "e5"]
    assert [m.service_message_id for m in second.messages] == ["e10", "e15"]
    assert "before" in backend.email_requests()[-1].url.params


@pytest.mark.asyncio
async def test_drafts_are_kept_when_requested() -> None:
    backend = FakeUnipile(mixed_mailbox())
    connector = make_connector(backend, ATTACHMENT_MIN_PAGE_SIZE=5)

    result = await connector.list_messages(
        AUTH, {"limit": 3, "hasAttachment": True, "includeDrafts": True}, {"idsOnly": True}
    )

    assert result.messages == ["e0", "e5", "e8"]
    assert backend.email_requests()[0].url.params["meta_only"] == "true"


@pytest.mark.asyncio
async def test_exhausted_mailbox_returns_short_page_without_token() -> None:
    backend = FakeUnipile([make_email(i, attachments=i == 2) for i in range(7)])
    connector = make_connector(backend, ATTACHMENT_MIN_PAGE_SIZE=5)

    result = await connector.list_messages(AUTH, {"limit": 10, "hasAttachment": True})

    assert [m.service_message_id for m in result.messages] == ["e2"]
    assert result.next_page_token is None


@pytest.mark.asyncio
async def test_folder_filter_resolves_roles_and_queries_each_match() -> None:
    emails = [make_email(i) for i in range(4)]
    emails[0]["provider_folders"] = ["f-inbox"]
    emails[1]["provider_folders"] = ["f-inbox-2"]
    emails[2]["provider_folders"] = ["f-inbox"]
    emails[3]["provider_folders"] = ["f-sent"]
    folders = [
        {"id": "1", "provider_id": "f-inbox", "name": "INBOX", "role": "inbox", "nb_mails": 2},
        {"id": "2", "provider_id": "f-inbox-2", "name": "Inbox Archive", "role": "inbox", "nb_mails": 1},
        {"id": "3", "provider_id": "f-sent", "name": "Sent", "role": "sent", "nb_mails": 1},
    ]
    backend = FakeUnipile(emails, folders)
    connector = make_connector(backend)

    result = await connector.list_messages(AUTH, {"limit": 10, "folder": "inbox"})

    queried = sorted(r.url.params["folder"] for r in backend.email_requests())
    assert queried == ["f-inbox", "f-inbox-2"]
    assert [m.service_message_id for m in result.messages] == ["e0", "e1", "e2"]
    assert result.next_page_token is None


@pytest.mark.asyncio
async def test_unknown_folder_is_not_found() -> None:
    folders = [
        {"id": "1", "provider_id": "f-inbox", "name": "INBOX", "role": "inbox"},
        {"id": "3", "provider_id": "f-sent", "name": "Sent", "role": "sent"},
    ]
    connector = make_connector(FakeUnipile([], folders))

    with pytest.raises(NotFoundError):
        await connector.list_messages(AUTH, {"folder": "receipts"})


@pytest.mark.asyncio
async def test_many_participants_require_an_after_filter() -> None:
    backend = FakeUnipile([])
    connector = make_connector(backend)
    participants = [f"p{i}@corp.io" for i in range(30)]

    with pytest.raises(ConfigurationError):
        await connector.list_messages(AUTH, {"participants": participants})
    assert backend.requests == []

    await connector.list_messages(AUTH, {"participants": participants, "after": "2024-01-01T00:00:00Z"})
    batches = [r.url.params["any_email"].split(",") for r in backend.email_requests()]
    assert sorted(len(b) for b in batches) == [5, 25]


@pytest.mark.asyncio
async def test_error_messages_map_to_status_codes() -> None:
    def not_found(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"message": "Couldn't find email e404"})

    def throttled(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"message": "Too many concurrent query requests"})

    with pytest.raises(NotFoundError):
        await make_connector(not_found).get_message(AUTH, {"id": "e404"})
    with pytest.raises(RateLimitedError) as exc_info:
        await make_connector(throttled).list_messages(AUTH, {})
    assert exc_info.value.status_code == 429


@pytest.mark.asyncio
async def test_item_without_id_is_malformed() -> None:
    broken = make_email(0)
    del broken["id"]
    connector = make_connector(FakeUnipile([broken]))

    with pytest.raises(MalformedResponseError):
        await connector.list_messages(AUTH, {"limit": 5})


@pytest.mark.asyncio
async def test_get_file_downloads_attachment() -> None:
    email = make_email(1, attachments=True)

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/v1/emails/e1":
            return httpx.Response(200, json=email)
        if request.url.path == "/api/v1/emails/e1/attachments/a1":
            return httpx.Response(200, content=b"%PDF")
        return httpx.Response(404, json={"message": "not found"})

    connector = make_connector(handler)

    file = await connector.get_file(AUTH, {"id": "a1", "messageId": "e1"})

    assert file.file_name == "f1.pdf"
    assert file.data == "JVBERg=="
    with pytest.raises(NotFoundError):
        await connector.get_file(AUTH, {"id": "zz", "messageId": "e1"})


@pytest.mark.asyncio
async def test_send_message_posts_form() -> None:
    seen: Dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["body"] = request.content.decode()
        return httpx.Response(201, json={"tracking_id": "trk-1"})

    connector = make_connector(handler)

    response = await connector.send_message(
        AUTH, {"to": ["bob@corp.io"], "subject": "Hi", "html": "<p>Hi</p>"}
    )

    assert response == {"tracking_id": "trk-1"}
    assert seen["method"] == "POST"
    form = httpx.QueryParams(seen["body"])
    assert form["account_id"] == "acc-1"
    assert json.loads(form["to"]) == [{"identifier": "bob@corp.io"}]


@pytest.mark.asyncio
async def test_paging_through_messages_sharing_one_timestamp() -> None:
    emails = [make_email(i) for i in range(4)]
    for email in emails:
        email["date"] = iso(START)
    backend = FakeUnipile(emails)
    connector = make_connector(backend)

    seen: List[str] = []
    token = None
    for limit in (2, 1, 1, 1):
        result = await connector.list_messages(AUTH, {"limit": limit, "pageToken": token}, {"idsOnly": True})
        seen.extend(result.messages)
        token = result.next_page_token
        if token is None:
            break

    assert seen == ["e0", "e1", "e2", "e3"]
    assert token is None


@pytest.mark.asyncio
async def test_folder_queries_respect_fanout_concurrency(monkeypatch) -> None:
    folders = [
        {"id": str(i), "provider_id": f"f-inbox-{i}", "name": f"Inbox {i}", "role": "inbox", "nb_mails": 1}
        for i in range(5)
    ]
    connector = make_connector(FakeUnipile([], folders), FANOUT_CONCURRENCY=2)
    queried: List[str] = []
    running = 0
    peak = 0

    async def list_one(auth, list_params, opts):
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        queried.append(list_params.folder)
        await asyncio.sleep(0.001)
        running -= 1
        return connector._list_response([], None, opts)

    monkeypatch.setattr(connector, "_list_participants", list_one)

    result = await connector.list_messages(AUTH, {"limit": 10, "folder": "inbox"})

    assert sorted(queried) == [f"f-inbox-{i}" for i in range(5)]
    assert peak == 2
    assert result.messages == []
    assert result.next_page_token is None
