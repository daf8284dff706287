"""Office 365 email connector implementation.

Talks to Microsoft Graph with the mailbox owner's OAuth access token. Graph
offers two query modes for messages: ``$filter`` (exact, but cannot match
recipients) and ``$search`` (matches recipients, but cannot be combined with
``$filter``). Listings without a participant or ``to`` filter use
``$filter``; the others use ``$search`` and drop drafts client-side through
the :class:`~mailbridge.paging.compensator.PaginationCompensator`.

Page tokens are ``g1.`` tokens pointing at a Graph page link and the number
of items already consumed from it, so a compensated page resumes right after
the last message returned. A bare ``@odata.nextLink`` is accepted as well.
"""

from __future__ import annotations

import base64
import binascii
import functools
import json
import logging
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple

import httpx

from ..core.config import Config
from ..core.exceptions import ConfigurationError, MailBridgeError, MalformedResponseError, NotFoundError
from ..core.models import Folder, ListOptions, ListParams, MessageList, Page
from ..normalization.messages import MessageNormalizer
from ..paging.compensator import PaginationCompensator, all_of
from ..paging.fanout import ParticipantFanoutMerger, gather_limited, merge_results
from .base import Auth, EmailConnector, OptionsLike, ParamsLike, token_expired
from .http_client import AsyncRestClient

logger = logging.getLogger(__name__)

# Graph v1.0 exposes no well-known folder role, only display names
GRAPH_FOLDER_ROLES = {
    "inbox": "inbox",
    "sent items": "sent",
    "drafts": "drafts",
    "deleted items": "trash",
    "junk email": "spam",
}

MESSAGE_FIELDS = (
    "id,conversationId,internetMessageId,subject,receivedDateTime,from,toRecipients,"
    "ccRecipients,bccRecipients,body,hasAttachments,isDraft,parentFolderId"
)
ID_FIELDS = "id,receivedDateTime,hasAttachments,isDraft"
ATTACHMENT_FIELDS = "id,name,contentType,size,isInline,contentId"
FOLDER_PAGE_SIZE = 100


@dataclass
class GraphPageToken:
    """Resume point inside a Graph result page."""

    link: str
    skip: int = 0

    PREFIX = "g1."

    def encode(self) -> str:
        payload = json.dumps({"link": self.link, "skip": self.skip})
        return self.PREFIX + base64.urlsafe_b64encode(payload.encode("utf-8")).decode("ascii")

    @classmethod
    def decode(cls, token: Optional[str]) -> Optional["GraphPageToken"]:
        if not token:
            return None
        if token.startswith(cls.PREFIX):
            try:
                payload = json.loads(base64.urlsafe_b64decode(token[len(cls.PREFIX):].encode("ascii")))
            except (binascii.Error, ValueError) as exc:
                raise ConfigurationError(f"Invalid page token: {exc}") from exc
            if not payload.get("link"):
                raise ConfigurationError("Invalid page token: missing page link")
            return cls(link=payload["link"], skip=int(payload.get("skip") or 0))
        if token.startswith("https://"):
            return cls(link=token)
        raise ConfigurationError("Invalid page token")


def _graph_datetime(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _quote(value: str) -> str:
    return "'" + str(value).replace("'", "''") + "'"


def _term(value: str) -> str:
    return str(value).replace('"', "")


def filter_query(params: ListParams) -> Dict[str, str]:
    """OData ``$filter`` for listings without recipient criteria."""
    clauses = []
    if params.has_attachment is not None:
        clauses.append(f"hasAttachments eq {'true' if params.has_attachment else 'false'}")
    if params.before:
        clauses.append(f"receivedDateTime lt {_graph_datetime(params.before)}")
    if params.after:
        clauses.append(f"receivedDateTime gt {_graph_datetime(params.after)}")
    if params.from_:
        clauses.append(f"from/emailAddress/address eq {_quote(params.from_)}")
    if params.subject:
        clauses.append(f"subject eq {_quote(params.subject)}")
    if not params.include_drafts:
        clauses.append("isDraft eq false")
    return {"$filter": " and ".join(clauses)} if clauses else {}


def search_query(params: ListParams) -> Dict[str, str]:
    """KQL ``$search`` for listings filtering on recipients or participants."""
    terms = []
    if params.has_attachment:
        terms.append("hasAttachments:true")
    if params.before:
        terms.append(f"received<{_graph_datetime(params.before)}")
    if params.after:
        terms.append(f"received>{_graph_datetime(params.after)}")
    if params.from_:
        terms.append(f"from:{_term(params.from_)}")
    if params.to:
        terms.append(f"to:{_term(params.to)}")
    if params.subject:
        terms.append(f"subject:{_term(params.subject)}")
    if params.participants:
        group = " OR ".join(
            f"from:{_term(p)} OR to:{_term(p)} OR cc:{_term(p)}" for p in params.participants
        )
        terms.append(f"({group})")
    return {"$search": '"' + " AND ".join(terms) + '"'}


def _validate_item(item: Mapping[str, Any]) -> None:
    if not isinstance(item, Mapping) or not item.get("id"):
        raise MalformedResponseError("office365 returned a message without an id")


def _folder_path(folder: Folder) -> str:
    return f"/me/mailFolders/{folder.id}/messages"


class Office365Connector(EmailConnector):
    """Retrieve emails from Office 365 mailboxes through Microsoft Graph."""

    name = "office365"

    def __init__(
        self,
        config: Optional[Config] = None,
        *,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(config, **kwargs)
        self.client_id = client_id or self.config.OFFICE365_CLIENT_ID
        self.client_secret = client_secret or self.config.OFFICE365_CLIENT_SECRET
        if not self.client_id or not self.client_secret:
            raise ConfigurationError("Office 365 requires an OAuth client id and client secret")
        self.token_url = self.config.OFFICE365_TOKEN_URL
        self.client = AsyncRestClient(
            self.config.GRAPH_API_URL,
            headers={"Accept": "application/json"},
            timeout=self.config.HTTP_TIMEOUT_SECONDS,
            transport=transport,
        )
        self.normalizer = MessageNormalizer(self.name)
        self.fanout = ParticipantFanoutMerger(
            self.config.OFFICE365_PARTICIPANT_CAP, self.config.FANOUT_CONCURRENCY
        )

    async def aclose(self) -> None:
        await self.client.aclose()

    # ------------------------------------------------------------------
    async def list_messages(
        self, auth: Auth, params: ParamsLike = None, options: OptionsLike = None
    ) -> MessageList:
        list_params = self._list_params(params)
        opts = ListOptions.from_dict(options)
        GraphPageToken.decode(list_params.page_token)
        auth = await self.refresh_auth_credentials(auth)
        folders = await self.get_folders(auth)

        logger.info(
            "Fetching messages from Office 365 (limit=%d, participants=%d, folder=%s)",
            list_params.limit,
            len(list_params.participants or []),
            list_params.folder,
        )

        if not list_params.folder:
            return await self._list_path(auth, "/me/messages", list_params, opts, folders)

        wanted = list_params.folder.lower()
        matches = [f for f in folders if f.role == wanted or f.name.lower() == wanted]
        if not matches:
            raise NotFoundError(f"Folder {list_params.folder} not found")
        if len(matches) == 1:
            return await self._list_path(auth, _folder_path(matches[0]), list_params, opts, folders)

        if list_params.page_token:
            raise ConfigurationError("Listings across several folders cannot be paged")
        results = await gather_limited(
            [
                functools.partial(self._list_path, auth, _folder_path(folder), list_params, opts, folders)
                for folder in matches
            ],
            self.config.FANOUT_CONCURRENCY,
        )
        return merge_results(results, list_params.limit, ids_only=opts.ids_only)

    async def _list_path(
        self,
        auth: Auth,
        path: str,
        list_params: ListParams,
        opts: ListOptions,
        folders: List[Folder],
    ) -> MessageList:
        if not self.fanout.needs_fanout(list_params.participants):
            return await self._list_call(auth, path, list_params, opts, folders)

        async def _run(batch: List[str]) -> MessageList:
            return await self._list_call(auth, path, replace(list_params, participants=batch), opts, folders)

        return await self.fanout.merge(
            list_params.participants, list_params.limit, _run, ids_only=opts.ids_only
        )

    async def _list_call(
        self,
        auth: Auth,
        path: str,
        list_params: ListParams,
        opts: ListOptions,
        folders: List[Folder],
    ) -> MessageList:
        searching = bool(list_params.participants or list_params.to)
        query = search_query(list_params) if searching else filter_query(list_params)
        query["$select"] = ID_FIELDS if opts.ids_only else MESSAGE_FIELDS
        headers = self._headers(auth)
        # message id -> (page link, index on page, page length, next link)
        positions: Dict[str, Tuple[str, int, int, Optional[str]]] = {}

        async def fetch_page(cursor: Optional[str], page_size: int) -> Page:
            position = GraphPageToken.decode(cursor)
            if position is None:
                response = await self.client.request(
                    "GET", path, params={**query, "$top": page_size}, headers=headers
                )
                skip = 0
            else:
                response = await self.client.request("GET", position.link, headers=headers)
                skip = position.skip
            data = response.json()
            items = list(data.get("value") or [])
            link, next_link = str(response.url), data.get("@odata.nextLink")
            for index, item in enumerate(items):
                if isinstance(item, Mapping) and item.get("id"):
                    positions[item["id"]] = (link, index, len(items), next_link)
            return Page(items=items[skip:], cursor=GraphPageToken(next_link).encode() if next_link else None)

        def cursor_for(items: List[Mapping[str, Any]]) -> Optional[str]:
            link, index, length, next_link = positions[items[-1]["id"]]
            if index + 1 < length:
                return GraphPageToken(link, index + 1).encode()
            return GraphPageToken(next_link).encode() if next_link else None

        item_filter = all_of(
            None if list_params.include_drafts or not searching else (lambda m: not m.get("isDraft")),
            (lambda m: not m.get("hasAttachments")) if searching and list_params.has_attachment is False else None,
        )
        compensator = PaginationCompensator(
            fetch_page, item_filter, cursor_for=cursor_for, validate=_validate_item
        )
        page = await compensator.collect(list_params.limit, list_params.page_token, list_params.limit)

        if opts.raw:
            messages: List[Any] = list(page.items)
        elif opts.ids_only:
            messages = [item["id"] for item in page.items]
        else:
            await self._load_attachments(headers, page.items)
            messages = [self.normalizer.from_graph(item, folders) for item in page.items]
        return MessageList(messages=messages, next_page_token=page.cursor)

    async def _load_attachments(self, headers: Dict[str, str], items: List[Dict[str, Any]]) -> None:
        pending = [item for item in items if item.get("hasAttachments") and "attachments" not in item]
        attachments = await gather_limited(
            [functools.partial(self._attachments, headers, item["id"]) for item in pending],
            self.config.FANOUT_CONCURRENCY,
        )
        for item, files in zip(pending, attachments):
            item["attachments"] = files

    async def _attachments(self, headers: Dict[str, str], message_id: str) -> List[Dict[str, Any]]:
        data = await self.client.get_json(
            f"/me/messages/{message_id}/attachments", {"$select": ATTACHMENT_FIELDS}, headers=headers
        )
        return list(data.get("value") or [])

    # ------------------------------------------------------------------
    async def get_message(self, auth: Auth, params: Mapping[str, Any], options: OptionsLike = None):
        self._require(params, "id")
        opts = ListOptions.from_dict(options)
        auth = await self.refresh_auth_credentials(auth)
        headers = self._headers(auth)
        raw = await self.client.get_json(
            f"/me/messages/{params['id']}",
            {"$select": f"{MESSAGE_FIELDS},internetMessageHeaders"},
            headers=headers,
        )
        if opts.raw:
            return raw

        content = (raw.get("body") or {}).get("content") or ""
        if raw.get("hasAttachments") or "cid:" in content:
            raw["attachments"] = await self._attachments(headers, params["id"])
        return self.normalizer.from_graph(raw, await self.get_folders(auth))

    async def get_file(self, auth: Auth, params: Mapping[str, Any], options: OptionsLike = None):
        self._require(params, "id", "messageId")
        opts = ListOptions.from_dict(options)
        auth = await self.refresh_auth_credentials(auth)
        attachment = await self.client.get_json(
            f"/me/messages/{params['messageId']}/attachments/{params['id']}",
            headers=self._headers(auth),
        )
        if not attachment.get("contentBytes"):
            raise MalformedResponseError(f"Attachment {params['id']} has no content")
        if opts.raw:
            return attachment

        message = await self.get_message(auth, {"id": params["messageId"]}, {"raw": True})
        normalized = self.normalizer.from_graph(
            {**message, "attachments": [attachment]}, await self.get_folders(auth)
        )
        file = next((f for f in normalized.files if f.service_file_id == params["id"]), None)
        if file is None:
            raise NotFoundError(f"Attachment {params['id']} not found on message {params['messageId']}")
        file.data = attachment["contentBytes"]
        return file

    async def refresh_auth_credentials(self, auth: Auth) -> Auth:
        """Refresh the access token only when it is missing or expired.

        Emits the new token to the registered listeners. Microsoft may rotate
        the refresh token; the old one is kept when it does not.
        """
        if auth.get("access_token") and not token_expired(auth.get("expiration_date")):
            return auth
        if not auth.get("refresh_token"):
            raise ConfigurationError("Office 365 auth needs a refresh_token to obtain an access token")

        form = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "grant_type": "refresh_token",
            "refresh_token": auth["refresh_token"],
        }
        try:
            response = await self.client.request("POST", self.token_url, data=form)
        except MailBridgeError as exc:
            if exc.status_code not in (400, 401):
                raise
            logger.warning("Office 365 token refresh failed: %s", exc.message)
            raise MailBridgeError(f"Token refresh failed: {exc.message}", 401) from exc

        payload = response.json()
        if not payload.get("access_token"):
            raise MalformedResponseError("Office 365 token response has no access_token")
        token = {
            **auth,
            "access_token": payload["access_token"],
            "refresh_token": payload.get("refresh_token") or auth["refresh_token"],
        }
        if payload.get("expires_in"):
            token["expiration_date"] = int((time.time() + int(payload["expires_in"])) * 1000)
        self._emit_token_refreshed(token)
        return token

    # ------------------------------------------------------------------
    async def fetch_folders(self, auth: Auth) -> List[Folder]:
        auth = await self.refresh_auth_credentials(auth)
        headers = self._headers(auth)
        data = await self.client.get_json(
            "/me/mailFolders",
            {"$top": FOLDER_PAGE_SIZE, "$select": "id,displayName,totalItemCount"},
            headers=headers,
        )
        items = list(data.get("value") or [])
        while data.get("@odata.nextLink"):
            data = await self.client.get_json(data["@odata.nextLink"], headers=headers)
            items.extend(data.get("value") or [])
        return [
            Folder(
                id=item["id"],
                name=item.get("displayName") or "",
                role=GRAPH_FOLDER_ROLES.get((item.get("displayName") or "").lower()),
                total_count=int(item.get("totalItemCount") or 0),
            )
            for item in items
        ]

    @staticmethod
    def _headers(auth: Auth) -> Dict[str, str]:
        return {"Authorization": f"Bearer {auth['access_token']}"}

    def account_key(self, auth: Auth) -> str:
        # access tokens rotate, so they cannot key the folder cache
        for key in ("account_id", "email", "refresh_token"):
            if auth.get(key):
                return f"{self.name}:{auth[key]}"
        return super().account_key(auth)
