"""Unipile email connector implementation.

Unipile bridges IMAP and webmail accounts behind one REST API. Its list
endpoint cannot filter on attachment presence and returns drafts, trash and
spam alongside everything else, so those filters run client-side through the
:class:`~mailbridge.paging.compensator.PaginationCompensator`. The native
cursor breaks once items are filtered out, so page tokens handed back to
callers are date boundaries (:class:`~mailbridge.paging.compensator.DateCursor`).
"""

from __future__ import annotations

import base64
import functools
import json
import logging
from dataclasses import replace
from typing import Any, Dict, List, Mapping, Optional

import httpx

from ..core.config import Config
from ..core.exceptions import ConfigurationError, MalformedResponseError, NotFoundError
from ..core.models import (
    FileResource,
    Folder,
    ListOptions,
    ListParams,
    MessageList,
    MessageResource,
    Page,
    coerce_datetime,
)
from ..normalization.messages import MessageNormalizer
from ..paging.compensator import (
    DateCursor,
    PaginationCompensator,
    all_of,
    attachment_page_size,
    date_cursor_for,
    exclude_folder_roles,
    require_attachments,
)
from ..paging.fanout import ParticipantFanoutMerger, gather_limited, merge_results
from .base import Auth, EmailConnector, OptionsLike, ParamsLike
from .http_client import AsyncRestClient

logger = logging.getLogger(__name__)


def _validate_item(item: Mapping[str, Any]) -> None:
    if not isinstance(item, Mapping) or not item.get("id"):
        raise MalformedResponseError("unipile returned a message without an id")


def _message_date(item: Mapping[str, Any]):
    return coerce_datetime(item.get("date"))


class UnipileConnector(EmailConnector):
    """Retrieve emails through the Unipile REST API.

    ``auth['access_token']`` is the Unipile account id; the API key itself
    comes from configuration.
    """

    name = "unipile"

    def __init__(
        self,
        config: Optional[Config] = None,
        *,
        base_url: Optional[str] = None,
        access_token: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(config, **kwargs)
        self.base_url = base_url or self.config.UNIPILE_BASE_URL
        self.access_token = access_token or self.config.UNIPILE_ACCESS_TOKEN
        if not self.base_url or not self.access_token:
            raise ConfigurationError("Unipile requires a base URL and an access token")
        self.client = AsyncRestClient(
            self.base_url,
            headers={"X-API-KEY": self.access_token, "accept": "application/json"},
            timeout=self.config.HTTP_TIMEOUT_SECONDS,
            transport=transport,
        )
        self.normalizer = MessageNormalizer(self.name)
        self.fanout = ParticipantFanoutMerger(
            self.config.UNIPILE_PARTICIPANT_CAP, self.config.FANOUT_CONCURRENCY
        )

    async def aclose(self) -> None:
        await self.client.aclose()

    # ------------------------------------------------------------------
    async def list_messages(
        self, auth: Auth, params: ParamsLike = None, options: OptionsLike = None
    ) -> MessageList:
        account_id = self._account_id(auth)
        list_params = self._list_params(params)
        opts = ListOptions.from_dict(options)

        if self.fanout.needs_fanout(list_params.participants):
            if list_params.after is None:
                raise ConfigurationError(
                    "More than %d participants can only be queried together with an 'after' filter"
                    % self.fanout.batch_size
                )

        logger.info(
            "Fetching messages from Unipile account %s (limit=%d, attachments=%s, folder=%s)",
            account_id,
            list_params.limit,
            bool(list_params.has_attachment),
            list_params.folder,
        )

        if list_params.folder:
            return await self._list_folders(auth, list_params, opts)
        return await self._list_participants(auth, list_params, opts)

    async def _list_folders(self, auth: Auth, list_params: ListParams, opts: ListOptions) -> MessageList:
        folders = await self.get_folders(auth)
        wanted = list_params.folder.lower()
        matches = [f for f in folders if f.role == wanted or f.name.lower() == wanted]
        if not matches:
            raise NotFoundError(f"Folder {list_params.folder} not found")

        if len(matches) == 1:
            params = replace(list_params, folder=matches[0].id)
            return await self._list_participants(auth, params, opts)

        # one call per provider folder, the API takes a single folder only
        results = await gather_limited(
            [
                functools.partial(
                    self._list_participants, auth, replace(list_params, folder=folder.id), opts
                )
                for folder in matches
            ],
            self.config.FANOUT_CONCURRENCY,
        )
        return merge_results(results, list_params.limit, ids_only=opts.ids_only)

    async def _list_participants(self, auth: Auth, list_params: ListParams, opts: ListOptions) -> MessageList:
        if not self.fanout.needs_fanout(list_params.participants):
            return await self._list_call(auth, list_params, opts)

        async def _run(batch: List[str]) -> MessageList:
            batch_params = replace(list_params, participants=batch)
            return await self._list_call(auth, batch_params, opts)

        return await self.fanout.merge(
            list_params.participants, list_params.limit, _run, ids_only=opts.ids_only
        )

    async def _list_call(self, auth: Auth, list_params: ListParams, opts: ListOptions) -> MessageList:
        account_id = self._account_id(auth)
        date_cursor = DateCursor.decode(list_params.page_token)
        backend_cursor = None if date_cursor else list_params.page_token

        before = date_cursor.upper_bound(list_params.before) if date_cursor else list_params.before

        query: Dict[str, Any] = {
            "account_id": account_id,
            "before": before.isoformat() if before else None,
            "after": list_params.after.isoformat() if list_params.after else None,
            "from": list_params.from_,
            "to": list_params.to,
            "folder": list_params.folder,
            "any_email": ",".join(list_params.participants) if list_params.participants else None,
        }
        if opts.ids_only or not opts.include_body:
            query["meta_only"] = True
        else:
            query["include_headers"] = True

        async def fetch_page(cursor: Optional[str], page_size: int) -> Page:
            data = await self.client.get_json(
                "/api/v1/emails", {**query, "limit": page_size, "cursor": cursor}
            )
            return Page(items=data.get("items") or [], cursor=data.get("cursor"))

        item_filter = all_of(
            exclude_folder_roles(lambda m: m.get("role"), list_params.include_drafts),
            require_attachments(lambda m: len(m.get("attachments") or []))
            if list_params.has_attachment
            else None,
            (lambda m: date_cursor.admits(_message_date(m), m.get("id"))) if date_cursor else None,
        )
        compensator = PaginationCompensator(
            fetch_page,
            item_filter,
            cursor_for=date_cursor_for(_message_date, lambda m: m.get("id"), date_cursor),
            validate=_validate_item,
        )
        page_size = (
            attachment_page_size(list_params.limit, self.config.ATTACHMENT_MIN_PAGE_SIZE)
            if list_params.has_attachment
            else list_params.limit
        )
        page = await compensator.collect(list_params.limit, backend_cursor, page_size)
        return self._list_response(page.items, page.cursor, opts)

    def _list_response(self, items: List[Dict[str, Any]], cursor: Optional[str], opts: ListOptions) -> MessageList:
        if opts.raw:
            return MessageList(messages=list(items), next_page_token=cursor)
        if opts.ids_only:
            return MessageList(messages=[item["id"] for item in items], next_page_token=cursor)
        return MessageList(
            messages=[self.normalizer.from_unipile(item) for item in items],
            next_page_token=cursor,
        )

    # ------------------------------------------------------------------
    async def get_message(self, auth: Auth, params: Mapping[str, Any], options: OptionsLike = None):
        self._require(params, "id")
        opts = ListOptions.from_dict(options)
        raw = await self.client.get_json(
            f"/api/v1/emails/{params['id']}",
            {"account_id": self._account_id(auth), "include_headers": True},
        )
        if opts.raw:
            return raw
        return self.normalizer.from_unipile(raw)

    async def get_file(self, auth: Auth, params: Mapping[str, Any], options: OptionsLike = None):
        self._require(params, "id", "messageId")
        opts = ListOptions.from_dict(options)
        message: MessageResource = await self.get_message(auth, {"id": params["messageId"]})
        file: Optional[FileResource] = next(
            (f for f in message.files if f.service_file_id == params["id"]), None
        )
        if file is None:
            raise NotFoundError(f"Attachment {params['id']} not found on message {params['messageId']}")

        content = await self.client.get_bytes(
            f"/api/v1/emails/{params['messageId']}/attachments/{params['id']}",
            {"account_id": self._account_id(auth)},
        )
        file.data = base64.b64encode(content).decode("ascii")
        if opts.raw:
            return {"metadata": file.to_dict(), "data": file.data}
        return file

    async def send_message(self, auth: Auth, params: Mapping[str, Any], options: OptionsLike = None):
        self._require(params, "to")
        form = {
            "account_id": self._account_id(auth),
            "subject": params.get("subject") or "",
            "body": params.get("html") or params.get("text") or "",
            "to": json.dumps(_attendees(params.get("to"))),
        }
        for key in ("cc", "bcc"):
            if params.get(key):
                form[key] = json.dumps(_attendees(params[key]))
        if params.get("inReplyTo"):
            form["reply_to"] = params["inReplyTo"]
        response = await self.client.request("POST", "/api/v1/emails", data=form)
        logger.info("Sent message through Unipile account %s", form["account_id"])
        return response.json() if response.content else {}

    # ------------------------------------------------------------------
    async def fetch_folders(self, auth: Auth) -> List[Folder]:
        data = await self.client.get_json("/api/v1/folders", {"account_id": self._account_id(auth)})
        return [
            Folder(
                id=item.get("provider_id") or item.get("id"),
                name=item.get("name") or "",
                attributes=list(item.get("attributes") or []),
                role=item.get("role") if item.get("role") not in (None, "unknown") else None,
                total_count=int(item.get("nb_mails") or 0),
            )
            for item in data.get("items") or []
        ]

    def _account_id(self, auth: Auth) -> str:
        account_id = (auth or {}).get("access_token") or (auth or {}).get("account_id")
        if not account_id:
            raise ConfigurationError("Unipile auth requires the account id as access_token")
        return account_id


def _attendees(value: Any) -> List[Dict[str, str]]:
    entries = value if isinstance(value, list) else [value]
    attendees = []
    for entry in entries:
        if isinstance(entry, Mapping):
            attendee = {"identifier": entry.get("email")}
            if entry.get("name"):
                attendee["display_name"] = entry["name"]
            attendees.append(attendee)
        elif entry:
            attendees.append({"identifier": str(entry)})
    return attendees
