"""Nylas v3 email connector implementation.

Talks to the Nylas v3 REST API with the application API key; the grant id
of the connected mailbox is passed as ``auth['access_token']``.
"""

from __future__ import annotations

import base64
import logging
import math
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

import httpx

from ..core.config import Config
from ..core.exceptions import ConfigurationError, MalformedResponseError, NotFoundError
from ..core.models import Folder, ListOptions, ListParams, MessageList, Page, coerce_datetime
from ..normalization.messages import MessageNormalizer
from ..paging.compensator import DateCursor, PaginationCompensator, all_of, date_cursor_for
from ..paging.fanout import ParticipantFanoutMerger
from .base import Auth, EmailConnector, OptionsLike, ParamsLike
from .http_client import AsyncRestClient

logger = logging.getLogger(__name__)

FOLDER_ATTRIBUTES = {
    "archive": "\\Archive",
    "drafts": "\\Drafts",
    "inbox": "\\Inbox",
    "junk": "\\Junk",
    "spam": "\\Junk",
    "sent": "\\Sent",
    "trash": "\\Trash",
}

FOLDER_PAGE_SIZE = 200


def _epoch(value: Optional[datetime]) -> Optional[int]:
    return math.floor(value.timestamp()) if value else None


def _validate_item(item: Mapping[str, Any]) -> None:
    if not isinstance(item, Mapping) or not item.get("id"):
        raise MalformedResponseError("nylas returned a message without an id")


def _message_date(item: Mapping[str, Any]):
    return coerce_datetime(item.get("date"))


class NylasConnector(EmailConnector):
    """Retrieve and send emails through the Nylas v3 API."""

    name = "nylas-v3"

    def __init__(
        self,
        config: Optional[Config] = None,
        *,
        api_key: Optional[str] = None,
        api_uri: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(config, **kwargs)
        self.api_key = api_key or self.config.NYLAS_API_KEY
        self.api_uri = api_uri or self.config.NYLAS_API_URI
        if not self.api_key or not self.api_uri:
            raise ConfigurationError("Nylas requires an API key and an API URI")
        self.client = AsyncRestClient(
            self.api_uri,
            headers={"Authorization": f"Bearer {self.api_key}", "Accept": "application/json"},
            timeout=self.config.HTTP_TIMEOUT_SECONDS,
            transport=transport,
        )
        self.normalizer = MessageNormalizer(self.name)
        self.fanout = ParticipantFanoutMerger(
            self.config.NYLAS_PARTICIPANT_CAP, self.config.FANOUT_CONCURRENCY
        )

    async def aclose(self) -> None:
        await self.client.aclose()

    # ------------------------------------------------------------------
    async def list_messages(
        self, auth: Auth, params: ParamsLike = None, options: OptionsLike = None
    ) -> MessageList:
        grant = self._grant(auth)
        list_params = self._list_params(params)
        opts = ListOptions.from_dict(options)
        folders = await self.get_folders(auth)

        if list_params.folder:
            folder = self._find_folder(folders, list_params.folder)
            if folder is None:
                raise NotFoundError(f"Folder {list_params.folder} not found")
            list_params = replace(list_params, folder=folder.id)

        logger.info(
            "Fetching messages from Nylas grant %s (limit=%d, participants=%d)",
            grant,
            list_params.limit,
            len(list_params.participants or []),
        )

        if not self.fanout.needs_fanout(list_params.participants):
            return await self._list_call(grant, list_params, opts, folders)

        async def _run(batch: List[str]) -> MessageList:
            return await self._list_call(grant, replace(list_params, participants=batch), opts, folders)

        return await self.fanout.merge(
            list_params.participants, list_params.limit, _run, ids_only=opts.ids_only
        )

    async def _list_call(
        self,
        grant: str,
        list_params: ListParams,
        opts: ListOptions,
        folders: List[Folder],
    ) -> MessageList:
        date_cursor = DateCursor.decode(list_params.page_token)
        backend_cursor = None if date_cursor else list_params.page_token
        before = date_cursor.upper_bound(list_params.before) if date_cursor else list_params.before

        query: Dict[str, Any] = {
            "received_before": _epoch(before),
            "received_after": _epoch(list_params.after),
            "to": list_params.to,
            "from": list_params.from_,
            "subject": list_params.subject,
            "in": list_params.folder,
            "has_attachment": list_params.has_attachment,
            "any_email": ",".join(list_params.participants) if list_params.participants else None,
        }
        if opts.ids_only:
            query["select"] = "id,date,folders"
        else:
            query["fields"] = "include_headers"

        async def fetch_page(cursor: Optional[str], page_size: int) -> Page:
            data = await self.client.get_json(
                f"/v3/grants/{grant}/messages", {**query, "limit": page_size, "page_token": cursor}
            )
            return Page(items=data.get("data") or [], cursor=data.get("next_cursor"))

        drafts = {folder.id for folder in folders if folder.role == "drafts"}
        item_filter = all_of(
            None
            if list_params.include_drafts or not drafts
            else (lambda m: not drafts.intersection(m.get("folders") or [])),
            (lambda m: date_cursor.admits(_message_date(m), m.get("id"))) if date_cursor else None,
        )
        compensator = PaginationCompensator(
            fetch_page,
            item_filter,
            cursor_for=date_cursor_for(_message_date, lambda m: m.get("id"), date_cursor),
            validate=_validate_item,
        )
        page = await compensator.collect(list_params.limit, backend_cursor, list_params.limit)

        if opts.raw:
            messages: List[Any] = list(page.items)
        elif opts.ids_only:
            messages = [item["id"] for item in page.items]
        else:
            messages = [self.normalizer.from_nylas(item, folders) for item in page.items]
        return MessageList(messages=messages, next_page_token=page.cursor)

    # ------------------------------------------------------------------
    async def get_message(self, auth: Auth, params: Mapping[str, Any], options: OptionsLike = None):
        self._require(params, "id")
        opts = ListOptions.from_dict(options)
        grant = self._grant(auth)
        data = await self.client.get_json(
            f"/v3/grants/{grant}/messages/{params['id']}", {"fields": "include_headers"}
        )
        raw = data.get("data") or {}
        if opts.raw:
            return raw
        return self.normalizer.from_nylas(raw, await self.get_folders(auth))

    async def get_file(self, auth: Auth, params: Mapping[str, Any], options: OptionsLike = None):
        self._require(params, "id", "messageId")
        opts = ListOptions.from_dict(options)
        grant = self._grant(auth)
        query = {"message_id": params["messageId"]}

        metadata = await self.client.get_json(f"/v3/grants/{grant}/attachments/{params['id']}", query)
        content = await self.client.get_bytes(
            f"/v3/grants/{grant}/attachments/{params['id']}/download", query
        )
        message = await self.get_message(auth, {"id": params["messageId"]}, {"raw": True})
        data = base64.b64encode(content).decode("ascii")
        if opts.raw:
            return {"metadata": metadata.get("data") or {}, "message": message, "data": data}

        normalized = self.normalizer.from_nylas(message, await self.get_folders(auth))
        file = next((f for f in normalized.files if f.service_file_id == params["id"]), None)
        if file is None:
            raise NotFoundError(f"Attachment {params['id']} not found on message {params['messageId']}")
        file.data = data
        return file

    async def send_message(self, auth: Auth, params: Mapping[str, Any], options: OptionsLike = None):
        self._require(params, "to")
        grant = self._grant(auth)
        payload: Dict[str, Any] = {
            "to": _participants(params.get("to")),
            "subject": params.get("subject") or "",
            "body": params.get("html") or params.get("text") or "",
        }
        for key in ("cc", "bcc"):
            if params.get(key):
                payload[key] = _participants(params[key])
        if params.get("inReplyTo"):
            payload["reply_to_message_id"] = params["inReplyTo"]
        data = await self.client.post_json(f"/v3/grants/{grant}/messages/send", payload)
        logger.info("Sent message through Nylas grant %s", grant)
        return data.get("data") or data

    # ------------------------------------------------------------------
    async def fetch_folders(self, auth: Auth) -> List[Folder]:
        data = await self.client.get_json(
            f"/v3/grants/{self._grant(auth)}/folders", {"limit": FOLDER_PAGE_SIZE}
        )
        return [
            Folder(
                id=item["id"],
                name=item.get("name") or "",
                attributes=list(item.get("attributes") or []),
                total_count=int(item.get("total_count") or 0),
            )
            for item in data.get("data") or []
        ]

    @staticmethod
    def _find_folder(folders: List[Folder], wanted: str) -> Optional[Folder]:
        wanted = wanted.lower()
        attribute = FOLDER_ATTRIBUTES.get(wanted)
        for folder in folders:
            if folder.role == wanted or (attribute and attribute in folder.attributes):
                return folder
        return next((folder for folder in folders if folder.name.lower() == wanted), None)

    def _grant(self, auth: Auth) -> str:
        grant = (auth or {}).get("access_token") or (auth or {}).get("grant_id")
        if not grant:
            raise ConfigurationError("Nylas auth requires the grant id as access_token")
        return grant


def _participants(value: Any) -> List[Dict[str, str]]:
    entries = value if isinstance(value, list) else [value]
    result = []
    for entry in entries:
        if isinstance(entry, Mapping):
            participant = {"email": entry.get("email")}
            if entry.get("name"):
                participant["name"] = entry["name"]
            result.append(participant)
        elif entry:
            result.append({"email": str(entry)})
    return result
