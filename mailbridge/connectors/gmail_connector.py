"""Gmail API email connector implementation.

This module provides the :class:`GmailConnector` implementation for
listing, reading and sending emails through the Gmail API. The Google client
library is blocking, so every ``execute()`` runs in a worker thread.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import math
from datetime import datetime, timezone
from email.message import EmailMessage
from typing import Any, Callable, Dict, List, Mapping, Optional

from google.auth.exceptions import RefreshError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from ..core.config import Config
from ..core.exceptions import (
    ConfigurationError,
    MailBridgeError,
    MalformedResponseError,
    NotFoundError,
    classify_backend_error,
)
from ..core.models import FileResource, Folder, ListOptions, ListParams, MessageList
from ..normalization.messages import GMAIL_LABEL_ROLES, MessageNormalizer
from ..normalization.mime_tree import decode_body_data, find_part
from ..paging.fanout import ParticipantFanoutMerger
from .base import Auth, EmailConnector, OptionsLike, ParamsLike, token_expired

logger = logging.getLogger(__name__)

ServiceFactory = Callable[[Credentials], Any]


def _default_service(credentials: Credentials) -> Any:
    return build("gmail", "v1", credentials=credentials, cache_discovery=False)


def _epoch(value: datetime) -> int:
    return math.ceil(value.timestamp())


def build_query(params: ListParams) -> str:
    """Gmail search string for every filter except participants."""
    query = "-(in:chats) "
    if not params.include_drafts:
        query += "-(in:draft) "
    if params.has_attachment:
        query += "has:attachment "
    if params.before:
        query += f"before:{_epoch(params.before)} "
    if params.after:
        query += f"after:{_epoch(params.after)} "
    if params.from_:
        query += f"from:{params.from_} "
    if params.to:
        query += f"to:{params.to} "
    if params.subject:
        # gmail matches words, not the literal subject
        query += f'subject:"{params.subject}" '
    if params.folder:
        query += f"in:{params.folder} "
    return query


def participant_group(participants: List[str]) -> str:
    """``{...}`` OR-group matching any participant as sender or recipient."""
    terms = "".join(f"from:{p} to:{p} cc:{p} " for p in participants)
    return "{" + terms + "} "


class GmailConnector(EmailConnector):
    """Retrieve and send emails using the Gmail API."""

    name = "gmail"

    def __init__(
        self,
        config: Optional[Config] = None,
        *,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        user_id: str = "me",
        service_factory: Optional[ServiceFactory] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(config, **kwargs)
        self.client_id = client_id or self.config.GMAIL_CLIENT_ID
        self.client_secret = client_secret or self.config.GMAIL_CLIENT_SECRET
        if not self.client_id or not self.client_secret:
            raise ConfigurationError("Gmail requires an OAuth client id and client secret")
        self.user_id = user_id
        self.service_factory = service_factory or _default_service
        self.normalizer = MessageNormalizer(self.name)
        self.fanout = ParticipantFanoutMerger(
            self.config.GMAIL_PARTICIPANT_CHUNK, self.config.FANOUT_CONCURRENCY
        )

    # ------------------------------------------------------------------
    def _credentials(self, auth: Auth) -> Credentials:
        return Credentials(
            token=auth.get("access_token"),
            refresh_token=auth.get("refresh_token"),
            token_uri=self.config.GMAIL_TOKEN_URI,
            client_id=self.client_id,
            client_secret=self.client_secret,
        )

    async def _service(self, auth: Auth) -> Any:
        # one service per call chain; the underlying http object is not thread safe
        return await asyncio.to_thread(self.service_factory, self._credentials(auth))

    async def _execute(self, request: Any) -> Dict[str, Any]:
        try:
            return await asyncio.to_thread(request.execute)
        except HttpError as exc:
            error = classify_backend_error(exc)
            logger.warning("Gmail API error (%s): %s", error.status_code, error.message)
            raise error from exc

    # ------------------------------------------------------------------
    async def list_messages(
        self, auth: Auth, params: ParamsLike = None, options: OptionsLike = None
    ) -> MessageList:
        list_params = self._list_params(params)
        opts = ListOptions.from_dict(options)
        # parallel batches share one refreshed token
        auth = await self.refresh_auth_credentials(auth)

        query = build_query(list_params)
        max_results = min(list_params.limit, self.config.GMAIL_MAX_PAGE_SIZE)
        participants = list_params.participants or []
        logger.info("Fetching messages from Gmail for user %s (q=%r)", self.user_id, query)

        if not self.fanout.needs_fanout(participants):
            if participants:
                query += participant_group(participants)
            service = await self._service(auth)
            return await self._list_call(service, query, max_results, list_params.page_token, opts)

        async def _run(batch: List[str]) -> MessageList:
            service = await self._service(auth)
            return await self._list_call(service, query + participant_group(batch), max_results, None, opts)

        return await self.fanout.merge(participants, list_params.limit, _run, ids_only=opts.ids_only)

    async def _list_call(
        self,
        service: Any,
        query: str,
        max_results: int,
        page_token: Optional[str],
        opts: ListOptions,
    ) -> MessageList:
        list_kwargs: Dict[str, Any] = {"userId": self.user_id, "q": query, "maxResults": max_results}
        if page_token:
            list_kwargs["pageToken"] = page_token
        response = await self._execute(service.users().messages().list(**list_kwargs))
        ids = [meta["id"] for meta in response.get("messages") or [] if meta.get("id")]
        next_page_token = response.get("nextPageToken")
        if opts.ids_only or not ids:
            return MessageList(messages=ids, next_page_token=next_page_token)

        fmt = "full" if opts.include_body else "metadata"
        raw_messages = await self._get_many(service, ids, fmt)
        if opts.raw:
            return MessageList(messages=raw_messages, next_page_token=next_page_token)
        return MessageList(
            messages=[self.normalizer.from_gmail(raw) for raw in raw_messages],
            next_page_token=next_page_token,
        )

    async def _get_many(self, service: Any, ids: List[str], fmt: str) -> List[Dict[str, Any]]:
        """Fetch message bodies with one batch HTTP request."""
        results: Dict[str, Dict[str, Any]] = {}
        errors: List[BaseException] = []

        def _callback(request_id: str, response: Dict[str, Any], exception: Optional[BaseException]) -> None:
            if exception is not None:
                errors.append(exception)
            else:
                results[request_id] = response

        batch = service.new_batch_http_request(callback=_callback)
        for message_id in ids:
            batch.add(
                service.users().messages().get(userId=self.user_id, id=message_id, format=fmt),
                request_id=message_id,
            )
        await self._execute(batch)
        if errors:
            error = classify_backend_error(errors[0])
            logger.warning("Gmail batch fetch failed for %d message(s): %s", len(errors), error.message)
            raise error
        missing = [message_id for message_id in ids if message_id not in results]
        if missing:
            raise MalformedResponseError(f"Gmail batch returned no message for id(s): {', '.join(missing)}")
        return [results[message_id] for message_id in ids]

    # ------------------------------------------------------------------
    async def get_message(self, auth: Auth, params: Mapping[str, Any], options: OptionsLike = None):
        self._require(params, "id")
        opts = ListOptions.from_dict(options)
        auth = await self.refresh_auth_credentials(auth)
        service = await self._service(auth)
        raw = await self._execute(
            service.users().messages().get(userId=self.user_id, id=params["id"], format="full")
        )
        if opts.raw:
            return raw
        return self.normalizer.from_gmail(raw)

    async def get_file(self, auth: Auth, params: Mapping[str, Any], options: OptionsLike = None):
        """Download one attachment; ``params['id']`` is the MIME part id."""
        self._require(params, "id", "messageId")
        opts = ListOptions.from_dict(options)
        auth = await self.refresh_auth_credentials(auth)
        service = await self._service(auth)
        raw = await self._execute(
            service.users().messages().get(userId=self.user_id, id=params["messageId"], format="full")
        )
        part = find_part(raw.get("payload") or {}, params["id"])
        if part is None:
            raise NotFoundError(f"Attachment {params['id']} not found on message {params['messageId']}")

        body = part.get("body") or {}
        attachment_id = body.get("attachmentId")
        if attachment_id:
            content = await self._execute(
                service.users().messages().attachments().get(
                    userId=self.user_id, messageId=params["messageId"], id=attachment_id
                )
            )
        elif body.get("data"):
            content = {"size": body.get("size"), "data": body["data"]}
        else:
            raise MalformedResponseError(f"Part {params['id']} carries neither data nor an attachment id")

        if opts.raw:
            return {
                **content,
                "id": attachment_id,
                "service_file_id": part.get("partId"),
                "type": part.get("mimeType"),
                "file_name": part.get("filename"),
            }

        message = self.normalizer.from_gmail(raw)
        file: Optional[FileResource] = next(
            (f for f in message.files if f.service_file_id == params["id"]), None
        )
        if file is None:
            raise NotFoundError(f"Part {params['id']} of message {params['messageId']} is not an attachment")
        # canonical file data is standard base64
        file.data = base64.b64encode(decode_body_data(content.get("data"))).decode("ascii")
        return file

    async def send_message(self, auth: Auth, params: Mapping[str, Any], options: OptionsLike = None):
        self._require(params, "to")
        auth = await self.refresh_auth_credentials(auth)

        email = EmailMessage()
        email["To"] = _address_list(params.get("to"))
        for header, key in (("Cc", "cc"), ("Bcc", "bcc"), ("From", "from")):
            if params.get(key):
                email[header] = _address_list(params[key])
        email["Subject"] = params.get("subject") or ""
        if params.get("inReplyTo"):
            email["In-Reply-To"] = params["inReplyTo"]
            email["References"] = params.get("references") or params["inReplyTo"]
        email.set_content(params.get("text") or "")
        if params.get("html"):
            email.add_alternative(params["html"], subtype="html")

        body: Dict[str, Any] = {"raw": base64.urlsafe_b64encode(email.as_bytes()).decode("ascii")}
        if params.get("threadId"):
            body["threadId"] = params["threadId"]

        service = await self._service(auth)
        response = await self._execute(service.users().messages().send(userId=self.user_id, body=body))
        logger.info("Sent Gmail message %s", response.get("id"))
        return response

    # ------------------------------------------------------------------
    async def refresh_auth_credentials(self, auth: Auth) -> Auth:
        """Refresh the access token only when it is missing or expired.

        Emits the new token to the registered listeners.
        """
        if auth.get("access_token") and not token_expired(auth.get("expiration_date")):
            return auth
        if not auth.get("refresh_token"):
            raise ConfigurationError("Gmail auth needs a refresh_token to obtain an access token")

        credentials = self._credentials({"refresh_token": auth["refresh_token"]})
        try:
            await asyncio.to_thread(credentials.refresh, Request())
        except RefreshError as exc:
            logger.warning("Gmail token refresh failed: %s", exc)
            raise MailBridgeError(f"Token refresh failed: {exc}", 401) from exc

        token = {**auth, "access_token": credentials.token}
        if credentials.expiry is not None:
            # google-auth keeps expiry as naive UTC
            expiry = credentials.expiry.replace(tzinfo=timezone.utc)
            token["expiration_date"] = int(expiry.timestamp() * 1000)
        self._emit_token_refreshed(token)
        return token

    async def fetch_folders(self, auth: Auth) -> List[Folder]:
        auth = await self.refresh_auth_credentials(auth)
        service = await self._service(auth)
        response = await self._execute(service.users().labels().list(userId=self.user_id))
        folders = []
        for label in response.get("labels") or []:
            detail = await self._execute(service.users().labels().get(userId=self.user_id, id=label["id"]))
            folders.append(
                Folder(
                    id=label["id"],
                    name=label.get("name") or label["id"],
                    attributes=[label.get("type") or "user"],
                    role=GMAIL_LABEL_ROLES.get(label["id"]),
                    total_count=int(detail.get("messagesTotal") or 0),
                )
            )
        return folders


def _address_list(value: Any) -> str:
    entries = value if isinstance(value, list) else [value]
    formatted = []
    for entry in entries:
        if isinstance(entry, Mapping):
            email = entry.get("email") or ""
            formatted.append(f"{entry['name']} <{email}>" if entry.get("name") else email)
        elif entry:
            formatted.append(str(entry))
    return ", ".join(formatted)
