"""Conversion of raw backend messages into :class:`MessageResource`.

Each backend gets its own ``from_*`` method with an explicit key table for
the fields it spells differently; the shared helpers below never guess key
names on their own.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from email.message import Message
from email.utils import parsedate_to_datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from ..core.exceptions import MalformedResponseError
from ..core.models import (
    BodyPart,
    FileResource,
    Folder,
    MessageResource,
    coerce_datetime,
)
from .addresses import (
    GRAPH_MAPPING,
    NYLAS_MAPPING,
    UNIPILE_MAPPING,
    addresses_from_headers,
    decode_header_value,
    normalize_addresses,
)
from .folders import FolderRoleResolver
from .mime_tree import (
    extract_attachment_parts,
    extract_body,
    flatten_parts,
    header_value,
    message_to_part_tree,
)

logger = logging.getLogger(__name__)

HeaderPairs = Union[Sequence[Mapping[str, Any]], Sequence[Tuple[str, Any]]]

GMAIL_LABEL_ROLES = {
    "INBOX": "inbox",
    "SENT": "sent",
    "DRAFT": "drafts",
    "TRASH": "trash",
    "SPAM": "spam",
}

# canonical file field -> keys tried in order
NYLAS_FILE_KEYS: Dict[str, Tuple[str, ...]] = {
    "type": ("content_type", "contentType"),
    "size": ("size",),
    "file_name": ("filename", "name"),
    "service_file_id": ("id",),
    "content_id": ("content_id", "contentId"),
    "content_disposition": ("content_disposition", "contentDisposition"),
    "is_embedded": ("is_inline", "isInline"),
}

UNIPILE_FILE_KEYS: Dict[str, Tuple[str, ...]] = {
    "type": ("mime",),
    "size": ("size",),
    "file_name": ("name",),
    "service_file_id": ("id",),
    "content_id": ("cid", "content_id"),
    "content_disposition": ("contentDisposition", "content_disposition"),
    "is_embedded": ("isInline", "is_inline"),
}

GRAPH_FILE_KEYS: Dict[str, Tuple[str, ...]] = {
    "type": ("contentType",),
    "size": ("size",),
    "file_name": ("name",),
    "service_file_id": ("id",),
    "content_id": ("contentId",),
    "content_disposition": (),
    "is_embedded": ("isInline",),
}

GRAPH_BODY_TYPES = {"html": "text/html", "text": "text/plain"}


def build_headers(pairs: Optional[HeaderPairs]) -> Dict[str, List[str]]:
    """Lower-cased header name -> values in original order."""
    headers: Dict[str, List[str]] = {}
    for pair in pairs or []:
        if isinstance(pair, Mapping):
            name, value = pair.get("name"), pair.get("value")
        else:
            name, value = pair
        if not name:
            continue
        headers.setdefault(str(name).lower(), []).append("" if value is None else str(value))
    return headers


def first_header(headers: Mapping[str, List[str]], name: str) -> Optional[str]:
    values = headers.get(name.lower()) or []
    for value in values:
        if value:
            return value
    return None


def parse_header_date(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        dt = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return coerce_datetime(value)
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def strip_content_id(content_id: Optional[str]) -> Optional[str]:
    if not content_id:
        return None
    return content_id.replace("<", "").replace(">", "").strip() or None


def finalize_file(file: FileResource, html_body: str) -> FileResource:
    """Recompute embedding from the HTML body.

    Providers disagree about disposition metadata, so a ``cid:`` reference in
    the body always wins: the file becomes embedded and its disposition is
    rewritten to ``inline``.
    """
    file.content_id = strip_content_id(file.content_id)
    if file.content_id and f"cid:{file.content_id}" in (html_body or ""):
        if not file.is_embedded:
            logger.debug("File %s is referenced inline as cid:%s", file.file_name, file.content_id)
        file.is_embedded = True
        if file.content_disposition:
            file.content_disposition = file.content_disposition.replace("attachment;", "inline;")
            if file.content_disposition.strip().lower() == "attachment":
                file.content_disposition = "inline"
        else:
            file.content_disposition = "inline"
    elif not file.content_disposition:
        file.content_disposition = "inline" if file.is_embedded else "attachment"
    elif file.content_disposition.lower().startswith("inline"):
        file.is_embedded = True
    file.is_embedded = bool(file.is_embedded)
    return file


def derive_thread_id(
    message_id: Optional[str],
    in_reply_to: Optional[str],
    references_ids: Iterable[str],
) -> Optional[str]:
    references_ids = list(references_ids)
    if references_ids:
        return references_ids[0]
    if in_reply_to:
        return in_reply_to
    return message_id


def files_from_messages(messages: Iterable[MessageResource]) -> List[FileResource]:
    files: List[FileResource] = []
    for message in messages:
        files.extend(message.files)
    return files


def _pick(record: Mapping[str, Any], keys: Tuple[str, ...]) -> Any:
    for key in keys:
        value = record.get(key)
        if value is not None:
            return value
    return None


def _require_id(raw: Mapping[str, Any], key: str, service_type: str) -> str:
    value = raw.get(key)
    if not value:
        raise MalformedResponseError(f"{service_type} message is missing '{key}'")
    return str(value)


class MessageNormalizer:
    """Turn raw provider messages into canonical resources."""

    def __init__(self, service_type: str) -> None:
        self.service_type = service_type

    # ------------------------------------------------------------------
    def from_part_tree(
        self,
        *,
        service_message_id: str,
        service_thread_id: Optional[str],
        payload: Mapping[str, Any],
        folders: List[str],
        fallback_date: Optional[datetime] = None,
    ) -> MessageResource:
        """Shared path for backends that expose the MIME part tree."""
        if not payload or not payload.get("headers"):
            raise MalformedResponseError(
                f"{self.service_type} message {service_message_id} has no headers"
            )
        headers = build_headers(payload["headers"])
        date = (
            parse_header_date(first_header(headers, "date"))
            or fallback_date
            or parse_header_date(first_header(headers, "delivery-date"))
        )
        addresses = addresses_from_headers(headers)
        leaves = flatten_parts(payload)
        body = extract_body(leaves)

        message = MessageResource(
            service_message_id=service_message_id,
            service_thread_id=service_thread_id,
            email_message_id=first_header(headers, "message-id"),
            date=date,
            subject=decode_header_value(first_header(headers, "subject")),
            headers=headers,
            body=body,
            addresses=addresses,
            in_reply_to=first_header(headers, "in-reply-to"),
            folders=folders,
            service_type=self.service_type,
        )

        html = message.html_body()
        for part in extract_attachment_parts(leaves):
            part_headers = part.get("headers") or []
            file = FileResource(
                type=part.get("mimeType"),
                size=int((part.get("body") or {}).get("size") or 0),
                file_name=part.get("filename"),
                service_file_id=part.get("partId"),
                content_id=header_value(part_headers, "content-id"),
                content_disposition=header_value(part_headers, "content-disposition"),
                **self._owner_fields(message),
            )
            file.is_embedded = bool(
                file.content_disposition and file.content_disposition.lower().startswith("inline")
            )
            message.files.append(finalize_file(file, html))
        message.attachments = bool(message.files)
        return message

    # ------------------------------------------------------------------
    def from_gmail(self, raw: Mapping[str, Any]) -> MessageResource:
        service_message_id = _require_id(raw, "id", self.service_type)
        internal = raw.get("internalDate")
        fallback = coerce_datetime(int(internal)) if internal else None
        folders = [GMAIL_LABEL_ROLES.get(label, label) for label in raw.get("labelIds") or []]
        return self.from_part_tree(
            service_message_id=service_message_id,
            service_thread_id=raw.get("threadId"),
            payload=raw.get("payload") or {},
            folders=folders,
            fallback_date=fallback,
        )

    def from_rfc822(
        self,
        msg: Message,
        *,
        service_message_id: str,
        folders: List[str],
    ) -> MessageResource:
        """Normalise a stdlib-parsed message (IMAP)."""
        if not service_message_id:
            raise MalformedResponseError(f"{self.service_type} message is missing its uid")
        payload = message_to_part_tree(msg)
        message_id = (msg.get("Message-ID") or "").strip() or None
        in_reply_to = (msg.get("In-Reply-To") or "").strip() or None
        references_raw = msg.get("References") or ""
        references_ids = [r.strip() for r in references_raw.split() if "@" in r]
        return self.from_part_tree(
            service_message_id=service_message_id,
            service_thread_id=derive_thread_id(message_id, in_reply_to, references_ids),
            payload=payload,
            folders=folders,
        )

    # ------------------------------------------------------------------
    def from_unipile(self, raw: Mapping[str, Any]) -> MessageResource:
        service_message_id = _require_id(raw, "id", self.service_type)
        headers = build_headers(raw.get("headers"))
        body: List[BodyPart] = []
        if raw.get("body"):
            body.append(BodyPart(type="text/html", content=raw["body"]))
        if raw.get("body_plain"):
            body.append(BodyPart(type="text/plain", content=raw["body_plain"]))

        message = MessageResource(
            service_message_id=service_message_id,
            service_thread_id=raw.get("thread_id"),
            email_message_id=raw.get("message_id") or first_header(headers, "message-id"),
            date=coerce_datetime(raw.get("date")),
            subject=raw.get("subject"),
            headers=headers,
            body=body,
            addresses=normalize_addresses(raw, UNIPILE_MAPPING),
            in_reply_to=first_header(headers, "in-reply-to"),
            folders=list(raw.get("folders") or []),
            service_type=self.service_type,
        )
        message.files = self._files(raw.get("attachments"), UNIPILE_FILE_KEYS, message)
        message.attachments = bool(message.files)
        return message

    def from_nylas(self, raw: Mapping[str, Any], folders: Optional[List[Folder]] = None) -> MessageResource:
        service_message_id = _require_id(raw, "id", self.service_type)
        headers = build_headers(raw.get("headers"))
        body = [BodyPart(type="text/html", content=raw.get("body") or "")]
        text_body = raw.get("text_body") or raw.get("textBody")
        if isinstance(text_body, Mapping) and text_body.get("content"):
            body.append(BodyPart(type=text_body.get("type") or "text/plain", content=text_body["content"]))
        elif isinstance(text_body, str) and text_body:
            body.append(BodyPart(type="text/plain", content=text_body))

        folder_ids = raw.get("folders") or []
        message = MessageResource(
            service_message_id=service_message_id,
            service_thread_id=raw.get("thread_id") or raw.get("threadId"),
            email_message_id=first_header(headers, "message-id"),
            date=coerce_datetime(raw.get("date")),
            subject=raw.get("subject"),
            headers=headers,
            body=body,
            addresses=normalize_addresses(raw, NYLAS_MAPPING),
            in_reply_to=first_header(headers, "in-reply-to"),
            folders=FolderRoleResolver.display_names(folder_ids, folders or []),
            service_type=self.service_type,
        )
        message.files = self._files(raw.get("attachments"), NYLAS_FILE_KEYS, message)
        message.attachments = bool(message.files)
        return message

    def from_graph(self, raw: Mapping[str, Any], folders: Optional[List[Folder]] = None) -> MessageResource:
        """Microsoft Graph message. ``attachments`` is filled in by the connector."""
        service_message_id = _require_id(raw, "id", self.service_type)
        headers = build_headers(raw.get("internetMessageHeaders"))
        body: List[BodyPart] = []
        graph_body = raw.get("body") or {}
        if graph_body.get("content") is not None:
            content_type = str(graph_body.get("contentType") or "").lower()
            body.append(BodyPart(type=GRAPH_BODY_TYPES.get(content_type, "text/plain"), content=graph_body["content"]))

        parent = raw.get("parentFolderId")
        message = MessageResource(
            service_message_id=service_message_id,
            service_thread_id=raw.get("conversationId"),
            email_message_id=raw.get("internetMessageId") or first_header(headers, "message-id"),
            date=coerce_datetime(raw.get("receivedDateTime")),
            subject=raw.get("subject"),
            headers=headers,
            body=body,
            addresses=normalize_addresses(raw, GRAPH_MAPPING),
            in_reply_to=first_header(headers, "in-reply-to"),
            folders=FolderRoleResolver.display_names([parent] if parent else [], folders or []),
            service_type=self.service_type,
        )
        message.files = self._files(raw.get("attachments"), GRAPH_FILE_KEYS, message)
        message.attachments = bool(message.files) or bool(raw.get("hasAttachments"))
        return message

    # ------------------------------------------------------------------
    def _files(
        self,
        attachments: Optional[Sequence[Mapping[str, Any]]],
        keys: Dict[str, Tuple[str, ...]],
        message: MessageResource,
    ) -> List[FileResource]:
        html = message.html_body()
        files = []
        for metadata in attachments or []:
            file = FileResource(
                type=_pick(metadata, keys["type"]),
                size=int(_pick(metadata, keys["size"]) or 0),
                file_name=_pick(metadata, keys["file_name"]),
                service_file_id=_pick(metadata, keys["service_file_id"]),
                content_id=_pick(metadata, keys["content_id"]),
                content_disposition=_pick(metadata, keys["content_disposition"]),
                is_embedded=bool(_pick(metadata, keys["is_embedded"])),
                **self._owner_fields(message),
            )
            files.append(finalize_file(file, html))
        return files

    def _owner_fields(self, message: MessageResource) -> Dict[str, Any]:
        return {
            "service_message_id": message.service_message_id,
            "service_thread_id": message.service_thread_id,
            "email_message_id": message.email_message_id,
            "addresses": message.addresses,
            "date": message.date,
            "service_type": self.service_type,
        }
