"""IMAP email connector implementation.

This module provides the :class:`IMAPConnector` implementation capable of
listing and reading messages from a plain IMAP server. ``imaplib`` is
blocking, so every command runs in a worker thread and each listing holds its
own connection.

When ``use_ssl`` is ``False`` the connector upgrades the connection with
``STARTTLS`` before sending credentials.
"""

from __future__ import annotations

import asyncio
import base64
import imaplib
import logging
import re
import ssl
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from email import message_from_bytes
from email.message import Message
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Tuple

from ..core.config import Config
from ..core.exceptions import (
    ConfigurationError,
    MailBridgeError,
    NotFoundError,
    TransportError,
)
from ..core.models import Folder, ListOptions, ListParams, MessageList, Page
from ..normalization.messages import MessageNormalizer, parse_header_date
from ..normalization.mime_tree import decode_body_data, find_part, message_to_part_tree
from ..paging.compensator import PaginationCompensator, all_of, require_attachments
from ..paging.fanout import ParticipantFanoutMerger
from .base import Auth, EmailConnector, OptionsLike, ParamsLike

logger = logging.getLogger(__name__)

_LIST_LINE = re.compile(r'^\((?P<flags>[^)]*)\)\s+(?P<delimiter>"[^"]*"|NIL)\s+(?P<name>.+)$')
_STATUS_MESSAGES = re.compile(r"MESSAGES\s+(\d+)", re.IGNORECASE)
_FETCH_UID = re.compile(rb"UID\s+(\d+)")
_FETCH_FLAGS = re.compile(rb"FLAGS\s+\(([^)]*)\)")

UID_CURSOR_PREFIX = "uid:"


@dataclass
class ImapItem:
    """One fetched message before normalisation."""

    uid: int
    mailbox: str
    flags: List[str] = field(default_factory=list)
    message: Optional[Message] = None

    @property
    def service_message_id(self) -> str:
        return f"{self.mailbox}:{self.uid}"

    def attachment_count(self) -> int:
        if self.message is None:
            return 0
        return sum(1 for part in self.message.walk() if part.get_filename())

    def date(self) -> Optional[datetime]:
        if self.message is None:
            return None
        return parse_header_date(self.message.get("Date"))


def _imap_date(value: datetime) -> str:
    return value.strftime("%d-%b-%Y")


def _quote(value: str) -> str:
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


def _or(terms: List[str]) -> str:
    if len(terms) == 1:
        return terms[0]
    return f"OR {terms[0]} ({_or(terms[1:])})"


def participant_criterion(participants: List[str]) -> str:
    """OR-tree matching any participant as sender or recipient."""
    terms = [
        f"OR FROM {_quote(p)} (OR TO {_quote(p)} CC {_quote(p)})" for p in participants
    ]
    return f"({_or(terms)})"


def build_search_criteria(params: ListParams) -> List[str]:
    """``UID SEARCH`` criteria. IMAP dates have day granularity only."""
    criteria: List[str] = []
    if not params.include_drafts:
        criteria.append("UNDRAFT")
    if params.after:
        criteria.append(f"SINCE {_imap_date(params.after)}")
    if params.before:
        # BEFORE is exclusive of the whole day
        criteria.append(f"BEFORE {_imap_date(params.before + timedelta(days=1))}")
    if params.from_:
        criteria.append(f"FROM {_quote(params.from_)}")
    if params.to:
        criteria.append(f"TO {_quote(params.to)}")
    if params.subject:
        criteria.append(f"SUBJECT {_quote(params.subject)}")
    if params.participants:
        criteria.append(participant_criterion(params.participants))
    return criteria or ["ALL"]


def parse_list_line(line: Any) -> Optional[Folder]:
    text = line.decode("utf-8", errors="replace") if isinstance(line, bytes) else str(line)
    match = _LIST_LINE.match(text.strip())
    if not match:
        return None
    name = match.group("name").strip()
    if name.startswith('"') and name.endswith('"'):
        name = name[1:-1].replace('\\"', '"').replace("\\\\", "\\")
    attributes = match.group("flags").split()
    return Folder(id=name, name=name, attributes=attributes)


def parse_uid_cursor(token: Optional[str]) -> Optional[int]:
    if not token:
        return None
    if not token.startswith(UID_CURSOR_PREFIX) or not token[len(UID_CURSOR_PREFIX):].isdigit():
        raise ConfigurationError(f"Invalid page token: {token}")
    return int(token[len(UID_CURSOR_PREFIX):])


def split_message_id(message_id: str) -> Tuple[str, int]:
    """``<mailbox>:<uid>`` into its parts; a bare uid means INBOX."""
    mailbox, _, uid = str(message_id).rpartition(":")
    if not uid.isdigit():
        raise ConfigurationError(f"Invalid IMAP message id: {message_id}")
    return mailbox or "INBOX", int(uid)


class IMAPConnector(EmailConnector):
    """Retrieve emails from an IMAP server.

    ``auth`` carries ``email`` plus either ``password`` or an OAuth
    ``access_token`` (XOAUTH2).
    """

    name = "imap"

    def __init__(
        self,
        config: Optional[Config] = None,
        *,
        host: Optional[str] = None,
        port: Optional[int] = None,
        use_ssl: Optional[bool] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(config, **kwargs)
        self.host = host or self.config.IMAP_HOST
        self.port = port or self.config.IMAP_PORT
        self.use_ssl = self.config.IMAP_USE_SSL if use_ssl is None else use_ssl
        if not self.host:
            raise ConfigurationError("IMAP requires a host")
        self.normalizer = MessageNormalizer(self.name)
        self.fanout = ParticipantFanoutMerger(
            self.config.IMAP_PARTICIPANT_CAP, self.config.FANOUT_CONCURRENCY
        )

    # ------------------------------------------------------------------
    def _open(self) -> imaplib.IMAP4:
        return (
            imaplib.IMAP4_SSL(self.host, self.port)
            if self.use_ssl
            else imaplib.IMAP4(self.host, self.port)
        )

    def _connect(self, auth: Auth) -> imaplib.IMAP4:
        email_address = auth.get("email") or auth.get("username")
        if not email_address:
            raise ConfigurationError("IMAP auth requires an email address")

        logger.info("Connecting to IMAP server %s:%s email=%s", self.host, self.port, email_address)
        try:
            conn = self._open()
        except OSError as exc:
            raise self._translate(exc) from exc
        try:
            if not self.use_ssl:
                status, _ = conn.starttls(ssl_context=ssl.create_default_context())
                if status != "OK":
                    raise TransportError("IMAP server requires a secure connection; STARTTLS negotiation failed")

            if auth.get("password"):
                conn.login(email_address, auth["password"])
            elif auth.get("access_token"):
                xoauth = f"user={email_address}\x01auth=Bearer {auth['access_token']}\x01\x01"
                conn.authenticate("XOAUTH2", lambda _: xoauth.encode("utf-8"))
            else:
                raise ConfigurationError("IMAP auth requires a password or an access_token")
        except MailBridgeError:
            self._logout(conn)
            raise
        except (imaplib.IMAP4.error, OSError) as exc:
            self._logout(conn)
            raise self._translate(exc) from exc
        return conn

    @staticmethod
    def _logout(conn: imaplib.IMAP4) -> None:
        try:
            conn.logout()
        except (imaplib.IMAP4.error, OSError) as exc:
            logger.warning("Error during IMAP logout: %s", exc)

    @asynccontextmanager
    async def _session(self, auth: Auth) -> AsyncIterator[imaplib.IMAP4]:
        conn = await asyncio.to_thread(self._connect, auth)
        try:
            yield conn
        finally:
            await asyncio.to_thread(self._logout, conn)

    async def _command(self, conn: imaplib.IMAP4, command: str, *args: Any) -> List[Any]:
        """Run one IMAP command; a non-OK status raises."""
        try:
            status, data = await asyncio.to_thread(getattr(conn, command), *args)
        except (imaplib.IMAP4.error, OSError) as exc:
            raise self._translate(exc) from exc
        if status != "OK":
            detail = data[0].decode("utf-8", errors="replace") if data and isinstance(data[0], bytes) else data
            raise TransportError(f"IMAP {command} failed: {detail}")
        return data

    async def _uid(self, conn: imaplib.IMAP4, command: str, *args: Any) -> List[Any]:
        try:
            status, data = await asyncio.to_thread(conn.uid, command, *args)
        except (imaplib.IMAP4.error, OSError) as exc:
            raise self._translate(exc) from exc
        if status != "OK":
            raise TransportError(f"IMAP UID {command} failed: {data}")
        return data

    async def _select(self, conn: imaplib.IMAP4, mailbox: str) -> None:
        try:
            status, data = await asyncio.to_thread(conn.select, _quote(mailbox), True)
        except (imaplib.IMAP4.error, OSError) as exc:
            raise self._translate(exc) from exc
        if status != "OK":
            raise NotFoundError(f"Folder {mailbox} not found")

    # ------------------------------------------------------------------
    async def list_messages(
        self, auth: Auth, params: ParamsLike = None, options: OptionsLike = None
    ) -> MessageList:
        list_params = self._list_params(params)
        opts = ListOptions.from_dict(options)
        folders = await self.get_folders(auth)
        mailbox = self._mailbox_for(folders, list_params.folder)
        role = next((f.display_name() for f in folders if f.id == mailbox), mailbox)

        logger.info(
            "Fetching messages from IMAP mailbox %s (limit=%d, attachments=%s)",
            mailbox,
            list_params.limit,
            bool(list_params.has_attachment),
        )

        if not self.fanout.needs_fanout(list_params.participants):
            return await self._list_call(auth, mailbox, role, list_params, opts)

        async def _run(batch: List[str]) -> MessageList:
            batch_params = replace(list_params, participants=batch, page_token=None)
            return await self._list_call(auth, mailbox, role, batch_params, opts)

        return await self.fanout.merge(
            list_params.participants, list_params.limit, _run, ids_only=opts.ids_only
        )

    async def _list_call(
        self,
        auth: Auth,
        mailbox: str,
        role: str,
        list_params: ListParams,
        opts: ListOptions,
    ) -> MessageList:
        below_uid = parse_uid_cursor(list_params.page_token)
        criteria = build_search_criteria(list_params)
        need_content = bool(list_params.has_attachment) or not opts.ids_only

        async with self._session(auth) as conn:
            await self._select(conn, mailbox)
            data = await self._uid(conn, "SEARCH", None, *criteria)
            uids = sorted((int(uid) for uid in (data[0] or b"").split()), reverse=True)
            if below_uid is not None:
                uids = [uid for uid in uids if uid < below_uid]

            async def fetch_page(cursor: Optional[str], page_size: int) -> Page:
                start = parse_uid_cursor(cursor)
                remaining = uids if start is None else [uid for uid in uids if uid < start]
                batch = remaining[:page_size]
                if need_content:
                    items = await self._fetch_items(conn, mailbox, batch)
                else:
                    items = [ImapItem(uid=uid, mailbox=mailbox) for uid in batch]
                more = len(remaining) > len(batch)
                return Page(items=items, cursor=f"{UID_CURSOR_PREFIX}{batch[-1]}" if more and batch else None)

            item_filter = all_of(
                require_attachments(ImapItem.attachment_count) if list_params.has_attachment else None,
                self._exact_dates(list_params),
            )
            compensator = PaginationCompensator(
                fetch_page,
                item_filter,
                cursor_for=lambda items: f"{UID_CURSOR_PREFIX}{items[-1].uid}" if items else None,
            )
            page = await compensator.collect(list_params.limit, None, list_params.limit)

        if opts.ids_only:
            messages: List[Any] = [item.service_message_id for item in page.items]
        elif opts.raw:
            messages = [
                {"id": item.service_message_id, "flags": item.flags, "rfc822": item.message.as_string()}
                for item in page.items
            ]
        else:
            messages = [
                self.normalizer.from_rfc822(item.message, service_message_id=item.service_message_id, folders=[role])
                for item in page.items
            ]
        return MessageList(messages=messages, next_page_token=page.cursor)

    @staticmethod
    def _exact_dates(list_params: ListParams):
        if not list_params.before and not list_params.after:
            return None

        def _in_range(item: ImapItem) -> bool:
            date = item.date()
            if date is None:
                return True
            if list_params.after and date < list_params.after:
                return False
            return not (list_params.before and date >= list_params.before)

        return _in_range

    async def _fetch_items(self, conn: imaplib.IMAP4, mailbox: str, uids: List[int]) -> List[ImapItem]:
        if not uids:
            return []
        data = await self._uid(conn, "FETCH", ",".join(str(uid) for uid in uids), "(UID FLAGS BODY.PEEK[])")
        by_uid: Dict[int, ImapItem] = {}
        for entry in data:
            if not isinstance(entry, tuple) or len(entry) < 2:
                continue
            meta, content = entry[0], entry[1]
            uid_match = _FETCH_UID.search(meta)
            if not uid_match:
                continue
            flags_match = _FETCH_FLAGS.search(meta)
            flags = flags_match.group(1).decode("ascii", errors="ignore").split() if flags_match else []
            uid = int(uid_match.group(1))
            by_uid[uid] = ImapItem(uid=uid, mailbox=mailbox, flags=flags, message=message_from_bytes(content))
        # keep newest-first order of the search result
        return [by_uid[uid] for uid in uids if uid in by_uid]

    # ------------------------------------------------------------------
    async def get_message(self, auth: Auth, params: Mapping[str, Any], options: OptionsLike = None):
        self._require(params, "id")
        opts = ListOptions.from_dict(options)
        item = await self._fetch_one(auth, params["id"])
        if opts.raw:
            return {"id": item.service_message_id, "flags": item.flags, "rfc822": item.message.as_string()}
        folders = await self.get_folders(auth)
        role = next((f.display_name() for f in folders if f.id == item.mailbox), item.mailbox)
        return self.normalizer.from_rfc822(item.message, service_message_id=item.service_message_id, folders=[role])

    async def get_file(self, auth: Auth, params: Mapping[str, Any], options: OptionsLike = None):
        """Return one attachment; ``params['id']`` is the MIME part id."""
        self._require(params, "id", "messageId")
        opts = ListOptions.from_dict(options)
        item = await self._fetch_one(auth, params["messageId"])
        part = find_part(message_to_part_tree(item.message), params["id"])
        if part is None or not part.get("filename"):
            raise NotFoundError(f"Attachment {params['id']} not found on message {params['messageId']}")
        data = base64.b64encode(decode_body_data((part.get("body") or {}).get("data"))).decode("ascii")
        if opts.raw:
            return {"part": part, "data": data}

        message = self.normalizer.from_rfc822(item.message, service_message_id=item.service_message_id, folders=[])
        file = next((f for f in message.files if f.service_file_id == params["id"]), None)
        if file is None:
            raise NotFoundError(f"Part {params['id']} of message {params['messageId']} is not an attachment")
        file.data = data
        return file

    async def _fetch_one(self, auth: Auth, message_id: str) -> ImapItem:
        mailbox, uid = split_message_id(message_id)
        async with self._session(auth) as conn:
            await self._select(conn, mailbox)
            items = await self._fetch_items(conn, mailbox, [uid])
        if not items:
            raise NotFoundError(f"Message {message_id} not found")
        return items[0]

    # ------------------------------------------------------------------
    async def fetch_folders(self, auth: Auth) -> List[Folder]:
        async with self._session(auth) as conn:
            lines = await self._command(conn, "list")
            folders = [folder for folder in (parse_list_line(line) for line in lines or []) if folder]
            for folder in folders:
                if "\\Noselect" in folder.attributes:
                    continue
                status = await self._command(conn, "status", _quote(folder.name), "(MESSAGES)")
                text = status[0].decode("utf-8", errors="replace") if status and isinstance(status[0], bytes) else ""
                match = _STATUS_MESSAGES.search(text)
                folder.total_count = int(match.group(1)) if match else 0
        logger.debug("Listed %d IMAP folder(s)", len(folders))
        return folders

    @staticmethod
    def _mailbox_for(folders: List[Folder], wanted: Optional[str]) -> str:
        target = (wanted or "inbox").lower()
        for folder in folders:
            if folder.role == target:
                return folder.id
        for folder in folders:
            if folder.name.lower() == target:
                return folder.id
        raise NotFoundError(f"Folder {wanted} not found")
