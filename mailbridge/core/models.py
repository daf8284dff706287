"""Canonical resources shared by every connector.

All connectors hand back these dataclasses; ``to_dict`` produces the wire
shape callers serialise (``from`` instead of ``from_``, ISO dates).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

FOLDER_ROLES = ("inbox", "sent", "drafts", "trash", "spam", "other")


@dataclass
class Contact:
    email: str
    name: Optional[str] = None

    def __post_init__(self) -> None:
        self.email = (self.email or "").lower()

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"email": self.email}
        if self.name is not None:
            data["name"] = self.name
        return data


@dataclass
class Addresses:
    from_: Optional[Contact] = None
    to: List[Contact] = field(default_factory=list)
    cc: List[Contact] = field(default_factory=list)
    bcc: List[Contact] = field(default_factory=list)

    def participants(self) -> List[str]:
        """Every distinct email on the message, sender first."""
        seen: List[str] = []
        contacts = ([self.from_] if self.from_ else []) + self.to + self.cc + self.bcc
        for contact in contacts:
            if contact.email and contact.email not in seen:
                seen.append(contact.email)
        return seen

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from": self.from_.to_dict() if self.from_ else {},
            "to": [c.to_dict() for c in self.to],
            "cc": [c.to_dict() for c in self.cc],
            "bcc": [c.to_dict() for c in self.bcc],
        }


@dataclass
class BodyPart:
    type: str
    content: str

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "content": self.content}


@dataclass
class FileResource:
    type: Optional[str]
    size: int
    file_name: Optional[str]
    service_file_id: Optional[str]
    service_message_id: Optional[str]
    service_thread_id: Optional[str] = None
    email_message_id: Optional[str] = None
    content_id: Optional[str] = None
    content_disposition: Optional[str] = None
    is_embedded: bool = False
    addresses: Addresses = field(default_factory=Addresses)
    date: Optional[datetime] = None
    service_type: Optional[str] = None
    data: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "type": self.type,
            "size": self.size,
            "file_name": self.file_name,
            "content_id": self.content_id,
            "content_disposition": self.content_disposition,
            "service_file_id": self.service_file_id,
            "is_embedded": self.is_embedded,
            "service_message_id": self.service_message_id,
            "service_thread_id": self.service_thread_id,
            "email_message_id": self.email_message_id,
            "service_type": self.service_type,
            "addresses": self.addresses.to_dict(),
            "date": _iso(self.date),
        }
        if self.data is not None:
            data["data"] = self.data
        return data


@dataclass
class MessageResource:
    service_message_id: str
    service_thread_id: Optional[str]
    email_message_id: Optional[str]
    date: Optional[datetime]
    subject: Optional[str]
    headers: Dict[str, List[str]] = field(default_factory=dict)
    body: List[BodyPart] = field(default_factory=list)
    addresses: Addresses = field(default_factory=Addresses)
    in_reply_to: Optional[str] = None
    folders: List[str] = field(default_factory=list)
    attachments: bool = False
    files: List[FileResource] = field(default_factory=list)
    service_type: Optional[str] = None

    def html_body(self) -> str:
        return "".join(part.content for part in self.body if part.type.lower() == "text/html")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "service_message_id": self.service_message_id,
            "service_thread_id": self.service_thread_id,
            "email_message_id": self.email_message_id,
            "service_type": self.service_type,
            "date": _iso(self.date),
            "subject": self.subject,
            "headers": {name: list(values) for name, values in self.headers.items()},
            "body": [part.to_dict() for part in self.body],
            "addresses": self.addresses.to_dict(),
            "in_reply_to": self.in_reply_to,
            "folders": list(self.folders),
            "attachments": self.attachments,
            "files": [f.to_dict() for f in self.files],
        }


@dataclass
class Folder:
    id: str
    name: str
    attributes: List[str] = field(default_factory=list)
    role: Optional[str] = None
    total_count: int = 0

    def display_name(self) -> str:
        if self.role and self.role != "other":
            return self.role
        return self.name


@dataclass
class ListParams:
    """Filters understood by ``list_messages`` / ``list_files``."""

    limit: Optional[int] = None
    before: Optional[datetime] = None
    after: Optional[datetime] = None
    from_: Optional[str] = None
    to: Optional[str] = None
    participants: Optional[List[str]] = None
    folder: Optional[str] = None
    has_attachment: Optional[bool] = None
    include_drafts: bool = False
    subject: Optional[str] = None
    page_token: Optional[str] = None

    _ALIASES = {
        "from": "from_",
        "hasAttachment": "has_attachment",
        "includeDrafts": "include_drafts",
        "pageToken": "page_token",
    }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ListParams":
        """Accept either snake_case or the camelCase keys clients send."""
        if isinstance(data, ListParams):
            return data
        kwargs: Dict[str, Any] = {}
        for key, value in (data or {}).items():
            name = cls._ALIASES.get(key, key)
            if name in cls.__dataclass_fields__ and not name.startswith("_"):
                kwargs[name] = value
        for key in ("before", "after"):
            if kwargs.get(key) is not None:
                kwargs[key] = coerce_datetime(kwargs[key])
        if isinstance(kwargs.get("participants"), str):
            kwargs["participants"] = [kwargs["participants"]]
        return cls(**kwargs)


@dataclass
class ListOptions:
    raw: bool = False
    ids_only: bool = False
    include_body: bool = True

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ListOptions":
        if isinstance(data, ListOptions):
            return data
        data = data or {}
        return cls(
            raw=bool(data.get("raw", False)),
            ids_only=bool(data.get("ids_only", data.get("idsOnly", False))),
            include_body=bool(data.get("include_body", data.get("includeBody", True))),
        )


@dataclass
class MessageList:
    messages: List[Any]
    next_page_token: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "messages": [m.to_dict() if hasattr(m, "to_dict") else m for m in self.messages]
        }
        if self.next_page_token:
            data["next_page_token"] = self.next_page_token
        return data


@dataclass
class FileList:
    files: List[Any]
    next_page_token: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "files": [f.to_dict() if hasattr(f, "to_dict") else f for f in self.files]
        }
        if self.next_page_token:
            data["next_page_token"] = self.next_page_token
        return data


@dataclass
class Page:
    """One backend page: raw items plus the cursor for the next one."""

    items: Sequence[Any]
    cursor: Optional[str] = None


def coerce_datetime(value: Any) -> Optional[datetime]:
    """Parse datetimes, ISO strings and epoch seconds/milliseconds into UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        seconds = value / 1000 if value > 10_000_000_000 else value
        dt = datetime.fromtimestamp(seconds, tz=timezone.utc)
    elif isinstance(value, str):
        text = value.strip()
        if text.isdigit():
            return coerce_datetime(int(text))
        try:
            dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None
