"""Participant normalisation.

Each backend names its participant keys differently, so callers pass an
explicit :class:`AddressMapping` instead of relying on duck-typing here.
"""

from __future__ import annotations

from dataclasses import dataclass
from email.header import decode_header, make_header
from email.utils import getaddresses
from typing import Any, Iterable, List, Mapping, Optional

from ..core.models import Addresses, Contact


@dataclass(frozen=True)
class AddressMapping:
    """Where a backend keeps the participant lists and contact fields."""

    from_key: str = "from"
    to_key: str = "to"
    cc_key: str = "cc"
    bcc_key: str = "bcc"
    email_key: str = "email"
    name_key: str = "name"
    wrapper_key: Optional[str] = None


NYLAS_MAPPING = AddressMapping()
UNIPILE_MAPPING = AddressMapping(
    from_key="from_attendee",
    to_key="to_attendees",
    cc_key="cc_attendees",
    bcc_key="bcc_attendees",
    email_key="identifier",
    name_key="display_name",
)
GRAPH_MAPPING = AddressMapping(
    from_key="from",
    to_key="toRecipients",
    cc_key="ccRecipients",
    bcc_key="bccRecipients",
    email_key="address",
    name_key="name",
    wrapper_key="emailAddress",
)


def to_contact(entry: Any, mapping: AddressMapping = NYLAS_MAPPING) -> Optional[Contact]:
    """Convert one participant record into a :class:`Contact`.

    Returns ``None`` when the record has no email address.
    """
    if isinstance(entry, Contact):
        return entry
    if not isinstance(entry, Mapping):
        return None
    if mapping.wrapper_key and isinstance(entry.get(mapping.wrapper_key), Mapping):
        entry = entry[mapping.wrapper_key]
    email = entry.get(mapping.email_key)
    if not email:
        return None
    return Contact(email=str(email), name=entry.get(mapping.name_key))


def to_contacts(value: Any, mapping: AddressMapping = NYLAS_MAPPING) -> List[Contact]:
    """Normalise a single record or a list of records. ``None`` becomes ``[]``."""
    if value is None:
        return []
    entries: Iterable[Any] = value if isinstance(value, (list, tuple)) else [value]
    contacts = []
    for entry in entries:
        contact = to_contact(entry, mapping)
        if contact is not None:
            contacts.append(contact)
    return contacts


def normalize_addresses(record: Mapping[str, Any], mapping: AddressMapping = NYLAS_MAPPING) -> Addresses:
    """Build the ``{from, to, cc, bcc}`` shape from a backend record.

    ``from`` is singular: a list keeps only its first usable entry.
    """
    senders = to_contacts(record.get(mapping.from_key), mapping)
    return Addresses(
        from_=senders[0] if senders else None,
        to=to_contacts(record.get(mapping.to_key), mapping),
        cc=to_contacts(record.get(mapping.cc_key), mapping),
        bcc=to_contacts(record.get(mapping.bcc_key), mapping),
    )


def decode_header_value(raw_val: Optional[str]) -> Optional[str]:
    if not raw_val:
        return None
    try:
        return str(make_header(decode_header(raw_val))).strip()
    except (UnicodeDecodeError, LookupError, ValueError):
        parts = decode_header(raw_val)
        decoded: List[str] = []
        for text, enc in parts:
            if isinstance(text, bytes):
                try:
                    decoded.append(text.decode(enc or "utf-8", errors="ignore"))
                except LookupError:
                    decoded.append(text.decode("utf-8", errors="ignore"))
            else:
                decoded.append(text)
        return "".join(decoded).strip()


def parse_address_header(value: Optional[str]) -> List[Contact]:
    """Parse a raw ``From``/``To``/``Cc``/``Bcc`` header value."""
    if not value:
        return []
    contacts = []
    for name, address in getaddresses([value]):
        if not address or "@" not in address:
            continue
        contacts.append(Contact(email=address, name=decode_header_value(name) if name else None))
    return contacts


def addresses_from_headers(headers: Mapping[str, List[str]]) -> Addresses:
    """Build :class:`Addresses` from a lower-cased header multimap."""

    def _field(name: str) -> List[Contact]:
        return parse_address_header(", ".join(headers.get(name) or []))

    senders = _field("from")
    return Addresses(
        from_=senders[0] if senders else None,
        to=_field("to"),
        cc=_field("cc"),
        bcc=_field("bcc"),
    )

