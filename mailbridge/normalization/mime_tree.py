"""Flattening of nested MIME body-part trees.

Backends describe a message body as a tree of parts shaped like the Gmail
``payload`` resource::

    {"partId": "1", "mimeType": "text/html", "filename": "",
     "headers": [{"name": "Content-Type", "value": "..."}],
     "body": {"size": 12, "data": "<base64url>", "attachmentId": "..."},
     "parts": [...]}

Only leaves carry content. Multipart containers are structural and never
surface as body entries or attachments.
"""

from __future__ import annotations

import base64
import binascii
import logging
from email.message import Message
from typing import Any, Dict, List, Optional

from ..core.models import BodyPart

logger = logging.getLogger(__name__)

BODY_MIME_TYPES = ("text/plain", "text/html")


def flatten_parts(root: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Return the leaves of ``root`` in depth-first, left-to-right order.

    A part without children is its own single leaf.
    """
    leaves: List[Dict[str, Any]] = []
    stack = [root]
    while stack:
        part = stack.pop()
        children = part.get("parts") or []
        if children:
            stack.extend(reversed(children))
        else:
            leaves.append(part)
    return leaves


def decode_body_data(data: Optional[str]) -> bytes:
    """Decode base64 or base64url payload data, tolerating missing padding."""
    if not data:
        return b""
    padded = data + "=" * (-len(data) % 4)
    try:
        if "-" in data or "_" in data:
            return base64.urlsafe_b64decode(padded)
        return base64.b64decode(padded)
    except (binascii.Error, ValueError) as exc:
        logger.warning("Undecodable body data (%d chars): %s", len(data), exc)
        return b""


def _charset(part: Dict[str, Any]) -> str:
    content_type = header_value(part.get("headers") or [], "content-type") or ""
    for param in content_type.split(";")[1:]:
        key, _, value = param.strip().partition("=")
        if key.lower() == "charset" and value:
            return value.strip('"\' ')
    return "utf-8"


def extract_body(leaves: List[Dict[str, Any]]) -> List[BodyPart]:
    """Build body entries from ``text/plain`` and ``text/html`` leaves."""
    body: List[BodyPart] = []
    for leaf in leaves:
        mime_type = (leaf.get("mimeType") or "").lower()
        if mime_type not in BODY_MIME_TYPES:
            continue
        if leaf.get("filename"):
            # a named text part is an attachment, not the message body
            continue
        data = (leaf.get("body") or {}).get("data")
        if not data:
            continue
        raw = decode_body_data(data)
        try:
            content = raw.decode(_charset(leaf), errors="replace")
        except LookupError:
            content = raw.decode("utf-8", errors="replace")
        if content:
            body.append(BodyPart(type=leaf.get("mimeType") or mime_type, content=content))
    return body


def extract_attachment_parts(leaves: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Leaves that name a file. Unnamed non-text leaves are dropped."""
    return [leaf for leaf in leaves if leaf.get("filename") and leaf.get("headers")]


def header_value(headers: List[Dict[str, str]], name: str) -> Optional[str]:
    """First value of header ``name`` (case-insensitive) or ``None``."""
    wanted = name.lower()
    for header in headers:
        if (header.get("name") or "").lower() == wanted and header.get("value"):
            return header["value"]
    return None


def find_part(root: Dict[str, Any], part_id: str) -> Optional[Dict[str, Any]]:
    for leaf in flatten_parts(root):
        if leaf.get("partId") == part_id:
            return leaf
    return None


# ----------------------------------------------------------------------
def message_to_part_tree(msg: Message, part_id: str = "") -> Dict[str, Any]:
    """Convert a stdlib ``email`` message into the part-tree shape above."""
    headers = [{"name": name, "value": str(value)} for name, value in msg.items()]
    node: Dict[str, Any] = {
        "partId": part_id,
        "mimeType": msg.get_content_type(),
        "filename": msg.get_filename() or "",
        "headers": headers,
        "body": {"size": 0},
    }

    if msg.is_multipart():
        children = msg.get_payload() or []
        node["parts"] = [
            message_to_part_tree(child, f"{part_id}.{index}" if part_id else str(index))
            for index, child in enumerate(children)
        ]
        return node

    payload = msg.get_payload(decode=True) or b""
    if node["mimeType"] in BODY_MIME_TYPES and not node["filename"]:
        # normalise text to UTF-8 so the flattener does not need the charset
        charset = msg.get_content_charset() or "utf-8"
        try:
            payload = payload.decode(charset, errors="ignore").encode("utf-8")
        except LookupError:
            payload = payload.decode("utf-8", errors="ignore").encode("utf-8")
        node["headers"] = [h for h in headers if h["name"].lower() != "content-type"] + [
            {"name": "Content-Type", "value": f"{node['mimeType']}; charset=utf-8"}
        ]
    node["body"] = {
        "size": len(payload),
        "data": base64.urlsafe_b64encode(payload).decode("ascii") if payload else None,
    }
    return node
