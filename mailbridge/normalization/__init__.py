"""Normalisation of provider payloads into canonical resources.

- mime_tree: flatten nested body-part trees into body entries and attachments
- addresses: participant records to ``{from, to, cc, bcc}``
- folders: canonical folder roles plus the per-account folder cache
- messages: per-backend message/file conversion
"""

from .addresses import AddressMapping, normalize_addresses
from .folders import FolderCache, FolderRoleResolver
from .messages import MessageNormalizer, finalize_file
from .mime_tree import flatten_parts

__all__ = [
    "AddressMapping",
    "normalize_addresses",
    "FolderCache",
    "FolderRoleResolver",
    "MessageNormalizer",
    "finalize_file",
    "flatten_parts",
]
