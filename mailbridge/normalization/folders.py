"""Folder role resolution.

Providers either declare folder roles (IMAP special-use attributes such as
``\\Sent``, or a ``role`` string) or leave us with nothing but display names.
:class:`FolderRoleResolver` maps both onto the canonical roles
``inbox|sent|drafts|trash|spam|other``. When the inbox or sent folder is not
declared it falls back to a name heuristic; the largest folder wins ties
since IMAP namespaces often carry several "Inbox"-like folders.
"""

from __future__ import annotations

import logging
import re
import threading
import time
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from ..core.exceptions import NotFoundError
from ..core.models import Folder

logger = logging.getLogger(__name__)

ATTRIBUTE_ROLES: Dict[str, str] = {
    "\\inbox": "inbox",
    "\\sent": "sent",
    "\\drafts": "drafts",
    "\\trash": "trash",
    "\\junk": "spam",
    "\\spam": "spam",
    "inbox": "inbox",
    "sent": "sent",
    "drafts": "drafts",
    "trash": "trash",
    "spam": "spam",
    "junk": "spam",
}

ROLE_ATTRIBUTES: Dict[str, str] = {
    "inbox": "\\Inbox",
    "sent": "\\Sent",
    "drafts": "\\Drafts",
    "trash": "\\Trash",
    "spam": "\\Junk",
}

REQUIRED_ROLES = ("inbox", "sent")

_NAMESPACE_PREFIX = re.compile(r"^inbox[./]", re.IGNORECASE)


def declared_role(folder: Folder) -> Optional[str]:
    """Role declared by the backend through ``role`` or ``attributes``."""
    candidates = ([folder.role] if folder.role else []) + list(folder.attributes)
    for value in candidates:
        role = ATTRIBUTE_ROLES.get(str(value).lower())
        if role:
            return role
    return None


def strip_namespace(name: str) -> str:
    """Drop the ``INBOX.``/``INBOX/`` namespace prefix some servers add."""
    return _NAMESPACE_PREFIX.sub("", name or "")


class FolderRoleResolver:
    """Annotate a folder listing with canonical roles."""

    def __init__(self, required_roles: Iterable[str] = REQUIRED_ROLES) -> None:
        self.required_roles = tuple(required_roles)

    def resolve(self, folders: List[Folder]) -> List[Folder]:
        """Assign ``role`` on every folder and return the same list.

        Raises
        ------
        NotFoundError
            When a required role has neither a declared folder nor a
            heuristic match.
        """
        for folder in folders:
            folder.role = declared_role(folder) or "other"

        for role in self.required_roles:
            if any(folder.role == role for folder in folders):
                continue
            chosen = self._guess(folders, role)
            if chosen is None:
                raise NotFoundError(f"{role.capitalize()} folder not found")
            logger.debug(
                "Guessed %s folder %r (total_count=%d)", role, chosen.name, chosen.total_count
            )
            chosen.role = role
            attribute = ROLE_ATTRIBUTES[role]
            if attribute not in chosen.attributes:
                chosen.attributes.append(attribute)
        return folders

    @staticmethod
    def _guess(folders: List[Folder], role: str) -> Optional[Folder]:
        best: Optional[Folder] = None
        for folder in folders:
            if folder.role != "other":
                continue
            if role not in strip_namespace(folder.name).lower():
                continue
            if best is None or folder.total_count > best.total_count:
                best = folder
        return best

    @staticmethod
    def folders_with_role(folders: List[Folder], role: str) -> List[Folder]:
        return [folder for folder in folders if folder.role == role]

    @staticmethod
    def display_names(folder_ids: Iterable[str], folders: List[Folder]) -> List[str]:
        """Map folder ids to canonical role names, falling back to the folder name."""
        by_id = {folder.id: folder for folder in folders}
        names = []
        for folder_id in folder_ids:
            folder = by_id.get(folder_id)
            names.append(folder.display_name() if folder else folder_id)
        return names


class FolderCache:
    """Resolved folder listings cached per account.

    Reads are lock-free; writes replace the whole entry so the last writer
    wins. Resolution is deterministic for a given listing, so two concurrent
    loads for the same key store equivalent values.
    """

    def __init__(self, ttl_seconds: float = 900.0, resolver: Optional[FolderRoleResolver] = None) -> None:
        self.ttl_seconds = ttl_seconds
        self.resolver = resolver or FolderRoleResolver()
        self._entries: Dict[str, Tuple[float, List[Folder]]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[List[Folder]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        stored_at, folders = entry
        if self.ttl_seconds and time.monotonic() - stored_at > self.ttl_seconds:
            return None
        return folders

    def put(self, key: str, folders: List[Folder]) -> None:
        with self._lock:
            self._entries[key] = (time.monotonic(), folders)

    def invalidate(self, key: Optional[str] = None) -> None:
        with self._lock:
            if key is None:
                self._entries.clear()
            else:
                self._entries.pop(key, None)

    async def get_or_load(self, key: str, loader: Callable[[], Awaitable[List[Folder]]]) -> List[Folder]:
        """Return cached folders for ``key`` or fetch, resolve and store them."""
        cached = self.get(key)
        if cached is not None:
            return cached
        logger.debug("Folder cache miss for account %s", key)
        folders = self.resolver.resolve(await loader())
        self.put(key, folders)
        return folders
