"""Over-fetch compensation for filters a backend cannot apply itself.

Some backends cannot filter on attachment presence or exclude drafts, so the
filter runs client-side and a page can come back under-full. The
:class:`PaginationCompensator` keeps fetching pages, strictly one after the
other, until enough matches are collected or the backend runs out.

When more matches were collected than requested the surplus is dropped, and
the returned cursor points just after the last item actually returned (a
:class:`DateCursor` for date-ordered backends), so the next request sees the
dropped matches again instead of skipping them.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Sequence

from ..core.exceptions import ConfigurationError
from ..core.models import Page, coerce_datetime

logger = logging.getLogger(__name__)

FetchPage = Callable[[Optional[str], int], Awaitable[Page]]
ItemFilter = Callable[[Any], bool]
CursorFor = Callable[[Sequence[Any]], Optional[str]]

UNWANTED_ROLES = ("trash", "spam")


@dataclass
class CompensatedPage:
    items: List[Any]
    cursor: Optional[str]
    fetch_count: int
    exhausted: bool


@dataclass
class DateCursor:
    """Resume point for newest-first listings: strictly older than ``before``,
    plus items at exactly ``before`` that were not returned yet."""

    before: datetime
    exclude_ids: List[str] = field(default_factory=list)

    PREFIX = "dc1."

    def encode(self) -> str:
        payload = json.dumps({"before": self.before.isoformat(), "exclude": self.exclude_ids})
        return self.PREFIX + base64.urlsafe_b64encode(payload.encode("utf-8")).decode("ascii")

    @classmethod
    def decode(cls, token: Any) -> Optional["DateCursor"]:
        """Parse one of our tokens or a bare date; anything else is ``None``."""
        if isinstance(token, datetime):
            return cls(before=coerce_datetime(token))
        if not isinstance(token, str) or not token:
            return None
        if token.startswith(cls.PREFIX):
            try:
                payload = json.loads(base64.urlsafe_b64decode(token[len(cls.PREFIX):].encode("ascii")))
            except (binascii.Error, ValueError) as exc:
                raise ConfigurationError(f"Invalid page token: {exc}") from exc
            before = coerce_datetime(payload.get("before"))
            if before is None:
                raise ConfigurationError("Invalid page token: missing date boundary")
            return cls(before=before, exclude_ids=list(payload.get("exclude") or []))
        if any(sep in token for sep in ("-", ":")):
            parsed = coerce_datetime(token)
            if parsed is not None:
                return cls(before=parsed)
        return None

    def upper_bound(self, before: Optional[datetime] = None) -> datetime:
        """Backend ``before`` filter that still covers the boundary instant."""
        bound = self.before + timedelta(seconds=1)
        return bound if before is None else min(before, bound)

    def admits(self, item_date: Optional[datetime], item_id: Any) -> bool:
        if item_date is None:
            return True
        if item_date > self.before:
            return False
        return not (item_date == self.before and item_id in self.exclude_ids)


def date_cursor_for(
    date_of: Callable[[Any], Optional[datetime]],
    id_of: Callable[[Any], Any],
    previous: Optional[DateCursor] = None,
) -> CursorFor:
    """Build a ``cursor_for`` hook producing :class:`DateCursor` tokens.

    ``previous`` is the cursor the current call resumed from. When the new
    boundary is the same instant, its excluded ids stay excluded.
    """

    def _cursor(items: Sequence[Any]) -> Optional[str]:
        if not items:
            return None
        boundary = date_of(items[-1])
        if boundary is None:
            return None
        exclude: List[Any] = []
        if previous is not None and previous.before == boundary:
            exclude.extend(previous.exclude_ids)
        for item in items:
            item_id = id_of(item)
            if date_of(item) == boundary and item_id not in exclude:
                exclude.append(item_id)
        return DateCursor(before=boundary, exclude_ids=exclude).encode()

    return _cursor


# ----------------------------------------------------------------------
def require_attachments(count_of: Callable[[Any], int]) -> ItemFilter:
    def _has_attachments(item: Any) -> bool:
        return count_of(item) > 0

    return _has_attachments


def exclude_folder_roles(role_of: Callable[[Any], Optional[str]], include_drafts: bool = False) -> ItemFilter:
    """Drop trash and spam, and drafts unless ``include_drafts``."""
    unwanted = set(UNWANTED_ROLES)
    if not include_drafts:
        unwanted.add("drafts")

    def _wanted(item: Any) -> bool:
        return role_of(item) not in unwanted

    return _wanted


def all_of(*filters: Optional[ItemFilter]) -> Optional[ItemFilter]:
    active = [f for f in filters if f is not None]
    if not active:
        return None
    if len(active) == 1:
        return active[0]

    def _all(item: Any) -> bool:
        return all(f(item) for f in active)

    return _all


def attachment_page_size(limit: int, minimum: int = 100) -> int:
    """Attachment-bearing messages are sparse; ask the backend for more."""
    return max(limit, minimum)


# ----------------------------------------------------------------------
class PaginationCompensator:
    """Collect ``limit`` filtered items from a cursor-paged backend.

    Parameters
    ----------
    fetch_page:
        ``await fetch_page(cursor, page_size)`` returning a :class:`Page`; its
        ``cursor`` must be ``None`` exactly when the backend is exhausted.
    item_filter:
        Client-side predicate the backend cannot apply. ``None`` keeps all.
    cursor_for:
        Builds the returned cursor from the items actually returned. Without
        it the backend cursor is passed through.
    validate:
        Called on every raw item before filtering; raising aborts the whole
        collection.
    """

    def __init__(
        self,
        fetch_page: FetchPage,
        item_filter: Optional[ItemFilter] = None,
        *,
        cursor_for: Optional[CursorFor] = None,
        validate: Optional[Callable[[Any], None]] = None,
    ) -> None:
        self.fetch_page = fetch_page
        self.item_filter = item_filter
        self.cursor_for = cursor_for
        self.validate = validate

    async def collect(
        self,
        limit: int,
        cursor: Optional[str] = None,
        page_size: Optional[int] = None,
    ) -> CompensatedPage:
        if limit is None or limit <= 0:
            raise ConfigurationError("limit must be a positive integer")
        page_size = page_size or limit

        matches: List[Any] = []
        next_cursor = cursor
        fetches = 0
        while True:
            page = await self.fetch_page(next_cursor, page_size)
            fetches += 1
            kept = self._keep(page.items)
            matches.extend(kept)
            next_cursor = page.cursor or None
            logger.debug(
                "Page %d: %d fetched, %d kept, %d/%d collected, more=%s",
                fetches,
                len(page.items),
                len(kept),
                len(matches),
                limit,
                bool(next_cursor),
            )
            if len(matches) >= limit or next_cursor is None:
                break

        exhausted = next_cursor is None
        truncated = len(matches) > limit
        items = matches[:limit]
        returned_cursor = self._returned_cursor(items, next_cursor, truncated, exhausted)

        logger.info(
            "Collected %d item(s) in %d fetch(es)%s",
            len(items),
            fetches,
            " (backend exhausted)" if exhausted else "",
        )
        return CompensatedPage(items=items, cursor=returned_cursor, fetch_count=fetches, exhausted=exhausted)

    # ------------------------------------------------------------------
    def _keep(self, items: Iterable[Any]) -> List[Any]:
        kept = []
        for item in items:
            if self.validate is not None:
                self.validate(item)
            if self.item_filter is None or self.item_filter(item):
                kept.append(item)
        return kept

    def _returned_cursor(
        self,
        items: List[Any],
        backend_cursor: Optional[str],
        truncated: bool,
        exhausted: bool,
    ) -> Optional[str]:
        if not items or (exhausted and not truncated):
            return None
        if self.cursor_for is not None:
            return self.cursor_for(items)
        if truncated:
            logger.warning(
                "Dropping surplus matches without a resumable cursor; next page starts at the backend cursor"
            )
        return backend_cursor
