"""Participant fan-out for backends that cannot OR-combine many addresses.

The participant list is cut into backend-safe batches, each batch runs as its
own ``list_messages`` call (bounded concurrency), and the results are merged:
first occurrence of a ``service_message_id`` wins, the union is sorted newest
first with ties kept in batch order, and the list is cut to ``limit``.
Per-batch cursors cannot be combined, so a merged result never carries a
next page token.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, List, Optional, Sequence, TypeVar

from ..core.models import MessageList, coerce_datetime

logger = logging.getLogger(__name__)

T = TypeVar("T")

RunBatch = Callable[[List[str]], Awaitable[MessageList]]

_OLDEST = datetime.min.replace(tzinfo=timezone.utc)


def chunk(items: Sequence[T], size: int) -> List[List[T]]:
    """Split ``items`` into consecutive lists of at most ``size`` elements."""
    if size <= 0:
        raise ValueError("chunk size must be positive")
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


async def gather_limited(calls: Sequence[Callable[[], Awaitable[T]]], concurrency: int) -> List[T]:
    """Await ``calls`` with at most ``concurrency`` running at once.

    Results keep the order of ``calls``. The first failure cancels the
    remaining calls and is raised.
    """
    semaphore = asyncio.Semaphore(max(1, concurrency))

    async def _run(call: Callable[[], Awaitable[T]]) -> T:
        async with semaphore:
            return await call()

    tasks = [asyncio.ensure_future(_run(call)) for call in calls]
    try:
        return list(await asyncio.gather(*tasks))
    except BaseException:
        for task in tasks:
            task.cancel()
        raise


def _identity(message: Any) -> Any:
    if isinstance(message, dict):
        return message.get("service_message_id") or message.get("id")
    if isinstance(message, str):
        return message
    return getattr(message, "service_message_id", None)


def _date(message: Any) -> datetime:
    value = message.get("date") if isinstance(message, dict) else getattr(message, "date", None)
    return coerce_datetime(value) or _OLDEST


def merge_results(results: Sequence[MessageList], limit: Optional[int], ids_only: bool = False) -> MessageList:
    """Union batch results by identity, sort by date descending, truncate."""
    merged: List[Any] = []
    seen = set()
    duplicates = 0
    for result in results:
        for message in result.messages:
            key = _identity(message)
            if key in seen:
                duplicates += 1
                continue
            seen.add(key)
            merged.append(message)

    if not ids_only:
        # sorted() is stable, so equal dates keep their batch order
        merged = sorted(merged, key=_date, reverse=True)
    if limit is not None:
        merged = merged[:limit]

    logger.debug("Merged %d batch result(s): %d unique, %d duplicate(s)", len(results), len(merged), duplicates)
    return MessageList(messages=merged, next_page_token=None)


class ParticipantFanoutMerger:
    """Run one query per participant batch and merge the results."""

    def __init__(self, batch_size: int, concurrency: int = 5) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self.batch_size = batch_size
        self.concurrency = max(1, concurrency)

    def needs_fanout(self, participants: Optional[Sequence[str]]) -> bool:
        return bool(participants) and len(participants) > self.batch_size

    async def merge(
        self,
        participants: Sequence[str],
        limit: Optional[int],
        run_batch: RunBatch,
        *,
        ids_only: bool = False,
    ) -> MessageList:
        """Fan ``participants`` out over ``run_batch`` and merge.

        The first failing batch raises; the merge never returns a partial
        result.
        """
        batches = chunk(list(participants), self.batch_size)
        logger.info(
            "Fanning out %d participant(s) over %d batch(es), concurrency=%d",
            len(participants),
            len(batches),
            self.concurrency,
        )
        results = await gather_limited(
            [functools.partial(run_batch, batch) for batch in batches], self.concurrency
        )
        return merge_results(results, limit, ids_only=ids_only)
