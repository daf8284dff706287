"""Paging helpers: over-fetch compensation and participant fan-out."""

from .compensator import (
    CompensatedPage,
    DateCursor,
    PaginationCompensator,
    all_of,
    attachment_page_size,
    date_cursor_for,
    exclude_folder_roles,
    require_attachments,
)
from .fanout import ParticipantFanoutMerger, chunk, merge_results

__all__ = [
    "CompensatedPage",
    "DateCursor",
    "PaginationCompensator",
    "all_of",
    "attachment_page_size",
    "date_cursor_for",
    "exclude_folder_roles",
    "require_attachments",
    "ParticipantFanoutMerger",
    "chunk",
    "merge_results",
]
