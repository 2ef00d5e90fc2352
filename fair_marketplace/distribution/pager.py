"""Offset pagination over an already ordered sequence."""

from __future__ import annotations

from typing import Sequence, TypeVar

from fair_marketplace.errors import InvalidRequest
from fair_marketplace.models import Pagination

T = TypeVar("T")

DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100


def validate_page(page: int) -> int:
    if isinstance(page, bool) or not isinstance(page, int):
        raise InvalidRequest("page", page, "page must be an integer")
    if page < 1:
        raise InvalidRequest("page", page, "page numbers start at 1")
    return page


def validate_page_size(page_size: int, max_page_size: int = MAX_PAGE_SIZE) -> int:
    if isinstance(page_size, bool) or not isinstance(page_size, int):
        raise InvalidRequest("page_size", page_size, "page_size must be an integer")
    if not 1 <= page_size <= max_page_size:
        raise InvalidRequest(
            "page_size",
            page_size,
            f"requested {page_size}, allowed range is 1..{max_page_size}",
        )
    return page_size


def paginate(
    sequence: Sequence[T],
    page: int,
    page_size: int,
    total_count: int | None = None,
    *,
    offset: int = 0,
    max_page_size: int = MAX_PAGE_SIZE,
) -> tuple[list[T], Pagination]:
    """Return the ``page``-th slice of ``sequence`` and its metadata.

    ``total_count`` defaults to ``len(sequence)``; strategies that report an
    independently counted total pass it explicitly. ``offset`` is the position
    of ``sequence[0]`` in the full ordering, so a window fetched for exactly this
    page is passed with ``offset=(page - 1) * page_size``. Pages
    beyond the end come back empty rather than raising.
    """

    validate_page(page)
    validate_page_size(page_size, max_page_size)
    total = len(sequence) if total_count is None else total_count
    pagination = Pagination.build(page, page_size, total)
    start = max(pagination.skip - offset, 0)
    return list(sequence[start : start + page_size]), pagination


__all__ = ["paginate", "validate_page", "validate_page_size", "DEFAULT_PAGE_SIZE", "MAX_PAGE_SIZE"]
