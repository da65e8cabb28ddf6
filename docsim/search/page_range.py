"""Source page-range parsing for similarity requests."""

from __future__ import annotations

from typing import Any, Mapping

from docsim.core.exceptions import PageRangeError
from docsim.vectorstore.base import PageRange


def parse_page_number(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str) and value.strip():
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


def validate_page_range(
    start: int | None,
    end: int | None,
    max_page: int | None = None,
) -> PageRange:
    if start is None or end is None:
        raise PageRangeError("Enter both start and end pages.")
    if start < 1 or end < 1:
        raise PageRangeError("Page numbers must be at least 1.")
    if start > end:
        raise PageRangeError("Start page must be less than or equal to end page.")
    if max_page is not None and (start > max_page or end > max_page):
        raise PageRangeError(f"Page range must be within 1-{max_page}.")
    return start, end


def requested_page_range(raw: Any) -> tuple[int | None, int | None] | None:
    """
    `{"use_entire_document": false, "start_page": 2, "end_page": "5"}` → (2, 5).

    Anything other than an explicit `use_entire_document: false` means the
    whole document (None). Bounds are parsed here and validated later, once
    the document's page count is known.
    """
    if not raw or not isinstance(raw, Mapping):
        return None
    if raw.get("use_entire_document", True) is not False:
        return None
    return parse_page_number(raw.get("start_page")), parse_page_number(raw.get("end_page"))


def sanitize_page_range(raw: Mapping[str, Any] | None, max_page: int | None = None) -> PageRange | None:
    requested = requested_page_range(raw)
    if requested is None:
        return None
    return validate_page_range(requested[0], requested[1], max_page)
