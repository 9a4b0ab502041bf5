"""Page offset resolution.

Records carry the page number printed in the extraction output ("intrinsic"
page). The uploaded page documents are numbered physically, so each project
stores an offset: ``physical = intrinsic + page_offset``. Offsets are applied
at read time only and never written back into stored records.
"""
from __future__ import annotations

import re

from esglabel.errors import ValidationError

PAGE_NAME_RE = re.compile(r"page_(\d+)\.pdf$", re.IGNORECASE)


def resolve_page(intrinsic_page: int, offset: int) -> int:
    return intrinsic_page + offset


def start_page_to_offset(start_page: int) -> int:
    """Translate "record page 1 is physical page N" into the stored offset."""
    if isinstance(start_page, bool) or not isinstance(start_page, int) or start_page < 1:
        raise ValidationError("Start page must be an integer of at least 1")
    return start_page - 1


def offset_to_start_page(offset: int) -> int:
    return offset + 1


def parse_offset(value: object) -> int:
    """Validate an administrator-supplied offset (non-negative integer)."""
    if isinstance(value, bool):
        raise ValidationError("Page offset must be zero or a positive integer")
    if isinstance(value, int):
        parsed = value
    elif isinstance(value, str) and re.fullmatch(r"\s*-?\d+\s*", value):
        parsed = int(value)
    else:
        raise ValidationError("Page offset must be zero or a positive integer")
    if parsed < 0:
        raise ValidationError("Page offset must be zero or a positive integer")
    return parsed


def page_index_from_name(name: str) -> int | None:
    """Extract the page index from names like ``report_2024_page_12.pdf``."""
    match = PAGE_NAME_RE.search(name.strip())
    return int(match.group(1)) if match else None
