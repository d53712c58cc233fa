"""Range selection and chunking for URL lists.

Ranges are written the way operators think about list positions: 1-based
and inclusive, ``"start-end"``. Either side may be omitted (``"2-"`` is the
tail, ``"-10"`` the head) and ``0`` on either side means "from the
beginning" / "to the end".
"""
from __future__ import annotations

import re
from typing import Callable, Optional, Sequence, TypeVar

from .logging_utils import _crawler_event
from .utils import log_line

T = TypeVar("T")

_RANGE_RE = re.compile(r"^\s*(\d*)\s*(?:-\s*(\d*)\s*)?$")


def _parse_range(spec: str) -> tuple[Optional[int], Optional[int]]:
    match = _RANGE_RE.match(spec)
    if not match:
        raise ValueError(
            f"Invalid range format: {spec!r}. Start and end must be non-negative "
            "numbers and positions are 1-based."
        )
    start_text, end_text = match.group(1), match.group(2)
    start = int(start_text) if start_text else None
    end = int(end_text) if end_text else None
    return start, end


def resolve_range(spec: Optional[str], total: int) -> tuple[int, int]:
    """Translate ``spec`` into ``(start, end)`` slice bounds for ``total`` items.

    ``start`` is 0-based and ``end`` exclusive. A start beyond the list gives
    an empty slice; a start past the end keeps everything from the start.
    Raises ``ValueError`` when ``spec`` is not a range.
    """

    total = max(0, total)
    if spec is None or not str(spec).strip():
        return 0, total
    start1, end1 = _parse_range(str(spec))
    start = start1 - 1 if start1 and start1 > 0 else 0
    end = end1 if end1 and end1 > 0 else total
    end = min(end, total)
    if start >= total:
        return total, total
    if start >= end:
        return start, total
    return start, end


def apply_range(
    urls: Sequence[T],
    spec: Optional[str],
    log: Callable[[str], None] = log_line,
) -> list[T]:
    items = list(urls)
    if spec is None or not str(spec).strip():
        return items

    try:
        start, end = resolve_range(spec, len(items))
    except ValueError as exc:
        log(f"[RANGE] {exc} Proceeding with all {len(items)} URLs.")
        _crawler_event("warn", phase="range", spec=spec, kind="invalid")
        return items

    start1, end1 = _parse_range(str(spec))
    if start >= len(items):
        log(
            f"[RANGE] Start of range ({start + 1}) is beyond the total number of "
            f"URLs ({len(items)}). No URLs to process."
        )
        return []
    if end1 and end1 > 0 and start1 and start1 > end1:
        log(
            f"[RANGE] Start of range ({start1}) is greater than end of range ({end1}). "
            "Proceeding with URLs from start to end of list."
        )

    selected = items[start:end]
    log(
        f"[RANGE] Applied range {spec}: URLs {start + 1} to {end} "
        f"({len(selected)} of {len(items)})"
    )
    _crawler_event("state", phase="range", spec=spec, selected=len(selected), total=len(items))
    return selected


def chunk(urls: Sequence[T], size: int | None) -> list[list[T]]:
    """Split ``urls`` into consecutive chunks of at most ``size`` items."""

    items = list(urls)
    if not items:
        return []
    if not size or size <= 0:
        return [items]
    return [items[index : index + size] for index in range(0, len(items), size)]


__all__ = ["resolve_range", "apply_range", "chunk"]
