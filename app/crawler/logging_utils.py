from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Any

from .utils import log_line

# Longer sequences (URL batches, failed host lists) are cut to a sample plus a count.
MAX_LISTED_ITEMS = 5


def _render(value: Any) -> str:
    if isinstance(value, Enum):
        value = value.value
    elif isinstance(value, Path):
        value = str(value)
    elif isinstance(value, float):
        return f"{value:.3f}".rstrip("0").rstrip(".")
    elif isinstance(value, (list, tuple, set, frozenset)):
        items = sorted(value, key=str) if isinstance(value, (set, frozenset)) else list(value)
        if len(items) > MAX_LISTED_ITEMS:
            shown = ", ".join(_render(item) for item in items[:MAX_LISTED_ITEMS])
            return f"[{shown}, ...+{len(items) - MAX_LISTED_ITEMS}]"
        return "[" + ", ".join(_render(item) for item in items) + "]"
    return repr(value)


def _crawler_event(label: str = "", /, *, phase: str | None = None, **fields: Any) -> None:
    """Emit one ``[CRAWLER][LABEL] key=value`` line.

    ``phase`` becomes the label when no label is given; otherwise it leads
    the payload so grepping by phase keeps working for every label.
    """

    try:
        tag = (label or phase or "event").upper()
        pairs = [("phase", phase)] if phase and label else []
        pairs.extend(sorted(fields.items()))
        payload = ", ".join(f"{key}={_render(value)}" for key, value in pairs)
        log_line(f"[CRAWLER][{tag}] {payload}".rstrip())
    except Exception:  # noqa: BLE001
        # Never let logging break a scan.
        return


__all__ = ["_crawler_event", "MAX_LISTED_ITEMS"]
