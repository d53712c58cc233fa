"""Process-wide logging, data directories and URL helpers."""
from __future__ import annotations

import logging
import shutil
import sys
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional
from urllib.parse import urlsplit, urlunsplit

from . import config

LOGGER = logging.getLogger("adscan")
LOG_FORMAT = "[%(asctime)s] %(threadName)s %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_log_lock = threading.Lock()
_active_log_path: Optional[Path] = None


def _attach_handlers(log_path: Path) -> None:
    """Route ``LOGGER`` to stdout and ``log_path``, replacing earlier handlers."""

    global _active_log_path

    log_path.parent.mkdir(parents=True, exist_ok=True)
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    handlers: list[logging.Handler] = [
        logging.StreamHandler(sys.stdout),
        logging.FileHandler(log_path, encoding="utf-8"),
    ]
    for handler in handlers:
        handler.setFormatter(formatter)

    for old in LOGGER.handlers[:]:
        LOGGER.removeHandler(old)
        try:
            old.close()
        except Exception:  # noqa: BLE001
            pass
    for handler in handlers:
        LOGGER.addHandler(handler)
    LOGGER.setLevel(logging.INFO)
    LOGGER.propagate = False
    _active_log_path = log_path


def _logger_ready() -> None:
    with _log_lock:
        if _active_log_path is None:
            _attach_handlers(config.LOG_FILE)


def setup_run_logger() -> Path:
    """Start a per-scan log file named after the current UTC time."""

    stamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
    log_path = config.LOG_DIR / f"scan_{stamp}.log"
    with _log_lock:
        _attach_handlers(log_path)
    LOGGER.info("Scan log: %s", log_path)
    return log_path


def get_current_log_path() -> Path:
    _logger_ready()
    assert _active_log_path is not None
    return _active_log_path


def ensure_dirs() -> None:
    """Create the data, log, error, store and cache directories."""

    for path in (
        config.DATA_DIR,
        config.LOG_DIR,
        config.ERRORS_DIR,
        config.STORE_DIR,
        config.CACHE_DIR,
    ):
        path.mkdir(parents=True, exist_ok=True)


def disk_has_room(min_free_mb: int, path: Path) -> bool:
    """Return ``True`` when the filesystem holding ``path`` has enough space."""

    try:
        usage = shutil.disk_usage(path)
    except OSError:
        return False
    return usage.free >= min_free_mb * 1024 * 1024


def log_line(message: str) -> None:
    _logger_ready()
    LOGGER.info(message)


def normalize_url(url: str) -> str:
    """Return the canonical ledger key for ``url``.

    Adds ``https://`` when no scheme is present, lowercases the scheme and
    host, drops the fragment and gives bare hosts a trailing slash. Paths and
    query strings are kept as-is since they are case sensitive.
    """

    raw = (url or "").strip()
    if not raw:
        return ""
    if "://" not in raw:
        raw = f"https://{raw}"
    parts = urlsplit(raw)
    path = parts.path or "/"
    return urlunsplit(
        (parts.scheme.lower(), parts.netloc.lower(), path, parts.query, "")
    )


def extract_domain(url: str) -> str:
    """Return the lowercase hostname of ``url`` (``""`` when unparsable)."""

    raw = (url or "").strip()
    if raw and "://" not in raw:
        raw = f"https://{raw}"
    try:
        host = urlsplit(raw).hostname
    except ValueError:
        return ""
    return (host or "").lower()


__all__ = [
    "LOGGER",
    "setup_run_logger",
    "get_current_log_path",
    "ensure_dirs",
    "disk_has_room",
    "log_line",
    "normalize_url",
    "extract_domain",
]
