"""Loading URL lists from local files or HTTP(S) sources."""
from __future__ import annotations

import csv
import io
import json
import re
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

import requests

from . import config
from .content_cache import ContentCache
from .utils import log_line

_URL_RE = re.compile(r"https?://[^\s\"'<>,]+", re.I)
_SCHEMELESS_RE = re.compile(r"^(?:[a-z0-9_-]+\.)+[a-z]{2,}(?::\d+)?(?:/\S*)?$", re.I)


class SourceError(RuntimeError):
    """A URL source could not be read."""


def _coerce_url(raw: str) -> Optional[str]:
    value = raw.strip().strip("\"'")
    if not value or value.startswith("#"):
        return None
    if "://" in value:
        return value if value.lower().startswith(("http://", "https://")) else None
    if _SCHEMELESS_RE.match(value):
        return f"https://{value}"
    return None


def _walk_json(node: Any) -> Iterable[str]:
    if isinstance(node, str):
        if _URL_RE.fullmatch(node.strip()):
            yield node.strip()
    elif isinstance(node, list):
        for item in node:
            yield from _walk_json(item)
    elif isinstance(node, dict):
        for value in node.values():
            yield from _walk_json(value)


def extract_urls(name: str, content: str, log: Callable[[str], None] = log_line) -> list[str]:
    """Extract unique URLs from ``content`` according to the file type of ``name``.

    ``.json`` collects every string value that is a URL, ``.csv`` reads the
    first column, and anything else is treated as one URL per line with
    ``#`` comments. Schemeless domains get ``https://``.
    """

    lowered = name.lower().split("?", 1)[0]
    found: list[str] = []
    if lowered.endswith(".json"):
        try:
            found.extend(_walk_json(json.loads(content)))
        except ValueError as exc:
            log(f"[SOURCES] Could not parse JSON from {name} ({exc}); scanning raw text")
            found.extend(_URL_RE.findall(content))
    elif lowered.endswith(".csv"):
        for row in csv.reader(io.StringIO(content)):
            if not row:
                continue
            url = _coerce_url(row[0])
            if url:
                found.append(url)
            elif row[0].strip() and not row[0].strip().startswith("#"):
                log(f"[SOURCES] Skipping non-URL CSV value in {name}: {row[0].strip()[:80]!r}")
    else:
        for line in content.splitlines():
            url = _coerce_url(line)
            if url:
                found.append(url)

    urls = list(dict.fromkeys(found))
    log(f"[SOURCES] Extracted {len(urls)} URLs from {name}")
    return urls


def github_raw_url(url: str) -> str:
    """Point a GitHub ``/blob/`` file view at its raw content."""

    if "github.com" in url and "/blob/" in url:
        return url.replace("github.com", "raw.githubusercontent.com", 1).replace("/blob/", "/", 1)
    return url


def build_http_session() -> requests.Session:
    session = requests.Session()
    session.headers.update(
        {
            "User-Agent": config.COMMON_HEADERS.get("User-Agent", "adscan"),
            "Accept": "text/plain, text/csv, application/json, */*;q=0.8",
        }
    )
    return session


def fetch_source(
    url: str,
    *,
    session: Optional[requests.Session] = None,
    cache: Optional[ContentCache] = None,
    timeout: float | None = None,
    log: Callable[[str], None] = log_line,
) -> str:
    """Download ``url`` as text, serving repeat fetches from ``cache``."""

    target = github_raw_url(url)
    if cache is not None:
        cached = cache.get(target)
        if cached is not None:
            log(f"[SOURCES] Cache hit for {target}")
            return cached.decode("utf-8") if isinstance(cached, bytes) else str(cached)

    http = session or build_http_session()
    try:
        response = http.get(target, timeout=timeout or config.HTTP_TIMEOUT_SECONDS)
        response.raise_for_status()
    except requests.RequestException as exc:
        raise SourceError(f"Failed to fetch URL source {target}: {exc}") from exc
    finally:
        if session is None:
            http.close()

    text = response.text
    if cache is not None:
        cache.set(target, text)
    return text


def load_urls(
    source: str,
    *,
    session: Optional[requests.Session] = None,
    cache: Optional[ContentCache] = None,
    limit: int | None = None,
    log: Callable[[str], None] = log_line,
) -> list[str]:
    """Load the URL list named by ``source`` (a path or an http(s) URL).

    Raises ``SourceError`` when the source cannot be read.
    """

    if source.lower().startswith(("http://", "https://")):
        log(f"[SOURCES] Fetching URL list from {source}")
        content = fetch_source(source, session=session, cache=cache, log=log)
        urls = extract_urls(source, content, log=log)
    else:
        path = Path(source).expanduser()
        try:
            content = path.read_text(encoding="utf-8-sig")
        except OSError as exc:
            raise SourceError(f"Failed to read URL file {path}: {exc}") from exc
        urls = extract_urls(path.name, content, log=log)

    if limit and limit > 0:
        urls = urls[:limit]
    return urls


__all__ = [
    "SourceError",
    "extract_urls",
    "github_raw_url",
    "build_http_session",
    "fetch_source",
    "load_urls",
]
