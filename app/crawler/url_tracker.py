"""Persistent URL dedup ledger backed by SQLite."""
from __future__ import annotations

import json
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable, Optional, Sequence

from . import config, db
from .error_taxonomy import StorageError
from .logging_utils import _crawler_event
from .results import TERMINAL_STATUSES, TaskError, TaskResult, UrlStatus, outcome_status
from .utils import log_line, normalize_url

# Keeps IN (...) lists well below SQLite's bound-parameter limit.
QUERY_BATCH_SIZE = 500

_TERMINAL_VALUES = tuple(sorted(status.value for status in TERMINAL_STATUSES))

_UPSERT_SQL = """
    INSERT INTO processed_urls (url, status, timestamp, error_code, retry_count, updated_at)
    VALUES (?, ?, ?, ?, ?, ?)
    ON CONFLICT(url) DO UPDATE SET
        status = excluded.status,
        timestamp = excluded.timestamp,
        error_code = excluded.error_code,
        retry_count = processed_urls.retry_count
            + (CASE WHEN excluded.status = 'retry' THEN 1 ELSE 0 END),
        updated_at = excluded.updated_at
"""


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _batched(items: Sequence[str], size: int) -> Iterable[Sequence[str]]:
    for index in range(0, len(items), size):
        yield items[index : index + size]


@dataclass(frozen=True)
class RangeAnalysis:
    total_in_range: int
    processed_count: int
    unprocessed_count: int
    is_fully_processed: bool


@dataclass(frozen=True)
class RangeSuggestion:
    start: int
    end: int
    total: int
    unprocessed: int

    @property
    def range_spec(self) -> str:
        return f"{self.start}-{self.end}"

    @property
    def efficiency(self) -> float:
        return self.unprocessed / self.total if self.total else 0.0


class DedupStore:
    """Ledger of URL -> last known outcome.

    Opened once per scan and closed on every exit path. Writes are serialised
    with a re-entrant lock; reads during a scan fail open, so a storage hiccup
    leads to reprocessing a URL rather than silently skipping it.
    """

    def __init__(
        self,
        path: Optional[Path] = None,
        *,
        max_retries: int | None = None,
        log: Callable[[str], None] = log_line,
    ) -> None:
        self.path = Path(path or config.DB_PATH)
        self.max_retries = config.TRACKER_MAX_RETRIES if max_retries is None else max_retries
        self._log = log
        self._lock = threading.RLock()
        try:
            self._conn = db.get_connection(self.path)
            db.initialize_schema(self._conn)
        except sqlite3.Error as exc:
            raise StorageError(f"Unable to open URL ledger at {self.path}: {exc}") from exc
        self._closed = False

    # ------------------------------------------------------------------ reads

    def _terminal_keys(self, keys: Sequence[str]) -> set[str]:
        found: set[str] = set()
        status_marks = ",".join("?" for _ in _TERMINAL_VALUES)
        for batch in _batched(keys, QUERY_BATCH_SIZE):
            url_marks = ",".join("?" for _ in batch)
            rows = self._conn.execute(
                f"SELECT url FROM processed_urls "
                f"WHERE url IN ({url_marks}) AND status IN ({status_marks})",
                (*batch, *_TERMINAL_VALUES),
            ).fetchall()
            found.update(row["url"] for row in rows)
        return found

    def filter_unprocessed(self, urls: Sequence[str]) -> list[str]:
        """Return ``urls`` (order preserved) that still need processing."""

        urls = list(urls)
        if not urls:
            return []
        keys = [normalize_url(url) for url in urls]
        try:
            with self._lock:
                done = self._terminal_keys(sorted(set(keys)))
        except sqlite3.Error as exc:
            self._log(f"[TRACKER] filter_unprocessed failed; treating all URLs as unprocessed: {exc}")
            _crawler_event("error", phase="tracker", op="filter_unprocessed", error=str(exc))
            return urls
        return [url for url, key in zip(urls, keys) if key not in done]

    def is_processed(self, url: str) -> bool:
        key = normalize_url(url)
        try:
            with self._lock:
                return bool(self._terminal_keys([key]))
        except sqlite3.Error as exc:
            self._log(f"[TRACKER] is_processed failed for {url}: {exc}")
            return False

    def get_record(self, url: str) -> Optional[dict]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM processed_urls WHERE url = ?", (normalize_url(url),)
            ).fetchone()
        return dict(row) if row else None

    def count(self) -> int:
        with self._lock:
            row = self._conn.execute("SELECT COUNT(*) AS n FROM processed_urls").fetchone()
        return int(row["n"])

    def stats(self) -> dict[str, int]:
        """Return record counts grouped by status."""

        try:
            with self._lock:
                rows = self._conn.execute(
                    "SELECT status, COUNT(*) AS n FROM processed_urls GROUP BY status"
                ).fetchall()
        except sqlite3.Error as exc:
            self._log(f"[TRACKER] stats query failed: {exc}")
            return {}
        return {row["status"]: int(row["n"]) for row in rows}

    def get_urls_for_retry(self, limit: int | None = None) -> list[str]:
        sql = (
            "SELECT url FROM processed_urls WHERE status = ? AND retry_count < ? "
            "ORDER BY timestamp"
        )
        params: list[object] = [UrlStatus.RETRY.value, self.max_retries]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [row["url"] for row in rows]

    # ----------------------------------------------------------------- writes

    def mark_processed(
        self, url: str, status: UrlStatus | str, error_code: str | None = None
    ) -> None:
        """Upsert the outcome for ``url``; raises :class:`StorageError`."""

        status_value = UrlStatus(status).value
        key = normalize_url(url)
        now = _now_iso()
        initial_retries = 1 if status_value == UrlStatus.RETRY.value else 0
        try:
            with self._lock, self._conn:
                self._conn.execute(
                    _UPSERT_SQL, (key, status_value, now, error_code, initial_retries, now)
                )
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to mark {url} as {status_value}: {exc}") from exc

    def _status_for(self, result: TaskResult, retry_counts: dict[str, int]) -> UrlStatus:
        status = outcome_status(result)
        if isinstance(result, TaskError) and result.retryable:
            if retry_counts.get(normalize_url(result.url), 0) < self.max_retries:
                return UrlStatus.RETRY
        return status

    def update_from_task_results(self, results: Iterable[TaskResult]) -> dict[str, int]:
        """Record a batch of outcomes in one transaction.

        Retryable errors are stored as ``retry`` while under the retry budget
        and as ``error`` afterwards. Failures are logged, never raised.
        """

        results = list(results)
        counts: dict[str, int] = {}
        if not results:
            return counts
        now = _now_iso()
        try:
            with self._lock:
                error_keys = sorted(
                    {normalize_url(r.url) for r in results if isinstance(r, TaskError)}
                )
                retry_counts: dict[str, int] = {}
                for batch in _batched(error_keys, QUERY_BATCH_SIZE):
                    marks = ",".join("?" for _ in batch)
                    for row in self._conn.execute(
                        f"SELECT url, retry_count FROM processed_urls WHERE url IN ({marks})",
                        tuple(batch),
                    ):
                        retry_counts[row["url"]] = int(row["retry_count"])

                rows = []
                for result in results:
                    status = self._status_for(result, retry_counts)
                    code = result.code if isinstance(result, TaskError) else None
                    rows.append(
                        (
                            normalize_url(result.url),
                            status.value,
                            now,
                            code,
                            1 if status is UrlStatus.RETRY else 0,
                            now,
                        )
                    )
                    counts[status.value] = counts.get(status.value, 0) + 1
                with self._conn:
                    self._conn.executemany(_UPSERT_SQL, rows)
        except sqlite3.Error as exc:
            self._log(f"[TRACKER] Failed to record {len(results)} results: {exc}")
            _crawler_event("error", phase="tracker", op="update_from_task_results", error=str(exc))
            return {}
        _crawler_event("state", phase="tracker", op="update_from_task_results", **counts)
        return counts

    def import_existing_results(self, directory: Path, *, only_if_empty: bool = True) -> int:
        """Backfill the ledger from previously written result files.

        Scans ``*.json`` files below ``directory`` holding arrays of objects
        with a ``url`` key and marks each URL ``success``.
        """

        directory = Path(directory)
        if not directory.exists():
            self._log(f"[TRACKER] Store directory does not exist: {directory}")
            return 0
        if only_if_empty and self.count() > 0:
            return 0

        now = _now_iso()
        rows: list[tuple] = []
        for path in sorted(directory.rglob("*.json")):
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, ValueError) as exc:
                self._log(f"[TRACKER] Skipping unreadable result file {path}: {exc}")
                continue
            if not isinstance(data, list):
                continue
            for item in data:
                if isinstance(item, dict) and isinstance(item.get("url"), str):
                    key = normalize_url(item["url"])
                    if key:
                        rows.append((key, UrlStatus.SUCCESS.value, now, None, 0, now))

        if rows:
            try:
                with self._lock, self._conn:
                    self._conn.executemany(_UPSERT_SQL, rows)
            except sqlite3.Error as exc:
                self._log(f"[TRACKER] Import of existing results failed: {exc}")
                return 0
        self._log(f"[TRACKER] Imported {len(rows)} existing results from {directory}")
        return len(rows)

    def reset_tracking(self) -> None:
        with self._lock, self._conn:
            self._conn.execute("DELETE FROM processed_urls")
        self._log("[TRACKER] URL tracking data has been reset")

    def vacuum(self) -> None:
        with self._lock:
            self._conn.execute("VACUUM")
        self._log("[TRACKER] Ledger vacuumed")

    # -------------------------------------------------------------- analytics

    def analyze_range(self, start: int, end: int, urls: Sequence[str]) -> RangeAnalysis:
        """Summarise ``urls[start:end]`` against the ledger."""

        in_range = list(urls[start:end])
        unprocessed = self.filter_unprocessed(in_range)
        processed = len(in_range) - len(unprocessed)
        return RangeAnalysis(
            total_in_range=len(in_range),
            processed_count=processed,
            unprocessed_count=len(unprocessed),
            is_fully_processed=bool(in_range) and not unprocessed,
        )

    def suggest_next_ranges(
        self, urls: Sequence[str], window_size: int = 1000, count: int = 3
    ) -> list[RangeSuggestion]:
        """Return up to ``count`` 1-based windows that still hold unprocessed URLs."""

        urls = list(urls)
        if window_size <= 0 or count <= 0 or not urls:
            return []
        pending = set(self.filter_unprocessed(urls))
        suggestions: list[RangeSuggestion] = []
        for start in range(0, len(urls), window_size):
            window = urls[start : start + window_size]
            remaining = sum(1 for url in window if url in pending)
            if remaining:
                suggestions.append(
                    RangeSuggestion(
                        start=start + 1,
                        end=start + len(window),
                        total=len(window),
                        unprocessed=remaining,
                    )
                )
                if len(suggestions) >= count:
                    break
        return suggestions

    # -------------------------------------------------------------- lifecycle

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._conn.close()

    def __enter__(self) -> "DedupStore":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


__all__ = ["DedupStore", "RangeAnalysis", "RangeSuggestion", "QUERY_BATCH_SIZE"]
