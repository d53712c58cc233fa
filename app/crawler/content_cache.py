"""Bounded content cache with optional JSON persistence."""
from __future__ import annotations

import base64
import hashlib
import json
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Union

from . import config
from .logging_utils import _crawler_event
from .utils import log_line

CacheValue = Union[bytes, str]

# Eviction frees space down to this fraction of each bound.
EVICTION_TARGET_RATIO = 0.8


@dataclass
class CacheEntry:
    key: str
    value: CacheValue
    size_bytes: int
    created_at: float
    last_access_at: float
    access_count: int = 0


@dataclass(frozen=True)
class CacheStats:
    entries: int
    size_bytes: int
    hits: int
    misses: int
    hit_rate: float


def _size_of(value: CacheValue) -> int:
    if isinstance(value, bytes):
        return len(value)
    return len(value.encode("utf-8"))


def hash_key(key: str) -> str:
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


class ContentCache:
    """Thread-safe cache bounded by entry count and aggregate size.

    Eviction keeps frequently read entries over merely recent ones: the score
    is ``access_count`` plus a recency fraction in ``[0, 1)``, so recency only
    breaks ties between entries read equally often. Persistence is
    best-effort; any disk problem switches the cache to memory-only.
    """

    def __init__(
        self,
        *,
        max_entries: int | None = None,
        max_size_bytes: int | None = None,
        ttl_seconds: float | None = None,
        persist_dir: Optional[Path] = None,
        clock: Callable[[], float] = time.time,
        log: Callable[[str], None] = log_line,
    ) -> None:
        self.max_entries = max(1, max_entries or config.CACHE_MAX_ENTRIES)
        self.max_size_bytes = max(1, max_size_bytes or config.CACHE_MAX_SIZE_BYTES)
        self.ttl_seconds = config.CACHE_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        self._clock = clock
        self._log = log
        self._lock = threading.RLock()
        self._entries: dict[str, CacheEntry] = {}
        self._size = 0
        self._hits = 0
        self._misses = 0
        self._persist_dir: Optional[Path] = None
        if persist_dir is not None:
            self._persist_dir = Path(persist_dir)
            self._load_persisted()

    @property
    def persistent(self) -> bool:
        return self._persist_dir is not None

    # ------------------------------------------------------------- public API

    def get(self, key: str) -> Optional[CacheValue]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            now = self._clock()
            if self._expired(entry, now):
                self._remove(key)
                self._misses += 1
                return None
            entry.access_count += 1
            entry.last_access_at = now
            self._hits += 1
            return entry.value

    def set(self, key: str, value: CacheValue) -> bool:
        """Store ``value``; returns ``False`` when it can never fit."""

        size = _size_of(value)
        if size > self.max_size_bytes:
            _crawler_event("state", phase="cache", kind="too_large", key=key, size=size)
            return False
        with self._lock:
            now = self._clock()
            if key in self._entries:
                self._remove(key)
            entry = CacheEntry(
                key=key, value=value, size_bytes=size, created_at=now, last_access_at=now
            )
            self._entries[key] = entry
            self._size += size
            if len(self._entries) > self.max_entries or self._size > self.max_size_bytes:
                self._evict(protect=key, now=now)
            self._persist(entry)
        return True

    def delete(self, key: str) -> bool:
        with self._lock:
            if key not in self._entries:
                return False
            self._remove(key)
            return True

    def clear(self) -> None:
        with self._lock:
            for key in list(self._entries):
                self._remove(key)
            self._hits = 0
            self._misses = 0

    def get_stats(self) -> CacheStats:
        with self._lock:
            lookups = self._hits + self._misses
            return CacheStats(
                entries=len(self._entries),
                size_bytes=self._size,
                hits=self._hits,
                misses=self._misses,
                hit_rate=self._hits / lookups if lookups else 0.0,
            )

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries

    # -------------------------------------------------------------- internals

    def _expired(self, entry: CacheEntry, now: float) -> bool:
        return self.ttl_seconds > 0 and now - entry.created_at > self.ttl_seconds

    def _remove(self, key: str) -> None:
        entry = self._entries.pop(key)
        self._size -= entry.size_bytes
        self._unpersist(key)

    def _evict(self, *, protect: str, now: float) -> None:
        for key in [k for k, e in self._entries.items() if k != protect and self._expired(e, now)]:
            self._remove(key)

        target_entries = int(self.max_entries * EVICTION_TARGET_RATIO)
        target_size = int(self.max_size_bytes * EVICTION_TARGET_RATIO)
        if len(self._entries) <= target_entries and self._size <= target_size:
            return

        candidates = [e for k, e in self._entries.items() if k != protect]
        if not candidates:
            return
        oldest = min(e.last_access_at for e in candidates)
        span = max(e.last_access_at for e in candidates) - oldest

        def _score(entry: CacheEntry) -> float:
            recency = (entry.last_access_at - oldest) / span * 0.999 if span > 0 else 0.0
            return entry.access_count + recency

        evicted = 0
        for entry in sorted(candidates, key=_score):
            if len(self._entries) <= target_entries and self._size <= target_size:
                break
            self._remove(entry.key)
            evicted += 1
        _crawler_event(
            "state",
            phase="cache",
            kind="evicted",
            evicted=evicted,
            entries=len(self._entries),
            size_bytes=self._size,
        )

    # ------------------------------------------------------------ persistence

    def _disable_persistence(self, reason: str) -> None:
        self._log(f"[CACHE] Persistence disabled, continuing in memory: {reason}")
        _crawler_event("error", phase="cache", kind="persistence_disabled", error=reason)
        self._persist_dir = None

    def _entry_path(self, key: str) -> Path:
        assert self._persist_dir is not None
        return self._persist_dir / f"{hash_key(key)}.json"

    def _persist(self, entry: CacheEntry) -> None:
        if self._persist_dir is None:
            return
        if isinstance(entry.value, bytes):
            value, encoding = base64.b64encode(entry.value).decode("ascii"), "base64"
        else:
            value, encoding = entry.value, "text"
        payload = {
            "key": entry.key,
            "value": value,
            "encoding": encoding,
            "size_bytes": entry.size_bytes,
            "created_at": entry.created_at,
            "last_access_at": entry.last_access_at,
            "access_count": entry.access_count,
        }
        try:
            self._entry_path(entry.key).write_text(json.dumps(payload), encoding="utf-8")
        except OSError as exc:
            self._disable_persistence(str(exc))

    def _unpersist(self, key: str) -> None:
        if self._persist_dir is None:
            return
        try:
            self._entry_path(key).unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            self._disable_persistence(str(exc))

    def _load_persisted(self) -> None:
        assert self._persist_dir is not None
        try:
            self._persist_dir.mkdir(parents=True, exist_ok=True)
            paths = sorted(self._persist_dir.glob("*.json"))
        except OSError as exc:
            self._disable_persistence(str(exc))
            return

        now = self._clock()
        loaded = 0
        for path in paths:
            try:
                payload = json.loads(path.read_text(encoding="utf-8"))
                raw = payload["value"]
                value: CacheValue = (
                    base64.b64decode(raw) if payload.get("encoding") == "base64" else str(raw)
                )
                entry = CacheEntry(
                    key=str(payload["key"]),
                    value=value,
                    size_bytes=_size_of(value),
                    created_at=float(payload["created_at"]),
                    last_access_at=float(payload.get("last_access_at", payload["created_at"])),
                    access_count=int(payload.get("access_count", 0)),
                )
            except (OSError, ValueError, KeyError, TypeError) as exc:
                self._log(f"[CACHE] Ignoring corrupt cache file {path.name}: {exc}")
                continue
            if self._expired(entry, now) or len(self._entries) >= self.max_entries:
                continue
            if self._size + entry.size_bytes > self.max_size_bytes:
                continue
            self._entries[entry.key] = entry
            self._size += entry.size_bytes
            loaded += 1
        if loaded:
            self._log(f"[CACHE] Loaded {loaded} persisted entries from {self._persist_dir}")


__all__ = ["ContentCache", "CacheEntry", "CacheStats", "hash_key"]
