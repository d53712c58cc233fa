"""Per-domain health statistics and circuit-breaker state."""
from __future__ import annotations

import json
import threading
import time
from dataclasses import asdict, dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, Optional

from . import config
from .error_codes import PERMANENT_ERROR_CODES
from .error_taxonomy import ErrorInfo
from .logging_utils import _crawler_event
from .utils import extract_domain, log_line


class DomainState(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    BLOCKED = "blocked"


@dataclass
class DomainHealthRecord:
    domain: str
    consecutive_failures: int = 0
    total_successes: int = 0
    total_failures: int = 0
    state: DomainState = DomainState.HEALTHY
    last_failure_at: Optional[float] = None
    last_success_at: Optional[float] = None
    cooldown_until: Optional[float] = None
    last_error_code: Optional[str] = None
    avg_latency: Optional[float] = None

    @property
    def total_attempts(self) -> int:
        return self.total_successes + self.total_failures

    def to_dict(self) -> dict:
        payload = asdict(self)
        payload["state"] = self.state.value
        return payload

    @classmethod
    def from_dict(cls, payload: dict) -> "DomainHealthRecord":
        data = dict(payload)
        data["state"] = DomainState(data.get("state", DomainState.HEALTHY.value))
        return cls(**data)


class DomainHealthTracker:
    """Circuit breaker keyed by hostname.

    ``HEALTHY -> DEGRADED -> BLOCKED`` as the consecutive failure streak
    crosses the two thresholds. A blocked domain is skipped until
    ``cooldown_until``; after that the next task acts as the probe and a
    success returns the domain to ``HEALTHY``.
    """

    def __init__(
        self,
        *,
        degraded_threshold: int | None = None,
        blocked_threshold: int | None = None,
        cooldown_base_seconds: float | None = None,
        cooldown_max_seconds: float | None = None,
        state_path: Optional[Path] = None,
        clock: Callable[[], float] = time.time,
        log: Callable[[str], None] = log_line,
    ) -> None:
        self.degraded_threshold = degraded_threshold or config.DOMAIN_DEGRADED_THRESHOLD
        self.blocked_threshold = blocked_threshold or config.DOMAIN_BLOCKED_THRESHOLD
        self.cooldown_base_seconds = (
            config.DOMAIN_COOLDOWN_BASE_SECONDS
            if cooldown_base_seconds is None
            else cooldown_base_seconds
        )
        self.cooldown_max_seconds = (
            config.DOMAIN_COOLDOWN_MAX_SECONDS
            if cooldown_max_seconds is None
            else cooldown_max_seconds
        )
        self.state_path = Path(state_path) if state_path else None
        self._clock = clock
        self._log = log
        self._lock = threading.Lock()
        self._records: dict[str, DomainHealthRecord] = {}
        if self.state_path is not None:
            self.load()

    # ----------------------------------------------------------- transitions

    def _record_for(self, url: str) -> Optional[DomainHealthRecord]:
        domain = extract_domain(url)
        if not domain:
            return None
        record = self._records.get(domain)
        if record is None:
            record = DomainHealthRecord(domain=domain)
            self._records[domain] = record
        return record

    def cooldown_seconds(self, streak: int) -> float:
        exponent = max(0, streak - self.blocked_threshold)
        return float(min(self.cooldown_base_seconds * 2**exponent, self.cooldown_max_seconds))

    def record_success(self, url: str, latency: float | None = None) -> None:
        with self._lock:
            record = self._record_for(url)
            if record is None:
                return
            previous = record.state
            record.consecutive_failures = 0
            record.total_successes += 1
            record.last_success_at = self._clock()
            record.cooldown_until = None
            record.state = DomainState.HEALTHY
            if latency is not None:
                if record.avg_latency is None:
                    record.avg_latency = latency
                else:
                    n = record.total_successes
                    record.avg_latency += (latency - record.avg_latency) / n
        if previous is not DomainState.HEALTHY:
            _crawler_event(
                "state", phase="domain_health", kind="recovered", domain=record.domain,
                previous=previous.value,
            )

    def record_failure(self, url: str, error: ErrorInfo | None = None) -> DomainState:
        with self._lock:
            record = self._record_for(url)
            if record is None:
                return DomainState.HEALTHY
            now = self._clock()
            previous = record.state
            record.consecutive_failures += 1
            record.total_failures += 1
            record.last_failure_at = now
            if error is not None:
                record.last_error_code = error.code
            streak = record.consecutive_failures
            if streak >= self.blocked_threshold:
                record.state = DomainState.BLOCKED
                record.cooldown_until = now + self.cooldown_seconds(streak)
            elif streak >= self.degraded_threshold:
                record.state = DomainState.DEGRADED
            state = record.state
            cooldown_until = record.cooldown_until
        if state is not previous or state is DomainState.BLOCKED:
            _crawler_event(
                "state",
                phase="domain_health",
                kind=state.value,
                domain=record.domain,
                consecutive_failures=streak,
                cooldown_until=cooldown_until,
                error_code=error.code if error else None,
            )
        return state

    # --------------------------------------------------------------- queries

    def get(self, url_or_domain: str) -> Optional[DomainHealthRecord]:
        domain = extract_domain(url_or_domain)
        with self._lock:
            record = self._records.get(domain)
            return replace(record) if record else None

    def state_of(self, url: str) -> DomainState:
        record = self.get(url)
        return record.state if record else DomainState.HEALTHY

    def is_blocked(self, url: str) -> bool:
        """True while the domain is blocked and its cooldown has not elapsed."""

        record = self.get(url)
        if record is None or record.state is not DomainState.BLOCKED:
            return False
        return record.cooldown_until is not None and self._clock() < record.cooldown_until

    def filter_schedulable(self, urls: Iterable[str]) -> tuple[list[str], list[str]]:
        schedulable: list[str] = []
        blocked: list[str] = []
        for url in urls:
            (blocked if self.is_blocked(url) else schedulable).append(url)
        return schedulable, blocked

    def is_likely_to_fail(self, url: str) -> tuple[bool, str | None]:
        record = self.get(url)
        if record is None:
            return False, None
        if self.is_blocked(url):
            return True, "domain is blocked"
        if record.total_failures >= 3 and record.total_successes == 0:
            return True, f"{record.total_failures} failures and no success"
        attempts = record.total_attempts
        if attempts > 5 and record.total_failures / attempts > 0.8:
            return True, f"failure rate {record.total_failures}/{attempts}"
        if record.consecutive_failures and record.last_error_code in PERMANENT_ERROR_CODES:
            return True, f"permanent error {record.last_error_code}"
        return False, None

    def prioritize_urls(self, urls: Iterable[str]) -> dict[str, list[str]]:
        """Group URLs into ``healthy``, ``risky`` and ``failing`` buckets."""

        groups: dict[str, list[str]] = {"healthy": [], "risky": [], "failing": []}
        for url in urls:
            record = self.get(url)
            if record is None or record.consecutive_failures == 0:
                groups["healthy"].append(url)
            elif self.is_likely_to_fail(url)[0]:
                groups["failing"].append(url)
            else:
                groups["risky"].append(url)
        return groups

    def snapshot(self) -> dict[str, dict]:
        with self._lock:
            return {domain: record.to_dict() for domain, record in sorted(self._records.items())}

    def summary(self) -> dict[str, int]:
        counts = {state.value: 0 for state in DomainState}
        with self._lock:
            for record in self._records.values():
                counts[record.state.value] += 1
        return counts

    # ----------------------------------------------------------- persistence

    def load(self) -> None:
        if self.state_path is None or not self.state_path.exists():
            return
        try:
            payload = json.loads(self.state_path.read_text(encoding="utf-8"))
            records = {
                domain: DomainHealthRecord.from_dict(data)
                for domain, data in payload.get("domains", {}).items()
            }
        except (OSError, ValueError, TypeError) as exc:
            self._log(f"[DOMAINS] Ignoring unreadable domain health file {self.state_path}: {exc}")
            return
        with self._lock:
            self._records.update(records)
        self._log(f"[DOMAINS] Loaded health for {len(records)} domains")

    def flush(self) -> None:
        if self.state_path is None:
            return
        payload = {"saved_at_ts": self._clock(), "domains": self.snapshot()}
        self.state_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.state_path.with_suffix(".tmp")
        with open(tmp_path, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, ensure_ascii=False, indent=2)
        tmp_path.replace(self.state_path)

    def close(self) -> None:
        try:
            self.flush()
        except OSError as exc:
            self._log(f"[DOMAINS] Failed to persist domain health: {exc}")

    def __enter__(self) -> "DomainHealthTracker":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


__all__ = ["DomainState", "DomainHealthRecord", "DomainHealthTracker"]
