"""Runs page tasks through the execution strategies with automatic fallback."""
from __future__ import annotations

import threading
from typing import Callable, Optional, Sequence

from . import config
from .domain_health import DomainHealthTracker
from .error_codes import ErrorCategory
from .error_taxonomy import InfrastructureError
from .logging_utils import _crawler_event
from .page_task import TaskOptions
from .results import TaskError, TaskResult, outcome_status
from .strategies import ExecutionStrategy, default_strategies
from .utils import log_line

ProgressCallback = Callable[[int, int], None]


class StrategiesExhaustedError(RuntimeError):
    """Every strategy failed before all URLs had a result."""

    def __init__(self, partial: list[TaskResult], missing: list[str], errors: list[str]) -> None:
        super().__init__(
            f"All execution strategies failed; {len(missing)} URLs have no result"
            f" ({'; '.join(errors) or 'no error detail'})"
        )
        self.partial = partial
        self.missing = missing
        self.errors = errors


class ResultCollector:
    """Accepts exactly one result per input URL.

    The first result for a URL wins; duplicates and unknown URLs are
    rejected. Domain health is updated as results arrive and progress is
    reported every ``progress_every`` results.
    """

    def __init__(
        self,
        urls: Sequence[str],
        *,
        health_tracker: Optional[DomainHealthTracker] = None,
        on_progress: Optional[ProgressCallback] = None,
        progress_every: int | None = None,
    ) -> None:
        self.urls: list[str] = list(dict.fromkeys(urls))
        self._wanted = set(self.urls)
        self._results: dict[str, TaskResult] = {}
        self._lock = threading.Lock()
        self.health_tracker = health_tracker
        self.on_progress = on_progress
        self.progress_every = max(1, progress_every or config.PROGRESS_EVERY)
        self._last_reported = 0

    @property
    def total(self) -> int:
        return len(self.urls)

    def submit(self, result: TaskResult, latency: float | None = None) -> bool:
        outcome_status(result)
        with self._lock:
            if result.url in self._results or result.url not in self._wanted:
                return False
            self._results[result.url] = result
            done = len(self._results)
        self._update_health(result, latency)
        self._maybe_report(done)
        return True

    def _update_health(self, result: TaskResult, latency: float | None) -> None:
        if self.health_tracker is None:
            return
        if isinstance(result, TaskError):
            if result.category != ErrorCategory.INFRASTRUCTURE:
                self.health_tracker.record_failure(result.url, result.info)
        else:
            self.health_tracker.record_success(result.url, latency)

    def _maybe_report(self, done: int, *, force: bool = False) -> None:
        if self.on_progress is None:
            return
        with self._lock:
            if done <= self._last_reported:
                return
            step = done - self._last_reported
            if not force and done != self.total and step < self.progress_every:
                return
            self._last_reported = done
        self.on_progress(done, self.total)

    def flush_progress(self) -> None:
        with self._lock:
            done = len(self._results)
        self._maybe_report(done, force=True)

    def missing(self) -> list[str]:
        with self._lock:
            return [url for url in self.urls if url not in self._results]

    def results(self) -> list[TaskResult]:
        with self._lock:
            return [self._results[url] for url in self.urls if url in self._results]

    @property
    def complete(self) -> bool:
        with self._lock:
            return len(self._results) == len(self.urls)


class ExecutionDispatcher:
    """Guarantees one ``TaskResult`` per unique input URL.

    Strategies are tried in order. An infrastructure failure hands the URLs
    that still lack a result to the next strategy; results already collected
    are kept. Only running out of strategies is fatal.
    """

    def __init__(
        self,
        strategies: Optional[Sequence[ExecutionStrategy]] = None,
        *,
        health_tracker: Optional[DomainHealthTracker] = None,
        log: Callable[[str], None] = log_line,
    ) -> None:
        self.strategies = list(strategies) if strategies is not None else default_strategies()
        self.health_tracker = health_tracker
        self._log = log

    def process(
        self,
        urls: Sequence[str],
        options: Optional[TaskOptions] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> list[TaskResult]:
        options = options or TaskOptions()
        collector = ResultCollector(
            urls, health_tracker=self.health_tracker, on_progress=on_progress
        )
        if not collector.urls:
            return []

        errors: list[str] = []
        for strategy in self.strategies:
            remaining = collector.missing()
            if not remaining:
                break
            failed = False
            self._log(
                f"[DISPATCH] {strategy.name}: processing {len(remaining)} URLs"
                f" (concurrency={options.max_concurrency})"
            )
            try:
                strategy.run(remaining, options, collector)
            except InfrastructureError as exc:
                failed = True
                errors.append(f"{strategy.name}: {exc}")
                self._log(f"[DISPATCH] {strategy.name} failed: {exc}; falling back")
            except Exception as exc:  # noqa: BLE001
                # A crashing driver surfaces as arbitrary exceptions.
                failed = True
                errors.append(f"{strategy.name}: {type(exc).__name__}: {exc}")
                self._log(f"[DISPATCH] {strategy.name} crashed: {exc!r}; falling back")
            left = collector.missing()
            _crawler_event(
                "state",
                phase="dispatch",
                strategy=strategy.name,
                attempted=len(remaining),
                collected=len(remaining) - len(left),
                missing=len(left),
            )
            if left and not failed:
                errors.append(f"{strategy.name}: returned without results for {len(left)} URLs")
                self._log(f"[DISPATCH] {strategy.name} dropped {len(left)} results; falling back")

        missing = collector.missing()
        if missing:
            _crawler_event("error", phase="dispatch", kind="exhausted", missing=len(missing))
            raise StrategiesExhaustedError(collector.results(), missing, errors)

        results = collector.results()
        if len(results) != collector.total:
            raise AssertionError(
                f"dispatcher returned {len(results)} results for {collector.total} URLs"
            )
        collector.flush_progress()
        return results


__all__ = [
    "ExecutionDispatcher",
    "ResultCollector",
    "StrategiesExhaustedError",
    "ProgressCallback",
]
