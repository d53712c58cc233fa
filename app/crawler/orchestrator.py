"""Top-level scan run: filter, preflight, dispatch in chunks, retry, persist."""
from __future__ import annotations

import json
import time
from contextlib import ExitStack
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Callable, Optional, Sequence

from . import config
from .dispatcher import ExecutionDispatcher, ProgressCallback, StrategiesExhaustedError
from .domain_health import DomainHealthTracker
from .error_codes import ErrorCategory, ErrorCode, ErrorPhase
from .error_log import ErrorLogWriter
from .error_taxonomy import ErrorInfo, StorageError
from .logging_utils import _crawler_event
from .page_task import TaskOptions
from .preflight import PreflightChecker, filter_valid_urls
from .ranges import apply_range, chunk
from .results import TaskError, TaskNoData, TaskResult, TaskSuccess, error_result
from .results_handler import log_task_results, update_input_file, write_results_to_store
from .retry_coordinator import RetryCoordinator
from .strategies import ExecutionStrategy
from .url_tracker import DedupStore
from .utils import disk_has_room, ensure_dirs, log_line


@dataclass
class ScanOptions:
    max_concurrency: int = field(default_factory=lambda: config.MAX_CONCURRENCY)
    range: Optional[str] = None
    chunk_size: int = field(default_factory=lambda: config.CHUNK_SIZE)
    skip_processed: bool = field(default_factory=lambda: config.SKIP_PROCESSED_DEFAULT)
    force_reprocess: bool = False
    reset_tracking: bool = False
    preflight_check: bool = field(default_factory=lambda: config.PREFLIGHT_DEFAULT)
    skip_dns_failed: bool = field(default_factory=lambda: config.SKIP_DNS_FAILED_DEFAULT)
    skip_ssl_failed: bool = field(default_factory=lambda: config.SKIP_SSL_FAILED_DEFAULT)
    prefilter_processed: bool = field(default_factory=lambda: config.PREFILTER_PROCESSED_DEFAULT)
    retry_timeouts: bool = True
    import_existing: bool = True
    write_results: bool = True
    input_file: Optional[Path] = None
    prune_input_file: bool = False
    nav_timeout_s: Optional[float] = None

    def task_options(self) -> TaskOptions:
        base = TaskOptions(max_concurrency=max(1, int(self.max_concurrency)))
        if self.nav_timeout_s:
            return TaskOptions(
                nav_timeout_s=float(self.nav_timeout_s),
                hard_timeout_s=max(base.hard_timeout_s, float(self.nav_timeout_s) * 2),
                max_concurrency=base.max_concurrency,
            )
        return base


@dataclass
class ScanSummary:
    total_input: int = 0
    in_range: int = 0
    skipped_processed: int = 0
    skipped_invalid: int = 0
    skipped_preflight: int = 0
    skipped_blocked: int = 0
    processed: int = 0
    succeeded: int = 0
    no_data: int = 0
    errored: int = 0
    retried: int = 0
    recovered: int = 0
    output_path: Optional[str] = None
    suggestions: list[str] = field(default_factory=list)
    started_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None

    def to_dict(self) -> dict:
        return asdict(self)


def save_summary(summary: ScanSummary, path: Optional[Path] = None) -> Path:
    target = Path(path or config.SUMMARY_FILE)
    target.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = target.with_suffix(target.suffix + ".tmp")
    tmp_path.write_text(json.dumps(summary.to_dict(), indent=2), encoding="utf-8")
    tmp_path.replace(target)
    return target


def load_summary(path: Optional[Path] = None) -> Optional[dict]:
    target = Path(path or config.SUMMARY_FILE)
    try:
        return json.loads(target.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None


def _invalid_url_info(url: str) -> ErrorInfo:
    return ErrorInfo(
        code=ErrorCode.INVALID_URL,
        category=ErrorCategory.NAVIGATION,
        sub_category="permanent",
        phase=ErrorPhase.PREFLIGHT,
        message=f"URL does not have a valid domain: {url}",
        retryable=False,
    )


class ScanOrchestrator:
    """Runs one scan over a URL list.

    Collaborators are built through small factories so a test can swap in
    fake strategies, resolvers or paths without touching module state.
    """

    def __init__(
        self,
        options: Optional[ScanOptions] = None,
        *,
        strategies: Optional[Sequence[ExecutionStrategy]] = None,
        preflight_factory: Optional[Callable[[DomainHealthTracker], PreflightChecker]] = None,
        db_path: Optional[Path] = None,
        health_path: Optional[Path] = None,
        store_dir: Optional[Path] = None,
        errors_dir: Optional[Path] = None,
        on_progress: Optional[ProgressCallback] = None,
        log: Callable[[str], None] = log_line,
    ) -> None:
        self.options = options or ScanOptions()
        self.strategies = list(strategies) if strategies is not None else None
        self.preflight_factory = preflight_factory or (lambda health: PreflightChecker(health))
        self.db_path = db_path
        self.health_path = health_path
        self.store_dir = store_dir
        self.error_log = ErrorLogWriter(errors_dir, log=log)
        self.on_progress = on_progress or self._log_progress
        self._log = log

    def _log_progress(self, done: int, total: int) -> None:
        self._log(f"[PROGRESS] {done}/{total} URLs processed")

    def _make_dispatcher(self, health: DomainHealthTracker) -> ExecutionDispatcher:
        return ExecutionDispatcher(self.strategies, health_tracker=health, log=self._log)

    # ------------------------------------------------------------------ steps

    def _prefilter_complete(
        self, store: DedupStore, candidates: list[str], in_range: list[str], summary: ScanSummary
    ) -> bool:
        opts = self.options
        if not (opts.prefilter_processed and opts.skip_processed) or opts.force_reprocess:
            return False
        analysis = store.analyze_range(0, len(in_range), in_range)
        _crawler_event(
            "state",
            phase="prefilter",
            in_range=analysis.total_in_range,
            processed=analysis.processed_count,
            unprocessed=analysis.unprocessed_count,
        )
        if not analysis.is_fully_processed:
            return False
        summary.skipped_processed = analysis.total_in_range
        window = max(1, len(in_range))
        summary.suggestions = [
            suggestion.range_spec
            for suggestion in store.suggest_next_ranges(candidates, window_size=window)
        ]
        self._log(
            f"[SCAN] All {analysis.total_in_range} URLs in range {opts.range or 'all'} are "
            "already processed; nothing to do"
        )
        for spec in summary.suggestions:
            self._log(f"[SCAN] Suggested next range: --range {spec}")
        return True

    def _preflight(
        self, urls: list[str], health: DomainHealthTracker, store: DedupStore
    ) -> tuple[list[str], int]:
        opts = self.options
        checker = self.preflight_factory(health)
        results = checker.check_urls(urls)
        keep, skipped = PreflightChecker.partition(
            urls,
            results,
            skip_dns_failed=opts.skip_dns_failed,
            skip_ssl_failed=opts.skip_ssl_failed,
        )
        skipped_errors: list[TaskResult] = []
        for result in skipped:
            if result.error is not None:
                self.error_log.write(result.url, result.error)
                skipped_errors.append(error_result(result.url, result.error))
        if skipped_errors:
            store.update_from_task_results(skipped_errors)
        return keep, len(skipped)

    def _persist_successes(self, results: list[TaskResult], summary: ScanSummary) -> None:
        successful = log_task_results(results, error_log=self.error_log, log=self._log)
        if self.options.write_results and successful:
            path = write_results_to_store(successful, store_dir=self.store_dir, log=self._log)
            summary.output_path = str(path) if path else summary.output_path

    def _dispatch_chunks(
        self,
        urls: list[str],
        dispatcher: ExecutionDispatcher,
        store: DedupStore,
        task_options: TaskOptions,
        summary: ScanSummary,
        health: DomainHealthTracker,
    ) -> list[TaskResult]:
        chunks = chunk(urls, self.options.chunk_size)
        collected: list[TaskResult] = []
        dropped = 0
        for index, batch in enumerate(chunks, start=1):
            # Domains blocked by earlier chunks drop out of later ones.
            batch, blocked = health.filter_schedulable(batch)
            if blocked:
                summary.skipped_blocked += len(blocked)
                dropped += len(blocked)
                self._log(f"[SCAN] Chunk {index}: skipping {len(blocked)} URLs on domains in cooldown")
            if not batch:
                continue
            if len(chunks) > 1:
                self._log(f"[SCAN] Chunk {index}/{len(chunks)}: {len(batch)} URLs")
            offset, overall = len(collected), len(urls) - dropped

            def report(done: int, total: int, offset: int = offset, overall: int = overall) -> None:
                self.on_progress(offset + done, overall)

            try:
                results = dispatcher.process(batch, task_options, report)
            except StrategiesExhaustedError as exc:
                store.update_from_task_results(exc.partial)
                self._log(
                    f"[SCAN] Chunk {index} aborted: saved {len(exc.partial)} partial results, "
                    f"{len(exc.missing)} URLs unprocessed"
                )
                self._persist_successes(collected + exc.partial, summary)
                raise
            store.update_from_task_results(results)
            collected.extend(results)
        return collected

    # -------------------------------------------------------------------- run

    def run(self, urls: Sequence[str]) -> ScanSummary:
        opts = self.options
        summary = ScanSummary(total_input=len(urls))
        ensure_dirs()
        if not disk_has_room(config.MIN_FREE_MB, config.DATA_DIR):
            raise StorageError(
                f"Less than {config.MIN_FREE_MB} MB free under {config.DATA_DIR}; refusing to scan"
            )

        candidates = list(dict.fromkeys(url.strip() for url in urls if url and url.strip()))
        task_options = opts.task_options()

        with ExitStack() as stack:
            store = stack.enter_context(DedupStore(self.db_path, log=self._log))
            health = stack.enter_context(
                DomainHealthTracker(
                    state_path=self.health_path or config.DOMAIN_HEALTH_FILE, log=self._log
                )
            )
            if opts.reset_tracking:
                store.reset_tracking()
            if opts.import_existing:
                store.import_existing_results(Path(self.store_dir or config.STORE_DIR))

            in_range = apply_range(candidates, opts.range, log=self._log)
            summary.in_range = len(in_range)
            if not in_range:
                return self._finish(summary)

            if self._prefilter_complete(store, candidates, in_range, summary):
                return self._finish(summary)

            pending = in_range
            if opts.skip_processed and not opts.force_reprocess:
                pending = store.filter_unprocessed(in_range)
                summary.skipped_processed = len(in_range) - len(pending)
                if summary.skipped_processed:
                    self._log(f"[SCAN] Skipping {summary.skipped_processed} already processed URLs")

            valid, invalid = filter_valid_urls(pending)
            summary.skipped_invalid = len(invalid)
            for url in invalid:
                self.error_log.write(url, _invalid_url_info(url))

            if opts.preflight_check and valid:
                valid, summary.skipped_preflight = self._preflight(valid, health, store)

            schedulable, blocked = health.filter_schedulable(valid)
            summary.skipped_blocked = len(blocked)
            if blocked:
                self._log(f"[SCAN] Skipping {len(blocked)} URLs on domains in cooldown")

            if not schedulable:
                self._log("[SCAN] No URLs left to process after filtering")
                return self._finish(summary)

            self._log(
                f"[SCAN] Processing {len(schedulable)} URLs "
                f"(concurrency={task_options.max_concurrency}, chunk_size={opts.chunk_size or 'off'})"
            )
            dispatcher = self._make_dispatcher(health)
            results = self._dispatch_chunks(
                schedulable, dispatcher, store, task_options, summary, health
            )

            if opts.retry_timeouts:
                coordinator = RetryCoordinator(dispatcher, log=self._log)
                retried = coordinator.run(results, task_options)
                changed = [new for old, new in zip(results, retried) if new is not old]
                if changed:
                    store.update_from_task_results(changed)
                summary.retried = coordinator.last_retried
                summary.recovered = coordinator.last_recovered
                results = retried

            summary.processed = len(results)
            summary.succeeded = sum(1 for r in results if isinstance(r, TaskSuccess))
            summary.no_data = sum(1 for r in results if isinstance(r, TaskNoData))
            summary.errored = sum(1 for r in results if isinstance(r, TaskError))

            self._persist_successes(results, summary)
            if opts.prune_input_file and opts.input_file is not None:
                update_input_file(opts.input_file, schedulable, results, log=self._log)

        return self._finish(summary)

    def _finish(self, summary: ScanSummary) -> ScanSummary:
        summary.finished_at = time.time()
        _crawler_event("state", phase="scan", kind="summary", **{
            key: value for key, value in summary.to_dict().items()
            if isinstance(value, int) and not isinstance(value, bool)
        })
        self._log(
            f"[SCAN] Done: {summary.processed} processed, {summary.succeeded} succeeded, "
            f"{summary.no_data} without data, {summary.errored} errors "
            f"({summary.recovered}/{summary.retried} timeouts recovered)"
        )
        try:
            save_summary(summary)
        except OSError as exc:
            self._log(f"[SCAN] Could not save run summary: {exc}")
        return summary


__all__ = ["ScanOptions", "ScanSummary", "ScanOrchestrator", "save_summary", "load_summary"]
