"""Execution strategies used by the dispatcher, from most to least parallel.

Each strategy processes the URLs it is given and hands every result to a
``ResultSink``. Page-level failures become ``TaskError`` results; only a
failure of the strategy itself (no browser can be started, every worker
died) escapes as :class:`InfrastructureError`.
"""
from __future__ import annotations

import math
import threading
import time
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, InvalidStateError
from concurrent.futures import wait as wait_futures
from dataclasses import dataclass, field
from typing import Callable, Deque, Optional, Protocol, Sequence

from . import config
from .browsers import BrowserSession, PlaywrightSession, SeleniumSession, SessionFactory
from .error_codes import ErrorPhase
from .error_taxonomy import InfrastructureError, classify_error, hard_timeout
from .logging_utils import _crawler_event
from .page_task import TaskOptions, process_page_task
from .results import TaskError, TaskNoData, TaskResult, TaskSuccess, error_result
from .utils import log_line

TaskFn = Callable[..., TaskResult]

# Consecutive page errors after which a pooled browser is replaced.
RECYCLE_AFTER_ERRORS = 3
MONITOR_INTERVAL_SECONDS = 0.25


class ResultSink(Protocol):
    def submit(self, result: TaskResult, latency: float | None = None) -> bool: ...


class ExecutionStrategy(Protocol):
    name: str

    def run(self, urls: Sequence[str], options: TaskOptions, sink: ResultSink) -> None: ...


def _coerce_result(url: str, result: object) -> TaskResult:
    # A task that returns nothing must still produce exactly one result.
    if isinstance(result, (TaskSuccess, TaskNoData, TaskError)) and result.url == url:
        return result
    info = classify_error(f"Task returned no result: {result!r}", ErrorPhase.DATA_EXTRACTION)
    return error_result(url, info)


def _run_one(session: BrowserSession, url: str, options: TaskOptions, task_fn: TaskFn) -> TaskResult:
    """Open a page, run ``task_fn`` and always close the page."""

    try:
        page = session.new_page()
    except Exception as exc:  # noqa: BLE001
        return error_result(url, classify_error(exc, ErrorPhase.INITIALIZATION))
    try:
        return _coerce_result(url, task_fn(page, url, options))
    except Exception as exc:  # noqa: BLE001
        return error_result(url, classify_error(exc, ErrorPhase.DATA_EXTRACTION))
    finally:
        try:
            page.close()
        except Exception as exc:  # noqa: BLE001
            log_line(f"[CRAWLER] Failed to close page for {url}: {exc}")


def _close_session(session: BrowserSession, log: Callable[[str], None]) -> None:
    try:
        session.close()
    except Exception as exc:  # noqa: BLE001
        log(f"[CRAWLER] Error closing browser: {exc}")


# ---------------------------------------------------------------------------
# Primary: pool of browser contexts with per-URL futures
# ---------------------------------------------------------------------------


@dataclass
class _Task:
    url: str
    future: "Future[TaskResult]" = field(default_factory=Future)
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    drained: bool = False
    worker: Optional[threading.Thread] = None


@dataclass(frozen=True)
class PoolHealth:
    workers_alive: int
    workers_failed: int
    pending: int
    running: int
    completed: int
    hard_timeouts: int
    workers_stuck: int = 0

    @property
    def healthy(self) -> bool:
        return self.workers_alive > 0 or (self.pending == 0 and self.running == 0)


class TaskQueue:
    """Hands out queued tasks; each URL owns one future resolved exactly once."""

    def __init__(self, urls: Sequence[str]) -> None:
        self._lock = threading.Lock()
        self.tasks: list[_Task] = [_Task(url=url) for url in urls]
        self._queue: Deque[_Task] = deque(self.tasks)

    def next(self) -> Optional[_Task]:
        with self._lock:
            while self._queue:
                task = self._queue.popleft()
                if task.future.set_running_or_notify_cancel():
                    task.started_at = time.monotonic()
                    task.worker = threading.current_thread()
                    return task
            return None

    @staticmethod
    def resolve(task: _Task, result: TaskResult) -> bool:
        """Set the task's result once; later resolutions are ignored."""

        try:
            task.future.set_result(result)
        except InvalidStateError:
            return False
        task.finished_at = time.monotonic()
        return True

    def pending(self) -> int:
        with self._lock:
            return len(self._queue)

    def cancel_pending(self) -> int:
        with self._lock:
            cancelled = 0
            while self._queue:
                if self._queue.popleft().future.cancel():
                    cancelled += 1
            return cancelled


class ContextPoolStrategy:
    """Worker threads each own a Playwright browser and open a fresh
    context per URL. The calling thread monitors the pool: it enforces the
    hard task timeout, reports pool health and drains finished futures.
    """

    name = "context_pool"

    def __init__(
        self,
        session_factory: Optional[SessionFactory] = None,
        *,
        task_fn: TaskFn = process_page_task,
        on_health: Optional[Callable[[PoolHealth], None]] = None,
        log: Callable[[str], None] = log_line,
    ) -> None:
        self.session_factory = session_factory or (lambda: PlaywrightSession(isolate_contexts=True))
        self.task_fn = task_fn
        self.on_health = on_health
        self._log = log

    def _worker(
        self,
        queue: TaskQueue,
        options: TaskOptions,
        stop: threading.Event,
        state: dict,
        state_lock: threading.Lock,
    ) -> None:
        session: Optional[BrowserSession] = None
        abandoned = False
        try:
            try:
                session = self.session_factory()
            except Exception as exc:  # noqa: BLE001
                self._log(f"[CRAWLER][POOL] Worker failed to start a browser: {exc}")
                with state_lock:
                    state["failed"] += 1
                    state["last_error"] = str(exc)
                return
            while not stop.is_set():
                task = queue.next()
                if task is None:
                    return
                result = _run_one(session, task.url, options, self.task_fn)
                if not queue.resolve(task, result):
                    # Hard-timed out meanwhile; a replacement worker holds this slot.
                    abandoned = True
                    return
                if not session.is_connected():
                    self._log("[CRAWLER][POOL] Browser disconnected; restarting worker browser")
                    _close_session(session, self._log)
                    session = None
                    try:
                        session = self.session_factory()
                    except Exception as exc:  # noqa: BLE001
                        self._log(f"[CRAWLER][POOL] Browser restart failed: {exc}")
                        with state_lock:
                            state["failed"] += 1
                            state["last_error"] = str(exc)
                        return
        finally:
            if session is not None:
                _close_session(session, self._log)
            if not abandoned:
                with state_lock:
                    state["alive"] -= 1

    def _drain(self, queue: TaskQueue, sink: ResultSink) -> int:
        drained = 0
        for task in queue.tasks:
            if task.drained or not task.future.done() or task.future.cancelled():
                continue
            task.drained = True
            latency = None
            if task.started_at is not None and task.finished_at is not None:
                latency = task.finished_at - task.started_at
            sink.submit(task.future.result(), latency)
            drained += 1
        return drained

    def _enforce_hard_timeout(self, queue: TaskQueue, options: TaskOptions) -> list[_Task]:
        now = time.monotonic()
        expired: list[_Task] = []
        for task in queue.tasks:
            if task.future.done() or task.started_at is None:
                continue
            if now - task.started_at > options.hard_timeout_s:
                if queue.resolve(task, error_result(task.url, hard_timeout(options.hard_timeout_s))):
                    expired.append(task)
                    self._log(f"[CRAWLER][POOL] Hard timeout for {task.url}")
        return expired

    def run(self, urls: Sequence[str], options: TaskOptions, sink: ResultSink) -> None:
        if not urls:
            return
        queue = TaskQueue(urls)
        worker_count = max(1, min(options.max_concurrency, len(urls)))
        state = {"alive": worker_count, "failed": 0, "last_error": None}
        state_lock = threading.Lock()
        stop = threading.Event()
        threads: list[threading.Thread] = []
        stuck: set[threading.Thread] = set()

        def start_worker() -> None:
            thread = threading.Thread(
                target=self._worker,
                args=(queue, options, stop, state, state_lock),
                name=f"context-pool-{len(threads)}",
                daemon=True,
            )
            threads.append(thread)
            thread.start()

        _crawler_event("state", phase="dispatch", strategy=self.name, urls=len(urls), workers=worker_count)
        hard_timeouts = 0
        try:
            for _ in range(worker_count):
                start_worker()
            futures = [task.future for task in queue.tasks]
            while True:
                open_futures = [f for f in futures if not f.done()]
                if open_futures:
                    wait_futures(
                        open_futures, timeout=MONITOR_INTERVAL_SECONDS, return_when=FIRST_COMPLETED
                    )
                for task in self._enforce_hard_timeout(queue, options):
                    hard_timeouts += 1
                    # The stuck thread stays blocked in the page; its slot goes to a replacement.
                    if task.worker is not None:
                        stuck.add(task.worker)
                    with state_lock:
                        replace = queue.pending() > 0
                        if not replace:
                            state["alive"] -= 1
                    if replace:
                        self._log(f"[CRAWLER][POOL] Starting a replacement worker for {task.url}")
                        start_worker()
                self._drain(queue, sink)
                done = sum(1 for f in futures if f.done())
                with state_lock:
                    alive, failed, last_error = state["alive"], state["failed"], state["last_error"]
                running = sum(
                    1 for t in queue.tasks if t.started_at is not None and not t.future.done()
                )
                health = PoolHealth(
                    workers_alive=alive,
                    workers_failed=failed,
                    pending=queue.pending(),
                    running=running,
                    completed=done,
                    hard_timeouts=hard_timeouts,
                    workers_stuck=sum(1 for thread in stuck if thread.is_alive()),
                )
                if self.on_health is not None:
                    try:
                        self.on_health(health)
                    except Exception as exc:  # noqa: BLE001
                        self._log(f"[CRAWLER][POOL] Health callback failed: {exc}")
                if done == len(futures):
                    return
                if not health.healthy:
                    raise InfrastructureError(
                        f"{self.name}: no live workers with {len(futures) - done} tasks left"
                        f" (last error: {last_error})"
                    )
        finally:
            stop.set()
            cancelled = queue.cancel_pending()
            for thread in threads:
                if thread.is_alive() and thread not in stuck:
                    thread.join(timeout=1.0)
            self._drain(queue, sink)
            if cancelled:
                self._log(f"[CRAWLER][POOL] Cancelled {cancelled} queued tasks on shutdown")


# ---------------------------------------------------------------------------
# Fallback: a fixed set of persistent browsers
# ---------------------------------------------------------------------------


class BrowserPoolStrategy:
    """A few long-lived browsers shared by sequential per-browser loops.

    A browser is replaced after ``RECYCLE_AFTER_ERRORS`` consecutive page
    errors or when it disconnects.
    """

    name = "browser_pool"

    def __init__(
        self,
        session_factory: Optional[SessionFactory] = None,
        *,
        task_fn: TaskFn = process_page_task,
        pages_per_browser: int | None = None,
        log: Callable[[str], None] = log_line,
    ) -> None:
        self.session_factory = session_factory or (lambda: PlaywrightSession(isolate_contexts=False))
        self.task_fn = task_fn
        self.pages_per_browser = max(1, pages_per_browser or config.PAGES_PER_BROWSER)
        self._log = log

    def browser_count(self, urls: int, concurrency: int) -> int:
        return max(1, min(urls, math.ceil(concurrency / self.pages_per_browser)))

    def _loop(self, pending: Deque[str], lock: threading.Lock, options: TaskOptions,
              sink: ResultSink, failures: list[str]) -> None:
        session: Optional[BrowserSession] = None
        errors = 0
        try:
            while True:
                with lock:
                    if not pending:
                        return
                    url = pending.popleft()
                if session is None:
                    try:
                        session = self.session_factory()
                    except Exception as exc:  # noqa: BLE001
                        with lock:
                            pending.appendleft(url)
                            failures.append(str(exc))
                        self._log(f"[CRAWLER][BROWSER_POOL] Browser launch failed: {exc}")
                        return
                started = time.monotonic()
                result = _run_one(session, url, options, self.task_fn)
                sink.submit(result, time.monotonic() - started)
                errors = errors + 1 if isinstance(result, TaskError) else 0
                if errors >= RECYCLE_AFTER_ERRORS or not session.is_connected():
                    self._log(f"[CRAWLER][BROWSER_POOL] Recycling browser after {errors} errors")
                    _crawler_event("state", phase="dispatch", strategy=self.name, kind="recycle")
                    _close_session(session, self._log)
                    session = None
                    errors = 0
        finally:
            if session is not None:
                _close_session(session, self._log)

    def run(self, urls: Sequence[str], options: TaskOptions, sink: ResultSink) -> None:
        if not urls:
            return
        pending: Deque[str] = deque(urls)
        lock = threading.Lock()
        failures: list[str] = []
        count = self.browser_count(len(urls), options.max_concurrency)
        _crawler_event("state", phase="dispatch", strategy=self.name, urls=len(urls), browsers=count)
        threads = [
            threading.Thread(
                target=self._loop,
                args=(pending, lock, options, sink, failures),
                name=f"browser-pool-{index}",
                daemon=True,
            )
            for index in range(count)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        if pending:
            raise InfrastructureError(
                f"{self.name}: {len(pending)} URLs left after all browsers failed"
                f" (last error: {failures[-1] if failures else None})"
            )


# ---------------------------------------------------------------------------
# Last resort: one browser, one URL at a time
# ---------------------------------------------------------------------------


class SingleBrowserStrategy:
    """Sequential processing through one browser, restarted once on crash."""

    name = "single_browser"

    def __init__(
        self,
        session_factory: Optional[SessionFactory] = None,
        *,
        task_fn: TaskFn = process_page_task,
        max_restarts: int = 1,
        log: Callable[[str], None] = log_line,
    ) -> None:
        self.session_factory = session_factory or SeleniumSession
        self.task_fn = task_fn
        self.max_restarts = max_restarts
        self._log = log

    def run(self, urls: Sequence[str], options: TaskOptions, sink: ResultSink) -> None:
        if not urls:
            return
        _crawler_event("state", phase="dispatch", strategy=self.name, urls=len(urls))
        restarts = 0
        session: Optional[BrowserSession] = self._launch()
        try:
            for url in urls:
                if not session.is_connected():
                    if restarts >= self.max_restarts:
                        raise InfrastructureError(f"{self.name}: browser crashed again after restart")
                    restarts += 1
                    self._log("[CRAWLER][SINGLE] Browser crashed; restarting")
                    _close_session(session, self._log)
                    session = None
                    session = self._launch()
                started = time.monotonic()
                result = _run_one(session, url, options, self.task_fn)
                sink.submit(result, time.monotonic() - started)
        finally:
            if session is not None:
                _close_session(session, self._log)

    def _launch(self) -> BrowserSession:
        try:
            return self.session_factory()
        except Exception as exc:  # noqa: BLE001
            raise InfrastructureError(f"{self.name}: browser launch failed: {exc}") from exc


def default_strategies(task_fn: TaskFn = process_page_task) -> list[ExecutionStrategy]:
    strategies: list[ExecutionStrategy] = [
        ContextPoolStrategy(task_fn=task_fn),
        BrowserPoolStrategy(task_fn=task_fn),
    ]
    if config.ENABLE_SELENIUM_FALLBACK:
        strategies.append(SingleBrowserStrategy(task_fn=task_fn))
    return strategies


__all__ = [
    "ExecutionStrategy",
    "ResultSink",
    "PoolHealth",
    "TaskQueue",
    "ContextPoolStrategy",
    "BrowserPoolStrategy",
    "SingleBrowserStrategy",
    "default_strategies",
    "RECYCLE_AFTER_ERRORS",
]
