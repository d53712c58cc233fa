"""End-of-run retry pass for URLs that timed out."""
from __future__ import annotations

from typing import Callable, Optional, Sequence

from .dispatcher import ExecutionDispatcher, StrategiesExhaustedError
from .error_codes import ErrorCategory
from .logging_utils import _crawler_event
from .page_task import TaskOptions
from .results import TaskError, TaskResult
from .retry_policy import RetryPolicy
from .utils import log_line


def _is_timeout(result: TaskResult) -> bool:
    return isinstance(result, TaskError) and result.category == ErrorCategory.TIMEOUT


class RetryCoordinator:
    """Re-runs timed-out URLs once more with relaxed options.

    Only the ``timeout`` category is retried here; every other error has
    either been retried in-task already or will not improve with time.
    """

    def __init__(
        self,
        dispatcher: ExecutionDispatcher,
        policy: Optional[RetryPolicy] = None,
        *,
        log: Callable[[str], None] = log_line,
    ) -> None:
        self.dispatcher = dispatcher
        self.policy = policy or RetryPolicy(name="timeout_retry", max_attempts=2)
        self._log = log
        self.last_retried = 0
        self.last_recovered = 0

    @staticmethod
    def partition(results: Sequence[TaskResult]) -> tuple[list[TaskError], list[TaskResult]]:
        timeouts: list[TaskError] = []
        rest: list[TaskResult] = []
        for result in results:
            if _is_timeout(result):
                timeouts.append(result)  # type: ignore[arg-type]
            else:
                rest.append(result)
        return timeouts, rest

    def retry(self, subset: Sequence[TaskError], options: TaskOptions) -> list[TaskResult]:
        """Retry ``subset``; a URL whose retry fails again keeps its first error."""

        originals = {result.url: result for result in subset}
        eligible = [
            result for result in subset if self.policy.allows(1, result.info)
        ]
        if not eligible:
            return list(subset)

        urls = [result.url for result in eligible]
        self._log(
            f"[RETRY] Retrying {len(urls)} timed-out URLs "
            f"(nav timeout {options.nav_timeout_s:.0f}s, concurrency {options.max_concurrency})"
        )
        try:
            retried = self.dispatcher.process(urls, options)
        except StrategiesExhaustedError as exc:
            self._log(
                f"[RETRY] Retry pass stopped early with {len(exc.partial)} results; "
                f"keeping original errors for {len(exc.missing)} URLs"
            )
            _crawler_event(
                "error", phase="retry", kind="strategies_exhausted", missing=len(exc.missing)
            )
            retried = exc.partial
        except Exception as exc:  # noqa: BLE001
            self._log(f"[RETRY] Retry pass failed, keeping original errors: {exc}")
            _crawler_event("error", phase="retry", kind="dispatcher_failed", error=str(exc))
            return list(subset)

        merged = dict(originals)
        for result in retried:
            if result.url in merged and not isinstance(result, TaskError):
                merged[result.url] = result
        return [merged[result.url] for result in subset]

    def run(self, results: Sequence[TaskResult], options: TaskOptions) -> list[TaskResult]:
        """Return ``results`` with timeouts replaced by their retry outcome."""

        self.last_retried = 0
        self.last_recovered = 0
        timeouts, _ = self.partition(results)
        if not timeouts:
            return list(results)

        replacements = {result.url: result for result in self.retry(timeouts, options.relaxed())}
        recovered = sum(1 for result in replacements.values() if not isinstance(result, TaskError))
        self.last_retried = len(timeouts)
        self.last_recovered = recovered
        _crawler_event(
            "state", phase="retry", kind="summary", retried=len(timeouts), recovered=recovered
        )
        self._log(f"[RETRY] Recovered {recovered} of {len(timeouts)} timed-out URLs")
        return [replacements.get(result.url, result) if _is_timeout(result) else result
                for result in results]


__all__ = ["RetryCoordinator"]
