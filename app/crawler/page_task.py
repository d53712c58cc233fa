"""Per-URL page task: navigate, let ad scripts load, read their globals."""
from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date
from typing import Any, Optional

from bs4 import BeautifulSoup

from . import config
from .browsers import PageHandle
from .error_codes import ErrorCategory, ErrorPhase
from .error_taxonomy import ErrorInfo, classify_error
from .logging_utils import _crawler_event
from .results import TaskNoData, TaskResult, TaskSuccess, error_result
from .retry_policy import RetryPolicy
from .utils import log_line, normalize_url

EXTRACT_SCRIPT = """() => {
    const data = {libraries: [], prebidInstances: []};
    if (window.apstag) data.libraries.push('apstag');
    if (window.googletag) data.libraries.push('googletag');
    if (window.ats) data.libraries.push('ats');
    if (Array.isArray(window._pbjsGlobals)) {
        window._pbjsGlobals.forEach((name) => {
            const inst = window[name];
            if (inst && typeof inst.version === 'string' && Array.isArray(inst.installedModules)) {
                data.prebidInstances.push({
                    globalVarName: name,
                    version: inst.version,
                    modules: inst.installedModules.map(String),
                });
            }
        });
    }
    return data;
}"""

# Static <script src> hints, recorded alongside the runtime globals.
SCRIPT_HINTS = {
    "prebid": ("prebid", "pbjs"),
    "apstag": ("amazon-adsystem.com/aax2/apstag",),
    "googletag": ("securepubads.g.doubleclick.net", "googletagservices.com/tag/js/gpt"),
    "ats": ("ats.rlcdn.com", "launchpad-wrapper", "launchpad.privacymanager"),
}


@dataclass(frozen=True)
class TaskOptions:
    nav_timeout_s: float = config.NAV_TIMEOUT_SECONDS
    eval_timeout_s: float = config.EVAL_TIMEOUT_SECONDS
    hard_timeout_s: float = config.TASK_HARD_TIMEOUT_SECONDS
    settle_s: float = config.PAGE_SETTLE_SECONDS
    max_concurrency: int = config.MAX_CONCURRENCY
    nav_attempts: int = config.NAV_MAX_ATTEMPTS

    def relaxed(self) -> "TaskOptions":
        """Options for the timeout retry pass: longer limits, less contention."""

        factor = max(1.0, config.RETRY_TIMEOUT_MULTIPLIER)
        nav = max(self.nav_timeout_s * factor, float(config.RETRY_NAV_TIMEOUT_SECONDS))
        evaluate = self.eval_timeout_s * factor
        return replace(
            self,
            nav_timeout_s=nav,
            eval_timeout_s=evaluate,
            hard_timeout_s=max(self.hard_timeout_s * factor, nav + evaluate + self.settle_s),
            max_concurrency=max(1, min(config.RETRY_MAX_CONCURRENCY, self.max_concurrency // 2)),
        )


def navigation_policy(options: TaskOptions) -> RetryPolicy:
    """In-task navigation retry; timeouts are left to the end-of-run pass."""

    return RetryPolicy(
        name="navigation",
        max_attempts=max(1, options.nav_attempts),
        base_delay=1.0,
        max_delay=5.0,
        classifier=lambda exc: classify_error(exc, ErrorPhase.NAVIGATION),
        retry_on=lambda info: info.retryable and info.category != ErrorCategory.TIMEOUT,
    )


def detect_script_libraries(html: str) -> list[str]:
    """Return ad-tech libraries referenced by ``<script src>`` tags."""

    soup = BeautifulSoup(html or "", "html.parser")
    sources = [tag.get("src", "").lower() for tag in soup.find_all("script", src=True)]
    found = []
    for name, needles in SCRIPT_HINTS.items():
        if any(needle in src for src in sources for needle in needles):
            found.append(name)
    return found


class _PhaseError(Exception):
    def __init__(self, info: ErrorInfo) -> None:
        super().__init__(info.message)
        self.info = info


def _run_phase(phase: str, fn, *args: Any) -> Any:
    try:
        return fn(*args)
    except Exception as exc:  # noqa: BLE001
        raise _PhaseError(classify_error(exc, phase)) from exc


def process_page_task(
    page: PageHandle,
    url: str,
    options: Optional[TaskOptions] = None,
    *,
    nav_policy: Optional[RetryPolicy] = None,
) -> TaskResult:
    """Process ``url`` on ``page`` and return exactly one result.

    Every failure is converted to a ``TaskError``; this function does not
    raise for page-level problems.
    """

    options = options or TaskOptions()
    target = normalize_url(url) or url
    policy = nav_policy or navigation_policy(options)
    try:
        page.set_timeouts(options.nav_timeout_s, options.eval_timeout_s)
        policy.call(lambda: page.goto(target), label=target)
    except Exception as exc:  # noqa: BLE001
        info = classify_error(exc, ErrorPhase.NAVIGATION)
        log_line(f"[CRAWLER][ERROR][NAV] goto({target!r}) failed: {info.code}: {info.message}")
        _crawler_event("error", phase="nav", url=url, code=info.code, category=info.label)
        return error_result(url, info)

    try:
        _run_phase(ErrorPhase.PAGE_LOAD, page.settle, options.settle_s)
        extracted = _run_phase(ErrorPhase.DATA_EXTRACTION, page.evaluate, EXTRACT_SCRIPT) or {}
    except _PhaseError as exc:
        info = exc.info
        log_line(f"[CRAWLER][ERROR][{info.phase.upper()}] {url}: {info.code}: {info.message}")
        _crawler_event("error", phase=info.phase, url=url, code=info.code, category=info.label)
        return error_result(url, info)

    if not isinstance(extracted, dict):
        extracted = {}
    libraries = list(extracted.get("libraries") or [])
    instances = list(extracted.get("prebidInstances") or [])
    if not libraries and not instances:
        return TaskNoData(url=url)
    try:
        hints = detect_script_libraries(page.content())
    except Exception as exc:  # noqa: BLE001
        log_line(f"[CRAWLER] Could not read page source for {url}: {exc}")
        hints = []
    data = {
        "url": url,
        "date": date.today().isoformat(),
        "libraries": libraries,
        "prebidInstances": instances,
        "scriptHints": hints,
    }
    return TaskSuccess(url=url, data=data)


__all__ = [
    "EXTRACT_SCRIPT",
    "TaskOptions",
    "navigation_policy",
    "detect_script_libraries",
    "process_page_task",
]
