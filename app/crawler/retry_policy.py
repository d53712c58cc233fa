from __future__ import annotations

import random
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, TypeVar

from .error_codes import PERMANENT_ERROR_CODES
from .error_taxonomy import ErrorInfo, classify_error
from .logging_utils import _crawler_event

T = TypeVar("T")

Classifier = Callable[[BaseException], ErrorInfo]
RetryPredicate = Callable[[ErrorInfo], bool]


def compute_backoff_seconds(
    attempt_index: int,
    *,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
) -> float:
    """Return a capped exponential backoff for the given attempt (1-based)."""

    return float(min(base_delay * 2 ** max(0, attempt_index - 1), max_delay))


def decide_retry(
    attempt_index: int,
    max_attempts: int,
    error: BaseException | None = None,
    *,
    error_code: Optional[str] = None,
    retryable: Optional[bool] = None,
    policy: str = "default",
) -> bool:
    """Decide whether a failed attempt should be retried."""

    code = (error_code or "").strip()
    if attempt_index >= max_attempts:
        _crawler_event(
            "state",
            phase="retry_decision",
            kind="capped",
            policy=policy,
            attempt=attempt_index,
            max_attempts=max_attempts,
            error_code=code or None,
            will_retry=False,
        )
        return False

    if code in PERMANENT_ERROR_CODES or retryable is False:
        _crawler_event(
            "state",
            phase="retry_decision",
            kind="non_retryable",
            policy=policy,
            error_code=code or None,
            attempt=attempt_index,
            max_attempts=max_attempts,
            will_retry=False,
        )
        return False

    if retryable:
        _crawler_event(
            "state",
            phase="retry_decision",
            kind="retryable",
            policy=policy,
            error_code=code or None,
            attempt=attempt_index,
            max_attempts=max_attempts,
            will_retry=True,
        )
        return True

    # No classification available: do not retry blindly.
    _crawler_event(
        "state",
        phase="retry_decision",
        kind="unknown" if code else "missing_error_code",
        policy=policy,
        error_code=code or None,
        attempt=attempt_index,
        max_attempts=max_attempts,
        will_retry=False,
        error_repr=repr(error) if error is not None else None,
    )
    return False


def _default_retry_on(info: ErrorInfo) -> bool:
    return info.retryable


@dataclass
class RetryPolicy:
    """Classify, back off with jitter and retry a bounded number of times.

    One instance is built per use site (navigation, preflight DNS probes,
    the end-of-run timeout pass); only the limits and the classifier differ.
    """

    name: str
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: float = 0.25
    classifier: Classifier = classify_error
    retry_on: RetryPredicate = _default_retry_on
    sleep: Callable[[float], None] = time.sleep
    rng: random.Random = field(default_factory=random.Random)

    def backoff(self, attempt_index: int) -> float:
        delay = compute_backoff_seconds(
            attempt_index, base_delay=self.base_delay, max_delay=self.max_delay
        )
        if self.jitter > 0:
            delay *= 1 + self.rng.uniform(-self.jitter, self.jitter)
        return max(0.0, delay)

    def allows(self, attempt_index: int, info: ErrorInfo) -> bool:
        return decide_retry(
            attempt_index,
            self.max_attempts,
            error_code=info.code,
            retryable=self.retry_on(info),
            policy=self.name,
        )

    def should_retry(self, attempt_index: int, error: BaseException) -> bool:
        return self.allows(attempt_index, self.classifier(error))

    def call(self, fn: Callable[[], T], *, label: str = "") -> T:
        """Run ``fn`` until it succeeds or the policy gives up.

        The last exception is re-raised when attempts run out or the error is
        not retryable.
        """

        attempt = 1
        while True:
            try:
                return fn()
            except Exception as exc:  # noqa: BLE001
                if not self.should_retry(attempt, exc):
                    raise
                delay = self.backoff(attempt)
                _crawler_event(
                    "retry",
                    phase=self.name,
                    label=label,
                    attempt=attempt,
                    delay=round(delay, 3),
                    error=str(exc),
                )
                self.sleep(delay)
                attempt += 1


__all__ = [
    "RetryPolicy",
    "decide_retry",
    "compute_backoff_seconds",
]
