from __future__ import annotations

import random

import pytest

from app.crawler import retry_policy
from app.crawler.error_codes import ErrorCode
from app.crawler.retry_policy import RetryPolicy, compute_backoff_seconds


@pytest.fixture
def event_recorder(monkeypatch: pytest.MonkeyPatch) -> list[tuple[str, dict]]:
    events: list[tuple[str, dict]] = []

    def _record(event_phase: str, **fields: object) -> None:
        events.append((event_phase, fields))

    monkeypatch.setattr(retry_policy, "_crawler_event", _record)
    return events


@pytest.mark.parametrize(
    "attempt, expected, kind",
    [
        (1, True, "retryable"),
        (2, True, "retryable"),
        (3, False, "capped"),
        (5, False, "capped"),
    ],
)
def test_retry_limits(
    attempt: int, expected: bool, kind: str, event_recorder: list[tuple[str, dict]]
) -> None:
    result = retry_policy.decide_retry(
        attempt, 3, error_code=ErrorCode.NAVIGATION_TIMEOUT, retryable=True
    )
    assert result is expected
    assert len(event_recorder) == 1
    phase, fields = event_recorder[0]
    assert phase == "state"
    assert fields["phase"] == "retry_decision"
    assert fields["error_code"] == ErrorCode.NAVIGATION_TIMEOUT
    assert fields["will_retry"] is expected
    assert fields["kind"] == kind


@pytest.mark.parametrize(
    "error_code",
    [ErrorCode.NAME_NOT_RESOLVED, ErrorCode.CONNECTION_REFUSED, ErrorCode.INVALID_URL],
)
def test_permanent_codes_are_never_retried(
    error_code: str, event_recorder: list[tuple[str, dict]]
) -> None:
    assert retry_policy.decide_retry(1, 3, error_code=error_code, retryable=True) is False
    _, fields = event_recorder[0]
    assert fields["kind"] == "non_retryable"


def test_missing_classification_is_not_retried(event_recorder: list[tuple[str, dict]]) -> None:
    assert retry_policy.decide_retry(1, 3) is False
    _, fields = event_recorder[0]
    assert fields["kind"] == "missing_error_code"


def test_backoff_is_capped_exponential() -> None:
    assert compute_backoff_seconds(1, base_delay=1, max_delay=30) == 1
    assert compute_backoff_seconds(2, base_delay=1, max_delay=30) == 2
    assert compute_backoff_seconds(3, base_delay=1, max_delay=30) == 4
    assert compute_backoff_seconds(10, base_delay=1, max_delay=30) == 30


def test_backoff_jitter_stays_within_bounds() -> None:
    policy = RetryPolicy(name="test", base_delay=2.0, jitter=0.25, rng=random.Random(7))
    for _ in range(50):
        assert 1.5 <= policy.backoff(1) <= 2.5


def test_call_retries_transient_errors_then_succeeds(event_recorder) -> None:
    sleeps: list[float] = []
    policy = RetryPolicy(name="test", max_attempts=3, jitter=0, sleep=sleeps.append)
    calls = {"n": 0}

    def flaky() -> str:
        calls["n"] += 1
        if calls["n"] < 3:
            raise RuntimeError("net::ERR_CONNECTION_RESET")
        return "ok"

    assert policy.call(flaky, label="example.com") == "ok"
    assert calls["n"] == 3
    assert sleeps == [1.0, 2.0]


def test_call_does_not_retry_permanent_errors(event_recorder) -> None:
    sleeps: list[float] = []
    policy = RetryPolicy(name="test", max_attempts=5, sleep=sleeps.append)
    calls = {"n": 0}

    def broken() -> None:
        calls["n"] += 1
        raise RuntimeError("net::ERR_NAME_NOT_RESOLVED")

    with pytest.raises(RuntimeError):
        policy.call(broken)
    assert calls["n"] == 1
    assert sleeps == []
