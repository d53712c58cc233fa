from __future__ import annotations

from typing import Sequence

import pytest

from app.crawler import dispatcher
from app.crawler.dispatcher import ExecutionDispatcher, ResultCollector, StrategiesExhaustedError
from app.crawler.domain_health import DomainHealthTracker, DomainState
from app.crawler.error_taxonomy import InfrastructureError, classify_error
from app.crawler.page_task import TaskOptions
from app.crawler.results import TaskNoData, TaskResult, TaskSuccess, error_result
from tests.test_content_cache import FakeClock

URLS = [f"https://site{index}.example.com" for index in range(5)]


class ScriptedStrategy:
    """Submits results for the first ``handle`` URLs it is given, then
    optionally raises."""

    def __init__(self, name: str, *, handle: int | None = None, raise_exc: Exception | None = None,
                 result_for=None) -> None:
        self.name = name
        self.handle = handle
        self.raise_exc = raise_exc
        self.result_for = result_for or (lambda url: TaskSuccess(url=url, data={"url": url}))
        self.calls: list[list[str]] = []

    def run(self, urls: Sequence[str], options: TaskOptions, sink) -> None:
        self.calls.append(list(urls))
        limit = len(urls) if self.handle is None else self.handle
        for url in urls[:limit]:
            sink.submit(self.result_for(url), 0.1)
        if self.raise_exc is not None:
            raise self.raise_exc


@pytest.fixture(autouse=True)
def _quiet(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(dispatcher, "_crawler_event", lambda *args, **kwargs: None)


def _dispatcher(*strategies, health=None) -> ExecutionDispatcher:
    return ExecutionDispatcher(list(strategies), health_tracker=health, log=lambda msg: None)


def test_primary_strategy_handles_everything() -> None:
    primary = ScriptedStrategy("primary")
    fallback = ScriptedStrategy("fallback")

    results = _dispatcher(primary, fallback).process(URLS)

    assert [r.url for r in results] == URLS
    assert fallback.calls == []


def test_fallback_receives_only_missing_urls() -> None:
    primary = ScriptedStrategy("primary", handle=2, raise_exc=InfrastructureError("pool died"))
    fallback = ScriptedStrategy("fallback", result_for=lambda url: TaskNoData(url=url))

    results = _dispatcher(primary, fallback).process(URLS)

    assert [r.url for r in results] == URLS
    assert fallback.calls == [URLS[2:]]
    assert all(isinstance(r, TaskSuccess) for r in results[:2])
    assert all(isinstance(r, TaskNoData) for r in results[2:])


def test_arbitrary_strategy_exception_triggers_fallback() -> None:
    primary = ScriptedStrategy("primary", handle=0, raise_exc=ConnectionResetError("driver gone"))
    fallback = ScriptedStrategy("fallback")

    results = _dispatcher(primary, fallback).process(URLS)

    assert len(results) == len(URLS)
    assert fallback.calls == [URLS]


def test_strategy_that_drops_results_falls_back() -> None:
    primary = ScriptedStrategy("primary", handle=3)
    fallback = ScriptedStrategy("fallback")

    results = _dispatcher(primary, fallback).process(URLS)

    assert [r.url for r in results] == URLS
    assert fallback.calls == [URLS[3:]]


def test_exhausted_strategies_raise_with_partial_results() -> None:
    primary = ScriptedStrategy("primary", handle=1, raise_exc=InfrastructureError("no browser"))
    fallback = ScriptedStrategy("fallback", handle=1, raise_exc=InfrastructureError("still none"))

    with pytest.raises(StrategiesExhaustedError) as excinfo:
        _dispatcher(primary, fallback).process(URLS)

    exc = excinfo.value
    assert [r.url for r in exc.partial] == URLS[:2]
    assert exc.missing == URLS[2:]
    assert len(exc.errors) == 2


def test_duplicate_input_urls_get_one_result() -> None:
    results = _dispatcher(ScriptedStrategy("primary")).process(URLS[:2] + URLS[:2])

    assert [r.url for r in results] == URLS[:2]


def test_empty_input_returns_no_results() -> None:
    primary = ScriptedStrategy("primary")

    assert _dispatcher(primary).process([]) == []
    assert primary.calls == []


def test_collector_rejects_duplicates_and_unknown_urls() -> None:
    collector = ResultCollector(URLS[:2], progress_every=1)

    assert collector.submit(TaskNoData(url=URLS[0])) is True
    assert collector.submit(TaskSuccess(url=URLS[0])) is False
    assert collector.submit(TaskNoData(url="https://other.example.com")) is False
    assert collector.missing() == [URLS[1]]
    assert collector.results() == [TaskNoData(url=URLS[0])]


def test_collector_refuses_non_results() -> None:
    collector = ResultCollector(URLS[:1])

    with pytest.raises(TypeError):
        collector.submit(None)  # type: ignore[arg-type]


def test_progress_is_reported_in_steps_and_at_the_end() -> None:
    calls: list[tuple[int, int]] = []
    collector = ResultCollector(URLS, on_progress=lambda d, t: calls.append((d, t)), progress_every=2)

    for url in URLS:
        collector.submit(TaskNoData(url=url))
    collector.flush_progress()

    assert calls == [(2, 5), (4, 5), (5, 5)]


def test_results_update_domain_health(tmp_path) -> None:
    clock = FakeClock()
    health = DomainHealthTracker(
        degraded_threshold=1, blocked_threshold=3, clock=clock, log=lambda msg: None
    )
    timeout = classify_error("Navigation timeout of 30000 ms exceeded")

    def outcome(url: str) -> TaskResult:
        if url == URLS[0]:
            return error_result(url, timeout)
        return TaskSuccess(url=url)

    _dispatcher(ScriptedStrategy("primary", result_for=outcome), health=health).process(URLS[:2])

    assert health.state_of(URLS[0]) is DomainState.DEGRADED
    assert health.state_of(URLS[1]) is DomainState.HEALTHY
