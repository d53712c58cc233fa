from __future__ import annotations

import json
import socket
from pathlib import Path

import pytest

from app.crawler import config
from app.crawler.dispatcher import StrategiesExhaustedError
from app.crawler.error_taxonomy import InfrastructureError, StorageError, classify_error
from app.crawler.orchestrator import ScanOptions, ScanOrchestrator, load_summary
from app.crawler.results import TaskNoData, TaskResult, TaskSuccess, UrlStatus, error_result
from app.crawler.url_tracker import DedupStore
from tests.test_dispatcher import ScriptedStrategy
from tests.test_preflight import FakeResolver, _checker
from tests.test_url_tracker import _configure_temp_paths

A = "https://a.example.com"
B = "https://b.example.com"
C = "https://c.example.com"
D = "https://d.example.com"


def _outcome(url: str) -> TaskResult:
    if url == B:
        return TaskNoData(url=url)
    if url == C:
        return error_result(url, classify_error("net::ERR_CONNECTION_REFUSED"))
    return TaskSuccess(url=url, data={"url": url, "libraries": ["googletag"], "prebidInstances": []})


def _options(**overrides) -> ScanOptions:
    defaults = dict(
        max_concurrency=2,
        skip_processed=True,
        prefilter_processed=True,
        preflight_check=False,
        retry_timeouts=True,
    )
    defaults.update(overrides)
    return ScanOptions(**defaults)


def _orchestrator(options: ScanOptions, *strategies, **kwargs) -> ScanOrchestrator:
    return ScanOrchestrator(options, strategies=list(strategies), log=lambda msg: None, **kwargs)


@pytest.fixture
def data_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    return _configure_temp_paths(tmp_path, monkeypatch)


def _ledger_status(url: str) -> str | None:
    with DedupStore(log=lambda msg: None) as store:
        record = store.get_record(url)
    return record["status"] if record else None


def test_scan_records_every_outcome(data_dir: Path) -> None:
    strategy = ScriptedStrategy("fake", result_for=_outcome)

    summary = _orchestrator(_options(), strategy).run([A, B, C, D, A])

    assert summary.total_input == 5
    assert summary.in_range == 4
    assert (summary.processed, summary.succeeded, summary.no_data, summary.errored) == (4, 2, 1, 1)
    assert _ledger_status(A) == UrlStatus.SUCCESS.value
    assert _ledger_status(B) == UrlStatus.NO_DATA.value
    assert _ledger_status(C) == UrlStatus.ERROR.value

    stored = json.loads(Path(summary.output_path).read_text())
    assert [item["url"] for item in stored] == [A, D]
    assert C in (config.ERRORS_DIR / "navigation_errors.txt").read_text()
    assert (config.ERRORS_DIR / "no_prebid.txt").read_text() == f"{B}\n"
    assert load_summary()["processed"] == 4


def test_second_run_skips_processed_range(data_dir: Path) -> None:
    _orchestrator(_options(), ScriptedStrategy("fake", result_for=_outcome)).run([A, B, C, D])
    again = ScriptedStrategy("fake", result_for=_outcome)

    summary = _orchestrator(_options(), again).run([A, B, C, D])

    assert again.calls == []
    assert summary.skipped_processed == 4
    assert summary.processed == 0
    assert summary.suggestions == []


def test_prefilter_suggests_unprocessed_ranges(data_dir: Path) -> None:
    urls = [f"https://site{index}.example.com" for index in range(1, 7)]
    _orchestrator(_options(range="1-3"), ScriptedStrategy("fake")).run(urls)

    summary = _orchestrator(_options(range="1-3"), ScriptedStrategy("fake")).run(urls)

    assert summary.processed == 0
    assert summary.suggestions == ["4-6"]


def test_force_reprocess_ignores_the_ledger(data_dir: Path) -> None:
    _orchestrator(_options(), ScriptedStrategy("fake")).run([A, B])
    again = ScriptedStrategy("fake")

    summary = _orchestrator(_options(force_reprocess=True), again).run([A, B])

    assert again.calls == [[A, B]]
    assert summary.processed == 2


def test_range_selects_one_based_positions(data_dir: Path) -> None:
    strategy = ScriptedStrategy("fake")

    summary = _orchestrator(_options(range="2-3"), strategy).run([A, B, C, D])

    assert strategy.calls == [[B, C]]
    assert summary.in_range == 2


def test_chunks_are_dispatched_sequentially(data_dir: Path) -> None:
    strategy = ScriptedStrategy("fake")

    summary = _orchestrator(_options(chunk_size=3), strategy).run([A, B, C, D])

    assert strategy.calls == [[A, B, C], [D]]
    assert summary.processed == 4


def test_invalid_urls_are_logged_and_skipped(data_dir: Path) -> None:
    strategy = ScriptedStrategy("fake")

    summary = _orchestrator(_options(), strategy).run([A, "not a url", "ftp://files.example.com"])

    assert strategy.calls == [[A]]
    assert summary.skipped_invalid == 2
    assert "INVALID_URL" in (config.ERRORS_DIR / "navigation_errors.txt").read_text()


def test_timeouts_are_retried_and_recovered(data_dir: Path) -> None:
    seen: dict[str, int] = {}

    def flaky(url: str) -> TaskResult:
        seen[url] = seen.get(url, 0) + 1
        if url == B and seen[url] == 1:
            return error_result(url, classify_error("Navigation timeout of 30000 ms exceeded"))
        return TaskSuccess(url=url, data={"url": url})

    strategy = ScriptedStrategy("fake", result_for=flaky)

    summary = _orchestrator(_options(), strategy).run([A, B])

    assert strategy.calls == [[A, B], [B]]
    assert (summary.retried, summary.recovered) == (1, 1)
    assert summary.succeeded == 2
    assert _ledger_status(B) == UrlStatus.SUCCESS.value


def test_preflight_skips_unresolvable_hosts(data_dir: Path) -> None:
    resolver = FakeResolver({"c.example.com": socket.gaierror(socket.EAI_NONAME, "Name or service not known")})
    strategy = ScriptedStrategy("fake")
    options = _options(preflight_check=True, skip_dns_failed=True)

    summary = _orchestrator(
        options, strategy, preflight_factory=lambda health: _checker(resolver=resolver, health=health)
    ).run([A, C])

    assert strategy.calls == [[A]]
    assert summary.skipped_preflight == 1
    assert _ledger_status(C) == UrlStatus.ERROR.value
    assert "c.example.com" in (config.ERRORS_DIR / "dns_errors.txt").read_text()


def _stored_urls() -> list[str]:
    return [item["url"] for path in sorted(config.STORE_DIR.glob("*/*.json"))
            for item in json.loads(path.read_text())]


def test_exhausted_strategies_keep_partial_results(data_dir: Path) -> None:
    strategy = ScriptedStrategy("fake", handle=1, raise_exc=InfrastructureError("no browser"))

    with pytest.raises(StrategiesExhaustedError):
        _orchestrator(_options(), strategy).run([A, B, C])

    assert _ledger_status(A) == UrlStatus.SUCCESS.value
    assert _ledger_status(B) is None
    assert _stored_urls() == [A]


class FailsFromCall(ScriptedStrategy):
    """Handles every URL until call ``fail_from``, then dies without results."""

    def __init__(self, fail_from: int) -> None:
        super().__init__("fake")
        self.fail_from = fail_from

    def run(self, urls, options, sink) -> None:
        if len(self.calls) + 1 >= self.fail_from:
            self.calls.append(list(urls))
            raise InfrastructureError("browser gone")
        super().run(urls, options, sink)


def test_failed_later_chunk_still_stores_earlier_chunks(data_dir: Path) -> None:
    with pytest.raises(StrategiesExhaustedError):
        _orchestrator(_options(chunk_size=2), FailsFromCall(fail_from=2)).run([A, B, C, D])

    assert _ledger_status(A) == UrlStatus.SUCCESS.value
    assert _ledger_status(C) is None
    assert _stored_urls() == [A, B]


def test_domain_blocked_mid_run_is_skipped_in_later_chunks(
    data_dir: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(config, "DOMAIN_BLOCKED_THRESHOLD", 5)
    urls = [f"https://flaky.example.com/page{index}" for index in range(8)]
    strategy = ScriptedStrategy(
        "fake", result_for=lambda url: error_result(url, classify_error("net::ERR_CONNECTION_RESET"))
    )

    summary = _orchestrator(_options(chunk_size=1, retry_timeouts=False), strategy).run(urls)

    assert len(strategy.calls) == 5
    assert summary.skipped_blocked == 3
    assert summary.processed == 5
    assert _ledger_status(urls[-1]) is None


def test_progress_is_monotonic_across_chunks(data_dir: Path) -> None:
    progress: list[tuple[int, int]] = []

    _orchestrator(
        _options(chunk_size=2),
        ScriptedStrategy("fake"),
        on_progress=lambda done, total: progress.append((done, total)),
    ).run([A, B, C, D])

    assert progress[-1] == (4, 4)
    assert all(later[0] >= earlier[0] for earlier, later in zip(progress, progress[1:]))
    assert {total for _, total in progress} == {4}


def test_low_disk_space_aborts_before_scanning(data_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(config, "MIN_FREE_MB", 10**12)
    strategy = ScriptedStrategy("fake")

    with pytest.raises(StorageError):
        _orchestrator(_options(), strategy).run([A])

    assert strategy.calls == []


def test_prune_input_file_removes_successes(data_dir: Path) -> None:
    input_file = data_dir / "urls.txt"
    input_file.write_text(f"{A}\n{B}\n{C}\n")

    _orchestrator(
        _options(input_file=input_file, prune_input_file=True),
        ScriptedStrategy("fake", result_for=_outcome),
    ).run([A, B, C])

    assert input_file.read_text().splitlines() == [B, C]


def test_scan_options_task_options_apply_nav_timeout() -> None:
    options = ScanOptions(max_concurrency=4, nav_timeout_s=45)

    task_options = options.task_options()

    assert task_options.nav_timeout_s == 45
    assert task_options.max_concurrency == 4
    assert task_options.hard_timeout_s >= 90
