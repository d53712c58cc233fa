from __future__ import annotations

import json
from pathlib import Path

import pytest

from app.crawler import cli, config
from app.crawler.dispatcher import StrategiesExhaustedError
from app.crawler.error_taxonomy import StorageError
from app.crawler.orchestrator import ScanSummary
from app.crawler.results import UrlStatus
from app.crawler.url_tracker import DedupStore
from tests.test_url_tracker import _configure_temp_paths


class FakeOrchestrator:
    instances: list["FakeOrchestrator"] = []
    raise_exc: Exception | None = None

    def __init__(self, options=None, **kwargs) -> None:
        self.options = options
        self.urls: list[str] = []
        FakeOrchestrator.instances.append(self)

    def run(self, urls):
        self.urls = list(urls)
        if FakeOrchestrator.raise_exc is not None:
            raise FakeOrchestrator.raise_exc
        return ScanSummary(total_input=len(urls), processed=len(urls))


@pytest.fixture
def data_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    data = _configure_temp_paths(tmp_path, monkeypatch)
    FakeOrchestrator.instances = []
    FakeOrchestrator.raise_exc = None
    monkeypatch.setattr(cli, "ScanOrchestrator", FakeOrchestrator)
    monkeypatch.setattr(cli, "setup_run_logger", lambda: data / "logs" / "scan.log")
    monkeypatch.setattr(cli, "log_line", lambda msg: None)
    return data


@pytest.fixture
def url_file(data_dir: Path) -> Path:
    path = data_dir / "urls.txt"
    path.write_text("a.example.com\nb.example.com\nc.example.com\n")
    return path


def test_scan_passes_options_and_prints_summary(url_file: Path, capsys: pytest.CaptureFixture) -> None:
    code = cli.main(
        [
            "scan",
            str(url_file),
            "--range",
            "2-3",
            "--concurrency",
            "4",
            "--chunk-size",
            "50",
            "--no-skip-processed",
            "--preflight",
            "--prune-input",
        ]
    )

    assert code == cli.EXIT_OK
    (run,) = FakeOrchestrator.instances
    assert run.urls == ["https://a.example.com", "https://b.example.com", "https://c.example.com"]
    assert run.options.range == "2-3"
    assert run.options.max_concurrency == 4
    assert run.options.chunk_size == 50
    assert run.options.skip_processed is False
    assert run.options.preflight_check is True
    assert run.options.prune_input_file is True
    assert run.options.input_file == url_file
    assert json.loads(capsys.readouterr().out)["processed"] == 3


def test_remote_source_is_not_pruned(data_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(cli, "load_urls", lambda source, cache=None: ["https://a.example.com"])

    assert cli.main(["scan", "https://lists.example.com/sites.txt"]) == cli.EXIT_OK
    assert FakeOrchestrator.instances[0].options.input_file is None


def test_missing_source_fails(data_dir: Path) -> None:
    assert cli.main(["scan", str(data_dir / "missing.txt")]) == cli.EXIT_FAILED
    assert FakeOrchestrator.instances == []


def test_invalid_config_fails_before_loading(url_file: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(config, "MIN_FREE_MB", -5)

    assert cli.main(["scan", str(url_file)]) == cli.EXIT_FAILED
    assert FakeOrchestrator.instances == []


@pytest.mark.parametrize(
    "exc, expected",
    [
        (StrategiesExhaustedError([], ["https://a.example.com"], ["context_pool: boom"]), cli.EXIT_INFRASTRUCTURE),
        (StorageError("ledger locked"), cli.EXIT_FAILED),
    ],
)
def test_scan_failures_map_to_exit_codes(url_file: Path, exc: Exception, expected: int) -> None:
    FakeOrchestrator.raise_exc = exc

    assert cli.main(["scan", str(url_file)]) == expected


def test_stats_prints_ledger_and_domain_counts(data_dir: Path, capsys: pytest.CaptureFixture) -> None:
    with DedupStore(log=lambda msg: None) as store:
        store.mark_processed("https://a.example.com", UrlStatus.SUCCESS)

    assert cli.main(["stats"]) == cli.EXIT_OK

    out = capsys.readouterr().out
    assert "Tracked URLs: 1" in out
    assert "success: 1" in out
    assert "healthy: 0" in out


def test_suggest_lists_unprocessed_windows(url_file: Path, capsys: pytest.CaptureFixture) -> None:
    with DedupStore(log=lambda msg: None) as store:
        store.mark_processed("https://a.example.com", UrlStatus.SUCCESS)

    assert cli.main(["suggest", str(url_file), "--window", "1", "--count", "5"]) == cli.EXIT_OK

    lines = capsys.readouterr().out.splitlines()
    assert [line.split()[1] for line in lines] == ["2-2", "3-3"]


def test_suggest_reports_when_everything_is_done(url_file: Path, capsys: pytest.CaptureFixture) -> None:
    with DedupStore(log=lambda msg: None) as store:
        for host in "abc":
            store.mark_processed(f"https://{host}.example.com", UrlStatus.NO_DATA)

    assert cli.main(["suggest", str(url_file)]) == cli.EXIT_OK
    assert "All URLs have been processed." in capsys.readouterr().out


def test_health_and_vacuum_commands(data_dir: Path, capsys: pytest.CaptureFixture) -> None:
    assert cli.main(["health"]) == cli.EXIT_OK
    assert "database: OK" in capsys.readouterr().out
    assert cli.main(["vacuum"]) == cli.EXIT_OK


def test_subcommand_is_required() -> None:
    with pytest.raises(SystemExit):
        cli.main([])
