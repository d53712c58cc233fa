from __future__ import annotations

import importlib
import sys
import time
from pathlib import Path

import pytest

from app.crawler.error_taxonomy import StorageError
from app.crawler.orchestrator import ScanSummary, save_summary
from app.crawler.results import UrlStatus
from app.crawler.url_tracker import DedupStore
from tests.test_url_tracker import _configure_temp_paths


def _reload_main_module():
    if "app.main" in sys.modules:
        del sys.modules["app.main"]
    return importlib.import_module("app.main")


@pytest.fixture
def client(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    _configure_temp_paths(tmp_path, monkeypatch)
    main = _reload_main_module()
    return main.app.test_client()


class RecordingOrchestrator:
    """Stands in for ScanOrchestrator so no browser is started."""

    runs: list[tuple[list[str], object]] = []

    def __init__(self, options=None, **kwargs) -> None:
        self.options = options

    def run(self, urls):
        RecordingOrchestrator.runs.append((list(urls), self.options))
        return ScanSummary(total_input=len(urls), processed=len(urls), succeeded=len(urls))


def _wait_for_scan(client, timeout: float = 5.0) -> dict:
    deadline = time.monotonic() + timeout
    while True:
        payload = client.get("/api/scan/last").get_json()
        if not payload["running"] or time.monotonic() > deadline:
            return payload
        time.sleep(0.02)


def test_tracker_stats_reports_ledger_counts(client) -> None:
    with DedupStore(log=lambda msg: None) as store:
        store.mark_processed("https://a.example.com", UrlStatus.SUCCESS)
        store.mark_processed("https://b.example.com", UrlStatus.ERROR, "CONNECTION_REFUSED")

    resp = client.get("/api/tracker/stats")

    assert resp.status_code == 200
    payload = resp.get_json()
    assert payload["total"] == 2
    assert payload["statuses"] == {"success": 1, "error": 1}


def test_domains_endpoint_starts_empty(client) -> None:
    payload = client.get("/api/domains").get_json()

    assert payload["ok"] is True
    assert payload["domains"] == {}


def test_scan_last_is_404_before_any_scan(client) -> None:
    resp = client.get("/api/scan/last")

    assert resp.status_code == 404
    assert resp.get_json()["summary"] is None


def test_scan_last_reads_saved_summary(client) -> None:
    save_summary(ScanSummary(total_input=3, processed=3))

    resp = client.get("/api/scan/last")

    assert resp.status_code == 200
    assert resp.get_json()["summary"]["processed"] == 3


@pytest.mark.parametrize(
    "payload",
    [{}, {"urls": "https://a.example.com"}, {"source": "   "}, {"urls": [], "max_concurrency": "lots"}],
)
def test_start_scan_rejects_bad_payloads(client, payload) -> None:
    resp = client.post("/api/scan", json=payload)

    assert resp.status_code == 400
    assert resp.get_json()["ok"] is False


def test_start_scan_with_missing_source_file(client, tmp_path: Path) -> None:
    resp = client.post("/api/scan", json={"source": str(tmp_path / "missing.txt")})

    assert resp.status_code == 400


def test_start_scan_runs_in_background(client, monkeypatch: pytest.MonkeyPatch) -> None:
    main = sys.modules["app.main"]
    RecordingOrchestrator.runs = []
    monkeypatch.setattr(main, "ScanOrchestrator", RecordingOrchestrator)
    monkeypatch.setattr(main, "setup_run_logger", lambda: Path("scan.log"))

    resp = client.post(
        "/api/scan",
        json={"urls": ["https://a.example.com", "https://b.example.com"], "range": "1-1",
              "max_concurrency": 3, "preflight_check": True},
    )

    assert resp.status_code == 202
    assert resp.get_json() == {"ok": True, "started": True, "urls": 2}
    payload = _wait_for_scan(client)
    assert payload["summary"]["processed"] == 2
    urls, options = RecordingOrchestrator.runs[0]
    assert urls == ["https://a.example.com", "https://b.example.com"]
    assert options.range == "1-1"
    assert options.max_concurrency == 3
    assert options.preflight_check is True


def test_string_flags_are_parsed_not_truth_tested(client, monkeypatch: pytest.MonkeyPatch) -> None:
    main = sys.modules["app.main"]
    RecordingOrchestrator.runs = []
    monkeypatch.setattr(main, "ScanOrchestrator", RecordingOrchestrator)
    monkeypatch.setattr(main, "setup_run_logger", lambda: Path("scan.log"))

    resp = client.post(
        "/api/scan",
        json={"urls": ["https://a.example.com"], "preflight_check": "false", "retry_timeouts": "yes"},
    )

    assert resp.status_code == 202
    _wait_for_scan(client)
    _, options = RecordingOrchestrator.runs[0]
    assert options.preflight_check is False
    assert options.retry_timeouts is True


def test_non_boolean_flag_is_rejected(client) -> None:
    resp = client.post("/api/scan", json={"urls": ["https://a.example.com"], "force_reprocess": "maybe"})

    assert resp.status_code == 400
    assert "force_reprocess must be a boolean" in resp.get_json()["error"]


def test_second_scan_is_rejected_while_one_is_running(client, monkeypatch: pytest.MonkeyPatch) -> None:
    main = sys.modules["app.main"]

    class Alive:
        def is_alive(self) -> bool:
            return True

    main.app.config["SCAN_THREAD"] = Alive()
    try:
        resp = client.post("/api/scan", json={"urls": ["https://a.example.com"]})
    finally:
        main.app.config["SCAN_THREAD"] = None

    assert resp.status_code == 409


def test_failed_scan_reports_error(client, monkeypatch: pytest.MonkeyPatch) -> None:
    main = sys.modules["app.main"]

    class Exploding(RecordingOrchestrator):
        def run(self, urls):
            raise StorageError("ledger unavailable")

    monkeypatch.setattr(main, "ScanOrchestrator", Exploding)
    monkeypatch.setattr(main, "setup_run_logger", lambda: Path("scan.log"))

    client.post("/api/scan", json={"urls": ["https://a.example.com"]})
    payload = _wait_for_scan(client)

    assert payload["error"] == "ledger unavailable"
