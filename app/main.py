from __future__ import annotations

import threading
from typing import Any

from flask import Flask, Response, jsonify, request

from app.crawler import config
from app.crawler.config_validation import validate_runtime_config
from app.crawler.content_cache import ContentCache
from app.crawler.domain_health import DomainHealthTracker
from app.crawler.error_taxonomy import StorageError
from app.crawler.healthcheck import run_health_checks
from app.crawler.logging_utils import _crawler_event
from app.crawler.orchestrator import ScanOptions, ScanOrchestrator, load_summary
from app.crawler.sources import SourceError, load_urls
from app.crawler.url_tracker import DedupStore
from app.crawler.utils import ensure_dirs, log_line, setup_run_logger

app = Flask(__name__)

# Storage paths must exist for WSGI entrypoints too; idempotent.
ensure_dirs()

_SCAN_LOCK = threading.Lock()

_BOOL_OPTIONS = (
    "skip_processed",
    "force_reprocess",
    "reset_tracking",
    "preflight_check",
    "skip_dns_failed",
    "skip_ssl_failed",
    "prefilter_processed",
    "retry_timeouts",
)


def _parse_bool(name: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    raise ValueError(f"{name} must be a boolean")


def _scan_options_from_payload(payload: dict[str, Any]) -> ScanOptions:
    options = ScanOptions()
    if payload.get("range") is not None:
        options.range = str(payload["range"])
    for name in ("max_concurrency", "chunk_size"):
        if payload.get(name) is not None:
            try:
                setattr(options, name, int(payload[name]))
            except (TypeError, ValueError) as exc:
                raise ValueError(f"{name} must be an integer") from exc
    for name in _BOOL_OPTIONS:
        if name in payload:
            setattr(options, name, _parse_bool(name, payload[name]))
    return options


def _scan_running() -> bool:
    thread = app.config.get("SCAN_THREAD")
    return thread is not None and thread.is_alive()


def _run_scan(urls: list[str], options: ScanOptions) -> None:
    try:
        setup_run_logger()
        summary = ScanOrchestrator(options).run(urls)
        app.config["LAST_SUMMARY"] = summary.to_dict()
    except Exception as exc:  # noqa: BLE001
        log_line(f"Scan thread failed: {exc}")
        _crawler_event("error", phase="api", context="scan_thread", error=str(exc))
        app.config["LAST_ERROR"] = str(exc)


@app.get("/api/health")
def api_health() -> Response:
    """Return a JSON health summary for configuration, filesystem, and DB."""

    result = run_health_checks(entrypoint="api")
    status = 200 if result.ok else 503
    return jsonify({"ok": result.ok, "checks": result.checks}), status


@app.get("/api/tracker/stats")
def api_tracker_stats() -> Response:
    try:
        with DedupStore() as store:
            payload = {"ok": True, "total": store.count(), "statuses": store.stats()}
    except StorageError as exc:
        return jsonify({"ok": False, "error": str(exc)}), 503
    return jsonify(payload)


@app.get("/api/domains")
def api_domains() -> Response:
    """Return circuit-breaker state for every domain seen so far."""

    tracker = DomainHealthTracker(state_path=config.DOMAIN_HEALTH_FILE)
    return jsonify({"ok": True, "summary": tracker.summary(), "domains": tracker.snapshot()})


@app.post("/api/scan")
def api_start_scan() -> Response:
    """Start a scan in a background thread.

    The JSON body names either ``source`` (path or URL of a list) or
    ``urls`` (an inline list), plus optional scan options.
    """

    payload = request.get_json(silent=True) or {}
    try:
        validate_runtime_config("api", mode="scan")
        options = _scan_options_from_payload(payload)
    except ValueError as exc:
        return jsonify({"ok": False, "error": str(exc)}), 400

    inline = payload.get("urls")
    source = payload.get("source")
    if isinstance(inline, list):
        urls = [str(url) for url in inline]
    elif isinstance(source, str) and source.strip():
        try:
            urls = load_urls(source.strip(), cache=app.config.setdefault("SOURCE_CACHE", ContentCache()))
        except SourceError as exc:
            return jsonify({"ok": False, "error": str(exc)}), 400
    else:
        return jsonify({"ok": False, "error": "Provide 'source' or 'urls'"}), 400

    with _SCAN_LOCK:
        if _scan_running():
            return jsonify({"ok": False, "error": "A scan is already running"}), 409
        app.config["LAST_ERROR"] = None
        thread = threading.Thread(target=_run_scan, args=(urls, options), daemon=True)
        app.config["SCAN_THREAD"] = thread
        thread.start()

    log_line(f"[API] Scan started for {len(urls)} URLs")
    return jsonify({"ok": True, "started": True, "urls": len(urls)}), 202


@app.get("/api/scan/last")
def api_last_scan() -> Response:
    summary = app.config.get("LAST_SUMMARY") or load_summary()
    payload = {
        "ok": summary is not None,
        "running": _scan_running(),
        "summary": summary,
        "error": app.config.get("LAST_ERROR"),
    }
    return jsonify(payload), (200 if summary is not None or payload["running"] else 404)


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=8080, debug=False)
