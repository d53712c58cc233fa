"""Readiness probe shared by ``adscan health`` and ``GET /api/health``."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable

from . import config, db
from .config_validation import validate_runtime_config
from .domain_health import DomainHealthTracker
from .logging_utils import _crawler_event
from .utils import disk_has_room, ensure_dirs, log_line

Check = dict[str, Any]


@dataclass
class HealthResult:
    ok: bool
    checks: dict[str, Check] = field(default_factory=dict)


def _config_check(entrypoint: str) -> Check:
    try:
        validate_runtime_config(entrypoint, mode=None)
    except ValueError as exc:
        return {"ok": False, "error": str(exc)}
    return {"ok": True}


def _filesystem_check() -> Check:
    check: Check = {"data_dir": str(config.DATA_DIR), "min_free_mb": config.MIN_FREE_MB}
    try:
        ensure_dirs()
    except OSError as exc:
        return {**check, "ok": False, "error": str(exc)}
    check["ok"] = disk_has_room(config.MIN_FREE_MB, config.DATA_DIR)
    if not check["ok"]:
        check["error"] = "insufficient free space"
    return check


def _ledger_check() -> Check:
    check: Check = {"path": str(config.DB_PATH)}
    try:
        conn = db.get_connection()
        try:
            db.initialize_schema(conn)
            rows = conn.execute(
                "SELECT status, COUNT(*) AS n FROM processed_urls GROUP BY status"
            ).fetchall()
        finally:
            conn.close()
    except Exception as exc:  # noqa: BLE001
        return {**check, "ok": False, "error": str(exc)}
    statuses = {row["status"]: int(row["n"]) for row in rows}
    return {**check, "ok": True, "tracked_urls": sum(statuses.values()), "statuses": statuses}


def _domain_check() -> Check:
    # A corrupt state file is ignored on load, so this only reports counts.
    tracker = DomainHealthTracker(state_path=config.DOMAIN_HEALTH_FILE, log=lambda msg: None)
    return {"ok": True, "domains": tracker.summary()}


_CHECKS: tuple[tuple[str, Callable[[], Check]], ...] = (
    ("filesystem", _filesystem_check),
    ("database", _ledger_check),
    ("domains", _domain_check),
)


def run_health_checks(entrypoint: str = "cli") -> HealthResult:
    """Run every check; a failing check never stops the others."""

    result = HealthResult(ok=True)
    result.checks["config"] = _config_check(entrypoint or "cli")
    for name, probe in _CHECKS:
        result.checks[name] = probe()
    result.ok = all(check.get("ok", False) for check in result.checks.values())
    _crawler_event(
        "state" if result.ok else "error",
        phase="health",
        entrypoint=entrypoint,
        ok=result.ok,
        failed=[name for name, check in result.checks.items() if not check.get("ok")],
    )
    return result


__all__ = ["HealthResult", "run_health_checks"]


if __name__ == "__main__":  # pragma: no cover
    outcome = run_health_checks(entrypoint="cli")
    for check_name, details in outcome.checks.items():
        log_line(f"[HEALTH] {check_name}: {'OK' if details.get('ok') else 'FAIL'} {details}")
    raise SystemExit(0 if outcome.ok else 1)
