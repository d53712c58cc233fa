"""Turning task results into log lines, the dated JSON store and input upkeep."""
from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterable, Optional, Sequence

from . import config
from .error_log import ErrorLogWriter
from .results import TaskError, TaskNoData, TaskResult, TaskSuccess
from .utils import log_line, normalize_url

NO_DATA_FILE = "no_prebid.txt"


def log_task_results(
    results: Sequence[TaskResult],
    *,
    error_log: Optional[ErrorLogWriter] = None,
    log: Callable[[str], None] = log_line,
) -> list[dict[str, Any]]:
    """Log each outcome and return the payloads of successful results.

    Errors are appended to their per-class error file and URLs without ad
    tech data to ``no_prebid.txt``.
    """

    if not results:
        log("[RESULTS] No task results to process.")
        return []

    writer = error_log or ErrorLogWriter(log=log)
    successful: list[dict[str, Any]] = []
    no_data: list[str] = []
    log(f"[RESULTS] Processing {len(results)} task results...")
    for result in results:
        if isinstance(result, TaskSuccess):
            instances = result.data.get("prebidInstances") or []
            version = instances[0].get("version") if instances else None
            log(f"[RESULTS] SUCCESS {result.url} (prebid={version or '-'})")
            successful.append(dict(result.data))
        elif isinstance(result, TaskNoData):
            log(f"[RESULTS] NO_DATA {result.url}")
            no_data.append(result.url)
        elif isinstance(result, TaskError):
            log(f"[RESULTS] ERROR {result.url} code={result.code} msg={result.message}")
            writer.write(result.url, result.info)
        else:
            log(f"[RESULTS] Ignoring unknown result entry: {result!r}")

    if no_data:
        append_urls(writer.errors_dir / NO_DATA_FILE, no_data, log=log)
    log(f"[RESULTS] Finished processing task results. {len(successful)} successful extractions.")
    return successful


def append_urls(path: Path, urls: Iterable[str], *, log: Callable[[str], None] = log_line) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as handle:
            for url in urls:
                handle.write(url + "\n")
    except OSError as exc:
        log(f"[RESULTS] Failed to append URLs to {path}: {exc}")


def store_path_for(when: datetime, store_dir: Optional[Path] = None) -> Path:
    """``STORE_DIR/<Mon-YYYY>/<YYYY-MM-DD>.json`` for ``when``."""

    base = Path(store_dir or config.STORE_DIR)
    return base / when.strftime("%b-%Y") / f"{when:%Y-%m-%d}.json"


def write_results_to_store(
    data: Sequence[dict[str, Any]],
    *,
    store_dir: Optional[Path] = None,
    now: Optional[datetime] = None,
    log: Callable[[str], None] = log_line,
) -> Optional[Path]:
    """Merge ``data`` into today's store file and return its path.

    An unreadable or non-list existing file is replaced. Returns ``None``
    when there is nothing to write or the write fails.
    """

    if not data:
        log("[RESULTS] No successful results to write.")
        return None

    path = store_path_for(now or datetime.now(), store_dir)
    merged: list[Any] = []
    if path.exists():
        try:
            existing = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            log(f"[RESULTS] Could not read existing file {path}: {exc}. Overwriting.")
        else:
            if isinstance(existing, list):
                merged = existing
            else:
                log(f"[RESULTS] Existing file {path} is not a JSON array. Overwriting.")
    merged.extend(data)

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(merged, ensure_ascii=False, indent=2), encoding="utf-8")
        tmp_path.replace(path)
    except OSError as exc:
        log(f"[RESULTS] Failed to write results to {path}: {exc}")
        return None
    log(f"[RESULTS] Wrote {len(data)} results to {path} ({len(merged)} total)")
    return path


def update_input_file(
    input_path: Path,
    scope: Sequence[str],
    results: Iterable[TaskResult],
    *,
    log: Callable[[str], None] = log_line,
) -> int:
    """Drop successfully processed in-scope URLs from a ``.txt`` input file.

    URLs outside ``scope`` are preserved. Returns the number of URLs left.
    """

    input_path = Path(input_path)
    if input_path.suffix.lower() != ".txt":
        log(f"[RESULTS] Not pruning non-.txt input file {input_path}")
        return -1

    in_scope = {normalize_url(url) for url in scope}
    done = {
        normalize_url(result.url)
        for result in results
        if isinstance(result, TaskSuccess) and normalize_url(result.url) in in_scope
    }
    if input_path.exists():
        lines = [line.strip() for line in input_path.read_text(encoding="utf-8").splitlines()]
        remaining = [
            line for line in lines if line and normalize_url(line) not in done
        ]
    else:
        log(f"[RESULTS] Input file {input_path} not found; writing remaining in-scope URLs")
        remaining = [
            url for url in dict.fromkeys(u.strip() for u in scope) if normalize_url(url) not in done
        ]

    input_path.write_text("\n".join(remaining) + ("\n" if remaining else ""), encoding="utf-8")
    log(f"[RESULTS] {input_path}: {len(done)} processed URLs removed, {len(remaining)} remain")
    return len(remaining)


__all__ = [
    "log_task_results",
    "append_urls",
    "store_path_for",
    "write_results_to_store",
    "update_input_file",
]
