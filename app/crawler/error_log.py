"""Append-only per-class error log files."""
from __future__ import annotations

import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable, Optional

from . import config
from .error_taxonomy import ErrorInfo, error_log_file_for
from .results import TaskError, TaskResult
from .utils import log_line


def format_error_line(url: str, info: ErrorInfo, when: Optional[datetime] = None) -> str:
    stamp = (when or datetime.now(timezone.utc)).isoformat()
    message = " ".join(str(info.message).split())
    return (
        f"[{stamp}] | Category: {info.label} | Phase: {info.phase} | "
        f"Code: {info.code} | URL: {url} | Message: {message}"
    )


class ErrorLogWriter:
    """Routes each failed URL to the log file for its error class."""

    def __init__(
        self,
        errors_dir: Optional[Path] = None,
        *,
        log: Callable[[str], None] = log_line,
    ) -> None:
        self.errors_dir = Path(errors_dir or config.ERRORS_DIR)
        self._lock = threading.Lock()
        self._log = log

    def path_for(self, info: ErrorInfo) -> Path:
        return self.errors_dir / error_log_file_for(info)

    def write(self, url: str, info: ErrorInfo) -> Optional[Path]:
        path = self.path_for(info)
        line = format_error_line(url, info)
        try:
            with self._lock:
                path.parent.mkdir(parents=True, exist_ok=True)
                with path.open("a", encoding="utf-8") as handle:
                    handle.write(line + "\n")
        except OSError as exc:
            self._log(f"[ERRORS] Could not append to {path}: {exc}")
            return None
        return path

    def write_results(self, results: Iterable[TaskResult]) -> dict[str, int]:
        """Log every ``TaskError`` in ``results``; returns lines written per file."""

        written: dict[str, int] = {}
        for result in results:
            if not isinstance(result, TaskError):
                continue
            path = self.write(result.url, result.info)
            if path is not None:
                written[path.name] = written.get(path.name, 0) + 1
        return written


__all__ = ["ErrorLogWriter", "format_error_line"]
