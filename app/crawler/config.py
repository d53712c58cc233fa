"""Configuration constants for the ad-tech crawl engine."""
from __future__ import annotations

import os
from pathlib import Path

DATA_DIR: Path = Path(os.getenv("ADSCAN_DATA_DIR", "/app/data"))
LOG_DIR: Path = DATA_DIR / "logs"
LOG_FILE: Path = LOG_DIR / "latest.log"
ERRORS_DIR: Path = DATA_DIR / "errors"
STORE_DIR: Path = DATA_DIR / "store"
CACHE_DIR: Path = DATA_DIR / "cache"
DOMAIN_HEALTH_FILE: Path = DATA_DIR / "domain_health.json"
SUMMARY_FILE: Path = DATA_DIR / "last_summary.json"
DB_PATH: Path = DATA_DIR / "url-tracker.db"

MIN_FREE_MB: int = int(os.getenv("ADSCAN_MIN_FREE_MB", "200"))


def _parse_timeout_seconds(env_var: str, default: int, *, minimum: int = 1) -> int:
    """Parse a timeout value in seconds from the environment with bounds."""

    try:
        value = int(os.getenv(env_var, str(default)))
    except ValueError:
        return default
    return max(minimum, value)


def _parse_int(env_var: str, default: int) -> int:
    try:
        return int(os.getenv(env_var, str(default)))
    except ValueError:
        return default


def _parse_flag(env_var: str, default: bool) -> bool:
    raw = os.getenv(env_var)
    if raw is None:
        return default
    return raw.strip().lower() not in {"0", "false", "no", "off", ""}


# Concurrency controls
MAX_CONCURRENCY: int = _parse_int("ADSCAN_MAX_CONCURRENCY", 5)
# 0 disables chunking (one chunk with every URL).
CHUNK_SIZE: int = _parse_int("ADSCAN_CHUNK_SIZE", 0)
# Each pooled browser serves this many concurrency slots.
PAGES_PER_BROWSER: int = _parse_int("ADSCAN_PAGES_PER_BROWSER", 5)
DNS_CONCURRENCY: int = _parse_int("ADSCAN_DNS_CONCURRENCY", 50)
SSL_CONCURRENCY: int = _parse_int("ADSCAN_SSL_CONCURRENCY", 10)
# Progress callbacks fire once per this many completed tasks.
PROGRESS_EVERY: int = _parse_int("ADSCAN_PROGRESS_EVERY", 10)

# Page task timeouts (seconds)
NAV_TIMEOUT_SECONDS: int = _parse_timeout_seconds("ADSCAN_NAV_TIMEOUT_SECONDS", 30)
EVAL_TIMEOUT_SECONDS: int = _parse_timeout_seconds("ADSCAN_EVAL_TIMEOUT_SECONDS", 20)
# Hard ceiling for a whole task, enforced by the dispatcher.
TASK_HARD_TIMEOUT_SECONDS: int = _parse_timeout_seconds(
    "ADSCAN_TASK_HARD_TIMEOUT_SECONDS", 65
)
PAGE_SETTLE_SECONDS: float = float(os.getenv("ADSCAN_PAGE_SETTLE_SECONDS", "2.0"))
DNS_TIMEOUT_SECONDS: int = _parse_timeout_seconds("ADSCAN_DNS_TIMEOUT_SECONDS", 5)
SSL_TIMEOUT_SECONDS: int = _parse_timeout_seconds("ADSCAN_SSL_TIMEOUT_SECONDS", 10)
HTTP_TIMEOUT_SECONDS: int = _parse_timeout_seconds("ADSCAN_HTTP_TIMEOUT_SECONDS", 30)

# Timeout retry pass
RETRY_NAV_TIMEOUT_SECONDS: int = _parse_timeout_seconds(
    "ADSCAN_RETRY_NAV_TIMEOUT_SECONDS", 120
)
RETRY_TIMEOUT_MULTIPLIER: float = float(os.getenv("ADSCAN_RETRY_TIMEOUT_MULTIPLIER", "2.0"))
RETRY_MAX_CONCURRENCY: int = _parse_int("ADSCAN_RETRY_MAX_CONCURRENCY", 3)
NAV_MAX_ATTEMPTS: int = _parse_int("ADSCAN_NAV_MAX_ATTEMPTS", 2)
# Ledger retry budget before a retryable error is recorded as terminal.
TRACKER_MAX_RETRIES: int = _parse_int("ADSCAN_TRACKER_MAX_RETRIES", 3)

# Domain circuit breaker
DOMAIN_DEGRADED_THRESHOLD: int = _parse_int("ADSCAN_DOMAIN_DEGRADED_THRESHOLD", 2)
DOMAIN_BLOCKED_THRESHOLD: int = _parse_int("ADSCAN_DOMAIN_BLOCKED_THRESHOLD", 5)
DOMAIN_COOLDOWN_BASE_SECONDS: int = _parse_timeout_seconds(
    "ADSCAN_DOMAIN_COOLDOWN_BASE_SECONDS", 60
)
DOMAIN_COOLDOWN_MAX_SECONDS: int = _parse_timeout_seconds(
    "ADSCAN_DOMAIN_COOLDOWN_MAX_SECONDS", 3600
)

# Content cache bounds
CACHE_MAX_ENTRIES: int = _parse_int("ADSCAN_CACHE_MAX_ENTRIES", 1000)
CACHE_MAX_SIZE_BYTES: int = _parse_int("ADSCAN_CACHE_MAX_SIZE_BYTES", 100 * 1024 * 1024)
CACHE_TTL_SECONDS: int = _parse_timeout_seconds("ADSCAN_CACHE_TTL_SECONDS", 30 * 60)
CACHE_PERSIST: bool = _parse_flag("ADSCAN_CACHE_PERSIST", False)

# Browser setup
HEADLESS: bool = _parse_flag("ADSCAN_HEADLESS", True)
CHROME_BINARY: str = os.getenv("ADSCAN_CHROME_BINARY", "/usr/bin/chromium")
ENABLE_SELENIUM_FALLBACK: bool = _parse_flag("ADSCAN_ENABLE_SELENIUM_FALLBACK", True)

# Orchestration defaults
SKIP_PROCESSED_DEFAULT: bool = _parse_flag("ADSCAN_SKIP_PROCESSED", True)
PREFLIGHT_DEFAULT: bool = _parse_flag("ADSCAN_PREFLIGHT", False)
SKIP_DNS_FAILED_DEFAULT: bool = _parse_flag("ADSCAN_SKIP_DNS_FAILED", True)
SKIP_SSL_FAILED_DEFAULT: bool = _parse_flag("ADSCAN_SKIP_SSL_FAILED", False)
PREFILTER_PROCESSED_DEFAULT: bool = _parse_flag("ADSCAN_PREFILTER_PROCESSED", True)

COMMON_HEADERS: dict[str, str] = {
    "User-Agent": (
        "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    "Accept": "*/*",
    "Accept-Language": "en-US,en;q=0.9",
    "Connection": "keep-alive",
}
