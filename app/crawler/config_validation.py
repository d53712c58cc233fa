from __future__ import annotations

from typing import Literal

from . import config
from .logging_utils import _crawler_event
from .utils import log_line

Entrypoint = Literal["ui", "cli", "api", "tests"]


def _raise_config_error(
    message: str, *, entrypoint: Entrypoint, error: str, mode: str | None
) -> None:
    _crawler_event(
        "error",
        phase="config",
        context="runtime_validation",
        error=error,
        entrypoint=entrypoint,
        mode=mode,
    )
    mode_fragment = f", mode={mode}" if mode else ""
    log_line(f"[CONFIG] {message} (entrypoint={entrypoint}{mode_fragment})")
    raise ValueError(message)


def _clamp(field: str, value: int, adjusted: int, *, entrypoint: Entrypoint, mode: str | None) -> None:
    _crawler_event(
        "state",
        phase="config",
        context="runtime_validation",
        kind="config_adjustment",
        field=field,
        value=value,
        adjusted=adjusted,
        entrypoint=entrypoint,
        mode=mode,
    )
    log_line(f"[CONFIG] {field}={value} is out of range; clamping to {adjusted}.")
    setattr(config, field, adjusted)


def validate_runtime_config(entrypoint: Entrypoint, *, mode: str | None = None) -> None:
    """Validate runtime configuration for the given entrypoint.

    Raises ``ValueError`` when a blocking misconfiguration is detected.
    Non-fatal adjustments (e.g. clamping concurrency knobs) are logged but do
    not raise.
    """

    for field in ("MAX_CONCURRENCY", "DNS_CONCURRENCY", "SSL_CONCURRENCY", "PAGES_PER_BROWSER"):
        value = getattr(config, field)
        if value < 1:
            _clamp(field, value, 1, entrypoint=entrypoint, mode=mode)

    if config.RETRY_MAX_CONCURRENCY < 1:
        _clamp(
            "RETRY_MAX_CONCURRENCY",
            config.RETRY_MAX_CONCURRENCY,
            1,
            entrypoint=entrypoint,
            mode=mode,
        )

    if config.CHUNK_SIZE < 0:
        _clamp("CHUNK_SIZE", config.CHUNK_SIZE, 0, entrypoint=entrypoint, mode=mode)

    if config.PROGRESS_EVERY < 1:
        _clamp("PROGRESS_EVERY", config.PROGRESS_EVERY, 1, entrypoint=entrypoint, mode=mode)

    if config.MIN_FREE_MB < 0:
        _raise_config_error(
            "ADSCAN_MIN_FREE_MB must be non-negative.",
            entrypoint=entrypoint,
            error="min_free_mb_invalid",
            mode=mode,
        )

    timeout_fields = [
        ("NAV_TIMEOUT_SECONDS", config.NAV_TIMEOUT_SECONDS),
        ("EVAL_TIMEOUT_SECONDS", config.EVAL_TIMEOUT_SECONDS),
        ("TASK_HARD_TIMEOUT_SECONDS", config.TASK_HARD_TIMEOUT_SECONDS),
        ("RETRY_NAV_TIMEOUT_SECONDS", config.RETRY_NAV_TIMEOUT_SECONDS),
    ]
    for field_name, value in timeout_fields:
        if value <= 0:
            _raise_config_error(
                f"{field_name} must be greater than zero.",
                entrypoint=entrypoint,
                error="invalid_timeout",
                mode=mode,
            )

    if config.TASK_HARD_TIMEOUT_SECONDS < config.NAV_TIMEOUT_SECONDS:
        _raise_config_error(
            "TASK_HARD_TIMEOUT_SECONDS must not be shorter than NAV_TIMEOUT_SECONDS.",
            entrypoint=entrypoint,
            error="hard_timeout_too_short",
            mode=mode,
        )

    if config.RETRY_TIMEOUT_MULTIPLIER < 1:
        _raise_config_error(
            "RETRY_TIMEOUT_MULTIPLIER must be at least 1; the retry pass never tightens limits.",
            entrypoint=entrypoint,
            error="retry_multiplier_invalid",
            mode=mode,
        )

    if not 0 < config.DOMAIN_DEGRADED_THRESHOLD <= config.DOMAIN_BLOCKED_THRESHOLD:
        _raise_config_error(
            "Domain thresholds must satisfy 0 < DEGRADED <= BLOCKED.",
            entrypoint=entrypoint,
            error="domain_threshold_invalid",
            mode=mode,
        )

    if config.CACHE_MAX_ENTRIES < 1 or config.CACHE_MAX_SIZE_BYTES < 1:
        _raise_config_error(
            "Content cache bounds must be positive.",
            entrypoint=entrypoint,
            error="cache_bounds_invalid",
            mode=mode,
        )


__all__ = ["validate_runtime_config", "Entrypoint"]
