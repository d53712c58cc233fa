"""Command line entry point: ``adscan scan|stats|vacuum|suggest|health``."""
from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import Sequence

from . import config
from .config_validation import validate_runtime_config
from .content_cache import ContentCache
from .dispatcher import StrategiesExhaustedError
from .domain_health import DomainHealthTracker
from .error_taxonomy import StorageError
from .healthcheck import run_health_checks
from .orchestrator import ScanOptions, ScanOrchestrator
from .sources import SourceError, load_urls
from .url_tracker import DedupStore
from .utils import log_line, setup_run_logger

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INFRASTRUCTURE = 2


def _add_scan_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("source", help="URL list: a .txt/.csv/.json path or an http(s) URL.")
    parser.add_argument("--range", dest="range_spec", help='1-based inclusive range, e.g. "1-500".')
    parser.add_argument(
        "--chunk-size",
        type=int,
        default=config.CHUNK_SIZE,
        help="Process URLs in sequential chunks of this size (0 disables chunking).",
    )
    parser.add_argument(
        "--concurrency",
        type=int,
        default=config.MAX_CONCURRENCY,
        help="Maximum pages processed at once.",
    )
    parser.add_argument("--nav-timeout", type=float, help="Navigation timeout in seconds.")
    parser.add_argument(
        "--skip-processed",
        action=argparse.BooleanOptionalAction,
        default=config.SKIP_PROCESSED_DEFAULT,
        help="Skip URLs the ledger already has a final outcome for.",
    )
    parser.add_argument(
        "--force-reprocess",
        action="store_true",
        help="Process every URL in range regardless of the ledger.",
    )
    parser.add_argument(
        "--reset-tracking",
        action="store_true",
        help="Clear the URL ledger before scanning.",
    )
    parser.add_argument(
        "--preflight",
        action=argparse.BooleanOptionalAction,
        default=config.PREFLIGHT_DEFAULT,
        help="Run DNS/SSL checks before opening a browser.",
    )
    parser.add_argument(
        "--skip-dns-failed",
        action=argparse.BooleanOptionalAction,
        default=config.SKIP_DNS_FAILED_DEFAULT,
        help="Skip URLs whose host does not resolve (with --preflight).",
    )
    parser.add_argument(
        "--skip-ssl-failed",
        action=argparse.BooleanOptionalAction,
        default=config.SKIP_SSL_FAILED_DEFAULT,
        help="Skip URLs whose certificate fails validation (with --preflight).",
    )
    parser.add_argument(
        "--retry-timeouts",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Retry timed-out URLs once with relaxed limits at the end of the run.",
    )
    parser.add_argument(
        "--prune-input",
        action="store_true",
        help="Remove successfully processed URLs from a .txt source file.",
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="adscan",
        description="Scan websites for ad-tech libraries with a headless browser.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    _add_scan_arguments(sub.add_parser("scan", help="Scan a list of URLs."))

    sub.add_parser("stats", help="Show URL ledger and domain health statistics.")
    sub.add_parser("vacuum", help="Compact the URL ledger database.")
    sub.add_parser("health", help="Run configuration, filesystem and database checks.")

    suggest = sub.add_parser("suggest", help="Suggest ranges that still hold unprocessed URLs.")
    suggest.add_argument("source", help="URL list: a path or an http(s) URL.")
    suggest.add_argument("--window", type=int, default=1000, help="Range size to suggest.")
    suggest.add_argument("--count", type=int, default=3, help="Number of ranges to suggest.")
    return parser


def _source_cache() -> ContentCache:
    persist_dir = config.CACHE_DIR if config.CACHE_PERSIST else None
    return ContentCache(persist_dir=persist_dir)


def _options_from_args(args: argparse.Namespace) -> ScanOptions:
    source_path = None if args.source.lower().startswith(("http://", "https://")) else Path(args.source)
    return ScanOptions(
        max_concurrency=args.concurrency,
        range=args.range_spec,
        chunk_size=args.chunk_size,
        skip_processed=args.skip_processed,
        force_reprocess=args.force_reprocess,
        reset_tracking=args.reset_tracking,
        preflight_check=args.preflight,
        skip_dns_failed=args.skip_dns_failed,
        skip_ssl_failed=args.skip_ssl_failed,
        retry_timeouts=args.retry_timeouts,
        input_file=source_path,
        prune_input_file=args.prune_input,
        nav_timeout_s=args.nav_timeout,
    )


def _cmd_scan(args: argparse.Namespace) -> int:
    try:
        validate_runtime_config("cli", mode="scan")
    except ValueError as exc:
        log_line(f"[CLI] Invalid configuration: {exc}")
        return EXIT_FAILED
    log_path = setup_run_logger()
    log_line(f"[CLI] Logging to {log_path}")
    try:
        urls = load_urls(args.source, cache=_source_cache())
    except SourceError as exc:
        log_line(f"[CLI] {exc}")
        return EXIT_FAILED

    orchestrator = ScanOrchestrator(_options_from_args(args))
    try:
        summary = orchestrator.run(urls)
    except StrategiesExhaustedError as exc:
        log_line(f"[CLI] Scan aborted: {exc}")
        return EXIT_INFRASTRUCTURE
    except StorageError as exc:
        log_line(f"[CLI] Scan aborted: {exc}")
        return EXIT_FAILED

    print(json.dumps(summary.to_dict(), indent=2))
    return EXIT_OK


def _cmd_stats(_args: argparse.Namespace) -> int:
    with DedupStore() as store:
        stats = store.stats()
        total = store.count()
    with DomainHealthTracker(state_path=config.DOMAIN_HEALTH_FILE) as health:
        domains = health.summary()

    print(f"Tracked URLs: {total}")
    for status, count in sorted(stats.items()):
        print(f"  {status}: {count}")
    print("\nDomain health:")
    for state, count in sorted(domains.items()):
        print(f"  {state}: {count}")
    return EXIT_OK


def _cmd_vacuum(_args: argparse.Namespace) -> int:
    with DedupStore() as store:
        store.vacuum()
    return EXIT_OK


def _cmd_suggest(args: argparse.Namespace) -> int:
    try:
        urls = load_urls(args.source, cache=_source_cache())
    except SourceError as exc:
        log_line(f"[CLI] {exc}")
        return EXIT_FAILED

    with DedupStore() as store:
        suggestions = store.suggest_next_ranges(urls, window_size=args.window, count=args.count)
    if not suggestions:
        print("All URLs have been processed.")
        return EXIT_OK
    for suggestion in suggestions:
        print(
            f"--range {suggestion.range_spec}  "
            f"({suggestion.unprocessed}/{suggestion.total} unprocessed, "
            f"{suggestion.efficiency:.0%})"
        )
    return EXIT_OK


def _cmd_health(_args: argparse.Namespace) -> int:
    result = run_health_checks(entrypoint="cli")
    for name, info in result.checks.items():
        status = "OK" if info.get("ok") else "FAIL"
        print(f"{name}: {status} {info}")
    return EXIT_OK if result.ok else EXIT_FAILED


_COMMANDS = {
    "scan": _cmd_scan,
    "stats": _cmd_stats,
    "vacuum": _cmd_vacuum,
    "suggest": _cmd_suggest,
    "health": _cmd_health,
}


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    return _COMMANDS[args.command](args)


if __name__ == "__main__":  # pragma: no cover - CLI entry
    raise SystemExit(main())
