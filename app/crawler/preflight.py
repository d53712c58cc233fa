"""Cheap upfront DNS / SSL / liveness probes run before browser navigation."""
from __future__ import annotations

import re
import socket
import ssl
import threading
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional
from urllib.parse import urlsplit

import requests

from . import config
from .domain_health import DomainHealthTracker
from .error_codes import ErrorCategory, ErrorCode, ErrorPhase
from .error_taxonomy import ErrorInfo, dns_failure, ssl_failure
from .logging_utils import _crawler_event
from .retry_policy import RetryPolicy
from .utils import extract_domain, log_line

CERT_EXPIRY_WARNING_DAYS = 30

_HOST_LABEL = r"(?!-)[a-z0-9-]{1,63}(?<!-)"
_HOSTNAME_RE = re.compile(rf"^(?:{_HOST_LABEL}\.)+(?:[a-z]{{2,63}}|xn--[a-z0-9-]{{1,59}})\.?$", re.I)
_IPV4_RE = re.compile(r"^\d{1,3}(?:\.\d{1,3}){3}$")


@dataclass
class PreflightResult:
    url: str
    passed_dns: bool = True
    passed_ssl: bool = True
    predicted_to_fail: bool = False
    warnings: list[str] = field(default_factory=list)
    skip_reason: Optional[str] = None
    error: Optional[ErrorInfo] = None
    live_status: Optional[int] = None


@dataclass(frozen=True)
class CertificateInfo:
    not_after: Optional[datetime]
    issuer: str = ""


Resolver = Callable[[str], list[str]]
SslProbe = Callable[[str, int], CertificateInfo]


def resolve_host(hostname: str) -> list[str]:
    """Resolve ``hostname`` to its addresses; raises ``OSError`` on failure."""

    infos = socket.getaddrinfo(hostname, None, proto=socket.IPPROTO_TCP)
    return sorted({info[4][0] for info in infos})


def probe_certificate(hostname: str, port: int = 443) -> CertificateInfo:
    """Complete a verified TLS handshake and return the peer certificate dates."""

    context = ssl.create_default_context()
    with socket.create_connection((hostname, port), timeout=config.SSL_TIMEOUT_SECONDS) as sock:
        with context.wrap_socket(sock, server_hostname=hostname) as tls:
            cert = tls.getpeercert() or {}
    not_after = None
    if cert.get("notAfter"):
        not_after = datetime.fromtimestamp(
            ssl.cert_time_to_seconds(cert["notAfter"]), tz=timezone.utc
        )
    issuer = ", ".join("=".join(pair) for rdn in cert.get("issuer", ()) for pair in rdn)
    return CertificateInfo(not_after=not_after, issuer=issuer)


def _classify_dns_error(exc: BaseException) -> ErrorInfo:
    transient = (
        isinstance(exc, socket.gaierror) and exc.errno == socket.EAI_AGAIN
    ) or isinstance(exc, socket.timeout)
    return ErrorInfo(
        code=ErrorCode.DNS_TEMPORARY_FAILURE if transient else ErrorCode.DNS_RESOLUTION_FAILED,
        category=ErrorCategory.NETWORK,
        sub_category="dns",
        phase=ErrorPhase.PREFLIGHT,
        message=str(exc),
        retryable=transient,
    )


def _classify_ssl_error(exc: BaseException) -> ErrorInfo:
    if isinstance(exc, ssl.SSLCertVerificationError):
        reason = f"{exc.verify_message or ''} {exc}".lower()
        if "expired" in reason:
            return ssl_failure(ErrorCode.CERT_EXPIRED, f"Certificate expired: {exc}")
        if "hostname" in reason or "mismatch" in reason:
            return ssl_failure(ErrorCode.CERT_HOSTNAME_MISMATCH, f"Hostname mismatch: {exc}")
        return ssl_failure(ErrorCode.CERT_UNTRUSTED, f"Untrusted certificate: {exc}")
    return ssl_failure(ErrorCode.SSL_VALIDATION_FAILED, f"SSL handshake failed: {exc}")


def validate_domain_pattern(url: str) -> bool:
    """Return ``True`` for http(s) URLs with a plausible hostname."""

    if not url or any(ch.isspace() for ch in url.strip()):
        return False
    try:
        parts = urlsplit(url.strip())
        hostname = parts.hostname or ""
    except ValueError:
        return False
    if parts.scheme not in {"http", "https"} or not hostname:
        return False
    if _IPV4_RE.match(hostname):
        return all(0 <= int(octet) <= 255 for octet in hostname.split("."))
    return bool(_HOSTNAME_RE.match(hostname)) or hostname == "localhost"


def filter_valid_urls(urls: Iterable[str]) -> tuple[list[str], list[str]]:
    valid: list[str] = []
    invalid: list[str] = []
    for url in urls:
        (valid if validate_domain_pattern(url) else invalid).append(url)
    return valid, invalid


class PreflightChecker:
    """Runs bounded-concurrency probes and reports per-URL results.

    Probe failures never raise. They are recorded on the result and, when a
    tracker is supplied, as domain failures.
    """

    def __init__(
        self,
        health_tracker: Optional[DomainHealthTracker] = None,
        *,
        resolver: Resolver = resolve_host,
        ssl_probe: SslProbe = probe_certificate,
        http_session: Optional[requests.Session] = None,
        dns_policy: Optional[RetryPolicy] = None,
        dns_timeout_s: float | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        log: Callable[[str], None] = log_line,
    ) -> None:
        self.health_tracker = health_tracker
        self.resolver = resolver
        self.ssl_probe = ssl_probe
        self.http_session = http_session
        self.dns_policy = dns_policy or RetryPolicy(
            name="preflight_dns",
            max_attempts=2,
            base_delay=0.5,
            max_delay=2.0,
            classifier=_classify_dns_error,
        )
        self.dns_timeout_s = float(dns_timeout_s or config.DNS_TIMEOUT_SECONDS)
        self._clock = clock
        self._log = log

    # ------------------------------------------------------------------ probes

    def _lookup(self, hostname: str) -> list[str]:
        """Run the resolver for at most ``dns_timeout_s``; a hung lookup raises ``socket.timeout``."""

        future: "Future[list[str]]" = Future()

        def target() -> None:
            try:
                future.set_result(self.resolver(hostname))
            except Exception as exc:  # noqa: BLE001
                future.set_exception(exc)

        threading.Thread(target=target, name=f"dns-lookup-{hostname}", daemon=True).start()
        try:
            return future.result(timeout=self.dns_timeout_s)
        except FuturesTimeout:
            raise socket.timeout(
                f"DNS lookup timed out after {self.dns_timeout_s:g}s"
            ) from None

    def _resolve(self, hostname: str) -> Optional[ErrorInfo]:
        try:
            addresses = self.dns_policy.call(lambda: self._lookup(hostname), label=hostname)
        except (OSError, UnicodeError) as exc:
            return dns_failure(hostname, str(exc))
        if not addresses:
            return dns_failure(hostname, "no addresses returned")
        return None

    def _check_ssl(self, hostname: str, port: int) -> tuple[Optional[ErrorInfo], list[str]]:
        try:
            cert = self.ssl_probe(hostname, port)
        except (ssl.SSLError, OSError) as exc:
            return _classify_ssl_error(exc), []
        warnings: list[str] = []
        if cert.not_after is not None:
            days_left = (cert.not_after - self._clock()).days
            if days_left < 0:
                return ssl_failure(ErrorCode.CERT_EXPIRED, "Certificate expired"), []
            if days_left <= CERT_EXPIRY_WARNING_DAYS:
                warnings.append(f"Certificate expires in {days_left} days")
        return None, warnings

    def check_liveness(self, url: str) -> Optional[int]:
        """HEAD ``url`` and return the status code, or ``None`` when unreachable."""

        getter = self.http_session.head if self.http_session is not None else requests.head
        try:
            response = getter(
                url,
                allow_redirects=True,
                timeout=config.HTTP_TIMEOUT_SECONDS,
                headers=config.COMMON_HEADERS,
            )
        except requests.RequestException as exc:
            self._log(f"[PREFLIGHT] Liveness check failed for {url}: {exc}")
            return None
        return response.status_code

    def _record_failure(self, urls: list[str], info: ErrorInfo) -> None:
        # One observation per host, not per URL sharing it.
        if self.health_tracker is not None and urls:
            self.health_tracker.record_failure(urls[0], info)

    # -------------------------------------------------------------------- API

    def check_urls(
        self,
        urls: Iterable[str],
        *,
        check_dns: bool = True,
        check_ssl: bool = True,
        check_health: bool = True,
        check_live: bool = False,
        dns_concurrency: int | None = None,
        ssl_concurrency: int | None = None,
    ) -> dict[str, PreflightResult]:
        results: dict[str, PreflightResult] = {}
        by_host: dict[str, list[str]] = {}
        for url in urls:
            if url in results:
                continue
            results[url] = PreflightResult(url=url)
            host = extract_domain(url)
            if not host:
                result = results[url]
                result.passed_dns = False
                result.skip_reason = "Invalid URL: no hostname"
                result.error = ErrorInfo(
                    code=ErrorCode.INVALID_URL,
                    category=ErrorCategory.NAVIGATION,
                    sub_category="permanent",
                    phase=ErrorPhase.PREFLIGHT,
                    message=result.skip_reason,
                    retryable=False,
                )
                continue
            by_host.setdefault(host, []).append(url)

        if check_dns and by_host:
            workers = max(1, min(dns_concurrency or config.DNS_CONCURRENCY, len(by_host)))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="dns") as pool:
                futures = {pool.submit(self._resolve, host): host for host in by_host}
                for future in as_completed(futures):
                    host = futures[future]
                    info = future.result()
                    if info is None:
                        continue
                    for url in by_host[host]:
                        result = results[url]
                        result.passed_dns = False
                        result.skip_reason = info.message
                        result.error = info
                    self._record_failure(by_host[host], info)

        if check_ssl:
            ssl_targets: dict[tuple[str, int], list[str]] = {}
            for host, host_urls in by_host.items():
                for url in host_urls:
                    parts = urlsplit(url)
                    if parts.scheme != "https" or not results[url].passed_dns:
                        continue
                    ssl_targets.setdefault((host, parts.port or 443), []).append(url)
            if ssl_targets:
                workers = max(1, min(ssl_concurrency or config.SSL_CONCURRENCY, len(ssl_targets)))
                with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="ssl") as pool:
                    futures = {
                        pool.submit(self._check_ssl, host, port): (host, port)
                        for host, port in ssl_targets
                    }
                    for future in as_completed(futures):
                        target = futures[future]
                        info, warnings = future.result()
                        for url in ssl_targets[target]:
                            result = results[url]
                            result.warnings.extend(warnings)
                            if info is not None:
                                result.passed_ssl = False
                                result.skip_reason = info.message
                                result.error = info
                        if info is not None:
                            self._record_failure(ssl_targets[target], info)

        if check_live:
            live_urls = [u for u, r in results.items() if r.passed_dns and r.passed_ssl]
            if live_urls:
                workers = max(1, min(ssl_concurrency or config.SSL_CONCURRENCY, len(live_urls)))
                with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="live") as pool:
                    for url, status in zip(live_urls, pool.map(self.check_liveness, live_urls)):
                        results[url].live_status = status
                        if status is None:
                            results[url].warnings.append("Liveness check failed")
                        elif status >= 500:
                            results[url].warnings.append(f"Server returned HTTP {status}")

        if check_health and self.health_tracker is not None:
            for url, result in results.items():
                likely, reason = self.health_tracker.is_likely_to_fail(url)
                if likely:
                    result.predicted_to_fail = True
                    result.warnings.append(f"Predicted to fail: {reason}")

        dns_failed = sum(1 for r in results.values() if not r.passed_dns)
        ssl_failed = sum(1 for r in results.values() if not r.passed_ssl)
        _crawler_event(
            "state",
            phase="preflight",
            kind="summary",
            urls=len(results),
            hosts=len(by_host),
            dns_failed=dns_failed,
            ssl_failed=ssl_failed,
            predicted_to_fail=sum(1 for r in results.values() if r.predicted_to_fail),
        )
        self._log(
            f"[PREFLIGHT] {len(results)} URLs checked: "
            f"{dns_failed} failed DNS, {ssl_failed} failed SSL"
        )
        return results

    @staticmethod
    def partition(
        urls: Iterable[str],
        results: dict[str, PreflightResult],
        *,
        skip_dns_failed: bool = True,
        skip_ssl_failed: bool = False,
    ) -> tuple[list[str], list[PreflightResult]]:
        """Split ``urls`` into those to keep and the skipped results."""

        keep: list[str] = []
        skipped: list[PreflightResult] = []
        for url in urls:
            result = results.get(url)
            if result is None:
                keep.append(url)
            elif not result.passed_dns and skip_dns_failed:
                skipped.append(result)
            elif not result.passed_ssl and skip_ssl_failed:
                skipped.append(result)
            else:
                keep.append(url)
        return keep, skipped


__all__ = [
    "PreflightChecker",
    "PreflightResult",
    "CertificateInfo",
    "resolve_host",
    "probe_certificate",
    "validate_domain_pattern",
    "filter_valid_urls",
]
