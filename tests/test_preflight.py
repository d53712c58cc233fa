from __future__ import annotations

import socket
import ssl
import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

from app.crawler.domain_health import DomainHealthTracker
from app.crawler.error_codes import ErrorCode
from app.crawler.preflight import (
    CertificateInfo,
    PreflightChecker,
    _classify_dns_error,
    filter_valid_urls,
    validate_domain_pattern,
)
from app.crawler.retry_policy import RetryPolicy
from tests.test_content_cache import FakeClock

NOW = datetime(2026, 1, 15, tzinfo=timezone.utc)


class FakeResolver:
    def __init__(self, failing: dict[str, OSError] | None = None) -> None:
        self.failing = failing or {}
        self.calls: list[str] = []

    def __call__(self, hostname: str) -> list[str]:
        self.calls.append(hostname)
        if hostname in self.failing:
            raise self.failing[hostname]
        return ["93.184.216.34"]


class FakeSslProbe:
    def __init__(self, certs: dict[str, object] | None = None) -> None:
        self.certs = certs or {}
        self.calls: list[tuple[str, int]] = []

    def __call__(self, hostname: str, port: int) -> CertificateInfo:
        self.calls.append((hostname, port))
        cert = self.certs.get(hostname)
        if isinstance(cert, Exception):
            raise cert
        return cert or CertificateInfo(not_after=NOW + timedelta(days=200))


def _checker(resolver=None, ssl_probe=None, health=None, dns_timeout_s=None) -> PreflightChecker:
    return PreflightChecker(
        health,
        dns_timeout_s=dns_timeout_s,
        resolver=resolver or FakeResolver(),
        ssl_probe=ssl_probe or FakeSslProbe(),
        dns_policy=RetryPolicy(
            name="preflight_dns",
            max_attempts=2,
            classifier=_classify_dns_error,
            sleep=lambda seconds: None,
        ),
        clock=lambda: NOW,
        log=lambda msg: None,
    )


@pytest.mark.parametrize(
    "url, expected",
    [
        ("https://example.com/", True),
        ("http://sub.example.co.uk/path?q=1", True),
        ("https://xn--bcher-kva.xn--p1ai/", True),
        ("https://192.168.0.1/", True),
        ("https://999.1.1.1/", False),
        ("ftp://example.com/", False),
        ("https://not a host/", False),
        ("https://-bad-.com/", False),
        ("https://nodot/", False),
        ("", False),
    ],
)
def test_validate_domain_pattern(url: str, expected: bool) -> None:
    assert validate_domain_pattern(url) is expected


def test_filter_valid_urls_splits() -> None:
    valid, invalid = filter_valid_urls(["https://a.example.com/", "https://bad_host/"])
    assert valid == ["https://a.example.com/"]
    assert invalid == ["https://bad_host/"]


def test_dns_failures_probe_each_host_once_and_record_one_failure() -> None:
    resolver = FakeResolver({"dead.example.com": socket.gaierror(socket.EAI_NONAME, "Name or service not known")})
    health = DomainHealthTracker(clock=FakeClock(), log=lambda msg: None)
    urls = [
        "https://dead.example.com/a",
        "https://dead.example.com/b",
        "https://live.example.com/",
    ]

    results = _checker(resolver=resolver, health=health).check_urls(urls)

    assert resolver.calls.count("dead.example.com") == 1
    assert results["https://dead.example.com/a"].passed_dns is False
    assert results["https://dead.example.com/b"].error.code == ErrorCode.DNS_RESOLUTION_FAILED
    assert results["https://live.example.com/"].passed_dns is True
    assert health.get("dead.example.com").consecutive_failures == 1


def test_transient_dns_errors_are_retried() -> None:
    class FlakyResolver(FakeResolver):
        def __call__(self, hostname: str) -> list[str]:
            self.calls.append(hostname)
            if len(self.calls) == 1:
                raise socket.gaierror(socket.EAI_AGAIN, "Temporary failure in name resolution")
            return ["10.0.0.1"]

    resolver = FlakyResolver()
    results = _checker(resolver=resolver).check_urls(["https://retry.example.com/"], check_ssl=False)

    assert resolver.calls == ["retry.example.com", "retry.example.com"]
    assert results["https://retry.example.com/"].passed_dns is True


def test_hung_dns_lookup_times_out() -> None:
    release = threading.Event()

    class HangingResolver(FakeResolver):
        def __call__(self, hostname: str) -> list[str]:
            if hostname == "slow.example.com":
                self.calls.append(hostname)
                release.wait(5.0)
                return ["10.0.0.2"]
            return super().__call__(hostname)

    resolver = HangingResolver()
    started = time.monotonic()
    try:
        results = _checker(resolver=resolver, dns_timeout_s=0.1).check_urls(
            ["https://slow.example.com/", "https://fast.example.com/"], check_ssl=False
        )
        elapsed = time.monotonic() - started
    finally:
        release.set()

    slow = results["https://slow.example.com/"]
    assert elapsed < 2.0
    assert slow.passed_dns is False
    assert slow.error.code == ErrorCode.DNS_RESOLUTION_FAILED
    assert "timed out" in slow.error.message
    assert resolver.calls.count("slow.example.com") == 2
    assert results["https://fast.example.com/"].passed_dns is True


def test_ssl_failures_warnings_and_http_skip() -> None:
    probe = FakeSslProbe(
        {
            "expired.example.com": CertificateInfo(not_after=NOW - timedelta(days=1)),
            "soon.example.com": CertificateInfo(not_after=NOW + timedelta(days=10, hours=1)),
            "selfsigned.example.com": ssl.SSLError("handshake failure"),
        }
    )
    urls = [
        "https://expired.example.com/",
        "https://soon.example.com/",
        "https://selfsigned.example.com/",
        "http://plain.example.com/",
    ]

    results = _checker(ssl_probe=probe).check_urls(urls)

    assert results["https://expired.example.com/"].error.code == ErrorCode.CERT_EXPIRED
    assert results["https://selfsigned.example.com/"].passed_ssl is False
    assert results["https://soon.example.com/"].passed_ssl is True
    assert results["https://soon.example.com/"].warnings == ["Certificate expires in 10 days"]
    assert ("plain.example.com", 443) not in probe.calls


def test_partition_honours_skip_flags() -> None:
    resolver = FakeResolver({"dead.example.com": socket.gaierror(socket.EAI_NONAME, "nx")})
    probe = FakeSslProbe({"badcert.example.com": ssl.SSLError("bad")})
    urls = ["https://dead.example.com/", "https://badcert.example.com/", "https://ok.example.com/"]
    results = _checker(resolver=resolver, ssl_probe=probe).check_urls(urls)

    keep, skipped = PreflightChecker.partition(urls, results)
    assert keep == ["https://badcert.example.com/", "https://ok.example.com/"]
    assert [r.url for r in skipped] == ["https://dead.example.com/"]

    keep, skipped = PreflightChecker.partition(
        urls, results, skip_dns_failed=False, skip_ssl_failed=True
    )
    assert keep == ["https://dead.example.com/", "https://ok.example.com/"]
    assert [r.url for r in skipped] == ["https://badcert.example.com/"]


def test_blocked_domains_are_predicted_to_fail() -> None:
    health = DomainHealthTracker(blocked_threshold=2, degraded_threshold=1, clock=FakeClock(), log=lambda msg: None)
    health.record_failure("https://down.example.com/")
    health.record_failure("https://down.example.com/")

    results = _checker(health=health).check_urls(["https://down.example.com/"], check_dns=False, check_ssl=False)

    assert results["https://down.example.com/"].predicted_to_fail is True


def test_liveness_uses_head_requests() -> None:
    class FakeSession:
        def head(self, url, **kwargs):
            class Response:
                status_code = 503
            return Response()

    checker = _checker()
    checker.http_session = FakeSession()

    results = checker.check_urls(["https://live.example.com/"], check_live=True)

    assert results["https://live.example.com/"].live_status == 503
    assert "Server returned HTTP 503" in results["https://live.example.com/"].warnings
