from __future__ import annotations

"""Centralised error taxonomy constants for crawl failures.

Codes are persisted in the ``processed_urls.error_code`` column, written to the
per-class error log files and included in structured logs. They should stay
stable for downstream analytics.
"""


class ErrorCode:
    # Preflight
    DNS_RESOLUTION_FAILED = "DNS_RESOLUTION_FAILED"
    DNS_TEMPORARY_FAILURE = "DNS_TEMPORARY_FAILURE"
    SSL_VALIDATION_FAILED = "SSL_VALIDATION_FAILED"
    CERT_EXPIRED = "CERT_EXPIRED"
    CERT_HOSTNAME_MISMATCH = "CERT_HOSTNAME_MISMATCH"
    CERT_UNTRUSTED = "CERT_UNTRUSTED"
    INVALID_URL = "INVALID_URL"
    DOMAIN_BLOCKED = "DOMAIN_BLOCKED"

    # Navigation, permanent
    NAME_NOT_RESOLVED = "NAME_NOT_RESOLVED"
    CONNECTION_REFUSED = "CONNECTION_REFUSED"
    CERT_AUTHORITY_INVALID = "CERT_AUTHORITY_INVALID"

    # Navigation, transient
    NAVIGATION_FAILED = "NAVIGATION_FAILED"
    CONNECTION_RESET = "CONNECTION_RESET"
    CONNECTION_TIMEOUT = "CONNECTION_TIMEOUT"
    ADDRESS_UNREACHABLE = "ADDRESS_UNREACHABLE"
    SSL_PROTOCOL_ERROR = "SSL_PROTOCOL_ERROR"
    CERT_DATE_INVALID = "CERT_DATE_INVALID"
    CERT_NAME_INVALID = "CERT_NAME_INVALID"

    # Timeouts
    NAVIGATION_TIMEOUT = "NAVIGATION_TIMEOUT"
    OPERATION_TIMEOUT = "OPERATION_TIMEOUT"
    HARD_TIMEOUT = "HARD_TIMEOUT"

    # Access / content
    ACCESS_FORBIDDEN = "ACCESS_FORBIDDEN"
    RATE_LIMITED = "RATE_LIMITED"
    CAPTCHA_REQUIRED = "CAPTCHA_REQUIRED"
    PAGE_NOT_FOUND = "PAGE_NOT_FOUND"
    SERVER_ERROR = "SERVER_ERROR"

    # Browser
    MAIN_FRAME_NOT_READY = "MAIN_FRAME_NOT_READY"
    BROWSER_SESSION_CLOSED = "BROWSER_SESSION_CLOSED"
    BROWSER_CRASHED = "BROWSER_CRASHED"
    BROWSER_PROTOCOL_ERROR = "BROWSER_PROTOCOL_ERROR"
    PAGE_UNAVAILABLE = "PAGE_UNAVAILABLE"

    # Extraction
    DETACHED_FRAME = "DETACHED_FRAME"
    CONTEXT_DESTROYED = "CONTEXT_DESTROYED"
    JS_EVALUATION_FAILED = "JS_EVALUATION_FAILED"
    UNKNOWN_PROCESSING_ERROR = "UNKNOWN_PROCESSING_ERROR"

    # Infrastructure
    STRATEGY_FAILED = "STRATEGY_FAILED"


class ErrorCategory:
    NETWORK = "network"
    SSL = "ssl"
    TIMEOUT = "timeout"
    NAVIGATION = "navigation"
    ACCESS = "access"
    CONTENT = "content"
    BROWSER = "browser"
    EXTRACTION = "extraction"
    INFRASTRUCTURE = "infrastructure"
    UNKNOWN = "unknown"


class ErrorPhase:
    PREFLIGHT = "preflight"
    INITIALIZATION = "initialization"
    NAVIGATION = "navigation"
    PAGE_LOAD = "page_load"
    DATA_EXTRACTION = "data_extraction"
    CLEANUP = "cleanup"


# Never retried by the navigation policy, the timeout pass or the ledger.
PERMANENT_ERROR_CODES = frozenset(
    {
        ErrorCode.NAME_NOT_RESOLVED,
        ErrorCode.CONNECTION_REFUSED,
        ErrorCode.CERT_AUTHORITY_INVALID,
        ErrorCode.DNS_RESOLUTION_FAILED,
        ErrorCode.INVALID_URL,
    }
)


__all__ = ["ErrorCode", "ErrorCategory", "ErrorPhase", "PERMANENT_ERROR_CODES"]
