"""Classification of raw browser / network failures into the error taxonomy."""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Pattern

from .error_codes import PERMANENT_ERROR_CODES, ErrorCategory, ErrorCode, ErrorPhase


class InfrastructureError(RuntimeError):
    """Driver-level failure that should trigger strategy fallback."""


class StorageError(RuntimeError):
    """Raised when the dedup ledger cannot be opened or written."""


@dataclass(frozen=True)
class ErrorInfo:
    code: str
    category: str
    sub_category: str
    phase: str
    message: str
    retryable: bool

    @property
    def label(self) -> str:
        return f"{self.category}/{self.sub_category}"

    @property
    def is_permanent(self) -> bool:
        return self.code in PERMANENT_ERROR_CODES


@dataclass(frozen=True)
class _Rule:
    pattern: Pattern[str]
    code: str
    category: str
    sub_category: str
    retryable: bool


def _rule(pattern: str, code: str, category: str, sub_category: str, retryable: bool) -> _Rule:
    return _Rule(re.compile(pattern, re.IGNORECASE), code, category, sub_category, retryable)


# First match wins; specific net:: codes must precede the generic net:: rule.
_RULES: tuple[_Rule, ...] = (
    _rule(r"net::ERR_NAME_NOT_RESOLVED", ErrorCode.NAME_NOT_RESOLVED,
          ErrorCategory.NAVIGATION, "permanent", False),
    _rule(r"net::ERR_CONNECTION_REFUSED", ErrorCode.CONNECTION_REFUSED,
          ErrorCategory.NAVIGATION, "permanent", False),
    _rule(r"net::ERR_CERT_AUTHORITY_INVALID", ErrorCode.CERT_AUTHORITY_INVALID,
          ErrorCategory.NAVIGATION, "permanent", False),
    _rule(r"net::ERR_CERT_DATE_INVALID", ErrorCode.CERT_DATE_INVALID,
          ErrorCategory.SSL, "certificate", False),
    _rule(r"net::ERR_CERT_COMMON_NAME_INVALID", ErrorCode.CERT_NAME_INVALID,
          ErrorCategory.SSL, "certificate", False),
    _rule(r"net::ERR_SSL_PROTOCOL_ERROR", ErrorCode.SSL_PROTOCOL_ERROR,
          ErrorCategory.SSL, "protocol", False),
    _rule(r"net::ERR_CONNECTION_TIMED_OUT|net::ERR_TIMED_OUT", ErrorCode.CONNECTION_TIMEOUT,
          ErrorCategory.TIMEOUT, "connection", True),
    _rule(r"net::ERR_ADDRESS_UNREACHABLE", ErrorCode.ADDRESS_UNREACHABLE,
          ErrorCategory.NETWORK, "routing", False),
    _rule(r"net::ERR_CONNECTION_(RESET|CLOSED)|net::ERR_EMPTY_RESPONSE|net::ERR_NETWORK_CHANGED",
          ErrorCode.CONNECTION_RESET, ErrorCategory.NETWORK, "connection", True),
    _rule(r"net::ERR_\w+", ErrorCode.NAVIGATION_FAILED,
          ErrorCategory.NAVIGATION, "transient", True),
    _rule(r"Navigation timeout of \d+ ?ms exceeded|goto: Timeout \d+ ?ms exceeded"
          r"|Timed out receiving message from renderer",
          ErrorCode.NAVIGATION_TIMEOUT, ErrorCategory.TIMEOUT, "navigation", True),
    _rule(r"Timeout \d+ ?ms exceeded|TimeoutError|TimeoutException|timed out",
          ErrorCode.OPERATION_TIMEOUT, ErrorCategory.TIMEOUT, "operation", True),
    _rule(r"Requesting main frame too early|Unable to get browser page",
          ErrorCode.MAIN_FRAME_NOT_READY, ErrorCategory.BROWSER, "main_frame", True),
    _rule(r"detached Frame|frame was detached", ErrorCode.DETACHED_FRAME,
          ErrorCategory.EXTRACTION, "frame", True),
    _rule(r"Execution context was destroyed", ErrorCode.CONTEXT_DESTROYED,
          ErrorCategory.EXTRACTION, "context", True),
    _rule(r"Target crashed|Page crashed", ErrorCode.BROWSER_CRASHED,
          ErrorCategory.BROWSER, "crash", True),
    _rule(r"Target (page, context or browser )?(has been )?closed|Session closed"
          r"|Browser has been closed|invalid session id",
          ErrorCode.BROWSER_SESSION_CLOSED, ErrorCategory.BROWSER, "session", True),
    _rule(r"Protocol error", ErrorCode.BROWSER_PROTOCOL_ERROR,
          ErrorCategory.BROWSER, "protocol", True),
    _rule(r"captcha", ErrorCode.CAPTCHA_REQUIRED, ErrorCategory.ACCESS, "bot_detection", False),
    _rule(r"\b429\b|too many requests|rate limit", ErrorCode.RATE_LIMITED,
          ErrorCategory.ACCESS, "rate_limit", True),
    _rule(r"\b403\b|forbidden", ErrorCode.ACCESS_FORBIDDEN,
          ErrorCategory.ACCESS, "http_error", False),
    _rule(r"Page appears to be unavailable", ErrorCode.PAGE_UNAVAILABLE,
          ErrorCategory.CONTENT, "availability", False),
    _rule(r"Evaluation failed|Cannot read prop|undefined is not|is not defined",
          ErrorCode.JS_EVALUATION_FAILED, ErrorCategory.EXTRACTION, "javascript", False),
)


def _error_text(error: BaseException | str) -> str:
    if isinstance(error, BaseException):
        return f"{type(error).__name__}: {error}"
    return str(error)


def classify_error(
    error: BaseException | str, phase: str = ErrorPhase.NAVIGATION
) -> ErrorInfo:
    """Map an exception or raw message to a stable :class:`ErrorInfo`."""

    text = _error_text(error)
    message = str(error).strip() or text
    for rule in _RULES:
        if rule.pattern.search(text):
            return ErrorInfo(
                code=rule.code,
                category=rule.category,
                sub_category=rule.sub_category,
                phase=phase,
                message=message,
                retryable=rule.retryable,
            )
    return ErrorInfo(
        code=ErrorCode.UNKNOWN_PROCESSING_ERROR,
        category=ErrorCategory.EXTRACTION,
        sub_category="unknown",
        phase=phase,
        message=message,
        retryable=False,
    )


def dns_failure(hostname: str, message: str) -> ErrorInfo:
    return ErrorInfo(
        code=ErrorCode.DNS_RESOLUTION_FAILED,
        category=ErrorCategory.NETWORK,
        sub_category="dns",
        phase=ErrorPhase.PREFLIGHT,
        message=f"DNS resolution failed for {hostname}: {message}",
        retryable=False,
    )


def ssl_failure(code: str, message: str) -> ErrorInfo:
    return ErrorInfo(
        code=code,
        category=ErrorCategory.SSL,
        sub_category="validation",
        phase=ErrorPhase.PREFLIGHT,
        message=message,
        retryable=False,
    )


def hard_timeout(seconds: float) -> ErrorInfo:
    return ErrorInfo(
        code=ErrorCode.HARD_TIMEOUT,
        category=ErrorCategory.TIMEOUT,
        sub_category="task",
        phase=ErrorPhase.PAGE_LOAD,
        message=f"Task exceeded hard timeout of {seconds:g}s",
        retryable=True,
    )


_CATEGORY_FILES = {
    ErrorCategory.SSL: "ssl_errors.txt",
    ErrorCategory.TIMEOUT: "timeout_errors.txt",
    ErrorCategory.NAVIGATION: "navigation_errors.txt",
    ErrorCategory.ACCESS: "access_errors.txt",
    ErrorCategory.CONTENT: "content_errors.txt",
    ErrorCategory.BROWSER: "browser_errors.txt",
    ErrorCategory.EXTRACTION: "extraction_errors.txt",
}


def error_log_file_for(info: ErrorInfo) -> str:
    """Return the per-class error log file name for ``info``."""

    if info.code == ErrorCode.UNKNOWN_PROCESSING_ERROR:
        return "error_processing.txt"
    if info.category == ErrorCategory.NETWORK:
        return "dns_errors.txt" if info.sub_category == "dns" else "navigation_errors.txt"
    return _CATEGORY_FILES.get(info.category, "error_processing.txt")


__all__ = [
    "ErrorInfo",
    "InfrastructureError",
    "StorageError",
    "classify_error",
    "dns_failure",
    "ssl_failure",
    "hard_timeout",
    "error_log_file_for",
]
