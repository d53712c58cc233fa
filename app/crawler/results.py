"""Closed outcome type produced once per processed URL."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Union

from .error_taxonomy import ErrorInfo


class UrlStatus(str, Enum):
    SUCCESS = "success"
    NO_DATA = "no_data"
    ERROR = "error"
    RETRY = "retry"


TERMINAL_STATUSES = frozenset({UrlStatus.SUCCESS, UrlStatus.NO_DATA, UrlStatus.ERROR})


@dataclass(frozen=True)
class TaskSuccess:
    url: str
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TaskNoData:
    url: str


@dataclass(frozen=True)
class TaskError:
    url: str
    code: str
    message: str
    category: str
    phase: str
    retryable: bool
    sub_category: str = ""

    @property
    def info(self) -> ErrorInfo:
        return ErrorInfo(
            code=self.code,
            category=self.category,
            sub_category=self.sub_category,
            phase=self.phase,
            message=self.message,
            retryable=self.retryable,
        )


TaskResult = Union[TaskSuccess, TaskNoData, TaskError]


def error_result(url: str, info: ErrorInfo) -> TaskError:
    return TaskError(
        url=url,
        code=info.code,
        message=info.message,
        category=info.category,
        phase=info.phase,
        retryable=info.retryable,
        sub_category=info.sub_category,
    )


def outcome_status(result: TaskResult) -> UrlStatus:
    """Return the ledger status for ``result``.

    Raises ``TypeError`` for anything that is not a ``TaskResult`` so that a
    missing or malformed result can never be counted silently.
    """

    if isinstance(result, TaskSuccess):
        return UrlStatus.SUCCESS
    if isinstance(result, TaskNoData):
        return UrlStatus.NO_DATA
    if isinstance(result, TaskError):
        return UrlStatus.ERROR
    raise TypeError(f"Not a TaskResult: {result!r}")


def count_outcomes(results: Iterable[TaskResult]) -> dict[str, int]:
    counts = {status.value: 0 for status in TERMINAL_STATUSES}
    for result in results:
        counts[outcome_status(result).value] += 1
    return counts


def result_to_dict(result: TaskResult) -> dict[str, Any]:
    status = outcome_status(result)
    payload: dict[str, Any] = {"url": result.url, "status": status.value}
    if isinstance(result, TaskSuccess):
        payload.update(result.data)
        payload["url"] = result.url
    elif isinstance(result, TaskError):
        payload.update(
            code=result.code,
            message=result.message,
            category=result.category,
            sub_category=result.sub_category,
            phase=result.phase,
            retryable=result.retryable,
        )
    return payload


__all__ = [
    "UrlStatus",
    "TERMINAL_STATUSES",
    "TaskSuccess",
    "TaskNoData",
    "TaskError",
    "TaskResult",
    "error_result",
    "outcome_status",
    "count_outcomes",
    "result_to_dict",
]
