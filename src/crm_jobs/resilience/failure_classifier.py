"""Deterministic classification of failed external API calls.

Handlers use the result to pick the ``retryable`` flag of the
``JobHandlerError`` they raise and the rate limiter uses the status code to
size backoff.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class CallFailureClass(str, Enum):
    RATE_LIMITED = "rate_limited"
    QUOTA_EXCEEDED = "quota_exceeded"
    SERVER_ERROR = "server_error"
    NETWORK_TRANSIENT = "network_transient"
    CLIENT_ERROR = "client_error"
    UNKNOWN = "unknown"


_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "ratelimitexceeded",
    "try again later",
)
_QUOTA_PATTERNS: tuple[str, ...] = (
    "quota",
    "resource_exhausted",
    "userratelimitexceeded",
    "dailylimitexceeded",
    "usage limit",
)
_NETWORK_PATTERNS: tuple[str, ...] = (
    "timed out",
    "timeout",
    "connection reset",
    "connection refused",
    "connection aborted",
    "temporarily unavailable",
    "temporary failure",
    "network error",
    "could not resolve host",
)


@dataclass(slots=True)
class CallFailureClassification:
    """Normalized failure classification result."""

    failure_class: CallFailureClass
    retryable: bool
    status_code: int | None
    matched_pattern: str | None = None


def classify_call_failure(
    status_code: int | None,
    message: str = "",
) -> CallFailureClassification:
    """Classify one failed call by HTTP status and error text."""

    haystack = message.lower()

    pattern = _first_match(haystack, _RATE_LIMIT_PATTERNS)
    if status_code == 429 or pattern is not None:
        return CallFailureClassification(
            failure_class=CallFailureClass.RATE_LIMITED,
            retryable=True,
            status_code=status_code,
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _QUOTA_PATTERNS)
    if status_code == 403 or pattern is not None:
        return CallFailureClassification(
            failure_class=CallFailureClass.QUOTA_EXCEEDED,
            retryable=True,
            status_code=status_code,
            matched_pattern=pattern,
        )

    if status_code is not None and 500 <= status_code <= 599:
        return CallFailureClassification(
            failure_class=CallFailureClass.SERVER_ERROR,
            retryable=True,
            status_code=status_code,
        )

    pattern = _first_match(haystack, _NETWORK_PATTERNS)
    if pattern is not None:
        return CallFailureClassification(
            failure_class=CallFailureClass.NETWORK_TRANSIENT,
            retryable=True,
            status_code=status_code,
            matched_pattern=pattern,
        )

    if status_code is not None and 400 <= status_code <= 499:
        return CallFailureClassification(
            failure_class=CallFailureClass.CLIENT_ERROR,
            retryable=False,
            status_code=status_code,
        )

    return CallFailureClassification(
        failure_class=CallFailureClass.UNKNOWN,
        retryable=True,
        status_code=status_code,
    )


def status_code_of(error: BaseException) -> int | None:
    """Best-effort HTTP status lookup on client library exceptions."""

    for attribute in ("status_code", "status", "code"):
        value = getattr(error, attribute, None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    response = getattr(error, "response", None)
    if response is not None:
        value = getattr(response, "status_code", None)
        if isinstance(value, int):
            return value
    return None


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
