"""Total classification of upstream failures and the retry decision.

Both functions here are pure: the invoker feeds them a status or an
exception plus the attempt number and acts on the returned decision, which
keeps retry behaviour testable without a network or a real clock.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
import json
from typing import Any

import httpx

from vision_bridge.constants import DEFAULT_BASE_DELAY, DEFAULT_MAX_ATTEMPTS
from vision_bridge.core.exceptions import (
    BreakerOpenError,
    UpstreamError,
    UpstreamErrorKind,
)

_STATUS_KINDS: Mapping[int, tuple[UpstreamErrorKind, bool, str]] = {
    400: (UpstreamErrorKind.BAD_REQUEST, False, "Bad request"),
    401: (UpstreamErrorKind.AUTH, False, "Invalid API key"),
    403: (UpstreamErrorKind.FORBIDDEN, False, "Access forbidden"),
    404: (UpstreamErrorKind.NOT_FOUND, False, "Model or endpoint not found"),
    429: (UpstreamErrorKind.RATE_LIMITED, True, "Rate limit exceeded"),
    500: (UpstreamErrorKind.SERVER_ERROR, True, "Server error"),
    502: (UpstreamErrorKind.SERVER_ERROR, True, "Bad gateway"),
    503: (UpstreamErrorKind.SERVER_ERROR, True, "Service unavailable"),
    504: (UpstreamErrorKind.SERVER_ERROR, True, "Gateway timeout"),
}


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Bounded exponential backoff without jitter."""

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    base_delay: float = DEFAULT_BASE_DELAY

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts: must be at least 1")
        if self.base_delay < 0:
            raise ValueError("base_delay: must be non-negative")


@dataclass(frozen=True, slots=True)
class RetryDecision:
    retry: bool
    delay: float = 0.0
    reason: str = ""


def parse_retry_after(value: str | None, *, now: datetime | None = None) -> float | None:
    """Parse a ``Retry-After`` header (delta-seconds or HTTP date) into seconds."""
    if not value:
        return None
    value = value.strip()
    try:
        seconds = float(value)
    except ValueError:
        try:
            when = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            return None
        if when.tzinfo is None:
            when = when.replace(tzinfo=UTC)
        seconds = (when - (now or datetime.now(UTC))).total_seconds()
    return max(seconds, 0.0)


def _error_message(body: bytes | str | None) -> str | None:
    if not body:
        return None
    try:
        payload: Any = json.loads(body)
    except (ValueError, TypeError):
        text = body.decode("utf-8", "replace") if isinstance(body, bytes) else body
        return text.strip()[:200] or None
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return error["message"]
        if isinstance(error, str):
            return error
        if isinstance(payload.get("message"), str):
            return payload["message"]
    return None


def classify_status(
    status: int,
    *,
    headers: Mapping[str, str] | None = None,
    body: bytes | str | None = None,
) -> UpstreamError:
    """Map any non-success HTTP status to exactly one ``UpstreamError``."""
    detail = _error_message(body)
    known = _STATUS_KINDS.get(status)
    if known is None:
        return UpstreamError(
            UpstreamErrorKind.UNKNOWN,
            f"HTTP {status}: {detail or 'Unexpected response'}",
            retryable=status >= 500,
            status=status,
        )
    kind, retryable, label = known
    retry_after = None
    if kind is UpstreamErrorKind.RATE_LIMITED and headers is not None:
        retry_after = parse_retry_after(headers.get("retry-after"))
    message = f"{label}: {detail}" if detail else label
    return UpstreamError(
        kind, message, retryable=retryable, retry_after=retry_after, status=status
    )


def classify_exception(exc: BaseException) -> UpstreamError:
    """Map a transport-level exception to an ``UpstreamError``."""
    if isinstance(exc, UpstreamError):
        return exc
    if isinstance(exc, httpx.TimeoutException):
        return UpstreamError(
            UpstreamErrorKind.NETWORK_ERROR, f"Request timed out: {exc}", retryable=True
        )
    if isinstance(exc, httpx.TransportError):
        return UpstreamError(
            UpstreamErrorKind.NETWORK_ERROR, f"Network error: {exc}", retryable=True
        )
    if isinstance(exc, httpx.RequestError):
        # Redirect loops and undecodable bodies: repeating the call gives the same result.
        return UpstreamError(
            UpstreamErrorKind.UNKNOWN,
            f"Request failed: {type(exc).__name__}: {exc}",
            retryable=False,
        )
    return UpstreamError(
        UpstreamErrorKind.UNKNOWN,
        f"Unexpected upstream failure: {type(exc).__name__}: {exc}",
        retryable=False,
    )


def compute_backoff(
    attempt: int, policy: RetryPolicy, retry_after: float | None = None
) -> float:
    """Delay before the attempt after ``attempt`` (1-based)."""
    base = retry_after if retry_after is not None else policy.base_delay
    return base * (2 ** (attempt - 1))


def next_retry(error: UpstreamError, attempt: int, policy: RetryPolicy) -> RetryDecision:
    """Decide whether a failed attempt is retried and after what delay."""
    if isinstance(error, BreakerOpenError):
        return RetryDecision(False, reason="breaker open")
    if not error.retryable:
        return RetryDecision(False, reason=f"{error.kind.value} is not retryable")
    if attempt >= policy.max_attempts:
        return RetryDecision(False, reason=f"attempts exhausted ({attempt})")
    return RetryDecision(
        True,
        delay=compute_backoff(attempt, policy, error.retry_after),
        reason=error.kind.value,
    )
