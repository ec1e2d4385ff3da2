"""
Failure classification for fetch attempts.

Maps a raw attempt outcome (HTTP status, raised exception, or a signal from
extraction code) onto a closed taxonomy of error kinds. Classification is
deterministic and side-effect free.

Precedence: caller signal > HTTP status > exception.
"""

from __future__ import annotations

import socket
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

import httpx

from recipe_crawler.scheduler.domain_pacer import PacingTimeoutError


class ErrorKind(str, Enum):
    """Closed failure taxonomy."""

    RATE_LIMIT = "rate_limit"
    BOT_DETECTION = "bot_detection"
    NOT_FOUND = "not_found"
    SERVER_ERROR = "server_error"
    TIMEOUT = "timeout"
    CONNECTION = "connection"
    PARSING_ERROR = "parsing_error"
    CONTENT_CHANGE = "content_change"
    UNKNOWN = "unknown"


# Kinds extraction code may report after a transport-level success
SIGNAL_KINDS = frozenset({ErrorKind.PARSING_ERROR, ErrorKind.CONTENT_CHANGE})

_STATUS_KINDS = {
    429: ErrorKind.RATE_LIMIT,
    403: ErrorKind.BOT_DETECTION,
    404: ErrorKind.NOT_FOUND,
}


@dataclass(frozen=True)
class RawOutcome:
    """What one attempt produced before classification."""

    status: int | None = None
    error: BaseException | None = None
    signal: ErrorKind | None = None


def _classify_exception(error: BaseException) -> ErrorKind:
    # PacingTimeoutError is a TimeoutError; httpx timeouts are not
    if isinstance(error, (TimeoutError, httpx.TimeoutException, PacingTimeoutError)):
        return ErrorKind.TIMEOUT
    if isinstance(error, (httpx.ConnectError, httpx.NetworkError)):
        return ErrorKind.CONNECTION
    if isinstance(error, (ConnectionError, socket.gaierror, OSError)):
        return ErrorKind.CONNECTION
    return ErrorKind.UNKNOWN


def classify(outcome: RawOutcome) -> ErrorKind:
    """Classify an attempt outcome.

    Args:
        outcome: Status, exception, and/or caller signal for one attempt.

    Returns:
        The ErrorKind. Outcomes that are not recognizable failures
        (2xx, unlisted 4xx, empty) classify as UNKNOWN.

    Example:
        >>> classify(RawOutcome(status=429))
        <ErrorKind.RATE_LIMIT: 'rate_limit'>
    """
    if outcome.signal is not None:
        return ErrorKind(outcome.signal)

    if outcome.status is not None:
        kind = _STATUS_KINDS.get(outcome.status)
        if kind is not None:
            return kind
        if outcome.status >= 500:
            return ErrorKind.SERVER_ERROR
        return ErrorKind.UNKNOWN

    if outcome.error is not None:
        return _classify_exception(outcome.error)

    return ErrorKind.UNKNOWN


def is_retryable(kind: ErrorKind) -> bool:
    """Whether a failure of this kind may be retried. Only not_found is permanent."""
    return kind is not ErrorKind.NOT_FOUND


def _describe(outcome: RawOutcome, kind: ErrorKind) -> str:
    if outcome.signal is not None:
        return f"Reported by caller: {kind.value}"
    if outcome.status is not None:
        return f"HTTP {outcome.status}"
    if outcome.error is not None:
        text = str(outcome.error)
        name = type(outcome.error).__name__
        return f"{name}: {text}" if text else name
    return "Unknown failure"


@dataclass(frozen=True)
class ErrorPattern:
    """A classified record of one failed fetch attempt."""

    kind: ErrorKind
    domain: str
    url: str
    message: str = ""
    http_status: int | None = None
    observed_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    user_agent: str | None = None
    latency_ms: float | None = None

    @classmethod
    def from_outcome(
        cls,
        outcome: RawOutcome,
        *,
        domain: str,
        url: str,
        observed_at: datetime | None = None,
        user_agent: str | None = None,
        latency_ms: float | None = None,
    ) -> ErrorPattern:
        """Classify ``outcome`` and build the pattern for it."""
        kind = classify(outcome)
        return cls(
            kind=kind,
            domain=domain,
            url=url,
            message=_describe(outcome, kind),
            http_status=outcome.status,
            observed_at=observed_at or datetime.now(UTC),
            user_agent=user_agent,
            latency_ms=latency_ms,
        )

    @property
    def is_bot_signal(self) -> bool:
        """True for bot-detection kinds and bare 403 responses."""
        return self.kind is ErrorKind.BOT_DETECTION or self.http_status == 403

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "kind": self.kind.value,
            "domain": self.domain,
            "url": self.url,
            "message": self.message,
            "http_status": self.http_status,
            "observed_at": self.observed_at.isoformat(),
            "user_agent": self.user_agent,
            "latency_ms": self.latency_ms,
        }
