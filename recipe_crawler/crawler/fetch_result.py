"""Fetch outcome and typed fetch failures."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from recipe_crawler.crawler.error_classifier import ErrorPattern
from recipe_crawler.crawler.transport import TransportResponse


@dataclass
class FetchOutcome:
    """Result of a successful fetch.

    Includes the attempts it took and the adaptation applied along the way.
    """

    url: str
    domain: str
    response: TransportResponse
    attempts: int = 1
    elapsed_ms: float = 0.0
    user_agent: str | None = None
    # Last strategy applied during the call, if any
    strategy_id: str | None = None
    errors: list[ErrorPattern] = field(default_factory=list)

    @property
    def status(self) -> int:
        return self.response.status

    @property
    def body(self) -> bytes:
        return self.response.body

    @property
    def headers(self) -> dict[str, str]:
        return self.response.headers

    @property
    def final_url(self) -> str:
        return self.response.url or self.url

    @property
    def recovered(self) -> bool:
        """True when the fetch succeeded after at least one failure."""
        return bool(self.errors)

    def text(self, encoding: str = "utf-8") -> str:
        return self.response.text(encoding)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "url": self.url,
            "final_url": self.final_url,
            "domain": self.domain,
            "status": self.status,
            "attempts": self.attempts,
            "elapsed_ms": round(self.elapsed_ms, 1),
            "user_agent": self.user_agent,
            "strategy_id": self.strategy_id,
            "errors": [e.kind.value for e in self.errors],
        }


class FetchFailedError(Exception):
    """Raised when a fetch ends without a successful response.

    Attributes:
        domain: Target domain
        attempts: Number of transport attempts made
        last_pattern: Classification of the last failure (None if never attempted)
    """

    def __init__(
        self,
        message: str,
        *,
        domain: str,
        attempts: int,
        last_pattern: ErrorPattern | None = None,
    ):
        super().__init__(message)
        self.domain = domain
        self.attempts = attempts
        self.last_pattern = last_pattern

    @property
    def last_status(self) -> int | None:
        return self.last_pattern.http_status if self.last_pattern else None


class RetriesExhaustedError(FetchFailedError):
    """Retry budget ran out."""


class NotRetryableError(FetchFailedError):
    """Failure that is never retried (e.g. not_found)."""


class DomainBlacklistedError(FetchFailedError):
    """Domain is blacklisted; no further attempts are made."""
