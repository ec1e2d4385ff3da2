"""
Recovery metrics and crawl event telemetry.

RecoveryMetrics are process-wide counters updated on every terminal fetch
outcome. CrawlEvents (rate limit, backoff, retry, forbidden, ...) are published
to an injected EventSink so dashboards can consume them without the core
depending on a particular metrics backend.
"""

from __future__ import annotations

import threading
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Protocol

from recipe_crawler.utils.logging import get_logger

logger = get_logger(__name__)


class EventType(str, Enum):
    """Telemetry event types published by the executor and health tracker."""

    RATE_LIMIT = "rate_limit"
    FORBIDDEN = "forbidden"
    BACKOFF = "backoff"
    RETRY = "retry"
    STRATEGY_APPLIED = "strategy_applied"
    BLACKLISTED = "blacklisted"
    UNBLACKLISTED = "unblacklisted"
    RECOVERED = "recovered"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class CrawlEvent:
    """A single telemetry event."""

    type: EventType
    domain: str
    url: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "type": self.type.value,
            "domain": self.domain,
            "url": self.url,
            "details": dict(self.details),
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class RecoveryMetrics:
    """Snapshot of process-wide recovery counters."""

    total_errors: int = 0
    recovered_errors: int = 0
    strategies_applied: int = 0
    successful_adaptations: int = 0
    failed_adaptations: int = 0
    average_recovery_time_ms: float = 0.0
    total_fetches: int = 0
    successful_fetches: int = 0
    exhausted_fetches: int = 0
    blacklist_rejections: int = 0

    @property
    def recovery_rate(self) -> float:
        """Recovered errors / total errors (0.0 when no errors)."""
        if self.total_errors == 0:
            return 0.0
        return self.recovered_errors / self.total_errors

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        result = asdict(self)
        result["recovery_rate"] = round(self.recovery_rate, 4)
        return result


class EventSink(Protocol):
    """Receiver for crawl telemetry."""

    def emit(self, event: CrawlEvent) -> None:
        ...

    def publish_metrics(self, metrics: RecoveryMetrics) -> None:
        ...


class NullEventSink:
    """Discards all telemetry."""

    def emit(self, event: CrawlEvent) -> None:
        return None

    def publish_metrics(self, metrics: RecoveryMetrics) -> None:
        return None


class LoggingEventSink:
    """Writes telemetry as structured log entries."""

    _WARNING_EVENTS = frozenset(
        {EventType.RATE_LIMIT, EventType.FORBIDDEN, EventType.BLACKLISTED, EventType.EXHAUSTED}
    )

    def emit(self, event: CrawlEvent) -> None:
        log = logger.warning if event.type in self._WARNING_EVENTS else logger.info
        log(
            "Crawl event",
            event_type=event.type.value,
            domain=event.domain,
            url=event.url[:120] if event.url else None,
            **event.details,
        )

    def publish_metrics(self, metrics: RecoveryMetrics) -> None:
        logger.debug("Recovery metrics", **metrics.to_dict())


def safe_emit(sink: EventSink, event: CrawlEvent) -> None:
    """Emit an event, logging and suppressing sink failures."""
    try:
        sink.emit(event)
    except Exception as e:
        logger.error("Event sink failed", event_type=event.type.value, error=str(e))


def safe_publish(sink: EventSink, metrics: RecoveryMetrics) -> None:
    """Publish a metrics snapshot, logging and suppressing sink failures."""
    try:
        sink.publish_metrics(metrics)
    except Exception as e:
        logger.error("Metrics sink failed", error=str(e))


class RecoveryMetricsCollector:
    """Thread-safe accumulator for RecoveryMetrics.

    Usage:
        collector = RecoveryMetricsCollector()
        collector.record_error()
        collector.record_strategy_applied()
        collector.record_terminal(success=True, adapted=True, recovery_time_ms=2400)
        snapshot = collector.snapshot()
    """

    def __init__(self) -> None:
        self._metrics = RecoveryMetrics()
        self._lock = threading.Lock()

    def record_error(self) -> None:
        """Count one classified failure."""
        with self._lock:
            self._metrics.total_errors += 1

    def record_strategy_applied(self) -> None:
        """Count one strategy application."""
        with self._lock:
            self._metrics.strategies_applied += 1

    def record_blacklist_rejection(self) -> None:
        """Count a fetch refused because its domain was blacklisted."""
        with self._lock:
            self._metrics.total_fetches += 1
            self._metrics.blacklist_rejections += 1

    def record_terminal(
        self,
        *,
        success: bool,
        adapted: bool,
        recovery_time_ms: float | None = None,
    ) -> None:
        """Record the terminal outcome of one fetch.

        Args:
            success: Whether the fetch ended in a successful response.
            adapted: Whether a strategy was applied during the fetch.
            recovery_time_ms: Time from first failure to success, when recovered.
        """
        with self._lock:
            m = self._metrics
            m.total_fetches += 1
            if success:
                m.successful_fetches += 1
            else:
                m.exhausted_fetches += 1

            if adapted:
                self._record_adaptation_unlocked(success, recovery_time_ms)

    def record_adaptation(self, *, success: bool, recovery_time_ms: float | None = None) -> None:
        """Record an adaptation outcome reported outside a fetch call."""
        with self._lock:
            self._record_adaptation_unlocked(success, recovery_time_ms)

    def _record_adaptation_unlocked(self, success: bool, recovery_time_ms: float | None) -> None:
        m = self._metrics
        if success:
            m.recovered_errors += 1
            m.successful_adaptations += 1
            if recovery_time_ms is not None:
                total = m.average_recovery_time_ms * (m.recovered_errors - 1)
                m.average_recovery_time_ms = (total + recovery_time_ms) / m.recovered_errors
        else:
            m.failed_adaptations += 1

    def snapshot(self) -> RecoveryMetrics:
        """Return a copy of the current counters."""
        with self._lock:
            return RecoveryMetrics(**asdict(self._metrics))

    def reset(self) -> None:
        """Zero all counters."""
        with self._lock:
            self._metrics = RecoveryMetrics()
