"""
Domain health tracking and blacklisting.

Keeps a bounded, time-pruned history of classified failures per domain and
decides when a domain should stop being fetched (blacklisted). Blacklisting is
advisory and reversible:

    healthy -> blacklisted:
        within the analysis window, consecutive failures >= failure_threshold,
        OR bot-detection/403 events >= bot_detection_min_events AND those
        events exceed bot_detection_ratio of the window's errors
    blacklisted -> healthy:
        any recorded success, or clear_blacklist()

Each transition is logged and published to the event sink exactly once.

Locking: every DomainHealth record has its own threading.Lock; the registry
lock only guards record creation and sweeps.
"""

from __future__ import annotations

import threading
from collections import Counter, deque
from dataclasses import dataclass, field
from typing import Any

from recipe_crawler.crawler.error_classifier import ErrorKind, ErrorPattern
from recipe_crawler.utils.clock import Clock, SystemClock
from recipe_crawler.utils.config import HealthConfig
from recipe_crawler.utils.logging import get_logger
from recipe_crawler.utils.metrics import (
    CrawlEvent,
    EventSink,
    EventType,
    NullEventSink,
    safe_emit,
)
from recipe_crawler.utils.site_policy import normalize_domain

logger = get_logger(__name__)


@dataclass(frozen=True)
class HistoryEntry:
    """An ErrorPattern stamped with the tracker's clock and a per-domain sequence number."""

    recorded_at: float
    pattern: ErrorPattern
    seq: int


@dataclass
class DomainHealth:
    """Mutable health record for one domain."""

    domain: str
    error_history: deque[HistoryEntry]
    consecutive_failures: int = 0
    blacklisted: bool = False
    blacklisted_at: float | None = None
    last_success_at: float | None = None
    last_request_at: float | None = None
    next_seq: int = 0
    # First entry of the current failure streak (advanced by successes and clears)
    streak_start_seq: int = 0
    # Set by clear_blacklist(); earlier history no longer counts toward blacklisting
    cleared_seq: int = 0
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)


@dataclass
class DomainAnalysis:
    """Descriptive error analysis for one domain."""

    domain: str
    error_frequency: int
    common_errors: list[dict[str, Any]]
    recommended_actions: list[str]
    consecutive_failures: int
    blacklisted: bool

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "domain": self.domain,
            "error_frequency": self.error_frequency,
            "common_errors": [dict(e) for e in self.common_errors],
            "recommended_actions": list(self.recommended_actions),
            "consecutive_failures": self.consecutive_failures,
            "blacklisted": self.blacklisted,
        }


_RECOMMENDATIONS: dict[ErrorKind, tuple[str, ...]] = {
    ErrorKind.BOT_DETECTION: (
        "Consider rotating user agents and implementing longer delays",
        "Use residential proxies if available",
    ),
    ErrorKind.RATE_LIMIT: (
        "Reduce request rate for this domain",
        "Implement exponential backoff strategy",
    ),
    ErrorKind.TIMEOUT: (
        "Increase request timeout settings",
        "Reduce concurrent requests to this domain",
    ),
    ErrorKind.PARSING_ERROR: (
        "Update CSS selectors and parsing logic",
        "Consider using a browser-backed transport instead of static fetching",
    ),
    ErrorKind.SERVER_ERROR: (
        "Server appears unstable - implement retry with exponential backoff",
        "Consider scraping during off-peak hours",
    ),
}

_DEFAULT_RECOMMENDATIONS = (
    "Monitor error patterns and adjust scraping strategy accordingly",
    "Consider implementing custom handling for this domain",
)


def _error_key(pattern: ErrorPattern) -> str:
    if pattern.http_status is not None:
        return f"{pattern.kind.value}_{pattern.http_status}"
    return pattern.kind.value


class DomainHealthTracker:
    """Registry of per-domain health records.

    Example:
        tracker = DomainHealthTracker(HealthConfig())
        tracker.record_failure(pattern)
        if tracker.is_blacklisted("y.example"):
            ...
        tracker.record_success("y.example")  # un-blacklists
    """

    def __init__(
        self,
        config: HealthConfig | None = None,
        clock: Clock | None = None,
        sink: EventSink | None = None,
    ) -> None:
        self._config = config or HealthConfig()
        self._clock = clock or SystemClock()
        self._sink = sink or NullEventSink()
        self._records: dict[str, DomainHealth] = {}
        self._registry_lock = threading.Lock()
        self._last_sweep = self._clock.now()

    @property
    def config(self) -> HealthConfig:
        return self._config

    @property
    def _window_seconds(self) -> float:
        return self._config.analysis_window_hours * 3600.0

    @property
    def _retention_seconds(self) -> float:
        return self._config.retention_days * 86400.0

    def _find_record(self, domain: str) -> DomainHealth | None:
        return self._records.get(normalize_domain(domain))

    def _get_record(self, domain: str) -> DomainHealth:
        domain = normalize_domain(domain)
        record = self._records.get(domain)
        if record is not None:
            return record

        with self._registry_lock:
            # Double-check after acquiring lock
            record = self._records.get(domain)
            if record is None:
                record = DomainHealth(
                    domain=domain,
                    error_history=deque(maxlen=self._config.max_history),
                )
                self._records[domain] = record
            return record

    # =========================================================================
    # Recording
    # =========================================================================

    def record_failure(self, pattern: ErrorPattern) -> bool:
        """Append a failure and re-evaluate the blacklist.

        Returns:
            True if this failure blacklisted the domain.
        """
        self._maybe_sweep()
        now = self._clock.now()
        record = self._get_record(pattern.domain)
        with record.lock:
            self._prune(record, now)
            record.error_history.append(
                HistoryEntry(recorded_at=now, pattern=pattern, seq=record.next_seq)
            )
            record.next_seq += 1
            record.consecutive_failures += 1
            record.last_request_at = now

            flipped = False
            reason = None
            if not record.blacklisted:
                reason = self._blacklist_reason(record, now)
                if reason is not None:
                    record.blacklisted = True
                    record.blacklisted_at = now
                    flipped = True
            consecutive = record.consecutive_failures

        if flipped:
            logger.warning(
                "Domain blacklisted",
                domain=record.domain,
                reason=reason,
                consecutive_failures=consecutive,
            )
            safe_emit(
                self._sink,
                CrawlEvent(
                    type=EventType.BLACKLISTED,
                    domain=record.domain,
                    url=pattern.url,
                    details={"reason": reason, "consecutive_failures": consecutive},
                ),
            )
        return flipped

    def record_success(self, domain: str) -> bool:
        """Reset the failure streak and lift any blacklist.

        Returns:
            True if this success un-blacklisted the domain.
        """
        self._maybe_sweep()
        now = self._clock.now()
        record = self._get_record(domain)
        with record.lock:
            record.consecutive_failures = 0
            record.streak_start_seq = record.next_seq
            record.last_success_at = now
            record.last_request_at = now
            flipped = record.blacklisted
            record.blacklisted = False
            record.blacklisted_at = None

        if flipped:
            logger.info("Domain recovered, removed from blacklist", domain=record.domain)
            safe_emit(
                self._sink,
                CrawlEvent(
                    type=EventType.UNBLACKLISTED,
                    domain=record.domain,
                    details={"reason": "success"},
                ),
            )
        return flipped

    def record_outcome(self, domain: str, pattern: ErrorPattern | None) -> bool:
        """Record a success (pattern is None) or a failure.

        Returns:
            True if the blacklist status flipped.
        """
        if pattern is None:
            return self.record_success(domain)
        return self.record_failure(pattern)

    def _window_entries(self, record: DomainHealth, now: float, from_seq: int = 0) -> list[HistoryEntry]:
        start = now - self._window_seconds
        return [
            e for e in record.error_history if e.recorded_at >= start and e.seq >= from_seq
        ]

    def _blacklist_reason(self, record: DomainHealth, now: float) -> str | None:
        """Evaluate blacklist rules (caller must hold record.lock)."""
        # Ordered by sequence, not time: a success and later failures may share a timestamp
        streak = self._window_entries(record, now, record.streak_start_seq)
        if len(streak) >= self._config.failure_threshold:
            return "consecutive_failures"

        window = self._window_entries(record, now, record.cleared_seq)
        if not window:
            return None
        bot_events = sum(1 for e in window if e.pattern.is_bot_signal)
        if (
            bot_events >= self._config.bot_detection_min_events
            and bot_events / len(window) > self._config.bot_detection_ratio
        ):
            return "bot_detection"
        return None

    # =========================================================================
    # Queries
    # =========================================================================

    def is_blacklisted(self, domain: str) -> bool:
        """Check whether a domain is currently blacklisted."""
        record = self._find_record(domain)
        if record is None:
            return False
        with record.lock:
            return record.blacklisted

    def clear_blacklist(self, domain: str) -> bool:
        """Manually lift a blacklist.

        Failures recorded before the clear stop counting toward the thresholds.

        Returns:
            True if the domain was blacklisted.
        """
        record = self._find_record(domain)
        if record is None:
            return False

        with record.lock:
            was_blacklisted = record.blacklisted
            record.blacklisted = False
            record.blacklisted_at = None
            record.consecutive_failures = 0
            record.streak_start_seq = record.next_seq
            record.cleared_seq = record.next_seq

        if was_blacklisted:
            logger.info("Manually removed from blacklist", domain=record.domain)
            safe_emit(
                self._sink,
                CrawlEvent(
                    type=EventType.UNBLACKLISTED,
                    domain=record.domain,
                    details={"reason": "manual"},
                ),
            )
        return was_blacklisted

    def get_blacklisted_domains(self) -> list[str]:
        """Domains currently blacklisted, sorted."""
        with self._registry_lock:
            records = list(self._records.values())
        return sorted(r.domain for r in records if r.blacklisted)

    def consecutive_failures(self, domain: str) -> int:
        """Failures recorded since the domain's last success."""
        record = self._find_record(domain)
        if record is None:
            return 0
        with record.lock:
            return record.consecutive_failures

    def last_error(self, domain: str) -> ErrorPattern | None:
        """Most recent recorded failure for a domain."""
        record = self._find_record(domain)
        if record is None:
            return None
        with record.lock:
            return record.error_history[-1].pattern if record.error_history else None

    def get_health(self, domain: str) -> dict[str, Any]:
        """Snapshot of a domain's health record."""
        record = self._find_record(domain)
        if record is None:
            return {
                "domain": normalize_domain(domain),
                "tracked": False,
                "error_count": 0,
                "consecutive_failures": 0,
                "blacklisted": False,
            }
        with record.lock:
            return {
                "domain": record.domain,
                "tracked": True,
                "error_count": len(record.error_history),
                "consecutive_failures": record.consecutive_failures,
                "blacklisted": record.blacklisted,
                "blacklisted_at": record.blacklisted_at,
                "last_success_at": record.last_success_at,
                "last_request_at": record.last_request_at,
            }

    def get_analysis(self, domain: str) -> DomainAnalysis:
        """Summarize recent errors for a domain with recommended actions."""
        now = self._clock.now()
        record = self._find_record(domain)
        if record is None:
            return DomainAnalysis(
                domain=normalize_domain(domain),
                error_frequency=0,
                common_errors=[],
                recommended_actions=list(_DEFAULT_RECOMMENDATIONS),
                consecutive_failures=0,
                blacklisted=False,
            )

        with record.lock:
            recent = self._window_entries(record, now)
            consecutive = record.consecutive_failures
            blacklisted = record.blacklisted

        total = len(recent)
        counts = Counter(_error_key(e.pattern) for e in recent)
        kinds = {_error_key(e.pattern): e.pattern.kind for e in recent}
        common_errors = [
            {"type": key, "count": count, "percentage": count / total * 100}
            for key, count in counts.most_common()
        ]

        actions: list[str] = []
        for entry in common_errors:
            if entry["percentage"] <= 50:
                continue
            kind = kinds[entry["type"]]
            if entry["type"].endswith("_403"):
                kind = ErrorKind.BOT_DETECTION
            for action in _RECOMMENDATIONS.get(kind, ()):
                if action not in actions:
                    actions.append(action)
        if not actions:
            actions = list(_DEFAULT_RECOMMENDATIONS)

        return DomainAnalysis(
            domain=record.domain,
            error_frequency=total,
            common_errors=common_errors,
            recommended_actions=actions,
            consecutive_failures=consecutive,
            blacklisted=blacklisted,
        )

    def get_problem_domains(self, limit: int = 10) -> list[dict[str, Any]]:
        """Domains ordered by recent error count, most errors first."""
        now = self._clock.now()
        with self._registry_lock:
            records = list(self._records.values())

        rows = []
        for record in records:
            with record.lock:
                count = len(self._window_entries(record, now))
                blacklisted = record.blacklisted
            if count or blacklisted:
                rows.append({"domain": record.domain, "error_count": count, "blacklisted": blacklisted})
        rows.sort(key=lambda r: (-r["error_count"], r["domain"]))
        return rows[:limit]

    def tracked_domain_count(self) -> int:
        with self._registry_lock:
            return len(self._records)

    # =========================================================================
    # Maintenance
    # =========================================================================

    def _prune(self, record: DomainHealth, now: float) -> None:
        """Drop entries past retention (caller must hold record.lock)."""
        cutoff = now - self._retention_seconds
        while record.error_history and record.error_history[0].recorded_at < cutoff:
            record.error_history.popleft()

    def _maybe_sweep(self) -> None:
        if self._clock.now() - self._last_sweep >= self._config.sweep_interval_seconds:
            self.sweep()

    def sweep(self) -> int:
        """Prune old history everywhere and drop domains left with none.

        Returns:
            Number of domains dropped.
        """
        now = self._clock.now()
        self._last_sweep = now
        dropped: list[str] = []

        with self._registry_lock:
            for domain, record in list(self._records.items()):
                with record.lock:
                    self._prune(record, now)
                    if not record.error_history:
                        dropped.append(domain)
            for domain in dropped:
                del self._records[domain]

        if dropped:
            logger.debug("Swept stale domain health records", dropped=len(dropped))
        return len(dropped)

    def reset(self) -> None:
        """Forget every domain."""
        with self._registry_lock:
            self._records.clear()
            self._last_sweep = self._clock.now()
