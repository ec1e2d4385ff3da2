"""
Adaptation strategy catalog.

Strategies map a classified failure to corrective actions. Both sides are
declarative data:
- StrategyTrigger: error kinds, exact HTTP statuses, and/or a minimum status
- StrategyAction: an ActionKind plus parameters, evaluated by the executor's
  handler table

Selection orders matching strategies by (priority desc, success_rate desc).
success_rate is re-scored from observed outcomes and always stays in [0, 1].
"""

from __future__ import annotations

import random
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from recipe_crawler.crawler.error_classifier import ErrorKind, ErrorPattern
from recipe_crawler.utils.backoff import BackoffConfig, apply_jitter, calculate_backoff
from recipe_crawler.utils.clock import Clock, SystemClock
from recipe_crawler.utils.config import AdaptationConfig
from recipe_crawler.utils.logging import get_logger
from recipe_crawler.utils.metrics import RecoveryMetrics

logger = get_logger(__name__)


class ActionKind(str, Enum):
    """Corrective actions a strategy can request."""

    RETRY = "retry"
    USER_AGENT_ROTATION = "user_agent_rotation"
    DELAY_INCREASE = "delay_increase"
    PROXY_ROTATION = "proxy_rotation"
    FALLBACK_METHOD = "fallback_method"
    SKIP_DOMAIN = "skip_domain"


@dataclass(frozen=True)
class StrategyAction:
    """One action with its parameters."""

    kind: ActionKind
    parameters: Mapping[str, Any] = field(default_factory=dict)

    def get(self, key: str, default: Any = None) -> Any:
        return self.parameters.get(key, default)


@dataclass(frozen=True)
class StrategyTrigger:
    """Declarative match rule. A pattern matches if any clause matches."""

    kinds: frozenset[ErrorKind] = frozenset()
    statuses: frozenset[int] = frozenset()
    min_status: int | None = None

    def matches(self, pattern: ErrorPattern) -> bool:
        if pattern.kind in self.kinds:
            return True
        status = pattern.http_status
        if status is None:
            return False
        if status in self.statuses:
            return True
        return self.min_status is not None and status >= self.min_status


@dataclass
class AdaptationStrategy:
    """A named, scored recovery policy."""

    id: str
    name: str
    description: str
    trigger: StrategyTrigger
    actions: tuple[StrategyAction, ...]
    priority: int
    success_rate: float
    last_used_at: datetime | None = None
    times_applied: int = 0

    def actions_of(self, kind: ActionKind) -> list[StrategyAction]:
        return [a for a in self.actions if a.kind is kind]

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "name": self.name,
            "priority": self.priority,
            "success_rate": round(self.success_rate, 4),
            "times_applied": self.times_applied,
            "last_used_at": self.last_used_at.isoformat() if self.last_used_at else None,
            "actions": [a.kind.value for a in self.actions],
        }


def default_strategies() -> list[AdaptationStrategy]:
    """Seed catalog."""
    return [
        AdaptationStrategy(
            id="bot_detection_recovery",
            name="Bot Detection Recovery",
            description="Handles bot detection with user agent rotation and delays",
            trigger=StrategyTrigger(
                kinds=frozenset({ErrorKind.BOT_DETECTION}),
                statuses=frozenset({403, 429}),
            ),
            actions=(
                StrategyAction(ActionKind.USER_AGENT_ROTATION, {"rotate_session": True}),
                StrategyAction(ActionKind.DELAY_INCREASE, {"multiplier": 3, "random_jitter": True}),
                StrategyAction(ActionKind.PROXY_ROTATION, {"force_new": True}),
            ),
            priority=9,
            success_rate=0.7,
        ),
        AdaptationStrategy(
            id="rate_limit_recovery",
            name="Rate Limit Recovery",
            description="Handles rate limiting with exponential backoff",
            trigger=StrategyTrigger(
                kinds=frozenset({ErrorKind.RATE_LIMIT}),
                statuses=frozenset({429}),
            ),
            actions=(
                StrategyAction(
                    ActionKind.DELAY_INCREASE,
                    {"exponential_backoff": True, "max_delay_ms": 300000},
                ),
            ),
            priority=10,
            success_rate=0.9,
        ),
        AdaptationStrategy(
            id="timeout_recovery",
            name="Timeout Recovery",
            description="Handles timeouts with reduced concurrency and longer delays",
            trigger=StrategyTrigger(kinds=frozenset({ErrorKind.TIMEOUT})),
            actions=(
                StrategyAction(ActionKind.DELAY_INCREASE, {"multiplier": 2}),
                StrategyAction(ActionKind.RETRY, {"max_retries": 2, "reduce_concurrency": True}),
            ),
            priority=7,
            success_rate=0.6,
        ),
        AdaptationStrategy(
            id="server_error_recovery",
            name="Server Error Recovery",
            description="Handles 5xx server errors with retry and fallback",
            trigger=StrategyTrigger(min_status=500),
            actions=(
                StrategyAction(ActionKind.DELAY_INCREASE, {"multiplier": 1.5}),
                StrategyAction(ActionKind.RETRY, {"max_retries": 3}),
                StrategyAction(ActionKind.FALLBACK_METHOD, {"transport": "static"}),
            ),
            priority=6,
            success_rate=0.5,
        ),
        AdaptationStrategy(
            id="parsing_error_recovery",
            name="Parsing Error Recovery",
            description="Handles parsing errors by trying different extraction methods",
            trigger=StrategyTrigger(kinds=frozenset({ErrorKind.PARSING_ERROR})),
            actions=(
                StrategyAction(ActionKind.FALLBACK_METHOD, {"transport": "dynamic"}),
                StrategyAction(ActionKind.RETRY, {"max_retries": 1, "different_user_agent": True}),
            ),
            priority=5,
            success_rate=0.4,
        ),
        AdaptationStrategy(
            id="content_change_recovery",
            name="Content Change Recovery",
            description="Handles content structure changes with alternative selectors",
            trigger=StrategyTrigger(kinds=frozenset({ErrorKind.CONTENT_CHANGE})),
            actions=(
                StrategyAction(ActionKind.FALLBACK_METHOD, {"selectors": "alternative"}),
                StrategyAction(ActionKind.RETRY, {"max_retries": 2}),
            ),
            priority=4,
            success_rate=0.3,
        ),
    ]


class StrategyCatalog:
    """Selects and re-scores adaptation strategies.

    Example:
        catalog = StrategyCatalog()
        strategy = catalog.select_strategy(pattern)
        if strategy is not None:
            wait_ms = catalog.compute_wait_ms(pattern, strategy, consecutive_failures=2)
            ...
            catalog.report_outcome(strategy.id, recovered=True, recovery_time_ms=2300)
    """

    def __init__(
        self,
        strategies: list[AdaptationStrategy] | None = None,
        config: AdaptationConfig | None = None,
        *,
        base_wait_ms: float = 1000.0,
        jitter_factor: float = 0.3,
        rng: random.Random | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._config = config or AdaptationConfig()
        self._base_wait_ms = base_wait_ms
        self._jitter_factor = jitter_factor
        self._rng = rng or random.Random()
        self._clock = clock or SystemClock()
        self._lock = threading.Lock()
        seeded = strategies if strategies is not None else default_strategies()
        self._initial_rates = {s.id: s.success_rate for s in seeded}
        self._strategies: dict[str, AdaptationStrategy] = {s.id: s for s in seeded}

    def select_strategy(self, pattern: ErrorPattern) -> AdaptationStrategy | None:
        """Best matching strategy for a failure, or None.

        Marks the returned strategy as used.
        """
        with self._lock:
            candidates = [s for s in self._strategies.values() if s.trigger.matches(pattern)]
            if not candidates:
                return None
            best = max(candidates, key=lambda s: (s.priority, s.success_rate))
            best.last_used_at = datetime.fromtimestamp(self._clock.now(), UTC)
            best.times_applied += 1
            selected = replace(best)

        logger.debug(
            "Strategy selected",
            strategy_id=selected.id,
            error_kind=pattern.kind.value,
            domain=pattern.domain,
        )
        return selected

    def report_outcome(
        self,
        strategy_id: str,
        recovered: bool,
        recovery_time_ms: float | None = None,
    ) -> float | None:
        """Re-score a strategy after it was applied.

        Returns:
            The new success rate, or None for an unknown strategy id.
        """
        with self._lock:
            strategy = self._strategies.get(strategy_id)
            if strategy is None:
                unknown = True
            else:
                unknown = False
                if recovered:
                    strategy.success_rate = min(1.0, strategy.success_rate + self._config.success_reward)
                else:
                    strategy.success_rate = max(0.0, strategy.success_rate - self._config.failure_penalty)
                new_rate = strategy.success_rate

        if unknown:
            logger.warning("Outcome reported for unknown strategy", strategy_id=strategy_id)
            return None

        logger.debug(
            "Strategy re-scored",
            strategy_id=strategy_id,
            recovered=recovered,
            success_rate=round(new_rate, 4),
            recovery_time_ms=recovery_time_ms,
        )
        return new_rate

    def compute_wait_ms(
        self,
        pattern: ErrorPattern,
        strategy: AdaptationStrategy,
        consecutive_failures: int | None = None,
    ) -> float:
        """Wait before the next attempt, in milliseconds.

        Exponential delay actions use min(cap, base * 2^consecutive_failures);
        multiplier actions scale the base. Jitter is applied when the action
        asks for it.
        """
        wait_ms = self._base_wait_ms
        for action in strategy.actions_of(ActionKind.DELAY_INCREASE):
            if action.get("exponential_backoff"):
                config = BackoffConfig(
                    base_delay=self._base_wait_ms / 1000.0,
                    max_delay=float(action.get("max_delay_ms", 300000)) / 1000.0,
                    jitter_factor=self._jitter_factor,
                )
                wait_ms = 1000.0 * calculate_backoff(
                    consecutive_failures or 0, config, add_jitter=False
                )
            elif action.get("multiplier"):
                wait_ms *= float(action.get("multiplier"))

            if action.get("random_jitter"):
                wait_ms = apply_jitter(wait_ms, self._jitter_factor, self._rng)

        return max(0.0, wait_ms)

    @staticmethod
    def retry_limit(strategy: AdaptationStrategy | None) -> int | None:
        """Smallest max_retries among the strategy's retry actions, if any."""
        if strategy is None:
            return None
        limits = [
            int(a.get("max_retries"))
            for a in strategy.actions_of(ActionKind.RETRY)
            if a.get("max_retries") is not None
        ]
        return min(limits) if limits else None

    def get_strategy(self, strategy_id: str) -> AdaptationStrategy | None:
        with self._lock:
            strategy = self._strategies.get(strategy_id)
            return replace(strategy) if strategy is not None else None

    def get_strategies(self) -> list[AdaptationStrategy]:
        """Snapshot of all strategies, highest priority first."""
        with self._lock:
            return sorted(
                (replace(s) for s in self._strategies.values()),
                key=lambda s: (-s.priority, -s.success_rate),
            )

    def reset(self) -> None:
        """Return every strategy to the neutral success rate."""
        with self._lock:
            for strategy in self._strategies.values():
                strategy.success_rate = self._config.neutral_success_rate
                strategy.last_used_at = None
                strategy.times_applied = 0

    def generate_report(
        self,
        metrics: RecoveryMetrics,
        problem_domains: list[dict[str, Any]],
        blacklisted_domains: list[str],
        tracked_domains: int,
    ) -> str:
        """Plain-text adaptation report."""
        lines = [
            "ERROR ADAPTATION REPORT",
            "=======================",
            "Recovery Metrics:",
            f"- Total Errors: {metrics.total_errors}",
            f"- Recovered Errors: {metrics.recovered_errors}",
            f"- Recovery Rate: {metrics.recovery_rate * 100:.1f}%",
            f"- Adaptation Strategies Applied: {metrics.strategies_applied}",
            f"- Average Recovery Time: {metrics.average_recovery_time_ms:.0f}ms",
            "",
            "Domain Status:",
            f"- Total Domains Tracked: {tracked_domains}",
            f"- Blacklisted Domains: {len(blacklisted_domains)}",
            f"- Active Monitoring: {max(0, tracked_domains - len(blacklisted_domains))}",
            "",
            "Most Problematic Domains:",
        ]
        for i, row in enumerate(problem_domains, 1):
            flag = " [BLACKLISTED]" if row.get("blacklisted") else ""
            lines.append(f"{i}. {row['domain']} ({row['error_count']} errors){flag}")
        if not problem_domains:
            lines.append("None")

        lines += ["", "Strategy Effectiveness:"]
        ranked = sorted(self.get_strategies(), key=lambda s: -s.success_rate)[:5]
        for i, strategy in enumerate(ranked, 1):
            lines.append(f"{i}. {strategy.name}: {strategy.success_rate * 100:.1f}% success rate")

        lines += ["", "Blacklisted Domains:"]
        lines += [f"- {domain}" for domain in blacklisted_domains] or ["None"]

        generated = datetime.fromtimestamp(self._clock.now(), UTC).isoformat()
        lines += ["", f"Generated: {generated}"]
        return "\n".join(lines)
