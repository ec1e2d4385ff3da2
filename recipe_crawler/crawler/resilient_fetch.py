"""
Resilient fetch executor.

Wraps a transport with per-domain pacing, failure classification, adaptive
recovery strategies, and domain blacklisting.

Per-call flow:
    Init -> Blocked (domain blacklisted, terminal)
         -> Paced -> InFlight -> Success (terminal)
                             -> Classified -> Strategized -> Waiting -> Paced ...
                             -> ExhaustedRetries (terminal)
    Waiting -> Blocked when another caller blacklisted the domain meanwhile

Features:
- Fail fast on blacklisted domains (no pacing, no transport call)
- Every attempt bounded by a timeout; the pacing slot is always released
- Strategy actions (UA rotation, proxy rotation, reduced concurrency,
  fallback transport) evaluated through an ActionKind handler table
- Recovery metrics and telemetry events for every terminal outcome
"""

from __future__ import annotations

import asyncio
import json
import random
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, NoReturn
from urllib.parse import urlsplit

from recipe_crawler.adaptation.domain_health import DomainAnalysis, DomainHealthTracker
from recipe_crawler.adaptation.strategies import (
    ActionKind,
    AdaptationStrategy,
    StrategyAction,
    StrategyCatalog,
)
from recipe_crawler.crawler.error_classifier import (
    SIGNAL_KINDS,
    ErrorKind,
    ErrorPattern,
    RawOutcome,
    is_retryable,
)
from recipe_crawler.crawler.fetch_result import (
    DomainBlacklistedError,
    FetchFailedError,
    FetchOutcome,
    NotRetryableError,
    RetriesExhaustedError,
)
from recipe_crawler.crawler.transport import (
    HttpxTransport,
    ProxyRotatingTransport,
    Transport,
    TransportResponse,
    build_request_headers,
)
from recipe_crawler.scheduler.domain_pacer import DomainPacer, PacingTimeoutError
from recipe_crawler.utils.backoff import BackoffConfig, calculate_backoff
from recipe_crawler.utils.clock import Clock, SystemClock
from recipe_crawler.utils.config import Settings, get_settings
from recipe_crawler.utils.logging import LogContext, get_logger
from recipe_crawler.utils.metrics import (
    CrawlEvent,
    EventSink,
    EventType,
    LoggingEventSink,
    RecoveryMetrics,
    RecoveryMetricsCollector,
    safe_emit,
    safe_publish,
)
from recipe_crawler.utils.site_policy import SitePolicy, SitePolicyRegistry, normalize_domain

logger = get_logger(__name__)


_KIND_EVENTS = {
    ErrorKind.RATE_LIMIT: EventType.RATE_LIMIT,
    ErrorKind.BOT_DETECTION: EventType.FORBIDDEN,
}


def domain_of(url: str) -> str:
    """Hostname of a URL, lowercased.

    Raises:
        ValueError: If the URL has no hostname.
    """
    hostname = urlsplit(url).hostname
    if not hostname:
        raise ValueError(f"URL has no hostname: {url!r}")
    return normalize_domain(hostname)


@dataclass(frozen=True)
class AdaptationDecision:
    """What extraction code should do after reporting a soft failure."""

    should_retry: bool
    strategy: AdaptationStrategy | None
    wait_ms: float
    skip_domain: bool

    @property
    def strategy_id(self) -> str | None:
        return self.strategy.id if self.strategy else None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "should_retry": self.should_retry,
            "strategy_id": self.strategy_id,
            "wait_ms": round(self.wait_ms, 1),
            "skip_domain": self.skip_domain,
        }


@dataclass
class _CallState:
    """Mutable per-call state that strategy actions operate on."""

    url: str
    domain: str
    policy: SitePolicy
    user_agent: str
    transport: Transport
    skip_domain: bool = False


class ResilientFetcher:
    """Fetch executor with pacing, adaptive retries, and blacklisting.

    Safe for any number of concurrent callers on one event loop.

    Example:
        async with ResilientFetcher() as fetcher:
            outcome = await fetcher.fetch("https://www.seriouseats.com/recipes")
            html = outcome.text()
    """

    def __init__(
        self,
        transport: Transport | None = None,
        *,
        settings: Settings | None = None,
        registry: SitePolicyRegistry | None = None,
        pacer: DomainPacer | None = None,
        health: DomainHealthTracker | None = None,
        catalog: StrategyCatalog | None = None,
        clock: Clock | None = None,
        sink: EventSink | None = None,
        fallback_transport: Transport | None = None,
        rng: random.Random | None = None,
    ) -> None:
        """Initialize the executor.

        Collaborators not supplied are built from ``settings``
        (get_settings() when None).

        Args:
            transport: Primary transport (an owned HttpxTransport when None).
            settings: Settings for defaults and thresholds.
            registry: Site policy registry.
            pacer: Domain pacer.
            health: Domain health tracker.
            catalog: Strategy catalog.
            clock: Time source shared by collaborators built here.
            sink: Telemetry sink (LoggingEventSink when None).
            fallback_transport: Transport switched to by fallback actions.
            rng: Random source for user agents and jitter.
        """
        self._settings = settings or get_settings()
        crawler = self._settings.crawler
        self._clock = clock or SystemClock()
        self._rng = rng or random.Random()
        self._sink = sink or LoggingEventSink()

        self._owned_transports: list[HttpxTransport] = []
        if transport is None:
            transport = HttpxTransport(follow_redirects=crawler.follow_redirects)
            self._owned_transports.append(transport)
        self._transport = transport
        self._fallback_transport = fallback_transport

        self._registry = registry or SitePolicyRegistry.from_settings()
        self._pacer = pacer or DomainPacer(
            self._registry,
            clock=self._clock,
            rng=self._rng,
            admission_timeout=crawler.admission_timeout_ms / 1000.0,
        )
        self._health = health or DomainHealthTracker(
            self._settings.health, clock=self._clock, sink=self._sink
        )
        self._catalog = catalog or StrategyCatalog(
            config=self._settings.adaptation,
            base_wait_ms=crawler.base_wait_ms,
            jitter_factor=crawler.jitter_factor,
            rng=self._rng,
            clock=self._clock,
        )
        self._metrics = RecoveryMetricsCollector()
        self._fallback_backoff = BackoffConfig(
            base_delay=crawler.base_wait_ms / 1000.0,
            max_delay=max(crawler.fallback_max_wait_ms, crawler.base_wait_ms) / 1000.0,
            jitter_factor=crawler.jitter_factor,
        )

        self._action_handlers: dict[
            ActionKind, Callable[[_CallState, StrategyAction], None]
        ] = {
            ActionKind.USER_AGENT_ROTATION: self._rotate_user_agent,
            ActionKind.DELAY_INCREASE: self._noop_action,
            ActionKind.PROXY_ROTATION: self._rotate_proxy,
            ActionKind.RETRY: self._configure_retry,
            ActionKind.FALLBACK_METHOD: self._use_fallback,
            ActionKind.SKIP_DOMAIN: self._skip_domain,
        }

    @property
    def registry(self) -> SitePolicyRegistry:
        return self._registry

    @property
    def pacer(self) -> DomainPacer:
        return self._pacer

    @property
    def health(self) -> DomainHealthTracker:
        return self._health

    @property
    def catalog(self) -> StrategyCatalog:
        return self._catalog

    # =========================================================================
    # Fetch
    # =========================================================================

    async def fetch(
        self,
        url: str,
        *,
        max_retries: int | None = None,
        timeout_ms: int | None = None,
    ) -> FetchOutcome:
        """Fetch a URL with pacing, adaptive retries, and blacklisting.

        Args:
            url: URL to fetch.
            max_retries: Retries after the first attempt (settings default).
            timeout_ms: Per-attempt timeout (settings default).

        Returns:
            FetchOutcome for the first response with status < 400.

        Raises:
            DomainBlacklistedError: Domain blacklisted on entry or mid-call.
            NotRetryableError: Permanent failure (not_found).
            RetriesExhaustedError: Retry budget exhausted.
            ValueError: Invalid URL or arguments.
        """
        crawler = self._settings.crawler
        if max_retries is None:
            max_retries = crawler.max_retries
        if timeout_ms is None:
            timeout_ms = crawler.request_timeout_ms
        if max_retries < 0:
            raise ValueError("max_retries must be non-negative")
        if timeout_ms <= 0:
            raise ValueError("timeout_ms must be positive")

        domain = domain_of(url)

        if self._health.is_blacklisted(domain):
            self._metrics.record_blacklist_rejection()
            safe_publish(self._sink, self._metrics.snapshot())
            logger.info("Skipping blacklisted domain", domain=domain, url=url[:200])
            raise DomainBlacklistedError(
                f"Domain {domain} is blacklisted",
                domain=domain,
                attempts=0,
                last_pattern=self._health.last_error(domain),
            )

        with LogContext.for_fetch(domain, url):
            return await self._run(url, domain, max_retries, timeout_ms / 1000.0)

    async def _run(
        self,
        url: str,
        domain: str,
        max_retries: int,
        timeout_seconds: float,
    ) -> FetchOutcome:
        policy = self._registry.get_policy(domain)
        state = _CallState(
            url=url,
            domain=domain,
            policy=policy,
            user_agent=policy.pick_user_agent(self._rng),
            transport=self._transport,
        )
        started = self._clock.now()
        retry_cap = max_retries
        attempts = 0
        errors: list[ErrorPattern] = []
        strategy_id: str | None = None
        first_failure_at: float | None = None

        while True:
            # Other callers may have blacklisted the domain while this one backed off
            if errors and self._health.is_blacklisted(domain):
                self._fail(
                    DomainBlacklistedError,
                    f"Domain {domain} blacklisted before retry",
                    state, attempts, errors[-1], strategy_id,
                )

            attempts += 1
            state.policy = self._registry.get_policy(domain)
            response, pattern = await self._attempt(state, timeout_seconds)

            if pattern is None and response is not None:
                return self._succeed(
                    state, response, attempts, errors, strategy_id, started, first_failure_at
                )

            errors.append(pattern)
            if first_failure_at is None:
                first_failure_at = self._clock.now()
            self._metrics.record_error()
            self._health.record_failure(pattern)
            self._emit_failure_event(pattern, attempts)

            if not is_retryable(pattern.kind):
                self._fail(
                    NotRetryableError,
                    f"{pattern.kind.value} for {url}",
                    state, attempts, pattern, strategy_id,
                )

            if self._health.is_blacklisted(domain):
                self._fail(
                    DomainBlacklistedError,
                    f"Domain {domain} blacklisted during fetch",
                    state, attempts, pattern, strategy_id,
                )

            strategy = self._catalog.select_strategy(pattern)
            if strategy is not None:
                strategy_id = strategy.id
                self._apply_strategy(state, strategy, pattern, attempts)
                limit = self._catalog.retry_limit(strategy)
                if limit is not None:
                    retry_cap = min(retry_cap, limit)

            if state.skip_domain:
                self._fail(
                    NotRetryableError,
                    f"Strategy requested skipping domain {domain}",
                    state, attempts, pattern, strategy_id,
                )

            if attempts > retry_cap:
                self._fail(
                    RetriesExhaustedError,
                    f"Failed to fetch {url} after {attempts} attempts",
                    state, attempts, pattern, strategy_id,
                )

            wait_ms = self._compute_wait_ms(pattern, strategy, attempts)
            logger.info(
                "Retrying after failure",
                domain=domain,
                error_kind=pattern.kind.value,
                status=pattern.http_status,
                attempt=attempts,
                max_retries=retry_cap,
                strategy_id=strategy.id if strategy else None,
                wait_ms=round(wait_ms, 1),
            )
            safe_emit(
                self._sink,
                CrawlEvent(
                    type=EventType.BACKOFF,
                    domain=domain,
                    url=url,
                    details={"wait_ms": round(wait_ms, 1), "attempt": attempts},
                ),
            )
            await self._clock.sleep(wait_ms / 1000.0)
            safe_emit(
                self._sink,
                CrawlEvent(
                    type=EventType.RETRY,
                    domain=domain,
                    url=url,
                    details={"attempt": attempts + 1, "max_retries": retry_cap},
                ),
            )

    async def _attempt(
        self,
        state: _CallState,
        timeout_seconds: float,
    ) -> tuple[TransportResponse | None, ErrorPattern | None]:
        """One paced transport call. Returns (response, None) on success."""
        started = self._clock.now()
        try:
            await self._pacer.acquire(state.domain)
        except PacingTimeoutError as e:
            return None, self._pattern(state, RawOutcome(error=e), started)

        try:
            headers = build_request_headers(state.policy, state.user_agent)
            response = await asyncio.wait_for(
                state.transport(state.url, headers, timeout_seconds),
                timeout=timeout_seconds,
            )
        except Exception as e:
            logger.debug(
                "Transport call failed",
                domain=state.domain,
                error_type=type(e).__name__,
                error=str(e)[:200],
            )
            return None, self._pattern(state, RawOutcome(error=e), started)
        finally:
            self._pacer.release(state.domain)

        if response.status >= 400:
            return response, self._pattern(state, RawOutcome(status=response.status), started)
        return response, None

    def _pattern(self, state: _CallState, outcome: RawOutcome, started: float) -> ErrorPattern:
        return ErrorPattern.from_outcome(
            outcome,
            domain=state.domain,
            url=state.url,
            user_agent=state.user_agent,
            latency_ms=max(0.0, (self._clock.now() - started) * 1000.0),
        )

    def _compute_wait_ms(
        self,
        pattern: ErrorPattern,
        strategy: AdaptationStrategy | None,
        attempts: int,
    ) -> float:
        if strategy is not None:
            return self._catalog.compute_wait_ms(
                pattern,
                strategy,
                consecutive_failures=self._health.consecutive_failures(pattern.domain),
            )
        return 1000.0 * calculate_backoff(attempts - 1, self._fallback_backoff, rng=self._rng)

    def _succeed(
        self,
        state: _CallState,
        response: TransportResponse,
        attempts: int,
        errors: list[ErrorPattern],
        strategy_id: str | None,
        started: float,
        first_failure_at: float | None,
    ) -> FetchOutcome:
        now = self._clock.now()
        self._health.record_success(state.domain)
        self._pacer.restore_concurrency(state.domain)

        recovery_time_ms = None
        if first_failure_at is not None:
            recovery_time_ms = (now - first_failure_at) * 1000.0
        if strategy_id is not None:
            self._catalog.report_outcome(strategy_id, True, recovery_time_ms)
        self._metrics.record_terminal(
            success=True,
            adapted=strategy_id is not None,
            recovery_time_ms=recovery_time_ms,
        )

        if errors:
            logger.info(
                "Recovered after failures",
                domain=state.domain,
                attempts=attempts,
                strategy_id=strategy_id,
            )
            safe_emit(
                self._sink,
                CrawlEvent(
                    type=EventType.RECOVERED,
                    domain=state.domain,
                    url=state.url,
                    details={"attempts": attempts, "strategy_id": strategy_id},
                ),
            )
        safe_publish(self._sink, self._metrics.snapshot())

        return FetchOutcome(
            url=state.url,
            domain=state.domain,
            response=response,
            attempts=attempts,
            elapsed_ms=(now - started) * 1000.0,
            user_agent=state.user_agent,
            strategy_id=strategy_id,
            errors=errors,
        )

    def _fail(
        self,
        error_cls: type[FetchFailedError],
        message: str,
        state: _CallState,
        attempts: int,
        pattern: ErrorPattern,
        strategy_id: str | None,
    ) -> NoReturn:
        """Record a terminal failure and raise ``error_cls``."""
        if strategy_id is not None:
            self._catalog.report_outcome(strategy_id, False)
        self._metrics.record_terminal(success=False, adapted=strategy_id is not None)

        logger.warning(
            "Fetch failed",
            domain=state.domain,
            error_kind=pattern.kind.value,
            status=pattern.http_status,
            attempts=attempts,
            reason=error_cls.__name__,
        )
        safe_emit(
            self._sink,
            CrawlEvent(
                type=EventType.EXHAUSTED,
                domain=state.domain,
                url=state.url,
                details={
                    "attempts": attempts,
                    "error_kind": pattern.kind.value,
                    "reason": error_cls.__name__,
                },
            ),
        )
        safe_publish(self._sink, self._metrics.snapshot())
        raise error_cls(message, domain=state.domain, attempts=attempts, last_pattern=pattern)

    def _emit_failure_event(self, pattern: ErrorPattern, attempt: int) -> None:
        event_type = _KIND_EVENTS.get(pattern.kind)
        if event_type is None:
            return
        safe_emit(
            self._sink,
            CrawlEvent(
                type=event_type,
                domain=pattern.domain,
                url=pattern.url,
                details={"status": pattern.http_status, "attempt": attempt},
            ),
        )

    # =========================================================================
    # Strategy actions
    # =========================================================================

    def _apply_strategy(
        self,
        state: _CallState,
        strategy: AdaptationStrategy,
        pattern: ErrorPattern,
        attempt: int,
    ) -> None:
        self._metrics.record_strategy_applied()
        for action in strategy.actions:
            self._action_handlers[action.kind](state, action)

        logger.info(
            "Applied adaptation strategy",
            domain=state.domain,
            strategy_id=strategy.id,
            error_kind=pattern.kind.value,
        )
        safe_emit(
            self._sink,
            CrawlEvent(
                type=EventType.STRATEGY_APPLIED,
                domain=state.domain,
                url=state.url,
                details={
                    "strategy_id": strategy.id,
                    "error_kind": pattern.kind.value,
                    "attempt": attempt,
                },
            ),
        )

    def _rotate_user_agent(self, state: _CallState, action: StrategyAction) -> None:
        state.user_agent = state.policy.pick_user_agent(self._rng, exclude=state.user_agent)

    def _noop_action(self, state: _CallState, action: StrategyAction) -> None:
        # Delay actions are folded into the computed wait
        return None

    def _rotate_proxy(self, state: _CallState, action: StrategyAction) -> None:
        if isinstance(state.transport, ProxyRotatingTransport):
            state.transport.rotate_proxy()

    def _configure_retry(self, state: _CallState, action: StrategyAction) -> None:
        if action.get("reduce_concurrency"):
            self._pacer.reduce_concurrency(state.domain)
        if action.get("different_user_agent"):
            self._rotate_user_agent(state, action)

    def _use_fallback(self, state: _CallState, action: StrategyAction) -> None:
        # Selector fallbacks belong to extraction code
        if not action.get("transport") or self._fallback_transport is None:
            return
        if state.transport is not self._fallback_transport:
            state.transport = self._fallback_transport
            logger.info(
                "Switched to fallback transport",
                domain=state.domain,
                mode=action.get("transport"),
            )

    def _skip_domain(self, state: _CallState, action: StrategyAction) -> None:
        state.skip_domain = True

    # =========================================================================
    # Convenience wrappers
    # =========================================================================

    async def fetch_text(
        self,
        url: str,
        *,
        encoding: str = "utf-8",
        max_retries: int | None = None,
        timeout_ms: int | None = None,
    ) -> str:
        """Fetch a URL and decode the body as text."""
        outcome = await self.fetch(url, max_retries=max_retries, timeout_ms=timeout_ms)
        return outcome.text(encoding)

    async def fetch_json(
        self,
        url: str,
        *,
        max_retries: int | None = None,
        timeout_ms: int | None = None,
    ) -> Any:
        """Fetch a URL and parse the body as JSON.

        Raises:
            json.JSONDecodeError: If the body is not valid JSON.
        """
        outcome = await self.fetch(url, max_retries=max_retries, timeout_ms=timeout_ms)
        return json.loads(outcome.body)

    # =========================================================================
    # Soft failures from extraction code
    # =========================================================================

    def report_parsing_outcome(
        self,
        domain: str,
        url: str,
        kind: ErrorKind | str,
    ) -> AdaptationDecision:
        """Record a parsing_error or content_change found after a successful fetch.

        Args:
            domain: Domain the content came from.
            url: URL the content came from.
            kind: "parsing_error" or "content_change".

        Returns:
            AdaptationDecision describing whether and when to retry.

        Raises:
            ValueError: If ``kind`` is not a parsing outcome.
        """
        try:
            error_kind = ErrorKind(kind)
        except ValueError as e:
            raise ValueError(f"Unknown error kind: {kind!r}") from e
        if error_kind not in SIGNAL_KINDS:
            raise ValueError(f"Not a parsing outcome: {error_kind.value}")

        domain = normalize_domain(domain)
        pattern = ErrorPattern.from_outcome(RawOutcome(signal=error_kind), domain=domain, url=url)
        self._metrics.record_error()
        self._health.record_failure(pattern)

        if self._health.is_blacklisted(domain):
            decision = AdaptationDecision(
                should_retry=False, strategy=None, wait_ms=0.0, skip_domain=True
            )
        else:
            strategy = self._catalog.select_strategy(pattern)
            wait_ms = 0.0
            skip = False
            should_retry = False
            if strategy is not None:
                self._metrics.record_strategy_applied()
                wait_ms = self._catalog.compute_wait_ms(
                    pattern,
                    strategy,
                    consecutive_failures=self._health.consecutive_failures(domain),
                )
                skip = bool(strategy.actions_of(ActionKind.SKIP_DOMAIN))
                limit = self._catalog.retry_limit(strategy)
                should_retry = not skip and (limit is None or limit > 0)
                safe_emit(
                    self._sink,
                    CrawlEvent(
                        type=EventType.STRATEGY_APPLIED,
                        domain=domain,
                        url=url,
                        details={"strategy_id": strategy.id, "error_kind": error_kind.value},
                    ),
                )
            decision = AdaptationDecision(
                should_retry=should_retry, strategy=strategy, wait_ms=wait_ms, skip_domain=skip
            )

        logger.info(
            "Parsing outcome reported",
            domain=domain,
            error_kind=error_kind.value,
            **decision.to_dict(),
        )
        safe_publish(self._sink, self._metrics.snapshot())
        return decision

    def report_adaptation_result(
        self,
        strategy_id: str,
        recovered: bool,
        recovery_time_ms: float | None = None,
    ) -> None:
        """Close the loop on a decision returned by report_parsing_outcome()."""
        if self._catalog.report_outcome(strategy_id, recovered, recovery_time_ms) is None:
            return
        self._metrics.record_adaptation(success=recovered, recovery_time_ms=recovery_time_ms)
        safe_publish(self._sink, self._metrics.snapshot())

    # =========================================================================
    # Operational hooks
    # =========================================================================

    def is_blacklisted(self, domain: str) -> bool:
        return self._health.is_blacklisted(domain)

    def clear_blacklist(self, domain: str) -> bool:
        """Manually lift a domain's blacklist. Returns True if it was blacklisted."""
        return self._health.clear_blacklist(domain)

    def get_domain_analysis(self, domain: str) -> DomainAnalysis:
        return self._health.get_analysis(domain)

    def get_recovery_metrics(self) -> RecoveryMetrics:
        return self._metrics.snapshot()

    def generate_report(self) -> str:
        """Text report of recovery metrics, problem domains, and strategies."""
        return self._catalog.generate_report(
            self._metrics.snapshot(),
            self._health.get_problem_domains(),
            self._health.get_blacklisted_domains(),
            self._health.tracked_domain_count(),
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def close(self) -> None:
        """Close transports created by this executor."""
        for transport in self._owned_transports:
            await transport.close()

    async def __aenter__(self) -> ResilientFetcher:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()
