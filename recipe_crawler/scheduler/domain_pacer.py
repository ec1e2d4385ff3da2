"""
Per-domain pacing scheduler.

Enforces, for every domain independently:
- Minimum spacing between dispatches (uniform in [min_delay_ms, max_delay_ms])
- Maximum in-flight requests (SitePolicy.max_concurrency)

Design:
- Each domain has its own asyncio.Lock for FIFO admission; callers for the
  same domain queue on it, callers for different domains never contend
- The lock is held while waiting for a free slot and for the spacing delay,
  so two dispatches to one domain are never closer than min_delay_ms
- release() decrements the in-flight count and wakes the admission queue
- Adaptive throttling: reduce_concurrency() lowers the effective cap after
  trouble, restore_concurrency() raises it back one step after a success
"""

from __future__ import annotations

import asyncio
import random
import threading
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

from recipe_crawler.utils.clock import Clock, SystemClock
from recipe_crawler.utils.logging import get_logger
from recipe_crawler.utils.site_policy import SitePolicyRegistry, normalize_domain

logger = get_logger(__name__)


class PacingTimeoutError(TimeoutError):
    """Raised when a caller waits too long in a domain's admission queue."""

    def __init__(self, domain: str, timeout: float):
        self.domain = domain
        self.timeout = timeout
        super().__init__(
            f"Failed to acquire dispatch slot within {timeout}s (domain={domain})"
        )


@dataclass
class DomainPacingState:
    """Mutable pacing state for one domain."""

    domain: str
    admission_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    slot_freed: asyncio.Event = field(default_factory=asyncio.Event)
    in_flight: int = 0
    last_dispatch_at: float | None = None
    # Steps below the policy's max_concurrency (adaptive throttling)
    concurrency_reduction: int = 0
    total_dispatched: int = 0
    total_wait_seconds: float = 0.0


class DomainPacer:
    """Admission control for outbound requests, keyed by domain.

    Example:
        pacer = DomainPacer(registry)
        async with pacer.slot("www.seriouseats.com"):
            response = await transport(url, headers, timeout_seconds)
    """

    def __init__(
        self,
        registry: SitePolicyRegistry,
        clock: Clock | None = None,
        rng: random.Random | None = None,
        admission_timeout: float = 120.0,
    ) -> None:
        """Initialize the pacer.

        Args:
            registry: Source of per-domain limits.
            clock: Time source (SystemClock when None).
            rng: Random source for spacing jitter.
            admission_timeout: Default maximum admission wait in seconds.
        """
        self._registry = registry
        self._clock = clock or SystemClock()
        self._rng = rng or random.Random()
        self._admission_timeout = admission_timeout
        self._states: dict[str, DomainPacingState] = {}
        self._init_lock = threading.Lock()

    def _get_state(self, domain: str) -> DomainPacingState:
        domain = normalize_domain(domain)
        state = self._states.get(domain)
        if state is not None:
            return state

        with self._init_lock:
            # Double-check after acquiring lock
            state = self._states.get(domain)
            if state is None:
                state = DomainPacingState(domain=domain)
                state.slot_freed.set()
                self._states[domain] = state
                logger.debug("Initialized pacing state", domain=domain)
            return state

    def effective_concurrency(self, domain: str) -> int:
        """Current concurrency cap for a domain after adaptive reductions."""
        state = self._get_state(domain)
        policy = self._registry.get_policy(state.domain)
        return max(1, policy.max_concurrency - state.concurrency_reduction)

    async def acquire(self, domain: str, timeout: float | None = None) -> None:
        """Wait until a request to ``domain`` may be dispatched.

        Args:
            domain: Target hostname.
            timeout: Maximum admission wait in seconds (default from init).

        Raises:
            PacingTimeoutError: If admission takes longer than ``timeout``.
        """
        state = self._get_state(domain)
        if timeout is None:
            timeout = self._admission_timeout

        try:
            await asyncio.wait_for(self._admit(state), timeout=timeout)
        except TimeoutError as e:
            logger.warning(
                "Pacing admission timed out",
                domain=state.domain,
                timeout=timeout,
                in_flight=state.in_flight,
            )
            raise PacingTimeoutError(state.domain, timeout) from e

    async def _admit(self, state: DomainPacingState) -> None:
        async with state.admission_lock:
            started = self._clock.now()

            # 1. Wait for a concurrency slot
            while state.in_flight >= self.effective_concurrency(state.domain):
                logger.debug(
                    "Concurrency limit reached: waiting for slot",
                    domain=state.domain,
                    in_flight=state.in_flight,
                )
                state.slot_freed.clear()
                await state.slot_freed.wait()

            # 2. Enforce spacing since the previous dispatch
            policy = self._registry.get_policy(state.domain)
            if state.last_dispatch_at is not None:
                spacing = self._rng.uniform(policy.min_delay_seconds, policy.max_delay_seconds)
                spacing = max(spacing, policy.min_delay_seconds)
                wait_time = state.last_dispatch_at + spacing - self._clock.now()
                if wait_time > 0:
                    logger.debug(
                        "Pacing: waiting before dispatch",
                        domain=state.domain,
                        wait_seconds=round(wait_time, 3),
                    )
                    await self._clock.sleep(wait_time)

            now = self._clock.now()
            state.last_dispatch_at = now
            state.in_flight += 1
            state.total_dispatched += 1
            state.total_wait_seconds += max(0.0, now - started)

    def release(self, domain: str) -> None:
        """Release a slot taken by acquire().

        Must be called once per successful acquire(), typically in a finally block.
        """
        state = self._states.get(normalize_domain(domain))
        if state is None:
            return
        if state.in_flight > 0:
            state.in_flight -= 1
        state.slot_freed.set()

    @asynccontextmanager
    async def slot(self, domain: str, timeout: float | None = None) -> AsyncIterator[None]:
        """Async context manager pairing acquire() and release()."""
        await self.acquire(domain, timeout=timeout)
        try:
            yield
        finally:
            self.release(domain)

    def reduce_concurrency(self, domain: str) -> int:
        """Lower a domain's effective concurrency by one (floor 1).

        Returns:
            The new effective concurrency.
        """
        state = self._get_state(domain)
        policy = self._registry.get_policy(state.domain)
        if policy.max_concurrency - state.concurrency_reduction > 1:
            state.concurrency_reduction += 1
            logger.warning(
                "Reducing domain concurrency",
                domain=state.domain,
                effective_concurrency=policy.max_concurrency - state.concurrency_reduction,
                policy_max=policy.max_concurrency,
            )
        return self.effective_concurrency(state.domain)

    def restore_concurrency(self, domain: str) -> int:
        """Raise a domain's effective concurrency one step toward its policy cap.

        Returns:
            The new effective concurrency.
        """
        state = self._get_state(domain)
        if state.concurrency_reduction > 0:
            state.concurrency_reduction -= 1
            logger.info(
                "Restoring domain concurrency",
                domain=state.domain,
                effective_concurrency=self.effective_concurrency(state.domain),
            )
            state.slot_freed.set()
        return self.effective_concurrency(state.domain)

    def get_stats(self, domain: str) -> dict[str, Any]:
        """Get pacing statistics for a domain."""
        state = self._get_state(domain)
        policy = self._registry.get_policy(state.domain)
        return {
            "domain": state.domain,
            "in_flight": state.in_flight,
            "effective_concurrency": self.effective_concurrency(state.domain),
            "policy_max_concurrency": policy.max_concurrency,
            "min_delay_ms": policy.min_delay_ms,
            "max_delay_ms": policy.max_delay_ms,
            "last_dispatch_at": state.last_dispatch_at,
            "total_dispatched": state.total_dispatched,
            "avg_wait_seconds": (
                state.total_wait_seconds / state.total_dispatched if state.total_dispatched else 0.0
            ),
        }
