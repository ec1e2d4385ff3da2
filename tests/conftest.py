"""
Pytest fixtures and configuration for recipe_crawler tests.

=============================================================================
Test Classification
=============================================================================

- unit: single class/function, no I/O beyond tmp_path
- integration: executor wired to real collaborators with a scripted transport

All tests run without network access. Time is driven by FakeClock so pacing
and backoff assertions are deterministic and fast.

Conventions:
- Given/When/Then comments in every test
- Each module starts with a Test Perspectives Table
- File I/O: use the tmp_path fixture
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Generator
from pathlib import Path
from typing import Any

import pytest

from recipe_crawler.crawler.resilient_fetch import ResilientFetcher
from recipe_crawler.crawler.transport import TransportResponse
from recipe_crawler.scheduler.domain_pacer import DomainPacer, DomainPacingState
from recipe_crawler.utils.config import Settings, get_settings
from recipe_crawler.utils.metrics import CrawlEvent, EventType, RecoveryMetrics
from recipe_crawler.utils.site_policy import SitePolicyRegistry

# Marker for a scripted attempt that never completes (forces a timeout)
HANG = object()


class FakeClock:
    """Deterministic clock. sleep() advances time instead of waiting."""

    def __init__(self, start: float = 1000.0) -> None:
        self.t = start
        self.sleeps: list[float] = []

    def now(self) -> float:
        return self.t

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        if seconds > 0:
            self.t += seconds
        await asyncio.sleep(0)

    def advance(self, seconds: float) -> None:
        self.t += seconds


class ScriptedTransport:
    """Transport replaying a script of statuses, responses, or exceptions.

    The last script entry repeats once the script is exhausted.
    """

    def __init__(self, script: list[Any], clock: FakeClock | None = None) -> None:
        if not script:
            raise ValueError("script must not be empty")
        self.script = list(script)
        self.clock = clock
        self.calls: list[dict[str, Any]] = []

    @property
    def call_count(self) -> int:
        return len(self.calls)

    @property
    def dispatch_times(self) -> list[float]:
        return [c["at"] for c in self.calls]

    async def __call__(
        self,
        url: str,
        headers: dict[str, str],
        timeout_seconds: float,
    ) -> TransportResponse:
        index = min(len(self.calls), len(self.script) - 1)
        self.calls.append(
            {
                "url": url,
                "headers": dict(headers),
                "timeout": timeout_seconds,
                "at": self.clock.now() if self.clock else None,
            }
        )
        step = self.script[index]
        if step is HANG:
            await asyncio.Event().wait()
        if isinstance(step, BaseException):
            raise step
        if isinstance(step, TransportResponse):
            return step
        return TransportResponse(status=int(step), body=b"<html>ok</html>", url=url)


class ProxyScriptedTransport(ScriptedTransport):
    """ScriptedTransport that supports proxy rotation."""

    def __init__(self, script: list[Any], clock: FakeClock | None = None) -> None:
        super().__init__(script, clock)
        self.rotations = 0

    def rotate_proxy(self) -> None:
        self.rotations += 1


class RecordingPacer(DomainPacer):
    """DomainPacer that records each admitted dispatch time."""

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.dispatched: list[float] = []

    async def _admit(self, state: DomainPacingState) -> None:
        await super()._admit(state)
        self.dispatched.append(state.last_dispatch_at)


class RecordingEventSink:
    """EventSink that keeps everything it receives."""

    def __init__(self) -> None:
        self.events: list[CrawlEvent] = []
        self.snapshots: list[RecoveryMetrics] = []

    def emit(self, event: CrawlEvent) -> None:
        self.events.append(event)

    def publish_metrics(self, metrics: RecoveryMetrics) -> None:
        self.snapshots.append(metrics)

    def of_type(self, event_type: EventType) -> list[CrawlEvent]:
        return [e for e in self.events if e.type is event_type]


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def clear_settings_cache() -> Generator[None, None, None]:
    """Keep the lru_cached settings from leaking between tests."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def rng() -> random.Random:
    return random.Random(1234)


@pytest.fixture
def sink() -> RecordingEventSink:
    return RecordingEventSink()


@pytest.fixture
def settings() -> Settings:
    """Default settings without reading config files."""
    return Settings()


@pytest.fixture
def registry() -> SitePolicyRegistry:
    """Registry with built-in defaults only (no domains.yaml)."""
    return SitePolicyRegistry(config_path=None)


@pytest.fixture
def domains_yaml(tmp_path: Path) -> Path:
    """Write a small domains.yaml and return its path."""
    path = tmp_path / "domains.yaml"
    path.write_text(
        """
default_policy:
  max_concurrency: 4
  min_delay_ms: 1000
  max_delay_ms: 3000
  user_agents:
    - "UA-A"
    - "UA-B"
    - "UA-C"

sites:
  - domain: pinchofyum.com
    max_concurrency: 1
    min_delay_ms: 5000
    max_delay_ms: 15000
  - domain: www.seriouseats.com
    max_concurrency: 3
    min_delay_ms: 2000
    max_delay_ms: 5000
    extra_headers:
      Referer: "https://www.google.com/"
""",
        encoding="utf-8",
    )
    return path


@pytest.fixture
def make_fetcher(
    settings: Settings,
    registry: SitePolicyRegistry,
    fake_clock: FakeClock,
    sink: RecordingEventSink,
    rng: random.Random,
):
    """Factory for a ResilientFetcher wired to fakes.

    Example:
        transport = ScriptedTransport([429, 200], fake_clock)
        fetcher = make_fetcher(transport)
    """

    def _make(transport: Any, **kwargs: Any) -> ResilientFetcher:
        kwargs.setdefault("settings", settings)
        kwargs.setdefault("registry", registry)
        kwargs.setdefault("clock", fake_clock)
        kwargs.setdefault("sink", sink)
        kwargs.setdefault("rng", rng)
        return ResilientFetcher(transport, **kwargs)

    return _make
