"""
Tests for recipe_crawler/crawler/resilient_fetch.py

## Test Perspectives Table

| Case ID | Input / Precondition | Perspective (Equivalence / Boundary) | Expected Result | Notes |
|---------|---------------------|---------------------------------------|-----------------|-------|
| TC-RF-N-01 | 200 on first try | Equivalence – normal | Outcome, attempts=1 | - |
| TC-RF-N-02 | 429 then 200 | Equivalence – normal | Recovered via rate_limit_recovery | Scenario |
| TC-RF-B-01 | 503 forever, max_retries=2 | Boundary – retry budget | 3 calls, RetriesExhaustedError | - |
| TC-RF-B-02 | Connection error, max_retries=0 | Boundary – zero retries | 1 call | No strategy |
| TC-RF-N-03 | 404 | Equivalence – normal | NotRetryableError after 1 call | - |
| TC-RF-N-04 | 10 consecutive failures | Equivalence – normal | Blacklisted, next fetch skipped | Scenario |
| TC-RF-B-03 | Blacklisted by others during backoff | Boundary – retry gate | DomainBlacklistedError, 1 call | - |
| TC-RF-N-05 | clear_blacklist then 200 | Equivalence – normal | Fetch allowed again | - |
| TC-RF-A-01 | Transport hangs | Equivalence – abnormal | timeout, slot released | - |
| TC-RF-N-06 | 403 then 200 | Equivalence – normal | UA rotated, proxy rotated | - |
| TC-RF-N-07 | 500 with fallback transport | Equivalence – normal | Fallback used | - |
| TC-RF-N-08 | 5 concurrent fetches | Equivalence – normal | Dispatches >= 2000ms apart | Scenario |
| TC-RF-A-02 | Invalid URL / negative retries | Equivalence – abnormal | ValueError | - |
| TC-RF-N-09 | fetch_text / fetch_json | Equivalence – normal | Decoded body | - |
| TC-PO-N-01 | report_parsing_outcome | Equivalence – normal | Retry decision | - |
| TC-PO-A-01 | Non-parsing kind | Equivalence – abnormal | ValueError | - |
| TC-PO-N-02 | Parsing failures blacklist | Equivalence – normal | skip_domain decision | - |
| TC-PO-N-03 | report_adaptation_result | Equivalence – normal | Rate and metrics updated | - |
| TC-OP-N-01 | generate_report / analysis | Equivalence – normal | Reflect recorded failures | - |
| TC-OP-N-02 | async context manager | Equivalence – normal | Owned transport closed | - |
"""

import asyncio

import httpx
import pytest

from recipe_crawler.crawler.error_classifier import ErrorKind
from recipe_crawler.crawler.fetch_result import (
    DomainBlacklistedError,
    NotRetryableError,
    RetriesExhaustedError,
)
from recipe_crawler.crawler.resilient_fetch import ResilientFetcher, domain_of
from recipe_crawler.crawler.transport import TransportResponse
from recipe_crawler.utils.config import Settings
from recipe_crawler.utils.metrics import EventType
from recipe_crawler.utils.site_policy import SitePolicyRegistry
from tests.conftest import (
    HANG,
    FakeClock,
    ProxyScriptedTransport,
    RecordingEventSink,
    RecordingPacer,
    ScriptedTransport,
)

pytestmark = pytest.mark.integration

URL = "https://x.example/recipes/shakshuka"


class TestDomainOf:
    """Tests for domain_of."""

    def test_hostname_lowercased(self):
        """Test the hostname is extracted and normalized."""
        assert domain_of("https://WWW.SeriousEats.com/recipes?id=1") == "www.seriouseats.com"

    def test_no_hostname(self):
        """Test URLs without a hostname are rejected."""
        with pytest.raises(ValueError, match="no hostname"):
            domain_of("not a url")


class TestFetchSuccess:
    """Tests for successful fetches."""

    @pytest.mark.asyncio
    async def test_first_try(self, make_fetcher, fake_clock: FakeClock, sink: RecordingEventSink):
        """Test a 200 on the first attempt."""
        # Given: Transport answering 200
        transport = ScriptedTransport([200], fake_clock)
        fetcher = make_fetcher(transport)

        # When: Fetching
        outcome = await fetcher.fetch(URL)

        # Then: One attempt, no adaptation
        assert outcome.status == 200
        assert outcome.attempts == 1
        assert outcome.recovered is False
        assert outcome.strategy_id is None
        assert outcome.domain == "x.example"
        assert transport.calls[0]["headers"]["User-Agent"] == outcome.user_agent
        assert transport.calls[0]["timeout"] == 30.0
        assert fetcher.get_recovery_metrics().successful_fetches == 1
        assert sink.events == []

    @pytest.mark.asyncio
    async def test_rate_limit_then_success(
        self, make_fetcher, fake_clock: FakeClock, sink: RecordingEventSink
    ):
        """Test a 429 is recovered by the rate limit strategy.

        Given: x.example answers 429 then 200
        When: Fetching with default retries
        Then: Success on attempt 2 with rate_limit_recovery reported recovered
        """
        transport = ScriptedTransport([429, 200], fake_clock)
        fetcher = make_fetcher(transport)

        outcome = await fetcher.fetch(URL)

        assert outcome.status == 200
        assert outcome.attempts == 2
        assert outcome.recovered is True
        assert outcome.strategy_id == "rate_limit_recovery"
        assert [e.kind for e in outcome.errors] == [ErrorKind.RATE_LIMIT]

        # Backoff waited base * 2^1 for one consecutive failure
        assert sink.of_type(EventType.BACKOFF)[0].details["wait_ms"] == 2000.0
        assert len(sink.of_type(EventType.RATE_LIMIT)) == 1
        assert len(sink.of_type(EventType.STRATEGY_APPLIED)) == 1
        assert len(sink.of_type(EventType.RECOVERED)) == 1
        assert 2.0 in fake_clock.sleeps

        assert fetcher.catalog.get_strategy("rate_limit_recovery").success_rate == pytest.approx(1.0)
        metrics = fetcher.get_recovery_metrics()
        assert metrics.total_errors == 1
        assert metrics.recovered_errors == 1
        assert metrics.recovery_rate == 1.0
        assert metrics.average_recovery_time_ms > 0
        assert fetcher.health.consecutive_failures("x.example") == 0
        assert sink.snapshots


class TestFetchFailure:
    """Tests for terminal failures."""

    @pytest.mark.asyncio
    async def test_retries_exhausted(
        self, make_fetcher, fake_clock: FakeClock, sink: RecordingEventSink
    ):
        """Test max_retries=2 allows exactly 3 transport calls."""
        # Given: Server always failing
        transport = ScriptedTransport([503], fake_clock)
        fetcher = make_fetcher(transport)

        # When: Fetching with 2 retries
        with pytest.raises(RetriesExhaustedError) as exc_info:
            await fetcher.fetch(URL, max_retries=2)

        # Then: 3 calls, last failure attached
        assert transport.call_count == 3
        assert exc_info.value.attempts == 3
        assert exc_info.value.last_status == 503
        assert exc_info.value.domain == "x.example"
        assert len(sink.of_type(EventType.EXHAUSTED)) == 1
        assert len(sink.of_type(EventType.RETRY)) == 2
        assert fetcher.catalog.get_strategy("server_error_recovery").success_rate == pytest.approx(0.45)
        metrics = fetcher.get_recovery_metrics()
        assert metrics.exhausted_fetches == 1
        assert metrics.failed_adaptations == 1

    @pytest.mark.asyncio
    async def test_strategy_caps_retries(self, make_fetcher, fake_clock: FakeClock):
        """Test a strategy's retry limit caps a larger max_retries."""
        transport = ScriptedTransport([503], fake_clock)
        fetcher = make_fetcher(transport)

        with pytest.raises(RetriesExhaustedError):
            await fetcher.fetch(URL, max_retries=8)

        # server_error_recovery allows 3 retries
        assert transport.call_count == 4

    @pytest.mark.asyncio
    async def test_zero_retries_without_strategy(self, make_fetcher, fake_clock: FakeClock):
        """Test connection failures with max_retries=0 make one call."""
        transport = ScriptedTransport([httpx.ConnectError("refused")], fake_clock)
        fetcher = make_fetcher(transport)

        with pytest.raises(RetriesExhaustedError) as exc_info:
            await fetcher.fetch(URL, max_retries=0)

        assert transport.call_count == 1
        assert exc_info.value.last_pattern.kind is ErrorKind.CONNECTION

    @pytest.mark.asyncio
    async def test_fallback_backoff_without_strategy(self, make_fetcher, fake_clock: FakeClock):
        """Test unmatched failures still back off before retrying."""
        transport = ScriptedTransport([httpx.ConnectError("refused"), 200], fake_clock)
        fetcher = make_fetcher(transport)

        outcome = await fetcher.fetch(URL)

        assert outcome.attempts == 2
        assert outcome.strategy_id is None
        # Fallback backoff: base 1000ms ±30% for the first retry
        assert any(0.7 <= s <= 1.3 for s in fake_clock.sleeps)

    @pytest.mark.asyncio
    async def test_not_found(self, make_fetcher, fake_clock: FakeClock):
        """Test 404 is never retried."""
        transport = ScriptedTransport([404], fake_clock)
        fetcher = make_fetcher(transport)

        with pytest.raises(NotRetryableError) as exc_info:
            await fetcher.fetch(URL, max_retries=5)

        assert transport.call_count == 1
        assert exc_info.value.last_status == 404

    @pytest.mark.asyncio
    async def test_hanging_transport_times_out(self, make_fetcher, fake_clock: FakeClock):
        """Test a hung attempt is classified as timeout and its slot released."""
        # Given: Transport that never answers
        transport = ScriptedTransport([HANG], fake_clock)
        fetcher = make_fetcher(transport)

        # When: Fetching with a short attempt timeout
        with pytest.raises(RetriesExhaustedError) as exc_info:
            await fetcher.fetch(URL, max_retries=0, timeout_ms=50)

        # Then: timeout, no slot leaked
        assert exc_info.value.last_pattern.kind is ErrorKind.TIMEOUT
        assert fetcher.pacer.get_stats("x.example")["in_flight"] == 0

    @pytest.mark.asyncio
    async def test_timeout_reduces_concurrency(self, make_fetcher, fake_clock: FakeClock):
        """Test timeout recovery lowers concurrency and success restores it."""
        transport = ScriptedTransport([HANG, 200], fake_clock)
        fetcher = make_fetcher(transport)

        outcome = await fetcher.fetch(URL, timeout_ms=50)

        assert outcome.strategy_id == "timeout_recovery"
        stats = fetcher.pacer.get_stats("x.example")
        assert stats["effective_concurrency"] == stats["policy_max_concurrency"]
        assert stats["in_flight"] == 0

    @pytest.mark.asyncio
    async def test_invalid_arguments(self, make_fetcher, fake_clock: FakeClock):
        """Test bad URLs and negative retries are rejected before any call."""
        transport = ScriptedTransport([200], fake_clock)
        fetcher = make_fetcher(transport)

        with pytest.raises(ValueError):
            await fetcher.fetch("not a url")
        with pytest.raises(ValueError):
            await fetcher.fetch(URL, max_retries=-1)

        assert transport.call_count == 0


class TestBlacklisting:
    """Tests for blacklist behavior through the executor."""

    @pytest.mark.asyncio
    async def test_consecutive_failures_blacklist(
        self, make_fetcher, fake_clock: FakeClock, sink: RecordingEventSink
    ):
        """Test 10 consecutive failures blacklist the domain.

        Given: y.example fails every attempt
        When: 5 fetches with 1 retry each (10 attempts)
        Then: The 10th failure blacklists; the next fetch never reaches the transport
        """
        transport = ScriptedTransport([503] * 10 + [200], fake_clock)
        fetcher = make_fetcher(transport)

        for _ in range(4):
            with pytest.raises(RetriesExhaustedError):
                await fetcher.fetch("https://y.example/r/1", max_retries=1)
        with pytest.raises(DomainBlacklistedError) as mid_call:
            await fetcher.fetch("https://y.example/r/1", max_retries=1)

        assert mid_call.value.attempts == 2
        assert fetcher.is_blacklisted("y.example") is True
        assert len(sink.of_type(EventType.BLACKLISTED)) == 1
        assert transport.call_count == 10

        # When: Fetching again
        with pytest.raises(DomainBlacklistedError) as exc_info:
            await fetcher.fetch("https://y.example/r/2")

        # Then: Rejected without a transport call
        assert exc_info.value.attempts == 0
        assert exc_info.value.last_status == 503
        assert transport.call_count == 10
        assert fetcher.get_recovery_metrics().blacklist_rejections == 1

        # When: Cleared manually
        assert fetcher.clear_blacklist("y.example") is True
        outcome = await fetcher.fetch("https://y.example/r/2")

        # Then: Fetching resumes
        assert outcome.status == 200
        assert fetcher.is_blacklisted("y.example") is False

    @pytest.mark.asyncio
    async def test_blacklisted_during_backoff(self, make_fetcher, sink: RecordingEventSink):
        """Test a retry is not dispatched once the domain was blacklisted during backoff.

        Given: y.example answers 503 then 200
        When: Other callers record 10 failures while this fetch sleeps in backoff
        Then: The retry fails with DomainBlacklistedError after a single transport call
        """

        class BlacklistingClock(FakeClock):
            fetcher: ResilientFetcher | None = None

            async def sleep(self, seconds: float) -> None:
                if self.fetcher is not None and not self.fetcher.is_blacklisted("y.example"):
                    for _ in range(10):
                        self.fetcher.report_parsing_outcome(
                            "y.example", "https://y.example/r/9", "parsing_error"
                        )
                await super().sleep(seconds)

        clock = BlacklistingClock()
        transport = ScriptedTransport([503, 200], clock)
        fetcher = make_fetcher(transport, clock=clock)
        clock.fetcher = fetcher

        with pytest.raises(DomainBlacklistedError) as exc_info:
            await fetcher.fetch("https://y.example/r/1")

        assert transport.call_count == 1
        assert exc_info.value.attempts == 1
        assert exc_info.value.last_status == 503
        assert fetcher.is_blacklisted("y.example") is True
        assert len(sink.of_type(EventType.EXHAUSTED)) == 1

    @pytest.mark.asyncio
    async def test_other_domains_unaffected(self, make_fetcher, fake_clock: FakeClock):
        """Test a blacklisted domain does not block other domains."""
        fetcher = make_fetcher(ScriptedTransport([200], fake_clock))
        for _ in range(10):
            fetcher.report_parsing_outcome("y.example", "https://y.example/r", "parsing_error")
        assert fetcher.is_blacklisted("y.example") is True

        outcome = await fetcher.fetch("https://z.example/r/1")

        assert outcome.status == 200


class TestStrategyActions:
    """Tests for strategy actions applied by the executor."""

    @pytest.mark.asyncio
    async def test_bot_detection_rotates(self, make_fetcher, fake_clock: FakeClock):
        """Test a 403 rotates the user agent and the proxy."""
        # Given: Proxy-capable transport answering 403 then 200
        transport = ProxyScriptedTransport([403, 200], fake_clock)
        fetcher = make_fetcher(transport)

        # When: Fetching
        outcome = await fetcher.fetch(URL)

        # Then: Different UA on the retry, proxy rotated once
        first_ua = transport.calls[0]["headers"]["User-Agent"]
        second_ua = transport.calls[1]["headers"]["User-Agent"]
        assert first_ua != second_ua
        assert outcome.user_agent == second_ua
        assert transport.rotations == 1
        assert outcome.strategy_id == "bot_detection_recovery"

    @pytest.mark.asyncio
    async def test_fallback_transport(self, make_fetcher, fake_clock: FakeClock):
        """Test server errors switch to the fallback transport."""
        primary = ScriptedTransport([500], fake_clock)
        fallback = ScriptedTransport([200], fake_clock)
        fetcher = make_fetcher(primary, fallback_transport=fallback)

        outcome = await fetcher.fetch(URL)

        assert outcome.status == 200
        assert primary.call_count == 1
        assert fallback.call_count == 1

    @pytest.mark.asyncio
    async def test_policy_headers_sent(self, settings: Settings, fake_clock: FakeClock, domains_yaml, rng):
        """Test site extra headers and the site UA pool reach the transport."""
        transport = ScriptedTransport([200], fake_clock)
        fetcher = ResilientFetcher(
            transport,
            settings=settings,
            registry=SitePolicyRegistry(domains_yaml),
            clock=fake_clock,
            sink=RecordingEventSink(),
            rng=rng,
        )

        await fetcher.fetch("https://www.seriouseats.com/shakshuka")

        headers = transport.calls[0]["headers"]
        assert headers["Referer"] == "https://www.google.com/"
        assert headers["User-Agent"] in {"UA-A", "UA-B", "UA-C"}


class TestConcurrency:
    """Tests for concurrent fetches."""

    @pytest.mark.asyncio
    async def test_concurrent_fetches_spaced(
        self, make_fetcher, registry: SitePolicyRegistry, fake_clock: FakeClock, rng
    ):
        """Test 5 concurrent fetches to one domain dispatch >= 2000ms apart."""
        # Given: Domain with 2000ms minimum spacing
        registry.upsert_policy("x.example", min_delay_ms=2000, max_delay_ms=2600, max_concurrency=5)
        pacer = RecordingPacer(registry, clock=fake_clock, rng=rng)
        transport = ScriptedTransport([200], fake_clock)
        fetcher = make_fetcher(transport, pacer=pacer)

        # When: 5 fetches start together
        outcomes = await asyncio.gather(*(fetcher.fetch(f"{URL}?page={i}") for i in range(5)))

        # Then: All succeed, dispatches spaced
        assert [o.status for o in outcomes] == [200] * 5
        times = sorted(pacer.dispatched)
        assert len(times) == 5
        assert all(b - a >= 2.0 for a, b in zip(times, times[1:]))


class TestWrappers:
    """Tests for fetch_text / fetch_json."""

    @pytest.mark.asyncio
    async def test_fetch_text(self, make_fetcher, fake_clock: FakeClock):
        """Test fetch_text decodes the body."""
        response = TransportResponse(status=200, body="<h1>Crème brûlée</h1>".encode())
        fetcher = make_fetcher(ScriptedTransport([response], fake_clock))

        assert await fetcher.fetch_text(URL) == "<h1>Crème brûlée</h1>"

    @pytest.mark.asyncio
    async def test_fetch_json(self, make_fetcher, fake_clock: FakeClock):
        """Test fetch_json parses the body."""
        response = TransportResponse(status=200, body=b'{"title": "Shakshuka", "servings": 4}')
        fetcher = make_fetcher(ScriptedTransport([response], fake_clock))

        assert await fetcher.fetch_json(URL) == {"title": "Shakshuka", "servings": 4}


class TestParsingOutcomes:
    """Tests for report_parsing_outcome / report_adaptation_result."""

    def test_parsing_error_decision(self, make_fetcher, fake_clock: FakeClock, sink: RecordingEventSink):
        """Test a parsing error yields a retry decision."""
        fetcher = make_fetcher(ScriptedTransport([200], fake_clock))

        decision = fetcher.report_parsing_outcome("food52.com", "https://food52.com/r/1", "parsing_error")

        assert decision.should_retry is True
        assert decision.skip_domain is False
        assert decision.strategy_id == "parsing_error_recovery"
        assert decision.wait_ms == 1000.0
        assert fetcher.health.consecutive_failures("food52.com") == 1
        assert len(sink.of_type(EventType.STRATEGY_APPLIED)) == 1

    def test_content_change_decision(self, make_fetcher, fake_clock: FakeClock):
        """Test content changes select the content change strategy."""
        fetcher = make_fetcher(ScriptedTransport([200], fake_clock))

        decision = fetcher.report_parsing_outcome(
            "food52.com", "https://food52.com/r/1", ErrorKind.CONTENT_CHANGE
        )

        assert decision.strategy_id == "content_change_recovery"

    @pytest.mark.parametrize(
        "kind,message",
        [("rate_limit", "Not a parsing outcome"), ("bogus", "Unknown error kind")],
    )
    def test_invalid_kind(self, make_fetcher, fake_clock: FakeClock, kind: str, message: str):
        """Test only parsing outcomes are accepted."""
        fetcher = make_fetcher(ScriptedTransport([200], fake_clock))

        with pytest.raises(ValueError, match=message):
            fetcher.report_parsing_outcome("food52.com", "https://food52.com/r/1", kind)

    def test_blacklisted_decision(self, make_fetcher, fake_clock: FakeClock):
        """Test the decision says skip once the domain is blacklisted."""
        fetcher = make_fetcher(ScriptedTransport([200], fake_clock))

        decisions = [
            fetcher.report_parsing_outcome("food52.com", "https://food52.com/r/1", "parsing_error")
            for _ in range(10)
        ]

        assert decisions[-1].skip_domain is True
        assert decisions[-1].should_retry is False
        assert decisions[-2].skip_domain is False

    def test_report_adaptation_result(self, make_fetcher, fake_clock: FakeClock):
        """Test adaptation results re-score the strategy and update metrics."""
        fetcher = make_fetcher(ScriptedTransport([200], fake_clock))

        fetcher.report_adaptation_result("parsing_error_recovery", True, 1200.0)
        fetcher.report_adaptation_result("missing_strategy", True)

        assert fetcher.catalog.get_strategy("parsing_error_recovery").success_rate == pytest.approx(0.5)
        metrics = fetcher.get_recovery_metrics()
        assert metrics.successful_adaptations == 1
        assert metrics.average_recovery_time_ms == 1200.0


class TestOperationalHooks:
    """Tests for reporting and lifecycle."""

    @pytest.mark.asyncio
    async def test_report_and_analysis(self, make_fetcher, fake_clock: FakeClock):
        """Test the report and analysis reflect recorded failures."""
        fetcher = make_fetcher(ScriptedTransport([429], fake_clock))
        with pytest.raises(RetriesExhaustedError):
            await fetcher.fetch(URL, max_retries=1)

        analysis = fetcher.get_domain_analysis("x.example")
        report = fetcher.generate_report()

        assert analysis.common_errors[0]["type"] == "rate_limit_429"
        assert "Reduce request rate for this domain" in analysis.recommended_actions
        assert "1. x.example (2 errors)" in report
        assert "- Total Errors: 2" in report

    @pytest.mark.asyncio
    async def test_async_context_manager(self, settings: Settings, registry: SitePolicyRegistry):
        """Test the executor closes the transport it owns."""
        async with ResilientFetcher(settings=settings, registry=registry) as fetcher:
            owned = fetcher._owned_transports[0]
            owned._get_client()

        assert owned._clients == {}
