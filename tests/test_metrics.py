"""
Tests for recipe_crawler/utils/metrics.py

## Test Perspectives Table

| Case ID | Input / Precondition | Perspective (Equivalence / Boundary) | Expected Result | Notes |
|---------|---------------------|---------------------------------------|-----------------|-------|
| TC-RM-B-01 | No errors | Boundary – zero | recovery_rate 0.0 | - |
| TC-RM-N-01 | 3 of 4 recovered | Equivalence – normal | 0.75 | - |
| TC-MC-N-01 | record_terminal adapted success | Equivalence – normal | Counters and average | - |
| TC-MC-N-02 | record_terminal adapted failure | Equivalence – normal | failed_adaptations | - |
| TC-MC-N-03 | record_adaptation | Equivalence – normal | Counted without a fetch | - |
| TC-MC-N-04 | record_blacklist_rejection | Equivalence – normal | Rejection counted | - |
| TC-MC-N-05 | snapshot isolation | Equivalence – normal | Copy returned | - |
| TC-MC-N-06 | reset | Equivalence – normal | Zeroed | - |
| TC-SK-A-01 | Raising sink | Equivalence – abnormal | Suppressed | - |
| TC-SK-N-01 | LoggingEventSink | Equivalence – normal | No error | - |
"""

import pytest

from recipe_crawler.utils.metrics import (
    CrawlEvent,
    EventType,
    LoggingEventSink,
    NullEventSink,
    RecoveryMetrics,
    RecoveryMetricsCollector,
    safe_emit,
    safe_publish,
)

pytestmark = pytest.mark.unit


class TestRecoveryMetrics:
    """Tests for RecoveryMetrics."""

    def test_rate_without_errors(self):
        """Test recovery_rate is 0.0 when nothing failed."""
        assert RecoveryMetrics().recovery_rate == 0.0

    def test_rate(self):
        """Test recovery_rate divides recovered by total errors."""
        metrics = RecoveryMetrics(total_errors=4, recovered_errors=3)

        assert metrics.recovery_rate == 0.75
        assert metrics.to_dict()["recovery_rate"] == 0.75


class TestCollector:
    """Tests for RecoveryMetricsCollector."""

    def test_adapted_success(self):
        """Test a recovered fetch updates recovery counters and the average."""
        # Given: Collector with two recovered fetches
        collector = RecoveryMetricsCollector()
        collector.record_error()
        collector.record_strategy_applied()
        collector.record_terminal(success=True, adapted=True, recovery_time_ms=1000)
        collector.record_error()
        collector.record_strategy_applied()
        collector.record_terminal(success=True, adapted=True, recovery_time_ms=3000)

        # When: Taking a snapshot
        m = collector.snapshot()

        # Then: Counters and running average
        assert m.total_errors == 2
        assert m.recovered_errors == 2
        assert m.successful_adaptations == 2
        assert m.strategies_applied == 2
        assert m.total_fetches == 2
        assert m.successful_fetches == 2
        assert m.average_recovery_time_ms == 2000.0
        assert m.recovery_rate == 1.0

    def test_adapted_failure(self):
        """Test an exhausted adapted fetch counts a failed adaptation."""
        collector = RecoveryMetricsCollector()
        collector.record_error()
        collector.record_terminal(success=False, adapted=True)

        m = collector.snapshot()

        assert m.exhausted_fetches == 1
        assert m.failed_adaptations == 1
        assert m.recovered_errors == 0

    def test_unadapted_success(self):
        """Test a plain success touches only fetch counters."""
        collector = RecoveryMetricsCollector()
        collector.record_terminal(success=True, adapted=False)

        m = collector.snapshot()

        assert m.successful_fetches == 1
        assert m.successful_adaptations == 0

    def test_record_adaptation(self):
        """Test adaptation results reported by callers are counted."""
        collector = RecoveryMetricsCollector()
        collector.record_adaptation(success=True, recovery_time_ms=500)
        collector.record_adaptation(success=False)

        m = collector.snapshot()

        assert m.successful_adaptations == 1
        assert m.failed_adaptations == 1
        assert m.total_fetches == 0
        assert m.average_recovery_time_ms == 500.0

    def test_blacklist_rejection(self):
        """Test rejected fetches are counted as fetches."""
        collector = RecoveryMetricsCollector()
        collector.record_blacklist_rejection()

        m = collector.snapshot()

        assert m.blacklist_rejections == 1
        assert m.total_fetches == 1

    def test_snapshot_is_copy(self):
        """Test mutating a snapshot does not affect the collector."""
        collector = RecoveryMetricsCollector()
        snap = collector.snapshot()
        snap.total_errors = 99

        assert collector.snapshot().total_errors == 0

    def test_reset(self):
        """Test reset zeroes every counter."""
        collector = RecoveryMetricsCollector()
        collector.record_error()
        collector.reset()

        assert collector.snapshot() == RecoveryMetrics()


class TestSinks:
    """Tests for event sinks and safe publishing."""

    def test_raising_sink_suppressed(self):
        """Test sink failures never propagate."""

        class BrokenSink:
            def emit(self, event: CrawlEvent) -> None:
                raise RuntimeError("down")

            def publish_metrics(self, metrics: RecoveryMetrics) -> None:
                raise RuntimeError("down")

        # Given/When/Then: No exception escapes
        safe_emit(BrokenSink(), CrawlEvent(type=EventType.RETRY, domain="x.example"))
        safe_publish(BrokenSink(), RecoveryMetrics())

    def test_logging_sink(self):
        """Test the logging sink accepts events and metrics."""
        sink = LoggingEventSink()
        event = CrawlEvent(
            type=EventType.BACKOFF,
            domain="x.example",
            url="https://x.example/r/1",
            details={"wait_ms": 2000.0, "attempt": 1},
        )

        sink.emit(event)
        sink.publish_metrics(RecoveryMetrics(total_errors=1))
        NullEventSink().emit(event)

        assert event.to_dict()["type"] == "backoff"
