"""
recipe_crawler utilities module.
"""

from recipe_crawler.utils.backoff import BackoffConfig, apply_jitter, calculate_backoff
from recipe_crawler.utils.clock import Clock, SystemClock
from recipe_crawler.utils.config import Settings, get_config_dir, get_project_root, get_settings
from recipe_crawler.utils.logging import (
    LogContext,
    bind_context,
    configure_logging,
    get_logger,
    unbind_context,
)
from recipe_crawler.utils.metrics import (
    CrawlEvent,
    EventSink,
    EventType,
    LoggingEventSink,
    NullEventSink,
    RecoveryMetrics,
    RecoveryMetricsCollector,
)
from recipe_crawler.utils.site_policy import SitePolicy, SitePolicyRegistry

__all__ = [
    # Config
    "Settings",
    "get_settings",
    "get_config_dir",
    "get_project_root",
    # Logging
    "get_logger",
    "configure_logging",
    "bind_context",
    "unbind_context",
    "LogContext",
    # Backoff
    "BackoffConfig",
    "apply_jitter",
    "calculate_backoff",
    # Clock
    "Clock",
    "SystemClock",
    # Metrics
    "CrawlEvent",
    "EventSink",
    "EventType",
    "LoggingEventSink",
    "NullEventSink",
    "RecoveryMetrics",
    "RecoveryMetricsCollector",
    # Site policy
    "SitePolicy",
    "SitePolicyRegistry",
]
