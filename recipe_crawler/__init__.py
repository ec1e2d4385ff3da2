"""
recipe_crawler: adaptive crawl resilience for recipe sites.

Paces requests per domain, classifies failures, applies scored recovery
strategies, and blacklists domains that keep failing.
"""

from recipe_crawler.crawler.fetch_result import (
    DomainBlacklistedError,
    FetchFailedError,
    FetchOutcome,
    NotRetryableError,
    RetriesExhaustedError,
)
from recipe_crawler.crawler.resilient_fetch import AdaptationDecision, ResilientFetcher

__version__ = "0.1.0"

__all__ = [
    "AdaptationDecision",
    "DomainBlacklistedError",
    "FetchFailedError",
    "FetchOutcome",
    "NotRetryableError",
    "ResilientFetcher",
    "RetriesExhaustedError",
]
