"""
recipe_crawler crawler module.

Provides failure classification, transports, and fetch results.
The executor lives in recipe_crawler.crawler.resilient_fetch.
"""

from recipe_crawler.crawler.error_classifier import (
    ErrorKind,
    ErrorPattern,
    RawOutcome,
    classify,
    is_retryable,
)
from recipe_crawler.crawler.fetch_result import (
    DomainBlacklistedError,
    FetchFailedError,
    FetchOutcome,
    NotRetryableError,
    RetriesExhaustedError,
)
from recipe_crawler.crawler.transport import HttpxTransport, Transport, TransportResponse

__all__ = [
    "ErrorKind",
    "ErrorPattern",
    "RawOutcome",
    "classify",
    "is_retryable",
    "DomainBlacklistedError",
    "FetchFailedError",
    "FetchOutcome",
    "NotRetryableError",
    "RetriesExhaustedError",
    "HttpxTransport",
    "Transport",
    "TransportResponse",
]
