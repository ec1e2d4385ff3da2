"""
recipe_crawler scheduler module.
Provides per-domain dispatch pacing.
"""

from recipe_crawler.scheduler.domain_pacer import DomainPacer, PacingTimeoutError

__all__ = [
    "DomainPacer",
    "PacingTimeoutError",
]
