"""
Exponential backoff calculation utilities.

Shared by:
- StrategyCatalog wait computation (recipe_crawler/adaptation/strategies.py)
- ResilientFetcher fallback backoff when no strategy matches
"""

from __future__ import annotations

import random
from dataclasses import dataclass


@dataclass(frozen=True)
class BackoffConfig:
    """Configuration for exponential backoff calculation.

    - base_delay: Starting delay in seconds (default: 1.0)
    - max_delay: Maximum delay cap in seconds (default: 60.0)
    - exponential_base: Base for exponential calculation (default: 2.0)
    - jitter_factor: Symmetric random variation, 0.3 means ±30% (default: 0.1)

    Example:
        >>> config = BackoffConfig(base_delay=1.0, max_delay=300.0, jitter_factor=0.3)
    """

    base_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter_factor: float = 0.1

    def __post_init__(self) -> None:
        """Validate configuration."""
        if self.base_delay <= 0:
            raise ValueError("base_delay must be positive")
        if self.max_delay <= 0:
            raise ValueError("max_delay must be positive")
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")
        if self.exponential_base <= 1:
            raise ValueError("exponential_base must be > 1")
        if self.jitter_factor < 0 or self.jitter_factor > 1:
            raise ValueError("jitter_factor must be between 0 and 1")


def apply_jitter(
    delay: float,
    jitter_factor: float,
    rng: random.Random | None = None,
) -> float:
    """Spread a delay symmetrically by ±jitter_factor.

    Args:
        delay: Delay to spread.
        jitter_factor: Fraction of the delay used as the jitter range.
        rng: Random source (module-level random when None).

    Returns:
        Jittered delay, never negative.
    """
    if jitter_factor <= 0 or delay <= 0:
        return max(0.0, delay)
    uniform = rng.uniform if rng is not None else random.uniform
    jitter_range = delay * jitter_factor
    return max(0.0, delay + uniform(-jitter_range, jitter_range))


def calculate_backoff(
    attempt: int,
    config: BackoffConfig | None = None,
    *,
    add_jitter: bool = True,
    rng: random.Random | None = None,
) -> float:
    """Calculate delay with exponential backoff and optional jitter.

    delay = min(base_delay * (exponential_base ^ attempt), max_delay)

    Args:
        attempt: Exponent (0-indexed, 0 = base delay). For domain-driven
            backoff this is the domain's consecutive failure count.
        config: Backoff configuration (default: BackoffConfig()).
        add_jitter: Whether to add random jitter (default: True).
        rng: Random source for the jitter.

    Returns:
        Delay in seconds.

    Example:
        >>> calculate_backoff(0, add_jitter=False)
        1.0
        >>> calculate_backoff(3, add_jitter=False)
        8.0
        >>> calculate_backoff(10, add_jitter=False)  # Capped at max_delay
        60.0

    Note:
        The jitter keeps many callers that failed together from retrying
        against the same domain in lockstep.
    """
    if attempt < 0:
        raise ValueError("attempt must be non-negative")

    if config is None:
        config = BackoffConfig()

    # Large exponents overflow float pow; the cap is reached long before
    try:
        raw = config.base_delay * (config.exponential_base**attempt)
    except OverflowError:
        raw = config.max_delay
    delay = min(raw, config.max_delay)

    if add_jitter:
        delay = apply_jitter(delay, config.jitter_factor, rng)

    return max(0.0, delay)


def calculate_total_delay(
    max_retries: int,
    config: BackoffConfig | None = None,
) -> float:
    """Calculate total delay for all retry attempts (worst case, no jitter).

    Useful for estimating timeout budgets.

    Example:
        >>> calculate_total_delay(3)  # 1 + 2 + 4 = 7 seconds
        7.0
    """
    if max_retries < 0:
        raise ValueError("max_retries must be non-negative")

    if config is None:
        config = BackoffConfig()

    return sum(
        calculate_backoff(attempt, config, add_jitter=False) for attempt in range(max_retries)
    )
