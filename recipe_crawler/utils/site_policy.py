"""
Site Policy Registry - per-domain crawl limits.

This module provides:
- Loading of site policies from config/domains.yaml
- Schema validation for policy definitions
- Runtime overrides for tightening limits on problem sites without a redeploy
- Hot-reload support for configuration changes
- Resolved-policy caching with O(1) lookups

Resolution order for a hostname:
1. Runtime overrides (upsert_policy)
2. Site entries in domains.yaml (exact hostname, then hostname without "www.")
3. Default policy
"""

from __future__ import annotations

import random
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from recipe_crawler.utils.logging import get_logger

logger = get_logger(__name__)


DEFAULT_USER_AGENTS: tuple[str, ...] = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.1 Safari/605.1.15",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:121.0) Gecko/20100101 Firefox/121.0",
)


def normalize_domain(domain: str) -> str:
    """Lowercase and strip a hostname (keeps any www. prefix)."""
    return domain.lower().strip().rstrip(".")


# =============================================================================
# Pydantic Schema Models
# =============================================================================


class DefaultPolicySchema(BaseModel):
    """Schema for the default site policy (config/domains.yaml: default_policy)."""

    max_concurrency: int = Field(default=4, ge=1, le=50, description="Max in-flight requests")
    min_delay_ms: int = Field(default=1000, ge=0, description="Minimum dispatch spacing")
    max_delay_ms: int = Field(default=3000, ge=0, description="Maximum dispatch spacing")
    user_agents: list[str] = Field(default_factory=lambda: list(DEFAULT_USER_AGENTS))
    extra_headers: dict[str, str] = Field(default_factory=dict)

    @field_validator("user_agents")
    @classmethod
    def validate_user_agents(cls, v: list[str]) -> list[str]:
        """The default pool must never be empty."""
        agents = [ua.strip() for ua in v if ua and ua.strip()]
        if not agents:
            raise ValueError("default_policy.user_agents must not be empty")
        return agents

    @model_validator(mode="after")
    def validate_delays(self) -> DefaultPolicySchema:
        if self.max_delay_ms < self.min_delay_ms:
            raise ValueError("max_delay_ms must be >= min_delay_ms")
        return self


class SiteEntrySchema(BaseModel):
    """Schema for a per-site entry. Unset fields inherit the default policy."""

    domain: str = Field(..., description="Hostname (exact match)")
    max_concurrency: int | None = Field(default=None, ge=1, le=50)
    min_delay_ms: int | None = Field(default=None, ge=0)
    max_delay_ms: int | None = Field(default=None, ge=0)
    user_agents: list[str] | None = Field(default=None)
    extra_headers: dict[str, str] | None = Field(default=None)
    reason: str | None = Field(default=None, description="Audit: why this site is tuned")

    @field_validator("domain")
    @classmethod
    def validate_domain(cls, v: str) -> str:
        """Validate domain is an exact hostname."""
        v = normalize_domain(v)
        if not v or len(v) < 2:
            raise ValueError("Domain must be at least 2 characters")
        if "*" in v or "/" in v:
            raise ValueError("Site entries only support exact hostnames")
        return v


class SitePolicyConfigSchema(BaseModel):
    """Root schema for domains.yaml."""

    default_policy: DefaultPolicySchema = Field(default_factory=DefaultPolicySchema)
    sites: list[SiteEntrySchema] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_config(self) -> SitePolicyConfigSchema:
        domains = [e.domain for e in self.sites]
        if len(domains) != len(set(domains)):
            logger.warning("Duplicate domains found in site policy config")
        return self


# =============================================================================
# Resolved policy
# =============================================================================


_POLICY_FIELDS = ("max_concurrency", "min_delay_ms", "max_delay_ms", "user_agents", "extra_headers")


@dataclass(frozen=True)
class SitePolicy:
    """Resolved crawl policy for one hostname."""

    domain: str
    max_concurrency: int = 4
    min_delay_ms: int = 1000
    max_delay_ms: int = 3000
    user_agents: tuple[str, ...] = DEFAULT_USER_AGENTS
    extra_headers: dict[str, str] = field(default_factory=dict)
    # "override", "site", or "default"
    source: str = "default"

    @property
    def min_delay_seconds(self) -> float:
        return self.min_delay_ms / 1000.0

    @property
    def max_delay_seconds(self) -> float:
        return max(self.min_delay_ms, self.max_delay_ms) / 1000.0

    def pick_user_agent(
        self,
        rng: random.Random | None = None,
        exclude: str | None = None,
    ) -> str:
        """Pick a user agent from the pool, avoiding ``exclude`` when possible."""
        candidates = [ua for ua in self.user_agents if ua != exclude] or list(self.user_agents)
        choice = rng.choice if rng is not None else random.choice
        return choice(candidates)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "domain": self.domain,
            "max_concurrency": self.max_concurrency,
            "min_delay_ms": self.min_delay_ms,
            "max_delay_ms": self.max_delay_ms,
            "user_agent_count": len(self.user_agents),
            "extra_headers": dict(self.extra_headers),
            "source": self.source,
        }


def _validate_partial(partial: dict[str, Any]) -> dict[str, Any]:
    """Validate a partial policy update, returning normalized values."""
    unknown = set(partial) - set(_POLICY_FIELDS)
    if unknown:
        raise ValueError(f"Unknown site policy fields: {sorted(unknown)}")

    values = dict(partial)
    if "max_concurrency" in values and int(values["max_concurrency"]) < 1:
        raise ValueError("max_concurrency must be >= 1")
    for key in ("min_delay_ms", "max_delay_ms"):
        if key in values and int(values[key]) < 0:
            raise ValueError(f"{key} must be >= 0")
    if "user_agents" in values:
        agents = tuple(ua.strip() for ua in values["user_agents"] if ua and ua.strip())
        if not agents:
            raise ValueError("user_agents must not be empty")
        values["user_agents"] = agents
    if "extra_headers" in values:
        values["extra_headers"] = dict(values["extra_headers"])
    return values


# =============================================================================
# Registry
# =============================================================================


class SitePolicyRegistry:
    """
    Per-domain policy lookup with a default fallback.

    Features:
    - Loads site entries from config/domains.yaml
    - Runtime overrides via upsert_policy()
    - Hot-reload of the YAML file when its mtime changes
    - Thread-safe cached lookups

    Usage:
        registry = SitePolicyRegistry()
        policy = registry.get_policy("www.tasteofhome.com")

        # Tighten a misbehaving site at runtime
        registry.upsert_policy("food52.com", max_concurrency=1, min_delay_ms=8000)
    """

    def __init__(
        self,
        config_path: Path | str | None = None,
        watch_interval: float = 30.0,
        enable_hot_reload: bool = True,
    ):
        """
        Initialize the registry.

        Args:
            config_path: Path to domains.yaml. None uses built-in defaults only.
            watch_interval: Interval (seconds) between file mtime checks.
            enable_hot_reload: Whether to reload automatically on file change.
        """
        self._config_path = Path(config_path) if config_path is not None else None
        self._watch_interval = watch_interval
        self._enable_hot_reload = enable_hot_reload

        self._config: SitePolicyConfigSchema = SitePolicyConfigSchema()
        self._sites: dict[str, SiteEntrySchema] = {}
        self._overrides: dict[str, dict[str, Any]] = {}
        self._last_mtime: float = 0.0
        self._last_check: float = 0.0
        self._policy_cache: dict[str, SitePolicy] = {}
        self._cache_lock = threading.RLock()

        self._reload_callbacks: list[Callable[[SitePolicyConfigSchema], None]] = []

        self._load_config()

    @classmethod
    def from_settings(cls) -> SitePolicyRegistry:
        """Build a registry from the site_policy section of the settings."""
        from recipe_crawler.utils.config import get_config_dir, get_settings

        settings = get_settings().site_policy
        return cls(
            config_path=get_config_dir() / settings.domains_file,
            watch_interval=settings.watch_interval_seconds,
            enable_hot_reload=settings.enable_hot_reload,
        )

    def _load_config(self) -> None:
        """Load configuration from the YAML file."""
        if self._config_path is None:
            return

        if not self._config_path.exists():
            logger.warning(
                "Site policy config not found, using defaults",
                path=str(self._config_path),
            )
            return

        try:
            with open(self._config_path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}

            config = SitePolicyConfigSchema(**data)
            with self._cache_lock:
                self._config = config
                self._sites = {entry.domain: entry for entry in config.sites}
                self._policy_cache.clear()
            self._last_mtime = self._config_path.stat().st_mtime

            logger.info(
                "Site policy config loaded",
                path=str(self._config_path),
                site_count=len(config.sites),
            )

            for callback in self._reload_callbacks:
                try:
                    callback(config)
                except Exception as e:
                    logger.error("Reload callback failed", error=str(e))

        except yaml.YAMLError as e:
            logger.error(
                "Failed to parse site policy YAML",
                error=str(e),
                path=str(self._config_path),
            )
        except (ValidationError, OSError, TypeError) as e:
            logger.error(
                "Failed to load site policy config",
                error=str(e),
                path=str(self._config_path),
            )

    def _check_reload(self) -> None:
        """Reload the config file if it changed since the last check."""
        if not self._enable_hot_reload or self._config_path is None:
            return

        now = time.time()
        if now - self._last_check < self._watch_interval:
            return
        self._last_check = now

        if not self._config_path.exists():
            return

        try:
            current_mtime = self._config_path.stat().st_mtime
            if current_mtime > self._last_mtime:
                logger.info("Site policy config changed, reloading...")
                self._load_config()
        except OSError as e:
            logger.warning("Failed to check config file mtime", error=str(e))

    def reload(self) -> None:
        """Force reload configuration."""
        self._load_config()

    def add_reload_callback(self, callback: Callable[[SitePolicyConfigSchema], None]) -> None:
        """Add callback to be called on config reload."""
        self._reload_callbacks.append(callback)

    @property
    def config(self) -> SitePolicyConfigSchema:
        """Current file configuration (with hot-reload check)."""
        self._check_reload()
        return self._config

    def _resolve(self, domain: str) -> SitePolicy:
        """Build the resolved policy for a normalized hostname."""
        default = self._config.default_policy
        values: dict[str, Any] = {
            "max_concurrency": default.max_concurrency,
            "min_delay_ms": default.min_delay_ms,
            "max_delay_ms": default.max_delay_ms,
            "user_agents": tuple(default.user_agents),
            "extra_headers": dict(default.extra_headers),
        }
        source = "default"

        bare = domain[4:] if domain.startswith("www.") else domain
        entry = self._sites.get(domain) or self._sites.get(bare)
        if entry is not None:
            for key in _POLICY_FIELDS:
                value = getattr(entry, key)
                if value is None:
                    continue
                if key == "user_agents":
                    value = tuple(value) or values["user_agents"]
                elif key == "extra_headers":
                    value = {**values["extra_headers"], **value}
                values[key] = value
            source = "site"

        override = self._overrides.get(domain) or self._overrides.get(bare)
        if override:
            values.update(override)
            source = "override"

        if values["max_delay_ms"] < values["min_delay_ms"]:
            values["max_delay_ms"] = values["min_delay_ms"]

        return SitePolicy(domain=domain, source=source, **values)

    def get_policy(self, domain: str) -> SitePolicy:
        """
        Get the resolved policy for a hostname.

        Args:
            domain: Hostname to look up.

        Returns:
            SitePolicy with resolved values.
        """
        self._check_reload()
        domain = normalize_domain(domain)

        with self._cache_lock:
            cached = self._policy_cache.get(domain)
            if cached is not None:
                return cached
            policy = self._resolve(domain)
            self._policy_cache[domain] = policy
            return policy

    def upsert_policy(self, domain: str, **partial: Any) -> SitePolicy:
        """
        Override policy fields for a hostname at runtime.

        Overrides are process-local and are not written back to YAML.

        Args:
            domain: Hostname to tune.
            **partial: Any of max_concurrency, min_delay_ms, max_delay_ms,
                user_agents, extra_headers.

        Returns:
            The newly resolved policy.
        """
        domain = normalize_domain(domain)
        values = _validate_partial(partial)

        with self._cache_lock:
            merged = {**self._overrides.get(domain, {}), **values}
            self._overrides[domain] = merged
            # www./bare variants resolve through this override too
            self._policy_cache.clear()
            policy = self._resolve(domain)
            self._policy_cache[domain] = policy

        logger.info(
            "Site policy override applied",
            domain=domain,
            max_concurrency=policy.max_concurrency,
            min_delay_ms=policy.min_delay_ms,
            max_delay_ms=policy.max_delay_ms,
            fields=sorted(values),
        )
        return policy

    def remove_override(self, domain: str) -> bool:
        """Drop runtime overrides for a hostname. Returns True if one existed."""
        domain = normalize_domain(domain)
        with self._cache_lock:
            existed = self._overrides.pop(domain, None) is not None
            if existed:
                self._policy_cache.clear()
        return existed

    def get_default_policy(self) -> SitePolicy:
        """Default policy (what unknown hostnames resolve to)."""
        with self._cache_lock:
            return replace(self._resolve("__default__"), domain="default", source="default")

    def list_configured_domains(self) -> list[str]:
        """Hostnames with file entries or runtime overrides."""
        with self._cache_lock:
            return sorted(set(self._sites) | set(self._overrides))

    def clear_cache(self) -> None:
        """Clear resolved-policy cache."""
        with self._cache_lock:
            self._policy_cache.clear()

    def get_cache_stats(self) -> dict[str, int]:
        """Get cache statistics."""
        with self._cache_lock:
            return {
                "cached_domains": len(self._policy_cache),
                "site_count": len(self._sites),
                "override_count": len(self._overrides),
            }
