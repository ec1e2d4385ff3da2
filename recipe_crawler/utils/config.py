"""
Configuration management for recipe_crawler.
Loads and validates settings from YAML files and environment variables.
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, model_validator

ENV_PREFIX = "RECIPE_CRAWLER_"


class GeneralConfig(BaseModel):
    """General configuration."""

    project_name: str = "recipe_crawler"
    version: str = "0.1.0"
    log_level: str = "INFO"
    logs_dir: str = "logs"
    log_to_file: bool = False
    json_logs: bool = True


class CrawlerConfig(BaseModel):
    """Fetch executor and pacing configuration."""

    model_config = ConfigDict(extra="forbid")

    max_retries: int = Field(default=3, ge=0, le=20)
    request_timeout_ms: int = Field(default=30000, ge=1)
    # Longest a caller may wait in a domain's admission queue
    admission_timeout_ms: int = Field(default=120000, ge=1)
    # Base wait before strategy multipliers are applied
    base_wait_ms: int = Field(default=1000, ge=1)
    # Cap for the fallback backoff used when no strategy matches
    fallback_max_wait_ms: int = Field(default=60000, ge=1)
    jitter_factor: float = Field(default=0.3, ge=0.0, le=1.0)
    follow_redirects: bool = True


class HealthConfig(BaseModel):
    """Domain health / blacklist thresholds.

    The defaults are heuristics; tune them per deployment.
    """

    model_config = ConfigDict(extra="forbid")

    failure_threshold: int = Field(default=10, ge=1)
    bot_detection_min_events: int = Field(default=5, ge=1)
    bot_detection_ratio: float = Field(default=0.8, ge=0.0, le=1.0)
    analysis_window_hours: float = Field(default=24.0, gt=0)
    retention_days: float = Field(default=7.0, gt=0)
    max_history: int = Field(default=1000, ge=1)
    sweep_interval_seconds: float = Field(default=3600.0, gt=0)


class AdaptationConfig(BaseModel):
    """Strategy scoring configuration."""

    model_config = ConfigDict(extra="forbid")

    success_reward: float = Field(default=0.1, ge=0.0, le=1.0)
    failure_penalty: float = Field(default=0.05, ge=0.0, le=1.0)
    neutral_success_rate: float = Field(default=0.5, ge=0.0, le=1.0)


class SitePolicyConfig(BaseModel):
    """Site policy registry configuration."""

    domains_file: str = "domains.yaml"
    watch_interval_seconds: float = 30.0
    enable_hot_reload: bool = True


class Settings(BaseModel):
    """Main settings container."""

    general: GeneralConfig = Field(default_factory=GeneralConfig)
    crawler: CrawlerConfig = Field(default_factory=CrawlerConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    adaptation: AdaptationConfig = Field(default_factory=AdaptationConfig)
    site_policy: SitePolicyConfig = Field(default_factory=SitePolicyConfig)

    @model_validator(mode="after")
    def validate_timeouts(self) -> "Settings":
        """Admission must be allowed to wait at least one request timeout."""
        if self.crawler.admission_timeout_ms < self.crawler.request_timeout_ms:
            raise ValueError("crawler.admission_timeout_ms must be >= request_timeout_ms")
        return self


def _deep_merge(base: dict, override: dict) -> dict:
    """Deep merge two dictionaries.

    Args:
        base: Base dictionary.
        override: Override dictionary.

    Returns:
        Merged dictionary.
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _load_yaml_file(path: Path) -> dict[str, Any]:
    """Load a YAML mapping, returning {} for a missing or empty file."""
    if not path.exists():
        return {}
    with open(path, encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _load_yaml_config(config_dir: Path) -> dict[str, Any]:
    """Load settings.yaml with local.yaml overrides (settings section).

    Example local.yaml:
        settings:
          health:
            failure_threshold: 15

    Args:
        config_dir: Configuration directory path.

    Returns:
        Merged configuration dictionary.
    """
    config = _load_yaml_file(config_dir / "settings.yaml")
    local_overrides = _load_yaml_file(config_dir / "local.yaml")
    if "settings" in local_overrides:
        config = _deep_merge(config, local_overrides["settings"])
    return config


def _apply_env_overrides(config: dict[str, Any]) -> dict[str, Any]:
    """Apply environment variable overrides.

    Environment variables should be prefixed with RECIPE_CRAWLER_ and use
    double underscores for nested keys.

    Example:
        RECIPE_CRAWLER_GENERAL__LOG_LEVEL=DEBUG

    Args:
        config: Configuration dictionary.

    Returns:
        Configuration with environment overrides.
    """
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX) or key == f"{ENV_PREFIX}CONFIG_DIR":
            continue

        key_path = key[len(ENV_PREFIX) :].lower().split("__")

        current = config
        for part in key_path[:-1]:
            if part not in current:
                current[part] = {}
            current = current[part]

        final_key = key_path[-1]
        try:
            if value.lower() in ("true", "false"):
                current[final_key] = value.lower() == "true"
            elif "." in value:
                current[final_key] = float(value)
            else:
                current[final_key] = int(value)
        except ValueError:
            current[final_key] = value

    return config


def get_config_dir() -> Path:
    """Get the configuration directory (RECIPE_CRAWLER_CONFIG_DIR or ./config)."""
    return Path(os.environ.get(f"{ENV_PREFIX}CONFIG_DIR", "config"))


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get application settings.

    Settings are loaded from:
    1. Default values
    2. YAML configuration files
    3. Environment variables (highest priority)

    Returns:
        Settings instance.
    """
    config = _load_yaml_config(get_config_dir())
    config = _apply_env_overrides(config)
    return Settings(**config)


def get_project_root() -> Path:
    """Get the project root directory."""
    # This file is at recipe_crawler/utils/config.py
    return Path(__file__).parent.parent.parent
