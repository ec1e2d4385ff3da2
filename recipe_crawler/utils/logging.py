"""
Logging setup for the crawler.

Every module logs through structlog. A fetch binds its domain and URL as
context variables so retry, backoff and strategy lines can be grouped per
fetch in the JSON output.
"""

import logging
import sys
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import structlog
from structlog.types import Processor

from recipe_crawler.utils.config import get_project_root, get_settings

# Recipe URLs can carry long tracking query strings
MAX_LOGGED_URL_LENGTH = 200

_URL_KEYS = ("url", "fetch_url", "final_url")


def _add_timestamp(
    logger: logging.Logger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Stamp the event with UTC wall-clock time."""
    event_dict["timestamp"] = datetime.now(UTC).isoformat().replace("+00:00", "Z")
    return event_dict


def _add_log_level(
    logger: logging.Logger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    event_dict["level"] = method_name.upper()
    return event_dict


def _truncate_urls(
    logger: logging.Logger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Cut URL fields to MAX_LOGGED_URL_LENGTH characters."""
    for key in _URL_KEYS:
        value = event_dict.get(key)
        if isinstance(value, str) and len(value) > MAX_LOGGED_URL_LENGTH:
            event_dict[key] = value[:MAX_LOGGED_URL_LENGTH]
    return event_dict


def configure_logging(
    log_level: str | None = None,
    log_file: str | Path | None = None,
    json_format: bool | None = None,
) -> None:
    """Configure structlog and the stdlib root logger for a crawl run.

    Args:
        log_level: DEBUG shows per-attempt pacing and backoff lines; INFO
            shows retries, strategy changes and blacklist flips. Uses
            ``general.log_level`` if None.
        log_file: Extra file destination. When None, a dated
            ``recipe_crawler_YYYYMMDD.log`` under ``general.logs_dir`` is
            written only if ``general.log_to_file`` is enabled.
        json_format: One JSON object per line (True) or coloured console
            output (False). Uses ``general.json_logs`` if None.
    """
    settings = get_settings()

    if log_level is None:
        log_level = settings.general.log_level
    if json_format is None:
        json_format = settings.general.json_logs

    if log_file is None and settings.general.log_to_file:
        log_dir = get_project_root() / settings.general.logs_dir
        log_dir.mkdir(parents=True, exist_ok=True)
        log_file = log_dir / f"recipe_crawler_{datetime.now().strftime('%Y%m%d')}.log"

    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file is not None:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    logging.basicConfig(
        format="%(message)s",
        level=numeric_level,
        handlers=handlers,
    )

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        _add_timestamp,
        _add_log_level,
        _truncate_urls,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if json_format:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(ensure_ascii=False),
        ]
    else:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=True),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Module logger, called as ``get_logger(__name__)``."""
    return structlog.get_logger(name)


def bind_context(**kwargs: Any) -> None:
    """Attach crawl context (domain, attempt, strategy) to later log lines.

    Context lives in contextvars, so each asyncio task sees its own copy.
    """
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    structlog.contextvars.unbind_contextvars(*keys)


class LogContext:
    """Crawl context bound for the duration of a block.

    ResilientFetcher wraps each fetch in ``LogContext.for_fetch`` so every
    line logged during its attempts carries ``fetch_domain`` and
    ``fetch_url``. The keys are unbound on exit even when the fetch raises.

    Example:
        with LogContext.for_fetch("food52.com", url):
            logger.info("Retrying", attempt=2)
    """

    def __init__(self, **kwargs: Any):
        self.context = kwargs

    @classmethod
    def for_fetch(cls, domain: str, url: str) -> "LogContext":
        return cls(fetch_domain=domain, fetch_url=url[:MAX_LOGGED_URL_LENGTH])

    def __enter__(self) -> "LogContext":
        bind_context(**self.context)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        unbind_context(*self.context.keys())
