"""
Runtime settings for the valuation engine.
Everything is read from environment variables with sane defaults.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

import structlog

DEFAULT_DB_PATH = Path(__file__).resolve().parent.parent / "collection.db"


def _env(name: str, default: str) -> str:
    return (os.environ.get(name) or default).strip()


@dataclass(frozen=True)
class Settings:
    db_path: Path = DEFAULT_DB_PATH
    db_busy_timeout_seconds: float = 5.0

    # Quote persistence / smoothing
    quote_min_persist_interval_seconds: int = 3600
    quote_trim_fraction: float = 0.15
    quote_low_confidence_samples: int = 6
    quote_currency: str = "USD"

    # Market data provider
    market_requests_per_second: float = 0.5
    market_burst: int = 1
    ebay_client_id: str = ""
    ebay_client_secret: str = ""
    ebay_timeout_seconds: float = 15.0
    ebay_sample_limit: int = 50

    # Collection alerts
    price_alert_threshold: float = 0.10
    price_alert_limit: int = 10

    log_level: str = "INFO"
    log_format: str = "console"

    @classmethod
    def from_env(cls) -> Settings:
        return cls(
            db_path=Path(_env("COLLECTION_DB_PATH", str(DEFAULT_DB_PATH))),
            db_busy_timeout_seconds=float(_env("COLLECTION_DB_BUSY_TIMEOUT_SECONDS", "5")),
            quote_min_persist_interval_seconds=int(_env("QUOTE_MIN_PERSIST_INTERVAL_SECONDS", "3600")),
            quote_trim_fraction=float(_env("QUOTE_TRIM_FRACTION", "0.15")),
            quote_low_confidence_samples=int(_env("QUOTE_LOW_CONFIDENCE_SAMPLES", "6")),
            quote_currency=_env("QUOTE_CURRENCY", "USD").upper(),
            market_requests_per_second=float(_env("MARKET_REQUESTS_PER_SECOND", "0.5")),
            market_burst=int(_env("MARKET_BURST", "1")),
            ebay_client_id=_env("EBAY_CLIENT_ID", ""),
            ebay_client_secret=_env("EBAY_CLIENT_SECRET", ""),
            ebay_timeout_seconds=float(_env("EBAY_TIMEOUT_SECONDS", "15")),
            ebay_sample_limit=int(_env("EBAY_SAMPLE_LIMIT", "50")),
            price_alert_threshold=float(_env("PRICE_ALERT_THRESHOLD", "0.10")),
            price_alert_limit=int(_env("PRICE_ALERT_LIMIT", "10")),
            log_level=_env("LOG_LEVEL", "INFO").upper(),
            log_format=_env("LOG_FORMAT", "console").lower(),
        )

    @property
    def log_level_num(self) -> int:
        return getattr(logging, self.log_level, logging.INFO)


def get_settings() -> Settings:
    """Return settings built from the current environment."""
    return Settings.from_env()


def configure_logging(settings: Settings | None = None) -> None:
    """Configure structlog. Call once at application entry."""
    settings = settings or get_settings()
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]
    if settings.log_format == "json":
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(settings.log_level_num),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
