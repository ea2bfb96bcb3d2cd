"""Environment-driven settings for the duty engine."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional

from .bulk_operations import DEFAULT_MAX_WORKERS
from .cache import DEFAULT_CACHE_SIZE, DEFAULT_CACHE_TTL_SECONDS

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r, using %s", name, raw, default)
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r, using %s", name, raw, default)
        return default


@dataclass(frozen=True)
class EngineSettings:
    database_dsn: Optional[str] = None
    cache_size: int = DEFAULT_CACHE_SIZE
    cache_ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS
    store_timeout_seconds: float = 5.0
    bulk_max_workers: int = DEFAULT_MAX_WORKERS
    total_country_count: Optional[int] = None
    volume_endpoint: Optional[str] = None
    frontend_origin: Optional[str] = None
    countries_path: Optional[str] = None
    reference_from_store: bool = False

    @classmethod
    def from_env(cls) -> "EngineSettings":
        total = _env_int("DUTY_TOTAL_COUNTRY_COUNT", 0)
        return cls(
            database_dsn=(
                os.getenv("DATABASE_DSN")
                or os.getenv("POSTGRES_DSN")
                or os.getenv("PG_DSN")
            ),
            cache_size=_env_int("DUTY_CACHE_SIZE", DEFAULT_CACHE_SIZE),
            cache_ttl_seconds=_env_int("DUTY_CACHE_TTL_SECONDS", DEFAULT_CACHE_TTL_SECONDS),
            store_timeout_seconds=_env_float("DUTY_STORE_TIMEOUT_SECONDS", 5.0),
            bulk_max_workers=_env_int("DUTY_BULK_MAX_WORKERS", DEFAULT_MAX_WORKERS),
            total_country_count=total or None,
            volume_endpoint=os.getenv("DUTY_VOLUME_ENDPOINT") or None,
            frontend_origin=os.getenv("DUTY_FRONTEND_ORIGIN") or None,
            countries_path=os.getenv("DUTY_COUNTRIES_PATH") or None,
            reference_from_store=os.getenv("DUTY_REFERENCE_FROM_DB", "").strip().lower() in {"1", "true", "yes"},
        )
