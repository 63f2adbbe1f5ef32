from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv


def _int_from_env(key: str, default: int) -> int:
    value = os.getenv(key)
    if value is None or value == "":
        return default
    return int(value)


def _float_from_env(key: str, default: float) -> float:
    value = os.getenv(key)
    if value is None or value == "":
        return default
    return float(value)


def _bool_from_env(key: str, default: bool = False) -> bool:
    value = os.getenv(key)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class DatabaseSettings:
    url: str = "sqlite:///lottery_ledger.db"
    timeout_seconds: float = 5.0
    echo: bool = False
    retry_attempts: int = 3
    retry_backoff_seconds: float = 0.05


@dataclass(frozen=True)
class CacheSettings:
    ttl_seconds: float = 300.0
    max_entries: int = 10_000


@dataclass(frozen=True)
class AnalyticsSettings:
    mongodb_uri: Optional[str] = None
    mongodb_db: str = "lottery_analytics"
    timeout_ms: int = 2000
    workers: int = 2


@dataclass(frozen=True)
class AppSettings:
    database: DatabaseSettings = DatabaseSettings()
    cache: CacheSettings = CacheSettings()
    analytics: AnalyticsSettings = AnalyticsSettings()
    settlement_lease_seconds: int = 900
    prize_tables_path: Optional[str] = None
    log_level: str = "INFO"


@lru_cache(maxsize=1)
def load_settings(dotenv_path: Optional[str] = None) -> AppSettings:
    if dotenv_path:
        load_dotenv(dotenv_path)
    else:
        load_dotenv()

    database = DatabaseSettings(
        url=os.getenv("DATABASE_URL", "sqlite:///lottery_ledger.db"),
        timeout_seconds=_float_from_env("DB_TIMEOUT_SECONDS", 5.0),
        echo=_bool_from_env("DB_ECHO", False),
        retry_attempts=_int_from_env("STORE_RETRY_ATTEMPTS", 3),
        retry_backoff_seconds=_float_from_env("STORE_RETRY_BACKOFF_SECONDS", 0.05),
    )
    cache = CacheSettings(
        ttl_seconds=_float_from_env("CACHE_TTL_SECONDS", 300.0),
        max_entries=_int_from_env("CACHE_MAX_ENTRIES", 10_000),
    )
    analytics = AnalyticsSettings(
        mongodb_uri=os.getenv("MONGODB_URI") or None,
        mongodb_db=os.getenv("MONGODB_DB", "lottery_analytics"),
        timeout_ms=_int_from_env("MONGODB_TIMEOUT_MS", 2000),
        workers=_int_from_env("ANALYTICS_WORKERS", 2),
    )

    return AppSettings(
        database=database,
        cache=cache,
        analytics=analytics,
        settlement_lease_seconds=_int_from_env("SETTLEMENT_LEASE_SECONDS", 900),
        prize_tables_path=os.getenv("PRIZE_TABLES_PATH") or None,
        log_level=os.getenv("LOG_LEVEL", "INFO"),
    )
