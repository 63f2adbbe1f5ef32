from __future__ import annotations

import logging
import sys
from typing import Optional

from .config import AppSettings, load_settings
from .db import make_engine, make_session_factory
from .models import Base
from .prize_tables import load_prize_tables
from .services.analytics import AnalyticsSink, MemoryAnalyticsSink, MongoAnalyticsSink
from .services.cache import MemoryTicketCache
from .services.draws import DrawResultStore
from .services.gateway import StorageGateway
from .services.lottery import LotteryService
from .services.settlement import SettlementEngine
from .services.stores import SqlAuthoritativeStore
from .services.tickets import TicketLedger


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        stream=sys.stdout,
    )
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("pymongo").setLevel(logging.WARNING)


def build_analytics(settings: AppSettings) -> AnalyticsSink:
    analytics = settings.analytics
    if analytics.mongodb_uri:
        return MongoAnalyticsSink.from_uri(analytics.mongodb_uri, analytics.mongodb_db, analytics.timeout_ms)
    return MemoryAnalyticsSink()


def create_service(
    settings: Optional[AppSettings] = None,
    analytics: Optional[AnalyticsSink] = None,
) -> LotteryService:
    settings = settings or load_settings()
    configure_logging(settings.log_level)

    engine = make_engine(settings.database)
    Base.metadata.create_all(engine)
    store = SqlAuthoritativeStore(make_session_factory(engine))

    gateway = StorageGateway(
        store,
        MemoryTicketCache(settings.cache.ttl_seconds, settings.cache.max_entries),
        analytics if analytics is not None else build_analytics(settings),
        retry_attempts=settings.database.retry_attempts,
        retry_backoff_seconds=settings.database.retry_backoff_seconds,
        analytics_workers=settings.analytics.workers,
    )
    ledger = TicketLedger(gateway)
    draws = DrawResultStore(gateway)
    settlement = SettlementEngine(
        gateway,
        ledger,
        draws,
        load_prize_tables(settings.prize_tables_path),
        lease_seconds=settings.settlement_lease_seconds,
    )
    logging.getLogger("lottery_ledger").info(
        "Lottery service ready (database=%s)", engine.url.render_as_string(hide_password=True)
    )
    return LotteryService(gateway, ledger, draws, settlement)
