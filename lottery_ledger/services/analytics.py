"""Analytics sinks. Writes here are best-effort and never block the ledger."""

from __future__ import annotations

import abc
import logging
from collections import defaultdict
from decimal import Decimal
from threading import Lock
from typing import Any, Dict, List, Optional

from bson.decimal128 import Decimal128
from pymongo import MongoClient
from pymongo.database import Database
from pymongo.errors import PyMongoError

from ..errors import StoreUnavailable
from ..types import DrawResult, SettlementSummary, Ticket

logger = logging.getLogger("lottery_ledger.analytics")


class AnalyticsSink(abc.ABC):
    @abc.abstractmethod
    def record_ticket(self, ticket: Ticket) -> None:
        ...

    @abc.abstractmethod
    def record_draw_result(self, result: DrawResult) -> None:
        ...

    @abc.abstractmethod
    def record_settlement(self, summary: SettlementSummary) -> None:
        ...

    @abc.abstractmethod
    def user_ticket_counts(self, user_id: str) -> Dict[str, int]:
        """Tickets placed by ``user_id`` per product value."""

    def close(self) -> None:
        return None


class MemoryAnalyticsSink(AnalyticsSink):
    """Keeps aggregates in memory until ``flush`` hands them over."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._reset()

    def _reset(self) -> None:
        self._ticket_stats: Dict[tuple, Dict[str, Any]] = defaultdict(
            lambda: {"tickets": 0, "stake": Decimal("0")}
        )
        self._draw_results: List[dict] = []
        self._settlements: List[dict] = []

    def record_ticket(self, ticket: Ticket) -> None:
        with self._lock:
            stats = self._ticket_stats[(ticket.user_id, ticket.product.value)]
            stats["tickets"] += 1
            stats["stake"] += ticket.stake

    def record_draw_result(self, result: DrawResult) -> None:
        with self._lock:
            self._draw_results.append(result.to_dict())

    def record_settlement(self, summary: SettlementSummary) -> None:
        with self._lock:
            self._settlements.append(summary.to_dict())

    def user_ticket_counts(self, user_id: str) -> Dict[str, int]:
        with self._lock:
            return {
                product: stats["tickets"]
                for (user, product), stats in self._ticket_stats.items()
                if user == user_id
            }

    def _snapshot(self) -> dict:
        return {
            "ticket_stats": [
                {"user_id": user, "product": product, "tickets": s["tickets"], "stake": str(s["stake"])}
                for (user, product), s in sorted(self._ticket_stats.items())
            ],
            "draw_results": list(self._draw_results),
            "settlements": list(self._settlements),
        }

    def export(self) -> dict:
        with self._lock:
            return self._snapshot()

    def flush(self) -> dict:
        """Return everything recorded so far and start over."""
        with self._lock:
            snapshot = self._snapshot()
            self._reset()
            return snapshot


class MongoAnalyticsSink(AnalyticsSink):
    """Per-user, per-product counters and draw/settlement history in MongoDB."""

    def __init__(self, db: Database, client: Optional[MongoClient] = None) -> None:
        self._db = db
        self._client = client

    @classmethod
    def from_uri(cls, uri: str, db_name: str, timeout_ms: int = 2000) -> "MongoAnalyticsSink":
        client: MongoClient = MongoClient(
            uri,
            serverSelectionTimeoutMS=timeout_ms,
            connectTimeoutMS=timeout_ms,
            socketTimeoutMS=timeout_ms,
        )
        return cls(client[db_name], client=client)

    def record_ticket(self, ticket: Ticket) -> None:
        self._db["ticket_stats"].update_one(
            {"_id": f"{ticket.user_id}:{ticket.product.value}"},
            {
                "$inc": {"tickets": 1, "stake": Decimal128(str(ticket.stake))},
                "$setOnInsert": {"user_id": ticket.user_id, "product": ticket.product.value},
            },
            upsert=True,
        )

    def record_draw_result(self, result: DrawResult) -> None:
        doc = result.to_dict()
        doc["_id"] = f"{result.product.value}:{result.issue}"
        self._db["draw_results"].replace_one({"_id": doc["_id"]}, doc, upsert=True)

    def record_settlement(self, summary: SettlementSummary) -> None:
        doc = summary.to_dict()
        doc["_id"] = f"{summary.product.value}:{summary.issue}"
        self._db["settlements"].replace_one({"_id": doc["_id"]}, doc, upsert=True)

    def user_ticket_counts(self, user_id: str) -> Dict[str, int]:
        try:
            cursor = self._db["ticket_stats"].find({"user_id": user_id}, {"product": 1, "tickets": 1})
            return {str(doc["product"]): int(doc.get("tickets") or 0) for doc in cursor}
        except PyMongoError as exc:
            raise StoreUnavailable(f"analytics read failed: {exc}") from exc

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
