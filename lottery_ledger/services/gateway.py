from __future__ import annotations

import datetime as dt
import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from decimal import Decimal
from threading import Lock
from typing import Callable, Dict, Iterable, List, Optional, Set, TypeVar

from ..errors import StorageError, StoreUnavailable
from ..types import DrawResult, LotteryProduct, PrizeTier, SettlementSummary, Ticket, TicketStatus
from .analytics import AnalyticsSink
from .cache import TicketCache
from .stores import AuthoritativeStore

logger = logging.getLogger("lottery_ledger.gateway")

T = TypeVar("T")


class StorageGateway:
    """Single entry point to persistence.

    Every write goes to the authoritative store first. Only after it succeeds is
    the cache refreshed and the analytics sink notified, and failures of those
    two never fail the operation.
    """

    def __init__(
        self,
        store: AuthoritativeStore,
        cache: Optional[TicketCache] = None,
        analytics: Optional[AnalyticsSink] = None,
        *,
        retry_attempts: int = 3,
        retry_backoff_seconds: float = 0.05,
        analytics_workers: int = 2,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._store = store
        self._cache = cache
        self._analytics = analytics
        self._retry_attempts = max(int(retry_attempts), 1)
        self._retry_backoff = retry_backoff_seconds
        self._sleep = sleep
        self._executor = (
            ThreadPoolExecutor(max_workers=max(analytics_workers, 1), thread_name_prefix="analytics")
            if analytics is not None
            else None
        )
        self._pending: Set[Future] = set()
        self._pending_lock = Lock()
        self._unreconciled: Set[str] = set()
        self._unreconciled_lock = Lock()

    @property
    def store(self) -> AuthoritativeStore:
        return self._store

    # authoritative access -------------------------------------------------

    def _call(self, label: str, fn: Callable[..., T], *args, **kwargs) -> T:
        last_exc: Optional[StoreUnavailable] = None
        for attempt in range(1, self._retry_attempts + 1):
            try:
                return fn(*args, **kwargs)
            except StoreUnavailable as exc:
                last_exc = exc
                if attempt < self._retry_attempts:
                    delay = self._retry_backoff * (2 ** (attempt - 1))
                    logger.warning("%s failed (attempt %s/%s): %s", label, attempt, self._retry_attempts, exc)
                    self._sleep(delay)
        logger.error("%s failed after %s attempts: %s", label, self._retry_attempts, last_exc)
        raise StorageError(
            f"{label} failed after {self._retry_attempts} attempts",
            details={"cause": str(last_exc)},
            retryable=True,
        ) from last_exc

    def save_ticket(self, ticket: Ticket) -> Ticket:
        saved = self._call("save_ticket", self._store.insert_ticket, ticket)
        self._cache_put(saved)
        self._propagate("record_ticket", saved)
        return saved

    def get_ticket(self, ticket_id: str) -> Optional[Ticket]:
        cached = self._cache_get(ticket_id)
        if cached is not None:
            return cached
        ticket = self._call("get_ticket", self._store.get_ticket, ticket_id)
        if ticket is not None:
            self._cache_put(ticket)
        return ticket

    def find_tickets_by_user(self, user_id: str) -> List[Ticket]:
        return self._call("find_tickets_by_user", self._store.tickets_by_user, user_id)

    def find_tickets_by_issue(
        self,
        product: LotteryProduct,
        issue: str,
        statuses: Optional[Iterable[TicketStatus]] = None,
    ) -> List[Ticket]:
        return self._call("find_tickets_by_issue", self._store.tickets_by_issue, product, issue, statuses)

    def update_ticket_status(
        self,
        expected: Ticket,
        status: TicketStatus,
        payout: Optional[Decimal],
        prize_tier: Optional[str],
        at: dt.datetime,
    ) -> Optional[Ticket]:
        updated = self._call(
            "update_ticket_status",
            self._store.compare_and_set_status,
            expected,
            status,
            payout,
            prize_tier,
            at,
        )
        if updated is None:
            self._cache_invalidate(expected.ticket_id)
        else:
            self._cache_put(updated)
        return updated

    def save_draw_result(self, result: DrawResult) -> DrawResult:
        saved = self._call("save_draw_result", self._store.insert_draw_result, result)
        self._propagate("record_draw_result", saved)
        return saved

    def find_draw_result(self, product: LotteryProduct, issue: str) -> Optional[DrawResult]:
        return self._call("find_draw_result", self._store.get_draw_result, product, issue)

    def update_prize_tiers(
        self,
        product: LotteryProduct,
        issue: str,
        tiers: Iterable[PrizeTier],
        settled_at: dt.datetime,
    ) -> Optional[DrawResult]:
        return self._call(
            "update_prize_tiers", self._store.update_prize_tiers, product, issue, list(tiers), settled_at
        )

    def acquire_lease(self, key: str, owner: str, ttl_seconds: float) -> bool:
        return self._call("acquire_lease", self._store.acquire_lease, key, owner, ttl_seconds)

    def release_lease(self, key: str, owner: str) -> bool:
        return self._call("release_lease", self._store.release_lease, key, owner)

    # cache ----------------------------------------------------------------

    def _cache_get(self, ticket_id: str) -> Optional[Ticket]:
        if self._cache is None:
            return None
        with self._unreconciled_lock:
            if ticket_id in self._unreconciled:
                return None
        try:
            return self._cache.get(ticket_id)
        except Exception as exc:
            logger.warning("Cache read failed for %s: %s", ticket_id, exc)
            return None

    def _cache_put(self, ticket: Ticket) -> None:
        if self._cache is None:
            return
        try:
            self._cache.set(ticket)
        except Exception as exc:
            logger.warning("Cache write failed for %s: %s", ticket.ticket_id, exc)
            self._cache_invalidate(ticket.ticket_id)
            return
        with self._unreconciled_lock:
            self._unreconciled.discard(ticket.ticket_id)

    def _cache_invalidate(self, ticket_id: str) -> None:
        if self._cache is None:
            return
        try:
            self._cache.delete(ticket_id)
        except Exception as exc:
            logger.warning("Cache invalidation failed for %s; marked for reconciliation: %s", ticket_id, exc)
            with self._unreconciled_lock:
                self._unreconciled.add(ticket_id)

    @property
    def unreconciled(self) -> Set[str]:
        with self._unreconciled_lock:
            return set(self._unreconciled)

    def reconcile_cache(self) -> int:
        """Refresh cache entries whose invalidation failed earlier. Returns how many were fixed."""
        with self._unreconciled_lock:
            pending = list(self._unreconciled)
        fixed = 0
        for ticket_id in pending:
            ticket = self._call("reconcile_cache", self._store.get_ticket, ticket_id)
            try:
                if ticket is None:
                    self._cache.delete(ticket_id)
                else:
                    self._cache.set(ticket)
            except Exception as exc:
                logger.warning("Reconciliation of %s failed: %s", ticket_id, exc)
                continue
            with self._unreconciled_lock:
                self._unreconciled.discard(ticket_id)
            fixed += 1
        return fixed

    # analytics ------------------------------------------------------------

    def _propagate(self, method: str, payload) -> None:
        if self._analytics is None or self._executor is None:
            return
        future = self._executor.submit(getattr(self._analytics, method), payload)
        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(self._analytics_done)

    def _analytics_done(self, future: Future) -> None:
        with self._pending_lock:
            self._pending.discard(future)
        exc = future.exception()
        if exc is not None:
            logger.warning("Analytics write failed: %s", exc)

    def record_settlement(self, summary: SettlementSummary) -> None:
        self._propagate("record_settlement", summary)

    def user_ticket_counts(self, user_id: str) -> Dict[str, int]:
        if self._analytics is None:
            return {}
        return self._analytics.user_ticket_counts(user_id)

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait for queued analytics writes. Returns ``False`` if some are still running."""
        with self._pending_lock:
            pending = list(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def close(self) -> None:
        self.flush()
        if self._executor is not None:
            self._executor.shutdown(wait=True)
        if self._analytics is not None:
            self._analytics.close()
