from __future__ import annotations

import abc
import datetime as dt
import functools
import logging
from decimal import Decimal
from typing import Callable, Iterable, List, Optional, TypeVar

from sqlalchemy import select, update
from sqlalchemy import exc as sa_exc
from sqlalchemy.orm import sessionmaker

from ..db import session_scope
from ..errors import DuplicateResult, IdentityCollision, StorageError, StoreUnavailable
from ..models import DrawResultRecord, SettlementLease, TicketRecord
from ..types import DrawResult, LotteryProduct, PrizeTier, Ticket, TicketStatus, utcnow

logger = logging.getLogger("lottery_ledger.stores")

F = TypeVar("F", bound=Callable)


class AuthoritativeStore(abc.ABC):
    """Durable source of truth for tickets, draw results and settlement leases."""

    @abc.abstractmethod
    def insert_ticket(self, ticket: Ticket) -> Ticket:
        """Persist a new ticket. Raises ``IdentityCollision`` if the id is taken."""

    @abc.abstractmethod
    def get_ticket(self, ticket_id: str) -> Optional[Ticket]:
        ...

    @abc.abstractmethod
    def tickets_by_user(self, user_id: str) -> List[Ticket]:
        """Tickets of one user, newest first."""

    @abc.abstractmethod
    def tickets_by_issue(
        self,
        product: LotteryProduct,
        issue: str,
        statuses: Optional[Iterable[TicketStatus]] = None,
    ) -> List[Ticket]:
        ...

    @abc.abstractmethod
    def compare_and_set_status(
        self,
        expected: Ticket,
        status: TicketStatus,
        payout: Optional[Decimal],
        prize_tier: Optional[str],
        at: dt.datetime,
    ) -> Optional[Ticket]:
        """Apply a status change only if the stored ticket still matches ``expected``.

        Returns the updated ticket, or ``None`` when the row changed underneath.
        """

    @abc.abstractmethod
    def insert_draw_result(self, result: DrawResult) -> DrawResult:
        """Persist a draw result. Raises ``DuplicateResult`` for a known (product, issue)."""

    @abc.abstractmethod
    def get_draw_result(self, product: LotteryProduct, issue: str) -> Optional[DrawResult]:
        ...

    @abc.abstractmethod
    def update_prize_tiers(
        self,
        product: LotteryProduct,
        issue: str,
        tiers: Iterable[PrizeTier],
        settled_at: dt.datetime,
    ) -> Optional[DrawResult]:
        ...

    @abc.abstractmethod
    def acquire_lease(self, key: str, owner: str, ttl_seconds: float, now: Optional[dt.datetime] = None) -> bool:
        ...

    @abc.abstractmethod
    def release_lease(self, key: str, owner: str) -> bool:
        ...


def _translate_errors(fn: F) -> F:
    """Map SQLAlchemy failures onto the ledger's storage errors."""

    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except (sa_exc.OperationalError, sa_exc.InterfaceError, sa_exc.TimeoutError) as exc:
            raise StoreUnavailable(f"{fn.__name__}: {exc}") from exc
        except sa_exc.SQLAlchemyError as exc:
            raise StorageError(f"{fn.__name__}: {exc}", retryable=False) from exc

    return wrapper  # type: ignore[return-value]


class SqlAuthoritativeStore(AuthoritativeStore):
    """SQLAlchemy implementation; works against SQLite in development and PostgreSQL in production."""

    def __init__(self, sessions: sessionmaker) -> None:
        self._sessions = sessions

    @_translate_errors
    def insert_ticket(self, ticket: Ticket) -> Ticket:
        try:
            with session_scope(self._sessions) as session:
                session.add(TicketRecord.from_domain(ticket))
                session.flush()
        except sa_exc.IntegrityError as exc:
            existing = self.get_ticket(ticket.ticket_id)
            if existing is not None and existing == ticket:
                # A retried insert whose first attempt committed.
                return existing
            raise IdentityCollision(f"ticket id {ticket.ticket_id} already exists") from exc
        return ticket

    @_translate_errors
    def get_ticket(self, ticket_id: str) -> Optional[Ticket]:
        with session_scope(self._sessions) as session:
            record = session.get(TicketRecord, ticket_id)
            return record.to_domain() if record else None

    @_translate_errors
    def tickets_by_user(self, user_id: str) -> List[Ticket]:
        with session_scope(self._sessions) as session:
            stmt = (
                select(TicketRecord)
                .where(TicketRecord.user_id == user_id)
                .order_by(TicketRecord.created_at.desc(), TicketRecord.id.desc())
            )
            return [record.to_domain() for record in session.scalars(stmt)]

    @_translate_errors
    def tickets_by_issue(
        self,
        product: LotteryProduct,
        issue: str,
        statuses: Optional[Iterable[TicketStatus]] = None,
    ) -> List[Ticket]:
        with session_scope(self._sessions) as session:
            stmt = select(TicketRecord).where(
                TicketRecord.product == LotteryProduct(product).value,
                TicketRecord.issue == issue,
            )
            if statuses is not None:
                stmt = stmt.where(TicketRecord.status.in_([TicketStatus(s).value for s in statuses]))
            stmt = stmt.order_by(TicketRecord.created_at.asc(), TicketRecord.id.asc())
            return [record.to_domain() for record in session.scalars(stmt)]

    @_translate_errors
    def compare_and_set_status(
        self,
        expected: Ticket,
        status: TicketStatus,
        payout: Optional[Decimal],
        prize_tier: Optional[str],
        at: dt.datetime,
    ) -> Optional[Ticket]:
        with session_scope(self._sessions) as session:
            result = session.execute(
                update(TicketRecord)
                .where(
                    TicketRecord.id == expected.ticket_id,
                    TicketRecord.status == expected.status.value,
                    TicketRecord.version == expected.version,
                )
                .values(
                    status=status.value,
                    payout=payout,
                    prize_tier=prize_tier,
                    version=expected.version + 1,
                    updated_at=at,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return None
        return expected.with_status(status, payout, prize_tier, at)

    @_translate_errors
    def insert_draw_result(self, result: DrawResult) -> DrawResult:
        try:
            with session_scope(self._sessions) as session:
                session.add(DrawResultRecord.from_domain(result))
                session.flush()
        except sa_exc.IntegrityError as exc:
            existing = self.get_draw_result(result.product, result.issue)
            if existing is not None and existing.result_id == result.result_id:
                return existing
            raise DuplicateResult(
                f"{result.product.value} issue {result.issue} already has a result",
                details={"product": result.product.value, "issue": result.issue},
            ) from exc
        return result

    @_translate_errors
    def get_draw_result(self, product: LotteryProduct, issue: str) -> Optional[DrawResult]:
        with session_scope(self._sessions) as session:
            stmt = select(DrawResultRecord).where(
                DrawResultRecord.product == LotteryProduct(product).value,
                DrawResultRecord.issue == issue,
            )
            record = session.scalars(stmt).first()
            return record.to_domain() if record else None

    @_translate_errors
    def update_prize_tiers(
        self,
        product: LotteryProduct,
        issue: str,
        tiers: Iterable[PrizeTier],
        settled_at: dt.datetime,
    ) -> Optional[DrawResult]:
        with session_scope(self._sessions) as session:
            stmt = select(DrawResultRecord).where(
                DrawResultRecord.product == LotteryProduct(product).value,
                DrawResultRecord.issue == issue,
            )
            record = session.scalars(stmt).first()
            if record is None:
                return None
            record.set_tiers(list(tiers))
            record.settled_at = settled_at
            session.flush()
            return record.to_domain()

    @_translate_errors
    def acquire_lease(self, key: str, owner: str, ttl_seconds: float, now: Optional[dt.datetime] = None) -> bool:
        now = now or utcnow()
        expires_at = now + dt.timedelta(seconds=ttl_seconds)
        try:
            with session_scope(self._sessions) as session:
                session.add(SettlementLease(key=key, owner=owner, acquired_at=now, expires_at=expires_at))
                session.flush()
            return True
        except sa_exc.IntegrityError:
            pass

        # Take over only a lease whose holder stopped renewing it.
        with session_scope(self._sessions) as session:
            result = session.execute(
                update(SettlementLease)
                .where(SettlementLease.key == key, SettlementLease.expires_at <= now)
                .values(owner=owner, acquired_at=now, expires_at=expires_at)
                .execution_options(synchronize_session=False)
            )
            taken = result.rowcount == 1
        if taken:
            logger.warning("Took over expired settlement lease %s", key)
        return taken

    @_translate_errors
    def release_lease(self, key: str, owner: str) -> bool:
        with session_scope(self._sessions) as session:
            lease = session.get(SettlementLease, key)
            if lease is None or lease.owner != owner:
                return False
            session.delete(lease)
            return True
