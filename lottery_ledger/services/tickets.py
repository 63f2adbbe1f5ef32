from __future__ import annotations

import datetime as dt
import logging
import secrets
import time
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, List, Optional

from .. import bet_formats
from ..errors import (
    IdentityCollision,
    InvalidStake,
    InvalidTransition,
    IssueClosed,
    NotFound,
    ValidationError,
)
from ..types import ALLOWED_TRANSITIONS, BetType, LotteryProduct, Ticket, TicketStatus, utcnow
from .gateway import StorageGateway

logger = logging.getLogger("lottery_ledger.tickets")

CENT = Decimal("0.01")


def new_ticket_id() -> str:
    """Millisecond timestamp prefix plus 64 random bits, as 28 hex characters."""
    return f"{int(time.time() * 1000):012x}{secrets.token_hex(8)}"


def normalize_stake(stake: Any) -> Decimal:
    if isinstance(stake, bool):
        raise InvalidStake(details={"stake": repr(stake)})
    try:
        value = Decimal(str(stake))
    except (InvalidOperation, ValueError) as exc:
        raise InvalidStake(f"Stake {stake!r} is not a number", details={"stake": repr(stake)}) from exc
    if not value.is_finite() or value <= 0:
        raise InvalidStake(details={"stake": str(stake)})
    if value != value.quantize(CENT):
        raise InvalidStake("Stake cannot have more than two decimal places", details={"stake": str(stake)})
    return value.quantize(CENT)


class TicketLedger:
    """Creates tickets and moves them through pending -> won|lost -> claimed."""

    def __init__(
        self,
        gateway: StorageGateway,
        id_factory: Callable[[], str] = new_ticket_id,
        clock: Callable[[], dt.datetime] = utcnow,
    ) -> None:
        self._gateway = gateway
        self._id_factory = id_factory
        self._clock = clock

    def create(
        self,
        user_id: str,
        product: LotteryProduct,
        bet_type: BetType,
        numbers: Any,
        multiple: Any,
        stake: Any,
        issue: str,
    ) -> Ticket:
        if not user_id or not str(user_id).strip():
            raise ValidationError("user_id is required")
        issue = str(issue or "").strip()
        if not issue:
            raise ValidationError("issue is required")

        selection = bet_formats.validate(product, bet_type, numbers, multiple)
        amount = normalize_stake(stake)

        if self._gateway.find_draw_result(selection.product, issue) is not None:
            raise IssueClosed(
                f"{selection.product.value} issue {issue} is already drawn",
                details={"product": selection.product.value, "issue": issue},
            )

        created_at = self._clock()
        ticket = Ticket(
            ticket_id=self._id_factory(),
            user_id=str(user_id).strip(),
            product=selection.product,
            bet_type=selection.bet_type,
            numbers=selection.groups,
            multiple=selection.multiple,
            stake=amount,
            issue=issue,
            created_at=created_at,
            updated_at=created_at,
        )
        try:
            saved = self._gateway.save_ticket(ticket)
        except IdentityCollision:
            logger.critical("Ticket identity collision on %s; refusing to overwrite", ticket.ticket_id)
            raise
        logger.info(
            "Ticket %s placed: user=%s product=%s issue=%s bets=%s x%s",
            saved.ticket_id,
            saved.user_id,
            saved.product.value,
            saved.issue,
            selection.bet_count,
            saved.multiple,
        )
        return saved

    def get(self, ticket_id: str) -> Ticket:
        ticket = self._gateway.get_ticket(ticket_id)
        if ticket is None:
            raise NotFound(f"Ticket {ticket_id} not found", details={"ticket_id": ticket_id})
        return ticket

    def list_by_user(self, user_id: str) -> List[Ticket]:
        return self._gateway.find_tickets_by_user(user_id)

    def transition(
        self,
        ticket_id: str,
        new_status: TicketStatus,
        payout: Optional[Decimal] = None,
        prize_tier: Optional[str] = None,
    ) -> Ticket:
        new_status = TicketStatus(new_status)
        if new_status is TicketStatus.LOST:
            payout, prize_tier = Decimal("0.00"), None
        elif new_status is TicketStatus.WON and (payout is None or payout < 0 or prize_tier is None):
            raise InvalidTransition(
                f"Ticket {ticket_id} cannot be won with payout {payout} and tier {prize_tier}",
                details={"to": new_status.value, "payout": str(payout)},
            )
        # One retry covers a concurrent writer that changed the row between read and write.
        for _ in range(2):
            current = self._gateway.get_ticket(ticket_id)
            if current is None:
                raise NotFound(f"Ticket {ticket_id} not found", details={"ticket_id": ticket_id})

            if self._is_repeat(current, new_status, payout, prize_tier):
                return current
            if new_status not in ALLOWED_TRANSITIONS[current.status]:
                raise InvalidTransition(
                    f"Ticket {ticket_id} cannot go from {current.status.value} to {new_status.value}",
                    details={"from": current.status.value, "to": new_status.value},
                )

            if new_status is TicketStatus.CLAIMED:
                payout, prize_tier = current.payout, current.prize_tier
            updated = self._gateway.update_ticket_status(current, new_status, payout, prize_tier, self._clock())
            if updated is not None:
                return updated
            logger.info("Ticket %s changed concurrently; re-reading", ticket_id)

        current = self._gateway.get_ticket(ticket_id)
        raise InvalidTransition(
            f"Ticket {ticket_id} was modified concurrently",
            details={"from": current.status.value if current else None, "to": new_status.value},
        )

    @staticmethod
    def _is_repeat(
        current: Ticket,
        new_status: TicketStatus,
        payout: Optional[Decimal],
        prize_tier: Optional[str],
    ) -> bool:
        if current.status is not new_status or new_status is TicketStatus.CLAIMED:
            return False
        return current.payout == payout and current.prize_tier == prize_tier

    def settle(self, ticket: Ticket, payout: Decimal, prize_tier: Optional[str]) -> Optional[Ticket]:
        """Mark a pending ticket won when it hit a tier, lost otherwise.

        Returns ``None`` if it already left pending.
        """
        if ticket.status is not TicketStatus.PENDING:
            return None
        status = TicketStatus.LOST if prize_tier is None else TicketStatus.WON
        try:
            return self.transition(ticket.ticket_id, status, payout, prize_tier)
        except InvalidTransition:
            # Another settlement run already moved it on.
            return None

    def claim(self, ticket_id: str) -> Ticket:
        ticket = self.transition(ticket_id, TicketStatus.CLAIMED)
        logger.info("Ticket %s claimed (payout=%s)", ticket.ticket_id, ticket.payout)
        return ticket
