from __future__ import annotations

import datetime as dt
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

import pydantic

from ..errors import SettlementAlreadyRunning, StorageError, ValidationError
from ..schemas import BetRequest, DrawResultRequest
from ..types import DrawResult, LotteryProduct, SettlementSummary, Ticket
from .draws import DrawResultStore
from .gateway import StorageGateway
from .settlement import SettlementEngine
from .tickets import TicketLedger

logger = logging.getLogger("lottery_ledger.service")


def _invalid_request(exc: pydantic.ValidationError) -> ValidationError:
    errors = [
        {"field": ".".join(str(part) for part in err["loc"]), "message": err["msg"]}
        for err in exc.errors()
    ]
    return ValidationError("Invalid request", details=errors, code="invalid_request")


class LotteryService:
    """Entry points used by the presentation layer. Only sequences the components."""

    def __init__(
        self,
        gateway: StorageGateway,
        ledger: TicketLedger,
        draws: DrawResultStore,
        engine: SettlementEngine,
    ) -> None:
        self.gateway = gateway
        self.ledger = ledger
        self.draws = draws
        self.engine = engine

    def place_bet(
        self,
        user_id: str,
        product: Any,
        bet_type: Any,
        numbers: Sequence[Sequence[int]],
        multiple: Any,
        stake: Any,
        issue: str,
    ) -> Ticket:
        try:
            request = BetRequest(
                user_id=user_id,
                product=product,
                bet_type=bet_type,
                numbers=numbers,
                multiple=multiple,
                stake=stake,
                issue=issue,
            )
        except pydantic.ValidationError as exc:
            raise _invalid_request(exc) from exc
        return self.ledger.create(
            request.user_id,
            request.product,
            request.bet_type,
            request.numbers,
            request.multiple,
            request.stake,
            request.issue,
        )

    def get_ticket(self, ticket_id: str) -> Ticket:
        return self.ledger.get(ticket_id)

    def list_tickets_by_user(self, user_id: str) -> List[Ticket]:
        return self.ledger.list_by_user(user_id)

    def record_draw_result(
        self,
        product: Any,
        issue: str,
        winning_numbers: Sequence[int],
        jackpot: Any = Decimal("0"),
        drawn_at: Optional[dt.datetime] = None,
        settle: bool = False,
    ) -> DrawResult:
        try:
            request = DrawResultRequest(
                product=product,
                issue=issue,
                winning_numbers=winning_numbers,
                jackpot=jackpot,
                drawn_at=drawn_at,
            )
        except pydantic.ValidationError as exc:
            raise _invalid_request(exc) from exc
        result = self.draws.record(
            request.product,
            request.issue,
            request.winning_numbers,
            request.jackpot,
            request.drawn_at,
        )
        if not settle:
            return result
        # The result is committed at this point; a failed settlement is left for a later settle_issue call.
        try:
            self.engine.settle_issue(result.product, result.issue)
        except SettlementAlreadyRunning:
            logger.info("Issue %s of %s is being settled elsewhere", result.issue, result.product.value)
            return result
        except StorageError as exc:
            logger.error("Recorded issue %s of %s but settlement failed: %s", result.issue, result.product.value, exc)
            return result
        return self.draws.get(result.product, result.issue)

    def get_draw_result(self, product: Any, issue: str) -> DrawResult:
        return self.draws.get(product, issue)

    def settle_issue(self, product: Any, issue: str) -> SettlementSummary:
        return self.engine.settle_issue(product, issue)

    def claim_ticket(self, ticket_id: str) -> Ticket:
        return self.ledger.claim(ticket_id)

    def user_stats(self, user_id: str) -> Dict[str, int]:
        """Tickets per product for ``user_id``, as seen by the analytics sink (eventually consistent)."""
        counts = self.gateway.user_ticket_counts(user_id)
        return {product.value: int(counts.get(product.value, 0)) for product in LotteryProduct}

    def close(self) -> None:
        self.gateway.close()
