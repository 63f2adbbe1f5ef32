from __future__ import annotations

import datetime as dt
import logging
import secrets
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Iterable, Optional

from .. import bet_formats
from ..errors import NotFound, ValidationError
from ..types import DrawResult, LotteryProduct, PrizeTier, utcnow
from .gateway import StorageGateway

logger = logging.getLogger("lottery_ledger.draws")


def _jackpot(value: Any) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(f"Jackpot {value!r} is not a number", code="invalid_jackpot") from exc
    if not amount.is_finite() or amount < 0:
        raise ValidationError("Jackpot must not be negative", code="invalid_jackpot")
    return amount.quantize(Decimal("0.01"))


class DrawResultStore:
    """Official results, one per (product, issue), immutable once recorded."""

    def __init__(self, gateway: StorageGateway, clock: Callable[[], dt.datetime] = utcnow) -> None:
        self._gateway = gateway
        self._clock = clock

    def record(
        self,
        product: LotteryProduct,
        issue: str,
        winning_numbers: Any,
        jackpot: Any = Decimal("0"),
        drawn_at: Optional[dt.datetime] = None,
    ) -> DrawResult:
        rule = bet_formats.get_rule(product)
        if not issue or not str(issue).strip():
            raise ValidationError("issue is required")
        numbers = bet_formats.validate_draw(rule.product, winning_numbers)
        result = DrawResult(
            result_id=secrets.token_hex(12),
            product=rule.product,
            issue=str(issue).strip(),
            drawn_at=drawn_at or self._clock(),
            winning_numbers=numbers,
            jackpot=_jackpot(jackpot),
        )
        saved = self._gateway.save_draw_result(result)
        logger.info(
            "Draw result recorded: product=%s issue=%s numbers=%s jackpot=%s",
            saved.product.value,
            saved.issue,
            list(saved.winning_numbers),
            saved.jackpot,
        )
        return saved

    def get(self, product: LotteryProduct, issue: str) -> DrawResult:
        product = bet_formats.get_rule(product).product
        result = self._gateway.find_draw_result(product, issue)
        if result is None:
            raise NotFound(
                f"No draw result for {product.value} issue {issue}",
                details={"product": product.value, "issue": issue},
            )
        return result

    def update_prize_tiers(
        self,
        product: LotteryProduct,
        issue: str,
        tiers: Iterable[PrizeTier],
        settled_at: Optional[dt.datetime] = None,
    ) -> DrawResult:
        updated = self._gateway.update_prize_tiers(product, issue, tiers, settled_at or self._clock())
        if updated is None:
            raise NotFound(f"No draw result for {LotteryProduct(product).value} issue {issue}")
        return updated
