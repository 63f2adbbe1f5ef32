from __future__ import annotations

import abc
import logging
import secrets
from collections import Counter
from decimal import ROUND_DOWN, Decimal
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from .. import bet_formats
from ..bet_formats import ProductRule
from ..errors import SettlementAlreadyRunning, StorageError
from ..schemas import PrizeTables, ProductPrizeTable
from ..types import LotteryProduct, PrizeTier, SettlementSummary, Ticket, TicketStatus
from .draws import DrawResultStore
from .gateway import StorageGateway
from .tickets import TicketLedger

logger = logging.getLogger("lottery_ledger.settlement")

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


class PayoutStrategy(abc.ABC):
    """Turns tier winner counts into a per-winner amount for every tier."""

    @abc.abstractmethod
    def tier_amounts(
        self,
        table: ProductPrizeTable,
        jackpot: Decimal,
        winner_units: Mapping[str, int],
    ) -> Dict[str, Decimal]:
        ...


class FixedPayout(PayoutStrategy):
    def tier_amounts(self, table, jackpot, winner_units):
        return {tier.label: tier.amount.quantize(CENT) for tier in table.tiers}


class PariMutuelPayout(PayoutStrategy):
    """Pool tiers share ``jackpot * pool_share`` among their winners; the rest pay fixed amounts."""

    def tier_amounts(self, table, jackpot, winner_units):
        amounts: Dict[str, Decimal] = {}
        for tier in table.tiers:
            if tier.pool_share is None:
                amounts[tier.label] = tier.amount.quantize(CENT)
                continue
            units = winner_units.get(tier.label, 0)
            if units <= 0:
                amounts[tier.label] = ZERO
                continue
            share = (jackpot * tier.pool_share / units).quantize(CENT, rounding=ROUND_DOWN)
            if tier.amount > 0:
                share = min(share, tier.amount)
            amounts[tier.label] = share
        return amounts


PAYOUT_STRATEGIES: Dict[str, PayoutStrategy] = {
    "fixed": FixedPayout(),
    "pari_mutuel": PariMutuelPayout(),
}


def lease_key(product: LotteryProduct, issue: str) -> str:
    return f"settle:{LotteryProduct(product).value}:{issue}"


def evaluate_ticket(
    rule: ProductRule,
    table: ProductPrizeTable,
    ticket: Ticket,
    draw_parts: Tuple[Tuple[int, ...], ...],
) -> Counter:
    """Count, per tier label, the single bets of ``ticket`` that hit that tier."""

    hits: Counter = Counter()
    for single_bet in bet_formats.expand(rule, ticket.numbers):
        signature = bet_formats.match_signature(rule, ticket.bet_type, single_bet, draw_parts)
        tier = table.tier_for(ticket.bet_type, signature)
        if tier is not None:
            hits[tier.label] += 1
    return hits


class SettlementEngine:
    def __init__(
        self,
        gateway: StorageGateway,
        ledger: TicketLedger,
        draws: DrawResultStore,
        prize_tables: PrizeTables,
        lease_seconds: float = 900,
        strategies: Optional[Mapping[str, PayoutStrategy]] = None,
        owner_factory: Callable[[], str] = lambda: secrets.token_hex(8),
    ) -> None:
        self._gateway = gateway
        self._ledger = ledger
        self._draws = draws
        self._tables = prize_tables
        self._lease_seconds = lease_seconds
        self._strategies = dict(strategies or PAYOUT_STRATEGIES)
        self._owner_factory = owner_factory

    def settle_issue(self, product: LotteryProduct, issue: str) -> SettlementSummary:
        """Settle every pending ticket of one issue under the issue's settlement lease.

        Raises ``NotFound`` when no result is recorded and
        ``SettlementAlreadyRunning`` when another run holds the lease.
        """

        rule = bet_formats.get_rule(product)
        result = self._draws.get(rule.product, issue)

        key = lease_key(rule.product, issue)
        owner = self._owner_factory()
        if not self._gateway.acquire_lease(key, owner, self._lease_seconds):
            raise SettlementAlreadyRunning(
                f"Settlement of {rule.product.value} issue {issue} is already running",
                details={"product": rule.product.value, "issue": issue},
            )
        try:
            summary = self._run(rule, result)
        finally:
            try:
                self._gateway.release_lease(key, owner)
            except StorageError as exc:
                logger.warning("Could not release lease %s; it will expire: %s", key, exc)

        self._gateway.record_settlement(summary)
        logger.info(
            "Settled %s issue %s: settled=%s won=%s lost=%s skipped=%s payout=%s",
            summary.product.value,
            summary.issue,
            summary.settled,
            summary.won,
            summary.lost,
            summary.skipped,
            summary.total_payout,
        )
        return summary

    def _run(self, rule: ProductRule, result) -> SettlementSummary:
        table = self._tables.for_product(rule.product)
        strategy = self._strategies[table.payout]
        draw_parts = bet_formats.split_draw(rule, result.winning_numbers)

        # Pool sizes depend on every winner of the issue, including tickets an
        # interrupted earlier run already settled.
        tickets = self._gateway.find_tickets_by_issue(rule.product, result.issue)
        evaluated: List[Tuple[Ticket, Counter]] = []
        winner_units: Dict[str, int] = {tier.label: 0 for tier in table.tiers}
        for ticket in tickets:
            hits = evaluate_ticket(rule, table, ticket, draw_parts)
            for label, count in hits.items():
                winner_units[label] += count * ticket.multiple
            evaluated.append((ticket, hits))

        amounts = strategy.tier_amounts(table, result.jackpot, winner_units)

        settled = won = lost = skipped = 0
        total = ZERO
        for ticket, hits in evaluated:
            if ticket.status is not TicketStatus.PENDING:
                skipped += 1
                continue
            payout = sum(
                (amounts[label] * count * ticket.multiple for label, count in hits.items()),
                ZERO,
            ).quantize(CENT)
            best = min(hits, key=table.rank) if hits else None
            updated = self._ledger.settle(ticket, payout, best)
            if updated is None:
                skipped += 1
                continue
            settled += 1
            if updated.status is TicketStatus.WON:
                won += 1
                total += updated.payout
            else:
                lost += 1

        prize_tiers = [
            PrizeTier(label=tier.label, winner_count=winner_units[tier.label], per_winner_amount=amounts[tier.label])
            for tier in table.tiers
        ]
        self._draws.update_prize_tiers(rule.product, result.issue, prize_tiers)
        return SettlementSummary(
            product=rule.product,
            issue=result.issue,
            settled=settled,
            won=won,
            lost=lost,
            skipped=skipped,
            total_payout=total.quantize(CENT),
            prize_tiers=tuple(prize_tiers),
        )
