from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field, replace
from decimal import Decimal
from enum import Enum
from typing import Dict, Optional, Sequence, Tuple

NumberGroups = Tuple[Tuple[int, ...], ...]


class LotteryProduct(str, Enum):
    PICK6_BONUS = "pick6_bonus"
    PERMUTATION_5 = "permutation_5"
    PERMUTATION_3 = "permutation_3"
    PICK6_LARGE = "pick6_large"
    PICK9 = "pick9"
    FOOTBALL_POOL = "football_pool"
    BASKETBALL_POOL = "basketball_pool"
    SINGLE_MATCH = "single_match"
    PICK7_BONUS = "pick7_bonus"
    PICK20_OF_80 = "pick20_of_80"
    DIGIT_3 = "digit_3"


class BetType(str, Enum):
    DIRECT = "direct"
    GROUPED = "grouped"
    COMBINATION = "combination"
    SINGLE_MATCH = "single_match"


class TicketStatus(str, Enum):
    PENDING = "pending"
    WON = "won"
    LOST = "lost"
    CLAIMED = "claimed"


ALLOWED_TRANSITIONS: Dict[TicketStatus, Tuple[TicketStatus, ...]] = {
    TicketStatus.PENDING: (TicketStatus.WON, TicketStatus.LOST),
    TicketStatus.WON: (TicketStatus.CLAIMED,),
    TicketStatus.LOST: (),
    TicketStatus.CLAIMED: (),
}


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def as_utc(value: Optional[dt.datetime]) -> Optional[dt.datetime]:
    """Attach UTC to naive timestamps read back from stores that drop tzinfo."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc)


def _iso(value: Optional[dt.datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass(frozen=True)
class Ticket:
    ticket_id: str
    user_id: str
    product: LotteryProduct
    bet_type: BetType
    numbers: NumberGroups
    multiple: int
    stake: Decimal
    issue: str
    created_at: dt.datetime
    status: TicketStatus = TicketStatus.PENDING
    payout: Optional[Decimal] = None
    prize_tier: Optional[str] = None
    version: int = 0
    updated_at: Optional[dt.datetime] = None

    def with_status(
        self,
        status: TicketStatus,
        payout: Optional[Decimal],
        prize_tier: Optional[str],
        at: dt.datetime,
    ) -> "Ticket":
        return replace(
            self,
            status=status,
            payout=payout,
            prize_tier=prize_tier,
            version=self.version + 1,
            updated_at=at,
        )

    def to_dict(self) -> dict:
        return {
            "ticket_id": self.ticket_id,
            "user_id": self.user_id,
            "product": self.product.value,
            "bet_type": self.bet_type.value,
            "numbers": [list(group) for group in self.numbers],
            "multiple": self.multiple,
            "stake": str(self.stake),
            "issue": self.issue,
            "status": self.status.value,
            "payout": str(self.payout) if self.payout is not None else None,
            "prize_tier": self.prize_tier,
            "version": self.version,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


@dataclass(frozen=True)
class PrizeTier:
    label: str
    winner_count: int
    per_winner_amount: Decimal

    def to_dict(self) -> dict:
        return {
            "label": self.label,
            "winner_count": self.winner_count,
            "per_winner_amount": str(self.per_winner_amount),
        }


@dataclass(frozen=True)
class DrawResult:
    result_id: str
    product: LotteryProduct
    issue: str
    drawn_at: dt.datetime
    winning_numbers: Tuple[int, ...]
    jackpot: Decimal
    prize_tiers: Tuple[PrizeTier, ...] = ()
    settled_at: Optional[dt.datetime] = None

    def to_dict(self) -> dict:
        return {
            "result_id": self.result_id,
            "product": self.product.value,
            "issue": self.issue,
            "drawn_at": _iso(self.drawn_at),
            "winning_numbers": list(self.winning_numbers),
            "jackpot": str(self.jackpot),
            "prize_tiers": [tier.to_dict() for tier in self.prize_tiers],
            "settled_at": _iso(self.settled_at),
        }


@dataclass(frozen=True)
class SettlementSummary:
    product: LotteryProduct
    issue: str
    settled: int = 0
    won: int = 0
    lost: int = 0
    skipped: int = 0
    total_payout: Decimal = Decimal("0.00")
    prize_tiers: Sequence[PrizeTier] = field(default_factory=tuple)

    def to_dict(self) -> dict:
        return {
            "product": self.product.value,
            "issue": self.issue,
            "settled": self.settled,
            "won": self.won,
            "lost": self.lost,
            "skipped": self.skipped,
            "total_payout": str(self.total_payout),
            "prize_tiers": [tier.to_dict() for tier in self.prize_tiers],
        }
