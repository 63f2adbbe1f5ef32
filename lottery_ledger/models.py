from __future__ import annotations

import json
from decimal import Decimal
from typing import List, Sequence

from sqlalchemy import Column, DateTime, Index, Integer, Numeric, String, Text, UniqueConstraint
from sqlalchemy.orm import declarative_base

from .types import (
    BetType,
    DrawResult,
    LotteryProduct,
    PrizeTier,
    Ticket,
    TicketStatus,
    as_utc,
    utcnow,
)

Base = declarative_base()

Money = Numeric(18, 2, asdecimal=True)


class TicketRecord(Base):
    __tablename__ = "tickets"

    id = Column(String(64), primary_key=True)
    user_id = Column(String(64), nullable=False)
    product = Column(String(32), nullable=False)
    bet_type = Column(String(16), nullable=False)
    numbers = Column(Text, nullable=False)
    multiple = Column(Integer, nullable=False, default=1)
    stake = Column(Money, nullable=False)
    issue = Column(String(32), nullable=False)
    status = Column(String(16), nullable=False, default=TicketStatus.PENDING.value)
    payout = Column(Money, nullable=True)
    prize_tier = Column(String(32), nullable=True)
    version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_tickets_user_created", "user_id", "created_at"),
        Index("ix_tickets_product_issue", "product", "issue", "status"),
    )

    def set_numbers(self, groups: Sequence[Sequence[int]]) -> None:
        self.numbers = json.dumps([list(group) for group in groups])

    def get_numbers(self) -> List[List[int]]:
        return json.loads(self.numbers)

    @classmethod
    def from_domain(cls, ticket: Ticket) -> "TicketRecord":
        record = cls(
            id=ticket.ticket_id,
            user_id=ticket.user_id,
            product=ticket.product.value,
            bet_type=ticket.bet_type.value,
            multiple=ticket.multiple,
            stake=ticket.stake,
            issue=ticket.issue,
            status=ticket.status.value,
            payout=ticket.payout,
            prize_tier=ticket.prize_tier,
            version=ticket.version,
            created_at=ticket.created_at,
            updated_at=ticket.updated_at or ticket.created_at,
        )
        record.set_numbers(ticket.numbers)
        return record

    def to_domain(self) -> Ticket:
        return Ticket(
            ticket_id=self.id,
            user_id=self.user_id,
            product=LotteryProduct(self.product),
            bet_type=BetType(self.bet_type),
            numbers=tuple(tuple(group) for group in self.get_numbers()),
            multiple=int(self.multiple),
            stake=Decimal(self.stake),
            issue=self.issue,
            created_at=as_utc(self.created_at),
            status=TicketStatus(self.status),
            payout=Decimal(self.payout) if self.payout is not None else None,
            prize_tier=self.prize_tier,
            version=int(self.version),
            updated_at=as_utc(self.updated_at),
        )


class DrawResultRecord(Base):
    __tablename__ = "draw_results"

    id = Column(String(64), primary_key=True)
    product = Column(String(32), nullable=False)
    issue = Column(String(32), nullable=False)
    drawn_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    winning_numbers = Column(Text, nullable=False)
    jackpot = Column(Money, nullable=False, default=Decimal("0"))
    prize_tiers = Column(Text, nullable=False, default="[]")
    settled_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (UniqueConstraint("product", "issue", name="uq_draw_results_product_issue"),)

    def set_numbers(self, numbers: Sequence[int]) -> None:
        self.winning_numbers = json.dumps(list(numbers))

    def get_numbers(self) -> List[int]:
        return json.loads(self.winning_numbers)

    def set_tiers(self, tiers: Sequence[PrizeTier]) -> None:
        self.prize_tiers = json.dumps([tier.to_dict() for tier in tiers])

    def get_tiers(self) -> List[PrizeTier]:
        return [
            PrizeTier(
                label=item["label"],
                winner_count=int(item["winner_count"]),
                per_winner_amount=Decimal(item["per_winner_amount"]),
            )
            for item in json.loads(self.prize_tiers or "[]")
        ]

    @classmethod
    def from_domain(cls, result: DrawResult) -> "DrawResultRecord":
        record = cls(
            id=result.result_id,
            product=result.product.value,
            issue=result.issue,
            drawn_at=result.drawn_at,
            jackpot=result.jackpot,
            settled_at=result.settled_at,
        )
        record.set_numbers(result.winning_numbers)
        record.set_tiers(result.prize_tiers)
        return record

    def to_domain(self) -> DrawResult:
        return DrawResult(
            result_id=self.id,
            product=LotteryProduct(self.product),
            issue=self.issue,
            drawn_at=as_utc(self.drawn_at),
            winning_numbers=tuple(self.get_numbers()),
            jackpot=Decimal(self.jackpot),
            prize_tiers=tuple(self.get_tiers()),
            settled_at=as_utc(self.settled_at),
        )


class SettlementLease(Base):
    __tablename__ = "settlement_leases"

    key = Column(String(128), primary_key=True)
    owner = Column(String(64), nullable=False)
    acquired_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
