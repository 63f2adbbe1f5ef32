from __future__ import annotations

import datetime as dt
from decimal import Decimal
from typing import Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, Field, StrictInt, field_validator, model_validator

from .types import BetType, LotteryProduct


class BetRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=64)
    product: LotteryProduct
    bet_type: BetType = BetType.DIRECT
    numbers: List[List[StrictInt]] = Field(..., description="Number groups, one per product field.")
    multiple: StrictInt = 1
    stake: Decimal
    issue: str = Field(..., min_length=1, max_length=32)

    @field_validator("user_id", "issue")
    @classmethod
    def strip_identifiers(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value


class DrawResultRequest(BaseModel):
    product: LotteryProduct
    issue: str = Field(..., min_length=1, max_length=32)
    winning_numbers: List[StrictInt]
    jackpot: Decimal = Decimal("0")
    drawn_at: Optional[dt.datetime] = None

    @field_validator("jackpot")
    @classmethod
    def jackpot_not_negative(cls, value: Decimal) -> Decimal:
        if value < 0:
            raise ValueError("jackpot must not be negative")
        return value


class TierSpec(BaseModel):
    label: str = Field(..., min_length=1, max_length=32)
    signatures: List[List[int]] = Field(..., min_length=1)
    amount: Decimal = Decimal("0")
    pool_share: Optional[Decimal] = None
    bet_types: Optional[List[BetType]] = None

    @field_validator("pool_share")
    @classmethod
    def share_is_fraction(cls, value: Optional[Decimal]) -> Optional[Decimal]:
        if value is not None and not Decimal("0") < value <= Decimal("1"):
            raise ValueError("pool_share must be in (0, 1]")
        return value

    @field_validator("amount")
    @classmethod
    def amount_not_negative(cls, value: Decimal) -> Decimal:
        if value < 0:
            raise ValueError("amount must not be negative")
        return value

    def matches(self, bet_type: BetType, signature: Tuple[int, ...]) -> bool:
        if self.bet_types is not None and bet_type not in self.bet_types:
            return False
        return any(tuple(sig) == signature for sig in self.signatures)


class ProductPrizeTable(BaseModel):
    payout: Literal["fixed", "pari_mutuel"] = "fixed"
    tiers: List[TierSpec] = Field(..., min_length=1)

    @model_validator(mode="after")
    def check_tiers(self) -> "ProductPrizeTable":
        labels = [tier.label for tier in self.tiers]
        if len(set(labels)) != len(labels):
            raise ValueError("tier labels must be unique")
        if self.payout == "fixed" and any(t.pool_share is not None for t in self.tiers):
            raise ValueError("fixed tables cannot declare pool_share")
        shares = sum((t.pool_share for t in self.tiers if t.pool_share is not None), Decimal("0"))
        if shares > 1:
            raise ValueError("pool shares add up to more than 1")
        return self

    def tier_for(self, bet_type: BetType, signature: Tuple[int, ...]) -> Optional[TierSpec]:
        # Combination bets are settled as the direct bets they expand into.
        effective = BetType.DIRECT if bet_type is BetType.COMBINATION else bet_type
        for tier in self.tiers:
            if tier.matches(effective, signature):
                return tier
        return None

    def rank(self, label: str) -> int:
        for index, tier in enumerate(self.tiers):
            if tier.label == label:
                return index
        raise KeyError(label)


class PrizeTables(BaseModel):
    products: Dict[LotteryProduct, ProductPrizeTable]

    @model_validator(mode="after")
    def every_product_has_a_table(self) -> "PrizeTables":
        missing = [p.value for p in LotteryProduct if p not in self.products]
        if missing:
            raise ValueError(f"missing prize tables for: {', '.join(missing)}")
        return self

    def for_product(self, product: LotteryProduct) -> ProductPrizeTable:
        return self.products[LotteryProduct(product)]
