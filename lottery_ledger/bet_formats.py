"""Per-product number formats: validation, canonicalization and match signatures.

Every function here is pure. Products are described by static ``ProductRule``
data; adding a product means adding one entry to ``PRODUCT_RULES`` and one
prize table (see ``prize_tables.json``).
"""

from __future__ import annotations

import itertools
import math
from collections import Counter
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, Iterator, List, Optional, Sequence, Tuple

from .errors import (
    DuplicateNotAllowed,
    InvalidBetType,
    InvalidFieldCount,
    InvalidMultiple,
    ValidationError,
    ValueOutOfRange,
)
from .types import BetType, LotteryProduct, NumberGroups

MAX_MULTIPLE = 99
MAX_BETS_PER_TICKET = 10_000

OUTCOMES_3WAY = (0, 1, 3)
OUTCOMES_2WAY = (0, 3)


class MatchMode(str, Enum):
    SET = "set"
    POSITIONAL = "positional"
    KEYED = "keyed"


@dataclass(frozen=True)
class FieldRule:
    """One group of a ticket selection."""

    name: str
    size: int
    min_value: int = 0
    max_value: int = 0
    choices: Optional[Tuple[int, ...]] = None
    unique: bool = True
    max_size: Optional[int] = None

    def accepts(self, value: int) -> bool:
        if self.choices is not None:
            return value in self.choices
        return self.min_value <= value <= self.max_value

    def describe(self) -> str:
        if self.choices is not None:
            return "one of " + ", ".join(str(c) for c in self.choices)
        return f"{self.min_value}..{self.max_value}"


@dataclass(frozen=True)
class DrawField:
    """One slice of the flat winning sequence, compared against ticket group ``group``."""

    name: str
    size: int
    group: int = 0


@dataclass(frozen=True)
class ProductRule:
    product: LotteryProduct
    fields: Tuple[FieldRule, ...]
    draw_fields: Tuple[DrawField, ...]
    match_mode: MatchMode
    bet_types: FrozenSet[BetType]
    max_multiple: int = MAX_MULTIPLE

    @property
    def draw_length(self) -> int:
        return sum(df.size for df in self.draw_fields)

    def draw_domain(self, draw_field: DrawField) -> FieldRule:
        if self.match_mode is MatchMode.KEYED:
            return self.fields[1]
        return self.fields[draw_field.group]


@dataclass(frozen=True)
class CanonicalSelection:
    product: LotteryProduct
    bet_type: BetType
    groups: NumberGroups
    multiple: int
    bet_count: int = 1

    @property
    def units(self) -> int:
        return self.bet_count * self.multiple


def _digits(size: int) -> FieldRule:
    return FieldRule("digits", size, 0, 9, unique=False)


def _outcomes(size: int, choices: Tuple[int, ...]) -> FieldRule:
    return FieldRule("outcomes", size, choices=choices, unique=False)


_DIRECT = frozenset({BetType.DIRECT})
_LOTTO = frozenset({BetType.DIRECT, BetType.COMBINATION})
_DIGIT = frozenset({BetType.DIRECT, BetType.GROUPED})

PRODUCT_RULES: Dict[LotteryProduct, ProductRule] = {
    LotteryProduct.PICK6_BONUS: ProductRule(
        LotteryProduct.PICK6_BONUS,
        fields=(FieldRule("main", 6, 1, 33, max_size=16), FieldRule("bonus", 1, 1, 16, max_size=16)),
        draw_fields=(DrawField("main", 6, 0), DrawField("bonus", 1, 1)),
        match_mode=MatchMode.SET,
        bet_types=_LOTTO,
    ),
    LotteryProduct.PERMUTATION_5: ProductRule(
        LotteryProduct.PERMUTATION_5,
        fields=(_digits(5),),
        draw_fields=(DrawField("digits", 5),),
        match_mode=MatchMode.POSITIONAL,
        bet_types=_DIRECT,
    ),
    LotteryProduct.PERMUTATION_3: ProductRule(
        LotteryProduct.PERMUTATION_3,
        fields=(_digits(3),),
        draw_fields=(DrawField("digits", 3),),
        match_mode=MatchMode.POSITIONAL,
        bet_types=_DIGIT,
    ),
    LotteryProduct.PICK6_LARGE: ProductRule(
        LotteryProduct.PICK6_LARGE,
        fields=(FieldRule("main", 6, 1, 49, max_size=15),),
        draw_fields=(DrawField("main", 6), DrawField("bonus", 1)),
        match_mode=MatchMode.SET,
        bet_types=_LOTTO,
    ),
    LotteryProduct.PICK9: ProductRule(
        LotteryProduct.PICK9,
        fields=(FieldRule("matches", 9, 1, 14), _outcomes(9, OUTCOMES_3WAY)),
        draw_fields=(DrawField("outcomes", 14, 1),),
        match_mode=MatchMode.KEYED,
        bet_types=_DIRECT,
    ),
    LotteryProduct.FOOTBALL_POOL: ProductRule(
        LotteryProduct.FOOTBALL_POOL,
        fields=(_outcomes(14, OUTCOMES_3WAY),),
        draw_fields=(DrawField("outcomes", 14),),
        match_mode=MatchMode.POSITIONAL,
        bet_types=_DIRECT,
    ),
    LotteryProduct.BASKETBALL_POOL: ProductRule(
        LotteryProduct.BASKETBALL_POOL,
        fields=(_outcomes(4, OUTCOMES_2WAY),),
        draw_fields=(DrawField("outcomes", 4),),
        match_mode=MatchMode.POSITIONAL,
        bet_types=_DIRECT,
    ),
    LotteryProduct.SINGLE_MATCH: ProductRule(
        LotteryProduct.SINGLE_MATCH,
        fields=(_outcomes(1, OUTCOMES_3WAY),),
        draw_fields=(DrawField("outcome", 1),),
        match_mode=MatchMode.POSITIONAL,
        bet_types=frozenset({BetType.SINGLE_MATCH}),
    ),
    LotteryProduct.PICK7_BONUS: ProductRule(
        LotteryProduct.PICK7_BONUS,
        fields=(FieldRule("main", 7, 1, 30, max_size=15),),
        draw_fields=(DrawField("main", 7), DrawField("bonus", 1)),
        match_mode=MatchMode.SET,
        bet_types=_LOTTO,
    ),
    LotteryProduct.PICK20_OF_80: ProductRule(
        LotteryProduct.PICK20_OF_80,
        fields=(FieldRule("main", 10, 1, 80),),
        draw_fields=(DrawField("main", 20),),
        match_mode=MatchMode.SET,
        bet_types=_DIRECT,
    ),
    LotteryProduct.DIGIT_3: ProductRule(
        LotteryProduct.DIGIT_3,
        fields=(_digits(3),),
        draw_fields=(DrawField("digits", 3),),
        match_mode=MatchMode.POSITIONAL,
        bet_types=_DIGIT,
    ),
}


def get_rule(product: LotteryProduct) -> ProductRule:
    try:
        return PRODUCT_RULES[LotteryProduct(product)]
    except ValueError as exc:
        raise ValidationError(f"Unknown product {product!r}", code="invalid_product") from exc


def _check_value(field_rule: FieldRule, value: Any, where: str) -> int:
    # bool is an int subclass; a True/False selection is never meaningful.
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueOutOfRange(
            f"{where} must contain integers",
            details={"field": field_rule.name, "value": repr(value)},
        )
    if not field_rule.accepts(value):
        raise ValueOutOfRange(
            f"{value} is outside {field_rule.describe()} for {where}",
            details={"field": field_rule.name, "value": value},
        )
    return value


def _check_unique(field_rule: FieldRule, values: Sequence[int], where: str) -> None:
    if field_rule.unique and len(set(values)) != len(values):
        duplicates = sorted(v for v, n in Counter(values).items() if n > 1)
        raise DuplicateNotAllowed(
            f"{where} repeats {duplicates}",
            details={"field": field_rule.name, "duplicates": duplicates},
        )


def _as_groups(number_groups: Any) -> List[List[Any]]:
    if isinstance(number_groups, (str, bytes)) or not isinstance(number_groups, Iterable):
        raise InvalidFieldCount("numbers must be a sequence of number groups")
    groups = []
    for group in number_groups:
        if isinstance(group, (str, bytes)) or not isinstance(group, Iterable):
            raise InvalidFieldCount("every number group must be a sequence")
        groups.append(list(group))
    return groups


def canonicalize(rule: ProductRule, bet_type: BetType, groups: Sequence[Sequence[int]]) -> NumberGroups:
    """Return the comparable form of an already validated selection."""

    if rule.match_mode is MatchMode.SET:
        return tuple(tuple(sorted(group)) for group in groups)
    if rule.match_mode is MatchMode.KEYED:
        pairs = sorted(zip(groups[0], groups[1]))
        return (tuple(p[0] for p in pairs), tuple(p[1] for p in pairs))
    if bet_type is BetType.GROUPED:
        return tuple(tuple(sorted(group)) for group in groups)
    return tuple(tuple(group) for group in groups)


def count_bets(rule: ProductRule, groups: Sequence[Sequence[int]]) -> int:
    count = 1
    for field_rule, group in zip(rule.fields, groups):
        count *= math.comb(len(group), field_rule.size)
    return count


def validate(
    product: LotteryProduct,
    bet_type: BetType,
    number_groups: Any,
    multiple: Any,
) -> CanonicalSelection:
    """Validate a ticket selection and return its canonical form.

    Raises one of the ``ValidationError`` sub-reasons: ``InvalidBetType``,
    ``InvalidFieldCount``, ``ValueOutOfRange``, ``DuplicateNotAllowed`` or
    ``InvalidMultiple``.
    """

    rule = get_rule(product)
    try:
        bet_type = BetType(bet_type)
    except ValueError as exc:
        raise InvalidBetType(f"Unknown bet type {bet_type!r}") from exc
    if bet_type not in rule.bet_types:
        raise InvalidBetType(
            f"{bet_type.value} bets are not offered for {rule.product.value}",
            details={"allowed": sorted(b.value for b in rule.bet_types)},
        )

    groups = _as_groups(number_groups)
    if len(groups) != len(rule.fields):
        raise InvalidFieldCount(
            f"{rule.product.value} expects {len(rule.fields)} number group(s), got {len(groups)}",
            details={"expected": len(rule.fields), "actual": len(groups)},
        )

    combination = bet_type is BetType.COMBINATION
    for index, (field_rule, group) in enumerate(zip(rule.fields, groups)):
        where = f"group {index + 1} ({field_rule.name})"
        upper = field_rule.max_size or field_rule.size
        if combination:
            if not field_rule.size <= len(group) <= upper:
                raise InvalidFieldCount(
                    f"{where} needs {field_rule.size}..{upper} numbers, got {len(group)}",
                    details={"field": field_rule.name, "actual": len(group)},
                )
        elif len(group) != field_rule.size:
            raise InvalidFieldCount(
                f"{where} needs exactly {field_rule.size} numbers, got {len(group)}",
                details={"field": field_rule.name, "expected": field_rule.size, "actual": len(group)},
            )
        for value in group:
            _check_value(field_rule, value, where)
        _check_unique(field_rule, group, where)

    if bet_type is BetType.GROUPED and len(set(groups[0])) == 1:
        raise DuplicateNotAllowed("a grouped bet needs at least two different digits")

    bet_count = count_bets(rule, groups) if combination else 1
    if combination and bet_count < 2:
        raise InvalidFieldCount("a combination bet must select more numbers than a direct bet")

    if isinstance(multiple, bool) or not isinstance(multiple, int) or not 1 <= multiple <= rule.max_multiple:
        raise InvalidMultiple(
            f"multiple must be an integer in 1..{rule.max_multiple}",
            details={"multiple": repr(multiple)},
        )
    if bet_count * multiple > MAX_BETS_PER_TICKET:
        raise InvalidMultiple(
            f"{bet_count} bets x {multiple} exceeds {MAX_BETS_PER_TICKET} per ticket",
            details={"bet_count": bet_count, "multiple": multiple},
        )

    return CanonicalSelection(
        product=rule.product,
        bet_type=bet_type,
        groups=canonicalize(rule, bet_type, groups),
        multiple=multiple,
        bet_count=bet_count,
    )


def validate_draw(product: LotteryProduct, winning_numbers: Any) -> Tuple[int, ...]:
    """Validate an official winning sequence and return it in canonical flat form."""

    rule = get_rule(product)
    if isinstance(winning_numbers, (str, bytes)) or not isinstance(winning_numbers, Iterable):
        raise InvalidFieldCount("winning numbers must be a sequence")
    values = list(winning_numbers)
    if len(values) != rule.draw_length:
        raise InvalidFieldCount(
            f"{rule.product.value} draws {rule.draw_length} numbers, got {len(values)}",
            details={"expected": rule.draw_length, "actual": len(values)},
        )

    canonical: List[int] = []
    seen_by_group: Dict[int, List[int]] = {}
    offset = 0
    for draw_field in rule.draw_fields:
        domain = rule.draw_domain(draw_field)
        chunk = values[offset : offset + draw_field.size]
        offset += draw_field.size
        for value in chunk:
            _check_value(domain, value, f"winning {draw_field.name}")
        seen = seen_by_group.setdefault(draw_field.group, [])
        seen.extend(chunk)
        _check_unique(domain, seen, f"winning {draw_field.name}")
        canonical.extend(sorted(chunk) if rule.match_mode is MatchMode.SET else chunk)
    return tuple(canonical)


def split_draw(rule: ProductRule, winning_numbers: Sequence[int]) -> Tuple[Tuple[int, ...], ...]:
    parts = []
    offset = 0
    for draw_field in rule.draw_fields:
        parts.append(tuple(winning_numbers[offset : offset + draw_field.size]))
        offset += draw_field.size
    return tuple(parts)


def expand(rule: ProductRule, selection_groups: NumberGroups) -> Iterator[NumberGroups]:
    """Yield every single bet implied by a (possibly combination) selection."""

    if rule.match_mode is not MatchMode.SET:
        yield selection_groups
        return
    per_field = [
        itertools.combinations(group, field_rule.size)
        for field_rule, group in zip(rule.fields, selection_groups)
    ]
    for combo in itertools.product(*per_field):
        yield tuple(combo)


def match_signature(
    rule: ProductRule,
    bet_type: BetType,
    single_bet: NumberGroups,
    draw_parts: Tuple[Tuple[int, ...], ...],
) -> Tuple[int, ...]:
    """Compute the match signature of one single bet against a split draw."""

    if rule.match_mode is MatchMode.SET:
        return tuple(
            len(set(single_bet[draw_field.group]).intersection(part))
            for draw_field, part in zip(rule.draw_fields, draw_parts)
        )
    if rule.match_mode is MatchMode.KEYED:
        outcomes = draw_parts[0]
        indices, predictions = single_bet
        return (sum(1 for idx, pick in zip(indices, predictions) if outcomes[idx - 1] == pick),)
    picked = single_bet[0]
    drawn = draw_parts[0]
    if bet_type is BetType.GROUPED:
        return (sum((Counter(picked) & Counter(drawn)).values()),)
    return (sum(1 for a, b in zip(picked, drawn) if a == b),)
