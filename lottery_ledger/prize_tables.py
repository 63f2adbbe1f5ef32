"""Loading of the prize tier tables that drive settlement."""

from __future__ import annotations

import json
from functools import lru_cache
from pathlib import Path
from typing import Optional

from .schemas import PrizeTables

DEFAULT_PRIZE_TABLES = Path(__file__).resolve().with_name("prize_tables.json")


@lru_cache(maxsize=4)
def load_prize_tables(path: Optional[str] = None) -> PrizeTables:
    """Parse and validate a prize table document.

    The document maps each product value to ``{"payout": ..., "tiers": [...]}``.
    A missing product, an unknown product key or a malformed tier raises
    ``pydantic.ValidationError``.
    """

    table_path = Path(path) if path else DEFAULT_PRIZE_TABLES
    if not table_path.exists():
        raise FileNotFoundError(f"Prize table file not found: {table_path}")
    with table_path.open("r", encoding="utf-8") as fh:
        raw = json.load(fh)
    return PrizeTables(products=raw)
