from __future__ import annotations

import abc
import datetime as dt
from dataclasses import dataclass
from decimal import Decimal
from typing import Sequence


@dataclass(frozen=True)
class DrawData:
    """Official draw as published by the upstream feed, before ledger validation."""

    issue_id: str
    draw_date: dt.datetime
    numbers: Sequence[int]
    jackpot: Decimal = Decimal("0")


class ResultDataSource(abc.ABC):
    @abc.abstractmethod
    async def fetch_latest(self) -> DrawData:
        """Return the newest published draw.

        Implementations raise ``RuntimeError`` or ``ValueError`` when the
        upstream data is unavailable or malformed.
        """

    async def close(self) -> None:
        """Optional hook for connectors that require cleanup."""
        return None
