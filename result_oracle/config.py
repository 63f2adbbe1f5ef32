from __future__ import annotations

import os
import pathlib
from dataclasses import dataclass, replace
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv

from lottery_ledger.types import LotteryProduct


def _bool_from_env(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _int_from_env(value: Optional[str], default: int) -> int:
    if value is None or value == "":
        return default
    return int(value)


@dataclass(frozen=True)
class FeedSettings:
    url: str
    product: LotteryProduct = LotteryProduct.PICK6_BONUS
    issue_key: str = "issue_id"
    numbers_key: str = "numbers"
    date_key: str = "draw_date"
    jackpot_key: str = "jackpot"
    timeout_seconds: int = 10


@dataclass(frozen=True)
class OracleSettings:
    poll_interval_seconds: int = 30
    submit_only_once: bool = False
    settle_on_record: bool = True
    state_file: str = "oracle_state.json"
    feed: FeedSettings = FeedSettings(url="")

    def copy(self, **updates) -> "OracleSettings":
        return replace(self, **updates)


def load_from_environment() -> OracleSettings:
    feed = FeedSettings(
        url=os.getenv("FEED__URL", ""),
        product=LotteryProduct(os.getenv("FEED__PRODUCT", LotteryProduct.PICK6_BONUS.value)),
        issue_key=os.getenv("FEED__ISSUE_KEY", "issue_id"),
        numbers_key=os.getenv("FEED__NUMBERS_KEY", "numbers"),
        date_key=os.getenv("FEED__DATE_KEY", "draw_date"),
        jackpot_key=os.getenv("FEED__JACKPOT_KEY", "jackpot"),
        timeout_seconds=_int_from_env(os.getenv("FEED__TIMEOUT_SECONDS"), 10),
    )

    return OracleSettings(
        poll_interval_seconds=_int_from_env(os.getenv("POLL_INTERVAL_SECONDS"), 30),
        submit_only_once=_bool_from_env(os.getenv("SUBMIT_ONCE"), False),
        settle_on_record=_bool_from_env(os.getenv("SETTLE_ON_RECORD"), True),
        state_file=os.getenv("STATE_FILE", "oracle_state.json"),
        feed=feed,
    )


@lru_cache(maxsize=1)
def load_config(dotenv_path: Optional[str] = None) -> OracleSettings:
    if dotenv_path:
        load_dotenv(dotenv_path)
    else:
        default_path = pathlib.Path(".env")
        if default_path.exists():
            load_dotenv(default_path)
    return load_from_environment()
