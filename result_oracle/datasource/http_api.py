from __future__ import annotations

import asyncio
import datetime as dt
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Mapping, Sequence

import requests

from .base import DrawData, ResultDataSource


@dataclass(frozen=True)
class HttpJsonDataSourceConfig:
    """How to read the upstream JSON payload."""

    url: str
    issue_key: str = "issue_id"
    numbers_key: str = "numbers"
    date_key: str = "draw_date"
    jackpot_key: str = "jackpot"
    timeout_seconds: int = 10


class HttpJsonDataSource(ResultDataSource):
    def __init__(self, config: HttpJsonDataSourceConfig) -> None:
        self._config = config

    async def fetch_latest(self) -> DrawData:
        response_json = await asyncio.to_thread(
            self._get_json, self._config.url, self._config.timeout_seconds
        )
        return self._parse_payload(response_json)

    @staticmethod
    def _get_json(url: str, timeout_seconds: int) -> Mapping[str, Any]:
        try:
            resp = requests.get(url, timeout=timeout_seconds)
            resp.raise_for_status()
        except requests.RequestException as exc:
            raise RuntimeError(f"Result feed unavailable: {exc}") from exc
        data = resp.json()
        if not isinstance(data, Mapping):
            raise ValueError("HTTP API returned non-object payload")
        return data

    def _parse_payload(self, payload: Mapping[str, Any]) -> DrawData:
        cfg = self._config
        try:
            issue_id = str(payload[cfg.issue_key]).strip()
        except KeyError as exc:
            raise ValueError(f"Missing issue id field: {cfg.issue_key}") from exc
        if not issue_id:
            raise ValueError("Issue id is empty")

        try:
            raw_numbers = payload[cfg.numbers_key]
        except KeyError as exc:
            raise ValueError(f"Missing numbers field: {cfg.numbers_key}") from exc

        return DrawData(
            issue_id=issue_id,
            draw_date=self._parse_date(payload.get(cfg.date_key)),
            numbers=self._parse_numbers(raw_numbers),
            jackpot=self._parse_jackpot(payload.get(cfg.jackpot_key)),
        )

    @staticmethod
    def _parse_numbers(raw: Any) -> Sequence[int]:
        if isinstance(raw, (str, bytes)) or not isinstance(raw, Iterable):
            raise ValueError("numbers field must be a list")
        numbers = []
        for value in raw:
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError("numbers must be integers")
            numbers.append(value)
        if len(numbers) == 0:
            raise ValueError("numbers field empty")
        return tuple(numbers)

    @staticmethod
    def _parse_jackpot(raw: Any) -> Decimal:
        if raw is None:
            return Decimal("0")
        try:
            return Decimal(str(raw))
        except InvalidOperation as exc:
            raise ValueError(f"Invalid jackpot: {raw!r}") from exc

    @staticmethod
    def _parse_date(raw: Any) -> dt.datetime:
        if raw is None:
            return dt.datetime.now(dt.timezone.utc)
        if isinstance(raw, (int, float)):
            return dt.datetime.fromtimestamp(raw, tz=dt.timezone.utc)
        if isinstance(raw, str):
            try:
                parsed = dt.datetime.fromisoformat(raw.replace("Z", "+00:00"))
            except ValueError as exc:
                raise ValueError("Invalid date string format") from exc
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=dt.timezone.utc)
            return parsed
        raise ValueError("Unrecognized draw date format")
