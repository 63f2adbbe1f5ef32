from __future__ import annotations

import asyncio
import datetime as dt
import json
import logging
import pathlib
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Protocol, Sequence

from lottery_ledger.errors import DuplicateResult, SettlementAlreadyRunning
from lottery_ledger.types import DrawResult, LotteryProduct, SettlementSummary

from .config import OracleSettings
from .datasource import DrawData, ResultDataSource


class ResultRecorder(Protocol):
    def record_draw_result(
        self,
        product: LotteryProduct,
        issue: str,
        winning_numbers: Sequence[int],
        jackpot: Decimal = ...,
        drawn_at: Optional[dt.datetime] = ...,
        settle: bool = ...,
    ) -> DrawResult:
        ...

    def settle_issue(self, product: LotteryProduct, issue: str) -> SettlementSummary:
        ...


@dataclass
class SchedulerResult:
    product: LotteryProduct
    issue_id: str
    result_id: str
    settlement: Optional[SettlementSummary] = None


class OracleStateStore:
    """Remembers the last recorded issue so a restart does not resubmit it."""

    def __init__(self, path: str) -> None:
        self._path = pathlib.Path(path)

    def load_last_issue(self) -> Optional[str]:
        if not self._path.exists():
            return None
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            return None
        return data.get("last_issue_id")

    def save_last_issue(self, issue_id: str) -> None:
        payload = {"last_issue_id": issue_id}
        self._path.write_text(json.dumps(payload), encoding="utf-8")


class OracleScheduler:
    def __init__(
        self,
        settings: OracleSettings,
        datasource: ResultDataSource,
        recorder: ResultRecorder,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._settings = settings
        self._datasource = datasource
        self._recorder = recorder
        self._product = LotteryProduct(settings.feed.product)
        self._state = OracleStateStore(settings.state_file)
        self._last_issue_id = self._state.load_last_issue()
        self._logger = logger or logging.getLogger("lottery_ledger.oracle")

    async def run_forever(self) -> None:
        interval = self._settings.poll_interval_seconds
        self._logger.info("Oracle loop started for %s; poll interval=%s", self._product.value, interval)
        while True:
            try:
                result = await self._attempt_submission()
                if result is not None and self._settings.submit_only_once:
                    self._logger.info("Submit-once flag set; exiting loop.")
                    return
            except Exception as exc:
                self._logger.exception("Oracle iteration failed: %s", exc)
            await asyncio.sleep(interval)

    async def run_once(self) -> Optional[SchedulerResult]:
        try:
            return await self._attempt_submission()
        finally:
            await self._datasource.close()

    async def _attempt_submission(self) -> Optional[SchedulerResult]:
        draw = await self._datasource.fetch_latest()

        if self._last_issue_id == draw.issue_id:
            self._logger.debug("Issue %s already recorded; skipping.", draw.issue_id)
            return None

        self._logger.info(
            "Recording %s result for issue %s -> %s",
            self._product.value,
            draw.issue_id,
            list(draw.numbers),
        )
        try:
            recorded = await asyncio.to_thread(self._record, draw)
        except DuplicateResult:
            self._logger.info("Issue %s already has a result in the ledger; skipping.", draw.issue_id)
            self._remember(draw.issue_id)
            return None
        self._remember(draw.issue_id)

        summary = None
        if self._settings.settle_on_record:
            try:
                summary = await asyncio.to_thread(self._recorder.settle_issue, self._product, draw.issue_id)
            except SettlementAlreadyRunning:
                self._logger.info("Settlement of issue %s is already running elsewhere.", draw.issue_id)

        return SchedulerResult(
            product=self._product,
            issue_id=draw.issue_id,
            result_id=recorded.result_id,
            settlement=summary,
        )

    def _record(self, draw: DrawData) -> DrawResult:
        return self._recorder.record_draw_result(
            self._product,
            draw.issue_id,
            list(draw.numbers),
            jackpot=draw.jackpot,
            drawn_at=draw.draw_date,
        )

    def _remember(self, issue_id: str) -> None:
        self._last_issue_id = issue_id
        self._state.save_last_issue(issue_id)
