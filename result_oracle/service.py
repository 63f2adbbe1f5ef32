from __future__ import annotations

import argparse
import asyncio
import logging
from typing import Optional

from lottery_ledger.app import configure_logging, create_service
from lottery_ledger.config import load_settings

from .config import OracleSettings, load_config
from .datasource.http_api import HttpJsonDataSource, HttpJsonDataSourceConfig
from .scheduler import OracleScheduler


def build_datasource(settings: OracleSettings) -> HttpJsonDataSource:
    feed = settings.feed
    if not feed.url:
        raise RuntimeError("FEED__URL is not configured.")
    return HttpJsonDataSource(
        HttpJsonDataSourceConfig(
            url=feed.url,
            issue_key=feed.issue_key,
            numbers_key=feed.numbers_key,
            date_key=feed.date_key,
            jackpot_key=feed.jackpot_key,
            timeout_seconds=feed.timeout_seconds,
        )
    )


async def run(args: argparse.Namespace) -> Optional[str]:
    settings = load_config(args.env_file)
    app_settings = load_settings(args.env_file)
    configure_logging("DEBUG" if args.verbose else app_settings.log_level)
    logger = logging.getLogger("lottery_ledger.oracle")

    service = create_service(app_settings)
    scheduler = OracleScheduler(settings, build_datasource(settings), service, logger=logger)
    try:
        if args.once or settings.submit_only_once:
            result = await scheduler.run_once()
            if result:
                logger.info("Recorded %s issue %s as %s", result.product.value, result.issue_id, result.result_id)
                return result.result_id
            return None

        await scheduler.run_forever()
        return None
    finally:
        service.close()


def parse_args(argv: Optional[list] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Lottery draw result feed")
    parser.add_argument("--env-file", type=str, default=None, help="Path to .env file")
    parser.add_argument("--once", action="store_true", help="Run only once and exit.")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging.")
    return parser.parse_args(argv)


def main(argv: Optional[list] = None) -> None:
    args = parse_args(argv)
    try:
        asyncio.run(run(args))
    except KeyboardInterrupt:
        print("Oracle stopped by user.")


if __name__ == "__main__":
    main()
