import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import pydantic

from lottery_ledger.config import load_settings
from lottery_ledger.prize_tables import load_prize_tables
from lottery_ledger.types import BetType, LotteryProduct


class LoadSettingsTests(unittest.TestCase):
    def setUp(self) -> None:
        load_settings.cache_clear()

    def tearDown(self) -> None:
        load_settings.cache_clear()

    def test_environment_overrides(self):
        env = {
            "DATABASE_URL": "sqlite:///:memory:",
            "DB_TIMEOUT_SECONDS": "2.5",
            "STORE_RETRY_ATTEMPTS": "5",
            "CACHE_TTL_SECONDS": "30",
            "MONGODB_URI": "mongodb://localhost:27017",
            "SETTLEMENT_LEASE_SECONDS": "60",
            "DB_ECHO": "yes",
        }
        with mock.patch.dict(os.environ, env, clear=False):
            settings = load_settings()
        self.assertEqual(settings.database.url, "sqlite:///:memory:")
        self.assertEqual(settings.database.timeout_seconds, 2.5)
        self.assertTrue(settings.database.echo)
        self.assertEqual(settings.database.retry_attempts, 5)
        self.assertEqual(settings.cache.ttl_seconds, 30.0)
        self.assertEqual(settings.analytics.mongodb_uri, "mongodb://localhost:27017")
        self.assertEqual(settings.settlement_lease_seconds, 60)

    def test_dotenv_file_is_read(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / ".env"
            path.write_text("CACHE_MAX_ENTRIES=42\n", encoding="utf-8")
            with mock.patch.dict(os.environ, {}, clear=False):
                os.environ.pop("CACHE_MAX_ENTRIES", None)
                settings = load_settings(str(path))
        self.assertEqual(settings.cache.max_entries, 42)


class PrizeTableTests(unittest.TestCase):
    def test_default_tables_cover_every_product(self):
        tables = load_prize_tables()
        for product in LotteryProduct:
            self.assertGreaterEqual(len(tables.for_product(product).tiers), 1)

    def test_combination_matches_direct_tiers(self):
        table = load_prize_tables().for_product(LotteryProduct.PICK6_LARGE)
        self.assertEqual(table.tier_for(BetType.COMBINATION, (6, 0)).label, "FIRST")
        self.assertIsNone(table.tier_for(BetType.DIRECT, (2, 1)))

    def test_incomplete_document_is_rejected(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "tables.json"
            path.write_text(
                json.dumps({"pick9": {"payout": "fixed", "tiers": [{"label": "FIRST", "signatures": [[9]], "amount": "1"}]}}),
                encoding="utf-8",
            )
            with self.assertRaises(pydantic.ValidationError):
                load_prize_tables(str(path))

    def test_fixed_table_cannot_share_a_pool(self):
        raw = json.loads((Path(__file__).resolve().parents[1] / "prize_tables.json").read_text(encoding="utf-8"))
        raw["pick9"]["tiers"][0]["pool_share"] = "0.5"
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "tables.json"
            path.write_text(json.dumps(raw), encoding="utf-8")
            with self.assertRaises(pydantic.ValidationError):
                load_prize_tables(str(path))

    def test_missing_file(self):
        with self.assertRaises(FileNotFoundError):
            load_prize_tables("/nonexistent/prize_tables.json")


if __name__ == "__main__":
    unittest.main()
