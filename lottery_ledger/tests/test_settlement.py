import datetime as dt
import os
import tempfile
import threading
import unittest
from decimal import Decimal
from unittest import mock

from lottery_ledger.config import DatabaseSettings
from lottery_ledger.db import make_engine, make_session_factory
from lottery_ledger.errors import NotFound, SettlementAlreadyRunning, StorageError
from lottery_ledger.models import Base
from lottery_ledger.prize_tables import load_prize_tables
from lottery_ledger.schemas import ProductPrizeTable
from lottery_ledger.services.analytics import MemoryAnalyticsSink
from lottery_ledger.services.cache import MemoryTicketCache
from lottery_ledger.services.draws import DrawResultStore
from lottery_ledger.services.gateway import StorageGateway
from lottery_ledger.services.settlement import PariMutuelPayout, SettlementEngine, lease_key
from lottery_ledger.services.stores import SqlAuthoritativeStore
from lottery_ledger.services.tickets import TicketLedger
from lottery_ledger.types import BetType, LotteryProduct, PrizeTier, TicketStatus, utcnow

ALL_HOME_WINS = [3] * 14


class SettlementTestCase(unittest.TestCase):
    def setUp(self) -> None:
        engine = make_engine(DatabaseSettings(url="sqlite://", timeout_seconds=1))
        Base.metadata.create_all(engine)
        self.store = SqlAuthoritativeStore(make_session_factory(engine))
        self.analytics = MemoryAnalyticsSink()
        self.gateway = StorageGateway(self.store, MemoryTicketCache(), self.analytics)
        self.ledger = TicketLedger(self.gateway)
        self.draws = DrawResultStore(self.gateway)
        self.tables = load_prize_tables()
        self.engine = SettlementEngine(self.gateway, self.ledger, self.draws, self.tables)

    def tearDown(self) -> None:
        self.gateway.close()

    def bet(self, product, numbers, bet_type=BetType.DIRECT, multiple=1, issue="2024001", user="alice"):
        return self.ledger.create(user, product, bet_type, numbers, multiple, "2.00", issue)

    def draw(self, product, numbers, jackpot="0", issue="2024001"):
        return self.draws.record(product, issue, numbers, jackpot)


class ScenarioTests(SettlementTestCase):
    def test_pick6_jackpot_win(self):
        ticket = self.bet(LotteryProduct.PICK6_BONUS, [[1, 2, 3, 4, 5, 6], [7]])
        self.draw(LotteryProduct.PICK6_BONUS, [1, 2, 3, 4, 5, 6, 7], jackpot="10000000")

        summary = self.engine.settle_issue(LotteryProduct.PICK6_BONUS, "2024001")

        settled = self.ledger.get(ticket.ticket_id)
        self.assertEqual(settled.status, TicketStatus.WON)
        self.assertEqual(settled.prize_tier, "FIRST")
        # 70% of the pool, capped at the tier amount
        self.assertEqual(settled.payout, Decimal("5000000.00"))
        self.assertEqual((summary.settled, summary.won, summary.lost), (1, 1, 0))
        self.assertEqual(summary.total_payout, Decimal("5000000.00"))

    def test_pick6_loss(self):
        ticket = self.bet(LotteryProduct.PICK6_BONUS, [[1, 2, 3, 4, 5, 6], [7]])
        self.draw(LotteryProduct.PICK6_BONUS, [7, 8, 9, 10, 11, 12, 1], jackpot="10000000")

        summary = self.engine.settle_issue(LotteryProduct.PICK6_BONUS, "2024001")

        settled = self.ledger.get(ticket.ticket_id)
        self.assertEqual(settled.status, TicketStatus.LOST)
        self.assertEqual(settled.payout, Decimal("0.00"))
        self.assertIsNone(settled.prize_tier)
        self.assertEqual((summary.won, summary.lost), (0, 1))

    def test_pick6_first_tier_hit_wins_with_empty_pool(self):
        ticket = self.bet(LotteryProduct.PICK6_BONUS, [[1, 2, 3, 4, 5, 6], [7]])
        self.draw(LotteryProduct.PICK6_BONUS, [1, 2, 3, 4, 5, 6, 7])

        summary = self.engine.settle_issue(LotteryProduct.PICK6_BONUS, "2024001")

        settled = self.ledger.get(ticket.ticket_id)
        self.assertEqual((settled.status, settled.prize_tier), (TicketStatus.WON, "FIRST"))
        self.assertEqual(settled.payout, Decimal("0.00"))
        self.assertEqual((summary.won, summary.lost), (1, 0))
        self.assertEqual(summary.prize_tiers[0], PrizeTier("FIRST", 1, Decimal("0.00")))

    def test_permutation3_is_order_sensitive(self):
        winner = self.bet(LotteryProduct.PERMUTATION_3, [[4, 2, 9]], issue="A")
        loser = self.bet(LotteryProduct.PERMUTATION_3, [[4, 2, 9]], issue="B")
        self.draw(LotteryProduct.PERMUTATION_3, [4, 2, 9], issue="A")
        self.draw(LotteryProduct.PERMUTATION_3, [9, 2, 4], issue="B")

        self.engine.settle_issue(LotteryProduct.PERMUTATION_3, "A")
        self.engine.settle_issue(LotteryProduct.PERMUTATION_3, "B")

        won = self.ledger.get(winner.ticket_id)
        self.assertEqual((won.status, won.payout, won.prize_tier), (TicketStatus.WON, Decimal("1040.00"), "DIRECT"))
        self.assertEqual(self.ledger.get(loser.ticket_id).status, TicketStatus.LOST)

    def test_grouped_bet_ignores_order(self):
        grouped = self.bet(LotteryProduct.DIGIT_3, [[9, 2, 4]], bet_type=BetType.GROUPED)
        direct = self.bet(LotteryProduct.DIGIT_3, [[9, 2, 4]])
        self.draw(LotteryProduct.DIGIT_3, [4, 2, 9])

        self.engine.settle_issue(LotteryProduct.DIGIT_3, "2024001")

        self.assertEqual(self.ledger.get(grouped.ticket_id).payout, Decimal("173.00"))
        self.assertEqual(self.ledger.get(direct.ticket_id).status, TicketStatus.LOST)

    def test_multiple_scales_payout(self):
        ticket = self.bet(LotteryProduct.SINGLE_MATCH, [[1]], bet_type=BetType.SINGLE_MATCH, multiple=3)
        self.draw(LotteryProduct.SINGLE_MATCH, [1])
        self.engine.settle_issue(LotteryProduct.SINGLE_MATCH, "2024001")
        self.assertEqual(self.ledger.get(ticket.ticket_id).payout, Decimal("15.00"))

    def test_keyed_pick9(self):
        outcomes = [3, 1, 0, 3, 1, 0, 3, 1, 0, 3, 1, 0, 3, 1]
        ticket = self.bet(
            LotteryProduct.PICK9,
            [[14, 13, 12, 11, 10, 9, 8, 7, 6], [1, 3, 0, 1, 3, 0, 1, 3, 0]],
        )
        self.draw(LotteryProduct.PICK9, outcomes)
        self.engine.settle_issue(LotteryProduct.PICK9, "2024001")
        self.assertEqual(self.ledger.get(ticket.ticket_id).payout, Decimal("20000.00"))

    def test_zero_hits_can_pay(self):
        ticket = self.bet(LotteryProduct.PICK20_OF_80, [list(range(1, 11))])
        self.draw(LotteryProduct.PICK20_OF_80, list(range(11, 31)))
        self.engine.settle_issue(LotteryProduct.PICK20_OF_80, "2024001")
        settled = self.ledger.get(ticket.ticket_id)
        self.assertEqual((settled.prize_tier, settled.payout), ("ZERO", Decimal("2.00")))

    def test_combination_bet_is_expanded(self):
        ticket = self.bet(LotteryProduct.PICK6_BONUS, [[1, 2, 3, 4, 5, 6, 7], [7]], bet_type=BetType.COMBINATION)
        self.draw(LotteryProduct.PICK6_BONUS, [1, 2, 3, 4, 5, 6, 7], jackpot="1000000")

        summary = self.engine.settle_issue(LotteryProduct.PICK6_BONUS, "2024001")

        # one 6+1 single bet and six 5+1 single bets
        settled = self.ledger.get(ticket.ticket_id)
        self.assertEqual(settled.prize_tier, "FIRST")
        self.assertEqual(settled.payout, Decimal("700000.00") + 6 * Decimal("3000.00"))
        tiers = {tier.label: tier for tier in summary.prize_tiers}
        self.assertEqual(tiers["FIRST"].winner_count, 1)
        self.assertEqual(tiers["THIRD"].winner_count, 6)

    def test_missing_result(self):
        self.bet(LotteryProduct.PERMUTATION_5, [[1, 2, 3, 4, 5]])
        with self.assertRaises(NotFound):
            self.engine.settle_issue(LotteryProduct.PERMUTATION_5, "2024001")


class PariMutuelTests(SettlementTestCase):
    def test_pool_is_split_by_winner_units(self):
        single = self.bet(LotteryProduct.FOOTBALL_POOL, [ALL_HOME_WINS])
        triple = self.bet(LotteryProduct.FOOTBALL_POOL, [ALL_HOME_WINS], multiple=3, user="bob")
        near = self.bet(LotteryProduct.FOOTBALL_POOL, [[1] + ALL_HOME_WINS[1:]], user="carol")
        self.draw(LotteryProduct.FOOTBALL_POOL, ALL_HOME_WINS, jackpot="1000")

        self.engine.settle_issue(LotteryProduct.FOOTBALL_POOL, "2024001")

        # FIRST: 700 over 4 units; SECOND: 300 over 1 unit
        self.assertEqual(self.ledger.get(single.ticket_id).payout, Decimal("175.00"))
        self.assertEqual(self.ledger.get(triple.ticket_id).payout, Decimal("525.00"))
        self.assertEqual(self.ledger.get(near.ticket_id).payout, Decimal("300.00"))
        result = self.draws.get(LotteryProduct.FOOTBALL_POOL, "2024001")
        self.assertEqual(
            result.prize_tiers,
            (PrizeTier("FIRST", 4, Decimal("175.00")), PrizeTier("SECOND", 1, Decimal("300.00"))),
        )
        self.assertIsNotNone(result.settled_at)

    def test_shares_round_down_and_empty_tiers_pay_nothing(self):
        table = ProductPrizeTable(
            payout="pari_mutuel",
            tiers=[
                {"label": "FIRST", "signatures": [[14]], "pool_share": "0.70"},
                {"label": "SECOND", "signatures": [[13]], "pool_share": "0.30", "amount": "10"},
                {"label": "THIRD", "signatures": [[12]], "amount": "4"},
            ],
        )
        amounts = PariMutuelPayout().tier_amounts(table, Decimal("100"), {"FIRST": 3, "SECOND": 1})
        self.assertEqual(amounts["FIRST"], Decimal("23.33"))
        self.assertEqual(amounts["SECOND"], Decimal("10"))
        self.assertEqual(amounts["THIRD"], Decimal("4.00"))
        amounts = PariMutuelPayout().tier_amounts(table, Decimal("100"), {})
        self.assertEqual(amounts["FIRST"], Decimal("0.00"))


class RunControlTests(SettlementTestCase):
    def test_rerun_is_a_no_op(self):
        ticket = self.bet(LotteryProduct.PERMUTATION_3, [[4, 2, 9]])
        self.draw(LotteryProduct.PERMUTATION_3, [4, 2, 9])
        first = self.engine.settle_issue(LotteryProduct.PERMUTATION_3, "2024001")
        after_first = self.ledger.get(ticket.ticket_id)

        second = self.engine.settle_issue(LotteryProduct.PERMUTATION_3, "2024001")

        self.assertEqual(first.settled, 1)
        self.assertEqual((second.settled, second.skipped), (0, 1))
        self.assertEqual(second.prize_tiers, first.prize_tiers)
        self.assertEqual(self.ledger.get(ticket.ticket_id), after_first)

    def test_concurrent_run_is_refused_without_writes(self):
        tickets = [self.bet(LotteryProduct.PERMUTATION_3, [[4, 2, 9]]) for _ in range(3)]
        self.draw(LotteryProduct.PERMUTATION_3, [4, 2, 9])

        rival_ledger = mock.Mock(spec=TicketLedger)
        rival_draws = mock.Mock(spec=DrawResultStore, wraps=self.draws)
        rival = SettlementEngine(self.gateway, rival_ledger, rival_draws, self.tables)
        refused = []
        settle = self.ledger.settle

        def settle_while_rival_starts(ticket, payout, tier):
            if not refused:
                with self.assertRaises(SettlementAlreadyRunning):
                    rival.settle_issue(LotteryProduct.PERMUTATION_3, "2024001")
                refused.append(ticket.ticket_id)
            return settle(ticket, payout, tier)

        with mock.patch.object(self.ledger, "settle", side_effect=settle_while_rival_starts):
            summary = self.engine.settle_issue(LotteryProduct.PERMUTATION_3, "2024001")

        self.assertEqual(len(refused), 1)
        self.assertEqual(summary.won, 3)
        rival_ledger.settle.assert_not_called()
        rival_ledger.transition.assert_not_called()
        rival_draws.update_prize_tiers.assert_not_called()
        for ticket in tickets:
            self.assertEqual(self.ledger.get(ticket.ticket_id).version, 1)

    def test_held_lease_blocks_and_expired_lease_is_taken_over(self):
        ticket = self.bet(LotteryProduct.BASKETBALL_POOL, [[3, 3, 0, 0]])
        self.draw(LotteryProduct.BASKETBALL_POOL, [3, 3, 0, 0])
        key = lease_key(LotteryProduct.BASKETBALL_POOL, "2024001")

        self.assertTrue(self.store.acquire_lease(key, "other-worker", 900))
        with self.assertRaises(SettlementAlreadyRunning):
            self.engine.settle_issue(LotteryProduct.BASKETBALL_POOL, "2024001")
        self.assertEqual(self.ledger.get(ticket.ticket_id).status, TicketStatus.PENDING)
        self.store.release_lease(key, "other-worker")

        crashed_at = utcnow() - dt.timedelta(hours=1)
        self.assertTrue(self.store.acquire_lease(key, "crashed-worker", 900, now=crashed_at))
        summary = self.engine.settle_issue(LotteryProduct.BASKETBALL_POOL, "2024001")
        self.assertEqual(summary.won, 1)

    def test_lease_is_released_after_success_and_failure(self):
        self.bet(LotteryProduct.PERMUTATION_5, [[1, 2, 3, 4, 5]])
        self.draw(LotteryProduct.PERMUTATION_5, [1, 2, 3, 4, 5])
        key = lease_key(LotteryProduct.PERMUTATION_5, "2024001")

        with mock.patch.object(self.ledger, "settle", side_effect=StorageError("db gone")):
            with self.assertRaises(StorageError):
                self.engine.settle_issue(LotteryProduct.PERMUTATION_5, "2024001")
        self.assertTrue(self.store.acquire_lease(key, "probe", 900))
        self.store.release_lease(key, "probe")

        summary = self.engine.settle_issue(LotteryProduct.PERMUTATION_5, "2024001")
        self.assertEqual(summary.won, 1)
        self.assertTrue(self.store.acquire_lease(key, "probe", 900))

    def test_summary_reaches_analytics(self):
        self.bet(LotteryProduct.PERMUTATION_3, [[4, 2, 9]])
        self.draw(LotteryProduct.PERMUTATION_3, [1, 2, 3])
        self.engine.settle_issue(LotteryProduct.PERMUTATION_3, "2024001")
        self.assertTrue(self.gateway.flush(timeout=5))
        exported = self.analytics.export()
        self.assertEqual(len(exported["settlements"]), 1)
        self.assertEqual(exported["settlements"][0]["lost"], 1)


class ThreadedSettlementTests(unittest.TestCase):
    """Two workers with their own connections racing for one issue on a shared database file."""

    def setUp(self) -> None:
        self._tmpdir = tempfile.TemporaryDirectory()
        url = "sqlite:///" + os.path.join(self._tmpdir.name, "ledger.db")
        self.tables = load_prize_tables()
        self.workers = []
        for _ in range(2):
            engine = make_engine(DatabaseSettings(url=url, timeout_seconds=5))
            Base.metadata.create_all(engine)
            gateway = StorageGateway(SqlAuthoritativeStore(make_session_factory(engine)), MemoryTicketCache())
            ledger = TicketLedger(gateway)
            draws = DrawResultStore(gateway)
            self.workers.append((gateway, engine, ledger, SettlementEngine(gateway, ledger, draws, self.tables)))

    def tearDown(self) -> None:
        for gateway, engine, _, _ in self.workers:
            gateway.close()
            engine.dispose()
        self._tmpdir.cleanup()

    def test_second_worker_is_refused_while_first_settles(self):
        gateway, _, ledger, first = self.workers[0]
        _, _, _, second = self.workers[1]
        tickets = [
            ledger.create("alice", LotteryProduct.FOOTBALL_POOL, BetType.DIRECT, [ALL_HOME_WINS], 1, "2.00", "24010")
            for _ in range(3)
        ]
        DrawResultStore(gateway).record(LotteryProduct.FOOTBALL_POOL, "24010", ALL_HOME_WINS, "1000")

        first_holds_lease = threading.Event()
        second_finished = threading.Event()
        outcomes = {}
        settle = ledger.settle

        def settle_after_rival(ticket, payout, tier):
            first_holds_lease.set()
            second_finished.wait(timeout=10)
            return settle(ticket, payout, tier)

        def run_first():
            outcomes["first"] = first.settle_issue(LotteryProduct.FOOTBALL_POOL, "24010")

        def run_second():
            first_holds_lease.wait(timeout=10)
            try:
                outcomes["second"] = second.settle_issue(LotteryProduct.FOOTBALL_POOL, "24010")
            except SettlementAlreadyRunning as exc:
                outcomes["second"] = exc
            finally:
                second_finished.set()

        with mock.patch.object(ledger, "settle", side_effect=settle_after_rival):
            threads = [threading.Thread(target=run_first), threading.Thread(target=run_second)]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join(timeout=30)

        self.assertIsInstance(outcomes["second"], SettlementAlreadyRunning)
        summary = outcomes["first"]
        self.assertEqual(summary.won, 3)
        self.assertEqual(summary.total_payout, Decimal("699.99"))
        for ticket in tickets:
            settled = ledger.get(ticket.ticket_id)
            self.assertEqual((settled.status, settled.version), (TicketStatus.WON, 1))


if __name__ == "__main__":
    unittest.main()
