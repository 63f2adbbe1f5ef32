import datetime as dt
import itertools
import unittest
from decimal import Decimal

from lottery_ledger.config import DatabaseSettings
from lottery_ledger.db import make_engine, make_session_factory
from lottery_ledger.errors import (
    IdentityCollision,
    InvalidStake,
    InvalidTransition,
    IssueClosed,
    NotFound,
    ValidationError,
)
from lottery_ledger.models import Base
from lottery_ledger.services.cache import MemoryTicketCache
from lottery_ledger.services.draws import DrawResultStore
from lottery_ledger.services.gateway import StorageGateway
from lottery_ledger.services.stores import SqlAuthoritativeStore
from lottery_ledger.services.tickets import TicketLedger, new_ticket_id, normalize_stake
from lottery_ledger.types import BetType, LotteryProduct, TicketStatus

PICK6 = [[1, 2, 3, 4, 5, 6], [7]]


class TicketLedgerTests(unittest.TestCase):
    def setUp(self) -> None:
        engine = make_engine(DatabaseSettings(url="sqlite://", timeout_seconds=1))
        Base.metadata.create_all(engine)
        self.store = SqlAuthoritativeStore(make_session_factory(engine))
        self.gateway = StorageGateway(self.store, MemoryTicketCache(), sleep=lambda _: None)
        start = dt.datetime(2024, 1, 1, tzinfo=dt.timezone.utc)
        ticks = itertools.count()
        self.clock = lambda: start + dt.timedelta(seconds=next(ticks))
        self.ledger = TicketLedger(self.gateway, clock=self.clock)

    def tearDown(self) -> None:
        self.gateway.close()

    def _place(self, user="alice", product=LotteryProduct.PICK6_BONUS, numbers=PICK6, issue="2024001"):
        return self.ledger.create(user, product, BetType.DIRECT, numbers, 1, "2.00", issue)

    def test_create_assigns_identity_and_pending_status(self):
        ticket = self._place()
        self.assertEqual(ticket.status, TicketStatus.PENDING)
        self.assertEqual(len(ticket.ticket_id), 28)
        self.assertEqual(ticket.stake, Decimal("2.00"))
        self.assertEqual(ticket.version, 0)
        self.assertEqual(self.ledger.get(ticket.ticket_id), ticket)

    def test_ids_are_unique(self):
        ids = {new_ticket_id() for _ in range(2000)}
        self.assertEqual(len(ids), 2000)

    def test_stake_rules(self):
        self.assertEqual(normalize_stake("2"), Decimal("2.00"))
        for bad in ("0", "-1", "1.005", "abc", True, "NaN"):
            with self.subTest(stake=bad):
                with self.assertRaises(InvalidStake):
                    normalize_stake(bad)

    def test_invalid_selection_is_rejected_before_persisting(self):
        with self.assertRaises(ValidationError):
            self._place(numbers=[[1, 2, 3, 4, 5], [7]])
        self.assertEqual(self.ledger.list_by_user("alice"), [])

    def test_blank_user_is_rejected(self):
        with self.assertRaises(ValidationError):
            self._place(user="  ")

    def test_issue_with_result_is_closed(self):
        DrawResultStore(self.gateway).record(LotteryProduct.PICK6_BONUS, "2024001", [1, 2, 3, 4, 5, 6, 7])
        with self.assertRaises(IssueClosed):
            self._place()
        with self.assertRaises(IssueClosed):
            self._place(issue="  2024001 ")
        # another product with the same issue label is still open
        self._place(product=LotteryProduct.PERMUTATION_3, numbers=[[4, 2, 9]])

    def test_get_missing_ticket(self):
        with self.assertRaises(NotFound):
            self.ledger.get("nope")

    def test_list_by_user_newest_first(self):
        first = self._place()
        second = self._place()
        self._place(user="bob")
        listed = self.ledger.list_by_user("alice")
        self.assertEqual([t.ticket_id for t in listed], [second.ticket_id, first.ticket_id])

    def test_identity_collision_is_fatal(self):
        ledger = TicketLedger(self.gateway, id_factory=lambda: "fixed-id", clock=self.clock)
        ledger.create("alice", LotteryProduct.PERMUTATION_3, BetType.DIRECT, [[1, 2, 3]], 1, "2", "1")
        with self.assertLogs("lottery_ledger.tickets", level="CRITICAL"):
            with self.assertRaises(IdentityCollision):
                ledger.create("bob", LotteryProduct.PERMUTATION_3, BetType.DIRECT, [[3, 2, 1]], 1, "2", "1")
        self.assertEqual(self.ledger.get("fixed-id").user_id, "alice")


class TransitionTests(unittest.TestCase):
    def setUp(self) -> None:
        engine = make_engine(DatabaseSettings(url="sqlite://", timeout_seconds=1))
        Base.metadata.create_all(engine)
        self.gateway = StorageGateway(SqlAuthoritativeStore(make_session_factory(engine)), MemoryTicketCache())
        self.ledger = TicketLedger(self.gateway)
        self.ticket = self.ledger.create(
            "alice", LotteryProduct.PERMUTATION_3, BetType.DIRECT, [[4, 2, 9]], 1, "2.00", "24001"
        )

    def tearDown(self) -> None:
        self.gateway.close()

    def test_claim_pending_fails(self):
        with self.assertRaises(InvalidTransition):
            self.ledger.claim(self.ticket.ticket_id)
        self.assertEqual(self.ledger.get(self.ticket.ticket_id).status, TicketStatus.PENDING)

    def test_claim_won_then_again(self):
        self.ledger.transition(self.ticket.ticket_id, TicketStatus.WON, Decimal("1040.00"), "DIRECT")
        claimed = self.ledger.claim(self.ticket.ticket_id)
        self.assertEqual(claimed.status, TicketStatus.CLAIMED)
        self.assertEqual(claimed.payout, Decimal("1040.00"))
        with self.assertRaises(InvalidTransition):
            self.ledger.claim(self.ticket.ticket_id)

    def test_claim_lost_fails(self):
        self.ledger.transition(self.ticket.ticket_id, TicketStatus.LOST)
        with self.assertRaises(InvalidTransition):
            self.ledger.claim(self.ticket.ticket_id)

    def test_repeated_identical_settlement_is_a_no_op(self):
        first = self.ledger.transition(self.ticket.ticket_id, TicketStatus.WON, Decimal("1040.00"), "DIRECT")
        again = self.ledger.transition(self.ticket.ticket_id, TicketStatus.WON, Decimal("1040.00"), "DIRECT")
        self.assertEqual(first, again)
        self.assertEqual(again.version, 1)

    def test_conflicting_settlement_is_rejected(self):
        self.ledger.transition(self.ticket.ticket_id, TicketStatus.WON, Decimal("1040.00"), "DIRECT")
        with self.assertRaises(InvalidTransition):
            self.ledger.transition(self.ticket.ticket_id, TicketStatus.LOST)
        with self.assertRaises(InvalidTransition):
            self.ledger.transition(self.ticket.ticket_id, TicketStatus.PENDING)
        current = self.ledger.get(self.ticket.ticket_id)
        self.assertEqual((current.status, current.payout), (TicketStatus.WON, Decimal("1040.00")))

    def test_lost_forces_zero_payout(self):
        lost = self.ledger.transition(self.ticket.ticket_id, TicketStatus.LOST, Decimal("5"), "DIRECT")
        self.assertEqual(lost.payout, Decimal("0.00"))
        self.assertIsNone(lost.prize_tier)

    def test_won_needs_a_tier_and_a_payout(self):
        for payout, tier in ((None, "DIRECT"), (Decimal("-1"), "DIRECT"), (Decimal("5"), None)):
            with self.subTest(payout=payout, tier=tier):
                with self.assertRaises(InvalidTransition):
                    self.ledger.transition(self.ticket.ticket_id, TicketStatus.WON, payout, tier)
        self.assertEqual(self.ledger.get(self.ticket.ticket_id).status, TicketStatus.PENDING)

    def test_settle_with_a_tier_wins_even_without_payout(self):
        won = self.ledger.settle(self.ticket, Decimal("0.00"), "DIRECT")
        self.assertEqual((won.status, won.payout, won.prize_tier), (TicketStatus.WON, Decimal("0.00"), "DIRECT"))

    def test_settle_skips_tickets_that_left_pending(self):
        won = self.ledger.settle(self.ticket, Decimal("1040.00"), "DIRECT")
        self.assertEqual(won.status, TicketStatus.WON)
        self.assertIsNone(self.ledger.settle(won, Decimal("0"), None))
        # stale snapshot still pending, but the stored ticket is won
        self.assertIsNone(self.ledger.settle(self.ticket, Decimal("0"), None))
        self.assertEqual(self.ledger.get(self.ticket.ticket_id).status, TicketStatus.WON)

    def test_stale_cache_write_cannot_hide_newer_version(self):
        won = self.ledger.transition(self.ticket.ticket_id, TicketStatus.WON, Decimal("1040.00"), "DIRECT")
        self.gateway._cache.set(self.ticket)
        self.assertEqual(self.ledger.get(self.ticket.ticket_id), won)


if __name__ == "__main__":
    unittest.main()
