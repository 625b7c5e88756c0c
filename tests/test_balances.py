"""
Tests for settlement, delivery, cancellation and refunds against vendor balances
"""
import unittest

from sqlalchemy import func, select, update

from common.errors import (
    BalanceUnderflowError, InsufficientBalanceError, InvalidInputError,
    InvalidTransitionError, NotFoundError, SettlementUnderflowError,
)
from common.kafka import TOPIC_LEDGER_EVENTS, TOPIC_LEDGER_REVIEW
from ledger_service.balances import STATUS_EFFECTS, BalanceEffect
from ledger_service.models import (
    FeeStatus, OrderStatus, PaymentStatus, PlatformFee, Transaction, VendorBalance, require_exhaustive,
)
from support import add_verified_account, deliver, make_ledger, order, outbox_messages, status_change


class BalanceTestCase(unittest.TestCase):
    def setUp(self):
        self.ledger = make_ledger()
        self.db = self.ledger.db

    def tearDown(self):
        self.db.dispose()

    def balance(self, vendor_id="vendor-1"):
        b = self.ledger.get_vendor_balance(vendor_id)
        return {
            "available": b.available_balance,
            "pending": b.pending_balance,
            "reserved": b.reserved_balance,
            "lifetime": b.lifetime_volume,
        }

    def order_total(self, order_id):
        with self.db.session() as session:
            return session.scalar(select(func.sum(Transaction.amount)).where(Transaction.order_id == order_id))


class TestSettlement(BalanceTestCase):
    """Test that settled orders land in pending balance"""

    def test_settlement_adds_earnings_to_pending(self):
        """Order 1000 with 100 shipping at 15% puts 750 in pending"""
        record = self.ledger.settle_order(order("order-1", total=1000, shipping=100))
        self.assertTrue(record.created)
        self.assertEqual(record.fee.fee_amount, 150)
        self.assertEqual(self.balance(), {"available": 0, "pending": 750, "reserved": 0, "lifetime": 750})

        events = outbox_messages(self.db, TOPIC_LEDGER_EVENTS)
        self.assertEqual([e["type"] for e in events], ["SettlementRecorded"])
        self.assertEqual(events[0]["amount"], 750)
        self.assertEqual(events[0]["order_id"], "order-1")

    def test_duplicate_settlement_changes_nothing(self):
        self.ledger.settle_order(order("order-1", total=1000, shipping=100))
        again = self.ledger.settle_order(order("order-1", total=1000, shipping=100))

        self.assertFalse(again.created)
        self.assertEqual(self.balance()["pending"], 750)
        with self.db.session() as session:
            self.assertEqual(session.scalar(select(func.count()).select_from(PlatformFee)), 1)
        self.assertEqual(len(outbox_messages(self.db, TOPIC_LEDGER_EVENTS)), 1)

    def test_vendor_commission_override_applies(self):
        self.ledger.set_commission("vendor-1", 10)
        record = self.ledger.settle_order(order("order-1", total=1000))
        self.assertEqual(record.fee.fee_amount, 100)
        self.assertEqual(self.balance()["pending"], 900)

    def test_unpaid_order_is_rejected(self):
        with self.assertRaises(InvalidInputError):
            self.ledger.settle_order(order("order-1", payment_status=PaymentStatus.FAILED))
        with self.assertRaises(NotFoundError):
            self.ledger.get_vendor_balance("vendor-1")

    def test_settlement_underflow_requests_review(self):
        with self.assertRaises(SettlementUnderflowError):
            self.ledger.settle_order(order("order-1", total=100, shipping=90))

        with self.db.session() as session:
            self.assertEqual(session.scalar(select(func.count()).select_from(PlatformFee)), 0)
        reviews = outbox_messages(self.db, TOPIC_LEDGER_REVIEW)
        self.assertEqual(len(reviews), 1)
        self.assertEqual(reviews[0]["code"], "SETTLEMENT_UNDERFLOW")
        self.assertEqual(reviews[0]["operation"], "settle_order")
        self.assertEqual(reviews[0]["vendor_id"], "vendor-1")
        self.assertEqual(reviews[0]["context"]["order_id"], "order-1")


class TestOrderStatusChanges(BalanceTestCase):
    """Test delivery and cancellation effects"""

    def setUp(self):
        super().setUp()
        self.ledger.settle_order(order("order-1", total=1000, shipping=100))

    def test_delivery_releases_earnings(self):
        """Delivered moves 750 from pending to available"""
        self.assertEqual(deliver(self.ledger, "order-1"), BalanceEffect.RELEASE)
        self.assertEqual(self.balance(), {"available": 750, "pending": 0, "reserved": 0, "lifetime": 750})
        with self.db.session() as session:
            fee = session.scalars(select(PlatformFee)).one()
        self.assertEqual(fee.status, FeeStatus.COLLECTED)
        self.assertIsNotNone(fee.collected_at)

    def test_repeated_delivery_is_noop(self):
        deliver(self.ledger, "order-1")
        self.assertEqual(deliver(self.ledger, "order-1"), BalanceEffect.NONE)
        self.assertEqual(self.balance()["available"], 750)

    def test_statuses_without_money_effect(self):
        effect = self.ledger.change_order_status(status_change("order-1", OrderStatus.PENDING, OrderStatus.PROCESSING))
        self.assertEqual(effect, BalanceEffect.NONE)
        effect = self.ledger.change_order_status(status_change("order-1", OrderStatus.SHIPPED, OrderStatus.SHIPPED))
        self.assertEqual(effect, BalanceEffect.NONE)
        self.assertEqual(self.balance()["pending"], 750)

    def test_cancel_before_delivery_reverses_pending(self):
        effect = self.ledger.change_order_status(status_change("order-1", OrderStatus.SHIPPED, OrderStatus.CANCELLED))

        self.assertEqual(effect, BalanceEffect.REVERSE)
        self.assertEqual(self.balance(), {"available": 0, "pending": 0, "reserved": 0, "lifetime": 750})
        self.assertEqual(self.order_total("order-1"), 0)
        with self.db.session() as session:
            self.assertEqual(session.scalar(select(func.count()).select_from(Transaction)), 4)
            self.assertTrue(session.scalars(select(PlatformFee)).one().is_reversed)

    def test_repeated_cancel_is_noop(self):
        change = status_change("order-1", OrderStatus.PENDING, OrderStatus.CANCELLED)
        self.ledger.change_order_status(change)
        self.assertEqual(self.ledger.change_order_status(change), BalanceEffect.NONE)
        self.assertEqual(self.order_total("order-1"), 0)

    def test_cancel_after_delivery_is_invalid(self):
        deliver(self.ledger, "order-1")
        with self.assertRaises(InvalidTransitionError):
            self.ledger.change_order_status(status_change("order-1", OrderStatus.DELIVERED, OrderStatus.CANCELLED))
        # a stale old_status does not get around the check either
        with self.assertRaises(InvalidTransitionError):
            self.ledger.change_order_status(status_change("order-1", OrderStatus.SHIPPED, OrderStatus.CANCELLED))
        self.assertEqual(self.balance()["available"], 750)

    def test_delivery_after_cancel_is_invalid(self):
        self.ledger.change_order_status(status_change("order-1", OrderStatus.SHIPPED, OrderStatus.CANCELLED))
        with self.assertRaises(InvalidTransitionError):
            deliver(self.ledger, "order-1")

    def test_cancel_of_unsettled_order_has_no_effect(self):
        effect = self.ledger.change_order_status(status_change("order-9", OrderStatus.PENDING, OrderStatus.CANCELLED))
        self.assertEqual(effect, BalanceEffect.NONE)

    def test_status_change_for_wrong_vendor(self):
        with self.assertRaises(InvalidInputError):
            deliver(self.ledger, "order-1", vendor_id="vendor-2")


class TestRefunds(BalanceTestCase):
    """Test the refund path for delivered orders"""

    def setUp(self):
        super().setUp()
        self.ledger.settle_order(order("order-1", total=1000, shipping=100))
        deliver(self.ledger, "order-1")

    def test_refund_removes_available_earnings(self):
        self.assertEqual(self.ledger.refund_order("vendor-1", "order-1"), BalanceEffect.REVERSE)
        self.assertEqual(self.balance(), {"available": 0, "pending": 0, "reserved": 0, "lifetime": 750})
        self.assertEqual(self.order_total("order-1"), 0)
        types = [e["type"] for e in outbox_messages(self.db, TOPIC_LEDGER_EVENTS)]
        self.assertEqual(types, ["SettlementRecorded", "EarningsReleased", "OrderReversed"])

    def test_repeated_refund_is_noop(self):
        self.ledger.refund_order("vendor-1", "order-1")
        self.assertEqual(self.ledger.refund_order("vendor-1", "order-1"), BalanceEffect.NONE)

    def test_refund_of_unsettled_order(self):
        with self.assertRaises(NotFoundError):
            self.ledger.refund_order("vendor-1", "order-9")

    def test_refund_after_payout_underflows_and_requests_review(self):
        """Earnings already reserved for a payout cannot be taken back"""
        add_verified_account(self.ledger)
        self.ledger.request_payout("vendor-1", fraction=1.0)

        with self.assertRaises(BalanceUnderflowError):
            self.ledger.refund_order("vendor-1", "order-1")

        self.assertEqual(self.balance(), {"available": 0, "pending": 0, "reserved": 750, "lifetime": 750})
        with self.db.session() as session:
            self.assertFalse(session.scalars(select(PlatformFee)).one().is_reversed)
        reviews = outbox_messages(self.db, TOPIC_LEDGER_REVIEW)
        self.assertEqual([r["code"] for r in reviews], ["BALANCE_UNDERFLOW"])
        self.assertEqual(reviews[0]["context"]["order_id"], "order-1")


class TestPayoutReservation(BalanceTestCase):
    def test_reserve_more_than_available(self):
        self.ledger.settle_order(order("order-1", total=1000))
        with self.db.transaction() as session:
            with self.assertRaises(InsufficientBalanceError):
                self.ledger.balances.apply_payout(session, "vendor-1", 100)
            with self.assertRaises(InsufficientBalanceError):
                self.ledger.balances.apply_payout(session, "vendor-2", 100)
            with self.assertRaises(InvalidInputError):
                self.ledger.balances.apply_payout(session, "vendor-1", 0)


class TestReconciliation(BalanceTestCase):
    """Test recomputing balances from fees, payouts and ledger lines"""

    def test_consistent_vendor(self):
        for i, total in enumerate([1000, 400, 250]):
            self.ledger.settle_order(order(f"order-{i}", total=total))
        deliver(self.ledger, "order-0")
        deliver(self.ledger, "order-1")
        self.ledger.change_order_status(status_change("order-2", OrderStatus.PENDING, OrderStatus.CANCELLED))
        add_verified_account(self.ledger)
        payout = self.ledger.request_payout("vendor-1", fraction=0.5)
        self.ledger.confirm_payout(payout.id, "paid")

        report = self.ledger.reconcile("vendor-1")
        self.assertTrue(report.consistent, report.differences)
        self.assertEqual(report.expected["lifetime_volume"], 850 + 340 + 212)
        self.assertEqual(report.stored["ledger_total"], report.expected["ledger_total"])

    def test_detects_drift(self):
        self.ledger.settle_order(order("order-1", total=1000))
        with self.db.transaction() as session:
            session.execute(update(VendorBalance).values(pending_balance=VendorBalance.pending_balance + 5))

        report = self.ledger.reconcile("vendor-1")
        self.assertFalse(report.consistent)
        self.assertEqual(report.differences, {"pending_balance": 5, "ledger_total": 5})

    def test_unknown_vendor(self):
        with self.assertRaises(NotFoundError):
            self.ledger.reconcile("nobody")


class TestBalanceSnapshots(BalanceTestCase):
    """Test that each ledger line carries the vendor balances around its change"""

    def lines(self, **criteria):
        with self.db.session() as session:
            query = select(Transaction).filter_by(**criteria).order_by(Transaction.created_at, Transaction.id)
            return session.scalars(query).all()

    def test_settlement_lines(self):
        self.ledger.settle_order(order("order-1", total=1000, shipping=100))

        expected = {
            "before": {"available": 0, "pending": 0, "reserved": 0},
            "after": {"available": 0, "pending": 750, "reserved": 0},
        }
        lines = self.lines(order_id="order-1")
        self.assertEqual(len(lines), 2)
        self.assertEqual([line.balance_snapshot for line in lines], [expected, expected])

    def test_reversal_lines(self):
        self.ledger.settle_order(order("order-1", total=1000, shipping=100))
        deliver(self.ledger, "order-1")
        self.ledger.refund_order("vendor-1", "order-1")

        reversals = [line for line in self.lines(order_id="order-1") if line.reverses_id is not None]
        self.assertEqual(len(reversals), 2)
        for line in reversals:
            self.assertEqual(line.balance_snapshot, {
                "before": {"available": 750, "pending": 0, "reserved": 0},
                "after": {"available": 0, "pending": 0, "reserved": 0},
            })

    def test_payout_line(self):
        self.ledger.set_commission("vendor-1", 0)
        self.ledger.settle_order(order("order-1", total=750))
        deliver(self.ledger, "order-1")
        add_verified_account(self.ledger)
        payout = self.ledger.request_payout("vendor-1", fraction=0.8)
        self.ledger.confirm_payout(payout.id, "paid")

        [line] = self.lines(payout_id=payout.id)
        self.assertEqual(line.balance_snapshot, {
            "before": {"available": 150, "pending": 0, "reserved": 600},
            "after": {"available": 150, "pending": 0, "reserved": 0},
        })

    def test_snapshot_in_transaction_listing(self):
        self.ledger.settle_order(order("order-1", total=1000, shipping=100))
        [sale, _] = self.ledger.list_transactions("vendor-1", order_id="order-1")
        self.assertEqual(sale.balance_snapshot["after"]["pending"], 750)


class TestStatusTables(unittest.TestCase):
    def test_every_order_status_has_an_effect(self):
        self.assertEqual(set(STATUS_EFFECTS), set(OrderStatus))

    def test_missing_member_fails_loudly(self):
        with self.assertRaises(RuntimeError):
            require_exhaustive({OrderStatus.PENDING: BalanceEffect.NONE}, OrderStatus)


if __name__ == "__main__":
    unittest.main()
