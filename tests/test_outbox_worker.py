"""
Tests for publishing outbox rows
"""
import json
import unittest

from confluent_kafka import KafkaException
from sqlalchemy import select

from common.kafka import TOPIC_LEDGER_EVENTS
from ledger_service.models import Outbox, OutboxStatus
from ledger_service.outbox_worker import OutboxWorker
from support import make_ledger, order


class FakeProducer:
    """Producer double; ``stalled`` keeps messages unacknowledged, ``delivery_error`` fails them on flush."""

    def __init__(self, fail_topics=(), stalled=False, delivery_error=None):
        self.fail_topics = set(fail_topics)
        self.stalled = stalled
        self.delivery_error = delivery_error
        self.messages = []
        self.pending = []
        self.flush_timeouts = []

    def produce(self, topic, value=None, key=None, on_delivery=None):
        if topic in self.fail_topics:
            raise KafkaException("broker unavailable")
        self.messages.append((topic, key, value))
        self.pending.append(on_delivery)

    def flush(self, timeout=None):
        self.flush_timeouts.append(timeout)
        if self.stalled:
            return len(self.pending)
        for callback in self.pending:
            if callback is not None:
                callback(self.delivery_error, None)
        self.pending = []
        return 0


class TestOutboxWorker(unittest.TestCase):

    def setUp(self):
        self.ledger = make_ledger()
        self.db = self.ledger.db

    def tearDown(self):
        self.db.dispose()

    def rows(self):
        with self.db.session() as session:
            return session.scalars(select(Outbox).order_by(Outbox.id)).all()

    def statuses(self):
        return [row.status for row in self.rows()]

    def test_publishes_new_rows_once(self):
        self.ledger.settle_order(order("order-1"))
        self.ledger.settle_order(order("order-2"))
        producer = FakeProducer()
        worker = OutboxWorker(self.db, producer, batch_size=10)

        self.assertEqual(worker.drain_once(), 2)
        self.assertEqual(worker.drain_once(), 0)

        self.assertEqual([m[0] for m in producer.messages], [TOPIC_LEDGER_EVENTS, TOPIC_LEDGER_EVENTS])
        payloads = [json.loads(m[2]) for m in producer.messages]
        self.assertEqual([p["order_id"] for p in payloads], ["order-1", "order-2"])
        self.assertEqual(self.statuses(), [OutboxStatus.SENT, OutboxStatus.SENT])

    def test_batch_size_limits_each_pass(self):
        for i in range(3):
            self.ledger.settle_order(order(f"order-{i}"))
        worker = OutboxWorker(self.db, FakeProducer(), batch_size=2)
        self.assertEqual(worker.drain_once(), 2)
        self.assertEqual(worker.drain_once(), 1)

    def test_failed_publish_marks_row_failed(self):
        self.ledger.settle_order(order("order-1"))
        worker = OutboxWorker(self.db, FakeProducer(fail_topics={TOPIC_LEDGER_EVENTS}))

        self.assertEqual(worker.drain_once(), 0)
        [row] = self.rows()
        self.assertEqual(row.status, OutboxStatus.FAILED)
        self.assertEqual(row.attempts, 1)
        self.assertIn("broker unavailable", row.last_error)

    def test_failed_row_is_retried_when_broker_recovers(self):
        self.ledger.settle_order(order("order-1"))
        producer = FakeProducer(fail_topics={TOPIC_LEDGER_EVENTS})
        worker = OutboxWorker(self.db, producer)
        worker.drain_once()

        producer.fail_topics = set()
        self.assertEqual(worker.drain_once(), 1)
        self.assertEqual(self.statuses(), [OutboxStatus.SENT])
        self.assertEqual(len(producer.messages), 1)

    def test_flush_waits_with_timeout(self):
        self.ledger.settle_order(order("order-1"))
        producer = FakeProducer()
        OutboxWorker(self.db, producer, flush_timeout=2.5).drain_once()
        self.assertEqual(producer.flush_timeouts, [2.5])

    def test_unacknowledged_row_keeps_its_status(self):
        self.ledger.settle_order(order("order-1"))
        self.ledger.settle_order(order("order-2"))
        producer = FakeProducer(stalled=True)
        worker = OutboxWorker(self.db, producer, flush_timeout=0.1)

        self.assertEqual(worker.drain_once(), 0)
        self.assertEqual(self.statuses(), [OutboxStatus.NEW, OutboxStatus.NEW])
        # the pass stops at the first unacknowledged row
        self.assertEqual(len(producer.messages), 1)
        self.assertEqual(producer.flush_timeouts, [0.1])

    def test_delivery_error_marks_row_failed(self):
        self.ledger.settle_order(order("order-1"))
        worker = OutboxWorker(self.db, FakeProducer(delivery_error="Message timed out"))

        self.assertEqual(worker.drain_once(), 0)
        [row] = self.rows()
        self.assertEqual(row.status, OutboxStatus.FAILED)
        self.assertEqual(row.last_error, "Message timed out")

    def test_row_out_of_attempts_is_left_alone(self):
        self.ledger.settle_order(order("order-1"))
        producer = FakeProducer(fail_topics={TOPIC_LEDGER_EVENTS})
        worker = OutboxWorker(self.db, producer, max_attempts=2)
        worker.drain_once()
        worker.drain_once()

        producer.fail_topics = set()
        self.assertEqual(worker.drain_once(), 0)

        [row] = self.rows()
        self.assertEqual(row.status, OutboxStatus.FAILED)
        self.assertEqual(row.attempts, 2)
        self.assertEqual(producer.messages, [])


if __name__ == "__main__":
    unittest.main()
