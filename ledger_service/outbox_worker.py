"""
Publishes committed outbox rows to Kafka.

    python -m ledger_service.outbox_worker

Rows are read in id order and published one at a time. Each row's status is
committed on its own once Kafka has acknowledged (or refused) it, so no
database transaction stays open while the worker waits on the broker. A row
that Kafka refuses is marked failed and picked up again on later passes
until it runs out of attempts; a row Kafka has not acknowledged within the
flush timeout keeps its status and ends the pass. Delivery is at least once.
"""
import logging
import time
from typing import List, Optional

from confluent_kafka import KafkaException, Producer
from sqlalchemy import and_, or_, select, update

from common.kafka import create_producer
from common.settings import Settings, settings as default_settings
from ledger_service.db import Database, connect
from ledger_service.models import Outbox, OutboxStatus

logger = logging.getLogger(__name__)


class OutboxWorker:
    def __init__(self, db: Database, producer: Producer, batch_size: int = 50,
                 flush_timeout: float = 5.0, max_attempts: int = 10):
        self.db = db
        self.producer = producer
        self.batch_size = batch_size
        self.flush_timeout = flush_timeout
        self.max_attempts = max_attempts

    def _next_batch(self) -> List[Outbox]:
        with self.db.session() as session:
            return list(session.scalars(
                select(Outbox)
                .where(or_(
                    Outbox.status == OutboxStatus.NEW,
                    and_(Outbox.status == OutboxStatus.FAILED, Outbox.attempts < self.max_attempts),
                ))
                .order_by(Outbox.id)
                .limit(self.batch_size)
            ).all())

    def _mark_sent(self, row: Outbox) -> None:
        with self.db.transaction() as session:
            session.execute(update(Outbox).where(Outbox.id == row.id).values(status=OutboxStatus.SENT))

    def _mark_failed(self, row: Outbox, error: str) -> None:
        attempts = row.attempts + 1
        with self.db.transaction() as session:
            session.execute(
                update(Outbox)
                .where(Outbox.id == row.id)
                .values(status=OutboxStatus.FAILED, attempts=Outbox.attempts + 1, last_error=error[:255])
            )

        details = {"outbox_id": row.id, "topic": row.topic, "attempts": attempts}
        if attempts >= self.max_attempts:
            logger.error(f"Giving up on outbox row {row.id} for {row.topic} after {attempts} attempts: {error}",
                         extra=details)
        else:
            logger.warning(f"Failed to publish outbox row {row.id} to {row.topic}: {error}", extra=details)

    def drain_once(self) -> int:
        """Publish one batch of pending rows; returns how many were sent."""
        sent = 0
        for row in self._next_batch():
            delivery_errors = []

            def on_delivery(err, msg):
                if err is not None:
                    delivery_errors.append(str(err))

            try:
                self.producer.produce(
                    row.topic,
                    value=row.payload.encode("utf-8"),
                    key=str(row.id).encode("utf-8"),
                    on_delivery=on_delivery,
                )
                undelivered = self.producer.flush(self.flush_timeout)
            except (KafkaException, BufferError) as e:
                self._mark_failed(row, str(e))
                continue

            if undelivered:
                logger.warning(f"Kafka did not acknowledge outbox row {row.id} within {self.flush_timeout}s; "
                               f"retrying on the next pass", extra={"outbox_id": row.id, "topic": row.topic})
                break
            if delivery_errors:
                self._mark_failed(row, delivery_errors[0])
                continue

            self._mark_sent(row)
            sent += 1

        if sent:
            logger.info(f"Published {sent} outbox rows")
        return sent

    def run(self, poll_interval: float = 0.5) -> None:
        logger.info("Outbox worker started")
        while True:
            try:
                sent = self.drain_once()
            except KafkaException as e:
                logger.error(f"Outbox batch failed: {e}")
                sent = 0
            if sent < self.batch_size:
                time.sleep(poll_interval)


def main(settings: Optional[Settings] = None) -> None:
    cfg = settings or default_settings
    db = connect(settings=cfg)
    worker = OutboxWorker(
        db,
        create_producer(cfg),
        batch_size=cfg.outbox_batch_size,
        flush_timeout=cfg.outbox_flush_timeout,
        max_attempts=cfg.outbox_max_attempts,
    )
    try:
        worker.run(cfg.outbox_poll_interval)
    except KeyboardInterrupt:
        logger.info("Outbox worker stopped")
    finally:
        db.dispose()


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    main()
