from confluent_kafka import Producer
from common.settings import Settings

def create_producer(settings: Settings) -> Producer:
    return Producer({"bootstrap.servers": settings.kafka_bootstrap, "enable.idempotence": True})

TOPIC_LEDGER_EVENTS = "ledger_events"
TOPIC_LEDGER_REVIEW = "ledger_review"
