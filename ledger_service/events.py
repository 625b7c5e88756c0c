"""Transactional outbox writes. Rows are published by outbox_worker."""
from pydantic import BaseModel
from sqlalchemy.orm import Session

from common.kafka import TOPIC_LEDGER_EVENTS, TOPIC_LEDGER_REVIEW
from common.schemas import LedgerEvent, ReviewRequest
from ledger_service.models import Outbox


def enqueue(session: Session, topic: str, message: BaseModel) -> Outbox:
    row = Outbox(topic=topic, payload=message.model_dump_json())
    session.add(row)
    return row


def emit(session: Session, event: LedgerEvent) -> Outbox:
    return enqueue(session, TOPIC_LEDGER_EVENTS, event)


def request_review(session: Session, request: ReviewRequest) -> Outbox:
    return enqueue(session, TOPIC_LEDGER_REVIEW, request)
