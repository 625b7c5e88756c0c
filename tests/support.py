"""Shared builders for the ledger tests."""
import json
from typing import List, Optional

from sqlalchemy import select

from common.settings import Settings
from ledger_service.db import Database, connect
from ledger_service.models import OrderStatus, Outbox
from ledger_service.schemas import OrderSettled, OrderStatusChanged
from ledger_service.service import MarketplaceLedger


class RecordingRail:
    """Payment rail double that records submissions or fails with a given error."""

    def __init__(self, fail_with: Optional[Exception] = None):
        self.fail_with = fail_with
        self.submitted = []

    def submit(self, payout, destination):
        if self.fail_with is not None:
            raise self.fail_with
        self.submitted.append((payout.id, destination.id))
        return f"rail-{len(self.submitted)}"


def make_settings(database_url: str = "sqlite://", **overrides) -> Settings:
    overrides.setdefault("balance_retry_base_delay", 0.001)
    return Settings(database_url=database_url, **overrides)


def make_ledger(database_url: str = "sqlite://", rail=None, **overrides) -> MarketplaceLedger:
    cfg = make_settings(database_url, **overrides)
    return MarketplaceLedger(connect(settings=cfg), rail=rail or RecordingRail(), settings=cfg)


def order(order_id: str, vendor_id: str = "vendor-1", total: int = 1000, shipping: int = 0, **fields) -> OrderSettled:
    return OrderSettled(id=order_id, vendor_id=vendor_id, total=total, shipping=shipping, **fields)


def status_change(order_id: str, old: OrderStatus, new: OrderStatus, vendor_id: str = "vendor-1") -> OrderStatusChanged:
    return OrderStatusChanged(order_id=order_id, vendor_id=vendor_id, old_status=old, new_status=new)


def deliver(ledger: MarketplaceLedger, order_id: str, vendor_id: str = "vendor-1"):
    return ledger.change_order_status(status_change(order_id, OrderStatus.SHIPPED, OrderStatus.DELIVERED, vendor_id))


def add_verified_account(ledger: MarketplaceLedger, vendor_id: str = "vendor-1", last4: str = "4321", **fields):
    account = ledger.add_bank_account(vendor_id, "Tienda Norte SA", "BBVA", last4, **fields)
    return ledger.verify_bank_account(vendor_id, account.id)


def fund_vendor(ledger: MarketplaceLedger, vendor_id: str, amount: int, order_id: Optional[str] = None) -> None:
    """Settle and deliver an order whose earnings equal ``amount`` at 0% commission."""
    order_id = order_id or f"fund-{vendor_id}-{amount}"
    ledger.set_commission(vendor_id, 0)
    ledger.settle_order(order(order_id, vendor_id=vendor_id, total=amount))
    deliver(ledger, order_id, vendor_id)


def outbox_messages(db: Database, topic: Optional[str] = None) -> List[dict]:
    with db.session() as session:
        query = select(Outbox).order_by(Outbox.id)
        if topic is not None:
            query = query.where(Outbox.topic == topic)
        return [json.loads(row.payload) for row in session.scalars(query).all()]
