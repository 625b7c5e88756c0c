"""
Append-only transaction ledger.

The ledger owns PlatformFee creation and every Transaction row. Rows are
written inside the caller's unit of work; the ledger never commits. Lines are
never changed after insert: corrections are compensating lines that point at
the line they reverse through ``reverses_id``.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import event, select
from sqlalchemy.orm import Session

from ledger_service.fees import SettlementResult
from ledger_service.models import (
    BankAccount, FeeStatus, Payout, PlatformFee, Transaction, TransactionStatus,
    TransactionType, utcnow,
)
from ledger_service.schemas import OrderSettled

logger = logging.getLogger(__name__)


class ImmutableLedgerError(Exception):
    """Raised when code tries to change or remove a written ledger line."""


@event.listens_for(Transaction, "before_update")
def _reject_update(mapper, connection, target):
    raise ImmutableLedgerError(f"Ledger line {target.id} is append-only")


@event.listens_for(Transaction, "before_delete")
def _reject_delete(mapper, connection, target):
    raise ImmutableLedgerError(f"Ledger line {target.id} is append-only")


@dataclass
class SettlementRecord:
    fee: PlatformFee
    sale: Transaction
    fee_line: Transaction
    created: bool


@dataclass
class TransactionFilter:
    type: Optional[TransactionType] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    order_id: Optional[str] = None
    limit: Optional[int] = None


class TransactionLedger:
    def __init__(self, currency: str):
        self.currency = currency

    def find_settlement(self, session: Session, order_id: str, for_update: bool = False) -> Optional[SettlementRecord]:
        """Load an order's fee and its sale/fee lines.

        With ``for_update`` the fee row is locked and re-read from the database
        even when the session already holds a copy of it.
        """
        query = select(PlatformFee).where(PlatformFee.order_id == order_id)
        if for_update:
            query = query.with_for_update().execution_options(populate_existing=True)
        fee = session.scalars(query).first()
        if fee is None:
            return None

        lines = session.scalars(
            select(Transaction)
            .where(
                Transaction.order_id == order_id,
                Transaction.reverses_id.is_(None),
                Transaction.type.in_([TransactionType.SALE, TransactionType.FEE]),
            )
            .order_by(Transaction.id)
        ).all()
        sale = next(line for line in lines if line.type == TransactionType.SALE)
        fee_line = next(line for line in lines if line.type == TransactionType.FEE)
        return SettlementRecord(fee=fee, sale=sale, fee_line=fee_line, created=False)

    def record_settlement(
        self,
        session: Session,
        order: OrderSettled,
        settlement: SettlementResult,
        fee_percentage: Decimal,
        balance_snapshot: Optional[dict] = None,
    ) -> SettlementRecord:
        """Write the PlatformFee and its sale/fee lines, once per order.

        A second call for the same order returns the first result with
        ``created=False``. Two racing first calls are serialized by the unique
        key on platform_fees.order_id; the loser's unit of work fails with
        IntegrityError and its retry takes the early-return path.
        """
        existing = self.find_settlement(session, order.id)
        if existing is not None:
            logger.info(f"Order {order.id} already settled, returning existing fee {existing.fee.id}", extra={
                "order_id": order.id,
                "vendor_id": existing.fee.vendor_id,
            })
            return existing

        now = utcnow()
        currency = order.currency or self.currency
        fee = PlatformFee(
            order_id=order.id,
            vendor_id=order.vendor_id,
            order_amount=order.total,
            shipping_amount=order.shipping,
            fee_percentage=fee_percentage,
            fee_amount=settlement.fee_amount,
            vendor_earnings=settlement.vendor_earnings,
            currency=currency,
            status=FeeStatus.PENDING,
            created_at=now,
        )
        # sale + fee nets to vendor_earnings; shipping is not vendor revenue
        sale = Transaction(
            vendor_id=order.vendor_id,
            order_id=order.id,
            type=TransactionType.SALE,
            amount=order.total - order.shipping,
            currency=currency,
            status=TransactionStatus.COMPLETED,
            description=f"Sale - order {order.id}",
            balance_snapshot=balance_snapshot,
            created_at=now,
            completed_at=now,
        )
        fee_line = Transaction(
            vendor_id=order.vendor_id,
            order_id=order.id,
            type=TransactionType.FEE,
            amount=-settlement.fee_amount,
            currency=currency,
            status=TransactionStatus.COMPLETED,
            description=f"Platform commission ({fee_percentage.normalize():f}%) - order {order.id}",
            balance_snapshot=balance_snapshot,
            created_at=now,
            completed_at=now,
        )
        session.add_all([fee, sale, fee_line])
        session.flush()

        logger.info(f"Recorded settlement for order {order.id}: fee {settlement.fee_amount}, earnings {settlement.vendor_earnings}", extra={
            "order_id": order.id,
            "vendor_id": order.vendor_id,
            "order_amount": order.total,
        })
        return SettlementRecord(fee=fee, sale=sale, fee_line=fee_line, created=True)

    def record_reversal(self, session: Session, record: SettlementRecord, reason: str,
                        balance_snapshot: Optional[dict] = None) -> List[Transaction]:
        """Append compensating lines for a settlement; they net to -vendor_earnings."""
        now = utcnow()
        lines = [
            Transaction(
                vendor_id=original.vendor_id,
                order_id=original.order_id,
                reverses_id=original.id,
                type=original.type,
                amount=-original.amount,
                currency=original.currency,
                status=TransactionStatus.COMPLETED,
                description=f"Reversal ({reason}) of line {original.id} - order {original.order_id}",
                balance_snapshot=balance_snapshot,
                created_at=now,
                completed_at=now,
            )
            for original in (record.sale, record.fee_line)
        ]
        session.add_all(lines)
        session.flush()
        return lines

    def find_payout_line(self, session: Session, payout_id: str) -> Optional[Transaction]:
        return session.scalars(
            select(Transaction).where(
                Transaction.payout_id == payout_id,
                Transaction.type == TransactionType.PAYOUT,
                Transaction.reverses_id.is_(None),
            )
        ).first()

    def record_payout(self, session: Session, payout: Payout, destination: Optional[BankAccount] = None,
                      balance_snapshot: Optional[dict] = None) -> Transaction:
        """Append the payout line; idempotent per payout id."""
        existing = self.find_payout_line(session, payout.id)
        if existing is not None:
            return existing

        now = utcnow()
        if destination is not None:
            description = f"Payout to bank account ****{destination.last4}"
        else:
            description = f"Payout {payout.id}"
        line = Transaction(
            vendor_id=payout.vendor_id,
            payout_id=payout.id,
            type=TransactionType.PAYOUT,
            amount=-payout.amount,
            currency=payout.currency,
            status=TransactionStatus.COMPLETED,
            description=description,
            balance_snapshot=balance_snapshot,
            created_at=now,
            completed_at=now,
        )
        session.add(line)
        session.flush()
        return line

    def list_transactions(self, session: Session, vendor_id: str, filter: Optional[TransactionFilter] = None) -> List[Transaction]:
        filter = filter or TransactionFilter()
        query = select(Transaction).where(Transaction.vendor_id == vendor_id)
        if filter.type is not None:
            query = query.where(Transaction.type == filter.type)
        if filter.order_id is not None:
            query = query.where(Transaction.order_id == filter.order_id)
        if filter.start is not None:
            query = query.where(Transaction.created_at >= filter.start)
        if filter.end is not None:
            query = query.where(Transaction.created_at < filter.end)
        query = query.order_by(Transaction.created_at, Transaction.id)
        if filter.limit is not None:
            query = query.limit(filter.limit)
        return list(session.scalars(query).all())
