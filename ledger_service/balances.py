"""
Vendor balance aggregation.

BalanceAggregator is the only writer of VendorBalance. Every method takes the
caller's session and mutates the vendor row after reading it with
``SELECT ... FOR UPDATE``; the row's version column turns a lost race on
databases without row locks into StaleDataError, which the unit of work
retries. A change that would leave any balance negative raises
BalanceUnderflowError and nothing is written. Every mutator returns the
balance snapshot (before and after) that the ledger stores on the lines
written for the same change.

Order status changes lock the vendor row before reading the order's fee, so
the fee state that decides the effect cannot change underneath them.

Earnings move through the balances like this::

    settlement        -> pending   (+ lifetime_volume)
    delivered         -> pending   => available
    cancelled/refund  -> removed from pending or available
    payout created    -> available => reserved
    payout paid       -> reserved removed
    payout failed     -> reserved  => available
"""
import enum
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from common.errors import (
    BalanceUnderflowError, InsufficientBalanceError, InvalidInputError,
    InvalidTransitionError, NotFoundError,
)
from common.schemas import LedgerEvent
from ledger_service import events
from ledger_service.fees import SettlementResult
from ledger_service.ledger import SettlementRecord, TransactionLedger
from ledger_service.models import (
    FeeStatus, OrderStatus, Payout, PayoutStatus, PlatformFee, Transaction,
    VendorBalance, require_exhaustive, utcnow,
)
from ledger_service.schemas import OrderSettled

logger = logging.getLogger(__name__)

BALANCE_FIELDS = ("available_balance", "pending_balance", "reserved_balance", "lifetime_volume")

# snapshot key -> VendorBalance column
SNAPSHOT_FIELDS = {"available": "available_balance", "pending": "pending_balance", "reserved": "reserved_balance"}


class BalanceEffect(str, enum.Enum):
    NONE = "none"
    RELEASE = "release"   # pending -> available
    REVERSE = "reverse"   # earnings removed


STATUS_EFFECTS = require_exhaustive({
    OrderStatus.PENDING: BalanceEffect.NONE,
    OrderStatus.PROCESSING: BalanceEffect.NONE,
    OrderStatus.SHIPPED: BalanceEffect.NONE,
    OrderStatus.DELIVERED: BalanceEffect.RELEASE,
    OrderStatus.CANCELLED: BalanceEffect.REVERSE,
}, OrderStatus)

CANCELLABLE_FROM = frozenset({OrderStatus.PENDING, OrderStatus.PROCESSING, OrderStatus.SHIPPED})


@dataclass
class ReconciliationReport:
    vendor_id: str
    stored: Dict[str, int]
    expected: Dict[str, int]
    differences: Dict[str, int] = field(default_factory=dict)

    @property
    def consistent(self) -> bool:
        return not self.differences


class BalanceAggregator:
    def __init__(self, ledger: TransactionLedger, currency: str):
        self.ledger = ledger
        self.currency = currency

    # -- row access -------------------------------------------------------

    def get_balance(self, session: Session, vendor_id: str, for_update: bool = False) -> Optional[VendorBalance]:
        query = select(VendorBalance).where(VendorBalance.vendor_id == vendor_id)
        if for_update:
            query = query.with_for_update()
        return session.scalars(query).first()

    def _require_balance(self, session: Session, vendor_id: str) -> VendorBalance:
        balance = self.get_balance(session, vendor_id, for_update=True)
        if balance is None:
            raise NotFoundError(f"No balance for vendor {vendor_id}", field="vendor_id",
                                context={"vendor_id": vendor_id})
        return balance

    @staticmethod
    def _snapshot(balance: VendorBalance) -> Dict[str, int]:
        return {key: getattr(balance, name) for key, name in SNAPSHOT_FIELDS.items()}

    def _apply(self, balance: VendorBalance, operation: str, context: dict, **deltas: int) -> Dict[str, Dict[str, int]]:
        """Apply signed deltas to a locked row, all or nothing.

        Returns ``{"before": {...}, "after": {...}}`` with the available,
        pending and reserved balances around the change.
        """
        before = self._snapshot(balance)
        updated = {}
        for name, delta in deltas.items():
            updated[name] = getattr(balance, name) + delta

        negative = {name: value for name, value in updated.items() if value < 0}
        if negative:
            details = {
                "vendor_id": balance.vendor_id,
                "operation": operation,
                "deltas": deltas,
                "current": {name: getattr(balance, name) for name in BALANCE_FIELDS},
                **context,
            }
            logger.error(f"Balance underflow for vendor {balance.vendor_id} during {operation}", extra=details)
            raise BalanceUnderflowError(
                f"{operation} would leave a negative balance for vendor {balance.vendor_id}",
                context=details,
            )

        for name, value in updated.items():
            setattr(balance, name, value)
        balance.last_updated = utcnow()
        return {"before": before, "after": self._snapshot(balance)}

    # -- settlement and order status ---------------------------------------

    def apply_settlement(self, session: Session, vendor_id: str, order: OrderSettled, settlement: SettlementResult) -> dict:
        """Add a settled order's earnings to pending, creating the vendor row on first sale."""
        if order.vendor_id != vendor_id:
            raise InvalidInputError("Order belongs to a different vendor", field="vendor_id",
                                    context={"vendor_id": vendor_id, "order_id": order.id})

        balance = self.get_balance(session, vendor_id, for_update=True)
        if balance is None:
            balance = VendorBalance(
                vendor_id=vendor_id,
                available_balance=0,
                pending_balance=0,
                reserved_balance=0,
                lifetime_volume=0,
                currency=order.currency or self.currency,
            )
            session.add(balance)

        earnings = settlement.vendor_earnings
        snapshot = self._apply(balance, "settlement", {"order_id": order.id},
                               pending_balance=earnings, lifetime_volume=earnings)
        session.flush()
        return snapshot

    def _settlement_for(self, session: Session, vendor_id: str, order_id: str) -> Optional[SettlementRecord]:
        # vendor row first, then the fee: same lock order as settlement
        self.get_balance(session, vendor_id, for_update=True)
        record = self.ledger.find_settlement(session, order_id, for_update=True)
        if record is not None and record.fee.vendor_id != vendor_id:
            raise InvalidInputError(f"Order {order_id} was settled for a different vendor", field="vendor_id",
                                    context={"vendor_id": vendor_id, "order_id": order_id,
                                             "settled_vendor_id": record.fee.vendor_id})
        return record

    def apply_order_status_change(
        self,
        session: Session,
        vendor_id: str,
        order_id: str,
        old_status: OrderStatus,
        new_status: OrderStatus,
    ) -> BalanceEffect:
        """Fold an order status change into the vendor's balances.

        Returns the effect that was applied; BalanceEffect.NONE covers both
        statuses without a money effect and repeated notifications.
        """
        if old_status == new_status:
            return BalanceEffect.NONE

        effect = STATUS_EFFECTS[new_status]
        if effect is BalanceEffect.NONE:
            return BalanceEffect.NONE

        context = {"vendor_id": vendor_id, "order_id": order_id,
                   "old_status": old_status.value, "new_status": new_status.value}

        if effect is BalanceEffect.REVERSE and old_status not in CANCELLABLE_FROM:
            raise InvalidTransitionError(
                f"Order {order_id} cannot be cancelled from {old_status.value}; use a refund",
                field="old_status", context=context,
            )

        record = self._settlement_for(session, vendor_id, order_id)
        if record is None:
            # Orders whose payment never succeeded have nothing on the books
            log = logger.info if effect is BalanceEffect.REVERSE else logger.warning
            log(f"No settlement for order {order_id}; {new_status.value} has no balance effect", extra=context)
            return BalanceEffect.NONE

        fee = record.fee
        if effect is BalanceEffect.RELEASE:
            if fee.is_reversed:
                raise InvalidTransitionError(f"Order {order_id} was already reversed", context=context)
            if fee.status == FeeStatus.COLLECTED:
                return BalanceEffect.NONE
            self._release(session, fee, context)
            return BalanceEffect.RELEASE

        if fee.is_reversed:
            return BalanceEffect.NONE
        if fee.status == FeeStatus.COLLECTED:
            raise InvalidTransitionError(
                f"Order {order_id} was delivered and cannot be cancelled; use a refund", context=context,
            )
        self._reverse(session, record, "cancelled", context)
        return BalanceEffect.REVERSE

    def reverse_order(self, session: Session, vendor_id: str, order_id: str) -> BalanceEffect:
        """Refund path: remove an order's earnings whether or not it was delivered."""
        context = {"vendor_id": vendor_id, "order_id": order_id}
        record = self._settlement_for(session, vendor_id, order_id)
        if record is None:
            raise NotFoundError(f"Order {order_id} has no settlement to refund", field="order_id", context=context)
        if record.fee.is_reversed:
            return BalanceEffect.NONE
        self._reverse(session, record, "refunded", context)
        return BalanceEffect.REVERSE

    def _release(self, session: Session, fee: PlatformFee, context: dict) -> None:
        balance = self._require_balance(session, fee.vendor_id)
        earnings = fee.vendor_earnings
        self._apply(balance, "delivery", context, pending_balance=-earnings, available_balance=earnings)
        fee.status = FeeStatus.COLLECTED
        fee.collected_at = utcnow()
        events.emit(session, LedgerEvent(
            type="EarningsReleased",
            vendor_id=fee.vendor_id,
            order_id=fee.order_id,
            amount=earnings,
            currency=fee.currency,
        ))
        session.flush()

    def _reverse(self, session: Session, record: SettlementRecord, reason: str, context: dict) -> None:
        fee = record.fee
        balance = self._require_balance(session, fee.vendor_id)
        earnings = fee.vendor_earnings
        if fee.status == FeeStatus.COLLECTED:
            snapshot = self._apply(balance, reason, context, available_balance=-earnings)
        else:
            snapshot = self._apply(balance, reason, context, pending_balance=-earnings)

        self.ledger.record_reversal(session, record, reason, balance_snapshot=snapshot)
        fee.reversed_at = utcnow()
        events.emit(session, LedgerEvent(
            type="OrderReversed",
            vendor_id=fee.vendor_id,
            order_id=fee.order_id,
            amount=earnings,
            currency=fee.currency,
            reason=reason,
        ))
        session.flush()
        logger.info(f"Reversed order {fee.order_id} ({reason}): -{earnings} for vendor {fee.vendor_id}", extra=context)

    # -- payouts ------------------------------------------------------------

    @staticmethod
    def _require_positive(amount, context: dict) -> int:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidInputError("Payout amount must be a positive integer", field="amount",
                                    context={**context, "amount": repr(amount)})
        return amount

    def apply_payout(self, session: Session, vendor_id: str, amount: int, payout_id: Optional[str] = None) -> dict:
        """Move ``amount`` from available to reserved, or fail without writing."""
        context = {"vendor_id": vendor_id, "payout_id": payout_id}
        amount = self._require_positive(amount, context)

        balance = self.get_balance(session, vendor_id, for_update=True)
        available = balance.available_balance if balance is not None else 0
        if balance is None or amount > available:
            logger.warning(f"Insufficient balance for vendor {vendor_id}: requested {amount}, available {available}",
                           extra={**context, "amount": amount, "available": available})
            raise InsufficientBalanceError(
                f"Payout of {amount} exceeds available balance {available}",
                field="amount",
                context={**context, "amount": amount, "available": available},
            )

        snapshot = self._apply(balance, "payout", context, available_balance=-amount, reserved_balance=amount)
        session.flush()
        return snapshot

    def release_payout(self, session: Session, vendor_id: str, amount: int, payout_id: Optional[str] = None) -> dict:
        """Paid: the reserved amount has left the platform."""
        context = {"vendor_id": vendor_id, "payout_id": payout_id}
        amount = self._require_positive(amount, context)
        balance = self._require_balance(session, vendor_id)
        snapshot = self._apply(balance, "payout_paid", context, reserved_balance=-amount)
        session.flush()
        return snapshot

    def restore_payout(self, session: Session, vendor_id: str, amount: int, payout_id: Optional[str] = None) -> dict:
        """Failed: the reserved amount goes back to available."""
        context = {"vendor_id": vendor_id, "payout_id": payout_id}
        amount = self._require_positive(amount, context)
        balance = self._require_balance(session, vendor_id)
        snapshot = self._apply(balance, "payout_failed", context, reserved_balance=-amount, available_balance=amount)
        session.flush()
        return snapshot

    # -- reconciliation -------------------------------------------------------

    def recompute(self, session: Session, vendor_id: str) -> Dict[str, int]:
        """Derive the expected balances from fees, payouts and the ledger."""
        fees = session.scalars(select(PlatformFee).where(PlatformFee.vendor_id == vendor_id)).all()
        payouts = session.scalars(select(Payout).where(Payout.vendor_id == vendor_id)).all()
        lines = session.scalars(select(Transaction).where(Transaction.vendor_id == vendor_id)).all()

        pending = sum(f.vendor_earnings for f in fees if f.status == FeeStatus.PENDING and not f.is_reversed)
        collected = sum(f.vendor_earnings for f in fees if f.status == FeeStatus.COLLECTED and not f.is_reversed)
        reserved = sum(p.amount for p in payouts if p.status in (PayoutStatus.PENDING, PayoutStatus.PROCESSING))
        paid = sum(p.amount for p in payouts if p.status == PayoutStatus.PAID)

        return {
            "available_balance": collected - reserved - paid,
            "pending_balance": pending,
            "reserved_balance": reserved,
            "lifetime_volume": sum(f.vendor_earnings for f in fees),
            # net of every ledger line: earnings still held plus reserved payouts
            "ledger_total": sum(line.amount for line in lines),
        }

    def reconcile(self, session: Session, vendor_id: str) -> ReconciliationReport:
        balance = self.get_balance(session, vendor_id)
        if balance is None:
            raise NotFoundError(f"No balance for vendor {vendor_id}", field="vendor_id",
                                context={"vendor_id": vendor_id})

        expected = self.recompute(session, vendor_id)
        stored = {name: getattr(balance, name) for name in BALANCE_FIELDS}
        stored["ledger_total"] = balance.available_balance + balance.pending_balance + balance.reserved_balance

        differences = {
            name: stored[name] - expected[name]
            for name in expected
            if stored[name] != expected[name]
        }
        report = ReconciliationReport(vendor_id=vendor_id, stored=stored, expected=expected, differences=differences)
        if differences:
            logger.error(f"Balance mismatch for vendor {vendor_id}: {differences}", extra={
                "vendor_id": vendor_id,
                "stored": stored,
                "expected": expected,
            })
        return report
