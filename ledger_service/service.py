"""
MarketplaceLedger: the ledger's entry points for the order service, the
vendor dashboard and the payment-rail webhook.

Each operation is one unit of work on the shared Database. Failures that mean
the books need a human (settlement and balance underflows) are logged and
queued on the review topic in a separate transaction, since the failing unit
of work has already rolled back.
"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import Callable, List, Optional, TypeVar, Union

from sqlalchemy.orm import Session

from common.errors import (
    REVIEW_ERRORS, BusinessLogicError, InvalidInputError, NotFoundError,
)
from common.schemas import LedgerEvent, ReviewRequest
from common.settings import Settings, settings as default_settings
from ledger_service import events
from ledger_service.balances import BalanceAggregator, BalanceEffect, ReconciliationReport
from ledger_service.bank_accounts import BankAccountRegistry
from ledger_service.db import Database
from ledger_service.fees import CommissionDirectory, compute_settlement
from ledger_service.ledger import SettlementRecord, TransactionFilter, TransactionLedger
from ledger_service.models import (
    BankAccount, HolderType, PaymentStatus, Payout, Transaction, TransactionType,
    VendorBalance, VendorCommission,
)
from ledger_service.payment_rail import OfflinePaymentRail, PaymentRail
from ledger_service.payouts import PayoutOutcome, PayoutProcessor
from ledger_service.schemas import OrderSettled, OrderStatusChanged

logger = logging.getLogger(__name__)

T = TypeVar("T")


class MarketplaceLedger:
    def __init__(self, db: Database, rail: Optional[PaymentRail] = None, settings: Optional[Settings] = None):
        self.db = db
        self.settings = settings or default_settings
        self.currency = self.settings.ledger_currency
        self.commissions = CommissionDirectory(self.settings.default_commission_percent)
        self.ledger = TransactionLedger(self.currency)
        self.balances = BalanceAggregator(self.ledger, self.currency)
        self.bank_accounts = BankAccountRegistry()
        self.payouts = PayoutProcessor(
            db,
            self.balances,
            self.ledger,
            self.bank_accounts,
            rail or OfflinePaymentRail(),
            self.settings,
        )

    def _run(self, work: Callable[[Session], T], operation: str, **context) -> T:
        """Run a unit of work, logging failures and escalating the ones that need review."""
        try:
            return self.db.run_in_transaction(work, operation, **context)
        except REVIEW_ERRORS as e:
            e.context = {**context, **e.context}
            logger.error(f"{operation} needs review: {e.message}", extra={"operation": operation, **e.context})
            self._request_review(e, operation, context.get("vendor_id"), e.context)
            raise
        except BusinessLogicError as e:
            e.context = {**context, **e.context}
            logger.warning(f"{operation} rejected: {e.message}", extra={
                "operation": operation,
                "error_code": e.code,
                **context,
            })
            raise

    def _request_review(self, error: BusinessLogicError, operation: str, vendor_id: Optional[str], details: dict) -> None:
        request = ReviewRequest(
            code=error.code,
            message=error.message,
            operation=operation,
            vendor_id=vendor_id,
            context={key: _jsonable(value) for key, value in details.items()},
        )
        with self.db.transaction() as session:
            events.request_review(session, request)

    # -- orders -------------------------------------------------------------

    def settle_order(self, order: OrderSettled) -> SettlementRecord:
        """Book a paid order: platform fee, sale and fee lines, pending earnings.

        Settling the same order again returns the original record with
        ``created=False`` and changes nothing.
        """
        context = {"vendor_id": order.vendor_id, "order_id": order.id,
                   "order_amount": order.total, "shipping_amount": order.shipping}
        if order.payment_status != PaymentStatus.SUCCEEDED:
            raise InvalidInputError(
                f"Order {order.id} cannot be settled with payment status {order.payment_status.value}",
                field="payment_status", context=context,
            )

        def work(session: Session) -> SettlementRecord:
            existing = self.ledger.find_settlement(session, order.id)
            if existing is not None:
                return existing

            rate = self.commissions.rate_for(session, order.vendor_id)
            settlement = compute_settlement(order.total, order.shipping, rate)
            # a racing settlement of the same order fails on the fee's unique key and rolls this back
            snapshot = self.balances.apply_settlement(session, order.vendor_id, order, settlement)
            record = self.ledger.record_settlement(session, order, settlement, rate, balance_snapshot=snapshot)
            events.emit(session, LedgerEvent(
                type="SettlementRecorded",
                vendor_id=order.vendor_id,
                order_id=order.id,
                amount=settlement.vendor_earnings,
                currency=record.fee.currency,
            ))
            return record

        record = self._run(work, "settle_order", **context)
        if record.fee.vendor_id != order.vendor_id:
            logger.warning(f"Order {order.id} was settled earlier for vendor {record.fee.vendor_id}", extra=context)
        return record

    def change_order_status(self, change: OrderStatusChanged) -> BalanceEffect:
        context = {"vendor_id": change.vendor_id, "order_id": change.order_id,
                   "old_status": change.old_status.value, "new_status": change.new_status.value}

        def work(session: Session) -> BalanceEffect:
            return self.balances.apply_order_status_change(
                session, change.vendor_id, change.order_id, change.old_status, change.new_status,
            )

        return self._run(work, "change_order_status", **context)

    def refund_order(self, vendor_id: str, order_id: str) -> BalanceEffect:
        def work(session: Session) -> BalanceEffect:
            return self.balances.reverse_order(session, vendor_id, order_id)

        return self._run(work, "refund_order", vendor_id=vendor_id, order_id=order_id)

    # -- vendor views ------------------------------------------------------------

    def get_vendor_balance(self, vendor_id: str) -> VendorBalance:
        with self.db.session() as session:
            balance = self.balances.get_balance(session, vendor_id)
        if balance is None:
            raise NotFoundError(f"No balance for vendor {vendor_id}", field="vendor_id",
                                context={"vendor_id": vendor_id})
        return balance

    def list_transactions(
        self,
        vendor_id: str,
        type: Optional[TransactionType] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        order_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Transaction]:
        if start is not None and end is not None and start >= end:
            raise InvalidInputError("start must be before end", field="start",
                                    context={"vendor_id": vendor_id})
        if limit is not None and limit <= 0:
            raise InvalidInputError("limit must be positive", field="limit", context={"vendor_id": vendor_id})

        with self.db.session() as session:
            return self.ledger.list_transactions(
                session, vendor_id, TransactionFilter(type=type, start=start, end=end, order_id=order_id, limit=limit),
            )

    def reconcile(self, vendor_id: str) -> ReconciliationReport:
        with self.db.session() as session:
            return self.balances.reconcile(session, vendor_id)

    def set_commission(self, vendor_id: str, commission_percent: Union[int, float, Decimal]) -> VendorCommission:
        def work(session: Session) -> VendorCommission:
            return self.commissions.set_rate(session, vendor_id, commission_percent)

        row = self._run(work, "set_commission", vendor_id=vendor_id)
        logger.info(f"Commission for vendor {vendor_id} set to {row.commission_percent}%", extra={
            "vendor_id": vendor_id,
        })
        return row

    # -- payouts -------------------------------------------------------------

    def request_payout(
        self,
        vendor_id: str,
        fraction: Optional[Union[float, Decimal]] = None,
        bank_account_id: Optional[str] = None,
    ) -> Payout:
        """Create a payout for the vendor and hand it to the rail."""
        payout = self.payouts.create_payout(vendor_id, bank_account_id=bank_account_id, fraction=fraction)
        return self.payouts.submit_payout(payout.id)

    def confirm_payout(self, payout_id: str, outcome: Union[PayoutOutcome, str], reason: Optional[str] = None) -> Payout:
        try:
            return self.payouts.confirm_payout(payout_id, outcome, reason=reason)
        except REVIEW_ERRORS as e:
            logger.error(f"confirm_payout needs review: {e.message}", extra={"payout_id": payout_id, **e.context})
            self._request_review(e, "confirm_payout", e.context.get("vendor_id"), {"payout_id": payout_id, **e.context})
            raise

    def list_payouts(self, vendor_id: str) -> List[Payout]:
        return self.payouts.list_payouts(vendor_id)

    def run_payout_cycle(self, fraction: Optional[Union[float, Decimal]] = None) -> List[Payout]:
        return self.payouts.run_payout_cycle(fraction=fraction)

    # -- bank accounts ----------------------------------------------------------

    def add_bank_account(
        self,
        vendor_id: str,
        holder_name: str,
        bank_name: str,
        last4: str,
        currency: Optional[str] = None,
        country: str = "MX",
        holder_type: HolderType = HolderType.COMPANY,
        make_default: bool = False,
    ) -> BankAccount:
        def work(session: Session) -> BankAccount:
            return self.bank_accounts.add_account(
                session, vendor_id, holder_name, bank_name, last4,
                currency or self.currency, country,
                holder_type=holder_type, make_default=make_default,
            )

        return self._run(work, "add_bank_account", vendor_id=vendor_id)

    def verify_bank_account(self, vendor_id: str, account_id: str) -> BankAccount:
        def work(session: Session) -> BankAccount:
            return self.bank_accounts.verify(session, vendor_id, account_id)

        return self._run(work, "verify_bank_account", vendor_id=vendor_id, bank_account_id=account_id)

    def set_default_bank_account(self, vendor_id: str, account_id: str) -> BankAccount:
        def work(session: Session) -> BankAccount:
            return self.bank_accounts.set_default(session, vendor_id, account_id)

        return self._run(work, "set_default_bank_account", vendor_id=vendor_id, bank_account_id=account_id)

    def get_default_bank_account(self, vendor_id: str) -> BankAccount:
        with self.db.session() as session:
            account = self.bank_accounts.get_default(session, vendor_id)
        if account is None:
            raise NotFoundError(f"Vendor {vendor_id} has no default bank account", field="vendor_id",
                                context={"vendor_id": vendor_id})
        return account


def _jsonable(value):
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return str(value)
