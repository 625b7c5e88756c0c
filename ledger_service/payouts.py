"""
Payout engine.

A payout moves through pending -> processing -> paid, or ends in failed from
pending or processing. Creating a payout reserves the amount out of the
vendor's available balance in the same unit of work as the Payout insert.
Only the paid branch writes a ledger line; the failed branch returns the
reserved amount to available. A payout whose submission got no definite
answer from the rail stays pending and reserved.
"""
import enum
import logging
from decimal import Decimal
from typing import List, Optional, Union

from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from common.circuit_breaker import CircuitBreakerException
from common.errors import (
    BusinessLogicError, InsufficientBalanceError, InvalidInputError,
    InvalidTransitionError, NotFoundError, PaymentRailUnavailableError, ServiceError,
)
from common.schemas import LedgerEvent
from common.settings import Settings
from ledger_service import events
from ledger_service.balances import BalanceAggregator
from ledger_service.bank_accounts import BankAccountRegistry
from ledger_service.db import Database
from ledger_service.fees import round_half_up, to_decimal
from ledger_service.ledger import TransactionLedger
from ledger_service.models import (
    BankAccount, Payout, PayoutStatus, VendorBalance, new_id, require_exhaustive, utcnow,
)
from ledger_service.payment_rail import PaymentRail

logger = logging.getLogger(__name__)

PAYOUT_TRANSITIONS = require_exhaustive({
    PayoutStatus.PENDING: frozenset({PayoutStatus.PROCESSING, PayoutStatus.FAILED}),
    PayoutStatus.PROCESSING: frozenset({PayoutStatus.PAID, PayoutStatus.FAILED}),
    PayoutStatus.PAID: frozenset(),
    PayoutStatus.FAILED: frozenset(),
}, PayoutStatus)

ONE = Decimal(1)


class PayoutOutcome(str, enum.Enum):
    PAID = "paid"
    FAILED = "failed"


class PayoutProcessor:
    def __init__(
        self,
        db: Database,
        balances: BalanceAggregator,
        ledger: TransactionLedger,
        bank_accounts: BankAccountRegistry,
        rail: PaymentRail,
        settings: Settings,
    ):
        self.db = db
        self.balances = balances
        self.ledger = ledger
        self.bank_accounts = bank_accounts
        self.rail = rail
        self.min_threshold = settings.payout_min_threshold
        self.min_residual = settings.payout_min_residual
        self.default_fraction = settings.payout_default_fraction

    # -- amounts ---------------------------------------------------------------

    @staticmethod
    def _validate_fraction(fraction: Union[float, Decimal]) -> Decimal:
        value = to_decimal(fraction, "fraction")
        if value <= 0 or value > ONE:
            raise InvalidInputError("fraction must be greater than 0 and at most 1", field="fraction",
                                    context={"fraction": str(value)})
        return value

    def payout_amount(self, available: int, fraction: Decimal) -> int:
        """round_half_up(available * fraction), keeping min_residual behind unless fraction is 1."""
        if fraction == ONE:
            return available
        amount = round_half_up(Decimal(available) * fraction)
        return min(amount, available - self.min_residual)

    # -- selection and creation -----------------------------------------------

    def select_eligible_vendors(self, min_threshold: Optional[int] = None) -> List[str]:
        """Vendors at or above the threshold with a verified default account.

        Lock-free snapshot; create_payout re-checks inside its own unit of work.
        """
        threshold = self.min_threshold if min_threshold is None else min_threshold
        with self.db.session() as session:
            query = (
                select(VendorBalance.vendor_id)
                .join(BankAccount, and_(
                    BankAccount.vendor_id == VendorBalance.vendor_id,
                    BankAccount.is_default.is_(True),
                    BankAccount.verified_at.is_not(None),
                ))
                .where(VendorBalance.available_balance >= threshold)
                .order_by(VendorBalance.vendor_id)
            )
            return list(session.scalars(query).all())

    def create_payout(
        self,
        vendor_id: str,
        bank_account_id: Optional[str] = None,
        fraction: Optional[Union[float, Decimal]] = None,
        min_threshold: Optional[int] = None,
    ) -> Payout:
        """Reserve a payout out of available; manual requests and the cycle share the threshold."""
        fraction = self._validate_fraction(self.default_fraction if fraction is None else fraction)
        threshold = self.min_threshold if min_threshold is None else min_threshold
        context = {"vendor_id": vendor_id, "bank_account_id": bank_account_id, "fraction": str(fraction)}

        def work(session: Session) -> Payout:
            destination = self.bank_accounts.require_payout_destination(session, vendor_id, bank_account_id)
            balance = self.balances.get_balance(session, vendor_id, for_update=True)
            available = balance.available_balance if balance is not None else 0

            if available < threshold:
                raise InsufficientBalanceError(
                    f"Available balance {available} is below the payout threshold {threshold}",
                    context={**context, "available": available, "threshold": threshold},
                )

            amount = self.payout_amount(available, fraction)
            if amount <= 0:
                raise InsufficientBalanceError(
                    f"Available balance {available} leaves nothing to pay out",
                    context={**context, "available": available, "residual": self.min_residual},
                )

            payout = Payout(
                id=new_id(),
                vendor_id=vendor_id,
                amount=amount,
                currency=balance.currency,
                status=PayoutStatus.PENDING,
                method="bank_transfer",
                bank_account_id=destination.id,
            )
            self.balances.apply_payout(session, vendor_id, amount, payout_id=payout.id)
            session.add(payout)
            events.emit(session, LedgerEvent(
                type="PayoutCreated",
                vendor_id=vendor_id,
                payout_id=payout.id,
                amount=amount,
                currency=payout.currency,
                status=PayoutStatus.PENDING.value,
            ))
            session.flush()
            return payout

        try:
            payout = self.db.run_in_transaction(work, "create_payout", **context)
        except BusinessLogicError as e:
            logger.warning(f"Payout for vendor {vendor_id} rejected: {e.message}", extra={**context, **e.context})
            raise

        logger.info(f"Created payout {payout.id} of {payout.amount} for vendor {vendor_id}", extra={
            **context,
            "payout_id": payout.id,
            "amount": payout.amount,
        })
        return payout

    # -- state machine ----------------------------------------------------------

    def get_payout(self, payout_id: str) -> Payout:
        with self.db.session() as session:
            return self._require(session, payout_id)

    def list_payouts(self, vendor_id: str) -> List[Payout]:
        with self.db.session() as session:
            return list(session.scalars(
                select(Payout).where(Payout.vendor_id == vendor_id).order_by(Payout.created_at.desc())
            ).all())

    @staticmethod
    def _require(session: Session, payout_id: str, for_update: bool = False) -> Payout:
        query = select(Payout).where(Payout.id == payout_id)
        if for_update:
            query = query.with_for_update()
        payout = session.scalars(query).first()
        if payout is None:
            raise NotFoundError(f"Payout {payout_id} not found", field="payout_id", context={"payout_id": payout_id})
        return payout

    def _transition(self, payout_id: str, target: PayoutStatus, reference: Optional[str] = None,
                    reason: Optional[str] = None) -> Payout:
        def work(session: Session) -> Payout:
            payout = self._require(session, payout_id, for_update=True)
            if payout.status == target:
                return payout
            if target not in PAYOUT_TRANSITIONS[payout.status]:
                raise InvalidTransitionError(
                    f"Payout {payout_id} cannot move from {payout.status.value} to {target.value}",
                    field="status",
                    context={"payout_id": payout_id, "vendor_id": payout.vendor_id,
                             "from": payout.status.value, "to": target.value},
                )

            now = utcnow()
            if target == PayoutStatus.PROCESSING:
                payout.rail_reference = reference
                payout.processed_at = now
            elif target == PayoutStatus.PAID:
                destination = session.get(BankAccount, payout.bank_account_id)
                snapshot = self.balances.release_payout(session, payout.vendor_id, payout.amount, payout_id=payout.id)
                self.ledger.record_payout(session, payout, destination, balance_snapshot=snapshot)
                payout.paid_at = now
            elif target == PayoutStatus.FAILED:
                self.balances.restore_payout(session, payout.vendor_id, payout.amount, payout_id=payout.id)
                payout.failure_reason = (reason or "Payout failed")[:255]
                payout.failed_at = now

            payout.status = target
            events.emit(session, LedgerEvent(
                type="PayoutStatusChanged",
                vendor_id=payout.vendor_id,
                payout_id=payout.id,
                amount=payout.amount,
                currency=payout.currency,
                status=target.value,
                reason=reason,
            ))
            session.flush()
            return payout

        payout = self.db.run_in_transaction(work, f"payout_{target.value}", payout_id=payout_id)
        log = logger.warning if target == PayoutStatus.FAILED else logger.info
        log(f"Payout {payout_id} is {payout.status.value}", extra={
            "payout_id": payout_id,
            "vendor_id": payout.vendor_id,
            "amount": payout.amount,
            "reason": reason,
        })
        return payout

    def submit_payout(self, payout_id: str, resubmission: bool = False) -> Payout:
        """Hand a pending payout to the rail.

        A definite refusal fails the payout and returns its amount to
        available. When the rail's answer is unknown the payout stays pending
        with the amount reserved, until the confirmation webhook or
        resubmit_pending settles it.
        """
        with self.db.session() as session:
            payout = self._require(session, payout_id)
            if payout.status != PayoutStatus.PENDING:
                return payout
            destination = session.get(BankAccount, payout.bank_account_id)

        context = {"payout_id": payout_id, "vendor_id": payout.vendor_id, "amount": payout.amount}
        try:
            reference = self.rail.submit(payout, destination)
        except ServiceError as e:
            if self._outcome_unknown(e, resubmission):
                logger.warning(f"No answer from the payment rail for payout {payout_id}, keeping it pending: {e.message}",
                               extra={**context, "error_code": e.code})
                return payout
            logger.error(f"Payment rail refused payout {payout_id}: {e.message}", extra={**context, **e.context})
            return self.mark_failed(payout_id, reason=e.message)

        return self._transition(payout_id, PayoutStatus.PROCESSING, reference=reference)

    @staticmethod
    def _outcome_unknown(error: ServiceError, resubmission: bool) -> bool:
        if isinstance(error, PaymentRailUnavailableError):
            return True
        # an open breaker sent nothing now, but an earlier attempt may have reached the rail
        return resubmission and isinstance(error, CircuitBreakerException)

    def resubmit_pending(self) -> List[Payout]:
        """Submit again every payout still pending; the rail deduplicates on the payout id."""
        with self.db.session() as session:
            payout_ids = list(session.scalars(
                select(Payout.id).where(Payout.status == PayoutStatus.PENDING).order_by(Payout.created_at)
            ).all())
        if payout_ids:
            logger.info(f"Resubmitting {len(payout_ids)} pending payouts")

        resubmitted = []
        for payout_id in payout_ids:
            try:
                resubmitted.append(self.submit_payout(payout_id, resubmission=True))
            except (BusinessLogicError, ServiceError) as e:
                logger.warning(f"Could not resubmit payout {payout_id}: {e}", extra={
                    "payout_id": payout_id,
                    "error_code": e.code,
                })
        return resubmitted

    def mark_paid(self, payout_id: str) -> Payout:
        return self._transition(payout_id, PayoutStatus.PAID)

    def mark_failed(self, payout_id: str, reason: Optional[str] = None) -> Payout:
        return self._transition(payout_id, PayoutStatus.FAILED, reason=reason)

    def confirm_payout(self, payout_id: str, outcome: Union[PayoutOutcome, str], reason: Optional[str] = None) -> Payout:
        """Apply the rail's final answer. Re-delivered confirmations are no-ops."""
        try:
            outcome = PayoutOutcome(outcome)
        except ValueError:
            raise InvalidInputError(f"Unknown payout outcome {outcome!r}", field="outcome",
                                    context={"payout_id": payout_id})

        if outcome is PayoutOutcome.FAILED:
            return self.mark_failed(payout_id, reason=reason)

        payout = self.get_payout(payout_id)
        if payout.status == PayoutStatus.PENDING:
            # the rail answered before our submission bookkeeping did
            self._transition(payout_id, PayoutStatus.PROCESSING)
        return self.mark_paid(payout_id)

    # -- periodic cycle ----------------------------------------------------------

    def run_payout_cycle(self, fraction: Optional[Union[float, Decimal]] = None,
                         min_threshold: Optional[int] = None) -> List[Payout]:
        """Retry payouts still waiting on the rail, then pay out every eligible vendor.

        Returns the payouts created in this run.
        """
        self.resubmit_pending()
        threshold = self.min_threshold if min_threshold is None else min_threshold
        candidates = self.select_eligible_vendors(threshold)
        logger.info(f"Payout cycle: {len(candidates)} eligible vendors at threshold {threshold}")

        submitted = []
        for vendor_id in candidates:
            try:
                payout = self.create_payout(vendor_id, fraction=fraction, min_threshold=threshold)
                submitted.append(self.submit_payout(payout.id))
            except (BusinessLogicError, ServiceError) as e:
                logger.warning(f"Skipping vendor {vendor_id} in payout cycle: {e}", extra={
                    "vendor_id": vendor_id,
                    "error_code": e.code,
                })
        return submitted
