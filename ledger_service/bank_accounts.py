import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from common.errors import InvalidInputError, NoVerifiedAccountError, NotFoundError
from ledger_service.models import BankAccount, HolderType, utcnow

logger = logging.getLogger(__name__)


class BankAccountRegistry:
    """Vendor payout destinations; at most one default account per vendor."""

    def add_account(
        self,
        session: Session,
        vendor_id: str,
        holder_name: str,
        bank_name: str,
        last4: str,
        currency: str,
        country: str,
        holder_type: HolderType = HolderType.COMPANY,
        verified_at: Optional[datetime] = None,
        make_default: bool = False,
    ) -> BankAccount:
        if not (isinstance(last4, str) and len(last4) == 4 and last4.isdigit()):
            raise InvalidInputError("last4 must be four digits", field="last4", context={"vendor_id": vendor_id})

        account = BankAccount(
            vendor_id=vendor_id,
            holder_name=holder_name,
            holder_type=holder_type,
            bank_name=bank_name,
            last4=last4,
            currency=currency,
            country=country,
            is_default=False,
            verified_at=verified_at,
        )
        session.add(account)
        session.flush()

        if make_default or self.get_default(session, vendor_id) is None:
            self.set_default(session, vendor_id, account.id)
        return account

    def get_account(self, session: Session, account_id: str) -> BankAccount:
        account = session.get(BankAccount, account_id)
        if account is None:
            raise NotFoundError(f"Bank account {account_id} not found", field="bank_account_id",
                                context={"bank_account_id": account_id})
        return account

    def list_accounts(self, session: Session, vendor_id: str) -> List[BankAccount]:
        return list(session.scalars(
            select(BankAccount).where(BankAccount.vendor_id == vendor_id).order_by(BankAccount.created_at)
        ).all())

    def _owned(self, session: Session, vendor_id: str, account_id: str) -> BankAccount:
        account = self.get_account(session, account_id)
        if account.vendor_id != vendor_id:
            raise InvalidInputError("Bank account belongs to a different vendor", field="bank_account_id",
                                    context={"vendor_id": vendor_id, "bank_account_id": account_id})
        return account

    def verify(self, session: Session, vendor_id: str, account_id: str) -> BankAccount:
        account = self._owned(session, vendor_id, account_id)
        if account.verified_at is None:
            account.verified_at = utcnow()
            session.flush()
            logger.info(f"Verified bank account ****{account.last4} for vendor {vendor_id}",
                        extra={"vendor_id": vendor_id, "bank_account_id": account_id})
        return account

    def set_default(self, session: Session, vendor_id: str, account_id: str) -> BankAccount:
        """Make ``account_id`` the vendor's only default, in the caller's unit of work."""
        account = self._owned(session, vendor_id, account_id)
        if account.is_default:
            return account

        # Clear first so the partial unique index never sees two defaults
        session.execute(
            update(BankAccount)
            .where(BankAccount.vendor_id == vendor_id, BankAccount.is_default.is_(True))
            .values(is_default=False)
            .execution_options(synchronize_session="fetch")
        )
        account.is_default = True
        session.flush()
        logger.info(f"Default bank account for vendor {vendor_id} is now ****{account.last4}",
                    extra={"vendor_id": vendor_id, "bank_account_id": account_id})
        return account

    def get_default(self, session: Session, vendor_id: str) -> Optional[BankAccount]:
        return session.scalars(
            select(BankAccount).where(BankAccount.vendor_id == vendor_id, BankAccount.is_default.is_(True))
        ).first()

    def require_payout_destination(self, session: Session, vendor_id: str, account_id: Optional[str] = None) -> BankAccount:
        """Return a verified account to pay into: the requested one or the default."""
        if account_id is None:
            account = self.get_default(session, vendor_id)
            if account is None:
                raise NoVerifiedAccountError(f"Vendor {vendor_id} has no default bank account",
                                             context={"vendor_id": vendor_id})
        else:
            account = self._owned(session, vendor_id, account_id)

        if not account.is_verified:
            raise NoVerifiedAccountError(f"Bank account ****{account.last4} is not verified",
                                         field="bank_account_id",
                                         context={"vendor_id": vendor_id, "bank_account_id": account.id})
        return account

    def require_verified_default(self, session: Session, vendor_id: str) -> BankAccount:
        return self.require_payout_destination(session, vendor_id)
