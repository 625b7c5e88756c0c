import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger, Boolean, CheckConstraint, Column, DateTime, Enum, ForeignKey,
    Index, Integer, JSON, Numeric, String, Text, func, text,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()

# SQLite only autoincrements INTEGER PRIMARY KEY columns
BigId = BigInteger().with_variant(Integer, "sqlite")


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class FeeStatus(str, enum.Enum):
    PENDING = "pending"      # earnings held in pending_balance
    COLLECTED = "collected"  # order delivered, earnings in available_balance


class TransactionType(str, enum.Enum):
    SALE = "sale"
    FEE = "fee"
    PAYOUT = "payout"


class TransactionStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class PayoutStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PAID = "paid"
    FAILED = "failed"


class HolderType(str, enum.Enum):
    INDIVIDUAL = "individual"
    COMPANY = "company"


class OutboxStatus(str, enum.Enum):
    NEW = "new"
    SENT = "sent"
    FAILED = "failed"


def require_exhaustive(mapping: dict, enum_cls) -> dict:
    """Fail at import time when a status table misses a member of its enum."""
    missing = set(enum_cls) - set(mapping)
    if missing:
        names = ", ".join(sorted(m.value for m in missing))
        raise RuntimeError(f"{enum_cls.__name__} table is missing: {names}")
    return mapping


def _enum(enum_cls):
    return Enum(
        enum_cls,
        native_enum=False,
        length=16,
        values_callable=lambda members: [m.value for m in members],
    )


class PlatformFee(Base):
    __tablename__ = "platform_fees"
    id = Column(String(36), primary_key=True, default=new_id)
    order_id = Column(String(64), nullable=False, unique=True)
    vendor_id = Column(String(64), nullable=False, index=True)
    order_amount = Column(BigInteger, nullable=False)
    shipping_amount = Column(BigInteger, nullable=False, default=0)
    fee_percentage = Column(Numeric(5, 2), nullable=False)
    fee_amount = Column(BigInteger, nullable=False)
    vendor_earnings = Column(BigInteger, nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(_enum(FeeStatus), nullable=False, default=FeeStatus.PENDING)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    collected_at = Column(DateTime(timezone=True))
    reversed_at = Column(DateTime(timezone=True))
    version = Column(Integer, nullable=False)

    __table_args__ = (
        CheckConstraint("vendor_earnings >= 0", name="ck_platform_fees_earnings"),
    )
    # delivery and reversal both rewrite the fee; a stale copy loses with StaleDataError
    __mapper_args__ = {"version_id_col": version}

    @property
    def is_reversed(self) -> bool:
        return self.reversed_at is not None


class Transaction(Base):
    __tablename__ = "transactions"
    id = Column(BigId, primary_key=True, autoincrement=True)
    vendor_id = Column(String(64), nullable=False, index=True)
    order_id = Column(String(64), index=True)
    payout_id = Column(String(36), index=True)
    reverses_id = Column(BigId, ForeignKey("transactions.id"))
    type = Column(_enum(TransactionType), nullable=False)
    amount = Column(BigInteger, nullable=False)  # signed: credits positive, debits negative
    currency = Column(String(3), nullable=False)
    status = Column(_enum(TransactionStatus), nullable=False, default=TransactionStatus.COMPLETED)
    description = Column(String(255))
    # vendor balances before and after the change this line belongs to
    balance_snapshot = Column(JSON)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    completed_at = Column(DateTime(timezone=True))


class VendorBalance(Base):
    __tablename__ = "vendor_balances"
    vendor_id = Column(String(64), primary_key=True)
    available_balance = Column(BigInteger, nullable=False, default=0)
    pending_balance = Column(BigInteger, nullable=False, default=0)
    reserved_balance = Column(BigInteger, nullable=False, default=0)
    lifetime_volume = Column(BigInteger, nullable=False, default=0)
    currency = Column(String(3), nullable=False)
    version = Column(Integer, nullable=False)
    last_updated = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("available_balance >= 0", name="ck_vendor_balances_available"),
        CheckConstraint("pending_balance >= 0", name="ck_vendor_balances_pending"),
        CheckConstraint("reserved_balance >= 0", name="ck_vendor_balances_reserved"),
    )
    # Concurrent writers that read the same version lose with StaleDataError
    __mapper_args__ = {"version_id_col": version}


class BankAccount(Base):
    __tablename__ = "bank_accounts"
    id = Column(String(36), primary_key=True, default=new_id)
    vendor_id = Column(String(64), nullable=False, index=True)
    holder_name = Column(String(255), nullable=False)
    holder_type = Column(_enum(HolderType), nullable=False, default=HolderType.COMPANY)
    bank_name = Column(String(128), nullable=False)
    last4 = Column(String(4), nullable=False)
    currency = Column(String(3), nullable=False)
    country = Column(String(2), nullable=False)
    is_default = Column(Boolean, nullable=False, default=False)
    verified_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index(
            "uq_bank_accounts_vendor_default",
            "vendor_id",
            unique=True,
            sqlite_where=text("is_default = 1"),
            postgresql_where=text("is_default"),
        ),
    )

    @property
    def is_verified(self) -> bool:
        return self.verified_at is not None


class Payout(Base):
    __tablename__ = "payouts"
    id = Column(String(36), primary_key=True, default=new_id)
    vendor_id = Column(String(64), nullable=False, index=True)
    amount = Column(BigInteger, nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(_enum(PayoutStatus), nullable=False, default=PayoutStatus.PENDING)
    method = Column(String(32), nullable=False, default="bank_transfer")
    bank_account_id = Column(String(36), ForeignKey("bank_accounts.id"), nullable=False)
    rail_reference = Column(String(128))
    failure_reason = Column(String(255))
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    processed_at = Column(DateTime(timezone=True))
    paid_at = Column(DateTime(timezone=True))
    failed_at = Column(DateTime(timezone=True))
    version = Column(Integer, nullable=False)

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_payouts_amount"),
    )
    __mapper_args__ = {"version_id_col": version}


class VendorCommission(Base):
    __tablename__ = "vendor_commissions"
    vendor_id = Column(String(64), primary_key=True)
    commission_percent = Column(Numeric(5, 2), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class Outbox(Base):
    __tablename__ = "outbox"
    id = Column(BigId, primary_key=True, autoincrement=True)
    topic = Column(String(64), nullable=False)
    payload = Column(Text, nullable=False)
    created_at = Column(DateTime, server_default=func.now())
    status = Column(_enum(OutboxStatus), nullable=False, default=OutboxStatus.NEW)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(String(255))
