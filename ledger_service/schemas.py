from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from ledger_service.models import (
    HolderType, OrderStatus, PaymentStatus, PayoutStatus, TransactionStatus, TransactionType,
)


class OrderSettled(BaseModel):
    """Order Service notification: payment for the order succeeded."""
    id: str = Field(min_length=1, max_length=64)
    vendor_id: str = Field(min_length=1, max_length=64)
    total: int
    shipping: int = 0
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    payment_status: PaymentStatus = PaymentStatus.SUCCEEDED
    created_at: Optional[datetime] = None


class OrderStatusChanged(BaseModel):
    order_id: str = Field(min_length=1, max_length=64)
    vendor_id: str = Field(min_length=1, max_length=64)
    old_status: OrderStatus
    new_status: OrderStatus


class RefundRequest(BaseModel):
    vendor_id: str = Field(min_length=1, max_length=64)


class SettlementOut(BaseModel):
    order_id: str
    vendor_id: str
    order_amount: int
    fee_percentage: float
    fee_amount: int
    vendor_earnings: int
    currency: str
    status: str
    created: bool


class BalanceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    vendor_id: str
    available_balance: int
    pending_balance: int
    reserved_balance: int
    lifetime_volume: int
    currency: str
    last_updated: datetime


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    vendor_id: str
    order_id: Optional[str] = None
    payout_id: Optional[str] = None
    reverses_id: Optional[int] = None
    type: TransactionType
    amount: int
    currency: str
    status: TransactionStatus
    description: Optional[str] = None
    balance_snapshot: Optional[Dict[str, Dict[str, int]]] = None
    created_at: datetime
    completed_at: Optional[datetime] = None


class PayoutRequest(BaseModel):
    fraction: Optional[float] = Field(default=None, gt=0, le=1)
    bank_account_id: Optional[str] = None


class PayoutConfirmation(BaseModel):
    outcome: Literal["paid", "failed"]
    reason: Optional[str] = None


class PayoutOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    vendor_id: str
    amount: int
    currency: str
    status: PayoutStatus
    method: str
    bank_account_id: str
    rail_reference: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: datetime
    processed_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None


class BankAccountIn(BaseModel):
    holder_name: str = Field(min_length=1, max_length=255)
    holder_type: HolderType = HolderType.COMPANY
    bank_name: str = Field(min_length=1, max_length=128)
    last4: str = Field(pattern=r"^\d{4}$")
    currency: str = Field(default="MXN", min_length=3, max_length=3)
    country: str = Field(default="MX", min_length=2, max_length=2)
    make_default: bool = False


class BankAccountOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    vendor_id: str
    holder_name: str
    holder_type: HolderType
    bank_name: str
    last4: str
    currency: str
    country: str
    is_default: bool
    verified_at: Optional[datetime] = None


class CommissionIn(BaseModel):
    commission_percent: float = Field(ge=0, le=100)


class ReconciliationOut(BaseModel):
    vendor_id: str
    consistent: bool
    differences: dict
    stored: dict
    expected: dict


class TransactionList(BaseModel):
    vendor_id: str
    transactions: List[TransactionOut]
