from pydantic import BaseModel, Field
from typing import Any, Dict, Literal, Optional

class LedgerEvent(BaseModel):
    type: Literal[
        "SettlementRecorded",
        "EarningsReleased",
        "OrderReversed",
        "PayoutCreated",
        "PayoutStatusChanged",
    ]
    vendor_id: str
    amount: int
    currency: str
    order_id: Optional[str] = None
    payout_id: Optional[str] = None
    status: Optional[str] = None
    reason: Optional[str] = None

class ReviewRequest(BaseModel):
    """Operator queue entry for ledger failures that must not be auto-recovered"""
    code: str
    message: str
    operation: str
    vendor_id: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)
