"""
Commission split for a settled order.

All amounts are integers in the currency's minor unit. Rates may be given as
int, float or Decimal percentages; floats go through ``str`` so 12.5 stays
12.5 rather than its binary approximation.
"""
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from numbers import Number
from typing import Optional, Union

from sqlalchemy.orm import Session

from common.errors import InvalidInputError, SettlementUnderflowError
from ledger_service.models import VendorCommission, utcnow

Rate = Union[int, float, Decimal]

HUNDRED = Decimal(100)


@dataclass(frozen=True)
class SettlementResult:
    fee_amount: int
    vendor_earnings: int


def to_decimal(value: Rate, field: str) -> Decimal:
    if isinstance(value, bool) or not isinstance(value, (Number, Decimal)):
        raise InvalidInputError(f"{field} must be a number", field=field, context={field: repr(value)})
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value))
    except InvalidOperation:
        raise InvalidInputError(f"{field} must be a number", field=field, context={field: repr(value)})
    if not result.is_finite():
        raise InvalidInputError(f"{field} must be finite", field=field, context={field: str(value)})
    return result


def round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def _require_amount(value, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidInputError(f"{field} must be an integer amount in minor units", field=field,
                                context={field: repr(value)})
    if value < 0:
        raise InvalidInputError(f"{field} must not be negative", field=field, context={field: value})
    return value


def validate_commission(commission_percent: Rate) -> Decimal:
    rate = to_decimal(commission_percent, "commission_percent")
    if rate < 0 or rate > HUNDRED:
        raise InvalidInputError("commission_percent must be between 0 and 100", field="commission_percent",
                                context={"commission_percent": str(rate)})
    return rate


def compute_settlement(order_amount: int, shipping_amount: int, commission_percent: Rate) -> SettlementResult:
    """Split an order into platform fee and vendor earnings.

    fee = round_half_up(order_amount * commission_percent / 100)
    earnings = order_amount - fee - shipping_amount

    Raises InvalidInputError on bad input and SettlementUnderflowError when
    the earnings would be negative.
    """
    order_amount = _require_amount(order_amount, "order_amount")
    shipping_amount = _require_amount(shipping_amount, "shipping_amount")
    rate = validate_commission(commission_percent)

    fee_amount = round_half_up(Decimal(order_amount) * rate / HUNDRED)
    vendor_earnings = order_amount - fee_amount - shipping_amount

    if vendor_earnings < 0:
        raise SettlementUnderflowError(
            "Fee and shipping exceed the order amount",
            context={
                "order_amount": order_amount,
                "shipping_amount": shipping_amount,
                "commission_percent": str(rate),
                "fee_amount": fee_amount,
                "vendor_earnings": vendor_earnings,
            },
        )

    return SettlementResult(fee_amount=fee_amount, vendor_earnings=vendor_earnings)


class CommissionDirectory:
    """Per-vendor commission rates with a platform-wide default."""

    def __init__(self, default_percent: Rate):
        self.default_percent = validate_commission(default_percent)

    def rate_for(self, session: Session, vendor_id: str) -> Decimal:
        row: Optional[VendorCommission] = session.get(VendorCommission, vendor_id)
        if row is None:
            return self.default_percent
        return Decimal(row.commission_percent)

    def set_rate(self, session: Session, vendor_id: str, commission_percent: Rate) -> VendorCommission:
        rate = validate_commission(commission_percent)
        row = session.get(VendorCommission, vendor_id)
        if row is None:
            row = VendorCommission(vendor_id=vendor_id, commission_percent=rate)
            session.add(row)
        else:
            row.commission_percent = rate
            row.updated_at = utcnow()
        session.flush()
        return row
