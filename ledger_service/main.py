import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from jwt import PyJWTError

from common.error_handling import add_error_handlers
from common.security import LEDGER_AUDIENCE, bearer_token, verify_token
from common.settings import Settings, settings as default_settings
from ledger_service.db import Database, connect
from ledger_service.models import TransactionType
from ledger_service.payment_rail import PaymentRail, create_payment_rail
from ledger_service.schemas import (
    BalanceOut, BankAccountIn, BankAccountOut, CommissionIn, OrderSettled, OrderStatusChanged,
    PayoutConfirmation, PayoutOut, PayoutRequest, ReconciliationOut, RefundRequest, SettlementOut,
    TransactionList, TransactionOut,
)
from ledger_service.service import MarketplaceLedger

logger = logging.getLogger(__name__)


# Internal services only: the gateway mints a down-scoped token for the ledger audience
async def internal_auth(authorization: Optional[str] = Header(None)):
    token = bearer_token(authorization)
    if token is None:
        raise HTTPException(401, "missing bearer token")
    try:
        return verify_token(token, audience=LEDGER_AUDIENCE)
    except PyJWTError as e:
        raise HTTPException(401, f"invalid internal token: {e}")


def get_ledger(request: Request) -> MarketplaceLedger:
    return request.app.state.ledger


def create_app(settings: Optional[Settings] = None, database: Optional[Database] = None,
               rail: Optional[PaymentRail] = None) -> FastAPI:
    cfg = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        db = database or connect(settings=cfg)
        app.state.ledger = MarketplaceLedger(db, rail=rail or create_payment_rail(cfg), settings=cfg)
        logger.info("Ledger service started")
        try:
            yield
        finally:
            # a database handed in by the caller stays open
            if database is None:
                db.dispose()

    app = FastAPI(title="Vendor Ledger Service", lifespan=lifespan)
    add_error_handlers(app)
    auth = [Depends(internal_auth)]

    @app.post("/orders/settled", response_model=SettlementOut, dependencies=auth)
    def settle_order(order: OrderSettled, ledger: MarketplaceLedger = Depends(get_ledger)):
        """Order Service callback once an order's payment has succeeded."""
        record = ledger.settle_order(order)
        fee = record.fee
        return SettlementOut(
            order_id=fee.order_id,
            vendor_id=fee.vendor_id,
            order_amount=fee.order_amount,
            fee_percentage=float(fee.fee_percentage),
            fee_amount=fee.fee_amount,
            vendor_earnings=fee.vendor_earnings,
            currency=fee.currency,
            status=fee.status.value,
            created=record.created,
        )

    @app.post("/orders/status", dependencies=auth)
    def change_order_status(change: OrderStatusChanged, ledger: MarketplaceLedger = Depends(get_ledger)):
        effect = ledger.change_order_status(change)
        return {"order_id": change.order_id, "effect": effect.value}

    @app.post("/orders/{order_id}/refund", dependencies=auth)
    def refund_order(order_id: str, body: RefundRequest, ledger: MarketplaceLedger = Depends(get_ledger)):
        effect = ledger.refund_order(body.vendor_id, order_id)
        return {"order_id": order_id, "effect": effect.value}

    @app.get("/vendors/{vendor_id}/balance", response_model=BalanceOut, dependencies=auth)
    def get_balance(vendor_id: str, ledger: MarketplaceLedger = Depends(get_ledger)):
        return BalanceOut.model_validate(ledger.get_vendor_balance(vendor_id))

    @app.get("/vendors/{vendor_id}/transactions", response_model=TransactionList, dependencies=auth)
    def list_transactions(
        vendor_id: str,
        type: Optional[TransactionType] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        order_id: Optional[str] = None,
        limit: Optional[int] = Query(default=None, ge=1, le=1000),
        ledger: MarketplaceLedger = Depends(get_ledger),
    ):
        lines = ledger.list_transactions(vendor_id, type=type, start=start, end=end, order_id=order_id, limit=limit)
        return TransactionList(vendor_id=vendor_id, transactions=[TransactionOut.model_validate(line) for line in lines])

    @app.post("/vendors/{vendor_id}/payouts", response_model=PayoutOut, status_code=201, dependencies=auth)
    def request_payout(vendor_id: str, body: PayoutRequest, ledger: MarketplaceLedger = Depends(get_ledger)):
        payout = ledger.request_payout(vendor_id, fraction=body.fraction, bank_account_id=body.bank_account_id)
        return PayoutOut.model_validate(payout)

    @app.get("/vendors/{vendor_id}/payouts", response_model=List[PayoutOut], dependencies=auth)
    def list_payouts(vendor_id: str, ledger: MarketplaceLedger = Depends(get_ledger)):
        return [PayoutOut.model_validate(p) for p in ledger.list_payouts(vendor_id)]

    @app.post("/payouts/{payout_id}/confirm", response_model=PayoutOut, dependencies=auth)
    def confirm_payout(payout_id: str, body: PayoutConfirmation, ledger: MarketplaceLedger = Depends(get_ledger)):
        """Payment rail webhook with the final outcome of a payout."""
        return PayoutOut.model_validate(ledger.confirm_payout(payout_id, body.outcome, reason=body.reason))

    @app.post("/vendors/{vendor_id}/bank-accounts", response_model=BankAccountOut, status_code=201, dependencies=auth)
    def add_bank_account(vendor_id: str, body: BankAccountIn, ledger: MarketplaceLedger = Depends(get_ledger)):
        account = ledger.add_bank_account(
            vendor_id,
            holder_name=body.holder_name,
            bank_name=body.bank_name,
            last4=body.last4,
            currency=body.currency,
            country=body.country,
            holder_type=body.holder_type,
            make_default=body.make_default,
        )
        return BankAccountOut.model_validate(account)

    @app.post("/vendors/{vendor_id}/bank-accounts/{account_id}/verify", response_model=BankAccountOut, dependencies=auth)
    def verify_bank_account(vendor_id: str, account_id: str, ledger: MarketplaceLedger = Depends(get_ledger)):
        return BankAccountOut.model_validate(ledger.verify_bank_account(vendor_id, account_id))

    @app.post("/vendors/{vendor_id}/bank-accounts/{account_id}/default", response_model=BankAccountOut, dependencies=auth)
    def set_default_bank_account(vendor_id: str, account_id: str, ledger: MarketplaceLedger = Depends(get_ledger)):
        return BankAccountOut.model_validate(ledger.set_default_bank_account(vendor_id, account_id))

    @app.get("/vendors/{vendor_id}/bank-accounts/default", response_model=BankAccountOut, dependencies=auth)
    def get_default_bank_account(vendor_id: str, ledger: MarketplaceLedger = Depends(get_ledger)):
        return BankAccountOut.model_validate(ledger.get_default_bank_account(vendor_id))

    @app.put("/vendors/{vendor_id}/commission", dependencies=auth)
    def set_commission(vendor_id: str, body: CommissionIn, ledger: MarketplaceLedger = Depends(get_ledger)):
        row = ledger.set_commission(vendor_id, body.commission_percent)
        return {"vendor_id": vendor_id, "commission_percent": float(row.commission_percent)}

    @app.get("/vendors/{vendor_id}/reconciliation", response_model=ReconciliationOut, dependencies=auth)
    def reconcile(vendor_id: str, ledger: MarketplaceLedger = Depends(get_ledger)):
        report = ledger.reconcile(vendor_id)
        return ReconciliationOut(
            vendor_id=report.vendor_id,
            consistent=report.consistent,
            differences=report.differences,
            stored=report.stored,
            expected=report.expected,
        )

    @app.get("/health")
    async def health():
        return {"ok": True, "service": "ledger"}

    return app


# uvicorn ledger_service.main:app; the database is opened on startup
app = create_app()
