"""
Ledger error taxonomy shared by the ledger components and the HTTP layer
"""
from typing import Any, Dict, Optional


class ErrorCodes:
    """Standard error codes"""
    # Authentication
    UNAUTHORIZED = "UNAUTHORIZED"
    INVALID_TOKEN = "INVALID_TOKEN"

    # Validation
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_INPUT = "INVALID_INPUT"
    INVALID_TRANSITION = "INVALID_TRANSITION"

    # Business Logic
    SETTLEMENT_UNDERFLOW = "SETTLEMENT_UNDERFLOW"
    BALANCE_UNDERFLOW = "BALANCE_UNDERFLOW"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    NO_VERIFIED_ACCOUNT = "NO_VERIFIED_ACCOUNT"
    NOT_FOUND = "NOT_FOUND"

    # System Errors
    INTERNAL_SERVER_ERROR = "INTERNAL_SERVER_ERROR"
    CONFLICT = "CONFLICT"
    DATABASE_ERROR = "DATABASE_ERROR"
    CIRCUIT_BREAKER_OPEN = "CIRCUIT_BREAKER_OPEN"
    PAYMENT_RAIL_ERROR = "PAYMENT_RAIL_ERROR"
    PAYMENT_RAIL_UNAVAILABLE = "PAYMENT_RAIL_UNAVAILABLE"


class BusinessLogicError(Exception):
    """Base for errors caused by the request or the state of the books"""
    code = ErrorCodes.INVALID_INPUT

    def __init__(self, message: str, field: str = None, context: Dict[str, Any] = None, code: str = None):
        self.code = code or self.code
        self.message = message
        self.field = field
        self.context = context or {}
        super().__init__(message)


class ServiceError(Exception):
    """Base for infrastructure failures (storage, payment rail)"""
    code = ErrorCodes.INTERNAL_SERVER_ERROR

    def __init__(self, message: str, original_error: Optional[Exception] = None, context: Dict[str, Any] = None):
        self.message = message
        self.original_error = original_error
        self.context = context or {}
        super().__init__(message)


class InvalidInputError(BusinessLogicError):
    """Bad caller input; rejected before any write."""
    code = ErrorCodes.INVALID_INPUT


class InvalidTransitionError(InvalidInputError):
    """A status change the state machine does not allow."""
    code = ErrorCodes.INVALID_TRANSITION


class SettlementUnderflowError(BusinessLogicError):
    """Shipping plus fee exceed the order total."""
    code = ErrorCodes.SETTLEMENT_UNDERFLOW


class BalanceUnderflowError(BusinessLogicError):
    """A balance would go below zero."""
    code = ErrorCodes.BALANCE_UNDERFLOW


class InsufficientBalanceError(BusinessLogicError):
    code = ErrorCodes.INSUFFICIENT_BALANCE


class NoVerifiedAccountError(BusinessLogicError):
    code = ErrorCodes.NO_VERIFIED_ACCOUNT


class NotFoundError(BusinessLogicError):
    code = ErrorCodes.NOT_FOUND


class ConflictError(ServiceError):
    """Storage contention outlasted the retry budget."""
    code = ErrorCodes.CONFLICT


class PaymentRailError(ServiceError):
    """The rail definitely did not take the payout."""
    code = ErrorCodes.PAYMENT_RAIL_ERROR


class PaymentRailUnavailableError(PaymentRailError):
    """No definite answer from the rail (timeout, dropped connection, 5xx).

    The rail may still have accepted the payout.
    """
    code = ErrorCodes.PAYMENT_RAIL_UNAVAILABLE


# Errors that need an operator to look at the books
REVIEW_ERRORS = (SettlementUnderflowError, BalanceUnderflowError)
