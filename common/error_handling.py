"""
Error envelope for the ledger API

Every error leaves the service as

    {"success": false, "error": {code, message, field, context}, "timestamp", "request_id"}

with the HTTP status taken from the error code.
"""
from typing import Optional, Dict, Any, Union
from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel
import logging
import traceback
import time
import uuid

from common.errors import BusinessLogicError, ErrorCodes, ServiceError

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"

class ErrorDetail(BaseModel):
    code: str
    message: str
    field: Optional[str] = None
    context: Optional[Dict[str, Any]] = None

class StandardErrorResponse(BaseModel):
    success: bool = False
    error: ErrorDetail
    timestamp: float
    request_id: Optional[str] = None

STATUS_BY_CODE = {
    ErrorCodes.UNAUTHORIZED: 401,
    ErrorCodes.INVALID_TOKEN: 401,
    ErrorCodes.VALIDATION_ERROR: 400,
    ErrorCodes.INVALID_INPUT: 400,
    ErrorCodes.INSUFFICIENT_BALANCE: 400,
    ErrorCodes.NO_VERIFIED_ACCOUNT: 400,
    ErrorCodes.NOT_FOUND: 404,
    ErrorCodes.INVALID_TRANSITION: 409,
    ErrorCodes.CONFLICT: 409,
    ErrorCodes.SETTLEMENT_UNDERFLOW: 422,
    ErrorCodes.BALANCE_UNDERFLOW: 422,
    ErrorCodes.PAYMENT_RAIL_ERROR: 502,
    ErrorCodes.PAYMENT_RAIL_UNAVAILABLE: 504,
    ErrorCodes.CIRCUIT_BREAKER_OPEN: 503,
    ErrorCodes.DATABASE_ERROR: 503,
    ErrorCodes.INTERNAL_SERVER_ERROR: 500,
}

CODE_BY_STATUS = {
    401: ErrorCodes.UNAUTHORIZED,
    404: ErrorCodes.NOT_FOUND,
    409: ErrorCodes.CONFLICT,
}

def _request_id(request: Request) -> Optional[str]:
    return getattr(request.state, "request_id", None)

def create_error_response(
    error_code: str,
    message: str,
    status_code: Optional[int] = None,
    field: Optional[str] = None,
    context: Optional[Dict[str, Any]] = None,
    request_id: Optional[str] = None
) -> JSONResponse:
    body = StandardErrorResponse(
        error=ErrorDetail(
            code=error_code,
            message=message,
            field=field,
            context=jsonable_encoder(context) if context else None,
        ),
        timestamp=time.time(),
        request_id=request_id,
    )
    return JSONResponse(
        status_code=status_code or STATUS_BY_CODE.get(error_code, 500),
        content=body.model_dump(),
        headers={REQUEST_ID_HEADER: request_id} if request_id else None,
    )

async def request_id_middleware(request: Request, call_next):
    """Tag every request with an id that shows up in logs and error bodies"""
    request.state.request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
    response = await call_next(request)
    response.headers[REQUEST_ID_HEADER] = request.state.request_id
    return response

async def ledger_exception_handler(request: Request, exc: Union[BusinessLogicError, ServiceError]):
    """Business errors log at WARNING, underflows and infrastructure failures at ERROR"""
    status_code = STATUS_BY_CODE.get(exc.code, 400 if isinstance(exc, BusinessLogicError) else 500)
    details = {
        "error_code": exc.code,
        "request_id": _request_id(request),
        "path": request.url.path,
        "context": exc.context,
    }
    if isinstance(exc, ServiceError) and exc.original_error is not None:
        details["original_error"] = repr(exc.original_error)

    log = logger.error if status_code >= 422 else logger.warning
    log(f"{request.method} {request.url.path} failed: {exc.code} - {exc.message}", extra=details)

    return create_error_response(
        error_code=exc.code,
        message=exc.message,
        status_code=status_code,
        field=getattr(exc, "field", None),
        context=exc.context,
        request_id=_request_id(request),
    )

async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0]
    field = ".".join(str(loc) for loc in first.get("loc", []))
    message = first.get("msg", "Validation error")

    logger.warning(f"Validation error: {message} on field {field}", extra={
        "request_id": _request_id(request),
        "validation_errors": errors,
    })

    return create_error_response(
        error_code=ErrorCodes.VALIDATION_ERROR,
        message=f"Validation error on field '{field}': {message}",
        field=field,
        context={"validation_errors": errors},
        request_id=_request_id(request),
    )

async def http_exception_handler(request: Request, exc: HTTPException):
    error_code = CODE_BY_STATUS.get(exc.status_code, ErrorCodes.INTERNAL_SERVER_ERROR)
    logger.warning(f"HTTP {exc.status_code} on {request.url.path}: {exc.detail}", extra={
        "status_code": exc.status_code,
        "request_id": _request_id(request),
    })
    return create_error_response(
        error_code=error_code,
        message=str(exc.detail),
        status_code=exc.status_code,
        request_id=_request_id(request),
    )

async def general_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unexpected error on {request.url.path}: {exc}", extra={
        "request_id": _request_id(request),
        "traceback": traceback.format_exc(),
    })
    # internals stay in the log
    return create_error_response(
        error_code=ErrorCodes.INTERNAL_SERVER_ERROR,
        message="An unexpected error occurred. Please try again later.",
        request_id=_request_id(request),
    )

def add_error_handlers(app):
    app.middleware("http")(request_id_middleware)
    app.add_exception_handler(BusinessLogicError, ledger_exception_handler)
    app.add_exception_handler(ServiceError, ledger_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)
