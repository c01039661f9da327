# billing_service/core/errors.py
# Billing exception taxonomy + FastAPI exception handlers
#
# Services raise these; endpoints never build error JSON by hand.
# Every error response has the shape:
#   {"success": false, "message": "...", "error": "ERROR_CODE"}

import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from billing_service.core.config import settings

logger = logging.getLogger("billing.errors")


# ── Base ──────────────────────────────────────────────────────────────────────

class BillingError(Exception):
    """Base class for all errors the billing service maps to an HTTP status."""

    status_code: int = 500
    code: str = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "success": False,
            "message": self.message,
            "error": self.code,
        }
        if self.details:
            body["details"] = self.details
        return body


# ── 4xx ───────────────────────────────────────────────────────────────────────

class ValidationFailed(BillingError):
    status_code = 400
    code = "VALIDATION_ERROR"


class AmountMismatch(ValidationFailed):
    code = "AMOUNT_MISMATCH"


class RefundExceedsRemaining(ValidationFailed):
    code = "REFUND_EXCEEDS_REMAINING"


class InvalidSignature(BillingError):
    status_code = 401
    code = "INVALID_SIGNATURE"


class NotFound(BillingError):
    status_code = 404
    code = "NOT_FOUND"


class ConflictError(BillingError):
    status_code = 409
    code = "CONFLICT"


class SubscriptionExists(ConflictError):
    code = "SUBSCRIPTION_EXISTS"


class DuplicateSubscription(ConflictError):
    code = "DUPLICATE_SUBSCRIPTION"


class InvalidTransition(ConflictError):
    code = "INVALID_TRANSITION"


class MaxRetriesExceeded(ConflictError):
    code = "MAX_RETRIES_EXCEEDED"


# ── 5xx ───────────────────────────────────────────────────────────────────────

class DownstreamError(BillingError):
    """A sibling service (member / identity) failed or returned garbage."""
    status_code = 502
    code = "DOWNSTREAM_ERROR"


class TransientError(BillingError):
    status_code = 503
    code = "SERVICE_UNAVAILABLE"


class QueryTimeout(TransientError):
    # The statement may or may not have committed; callers must not assume failure.
    status_code = 504
    code = "QUERY_TIMEOUT"


# ── Handlers ──────────────────────────────────────────────────────────────────

def _error_response(status_code: int, message: str, code: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "message": message, "error": code},
    )


async def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
    else:
        logger.info(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    first = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = f"{field}: {first.get('msg', 'invalid value')}" if field else "Invalid request"
    return _error_response(400, message, ValidationFailed.code)


async def database_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    # Imported here: db.resilience imports this module for the error classes
    from billing_service.db.resilience import classify_db_error

    mapped = classify_db_error(exc)
    if mapped is not None:
        logger.warning(f"Database unavailable on {request.url.path}: {exc}")
        return JSONResponse(status_code=mapped.status_code, content=mapped.to_dict())

    logger.error(f"Database error on {request.url.path}", exc_info=exc)
    message = "Internal server error" if settings.is_production else str(exc)
    return _error_response(500, message, "DATABASE_ERROR")


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    message = "Internal server error" if settings.is_production else str(exc)
    return _error_response(500, message, BillingError.code)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(BillingError, billing_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(SQLAlchemyError, database_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
