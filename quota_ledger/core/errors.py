"""Error taxonomy and FastAPI handlers."""

import logging
import builtins
from typing import Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.responses import JSONResponse
from starlette.requests import Request

from quota_ledger.core.logging import get_request_id


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None, request_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class NotFoundError(AppError, ValueError):
    code = "not_found"
    status_code = 404


class PermissionError(AppError, builtins.PermissionError):
    code = "forbidden"
    status_code = 403


class GrantConflictError(ValidationError):
    """grant_id already used for a different request, or past its replay allowance."""
    code = "grant_conflict"
    status_code = 409


class ConfigurationError(AppError):
    """Unknown plan tier or dimension, or an invalid plan catalog."""
    code = "configuration_error"
    status_code = 500


class TransientStoreError(AppError):
    """Persistence unavailable. Callers must treat the action as denied."""
    code = "try_again"
    status_code = 503

    def __init__(self, message: str = "Unable to process request at this time. Please try again.", **kwargs):
        super().__init__(message, **kwargs)


class ReconciliationParseError(AppError, ValueError):
    """Malformed credit value in one dimension of a payment record."""
    code = "payment_metadata_invalid"
    status_code = 422

    def __init__(self, message: str, *, payment_id: Optional[str] = None, dimension: Optional[str] = None, raw_value: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.payment_id = payment_id
        self.dimension = dimension
        self.raw_value = raw_value


class PaymentSourceError(AppError):
    code = "payment_source_error"
    status_code = 502


def _extract_request_id(request: Request, fallback: Optional[str] = None) -> str:
    return (
        getattr(request.state, "request_id", None)
        or get_request_id()
        or fallback
        or str(uuid4())
    )


def _error_payload(code: str, message: str, request_id: str) -> dict:
    return {
        "error": {"code": code, "message": message, "request_id": request_id},
        "detail": message,
    }


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _extract_request_id(request)
    # Storage internals never reach the client.
    message = TransientStoreError().message if isinstance(exc, TransientStoreError) else exc.message
    payload = _error_payload(exc.code, message, rid)
    logger = logging.getLogger("quota_ledger")
    log_level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        log_level,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _extract_request_id(request)
    code = "not_found" if exc.status_code == 404 else "http_error"
    message = exc.detail if exc.detail else "HTTP error"
    payload = _error_payload(code, message, rid)
    logger = logging.getLogger("quota_ledger")
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    logger = logging.getLogger("quota_ledger")
    logger.error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "internal_error"})
    payload = _error_payload("internal_error", "Unexpected error", rid)
    response = JSONResponse(status_code=500, content=payload)
    response.headers["x-request-id"] = rid
    return response
