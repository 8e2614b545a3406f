"""Error taxonomy and FastAPI handlers.

Every failure a caller can observe is an AppError carrying a stable,
machine-readable ``code``. Admission failures (plan, rate, cooldown, busy)
are deterministic until outside state changes and are never retried here.
"""

import logging
import builtins
from typing import Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.responses import JSONResponse
from starlette.requests import Request

from letterbox.core.logging import get_request_id


class AppError(Exception):
    code = "APP_ERROR"
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
    code = "VALIDATION_ERROR"
    status_code = 400


class UnauthorizedError(AppError):
    code = "UNAUTHORIZED"
    status_code = 401


class NotFoundError(AppError, ValueError):
    code = "NOT_FOUND"
    status_code = 404


class PermissionError(AppError, builtins.PermissionError):
    code = "FORBIDDEN"
    status_code = 403


class ConfigError(AppError):
    """Required credentials or settings are missing."""
    code = "CONFIG_ERROR"
    status_code = 500


class ProRequiredError(AppError):
    code = "PRO_REQUIRED"
    status_code = 403


class AiLimitReachedError(AppError):
    code = "AI_LIMIT_REACHED"
    status_code = 429


class AiCooldownError(AppError):
    code = "AI_COOLDOWN"
    status_code = 429


class AiBusyError(AppError):
    code = "AI_BUSY"
    status_code = 409


class AiTimeoutError(AppError):
    code = "AI_TIMEOUT"
    status_code = 504


class AiUnavailableError(AppError):
    code = "AI_UNAVAILABLE"
    status_code = 502


class ContentUnavailableError(AppError):
    code = "CONTENT_UNAVAILABLE"
    status_code = 409


class BlobStoreError(AppError):
    code = "BLOB_STORE_ERROR"
    status_code = 502


class BillingError(AppError):
    code = "BILLING_ERROR"
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
    payload = _error_payload(exc.code, exc.message, rid)
    logger = logging.getLogger("letterbox")
    log_level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        log_level,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "status": exc.status_code},
    )
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _extract_request_id(request)
    code = "NOT_FOUND" if exc.status_code == 404 else "HTTP_ERROR"
    message = exc.detail if exc.detail else "HTTP error"
    payload = _error_payload(code, message, rid)
    logger = logging.getLogger("letterbox")
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    logger = logging.getLogger("letterbox")
    logger.error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "INTERNAL_ERROR"})
    payload = _error_payload("INTERNAL_ERROR", "Unexpected error", rid)
    response = JSONResponse(status_code=500, content=payload)
    response.headers["x-request-id"] = rid
    return response
