from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from agentrun.apps.api.response import error_response
from agentrun.core.config import get_settings
from agentrun.core.errors import (
    AgentRunError,
    BudgetExceededError,
    InvalidRunTransitionError,
    NotFoundError,
    ProviderAuthError,
    ProviderConfigError,
    ProviderError,
    ProviderTimeoutError,
    ProviderUnavailableError,
    RateLimitedError,
    RedactionConfigError,
    RunAlreadyFinalizedError,
    UnauthorizedError,
)


logger = logging.getLogger(__name__)

# Most specific classes first; the first isinstance match wins.
_STATUS_BY_ERROR: tuple[tuple[type[AgentRunError], int], ...] = (
    (RateLimitedError, 429),
    (BudgetExceededError, 402),
    (UnauthorizedError, 403),
    (ProviderUnavailableError, 503),
    (ProviderTimeoutError, 504),
    (ProviderAuthError, 502),
    (ProviderError, 502),
    (ProviderConfigError, 500),
    (RedactionConfigError, 500),
    (InvalidRunTransitionError, 409),
    (RunAlreadyFinalizedError, 409),
    (NotFoundError, 404),
)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMITED",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


def status_for(exc: AgentRunError) -> int:
    for error_cls, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_cls):
            return status_code
    return 500


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from HTTPException detail payloads.
    fallback = _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")
    if isinstance(detail, dict):
        code = str(detail.get("code") or fallback)
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return fallback, detail, None
    return fallback, "Request failed", None


async def agent_error_handler(request: Request, exc: AgentRunError) -> JSONResponse:
    status_code = status_for(exc)
    headers: dict[str, str] = {}
    if isinstance(exc, ProviderUnavailableError):
        headers["Retry-After"] = str(get_settings().cb_recovery_timeout_s)
    details: dict[str, Any] = {"retryable": exc.retryable}
    if isinstance(exc, RedactionConfigError):
        details["issues"] = exc.issues
    if status_code >= 500:
        logger.warning("agent_request_failed code=%s status=%s", exc.code, status_code)
    payload = error_response(request=request, code=exc.code, message=str(exc), details=details)
    return JSONResponse(content=payload, status_code=status_code, headers=headers or None)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": exc.errors()},
    )
    return JSONResponse(content=payload, status_code=422)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.exception("unhandled_request_error path=%s", request.url.path)
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)
