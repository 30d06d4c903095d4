from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from tenantadmin.apps.api.response import error_response
from tenantadmin.persistence.guards import TenantPredicateError


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    429: "RATE_LIMITED",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


def _default_code(status_code: int) -> str:
    # Map status codes to fallback error codes when none are provided.
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from FastAPI HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def starlette_http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    # Router-level 404/405 responses share the same envelope as handler errors.
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


def database_error(message: str) -> HTTPException:
    # Callers log the underlying SQLAlchemyError; clients only see the operation.
    return HTTPException(status_code=500, detail={"code": "INTERNAL_ERROR", "message": message})


def _first_error_message(errors: list[dict[str, Any]]) -> str:
    if not errors:
        return "Validation error"
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()) if part not in {"body", "query", "path"})
    message = str(first.get("msg") or "Invalid value")
    return f"{location}: {message}" if location else message


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    # Malformed request bodies and parameters are client errors, reported as 400.
    errors = jsonable_encoder(exc.errors())
    payload = error_response(
        request=request,
        code="VALIDATION_ERROR",
        message=_first_error_message(errors),
        details={"errors": errors},
    )
    return JSONResponse(content=payload, status_code=400)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.exception(
        "unhandled_exception method=%s path=%s", request.method, request.url.path, exc_info=exc
    )
    payload = error_response(
        request=request,
        code="INTERNAL_ERROR",
        message="Internal server error",
    )
    return JSONResponse(content=payload, status_code=500)


async def tenant_predicate_exception_handler(
    request: Request, exc: TenantPredicateError
) -> JSONResponse:
    # A query built without a tenant scope is a server bug, never a client error.
    logger.error("tenant_predicate_missing method=%s path=%s", request.method, request.url.path)
    payload = error_response(
        request=request,
        code="TENANT_PREDICATE_REQUIRED",
        message=exc.message,
    )
    return JSONResponse(content=payload, status_code=500)
