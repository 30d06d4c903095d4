from __future__ import annotations

from typing import Any

from tenantadmin.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    # Build a consistent error envelope example for OpenAPI docs.
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, *, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {
            "application/json": {
                "example": _error_example(code=code, message=message, details=details),
            }
        },
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: _response(
        "Bad request",
        code="BAD_REQUEST",
        message="Missing required fields: name, frequency, format, recipients",
    ),
    401: _response("Unauthorized", code="AUTH_UNAUTHORIZED", message="Missing or invalid bearer token"),
    403: _response("Forbidden", code="AUTH_FORBIDDEN", message="Missing permission admin:users:read"),
    404: _response("Not found", code="NOT_FOUND", message="Resource not found"),
    409: _response(
        "Conflict",
        code="CONFLICT",
        message="Another preset with this name already exists",
    ),
    429: _response(
        "Rate limited",
        code="RATE_LIMITED",
        message="Rate limit exceeded",
        details={"scope": "client", "route_class": "read", "retry_after_ms": 1200},
    ),
    500: _response("Internal server error", code="INTERNAL_ERROR", message="Internal server error"),
    503: _response("Service unavailable", code="RATE_LIMIT_UNAVAILABLE", message="Rate limiting unavailable"),
}
