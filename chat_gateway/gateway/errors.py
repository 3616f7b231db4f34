from __future__ import annotations

from enum import Enum
from typing import Any

from fastapi import status
from fastapi.responses import JSONResponse


class RejectionReason(str, Enum):
    CREDENTIAL_MISSING = "credential_missing"
    CREDENTIAL_INVALID = "credential_invalid"
    MALFORMED_INPUT = "malformed_input"


class FailureKind(str, Enum):
    UNAUTHORIZED = "unauthorized"
    NOT_FOUND = "not_found"
    MODEL_NOT_ALLOWED = "model_not_allowed"
    UPSTREAM_ERROR = "upstream_error"
    UPSTREAM_INTERRUPTED = "upstream_interrupted"
    INTERNAL = "internal"


PROVIDER_NOT_FOUND = "provider_not_found"

# Every rejection reason renders this exact body so callers cannot tell them apart.
UNAUTHORIZED_MESSAGE = "Invalid or missing credentials."
INTERNAL_ERROR_MESSAGE = "An unexpected error occurred."


def error_response(
    status_code: int,
    *,
    error_type: str,
    message: str,
    upstream_status: int | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    error: dict[str, Any] = {"type": error_type, "message": message}
    if upstream_status is not None:
        error["upstream_status"] = upstream_status
    return JSONResponse(
        status_code=status_code,
        content={"error": error},
        headers=headers,
    )


def unauthorized_response() -> JSONResponse:
    return error_response(
        status.HTTP_401_UNAUTHORIZED,
        error_type=FailureKind.UNAUTHORIZED.value,
        message=UNAUTHORIZED_MESSAGE,
        headers={"WWW-Authenticate": "Bearer"},
    )


def internal_error_response() -> JSONResponse:
    return error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        error_type=FailureKind.INTERNAL.value,
        message=INTERNAL_ERROR_MESSAGE,
    )
