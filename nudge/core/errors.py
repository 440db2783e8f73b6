"""
Custom exception hierarchy for the Nudge behavioral engine.

Rule: every HTTP error has a machine-readable `code` string so clients
can branch on it without parsing English messages.
"""
from __future__ import annotations

import logging
from typing import Any

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette import status

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Exception classes
# ---------------------------------------------------------------------------

class NudgeException(Exception):
    """Base class for all application-level errors."""
    http_status: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    code: str = "INTERNAL_ERROR"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class PersistenceError(NudgeException):
    """
    The profile store could not read or write. Recoverable: the caller may
    retry, and the next evaluation starts again from the persisted profile.
    """
    http_status = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "PERSISTENCE_ERROR"

    def __init__(self, operation: str, user_id: str | None = None):
        details: dict[str, Any] = {"operation": operation}
        if user_id is not None:
            details["user_id"] = user_id
        super().__init__(
            message=f"Behavioral store failed during '{operation}'. Retry later.",
            details=details,
        )


class InterventionNotFoundError(NudgeException):
    http_status = status.HTTP_404_NOT_FOUND
    code = "INTERVENTION_NOT_FOUND"

    def __init__(self, intervention_id: str):
        super().__init__(
            message=f"Intervention {intervention_id} does not exist.",
            details={"intervention_id": intervention_id},
        )


class ResponseAlreadyRecordedError(NudgeException):
    http_status = status.HTTP_409_CONFLICT
    code = "RESPONSE_ALREADY_RECORDED"

    def __init__(self, intervention_id: str, response: str):
        super().__init__(
            message=f"Intervention {intervention_id} already has response '{response}'.",
            details={"intervention_id": intervention_id, "response": response},
        )


class WinNotFoundError(NudgeException):
    http_status = status.HTTP_404_NOT_FOUND
    code = "WIN_NOT_FOUND"

    def __init__(self, win_id: str):
        super().__init__(
            message=f"Win {win_id} does not exist.",
            details={"win_id": win_id},
        )


# ---------------------------------------------------------------------------
# FastAPI exception handlers
# ---------------------------------------------------------------------------

async def nudge_exception_handler(request: Request, exc: NudgeException) -> JSONResponse:
    if exc.http_status >= 500:
        logger.error("%s on %s: %s", exc.code, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.http_status,
        content=exc.to_dict(),
    )


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Return structured 422 with machine-readable field errors."""
    field_errors = []
    for error in exc.errors():
        field_errors.append({
            "field": ".".join(str(loc) for loc in error["loc"] if loc != "body"),
            "message": error["msg"],
            "type": error["type"],
        })
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "code": "VALIDATION_ERROR",
            "message": "Request validation failed.",
            "details": {"errors": field_errors},
        },
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s", request.url.path)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "code": "INTERNAL_ERROR",
            "message": "An unexpected error occurred.",
        },
    )
