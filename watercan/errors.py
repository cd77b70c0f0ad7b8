# watercan/errors.py
"""
Error taxonomy and the FastAPI handlers that render it.

Every expected failure is raised as an ``AppError`` subclass and rendered
in the standard envelope:

    {"error": {"code": "...", "message": "..."}, "request_id": "..."}

Unexpected exceptions are logged with a traceback and rendered as a
generic 500 so internals never reach the client.
"""

from __future__ import annotations

import uuid
import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded as SlowAPIRateLimitExceeded
from starlette.exceptions import HTTPException

log = logging.getLogger("watercan.errors")


class AppError(Exception):
    """Base class for failures that map to a client-facing status code."""

    status_code = 500
    code = "INTERNAL_ERROR"
    message = "Something went wrong. Please try again."

    def __init__(self, message: Optional[str] = None, **extra: Any):
        self.message = message or self.message
        self.extra = extra
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"code": self.code, "message": self.message}
        body.update(self.extra)
        return body


class ValidationError(AppError):
    status_code = 400
    code = "VALIDATION_ERROR"
    message = "Invalid input."


class RateLimitExceeded(AppError):
    status_code = 429
    code = "RATE_LIMITED"
    message = "Too many requests. Please try again later."


class ChallengeNotFound(AppError):
    status_code = 400
    code = "CHALLENGE_NOT_FOUND"
    message = "No OTP found. Please request a new one."


class ChallengeExpired(AppError):
    status_code = 400
    code = "CHALLENGE_EXPIRED"
    message = "OTP expired. Please request a new one."


class TooManyAttempts(AppError):
    status_code = 400
    code = "TOO_MANY_ATTEMPTS"
    message = "Too many attempts. Please request a new OTP."


class InvalidChallenge(AppError):
    status_code = 400
    code = "INVALID_CHALLENGE"
    message = "Invalid OTP."


class DisplayNameRequired(AppError):
    """New principals must supply a name; the pending challenge is kept."""

    status_code = 400
    code = "DISPLAY_NAME_REQUIRED"
    message = "Full name is required for new accounts."

    def __init__(self, message: Optional[str] = None):
        super().__init__(message, requiresName=True)


class Unauthorized(AppError):
    status_code = 401
    code = "AUTH_REQUIRED"
    message = "Access token required."


class Forbidden(AppError):
    status_code = 403
    code = "FORBIDDEN"
    message = "Invalid or expired token."


class NotFound(AppError):
    status_code = 404
    code = "NOT_FOUND"
    message = "Resource not found."


class Conflict(AppError):
    status_code = 409
    code = "CONFLICT"
    message = "Resource already exists."


class Internal(AppError):
    status_code = 500
    code = "INTERNAL_ERROR"


# ============================================================
# Rendering
# ============================================================

def error_json(
    code: str,
    message: str,
    status: int = 400,
    request_id: Optional[str] = None,
    **extra: Any,
) -> JSONResponse:
    error: Dict[str, Any] = {"code": code, "message": message}
    error.update(extra)
    return JSONResponse(
        status_code=status,
        content={"error": error, "request_id": request_id or str(uuid.uuid4())},
    )


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, Unauthorized) else None
    response = JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.to_dict(), "request_id": str(uuid.uuid4())},
        headers=headers,
    )
    return response


async def http_exc_handler(request: Request, exc: HTTPException) -> JSONResponse:
    if isinstance(exc.detail, dict) and "error" in exc.detail:
        err = exc.detail["error"]
        return error_json(err.get("code", "HTTP_ERROR"), err.get("message", "Request error."), exc.status_code)
    code = "NOT_FOUND" if exc.status_code == 404 else "HTTP_ERROR"
    return error_json(code, str(exc.detail or "Request error."), exc.status_code)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    message = "Invalid input."
    if errors:
        first = errors[0]
        field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        detail = str(first.get("msg", "")).removeprefix("Value error, ")
        if field and detail:
            message = f"{field}: {detail}"
    return error_json("VALIDATION_ERROR", message, 400)


async def ratelimit_handler(request: Request, exc: SlowAPIRateLimitExceeded) -> JSONResponse:
    log.info("Rate limit hit on %s %s", request.method, request.url.path)
    return error_json(RateLimitExceeded.code, RateLimitExceeded.message, RateLimitExceeded.status_code)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    request_id = str(uuid.uuid4())
    log.error(
        "Unhandled error on %s %s (request_id=%s)",
        request.method, request.url.path, request_id,
        exc_info=exc,
    )
    return error_json(Internal.code, Internal.message, 500, request_id)


def register_exception_handlers(app: FastAPI) -> None:
    """Attach the taxonomy handlers to an app."""
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(HTTPException, http_exc_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(SlowAPIRateLimitExceeded, ratelimit_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
