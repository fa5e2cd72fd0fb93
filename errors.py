"""
Error taxonomy shared by the API and the client library.

Every API failure leaves the server as {"success": false, "message", "errors"?}.
"""

import logging
from typing import Dict, List, Optional, Union

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pymongo.errors import DuplicateKeyError
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)

FieldErrors = Dict[str, List[str]]


class AppError(Exception):
    status_code = 500
    default_message = "An error occurred"

    def __init__(self, message: Optional[str] = None, status_code: Optional[int] = None):
        self.message = message or self.default_message
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"success": False, "message": self.message}


class ValidationError(AppError):
    status_code = 400
    default_message = "Validation error"

    def __init__(
        self,
        errors: Union[FieldErrors, str, None] = None,
        message: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        if isinstance(errors, str):
            message = message or errors
            errors = None
        self.errors: FieldErrors = errors or {}
        super().__init__(message, status_code)

    @classmethod
    def for_field(cls, field: str, message: str) -> "ValidationError":
        return cls({field: [message]}, message=message)

    def to_dict(self) -> dict:
        body = super().to_dict()
        if self.errors:
            body["errors"] = self.errors
        return body


class AuthenticationError(AppError):
    status_code = 401
    default_message = "Not authenticated"


class AuthorizationError(AppError):
    status_code = 403
    default_message = "Access denied"


class NotFoundError(AppError):
    status_code = 404
    default_message = "Resource not found"


class RateLimitError(AppError):
    status_code = 429
    default_message = "Too many requests, please try again later"


class ServerError(AppError):
    status_code = 500
    default_message = "Internal server error"


# Client-side only: no HTTP response was obtained.
class NetworkError(AppError):
    status_code = 0
    default_message = "Network error: no response received"


class RequestTimeout(NetworkError):
    default_message = "The request timed out"


STATUS_ERRORS = {
    400: ValidationError,
    401: AuthenticationError,
    403: AuthorizationError,
    404: NotFoundError,
    422: ValidationError,
    429: RateLimitError,
}


def error_for_status(status_code: int, body: Optional[dict] = None) -> AppError:
    """Rebuild a taxonomy error from an HTTP status and an error envelope."""
    body = body or {}
    message = body.get("message")
    if status_code in (400, 422):
        return ValidationError(body.get("errors") or None, message=message, status_code=status_code)
    cls = STATUS_ERRORS.get(status_code)
    if cls is None:
        cls = ServerError if status_code >= 500 else AppError
    return cls(message, status_code=status_code)


def _field_errors(exc: RequestValidationError) -> FieldErrors:
    errors: FieldErrors = {}
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path")]
        field = ".".join(loc) or "body"
        errors.setdefault(field, []).append(err.get("msg", "Invalid value"))
    return errors


async def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def request_validation_handler(request: Request, exc: RequestValidationError):
    error = ValidationError(_field_errors(exc), message="Validation error", status_code=422)
    return JSONResponse(status_code=422, content=error.to_dict())


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    if exc.status_code == 404 and message == "Not Found":
        message = f"Cannot find {request.url.path} on this server"
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": message},
        headers=getattr(exc, "headers", None),
    )


async def duplicate_key_handler(request: Request, exc: DuplicateKeyError):
    fields = list((exc.details or {}).get("keyValue") or {}) or ["value"]
    logger.info(f"Duplicate key on {request.url.path}: {fields}")
    error = ValidationError({field: ["already exists"] for field in fields}, message="Duplicate field value entered")
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(status_code=500, content=ServerError().to_dict())


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(DuplicateKeyError, duplicate_key_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
