"""Error types and the exception handlers that render them as JSON."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, cast

from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from settlement_service.logging import get_logger

if TYPE_CHECKING:
    from fastapi import FastAPI, Request
    from starlette.types import ExceptionHandler


class ServiceError(Exception):
    """
    Base error carrying a machine-readable code, a message and an HTTP status.

    Rendered to clients as {"error", "message", "details"}.
    """

    def __init__(
        self,
        error: str,
        message: str,
        status_code: int,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.error = error
        self.message = message
        self.status_code = status_code
        self.details: dict[str, Any] = details if details is not None else {}


class NotFoundError(ServiceError):
    """Referenced task, escrow, dispute or user does not exist."""

    def __init__(self, error: str, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(error, message, 404, details)


class ForbiddenError(ServiceError):
    """Caller lacks the role or ownership the operation requires."""

    def __init__(self, error: str, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(error, message, 403, details)


class InvalidTransitionError(ServiceError):
    """Requested status change is not an edge of the transition table."""

    def __init__(self, entity: str, from_state: str, to_state: str) -> None:
        super().__init__(
            "INVALID_TRANSITION",
            f"Cannot move {entity} from '{from_state}' to '{to_state}'",
            409,
            {"entity": entity, "from": from_state, "to": to_state},
        )
        self.entity = entity
        self.from_state = from_state
        self.to_state = to_state


class ConflictError(ServiceError):
    """Another caller changed the entity first; refetch and retry with fresh state."""

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        error: str = "CONFLICT",
    ) -> None:
        super().__init__(error, message, 409, details)


class IdempotencyConflictError(ServiceError):
    """An idempotency key was reused with a different request body."""

    def __init__(self, key: str, endpoint: str) -> None:
        super().__init__(
            "IDEMPOTENCY_CONFLICT",
            "Idempotency key was already used with a different request",
            409,
            {"idempotency_key": key, "endpoint": endpoint},
        )


class InsufficientBalanceError(ServiceError):
    """Wallet debit exceeds the available balance."""

    def __init__(self, balance: int, requested: int) -> None:
        super().__init__(
            "INSUFFICIENT_BALANCE",
            "Insufficient balance",
            402,
            {"balance": balance, "requested": requested},
        )


class AccountFrozenError(ServiceError):
    """Caller's account is frozen by an administrator."""

    def __init__(self, user_id: str) -> None:
        super().__init__("ACCOUNT_FROZEN", "Account is frozen", 403, {"user_id": user_id})


class RateLimitExceededError(ServiceError):
    """Caller exceeded the per-endpoint ceiling for the current window."""

    def __init__(self, endpoint: str, limit: int, window_seconds: int) -> None:
        super().__init__(
            "RATE_LIMIT_EXCEEDED",
            "Too many requests. Please try again later.",
            429,
            {"endpoint": endpoint, "limit": limit, "window_seconds": window_seconds},
        )


class InvariantViolationError(ServiceError):
    """Internal consistency check failed. Signals a bug, never a business condition."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__("INVARIANT_VIOLATION", message, 500, details)


async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    """Handle ServiceError exceptions."""
    logger = get_logger(__name__)
    log_extra = {
        "error_code": exc.error,
        "status_code": exc.status_code,
        "path": str(request.url.path),
    }
    if isinstance(exc, InvariantViolationError):
        logger.error("Invariant violation", extra={**log_extra, "details": exc.details})
    else:
        logger.warning("Service error", extra=log_extra)
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.error, "message": exc.message, "details": exc.details},
    )


async def unhandled_exception_handler(request: Request, _exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions."""
    logger = get_logger(__name__)
    logger.exception("Unhandled exception", extra={"path": str(request.url.path)})
    return JSONResponse(
        status_code=500,
        content={
            "error": "internal_error",
            "message": "An unexpected error occurred",
            "details": {},
        },
    )


async def http_exception_handler(
    _request: Request,
    exc: StarletteHTTPException,
) -> JSONResponse:
    """Handle Starlette HTTP exceptions (e.g., 404/405 from the router)."""
    if exc.status_code == 405:
        return JSONResponse(
            status_code=405,
            content={
                "error": "METHOD_NOT_ALLOWED",
                "message": "Method not allowed",
                "details": {},
            },
        )
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": "HTTP_ERROR",
            "message": str(exc.detail),
            "details": {},
        },
    )


async def request_validation_handler(
    _request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    """Handle FastAPI parameter validation failures (query strings, path params)."""
    return JSONResponse(
        status_code=400,
        content={
            "error": "INVALID_PAYLOAD",
            "message": "Request parameters are invalid",
            "details": {"errors": [str(error.get("msg", "")) for error in exc.errors()]},
        },
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Register all exception handlers on the app."""
    app.add_exception_handler(ServiceError, cast("ExceptionHandler", service_error_handler))
    app.add_exception_handler(Exception, unhandled_exception_handler)
    app.add_exception_handler(
        StarletteHTTPException,
        cast("ExceptionHandler", http_exception_handler),
    )
    app.add_exception_handler(
        RequestValidationError,
        cast("ExceptionHandler", request_validation_handler),
    )
