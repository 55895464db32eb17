from typing import Any

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import ORJSONResponse


class AppError(Exception):
    """Base application error with consistent schema."""

    def __init__(
        self,
        message: str,
        code: str = "ERROR",
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class UnauthorizedError(AppError):
    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message, code="UNAUTHORIZED", status_code=status.HTTP_401_UNAUTHORIZED)


class ForbiddenError(AppError):
    def __init__(self, message: str = "Forbidden"):
        super().__init__(message, code="FORBIDDEN", status_code=status.HTTP_403_FORBIDDEN)


class NotFoundError(AppError):
    def __init__(self, message: str = "Not found"):
        super().__init__(message, code="NOT_FOUND", status_code=status.HTTP_404_NOT_FOUND)


class BadRequestError(AppError):
    def __init__(self, message: str = "Bad request", details: dict[str, Any] | None = None):
        super().__init__(message, code="BAD_REQUEST", status_code=status.HTTP_400_BAD_REQUEST, details=details)


# Ledger errors


class PaymentRequiredError(AppError):
    """User cannot afford the operation; rendered from an InsufficientCredits result."""

    def __init__(self, required: int, available: int):
        shortfall = max(required - available, 0)
        super().__init__(
            f"Insufficient credits: {shortfall} more needed. Purchase credits to continue.",
            code="INSUFFICIENT_CREDITS",
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            details={"required": required, "available": available, "shortfall": shortfall},
        )


class InvariantViolationError(AppError):
    """Ledger write would break an invariant (negative balance, stale balance_before)."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            message,
            code="INVARIANT_VIOLATION",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            details=details,
        )


class LockTimeoutError(AppError):
    def __init__(self, user_id: str, timeout: float):
        super().__init__(
            "Credit balance is busy, please retry",
            code="LOCK_TIMEOUT",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            details={"user_id": user_id, "timeout_seconds": timeout},
        )


class ConcurrentModificationError(AppError):
    def __init__(self, user_id: str):
        super().__init__(
            "Credit balance changed concurrently, please retry",
            code="CONCURRENT_MODIFICATION",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            details={"user_id": user_id},
        )


class PurchaseNotFoundError(AppError):
    def __init__(self, transaction_reference: str):
        super().__init__(
            "No purchase matches this transaction reference",
            code="PURCHASE_NOT_FOUND",
            status_code=status.HTTP_404_NOT_FOUND,
            details={"transaction_reference": transaction_reference},
        )


def error_response(request: Request, exc: AppError) -> ORJSONResponse:
    body = {
        "error": {
            "message": exc.message,
            "code": exc.code,
            "details": exc.details,
        }
    }
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return ORJSONResponse(status_code=exc.status_code, content=body)


async def app_exception_handler(request: Request, exc: AppError) -> ORJSONResponse:
    if isinstance(exc, InvariantViolationError):
        from app.core.logging import get_logger
        get_logger(__name__).error("invariant_violation", message=exc.message, **exc.details)
    return error_response(request, exc)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> ORJSONResponse:
    body = {
        "error": {
            "message": "Validation error",
            "code": "VALIDATION_ERROR",
            "details": {"errors": exc.errors()},
        }
    }
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return ORJSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=body,
    )


async def generic_exception_handler(request: Request, exc: Exception) -> ORJSONResponse:
    from app.core.logging import get_logger
    get_logger(__name__).exception("unhandled_exception", exc_info=exc)
    body = {
        "error": {
            "message": "Internal server error",
            "code": "INTERNAL_ERROR",
            "details": {},
        }
    }
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return ORJSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=body,
    )
