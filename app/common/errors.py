"""
Application error hierarchy. Every error carries a machine-readable code and
the HTTP status the central handlers in app.main respond with.
"""
from enum import Enum
from typing import Any, Optional


class ErrorCode(str, Enum):
    VALIDATION_ERROR = "VALIDATION_ERROR"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    DATABASE_ERROR = "DATABASE_ERROR"
    EXTERNAL_SERVICE_ERROR = "EXTERNAL_SERVICE_ERROR"
    PAYMENT_ERROR = "PAYMENT_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class AppError(Exception):
    status_code: int = 500
    code: ErrorCode = ErrorCode.INTERNAL_ERROR

    def __init__(
        self,
        message: str,
        code: Optional[ErrorCode] = None,
        status_code: Optional[int] = None,
        details: Optional[Any] = None
    ):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        self.details = details


class ValidationError(AppError):
    status_code = 400
    code = ErrorCode.VALIDATION_ERROR


class UnauthorizedError(AppError):
    status_code = 401
    code = ErrorCode.UNAUTHORIZED

    def __init__(self, message: str = "Authentication required", details: Optional[Any] = None):
        super().__init__(message, details=details)


class ForbiddenError(AppError):
    status_code = 403
    code = ErrorCode.FORBIDDEN

    def __init__(self, message: str = "Access denied", details: Optional[Any] = None):
        super().__init__(message, details=details)


class NotFoundError(AppError):
    status_code = 404
    code = ErrorCode.NOT_FOUND

    def __init__(self, resource: str = "Resource", details: Optional[Any] = None):
        super().__init__(f"{resource} not found", details=details)


class ConflictError(AppError):
    status_code = 409
    code = ErrorCode.CONFLICT


class RateLimitError(AppError):
    status_code = 429
    code = ErrorCode.RATE_LIMIT_EXCEEDED

    def __init__(self, message: str = "Too many requests", retry_after: Optional[int] = None):
        super().__init__(message, details={"retry_after": retry_after} if retry_after else None)
        self.retry_after = retry_after


class DatabaseError(AppError):
    status_code = 500
    code = ErrorCode.DATABASE_ERROR


class ExternalServiceError(AppError):
    status_code = 502
    code = ErrorCode.EXTERNAL_SERVICE_ERROR

    def __init__(self, service: str, message: str, details: Optional[Any] = None):
        super().__init__(f"{service}: {message}", details=details)
        self.service = service


class PaymentError(AppError):
    status_code = 400
    code = ErrorCode.PAYMENT_ERROR


def code_for_status(status_code: int) -> ErrorCode:
    """Map a bare HTTP status (from HTTPException) to an error code."""
    return {
        400: ErrorCode.VALIDATION_ERROR,
        401: ErrorCode.UNAUTHORIZED,
        403: ErrorCode.FORBIDDEN,
        404: ErrorCode.NOT_FOUND,
        405: ErrorCode.VALIDATION_ERROR,
        409: ErrorCode.CONFLICT,
        422: ErrorCode.VALIDATION_ERROR,
        429: ErrorCode.RATE_LIMIT_EXCEEDED,
        502: ErrorCode.EXTERNAL_SERVICE_ERROR,
    }.get(status_code, ErrorCode.INTERNAL_ERROR)
