"""Typed exceptions for auth failures.

Every workflow failure is an AppError tagged with an ErrorKind. Subclasses
exist where callers need to tell failures apart in code; the HTTP layer only
ever looks at kind, message, code and details.
"""

from enum import Enum
from typing import Any


class ErrorKind(Enum):
    """Failure kinds and their default transport status."""

    BAD_REQUEST = 400
    UNAUTHORIZED = 401
    FORBIDDEN = 403
    NOT_FOUND = 404
    CONFLICT = 409
    VALIDATION_ERROR = 422
    TOO_MANY_REQUESTS = 429
    INTERNAL = 500
    NOTIFICATION_FAILED = 502

    @property
    def status_code(self) -> int:
        return self.value


class AppError(Exception):
    """Base class for all workflow errors.

    Operational errors are expected and shown to the user with their real
    message. Non-operational errors are masked at the HTTP boundary.
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        code: str | None = None,
        details: Any = None,
        is_operational: bool = True,
    ):
        self.kind = kind
        self.message = message
        self.code = code or kind.name
        self.details = details
        self.is_operational = is_operational
        super().__init__(message)

    @property
    def status_code(self) -> int:
        return self.kind.status_code

    @classmethod
    def bad_request(cls, message: str = "Bad Request", details: Any = None, code: str | None = None) -> "AppError":
        return cls(ErrorKind.BAD_REQUEST, message, code=code, details=details)

    @classmethod
    def unauthorized(cls, message: str = "Unauthorized") -> "AppError":
        return cls(ErrorKind.UNAUTHORIZED, message)

    @classmethod
    def forbidden(cls, message: str = "Forbidden") -> "AppError":
        return cls(ErrorKind.FORBIDDEN, message)

    @classmethod
    def not_found(cls, message: str = "Resource not found") -> "AppError":
        return cls(ErrorKind.NOT_FOUND, message)

    @classmethod
    def conflict(cls, message: str = "Conflict", details: Any = None) -> "AppError":
        return cls(ErrorKind.CONFLICT, message, details=details)

    @classmethod
    def validation(cls, message: str = "Validation failed", details: Any = None) -> "AppError":
        return cls(ErrorKind.VALIDATION_ERROR, message, details=details)

    @classmethod
    def internal(cls, message: str = "Internal Server Error") -> "AppError":
        return cls(ErrorKind.INTERNAL, message, is_operational=False)

    @classmethod
    def invalid_id(cls) -> "AppError":
        return cls(ErrorKind.BAD_REQUEST, "Invalid id format", code="INVALID_ID")


class InvalidOrExpiredCodeError(AppError):
    """
    Verification code missing, expired, exhausted, or already used.

    The message never says which of those applied, nor whether the code or
    the email was the mismatching part.
    """

    def __init__(self, message: str = "Invalid or expired verification code"):
        super().__init__(ErrorKind.BAD_REQUEST, message, code="INVALID_CODE")


class RateLimitedError(AppError):
    """Too many attempts. Client should wait before retrying."""

    def __init__(self, retry_after_seconds: int, message: str | None = None):
        self.retry_after_seconds = retry_after_seconds
        super().__init__(
            ErrorKind.TOO_MANY_REQUESTS,
            message or f"Rate limited. Retry after {retry_after_seconds} seconds.",
            code="RATE_LIMITED",
            details={"retry_after_seconds": retry_after_seconds},
        )


class DuplicateEmailError(AppError):
    """Uniqueness violation on the users.email column."""

    def __init__(self, field: str = "email"):
        super().__init__(
            ErrorKind.CONFLICT,
            f"{field} already exists",
            code="DUPLICATE_KEY",
            details={"field": field},
        )


class TokenError(AppError):
    """
    Signed token rejected.

    reason ("expired" or "malformed") is kept for logs only; the user-facing
    message is identical for both.
    """

    reason = "invalid"

    def __init__(self, token_type: str):
        self.token_type = token_type
        super().__init__(
            ErrorKind.UNAUTHORIZED,
            f"Invalid or expired {token_type} token",
            code="INVALID_TOKEN",
        )


class TokenExpiredError(TokenError):
    reason = "expired"


class TokenMalformedError(TokenError):
    reason = "malformed"


class NotificationFailedError(AppError):
    """
    Outbound email failed after the preceding state change was committed.

    Distinguishes "your account was created but we could not email you"
    from "your account was not created".
    """

    def __init__(self, message: str = "The email could not be sent. Please request a new code."):
        super().__init__(ErrorKind.NOTIFICATION_FAILED, message, code="NOTIFICATION_FAILED")
