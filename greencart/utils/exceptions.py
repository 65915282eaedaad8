from __future__ import annotations

from typing import Any, Optional

from greencart.utils.error_codes import ErrorCode, ERROR_MESSAGES


def _normalize_error_code(value: ErrorCode | str | None) -> ErrorCode:
    if value is None:
        return ErrorCode.E010
    if isinstance(value, ErrorCode):
        return value
    try:
        return ErrorCode(str(value))
    except ValueError:
        return ErrorCode.E010


class GreenCartException(Exception):
    """Base exception for the GreenCart backend.

    API response format is handled by the global exception handler.
    """

    def __init__(
        self,
        message: str | None = None,
        *,
        code: ErrorCode | str = ErrorCode.E010,
        details: Optional[dict[str, Any]] = None,
        status_code: int = 500,
    ):
        normalized = _normalize_error_code(code)
        if message is None:
            message = ERROR_MESSAGES.get(normalized, ERROR_MESSAGES[ErrorCode.E010])

        self.message = message
        self.code = normalized.value
        self.details = details or {}
        self.status_code = status_code
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"error": {"code": self.code, "message": self.message, "details": self.details}}


class BadRequestException(GreenCartException):
    def __init__(self, message: str | None = None, *, details: Optional[dict[str, Any]] = None):
        super().__init__(message, code=ErrorCode.E001, details=details, status_code=400)


class UnauthorizedException(GreenCartException):
    def __init__(self, message: str | None = None, *, details: Optional[dict[str, Any]] = None):
        super().__init__(message or "Unauthorized", code=ErrorCode.E005, details=details, status_code=401)


class ForbiddenException(GreenCartException):
    def __init__(self, message: str | None = None, *, details: Optional[dict[str, Any]] = None):
        super().__init__(message or "Forbidden", code=ErrorCode.E006, details=details, status_code=403)


class NotFoundException(GreenCartException):
    def __init__(self, message: str | None = None, *, details: Optional[dict[str, Any]] = None):
        super().__init__(message or "Not Found", code=ErrorCode.E004, details=details, status_code=404)


class TooManyRequestsException(GreenCartException):
    def __init__(self, message: str | None = None, *, details: Optional[dict[str, Any]] = None):
        super().__init__(message or "Too many requests", code=ErrorCode.E007, details=details, status_code=429)


class InvalidConfiguration(GreenCartException):
    """Malformed simulation start request; rejected before any state is created."""

    def __init__(self, message: str | None = None, *, details: Optional[dict[str, Any]] = None):
        super().__init__(message, code=ErrorCode.E002, details=details, status_code=400)


class PersistenceFailure(GreenCartException):
    """Run record store read/write failed. Not retried automatically."""

    def __init__(self, message: str | None = None, *, details: Optional[dict[str, Any]] = None):
        super().__init__(message, code=ErrorCode.E003, details=details, status_code=503)
