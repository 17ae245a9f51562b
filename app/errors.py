"""
Calibra — Domain error taxonomy.

Services raise these; ``app.main`` maps them onto HTTP responses.  Every
business-rule violation is raised before any mutation is attempted.
"""

from __future__ import annotations

from fastapi import status


class CalibrationError(Exception):
    """Base class for all engine errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message: str = "Internal server error"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class UnauthorizedError(CalibrationError):
    """No account context could be resolved from the request."""

    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "Unauthorized"


class ForbiddenError(CalibrationError):
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "Missing permission for this action"


class NotFoundError(CalibrationError, LookupError):
    """Absent or owned by another tenant; the two are never distinguished."""

    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Session not found"


class ConflictError(CalibrationError):
    status_code = status.HTTP_409_CONFLICT
    default_message = "Action not allowed in the current session state"


class ValidationFailedError(CalibrationError, ValueError):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    default_message = "Invalid request"

    def __init__(self, message: str | None = None, details: list[str] | None = None) -> None:
        super().__init__(message)
        self.details = details or []


class InternalError(CalibrationError):
    """Persistence or transaction failure.  Message is always generic."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = "Internal server error"
