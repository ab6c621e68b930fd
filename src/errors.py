"""
Shared exception types for the Mycelix Music API.

Each domain module raises subclasses of these; the Flask app maps them
to JSON error responses in a single place (see app.register_error_handlers).
"""

from typing import Any


class MycelixError(Exception):
    """Base exception for all Mycelix domain errors."""

    status_code = 500
    error_code = "internal_error"

    def __init__(self, message: str, details: dict[str, Any] | None = None, error_code: str | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        if error_code:
            self.error_code = error_code

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable response body."""
        return {"error": self.error_code, "message": self.message, **self.details}


class ValidationError(MycelixError):
    """Raised when a request payload or configuration is malformed."""

    status_code = 400
    error_code = "invalid_request"


class NotFoundError(MycelixError):
    """Raised when a referenced record does not exist."""

    status_code = 404
    error_code = "not_found"


class ForbiddenError(MycelixError):
    """Raised when the caller is authenticated but not allowed to do this."""

    status_code = 403
    error_code = "forbidden"


class ConflictError(MycelixError):
    """Raised when a write conflicts with the stored state (hash mismatch, duplicate id)."""

    status_code = 409
    error_code = "conflict"
