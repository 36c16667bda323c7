"""
Error taxonomy for task operations.

Each error carries a stable code, the HTTP status the server maps it to, and
whether the caller may retry. Validation and permission failures are final;
transient failures mean the directory or notification backend was unreachable.
"""
from typing import Any, Dict


class CrewboardError(Exception):
    """Base class for errors surfaced to callers."""
    code = "INTERNAL_ERROR"
    http_status = 500
    retryable = False

    def __init__(self, message: str, details: str = ""):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        body = {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(CrewboardError):
    """Empty title, unknown enum value, unknown individual target."""
    code = "VALIDATION_ERROR"
    http_status = 400


class PermissionDenied(CrewboardError):
    """Actor is not allowed to perform this write."""
    code = "PERMISSION_DENIED"
    http_status = 403


class NotFound(CrewboardError):
    """Unknown task id (or notification id)."""
    code = "NOT_FOUND"
    http_status = 404


class TransientResolutionFailure(CrewboardError):
    """Directory or notification backend unreachable. Safe to retry."""
    code = "TRANSIENT_FAILURE"
    http_status = 503
    retryable = True


class ConfigError(Exception):
    """Raised when configuration is invalid or incomplete."""
    pass
