"""Domain errors raised by the requisition workflow.

Every error carries a stable machine-readable ``code`` and the HTTP status
it maps to. Route handlers never build error responses themselves; the
handlers registered in ``main.py`` render ``{"error": code, "detail": msg}``.
"""

from typing import Any, Optional


class WorkflowError(Exception):
    """Base class for all workflow errors."""

    code = "error"
    status_code = 500

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        body = {"error": self.code, "detail": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(WorkflowError):
    """Missing or malformed input."""

    code = "validation_error"
    status_code = 400


class NotFound(WorkflowError):
    code = "not_found"
    status_code = 404


class Forbidden(WorkflowError):
    """Role or ownership rule violated."""

    code = "forbidden"
    status_code = 403


class Conflict(WorkflowError):
    """Status precondition not met, e.g. submitting a non-draft requisition."""

    code = "conflict"
    status_code = 400


class PersistenceError(WorkflowError):
    """Storage failure. The message never carries driver details."""

    code = "persistence_error"
    status_code = 500
