"""
shared/exceptions.py
Domain error taxonomy raised by the workflow core.
Routers never catch these; main.py maps each to an HTTP status.
"""

from typing import Optional


class DomainError(Exception):
    """Base class. `code` is a stable machine-readable tag for clients."""

    status_code: int = 400
    code: str = "domain_error"

    def __init__(self, message: str, *, entity_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.entity_id = entity_id


class PermissionDenied(DomainError):
    """Actor lacks the role or ownership the operation requires."""
    status_code = 403
    code = "permission_denied"


class InvalidTransition(DomainError):
    """Operation is not legal from the record's current status."""
    status_code = 409
    code = "invalid_transition"


class StaleRecord(InvalidTransition):
    """The conditional write matched nothing: the record changed after it was read."""
    code = "stale_record"


class NotFound(DomainError):
    status_code = 404
    code = "not_found"


class ValidationError(DomainError):
    """A required field is missing or empty."""
    status_code = 422
    code = "validation_error"

    def __init__(self, message: str, *, field: Optional[str] = None, entity_id: Optional[str] = None):
        super().__init__(message, entity_id=entity_id)
        self.field = field


class StoreUnavailable(DomainError):
    """The persistent store could not be reached. Not retried by the core."""
    status_code = 503
    code = "store_unavailable"


class MalformedRecord(DomainError):
    """A stored record violates the model invariants and was refused on load."""
    status_code = 500
    code = "malformed_record"
