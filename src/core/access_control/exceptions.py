"""
Access control exceptions.

Resolution never raises for missing data (it fails closed to DENY). These
errors are raised by mutations so callers can tell "structurally invalid"
from "transient conflict" from "protected".
"""

from typing import Optional, Any

from .models import RejectionCode


class AccessControlError(Exception):
    """Base class for access-control mutation errors."""

    code: str = "ACCESS_CONTROL_ERROR"
    retryable: bool = False

    def __init__(self, message: str, code: Optional[str] = None, **details: Any):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details

    def to_dict(self) -> dict:
        return {
            "error": self.code,
            "message": self.message,
            "retryable": self.retryable,
            **{k: str(v) for k, v in self.details.items()},
        }


class EntityNotFoundError(AccessControlError):
    """Subject or target entity is missing or soft-deleted."""

    code = "NOT_FOUND"

    def __init__(self, kind: str, entity_id: Any):
        super().__init__(f"{kind} not found: {entity_id}", kind=kind, entity_id=entity_id)
        self.kind = kind
        self.entity_id = entity_id


class GrantNotFoundError(EntityNotFoundError):
    """Grant id does not exist in the given grant table."""

    code = "GRANT_NOT_FOUND"


class StructuralViolationError(AccessControlError):
    """Write rejected before touching the database (cycle, depth, window...)."""

    def __init__(self, code: RejectionCode, message: str, **details: Any):
        super().__init__(message, code=code.value, **details)
        self.rejection = code


class GrantConflictError(AccessControlError):
    """A concurrent mutation of the same (subject, target) pair won the race."""

    code = "CONFLICT"
    retryable = True


class SystemProtectedError(AccessControlError):
    """Attempt to delete a system row or change its system flag."""

    code = "SYSTEM_PROTECTED"
