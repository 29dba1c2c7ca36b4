"""
Domain error taxonomy for the case workflow engine

Every domain rule violation raised by a lifecycle operation is one of these.
Duplicate invocations are not errors: they are reported through
OperationOutcome.DUPLICATE on the operation result.
"""
from typing import Any, Dict, Optional


class WorkflowError(Exception):
    """Base class for case workflow errors"""

    kind = "workflow_error"
    status_code = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for API responses"""
        return {
            "error": self.kind,
            "detail": self.message,
            "details": self.details,
        }


class NotFoundError(WorkflowError):
    """Referenced case, prescription, assessment or task does not exist"""

    kind = "not_found"
    status_code = 404


class InvalidTransitionError(WorkflowError):
    """Operation is not valid from the case's current stage"""

    kind = "invalid_transition"
    status_code = 409


class PreconditionUnmetError(WorkflowError):
    """Referenced entity is missing or in the wrong sub-state"""

    kind = "precondition_unmet"
    status_code = 422


class ConcurrencyConflictError(WorkflowError):
    """Another operation on the same case committed first and the retry also lost"""

    kind = "concurrency_conflict"
    status_code = 409
