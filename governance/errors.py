"""
Governance Errors

Closed error taxonomy surfaced to the tool layer.

Every error carries an ErrorCode tag. Callers dispatch on the tag through
lookup tables (see tool_router.ERROR_STATUS_CODES), never on the class.

Policy outcomes (ScopeResult, GateResult, ConstraintEvaluationResult,
TransitionResult) are NOT errors and are never raised.
"""

from enum import Enum
from typing import Optional, Dict, Any


class ErrorCode(str, Enum):
    """
    Error tags.

    LOCKED - the tool layer maps EXACTLY these codes to protocol errors.
    """
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    UNAUTHORIZED = "UNAUTHORIZED"
    CONFLICT = "CONFLICT"
    DOMAIN_ERROR = "DOMAIN_ERROR"


class GovernanceError(Exception):
    """Base class for all errors raised by the governance engine."""

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.DOMAIN_ERROR,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code.value,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(GovernanceError):
    """Bad input shape or a missing required field."""

    def __init__(self, message: str, field: Optional[str] = None):
        details = {"field": field} if field else {}
        super().__init__(message, ErrorCode.VALIDATION_ERROR, details)
        self.field = field


class NotFoundError(GovernanceError):
    """Unknown task, project, decision or other entity."""

    def __init__(self, message: str = "Entity not found"):
        super().__init__(message, ErrorCode.NOT_FOUND)


class UnauthorizedError(GovernanceError):
    """User does not own the requested resource."""

    def __init__(self, message: str = "User does not have permission to access this resource"):
        super().__init__(message, ErrorCode.UNAUTHORIZED)


class ConflictError(GovernanceError):
    """A compare-and-swap write lost against a concurrent writer."""

    def __init__(self, message: str, expected_version: int, actual_version: int):
        super().__init__(
            message,
            ErrorCode.CONFLICT,
            {"expected_version": expected_version, "actual_version": actual_version},
        )


class DomainError(GovernanceError):
    """Any other failure inside the engine."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, ErrorCode.DOMAIN_ERROR, details)
