"""
Structured error classes for access-control evaluation.

Error kinds and how the route guard treats them:
- ConfigurationError: role registry unavailable with no cached table -> deny
- NotFoundError: unknown role / policy / test referenced directly -> skip source
- ValidationError: malformed rule or context -> skip source
- EvaluationError: unexpected failure inside a sub-evaluator -> deny
"""

from typing import Any, Optional

from fastapi import status


class AccessControlError(Exception):
    """Base exception for access-control errors."""

    error_code = "ACCESS_CONTROL_ERROR"
    http_status = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON response."""
        return {
            "error": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class ConfigurationError(AccessControlError):
    """Backing configuration (role table, seed file) is unreachable."""

    error_code = "CONFIGURATION_ERROR"
    http_status = status.HTTP_503_SERVICE_UNAVAILABLE


class NotFoundError(AccessControlError):
    """A role, policy or experiment referenced by id/name does not exist."""

    error_code = "NOT_FOUND"
    http_status = status.HTTP_404_NOT_FOUND

    def __init__(self, kind: str, identifier: str):
        self.kind = kind
        self.identifier = identifier
        super().__init__(
            f"{kind} '{identifier}' not found",
            details={"kind": kind, "id": identifier},
        )


class ValidationError(AccessControlError):
    """Malformed rule document, variant set or evaluation context."""

    error_code = "VALIDATION_ERROR"
    http_status = status.HTTP_400_BAD_REQUEST


class EvaluationError(AccessControlError):
    """
    Unexpected failure inside a sub-evaluator.

    Carries the stage that failed so the audit trail can say where.
    """

    error_code = "EVALUATION_ERROR"

    def __init__(self, stage: str, cause: Optional[Exception] = None):
        self.stage = stage
        self.cause = cause
        detail = f"{type(cause).__name__}: {cause}" if cause else "unknown failure"
        super().__init__(
            f"Access evaluation failed during {stage}: {detail}",
            details={"stage": stage},
        )
