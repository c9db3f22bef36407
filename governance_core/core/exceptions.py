"""Custom exception classes for the governance core."""

from typing import Any, Dict, List, Optional

from fastapi import status


class GovernanceError(Exception):
    """Base exception for the governance core."""

    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str = "An error occurred"):
        self.message = message
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": self.message}

    def headers(self) -> Optional[Dict[str, str]]:
        return None


class ValidationError(GovernanceError):
    """Raised when input validation fails (malformed condition, missing field)."""

    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY

    def __init__(self, message: str = "Validation failed", errors: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.errors = errors or []

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": self.message, "errors": self.errors}


class PolicyViolation(GovernanceError):
    """Raised when governance evaluation ends in a block."""

    status_code = status.HTTP_403_FORBIDDEN

    def __init__(
        self,
        message: str = "Action blocked by policy",
        messages: Optional[List[str]] = None,
        matched_policies: Optional[List[str]] = None,
    ):
        super().__init__(message)
        self.messages = messages or [message]
        self.matched_policies = matched_policies or []

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.message,
            "messages": self.messages,
            "matchedPolicies": self.matched_policies,
        }


class ApproverNotAuthorized(GovernanceError):
    """Raised when a decider does not hold the request's approver role."""

    status_code = status.HTTP_403_FORBIDDEN


class RateLimitExceeded(GovernanceError):
    """Raised when a per-user rate window is exhausted."""

    status_code = status.HTTP_429_TOO_MANY_REQUESTS

    def __init__(self, message: str = "Rate limit exceeded", retry_after: Optional[int] = None):
        super().__init__(message)
        self.remaining = 0
        self.retry_after = retry_after

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": self.message, "remaining": self.remaining}

    def headers(self) -> Optional[Dict[str, str]]:
        if self.retry_after is None:
            return None
        return {"Retry-After": str(self.retry_after)}


class ApprovalPreconditionViolation(GovernanceError):
    """Raised when a transition is attempted on a terminal or ineligible request."""

    status_code = status.HTTP_409_CONFLICT


class ResourceNotFoundError(GovernanceError):
    """Raised when a requested resource is not found."""

    status_code = status.HTTP_404_NOT_FOUND


class ResourceConflictError(GovernanceError):
    """Raised when a resource already exists or may no longer change."""

    status_code = status.HTTP_409_CONFLICT


class ExportGenerationFailure(GovernanceError):
    """Raised when an export artifact cannot be produced."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


class ExportExpiredError(GovernanceError):
    """Raised when a download link is used after its expiry."""

    status_code = status.HTTP_410_GONE


class AuditWriteError(GovernanceError):
    """Raised when an audit entry cannot be persisted."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
