"""
Failure taxonomy shared by every ledger and the authorization pipeline.

Each failure is raised to the immediate caller and affects only the requested
operation. The HTTP adapter maps ``status_code`` and ``code`` onto the response.
"""
from typing import Any, Dict, Optional


class FleetError(Exception):
    status_code = 400
    code = "fleet_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        payload = {"code": self.code, "detail": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(FleetError):
    """Malformed or out-of-range field."""
    status_code = 400
    code = "validation_error"


class InvariantViolation(FleetError):
    """Monotonicity, uniqueness or state-machine rule would be broken."""
    status_code = 409
    code = "invariant_violation"


class NotFound(FleetError):
    status_code = 404
    code = "not_found"


class AuthorizationDenied(FleetError):
    status_code = 403
    code = "authorization_denied"

    def __init__(self, guard: str, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.guard = guard

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["guard"] = self.guard
        return payload


class QuotaExceeded(FleetError):
    status_code = 403
    code = "quota_exceeded"

    def __init__(self, resource: str, limit: int, message: Optional[str] = None):
        super().__init__(
            message or f"{resource} limit reached ({limit})",
            {"resource": resource, "limit": limit},
        )
        self.resource = resource
        self.limit = limit
