"""Service error taxonomy.

Every failure a caller can observe is one of these classes. Routes and
services raise them; server.py renders them through a single exception
handler so storage/driver errors never leak to clients.
"""
from typing import Any, Dict, List, Optional


class ServiceError(Exception):
    """Base class for errors rendered to API callers."""
    status_code = 500
    error_code = "INTERNAL_ERROR"
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None, error_code: Optional[str] = None, **details: Any):
        self.message = message or self.default_message
        if error_code:
            self.error_code = error_code
        self.details = details
        super().__init__(self.message)

    def to_detail(self) -> Dict[str, Any]:
        return {"error_code": self.error_code, "message": self.message, **self.details}


class Unauthenticated(ServiceError):
    status_code = 401
    error_code = "UNAUTHENTICATED"
    default_message = "Not authenticated"


class NotFound(ServiceError):
    """Record absent or owned by another tenant. The two cases are never distinguished."""
    status_code = 404
    error_code = "NOT_FOUND"
    default_message = "Not found"


class ValidationFailed(ServiceError):
    status_code = 422
    error_code = "VALIDATION_FAILED"
    default_message = "Invalid input"

    def __init__(self, message: Optional[str] = None, errors: Optional[List[Dict[str, Any]]] = None, **details: Any):
        super().__init__(message, errors=errors or [], **details)

    @classmethod
    def for_field(cls, field: str, message: str) -> "ValidationFailed":
        return cls(message, errors=[{"field": field, "message": message}])


class EntitlementDenied(ServiceError):
    """Feature gated by plan or inactive subscription; the caller should be prompted to upgrade."""
    status_code = 403
    error_code = "ENTITLEMENT_DENIED"
    default_message = "Your current plan does not include this feature"


class UpstreamUnavailable(ServiceError):
    status_code = 503
    error_code = "UPSTREAM_UNAVAILABLE"
    default_message = "Billing is temporarily unavailable. Please try again later."


class RateLimited(ServiceError):
    status_code = 429
    error_code = "RATE_LIMITED"
    default_message = "Too many requests"


class Conflict(ServiceError):
    status_code = 409
    error_code = "CONFLICT"
    default_message = "Conflict"


class StaleBillingEvent(Conflict):
    error_code = "STALE_BILLING_EVENT"
    default_message = "Billing event is older than the stored state"


class BillingRegression(Conflict):
    error_code = "BILLING_REGRESSION"
    default_message = "Billing event would move an active subscription back to trialing"
