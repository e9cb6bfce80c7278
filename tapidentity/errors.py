"""Error taxonomy shared by the identity and reporting APIs."""

from typing import Optional


class IdentityError(Exception):
    """Base error rendered as ``{"success": false, "error", "code"}``."""

    code = "INTERNAL_ERROR"
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class UnauthorizedError(IdentityError):
    code = "UNAUTHORIZED"
    status_code = 401
    default_message = "Authentication required"


class ValidationError(IdentityError):
    code = "VALIDATION_ERROR"
    status_code = 400
    default_message = "Invalid request"


class ClaimConflictError(IdentityError):
    """The visitor is already claimed by a different account."""

    code = "ALREADY_CLAIMED"
    status_code = 409
    default_message = "This device's NFC history is linked to another account"


class NotFoundError(IdentityError):
    code = "NOT_FOUND"
    status_code = 404
    default_message = "Not found"


class ReportingDisabledError(NotFoundError):
    """Feature flag is off; surfaced as 404 so existence is not leaked."""

    default_message = "Reporting is disabled"


class AggregationError(IdentityError):
    """A snapshot dimension failed during a daily aggregation run."""

    code = "AGGREGATION_FAILED"
    default_message = "Aggregation failed"

    def __init__(self, dimension: str, cause: BaseException):
        self.dimension = dimension
        self.cause = cause
        super().__init__(f"Aggregation failed in {dimension} dimension: {cause}")


class ForbiddenError(IdentityError):
    code = "FORBIDDEN"
    status_code = 403
    default_message = "Invalid admin API key"


class ServiceUnavailableError(IdentityError):
    code = "SERVICE_UNAVAILABLE"
    status_code = 503
    default_message = "Service unavailable"
