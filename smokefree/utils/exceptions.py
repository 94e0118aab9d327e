"""
Error taxonomy for the entitlement service.

Every error carries the HTTP status it maps to and a short message that is
safe to return to the client. Internal detail belongs in the log, not here.
"""


class EntitlementError(Exception):
    """Base class for errors surfaced through the HTTP handlers."""

    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class AuthenticationError(EntitlementError):
    """Missing or invalid caller identity."""

    status_code = 401
    default_message = "Authentication required"


class ValidationError(EntitlementError):
    """A required request field is missing or malformed."""

    status_code = 400
    default_message = "Invalid request"


class ProviderUnavailable(EntitlementError):
    """Transient upstream failure (network, timeout, 5xx). Safe to retry."""

    status_code = 500
    default_message = "Payment provider is temporarily unavailable. Please try again."
    retryable = True


class ProviderRejected(EntitlementError):
    """
    Upstream rejected the referenced object (invalid id, wrong owner).

    Not retryable. Ownership mismatches use 403, everything else 400.
    """

    default_message = "The payment provider rejected the request"
    retryable = False

    def __init__(self, message: str | None = None, *, forbidden: bool = False):
        super().__init__(message)
        self.status_code = 403 if forbidden else 400


class ConflictError(EntitlementError):
    """The caller already holds an active subscription."""

    status_code = 400
    default_message = "You already have an active subscription. Please manage it from your account."


class InternalError(EntitlementError):
    """Storage write or read failure."""

    status_code = 500
    default_message = "Internal server error"
