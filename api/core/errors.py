"""
Error taxonomy for gateway control operations.

Every failure is classified locally and returned to the caller with a
human-readable message, a stable error type, and an optional suggestion.
None of these are fatal to the service.
"""


class GatewayError(Exception):
    """Base exception for control plane operations."""

    error_type = "gateway_error"
    status_code = 500

    def __init__(self, message: str, error_type: str | None = None, suggestion: str | None = None):
        self.message = message
        self.suggestion = suggestion
        if error_type:
            self.error_type = error_type
        super().__init__(message)


class ValidationError(GatewayError):
    """Malformed input, rejected before any external call."""

    error_type = "validation_error"
    status_code = 400


class NotFound(GatewayError):
    """Referenced record does not exist."""

    error_type = "not_found"
    status_code = 404


class Busy(GatewayError):
    """An operation is already in flight for the same resource."""

    error_type = "busy"
    status_code = 409

    def __init__(self, message: str, error_type: str | None = None, suggestion: str | None = None):
        super().__init__(
            message,
            error_type=error_type,
            suggestion=suggestion or "Wait for the running operation to finish and try again",
        )


class DomainConflict(GatewayError):
    """A stale DNS-01 challenge record blocks issuance."""

    error_type = "domain_conflict"
    status_code = 409

    def __init__(self, message: str, error_type: str | None = None, suggestion: str | None = None):
        super().__init__(
            message,
            error_type=error_type,
            suggestion=suggestion or "Run cleanup for this certificate to remove stale challenge records, then retry",
        )


class ProviderAuthFailure(GatewayError):
    """DNS provider API rejected the configured credentials."""

    error_type = "provider_auth_failure"
    status_code = 502

    def __init__(self, message: str, error_type: str | None = None, suggestion: str | None = None):
        super().__init__(
            message,
            error_type=error_type,
            suggestion=suggestion or "Check the DNS provider credentials and update the provider record",
        )


class RateLimited(GatewayError):
    """The certificate authority is throttling requests."""

    error_type = "rate_limited"
    status_code = 429

    def __init__(self, message: str, error_type: str | None = None, suggestion: str | None = None):
        super().__init__(
            message,
            error_type=error_type,
            suggestion=suggestion or "Wait before requesting another certificate for these domains",
        )


class IssuerFailure(GatewayError):
    """Generic ACME client failure; raw output is preserved."""

    error_type = "issuer_failure"
    status_code = 502

    def __init__(self, message: str, output: str = "", error_type: str | None = None, suggestion: str | None = None):
        self.output = output
        super().__init__(message, error_type=error_type, suggestion=suggestion)


class ValidatorFailure(GatewayError):
    """Generated configuration failed the gateway's syntax test."""

    error_type = "validator_failure"
    status_code = 422

    def __init__(self, message: str, output: str = "", error_type: str | None = None, suggestion: str | None = None):
        self.output = output
        super().__init__(
            message,
            error_type=error_type,
            suggestion=suggestion or "Review the nginx -t output; the live configuration was not changed",
        )


class ValidatorTimeout(ValidatorFailure):
    """The gateway's syntax test did not finish in time."""

    error_type = "validator_timeout"
