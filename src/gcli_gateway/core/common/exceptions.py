"""
Common exception classes for the gateway.

Every error that can reach a client is a ``GatewayError``. Errors raised while
talking to the upstream or handling credentials additionally carry an
``ErrorKind`` so the retry orchestrator and the credential manager can tell
"credential at fault" apart from "request at fault".
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Classification attached to gateway errors."""

    AUTH_ERROR = "auth_error"
    RATE_LIMITED = "rate_limited"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"
    TRANSLATION_ERROR = "translation_error"
    NO_AVAILABLE_CREDENTIAL = "no_available_credential"
    UPSTREAM_EXHAUSTED = "upstream_exhausted"

    @property
    def is_transient(self) -> bool:
        return self in (ErrorKind.RATE_LIMITED, ErrorKind.UPSTREAM_UNAVAILABLE)

    @property
    def is_credential_fault(self) -> bool:
        """True when the credential (not the request) caused the failure."""
        return self in (
            ErrorKind.AUTH_ERROR,
            ErrorKind.RATE_LIMITED,
            ErrorKind.UPSTREAM_UNAVAILABLE,
        )


class GatewayError(Exception):
    """Base exception class for all gateway errors."""

    kind: ErrorKind | None = None
    error_type: str = "api_error"

    def __init__(
        self,
        message: str,
        details: dict | None = None,
        *,
        status_code: int | None = None,
    ):
        """Initialize the exception.

        Args:
            message: Human-readable error message
            details: Optional dictionary with additional error details
            status_code: Optional HTTP status code hint for the transport layer
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.status_code = status_code or 500

    def to_dict(self) -> dict:
        error_dict: dict = {
            "message": self.message,
            "type": self.error_type,
            "code": self.status_code,
        }
        if self.details:
            error_dict["details"] = self.details
        return {"error": error_dict}


class ConfigurationError(GatewayError):
    """Raised when there's a configuration issue."""

    error_type = "configuration_error"

    def __init__(
        self,
        message: str = "Configuration error",
        details: dict | None = None,
    ):
        super().__init__(message, details, status_code=500)


class CredentialAuthError(GatewayError):
    """Refresh or access was rejected; permanent for the credential."""

    kind = ErrorKind.AUTH_ERROR
    error_type = "authentication_error"

    def __init__(
        self,
        message: str = "Upstream rejected the credential",
        details: dict | None = None,
    ):
        super().__init__(message, details, status_code=401)


class RateLimitedError(GatewayError):
    """Upstream reported a usage limit for the credential."""

    kind = ErrorKind.RATE_LIMITED
    error_type = "rate_limit_error"

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        details: dict | None = None,
    ):
        super().__init__(message, details, status_code=429)


class UpstreamUnavailableError(GatewayError):
    """Network failure, timeout or 5xx from the upstream."""

    kind = ErrorKind.UPSTREAM_UNAVAILABLE
    error_type = "upstream_unavailable"

    def __init__(
        self,
        message: str = "Upstream temporarily unavailable",
        details: dict | None = None,
    ):
        super().__init__(message, details, status_code=503)


class TranslationError(GatewayError):
    """Malformed client or upstream payload; fatal for the request."""

    kind = ErrorKind.TRANSLATION_ERROR
    error_type = "invalid_request_error"

    def __init__(
        self,
        message: str = "Payload could not be translated",
        details: dict | None = None,
        *,
        status_code: int = 400,
    ):
        super().__init__(message, details, status_code=status_code)


class NoAvailableCredentialError(GatewayError):
    """The pool has no eligible credential."""

    kind = ErrorKind.NO_AVAILABLE_CREDENTIAL
    error_type = "no_available_credential"

    def __init__(
        self,
        message: str = "No credential is currently available",
        details: dict | None = None,
    ):
        super().__init__(message, details, status_code=503)


class UpstreamExhaustedError(GatewayError):
    """Retry budget or pool exhausted across tried credentials."""

    kind = ErrorKind.UPSTREAM_EXHAUSTED
    error_type = "upstream_exhausted"

    def __init__(
        self,
        message: str = "Upstream rejected the request on every attempt",
        details: dict | None = None,
        *,
        last_error: GatewayError | None = None,
    ):
        super().__init__(message, details, status_code=502)
        self.last_error = last_error
