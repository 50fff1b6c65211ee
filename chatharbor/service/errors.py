from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code rendered into the error envelope:
    - unauthorized (401)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400)
    - conflict (409)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}
        self.headers = headers or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401).

    Subclasses carry a stable ``reason`` so the pipeline can log the exact
    failure while callers only ever see a uniform unauthorized outcome.
    """
    status_code = 401
    error_code = "unauthorized"
    reason = "unauthorized"


class MissingCredential(AuthenticationError):
    """No bearer token in the Authorization header."""
    reason = "missing_credential"


class InvalidCredential(AuthenticationError):
    """Token is malformed, carries a bad signature or a foreign issuer."""
    reason = "invalid_credential"


class ExpiredCredential(AuthenticationError):
    reason = "expired_credential"


class CredentialNotYetValid(AuthenticationError):
    reason = "credential_not_yet_valid"


class UnknownPrincipal(AuthenticationError):
    """Token is valid but its subject no longer exists."""
    reason = "unknown_principal"


class ServerMisconfigured(Exception):
    """Fatal deployment error raised while wiring the service.

    Not a ServiceError: it must abort startup instead of being rendered as a
    response.
    """


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str, *, retry_after_ms: int = 0, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.retry_after_ms = retry_after_ms


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class PersistenceError(ServerError):
    """The backing store failed a read or write."""
    pass


class UpstreamError(ServerError):
    """The chat model collaborator failed (502)."""
    status_code = 502


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "MissingCredential",
    "InvalidCredential",
    "ExpiredCredential",
    "CredentialNotYetValid",
    "UnknownPrincipal",
    "ServerMisconfigured",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "PersistenceError",
    "UpstreamError",
]
