from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and an error_code
    rendered in the error envelope:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - validation_error (400)
    - conflict (409)
    - server_error (500)
    - service_unavailable (503)
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
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class BadRequestError(ValidationError):
    """Alias for ValidationError - request is malformed or invalid."""
    pass


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


# Stable short codes raised by identity operations. Messages are safe to show verbatim.
IDENTITY_ERROR_CODES = frozenset(
    {
        "LOCKD",
        "WEAKP",
        "LOGIN",
        "DNIED",
        "CREDS",
        "MODAT",
        "TAKEN",
        "EMTKN",
        "CDLEA",
        "VRFY1",
        "VRFY2",
        "ISMBR",
        "NTFND",
        "OWNER",
    }
)


class IdentityError(ServiceError):
    """Domain/policy violation raised by an identity operation (400)."""

    status_code = 400

    def __init__(self, code: str, message: str) -> None:
        if code not in IDENTITY_ERROR_CODES:
            raise ValueError(f"unknown identity error code: {code}")
        super().__init__(message, error_code=code)
        self.code = code


class DuplicateAccountError(ConflictError):
    """Registration collided with an existing username or email (409)."""

    def __init__(self, message: str = "Username or email already exists") -> None:
        super().__init__(message)


class SessionUserMissing(ServerError):
    """A session was requested for a user id that does not exist."""


class OAuthNotConfiguredError(ServiceError):
    """The requested OAuth provider has no client credentials (503)."""
    status_code = 503
    error_code = "service_unavailable"


class OAuthCallbackError(ValidationError):
    """The provider rejected the callback (400).

    ``is_bad_code`` marks a forged, replayed or expired authorization code;
    the user can recover by starting the flow again.
    """

    def __init__(self, message: str, *, is_bad_code: bool = False) -> None:
        super().__init__(message, detail={"bad_code": is_bad_code})
        self.is_bad_code = is_bad_code


class MissingVerifiedEmailError(OAuthCallbackError):
    """The provider account has no verified email address."""

    def __init__(
        self,
        message: str = "Could not get email from GitHub. Please make sure you have a verified email on your GitHub account.",
    ) -> None:
        super().__init__(message)


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
    "IDENTITY_ERROR_CODES",
    "IdentityError",
    "DuplicateAccountError",
    "SessionUserMissing",
    "OAuthNotConfiguredError",
    "OAuthCallbackError",
    "MissingVerifiedEmailError",
]
