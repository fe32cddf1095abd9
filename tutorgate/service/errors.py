from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class carries both an HTTP ``status_code`` and a stable
    ``error_code`` that clients switch on:

    - validation_error (400)
    - unauthorized, invalid_credentials, invalid_token, token_expired,
      revoked, security_alert, no_token (401)
    - forbidden (403)
    - not_found (404)
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


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Email/password pair rejected. Never says which half was wrong."""
    error_code = "invalid_credentials"


class NoTokenError(AuthenticationError):
    """No access token on a protected request."""
    error_code = "no_token"


class InvalidTokenError(AuthenticationError):
    """Token malformed, badly signed, or unknown."""
    error_code = "invalid_token"


class TokenExpiredError(AuthenticationError):
    """Token was genuine but is past its expiry; the client should refresh."""
    error_code = "token_expired"


class RevokedError(AuthenticationError):
    """The session behind the token has been revoked."""
    error_code = "revoked"


class SecurityAlertError(AuthenticationError):
    """A rotated refresh token was presented again; all sessions were revoked."""
    error_code = "security_alert"

    def __init__(self, message: str, *, user_id: Optional[str] = None, **kwargs) -> None:
        super().__init__(message, **kwargs)
        # kept off ``detail`` so it never reaches the response body
        self.user_id = user_id


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


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "NoTokenError",
    "InvalidTokenError",
    "TokenExpiredError",
    "RevokedError",
    "SecurityAlertError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
]
