from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP ``status_code`` and a stable
    ``error_code`` that clients can branch on:
    - validation_error (400), the base default
    - unauthorized and its token/session refinements (401)
    - not_found (404)

    Anything else that escapes a handler is reported as server_error (500).
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


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401).

    Every subclass means "log in again"; clients should not retry.
    """
    status_code = 401
    error_code = "unauthorized"


class InvalidTokenError(AuthenticationError):
    """Token is unknown, malformed, or not bound to the presented session."""
    error_code = "invalid_token"


class TokenExpiredError(AuthenticationError):
    """Token is past its natural expiry."""
    error_code = "token_expired"


class TokenRevokedError(AuthenticationError):
    """Token is on the blacklist or lost a rotation race."""
    error_code = "token_revoked"


class TokenInactiveError(AuthenticationError):
    """Token row was deactivated but has not been purged yet."""
    error_code = "token_inactive"


class SessionInvalidError(AuthenticationError):
    """Owning session is missing, revoked, or expired."""
    error_code = "session_invalid"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


__all__ = [
    "ServiceError",
    "AuthenticationError",
    "InvalidTokenError",
    "TokenExpiredError",
    "TokenRevokedError",
    "TokenInactiveError",
    "SessionInvalidError",
    "NotFoundError",
]
