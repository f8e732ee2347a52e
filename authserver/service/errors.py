from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code:
    - validation_error (400)
    - invalid_request (400)
    - invalid_grant (400)
    - unauthorized (401)
    - invalid_token (401)
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


class InvalidRequestError(ValidationError):
    """Required parameter missing or unsupported (400)."""
    error_code = "invalid_request"


class InvalidGrantError(ServiceError):
    """Authorization code or refresh token is unknown, consumed, expired,
    revoked, bound to another client, or failed PKCE (400)."""
    status_code = 400
    error_code = "invalid_grant"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


# Client and user failures share one message so callers cannot tell
# which half of the credential pair was wrong.
INVALID_CREDENTIALS_MESSAGE = "invalid credentials"


class InvalidClientError(AuthenticationError):
    """Client id/secret pair did not authenticate (401)."""

    def __init__(self, message: str = INVALID_CREDENTIALS_MESSAGE, **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidCredentialsError(AuthenticationError):
    """User email/password pair did not authenticate (401)."""

    def __init__(self, message: str = INVALID_CREDENTIALS_MESSAGE, **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidTokenError(ServiceError):
    """Bearer or refresh token failed verification (401)."""
    status_code = 401
    error_code = "invalid_token"

    def __init__(self, message: str = "invalid token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class KeyMaterialError(ServerError):
    """Stored client key material could not be decrypted or parsed (500)."""


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidRequestError",
    "InvalidGrantError",
    "AuthenticationError",
    "InvalidClientError",
    "InvalidCredentialsError",
    "InvalidTokenError",
    "NotFoundError",
    "ServerError",
    "KeyMaterialError",
    "INVALID_CREDENTIALS_MESSAGE",
]
