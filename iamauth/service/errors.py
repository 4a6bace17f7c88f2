from __future__ import annotations

from typing import Optional


class ConfigurationError(Exception):
    """Startup configuration is invalid; fatal before any request is served."""

    def __init__(self, message: str, *, detail: Optional[dict] = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code carried in the response envelope:
    - validation_error (400)
    - unauthorized (401)
    - invalid_refresh_token (401)
    - account_locked (423)
    - store_unavailable (503)
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


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidRefreshTokenError(AuthenticationError):
    """Refresh token absent, expired, revoked or replayed (401)."""
    error_code = "invalid_refresh_token"


class AccountLockedError(ServiceError):
    """Too many failed logins; carries retry_after_seconds in detail (423)."""
    status_code = 423
    error_code = "account_locked"


class ServiceUnavailableError(ServiceError):
    """Directory or session store unreachable; the caller may retry (503)."""
    status_code = 503
    error_code = "store_unavailable"


__all__ = [
    "ConfigurationError",
    "ServiceError",
    "AuthenticationError",
    "InvalidRefreshTokenError",
    "AccountLockedError",
    "ServiceUnavailableError",
]
