from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """A failure the HTTP layer reports with its own status and error code.

    ``error_code`` is one of the stable envelope codes in ``api/schemas.py``.
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
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    status_code = 401
    error_code = "unauthorized"


class InvalidTokenError(AuthenticationError):
    """A signed token failed verification.

    The message never says which check failed; the reason is only logged.
    """

    def __init__(self, message: str = "invalid token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    status_code = 403
    error_code = "forbidden"


class AccountInactiveError(ForbiddenError):
    """Credentials were valid but the account may not sign in."""

    def __init__(self, message: str = "account is not active", **kwargs) -> None:
        super().__init__(message, **kwargs)


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class RateLimitedError(ServiceError):
    """Too many attempts from one client inside the current window."""

    status_code = 429
    error_code = "rate_limited"

    def __init__(
        self,
        message: str = "too many authentication attempts, try again later",
        *,
        retry_after: int = 0,
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidTokenError",
    "ForbiddenError",
    "AccountInactiveError",
    "NotFoundError",
    "RateLimitedError",
]
