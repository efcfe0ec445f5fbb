from __future__ import annotations

from datetime import datetime
from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - account_locked (403)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
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
    """Credentials or token rejected (401). Messages stay generic."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Authenticated but not allowed (403)."""
    status_code = 403
    error_code = "forbidden"


class AccountLockedError(ForbiddenError):
    """Account is administratively locked; the unlock time is disclosed."""
    error_code = "account_locked"

    def __init__(self, locked_until: datetime) -> None:
        iso = locked_until.isoformat()
        super().__init__(f"account locked until {iso}", detail={"locked_until": iso})
        self.locked_until = locked_until


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "AccountLockedError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
]
