from __future__ import annotations

from enum import Enum
from typing import Dict, Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code that is returned in the response envelope:
    - unauthorized (401)
    - rate_limited (429)
    - validation_error (400)
    - conflict (409)
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


class UnauthorizedReason(str, Enum):
    BAD_CREDENTIALS = "bad_credentials"
    MISSING_TOKEN = "missing_token"
    INVALID_TOKEN = "invalid_token"
    EXPIRED_TOKEN = "expired_token"


class UnauthorizedError(ServiceError):
    """Authentication failed or missing (401).

    The reason is kept on the exception for logging and tests only; every
    reason produces the same client-facing message.
    """
    status_code = 401
    error_code = "unauthorized"
    public_message = "invalid or expired credentials"

    def __init__(self, reason: UnauthorizedReason) -> None:
        super().__init__(self.public_message)
        self.reason = reason


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429).

    ``headers`` (``Retry-After`` and the ``X-RateLimit-*`` set) are copied
    onto the error response.
    """
    status_code = 429
    error_code = "rate_limited"

    def __init__(
        self, message: str = "rate limit exceeded", *, headers: Optional[Dict[str, str]] = None
    ) -> None:
        super().__init__(message)
        self.headers = headers or {}


__all__ = [
    "ServiceError",
    "ValidationError",
    "UnauthorizedReason",
    "UnauthorizedError",
    "ConflictError",
    "RateLimitedError",
]
