from __future__ import annotations

from typing import Iterable, Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable error_code
    rendered in the error envelope:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400)
    - conflict (409)
    - service_unavailable (503)
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


class InvalidCredentials(AuthenticationError):
    """Wrong email or password. Never says which one."""

    def __init__(self, message: str = "invalid credentials") -> None:
        super().__init__(message)


class InvalidTokenError(AuthenticationError):
    """Signature, format or expiry failure on a token."""

    def __init__(self, message: str = "invalid token") -> None:
        super().__init__(message)


class InvalidRefreshToken(AuthenticationError):
    """Presented refresh token matches no live stored record."""

    def __init__(self, message: str = "invalid token") -> None:
        super().__init__(message)


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class PermissionDenied(ForbiddenError):
    pass


class TenantContextMissing(ForbiddenError):
    def __init__(self, message: str = "tenant context could not be resolved") -> None:
        super().__init__(message)


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class UnknownCategory(NotFoundError):
    """No permissions matched a category; lists the valid ones."""

    def __init__(self, category: str, valid_categories: Iterable[str]) -> None:
        valid = sorted(valid_categories)
        super().__init__(
            f"Category '{category}' not found. Valid categories: {', '.join(valid)}",
            detail={"category": category, "valid_categories": valid},
        )


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class DuplicateRoleCode(ConflictError):
    def __init__(self, code: str) -> None:
        super().__init__(f"Role with code '{code}' already exists", detail={"code": code})


class DuplicatePermissionCode(ConflictError):
    def __init__(self, code: str) -> None:
        super().__init__(
            f"Permission with code '{code}' already exists", detail={"code": code}
        )


class MembershipConflict(ConflictError):
    """User already belongs to a tenant."""


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class StoreUnavailableError(ServiceError):
    """Backing store stayed unreachable after bounded retries (503)."""
    status_code = 503
    error_code = "service_unavailable"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentials",
    "InvalidTokenError",
    "InvalidRefreshToken",
    "ForbiddenError",
    "PermissionDenied",
    "TenantContextMissing",
    "NotFoundError",
    "UnknownCategory",
    "ConflictError",
    "DuplicateRoleCode",
    "DuplicatePermissionCode",
    "MembershipConflict",
    "RateLimitedError",
    "StoreUnavailableError",
    "ServerError",
]
