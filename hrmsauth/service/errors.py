from __future__ import annotations

from typing import Optional

from hrmsauth.service.results import ErrorKind, Result


class ServiceError(Exception):
    """Base class for HTTP-facing errors rendered as error envelopes.

    Each subclass defines an HTTP ``status_code`` and a stable ``error_code``:
    - unauthorized (401)
    - forbidden (403)
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
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
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


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str, *, retry_after: int, **kwargs) -> None:
        headers = {"Retry-After": str(max(1, retry_after)), **kwargs.pop("headers", {})}
        detail = {"retry_after": max(1, retry_after), **(kwargs.pop("detail", None) or {})}
        super().__init__(message, detail=detail, headers=headers, **kwargs)
        self.retry_after = max(1, retry_after)


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


_KIND_TO_ERROR: dict[ErrorKind, type[ServiceError]] = {
    ErrorKind.INVALID_CREDENTIALS: AuthenticationError,
    ErrorKind.UNAUTHENTICATED: AuthenticationError,
    ErrorKind.INVALID_TOKEN: AuthenticationError,
    ErrorKind.ACCOUNT_LOCKED: ForbiddenError,
    ErrorKind.ACCOUNT_INACTIVE: ForbiddenError,
    ErrorKind.FORBIDDEN: ForbiddenError,
    ErrorKind.VALIDATION_FAILED: ValidationError,
    ErrorKind.INVALID_OR_EXPIRED_TOKEN: ValidationError,
    ErrorKind.DUPLICATE_KEY: ConflictError,
    ErrorKind.NOT_FOUND: NotFoundError,
}


def error_for_result(result: Result) -> ServiceError:
    """Translate a failed service result into the matching HTTP error."""
    if result.ok or result.error is None:
        raise ValueError("cannot build an error from a successful result")
    detail = {"kind": result.error.value, **(result.detail or {})}
    if result.error is ErrorKind.RATE_LIMITED:
        retry_after = int((result.detail or {}).get("retry_after", 1))
        return RateLimitedError(result.message, retry_after=retry_after, detail=detail)
    error_cls = _KIND_TO_ERROR.get(result.error, ServerError)
    return error_cls(result.message, detail=detail)


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "error_for_result",
]
