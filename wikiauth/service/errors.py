from __future__ import annotations

import functools
from typing import Any, Awaitable, Callable, Optional, TypeVar

from wikiauth.logging import get_logger
from wikiauth.storage.errors import StoreUnavailableError

logger = get_logger(__name__)

F = TypeVar("F", bound=Callable[..., Awaitable[Any]])


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - locked (423)
    - rate_limited (429)
    - server_error (500)
    - store_unavailable (503)
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


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions or failed CSRF check (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate username (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str, *, retry_after: int, detail: Optional[dict] = None) -> None:
        super().__init__(message, detail={**(detail or {}), "retry_after": retry_after})
        self.retry_after = retry_after


class AccountLockedError(ServiceError):
    """Account temporarily locked after repeated failures (423)."""
    status_code = 423
    error_code = "locked"

    def __init__(self, message: str, *, retry_after: int, detail: Optional[dict] = None) -> None:
        super().__init__(message, detail={**(detail or {}), "retry_after": retry_after})
        self.retry_after = retry_after


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class TransientStoreError(ServiceError):
    """Backing store unreachable; the request is denied and may be retried (503)."""
    status_code = 503
    error_code = "store_unavailable"


def translate_store_errors(func: F) -> F:
    """Re-raise storage failures as ``TransientStoreError`` at a component boundary."""

    @functools.wraps(func)
    async def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return await func(*args, **kwargs)
        except StoreUnavailableError as exc:
            logger.error(
                "store_unavailable",
                component=func.__qualname__,
                operation=exc.operation,
            )
            raise TransientStoreError(
                "Service temporarily unavailable, please retry",
                detail={"operation": exc.operation},
            ) from exc

    return wrapper  # type: ignore[return-value]


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "AccountLockedError",
    "ServerError",
    "TransientStoreError",
    "translate_store_errors",
]
