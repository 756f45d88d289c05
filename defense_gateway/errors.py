"""
Request Defense Gateway — Error taxonomy.

Every client-facing failure is an HTTPException subclass so FastAPI can
render it; the handlers in ``main`` shape the body as ``{"error": ...}``.
"""

from __future__ import annotations

from fastapi import HTTPException, status
from fastapi.responses import JSONResponse


class ValidationError(HTTPException):
    """Missing or malformed required input."""

    def __init__(self, detail: str = "Invalid request") -> None:
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


class AuthError(HTTPException):
    """Missing or invalid bearer credential."""

    def __init__(self, detail: str = "Unauthorized") -> None:
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            headers={"WWW-Authenticate": "Bearer"},
        )


class ForbiddenError(HTTPException):
    """Authenticated, but not allowed (bad CSRF token, someone else's data)."""

    def __init__(self, detail: str = "Access denied") -> None:
        super().__init__(status_code=status.HTTP_403_FORBIDDEN, detail=detail)


class NotFound(HTTPException):
    def __init__(self, detail: str = "Not found") -> None:
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail=detail)


class ServiceUnavailable(HTTPException):
    """A backing store the request depends on cannot be reached."""

    def __init__(self, detail: str = "Service temporarily unavailable") -> None:
        super().__init__(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=detail)


class RateLimitExceeded(HTTPException):
    """Too many requests; ``retry_after`` is in whole seconds."""

    def __init__(self, retry_after: int, detail: str = "Too many requests") -> None:
        self.retry_after = retry_after
        super().__init__(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=detail,
            headers={"Retry-After": str(retry_after)},
        )


def internal_error_response() -> JSONResponse:
    """Generic 500 body; never carries exception details."""
    return JSONResponse({"error": "Internal server error"}, status_code=500)
