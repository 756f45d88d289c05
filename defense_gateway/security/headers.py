"""
Request Defense Gateway — Security response headers.

Static header injection applied to every response.
"""

from __future__ import annotations

import logging

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from defense_gateway.config import Settings
from defense_gateway.errors import internal_error_response

logger = logging.getLogger("gateway.security.headers")

STATIC_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "camera=(), microphone=(), geolocation=()",
}

NO_STORE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, proxy-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


def security_headers(cfg: Settings, https: bool, api: bool) -> dict[str, str]:
    headers = dict(STATIC_HEADERS)
    headers["Content-Security-Policy"] = cfg.content_security_policy
    if https:
        headers["Strict-Transport-Security"] = f"max-age={cfg.hsts_max_age}; includeSubDomains"
    if api:
        headers.update(NO_STORE_HEADERS)
    return headers


def is_https(request: Request) -> bool:
    forwarded = request.headers.get("x-forwarded-proto", "")
    return request.url.scheme == "https" or forwarded.split(",")[0].strip() == "https"


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Adds the security header set to every response."""

    def __init__(self, app, cfg: Settings) -> None:
        super().__init__(app)
        self.cfg = cfg

    async def dispatch(self, request: Request, call_next) -> Response:
        try:
            response: Response = await call_next(request)
        except Exception:
            # Errors escaping the inner middleware still get the header set.
            logger.exception("Unhandled error on %s %s", request.method, request.url.path)
            response = internal_error_response()
        headers = security_headers(
            self.cfg,
            https=is_https(request),
            api=request.url.path.startswith("/api/"),
        )
        for name, value in headers.items():
            response.headers.setdefault(name, value)
        return response
