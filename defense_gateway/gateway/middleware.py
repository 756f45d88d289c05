"""
Request Defense Gateway — Defense middleware.

Builds the RequestContext for each request, asks the orchestrator for a
verdict, and either short-circuits with an error response or passes the
request on with the rate-limit headers attached. Unhandled handler errors
become a generic 500 and an `api_error` event.
"""

from __future__ import annotations

import logging

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from defense_gateway.auth.bearer import verify_bearer
from defense_gateway.config import Settings
from defense_gateway.errors import AuthError, internal_error_response
from defense_gateway.gateway.context import RequestContext, get_client_ip
from defense_gateway.gateway.orchestrator import RequestDefenseGateway
from defense_gateway.security.monitor import SecurityEvent, SecurityEventType

logger = logging.getLogger("gateway.middleware")


def error_response(exc: HTTPException) -> JSONResponse:
    """Render an HTTPException as ``{"error": ...}`` with its headers."""
    body = {"error": exc.detail}
    retry_after = getattr(exc, "retry_after", None)
    if retry_after is not None:
        body["retry_after"] = retry_after
    return JSONResponse(body, status_code=exc.status_code, headers=exc.headers)


class DefenseMiddleware(BaseHTTPMiddleware):
    """Applies the gateway pipeline ahead of every route."""

    def __init__(self, app, gateway: RequestDefenseGateway, cfg: Settings) -> None:
        super().__init__(app)
        self.gateway = gateway
        self.cfg = cfg

    async def dispatch(self, request: Request, call_next) -> Response:
        ctx = self._context(request)
        request.state.client_ip = ctx.ip

        decision = await self.gateway.screen(ctx)
        if not decision.allowed:
            response = error_response(decision.error)
            for name, value in decision.headers.items():
                response.headers.setdefault(name, value)
            return response

        try:
            response: Response = await call_next(request)
        except Exception as exc:
            logger.exception("Unhandled error on %s %s", request.method, request.url.path)
            await self.gateway.monitor.record(SecurityEvent(
                type=SecurityEventType.API_ERROR,
                ip=ctx.ip,
                endpoint=ctx.path,
                user_id=ctx.user_id,
                user_agent=ctx.user_agent,
                details={"error": type(exc).__name__},
            ))
            response = internal_error_response()
        for name, value in decision.headers.items():
            response.headers.setdefault(name, value)
        return response

    def _context(self, request: Request) -> RequestContext:
        user_id = None
        authorization = request.headers.get("authorization")
        if authorization:
            # Endpoints reject bad credentials themselves; here an invalid
            # token simply means "not authenticated".
            try:
                user_id = verify_bearer(authorization, self.cfg).id
            except AuthError:
                user_id = None
        return RequestContext(
            ip=get_client_ip(request, self.cfg.trust_forwarded_for),
            method=request.method,
            path=request.url.path,
            user_id=user_id,
            csrf_token=request.headers.get(self.cfg.csrf_header_name),
            user_agent=request.headers.get("user-agent", ""),
        )
