"""
Request Defense Gateway — FastAPI dependencies.
"""

from __future__ import annotations

from fastapi import Depends, Request

from defense_gateway.auth.bearer import AuthenticatedUser, verify_bearer
from defense_gateway.config import Settings
from defense_gateway.errors import AuthError, ForbiddenError
from defense_gateway.gateway.context import get_client_ip
from defense_gateway.gateway.orchestrator import RequestDefenseGateway
from defense_gateway.security.monitor import SecurityEvent, SecurityEventType, SecurityMonitor


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_gateway(request: Request) -> RequestDefenseGateway:
    return request.app.state.gateway


def get_monitor(request: Request) -> SecurityMonitor:
    return request.app.state.gateway.monitor


def client_ip(request: Request, cfg: Settings = Depends(get_settings)) -> str:
    return getattr(request.state, "client_ip", None) or get_client_ip(request, cfg.trust_forwarded_for)


async def require_user(
    request: Request,
    cfg: Settings = Depends(get_settings),
    monitor: SecurityMonitor = Depends(get_monitor),
) -> AuthenticatedUser:
    """Verified caller, or 401 plus an ``auth_failure`` security event."""
    try:
        return verify_bearer(request.headers.get("authorization"), cfg)
    except AuthError as exc:
        await monitor.record(SecurityEvent(
            type=SecurityEventType.AUTH_FAILURE,
            ip=client_ip(request, cfg),
            endpoint=request.url.path,
            user_agent=request.headers.get("user-agent"),
            details={"reason": exc.detail},
        ))
        raise


async def require_admin(
    request: Request,
    user: AuthenticatedUser = Depends(require_user),
    cfg: Settings = Depends(get_settings),
    monitor: SecurityMonitor = Depends(get_monitor),
) -> AuthenticatedUser:
    if not user.is_admin(cfg.admin_role):
        await monitor.record(SecurityEvent(
            type=SecurityEventType.ACCESS_DENIED,
            ip=client_ip(request, cfg),
            endpoint=request.url.path,
            user_id=user.id,
            details={"reason": "Admin role required"},
        ))
        raise ForbiddenError("Admin role required")
    return user
