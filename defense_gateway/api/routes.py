"""
Request Defense Gateway — Core API Routes.

CSRF token issuance, logout, client IP echo, health and the security
event feed.
"""

from __future__ import annotations

import time

from fastapi import APIRouter, Depends

from defense_gateway.api.dependencies import (
    client_ip,
    get_gateway,
    get_monitor,
    get_settings,
    require_admin,
    require_user,
)
from defense_gateway.auth.bearer import AuthenticatedUser
from defense_gateway.config import Settings, StoreBackend
from defense_gateway.errors import ServiceUnavailable
from defense_gateway.gateway.orchestrator import RequestDefenseGateway
from defense_gateway.security.monitor import SecurityMonitor
from defense_gateway.storage.kv import StoreUnavailableError
from defense_gateway.storage.redis_client import redis_manager

router = APIRouter(tags=["Gateway API"])

_start_time = time.time()


@router.get("/csrf-token")
async def get_csrf_token(
    user: AuthenticatedUser = Depends(require_user),
    gateway: RequestDefenseGateway = Depends(get_gateway),
):
    """Issue a CSRF token bound to the authenticated caller."""
    try:
        token = await gateway.csrf_guard.issue(user.id)
    except StoreUnavailableError:
        raise ServiceUnavailable("CSRF token store unavailable")
    return {"token": token.value, "expires_at": token.expires_at_ms}


@router.post("/logout")
async def logout(
    user: AuthenticatedUser = Depends(require_user),
    gateway: RequestDefenseGateway = Depends(get_gateway),
):
    """Invalidate every CSRF token of the caller."""
    try:
        await gateway.csrf_guard.invalidate(user.id)
    except StoreUnavailableError:
        raise ServiceUnavailable("CSRF token store unavailable")
    return {"success": True}


@router.get("/ip")
async def get_ip(ip: str = Depends(client_ip)):
    """Return the caller's IP as the gateway sees it."""
    return {"ip": ip}


@router.get("/health")
async def health_check(cfg: Settings = Depends(get_settings)):
    """Liveness plus the state of the shared store."""
    store_healthy = True
    if cfg.store_backend == StoreBackend.REDIS:
        store_healthy = await redis_manager.health_check()
    return {
        "status": "healthy" if store_healthy else "degraded",
        "version": "0.1.0",
        "uptime": time.time() - _start_time,
        "store": cfg.store_backend,
        "store_healthy": store_healthy,
    }


@router.get("/security/events")
async def security_events(
    _admin: AuthenticatedUser = Depends(require_admin),
    monitor: SecurityMonitor = Depends(get_monitor),
):
    """Recent security events, alerts and aggregates (admins only)."""
    return monitor.metrics()
