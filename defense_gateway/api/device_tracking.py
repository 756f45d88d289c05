"""
Request Defense Gateway — Device-tracking API Routes.

Session lifecycle reporting, returning-device checks and user footprints.
"""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from defense_gateway.api.dependencies import (
    client_ip,
    get_gateway,
    get_monitor,
    get_settings,
    require_user,
)
from defense_gateway.auth.bearer import AuthenticatedUser
from defense_gateway.config import Settings
from defense_gateway.errors import ForbiddenError, ValidationError
from defense_gateway.gateway.orchestrator import RequestDefenseGateway
from defense_gateway.security.monitor import SecurityEvent, SecurityEventType, SecurityMonitor

router = APIRouter(prefix="/device-tracking", tags=["Device Tracking"])


# ── Schemas ──────────────────────────────────────────────


class StartSessionRequest(BaseModel):
    user_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_info: Optional[dict[str, Any]] = None
    location_info: Optional[dict[str, Any]] = None


class StartSessionResponse(BaseModel):
    success: bool = True
    session_id: str
    device_fingerprint: str


class SessionRef(BaseModel):
    session_id: Optional[str] = None


class CheckReturningRequest(BaseModel):
    fingerprint: Optional[str] = None


# ── Endpoints ────────────────────────────────────────────


@router.post("/session", response_model=StartSessionResponse)
async def start_session(
    body: StartSessionRequest,
    request: Request,
    user: AuthenticatedUser = Depends(require_user),
    gateway: RequestDefenseGateway = Depends(get_gateway),
    monitor: SecurityMonitor = Depends(get_monitor),
    ip: str = Depends(client_ip),
):
    """Record a new device session for the caller."""
    if body.user_id and body.user_id != user.id:
        await monitor.record(SecurityEvent(
            type=SecurityEventType.SUSPICIOUS_ACTIVITY,
            ip=ip,
            endpoint=request.url.path,
            user_id=user.id,
            details={"reason": "User ID mismatch", "requested_user_id": body.user_id},
        ))
        raise ForbiddenError("Forbidden: User ID mismatch")

    tracked = await gateway.registry.start_session(
        user_id=body.user_id,
        ip_address=body.ip_address,
        user_agent=body.user_agent,
        device_info=body.device_info,
        location_info=body.location_info,
    )
    return StartSessionResponse(
        session_id=tracked.session_id,
        device_fingerprint=tracked.device_fingerprint,
    )


@router.post("/activity")
async def record_activity(
    body: SessionRef,
    _user: AuthenticatedUser = Depends(require_user),
    gateway: RequestDefenseGateway = Depends(get_gateway),
):
    """Bump a session's last-activity time."""
    if not body.session_id:
        raise ValidationError("Missing session_id")
    await gateway.registry.record_activity(body.session_id)
    return {"success": True}


@router.post("/end-session")
async def end_session(
    body: SessionRef,
    _user: AuthenticatedUser = Depends(require_user),
    gateway: RequestDefenseGateway = Depends(get_gateway),
):
    """Mark a session as ended."""
    if not body.session_id:
        raise ValidationError("Missing session_id")
    await gateway.registry.end_session(body.session_id)
    return {"success": True}


@router.post("/check-returning")
async def check_returning(
    body: CheckReturningRequest,
    user: AuthenticatedUser = Depends(require_user),
    gateway: RequestDefenseGateway = Depends(get_gateway),
):
    """Has this device fingerprint been seen before?"""
    if not body.fingerprint:
        raise ValidationError("Missing fingerprint")
    returning = await gateway.registry.is_returning_device(body.fingerprint, user_id=user.id)
    return {"is_returning": returning}


@router.get("/footprint/{user_id}")
async def get_footprint(
    user_id: str,
    request: Request,
    user: AuthenticatedUser = Depends(require_user),
    gateway: RequestDefenseGateway = Depends(get_gateway),
    monitor: SecurityMonitor = Depends(get_monitor),
    cfg: Settings = Depends(get_settings),
    ip: str = Depends(client_ip),
):
    """Aggregate device/session footprint. Own data, or any user for admins."""
    if user.id != user_id and not user.is_admin(cfg.admin_role):
        await monitor.record(SecurityEvent(
            type=SecurityEventType.ACCESS_DENIED,
            ip=ip,
            endpoint=request.url.path,
            user_id=user.id,
            details={"reason": "Attempting to access other user data", "requested_user_id": user_id},
        ))
        raise ForbiddenError("Access denied")

    footprint = await gateway.registry.get_footprint(user_id)
    return footprint.to_dict()
