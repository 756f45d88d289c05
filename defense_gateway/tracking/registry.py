"""
Request Defense Gateway — Fingerprint Registry.

Records device-tracking sessions, answers "have we seen this device
before?", and aggregates a per-user footprint from session rows.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from ipaddress import ip_address
from typing import Any, Callable, Optional

from sqlalchemy import desc, exists, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from defense_gateway.config import DeviceScope
from defense_gateway.errors import ValidationError
from defense_gateway.storage.database import DeviceSession, utcnow
from defense_gateway.tracking.fingerprint import DeviceInfo, compute_fingerprint
from defense_gateway.tracking.user_agent import describe_user_agent

logger = logging.getLogger("gateway.tracking.registry")

LocationLookup = Callable[[str], Optional[dict]]


@dataclass(frozen=True)
class EngagementPolicy:
    """Buckets a user by sessions started within a recent window."""
    window_days: int = 7
    high_threshold: int = 5
    medium_threshold: int = 2

    def classify(self, recent_sessions: int) -> str:
        if recent_sessions >= self.high_threshold:
            return "High"
        if recent_sessions >= self.medium_threshold:
            return "Medium"
        return "Low"


@dataclass(frozen=True)
class TrackedSession:
    session_id: str
    device_fingerprint: str


@dataclass
class UserFootprint:
    """Read-only aggregate over one user's sessions."""
    user_id: str
    total_sessions: int = 0
    unique_devices: int = 0
    unique_ip_addresses: int = 0
    unique_countries: int = 0
    first_session: Optional[str] = None
    last_session: Optional[str] = None
    sessions_last_7_days: int = 0
    sessions_last_30_days: int = 0
    avg_session_duration_minutes: float = 0.0
    engagement_level: str = "Low"
    recent_sessions: list[dict] = field(default_factory=list)
    devices: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "total_sessions": self.total_sessions,
            "unique_devices": self.unique_devices,
            "unique_ip_addresses": self.unique_ip_addresses,
            "unique_countries": self.unique_countries,
            "first_session": self.first_session,
            "last_session": self.last_session,
            "sessions_last_7_days": self.sessions_last_7_days,
            "sessions_last_30_days": self.sessions_last_30_days,
            "avg_session_duration_minutes": self.avg_session_duration_minutes,
            "engagement_level": self.engagement_level,
            "recent_sessions": self.recent_sessions,
            "devices": self.devices,
        }


class FingerprintRegistry:
    """Device-tracking sessions persisted through SQLAlchemy."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        scope: DeviceScope = DeviceScope.GLOBAL,
        engagement: EngagementPolicy = EngagementPolicy(),
        recent_limit: int = 10,
        locate: Optional[LocationLookup] = None,
    ) -> None:
        self._session_factory = session_factory
        self.scope = scope
        self.engagement = engagement
        self.recent_limit = recent_limit
        self._locate = locate

    async def start_session(
        self,
        user_id: Optional[str],
        ip_address: Optional[str],
        user_agent: Optional[str],
        device_info: Optional[dict[str, Any]],
        location_info: Optional[dict[str, Any]] = None,
    ) -> TrackedSession:
        """Persist a new session and return its id and device fingerprint."""
        if not user_id or not ip_address or not device_info:
            raise ValidationError("Missing required fields: user_id, ip_address, device_info")
        _validate_ip(ip_address)

        # Fingerprint what the client reported; the stored copy is enriched.
        fingerprint = compute_fingerprint(DeviceInfo.from_mapping(device_info), user_agent)
        device = self._complete_device_info(device_info, user_agent)
        if location_info is None and self._locate is not None:
            location_info = self._locate(ip_address)

        row = DeviceSession(
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            device_fingerprint=fingerprint,
            device_info=device,
            location_info=location_info,
        )
        async with self._session_factory() as session:
            session.add(row)
            await session.commit()

        logger.info("Session %s started for user %s (device %s)", row.id, user_id, fingerprint)
        return TrackedSession(session_id=row.id, device_fingerprint=fingerprint)

    async def record_activity(self, session_id: str) -> bool:
        """Bump last activity. Unknown or ended sessions are logged and ignored."""
        stmt = (
            update(DeviceSession)
            .where(DeviceSession.id == session_id, DeviceSession.ended_at.is_(None))
            .values(last_activity_at=utcnow())
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
        if result.rowcount == 0:
            logger.info("Activity ping for unknown or ended session %s", session_id)
            return False
        return True

    async def end_session(self, session_id: str) -> bool:
        """Mark a session ended. Ending an already-ended session is a no-op."""
        async with self._session_factory() as session:
            row = await session.get(DeviceSession, session_id)
            if row is None:
                logger.info("End requested for unknown session %s", session_id)
                return False
            if row.ended_at is None:
                now = utcnow()
                row.ended_at = now
                row.last_activity_at = now
                row.session_duration_minutes = round(
                    (now - row.created_at).total_seconds() / 60, 2,
                )
                await session.commit()
        return True

    async def is_returning_device(self, fingerprint: str, user_id: Optional[str] = None) -> bool:
        """True iff a prior session carries this fingerprint (scope-dependent)."""
        if not fingerprint:
            return False
        condition = DeviceSession.device_fingerprint == fingerprint
        if self.scope == DeviceScope.USER:
            if not user_id:
                return False
            condition = condition & (DeviceSession.user_id == user_id)
        async with self._session_factory() as session:
            result = await session.execute(select(exists().where(condition)))
            return bool(result.scalar())

    async def get_footprint(self, user_id: str) -> UserFootprint:
        """Aggregate a user's sessions. Users without sessions get the default."""
        stmt = (
            select(DeviceSession)
            .where(DeviceSession.user_id == user_id)
            .order_by(desc(DeviceSession.created_at))
        )
        async with self._session_factory() as session:
            rows = list((await session.execute(stmt)).scalars().all())

        footprint = UserFootprint(user_id=user_id)
        if not rows:
            return footprint

        now = utcnow()
        devices: dict[str, dict] = {}
        # rows are newest first, so the last row seen per fingerprint is the oldest
        for row in rows:
            devices[row.device_fingerprint] = {
                **(row.device_info or {}),
                "fingerprint": row.device_fingerprint,
                "first_seen": row.created_at.isoformat(),
            }
        countries = {
            (row.location_info or {}).get("country")
            for row in rows
        } - {None}
        durations = [r.session_duration_minutes for r in rows if r.session_duration_minutes is not None]
        recent_window = _count_since(rows, now - timedelta(days=self.engagement.window_days))

        footprint.total_sessions = len(rows)
        footprint.unique_devices = len(devices)
        footprint.unique_ip_addresses = len({r.ip_address for r in rows})
        footprint.unique_countries = len(countries)
        footprint.first_session = rows[-1].created_at.isoformat()
        footprint.last_session = max(r.last_activity_at for r in rows).isoformat()
        footprint.sessions_last_7_days = _count_since(rows, now - timedelta(days=7))
        footprint.sessions_last_30_days = _count_since(rows, now - timedelta(days=30))
        footprint.avg_session_duration_minutes = (
            round(sum(durations) / len(durations), 2) if durations else 0.0
        )
        footprint.engagement_level = self.engagement.classify(recent_window)
        footprint.recent_sessions = [r.to_dict() for r in rows[: self.recent_limit]]
        footprint.devices = sorted(devices.values(), key=lambda d: d["first_seen"], reverse=True)
        return footprint

    # ── Internal ─────────────────────────────────────────

    @staticmethod
    def _complete_device_info(device_info: dict[str, Any], user_agent: Optional[str]) -> dict[str, Any]:
        """Fill attributes the client left blank from the user agent."""
        if not user_agent:
            return dict(device_info)
        reported = {k: v for k, v in device_info.items() if v not in (None, "")}
        return {**describe_user_agent(user_agent), **reported}


def _validate_ip(value: str) -> None:
    try:
        ip_address(value)
    except ValueError:
        raise ValidationError("Invalid ip_address") from None


def _count_since(rows: list[DeviceSession], cutoff: datetime) -> int:
    return sum(1 for r in rows if r.created_at >= cutoff)
