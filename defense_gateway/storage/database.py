"""
Request Defense Gateway — SQL Database (async SQLAlchemy).

Stores device-tracking sessions and persisted security events.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, Float, Integer, String, Text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

logger = logging.getLogger("gateway.storage.database")


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _new_id() -> str:
    return str(uuid.uuid4())


# ── ORM Base ─────────────────────────────────────────────


class Base(DeclarativeBase):
    pass


# ── Models ───────────────────────────────────────────────


class DeviceSession(Base):
    """One device-tracking session (not an auth session)."""
    __tablename__ = "user_sessions"

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(64), nullable=False, index=True)
    ip_address = Column(String(45), nullable=False)
    user_agent = Column(Text, nullable=True)
    device_fingerprint = Column(String(16), nullable=False, index=True)
    device_info = Column(JSON, nullable=False)
    location_info = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)
    last_activity_at = Column(DateTime, default=utcnow, nullable=False)
    ended_at = Column(DateTime, nullable=True)
    session_duration_minutes = Column(Float, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "device_fingerprint": self.device_fingerprint,
            "device_info": self.device_info,
            "location_info": self.location_info,
            "created_at": _iso(self.created_at),
            "last_activity_at": _iso(self.last_activity_at),
            "ended_at": _iso(self.ended_at),
            "session_duration_minutes": self.session_duration_minutes,
        }


class SecurityEventLog(Base):
    """Persisted security event for later audit."""
    __tablename__ = "security_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    timestamp = Column(DateTime, default=utcnow, nullable=False, index=True)
    event_type = Column(String(32), nullable=False, index=True)
    ip = Column(String(45), nullable=True, index=True)
    user_id = Column(String(64), nullable=True)
    endpoint = Column(String(2048), nullable=True)
    user_agent = Column(Text, nullable=True)
    details_json = Column(Text, nullable=True)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


# ── Engine & Session ─────────────────────────────────────


def build_engine(database_url: str) -> AsyncEngine:
    return create_async_engine(database_url, echo=False)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_db(engine: AsyncEngine) -> None:
    """Create all tables."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables created / verified")
