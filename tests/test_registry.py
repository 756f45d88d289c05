"""
Tests for the fingerprint registry (device-tracking sessions).
"""

from datetime import timedelta

import pytest
from sqlalchemy import update

from defense_gateway.config import DeviceScope
from defense_gateway.errors import ValidationError
from defense_gateway.storage.database import (
    DeviceSession,
    build_engine,
    build_session_factory,
    init_db,
    utcnow,
)
from defense_gateway.tracking.fingerprint import DeviceInfo, compute_fingerprint
from defense_gateway.tracking.registry import EngagementPolicy, FingerprintRegistry

UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:121.0) "
    "Gecko/20100101 Firefox/121.0"
)
DEVICE = {
    "browser": "Firefox",
    "browser_version": "121.0",
    "os": "Windows",
    "os_version": "10",
    "device_type": "desktop",
    "screen_resolution": "2560x1440",
    "timezone": "UTC",
    "language": "en-GB",
}


@pytest.fixture
async def session_factory(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path}/registry.db")
    await init_db(engine)
    yield build_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def registry(session_factory):
    return FingerprintRegistry(session_factory)


async def _backdate(session_factory, session_id: str, days: int) -> None:
    async with session_factory() as session:
        await session.execute(
            update(DeviceSession)
            .where(DeviceSession.id == session_id)
            .values(created_at=utcnow() - timedelta(days=days))
        )
        await session.commit()


@pytest.mark.asyncio
async def test_start_session_returns_id_and_fingerprint(registry):
    tracked = await registry.start_session("u1", "203.0.113.7", UA, DEVICE)
    assert tracked.session_id
    assert tracked.device_fingerprint


@pytest.mark.asyncio
async def test_same_device_same_fingerprint(registry):
    a = await registry.start_session("u1", "203.0.113.7", UA, DEVICE)
    b = await registry.start_session("u1", "198.51.100.1", UA, DEVICE)
    assert a.session_id != b.session_id
    assert a.device_fingerprint == b.device_fingerprint


@pytest.mark.asyncio
async def test_missing_fields_rejected(registry):
    with pytest.raises(ValidationError):
        await registry.start_session("", "203.0.113.7", UA, DEVICE)
    with pytest.raises(ValidationError):
        await registry.start_session("u1", None, UA, DEVICE)
    with pytest.raises(ValidationError):
        await registry.start_session("u1", "203.0.113.7", UA, None)


@pytest.mark.asyncio
async def test_invalid_ip_rejected(registry):
    with pytest.raises(ValidationError):
        await registry.start_session("u1", "not-an-ip", UA, DEVICE)


@pytest.mark.asyncio
async def test_blank_attributes_filled_from_user_agent(registry, session_factory):
    tracked = await registry.start_session("u1", "203.0.113.7", UA, {"screen_resolution": "800x600"})
    async with session_factory() as session:
        row = await session.get(DeviceSession, tracked.session_id)
    assert row.device_info["browser"] == "Firefox"
    assert row.device_info["os"] == "Windows"
    assert row.device_info["screen_resolution"] == "800x600"


@pytest.mark.asyncio
async def test_fingerprint_uses_reported_fields(registry):
    partial = {"screen_resolution": "800x600", "timezone": "UTC"}
    tracked = await registry.start_session("u1", "203.0.113.7", UA, partial)
    assert tracked.device_fingerprint == compute_fingerprint(DeviceInfo.from_mapping(partial), UA)
    assert tracked.device_fingerprint != compute_fingerprint(DeviceInfo.from_mapping(DEVICE), UA)


@pytest.mark.asyncio
async def test_location_lookup_used_when_not_reported(session_factory):
    registry = FingerprintRegistry(session_factory, locate=lambda ip: {"country": "Testland"})
    tracked = await registry.start_session("u1", "203.0.113.7", UA, DEVICE)
    async with session_factory() as session:
        row = await session.get(DeviceSession, tracked.session_id)
    assert row.location_info == {"country": "Testland"}


@pytest.mark.asyncio
async def test_returning_device(registry):
    tracked = await registry.start_session("u1", "203.0.113.7", UA, DEVICE)
    assert await registry.is_returning_device(tracked.device_fingerprint)
    assert not await registry.is_returning_device("zzzzzz")
    assert not await registry.is_returning_device("")


@pytest.mark.asyncio
async def test_returning_device_user_scope(session_factory):
    registry = FingerprintRegistry(session_factory, scope=DeviceScope.USER)
    tracked = await registry.start_session("u1", "203.0.113.7", UA, DEVICE)
    assert await registry.is_returning_device(tracked.device_fingerprint, user_id="u1")
    assert not await registry.is_returning_device(tracked.device_fingerprint, user_id="u2")


@pytest.mark.asyncio
async def test_record_activity(registry):
    tracked = await registry.start_session("u1", "203.0.113.7", UA, DEVICE)
    assert await registry.record_activity(tracked.session_id)
    assert not await registry.record_activity("unknown-session")


@pytest.mark.asyncio
async def test_end_session_is_idempotent(registry, session_factory):
    tracked = await registry.start_session("u1", "203.0.113.7", UA, DEVICE)
    assert await registry.end_session(tracked.session_id)
    async with session_factory() as session:
        first = await session.get(DeviceSession, tracked.session_id)
    assert first.ended_at is not None
    assert first.session_duration_minutes is not None

    assert await registry.end_session(tracked.session_id)
    async with session_factory() as session:
        second = await session.get(DeviceSession, tracked.session_id)
    assert second.ended_at == first.ended_at

    # no activity after the end
    assert not await registry.record_activity(tracked.session_id)


@pytest.mark.asyncio
async def test_end_unknown_session(registry):
    assert not await registry.end_session("unknown-session")


@pytest.mark.asyncio
async def test_footprint_for_unknown_user(registry):
    footprint = await registry.get_footprint("ghost")
    assert footprint.total_sessions == 0
    assert footprint.engagement_level == "Low"
    assert footprint.devices == []


@pytest.mark.asyncio
async def test_footprint_aggregates(registry):
    phone = {**DEVICE, "device_type": "mobile", "screen_resolution": "390x844"}
    await registry.start_session("u1", "203.0.113.7", UA, DEVICE, {"country": "DE"})
    await registry.start_session("u1", "203.0.113.8", UA, phone, {"country": "FR"})
    await registry.start_session("u1", "203.0.113.8", UA, DEVICE, {"country": "DE"})
    await registry.start_session("u2", "198.51.100.1", UA, DEVICE)

    footprint = (await registry.get_footprint("u1")).to_dict()
    assert footprint["total_sessions"] == 3
    assert footprint["unique_devices"] == 2
    assert footprint["unique_ip_addresses"] == 2
    assert footprint["unique_countries"] == 2
    assert footprint["sessions_last_7_days"] == 3
    assert footprint["sessions_last_30_days"] == 3
    assert footprint["engagement_level"] == "Medium"
    assert len(footprint["recent_sessions"]) == 3
    assert len(footprint["devices"]) == 2
    assert all(s["user_id"] == "u1" for s in footprint["recent_sessions"])


@pytest.mark.asyncio
async def test_engagement_levels(registry, session_factory):
    ids = []
    for _ in range(5):
        ids.append((await registry.start_session("u1", "203.0.113.7", UA, DEVICE)).session_id)
    assert (await registry.get_footprint("u1")).engagement_level == "High"

    # four of five sessions fall outside the 7-day window
    for session_id in ids[:4]:
        await _backdate(session_factory, session_id, days=10)
    footprint = await registry.get_footprint("u1")
    assert footprint.sessions_last_7_days == 1
    assert footprint.sessions_last_30_days == 5
    assert footprint.engagement_level == "Low"


def test_engagement_policy_thresholds():
    policy = EngagementPolicy()
    assert policy.classify(0) == "Low"
    assert policy.classify(1) == "Low"
    assert policy.classify(2) == "Medium"
    assert policy.classify(4) == "Medium"
    assert policy.classify(5) == "High"
