"""
Tests for the security event monitor.
"""

import pytest

from defense_gateway.alerts.dispatcher import AlertDispatcher, AlertManager
from defense_gateway.security.monitor import SecurityEvent, SecurityEventType, SecurityMonitor


class FakeClock:
    def __init__(self, now: int = 1_700_000_000_000) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now


class RecordingDispatcher(AlertDispatcher):
    def __init__(self) -> None:
        self.sent = []

    async def send(self, event) -> bool:
        self.sent.append(event)
        return True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def monitor(clock, dispatcher):
    return SecurityMonitor(alert_manager=AlertManager([dispatcher]), clock=clock)


def _auth_failure(ip: str = "203.0.113.5", endpoint: str = "/api/csrf-token") -> SecurityEvent:
    return SecurityEvent(type=SecurityEventType.AUTH_FAILURE, ip=ip, endpoint=endpoint)


@pytest.mark.asyncio
async def test_record_stamps_and_buffers(monitor, clock):
    await monitor.record(_auth_failure())
    assert len(monitor.events) == 1
    assert monitor.events[0].timestamp_ms == clock.now


@pytest.mark.asyncio
async def test_buffer_is_bounded(clock):
    monitor = SecurityMonitor(max_events=3, clock=clock)
    for i in range(5):
        await monitor.record(SecurityEvent(type=SecurityEventType.VALIDATION_ERROR, ip=f"10.0.0.{i}"))
    assert len(monitor.events) == 3
    assert monitor.events[0].ip == "10.0.0.2"


@pytest.mark.asyncio
async def test_brute_force_alert(monitor, dispatcher):
    for _ in range(3):
        await monitor.record(_auth_failure())
    await monitor.drain()

    types = [a.type for a in monitor.alerts]
    assert "brute_force_attempt" in types
    assert any(e.event_type == "brute_force_attempt" for e in dispatcher.sent)


@pytest.mark.asyncio
async def test_alert_cooldown(monitor, clock):
    for _ in range(6):
        await monitor.record(_auth_failure())
    brute = [a for a in monitor.alerts if a.type == "brute_force_attempt"]
    assert len(brute) == 1

    clock.now += 5 * 60 * 1000
    for _ in range(3):
        await monitor.record(_auth_failure())
    await monitor.drain()
    brute = [a for a in monitor.alerts if a.type == "brute_force_attempt"]
    assert len(brute) == 2


@pytest.mark.asyncio
async def test_frequency_alert(monitor):
    for i in range(10):
        await monitor.record(SecurityEvent(type=SecurityEventType.RATE_LIMIT, ip=f"10.0.0.{i}"))
    await monitor.drain()
    assert [a.type for a in monitor.alerts] == ["rate_limit"]


@pytest.mark.asyncio
async def test_coordinated_attack_alert(monitor):
    for endpoint in ("/a", "/b", "/c"):
        await monitor.record(SecurityEvent(
            type=SecurityEventType.SUSPICIOUS_ACTIVITY, ip="203.0.113.9", endpoint=endpoint,
        ))
    await monitor.drain()
    types = {a.type for a in monitor.alerts}
    assert "coordinated_attack" in types


@pytest.mark.asyncio
async def test_old_events_outside_window(monitor, clock):
    await monitor.record(_auth_failure())
    await monitor.record(_auth_failure())
    clock.now += 6 * 60 * 1000
    await monitor.record(_auth_failure())
    assert not [a for a in monitor.alerts if a.type == "brute_force_attempt"]


@pytest.mark.asyncio
async def test_metrics(monitor):
    await monitor.record(_auth_failure(ip="1.1.1.1"))
    await monitor.record(_auth_failure(ip="1.1.1.1"))
    await monitor.record(SecurityEvent(type=SecurityEventType.RATE_LIMIT, ip="2.2.2.2", endpoint="/api/ip"))

    metrics = monitor.metrics()
    assert metrics["total_events"] == 3
    assert metrics["events_by_type"] == {"auth_failure": 2, "rate_limit": 1}
    assert metrics["events_by_severity"] == {"high": 2, "medium": 1}
    assert metrics["top_ips"][0] == {"ip": "1.1.1.1", "count": 2}
    assert metrics["recent_events"][0]["type"] == "rate_limit"


@pytest.mark.asyncio
async def test_cooldown_entries_expire(monitor, clock):
    for i in range(50):
        for _ in range(3):
            await monitor.record(_auth_failure(ip=f"198.51.100.{i}"))
    assert len(monitor._last_alert_at) >= 50

    clock.now += 10 * 60 * 1000
    for _ in range(3):
        await monitor.record(_auth_failure(ip="192.0.2.77"))
    await monitor.drain()
    assert len(monitor._last_alert_at) <= 2
