"""
Request Defense Gateway — Security Event Monitor.

Every security-relevant rejection is recorded here: logged with
structured fields, kept in a bounded buffer for the admin endpoint,
persisted when critical, and checked against alert thresholds.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Deque, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from defense_gateway.alerts.dispatcher import AlertEvent, AlertManager
from defense_gateway.storage.database import SecurityEventLog
from defense_gateway.storage.kv import Clock, epoch_ms

logger = logging.getLogger("gateway.security")

MINUTE_MS = 60 * 1000


class SecurityEventType(str, Enum):
    AUTH_FAILURE = "auth_failure"
    ACCESS_DENIED = "access_denied"
    RATE_LIMIT = "rate_limit"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    VALIDATION_ERROR = "validation_error"
    API_ERROR = "api_error"


# Events worth keeping beyond the in-memory buffer
PERSISTED_TYPES = {
    SecurityEventType.AUTH_FAILURE,
    SecurityEventType.ACCESS_DENIED,
    SecurityEventType.SUSPICIOUS_ACTIVITY,
}

# type -> (count, window_ms)
FREQUENCY_THRESHOLDS = {
    SecurityEventType.AUTH_FAILURE: (5, 15 * MINUTE_MS),
    SecurityEventType.RATE_LIMIT: (10, 5 * MINUTE_MS),
    SecurityEventType.SUSPICIOUS_ACTIVITY: (3, 10 * MINUTE_MS),
    SecurityEventType.VALIDATION_ERROR: (20, 5 * MINUTE_MS),
}

SEVERITY = {
    SecurityEventType.AUTH_FAILURE: "high",
    SecurityEventType.ACCESS_DENIED: "medium",
    SecurityEventType.RATE_LIMIT: "medium",
    SecurityEventType.SUSPICIOUS_ACTIVITY: "high",
    SecurityEventType.VALIDATION_ERROR: "low",
    SecurityEventType.API_ERROR: "low",
}


@dataclass
class SecurityEvent:
    type: SecurityEventType
    ip: Optional[str] = None
    endpoint: Optional[str] = None
    user_id: Optional[str] = None
    user_agent: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)
    timestamp_ms: int = 0

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "ip": self.ip,
            "endpoint": self.endpoint,
            "user_id": self.user_id,
            "user_agent": self.user_agent,
            "details": self.details,
            "timestamp": _iso(self.timestamp_ms),
        }


@dataclass
class SecurityAlert:
    id: str
    severity: str
    type: str
    message: str
    timestamp_ms: int
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "severity": self.severity,
            "type": self.type,
            "message": self.message,
            "timestamp": _iso(self.timestamp_ms),
            "metadata": self.metadata,
        }


class SecurityMonitor:
    """In-memory security event buffer with threshold alerting."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        alert_manager: Optional[AlertManager] = None,
        max_events: int = 1000,
        max_alerts: int = 100,
        alert_cooldown_ms: int = 5 * MINUTE_MS,
        clock: Clock = epoch_ms,
    ) -> None:
        self._session_factory = session_factory
        self._alert_manager = alert_manager
        self._clock = clock
        self._cooldown_ms = alert_cooldown_ms
        self.events: Deque[SecurityEvent] = deque(maxlen=max_events)
        self.alerts: Deque[SecurityAlert] = deque(maxlen=max_alerts)
        self._last_alert_at: dict[str, int] = {}
        self._pending: set[asyncio.Task] = set()

    async def record(self, event: SecurityEvent) -> None:
        """Record an event; never raises."""
        if not event.timestamp_ms:
            event.timestamp_ms = self._clock()
        self.events.append(event)
        logger.warning(
            "[SECURITY] %s ip=%s endpoint=%s user=%s details=%s",
            event.type.value, event.ip, event.endpoint, event.user_id,
            json.dumps(event.details, default=str),
        )
        if event.type in PERSISTED_TYPES:
            await self._persist(event)
        self._check_alert_conditions(event)

    def metrics(self) -> dict:
        """Aggregate view for the admin dashboard."""
        events = list(self.events)
        by_type = Counter(e.type.value for e in events)
        by_severity = Counter(SEVERITY[e.type] for e in events)
        top_ips = Counter(e.ip for e in events if e.ip).most_common(10)
        top_endpoints = Counter(e.endpoint for e in events if e.endpoint).most_common(10)
        return {
            "total_events": len(events),
            "events_by_type": dict(by_type),
            "events_by_severity": dict(by_severity),
            "recent_events": [e.to_dict() for e in reversed(events[-50:])],
            "alerts_triggered": len(self.alerts),
            "recent_alerts": [a.to_dict() for a in reversed(self.alerts)],
            "top_ips": [{"ip": ip, "count": n} for ip, n in top_ips],
            "top_endpoints": [{"endpoint": ep, "count": n} for ep, n in top_endpoints],
        }

    async def drain(self) -> None:
        """Wait for in-flight alert deliveries."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)

    # ── Internal ─────────────────────────────────────────

    async def _persist(self, event: SecurityEvent) -> None:
        if self._session_factory is None:
            return
        try:
            async with self._session_factory() as session:
                session.add(SecurityEventLog(
                    timestamp=datetime.fromtimestamp(event.timestamp_ms / 1000, tz=timezone.utc).replace(tzinfo=None),
                    event_type=event.type.value,
                    ip=event.ip,
                    user_id=event.user_id,
                    endpoint=event.endpoint,
                    user_agent=event.user_agent,
                    details_json=json.dumps(event.details, default=str) if event.details else None,
                ))
                await session.commit()
        except Exception:
            logger.debug("Failed to persist security event", exc_info=True)

    def _recent(self, event_type: SecurityEventType, window_ms: int, ip: Optional[str] = None) -> list[SecurityEvent]:
        cutoff = self._clock() - window_ms
        return [
            e for e in self.events
            if e.type == event_type and e.timestamp_ms > cutoff and (ip is None or e.ip == ip)
        ]

    def _check_alert_conditions(self, event: SecurityEvent) -> None:
        threshold = FREQUENCY_THRESHOLDS.get(event.type)
        if threshold:
            count, window_ms = threshold
            recent = self._recent(event.type, window_ms)
            if len(recent) >= count:
                self._trigger(
                    key=f"frequency:{event.type.value}",
                    alert_type=event.type.value,
                    severity=SEVERITY[event.type],
                    message=f"High frequency of {event.type.value} events detected",
                    metadata={
                        "event_count": len(recent),
                        "window_minutes": window_ms // MINUTE_MS,
                        "threshold": count,
                    },
                )

        if event.type == SecurityEventType.AUTH_FAILURE and event.ip:
            failures = self._recent(SecurityEventType.AUTH_FAILURE, 5 * MINUTE_MS, ip=event.ip)
            if len(failures) >= 3:
                self._trigger(
                    key=f"brute_force:{event.ip}",
                    alert_type="brute_force_attempt",
                    severity="critical",
                    message=f"Potential brute force attack from IP {event.ip}",
                    source_ip=event.ip,
                    metadata={
                        "failure_count": len(failures),
                        "endpoints": sorted({e.endpoint for e in failures if e.endpoint}),
                    },
                )

        if event.type == SecurityEventType.SUSPICIOUS_ACTIVITY and event.ip:
            suspicious = self._recent(SecurityEventType.SUSPICIOUS_ACTIVITY, 10 * MINUTE_MS, ip=event.ip)
            endpoints = {e.endpoint for e in suspicious if e.endpoint}
            if len(endpoints) >= 3:
                self._trigger(
                    key=f"coordinated:{event.ip}",
                    alert_type="coordinated_attack",
                    severity="high",
                    message=f"Coordinated suspicious activity from IP {event.ip}",
                    source_ip=event.ip,
                    metadata={"endpoints": sorted(endpoints)},
                )

    def _trigger(
        self,
        key: str,
        alert_type: str,
        severity: str,
        message: str,
        metadata: dict,
        source_ip: Optional[str] = None,
    ) -> None:
        now = self._clock()
        last = self._last_alert_at.get(key)
        if last is not None and now - last < self._cooldown_ms:
            return
        self._last_alert_at = {
            k: t for k, t in self._last_alert_at.items() if now - t < self._cooldown_ms
        }
        self._last_alert_at[key] = now

        alert = SecurityAlert(
            id=uuid.uuid4().hex,
            severity=severity,
            type=alert_type,
            message=message,
            timestamp_ms=now,
            metadata=metadata,
        )
        self.alerts.append(alert)
        logger.error("[SECURITY ALERT] %s (%s): %s", alert_type, severity, message)

        if self._alert_manager is not None:
            task = asyncio.create_task(self._alert_manager.alert(AlertEvent(
                severity=severity,
                title=alert_type.replace("_", " ").title(),
                message=message,
                source_ip=source_ip,
                event_type=alert_type,
                metadata=metadata,
            )))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)


def _iso(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).isoformat()
