"""
Request Defense Gateway — Fixed-window Rate Limiter.

Counts requests per (policy, client key) in discrete windows.
State lives in an injected KeyValueStore so tests get an isolated
in-memory instance and production can share counters through Redis.
"""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass
from typing import Optional

from defense_gateway.storage.kv import Clock, KeyValueStore, epoch_ms

logger = logging.getLogger("gateway.mitigation.rate_limiter")


@dataclass(frozen=True)
class RateWindow:
    """Counter for one live window."""
    count: int
    reset_at_ms: int

    def is_expired(self, now_ms: int) -> bool:
        return now_ms >= self.reset_at_ms

    def to_json(self) -> str:
        return json.dumps({"count": self.count, "reset_at_ms": self.reset_at_ms})

    @classmethod
    def from_json(cls, raw: str) -> "RateWindow":
        data = json.loads(raw)
        return cls(count=int(data["count"]), reset_at_ms=int(data["reset_at_ms"]))


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of one check."""
    allowed: bool
    remaining: int
    reset_at_ms: int
    limit: int
    retry_after: int = 0  # seconds, only meaningful when rejected


class RateLimiter:
    """
    Fixed-window rate limiter.

    Fails open: when the store cannot be read or written the request is
    allowed and a warning is logged.
    """

    KEY_PREFIX = "rl"
    MAX_CAS_ATTEMPTS = 8

    def __init__(self, store: KeyValueStore, clock: Clock = epoch_ms) -> None:
        self._store = store
        self._clock = clock

    async def check_and_consume(
        self, policy: str, key: str, window_ms: int, max_requests: int,
    ) -> RateLimitResult:
        """Count one request for ``key`` under ``policy`` and decide."""
        store_key = f"{self.KEY_PREFIX}:{policy}:{key}"
        try:
            for _ in range(self.MAX_CAS_ATTEMPTS):
                result = await self._attempt(store_key, window_ms, max_requests)
                if result is not None:
                    return result
        except Exception:
            logger.warning(
                "Rate limit store unavailable for %s, allowing request",
                store_key, exc_info=True,
            )
            return self._open_result(window_ms, max_requests)

        logger.warning("Rate limit contention on %s, allowing request", store_key)
        return self._open_result(window_ms, max_requests)

    # ── Internal ─────────────────────────────────────────

    async def _attempt(
        self, store_key: str, window_ms: int, max_requests: int,
    ) -> Optional[RateLimitResult]:
        """One read-decide-swap round. None means the swap lost a race."""
        now = self._clock()
        raw = await self._store.get(store_key)
        window = RateWindow.from_json(raw) if raw else None

        if window is None or window.is_expired(now):
            updated = RateWindow(count=1, reset_at_ms=now + window_ms)
        elif window.count < max_requests:
            updated = RateWindow(count=window.count + 1, reset_at_ms=window.reset_at_ms)
        else:
            return RateLimitResult(
                allowed=False,
                remaining=0,
                reset_at_ms=window.reset_at_ms,
                limit=max_requests,
                retry_after=math.ceil((window.reset_at_ms - now) / 1000),
            )

        swapped = await self._store.compare_and_swap(
            store_key, raw, updated.to_json(), ttl_ms=updated.reset_at_ms - now,
        )
        if not swapped:
            return None
        return RateLimitResult(
            allowed=True,
            remaining=max(0, max_requests - updated.count),
            reset_at_ms=updated.reset_at_ms,
            limit=max_requests,
        )

    def _open_result(self, window_ms: int, max_requests: int) -> RateLimitResult:
        return RateLimitResult(
            allowed=True,
            remaining=max_requests,
            reset_at_ms=self._clock() + window_ms,
            limit=max_requests,
        )
