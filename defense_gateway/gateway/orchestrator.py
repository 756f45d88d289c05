"""
Request Defense Gateway — Orchestrator.

Composes the rate limiter, the CSRF guard and the fingerprint registry.
This is the only place that knows the order the checks run in:

  1. Rate limits for every matching policy (cheapest, applies to all)
  2. CSRF token for authenticated, state-changing requests
  3. Device history, on the endpoints that ask for it (registry)

The components know nothing about each other; they share only the
request's identity (IP, path, verified user id).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from fastapi import HTTPException

from defense_gateway.errors import ForbiddenError, RateLimitExceeded
from defense_gateway.gateway.context import RequestContext
from defense_gateway.mitigation.csrf import CSRFGuard
from defense_gateway.mitigation.rate_limiter import RateLimiter, RateLimitResult
from defense_gateway.rules.engine import PolicyEngine
from defense_gateway.security.monitor import SecurityEvent, SecurityEventType, SecurityMonitor
from defense_gateway.tracking.registry import FingerprintRegistry

logger = logging.getLogger("gateway.orchestrator")


@dataclass
class GatewayDecision:
    """Verdict for one request. ``error`` is set when it must be rejected."""
    error: Optional[HTTPException] = None
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def allowed(self) -> bool:
        return self.error is None


def rate_limit_headers(result: RateLimitResult) -> dict[str, str]:
    return {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(result.reset_at_ms // 1000),
    }


class RequestDefenseGateway:
    """Runs every inbound request through the defense pipeline."""

    def __init__(
        self,
        policies: PolicyEngine,
        rate_limiter: RateLimiter,
        csrf_guard: CSRFGuard,
        registry: FingerprintRegistry,
        monitor: SecurityMonitor,
        csrf_exempt_paths: Optional[list[str]] = None,
    ) -> None:
        self.policies = policies
        self.rate_limiter = rate_limiter
        self.csrf_guard = csrf_guard
        self.registry = registry
        self.monitor = monitor
        self.csrf_exempt_paths = set(csrf_exempt_paths or [])

    async def screen(self, ctx: RequestContext) -> GatewayDecision:
        """Decide whether a request may reach its handler."""
        headers: dict[str, str] = {}

        # ── 1. Rate limits ───────────────────────────────
        tightest: Optional[RateLimitResult] = None
        for policy in self.policies.match_request(ctx.path, ctx.method):
            result = await self.rate_limiter.check_and_consume(
                policy.name,
                policy.client_key(ctx.ip, ctx.path, ctx.user_id),
                policy.window_ms,
                policy.max_requests,
            )
            if not result.allowed:
                await self.monitor.record(SecurityEvent(
                    type=SecurityEventType.RATE_LIMIT,
                    ip=ctx.ip,
                    endpoint=ctx.path,
                    user_id=ctx.user_id,
                    user_agent=ctx.user_agent,
                    details={"policy": policy.name, "limit": result.limit,
                             "retry_after": result.retry_after},
                ))
                logger.info(
                    "Policy '%s' limit exceeded for %s on %s %s",
                    policy.name, ctx.ip, ctx.method, ctx.path,
                )
                error = RateLimitExceeded(
                    result.retry_after,
                    detail="Too many requests. Please try again later.",
                )
                error.headers.update(rate_limit_headers(result))
                return GatewayDecision(error=error)
            if tightest is None or result.remaining < tightest.remaining:
                tightest = result
        if tightest is not None:
            headers.update(rate_limit_headers(tightest))

        # ── 2. CSRF ──────────────────────────────────────
        if self.requires_csrf(ctx):
            valid = await self.csrf_guard.validate(ctx.csrf_token or "", ctx.user_id or "")
            if not valid:
                await self.monitor.record(SecurityEvent(
                    type=SecurityEventType.AUTH_FAILURE,
                    ip=ctx.ip,
                    endpoint=ctx.path,
                    user_id=ctx.user_id,
                    user_agent=ctx.user_agent,
                    details={
                        "reason": "CSRF token validation failed",
                        "missing_token": not ctx.csrf_token,
                    },
                ))
                return GatewayDecision(
                    error=ForbiddenError("CSRF token validation failed"),
                    headers=headers,
                )

        return GatewayDecision(headers=headers)

    def requires_csrf(self, ctx: RequestContext) -> bool:
        """Authenticated, state-changing requests outside the exempt list."""
        return (
            ctx.user_id is not None
            and ctx.is_state_changing
            and ctx.path not in self.csrf_exempt_paths
        )
