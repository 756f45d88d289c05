"""
Request Defense Gateway — Application Entry Point.

Wires the key-value store, rate limiter, CSRF guard, fingerprint registry
and security monitor into one FastAPI application, guarded by the
defense and security-header middlewares.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from defense_gateway.alerts.dispatcher import AlertManager
from defense_gateway.api.device_tracking import router as device_tracking_router
from defense_gateway.api.routes import router as api_router
from defense_gateway.config import Settings, StoreBackend, settings
from defense_gateway.gateway.context import get_client_ip
from defense_gateway.gateway.middleware import DefenseMiddleware, error_response
from defense_gateway.gateway.orchestrator import RequestDefenseGateway
from defense_gateway.geoip import lookup as geoip
from defense_gateway.mitigation.csrf import CSRFGuard
from defense_gateway.mitigation.rate_limiter import RateLimiter
from defense_gateway.proxy.handler import close_http_client, router as proxy_router
from defense_gateway.rules.engine import PolicyEngine
from defense_gateway.security.headers import SecurityHeadersMiddleware
from defense_gateway.security.monitor import SecurityEvent, SecurityEventType, SecurityMonitor
from defense_gateway.storage.database import build_engine, build_session_factory, init_db
from defense_gateway.storage.kv import KeyValueStore, MemoryStore, RedisStore
from defense_gateway.storage.redis_client import redis_manager
from defense_gateway.tracking.registry import EngagementPolicy, FingerprintRegistry

logger = logging.getLogger("gateway")

VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup / shutdown lifecycle."""
    cfg: Settings = app.state.settings

    # ── Startup ──────────────────────────────────────────
    logging.basicConfig(
        level=getattr(logging, cfg.log_level.upper()),
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        force=True,
    )
    logger.info("Request Defense Gateway v%s starting", VERSION)

    if cfg.store_backend == StoreBackend.REDIS:
        # Rate limits fail open and CSRF fails closed while Redis is down.
        try:
            await redis_manager.connect(cfg.redis_url)
            logger.info("Redis connected: %s", cfg.redis_url)
        except Exception as exc:
            logger.warning(
                "Redis unavailable (%s): rate limits are not enforced and "
                "CSRF validation will reject state-changing requests.",
                exc,
            )
    else:
        logger.info("Using in-memory store: rate limits are per instance")

    await init_db(app.state.engine)
    logger.info("Database initialised")

    geoip_ok = geoip.init_geoip(cfg.geoip_db_path)
    logger.info("GeoIP: %s", "MaxMind DB loaded" if geoip_ok else "disabled")

    logger.info(
        "Loaded %d rate-limit policies", len(app.state.gateway.policies.policies),
    )
    if cfg.upstream_url:
        logger.info("Forwarding screened traffic to %s", cfg.upstream_url)

    yield

    # ── Shutdown ─────────────────────────────────────────
    await app.state.gateway.monitor.drain()
    await close_http_client()
    await redis_manager.disconnect()
    geoip.close()
    await app.state.engine.dispose()
    logger.info("Request Defense Gateway stopped.")


def build_store(cfg: Settings) -> KeyValueStore:
    if cfg.store_backend == StoreBackend.REDIS:
        return RedisStore(redis_manager)
    return MemoryStore()


def build_gateway(cfg: Settings, session_factory) -> RequestDefenseGateway:
    """Assemble the defense pipeline from settings."""
    store = build_store(cfg)

    policies = PolicyEngine()
    policies.load_from_directory(cfg.policies_dir)

    registry = FingerprintRegistry(
        session_factory,
        scope=cfg.returning_device_scope,
        engagement=EngagementPolicy(
            window_days=cfg.engagement_window_days,
            high_threshold=cfg.engagement_high_threshold,
            medium_threshold=cfg.engagement_medium_threshold,
        ),
        recent_limit=cfg.recent_sessions_limit,
        locate=geoip.locate,
    )
    monitor = SecurityMonitor(
        session_factory=session_factory,
        alert_manager=AlertManager.from_settings(cfg),
        max_events=cfg.security_event_buffer,
        alert_cooldown_ms=cfg.alert_cooldown_sec * 1000,
    )
    return RequestDefenseGateway(
        policies=policies,
        rate_limiter=RateLimiter(store),
        csrf_guard=CSRFGuard(
            store,
            ttl_ms=cfg.csrf_token_ttl_ms,
            max_tokens_per_subject=cfg.csrf_max_tokens_per_subject,
        ),
        registry=registry,
        monitor=monitor,
        csrf_exempt_paths=cfg.csrf_exempt_paths,
    )


def create_app(cfg: Optional[Settings] = None) -> FastAPI:
    """Factory for the FastAPI application."""
    cfg = cfg or settings
    app = FastAPI(
        title=cfg.app_name,
        version=VERSION,
        description="Rate limiting, CSRF protection and device tracking gateway",
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json",
        lifespan=lifespan,
    )

    engine = build_engine(cfg.database_url)
    session_factory = build_session_factory(engine)
    gateway = build_gateway(cfg, session_factory)

    app.state.settings = cfg
    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.gateway = gateway

    # ── Middleware (last added runs first) ───────────────
    app.add_middleware(DefenseMiddleware, gateway=gateway, cfg=cfg)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Retry-After", "X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset"],
    )
    app.add_middleware(SecurityHeadersMiddleware, cfg=cfg)

    # ── Error handlers ───────────────────────────────────

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        await gateway.monitor.record(SecurityEvent(
            type=SecurityEventType.VALIDATION_ERROR,
            ip=get_client_ip(request, cfg.trust_forwarded_for),
            endpoint=request.url.path,
            user_agent=request.headers.get("user-agent"),
            details={"errors": len(exc.errors())},
        ))
        return JSONResponse({"error": "Invalid request body"}, status_code=400)

    # ── Routers ──────────────────────────────────────────
    app.include_router(api_router, prefix="/api")
    app.include_router(device_tracking_router, prefix="/api")

    # Catch-all forwarder, must be last
    if cfg.upstream_url:
        app.include_router(proxy_router)

    return app


app = create_app()

if __name__ == "__main__":
    uvicorn.run(
        "defense_gateway.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level,
    )
