"""
Request Defense Gateway — Configuration via Pydantic Settings.

All settings are loaded from environment variables or .env file.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class StoreBackend(str, Enum):
    """Where rate windows and CSRF tokens live."""
    MEMORY = "memory"  # per-process, limits are per instance
    REDIS = "redis"    # shared across instances


class DeviceScope(str, Enum):
    """How returning-device lookups are partitioned."""
    GLOBAL = "global"  # any user's session counts
    USER = "user"      # only the asking user's sessions count


class Settings(BaseSettings):
    """Application-wide settings loaded from env / .env."""

    # ── General ──────────────────────────────────────────────
    app_name: str = "Request Defense Gateway"
    debug: bool = False
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "info"

    # ── Storage ──────────────────────────────────────────────
    database_url: str = Field(
        default="sqlite+aiosqlite:///./gateway.db",
        description="SQLAlchemy database URL for device sessions and security events",
    )
    store_backend: StoreBackend = StoreBackend.MEMORY
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis URL, used when store_backend is 'redis'",
    )

    # ── Authentication ───────────────────────────────────────
    jwt_secret: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"
    admin_role: str = "admin"

    # ── CSRF ─────────────────────────────────────────────────
    csrf_token_ttl_sec: int = Field(
        default=3600, ge=60,
        description="Lifetime of issued CSRF tokens, server- and client-side",
    )
    csrf_max_tokens_per_subject: int = Field(default=5, ge=1)
    csrf_header_name: str = "x-csrf-token"
    csrf_exempt_paths: list[str] = Field(default_factory=list)

    # ── Rate limiting ────────────────────────────────────────
    policies_dir: str = Field(
        default="policies/",
        description="Directory with YAML rate-limit policy files",
    )
    trust_forwarded_for: bool = Field(
        default=False,
        description="Take the client IP from X-Forwarded-For / X-Real-IP (only behind a trusted proxy)",
    )

    # ── Device tracking ──────────────────────────────────────
    returning_device_scope: DeviceScope = DeviceScope.GLOBAL
    engagement_window_days: int = 7
    engagement_high_threshold: int = 5
    engagement_medium_threshold: int = 2
    recent_sessions_limit: int = 10

    # ── Security events ──────────────────────────────────────
    security_event_buffer: int = 1000
    alert_cooldown_sec: int = 300

    # ── GeoIP ────────────────────────────────────────────────
    geoip_db_path: Optional[str] = Field(
        default=None, description="Path to MaxMind GeoLite2 City database",
    )

    # ── Alerts ───────────────────────────────────────────────
    telegram_bot_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None
    webhook_url: Optional[str] = None

    # ── Upstream ─────────────────────────────────────────────
    upstream_url: Optional[str] = Field(
        default=None,
        description="Application to forward non-gateway traffic to (disabled when unset)",
    )
    upstream_timeout: float = 30.0

    # ── Response headers ─────────────────────────────────────
    hsts_max_age: int = 31536000
    content_security_policy: str = (
        "default-src 'self'; frame-ancestors 'none'; object-src 'none'; base-uri 'self'"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed = {"debug", "info", "warning", "error", "critical"}
        if v.lower() not in allowed:
            raise ValueError(f"log_level must be one of {allowed}")
        return v.lower()

    @property
    def csrf_token_ttl_ms(self) -> int:
        return self.csrf_token_ttl_sec * 1000

    model_config = {
        "env_prefix": "GATEWAY_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
    }


# Singleton
settings = Settings()
