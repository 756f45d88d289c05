"""
Request Defense Gateway — Rate-limit Policy Engine.

Named rate-limit policies matched against request path and method.
Built-in defaults cover the gateway's own endpoints and the upstream
routes it protects; YAML files can add policies or replace defaults by
name.

    policies:
      - name: "messages"
        match:
          path: "/api/messages*"
          method: "POST"
        limit: "20/minute"
        key: user
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Any, Optional

import yaml

logger = logging.getLogger("gateway.rules")

_RATE_RE = re.compile(r"^\s*(\d+)\s*/\s*(\d*)\s*(second|minute|hour|day)s?\s*$", re.I)
_UNIT_SECONDS = {"second": 1, "minute": 60, "hour": 3600, "day": 86400}


class KeyKind(str, Enum):
    """What a policy counts requests by."""
    IP = "ip"
    IP_ROUTE = "ip_route"
    USER = "user"  # falls back to IP for anonymous requests


@dataclass(frozen=True)
class Policy:
    """A named (window, limit) pair applied to matching requests."""
    name: str
    max_requests: int
    window_sec: int
    match_path: Optional[str] = None
    match_method: Optional[str] = None
    key: KeyKind = KeyKind.IP
    enabled: bool = True

    @property
    def window_ms(self) -> int:
        return self.window_sec * 1000

    def client_key(self, ip: str, path: str, user_id: Optional[str] = None) -> str:
        if self.key == KeyKind.IP_ROUTE:
            return f"{ip}:{path}"
        if self.key == KeyKind.USER and user_id:
            return f"user:{user_id}"
        return ip


def parse_rate_string(rate_str: str) -> tuple[int, int]:
    """
    Parse '30/minute', '5/15minute' or '3/hour' into (count, window_seconds).
    """
    match = _RATE_RE.match(rate_str)
    if not match:
        raise ValueError(f"Invalid rate string: {rate_str!r}")
    count = int(match.group(1))
    multiplier = int(match.group(2) or 1)
    window = multiplier * _UNIT_SECONDS[match.group(3).lower()]
    if count < 1 or window < 1:
        raise ValueError(f"Rate must allow at least one request per window: {rate_str!r}")
    return count, window


def _policy(name: str, path: str, method: str, rate: str, key: KeyKind = KeyKind.IP) -> Policy:
    count, window = parse_rate_string(rate)
    return Policy(name, count, window, match_path=path, match_method=method, key=key)


DEFAULT_POLICIES: list[Policy] = [
    _policy("ip-api", "/api/ip", "GET", "30/minute"),
    _policy("csrf-token", "/api/csrf-token", "GET", "10/minute"),
    _policy("device-activity", "/api/device-tracking/activity", "POST", "10/minute"),
    _policy("device-check", "/api/device-tracking/check-returning", "POST", "30/minute"),
    _policy("auth", "/api/auth/*", "POST", "5/15minute"),
    _policy("email", "/api/send-email*", "POST", "3/hour"),
    _policy("messages", "/api/messages*", "POST", "20/minute", key=KeyKind.USER),
]


class PolicyEngine:
    """Holds the active policies and matches requests against them."""

    def __init__(self, defaults: Optional[list[Policy]] = None) -> None:
        self._policies: dict[str, Policy] = {
            p.name: p for p in (DEFAULT_POLICIES if defaults is None else defaults)
        }

    @property
    def policies(self) -> list[Policy]:
        return list(self._policies.values())

    def get(self, name: str) -> Optional[Policy]:
        return self._policies.get(name)

    def add(self, policy: Policy) -> None:
        """Add a policy, replacing any existing one with the same name."""
        self._policies[policy.name] = policy

    def load_from_directory(self, policies_dir: str) -> int:
        """Load all YAML files from the directory. Returns count loaded."""
        directory = Path(policies_dir)
        if not directory.exists():
            logger.info("Policies directory not found: %s, using defaults", directory)
            return 0

        loaded = 0
        paths = sorted(directory.glob("*.yml")) + sorted(directory.glob("*.yaml"))
        for path in paths:
            try:
                self._load_file(path)
                loaded += 1
            except (OSError, ValueError, KeyError, TypeError, yaml.YAMLError):
                logger.exception("Failed to load policy file: %s", path)

        logger.info("Loaded %d policy file(s) from %s", loaded, directory)
        return loaded

    def match_request(self, path: str, method: str) -> list[Policy]:
        """Return all enabled policies matching the path and method, in order."""
        matched: list[Policy] = []
        for policy in self._policies.values():
            if not policy.enabled:
                continue
            if policy.match_path and not self._path_matches(path, policy.match_path):
                continue
            if policy.match_method and policy.match_method.upper() != method.upper():
                continue
            matched.append(policy)
        return matched

    # ── Internal ─────────────────────────────────────────

    def _load_file(self, path: Path) -> None:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)

        if not data or "policies" not in data:
            return

        for raw in data["policies"]:
            policy = self._parse_policy(raw)
            self.add(policy)
            logger.debug("Loaded policy: %s", policy.name)

    def _parse_policy(self, raw: dict[str, Any]) -> Policy:
        name = raw["name"]
        existing = self._policies.get(name)
        match = raw.get("match") or {}

        if existing is not None and "limit" not in raw:
            # Partial override of a built-in (e.g. just `enabled: false`)
            return replace(
                existing,
                match_path=match.get("path", existing.match_path),
                match_method=match.get("method", existing.match_method),
                key=KeyKind(raw.get("key", existing.key)),
                enabled=raw.get("enabled", existing.enabled),
            )

        count, window = parse_rate_string(raw["limit"])
        return Policy(
            name=name,
            max_requests=count,
            window_sec=window,
            match_path=match.get("path"),
            match_method=match.get("method"),
            key=KeyKind(raw.get("key", KeyKind.IP)),
            enabled=raw.get("enabled", True),
        )

    @staticmethod
    def _path_matches(request_path: str, policy_path: str) -> bool:
        """Simple prefix / exact path matching."""
        if policy_path.endswith("*"):
            return request_path.startswith(policy_path[:-1])
        return request_path == policy_path
