"""
Request Defense Gateway — Device Fingerprinting.

Derives a stable device identifier from client-reported attributes and
the user agent. The 32-bit rolling hash is a recognizability heuristic,
not a security credential. Identical inputs always give identical output.
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from typing import Any, Mapping, Optional

FIELD_DELIMITER = "|"
USER_AGENT_PREFIX = 50
_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


@dataclass(frozen=True)
class DeviceInfo:
    """Client-reported device attributes that feed the fingerprint."""
    browser: str = ""
    browser_version: str = ""
    os: str = ""
    os_version: str = ""
    device_type: str = ""
    screen_resolution: str = ""
    timezone: str = ""
    language: str = ""

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "DeviceInfo":
        """Build from a raw dict; unknown keys are ignored, None becomes ''."""
        values = {}
        for f in fields(cls):
            raw = data.get(f.name)
            values[f.name] = "" if raw is None else str(raw)
        return cls(**values)


def compute_fingerprint(device_info: DeviceInfo, user_agent: Optional[str] = None) -> str:
    """Deterministic base-36 fingerprint for a device."""
    material = FIELD_DELIMITER.join([
        device_info.browser + device_info.browser_version,
        device_info.os + device_info.os_version,
        device_info.device_type,
        device_info.screen_resolution,
        device_info.timezone,
        device_info.language,
        (user_agent or "")[:USER_AGENT_PREFIX],
    ])
    return _to_base36(abs(rolling_hash(material)))


def rolling_hash(text: str) -> int:
    """``h = h * 31 + unit`` over UTF-16 code units, wrapped to signed 32 bits."""
    encoded = text.encode("utf-16-le")
    h = 0
    for i in range(0, len(encoded), 2):
        unit = encoded[i] | (encoded[i + 1] << 8)
        h = ((h << 5) - h + unit) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return h


def _to_base36(n: int) -> str:
    if n == 0:
        return "0"
    digits = []
    while n:
        n, rem = divmod(n, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))
