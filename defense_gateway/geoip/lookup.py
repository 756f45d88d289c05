"""
Request Defense Gateway — GeoIP Lookup.

Resolves an IP address to a ``location_info`` dict using a MaxMind
GeoLite2 City database (optional: install the
``geoip`` extra and set GATEWAY_GEOIP_DB_PATH). Without a database, or
for private / reserved addresses, lookups return None.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from ipaddress import ip_address
from typing import Optional

logger = logging.getLogger("gateway.geoip")

_reader = None  # MaxMind database reader (lazy-loaded)


@dataclass
class GeoResult:
    """Geographic location result."""
    country: str
    country_code: str  # ISO 3166-1 alpha-2, e.g. "US"
    region: Optional[str] = None
    city: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    timezone: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "country": self.country,
            "country_code": self.country_code,
            "region": self.region,
            "city": self.city,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "timezone": self.timezone,
        }


def init_geoip(db_path: str | None = None) -> bool:
    """
    Initialize GeoIP database.
    Returns True if a MaxMind DB is available.
    """
    global _reader
    if not db_path:
        logger.info("No GeoIP DB path configured, location lookups disabled")
        return False
    try:
        import geoip2.database  # type: ignore[import-untyped]
        _reader = geoip2.database.Reader(db_path)
        logger.info("GeoIP database loaded: %s", db_path)
        return True
    except Exception:
        logger.warning("Failed to load GeoIP database from %s", db_path, exc_info=True)
        return False


def lookup(ip: str) -> Optional[GeoResult]:
    """Look up geographic info for a public IP address."""
    if _reader is None or not is_public_ip(ip):
        return None
    try:
        resp = _reader.city(ip)
    except Exception:
        logger.debug("GeoIP lookup failed for %s", ip, exc_info=True)
        return None
    return GeoResult(
        country=resp.country.name or "Unknown",
        country_code=resp.country.iso_code or "XX",
        region=resp.subdivisions.most_specific.name,
        city=resp.city.name,
        latitude=resp.location.latitude,
        longitude=resp.location.longitude,
        timezone=resp.location.time_zone,
    )


def locate(ip: str) -> Optional[dict]:
    """``location_info`` dict for an IP, or None when unknown."""
    result = lookup(ip)
    return result.to_dict() if result else None


def is_public_ip(ip: str) -> bool:
    try:
        addr = ip_address(ip)
    except ValueError:
        return False
    return addr.is_global


def close() -> None:
    """Close the GeoIP database reader."""
    global _reader
    if _reader:
        _reader.close()
        _reader = None
