"""
Request Defense Gateway — User-Agent description.

Server-side best guess at browser, OS and device class, used to fill
device attributes a client left blank.
"""

from __future__ import annotations

import re
from typing import Optional

# Order matters: Edge and Opera UAs also contain "Chrome/", Chrome contains "Safari".
_BROWSERS = [
    ("Edge", re.compile(r"Edg(?:e|A|iOS)?/([0-9.]+)")),
    ("Opera", re.compile(r"OPR/([0-9.]+)")),
    ("Firefox", re.compile(r"Firefox/([0-9.]+)")),
    ("Chrome", re.compile(r"Chrome/([0-9.]+)")),
    ("Safari", re.compile(r"Version/([0-9.]+).*Safari")),
    ("Internet Explorer", re.compile(r"MSIE ([0-9.]+)")),
]

_OPERATING_SYSTEMS = [
    ("Windows", re.compile(r"Windows NT ([0-9.]+)")),
    ("iOS", re.compile(r"(?:iPhone|iPad|iPod).*? OS ([0-9_]+)")),
    ("Android", re.compile(r"Android ([0-9.]+)")),
    ("macOS", re.compile(r"Mac OS X ([0-9_.]+)")),
    ("Linux", re.compile(r"Linux")),
]

_VENDORS = [
    ("Apple", re.compile(r"iPhone|iPad|iPod|Macintosh")),
    ("Samsung", re.compile(r"Samsung|SM-[A-Z0-9]+")),
    ("Google", re.compile(r"Pixel")),
    ("Huawei", re.compile(r"Huawei", re.I)),
    ("Xiaomi", re.compile(r"Xiaomi|Redmi|Mi\s")),
    ("OnePlus", re.compile(r"OnePlus")),
]

_TABLET = re.compile(r"iPad|Android(?!.*Mobile)", re.I)
_MOBILE = re.compile(r"Android|webOS|iPhone|iPod|BlackBerry|IEMobile|Opera Mini", re.I)


def describe_user_agent(user_agent: Optional[str]) -> dict[str, str]:
    """Return browser / OS / device fields parsed from a user agent."""
    ua = user_agent or ""
    browser, browser_version = _first_match(_BROWSERS, ua)
    os_name, os_version = _first_match(_OPERATING_SYSTEMS, ua)
    info = {
        "browser": browser,
        "browser_version": browser_version,
        "os": os_name,
        "os_version": os_version.replace("_", "."),
        "device_type": _device_type(ua),
    }
    for vendor, pattern in _VENDORS:
        if pattern.search(ua):
            info["device_vendor"] = vendor
            break
    return info


def _first_match(patterns, ua: str) -> tuple[str, str]:
    for name, pattern in patterns:
        match = pattern.search(ua)
        if match:
            version = match.group(1) if match.groups() else "Unknown"
            return name, version
    return "Unknown", "0.0"


def _device_type(ua: str) -> str:
    if _TABLET.search(ua):
        return "tablet"
    if _MOBILE.search(ua):
        return "mobile"
    return "desktop"
