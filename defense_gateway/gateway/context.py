"""
Request Defense Gateway — Request identity.

The attributes the defense components share about one inbound request.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import Request

SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS", "TRACE"})


@dataclass(frozen=True)
class RequestContext:
    ip: str
    method: str
    path: str
    user_id: Optional[str] = None   # only ever from a verified credential
    csrf_token: Optional[str] = None
    user_agent: str = ""

    @property
    def is_state_changing(self) -> bool:
        return self.method.upper() not in SAFE_METHODS


def get_client_ip(request: Request, trust_forwarded: bool = False) -> str:
    """Client IP; X-Forwarded-For / X-Real-IP are honoured only when trusted."""
    if trust_forwarded:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            first = forwarded.split(",")[0].strip()
            if first:
                return first
        real_ip = request.headers.get("x-real-ip")
        if real_ip:
            return real_ip.strip()
    return request.client.host if request.client else "unknown"
