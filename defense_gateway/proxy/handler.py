"""
Request Defense Gateway — Upstream forwarder.

When ``upstream_url`` is configured, every request that is not a gateway
endpoint is forwarded to the protected application after the defense
middleware has screened it.
"""

from __future__ import annotations

import logging
import time
from typing import Optional

import httpx
from fastapi import APIRouter, Request, Response

from defense_gateway.config import Settings
from defense_gateway.errors import NotFound

logger = logging.getLogger("gateway.proxy")

router = APIRouter()

# Persistent async HTTP client (connection-pooled)
_http_client: Optional[httpx.AsyncClient] = None

HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
}


async def get_http_client(cfg: Settings) -> httpx.AsyncClient:
    """Lazily initialise the shared httpx async client."""
    global _http_client
    if _http_client is None or _http_client.is_closed:
        _http_client = httpx.AsyncClient(
            base_url=cfg.upstream_url,
            timeout=httpx.Timeout(cfg.upstream_timeout),
            follow_redirects=False,
            limits=httpx.Limits(
                max_connections=200,
                max_keepalive_connections=50,
            ),
        )
    return _http_client


async def close_http_client() -> None:
    global _http_client
    if _http_client is not None:
        await _http_client.aclose()
        _http_client = None


def _forward_headers(request: Request) -> dict[str, str]:
    headers = {
        k: v for k, v in request.headers.items()
        if k.lower() not in HOP_BY_HOP_HEADERS and k.lower() != "host"
    }
    peer = request.client.host if request.client else "unknown"
    prior = request.headers.get("x-forwarded-for")
    headers["x-forwarded-for"] = f"{prior}, {peer}" if prior else peer
    headers["x-forwarded-proto"] = request.url.scheme
    return headers


@router.api_route(
    "/{path:path}",
    methods=["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS", "HEAD"],
    include_in_schema=False,
)
async def forward_upstream(request: Request, path: str = "") -> Response:
    """Relay a screened request to the upstream application."""
    if request.url.path.startswith("/api/"):
        raise NotFound()

    cfg: Settings = request.app.state.settings
    url_path = f"/{path}" if path else "/"
    start = time.monotonic()

    client = await get_http_client(cfg)
    try:
        upstream_resp = await client.request(
            method=request.method,
            url=url_path,
            headers=_forward_headers(request),
            content=await request.body(),
            params=dict(request.query_params),
        )
    except httpx.RequestError as exc:
        logger.error("Upstream error on %s %s: %s", request.method, url_path, exc)
        return Response(status_code=502, content="Bad Gateway")

    logger.debug(
        "%s %s → %d (%.1fms)",
        request.method, url_path, upstream_resp.status_code,
        (time.monotonic() - start) * 1000,
    )

    resp_headers = {
        k: v for k, v in upstream_resp.headers.items()
        if k.lower() not in HOP_BY_HOP_HEADERS
        and k.lower() not in ("content-length", "content-encoding")
    }
    return Response(
        content=upstream_resp.content,
        status_code=upstream_resp.status_code,
        headers=resp_headers,
    )
