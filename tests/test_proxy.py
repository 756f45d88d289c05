"""
Tests for the upstream forwarder.
"""

import httpx
import pytest
from httpx import ASGITransport, AsyncClient

from defense_gateway.config import Settings
from defense_gateway.main import create_app
from defense_gateway.proxy import handler


@pytest.fixture
def cfg(tmp_path):
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path}/proxy.db",
        policies_dir=str(tmp_path / "no-policies"),
        upstream_url="http://upstream.local",
    )


@pytest.fixture
async def client(cfg):
    app = create_app(cfg)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    await handler.close_http_client()
    await app.state.engine.dispose()


@pytest.mark.asyncio
async def test_forwards_to_upstream(client):
    seen = {}

    def upstream(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["forwarded_for"] = request.headers.get("x-forwarded-for")
        return httpx.Response(200, json={"ok": True}, headers={"Connection": "close"})

    handler._http_client = httpx.AsyncClient(
        base_url="http://upstream.local", transport=httpx.MockTransport(upstream),
    )

    resp = await client.get("/hello", headers={"X-Forwarded-For": "203.0.113.77"})
    assert resp.status_code == 200
    assert resp.json() == {"ok": True}
    assert seen["path"] == "/hello"
    assert seen["forwarded_for"].startswith("203.0.113.77")
    assert resp.headers["X-Content-Type-Options"] == "nosniff"


@pytest.mark.asyncio
async def test_upstream_unreachable_is_502(client):
    def upstream(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    handler._http_client = httpx.AsyncClient(
        base_url="http://upstream.local", transport=httpx.MockTransport(upstream),
    )

    resp = await client.get("/hello")
    assert resp.status_code == 502


@pytest.mark.asyncio
async def test_gateway_paths_not_forwarded(client):
    resp = await client.get("/api/unknown")
    assert resp.status_code == 404
    assert resp.json() == {"error": "Not found"}
    assert resp.headers["X-Content-Type-Options"] == "nosniff"
