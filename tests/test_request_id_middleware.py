import httpx
import pytest
from fastapi import FastAPI

from api.middleware.request_id import RequestIDMiddleware, get_client_ip


def _app(trusted: list) -> FastAPI:
    app = FastAPI()
    app.add_middleware(RequestIDMiddleware, trusted_proxies=trusted)

    @app.get("/ip")
    async def ip():
        return {"ip": get_client_ip()}

    return app


async def _get_ip(app: FastAPI, headers: dict) -> httpx.Response:
    transport = httpx.ASGITransport(app=app, client=("10.0.0.5", 4321))
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        return await client.get("/ip", headers=headers)


@pytest.mark.asyncio
async def test_forwarded_header_ignored_from_untrusted_peer():
    resp = await _get_ip(_app([]), {"X-Forwarded-For": "203.0.113.9"})
    assert resp.json()["ip"] == "10.0.0.5"
    assert resp.headers["X-Request-ID"]


@pytest.mark.asyncio
async def test_forwarded_header_used_behind_trusted_proxy():
    resp = await _get_ip(
        _app(["10.0.0.0/8"]),
        {"X-Forwarded-For": "198.51.100.7, 10.0.0.9", "X-Request-ID": "req-1"},
    )
    assert resp.json()["ip"] == "198.51.100.7"
    assert resp.headers["X-Request-ID"] == "req-1"
