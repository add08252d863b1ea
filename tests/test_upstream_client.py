# tests/test_upstream_client.py
import asyncio
import logging
import ssl
from unittest.mock import patch

import httpx
import pytest

from config import Config
from proxy_common import ConnectionErrorKind, UpstreamConnectionError
from upstream_client import UpstreamClient, build_ssl_verify

BACKEND = "http://backend.internal:3000"


def make_client(handler, **overrides) -> UpstreamClient:
    settings = {"backend_url": BACKEND, "connect_timeout": 0.05, "total_timeout": 0.2}
    settings.update(overrides)
    return UpstreamClient(Config(**settings), transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_forward_returns_status_headers_and_body():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["url"] = str(request.url)
        seen["body"] = request.content
        seen["headers"] = request.headers
        return httpx.Response(
            201, headers=[("X-Trace", "abc"), ("Set-Cookie", "a=1"), ("Set-Cookie", "b=2")],
            content=b'{"id":7}'
        )

    async with make_client(handler) as client:
        resp = await client.forward(
            "POST", f"{BACKEND}/api/orders?x=1",
            httpx.Headers({"Content-Type": "application/json", "X-Real-IP": "1.2.3.4"}),
            b'{"qty":1}'
        )

    assert seen["method"] == "POST"
    assert seen["url"] == f"{BACKEND}/api/orders?x=1"
    assert seen["body"] == b'{"qty":1}'
    assert seen["headers"]["x-real-ip"] == "1.2.3.4"
    assert resp.status_code == 201
    assert resp.body == b'{"id":7}'
    assert resp.headers.get_list("set-cookie") == ["a=1", "b=2"]


@pytest.mark.asyncio
async def test_only_forwarded_headers_reach_backend():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["headers"] = request.headers
        return httpx.Response(204)

    async with make_client(handler) as client:
        await client.forward(
            "GET", f"{BACKEND}/x",
            httpx.Headers({"Authorization": "Bearer t", "X-Forwarded-For": "1.2.3.4"})
        )

    names = sorted(k.lower() for k in seen["headers"].keys())
    assert names == ["authorization", "host", "x-forwarded-for"]


@pytest.mark.asyncio
async def test_browser_user_agent_is_kept():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["ua"] = request.headers.get_list("user-agent")
        return httpx.Response(200)

    async with make_client(handler) as client:
        await client.forward("GET", f"{BACKEND}/", httpx.Headers({"User-Agent": "Mozilla/5.0"}))
    assert seen["ua"] == ["Mozilla/5.0"]


@pytest.mark.asyncio
async def test_body_is_byte_identical():
    blob = bytes(range(256)) * 4

    async with make_client(lambda r: httpx.Response(200, content=blob)) as client:
        resp = await client.forward("GET", f"{BACKEND}/blob", httpx.Headers())
    assert resp.body == blob


@pytest.mark.asyncio
async def test_refused_connection_is_unreachable():
    def handler(request):
        raise httpx.ConnectError("Connection refused", request=request)

    async with make_client(handler) as client:
        with pytest.raises(UpstreamConnectionError) as exc_info:
            await client.forward("GET", f"{BACKEND}/", httpx.Headers())
    assert exc_info.value.kind is ConnectionErrorKind.UNREACHABLE
    assert exc_info.value.message == "Connection refused"


@pytest.mark.asyncio
async def test_reset_is_unreachable():
    def handler(request):
        raise httpx.ReadError("Connection reset by peer", request=request)

    async with make_client(handler) as client:
        with pytest.raises(UpstreamConnectionError) as exc_info:
            await client.forward("GET", f"{BACKEND}/", httpx.Headers())
    assert exc_info.value.kind is ConnectionErrorKind.UNREACHABLE


@pytest.mark.asyncio
async def test_connect_timeout_is_timeout():
    def handler(request):
        raise httpx.ConnectTimeout("timed out connecting", request=request)

    async with make_client(handler) as client:
        with pytest.raises(UpstreamConnectionError) as exc_info:
            await client.forward("GET", f"{BACKEND}/", httpx.Headers())
    assert exc_info.value.kind is ConnectionErrorKind.TIMEOUT


@pytest.mark.asyncio
async def test_total_timeout_bounds_slow_backend():
    async def handler(request):
        await asyncio.sleep(5)
        return httpx.Response(200)

    async with make_client(handler, total_timeout=0.1) as client:
        loop = asyncio.get_running_loop()
        started = loop.time()
        with pytest.raises(UpstreamConnectionError) as exc_info:
            await client.forward("GET", f"{BACKEND}/slow", httpx.Headers())
        elapsed = loop.time() - started

    assert exc_info.value.kind is ConnectionErrorKind.TIMEOUT
    assert "0.1" in exc_info.value.message
    assert elapsed < 2


@pytest.mark.asyncio
async def test_same_origin_redirect_is_followed():
    def handler(request):
        if request.url.path == "/old":
            return httpx.Response(302, headers={"Location": "/new"})
        return httpx.Response(200, content=b"moved here")

    async with make_client(handler) as client:
        resp = await client.forward("GET", f"{BACKEND}/old", httpx.Headers())
    assert resp.status_code == 200
    assert resp.body == b"moved here"


@pytest.mark.asyncio
async def test_off_origin_redirect_is_relayed_not_followed():
    calls = []

    def handler(request):
        calls.append(str(request.url))
        return httpx.Response(301, headers={"Location": "https://elsewhere.example/login"})

    async with make_client(handler) as client:
        resp = await client.forward("GET", f"{BACKEND}/login", httpx.Headers())
    assert resp.status_code == 301
    assert resp.headers["location"] == "https://elsewhere.example/login"
    assert calls == [f"{BACKEND}/login"]


@pytest.mark.asyncio
async def test_redirect_loop_is_bounded():
    def handler(request):
        return httpx.Response(302, headers={"Location": "/loop"})

    async with make_client(handler, max_redirects=3) as client:
        with pytest.raises(UpstreamConnectionError, match="redirects") as exc_info:
            await client.forward("GET", f"{BACKEND}/loop", httpx.Headers())
    assert exc_info.value.kind is ConnectionErrorKind.UNREACHABLE


@pytest.mark.asyncio
async def test_backend_cookies_are_not_kept_between_requests():
    cookies_seen = []

    def handler(request):
        cookies_seen.append(request.headers.get("cookie"))
        return httpx.Response(200, headers={"Set-Cookie": "session=secret; Path=/"})

    async with make_client(handler) as client:
        await client.forward("GET", f"{BACKEND}/a", httpx.Headers())
        await client.forward("GET", f"{BACKEND}/b", httpx.Headers())
    assert cookies_seen == [None, None]


def test_verification_on_by_default():
    assert build_ssl_verify(Config(backend_url="https://backend")) is True


def test_verification_opt_out_is_logged(caplog):
    with caplog.at_level(logging.WARNING, logger="UpstreamClient"):
        verify = build_ssl_verify(Config(backend_url="https://backend", verify_tls=False))
    assert verify is False
    assert "DISABLED" in caplog.text


def test_ca_bundle_builds_context():
    with patch("ssl.create_default_context") as mock_ctx:
        verify = build_ssl_verify(Config(backend_url="https://backend", ca_bundle="/etc/ca.pem"))
    mock_ctx.assert_called_once_with(cafile="/etc/ca.pem")
    assert verify is mock_ctx.return_value
