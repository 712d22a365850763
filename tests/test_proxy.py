import pytest
from aiohttp import web
from aiohttp.test_utils import TestClient, TestServer

from sptth.config import ProxyConfig
from sptth.proxy import (
    build_routes,
    build_target_url,
    create_app,
    is_hop_by_hop,
    normalize_host,
)


def test_normalize_host_removes_port():
    assert normalize_host("example.com:443") == "example.com"
    assert normalize_host("example.com") == "example.com"
    assert normalize_host("example.com.") == "example.com"


def test_normalize_host_ipv6():
    assert normalize_host("[::1]:443") == "::1"
    assert normalize_host("[::1]") == "::1"


def test_normalize_host_empty():
    assert normalize_host("") == ""
    assert normalize_host("   ") == ""


def test_build_target_keeps_path_and_query():
    assert build_target_url("http://localhost:3000", "/a?b=1") == "http://localhost:3000/a?b=1"


def test_hop_by_hop_headers():
    assert is_hop_by_hop("connection")
    assert is_hop_by_hop("transfer-encoding")
    assert is_hop_by_hop("keep-alive")
    assert not is_hop_by_hop("content-type")
    assert not is_hop_by_hop("host")


def test_build_routes():
    routes = build_routes([ProxyConfig("example.com", ("127.0.0.1", 443), "localhost:3000")])
    assert routes["example.com"].base_url == "http://localhost:3000"


async def _upstream_client():
    async def echo(request):
        body = await request.read()
        return web.Response(text=f"{request.path_qs}|{body.decode()}", headers={"X-Up": "1"})

    up = web.Application()
    up.router.add_route("*", "/{p:.*}", echo)
    server = TestServer(up)
    await server.start_server()
    return server


@pytest.mark.asyncio
async def test_proxies_by_host():
    upstream = await _upstream_client()
    routes = build_routes(
        [ProxyConfig("example.com", ("127.0.0.1", 443), f"127.0.0.1:{upstream.port}")]
    )
    client = TestClient(TestServer(create_app(routes)))
    await client.start_server()
    try:
        resp = await client.post("/a?b=1", data=b"hi", headers={"Host": "Example.com:443"})
        assert resp.status == 200
        assert await resp.text() == "/a?b=1|hi"
        assert resp.headers["X-Up"] == "1"

        missing = await client.get("/", headers={"Host": "other.test"})
        assert missing.status == 502
        assert await missing.text() == "no upstream configured for host"
    finally:
        await client.close()
        await upstream.close()


@pytest.mark.asyncio
async def test_oversized_body_rejected():
    routes = build_routes([ProxyConfig("example.com", ("127.0.0.1", 443), "127.0.0.1:9")])
    client = TestClient(TestServer(create_app(routes)))
    await client.start_server()
    try:
        resp = await client.post(
            "/", data=b"x" * (10 * 1024 * 1024 + 1), headers={"Host": "example.com"}
        )
        assert resp.status == 413
    finally:
        await client.close()