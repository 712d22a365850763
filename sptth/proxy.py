"""HTTPS reverse proxy routing requests by Host header."""

from __future__ import annotations

import asyncio
import ssl
from dataclasses import dataclass
from typing import Mapping

import aiohttp
from aiohttp import web

from sptth import log
from sptth.config import ProxyConfig

MAX_REQUEST_BODY_BYTES = 10 * 1024 * 1024
MAX_RESPONSE_BODY_BYTES = 10 * 1024 * 1024
UPSTREAM_CONNECT_TIMEOUT = 5.0
UPSTREAM_REQUEST_TIMEOUT = 30.0
TLS_HANDSHAKE_TIMEOUT = 10.0
MAX_CONCURRENT_CONNECTIONS = 512

_HOP_BY_HOP = frozenset(
    {
        "connection",
        "proxy-connection",
        "keep-alive",
        "te",
        "trailer",
        "upgrade",
        "transfer-encoding",
    }
)

ROUTES_KEY = web.AppKey("routes", dict)
SESSION_KEY = web.AppKey("session", aiohttp.ClientSession)


@dataclass(frozen=True)
class ProxyRoute:
    domain: str
    upstream_host_port: str
    base_url: str


def build_routes(proxies: list[ProxyConfig]) -> dict[str, ProxyRoute]:
    """Map each proxy domain to its upstream route."""
    return {
        p.domain: ProxyRoute(p.domain, p.upstream_host_port, p.base_url()) for p in proxies
    }


def create_app(routes: Mapping[str, ProxyRoute]) -> web.Application:
    """Create the web application that sends every path to ``proxy_handler``."""
    app = web.Application(client_max_size=MAX_REQUEST_BODY_BYTES)
    app[ROUTES_KEY] = dict(routes)

    async def session_ctx(app: web.Application):
        timeout = aiohttp.ClientTimeout(
            total=UPSTREAM_REQUEST_TIMEOUT, connect=UPSTREAM_CONNECT_TIMEOUT
        )
        async with aiohttp.ClientSession(
            timeout=timeout, auto_decompress=False
        ) as session:
            app[SESSION_KEY] = session
            yield

    app.cleanup_ctx.append(session_ctx)
    app.router.add_route("*", "/{path:.*}", proxy_handler)
    return app


async def proxy_handler(request: web.Request) -> web.StreamResponse:
    """Route a request to the upstream configured for its Host."""
    incoming_host = request.headers.get("host", "")
    host = normalize_host(incoming_host)
    route = request.app[ROUTES_KEY].get(host)
    if route is None:
        log.error("PROXY", f"no upstream configured for host={host}")
        return web.Response(status=502, text="no upstream configured for host")

    log.info(
        "PROXY",
        f"route host={incoming_host} domain={route.domain} upstream={route.upstream_host_port}",
    )
    log.debug(
        "PROXY", f"request method={request.method} host={host} path={request.path_qs}"
    )
    try:
        response = await forward(request.app[SESSION_KEY], request, route.base_url)
    except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
        log.error("PROXY", f"upstream request failed: {exc}")
        return web.Response(status=502, text="proxy request failed")
    log.debug("PROXY", f"response status={response.status} host={host}")
    return response


async def _read_limited(stream, limit: int) -> bytes | None:
    chunks = bytearray()
    async for chunk in stream.iter_chunked(65536):
        chunks.extend(chunk)
        if len(chunks) > limit:
            return None
    return bytes(chunks)


async def forward(
    session: aiohttp.ClientSession, request: web.Request, base_url: str
) -> web.Response:
    """Send ``request`` to the upstream and build the client response."""
    target = build_target_url(base_url, request.rel_url.raw_path_qs)
    body = await _read_limited(request.content, MAX_REQUEST_BODY_BYTES)
    if body is None:
        log.error("PROXY", f"request body exceeds {MAX_REQUEST_BODY_BYTES} bytes limit")
        return web.Response(status=413, text="request body too large")

    headers = [
        (name, value)
        for name, value in request.headers.items()
        if name.lower() != "host" and not is_hop_by_hop(name)
    ]
    async with session.request(
        request.method, target, headers=headers, data=body, allow_redirects=False
    ) as upstream:
        too_large = web.Response(status=502, text="upstream response body too large")
        if (upstream.content_length or 0) > MAX_RESPONSE_BODY_BYTES:
            return too_large
        data = await _read_limited(upstream.content, MAX_RESPONSE_BODY_BYTES)
        if data is None:
            return too_large
        response = web.Response(status=upstream.status, body=data)
        response.headers.clear()
        for name, value in upstream.headers.items():
            if not is_hop_by_hop(name) and name.lower() != "content-length":
                response.headers.add(name, value)
        return response


async def run(proxies: list[ProxyConfig], ssl_context: ssl.SSLContext) -> None:
    """Serve the HTTPS proxy on the shared listen address until cancelled."""
    if not proxies:
        raise ValueError("at least one proxy config required")
    host, port = proxies[0].listen
    app = create_app(build_routes(proxies))
    runner = web.AppRunner(app)
    await runner.setup()
    try:
        site = web.TCPSite(
            runner,
            host,
            port,
            ssl_context=ssl_context,
            backlog=MAX_CONCURRENT_CONNECTIONS,
        )
        try:
            await site.start()
        except OSError as exc:
            listen = f"[{host}]:{port}" if ":" in host else f"{host}:{port}"
            raise OSError(f"failed to bind proxy socket {listen}") from exc
        log.info("PROXY", f"https proxy listening on {host}:{port}")
        await asyncio.Event().wait()
    finally:
        await runner.cleanup()


def build_target_url(base_url: str, path_and_query: str) -> str:
    """Join the upstream base URL with the request path and query."""
    return f"{base_url.rstrip('/')}{path_and_query or '/'}"


def normalize_host(raw: str) -> str:
    """Reduce a Host header value to a route key without port."""
    host = raw.strip().rstrip(".")
    if not host:
        return ""
    if host.startswith("[") and "]" in host:
        return host[1 : host.index("]")].lower()
    name, sep, _ = host.rpartition(":")
    if sep and name and ":" not in name:
        return name.lower()
    return host.lower()


def is_hop_by_hop(name: str) -> bool:
    """Return whether a header is connection-specific."""
    return name.lower() in _HOP_BY_HOP