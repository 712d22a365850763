"""Service startup: certificates, trust store, DNS server and HTTPS proxy."""

from __future__ import annotations

import asyncio
import socket
from collections.abc import Mapping

from sptth import ca, log, proxy, tls, trust
from sptth import dns as dns_handler
from sptth.config import AppConfig, DnsConfig, DomainAddrs, SocketAddr

MAX_CONCURRENT_DNS_REQUESTS = 256


def _fmt_addr(addr: SocketAddr) -> str:
    host, port = addr[0], addr[1]
    return f"[{host}]:{port}" if ":" in host else f"{host}:{port}"


async def run(config: AppConfig) -> None:
    """Provision TLS material, then serve DNS and the proxy until one of them fails."""
    if not config.tls.enabled:
        raise RuntimeError("tls.enabled must be true in the current version")

    # Certificates must exist before the TLS listener starts.
    assets = ca.provision_certificates(config.tls, config.proxies)
    if assets.ca_created:
        # Trust is installed only when the CA is first created.
        trust.install_ca_cert(assets.ca_cert_path)
    else:
        log.info("TLS", "ca exists, trust install skipped")
    ssl_context = tls.build_server_config(assets.certs)

    tasks = [
        asyncio.create_task(run_dns(config.dns, config.records)),
        asyncio.create_task(proxy.run(config.proxies, ssl_context)),
    ]
    try:
        # DNS and proxy form one service: if either fails, stop both.
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        for task in done:
            task.result()
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


class _DnsProtocol(asyncio.DatagramProtocol):
    def __init__(self) -> None:
        self.queue: asyncio.Queue[tuple[bytes, SocketAddr]] = asyncio.Queue()

    def datagram_received(self, data: bytes, addr) -> None:
        self.queue.put_nowait((data, (addr[0], addr[1])))

    def error_received(self, exc: Exception) -> None:
        log.error("DNS", f"dns socket error: {exc}")


async def _serve_request(
    transport: asyncio.DatagramTransport,
    packet: bytes,
    peer: SocketAddr,
    records: Mapping[str, DomainAddrs],
    upstream: list[SocketAddr],
    ttl: int,
) -> None:
    peer_text = _fmt_addr(peer)
    try:
        response = await dns_handler.handle_dns_packet(packet, peer, records, upstream, ttl)
    except (dns_handler.DnsError, OSError, ValueError) as exc:
        log.error("DNS", f"request handling failed for {peer_text}: {exc}")
        return
    try:
        transport.sendto(response, peer)
    except OSError as exc:
        log.error("DNS", f"failed to send response to {peer_text}: {exc}")
        return
    log.debug("DNS", f"sent {len(response)} bytes to {peer_text}")


async def run_dns(config: DnsConfig, records: Mapping[str, DomainAddrs]) -> None:
    """Serve DNS on ``config.listen`` until cancelled."""
    loop = asyncio.get_running_loop()
    listen_text = _fmt_addr(config.listen)
    family = socket.AF_INET6 if ":" in config.listen[0] else socket.AF_INET
    try:
        transport, protocol = await loop.create_datagram_endpoint(
            _DnsProtocol, local_addr=(config.listen[0], config.listen[1]), family=family
        )
    except OSError as exc:
        raise OSError(f"failed to bind dns socket {listen_text}") from exc

    upstream = list(config.upstream)
    ttl = config.ttl_seconds
    active: set[asyncio.Task[None]] = set()
    log.info("DNS", f"dns server listening on {listen_text}")

    try:
        while True:
            packet, peer = await protocol.queue.get()
            peer_text = _fmt_addr(peer)
            log.debug("DNS", f"recv {len(packet)} bytes from {peer_text}")

            if len(active) >= MAX_CONCURRENT_DNS_REQUESTS:
                log.error(
                    "DNS",
                    f"dropping request from {peer_text}: too many concurrent requests",
                )
                continue

            # Each request runs in its own task to keep the receive loop responsive.
            task = asyncio.create_task(
                _serve_request(transport, packet, peer, records, upstream, ttl)
            )
            active.add(task)
            task.add_done_callback(active.discard)
    finally:
        for task in list(active):
            task.cancel()
        transport.close()