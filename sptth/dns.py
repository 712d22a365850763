"""DNS request handling: local records first, otherwise forwarding upstream."""

from __future__ import annotations

import asyncio
import socket
import time
from collections.abc import Mapping, Sequence

import dns.exception
import dns.flags
import dns.message
import dns.name
import dns.rcode
import dns.rdata
import dns.rdataclass
import dns.rdatatype
import dns.rrset

from sptth import log
from sptth.config import DomainAddrs, SocketAddr, normalize_domain

_FORWARD_TIMEOUT = 2.0
_RECV_SIZE = 4096


class DnsError(RuntimeError):
    """Raised when a DNS request cannot be answered."""


def _fmt_addr(addr: SocketAddr) -> str:
    host, port = addr[0], addr[1]
    return f"[{host}]:{port}" if ":" in host else f"{host}:{port}"


def _type_name(qtype: int) -> str:
    return dns.rdatatype.to_text(qtype)


async def handle_dns_packet(
    packet: bytes,
    peer: SocketAddr,
    records: Mapping[str, DomainAddrs],
    upstream: Sequence[SocketAddr],
    ttl: int,
) -> bytes:
    """Answer ``packet`` from local records or by forwarding it upstream."""
    try:
        request = dns.message.from_wire(packet)
    except (dns.exception.DNSException, ValueError) as exc:
        raise DnsError("invalid dns request packet") from exc
    if not request.question:
        raise DnsError("dns query is empty")
    query = request.question[0]

    qname = normalize_domain(query.name.to_text())
    qtype = query.rdtype
    log.debug(
        "DNS",
        f"query id={request.id} from={_fmt_addr(peer)} name={qname} type={_type_name(qtype)}",
    )

    addrs = records.get(qname)
    # Local records take priority so dev domains route deterministically.
    if addrs is not None and qtype in (
        dns.rdatatype.A,
        dns.rdatatype.AAAA,
        dns.rdatatype.ANY,
    ):
        return local_response(request, query, qname, qtype, ttl, addrs)

    log.debug("DNS", f"forward id={request.id} name={qname} to upstream")
    return await forward_dns_packet(packet, request.id, qname, qtype, upstream)


def local_response(
    request: dns.message.Message,
    query: dns.rrset.RRset,
    qname: str,
    qtype: int,
    ttl: int,
    addrs: DomainAddrs,
) -> bytes:
    """Build an authoritative answer from local addresses."""
    response = dns.message.Message(id=request.id)
    response.set_opcode(request.opcode())
    flags = dns.flags.QR | dns.flags.RA | dns.flags.AA
    if request.flags & dns.flags.RD:
        flags |= dns.flags.RD
    response.flags = flags
    response.set_rcode(dns.rcode.NOERROR)
    response.question.append(
        dns.rrset.RRset(query.name, query.rdclass, query.rdtype)
    )

    try:
        name = dns.name.from_text(qname or ".")
    except dns.exception.DNSException as exc:
        raise DnsError(f"invalid query name: {qname}") from exc

    def add(rdtype: int, addresses: list) -> None:
        for address in addresses:
            log.info("DNS", f"resolve name={qname} address={address}")
            rrset = dns.rrset.RRset(name, dns.rdataclass.IN, rdtype)
            rrset.update_ttl(ttl)
            rrset.add(dns.rdata.from_text(dns.rdataclass.IN, rdtype, str(address)))
            response.answer.append(rrset)

    if qtype in (dns.rdatatype.A, dns.rdatatype.ANY):
        add(dns.rdatatype.A, addrs.ipv4)
    if qtype in (dns.rdatatype.AAAA, dns.rdatatype.ANY):
        add(dns.rdatatype.AAAA, addrs.ipv6)

    try:
        return response.to_wire()
    except dns.exception.DNSException as exc:
        raise DnsError("failed to encode dns response") from exc


def is_valid_source(source: SocketAddr, expected: SocketAddr) -> bool:
    """Return whether a response came from exactly the expected server."""
    return (str(source[0]), int(source[1])) == (str(expected[0]), int(expected[1]))


class _Receiver(asyncio.DatagramProtocol):
    def __init__(self) -> None:
        self.queue: asyncio.Queue = asyncio.Queue()

    def datagram_received(self, data: bytes, addr) -> None:
        self.queue.put_nowait((data, (addr[0], addr[1])))

    def error_received(self, exc: Exception) -> None:
        self.queue.put_nowait(exc)


async def forward_dns_packet(
    packet: bytes,
    query_id: int,
    qname: str,
    qtype: int,
    upstream: Sequence[SocketAddr],
) -> bytes:
    """Send ``packet`` to each upstream in order until one answers."""
    loop = asyncio.get_running_loop()
    for server in upstream:
        server_text = _fmt_addr(server)
        log.debug(
            "DNS",
            f"forward try id={query_id} name={qname} type={_type_name(qtype)} "
            f"upstream={server_text}",
        )
        family = socket.AF_INET6 if ":" in server[0] else socket.AF_INET
        local = ("::", 0) if family == socket.AF_INET6 else ("0.0.0.0", 0)
        try:
            transport, protocol = await loop.create_datagram_endpoint(
                _Receiver, local_addr=local, family=family
            )
        except OSError as exc:
            raise DnsError("failed to bind temporary dns socket") from exc
        try:
            try:
                transport.sendto(packet, (server[0], server[1]))
            except OSError as exc:
                raise DnsError(f"failed to forward dns query to {server_text}") from exc

            deadline = time.monotonic() + _FORWARD_TIMEOUT
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    log.error("DNS", f"forward timeout id={query_id} upstream={server_text}")
                    break
                try:
                    item = await asyncio.wait_for(protocol.queue.get(), remaining)
                except asyncio.TimeoutError:
                    log.error("DNS", f"forward timeout id={query_id} upstream={server_text}")
                    break
                if isinstance(item, Exception):
                    log.error(
                        "DNS",
                        f"forward recv error id={query_id} upstream={server_text} err={item}",
                    )
                    break
                data, source = item
                if is_valid_source(source, server):
                    log.debug(
                        "DNS",
                        f"forward success id={query_id} upstream={_fmt_addr(source)} "
                        f"bytes={len(data)}",
                    )
                    return data[:_RECV_SIZE]
                # Drop packets from unexpected sources to resist spoofing.
                log.debug(
                    "DNS",
                    f"forward ignored id={query_id} from={_fmt_addr(source)} "
                    f"expected={server_text}",
                )
        finally:
            transport.close()

    raise DnsError("all upstream dns servers failed")