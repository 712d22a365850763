import asyncio
from ipaddress import IPv4Address, IPv6Address

import dns.message
import dns.rdatatype
import pytest

from sptth.config import DomainAddrs
from sptth.dns import DnsError, handle_dns_packet, is_valid_source

RECORDS = {
    "example.com": DomainAddrs(
        ipv4=[IPv4Address("127.0.0.1")], ipv6=[IPv6Address("::1")]
    )
}
PEER = ("127.0.0.1", 5555)


def test_valid_source_same_ip_and_port():
    assert is_valid_source(("1.1.1.1", 53), ("1.1.1.1", 53))


def test_invalid_source_different_port():
    assert not is_valid_source(("1.1.1.1", 5353), ("1.1.1.1", 53))


def test_invalid_source_different_ip():
    assert not is_valid_source(("9.9.9.9", 53), ("1.1.1.1", 53))


def test_valid_source_ipv6():
    assert is_valid_source(("2606:4700::1111", 53), ("2606:4700::1111", 53))


def _answers(wire):
    msg = dns.message.from_wire(wire)
    return msg, [(rr.rdtype, rd.to_text()) for rr in msg.answer for rd in rr]


@pytest.mark.asyncio
async def test_local_a_answer():
    query = dns.message.make_query("Example.COM.", "A")
    wire = await handle_dns_packet(query.to_wire(), PEER, RECORDS, [], 5)
    msg, answers = _answers(wire)
    assert msg.id == query.id
    assert answers == [(dns.rdatatype.A, "127.0.0.1")]
    assert msg.answer[0].ttl == 5


@pytest.mark.asyncio
async def test_local_any_answer():
    query = dns.message.make_query("example.com.", "ANY")
    wire = await handle_dns_packet(query.to_wire(), PEER, RECORDS, [], 1)
    _, answers = _answers(wire)
    assert answers == [(dns.rdatatype.A, "127.0.0.1"), (dns.rdatatype.AAAA, "::1")]


@pytest.mark.asyncio
async def test_invalid_packet():
    with pytest.raises(DnsError, match="invalid dns request packet"):
        await handle_dns_packet(b"\x01", PEER, RECORDS, [], 1)


@pytest.mark.asyncio
async def test_forward_without_upstream_fails():
    query = dns.message.make_query("other.test.", "A")
    with pytest.raises(DnsError, match="all upstream dns servers failed"):
        await handle_dns_packet(query.to_wire(), PEER, RECORDS, [], 1)


class _Echo(asyncio.DatagramProtocol):
    def connection_made(self, transport):
        self.transport = transport

    def datagram_received(self, data, addr):
        self.transport.sendto(b"reply" + data, addr)


@pytest.mark.asyncio
async def test_forward_to_upstream():
    loop = asyncio.get_running_loop()
    transport, _ = await loop.create_datagram_endpoint(
        _Echo, local_addr=("127.0.0.1", 0)
    )
    try:
        port = transport.get_extra_info("sockname")[1]
        query = dns.message.make_query("other.test.", "A").to_wire()
        result = await handle_dns_packet(query, PEER, RECORDS, [("127.0.0.1", port)], 1)
        assert result == b"reply" + query
    finally:
        transport.close()