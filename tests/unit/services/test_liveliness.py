"""Unit tests for liveliness probes.

HTTP probes run against httpx.MockTransport; DNS probes are tested at the
wire-format level plus one round trip against a local UDP responder.
"""

from __future__ import annotations

import asyncio
import struct

import httpx
import pytest

from petrel.models.workload import DnsProbe, HttpProbe, Liveliness
from petrel.services.liveliness import HealthChecker
from petrel.services.liveliness.checker import (
    build_dns_query,
    is_positive_dns_answer,
    split_host_port,
)


def _client(status_code: int, seen: list[str] | None = None) -> httpx.AsyncClient:
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(str(request.url))
        return httpx.Response(status_code)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _reply(query_id: int, *, flags: int = 0x8180, ancount: int = 1) -> bytes:
    return struct.pack("!HHHHHH", query_id, flags, 1, ancount, 0, 0)


class TestDnsWireFormat:
    def test_build_query(self):
        query = build_dns_query("example.org.", 0x1234)

        assert query[:12] == struct.pack("!HHHHHH", 0x1234, 0x0100, 1, 0, 0, 0)
        assert query[12:] == b"\x07example\x03org\x00\x00\x01\x00\x01"

    @pytest.mark.parametrize("name", ["a" * 64, "a..b", "."])
    def test_build_query_rejects_invalid_name(self, name: str):
        with pytest.raises(ValueError):
            build_dns_query(name, 1)

    def test_positive_answer(self):
        assert is_positive_dns_answer(_reply(7), 7)

    @pytest.mark.parametrize(
        "data",
        [
            _reply(8),  # wrong id
            _reply(7, flags=0x0100),  # not a response
            _reply(7, flags=0x8183),  # NXDOMAIN
            _reply(7, ancount=0),  # no records
            b"\x00\x07",  # truncated
        ],
    )
    def test_negative_answers(self, data: bytes):
        assert not is_positive_dns_answer(data, 7)

    @pytest.mark.parametrize(
        "address,expected",
        [
            ("10.0.0.2", ("10.0.0.2", 53)),
            ("10.0.0.2:5353", ("10.0.0.2", 5353)),
            ("[fd00::2]:54", ("fd00::2", 54)),
            ("[fd00::2]", ("fd00::2", 53)),
        ],
    )
    def test_split_host_port(self, address: str, expected):
        assert split_host_port(address, 53) == expected


class TestHttpProbe:
    async def test_success_status(self):
        seen: list[str] = []
        async with _client(204, seen) as client:
            checker = HealthChecker(http_client=client)
            assert await checker.probe_http(HttpProbe(address="10.0.0.2:8080/health"))

        assert seen == ["http://10.0.0.2:8080/health"]

    async def test_error_status(self):
        async with _client(503) as client:
            checker = HealthChecker(http_client=client)
            assert not await checker.probe_http(HttpProbe(address="http://10.0.0.2"))

    async def test_connection_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            checker = HealthChecker(http_client=client)
            assert not await checker.probe_http(HttpProbe(address="10.0.0.2"))


class _Responder(asyncio.DatagramProtocol):
    def connection_made(self, transport) -> None:
        self.transport = transport

    def datagram_received(self, data: bytes, addr) -> None:
        (query_id,) = struct.unpack("!H", data[:2])
        self.transport.sendto(_reply(query_id), addr)


class TestDnsProbe:
    async def test_round_trip(self):
        loop = asyncio.get_running_loop()
        transport, _ = await loop.create_datagram_endpoint(
            _Responder, local_addr=("127.0.0.1", 0)
        )
        port = transport.get_extra_info("sockname")[1]
        try:
            checker = HealthChecker(request_timeout=1.0)
            assert await checker.probe_dns(DnsProbe(address=f"127.0.0.1:{port}", name="example.org"))
        finally:
            transport.close()

    async def test_bad_address(self):
        checker = HealthChecker(request_timeout=0.1)
        assert not await checker.probe_dns(DnsProbe(address="10.0.0.2:dns", name="example.org"))

    async def test_bad_name(self):
        checker = HealthChecker(request_timeout=0.1)
        assert not await checker.probe_dns(DnsProbe(address="127.0.0.1:53", name="a" * 64))


class TestConfirm:
    async def test_no_liveliness_is_healthy(self):
        assert await HealthChecker().confirm(None, timeout=0.1)

    async def test_confirms_after_retries(self):
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(200 if calls >= 3 else 503)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            checker = HealthChecker(http_client=client, probe_interval=0.01)
            liveliness = Liveliness(http=HttpProbe(address="10.0.0.2"))
            assert await checker.confirm(liveliness, timeout=2.0)

        assert calls == 3

    async def test_times_out(self):
        async with _client(500) as client:
            checker = HealthChecker(http_client=client, probe_interval=0.01)
            liveliness = Liveliness(http=HttpProbe(address="10.0.0.2"))
            assert not await checker.confirm(liveliness, timeout=0.05)
