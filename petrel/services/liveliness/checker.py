"""Liveliness probes for update candidates.

An update candidate is confirmed once every configured probe succeeds:
- HTTP: GET on the address through the shared httpx client, 2xx/3xx is healthy
- DNS: one A query for the name sent over UDP to the address, healthy when
  the answer is NOERROR with at least one record
"""

from __future__ import annotations

import asyncio
import random
import struct

import httpx
import structlog

from petrel.models.workload import DnsProbe, HttpProbe, Liveliness
from petrel.services.http.client import get_http_client
from petrel.validators.workload import normalize_dns_name

logger = structlog.get_logger()

_DNS_PORT = 53
_TYPE_A = 1
_CLASS_IN = 1


def build_dns_query(name: str, query_id: int) -> bytes:
    """Encode a recursive A query for ``name``.

    Raises:
        ValueError: If ``name`` is not a valid DNS name
    """
    header = struct.pack("!HHHHHH", query_id, 0x0100, 1, 0, 0, 0)
    qname = b"".join(
        bytes([len(label)]) + label.encode("ascii")
        for label in normalize_dns_name(name).split(".")
    )
    return header + qname + b"\x00" + struct.pack("!HH", _TYPE_A, _CLASS_IN)


def is_positive_dns_answer(data: bytes, query_id: int) -> bool:
    """Whether ``data`` answers ``query_id`` with NOERROR and >= 1 record."""
    if len(data) < 12:
        return False
    reply_id, flags, _qdcount, ancount = struct.unpack("!HHHH", data[:8])
    is_response = bool(flags & 0x8000)
    rcode = flags & 0x000F
    return reply_id == query_id and is_response and rcode == 0 and ancount > 0


def split_host_port(address: str, default_port: int) -> tuple[str, int]:
    """Split ``host[:port]`` (IPv6 hosts in brackets)."""
    if address.startswith("["):
        host, _, rest = address[1:].partition("]")
        port = rest.lstrip(":")
        return host, int(port) if port else default_port
    if address.count(":") == 1:
        host, port = address.split(":")
        return host, int(port)
    return address, default_port


class _DnsClientProtocol(asyncio.DatagramProtocol):
    def __init__(self, query_id: int) -> None:
        self._query_id = query_id
        self.answer: asyncio.Future[bool] = asyncio.get_running_loop().create_future()

    def datagram_received(self, data: bytes, addr) -> None:
        if not self.answer.done():
            self.answer.set_result(is_positive_dns_answer(data, self._query_id))

    def error_received(self, exc: Exception) -> None:
        if not self.answer.done():
            self.answer.set_result(False)


class HealthChecker:
    """Runs liveliness probes until they pass or a deadline expires."""

    def __init__(
        self,
        *,
        http_client: httpx.AsyncClient | None = None,
        probe_interval: float = 2.0,
        request_timeout: float = 5.0,
    ) -> None:
        self._http_client = http_client
        self._probe_interval = probe_interval
        self._request_timeout = request_timeout
        self._log = logger.bind(service="liveliness")

    async def probe_http(self, probe: HttpProbe) -> bool:
        url = probe.address if "://" in probe.address else f"http://{probe.address}"
        client = self._http_client or get_http_client()
        try:
            response = await client.get(url, timeout=self._request_timeout)
        except httpx.HTTPError as e:
            self._log.debug("liveliness.http.error", url=url, error=str(e))
            return False
        return 200 <= response.status_code < 400

    async def probe_dns(self, probe: DnsProbe) -> bool:
        try:
            host, port = split_host_port(probe.address, _DNS_PORT)
        except ValueError:
            self._log.warning("liveliness.dns.bad_address", address=probe.address)
            return False

        query_id = random.randint(0, 0xFFFF)
        try:
            query = build_dns_query(probe.name, query_id)
        except ValueError:
            self._log.warning("liveliness.dns.bad_name", name=probe.name)
            return False

        loop = asyncio.get_running_loop()
        try:
            transport, protocol = await loop.create_datagram_endpoint(
                lambda: _DnsClientProtocol(query_id),
                remote_addr=(host, port),
            )
        except OSError as e:
            self._log.debug("liveliness.dns.error", address=probe.address, error=str(e))
            return False

        try:
            transport.sendto(query)
            return await asyncio.wait_for(protocol.answer, timeout=self._request_timeout)
        except asyncio.TimeoutError:
            return False
        finally:
            transport.close()

    async def check(self, liveliness: Liveliness) -> bool:
        """One round of every configured probe."""
        if liveliness.http is not None and not await self.probe_http(liveliness.http):
            return False
        if liveliness.dns is not None and not await self.probe_dns(liveliness.dns):
            return False
        return True

    async def confirm(self, liveliness: Liveliness | None, *, timeout: float) -> bool:
        """Probe until healthy.

        Returns:
            True once all probes pass (immediately when ``liveliness`` is
            None), False if ``timeout`` seconds pass first
        """
        if liveliness is None:
            return True

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        attempts = 0
        while True:
            attempts += 1
            try:
                healthy = await asyncio.wait_for(
                    self.check(liveliness),
                    timeout=max(deadline - loop.time(), 0),
                )
            except asyncio.TimeoutError:
                healthy = False
            if healthy:
                self._log.info("liveliness.confirmed", attempts=attempts)
                return True

            remaining = deadline - loop.time()
            if remaining <= 0:
                self._log.warning("liveliness.timeout", attempts=attempts, timeout=timeout)
                return False
            await asyncio.sleep(min(self._probe_interval, remaining))
