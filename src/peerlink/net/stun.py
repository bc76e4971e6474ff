# src/peerlink/net/stun.py
"""
PeerLink — STUN public endpoint discovery (RFC 5389, IPv4 only).

  - build_binding_request(txn_id) -> 20-byte Binding Request
  - parse_binding_response(data, txn_id) -> Endpoint | None
      XOR-MAPPED-ADDRESS (0x0020) is preferred, MAPPED-ADDRESS (0x0001) is
      the fallback.
  - StunClient.discover(sock=None, timeout_s=None) tries each configured
    server in order and returns the first mapped endpoint. Each query waits
    at most timeout_s (per client) and the whole call at most the given
    timeout_s, name resolution included. Passing a bound UDP socket makes the
    mapping valid for that socket (needed for UDP hole punching).

Nothing here raises for network failures; discover() returns None.
"""

from __future__ import annotations

import logging
import os
import socket
import struct
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Iterable, Optional, Protocol, Sequence, Tuple, runtime_checkable

from peerlink.metrics import inc_counter
from peerlink.net.net_logging import log_event
from peerlink.net.transport import Endpoint

log = logging.getLogger("peerlink.nat")

BINDING_REQUEST = 0x0001
BINDING_RESPONSE = 0x0101
ATTR_MAPPED_ADDRESS = 0x0001
ATTR_XOR_MAPPED_ADDRESS = 0x0020
MAGIC_COOKIE = 0x2112A442
_FAMILY_IPV4 = 0x01
_HEADER_LEN = 20

# Name lookups have no timeout of their own; they run here so callers can stop waiting.
_RESOLVER = ThreadPoolExecutor(max_workers=2, thread_name_prefix="peerlink-stun-dns")


@runtime_checkable
class PublicEndpointDiscovery(Protocol):
    def discover(
        self, sock: Optional[socket.socket] = None, *, timeout_s: Optional[float] = None
    ) -> Optional[Endpoint]: ...


def new_transaction_id() -> bytes:
    return os.urandom(12)


def build_binding_request(txn_id: bytes) -> bytes:
    if len(txn_id) != 12:
        raise ValueError("transaction id must be 12 bytes")
    return struct.pack(">HHI", BINDING_REQUEST, 0, MAGIC_COOKIE) + bytes(txn_id)


def _parse_address(value: bytes, *, xor: bool) -> Optional[Endpoint]:
    if len(value) < 8:
        return None
    family = value[1]
    if family != _FAMILY_IPV4:
        return None
    (port,) = struct.unpack(">H", value[2:4])
    (addr,) = struct.unpack(">I", value[4:8])
    if xor:
        port ^= MAGIC_COOKIE >> 16
        addr ^= MAGIC_COOKIE
    return Endpoint(socket.inet_ntoa(struct.pack(">I", addr)), int(port))


def parse_binding_response(data: bytes, txn_id: bytes) -> Optional[Endpoint]:
    """Extract the mapped endpoint from a Binding Response, else None."""
    if len(data) < _HEADER_LEN:
        return None
    mtype, mlen, cookie = struct.unpack(">HHI", data[:8])
    if mtype != BINDING_RESPONSE or cookie != MAGIC_COOKIE:
        return None
    if data[8:20] != bytes(txn_id):
        return None

    end = min(len(data), _HEADER_LEN + mlen)
    offset = _HEADER_LEN
    mapped: Optional[Endpoint] = None
    while offset + 4 <= end:
        atype, alen = struct.unpack(">HH", data[offset : offset + 4])
        value = data[offset + 4 : offset + 4 + alen]
        if len(value) < alen:
            break
        if atype == ATTR_XOR_MAPPED_ADDRESS:
            ep = _parse_address(value, xor=True)
            if ep is not None:
                return ep
        elif atype == ATTR_MAPPED_ADDRESS and mapped is None:
            mapped = _parse_address(value, xor=False)
        # attributes are padded to 4-byte boundaries
        offset += 4 + alen + ((4 - alen % 4) % 4)
    return mapped


def _resolve(host: str, timeout_s: float) -> Optional[str]:
    """IPv4 address for host; name lookups are bounded by timeout_s."""
    try:
        socket.inet_aton(host)
        return host
    except OSError:
        pass
    fut = _RESOLVER.submit(socket.gethostbyname, host)
    try:
        return fut.result(timeout=max(0.0, timeout_s))
    except FutureTimeout:
        fut.cancel()
        return None


class StunClient:
    """Queries STUN servers in order until one answers."""

    def __init__(self, servers: Iterable[Tuple[str, int]], *, timeout_s: float = 5.0) -> None:
        self.servers: Sequence[Tuple[str, int]] = tuple((str(h), int(p)) for h, p in servers)
        self.timeout_s = float(timeout_s)

    def query(
        self,
        host: str,
        port: int,
        *,
        sock: Optional[socket.socket] = None,
        timeout_s: Optional[float] = None,
    ) -> Optional[Endpoint]:
        budget = self.timeout_s if timeout_s is None else min(self.timeout_s, float(timeout_s))
        deadline = time.monotonic() + budget
        own = sock is None
        s = sock if sock is not None else socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        prev_timeout = s.gettimeout()
        try:
            addr = _resolve(host, budget)
            if addr is None:
                raise socket.timeout("resolve timed out")
            txn = new_transaction_id()
            s.sendto(build_binding_request(txn), (addr, int(port)))
            while True:
                left = deadline - time.monotonic()
                if left <= 0:
                    raise socket.timeout("no response")
                s.settimeout(left)
                data, src = s.recvfrom(2048)
                # Punch datagrams from peers can share the socket; only trust the server.
                if src[0] != addr:
                    continue
                return parse_binding_response(data, txn)
        except (socket.timeout, OSError) as e:
            log_event(log, "stun_query_failed", level=logging.DEBUG, server=f"{host}:{port}", error=repr(e))
            return None
        finally:
            if own:
                s.close()
            else:
                try:
                    s.settimeout(prev_timeout)
                except OSError:
                    pass

    def discover(self, sock: Optional[socket.socket] = None, *, timeout_s: Optional[float] = None) -> Optional[Endpoint]:
        """First mapped endpoint from the server list; all queries together stay within timeout_s."""
        deadline = None if timeout_s is None else time.monotonic() + float(timeout_s)
        for host, port in self.servers:
            left = None if deadline is None else deadline - time.monotonic()
            if left is not None and left <= 0:
                break
            ep = self.query(host, port, sock=sock, timeout_s=left)
            if ep is not None:
                inc_counter("stun.ok")
                log_event(log, "stun_discovered", server=f"{host}:{port}", endpoint=str(ep))
                return ep
        inc_counter("stun.fail")
        log_event(log, "stun_unavailable", level=logging.WARNING, servers=len(self.servers))
        return None
