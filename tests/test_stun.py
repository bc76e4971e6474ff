from __future__ import annotations

import socket
import struct
import threading
import time

import pytest

from peerlink.metrics import counter
from peerlink.net import stun as stun_mod
from peerlink.net.stun import (
    ATTR_MAPPED_ADDRESS,
    ATTR_XOR_MAPPED_ADDRESS,
    BINDING_RESPONSE,
    MAGIC_COOKIE,
    StunClient,
    build_binding_request,
    new_transaction_id,
    parse_binding_response,
)
from peerlink.net.transport import Endpoint


def _addr_attr(atype: int, ip: str, port: int, *, xor: bool) -> bytes:
    (addr,) = struct.unpack(">I", socket.inet_aton(ip))
    if xor:
        port ^= MAGIC_COOKIE >> 16
        addr ^= MAGIC_COOKIE
    value = struct.pack(">BBHI", 0, 0x01, port, addr)
    return struct.pack(">HH", atype, len(value)) + value


def _response(txn: bytes, *attrs: bytes) -> bytes:
    body = b"".join(attrs)
    return struct.pack(">HHI", BINDING_RESPONSE, len(body), MAGIC_COOKIE) + txn + body


def test_binding_request_layout() -> None:
    txn = bytes(range(12))
    req = build_binding_request(txn)
    assert len(req) == 20
    assert req[:2] == b"\x00\x01"
    assert struct.unpack(">I", req[4:8])[0] == MAGIC_COOKIE
    assert req[8:] == txn


def test_parse_prefers_xor_mapped_address() -> None:
    txn = new_transaction_id()
    data = _response(
        txn,
        _addr_attr(ATTR_MAPPED_ADDRESS, "10.0.0.1", 1111, xor=False),
        _addr_attr(ATTR_XOR_MAPPED_ADDRESS, "203.0.113.9", 54321, xor=True),
    )
    assert parse_binding_response(data, txn) == Endpoint("203.0.113.9", 54321)


def test_parse_falls_back_to_plain_mapped_address() -> None:
    txn = new_transaction_id()
    data = _response(txn, _addr_attr(ATTR_MAPPED_ADDRESS, "198.51.100.3", 3478, xor=False))
    assert parse_binding_response(data, txn) == Endpoint("198.51.100.3", 3478)


def test_parse_rejects_wrong_transaction_and_garbage() -> None:
    txn = new_transaction_id()
    data = _response(txn, _addr_attr(ATTR_XOR_MAPPED_ADDRESS, "203.0.113.9", 1, xor=True))
    assert parse_binding_response(data, new_transaction_id()) is None
    assert parse_binding_response(b"\x00" * 10, txn) is None
    assert parse_binding_response(data[:20], txn) is None


def _serve_once(sock: socket.socket) -> None:
    data, src = sock.recvfrom(2048)
    txn = data[8:20]
    sock.sendto(_response(txn, _addr_attr(ATTR_XOR_MAPPED_ADDRESS, "203.0.113.50", 61000, xor=True)), src)


def test_discover_skips_silent_server_and_uses_next() -> None:
    silent = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    silent.bind(("127.0.0.1", 0))
    live = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    live.bind(("127.0.0.1", 0))
    live.settimeout(5.0)
    t = threading.Thread(target=_serve_once, args=(live,), daemon=True)
    t.start()
    try:
        client = StunClient(
            [("127.0.0.1", silent.getsockname()[1]), ("127.0.0.1", live.getsockname()[1])], timeout_s=0.3
        )
        assert client.discover() == Endpoint("203.0.113.50", 61000)
        assert counter("stun.ok") == 1
    finally:
        t.join(timeout=5.0)
        silent.close()
        live.close()


def test_discover_returns_none_when_no_server_answers() -> None:
    silent = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    silent.bind(("127.0.0.1", 0))
    try:
        client = StunClient([("127.0.0.1", silent.getsockname()[1])], timeout_s=0.2)
        assert client.discover() is None
        assert counter("stun.fail") == 1
    finally:
        silent.close()


def test_discover_stays_within_overall_timeout() -> None:
    silent = [socket.socket(socket.AF_INET, socket.SOCK_DGRAM) for _ in range(3)]
    for s in silent:
        s.bind(("127.0.0.1", 0))
    try:
        client = StunClient([("127.0.0.1", s.getsockname()[1]) for s in silent], timeout_s=1.0)
        t0 = time.monotonic()
        assert client.discover(timeout_s=0.3) is None
        assert time.monotonic() - t0 < 0.9
    finally:
        for s in silent:
            s.close()


def test_foreign_datagrams_do_not_extend_the_wait() -> None:
    mine = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    mine.bind(("127.0.0.1", 0))
    noise = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    stop = threading.Event()

    def _spray() -> None:
        while not stop.is_set():
            noise.sendto(b"HOLE_PUNCH:198.51.100.1:1", mine.getsockname())
            stop.wait(0.02)

    t = threading.Thread(target=_spray, daemon=True)
    t.start()
    try:
        client = StunClient([], timeout_s=0.3)
        t0 = time.monotonic()
        assert client.query("127.0.0.2", 3478, sock=mine) is None
        assert time.monotonic() - t0 < 1.5
    finally:
        stop.set()
        t.join(timeout=5.0)
        noise.close()
        mine.close()


def test_slow_name_lookup_is_abandoned(monkeypatch: pytest.MonkeyPatch) -> None:
    def _slow(host: str) -> str:
        time.sleep(2.0)
        return "127.0.0.1"

    monkeypatch.setattr(stun_mod.socket, "gethostbyname", _slow)
    client = StunClient([("stun.invalid", 3478)], timeout_s=0.2)
    t0 = time.monotonic()
    assert client.discover() is None
    assert time.monotonic() - t0 < 1.5
