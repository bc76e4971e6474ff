from __future__ import annotations

import json
import socket
import struct
import threading
import time
from typing import Callable, List, Optional

import pytest

from peerlink.crypto.sig import b64d, b64e, canonical_json_bytes
from peerlink.errors import FrameError
from peerlink.net import relay as relay_mod
from peerlink.net.connection import Connection, ConnState
from peerlink.net.handshake import HandshakeConfig
from peerlink.net.relay import (
    MSG_CONNECT,
    MSG_CONNECT_RESPONSE,
    MSG_DATA,
    MSG_DISCONNECT,
    FrameBuffer,
    HttpRelayAllocator,
    RelayChannel,
    RelayStream,
    open_relay_stream,
    pack_frame,
    parse_channel_response,
    sign_envelope,
    verify_envelope,
)
from peerlink.net.session import SessionConfig, SessionContext, run_initiator_handshake, run_responder_handshake
from peerlink.net.transport import AddressHint, Endpoint, TransportKind
from peerlink.net.transport_tcp import LineReader, TcpStream, open_listener
from peerlink.testing.sigtools import deterministic_crypto

ALICE = deterministic_crypto(label="alice")
BOB = deterministic_crypto(label="bob")
RELAY = deterministic_crypto(label="relay")


def _channel(port: int = 9000, *, key: Optional[bytes] = RELAY.public_key) -> RelayChannel:
    return RelayChannel(
        channel_id="ch-1", relay_host="127.0.0.1", relay_port=port, expires_ms=2_000_000_000_000, relay_public_key=key
    )


def _read_frame(sock: socket.socket) -> bytes:
    buf = FrameBuffer()
    while True:
        frame = buf.next_frame(1024 * 1024)
        if frame is not None:
            return frame
        chunk = sock.recv(65536)
        if not chunk:
            raise EOFError
        buf.feed(chunk)


def _env(frame: bytes) -> dict:
    return json.loads(frame)


# ---------------------------------------------------------------------
# framing
# ---------------------------------------------------------------------


def test_frame_buffer_reassembles_partial_frames() -> None:
    buf = FrameBuffer()
    data = pack_frame(b"hello") + pack_frame(b"world")
    buf.feed(data[:3])
    assert buf.next_frame(100) is None
    buf.feed(data[3:7])
    assert buf.next_frame(100) is None
    buf.feed(data[7:])
    assert buf.next_frame(100) == b"hello"
    assert buf.next_frame(100) == b"world"
    assert buf.next_frame(100) is None


def test_zero_length_frame_is_rejected_without_waiting_for_body() -> None:
    buf = FrameBuffer()
    buf.feed(struct.pack(">I", 0))
    with pytest.raises(FrameError) as ei:
        buf.next_frame(10240)
    assert ei.value.reason == "invalid_length"


def test_negative_and_oversized_lengths_are_rejected() -> None:
    buf = FrameBuffer()
    buf.feed(b"\xff\xff\xff\xff")
    with pytest.raises(FrameError):
        buf.next_frame(10240)

    buf = FrameBuffer()
    buf.feed(struct.pack(">I", 10241))
    with pytest.raises(FrameError) as ei:
        buf.next_frame(10240)
    assert ei.value.reason == "oversize"


def test_envelope_signature_covers_every_field() -> None:
    env = sign_envelope({"type": MSG_DATA, "channelId": "ch-1", "data": "AA==", "timestamp": 1}, ALICE)
    assert verify_envelope(env, public_key=ALICE.public_key, crypto=ALICE)
    assert not verify_envelope(env, public_key=BOB.public_key, crypto=ALICE)
    assert not verify_envelope(dict(env, channelId="ch-2"), public_key=ALICE.public_key, crypto=ALICE)
    assert not verify_envelope({k: v for k, v in env.items() if k != "signature"}, public_key=ALICE.public_key, crypto=ALICE)


# ---------------------------------------------------------------------
# channel allocation
# ---------------------------------------------------------------------


def test_parse_channel_response_prefers_pinned_key() -> None:
    resp = {
        "channelId": "ch-9",
        "relayPort": 7000,
        "expiry": 123,
        "relayPublicKey": b64e(BOB.public_key),
    }
    ch = parse_channel_response(resp, default_host="relay.example.net")
    assert ch is not None
    assert ch.relay_host == "relay.example.net"
    assert ch.relay_public_key == BOB.public_key

    ch = parse_channel_response(resp, default_host="relay.example.net", pinned_relay_key=RELAY.public_key)
    assert ch is not None
    assert ch.relay_public_key == RELAY.public_key


@pytest.mark.parametrize(
    "resp",
    [
        {"relayPort": 7000, "expiry": 1},
        {"channelId": "c", "relayPort": 0, "expiry": 1},
        {"channelId": "c", "relayPort": True, "expiry": 1},
        {"channelId": "c", "relayPort": 7000},
    ],
)
def test_parse_channel_response_rejects_incomplete(resp: dict) -> None:
    assert parse_channel_response(resp, default_host="relay.example.net") is None


def test_http_allocator_signs_request(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: List[tuple] = []

    def _fake_http(method: str, url: str, body=None, timeout_s: float = 10.0) -> dict:
        calls.append((method, url, body))
        return {"ok": True, "channelId": "ch-7", "relayPort": 7001, "expiry": 5}

    monkeypatch.setattr(relay_mod, "http_json", _fake_http)
    alloc = HttpRelayAllocator(base_url="http://relay.example.net:8443/", user_id="alice", crypto=ALICE)
    ch = alloc.request_channel("198.51.100.2", 4000)

    assert ch is not None
    assert (ch.channel_id, ch.relay_host, ch.relay_port) == ("ch-7", "relay.example.net", 7001)
    method, url, body = calls[0]
    assert (method, url) == ("POST", "http://relay.example.net:8443/api/relay/request")
    sig = b64d(body.pop("signature"))
    assert ALICE.verify(canonical_json_bytes(body), sig, ALICE.public_key)


def test_http_allocator_failure_returns_none(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(relay_mod, "http_json", lambda *a, **k: {"ok": False, "error": "url_error"})
    alloc = HttpRelayAllocator(base_url="http://relay.example.net", user_id="alice", crypto=ALICE)
    assert alloc.request_channel("198.51.100.2", 4000) is None


# ---------------------------------------------------------------------
# stream
# ---------------------------------------------------------------------


def _relay_stream(sock: socket.socket, crypto, peer_key: bytes, **kw) -> RelayStream:
    return RelayStream(
        inner=TcpStream(sock, kind=TransportKind.RELAY),
        channel=_channel(),
        crypto=crypto,
        peer_public_key=peer_key,
        target=Endpoint("198.51.100.2", 4000),
        **kw,
    )


def test_relay_stream_write_is_signed_and_encrypted_for_peer() -> None:
    a, relay_side = socket.socketpair()
    stream = _relay_stream(a, ALICE, BOB.public_key)
    try:
        stream.write(b"hello bob")
        env = _env(_read_frame(relay_side))
        assert env["type"] == MSG_DATA
        assert env["channelId"] == "ch-1"
        assert verify_envelope(env, public_key=ALICE.public_key, crypto=BOB)
        assert BOB.decrypt(b64d(env["data"])) == b"hello bob"
        assert b"hello bob" not in canonical_json_bytes(env)
    finally:
        stream.close()
        relay_side.close()


def test_relay_stream_drops_foreign_or_forged_frames() -> None:
    a, relay_side = socket.socketpair()
    stream = _relay_stream(a, ALICE, BOB.public_key)
    try:
        good = {"type": MSG_DATA, "channelId": "ch-1", "timestamp": 1}
        frames = [
            sign_envelope(dict(good, channelId="other", data=b64e(BOB.encrypt(b"x", ALICE.public_key))), BOB),
            sign_envelope(dict(good, data=b64e(BOB.encrypt(b"x", ALICE.public_key))), RELAY),
            sign_envelope({"type": MSG_DISCONNECT, "channelId": "ch-1", "timestamp": 1}, BOB),
            sign_envelope(dict(good, data=b64e(b"not a sealed box at all, definitely")), BOB),
            sign_envelope(dict(good, data=b64e(BOB.encrypt(b"payload", ALICE.public_key))), BOB),
        ]
        for env in frames:
            relay_side.sendall(pack_frame(canonical_json_bytes(env)))

        got: List[bytes] = []
        deadline = time.monotonic() + 3.0
        while time.monotonic() < deadline and not got:
            chunk = stream.read(0.5)
            if chunk:
                got.append(chunk)
        assert got == [b"payload"]
    finally:
        stream.close()
        relay_side.close()


def test_relay_stream_abandons_on_zero_length_frame() -> None:
    a, relay_side = socket.socketpair()
    stream = _relay_stream(a, ALICE, BOB.public_key)
    try:
        relay_side.sendall(struct.pack(">I", 0))
        t0 = time.monotonic()
        with pytest.raises(FrameError):
            for _ in range(10):
                stream.read(1.0)
        assert time.monotonic() - t0 < 1.0
    finally:
        stream.close()
        relay_side.close()


def test_relay_stream_close_sends_disconnect() -> None:
    a, relay_side = socket.socketpair()
    stream = _relay_stream(a, ALICE, BOB.public_key)
    stream.close()
    env = _env(_read_frame(relay_side))
    assert env["type"] == MSG_DISCONNECT
    assert verify_envelope(env, public_key=ALICE.public_key, crypto=ALICE)
    relay_side.close()


def test_session_handshake_runs_unchanged_over_relay_streams() -> None:
    a, b = socket.socketpair()
    sa = _relay_stream(a, ALICE, BOB.public_key)
    sb = _relay_stream(b, BOB, ALICE.public_key)
    conn_a = Connection(stream=sa, transport_kind=TransportKind.RELAY, peer_id="bob")
    conn_b = Connection(stream=sb, transport_kind=TransportKind.RELAY)

    def _ctx(label: str, crypto) -> SessionContext:
        return SessionContext(
            crypto=crypto,
            handshake=HandshakeConfig(peer_id=label, display_name=label.title(), timeout_s=3.0),
            config=SessionConfig(read_timeout_s=0.2),
        )

    t = threading.Thread(
        target=run_responder_handshake,
        args=(conn_b, LineReader(sb, max_line_bytes=65536), _ctx("bob", BOB)),
        daemon=True,
    )
    t.start()
    run_initiator_handshake(conn_a, LineReader(sa, max_line_bytes=65536), _ctx("alice", ALICE), expected_peer_id="bob")
    t.join(timeout=5.0)

    assert conn_a.state == ConnState.OPEN
    assert conn_b.state == ConnState.OPEN
    assert conn_b.peer_id == "alice"
    conn_a.close()
    conn_b.close()


# ---------------------------------------------------------------------
# tunnel setup
# ---------------------------------------------------------------------


class _FakeRelay:
    """Accepts one client, checks CONNECT, answers with `respond(env)`."""

    def __init__(self, respond: Callable[[dict], bytes]) -> None:
        self.listener = open_listener("127.0.0.1", 0)
        self.port = int(self.listener.getsockname()[1])
        self.respond = respond
        self.connect_env: Optional[dict] = None
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()

    def _run(self) -> None:
        self.listener.settimeout(5.0)
        try:
            sock, _ = self.listener.accept()
        except OSError:
            return
        with sock:
            try:
                self.connect_env = _env(_read_frame(sock))
                sock.sendall(self.respond(self.connect_env))
                time.sleep(0.5)
            except (OSError, EOFError):
                return

    def close(self) -> None:
        self.listener.close()
        self._thread.join(timeout=5.0)


def _ok_response(env: dict) -> bytes:
    resp = sign_envelope(
        {"type": MSG_CONNECT_RESPONSE, "channelId": env["channelId"], "success": True, "timestamp": 1}, RELAY
    )
    return pack_frame(canonical_json_bytes(resp))


def _open(relay: _FakeRelay, *, key: Optional[bytes] = RELAY.public_key, peer_key: Optional[bytes] = BOB.public_key):
    return open_relay_stream(
        channel=_channel(relay.port, key=key),
        target=AddressHint("198.51.100.2", 4000, public_key=peer_key),
        crypto=ALICE,
        user_id="alice",
        timeout_s=3.0,
    )


def test_open_relay_stream_success() -> None:
    relay = _FakeRelay(_ok_response)
    try:
        stream, reason = _open(relay)
        assert reason == "ok"
        assert stream is not None
        assert stream.kind == TransportKind.RELAY
        assert stream.remote == Endpoint("198.51.100.2", 4000)

        env = relay.connect_env
        assert env is not None
        assert env["type"] == MSG_CONNECT
        assert (env["userId"], env["targetHost"], env["targetPort"]) == ("alice", "198.51.100.2", 4000)
        assert verify_envelope(env, public_key=ALICE.public_key, crypto=ALICE)
        stream.close()
    finally:
        relay.close()


def test_open_relay_stream_denied() -> None:
    def _deny(env: dict) -> bytes:
        resp = sign_envelope(
            {"type": MSG_CONNECT_RESPONSE, "channelId": env["channelId"], "success": False, "error": "no_peer", "timestamp": 1},
            RELAY,
        )
        return pack_frame(canonical_json_bytes(resp))

    relay = _FakeRelay(_deny)
    try:
        assert _open(relay) == (None, "relay_denied:no_peer")
    finally:
        relay.close()


def test_open_relay_stream_rejects_unsigned_response() -> None:
    def _forged(env: dict) -> bytes:
        resp = sign_envelope(
            {"type": MSG_CONNECT_RESPONSE, "channelId": env["channelId"], "success": True, "timestamp": 1}, BOB
        )
        return pack_frame(canonical_json_bytes(resp))

    relay = _FakeRelay(_forged)
    try:
        assert _open(relay) == (None, "relay_bad_signature")
    finally:
        relay.close()


def test_open_relay_stream_zero_length_response_fails_promptly() -> None:
    relay = _FakeRelay(lambda env: struct.pack(">I", 0))
    try:
        t0 = time.monotonic()
        stream, reason = _open(relay)
        assert stream is None
        assert reason == "relay_frame_error:invalid_length"
        assert time.monotonic() - t0 < 2.0
    finally:
        relay.close()


def test_open_relay_stream_oversized_control_frame() -> None:
    relay = _FakeRelay(lambda env: struct.pack(">I", 20_000) + b"x" * 16)
    try:
        assert _open(relay) == (None, "relay_frame_error:oversize")
    finally:
        relay.close()


def test_open_relay_stream_needs_keys() -> None:
    ch = _channel()
    hint = AddressHint("198.51.100.2", 4000)
    assert open_relay_stream(channel=ch, target=hint, crypto=ALICE, user_id="alice", timeout_s=1.0) == (
        None,
        "no_peer_key",
    )
    hint = AddressHint("198.51.100.2", 4000, public_key=BOB.public_key)
    assert open_relay_stream(
        channel=_channel(key=None), target=hint, crypto=ALICE, user_id="alice", timeout_s=1.0
    ) == (None, "no_relay_key")
