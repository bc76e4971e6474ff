# src/peerlink/net/relay.py
"""
PeerLink — Relay Tunnel

Used when no direct path exists. A relay server forwards opaque frames
between two peers that both dialed it.

Frame format on the relay socket:
  [4-byte big-endian length][JSON envelope bytes]

Envelopes (every one signed over the canonical JSON of its non-signature
fields):
  CONNECT{channelId, userId, targetHost, targetPort, timestamp}
  CONNECT_RESPONSE{channelId, success, error?, timestamp}   (signed by the relay)
  DATA{channelId, data, timestamp}    data = b64(encrypt(app bytes, peer key))
  DISCONNECT{channelId, timestamp}

Bounds (fail-closed):
  - control frames (the CONNECT_RESPONSE) must be 1..max_control_frame_bytes
  - every frame read afterwards must be 1..max_data_frame_bytes
  A length outside the bound is a FrameError and the tunnel is abandoned
  immediately, without waiting for the declared body.

RelayStream wraps a TcpStream (composition) and exposes the same ByteStream
interface, so the session layer cannot tell a relayed Connection apart from
a direct one.
"""

from __future__ import annotations

import logging
import struct
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol, Tuple, runtime_checkable
from urllib.parse import urlparse

from peerlink.crypto.keys import Crypto, CryptoError
from peerlink.crypto.sig import b64d, b64e, canonical_json_bytes
from peerlink.errors import FrameError, StreamClosed
from peerlink.http_client import http_json
from peerlink.metrics import inc_counter
from peerlink.net.codec import WireDecodeError, loads_json
from peerlink.net.net_logging import log_event
from peerlink.net.transport import AddressHint, Endpoint, TransportKind
from peerlink.net.transport_tcp import TcpStream, try_connect_tcp

log = logging.getLogger("peerlink.relay")

Json = Dict[str, Any]

MSG_CONNECT = "CONNECT"
MSG_CONNECT_RESPONSE = "CONNECT_RESPONSE"
MSG_DATA = "DATA"
MSG_DISCONNECT = "DISCONNECT"

DEFAULT_MAX_CONTROL_FRAME_BYTES = 10 * 1024
DEFAULT_MAX_DATA_FRAME_BYTES = 1024 * 1024


def _now_ms() -> int:
    return int(time.time() * 1000)


# ---------------------------------------------------------------------
# Channel allocation
# ---------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class RelayChannel:
    channel_id: str
    relay_host: str
    relay_port: int
    expires_ms: int
    relay_public_key: Optional[bytes] = None


@runtime_checkable
class RelayAllocator(Protocol):
    def request_channel(self, target_host: str, target_port: int) -> Optional[RelayChannel]: ...


class HttpRelayAllocator:
    """POST {base}/api/relay/request with a signed request body."""

    def __init__(
        self,
        *,
        base_url: str,
        user_id: str,
        crypto: Crypto,
        timeout_s: float = 10.0,
        pinned_relay_key: Optional[bytes] = None,
    ) -> None:
        self.base_url = str(base_url).rstrip("/")
        self.user_id = str(user_id)
        self.crypto = crypto
        self.timeout_s = float(timeout_s)
        self.pinned_relay_key = pinned_relay_key

    def request_channel(self, target_host: str, target_port: int) -> Optional[RelayChannel]:
        if not self.base_url:
            return None
        body: Json = {
            "userId": self.user_id,
            "targetHost": str(target_host),
            "targetPort": int(target_port),
            "timestamp": _now_ms(),
        }
        body["signature"] = b64e(self.crypto.sign(canonical_json_bytes(body)))

        resp = http_json("POST", f"{self.base_url}/api/relay/request", body, timeout_s=self.timeout_s)
        if resp.get("ok") is False:
            log_event(log, "relay_allocation_failed", level=logging.WARNING, error=resp.get("error"))
            return None
        return parse_channel_response(resp, default_host=urlparse(self.base_url).hostname or "",
                                      pinned_relay_key=self.pinned_relay_key)


def parse_channel_response(
    resp: Json, *, default_host: str, pinned_relay_key: Optional[bytes] = None
) -> Optional[RelayChannel]:
    cid = resp.get("channelId")
    port = resp.get("relayPort")
    expiry = resp.get("expiry")
    if not isinstance(cid, str) or not cid:
        return None
    if isinstance(port, bool) or not isinstance(port, int) or not (0 < port < 65536):
        return None
    if isinstance(expiry, bool) or not isinstance(expiry, int):
        return None
    host = resp.get("relayHost") if isinstance(resp.get("relayHost"), str) and resp.get("relayHost") else default_host
    if not host:
        return None

    key: Optional[bytes] = pinned_relay_key
    if key is None and isinstance(resp.get("relayPublicKey"), str):
        try:
            key = b64d(resp["relayPublicKey"])
        except ValueError:
            key = None
    return RelayChannel(channel_id=cid, relay_host=str(host), relay_port=int(port), expires_ms=int(expiry),
                        relay_public_key=key)


# ---------------------------------------------------------------------
# Envelopes + framing
# ---------------------------------------------------------------------


def sign_envelope(fields: Json, crypto: Crypto) -> Json:
    body = {k: v for k, v in fields.items() if k != "signature"}
    out = dict(body)
    out["signature"] = b64e(crypto.sign(canonical_json_bytes(body)))
    return out


def verify_envelope(env: Json, *, public_key: bytes, crypto: Crypto) -> bool:
    sig_s = env.get("signature")
    if not isinstance(sig_s, str):
        return False
    try:
        sig = b64d(sig_s)
    except ValueError:
        return False
    body = {k: v for k, v in env.items() if k != "signature"}
    return crypto.verify(canonical_json_bytes(body), sig, public_key)


def pack_frame(payload: bytes) -> bytes:
    return struct.pack(">I", len(payload)) + bytes(payload)


class FrameBuffer:
    """Accumulates bytes and yields complete length-prefixed frames.

    The length is read as a signed 32-bit value so a hostile negative length
    is rejected like a zero one.
    """

    def __init__(self) -> None:
        self._buf = bytearray()

    def feed(self, data: bytes) -> None:
        self._buf.extend(data)

    def next_frame(self, max_len: int) -> Optional[bytes]:
        if len(self._buf) < 4:
            return None
        (n,) = struct.unpack(">i", self._buf[:4])
        if n <= 0 or n > int(max_len):
            self._buf.clear()
            raise FrameError("invalid_length" if n <= 0 else "oversize", {"declared_len": n, "max": int(max_len)})
        if len(self._buf) < 4 + n:
            return None
        frame = bytes(self._buf[4 : 4 + n])
        del self._buf[: 4 + n]
        return frame

    def __len__(self) -> int:
        return len(self._buf)


def _decode_envelope(frame: bytes) -> Optional[Json]:
    try:
        env = loads_json(frame)
    except WireDecodeError:
        return None
    return env if isinstance(env, dict) else None


# ---------------------------------------------------------------------
# Stream
# ---------------------------------------------------------------------


class RelayStream:
    """ByteStream carried through a relay channel."""

    def __init__(
        self,
        *,
        inner: TcpStream,
        channel: RelayChannel,
        crypto: Crypto,
        peer_public_key: bytes,
        target: Endpoint,
        max_data_frame_bytes: int = DEFAULT_MAX_DATA_FRAME_BYTES,
        buffer: Optional[FrameBuffer] = None,
    ) -> None:
        self._inner = inner
        self._channel = channel
        self._crypto = crypto
        self._peer_key = bytes(peer_public_key)
        self._target = target
        self._max = int(max_data_frame_bytes)
        self._buf = buffer if buffer is not None else FrameBuffer()
        self._closed = False

    @property
    def kind(self) -> TransportKind:
        return TransportKind.RELAY

    @property
    def remote(self) -> Optional[Endpoint]:
        return self._target

    @property
    def channel(self) -> RelayChannel:
        return self._channel

    def write(self, data: bytes) -> None:
        if self._closed:
            raise StreamClosed("write_after_close")
        env = sign_envelope(
            {
                "type": MSG_DATA,
                "channelId": self._channel.channel_id,
                "data": b64e(self._crypto.encrypt(bytes(data), self._peer_key)),
                "timestamp": _now_ms(),
            },
            self._crypto,
        )
        payload = canonical_json_bytes(env)
        if len(payload) > self._max:
            raise FrameError("oversize", {"len": len(payload), "max": self._max})
        self._inner.write(pack_frame(payload))

    def read(self, timeout_s: float) -> bytes:
        if self._closed:
            raise StreamClosed("read_after_close")
        frame = self._buf.next_frame(self._max)
        if frame is None:
            chunk = self._inner.read(timeout_s)
            if not chunk:
                return b""
            self._buf.feed(chunk)
            frame = self._buf.next_frame(self._max)
            if frame is None:
                return b""
        return self._open_frame(frame)

    def _open_frame(self, frame: bytes) -> bytes:
        env = _decode_envelope(frame)
        if env is None:
            return self._drop("malformed")
        if env.get("type") != MSG_DATA:
            return self._drop("not_data")
        if env.get("channelId") != self._channel.channel_id:
            return self._drop("wrong_channel")
        if not verify_envelope(env, public_key=self._peer_key, crypto=self._crypto):
            return self._drop("bad_signature")
        data_s = env.get("data")
        if not isinstance(data_s, str):
            return self._drop("malformed")
        try:
            return self._crypto.decrypt(b64d(data_s))
        except (ValueError, CryptoError):
            return self._drop("undecryptable")

    def _drop(self, reason: str) -> bytes:
        inc_counter("relay.frame_dropped")
        log_event(log, "relay_frame_dropped", level=logging.DEBUG, channel_id=self._channel.channel_id, reason=reason)
        return b""

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            env = sign_envelope(
                {"type": MSG_DISCONNECT, "channelId": self._channel.channel_id, "timestamp": _now_ms()},
                self._crypto,
            )
            self._inner.write(pack_frame(canonical_json_bytes(env)))
        except StreamClosed:
            pass
        finally:
            self._inner.close()


# ---------------------------------------------------------------------
# Tunnel setup
# ---------------------------------------------------------------------


def open_relay_stream(
    *,
    channel: RelayChannel,
    target: AddressHint,
    crypto: Crypto,
    user_id: str,
    timeout_s: float,
    max_control_frame_bytes: int = DEFAULT_MAX_CONTROL_FRAME_BYTES,
    max_data_frame_bytes: int = DEFAULT_MAX_DATA_FRAME_BYTES,
) -> Tuple[Optional[RelayStream], str]:
    """Dial the relay, send CONNECT, verify CONNECT_RESPONSE.

    Returns (stream, "ok") or (None, reason). Never raises for network faults.
    """
    if not target.public_key:
        return None, "no_peer_key"
    if not channel.relay_public_key:
        return None, "no_relay_key"

    deadline = _now_ms() + int(max(0.0, timeout_s) * 1000)
    sock, reason = try_connect_tcp(channel.relay_host, channel.relay_port, timeout_s=timeout_s)
    if sock is None:
        return None, f"relay_{reason}"
    inner = TcpStream(sock, kind=TransportKind.RELAY)

    try:
        hello = sign_envelope(
            {
                "type": MSG_CONNECT,
                "channelId": channel.channel_id,
                "userId": str(user_id),
                "targetHost": target.host,
                "targetPort": int(target.port),
                "timestamp": _now_ms(),
            },
            crypto,
        )
        inner.write(pack_frame(canonical_json_bytes(hello)))

        buf = FrameBuffer()
        frame: Optional[bytes] = None
        while frame is None:
            remaining_s = (deadline - _now_ms()) / 1000.0
            if remaining_s <= 0:
                inner.close()
                return None, "relay_timeout"
            chunk = inner.read(remaining_s)
            if chunk:
                buf.feed(chunk)
                frame = buf.next_frame(max_control_frame_bytes)
    except StreamClosed as e:
        inner.close()
        return None, f"relay_closed:{e.reason}"
    except FrameError as e:
        inner.close()
        inc_counter("relay.frame_error")
        return None, f"relay_frame_error:{e.reason}"

    env = _decode_envelope(frame)
    if env is None or env.get("type") != MSG_CONNECT_RESPONSE:
        inner.close()
        return None, "relay_bad_response"
    if env.get("channelId") != channel.channel_id:
        inner.close()
        return None, "relay_wrong_channel"
    if not verify_envelope(env, public_key=channel.relay_public_key, crypto=crypto):
        inner.close()
        return None, "relay_bad_signature"
    if env.get("success") is not True:
        inner.close()
        err = env.get("error") if isinstance(env.get("error"), str) else "denied"
        return None, f"relay_denied:{err}"

    log_event(log, "relay_connected", channel_id=channel.channel_id, relay=f"{channel.relay_host}:{channel.relay_port}")
    stream = RelayStream(
        inner=inner,
        channel=channel,
        crypto=crypto,
        peer_public_key=target.public_key,
        target=target.endpoint,
        max_data_frame_bytes=max_data_frame_bytes,
        buffer=buf,
    )
    return stream, "ok"
