# src/peerlink/net/session.py
"""
PeerLink — Session protocol driver.

Runs over an established ByteStream:

  - handshake drivers (initiator / responder), bounded by a timeout
  - one read thread per OPEN Connection, dispatching JSON-line records
  - auto replies: chat_message -> delivery_receipt, ping -> pong,
    verify_challenge -> verify_response
  - waiters so a sender can block until a delivery_receipt or a
    verify_response arrives

Failure classes:
  - malformed / unknown record: dropped, logged, counted; connection stays open
  - EOF, I/O error, oversized line: connection moves to CLOSED (its owner is
    notified through Connection.on_close)
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Protocol

from peerlink.crypto.keys import Crypto
from peerlink.errors import FrameError, StreamClosed
from peerlink.metrics import inc_counter
from peerlink.net.codec import WireDecodeError, decode_record
from peerlink.net.connection import ConnState, Connection
from peerlink.net.handshake import (
    HandshakeConfig,
    HandshakeError,
    HandshakeRejected,
    HandshakeState,
    KnownKeyLookup,
    begin_outbound_handshake,
    process_inbound_handshake,
    process_inbound_response,
    require_established,
)
from peerlink.net.messages import (
    AnySessionMsg,
    ChatMessage,
    DeliveryReceipt,
    DisconnectMsg,
    HandshakeMsg,
    HandshakeResponseMsg,
    PingMsg,
    PongMsg,
    ReadReceipt,
    VerifyChallengeMsg,
    VerifyResponseMsg,
)
from peerlink.net.net_logging import log_event
from peerlink.net.transport_tcp import LineReader
from peerlink.security.verification import challenge_sign_bytes

log = logging.getLogger("peerlink.session")


def _now_ms() -> int:
    return int(time.time() * 1000)


# ---------------------------------------------------------------------
# Application sink
# ---------------------------------------------------------------------


class SessionEvents(Protocol):
    def on_chat_message(self, peer_id: str, msg: ChatMessage) -> None: ...
    def on_delivery_receipt(self, peer_id: str, message_id: str, timestamp: int) -> None: ...
    def on_read_receipt(self, peer_id: str, message_id: str, timestamp: int) -> None: ...
    def on_connection_closed(self, peer_id: Optional[str], reason: Optional[str]) -> None: ...


class NullSessionEvents:
    def on_chat_message(self, peer_id: str, msg: ChatMessage) -> None:
        return None

    def on_delivery_receipt(self, peer_id: str, message_id: str, timestamp: int) -> None:
        return None

    def on_read_receipt(self, peer_id: str, message_id: str, timestamp: int) -> None:
        return None

    def on_connection_closed(self, peer_id: Optional[str], reason: Optional[str]) -> None:
        return None


# ---------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------


class SeenIds:
    """Bounded LRU of message ids already delivered to the sink."""

    def __init__(self, capacity: int = 4096) -> None:
        self._cap = max(1, int(capacity))
        self._ids: "OrderedDict[str, None]" = OrderedDict()
        self._lock = threading.Lock()

    def check_and_add(self, key: str) -> bool:
        """True if `key` is new."""
        with self._lock:
            if key in self._ids:
                self._ids.move_to_end(key)
                return False
            self._ids[key] = None
            if len(self._ids) > self._cap:
                self._ids.popitem(last=False)
            return True


@dataclass(slots=True)
class _Waiter:
    event: threading.Event = field(default_factory=threading.Event)
    value: Any = None


def receipt_key(peer_id: Optional[str], message_id: str) -> str:
    """Receipt waiters are per (peer, message) so only the addressee can release one."""
    return f"{peer_id}:{message_id}"


class Waiters:
    """Keyed one-shot rendezvous between a blocked sender and the read loop."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._w: Dict[str, _Waiter] = {}

    def register(self, key: str) -> None:
        with self._lock:
            self._w.setdefault(key, _Waiter())

    def resolve(self, key: str, value: Any = True) -> bool:
        with self._lock:
            w = self._w.get(key)
        if w is None:
            return False
        w.value = value
        w.event.set()
        return True

    def wait(self, key: str, timeout_s: float) -> Any:
        """Block until resolved or timeout. Always unregisters `key`."""
        with self._lock:
            w = self._w.get(key)
        if w is None:
            return None
        try:
            if w.event.wait(max(0.0, float(timeout_s))):
                return w.value
            return None
        finally:
            with self._lock:
                if self._w.get(key) is w:
                    del self._w[key]

    def pending(self) -> int:
        with self._lock:
            return len(self._w)


@dataclass(frozen=True, slots=True)
class SessionConfig:
    read_timeout_s: float = 5.0
    max_line_bytes: int = 1024 * 1024


@dataclass(slots=True)
class SessionContext:
    """Everything a Session needs that is shared across connections."""

    crypto: Crypto
    handshake: HandshakeConfig
    config: SessionConfig = field(default_factory=SessionConfig)
    events: SessionEvents = field(default_factory=NullSessionEvents)
    known_key: Optional[KnownKeyLookup] = None
    seen: SeenIds = field(default_factory=SeenIds)
    receipts: Waiters = field(default_factory=Waiters)
    challenges: Waiters = field(default_factory=Waiters)
    clock: Callable[[], int] = _now_ms


# ---------------------------------------------------------------------
# Handshake drivers
# ---------------------------------------------------------------------


def _await_record(reader: LineReader, *, deadline_ms: int, clock: Callable[[], int]) -> AnySessionMsg:
    while True:
        remaining_s = (deadline_ms - clock()) / 1000.0
        if remaining_s <= 0:
            raise HandshakeError("timeout")
        try:
            line = reader.read_line(min(remaining_s, 1.0))
        except StreamClosed as e:
            raise HandshakeError("closed") from e
        except FrameError as e:
            raise HandshakeRejected("frame_error") from e
        if line is None:
            continue
        try:
            return decode_record(line)
        except WireDecodeError as e:
            raise HandshakeRejected("malformed_handshake") from e


def _new_state(ctx: SessionContext) -> HandshakeState:
    if ctx.known_key is None:
        return HandshakeState(config=ctx.handshake, crypto=ctx.crypto)
    return HandshakeState(config=ctx.handshake, crypto=ctx.crypto, known_key=ctx.known_key)


def _open_from(conn: Connection, state: HandshakeState) -> None:
    conn.mark_open(
        peer_id=require_established(state),
        display_name=state.remote_display_name or "",
        public_key=state.remote_public_key or b"",
    )


def run_initiator_handshake(
    conn: Connection, reader: LineReader, ctx: SessionContext, *, expected_peer_id: Optional[str]
) -> HandshakeState:
    """Send our handshake, await and verify handshake_response, mark OPEN.

    Raises HandshakeError / HandshakeRejected; the caller closes the Connection.
    """
    state = _new_state(ctx)
    deadline = ctx.clock() + int(ctx.handshake.timeout_s * 1000)
    hello = begin_outbound_handshake(state, expected_peer_id=expected_peer_id, now_ms=ctx.clock())
    if not conn.send(hello):
        raise HandshakeError("send_failed")

    msg = _await_record(reader, deadline_ms=deadline, clock=ctx.clock)
    if not isinstance(msg, HandshakeResponseMsg):
        raise state.reject("expected_handshake_response")
    process_inbound_response(state, msg, now_ms=ctx.clock())
    _open_from(conn, state)
    return state


def run_responder_handshake(conn: Connection, reader: LineReader, ctx: SessionContext) -> HandshakeState:
    """Await and verify the initiator's handshake, reply, mark OPEN."""
    state = _new_state(ctx)
    deadline = ctx.clock() + int(ctx.handshake.timeout_s * 1000)
    msg = _await_record(reader, deadline_ms=deadline, clock=ctx.clock)
    if not isinstance(msg, HandshakeMsg):
        raise state.reject("expected_handshake")

    resp = process_inbound_handshake(state, msg, now_ms=ctx.clock())
    if not conn.send(resp):
        raise HandshakeError("send_failed")
    _open_from(conn, state)
    return state


# ---------------------------------------------------------------------
# Read loop + dispatch
# ---------------------------------------------------------------------


class Session:
    """Read loop and record dispatch for one OPEN Connection."""

    def __init__(self, conn: Connection, reader: LineReader, ctx: SessionContext) -> None:
        self.conn = conn
        self.reader = reader
        self.ctx = ctx
        self._thread: Optional[threading.Thread] = None

    @property
    def peer_id(self) -> str:
        return str(self.conn.peer_id or "")

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(
            target=self._read_loop, name=f"peerlink-session-{self.peer_id}", daemon=True
        )
        self._thread.start()

    def join(self, timeout_s: float = 5.0) -> None:
        t = self._thread
        if t is not None and t is not threading.current_thread():
            t.join(timeout=timeout_s)

    def _read_loop(self) -> None:
        conn = self.conn
        reason = "closed"
        while conn.state == ConnState.OPEN:
            try:
                line = self.reader.read_line(self.ctx.config.read_timeout_s)
            except StreamClosed as e:
                reason = e.reason
                break
            except FrameError as e:
                inc_counter("session.frame_error")
                log_event(log, "session_frame_error", level=logging.WARNING, peer_id=self.peer_id, reason=e.reason)
                reason = "frame_error"
                break
            if line is None:
                continue

            try:
                msg = decode_record(line)
            except WireDecodeError as e:
                inc_counter("session.malformed")
                log_event(log, "session_record_dropped", level=logging.WARNING, peer_id=self.peer_id, code=e.code)
                continue

            conn.touch()
            self.dispatch(msg)

        if conn.state != ConnState.CLOSED:
            conn.close(reason)
        log_event(log, "session_closed", peer_id=self.peer_id, reason=conn.close_reason)
        self._notify(lambda ev: ev.on_connection_closed(conn.peer_id, conn.close_reason))

    def _notify(self, fn: Callable[[SessionEvents], None]) -> None:
        try:
            fn(self.ctx.events)
        except Exception as e:
            # The sink belongs to the application; its failures must not kill the session.
            log_event(log, "session_sink_error", level=logging.ERROR, peer_id=self.peer_id, error=repr(e))

    def dispatch(self, msg: AnySessionMsg) -> None:
        ctx = self.ctx
        pid = self.peer_id

        if isinstance(msg, ChatMessage):
            if ctx.seen.check_and_add(f"{pid}:{msg.message_id}"):
                self._notify(lambda ev: ev.on_chat_message(pid, msg))
            else:
                inc_counter("session.chat_duplicate")
            self.conn.send(DeliveryReceipt(message_id=msg.message_id, timestamp=ctx.clock()))
            return

        if isinstance(msg, DeliveryReceipt):
            ctx.receipts.resolve(receipt_key(pid, msg.message_id), True)
            self._notify(lambda ev: ev.on_delivery_receipt(pid, msg.message_id, msg.timestamp))
            return

        if isinstance(msg, ReadReceipt):
            self._notify(lambda ev: ev.on_read_receipt(pid, msg.message_id, msg.timestamp))
            return

        if isinstance(msg, PingMsg):
            self.conn.send(PongMsg(timestamp=ctx.clock()))
            return

        if isinstance(msg, PongMsg):
            return

        if isinstance(msg, DisconnectMsg):
            self.conn.close("remote_disconnect")
            return

        if isinstance(msg, VerifyChallengeMsg):
            sig = ctx.crypto.sign(challenge_sign_bytes(msg.nonce))
            self.conn.send(VerifyResponseMsg(nonce=msg.nonce, signature=sig, timestamp=ctx.clock()))
            return

        if isinstance(msg, VerifyResponseMsg):
            if not ctx.challenges.resolve(msg.nonce.hex(), msg.signature):
                inc_counter("session.unsolicited_verify_response")
            return

        # Handshake records after OPEN are a protocol violation.
        inc_counter("session.unexpected_record")
        log_event(
            log, "session_unexpected_record", level=logging.WARNING, peer_id=pid, type=type(msg).__name__
        )
