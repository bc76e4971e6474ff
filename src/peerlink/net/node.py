# src/peerlink/net/node.py
"""
PeerLink — Peer node.

Owns the listener, the connection table and the keep-alive task, and is the
single entry point the delivery layer uses to reach a peer:

  - accept thread: inbound TCP -> responder handshake -> table -> Session
  - connect(peer_id, hint): per-peer establish lock -> NAT traversal ->
    initiator handshake -> table -> Session
  - send / send_and_await_receipt / send_read_receipt
  - challenge_peer: verify_challenge over an OPEN connection
  - keep-alive: ping OPEN connections, evict stale ones
"""

from __future__ import annotations

import logging
import socket
import threading
from dataclasses import dataclass
from typing import List, Optional, Tuple

from peerlink.metrics import inc_counter
from peerlink.net.connection import Connection
from peerlink.net.connection_table import ConnectionTable
from peerlink.net.handshake import HandshakeError
from peerlink.net.messages import AnySessionMsg, ChatMessage, PingMsg, ReadReceipt, VerifyChallengeMsg
from peerlink.net.nat_traversal import NatTraversal, TraversalFailure
from peerlink.net.net_logging import log_event
from peerlink.net.peer_store import PeerIdentityStore
from peerlink.net.session import (
    Session,
    SessionContext,
    receipt_key,
    run_initiator_handshake,
    run_responder_handshake,
)
from peerlink.net.transport import AddressHint, Endpoint, TransportKind
from peerlink.net.transport_tcp import LineReader, TcpStream, open_listener
from peerlink.scheduler import PeriodicTask
from peerlink.security.verification import (
    VerificationState,
    VerificationStateError,
    VerificationTracker,
    check_challenge_response,
    fingerprint,
    new_challenge,
)

log = logging.getLogger("peerlink.session")


@dataclass(frozen=True, slots=True)
class NodeConfig:
    listen_host: str = "0.0.0.0"
    listen_port: int = 8765
    ping_interval_s: float = 30.0
    stale_after_s: float = 90.0
    challenge_timeout_s: float = 10.0


class PeerNode:
    def __init__(
        self,
        *,
        cfg: NodeConfig,
        ctx: SessionContext,
        nat: NatTraversal,
        peer_store: Optional[PeerIdentityStore] = None,
        verification: Optional[VerificationTracker] = None,
        table: Optional[ConnectionTable] = None,
    ) -> None:
        self.cfg = cfg
        self.ctx = ctx
        self.nat = nat
        self.peer_store = peer_store
        self.verification = verification or VerificationTracker(store=peer_store)
        self.table = table or ConnectionTable()

        self._listener: Optional[socket.socket] = None
        self._accept_thread: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self._keepalive = PeriodicTask(name="keepalive", interval_s=cfg.ping_interval_s, fn=self.keepalive_tick)
        self.last_failure: Optional[TraversalFailure] = None

    # -------------------------
    # lifecycle
    # -------------------------

    @property
    def peer_id(self) -> str:
        return self.ctx.handshake.peer_id

    @property
    def bound_port(self) -> Optional[int]:
        ls = self._listener
        if ls is None:
            return None
        return int(ls.getsockname()[1])

    def start(self, *, listen: bool = True) -> None:
        self._stop.clear()
        if listen and self._listener is None:
            ls = open_listener(self.cfg.listen_host, self.cfg.listen_port)
            ls.settimeout(1.0)
            self._listener = ls
            self._accept_thread = threading.Thread(target=self._accept_loop, name="peerlink-accept", daemon=True)
            self._accept_thread.start()
            log_event(log, "node_listening", host=self.cfg.listen_host, port=self.bound_port)
        self._keepalive.start()

    def stop(self) -> None:
        self._stop.set()
        self._keepalive.stop()
        ls = self._listener
        self._listener = None
        if ls is not None:
            try:
                ls.close()
            except OSError:
                pass
        t = self._accept_thread
        if t is not None:
            t.join(timeout=5.0)
        self._accept_thread = None
        self.table.close_all("shutdown")
        log_event(log, "node_stopped", peer_id=self.peer_id)

    # -------------------------
    # inbound
    # -------------------------

    def _accept_loop(self) -> None:
        while not self._stop.is_set():
            ls = self._listener
            if ls is None:
                return
            try:
                sock, _addr = ls.accept()
            except socket.timeout:
                continue
            except OSError:
                return
            threading.Thread(target=self.handle_inbound, args=(sock,), name="peerlink-inbound", daemon=True).start()

    def handle_inbound(self, sock: socket.socket) -> Optional[Connection]:
        """Responder side for one accepted socket."""
        conn = Connection(stream=TcpStream(sock, kind=TransportKind.DIRECT), transport_kind=TransportKind.DIRECT)
        reader = LineReader(conn.stream, max_line_bytes=self.ctx.config.max_line_bytes)
        try:
            run_responder_handshake(conn, reader, self.ctx)
        except HandshakeError as e:
            inc_counter("handshake.inbound.fail")
            log_event(log, "handshake_failed", level=logging.WARNING, side="responder", remote=str(conn.remote), reason=e.reason)
            conn.close(f"handshake_failed:{e.reason}")
            return None

        inc_counter("handshake.inbound.ok")
        self._remember_peer(conn, address=None)
        if not self.table.add(conn):
            return None
        self._start_session(conn, reader)
        return conn

    # -------------------------
    # outbound
    # -------------------------

    def connect(self, peer_id: str, hint: AddressHint) -> Optional[Connection]:
        """Return an OPEN Connection to peer_id, reusing a live one.

        Concurrent calls for the same peer serialize on its establish lock; the
        loser finds the winner's connection in the table.
        """
        conn = self.table.get(peer_id)
        if conn is not None:
            return conn

        with self.table.establish_lock(peer_id):
            conn = self.table.get(peer_id)
            if conn is not None:
                return conn

            res = self.nat.establish(hint, peer_id)
            if isinstance(res, TraversalFailure):
                self.last_failure = res
                return None

            conn = res
            reader = LineReader(conn.stream, max_line_bytes=self.ctx.config.max_line_bytes)
            try:
                run_initiator_handshake(conn, reader, self.ctx, expected_peer_id=peer_id)
            except HandshakeError as e:
                inc_counter("handshake.outbound.fail")
                log_event(log, "handshake_failed", level=logging.WARNING, side="initiator", peer_id=peer_id, reason=e.reason)
                conn.close(f"handshake_failed:{e.reason}")
                return None

            inc_counter("handshake.outbound.ok")
            self._remember_peer(conn, address=hint.endpoint)
            if not self.table.add(conn):
                return self.table.get(peer_id)
            self._start_session(conn, reader)
            return conn

    def _remember_peer(self, conn: Connection, *, address: Optional[Endpoint]) -> None:
        if self.peer_store is None or not conn.peer_id:
            return
        self.peer_store.upsert_contact(
            peer_id=conn.peer_id,
            display_name=conn.display_name,
            public_key=conn.public_key,
            address=address,
            address_ts_ms=self.ctx.clock() if address is not None else None,
        )

    def _start_session(self, conn: Connection, reader: LineReader) -> None:
        Session(conn, reader, self.ctx).start()

    # -------------------------
    # sending
    # -------------------------

    def connection(self, peer_id: str) -> Optional[Connection]:
        return self.table.get(peer_id)

    def connections(self) -> List[Connection]:
        return self.table.snapshot()

    def send(self, peer_id: str, msg: AnySessionMsg) -> bool:
        conn = self.table.get(peer_id)
        if conn is None:
            return False
        return conn.send(msg)

    def send_and_await_receipt(self, peer_id: str, msg: ChatMessage, *, timeout_s: float) -> bool:
        """Send a chat_message and block until its delivery_receipt or timeout."""
        receipts = self.ctx.receipts
        key = receipt_key(peer_id, msg.message_id)
        receipts.register(key)
        if not self.send(peer_id, msg):
            receipts.wait(key, 0)
            return False
        return bool(receipts.wait(key, timeout_s))

    def send_read_receipt(self, peer_id: str, message_id: str) -> bool:
        return self.send(peer_id, ReadReceipt(message_id=message_id, timestamp=self.ctx.clock()))

    # -------------------------
    # verification
    # -------------------------

    def _recorded_fingerprint(self, conn: Connection) -> Optional[str]:
        if self.peer_store is not None and conn.peer_id:
            ident = self.peer_store.get(conn.peer_id)
            if ident is not None:
                if ident.fingerprint:
                    return ident.fingerprint
                if ident.public_key:
                    return fingerprint(ident.public_key)
        if conn.public_key:
            return fingerprint(conn.public_key)
        return None

    def challenge_peer(self, peer_id: str) -> Tuple[bool, str]:
        """Run a verify_challenge round trip. Returns (ok, reason)."""
        conn = self.table.get(peer_id)
        if conn is None or not conn.public_key:
            return (False, "not_connected")
        try:
            self.verification.begin(peer_id)
        except VerificationStateError:
            return (False, "verification_in_progress")

        nonce = new_challenge()
        key = nonce.hex()
        self.ctx.challenges.register(key)
        if not conn.send(VerifyChallengeMsg(nonce=nonce, timestamp=self.ctx.clock())):
            self.ctx.challenges.wait(key, 0)
            ok, reason = False, "send_failed"
        else:
            sig = self.ctx.challenges.wait(key, self.cfg.challenge_timeout_s)
            if sig is None:
                ok, reason = False, "timeout"
            else:
                ok, reason = check_challenge_response(
                    nonce=nonce,
                    signature=sig,
                    public_key=conn.public_key,
                    recorded_fingerprint=self._recorded_fingerprint(conn),
                    crypto=self.ctx.crypto,
                )

        try:
            state = self.verification.complete(
                peer_id, ok, fingerprint_value=fingerprint(conn.public_key) if ok else None
            )
        except VerificationStateError:
            # Another verification finished this round first.
            log_event(log, "challenge_superseded", level=logging.WARNING, peer_id=peer_id, ok=ok, reason=reason)
            return (False, "verification_in_progress")
        log_event(log, "challenge_result", peer_id=peer_id, ok=ok, reason=reason, state=state.value)
        return (ok, reason)

    def verification_state(self, peer_id: str) -> VerificationState:
        return self.verification.state(peer_id)

    # -------------------------
    # keep-alive
    # -------------------------

    def keepalive_tick(self) -> None:
        now = self.ctx.clock()
        for conn in self.table.snapshot():
            if not conn.is_open:
                continue
            if conn.is_stale(stale_after_s=self.cfg.stale_after_s, now_ms=now):
                inc_counter("session.stale_evicted")
                log_event(log, "connection_stale", peer_id=conn.peer_id, idle_ms=now - conn.last_activity_ms)
                conn.close("stale")
                continue
            conn.send(PingMsg(timestamp=now))
