# src/peerlink/service.py
"""
PeerlinkService: explicit wiring of the engine from a PeerlinkConfig.

One instance per process; there are no module-level singletons. The service
is also the session event sink: receipts go to the delivery manager, inbound
chat messages land in a bounded inbox.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Optional

from peerlink.config import PeerlinkConfig
from peerlink.crypto.keys import Crypto, LocalCrypto
from peerlink.crypto.sig import b64d
from peerlink.delivery.directory import DirectoryClient
from peerlink.delivery.manager import DeliveryConfig, OfflineDeliveryManager
from peerlink.delivery.store import SqliteMessageStore
from peerlink.errors import ConfigError
from peerlink.metrics import inc_counter
from peerlink.net.handshake import HandshakeConfig
from peerlink.net.messages import ChatMessage
from peerlink.net.nat_traversal import NatConfig, NatTraversal, default_connectivity_check
from peerlink.net.net_logging import log_event
from peerlink.net.node import NodeConfig, PeerNode
from peerlink.net.peer_store import PeerIdentityStore
from peerlink.net.relay import HttpRelayAllocator, RelayAllocator
from peerlink.net.session import SessionConfig, SessionContext
from peerlink.net.stun import PublicEndpointDiscovery, StunClient
from peerlink.scheduler import Clock, SystemClock
from peerlink.security.verification import (
    QrVerification,
    fingerprint,
    qr_payload,
    safety_number,
    verification_words,
    verify_qr_payload,
)
from peerlink.sqlite_db import SqliteDB

log = logging.getLogger("peerlink.service")

Json = Dict[str, Any]

INBOX_CAPACITY = 1000


@dataclass(frozen=True, slots=True)
class InboundMessage:
    peer_id: str
    message_id: str
    ciphertext: bytes
    kind: str
    timestamp: int
    received_ms: int


def nat_config_from(cfg: PeerlinkConfig) -> NatConfig:
    return NatConfig(
        connect_timeout_s=cfg.connect_timeout_s,
        udp_punch_count=cfg.udp_punch_count,
        udp_punch_interval_s=cfg.udp_punch_interval_s,
        udp_retry_wait_s=cfg.udp_retry_wait_s,
        tcp_punch_attempts=cfg.tcp_punch_attempts,
        tcp_punch_delay_s=cfg.tcp_punch_delay_s,
        tcp_punch_timeout_s=cfg.tcp_punch_timeout_s,
        relay_request_timeout_s=cfg.http_timeout_s,
        relay_connect_timeout_s=cfg.relay_connect_timeout_s,
        establish_deadline_s=cfg.establish_deadline_s,
        local_port=cfg.local_port,
        max_control_frame_bytes=cfg.max_control_frame_bytes,
        max_data_frame_bytes=cfg.max_data_frame_bytes,
    )


def delivery_config_from(cfg: PeerlinkConfig) -> DeliveryConfig:
    return DeliveryConfig(
        message_ttl_s=cfg.message_ttl_s,
        retry_interval_s=cfg.retry_interval_s,
        retry_pause_s=cfg.retry_pause_s,
        expiry_sweep_interval_s=cfg.expiry_sweep_interval_s,
        attempt_timeout_s=cfg.attempt_timeout_s,
        receipt_timeout_s=cfg.receipt_timeout_s,
        workers=cfg.delivery_workers,
    )


def _pinned_relay_key(cfg: PeerlinkConfig) -> Optional[bytes]:
    raw = cfg.relay_public_key_b64.strip()
    if not raw:
        return None
    try:
        return b64d(raw)
    except ValueError as e:
        raise ConfigError("relay_public_key_b64 is not valid base64") from e


class PeerlinkService:
    def __init__(
        self,
        cfg: PeerlinkConfig,
        *,
        crypto: Optional[Crypto] = None,
        clock: Optional[Clock] = None,
        stun: Optional[PublicEndpointDiscovery] = None,
        relay_allocator: Optional[RelayAllocator] = None,
        directory: Optional[DirectoryClient] = None,
        connectivity: Callable[[], bool] = default_connectivity_check,
    ) -> None:
        self.cfg = cfg
        self.clock: Clock = clock if clock is not None else SystemClock()
        self.crypto: Crypto = crypto if crypto is not None else LocalCrypto.from_seed(cfg.identity_seed)
        self.display_name = cfg.display_name or cfg.user_id

        self.db = SqliteDB(path=cfg.db_path)
        self.db.init_schema()
        self.peer_store = PeerIdentityStore(db=self.db)
        self.message_store = SqliteMessageStore(db=self.db)

        self._inbox: Deque[InboundMessage] = deque(maxlen=INBOX_CAPACITY)
        self._inbox_lock = threading.Lock()

        self.ctx = SessionContext(
            crypto=self.crypto,
            handshake=HandshakeConfig(
                peer_id=cfg.user_id,
                display_name=self.display_name,
                timeout_s=cfg.handshake_timeout_s,
                max_skew_s=cfg.handshake_max_skew_s,
            ),
            config=SessionConfig(read_timeout_s=cfg.read_timeout_s, max_line_bytes=cfg.max_line_bytes),
            events=self,
            known_key=self.peer_store.public_key_for,
            clock=self.clock.now_ms,
        )

        self.stun = stun if stun is not None else StunClient(cfg.stun_servers, timeout_s=cfg.stun_timeout_s)
        if relay_allocator is None and cfg.relay_api_base_url:
            relay_allocator = HttpRelayAllocator(
                base_url=cfg.relay_api_base_url,
                user_id=cfg.user_id,
                crypto=self.crypto,
                timeout_s=cfg.http_timeout_s,
                pinned_relay_key=_pinned_relay_key(cfg),
            )
        self.nat = NatTraversal(
            cfg=nat_config_from(cfg),
            crypto=self.crypto,
            user_id=cfg.user_id,
            stun=self.stun,
            relay_allocator=relay_allocator,
            clock=self.clock,
        )
        self.node = PeerNode(
            cfg=NodeConfig(
                listen_host=cfg.listen_host,
                listen_port=cfg.listen_port,
                ping_interval_s=cfg.ping_interval_s,
                stale_after_s=cfg.stale_after_s,
                challenge_timeout_s=cfg.challenge_timeout_s,
            ),
            ctx=self.ctx,
            nat=self.nat,
            peer_store=self.peer_store,
        )
        self.directory = directory or DirectoryClient(base_url=cfg.directory_base_url, timeout_s=cfg.http_timeout_s)
        self.delivery = OfflineDeliveryManager(
            cfg=delivery_config_from(cfg),
            user_id=cfg.user_id,
            store=self.message_store,
            directory=self.directory,
            node=self.node,
            peer_store=self.peer_store,
            clock=self.clock,
            connectivity=connectivity,
        )
        self._started = False

    # -------------------------
    # lifecycle
    # -------------------------

    def start(self, *, listen: bool = True) -> None:
        if self._started:
            return
        self.node.start(listen=listen)
        self.delivery.start()
        self._started = True
        log_event(log, "service_started", user_id=self.cfg.user_id, port=self.node.bound_port)
        if self.directory.configured and self.node.bound_port:
            threading.Thread(target=self.announce, name="peerlink-announce", daemon=True).start()

    def stop(self) -> None:
        if not self._started:
            return
        self.delivery.stop()
        self.node.stop()
        self._started = False
        log_event(log, "service_stopped", user_id=self.cfg.user_id)

    def announce(self) -> bool:
        """Publish our public endpoint to the directory server."""
        port = self.node.bound_port
        if port is None:
            return False
        mapped = self.stun.discover()
        host = mapped.host if mapped is not None else self.cfg.listen_host
        ok = self.directory.update_location(self.cfg.user_id, host, port)
        log_event(log, "location_announced", host=host, port=port, ok=ok)
        return ok

    # -------------------------
    # session events
    # -------------------------

    def on_chat_message(self, peer_id: str, msg: ChatMessage) -> None:
        item = InboundMessage(
            peer_id=peer_id,
            message_id=msg.message_id,
            ciphertext=msg.ciphertext,
            kind=msg.kind,
            timestamp=msg.timestamp,
            received_ms=self.clock.now_ms(),
        )
        with self._inbox_lock:
            self._inbox.append(item)
        inc_counter("inbox.received")
        log_event(log, "chat_received", peer_id=peer_id, message_id=msg.message_id, kind=msg.kind)

    def on_delivery_receipt(self, peer_id: str, message_id: str, timestamp: int) -> None:
        self.delivery.on_delivery_receipt(message_id, timestamp, peer_id=peer_id)

    def on_read_receipt(self, peer_id: str, message_id: str, timestamp: int) -> None:
        self.delivery.on_read_receipt(message_id, timestamp, peer_id=peer_id)

    def on_connection_closed(self, peer_id: Optional[str], reason: Optional[str]) -> None:
        log_event(log, "peer_disconnected", peer_id=peer_id, reason=reason)

    def inbox(self, *, limit: int = 100) -> List[InboundMessage]:
        with self._inbox_lock:
            items = list(self._inbox)
        return items[-max(0, int(limit)):] if limit else []

    # -------------------------
    # identity + verification
    # -------------------------

    def identity_qr(self) -> str:
        return qr_payload(
            peer_id=self.cfg.user_id,
            display_name=self.display_name,
            crypto=self.crypto,
            timestamp=self.clock.now_ms(),
        )

    def verify_qr(self, data: str, *, expected_id: Optional[str] = None) -> QrVerification:
        """Check a scanned QR payload and, if it holds, pin and verify the peer."""
        res = verify_qr_payload(data, crypto=self.crypto, expected_id=expected_id)
        if not res.ok or res.identity is None:
            return res
        ident = res.identity
        known = self.peer_store.public_key_for(ident.peer_id)
        if known is not None and known != ident.public_key:
            return QrVerification(False, "pubkey_mismatch", ident)

        self.peer_store.upsert_contact(
            peer_id=ident.peer_id, display_name=ident.display_name, public_key=ident.public_key
        )
        self.node.verification.confirm(ident.peer_id, fingerprint_value=ident.fingerprint)
        return res

    def verification_info(self, peer_id: str) -> Optional[Json]:
        ident = self.peer_store.get(peer_id)
        if ident is None or not ident.public_key:
            return None
        own = self.crypto.public_key
        return {
            "peer_id": ident.peer_id,
            "display_name": ident.display_name,
            "fingerprint": fingerprint(ident.public_key),
            "safety_number": safety_number(own, ident.public_key),
            "verification_words": verification_words(own, ident.public_key),
            "state": self.node.verification_state(peer_id).value,
        }
