# src/peerlink/net/handshake.py
"""
PeerLink — Session Handshake

Purpose:
  - Authenticate both ends of a fresh Connection BEFORE any chat traffic
  - Enforce strict invariants on every handshake record:
      * signature verifies with the embedded identity key
      * timestamp within max skew
      * peer id matches the id the caller expected (outbound)
      * key matches the one already on record for that peer id

Non-goals:
  - No transport I/O here (net.session drives the exchange over a stream)

This module provides:
  - HandshakeConfig: local identity + limits
  - HandshakeState: per-connection handshake state machine
  - begin_outbound_handshake / process_inbound_handshake / process_inbound_response

Integration pattern:
  - Initiator:
      send handshake
      await handshake_response (bounded by timeout_s)
      if accepted: Connection -> OPEN
  - Responder:
      await handshake (bounded by timeout_s)
      validate, reply handshake_response
      Connection -> OPEN
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Optional

from peerlink.crypto.keys import Crypto
from peerlink.errors import PeerlinkError
from peerlink.net.messages import HandshakeMsg, HandshakeResponseMsg, MsgType
from peerlink.net.peer_identity import sign_handshake, verify_handshake_identity


# ---------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------


class HandshakeError(PeerlinkError):
    def __init__(self, reason: str) -> None:
        super().__init__("handshake_error", reason)


class HandshakeRejected(HandshakeError):
    """Raised when a peer's handshake record fails verification."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.code = "handshake_rejected"


# ---------------------------------------------------------------------
# Config / defaults
# ---------------------------------------------------------------------

DEFAULT_HANDSHAKE_TIMEOUT_S = 5.0
DEFAULT_MAX_SKEW_S = 300.0

KnownKeyLookup = Callable[[str], Optional[bytes]]


def _now_ms() -> int:
    return int(time.time() * 1000)


def _no_known_key(_peer_id: str) -> Optional[bytes]:
    return None


@dataclass(frozen=True, slots=True)
class HandshakeConfig:
    peer_id: str
    display_name: str
    timeout_s: float = DEFAULT_HANDSHAKE_TIMEOUT_S
    max_skew_s: float = DEFAULT_MAX_SKEW_S


# ---------------------------------------------------------------------
# Handshake state
# ---------------------------------------------------------------------


@dataclass(slots=True)
class HandshakeState:
    """Per-connection handshake state.

    Lifecycle:
      NEW -> SENT -> ESTABLISHED        (initiator)
      NEW -> ESTABLISHED                (responder)
      or failure -> REJECTED
    """

    config: HandshakeConfig
    crypto: Crypto
    known_key: KnownKeyLookup = _no_known_key

    status: str = "NEW"  # NEW | SENT | ESTABLISHED | REJECTED
    expected_peer_id: Optional[str] = None
    remote_peer_id: Optional[str] = None
    remote_display_name: Optional[str] = None
    remote_public_key: Optional[bytes] = None
    last_error: Optional[str] = None
    started_ms: int = 0

    def is_established(self) -> bool:
        return self.status == "ESTABLISHED" and bool(self.remote_peer_id)

    def reject(self, reason: str) -> HandshakeRejected:
        self.status = "REJECTED"
        self.last_error = reason
        return HandshakeRejected(reason)

    def _accept(self, msg: HandshakeMsg | HandshakeResponseMsg) -> None:
        self.status = "ESTABLISHED"
        self.remote_peer_id = msg.peer_id
        self.remote_display_name = msg.display_name
        self.remote_public_key = msg.public_key
        self.last_error = None


# ---------------------------------------------------------------------
# Processing
# ---------------------------------------------------------------------


def begin_outbound_handshake(
    state: HandshakeState, *, expected_peer_id: Optional[str] = None, now_ms: Optional[int] = None
) -> HandshakeMsg:
    """Creates the signed handshake and moves the state to SENT."""
    now = _now_ms() if now_ms is None else int(now_ms)
    state.started_ms = now
    state.expected_peer_id = expected_peer_id
    cfg = state.config
    hello = sign_handshake(
        msg_type=MsgType.HANDSHAKE,
        crypto=state.crypto,
        peer_id=cfg.peer_id,
        display_name=cfg.display_name,
        timestamp=now,
    )
    state.status = "SENT"
    return hello  # type: ignore[return-value]


def process_inbound_handshake(
    state: HandshakeState, msg: HandshakeMsg, *, now_ms: Optional[int] = None
) -> HandshakeResponseMsg:
    """Responder side: validate the initiator's handshake, produce our response."""
    if not isinstance(msg, HandshakeMsg):
        raise state.reject("expected_handshake")

    now = _now_ms() if now_ms is None else int(now_ms)
    cfg = state.config

    if msg.peer_id == cfg.peer_id:
        raise state.reject("self_connection")

    ok, reason = verify_handshake_identity(
        msg=msg,
        crypto=state.crypto,
        now_ms=now,
        max_skew_s=cfg.max_skew_s,
        known_public_key=state.known_key(msg.peer_id),
    )
    if not ok:
        raise state.reject(reason)

    state._accept(msg)
    return sign_handshake(  # type: ignore[return-value]
        msg_type=MsgType.HANDSHAKE_RESPONSE,
        crypto=state.crypto,
        peer_id=cfg.peer_id,
        display_name=cfg.display_name,
        timestamp=now,
    )


def process_inbound_response(
    state: HandshakeState, msg: HandshakeResponseMsg, *, now_ms: Optional[int] = None
) -> None:
    """Initiator side: validate the responder's handshake_response."""
    if state.status != "SENT":
        raise state.reject("unexpected_response")
    if not isinstance(msg, HandshakeResponseMsg):
        raise state.reject("expected_handshake_response")

    now = _now_ms() if now_ms is None else int(now_ms)
    ok, reason = verify_handshake_identity(
        msg=msg,
        crypto=state.crypto,
        now_ms=now,
        max_skew_s=state.config.max_skew_s,
        expected_peer_id=state.expected_peer_id,
        known_public_key=state.known_key(msg.peer_id),
    )
    if not ok:
        raise state.reject(reason)

    state._accept(msg)


def require_established(state: HandshakeState) -> str:
    """Return the remote peer id if established, else raise."""
    if not state.is_established():
        raise HandshakeError(state.last_error or "handshake not established")
    assert state.remote_peer_id is not None
    return state.remote_peer_id
