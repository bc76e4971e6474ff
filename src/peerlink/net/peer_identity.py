from __future__ import annotations

"""
PeerLink — Peer Identity Proofs

A handshake record proves control of the presented identity key by signing
canonical bytes that bind:
  - the record type (a handshake cannot be replayed as a response)
  - peerId and displayName
  - the public key itself
  - the sender's timestamp (bounded skew, limits replay)

We do not log and we do not raise. Verification returns:
  (ok, reason)
"""

from typing import Optional, Tuple, Union

from peerlink.crypto.keys import IDENTITY_PUBKEY_LEN, Crypto
from peerlink.crypto.sig import b64e
from peerlink.net.messages import HandshakeMsg, HandshakeResponseMsg, MsgType

AnyHandshake = Union[HandshakeMsg, HandshakeResponseMsg]

HANDSHAKE_DOMAIN = "PEERLINK_HANDSHAKE_V1"


def canonical_handshake_sign_bytes(
    *,
    msg_type: MsgType,
    peer_id: str,
    display_name: str,
    public_key: bytes,
    timestamp: int,
) -> bytes:
    """Canonical bytes that must be signed by the peer for identity proof."""
    parts = [
        HANDSHAKE_DOMAIN,
        MsgType(msg_type).value,
        str(peer_id).strip(),
        str(display_name or ""),
        b64e(public_key),
        str(int(timestamp)),
    ]
    return ("|".join(parts)).encode("utf-8")


def sign_handshake(
    *,
    msg_type: MsgType,
    crypto: Crypto,
    peer_id: str,
    display_name: str,
    timestamp: int,
) -> AnyHandshake:
    cls = HandshakeMsg if MsgType(msg_type) == MsgType.HANDSHAKE else HandshakeResponseMsg
    pk = crypto.public_key
    data = canonical_handshake_sign_bytes(
        msg_type=cls.TYPE,
        peer_id=peer_id,
        display_name=display_name,
        public_key=pk,
        timestamp=timestamp,
    )
    return cls(
        peer_id=str(peer_id).strip(),
        display_name=str(display_name or ""),
        public_key=pk,
        timestamp=int(timestamp),
        signature=crypto.sign(data),
    )


def verify_handshake_identity(
    *,
    msg: AnyHandshake,
    crypto: Crypto,
    now_ms: int,
    max_skew_s: float,
    expected_peer_id: Optional[str] = None,
    known_public_key: Optional[bytes] = None,
) -> Tuple[bool, str]:
    """Verify a handshake or handshake_response record.

    Returns:
      (ok, reason)
    """

    peer_id = str(msg.peer_id or "").strip()
    if not peer_id:
        return (False, "missing_peer_id")
    if len(msg.public_key) != IDENTITY_PUBKEY_LEN:
        return (False, "bad_public_key")
    if not msg.signature:
        return (False, "missing_signature")

    if expected_peer_id is not None and peer_id != str(expected_peer_id).strip():
        return (False, "peer_id_mismatch")

    skew_ms = abs(int(now_ms) - int(msg.timestamp))
    if skew_ms > int(float(max_skew_s) * 1000):
        return (False, "timestamp_skew")

    data = canonical_handshake_sign_bytes(
        msg_type=msg.TYPE,
        peer_id=peer_id,
        display_name=msg.display_name,
        public_key=msg.public_key,
        timestamp=msg.timestamp,
    )
    if not crypto.verify(data, msg.signature, msg.public_key):
        return (False, "bad_signature")

    # Key continuity: a peer id never silently changes keys.
    if known_public_key and bytes(known_public_key) != bytes(msg.public_key):
        return (False, "pubkey_mismatch")

    return (True, "ok")
