# src/peerlink/security/verification.py
"""
Peer identity verification.

Out-of-band comparison artifacts (all pure functions of the public keys):
  - fingerprint(key): uppercase hex SHA-256 with ':' after every byte
  - safety_number(a, b): 25 digits in five groups, symmetric in (a, b)
  - verification_words(a, b): six words, symmetric in (a, b)

QR payload:
  JSON {id, displayName, publicKey, fingerprint, timestamp, signature}, signed
  by the local identity over the canonical JSON of the other fields.

Challenge-response:
  the verifier sends >= 32 random bytes; the peer signs
  b"PEERLINK_CHALLENGE_V1|" + nonce with its identity key.

Per-peer state machine:
  UNVERIFIED -> PENDING -> VERIFIED | FAILED
  FAILED -> PENDING (retry), VERIFIED -> PENDING (re-verification)
"""

from __future__ import annotations

import hashlib
import logging
import os
import threading
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Optional, Tuple

from peerlink.crypto.keys import IDENTITY_PUBKEY_LEN, Crypto
from peerlink.crypto.sig import b64d, b64e, canonical_json_bytes
from peerlink.errors import PeerlinkError
from peerlink.metrics import inc_counter
from peerlink.net.codec import WireDecodeError, loads_json
from peerlink.net.net_logging import log_event

if TYPE_CHECKING:
    from peerlink.net.peer_store import PeerIdentityStore

log = logging.getLogger("peerlink.verify")

Json = Dict[str, Any]

CHALLENGE_DOMAIN = b"PEERLINK_CHALLENGE_V1|"
MIN_CHALLENGE_BYTES = 32

WORD_LIST: Tuple[str, ...] = (
    "apple", "banana", "cherry", "dolphin", "elephant",
    "fire", "sunflower", "hotel", "iguana", "garden",
    "kiwi", "lemon", "mountain", "orange", "ocean",
    "dog", "cheese", "river", "sun", "tiger",
    "grape", "violet", "wifi", "xylophone", "yoga",
    "shoe", "tree", "owl", "house", "candy",
    "star", "flower", "cat", "egg", "island",
    "game", "koala", "moon", "cloud", "bear",
    "piano", "maybe", "rose", "chair", "train",
)


# ---------------------------------------------------------------------
# Comparison artifacts
# ---------------------------------------------------------------------


def fingerprint(public_key: bytes) -> str:
    h = hashlib.sha256(bytes(public_key)).hexdigest().upper()
    return ":".join(h[i : i + 2] for i in range(0, len(h), 2))


def _pair_hash(key_a: bytes, key_b: bytes) -> bytes:
    lo, hi = sorted((bytes(key_a), bytes(key_b)))
    return hashlib.sha256(lo + hi).digest()


def safety_number(key_a: bytes, key_b: bytes) -> str:
    h = _pair_hash(key_a, key_b)
    digits = "".join(str(h[i % len(h)] % 10) for i in range(25))
    return " ".join(digits[i : i + 5] for i in range(0, 25, 5))


def verification_words(key_a: bytes, key_b: bytes) -> str:
    h = _pair_hash(key_a, key_b)
    n = len(h)
    words = []
    for i in range(6):
        base = i * 4
        chunk = bytes(h[(base + j) % n] for j in range(4))
        words.append(WORD_LIST[int.from_bytes(chunk, "big") % len(WORD_LIST)])
    return " ".join(words)


# ---------------------------------------------------------------------
# QR payload
# ---------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class QrIdentity:
    peer_id: str
    display_name: str
    public_key: bytes
    fingerprint: str
    timestamp: int


@dataclass(frozen=True, slots=True)
class QrVerification:
    ok: bool
    reason: str
    identity: Optional[QrIdentity] = None


def qr_payload(*, peer_id: str, display_name: str, crypto: Crypto, timestamp: int) -> str:
    body: Json = {
        "id": str(peer_id),
        "displayName": str(display_name),
        "publicKey": b64e(crypto.public_key),
        "fingerprint": fingerprint(crypto.public_key),
        "timestamp": int(timestamp),
    }
    body["signature"] = b64e(crypto.sign(canonical_json_bytes(body)))
    return canonical_json_bytes(body).decode("utf-8")


def verify_qr_payload(data: str | bytes, *, crypto: Crypto, expected_id: Optional[str] = None) -> QrVerification:
    """Check a scanned QR payload. Never raises for bad input."""
    try:
        raw = loads_json(data)
    except WireDecodeError:
        return QrVerification(False, "malformed")
    if not isinstance(raw, dict):
        return QrVerification(False, "malformed")

    pid, name, pk_s, fp, ts, sig_s = (
        raw.get("id"),
        raw.get("displayName"),
        raw.get("publicKey"),
        raw.get("fingerprint"),
        raw.get("timestamp"),
        raw.get("signature"),
    )
    if not isinstance(pid, str) or not pid or not isinstance(name, str):
        return QrVerification(False, "malformed")
    if not isinstance(pk_s, str) or not isinstance(fp, str) or not isinstance(sig_s, str):
        return QrVerification(False, "malformed")
    if isinstance(ts, bool) or not isinstance(ts, int):
        return QrVerification(False, "malformed")
    try:
        pk = b64d(pk_s)
        sig = b64d(sig_s)
    except ValueError:
        return QrVerification(False, "malformed")
    if len(pk) != IDENTITY_PUBKEY_LEN:
        return QrVerification(False, "bad_public_key")

    if fingerprint(pk) != fp:
        return QrVerification(False, "fingerprint_mismatch")
    if expected_id is not None and pid != expected_id:
        return QrVerification(False, "id_mismatch")

    body = {k: v for k, v in raw.items() if k != "signature"}
    if not crypto.verify(canonical_json_bytes(body), sig, pk):
        return QrVerification(False, "bad_signature")

    return QrVerification(True, "ok", QrIdentity(pid, name, pk, fp, int(ts)))


# ---------------------------------------------------------------------
# Challenge-response
# ---------------------------------------------------------------------


def new_challenge(n: int = MIN_CHALLENGE_BYTES) -> bytes:
    return os.urandom(max(MIN_CHALLENGE_BYTES, int(n)))


def challenge_sign_bytes(nonce: bytes) -> bytes:
    return CHALLENGE_DOMAIN + bytes(nonce)


def check_challenge_response(
    *,
    nonce: bytes,
    signature: bytes,
    public_key: bytes,
    recorded_fingerprint: Optional[str],
    crypto: Crypto,
) -> Tuple[bool, str]:
    """Both the signature and the key continuity must hold.

    Returns:
      (ok, reason)
    """
    if len(nonce) < MIN_CHALLENGE_BYTES:
        return (False, "short_nonce")
    if not recorded_fingerprint:
        return (False, "no_recorded_fingerprint")
    if fingerprint(public_key) != recorded_fingerprint:
        return (False, "fingerprint_mismatch")
    if not crypto.verify(challenge_sign_bytes(nonce), signature, public_key):
        return (False, "bad_signature")
    return (True, "ok")


# ---------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------


class VerificationState(str, Enum):
    UNVERIFIED = "UNVERIFIED"
    PENDING = "PENDING"
    VERIFIED = "VERIFIED"
    FAILED = "FAILED"


_ALLOWED = {
    VerificationState.UNVERIFIED: {VerificationState.PENDING},
    VerificationState.PENDING: {VerificationState.VERIFIED, VerificationState.FAILED},
    VerificationState.FAILED: {VerificationState.PENDING},
    VerificationState.VERIFIED: {VerificationState.PENDING},
}


class VerificationStateError(PeerlinkError):
    def __init__(self, peer_id: str, src: VerificationState, dst: VerificationState) -> None:
        super().__init__(
            "verification_state_error",
            f"illegal transition {src.value} -> {dst.value}",
            {"peer_id": peer_id},
        )


class VerificationTracker:
    """Per-peer verification state, mirrored into the peer identity store."""

    def __init__(self, *, store: Optional["PeerIdentityStore"] = None) -> None:
        self._store = store
        self._lock = threading.Lock()
        self._states: Dict[str, VerificationState] = {}

    def _load(self, peer_id: str) -> VerificationState:
        if self._store is None:
            return VerificationState.UNVERIFIED
        ident = self._store.get(peer_id)
        if ident is None:
            return VerificationState.UNVERIFIED
        try:
            return VerificationState(ident.verification_state)
        except ValueError:
            return VerificationState.UNVERIFIED

    def state(self, peer_id: str) -> VerificationState:
        with self._lock:
            st = self._states.get(peer_id)
        if st is not None:
            return st
        return self._load(peer_id)

    def _apply(
        self,
        peer_id: str,
        path: Tuple[VerificationState, ...],
        fingerprint_value: Optional[str],
        *,
        skip_current: bool = False,
    ) -> VerificationState:
        # Stored state is read up front; check and write share one lock hold.
        loaded = self._load(peer_id)
        with self._lock:
            src = self._states.get(peer_id, loaded)
            cur = src
            for dst in path:
                if skip_current and dst == cur:
                    continue
                if dst not in _ALLOWED[cur]:
                    raise VerificationStateError(peer_id, cur, dst)
                cur = dst
            self._states[peer_id] = cur
            if self._store is not None:
                self._store.set_verification(peer_id, state=cur.value, fingerprint=fingerprint_value)
        inc_counter(f"verify.{cur.value.lower()}")
        log_event(log, "verification_state", peer_id=peer_id, src=src.value, dst=cur.value)
        return cur

    def transition(
        self, peer_id: str, dst: VerificationState, *, fingerprint_value: Optional[str] = None
    ) -> VerificationState:
        return self._apply(peer_id, (dst,), fingerprint_value)

    def begin(self, peer_id: str) -> VerificationState:
        return self.transition(peer_id, VerificationState.PENDING)

    def complete(self, peer_id: str, ok: bool, *, fingerprint_value: Optional[str] = None) -> VerificationState:
        dst = VerificationState.VERIFIED if ok else VerificationState.FAILED
        return self.transition(peer_id, dst, fingerprint_value=fingerprint_value)

    def confirm(self, peer_id: str, *, fingerprint_value: Optional[str] = None) -> VerificationState:
        """Out-of-band verification (QR scan): VERIFIED from any state, through PENDING."""
        return self._apply(
            peer_id,
            (VerificationState.PENDING, VerificationState.VERIFIED),
            fingerprint_value,
            skip_current=True,
        )
