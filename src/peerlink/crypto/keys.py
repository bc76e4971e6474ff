# src/peerlink/crypto/keys.py
"""
Local identity keys.

A peer identity public key is 64 bytes:
  [ Ed25519 verify key (32) | X25519 encryption key (32) ]

Both halves are derived from one 32-byte seed so a single secret backs the
identity. Signing uses the Ed25519 half; `encrypt()` seals to the X25519 half
with an ephemeral key (ECDH -> HKDF-SHA256 -> AES-256-GCM).

Sealed box layout:
  [ ephemeral X25519 pub (32) | nonce (12) | AES-GCM ciphertext+tag ]
"""

from __future__ import annotations

import hashlib
import os
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from peerlink.crypto.sig import sign_ed25519, verify_ed25519_signature
from peerlink.errors import PeerlinkError

IDENTITY_PUBKEY_LEN = 64
_X25519_INFO = b"peerlink-x25519-v1"
_BOX_INFO = b"peerlink-box-v1"
_NONCE_LEN = 12


class CryptoError(PeerlinkError):
    """Raised when a sealed box cannot be opened or a key is malformed."""

    def __init__(self, reason: str) -> None:
        super().__init__("crypto_error", reason)


@runtime_checkable
class Crypto(Protocol):
    """Crypto/identity collaborator used by the engine."""

    @property
    def public_key(self) -> bytes: ...

    def sign(self, data: bytes) -> bytes: ...
    def verify(self, data: bytes, signature: bytes, public_key: bytes) -> bool: ...
    def encrypt(self, plaintext: bytes, public_key: bytes) -> bytes: ...
    def decrypt(self, ciphertext: bytes) -> bytes: ...
    def hash(self, data: bytes) -> bytes: ...


def signing_half(public_key: bytes) -> bytes:
    return bytes(public_key[:32])


def encryption_half(public_key: bytes) -> bytes:
    if len(public_key) != IDENTITY_PUBKEY_LEN:
        raise CryptoError(f"identity public key must be {IDENTITY_PUBKEY_LEN} bytes")
    return bytes(public_key[32:])


def _hkdf(secret: bytes, *, info: bytes, length: int = 32) -> bytes:
    return HKDF(algorithm=hashes.SHA256(), length=length, salt=None, info=info).derive(secret)


def _raw_pub(key) -> bytes:
    return key.public_bytes(Encoding.Raw, PublicFormat.Raw)


@dataclass(slots=True)
class LocalCrypto:
    """Crypto implementation backed by a local 32-byte seed."""

    seed: bytes = field(repr=False)
    _x_priv: X25519PrivateKey = field(init=False, repr=False)
    _public_key: bytes = field(init=False)

    def __post_init__(self) -> None:
        if len(self.seed) != 32:
            raise CryptoError("identity seed must be 32 bytes")
        ed_pub = _raw_pub(Ed25519PrivateKey.from_private_bytes(self.seed).public_key())
        self._x_priv = X25519PrivateKey.from_private_bytes(_hkdf(self.seed, info=_X25519_INFO))
        self._public_key = ed_pub + _raw_pub(self._x_priv.public_key())

    @classmethod
    def from_seed(cls, seed: bytes) -> "LocalCrypto":
        return cls(seed=bytes(seed))

    @classmethod
    def generate(cls) -> "LocalCrypto":
        return cls(seed=os.urandom(32))

    @property
    def public_key(self) -> bytes:
        return self._public_key

    def sign(self, data: bytes) -> bytes:
        return sign_ed25519(message=data, seed=self.seed)

    def verify(self, data: bytes, signature: bytes, public_key: bytes) -> bool:
        if len(public_key) not in (32, IDENTITY_PUBKEY_LEN):
            return False
        return verify_ed25519_signature(message=data, sig=signature, pubkey=signing_half(public_key))

    def encrypt(self, plaintext: bytes, public_key: bytes) -> bytes:
        peer_x = encryption_half(public_key)
        eph = X25519PrivateKey.generate()
        eph_pub = _raw_pub(eph.public_key())
        shared = eph.exchange(X25519PublicKey.from_public_bytes(peer_x))
        key = _hkdf(shared, info=_BOX_INFO + eph_pub + peer_x)
        nonce = os.urandom(_NONCE_LEN)
        return eph_pub + nonce + AESGCM(key).encrypt(nonce, bytes(plaintext), None)

    def decrypt(self, ciphertext: bytes) -> bytes:
        if len(ciphertext) < 32 + _NONCE_LEN + 16:
            raise CryptoError("ciphertext too short")
        eph_pub = bytes(ciphertext[:32])
        nonce = bytes(ciphertext[32 : 32 + _NONCE_LEN])
        body = bytes(ciphertext[32 + _NONCE_LEN :])
        own_x = self._public_key[32:]
        try:
            shared = self._x_priv.exchange(X25519PublicKey.from_public_bytes(eph_pub))
            key = _hkdf(shared, info=_BOX_INFO + eph_pub + own_x)
            return AESGCM(key).decrypt(nonce, body, None)
        except (InvalidTag, ValueError) as e:
            raise CryptoError("cannot open sealed box") from e

    def hash(self, data: bytes) -> bytes:
        return hashlib.sha256(bytes(data)).digest()
