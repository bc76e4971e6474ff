# src/peerlink/crypto/sig.py
from __future__ import annotations

import base64
import binascii
import json
from typing import Any, Dict

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

Json = Dict[str, Any]

ED25519_PUBKEY_LEN = 32
ED25519_SIG_LEN = 64


def b64e(b: bytes) -> str:
    return base64.b64encode(bytes(b)).decode("ascii")


def b64d(s: str) -> bytes:
    """Decode standard base64. Raises ValueError on malformed input."""
    if not isinstance(s, str):
        raise ValueError("expected base64 string")
    try:
        return base64.b64decode(s.strip(), validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError("invalid base64") from e


def canonical_json_bytes(obj: Json) -> bytes:
    """Sorted keys, compact separators, UTF-8. Stable across peers."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def sign_ed25519(*, message: bytes, seed: bytes) -> bytes:
    """Sign with a 32-byte Ed25519 seed. Returns the raw 64-byte signature."""
    if len(seed) != 32:
        raise ValueError("ed25519 seed must be 32 bytes")
    return Ed25519PrivateKey.from_private_bytes(bytes(seed)).sign(bytes(message))


def verify_ed25519_signature(*, message: bytes, sig: bytes, pubkey: bytes) -> bool:
    """Verify a raw signature against a raw 32-byte public key.

    Never raises for bad input: any malformed key/signature is simply False.
    """
    try:
        if len(pubkey) != ED25519_PUBKEY_LEN or len(sig) != ED25519_SIG_LEN:
            return False
        Ed25519PublicKey.from_public_bytes(bytes(pubkey)).verify(bytes(sig), bytes(message))
        return True
    except (InvalidSignature, ValueError, TypeError):
        return False
