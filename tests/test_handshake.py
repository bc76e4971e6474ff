from __future__ import annotations

from dataclasses import replace

import pytest

from peerlink.net.handshake import (
    HandshakeConfig,
    HandshakeRejected,
    HandshakeState,
    begin_outbound_handshake,
    process_inbound_handshake,
    process_inbound_response,
    require_established,
)
from peerlink.testing.sigtools import deterministic_identity

NOW = 1_700_000_000_000


def _state(label: str, **kw) -> HandshakeState:
    _pk, c = deterministic_identity(label=label)
    return HandshakeState(config=HandshakeConfig(peer_id=label, display_name=label.title()), crypto=c, **kw)


def test_handshake_happy_path_binds_both_sides() -> None:
    a = _state("alice")
    b = _state("bob")

    hello = begin_outbound_handshake(a, expected_peer_id="bob", now_ms=NOW)
    assert a.status == "SENT"

    resp = process_inbound_handshake(b, hello, now_ms=NOW + 100)
    process_inbound_response(a, resp, now_ms=NOW + 200)

    assert require_established(a) == "bob"
    assert require_established(b) == "alice"
    assert a.remote_public_key == b.crypto.public_key
    assert b.remote_display_name == "Alice"


def test_responder_rejects_tampered_signature() -> None:
    a = _state("alice")
    b = _state("bob")
    hello = begin_outbound_handshake(a, now_ms=NOW)
    forged = replace(hello, display_name="Mallory")

    with pytest.raises(HandshakeRejected) as ei:
        process_inbound_handshake(b, forged, now_ms=NOW)
    assert ei.value.reason == "bad_signature"
    assert b.status == "REJECTED"


def test_responder_rejects_stale_timestamp() -> None:
    a = _state("alice")
    b = _state("bob")
    hello = begin_outbound_handshake(a, now_ms=NOW)

    with pytest.raises(HandshakeRejected) as ei:
        process_inbound_handshake(b, hello, now_ms=NOW + 301_000)
    assert ei.value.reason == "timestamp_skew"


def test_responder_rejects_connection_to_self() -> None:
    a = _state("alice")
    a2 = _state("alice")
    hello = begin_outbound_handshake(a, now_ms=NOW)

    with pytest.raises(HandshakeRejected) as ei:
        process_inbound_handshake(a2, hello, now_ms=NOW)
    assert ei.value.reason == "self_connection"


def test_responder_rejects_key_change_for_known_peer() -> None:
    mallory = HandshakeState(
        config=HandshakeConfig(peer_id="alice", display_name="Alice"),
        crypto=deterministic_identity(label="mallory")[1],
    )
    alice_pk, _ = deterministic_identity(label="alice")
    b = _state("bob", known_key=lambda pid: alice_pk if pid == "alice" else None)

    hello = begin_outbound_handshake(mallory, now_ms=NOW)
    with pytest.raises(HandshakeRejected) as ei:
        process_inbound_handshake(b, hello, now_ms=NOW)
    assert ei.value.reason == "pubkey_mismatch"


def test_initiator_rejects_response_from_unexpected_peer() -> None:
    a = _state("alice")
    carol = _state("carol")
    hello = begin_outbound_handshake(a, expected_peer_id="bob", now_ms=NOW)
    resp = process_inbound_handshake(carol, hello, now_ms=NOW)

    with pytest.raises(HandshakeRejected) as ei:
        process_inbound_response(a, resp, now_ms=NOW)
    assert ei.value.reason == "peer_id_mismatch"


def test_response_without_prior_handshake_is_rejected() -> None:
    a = _state("alice")
    b = _state("bob")
    resp = process_inbound_handshake(b, begin_outbound_handshake(_state("carol"), now_ms=NOW), now_ms=NOW)

    with pytest.raises(HandshakeRejected) as ei:
        process_inbound_response(a, resp, now_ms=NOW)
    assert ei.value.reason == "unexpected_response"
