# src/peerlink/net/__init__.py
"""
PeerLink — Network package

This package provides the peer connectivity layer:
  - messages: session record schemas (dataclasses)
  - codec: JSON-line encoding/decoding of session records
  - transport: stream interface + endpoint types
  - transport_tcp: concrete TCP stream, connect helper, line framing
  - stun: public endpoint discovery (RFC 5389 binding request)
  - relay: relay channel allocation + length-prefixed signed tunnel
  - nat_traversal: direct -> UDP punch -> TCP punch -> relay orchestration
  - handshake / peer_identity: signed identity exchange
  - connection / connection_table: one live Connection per peer
  - session: read loop + record dispatch
  - peer_store: persisted peer identities
  - node: listener, outbound connect, keep-alive

The delivery layer should depend on:
  - net.node (for reaching peers)
  - net.messages (for record types)
and keep its own retry logic separate.
"""

from __future__ import annotations

__all__ = [
    "messages",
    "codec",
    "transport",
    "transport_tcp",
    "stun",
    "relay",
    "nat_traversal",
    "handshake",
    "session",
    "node",
]
