"""
PeerLink — Network Transport (Abstract I/O Layer)

Goal:
  Provide a minimal, stable abstraction for peer byte streams so the session
  layer does not care whether bytes travel over a direct TCP socket, a
  hole-punched socket or a relay tunnel.

Notes:
  - A ByteStream moves opaque bytes. Framing of session records (JSON lines)
    lives above it in net.session; framing of relay envelopes lives inside
    net.relay.RelayStream.
  - read(timeout_s) returns b"" when nothing arrived in time or when a frame
    was dropped; it raises StreamClosed on EOF and FrameError on a size
    violation.

This module is pure structure: no sockets here.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol, Tuple, runtime_checkable


# ---------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------

PeerId = str


class TransportKind(str, Enum):
    DIRECT = "DIRECT"
    UDP_HOLEPUNCH = "UDP_HOLEPUNCH"
    TCP_HOLEPUNCH = "TCP_HOLEPUNCH"
    RELAY = "RELAY"


@dataclass(frozen=True, slots=True)
class Endpoint:
    host: str
    port: int

    def as_tuple(self) -> Tuple[str, int]:
        return (self.host, int(self.port))

    def __str__(self) -> str:
        return f"{self.host}:{int(self.port)}"


@dataclass(frozen=True, slots=True)
class AddressHint:
    """Where a peer was last seen.

    public_key (64-byte identity key) is needed by the relay strategy to verify
    and encrypt tunnel data; it is optional for the direct strategies.
    """

    host: str
    port: int
    public_key: Optional[bytes] = None

    @property
    def endpoint(self) -> Endpoint:
        return Endpoint(self.host, int(self.port))


# ---------------------------------------------------------------------
# Stream interface
# ---------------------------------------------------------------------

@runtime_checkable
class ByteStream(Protocol):
    """A connected, bidirectional byte pipe to a single remote."""

    @property
    def kind(self) -> TransportKind: ...

    @property
    def remote(self) -> Optional[Endpoint]: ...

    def write(self, data: bytes) -> None: ...
    def read(self, timeout_s: float) -> bytes: ...
    def close(self) -> None: ...
